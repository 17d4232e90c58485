"""FastAPI dependencies."""

from fastapi import Request

from src.services import Services


def get_services(request: Request) -> Services:
    """Service container attached to the app during startup."""
    return request.app.state.services
