"""Proxy credential pool API routes."""

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.api import responses
from src.api.deps import get_services
from src.proxy.types import Credential, CredentialStatus
from src.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/proxy", tags=["proxy"])

MB = 1024 * 1024


class CredentialImport(BaseModel):
    """Request model for registering an existing sub-account."""
    identity: str = Field(min_length=3, max_length=50)
    secret: str = Field(min_length=8, max_length=100)


class CredentialUpdate(BaseModel):
    """Request model for an administrative status change."""
    status: CredentialStatus


class CredentialResponse(BaseModel):
    """Credential as shown to operators; the secret is never included."""
    id: Optional[int]
    identity: str
    status: CredentialStatus
    service_type: str
    used_mb: float
    quota_mb: float
    usage_percent: float
    created_at: Optional[datetime]
    last_checked_at: Optional[datetime]

    @classmethod
    def from_credential(cls, credential: Credential) -> "CredentialResponse":
        quota = credential.quota_bytes or 1
        return cls(
            id=credential.id,
            identity=credential.identity,
            status=credential.status,
            service_type=credential.service_type,
            used_mb=round(credential.used_bytes / MB, 2),
            quota_mb=round(credential.quota_bytes / MB, 2),
            usage_percent=round(credential.used_bytes / quota * 100, 1),
            created_at=credential.created_at,
            last_checked_at=credential.last_checked_at,
        )


@router.get("/status")
async def proxy_status(services: Services = Depends(get_services)):
    """Pool statistics plus every known credential."""
    stats = asdict(services.pool.statistics())
    stats["credentials"] = [
        CredentialResponse.from_credential(c) for c in services.pool.list_credentials()
    ]
    return responses.success(stats)


@router.get("/credentials")
async def list_credentials(services: Services = Depends(get_services)):
    return responses.success(
        [CredentialResponse.from_credential(c) for c in services.pool.list_credentials()]
    )


@router.post("/credentials", status_code=201)
async def create_credential(services: Services = Depends(get_services)):
    """Provision a new sub-account at the provider and select it."""
    logger.info("Creating new proxy credential...")
    credential = await services.pool.create_credential()
    return responses.success(CredentialResponse.from_credential(credential), status_code=201)


@router.post("/credentials/import", status_code=201)
async def import_credential(body: CredentialImport, services: Services = Depends(get_services)):
    """Register a sub-account that already exists at the provider."""
    credential = await services.pool.import_existing_credential(body.identity, body.secret)
    return responses.success(CredentialResponse.from_credential(credential), status_code=201)


@router.patch("/credentials/{credential_id}")
async def update_credential(
    credential_id: int,
    body: CredentialUpdate,
    services: Services = Depends(get_services),
):
    credential = await services.pool.set_status(credential_id, body.status)
    return responses.success(CredentialResponse.from_credential(credential))


@router.get("/test")
async def test_proxy(
    client: Literal["http", "browser"] = "http",
    services: Services = Depends(get_services),
):
    """Fetch the IP-echo page through the proxy."""
    logger.info(f"Testing proxy connection with the {client} client...")
    transport = services.http_client if client == "http" else services.browser_client
    connected = await transport.test_connection()
    return responses.success({"client": client, "connected": connected})


@router.post("/rotate")
async def rotate_proxy(services: Services = Depends(get_services)):
    """Drop current sessions so the next request re-selects a credential."""
    services.pool.rotate()
    await services.http_client.reset()
    await services.browser_client.reset()
    return responses.success(
        {"message": "Proxy rotation initiated. Next request will use a new session."}
    )
