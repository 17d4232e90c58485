"""Fragrance search, detail and cache API routes."""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from fastapi import APIRouter, Depends, Path, Query
from pydantic import BaseModel, Field

from src.api import responses
from src.api.deps import get_services
from src.config import settings
from src.errors import RateLimitError, ValidationError
from src.scrape.url_processor import (
    MIN_YEAR,
    absolute_url,
    build_perfume_url,
    clean_name,
    max_year,
)
from src.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["fragrances"])

T = TypeVar("T")


class PerfumeByUrlRequest(BaseModel):
    """Request body for fetching a fragrance by its catalog URL."""
    url: str = Field(min_length=1, max_length=500)


async def retry_on_rate_limit(operation: Callable[[], Awaitable[T]]) -> T:
    """Run a scrape, retrying once after the transport rotated its identity."""
    try:
        return await operation()
    except RateLimitError as e:
        logger.warning(f"{e.message}; retrying once with a fresh network identity")
        return await operation()


@router.get("/search")
async def search(
    q: str = Query(..., min_length=1, max_length=200),
    limit: int = Query(settings.default_search_limit, ge=1, le=100),
    cache: bool = True,
    services: Services = Depends(get_services),
):
    """Search the catalog, serving cached results when available."""
    if cache:
        cached = await services.cache.get_search(q)
        if cached is not None:
            logger.info(f"Returning cached results for query: {q}")
            return responses.success(cached[:limit])

    # The full ranked list is cached so a later, larger limit can be served from it
    results = await retry_on_rate_limit(lambda: services.scraper.search(q))
    await services.cache.save_search(q, results)
    return responses.success(results[:limit])


@router.get("/perfume/{brand}/{name}")
async def get_perfume(
    brand: str = Path(..., min_length=1, max_length=100),
    name: str = Path(..., min_length=1, max_length=200),
    year: Optional[int] = Query(None, ge=MIN_YEAR),
    cache: bool = True,
    services: Services = Depends(get_services),
):
    """Fetch one fragrance by brand and name."""
    if year is not None and year > max_year():
        raise ValidationError(f"Year must be between {MIN_YEAR} and {max_year()}")

    if cache:
        cached = await services.cache.get_fragrance(
            " ".join(brand.replace("_", " ").split()),
            clean_name(name.replace("_", " ")),
            year,
        )
        if cached is not None:
            logger.info(f"Returning cached perfume: {brand} - {name}")
            return responses.success(cached)

    url = build_perfume_url(brand, name, services.scraper.base_url)
    logger.info(f"Fetching perfume: {brand} - {name}")
    fragrance = await retry_on_rate_limit(lambda: services.scraper.get_fragrance(url))
    await services.cache.save_fragrance(fragrance)
    return responses.success(fragrance)


@router.post("/perfume/by-url")
async def get_perfume_by_url(
    body: PerfumeByUrlRequest,
    cache: bool = True,
    services: Services = Depends(get_services),
):
    """Fetch one fragrance by its catalog URL."""
    url = absolute_url(body.url.strip(), services.scraper.base_url)

    if cache:
        cached = await services.cache.get_fragrance_by_url(url)
        if cached is not None:
            logger.info(f"Returning cached perfume from URL: {url}")
            return responses.success(cached)

    fragrance = await retry_on_rate_limit(lambda: services.scraper.get_fragrance(url))
    await services.cache.save_fragrance(fragrance)
    return responses.success(fragrance)


@router.get("/brand/{brand}")
async def get_brand(
    brand: str = Path(..., min_length=1, max_length=100),
    page: int = Query(1, ge=1, le=1000),
    services: Services = Depends(get_services),
):
    """List a brand's fragrances, one catalog page at a time."""
    results = await retry_on_rate_limit(
        lambda: services.scraper.get_fragrances_by_brand(brand, page)
    )
    return responses.success(results)


@router.delete("/cache/{cache_type}")
async def clear_cache(cache_type: str, services: Services = Depends(get_services)):
    """Clear cached fragrances, searches or both."""
    deleted = await services.cache.clear(cache_type)
    return responses.success({"cache_type": cache_type, "deleted": deleted})
