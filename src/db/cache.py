"""Cache repository: fragrance records, search results and request logs."""

import logging
from datetime import timedelta
from typing import Literal, Optional

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src import metrics
from src.config import settings
from src.db.models import FragranceRecord, RequestLog, SearchCache, utcnow
from src.errors import DatabaseError, ValidationError
from src.ingest.base import RequestOutcome
from src.scrape.models import Fragrance, SearchResult

logger = logging.getLogger(__name__)

CacheType = Literal["fragrances", "searches", "all"]


def _year_clause(year: Optional[int]):
    if year is None:
        return FragranceRecord.year.is_(None)
    return FragranceRecord.year == year


class CacheRepository:
    """Expiring cache of scraped data on top of the async session factory."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fragrance_ttl: Optional[timedelta] = None,
        search_ttl: Optional[timedelta] = None,
    ):
        self._session_factory = session_factory
        self.fragrance_ttl = fragrance_ttl or timedelta(hours=settings.cache_perfume_hours)
        self.search_ttl = search_ttl or timedelta(hours=settings.cache_search_hours)

    # ------------------------------------------------------------------
    # Fragrances
    # ------------------------------------------------------------------

    async def save_fragrance(self, fragrance: Fragrance) -> None:
        """
        Store a record, replacing any earlier record for the same URL or the
        same brand/name/year.
        """
        data = fragrance.model_dump()
        data["notes"] = fragrance.notes.model_dump() if fragrance.notes else None
        try:
            async with self._session_factory() as db:
                await db.execute(
                    delete(FragranceRecord).where(
                        or_(
                            FragranceRecord.url == fragrance.url,
                            and_(
                                FragranceRecord.brand == fragrance.brand,
                                FragranceRecord.name == fragrance.name,
                                _year_clause(fragrance.year),
                            ),
                        )
                    )
                )
                db.add(FragranceRecord(**data, cached_until=utcnow() + self.fragrance_ttl))
                await db.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to cache fragrance {fragrance.url}: {e}") from e

    async def _get_fragrance_where(self, *conditions) -> Optional[Fragrance]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(FragranceRecord)
                    .where(*conditions, FragranceRecord.cached_until > utcnow())
                    .order_by(FragranceRecord.scraped_at.desc())
                    .limit(1)
                )
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to read cached fragrance: {e}") from e
        return Fragrance.model_validate(row) if row else None

    async def get_fragrance(
        self, brand: str, name: str, year: Optional[int] = None
    ) -> Optional[Fragrance]:
        """Unexpired record by brand and name (case-insensitive) and year."""
        fragrance = await self._get_fragrance_where(
            func.lower(FragranceRecord.brand) == brand.lower(),
            func.lower(FragranceRecord.name) == name.lower(),
            _year_clause(year),
        )
        metrics.record_cache_lookup("fragrance", fragrance is not None)
        return fragrance

    async def get_fragrance_by_url(self, url: str) -> Optional[Fragrance]:
        fragrance = await self._get_fragrance_where(FragranceRecord.url == url)
        metrics.record_cache_lookup("fragrance", fragrance is not None)
        return fragrance

    # ------------------------------------------------------------------
    # Searches
    # ------------------------------------------------------------------

    async def save_search(self, query: str, results: list[SearchResult]) -> None:
        payload = [r.model_dump() for r in results]
        try:
            async with self._session_factory() as db:
                row = (
                    await db.execute(select(SearchCache).where(SearchCache.query == query))
                ).scalar_one_or_none()
                if row is None:
                    row = SearchCache(query=query)
                    db.add(row)
                row.results = payload
                row.created_at = utcnow()
                row.cached_until = utcnow() + self.search_ttl
                await db.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to cache search {query!r}: {e}") from e

    async def get_search(self, query: str) -> Optional[list[SearchResult]]:
        try:
            async with self._session_factory() as db:
                row = (
                    await db.execute(
                        select(SearchCache).where(
                            SearchCache.query == query,
                            SearchCache.cached_until > utcnow(),
                        )
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to read cached search: {e}") from e

        metrics.record_cache_lookup("search", row is not None)
        if row is None:
            return None
        return [SearchResult.model_validate(r) for r in row.results]

    # ------------------------------------------------------------------
    # Request logs
    # ------------------------------------------------------------------

    async def log_request(self, outcome: RequestOutcome) -> None:
        try:
            async with self._session_factory() as db:
                db.add(
                    RequestLog(
                        url=outcome.url,
                        method=outcome.method,
                        status_code=outcome.status_code,
                        response_time_ms=outcome.response_time_ms,
                        error=outcome.error,
                        credential_id=outcome.credential_id,
                    )
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to write request log: {e}") from e

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup_expired(self) -> int:
        """Delete expired fragrance and search entries. Returns rows deleted."""
        now = utcnow()
        try:
            async with self._session_factory() as db:
                fragrances = await db.execute(
                    delete(FragranceRecord).where(FragranceRecord.cached_until <= now)
                )
                searches = await db.execute(
                    delete(SearchCache).where(SearchCache.cached_until <= now)
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to clean up cache: {e}") from e

        deleted = (fragrances.rowcount or 0) + (searches.rowcount or 0)
        logger.info(f"Cleaned up {deleted} expired cache entries")
        return deleted

    async def cleanup_request_logs(self, retention_days: Optional[int] = None) -> int:
        days = retention_days if retention_days is not None else settings.request_log_retention_days
        cutoff = utcnow() - timedelta(days=days)
        try:
            async with self._session_factory() as db:
                result = await db.execute(delete(RequestLog).where(RequestLog.created_at < cutoff))
                await db.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to clean up request logs: {e}") from e

        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Cleaned up {deleted} request logs older than {days} days")
        return deleted

    async def clear(self, cache_type: CacheType) -> int:
        """Drop cached entries regardless of expiry."""
        tables = {
            "fragrances": [FragranceRecord],
            "searches": [SearchCache],
            "all": [FragranceRecord, SearchCache],
        }.get(cache_type)
        if tables is None:
            raise ValidationError(f"Unknown cache type: {cache_type}")

        deleted = 0
        try:
            async with self._session_factory() as db:
                for table in tables:
                    result = await db.execute(delete(table))
                    deleted += result.rowcount or 0
                await db.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to clear {cache_type} cache: {e}") from e

        logger.info(f"Cleared {deleted} entries from {cache_type} cache")
        return deleted
