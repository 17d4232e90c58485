"""Application service container.

Everything the API and the scheduler need is built here once, from settings,
and passed around explicitly instead of living in module-level singletons.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from src.config import Settings, settings as default_settings
from src.db.cache import CacheRepository
from src.db.session import create_engine, create_session_factory, init_db
from src.ingest.browser_client import BrowserClient
from src.ingest.http_client import HttpFetchClient
from src.proxy.credential_store import CredentialStore
from src.proxy.pool_manager import PoolManager
from src.proxy.provider_client import ProviderClient, resolve_auth_mode
from src.proxy.quota_tracker import QuotaTracker
from src.proxy.types import Credential, PoolEvent
from src.scrape.parfumo import ParfumoScraper

logger = logging.getLogger(__name__)


def _log_pool_event(event: PoolEvent, credential: Optional[Credential]) -> None:
    if event is PoolEvent.REPLENISHMENT_NEEDED:
        logger.warning("Proxy pool needs a new credential: POST /api/proxy/credentials")
    elif credential is not None:
        logger.info(f"Proxy pool event {event.value} for {credential.masked_identity}")


@dataclass
class Services:
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    provider: ProviderClient
    pool: PoolManager
    http_client: HttpFetchClient
    browser_client: BrowserClient
    cache: CacheRepository
    scraper: ParfumoScraper

    async def start(self) -> None:
        await init_db(self.engine)
        await self.pool.load()

    async def close(self) -> None:
        for closer in (self.browser_client.close, self.http_client.close, self.provider.close):
            try:
                await closer()
            except Exception:
                logger.exception("Error while shutting down a service")
        await self.engine.dispose()


def build_services(config: Optional[Settings] = None) -> Services:
    """
    Wire up the application from settings.

    Raises:
        ConfigurationError: If no provider authentication is configured
    """
    config = config or default_settings
    auth = resolve_auth_mode(config)

    engine = create_engine(config.database_url)
    session_factory = create_session_factory(engine)
    cache = CacheRepository(session_factory)

    provider = ProviderClient(auth, config.decodo_api_url, timeout=config.decodo_api_timeout)
    pool = PoolManager(
        CredentialStore(session_factory),
        QuotaTracker(provider),
        provider,
        endpoint=config.proxy_endpoint,
        port=config.proxy_port,
        country=config.proxy_country,
        quota_bytes=config.subuser_quota_bytes,
        warning_bytes=config.subuser_warning_bytes,
        service_type=config.subuser_service_type,
    )
    for event in PoolEvent:
        pool.subscribe(event, _log_pool_event)

    http_client = HttpFetchClient(pool, request_logger=cache.log_request)
    browser_client = BrowserClient(pool, request_logger=cache.log_request)

    return Services(
        engine=engine,
        session_factory=session_factory,
        provider=provider,
        pool=pool,
        http_client=http_client,
        browser_client=browser_client,
        cache=cache,
        scraper=ParfumoScraper(
            browser_client,
            config.parfumo_base_url,
            max_similar=config.max_similar_fragrances,
            debug_html_dir=config.debug_html_dir,
        ),
    )
