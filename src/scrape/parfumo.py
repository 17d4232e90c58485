"""Parfumo catalog scraper: search, detail pages and brand listings."""

import logging
import random
import time
from pathlib import Path
from typing import Optional

from src.config import settings
from src.errors import ValidationError
from src.ingest.browser_client import BrowserClient
from src.scrape.extractor import extract_fragrance, extract_listing
from src.scrape.models import Fragrance, SearchResult
from src.scrape.relevance import rank_results
from src.scrape.url_processor import (
    absolute_url,
    build_brand_url,
    build_search_url,
    is_valid_perfume_url,
)

logger = logging.getLogger(__name__)

DETAIL_READY_SELECTOR = '[itemprop="aggregateRating"]'
BRAND_LISTING_SELECTORS = [".name a"]


class ParfumoScraper:
    """
    Orchestrates page fetches through the rendered client and hands the
    markup to the extractor.
    """

    def __init__(
        self,
        browser: BrowserClient,
        base_url: Optional[str] = None,
        *,
        max_similar: Optional[int] = None,
        debug_html_dir: Optional[str] = None,
        polite_delays: bool = True,
    ):
        self.browser = browser
        self.base_url = (base_url or settings.parfumo_base_url).rstrip("/")
        self.max_similar = max_similar or settings.max_similar_fragrances
        self.debug_html_dir = debug_html_dir if debug_html_dir is not None else settings.debug_html_dir
        self.polite_delays = polite_delays

    async def _pause(self, low: float, high: float) -> None:
        if self.polite_delays:
            await self.browser.delay(random.uniform(low, high))

    def _save_debug_html(self, url: str, html: str) -> None:
        if not self.debug_html_dir:
            return
        directory = Path(self.debug_html_dir)
        directory.mkdir(parents=True, exist_ok=True)
        slug = "_".join(url.rstrip("/").split("/")[-2:])
        path = directory / f"failed_{slug}_{int(time.time() * 1000)}.html"
        path.write_text(html, encoding="utf-8")
        logger.warning(f"Saved page with missing ratings to {path}")

    async def search(self, query: str, limit: Optional[int] = None) -> list[SearchResult]:
        """
        Search the catalog and return results ranked by relevance to the query.

        Without a limit every result above the relevance floor is returned.
        """
        logger.info(f"Searching Parfumo for: {query}")

        await self._pause(settings.search_delay_min, settings.search_delay_max)
        html = await self.browser.get_page_content(build_search_url(query, self.base_url))

        ranked = rank_results(query, extract_listing(html, self.base_url))
        if limit is not None:
            ranked = ranked[:limit]
        logger.info(f"Found {len(ranked)} relevant results for: {query}")
        return ranked

    async def get_fragrance(self, url: str) -> Fragrance:
        """
        Scrape one fragrance detail page.

        Raises:
            ValidationError: If the URL is not a catalog perfume URL
        """
        full_url = absolute_url(url, self.base_url)
        if not is_valid_perfume_url(full_url):
            raise ValidationError(f"Invalid perfume URL: {url}")

        logger.info(f"Fetching perfume details from: {full_url}")
        await self._pause(settings.details_delay_min, settings.details_delay_max)
        html = await self.browser.get_page_content(full_url, DETAIL_READY_SELECTOR)

        fragrance = extract_fragrance(html, full_url, self.base_url, self.max_similar)
        if None in (
            fragrance.longevity,
            fragrance.sillage,
            fragrance.bottle_rating,
            fragrance.price_value,
        ):
            self._save_debug_html(full_url, html)

        logger.info(f"Successfully scraped: {fragrance.brand} - {fragrance.name}")
        return fragrance

    async def get_fragrances_by_brand(self, brand: str, page: int = 1) -> list[SearchResult]:
        logger.info(f"Fetching perfumes for brand: {brand} (page {page})")
        await self._pause(settings.brand_delay_min, settings.brand_delay_max)
        html = await self.browser.get_page_content(build_brand_url(brand, page, self.base_url))

        results = extract_listing(html, self.base_url, BRAND_LISTING_SELECTORS)
        logger.info(f"Found {len(results)} perfumes for brand: {brand}")
        return results
