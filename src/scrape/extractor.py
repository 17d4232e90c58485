"""Field extraction for catalog pages.

Each field is read by an ordered chain of strategies, most structured signal
first and free-text regex last. The first strategy that yields a value wins;
a field no strategy can read is left empty rather than raising.

Rating dimensions are the delicate part. Every candidate (value, count) pair,
whatever strategy produced it, goes through the same validation gate: the
value must lie in [0, 10] and the vote count in [1, 1_000_000]. A rejected
candidate falls through to the next strategy.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from selectolax.parser import HTMLParser, Node

from src import metrics
from src.scrape.models import Fragrance, FragranceNotes, RatingValue, SearchResult
from src.scrape.url_processor import (
    absolute_url,
    is_valid_perfume_url,
    page_identity,
    parse_perfume_url,
)

logger = logging.getLogger(__name__)

MIN_RATING_VALUE = 0.0
MAX_RATING_VALUE = 10.0
MIN_RATING_COUNT = 1
MAX_RATING_COUNT = 1_000_000

CONCENTRATION_SELECTOR = ".concentration, .perfume-concentration, .type"
DESCRIPTION_SELECTOR = ".description, .perfume-description, .main-description, p.desc"
GENDER_SELECTOR = ".gender, .perfume-gender"
ACCORD_SELECTOR = '.accord, .perfume-accord, [class*="accord"]'
SIMILAR_SELECTOR = '.similar-perfume, .similar-fragrance, [class*="similar"] a'
PERFUMER_SELECTOR = '.perfumer, [itemprop="creator"]'
RESULT_RATING_SELECTOR = '.rating, .stars, [class*="rating"]'
IMAGE_HOST_MARKER = "media.parfumo.com/perfumes"

SEARCH_RESULT_SELECTORS = [
    ".name > a",
    "#main .name > a",
    ".search-results .name > a",
    ".name a",
]

NOTE_POSITIONS = {"t": "top", "m": "heart", "h": "heart", "b": "base"}

COUNT_RE = re.compile(r"([\d,]+)\s*Ratings?", re.IGNORECASE)
NUMBER_RE = re.compile(r"(\d+\.?\d*)")
RANKING_RE = re.compile(r"Ranked\s+#?(\d+)\s+in\s+([^\n.]+)", re.IGNORECASE)
PERFUMER_RE = re.compile(r"Perfumer:\s*([^,\n]+)", re.IGNORECASE)
REVIEWS_RE = re.compile(r"(\d+)\s*in-depth\s+fragrance\s+descriptions?", re.IGNORECASE)
STATEMENTS_RE = re.compile(r"(\d+)\s*short\s+views?\s+on\s+the\s+fragrance", re.IGNORECASE)
PHOTOS_RE = re.compile(r"(\d+)\s*fragrance\s+photos?", re.IGNORECASE)

GENDER_TEXT_RULES = [
    (re.compile(r"for (?:women and men|men and women|both|everyone)", re.IGNORECASE), "unisex"),
    (re.compile(r"for women|for her|women's perfume", re.IGNORECASE), "female"),
    (re.compile(r"for men|for him|men's perfume", re.IGNORECASE), "male"),
]
GENDER_RANK_RULES = [
    (re.compile(r"ranked #?\d+ in unisex perfume", re.IGNORECASE), "unisex"),
    (re.compile(r"ranked #?\d+ in (?:women's|women) perfume", re.IGNORECASE), "female"),
    (re.compile(r"ranked #?\d+ in (?:men's|men) perfume", re.IGNORECASE), "male"),
]


# ---------------------------------------------------------------------------
# Document helpers
# ---------------------------------------------------------------------------


class PageDocument:
    """A parsed page plus its flattened visible text."""

    def __init__(self, html: str):
        self.tree = HTMLParser(html)
        root = self.tree.body or self.tree.root
        # No separator between nodes: adjacent spans run together as they
        # do in the rendered text, which the concatenated strategy relies on
        self.text = root.text(separator="") if root is not None else ""

    def first_text(self, selector: str) -> Optional[str]:
        node = self.tree.css_first(selector)
        if node is None:
            return None
        text = node.text(strip=True)
        return text or None


def _parse_int(text: str) -> Optional[int]:
    try:
        return int(text.replace(",", ""))
    except ValueError:
        return None


def _parse_float(text: str) -> Optional[float]:
    try:
        return float(text.strip())
    except ValueError:
        return None


def parse_rating_text(text: Optional[str]) -> Optional[float]:
    """First number in a snippet of text, e.g. ``"8.4 / 10"`` -> 8.4."""
    if not text:
        return None
    match = NUMBER_RE.search(text)
    return float(match.group(1)) if match else None


def normalize_image_url(url: Optional[str], base_url: str) -> Optional[str]:
    if not url:
        return None
    if url.startswith("http"):
        return url
    return absolute_url(url, base_url)


# ---------------------------------------------------------------------------
# Ratings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RatingDimension:
    """A rating shown on detail pages.

    ``label`` is a regex matched against page text; ``data_type`` names the
    dimension's ``[data-type=...]`` container.
    """

    key: str
    label: str
    data_type: str


SCENT = RatingDimension("scent", "Scent", "scent")
LONGEVITY = RatingDimension("longevity", "Longevity", "durability")
SILLAGE = RatingDimension("sillage", "Sillage", "sillage")
BOTTLE = RatingDimension("bottle", "Bottle", "bottle")
PRICE_VALUE = RatingDimension(
    "price_value", r"(?:Value for money|Price[-\s]*Value|Pricing)", "pricing"
)

RATING_DIMENSIONS = [SCENT, LONGEVITY, SILLAGE, BOTTLE, PRICE_VALUE]


def validate_rating(value: float, count: Optional[int], allow_missing_count: bool = False) -> bool:
    """Validation gate applied to every rating candidate."""
    if not MIN_RATING_VALUE <= value <= MAX_RATING_VALUE:
        return False
    if count is None:
        return allow_missing_count
    return MIN_RATING_COUNT <= count <= MAX_RATING_COUNT


def _label_pattern(label: str) -> str:
    if label.startswith("(?:"):
        return label
    # "Price Value" also matches "Price-Value" and "PriceValue"
    return re.sub(r"[-\s]+", r"[-\\s]*", label)


def itemprop_strategy(doc: PageDocument, dimension: RatingDimension) -> Optional[RatingValue]:
    """schema.org aggregateRating markup; only carries the scent score."""
    if dimension.key != SCENT.key:
        return None
    value_node = doc.tree.css_first('[itemprop="ratingValue"]')
    if value_node is None:
        return None
    value = _parse_float(value_node.attributes.get("content") or value_node.text(strip=True))
    if value is None:
        return None

    count = None
    count_node = doc.tree.css_first('[itemprop="ratingCount"]')
    if count_node is not None:
        raw = count_node.attributes.get("content") or count_node.text(strip=True)
        match = COUNT_RE.search(raw) or re.search(r"([\d,]+)", raw)
        if match:
            count = _parse_int(match.group(1))
    return RatingValue(value=value, count=count)


def structured_attribute_strategy(doc: PageDocument, dimension: RatingDimension) -> Optional[RatingValue]:
    """``[data-type=...]`` container with a bold value span and a muted count span."""
    container = doc.tree.css_first(f'[data-type="{dimension.data_type}"]')
    if container is None:
        return None

    value_node = container.css_first("span.text-lg.bold") or container.css_first(".bold")
    if value_node is None:
        return None
    value = _parse_float(value_node.text(strip=True))
    if value is None:
        return None

    count_node = container.css_first("span.lightgrey.text-2xs") or container.css_first(".lightgrey")
    if count_node is None:
        return None
    match = COUNT_RE.search(count_node.text(strip=True))
    if not match:
        return None
    count = _parse_int(match.group(1))
    if count is None:
        return None
    return RatingValue(value=value, count=count)


def separated_text_strategy(doc: PageDocument, dimension: RatingDimension) -> Optional[RatingValue]:
    """``Longevity 6.0 - 2895 Ratings``: at least two non-digits between value and count."""
    pattern = re.compile(
        rf"{_label_pattern(dimension.label)}[^\d]+(\d{{1,2}}\.\d{{1,2}})[^\d]{{2,}}([\d,]+)\s*Ratings?",
        re.IGNORECASE,
    )
    match = pattern.search(doc.text)
    if not match:
        return None
    count = _parse_int(match.group(2))
    if count is None:
        return None
    return RatingValue(value=float(match.group(1)), count=count)


def split_concatenated_rating(integer_part: str, digits: str) -> Optional[tuple[float, int]]:
    """
    Split ``<int>.<digits>`` where the decimals and the vote count ran together.

    4 digits: one decimal and a 3-digit count. 5 digits: one decimal and a
    4-digit count if that count is at least 1000, otherwise two decimals and a
    3-digit count. 6 or more: two decimals, the rest is the count.
    Best effort; the structured strategies are authoritative.
    """
    n = len(digits)
    if n == 4:
        decimals, count = digits[:1], digits[1:]
    elif n == 5:
        if int(digits[1:]) >= 1000:
            decimals, count = digits[:1], digits[1:]
        else:
            decimals, count = digits[:2], digits[2:]
    elif n >= 6:
        decimals, count = digits[:2], digits[2:]
    else:
        return None
    return float(f"{integer_part}.{decimals}"), int(count)


def concatenated_text_strategy(doc: PageDocument, dimension: RatingDimension) -> Optional[RatingValue]:
    """``Longevity6.9406 Ratings``: value and count with no separator."""
    pattern = re.compile(
        rf"{_label_pattern(dimension.label)}[^\d]*(\d{{1,2}})\.(\d+?)\s*Ratings?",
        re.IGNORECASE,
    )
    match = pattern.search(doc.text)
    if not match:
        return None
    split = split_concatenated_rating(match.group(1), match.group(2))
    if split is None:
        return None
    value, count = split
    return RatingValue(value=value, count=count)


@dataclass(frozen=True)
class RatingStrategy:
    name: str
    run: Callable[[PageDocument, RatingDimension], Optional[RatingValue]]
    count_optional: bool = False


RATING_STRATEGIES: list[RatingStrategy] = [
    RatingStrategy("itemprop", itemprop_strategy, count_optional=True),
    RatingStrategy("structured", structured_attribute_strategy),
    RatingStrategy("separated", separated_text_strategy),
    RatingStrategy("concatenated", concatenated_text_strategy),
]


def extract_rating(
    doc: PageDocument,
    dimension: RatingDimension,
    strategies: Optional[list[RatingStrategy]] = None,
) -> Optional[RatingValue]:
    """Run the strategy chain for one dimension; None when every strategy fails."""
    for strategy in strategies if strategies is not None else RATING_STRATEGIES:
        candidate = strategy.run(doc, dimension)
        if candidate is None:
            continue
        if not validate_rating(candidate.value, candidate.count, strategy.count_optional):
            logger.warning(
                f"Rejected {dimension.key} rating from {strategy.name} strategy: "
                f"value={candidate.value}, count={candidate.count}"
            )
            continue
        logger.debug(
            f"Extracted {dimension.key} rating ({strategy.name}): "
            f"{candidate.value}, count={candidate.count}"
        )
        return candidate
    logger.debug(f"No strategy produced a {dimension.key} rating")
    return None


def extract_all_ratings(doc: PageDocument) -> dict[str, Optional[RatingValue]]:
    return {dimension.key: extract_rating(doc, dimension) for dimension in RATING_DIMENSIONS}


# ---------------------------------------------------------------------------
# Other fields
# ---------------------------------------------------------------------------


def extract_description(doc: PageDocument) -> Optional[str]:
    return doc.first_text(DESCRIPTION_SELECTOR)


def extract_concentration(doc: PageDocument) -> Optional[str]:
    return doc.first_text(CONCENTRATION_SELECTOR)


def extract_gender(doc: PageDocument) -> Optional[str]:
    description = extract_description(doc) or doc.first_text("p")
    if description:
        for pattern, gender in GENDER_TEXT_RULES:
            if pattern.search(description):
                return gender

    for pattern, gender in GENDER_RANK_RULES:
        if pattern.search(doc.text):
            return gender

    label = (doc.first_text(GENDER_SELECTOR) or "").lower()
    if label:
        if "unisex" in label or "shared" in label:
            return "unisex"
        if "women" in label or "femme" in label or "her" in label:
            return "female"
        if "men" in label or "homme" in label or "him" in label:
            return "male"
    return None


def extract_notes(doc: PageDocument) -> Optional[FragranceNotes]:
    notes = FragranceNotes()
    for node in doc.tree.css(".notes_list .clickable_note_img"):
        note = node.text(strip=True) or node.attributes.get("alt") or ""
        position = NOTE_POSITIONS.get(node.attributes.get("data-nt") or "")
        if note and position:
            getattr(notes, position).append(note)
    if not (notes.top or notes.heart or notes.base):
        return None
    return notes


def extract_accords(doc: PageDocument) -> list[str]:
    accords = []
    for node in doc.tree.css(ACCORD_SELECTOR):
        text = node.text(strip=True)
        # Percentage labels belong to the accord chart, not accord names
        if text and "%" not in text and text not in accords:
            accords.append(text)
    return accords


def extract_ranking(doc: PageDocument) -> tuple[Optional[int], Optional[str]]:
    match = RANKING_RE.search(doc.text)
    if not match:
        return None, None
    category = re.sub(r"\s+\d+$", "", match.group(2).strip())
    return int(match.group(1)), category or None


def extract_perfumer(doc: PageDocument) -> Optional[str]:
    match = PERFUMER_RE.search(doc.text)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return doc.first_text(PERFUMER_SELECTOR)


def extract_main_image(doc: PageDocument, base_url: str) -> Optional[str]:
    for node in doc.tree.css("img"):
        src = node.attributes.get("src") or node.attributes.get("data-src")
        if src and IMAGE_HOST_MARKER in src:
            return normalize_image_url(src, base_url)
    return None


def extract_similar_fragrances(doc: PageDocument, limit: int = 10) -> list[str]:
    similar = []
    for node in doc.tree.css(SIMILAR_SELECTOR):
        text = node.text(strip=True)
        if text:
            similar.append(text)
        if len(similar) >= limit:
            break
    return similar


def extract_community_stats(doc: PageDocument) -> dict[str, Optional[int]]:
    stats: dict[str, Optional[int]] = {}
    for key, pattern in (
        ("reviews_count", REVIEWS_RE),
        ("statements_count", STATEMENTS_RE),
        ("photos_count", PHOTOS_RE),
    ):
        match = pattern.search(doc.text)
        stats[key] = int(match.group(1)) if match else None
    return stats


def extract_release_year(doc: PageDocument, url: str, url_year: Optional[int]) -> Optional[int]:
    """
    Release year from the requested URL, else from the page's og:url.

    The canonical URL only counts when it names the same fragrance.
    """
    if url_year is not None:
        return url_year
    node = doc.tree.css_first('meta[property="og:url"]')
    canonical = node.attributes.get("content") if node is not None else None
    if not canonical or page_identity(canonical) != page_identity(url):
        return None
    canonical_parts = parse_perfume_url(canonical)
    return canonical_parts.year if canonical_parts else None


def extract_fragrance(html: str, url: str, base_url: str, max_similar: int = 10) -> Fragrance:
    """
    Build a Fragrance from a detail page.

    Brand and name come from the URL, the year from the URL or the page's
    canonical link; everything else from the markup.
    """
    parts = parse_perfume_url(url)
    if parts is None:
        raise ValueError(f"Not a perfume URL: {url}")

    doc = PageDocument(html)
    ratings = extract_all_ratings(doc)
    rank, rank_category = extract_ranking(doc)
    stats = extract_community_stats(doc)

    missing = [key for key, rating in ratings.items() if rating is None and key != SCENT.key]
    if missing:
        logger.warning(f"Missing ratings for {parts.brand} - {parts.name}: {', '.join(missing)}")
        for key in missing:
            metrics.record_missing_field(key)

    def value(key: str) -> Optional[float]:
        rating = ratings[key]
        return rating.value if rating else None

    def count(key: str) -> Optional[int]:
        rating = ratings[key]
        return rating.count if rating else None

    return Fragrance(
        brand=parts.brand,
        name=parts.name,
        year=extract_release_year(doc, url, parts.year),
        url=url,
        image_url=extract_main_image(doc, base_url),
        concentration=extract_concentration(doc),
        gender=extract_gender(doc),
        description=extract_description(doc),
        notes=extract_notes(doc),
        accords=extract_accords(doc),
        rating=value("scent"),
        total_ratings=count("scent"),
        longevity=value("longevity"),
        longevity_rating_count=count("longevity"),
        sillage=value("sillage"),
        sillage_rating_count=count("sillage"),
        bottle_rating=value("bottle"),
        bottle_rating_count=count("bottle"),
        price_value=value("price_value"),
        price_value_rating_count=count("price_value"),
        reviews_count=stats["reviews_count"],
        statements_count=stats["statements_count"],
        photos_count=stats["photos_count"],
        rank=rank,
        rank_category=rank_category,
        perfumer=extract_perfumer(doc),
        similar_fragrances=extract_similar_fragrances(doc, max_similar),
    )


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------


def _closest_container(node: Node) -> Optional[Node]:
    parent = node.parent
    while parent is not None:
        if parent.tag in ("div", "li", "article"):
            return parent
        parent = parent.parent
    return None


def _listing_entry(link: Node, base_url: str) -> Optional[SearchResult]:
    href = link.attributes.get("href")
    if not href:
        return None
    url = href if href.startswith("http") else absolute_url(href, base_url)
    if not is_valid_perfume_url(url):
        logger.debug(f"Skipping non-perfume link: {url}")
        return None
    parts = parse_perfume_url(url)
    if parts is None or not parts.brand or not parts.name:
        return None

    image_url = None
    rating = None
    container = _closest_container(link)
    if container is not None:
        image = container.css_first("img")
        if image is not None:
            image_url = normalize_image_url(
                image.attributes.get("src") or image.attributes.get("data-src"), base_url
            )
        rating_node = container.css_first(RESULT_RATING_SELECTOR)
        if rating_node is not None:
            rating = parse_rating_text(rating_node.text(strip=True))

    return SearchResult(
        brand=parts.brand,
        name=parts.name,
        year=parts.year,
        url=url,
        rating=rating,
        image_url=image_url,
    )


def extract_listing(
    html: str,
    base_url: str,
    selectors: Optional[list[str]] = None,
) -> list[SearchResult]:
    """
    Read result rows from a search or brand page.

    Selectors are tried in order and the first one yielding results wins.
    Duplicate URLs and non-perfume links are dropped.
    """
    tree = HTMLParser(html)
    for selector in selectors or SEARCH_RESULT_SELECTORS:
        links = tree.css(selector)
        if not links:
            continue
        logger.debug(f"Listing selector {selector!r} matched {len(links)} links")

        results: list[SearchResult] = []
        seen: set[str] = set()
        for link in links:
            entry = _listing_entry(link, base_url)
            if entry is None or entry.url in seen:
                continue
            seen.add(entry.url)
            results.append(entry)
        if results:
            return results

    logger.warning("No listing entries found with any selector")
    return []
