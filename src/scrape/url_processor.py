"""Catalog URL parsing and fragrance name normalization."""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote, unquote, urlparse

PERFUME_PATH_RE = re.compile(r"^/Perfumes/[^/]+/[^/]+")
TRAILING_YEAR_RE = re.compile(r"^(.*?)\s*\b(\d{4})$")
YEAR_SUFFIX_RE = re.compile(r"_\d{4}$")

CONCENTRATION_SUFFIX_RE = re.compile(
    r"\s+(?:Extrait de Parfum|Eau de Parfum|Eau de Toilette|Eau de Cologne|"
    r"Extrait|Parfum|Cologne|EDP|EDT)$",
    re.IGNORECASE,
)

MIN_YEAR = 1800


@dataclass(frozen=True)
class PerfumeUrlParts:
    brand: str
    name: str
    year: Optional[int]


def max_year() -> int:
    return datetime.now(timezone.utc).year + 1


def is_valid_perfume_url(url: str) -> bool:
    """True for ``/Perfumes/<brand>/<name>`` paths, absolute or relative."""
    if not url:
        return False
    path = urlparse(url).path if url.startswith("http") else url
    return bool(PERFUME_PATH_RE.match(path))


def absolute_url(href: str, base_url: str) -> str:
    """Resolve protocol-relative and root-relative links against the site base."""
    if href.startswith("//"):
        return f"https:{href}"
    if href.startswith("/"):
        return f"{base_url.rstrip('/')}{href}"
    return href


def split_trailing_year(name: str) -> tuple[str, Optional[int]]:
    """
    Split a trailing four-digit year off a name.

    Years outside 1800..next year are left in the name, as is a year that
    would leave the name empty.
    """
    match = TRAILING_YEAR_RE.match(name.strip())
    if match and match.group(1).strip():
        year = int(match.group(2))
        if MIN_YEAR <= year <= max_year():
            return match.group(1).strip(), year
    return name.strip(), None


def clean_name(name: str) -> str:
    """
    Strip concentration suffixes and title-case each word.

    Idempotent: cleaning a cleaned name returns it unchanged.
    """
    cleaned = " ".join(name.split())
    while True:
        stripped = CONCENTRATION_SUFFIX_RE.sub("", cleaned).strip()
        if stripped == cleaned or not stripped:
            break
        cleaned = stripped
    return " ".join(word[:1].upper() + word[1:].lower() for word in cleaned.split(" ") if word)


def normalize_name(raw: str) -> tuple[str, Optional[int]]:
    """
    Turn a URL name segment into a display name and optional release year.

    ``Aventus_Eau_de_Parfum_2010`` becomes ``("Aventus", 2010)``.

    Year and suffix stripping repeat until the name stops changing, so the
    returned name normalizes to itself. The first year found is returned.
    """
    name = " ".join(unquote(raw).replace("_", " ").split())
    first_year = None
    while True:
        stripped, year = split_trailing_year(name)
        stripped = clean_name(stripped)
        if first_year is None:
            first_year = year
        if stripped == name:
            return name, first_year
        name = stripped


def parse_perfume_url(url: str) -> Optional[PerfumeUrlParts]:
    """Brand, name and year encoded in a perfume URL, or None for other URLs."""
    if not is_valid_perfume_url(url):
        return None
    path = urlparse(url).path if url.startswith("http") else url
    segments = path.split("/")
    # ['', 'Perfumes', brand, name, ...]
    brand = " ".join(unquote(segments[2]).replace("_", " ").split())
    name, year = normalize_name(segments[3])
    return PerfumeUrlParts(brand=brand, name=name, year=year)


def page_identity(url: str) -> Optional[tuple[str, str]]:
    """
    Lowercased (brand, name) identity used to compare a requested URL with
    the page's canonical URL. Year suffixes are ignored.
    """
    if not is_valid_perfume_url(url):
        return None
    path = urlparse(url).path if url.startswith("http") else url
    segments = path.split("/")
    brand = unquote(segments[2]).replace("_", " ").strip().lower()
    name = YEAR_SUFFIX_RE.sub("", unquote(segments[3])).replace("_", " ").strip().lower()
    return brand, name


def build_perfume_url(brand: str, name: str, base_url: str) -> str:
    """Catalog URL for a brand/name pair (spaces become underscores)."""
    brand_slug = quote("_".join(brand.split()), safe="")
    name_slug = quote("_".join(name.split()), safe="")
    return f"{base_url.rstrip('/')}/Perfumes/{brand_slug}/{name_slug}"


def build_search_url(query: str, base_url: str) -> str:
    return f"{base_url.rstrip('/')}/s_perfumes_x.php?in=1&order=&filter={quote(query, safe='')}"


def build_brand_url(brand: str, page: int, base_url: str) -> str:
    brand_slug = quote("_".join(brand.split()), safe="")
    return f"{base_url.rstrip('/')}/Perfumes/{brand_slug}?page={page}"
