"""Tests for rating strategies and field extraction from catalog pages."""

import pytest

from src.scrape.extractor import (
    LONGEVITY,
    PRICE_VALUE,
    SCENT,
    SILLAGE,
    PageDocument,
    RatingStrategy,
    concatenated_text_strategy,
    extract_fragrance,
    extract_listing,
    extract_rating,
    separated_text_strategy,
    split_concatenated_rating,
    validate_rating,
)
from src.scrape.models import RatingValue

BASE_URL = "https://www.parfumo.com"

DETAIL_PAGE = """
<html>
<head><meta property="og:url" content="https://www.parfumo.com/Perfumes/Creed/Aventus_2010"></head>
<body>
<img src="https://media.parfumo.com/perfumes/aa/aventus.jpg">
<span class="concentration">Eau de Parfum</span>
<div class="description">A fruity chypre for men with pineapple and birch.</div>
<div itemprop="aggregateRating"><span itemprop="ratingValue">8.3</span><span itemprop="ratingCount">12,345</span></div>
<div data-type="durability"><span class="text-lg bold">7.9</span><span class="lightgrey text-2xs">4,321 Ratings</span></div>
<div data-type="sillage"><span class="text-lg bold">7.5</span><span class="lightgrey text-2xs">4,100 Ratings</span></div>
<p>Bottle 8.8 - 3000 Ratings</p>
<div class="notes_list">
<span class="clickable_note_img" data-nt="t">Pineapple</span>
<span class="clickable_note_img" data-nt="m">Birch</span>
<span class="clickable_note_img" data-nt="b">Musk</span>
</div>
<div class="accord">Fruity</div>
<div class="accord">Woody</div>
<div class="accord">35%</div>
<p>Ranked #12 in Men's Perfume.</p>
<p>Perfumer: Olivier Creed, Erwin Creed</p>
<p>42 in-depth fragrance descriptions.</p>
<p>310 short views on the fragrance.</p>
<p>95 fragrance photos.</p>
<div class="similar-list"><a href="/Perfumes/Creed/Viking">Viking</a><a href="/Perfumes/Creed/Silver_Mountain_Water">Silver Mountain Water</a></div>
</body>
</html>
"""


class TestValidationGate:
    def test_bounds(self):
        assert validate_rating(0.0, 1)
        assert validate_rating(10.0, 1_000_000)
        assert not validate_rating(10.1, 5)
        assert not validate_rating(-0.1, 5)
        assert not validate_rating(7.0, 0)
        assert not validate_rating(7.0, 1_000_001)

    def test_missing_count(self):
        assert not validate_rating(7.0, None)
        assert validate_rating(7.0, None, allow_missing_count=True)


class TestRatingStrategies:
    def test_concatenated_longevity(self):
        """Decimals and vote count running together split into value and count."""
        doc = PageDocument("<body><div>Longevity 6.9406 Ratings</div></body>")
        assert separated_text_strategy(doc, LONGEVITY) is None
        assert extract_rating(doc, LONGEVITY) == RatingValue(value=6.9, count=406)

    def test_concatenated_without_space(self):
        doc = PageDocument("<body><span>Sillage</span><span>7.12895 Ratings</span></body>")
        assert concatenated_text_strategy(doc, SILLAGE) == RatingValue(value=7.1, count=2895)

    @pytest.mark.parametrize(
        "integer_part, digits, expected",
        [
            ("6", "9406", (6.9, 406)),
            ("7", "21234", (7.2, 1234)),
            ("7", "50812", (7.5, 812)),
            ("8", "451200", (8.45, 1200)),
            ("8", "45", None),
        ],
    )
    def test_split_concatenated_rating(self, integer_part, digits, expected):
        assert split_concatenated_rating(integer_part, digits) == expected

    def test_structured_attribute(self):
        doc = PageDocument(
            '<body><div data-type="pricing"><span class="text-lg bold">6.4</span>'
            '<span class="lightgrey text-2xs">1,024 Ratings</span></div></body>'
        )
        assert extract_rating(doc, PRICE_VALUE) == RatingValue(value=6.4, count=1024)

    def test_separated_text_with_label_variant(self):
        doc = PageDocument("<body><p>Price-Value 5.5 - 210 Ratings</p></body>")
        assert extract_rating(doc, PRICE_VALUE) == RatingValue(value=5.5, count=210)

    def test_invalid_candidate_falls_through(self):
        """A candidate failing the gate does not stop the chain."""
        doc = PageDocument(
            '<body><div data-type="durability"><span class="text-lg bold">6.0</span>'
            '<span class="lightgrey text-2xs">0 Ratings</span></div>'
            "<p>Longevity 6.0 - 2895 Ratings</p></body>"
        )
        assert extract_rating(doc, LONGEVITY) == RatingValue(value=6.0, count=2895)

    def test_first_valid_strategy_wins(self):
        doc = PageDocument("<body></body>")
        calls = []

        def make(name, result):
            def run(document, dimension):
                calls.append(name)
                return result

            return RatingStrategy(name, run)

        strategies = [
            make("empty", None),
            make("implausible", RatingValue(value=42.0, count=10)),
            make("good", RatingValue(value=7.7, count=10)),
            make("never", RatingValue(value=1.0, count=1)),
        ]
        assert extract_rating(doc, SCENT, strategies) == RatingValue(value=7.7, count=10)
        assert calls == ["empty", "implausible", "good"]

    def test_no_rating_is_absent(self):
        assert extract_rating(PageDocument("<body><p>No votes yet</p></body>"), SILLAGE) is None

    def test_itemprop_scent_without_count(self):
        doc = PageDocument('<body><span itemprop="ratingValue" content="8.1">8.1</span></body>')
        assert extract_rating(doc, SCENT) == RatingValue(value=8.1, count=None)


class TestExtractFragrance:
    def setup_method(self):
        self.fragrance = extract_fragrance(
            DETAIL_PAGE, "https://www.parfumo.com/Perfumes/Creed/Aventus_2010", BASE_URL
        )

    def test_identity_from_url(self):
        assert self.fragrance.brand == "Creed"
        assert self.fragrance.name == "Aventus"
        assert self.fragrance.year == 2010

    def test_year_from_canonical_link(self):
        fragrance = extract_fragrance(DETAIL_PAGE, "/Perfumes/Creed/Aventus", BASE_URL)
        assert (fragrance.name, fragrance.year) == ("Aventus", 2010)
        assert fragrance.url == "/Perfumes/Creed/Aventus"

    def test_canonical_link_for_another_fragrance_is_ignored(self):
        fragrance = extract_fragrance(DETAIL_PAGE, "/Perfumes/Creed/Viking", BASE_URL)
        assert fragrance.year is None

    def test_ratings(self):
        f = self.fragrance
        assert (f.rating, f.total_ratings) == (8.3, 12345)
        assert (f.longevity, f.longevity_rating_count) == (7.9, 4321)
        assert (f.sillage, f.sillage_rating_count) == (7.5, 4100)
        assert (f.bottle_rating, f.bottle_rating_count) == (8.8, 3000)
        assert f.price_value is None
        assert f.price_value_rating_count is None

    def test_text_fields(self):
        f = self.fragrance
        assert f.concentration == "Eau de Parfum"
        assert f.gender == "male"
        assert f.description.startswith("A fruity chypre")
        assert f.notes.top == ["Pineapple"]
        assert f.notes.heart == ["Birch"]
        assert f.notes.base == ["Musk"]
        assert f.accords == ["Fruity", "Woody"]

    def test_metadata(self):
        f = self.fragrance
        assert f.rank == 12
        assert f.rank_category == "Men's Perfume"
        assert f.perfumer == "Olivier Creed"
        assert f.image_url == "https://media.parfumo.com/perfumes/aa/aventus.jpg"
        assert f.similar_fragrances == ["Viking", "Silver Mountain Water"]
        assert (f.reviews_count, f.statements_count, f.photos_count) == (42, 310, 95)

    def test_sparse_page_degrades_to_absent_fields(self):
        fragrance = extract_fragrance(
            "<html><body><p>Nothing here</p></body></html>",
            "/Perfumes/Dior/Sauvage",
            BASE_URL,
        )
        assert fragrance.brand == "Dior"
        assert fragrance.rating is None
        assert fragrance.notes is None
        assert fragrance.accords == []
        assert fragrance.gender is None

    def test_non_perfume_url_rejected(self):
        with pytest.raises(ValueError):
            extract_fragrance(DETAIL_PAGE, "https://www.parfumo.com/Brands/Creed", BASE_URL)


class TestExtractListing:
    LISTING = """
    <html><body><ul>
    <li><img src="//media.parfumo.com/perfumes/1.jpg"><span class="name"><a href="/Perfumes/Creed/Aventus_2010">Aventus</a></span><span class="rating">8.3</span></li>
    <li><span class="name"><a href="/Perfumes/Creed/Aventus_2010">Aventus</a></span></li>
    <li><span class="name"><a href="/Brands/Creed">Creed</a></span></li>
    <li><span class="name"><a href="https://www.parfumo.com/Perfumes/Creed/Viking">Viking</a></span></li>
    </ul></body></html>
    """

    def test_rows_are_parsed_and_deduplicated(self):
        results = extract_listing(self.LISTING, BASE_URL)

        assert [r.url for r in results] == [
            "https://www.parfumo.com/Perfumes/Creed/Aventus_2010",
            "https://www.parfumo.com/Perfumes/Creed/Viking",
        ]
        first = results[0]
        assert (first.brand, first.name, first.year) == ("Creed", "Aventus", 2010)
        assert first.rating == 8.3
        assert first.image_url == "https://media.parfumo.com/perfumes/1.jpg"
        assert results[1].rating is None

    def test_no_matches(self):
        assert extract_listing("<html><body><p>No results</p></body></html>", BASE_URL) == []

    def test_custom_selectors(self):
        html = '<div class="brand-row"><a class="p" href="/Perfumes/Dior/Sauvage">Sauvage</a></div>'
        results = extract_listing(html, BASE_URL, ["a.p"])
        assert [r.name for r in results] == ["Sauvage"]
