"""Typed records produced by the extractor."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.db.models import utcnow

Gender = Literal["male", "female", "unisex"]


class FragranceNotes(BaseModel):
    top: list[str] = Field(default_factory=list)
    heart: list[str] = Field(default_factory=list)
    base: list[str] = Field(default_factory=list)


class RatingValue(BaseModel):
    """One rating dimension: score on a 0-10 scale and how many votes it has."""

    value: float
    count: Optional[int] = None


class SearchResult(BaseModel):
    """A catalog entry listed on a search or brand page."""

    model_config = ConfigDict(from_attributes=True)

    brand: str
    name: str
    url: str
    year: Optional[int] = None
    rating: Optional[float] = None
    image_url: Optional[str] = None


class Fragrance(BaseModel):
    """Everything extracted from one fragrance detail page."""

    model_config = ConfigDict(from_attributes=True)

    brand: str
    name: str
    url: str
    year: Optional[int] = None
    image_url: Optional[str] = None
    concentration: Optional[str] = None
    gender: Optional[Gender] = None
    description: Optional[str] = None
    notes: Optional[FragranceNotes] = None
    accords: list[str] = Field(default_factory=list)

    rating: Optional[float] = None
    total_ratings: Optional[int] = None
    longevity: Optional[float] = None
    longevity_rating_count: Optional[int] = None
    sillage: Optional[float] = None
    sillage_rating_count: Optional[int] = None
    bottle_rating: Optional[float] = None
    bottle_rating_count: Optional[int] = None
    price_value: Optional[float] = None
    price_value_rating_count: Optional[int] = None

    reviews_count: Optional[int] = None
    statements_count: Optional[int] = None
    photos_count: Optional[int] = None

    rank: Optional[int] = None
    rank_category: Optional[str] = None
    perfumer: Optional[str] = None
    similar_fragrances: list[str] = Field(default_factory=list)

    scraped_at: datetime = Field(default_factory=utcnow)
