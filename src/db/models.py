"""SQLAlchemy database models."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.db.encryption import EncryptedString


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so every column stays naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class FragranceRecord(Base):
    """Cached fragrance detail page."""

    __tablename__ = "perfumes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    brand: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    url: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    concentration: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Notes and accords
    notes: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    accords: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    # Rating dimensions (0-10) with their vote counts; rating is the scent score
    rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    total_ratings: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    longevity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longevity_rating_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sillage: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    sillage_rating_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    bottle_rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    bottle_rating_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    price_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    price_value_rating_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Community statistics
    reviews_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    statements_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    photos_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Derived metadata
    rank: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rank_category: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    perfumer: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    similar_fragrances: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    scraped_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    cached_until: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("brand", "name", "year", name="uq_perfume_brand_name_year"),
        Index("ix_perfumes_brand_name", "brand", "name"),
        Index("ix_perfumes_cached_until", "cached_until"),
    )


class SearchCache(Base):
    """Cached search result list keyed by query string."""

    __tablename__ = "search_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    query: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    results: Mapped[list] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    cached_until: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


class ProxyCredential(Base):
    """Metered proxy sub-account."""

    __tablename__ = "proxy_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    identity: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    secret: Mapped[Optional[str]] = mapped_column(EncryptedString(512), nullable=True)
    service_type: Mapped[str] = mapped_column(String(32), default="residential", nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)
    quota_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    used_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class RequestLog(Base):
    """One outbound fetch attempt."""

    __tablename__ = "request_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    method: Mapped[str] = mapped_column(String(8), default="GET", nullable=False)
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    credential_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False, index=True
    )
