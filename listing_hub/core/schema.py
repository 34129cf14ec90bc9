"""Pydantic v2 models for records crossing the parser boundary.

A parser turns an opaque source payload into a NormalizedRecord. The
ingestion core only ever sees these validated models:
- SaleWindow, SaleInfo (discount observations)
- NormalizedRecord (one product listing from one source)
- ReferenceEntry (one row of third-party cross-reference data)
"""

from datetime import date, datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from listing_hub.core.enums import ListingType


def make_normalized_id(source: str, external_id: str) -> str:
    """Derive the globally unique product key for a source item."""
    return f"{source}-{external_id}"


# ============================================================================
# Sale Models
# ============================================================================


class SaleWindow(BaseModel):
    """Validity window of a discount."""

    start_at: datetime | None = None
    end_at: datetime | None = None

    @model_validator(mode="after")
    def end_after_start(self) -> "SaleWindow":
        if self.start_at and self.end_at and self.end_at < self.start_at:
            raise ValueError("end_at must not be before start_at")
        return self


class SaleInfo(BaseModel):
    """A discount observed on a listing."""

    regular_price: float
    sale_price: float
    discount_percent: int | None = None
    sale_name: str | None = None
    sale_type: str | None = None
    window: SaleWindow | None = None

    @field_validator("regular_price", "sale_price")
    @classmethod
    def price_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("price cannot be negative")
        return v


# ============================================================================
# Normalized Listing
# ============================================================================


class NormalizedRecord(BaseModel):
    """
    Typed result of parsing one source payload.

    Every attribute a source might supply is an explicit optional field;
    the pipeline never inspects untyped payloads.
    """

    external_id: str
    title: str
    normalized_id: str | None = None
    description: str | None = None
    release_date: date | None = None
    duration_minutes: int | None = None
    thumbnail_url: str | None = None
    package_image_url: str | None = None
    sample_images: list[str] = Field(default_factory=list)
    sample_videos: list[str] = Field(default_factory=list)
    affiliate_url: str | None = None
    price: float | None = None
    currency: str = "JPY"
    listing_type: ListingType = ListingType.DOWNLOAD
    business_code: str | None = None
    performers: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    tag_category: str | None = None
    sale: SaleInfo | None = None

    @field_validator("external_id")
    @classmethod
    def external_id_not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("external_id cannot be empty")
        return v

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        return v.strip()

    @field_validator("duration_minutes")
    @classmethod
    def positive_duration(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            return None
        return v

    @field_validator("performers", "tags", "sample_images", "sample_videos")
    @classmethod
    def drop_blank_entries(cls, v: list[str]) -> list[str]:
        return [item.strip() for item in v if item and item.strip()]

    def resolve_normalized_id(self, source: str) -> str:
        """Return the explicit normalized id or derive one from the source key."""
        return self.normalized_id or make_normalized_id(source, self.external_id)


# ============================================================================
# Reference Data
# ============================================================================


class ReferenceEntry(BaseModel):
    """One business-code to identity mapping from an independent source."""

    business_code: str
    identity_name: str
    source: str
    source_url: str | None = None
    confidence: float = 1.0

    @field_validator("business_code", "identity_name", "source")
    @classmethod
    def not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("value cannot be empty")
        return v

    @field_validator("confidence")
    @classmethod
    def valid_confidence(cls, v: float) -> float:
        if v < 0 or v > 1:
            raise ValueError("confidence must be between 0 and 1")
        return v
