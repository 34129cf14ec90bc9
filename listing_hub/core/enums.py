"""Enums for listing and ingestion fields."""

from enum import Enum


class ListingType(str, Enum):
    """How a marketplace offers a product."""

    DOWNLOAD = "download"
    STREAMING = "streaming"
    RENTAL = "rental"
    SUBSCRIPTION = "subscription"
    PHYSICAL = "physical"
    OTHER = "other"


class ImageType(str, Enum):
    """Kind of product image."""

    PACKAGE = "package"
    THUMBNAIL = "thumbnail"
    SAMPLE = "sample"


class VideoType(str, Enum):
    """Kind of product video."""

    SAMPLE = "sample"
    TRAILER = "trailer"


class RunStatus(str, Enum):
    """Final status of an ingestion run."""

    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class ItemOutcome(str, Enum):
    """What happened to a single item during a run."""

    NEW = "new"
    UPDATED = "updated"
    SKIPPED_UNCHANGED = "skipped_unchanged"
    SKIPPED_INVALID = "skipped_invalid"
    NOT_FOUND = "not_found"
    FAILED = "failed"


class SaleOutcome(str, Enum):
    """Result of recording a sale observation."""

    REJECTED = "rejected"
    NO_LISTING = "no_listing"
    REFRESHED = "refreshed"
    CREATED = "created"


class PlaceholderVerdict(str, Enum):
    """Classification of a dimension name by the placeholder policy."""

    NONE = "none"
    PLACEHOLDER = "placeholder"
    BORDERLINE = "borderline"
