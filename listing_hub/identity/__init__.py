"""
Identity Resolution
===================

Detects placeholder performer identities and merges them into the true
identities known from the reference index or from other sources.
"""

from listing_hub.identity.codes import extract_business_codes
from listing_hub.identity.merger import (
    IdentityMerger,
    MergeReport,
    MergeResult,
    PlaceholderCandidate,
    Resolution,
)
from listing_hub.identity.placeholder import PlaceholderPolicy
from listing_hub.identity.reference import ReferenceIndex, ReferenceMatch

__all__ = [
    # Codes
    "extract_business_codes",
    # Placeholder detection
    "PlaceholderPolicy",
    # Reference index
    "ReferenceIndex",
    "ReferenceMatch",
    # Merger
    "IdentityMerger",
    "MergeReport",
    "MergeResult",
    "PlaceholderCandidate",
    "Resolution",
]
