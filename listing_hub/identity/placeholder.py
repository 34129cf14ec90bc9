"""
Placeholder Detection Module
============================

Some sources publish anonymized descriptive text in place of a real
performer name ("Rin 22歳 OL"). PlaceholderPolicy recognizes these
names structurally: free text, a numeric qualifier and a category word.

Detection is a policy, not truth. Names that only partly fit (qualifier
outside the plausible range, an excluded token, a number without a
category word) are classified as borderline and left for manual review.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from listing_hub.core.enums import PlaceholderVerdict
from listing_hub.ingestion.linker import normalize_name
from listing_hub.ingestion.registry import DEFAULT_PLACEHOLDER_PATTERN, IdentityConfig

# Free text followed by a standalone two-digit number and more text
LOOSE_PATTERN = re.compile(r"^\S.*?\s(?P<qualifier>\d{2})\s+\S+")


@dataclass
class PlaceholderPolicy:
    """Configurable placeholder classifier."""

    pattern: str = DEFAULT_PLACEHOLDER_PATTERN
    min_qualifier: int = 18
    max_qualifier: int = 69
    excluded_tokens: list[str] = field(default_factory=lambda: ["千歳", "万歳"])

    def __post_init__(self) -> None:
        self._regex = re.compile(self.pattern, re.IGNORECASE)

    @classmethod
    def from_config(cls, config: IdentityConfig) -> PlaceholderPolicy:
        """Create a policy from the identity section of sources.yaml."""
        return cls(
            pattern=config.placeholder_pattern,
            min_qualifier=config.min_qualifier,
            max_qualifier=config.max_qualifier,
            excluded_tokens=list(config.excluded_tokens),
        )

    def classify(self, name: str) -> PlaceholderVerdict:
        """
        Classify a performer name.

        Args:
            name: Canonical performer name

        Returns:
            PLACEHOLDER for a confident match, BORDERLINE for a partial
            match, NONE otherwise
        """
        name = normalize_name(name)
        if not name:
            return PlaceholderVerdict.NONE

        match = self._regex.match(name)
        if match is None:
            if LOOSE_PATTERN.match(name):
                return PlaceholderVerdict.BORDERLINE
            return PlaceholderVerdict.NONE

        if any(token in name for token in self.excluded_tokens):
            return PlaceholderVerdict.BORDERLINE

        qualifier = match.groupdict().get("qualifier")
        if qualifier is not None:
            value = int(qualifier)
            if value < self.min_qualifier or value > self.max_qualifier:
                return PlaceholderVerdict.BORDERLINE

        return PlaceholderVerdict.PLACEHOLDER

    def is_placeholder(self, name: str) -> bool:
        return self.classify(name) == PlaceholderVerdict.PLACEHOLDER
