"""
Validation Module
=================

Generic heuristics that reject listings which are not real products:
empty or placeholder titles, not-found / redirect / age-gate pages and
titles that are too short to be meaningful. Also text sanitizing and
redirect detection shared by adapters.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from urllib.parse import urlparse

from listing_hub.core.errors import ValidationError
from listing_hub.ingestion.registry import (
    DEFAULT_INVALID_DESCRIPTION_PATTERNS,
    DEFAULT_INVALID_TITLE_PATTERNS,
    PipelineConfig,
)

_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_BRACKET_PAIRS = {"[": "]", "【": "】", "「": "」", "『": "』", "(": ")", "（": "）"}
_CLOSING = {close: open_ for open_, close in _BRACKET_PAIRS.items()}

# Paths a storefront lands on when the requested item is gone
_REDIRECT_PATH_RE = re.compile(
    r"^/?(?:$|index(?:\.html?)?$|top/?$|list/?|search/?|age[-_]?check|confirm)",
    re.IGNORECASE,
)


@dataclass
class ValidationResult:
    """Outcome of validating a listing."""

    is_valid: bool
    reason: str | None = None
    field: str | None = None


@dataclass
class ValidationPolicy:
    """Configurable rejection rules."""

    min_title_length: int = 5
    invalid_title_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_INVALID_TITLE_PATTERNS)
    )
    invalid_description_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_INVALID_DESCRIPTION_PATTERNS)
    )

    def __post_init__(self) -> None:
        self._title_res = [re.compile(p, re.IGNORECASE) for p in self.invalid_title_patterns]
        self._description_res = [
            re.compile(p, re.IGNORECASE) for p in self.invalid_description_patterns
        ]

    @classmethod
    def from_config(cls, config: PipelineConfig) -> ValidationPolicy:
        return cls(
            min_title_length=config.min_title_length,
            invalid_title_patterns=list(config.invalid_title_patterns),
            invalid_description_patterns=list(config.invalid_description_patterns),
        )

    def title_matches(self, title: str) -> str | None:
        for pattern in self._title_res:
            if pattern.search(title):
                return pattern.pattern
        return None

    def description_matches(self, description: str) -> str | None:
        for pattern in self._description_res:
            if pattern.search(description):
                return pattern.pattern
        return None


def validate_record_fields(
    title: str | None,
    description: str | None,
    source: str,
    external_id: str,
    policy: ValidationPolicy | None = None,
) -> ValidationResult:
    """
    Check a listing's title and description against rejection rules.

    Args:
        title: Listing title
        description: Listing description
        source: Source name
        external_id: Source-scoped item key
        policy: Rejection rules (defaults if omitted)

    Returns:
        ValidationResult with the first failing reason
    """
    policy = policy or ValidationPolicy()
    title = (title or "").strip()

    if not title:
        return ValidationResult(False, "Title is empty", "title")

    placeholder = re.compile(rf"^{re.escape(source)}-{re.escape(external_id)}$", re.IGNORECASE)
    if placeholder.match(title):
        return ValidationResult(False, f"Title is a placeholder: {title}", "title")

    pattern = policy.title_matches(title)
    if pattern:
        return ValidationResult(False, f"Title matches invalid page pattern {pattern!r}", "title")

    if description:
        pattern = policy.description_matches(description.strip())
        if pattern:
            return ValidationResult(
                False, f"Description matches invalid page pattern {pattern!r}", "description"
            )

    if len(title) < policy.min_title_length:
        return ValidationResult(
            False, f"Title is too short ({len(title)} < {policy.min_title_length})", "title"
        )

    return ValidationResult(True)


def raise_if_invalid(
    title: str | None,
    description: str | None,
    source: str,
    external_id: str,
    policy: ValidationPolicy | None = None,
) -> None:
    """Like validate_record_fields, but raise ValidationError on rejection."""
    result = validate_record_fields(title, description, source, external_id, policy)
    if not result.is_valid:
        value = title if result.field == "title" else description
        raise ValidationError(result.reason or "invalid record", field=result.field, value=value)


def _bracket_partners(text: str) -> dict[int, int | None]:
    """Map each bracket index to the index of its matching bracket, or None."""
    partners: dict[int, int | None] = {}
    stack: list[int] = []
    for i, ch in enumerate(text):
        if ch in _BRACKET_PAIRS:
            stack.append(i)
            partners[i] = None
        elif ch in _CLOSING:
            partners[i] = None
            if stack and text[stack[-1]] == _CLOSING[ch]:
                j = stack.pop()
                partners[i] = j
                partners[j] = i
    return partners


def _trim_edge_brackets(text: str) -> str:
    # Only stray brackets and a pair wrapping the whole text are removed
    while text:
        partners = _bracket_partners(text)
        last = len(text) - 1
        if 0 in partners and partners[0] == last:
            text = text[1:-1].strip()
        elif 0 in partners and partners[0] is None:
            text = text[1:].strip()
        elif last in partners and partners[last] is None:
            text = text[:-1].strip()
        else:
            break
    return text


def sanitize_text(text: str | None) -> str | None:
    """
    Clean scraped text.

    Strips HTML tags, unescapes entities, collapses whitespace and trims
    unbalanced edge brackets. Balanced groups such as "Vol.1 (Remastered)"
    are kept; a pair wrapping the whole text is removed.
    """
    if text is None:
        return None
    cleaned = html.unescape(_TAG_RE.sub(" ", text))
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    return _trim_edge_brackets(cleaned)


def detect_redirect(original_url: str, final_url: str) -> bool:
    """
    Check whether a fetch was redirected away from the product page.

    Args:
        original_url: URL that was requested
        final_url: URL after following redirects

    Returns:
        True if the host changed or the final path is a top, list,
        search or age-check page
    """
    original = urlparse(original_url)
    final = urlparse(final_url)

    if original.netloc and final.netloc and original.netloc.lower() != final.netloc.lower():
        return True
    if original.path == final.path:
        return False
    return bool(_REDIRECT_PATH_RE.match(final.path))
