"""Tests for listing validation heuristics."""

import pytest

from listing_hub.core.errors import ValidationError
from listing_hub.ingestion.registry import PipelineConfig
from listing_hub.ingestion.validation import (
    ValidationPolicy,
    detect_redirect,
    raise_if_invalid,
    sanitize_text,
    validate_record_fields,
)


class TestValidateRecordFields:
    """Tests for validate_record_fields."""

    def test_valid_listing(self) -> None:
        result = validate_record_fields(
            "Morning Light Collection", "A quiet collection.", "fixture", "abc001"
        )
        assert result.is_valid
        assert result.reason is None

    def test_empty_title(self) -> None:
        result = validate_record_fields("   ", None, "fixture", "abc001")
        assert not result.is_valid
        assert result.field == "title"

    def test_missing_title(self) -> None:
        assert not validate_record_fields(None, None, "fixture", "abc001").is_valid

    def test_placeholder_title(self) -> None:
        result = validate_record_fields("FIXTURE-abc001", None, "fixture", "abc001")
        assert not result.is_valid
        assert "placeholder" in result.reason

    @pytest.mark.parametrize(
        "title",
        [
            "404 Not Found",
            "Page Not Found",
            "Page unavailable",
            "Top Page",
            "Age Verification",
            "年齢確認",
            "ページが見つかりません",
            "Error",
        ],
    )
    def test_invalid_page_titles(self, title: str) -> None:
        result = validate_record_fields(title, None, "fixture", "abc001")
        assert not result.is_valid
        assert result.field == "title"

    @pytest.mark.parametrize(
        "description",
        ["Welcome to our shop!", "You must be 18 or older to enter.", "18歳未満の方はご遠慮ください"],
    )
    def test_invalid_page_descriptions(self, description: str) -> None:
        result = validate_record_fields("Morning Light Collection", description, "fixture", "abc001")
        assert not result.is_valid
        assert result.field == "description"

    def test_title_too_short(self) -> None:
        result = validate_record_fields("Abc", None, "fixture", "abc001")
        assert not result.is_valid
        assert "too short" in result.reason

    def test_policy_from_config(self) -> None:
        policy = ValidationPolicy.from_config(PipelineConfig(min_title_length=20))
        result = validate_record_fields("Morning Light", None, "fixture", "abc001", policy)
        assert not result.is_valid

    def test_custom_patterns(self) -> None:
        policy = ValidationPolicy(invalid_title_patterns=[r"^coming soon"])
        assert not validate_record_fields("Coming Soon!", None, "s", "1", policy).is_valid
        assert validate_record_fields("Page Not Found", None, "s", "1", policy).is_valid


class TestRaiseIfInvalid:
    """Tests for raise_if_invalid."""

    def test_raises_with_field(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            raise_if_invalid("Page Not Found", None, "fixture", "abc001")
        assert exc_info.value.field == "title"
        assert exc_info.value.value == "Page Not Found"

    def test_valid_does_not_raise(self) -> None:
        raise_if_invalid("Morning Light Collection", None, "fixture", "abc001")


class TestSanitizeText:
    """Tests for sanitize_text."""

    def test_strips_tags_and_entities(self) -> None:
        assert sanitize_text("<b>Hello</b>&amp; world") == "Hello & world"

    def test_collapses_whitespace(self) -> None:
        assert sanitize_text("  Morning \n\t Light  ") == "Morning Light"

    def test_trims_edge_brackets(self) -> None:
        assert sanitize_text("【New Release】") == "New Release"
        assert sanitize_text("「Stray Open") == "Stray Open"
        assert sanitize_text("Stray Close』") == "Stray Close"

    def test_keeps_balanced_groups(self) -> None:
        assert sanitize_text("Morning Light Vol.1 (Remastered)") == "Morning Light Vol.1 (Remastered)"
        assert sanitize_text("[Limited] Box") == "[Limited] Box"
        assert sanitize_text("Box Set （Disc 2）") == "Box Set （Disc 2）"

    def test_keeps_group_when_outer_pair_removed(self) -> None:
        assert sanitize_text("(Vol.1 (Remastered))") == "Vol.1 (Remastered)"
        assert sanitize_text("(Side A) and (Side B)") == "(Side A) and (Side B)"

    def test_none(self) -> None:
        assert sanitize_text(None) is None


class TestDetectRedirect:
    """Tests for detect_redirect."""

    def test_same_url(self) -> None:
        url = "https://shop.example.com/items/abc001"
        assert not detect_redirect(url, url)

    def test_host_change(self) -> None:
        assert detect_redirect(
            "https://shop.example.com/items/abc001", "https://other.example.com/items/abc001"
        )

    @pytest.mark.parametrize(
        "final_path", ["/", "/index.html", "/top/", "/list/new", "/search?q=abc", "/age_check"]
    )
    def test_landing_pages(self, final_path: str) -> None:
        assert detect_redirect(
            "https://shop.example.com/items/abc001", f"https://shop.example.com{final_path}"
        )

    def test_canonical_item_path_is_not_redirect(self) -> None:
        assert not detect_redirect(
            "https://shop.example.com/items/abc001", "https://shop.example.com/items/abc001/"
        )
