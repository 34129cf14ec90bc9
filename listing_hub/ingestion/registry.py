"""
Source Registry Module
======================

Manages source configurations loaded from YAML files. Sources define
which marketplaces can be ingested, which adapter reads them, and how
politely they must be paced.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Title and description signatures of not-found, redirect and gate pages
DEFAULT_INVALID_TITLE_PATTERNS = [
    r"^404\b",
    r"not\s*found",
    r"page\s+(?:not\s+found|unavailable)",
    r"^(?:top|home)\s*(?:page)?$",
    r"age\s*(?:verification|check)",
    r"年齢(?:確認|認証)",
    r"ページが見つかりません",
    r"^\s*(?:error|エラー)\s*$",
]
DEFAULT_INVALID_DESCRIPTION_PATTERNS = [
    r"^welcome to\b",
    r"you must be (?:18|21) or older",
    r"18歳未満",
]
DEFAULT_PLACEHOLDER_PATTERN = (
    r"^(?P<text>\S.*?)\s*(?P<qualifier>\d{1,3})\s*"
    r"(?P<category>歳|才|yo|y/o|years?\s*old)\s*(?P<rest>\S.*)?$"
)


@dataclass
class RateLimitConfig:
    """Request pacing configuration for one target."""

    base_delay: float = 1.0
    jitter_min: float = 0.0
    jitter_max: float = 0.5
    max_backoff: float = 60.0
    backoff_multiplier: float = 2.0
    throttle_multiplier: float = 3.0
    max_concurrency: int = 1

    @classmethod
    def from_dict(
        cls, data: dict[str, Any] | None, base: RateLimitConfig | None = None
    ) -> RateLimitConfig:
        """Create from dictionary, filling missing values from base or defaults."""
        base = base or cls()
        if data is None:
            return cls(**vars(base))
        return cls(
            base_delay=float(data.get("base_delay", base.base_delay)),
            jitter_min=float(data.get("jitter_min", base.jitter_min)),
            jitter_max=float(data.get("jitter_max", base.jitter_max)),
            max_backoff=float(data.get("max_backoff", base.max_backoff)),
            backoff_multiplier=float(data.get("backoff_multiplier", base.backoff_multiplier)),
            throttle_multiplier=float(data.get("throttle_multiplier", base.throttle_multiplier)),
            max_concurrency=int(data.get("max_concurrency", base.max_concurrency)),
        )


@dataclass
class SourceConfig:
    """Configuration for a single ingestion source."""

    name: str
    adapter: str
    enabled: bool = True
    description: str = ""
    base_url: str = ""
    rate_limit: RateLimitConfig | None = None
    max_pages: int | None = None
    custom_config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], default_rate_limit: RateLimitConfig | None = None
    ) -> SourceConfig:
        """
        Create from dictionary.

        A source without its own rate_limit block keeps rate_limit=None so
        the static per-target profile applies.
        """
        rate_limit_data = data.get("rate_limit")
        rate_limit = None
        if rate_limit_data:
            rate_limit = RateLimitConfig.from_dict(rate_limit_data, default_rate_limit)

        max_pages = data.get("max_pages")
        return cls(
            name=data["name"],
            adapter=data["adapter"],
            enabled=data.get("enabled", True),
            description=data.get("description", ""),
            base_url=data.get("base_url", ""),
            rate_limit=rate_limit,
            max_pages=int(max_pages) if max_pages is not None else None,
            custom_config=data.get("custom_config", {}),
        )


@dataclass
class PipelineConfig:
    """Per-item processing policy shared by all sources."""

    circuit_breaker_threshold: int = 20
    min_title_length: int = 5
    default_limit: int = 100
    fetch_retries: int = 3
    invalid_title_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_INVALID_TITLE_PATTERNS)
    )
    invalid_description_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_INVALID_DESCRIPTION_PATTERNS)
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PipelineConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        return cls(
            circuit_breaker_threshold=int(data.get("circuit_breaker_threshold", 20)),
            min_title_length=int(data.get("min_title_length", 5)),
            default_limit=int(data.get("default_limit", 100)),
            fetch_retries=int(data.get("fetch_retries", 3)),
            invalid_title_patterns=data.get(
                "invalid_title_patterns", list(DEFAULT_INVALID_TITLE_PATTERNS)
            ),
            invalid_description_patterns=data.get(
                "invalid_description_patterns", list(DEFAULT_INVALID_DESCRIPTION_PATTERNS)
            ),
        )


@dataclass
class IdentityConfig:
    """Placeholder detection policy for the identity merger."""

    placeholder_pattern: str = DEFAULT_PLACEHOLDER_PATTERN
    min_qualifier: int = 18
    max_qualifier: int = 69
    excluded_tokens: list[str] = field(default_factory=lambda: ["千歳", "万歳"])
    probe_limit: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> IdentityConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        qualifier = data.get("qualifier_range", {})
        return cls(
            placeholder_pattern=data.get("placeholder_pattern", DEFAULT_PLACEHOLDER_PATTERN),
            min_qualifier=int(qualifier.get("min", 18)),
            max_qualifier=int(qualifier.get("max", 69)),
            excluded_tokens=data.get("excluded_tokens", ["千歳", "万歳"]),
            probe_limit=int(data.get("probe_limit", 1)),
        )


@dataclass
class GlobalConfig:
    """Global configuration settings."""

    default_rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    user_agent: str = "ListingHub/0.1"
    blob_storage_path: str = "~/.listing_hub/blobs"
    request_timeout: int = 30
    max_retries: int = 3

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GlobalConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        return cls(
            default_rate_limit=RateLimitConfig.from_dict(data.get("default_rate_limit")),
            user_agent=data.get("user_agent", "ListingHub/0.1"),
            blob_storage_path=data.get("blob_storage_path", "~/.listing_hub/blobs"),
            request_timeout=int(data.get("request_timeout", 30)),
            max_retries=int(data.get("max_retries", 3)),
        )


class SourceRegistry:
    """
    Registry for managing ingestion source configurations.

    Loads source definitions from a YAML file and provides methods
    to query and manage them.
    """

    def __init__(self) -> None:
        self._sources: dict[str, SourceConfig] = {}
        self._global_config: GlobalConfig = GlobalConfig()
        self._pipeline: PipelineConfig = PipelineConfig()
        self._identity: IdentityConfig = IdentityConfig()
        self._config_path: Path | None = None

    @property
    def global_config(self) -> GlobalConfig:
        """Get global configuration."""
        return self._global_config

    @property
    def pipeline(self) -> PipelineConfig:
        """Get pipeline configuration."""
        return self._pipeline

    @property
    def identity(self) -> IdentityConfig:
        """Get identity merge configuration."""
        return self._identity

    @property
    def config_path(self) -> Path | None:
        """Path of the loaded YAML file, if any."""
        return self._config_path

    def load_config(self, config_path: Path | str) -> None:
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the sources.yaml file
        """
        config_path = Path(config_path).expanduser().resolve()
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        self._config_path = config_path
        self._global_config = GlobalConfig.from_dict(data.get("global"))
        self._pipeline = PipelineConfig.from_dict(data.get("pipeline"))
        self._identity = IdentityConfig.from_dict(data.get("identity"))

        # Load sources
        self._sources.clear()
        for source_data in data.get("sources", []):
            source = SourceConfig.from_dict(source_data, self._global_config.default_rate_limit)
            self._sources[source.name] = source

    def get_source(self, name: str) -> SourceConfig | None:
        """
        Get a source configuration by name.

        Args:
            name: Source name

        Returns:
            SourceConfig if found, None otherwise
        """
        return self._sources.get(name)

    def list_sources(self) -> list[SourceConfig]:
        """Get all registered sources."""
        return list(self._sources.values())

    def list_enabled_sources(self) -> list[SourceConfig]:
        """Get all enabled sources."""
        return [s for s in self._sources.values() if s.enabled]

    def enable_source(self, name: str) -> bool:
        """
        Enable a source.

        Args:
            name: Source name

        Returns:
            True if source was found and enabled, False otherwise
        """
        source = self._sources.get(name)
        if source is None:
            return False
        source.enabled = True
        return True

    def disable_source(self, name: str) -> bool:
        """
        Disable a source.

        Args:
            name: Source name

        Returns:
            True if source was found and disabled, False otherwise
        """
        source = self._sources.get(name)
        if source is None:
            return False
        source.enabled = False
        return True


# Global registry instance
_default_registry: SourceRegistry | None = None


def get_default_registry() -> SourceRegistry:
    """
    Get the default source registry instance.

    Loads configuration from the path specified in SOURCES_CONFIG_PATH
    environment variable, or falls back to config/sources.yaml.

    Returns:
        The global SourceRegistry instance
    """
    global _default_registry

    if _default_registry is None:
        _default_registry = SourceRegistry()

        config_path = os.environ.get("SOURCES_CONFIG_PATH")
        if config_path:
            path = Path(config_path)
        else:
            # Default to config/sources.yaml relative to project root
            project_root = Path(__file__).parent.parent.parent
            path = project_root / "config" / "sources.yaml"

        if path.exists():
            _default_registry.load_config(path)

    return _default_registry


def reset_default_registry() -> None:
    """Reset the default registry (useful for testing)."""
    global _default_registry
    _default_registry = None
