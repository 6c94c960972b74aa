"""
Configuration management for QuarryCrawl using Pydantic.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, FrozenSet, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from quarrycrawl.protocols import CrawlStrategy

# --- Setup Logging ---
log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "QuarryCrawl/1.0 (+https://github.com/shua-ie/QuarryCrawl)"

DEFAULT_EXCLUDED_EXTENSIONS: FrozenSet[str] = frozenset(
    {
        ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".svg",
        ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
        ".zip", ".rar", ".tar", ".gz", ".7z",
        ".mp3", ".mp4", ".avi", ".mov", ".wmv", ".flv",
        ".css", ".js", ".woff", ".woff2", ".ttf", ".eot",
    }
)  # fmt: skip

# Worker pool size used when a strategy is picked without explicit options
STRATEGY_CONCURRENCY: Dict[CrawlStrategy, int] = {
    CrawlStrategy.BREADTH_FIRST: 5,
    CrawlStrategy.DEPTH_FIRST: 3,
    CrawlStrategy.INTELLIGENT: 3,
    CrawlStrategy.SITEMAP: 8,
}

# --- Crawl Options ---


class CrawlOptions(BaseModel):
    """Per-crawl options. Immutable once a crawl starts."""

    model_config = ConfigDict(frozen=True)

    max_depth: int = Field(default=3, ge=0, description="Deepest link level followed from a seed.")
    max_pages: int = Field(default=100, ge=1, description="Maximum number of results emitted.")
    concurrency: int = Field(default=3, ge=1, le=256, description="Number of parallel workers.")
    delay_between_fetches: float = Field(default=0.0, ge=0.0, description="Seconds a worker waits between fetches.")
    retry_budget: int = Field(default=3, ge=0, description="Retries after the first attempt.")
    timeout: float = Field(default=30.0, gt=0.0, description="Per-request timeout in seconds.")
    include_patterns: Tuple[str, ...] = Field(default=(), description="Regexes; a URL must match one if set.")
    exclude_patterns: Tuple[str, ...] = Field(default=(), description="Regexes; a URL matching any is rejected.")
    excluded_extensions: FrozenSet[str] = Field(default=DEFAULT_EXCLUDED_EXTENSIONS)
    user_agent: str = Field(default=DEFAULT_USER_AGENT, min_length=1)
    respect_robots: bool = Field(default=True, description="Whether to honour robots.txt.")
    follow_external_links: bool = Field(default=False, description="Follow links off the seed domains.")
    allowed_domains: Tuple[str, ...] = Field(default=(), description="Extra hosts treated as in-scope.")
    include_images: bool = Field(default=False, description="Collect <img src> references.")
    page_priorities: Dict[str, int] = Field(
        default_factory=dict, description="Path prefix to importance score for priority crawling."
    )
    result_buffer_size: int = Field(default=64, ge=1, description="Capacity of the bounded result channel.")
    always_render: Tuple[str, ...] = Field(
        default=(), description="Regexes for URLs sent straight to the renderer, when one is configured."
    )

    @field_validator("include_patterns", "exclude_patterns", "always_render")
    @classmethod
    def validate_patterns(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid URL pattern {pattern!r}: {e}") from e
        return v

    @field_validator("excluded_extensions", mode="before")
    @classmethod
    def normalize_extensions(cls, v: Any) -> FrozenSet[str]:
        if isinstance(v, str):
            v = [v]
        normalized = set()
        for ext in v:
            ext = str(ext).strip().lower()
            if not ext:
                continue
            normalized.add(ext if ext.startswith(".") else f".{ext}")
        return frozenset(normalized)

    @field_validator("allowed_domains")
    @classmethod
    def lowercase_domains(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(domain.strip().lower() for domain in v if domain.strip())

    @classmethod
    def for_strategy(cls, strategy: CrawlStrategy, **overrides: Any) -> CrawlOptions:
        """Build options using the default worker count for ``strategy``."""
        overrides.setdefault("concurrency", STRATEGY_CONCURRENCY[strategy])
        return cls(**overrides)


# --- Nested Configuration Models ---


class CrawlerConfig(BaseModel):
    """Transport and protocol settings shared by every crawl of an engine instance."""

    max_connections: int = Field(default=100, ge=1, description="Connection pool size.")
    max_connections_per_host: int = Field(default=10, ge=0, description="Per-host connection limit, 0 for none.")
    dns_cache_ttl: int = Field(default=30, description="Seconds DNS lookups are cached.")
    follow_redirects: bool = Field(default=True)
    robots_timeout: float = Field(default=10.0, gt=0.0, description="Timeout for robots.txt requests.")
    robots_cache_ttl: int = Field(default=12 * 60 * 60, description="Seconds a robots.txt stays cached.")
    robots_max_bytes: int = Field(default=1_000_000, description="Larger robots.txt files are ignored.")
    sitemap_max_depth: int = Field(default=5, ge=0, description="Nesting limit for sitemap indexes.")
    idle_poll_interval: float = Field(
        default=0.05, gt=0.0, description="Seconds an idle worker sleeps while others are busy."
    )


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: int | None = Field(
        default=None,
        description="Port for Prometheus metrics exporter. None to disable.",
    )

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "QuarryCrawl"
    version: str = "0.1.0"
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    crawl: CrawlOptions = Field(default_factory=CrawlOptions)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="QUARRY_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for path in (current_dir / "config.yaml", current_dir / "config.yml"):
        if path.exists():
            return path
    return None


def load_config(path: Path | None = None) -> Config:
    """Load config from ``path``, a discovered config file, or defaults."""
    config_path = path or find_config_file()
    if config_path is None:
        log.info("No config file found. Using default settings.")
        return Config()
    log.info("Loading configuration from: %s", config_path)
    return Config.from_yaml(config_path)
