"""Configuration models and loaders."""

from .config import (
    DEFAULT_EXCLUDED_EXTENSIONS,
    DEFAULT_USER_AGENT,
    Config,
    CrawlerConfig,
    CrawlOptions,
    MonitoringConfig,
    find_config_file,
    load_config,
)

__all__ = [
    "Config",
    "CrawlerConfig",
    "CrawlOptions",
    "MonitoringConfig",
    "DEFAULT_EXCLUDED_EXTENSIONS",
    "DEFAULT_USER_AGENT",
    "find_config_file",
    "load_config",
]
