"""
Shared test configuration for QuarryCrawl.

Crawls run against tests.helpers.FakeTransport, an in-memory site graph,
so no test touches the network.
"""

import asyncio
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from quarrycrawl.config import Config, CrawlerConfig, CrawlOptions
from tests.helpers import FakeTransport

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


# ============================================================================
# Core Test Fixtures
# ============================================================================


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """Cancel any task a test left behind so crawls never leak workers."""
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def crawler_config() -> CrawlerConfig:
    """Transport settings with a short idle poll for fast tests."""
    return CrawlerConfig(idle_poll_interval=0.01)


@pytest.fixture
def test_config(crawler_config) -> Config:
    return Config(crawler=crawler_config)


@pytest.fixture
def options() -> CrawlOptions:
    return CrawlOptions(max_depth=3, max_pages=50, concurrency=1, retry_budget=0, timeout=5.0)
