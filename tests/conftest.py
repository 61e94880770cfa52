"""
Shared pytest fixtures for the ShardShift tests.

Provides an in-memory catalog, the scripted replication service, settings
tuned for fast runs, and a recording progress sink.
"""

from __future__ import annotations

import pytest
import structlog
from structlog.testing import LogCapture

from shardshift.config.settings import Settings
from shardshift.persistence.memory import InMemoryResourceCatalog
from tests.fixtures import ScriptedReplicationService


@pytest.fixture(autouse=True)
def quiet_structlog():
    """Keep structlog output out of the test logs."""
    structlog.configure(processors=[LogCapture()])
    yield
    structlog.reset_defaults()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        MAX_CONCURRENT_OPERATIONS=2,
        MIN_POLL_INTERVAL=0.0,
        MAX_POLL_INTERVAL=0.0,
        RECLASSIFY_INTERVAL=0.0,
        MAX_CLASSIFICATION_CYCLES=2,
        OPERATION_TIMEOUT=None,
        ORIGIN_REGION="eastus",
        RECOVERY_REGION="westus",
    )


@pytest.fixture
def catalog() -> InMemoryResourceCatalog:
    return InMemoryResourceCatalog()


@pytest.fixture
def replication() -> ScriptedReplicationService:
    return ScriptedReplicationService()


class RecordingSink:
    """Progress sink that keeps every report."""

    def __init__(self) -> None:
        self.reports: list[tuple[str, int, int, int]] = []

    def __call__(self, label, percentage, completed, total) -> None:
        self.reports.append((label, percentage, completed, total))

    @property
    def percentages(self) -> list[int]:
        return [report[1] for report in self.reports]


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def no_sleep():
    calls = []
    return calls.append
