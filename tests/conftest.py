"""
Pytest configuration for mailflow tests.

Test tiers:
- fast (default): pure unit tests, all I/O mocked
- medium: tests driving real asyncio scheduling (worker pool, sync runs)
- slow: tests that talk to Gmail, OpenAI or a real database

Run tiers:
- pytest                          # All tiers
- pytest -m fast                  # Unit tests only
- pytest -m "not slow"            # Everything that needs no credentials

Unmarked tests are auto-assigned to 'fast'. Tests marked
@pytest.mark.integration without a tier default to 'medium'.

API key safety: unless slow tests are selected, a fake OPENAI_API_KEY is
forced so a missing mock can never reach the real API.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


# =============================================================================
# Tier Auto-Assignment
# =============================================================================

def pytest_collection_modifyitems(config, items):
    """Assign the 'fast' tier to unmarked tests, 'medium' to bare integration tests."""
    for item in items:
        has_tier = (
            list(item.iter_markers(name='fast')) or
            list(item.iter_markers(name='medium')) or
            list(item.iter_markers(name='slow'))
        )
        if has_tier:
            continue

        if list(item.iter_markers(name='skip')):
            continue

        if list(item.iter_markers(name='integration')):
            item.add_marker(pytest.mark.medium)
            continue

        item.add_marker(pytest.mark.fast)


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Force fake credentials unless slow tests are selected."""
    markexpr = getattr(config.option, 'markexpr', '') or ''

    includes_slow_tests = (
        not markexpr or
        (
            'slow' in markexpr and
            'not slow' not in markexpr
        )
    )

    if includes_slow_tests:
        os.environ.setdefault("OPENAI_API_KEY", "sk-test-fake-key-for-testing")
    else:
        os.environ["OPENAI_API_KEY"] = "sk-test-fake-key-for-testing"
    os.environ.setdefault("GMAIL_ACCESS_TOKEN", "ya29.test-fake-token")


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def project_root():
    """Return project root path (session-scoped for efficiency)."""
    return PROJECT_ROOT


class FakeClock:
    """Deterministic clock: advances only when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    from mailflow.db.queue_storage import MemoryQueueStore
    return MemoryQueueStore()


@pytest.fixture
def sync_queue(memory_store, clock):
    """SyncQueue for user-1 over an in-memory store and a fake clock."""
    from mailflow.sync_queue import SyncQueue
    return SyncQueue(memory_store, "user-1", clock=clock)
