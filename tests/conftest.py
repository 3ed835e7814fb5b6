"""Test fixtures for migration-control-plane.

Provides:
- store: A fresh InMemoryControlPlaneStore (all storage ports)
- mock_notifier: An AsyncMock INotifier that captures notify() calls
- no_sleep: An AsyncMock standing in for asyncio.sleep in retry loops
- policy_store: RoutingPolicyStore over the in-memory store
- settings: Settings with the background health loop disabled
- control_plane: A wired ControlPlaneFacade over the fixtures above
- window_start: A fixed, minute-aligned UTC timestamp for health samples
- clock: A MagicMock clock set inside window_start's bucket (move it via return_value)
- reset_structlog: Restores structlog defaults after tests that call configure_logging
"""

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog

from migration_control_plane.adapters.memory_store import InMemoryControlPlaneStore
from migration_control_plane.facade import ControlPlaneFacade
from migration_control_plane.routing.policy_store import RoutingPolicyStore
from migration_control_plane.settings import Settings


@pytest.fixture()
def store() -> InMemoryControlPlaneStore:
    """Create an empty in-memory store.

    Returns:
        InMemoryControlPlaneStore implementing every storage port.
    """
    return InMemoryControlPlaneStore()


@pytest.fixture()
def mock_notifier() -> AsyncMock:
    """Create a mock notifier that captures alerts.

    Returns:
        AsyncMock whose notify() returns None.
    """
    notifier = AsyncMock()
    notifier.notify.return_value = None
    return notifier


@pytest.fixture()
def no_sleep() -> AsyncMock:
    """Create an awaitable sleep replacement that returns immediately.

    Returns:
        AsyncMock recording the requested delays.
    """
    return AsyncMock(return_value=None)


@pytest.fixture()
def policy_store(store: InMemoryControlPlaneStore) -> RoutingPolicyStore:
    """Create a RoutingPolicyStore backed by the in-memory store."""
    return RoutingPolicyStore(store)


@pytest.fixture()
def settings() -> Settings:
    """Create settings suitable for hermetic tests.

    Returns:
        Settings with no background loop, no seed and no webhook.
    """
    return Settings(
        evaluation_interval_seconds=0,
        policy_seed_path="",
        alert_webhook_url="",
        compensation_backoff_seconds=0.5,
        rollback_backoff_seconds=0.5,
    )


@pytest.fixture()
def control_plane(
    store: InMemoryControlPlaneStore,
    mock_notifier: AsyncMock,
    settings: Settings,
    no_sleep: AsyncMock,
    clock: MagicMock,
) -> ControlPlaneFacade:
    """Create a fully wired facade over the in-memory store."""
    return ControlPlaneFacade(store, mock_notifier, settings, sleep=no_sleep, clock=clock)


@pytest.fixture()
def window_start() -> datetime:
    """Return a fixed minute-aligned timestamp for health samples."""
    return datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def clock(window_start: datetime) -> MagicMock:
    """Create a clock reading 30 seconds into the window_start bucket.

    Returns:
        MagicMock returning an aware datetime; assign return_value to move time.
    """
    return MagicMock(return_value=window_start + timedelta(seconds=30))


@pytest.fixture()
def reset_structlog() -> Generator[None, None, None]:
    """Restore structlog's default configuration after the test."""
    yield
    structlog.reset_defaults()
