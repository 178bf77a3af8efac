"""Tests for StatusManager."""

from unittest.mock import AsyncMock

import pytest

from bridge.errors import TransientError
from bridge.services.status_manager import BASIC_STATUSES, StatusManager


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def whmcs():
    client = AsyncMock()
    client.get_statuses.return_value = ["Open", "Answered", "In Progress", "Closed"]
    return client


class TestClassification:
    def test_closed_is_case_insensitive(self, whmcs):
        manager = StatusManager(whmcs, closed_statuses=["Closed"])
        assert manager.is_closed_like("closed")
        assert manager.is_closed_like("Closed")
        assert not manager.is_open_like("CLOSED")

    def test_custom_statuses_are_open(self, whmcs):
        manager = StatusManager(whmcs)
        assert manager.is_open_like("In Progress")
        assert not manager.is_closed_like("In Progress")

    def test_empty_status_is_neither(self, whmcs):
        manager = StatusManager(whmcs)
        assert not manager.is_open_like("")
        assert not manager.is_closed_like(None)

    def test_configurable_closed_set(self, whmcs):
        manager = StatusManager(whmcs, closed_statuses=["Closed", "Cancelled"])
        assert manager.is_closed_like("cancelled")

    def test_status_emoji(self):
        assert StatusManager.status_emoji("Open") == "🟢"
        assert StatusManager.status_emoji("Unknown") == "❓"


class TestCatalog:
    async def test_catalog_is_cached(self, whmcs):
        manager = StatusManager(whmcs, ttl=600)
        await manager.get_all_statuses()
        await manager.get_all_statuses()
        assert whmcs.get_statuses.await_count == 1

    async def test_cache_expires(self, whmcs):
        clock = Clock()
        manager = StatusManager(whmcs, ttl=600, clock=clock)
        await manager.get_all_statuses()
        clock.now = 601
        await manager.get_all_statuses()
        assert whmcs.get_statuses.await_count == 2

    async def test_clear_cache_forces_reload(self, whmcs):
        manager = StatusManager(whmcs)
        await manager.get_all_statuses()
        manager.clear_cache()
        await manager.get_all_statuses()
        assert whmcs.get_statuses.await_count == 2

    async def test_fallback_when_unreachable(self, whmcs):
        whmcs.get_statuses.side_effect = TransientError("timeout")
        manager = StatusManager(whmcs)
        assert await manager.get_all_statuses() == BASIC_STATUSES

    async def test_stale_cache_preferred_over_fallback(self, whmcs):
        clock = Clock()
        manager = StatusManager(whmcs, ttl=10, clock=clock)
        await manager.get_all_statuses()
        clock.now = 100
        whmcs.get_statuses.side_effect = TransientError("timeout")
        assert "In Progress" in await manager.get_all_statuses()

    async def test_active_status_names_excludes_closed(self, whmcs):
        manager = StatusManager(whmcs)
        assert await manager.active_status_names() == ["Open", "Answered", "In Progress"]
