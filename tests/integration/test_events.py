"""
Integration tests for orderview/events.py

Tests the read-model publish/subscribe bus.
"""
import asyncio
from typing import Any, Dict, List

import pytest

from orderview.events import Event, EventBus, EventMetadata, ReadModelEvent
from orderview.observability import correlation_context


class TestEventBus:
    """Tests for EventBus class."""

    def setup_method(self):
        """Create fresh event bus for each test."""
        self.bus = EventBus()

    @pytest.mark.asyncio
    async def test_emit_with_no_handlers(self):
        """Emitting event with no handlers succeeds silently."""
        event = await self.bus.emit(ReadModelEvent.ENTITY_MUTATED, {"table": "orders"})
        assert event.type == ReadModelEvent.ENTITY_MUTATED
        assert event.data["table"] == "orders"

    @pytest.mark.asyncio
    async def test_decorator_subscribes(self):
        received: List[Dict[str, Any]] = []

        @self.bus.on(ReadModelEvent.PROJECTION_REFRESHED)
        async def handler(data: dict):
            received.append(data)

        await self.bus.emit(ReadModelEvent.PROJECTION_REFRESHED, {"projection": "order_edit_view"})
        await self.bus.emit(ReadModelEvent.REFRESH_FAILED, {"projection": "order_edit_view"})

        assert received == [{"projection": "order_edit_view"}]

    @pytest.mark.asyncio
    async def test_wildcard_receives_everything(self):
        received: List[Dict[str, Any]] = []

        async def handler(data: dict):
            received.append(data)

        self.bus.subscribe(None, handler)
        await self.bus.emit(ReadModelEvent.REFRESH_STARTED, {"n": 1})
        await self.bus.emit(ReadModelEvent.FALLBACK_SERVED, {"n": 2})

        assert [d["n"] for d in received] == [1, 2]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        calls = []

        async def handler(data: dict):
            calls.append(data)

        self.bus.subscribe(ReadModelEvent.ENTITY_MUTATED, handler)
        assert self.bus.unsubscribe(ReadModelEvent.ENTITY_MUTATED, handler) is True
        assert self.bus.unsubscribe(ReadModelEvent.ENTITY_MUTATED, handler) is False

        await self.bus.emit(ReadModelEvent.ENTITY_MUTATED, {})
        assert calls == []

    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self):
        """One handler raising does not stop the others or the emitter."""
        received = []

        async def broken(data: dict):
            raise RuntimeError("handler bug")

        async def healthy(data: dict):
            received.append(data)

        self.bus.subscribe(ReadModelEvent.CACHE_INVALIDATED, broken)
        self.bus.subscribe(ReadModelEvent.CACHE_INVALIDATED, healthy)

        event = await self.bus.emit(ReadModelEvent.CACHE_INVALIDATED, {"count": 3})

        assert received == [{"count": 3}]
        assert event.data == {"count": 3}

    @pytest.mark.asyncio
    async def test_handlers_run_concurrently(self):
        started = []

        async def slow(data: dict):
            started.append("slow")
            await asyncio.sleep(0.05)

        async def fast(data: dict):
            started.append("fast")

        self.bus.subscribe(ReadModelEvent.REFRESH_STARTED, slow)
        self.bus.subscribe(ReadModelEvent.REFRESH_STARTED, fast)
        await self.bus.emit(ReadModelEvent.REFRESH_STARTED)

        assert sorted(started) == ["fast", "slow"]


class TestEventHistory:
    """Tests for the bounded event history."""

    @pytest.mark.asyncio
    async def test_filter_by_type(self):
        bus = EventBus()
        await bus.emit(ReadModelEvent.REFRESH_STARTED, {"projection": "a"})
        await bus.emit(ReadModelEvent.PROJECTION_REFRESHED, {"projection": "a"})

        history = bus.get_history(ReadModelEvent.PROJECTION_REFRESHED)
        assert len(history) == 1
        assert history[0]["event_type"] == "projection.refreshed"

    @pytest.mark.asyncio
    async def test_bounded(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            await bus.emit(ReadModelEvent.ENTITY_MUTATED, {"record_id": i})

        history = bus.get_history(limit=10)
        assert [h["data"]["record_id"] for h in history] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_clear(self):
        bus = EventBus()
        await bus.emit(ReadModelEvent.ENTITY_MUTATED)
        bus.clear_history()
        assert bus.get_history() == []


class TestEvent:
    """Tests for Event serialization."""

    def test_metadata_carries_correlation_id(self):
        with correlation_context("req-42"):
            metadata = EventMetadata()
        assert metadata.correlation_id == "req-42"
        assert metadata.source == "orderview"

    def test_to_dict(self):
        event = Event(type=ReadModelEvent.FALLBACK_SERVED, data={"reason": "stale"})
        d = event.to_dict()

        assert d["event_type"] == "read.fallback_served"
        assert d["data"] == {"reason": "stale"}
        assert set(d["metadata"]) == {"event_id", "timestamp", "correlation_id", "source"}
