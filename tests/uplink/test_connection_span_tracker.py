"""
Tests for the ConnectionSpanTracker.
"""

import time

import pytest

from elements.elements.base import BaseElement
from elements.elements.components.uplink import ConnectionSpanTracker
from elements.elements.components.space.loom_types import Event
from storage import FileStorage


def _remote_event(event_id, timestamp=None):
    return Event(id=event_id, branch_id="primary", parent_ids=(), timestamp=timestamp or time.time(),
                 event_type="object_updated", payload={}, object_id="note")


def _make_tracker(storage=None, proxy_id="uplink_test"):
    owner = BaseElement(element_id=proxy_id, name="Uplink Owner")
    return owner.add_component(ConnectionSpanTracker, remote_space_id="remote_space", storage=storage)


@pytest.fixture
def tracker():
    """
    Fixture that provides an in-memory ConnectionSpanTracker.
    """
    return _make_tracker()


class TestSpanLifecycle:
    """Test suite for attach, observe and detach."""

    def test_attach_opens_span_at_remote_head(self, tracker):
        # Execute
        span = tracker.attach("event_h")

        # Verify
        assert tracker.is_attached is True
        assert span.start_event_id == "event_h"
        assert span.is_active is True
        assert span.end_event_id is None
        assert tracker.current_remote_head == "event_h"

    def test_attach_while_attached_is_idempotent(self, tracker):
        first = tracker.attach("event_h")
        second = tracker.attach("event_other")

        assert first is second
        assert len(tracker.spans()) == 1

    def test_detach_closes_at_last_observed_event(self, tracker):
        # Setup
        span = tracker.attach("event_h")
        tracker.observe_remote_event(_remote_event("event_1"))
        tracker.observe_remote_event(_remote_event("event_2"))

        # Execute
        closed = tracker.detach()

        # Verify
        assert closed is span
        assert closed.end_event_id == "event_2"
        assert closed.is_active is False
        assert closed.end_time >= closed.start_time
        assert tracker.is_attached is False

    def test_detach_without_events(self, tracker):
        tracker.attach("event_h")

        span = tracker.detach()

        assert span.end_event_id == "event_h"
        assert tracker.detach() is None

    def test_observe_while_detached_is_ignored(self, tracker):
        tracker.observe_remote_event(_remote_event("event_1"))

        assert tracker.current_remote_head is None
        assert tracker.spans() == []

    def test_span_end_bound(self, tracker):
        span = tracker.attach("event_h")
        tracker.observe_remote_event(_remote_event("event_1"))
        assert tracker.span_end_bound(span) == "event_1"

        tracker.detach()
        tracker.attach("event_1")
        tracker.observe_remote_event(_remote_event("event_2"))

        assert tracker.span_end_bound(span) == "event_1"

    def test_spans_do_not_overlap(self, tracker):
        """A new span never starts before the previous one ended."""
        first = tracker.attach("event_a")
        tracker.detach()
        first.end_time = time.time() + 60.0

        second = tracker.attach("event_b")

        assert second.start_time >= first.end_time
        assert [s.id for s in tracker.spans()] == [first.id, second.id]

    def test_connection_state(self, tracker):
        span = tracker.attach("event_h")

        state = tracker.get_connection_state()

        assert state["attached"] is True
        assert state["active_span_id"] == span.id
        assert state["span_count"] == 1


class TestSpanPersistence:
    """Test suite for storing spans (and only spans)."""

    @pytest.mark.asyncio
    async def test_closed_spans_survive_restart(self, tmp_path):
        # Setup
        storage = FileStorage({"base_dir": str(tmp_path)})
        tracker = _make_tracker(storage)
        span = tracker.attach("event_h")
        tracker.observe_remote_event(_remote_event("event_1"))
        tracker.detach()
        await tracker.wait_persisted()
        assert await tracker.persist() is True

        # Execute
        restored = _make_tracker(FileStorage({"base_dir": str(tmp_path)}))
        assert await restored.load() is True

        # Verify
        spans = restored.spans()
        assert len(spans) == 1
        assert spans[0].id == span.id
        assert spans[0].start_event_id == "event_h"
        assert spans[0].end_event_id == "event_1"
        assert spans[0].interrupted is False
        assert restored.is_attached is False

    @pytest.mark.asyncio
    async def test_active_span_is_closed_as_interrupted(self, tmp_path):
        storage = FileStorage({"base_dir": str(tmp_path)})
        tracker = _make_tracker(storage)
        tracker.attach("event_h")
        tracker.observe_remote_event(_remote_event("event_1"))
        await tracker.wait_persisted()
        await tracker.persist()

        restored = _make_tracker(FileStorage({"base_dir": str(tmp_path)}))
        await restored.load()

        span = restored.spans()[0]
        assert span.is_active is False
        assert span.interrupted is True
        assert span.end_event_id == "event_h"
        assert restored.span_end_bound(span) == "event_h"

    @pytest.mark.asyncio
    async def test_remote_events_are_not_stored(self, tmp_path):
        storage = FileStorage({"base_dir": str(tmp_path)})
        tracker = _make_tracker(storage)
        tracker.attach("event_h")
        for i in range(5):
            tracker.observe_remote_event(_remote_event(f"event_{i}"))
        tracker.detach()
        await tracker.wait_persisted()

        stored = await storage.load_system_state(tracker.state_key)

        assert [s["id"] for s in stored["spans"]] == [tracker.spans()[0].id]
        assert "event_2" not in str(stored)

    @pytest.mark.asyncio
    async def test_load_without_storage(self, tracker):
        assert await tracker.load() is False

    @pytest.mark.asyncio
    async def test_failed_span_write_is_logged(self, tmp_path, mocker, caplog):
        # Setup
        storage = FileStorage({"base_dir": str(tmp_path)})
        mocker.patch.object(storage, "store_system_state", new=mocker.AsyncMock(side_effect=OSError("disk full")))
        tracker = _make_tracker(storage)

        # Execute
        with caplog.at_level("ERROR"):
            tracker.attach("event_h")
            await tracker.wait_persisted()

        # Verify
        assert "disk full" in caplog.text
        assert tracker.is_attached is True

    @pytest.mark.asyncio
    async def test_wait_persisted_stores_the_latest_spans(self, tmp_path):
        storage = FileStorage({"base_dir": str(tmp_path)})
        tracker = _make_tracker(storage)
        tracker.attach("event_h")
        tracker.detach()
        assert len(tracker._background) == 2

        await tracker.wait_persisted()

        assert len(tracker._background) == 0

        stored = await storage.load_system_state(tracker.state_key)
        assert stored["spans"][0]["is_active"] is False
