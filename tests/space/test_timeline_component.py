"""
Tests for the TimelineComponent event log.
"""

import threading

import pytest
from unittest.mock import MagicMock

from elements.elements.components.space.errors import DecoherenceError, DecoherenceCode, EventNotFoundError
from elements.elements.components.space.loom_types import NewEvent, EVENT_TIMELINE_MERGE


class TestAppend:
    """Test suite for optimistic appends."""

    def test_first_event_is_branch_root(self, timeline):
        """The first event of an empty root branch has no parents."""
        # Execute
        event = timeline.append("primary", NewEvent(payload={"text": "hello"}, object_id="note"),
                                expected_parent_id=None)

        # Verify
        assert event.parent_ids == ()
        assert event.branch_id == "primary"
        assert timeline.head("primary") == event.id
        assert timeline.depth(event.id) == 0

    def test_append_advances_head_and_depth(self, timeline, append_event):
        """Each append extends the head by exactly one event."""
        first = append_event()
        second = append_event()
        third = append_event()

        assert second.parent_ids == (first.id,)
        assert third.parent_ids == (second.id,)
        assert timeline.head("primary") == third.id
        assert timeline.depth(third.id) == 2
        assert timeline.event_count() == 3

    def test_stale_parent_is_rejected(self, timeline, append_event):
        """Naming an outdated head fails with STALE_PARENT and changes nothing."""
        # Setup
        first = append_event()
        second = append_event()

        # Execute
        with pytest.raises(DecoherenceError) as exc_info:
            timeline.append("primary", NewEvent(payload={}), expected_parent_id=first.id)

        # Verify
        assert exc_info.value.code == DecoherenceCode.STALE_PARENT
        assert exc_info.value.branch_id == "primary"
        assert timeline.head("primary") == second.id
        assert timeline.event_count() == 2

    def test_unknown_branch_is_decoherent(self, timeline):
        with pytest.raises(DecoherenceError) as exc_info:
            timeline.append("nowhere", NewEvent(), expected_parent_id=None)

        assert exc_info.value.code == DecoherenceCode.BRANCH_DECOHERENT

    def test_merge_events_need_append_merge(self, timeline, append_event):
        """Only timeline_merge may have several parents, and only through append_merge."""
        head = append_event().id

        with pytest.raises(ValueError):
            timeline.append("primary", NewEvent(event_type=EVENT_TIMELINE_MERGE), expected_parent_id=head)
        with pytest.raises(ValueError):
            timeline.append_merge("primary", NewEvent(event_type="object_updated"), expected_parent_id=head,
                                  other_parent_ids=(head,))

    def test_duplicate_event_id_marks_branch_decoherent(self, timeline, append_event):
        """An append that would create a cycle is fatal for the branch only."""
        # Setup
        timeline.create_branch_root("sibling", is_primary=True)
        sibling_root = timeline.append("sibling", NewEvent(payload={}), expected_parent_id=None)
        head = append_event()

        # Execute
        with pytest.raises(DecoherenceError) as exc_info:
            timeline.append("primary", NewEvent(event_id=head.id), expected_parent_id=head.id)

        # Verify
        assert exc_info.value.code == DecoherenceCode.BRANCH_DECOHERENT
        assert timeline.get_branch("primary").decoherent is True
        with pytest.raises(DecoherenceError) as exc_info:
            timeline.append("primary", NewEvent(), expected_parent_id=head.id)
        assert exc_info.value.code == DecoherenceCode.BRANCH_DECOHERENT
        # The sibling root is untouched
        assert timeline.get_branch("sibling").decoherent is False
        assert timeline.append("sibling", NewEvent(), expected_parent_id=sibling_root.id).parent_id == sibling_root.id

    def test_payload_is_copied_on_append(self, timeline):
        payload = {"items": [1, 2]}
        event = timeline.append("primary", NewEvent(payload=payload), expected_parent_id=None)

        payload["items"].append(3)

        assert event.payload == {"items": [1, 2]}

    def test_concurrent_appends_exactly_one_wins(self, timeline, append_event):
        """Writers racing on the same expected head: one succeeds, the rest get STALE_PARENT."""
        # Setup
        base = append_event()
        writers = 8
        barrier = threading.Barrier(writers)
        results = []
        results_lock = threading.Lock()

        def writer(index):
            expected = timeline.head("primary")
            barrier.wait()
            try:
                timeline.append("primary", NewEvent(payload={"writer": index}), expected_parent_id=expected)
                outcome = "ok"
            except DecoherenceError as e:
                outcome = e.code
            with results_lock:
                results.append(outcome)

        # Execute
        threads = [threading.Thread(target=writer, args=(i,)) for i in range(writers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        # Verify
        assert results.count("ok") == 1
        assert results.count(DecoherenceCode.STALE_PARENT) == writers - 1
        assert timeline.get(timeline.head("primary")).parent_id == base.id

    def test_append_listeners_are_notified(self, timeline):
        """Listeners see every append; a failing listener does not fail the append."""
        # Setup
        failing = MagicMock(side_effect=RuntimeError("listener boom"))
        listener = MagicMock()
        timeline.add_append_listener(failing)
        timeline.add_append_listener(listener)

        # Execute
        event = timeline.append("primary", NewEvent(), expected_parent_id=None)

        # Verify
        listener.assert_called_once_with(event)
        timeline.remove_append_listener(listener)
        timeline.append("primary", NewEvent(), expected_parent_id=event.id)
        listener.assert_called_once()


class TestReading:
    """Test suite for traversal queries."""

    def test_get_unknown_event(self, timeline):
        with pytest.raises(EventNotFoundError):
            timeline.get("event_missing")
        # Also a KeyError for dict-style callers
        with pytest.raises(KeyError):
            timeline.get("event_missing")

    def test_ancestors_are_root_first(self, timeline, append_event):
        events = [append_event() for _ in range(4)]

        chain = list(timeline.ancestors(events[-1].id))

        assert [e.id for e in chain] == [e.id for e in events]

    def test_is_ancestor(self, space, timeline, append_event):
        # Setup
        first = append_event()
        second = append_event()
        fork_context = space.fork(space.context_for(), reason="side")
        fork_head = fork_context.last_event_id
        third = append_event()

        # Verify
        assert timeline.is_ancestor(first.id, third.id) is True
        assert timeline.is_ancestor(third.id, third.id) is True
        assert timeline.is_ancestor(third.id, first.id) is False
        assert timeline.is_ancestor(second.id, fork_head) is True
        assert timeline.is_ancestor(third.id, fork_head) is False
        assert timeline.is_ancestor(first.id, None) is False

    def test_chain_until(self, timeline, append_event):
        events = [append_event() for _ in range(5)]
        head = events[-1].id

        assert [e.id for e in timeline.chain_until(head, events[1].id)] == [e.id for e in events[2:]]
        assert timeline.chain_until(head, head) == []
        assert [e.id for e in timeline.chain_until(head, None)] == [e.id for e in events]
        assert timeline.chain_until(head, "event_elsewhere") is None
        assert timeline.chain_until(None, None) == []

    def test_get_timeline_events_limit(self, timeline, append_event):
        events = [append_event() for _ in range(5)]

        assert [e.id for e in timeline.get_timeline_events("primary", limit=2)] == [e.id for e in events[-2:]]
        assert len(timeline.get_timeline_events("primary")) == 5

    def test_primary_timeline_lookup(self, timeline):
        timeline.create_branch_root("other_root", is_primary=True)

        assert timeline.get_primary_timeline("primary") == "primary"
        assert timeline.get_primary_timeline("other_root") == "other_root"

    def test_duplicate_branch_registration_fails(self, timeline):
        with pytest.raises(ValueError):
            timeline.create_branch_root("primary")
