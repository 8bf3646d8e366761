"""
Tests for the StateProjectorComponent.
"""

import pytest

from elements.elements.components.space import AppendLogReducer, StateReducer
from elements.elements.components.space.errors import DecoherenceError, EventNotFoundError


class CountingReducer(StateReducer):
    """Counts the events applied to an object."""

    def initial_state(self, object_id):
        return 0

    def apply_event(self, state, event):
        return state + 1


class TestProjection:
    """Test suite for per-branch object state."""

    def test_default_reducer_merges_payloads(self, space):
        # Setup
        context = space.context_for()
        for payload in ({"a": 1}, {"b": 2}, {"a": 3}):
            context = space.submit_event("note", payload, context).updated_context

        # Execute
        state = space.state_of("note")

        # Verify
        assert state.value == {"a": 3, "b": 2}
        assert state.version == 3
        assert state.branch_id == "primary"
        assert state.cursor_event_id == space.timeline.head("primary")

    def test_other_objects_are_ignored(self, space):
        space.submit_event("note", {"a": 1}, space.context_for())
        space.submit_event("other", {"z": 9}, space.context_for())

        assert space.state_of("note").value == {"a": 1}
        assert space.state_of("never_written").value == {}

    def test_delete_resets_state(self, space):
        space.submit_event("note", {"a": 1}, space.context_for())
        space.submit_event("note", {}, space.context_for(), event_type="object_deleted")

        assert space.state_of("note").value == {}

    def test_returned_state_is_a_copy(self, space):
        """Callers never get a reference into the cache."""
        space.submit_event("note", {"items": [1]}, space.context_for())

        state = space.state_of("note")
        state.value["items"].append(2)
        state.value["extra"] = True

        assert space.state_of("note").value == {"items": [1]}

    def test_cache_advances_incrementally(self, space):
        """A cache hit folds only the new events instead of replaying from the root."""
        # Setup
        space.submit_event("note", {"a": 1}, space.context_for())
        space.state_of("note")
        replays = space.projector.full_replay_count

        # Execute
        space.submit_event("note", {"b": 2}, space.context_for())
        state = space.state_of("note")

        # Verify
        assert state.value == {"a": 1, "b": 2}
        assert space.projector.full_replay_count == replays

    def test_register_reducer(self, space):
        space.register_reducer("chat", AppendLogReducer())
        space.submit_event("chat", {"text": "hi"}, space.context_for())
        space.submit_event("chat", {"text": "there"}, space.context_for())

        assert space.state_of("chat").value == [{"text": "hi"}, {"text": "there"}]

    def test_register_reducer_drops_cached_state(self, space):
        space.submit_event("counter", {"x": 1}, space.context_for())
        space.submit_event("counter", {"x": 2}, space.context_for())
        assert space.state_of("counter").value == {"x": 2}

        space.register_reducer("counter", CountingReducer())

        assert space.state_of("counter").value == 2

    def test_state_at_earlier_event(self, space):
        first = space.submit_event("note", {"a": 1}, space.context_for())
        space.submit_event("note", {"a": 2}, space.context_for())

        assert space.projector.state_at("note", first.event_id).value == {"a": 1}
        with pytest.raises(EventNotFoundError):
            space.projector.state_at("note", "event_missing")

    def test_mutating_a_read_event_leaves_the_log_intact(self, space):
        # Setup
        event_id = space.submit_event("obj", {"x": 1, "tags": ["a"]}, space.context_for()).event_id

        # Execute
        event = space.timeline.get(event_id)
        event.payload["x"] = 999
        event.payload["tags"].append("b")
        for ancestor in space.timeline.ancestors(event_id):
            ancestor.payload.clear()

        # Verify
        assert space.projector.state_at("obj", event_id).value == {"x": 1, "tags": ["a"]}
        assert space.timeline.get(event_id).payload == {"x": 1, "tags": ["a"]}
        with pytest.raises(AttributeError):
            event.payload = {}

    def test_unknown_branch(self, space):
        with pytest.raises(DecoherenceError):
            space.projector.state_of("note", "ghost")

    def test_effective_history_of_empty_branch(self, space):
        assert space.projector.effective_history(None) == []
