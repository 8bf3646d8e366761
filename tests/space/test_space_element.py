"""
Tests for the Space element and the SpaceRegistry.
"""

import pytest
from unittest.mock import MagicMock

from elements.elements.base import BaseElement
from elements.elements.space import Space
from elements.component_registry import registered_component_types
from elements.elements.components.space import NotificationHubComponent
from elements.elements.components.space.errors import DecoherenceError, DecoherenceCode
from elements.elements.components.space.loom_types import TimelineContext


class TestSpace:
    """Test suite for the Space coordinator."""

    def test_new_space_has_empty_primary(self, space):
        assert space.get_primary_timeline() == "primary"
        assert space.timeline.head("primary") is None
        assert space.context_for() == TimelineContext(branch_id="primary", is_primary=True,
                                                      last_event_id=None, root_branch_id="primary")

    def test_submit_event_returns_advanced_context(self, space):
        # Execute
        result = space.submit_event("note", {"text": "hello"}, space.context_for(), actor_id="agent_a")

        # Verify
        event = space.timeline.get(result.event_id)
        assert result.updated_context.last_event_id == result.event_id
        assert result.updated_context.is_primary is True
        assert event.object_id == "note"
        assert event.payload == {"text": "hello"}

    def test_submit_appends_at_validated_head(self, space):
        """An older cursor on the lineage is accepted; the event lands on the current head."""
        first = space.submit_event("note", {"v": 1}, space.context_for())
        second = space.submit_event("note", {"v": 2}, space.context_for())

        third = space.submit_event("note", {"v": 3}, first.updated_context)

        assert space.timeline.get(third.event_id).parent_id == second.event_id

    def test_submit_with_unknown_branch(self, space):
        context = TimelineContext(branch_id="ghost", is_primary=False, last_event_id=None, root_branch_id="ghost")

        with pytest.raises(DecoherenceError) as exc_info:
            space.submit_event("note", {}, context)

        assert exc_info.value.code == DecoherenceCode.BRANCH_DECOHERENT

    def test_context_for_unknown_branch(self, space):
        with pytest.raises(DecoherenceError):
            space.context_for("ghost")

    def test_event_listener(self, space):
        listener = MagicMock()
        space.add_event_listener(listener)

        result = space.submit_event("note", {"v": 1}, space.context_for())

        listener.assert_called_once()
        assert listener.call_args[0][0].id == result.event_id
        space.remove_event_listener(listener)

    def test_history_page(self, space):
        # Setup
        ids = [space.submit_event("note", {"n": i}, space.context_for()).event_id for i in range(5)]

        # Execute
        first_page = space.history_page(2)
        second_page = space.history_page(2, start_from=first_page["continuation_token"])
        last_page = space.history_page(10, start_from=ids[3])

        # Verify
        assert [e["id"] for e in first_page["events"]] == ids[:2]
        assert first_page["has_more"] is True
        assert first_page["object_states"]["note"]["value"] == {"n": 4}
        assert [e["id"] for e in second_page["events"]] == ids[2:4]
        assert [e["id"] for e in last_page["events"]] == ids[4:]
        assert last_page["has_more"] is False
        assert last_page["head_event_id"] == ids[-1]

    def test_history_page_unknown_start(self, space):
        space.submit_event("note", {"n": 1}, space.context_for())

        with pytest.raises(DecoherenceError) as exc_info:
            space.history_page(5, start_from="event_elsewhere")

        assert exc_info.value.code == DecoherenceCode.STALE_CONTEXT

    def test_summary(self, space):
        result = space.submit_event("note", {"n": 1}, space.context_for())

        summary = space.summary()

        assert summary["space_id"] == "space_test"
        assert summary["primary_branch_id"] == "primary"
        assert summary["head_event_id"] == result.event_id
        assert summary["branch_count"] == 1
        assert summary["event_count"] == 1

    def test_custom_root_branch(self):
        space = Space(element_id="space_custom", name="Custom", root_branch_id="main")

        assert space.get_primary_timeline() == "main"
        assert space.context_for().root_branch_id == "main"


class TestSpaceRegistry:
    """Test suite for the SpaceRegistry."""

    def test_get_or_create_is_idempotent(self, registry):
        first = registry.get_or_create_space("space_a", name="A")
        second = registry.get_or_create_space("space_a")

        assert first is second
        assert registry.get_space("space_a") is first
        assert list(registry.get_spaces()) == ["space_a"]

    def test_register_and_unregister(self, registry, space):
        assert registry.register_space(space) is True
        assert registry.register_space(space) is False

        assert registry.unregister_space(space.id) is True
        assert registry.unregister_space(space.id) is False

    def test_routing(self, registry):
        space = registry.get_or_create_space("space_a")

        result = registry.submit_event("space_a", "note", {"v": 1}, space.context_for())

        assert space.timeline.head("primary") == result.event_id
        with pytest.raises(KeyError):
            registry.submit_event("space_missing", "note", {}, space.context_for())

    def test_spaces_are_independent(self, registry):
        space_a = registry.get_or_create_space("space_a")
        space_b = registry.get_or_create_space("space_b")

        space_a.submit_event("note", {"v": 1}, space_a.context_for())

        assert space_b.timeline.event_count() == 0
        assert space_b.state_of("note").value == {}


class TestComponentWiring:
    """Test suite for attaching components to elements."""

    def test_space_components_are_registered(self):
        assert {"TimelineComponent", "CoherenceValidator", "StateProjectorComponent",
                "BranchManagerComponent", "NotificationHubComponent"} <= set(registered_component_types())

    def test_add_component_by_name(self):
        element = BaseElement(element_id="element_wiring", name="Wiring")

        hub = element.add_component("NotificationHubComponent", max_delivery_attempts=2)

        assert isinstance(hub, NotificationHubComponent)
        assert element.get_component_by_type(NotificationHubComponent) is hub

    def test_add_unknown_or_duplicate_component(self):
        element = BaseElement(element_id="element_wiring", name="Wiring")
        element.add_component(NotificationHubComponent)

        assert element.add_component("NoSuchComponent") is None
        assert element.add_component(NotificationHubComponent) is None

    def test_component_lifecycle_is_initialize_and_cleanup(self):
        element = BaseElement(element_id="element_wiring", name="Wiring")

        hub = element.add_component(NotificationHubComponent)

        assert hub.is_initialized is True
        assert hub.cleanup() is True
        assert not hasattr(hub, "enable")
        assert not hasattr(Space, "IS_SPACE")
