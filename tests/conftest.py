"""
Shared fixtures for the Loom test suite.
"""

import pytest

from elements.elements.space import Space
from elements.elements.components.space.loom_types import NewEvent, TimelineContext
from elements.space_registry import SpaceRegistry
from host.space_host import RemoteSpaceHost


HOST_TOKENS = {
    "token_alice": {"agent_id": "alice", "permissions": ["read", "write"]},
    "token_reader": {"agent_id": "reader", "permissions": ["read"]},
    "token_nobody": {"agent_id": "nobody", "permissions": []},
}


@pytest.fixture
def space():
    """
    Fixture that provides an in-memory Space with an empty primary timeline.
    """
    return Space(element_id="space_test", name="Test Space")


@pytest.fixture
def timeline(space):
    """
    Fixture that provides the TimelineComponent of the test space.
    """
    return space.timeline


@pytest.fixture
def append_event(timeline):
    """
    Fixture that provides a helper appending one event at the current head of a branch.
    """
    def _append(branch_id="primary", object_id="note", payload=None, timestamp=None):
        return timeline.append(
            branch_id,
            NewEvent(payload=payload if payload is not None else {}, object_id=object_id, timestamp=timestamp),
            expected_parent_id=timeline.head(branch_id),
        )
    return _append


@pytest.fixture
def primary_context(space):
    """
    Fixture that provides a callable returning a fresh context at the primary head.
    """
    def _context() -> TimelineContext:
        return space.context_for()
    return _context


@pytest.fixture
def registry():
    """
    Fixture that provides a SpaceRegistry without storage.
    """
    return SpaceRegistry()


@pytest.fixture
def remote_space(registry):
    """
    Fixture that provides the space served to uplinks in host tests.
    """
    return registry.get_or_create_space("remote_space", name="Remote Space")


@pytest.fixture
def space_host(registry, remote_space):
    """
    Fixture that provides a RemoteSpaceHost with a small token registry and
    a history page limit small enough to force paging.
    """
    host = RemoteSpaceHost(registry, tokens=HOST_TOKENS, history_page_limit=4)
    yield host
    host.close()
