"""
Tests for the storage backends and restoring spaces from them.
"""

import pytest

from elements.elements.space import Space
from elements.space_registry import SpaceRegistry
from storage import FileStorage, SQLiteStorage, StorageFactory, StorageInterface, create_storage


@pytest.fixture(params=["file", "sqlite"])
def make_storage(request, tmp_path):
    """
    Fixture that provides a factory for fresh backend instances over the same location.
    """
    def _make():
        if request.param == "sqlite":
            return SQLiteStorage({"db_path": str(tmp_path / "loom.db")})
        return FileStorage({"base_dir": str(tmp_path / "data")})
    return _make


def _event(event_id, parents=(), branch_id="primary"):
    return {"id": event_id, "parent_ids": list(parents), "branch_id": branch_id, "event_type": "object_updated",
            "payload": {"n": event_id}, "timestamp": 1.0, "object_id": "note"}


class TestBackendContract:
    """Test suite shared by every backend."""

    @pytest.mark.asyncio
    async def test_events_and_heads(self, make_storage):
        # Setup
        storage = make_storage()
        assert await storage.initialize() is True

        # Execute
        await storage.append_event("space_a", "primary", _event("e1"))
        await storage.append_event("space_a", "primary", _event("e2", ["e1"]))
        await storage.append_event("space_a", "primary", _event("e2", ["e1"]))
        await storage.set_branch_head("space_a", "primary", "e2")

        # Verify
        events = await storage.load_events("space_a")
        assert [e["id"] for e in events] == ["e1", "e2"]
        assert events[1]["parent_ids"] == ["e1"]
        assert await storage.load_branch_heads("space_a") == {"primary": "e2"}
        assert await storage.load_events("space_other") == []
        await storage.shutdown()

    @pytest.mark.asyncio
    async def test_branches(self, make_storage):
        storage = make_storage()
        await storage.initialize()

        await storage.store_branch("space_a", {"branch_id": "primary", "head_event_id": None})
        await storage.store_branch("space_a", {"branch_id": "timeline_b", "head_event_id": "e1"})
        await storage.set_branch_head("space_a", "timeline_b", "e1")
        assert await storage.delete_branch("space_a", "timeline_b") is True

        branches = await storage.load_branches("space_a")
        assert [b["branch_id"] for b in branches] == ["primary"]
        assert "timeline_b" not in await storage.load_branch_heads("space_a")
        await storage.shutdown()

    @pytest.mark.asyncio
    async def test_system_state(self, make_storage):
        storage = make_storage()
        await storage.initialize()

        await storage.store_system_state("key_a", {"spans": [1, 2]})

        assert await storage.load_system_state("key_a") == {"spans": [1, 2]}
        assert await storage.load_system_state("key_missing") is None
        health = await storage.health_check()
        assert health["status"] == "healthy"
        await storage.shutdown()


class TestSpacePersistence:
    """Test suite for restoring a space's Loom from storage."""

    @pytest.mark.asyncio
    async def test_space_round_trip(self, make_storage):
        # Setup
        space = Space(element_id="space_stored", name="Stored", storage=make_storage())
        await space.start()
        first = space.submit_event("note", {"v": 1}, space.context_for())
        space.submit_event("note", {"w": 2}, space.context_for())
        fork_context = space.fork(first.updated_context, reason="alt")
        side = space.submit_event("note", {"v": 9}, fork_context)
        await space.shutdown()

        # Execute
        restored = Space(element_id="space_stored", name="Stored", storage=make_storage())
        await restored.start()

        # Verify
        assert restored.timeline.event_count() == space.timeline.event_count()
        assert restored.timeline.head("primary") == space.timeline.head("primary")
        assert restored.timeline.head(fork_context.branch_id) == side.event_id
        assert restored.get_primary_timeline() == "primary"
        assert restored.timeline.get_branch(fork_context.branch_id).reason == "alt"
        assert restored.state_of("note").value == {"v": 1, "w": 2}
        assert restored.state_of("note", fork_context.branch_id).value == {"v": 9}
        await restored.shutdown()

    @pytest.mark.asyncio
    async def test_pruned_branch_stays_pruned(self, make_storage):
        space = Space(element_id="space_pruned", name="Pruned", storage=make_storage())
        await space.start()
        space.submit_event("note", {"v": 1}, space.context_for())
        fork_context = space.fork(space.context_for())
        space.prune(fork_context.branch_id)
        await space.shutdown()

        restored = Space(element_id="space_pruned", name="Pruned", storage=make_storage())
        await restored.start()

        assert restored.timeline.get_branch(fork_context.branch_id) is None
        assert restored.timeline.has_event(fork_context.last_event_id) is True
        await restored.shutdown()

    @pytest.mark.asyncio
    async def test_registry_restores_spaces(self, make_storage):
        # Setup
        registry = SpaceRegistry(storage=make_storage())
        space = registry.get_or_create_space("space_a", name="Space A")
        await space.start()
        event_id = space.submit_event("note", {"v": 1}, space.context_for()).event_id
        await registry.shutdown()

        # Execute
        restarted = SpaceRegistry(storage=make_storage())
        restored = await restarted.restore_spaces()

        # Verify
        assert [s.id for s in restored] == ["space_a"]
        assert restored[0].name == "Space A"
        assert restored[0].timeline.head("primary") == event_id
        await restarted.shutdown()


class TestBackgroundWrites:
    """Test suite for writes scheduled while the event loop is running."""

    @pytest.mark.asyncio
    async def test_rejected_write_is_logged(self, tmp_path, mocker, caplog):
        # Setup
        storage = FileStorage({"base_dir": str(tmp_path)})
        space = Space(element_id="space_rejected", name="Rejected", storage=storage)
        await space.start()
        mocker.patch.object(storage, "append_event", new=mocker.AsyncMock(return_value=False))

        # Execute
        with caplog.at_level("WARNING"):
            space.submit_event("note", {"v": 1}, space.context_for())
            await space.timeline._background.wait()

        # Verify
        assert space.timeline._background.failed >= 1
        assert "reported failure" in caplog.text
        assert space.state_of("note").value == {"v": 1}

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_scheduled_writes(self, make_storage, mocker):
        storage = make_storage()
        space = Space(element_id="space_pending", name="Pending", storage=storage)
        await space.start()
        shutdown = mocker.spy(storage, "shutdown")
        for n in range(5):
            space.submit_event("note", {"n": n}, space.context_for())
        assert len(space.timeline._background) > 0

        await space.shutdown()

        assert len(space.timeline._background) == 0
        assert shutdown.call_count == 1
        restored = Space(element_id="space_pending", name="Pending", storage=make_storage())
        await restored.start()
        assert restored.state_of("note").value == {"n": 4}
        await restored.shutdown()

    @pytest.mark.asyncio
    async def test_registry_shutdown_waits_for_definition_writes(self, make_storage):
        registry = SpaceRegistry(storage=make_storage())
        registry.get_or_create_space("space_a", name="Space A")
        registry.get_or_create_space("space_b", name="Space B")

        await registry.shutdown()

        assert len(registry._background) == 0
        definitions = await SpaceRegistry(storage=make_storage()).load_space_definitions()
        assert sorted(d["space_id"] for d in definitions) == ["space_a", "space_b"]


class TestFactory:
    """Test suite for the storage factory."""

    def test_create_storage(self, tmp_path):
        assert isinstance(create_storage("file", base_dir=str(tmp_path)), FileStorage)
        assert isinstance(create_storage("sqlite", db_path=str(tmp_path / "x.db")), SQLiteStorage)
        with pytest.raises(ValueError):
            create_storage("cassandra")

    def test_register_backend_requires_interface(self):
        with pytest.raises(ValueError):
            StorageFactory.register_backend("bogus", dict)
        assert issubclass(FileStorage, StorageInterface)
        assert set(StorageFactory.get_available_backends()) >= {"file", "sqlite"}
