"""
Space Registry

Manages the collection of active Spaces and routes inbound actions to them
by space id. Spaces are independent: each owns its own log and locks.
"""

import logging
import threading
import time
from typing import Dict, Any, Optional, List, TYPE_CHECKING

from .elements.components.utils.background_tasks import BackgroundTasks
from storage import StorageInterface

if TYPE_CHECKING:
    from .elements.space import Space
    from .elements.components.space.loom_types import TimelineContext, SubmitResult

logger = logging.getLogger(__name__)


class SpaceRegistry:
    """
    Registry of Spaces keyed by space id.

    Optionally persists the list of space definitions as system state so a
    restarted host can recreate the same spaces before their logs are loaded.
    """
    _instance: Optional["SpaceRegistry"] = None

    @classmethod
    def get_instance(cls) -> "SpaceRegistry":
        """Gets the singleton instance of SpaceRegistry, creating it if necessary."""
        if cls._instance is None:
            logger.info("Creating new SpaceRegistry singleton instance.")
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    def __init__(self, storage: Optional[StorageInterface] = None):
        self._spaces: Dict[str, "Space"] = {}
        self._lock = threading.Lock()
        self._storage = storage
        self._storage_initialized = False
        self._registry_key = "space_registry_main"
        self._background = BackgroundTasks(self._registry_key)
        logger.info("SpaceRegistry initialized.")

    # --- Registration ---

    def register_space(self, space: "Space") -> bool:
        with self._lock:
            if space.id in self._spaces:
                logger.warning(f"Space with ID {space.id} already registered")
                return False
            self._spaces[space.id] = space
        logger.info(f"Registered space: {space.name} ({space.id})")
        self._schedule_persist()
        return True

    def unregister_space(self, space_id: str) -> bool:
        with self._lock:
            space = self._spaces.pop(space_id, None)
        if space is None:
            logger.warning(f"Cannot unregister space {space_id}: not registered")
            return False
        logger.info(f"Unregistered space: {space.name} ({space_id})")
        self._schedule_persist()
        return True

    def get_space(self, space_id: str) -> Optional["Space"]:
        return self._spaces.get(space_id)

    def get_spaces(self) -> Dict[str, "Space"]:
        with self._lock:
            return dict(self._spaces)

    def get_or_create_space(self, space_id: str, name: Optional[str] = None, description: str = "",
                            **space_kwargs) -> "Space":
        from .elements.space import Space

        with self._lock:
            existing = self._spaces.get(space_id)
            if existing is not None:
                return existing
            if self._storage is not None:
                space_kwargs.setdefault("storage", self._storage)
                space_kwargs.setdefault("owns_storage", False)
            space = Space(element_id=space_id, name=name or space_id, description=description, **space_kwargs)
            self._spaces[space_id] = space
        logger.info(f"Created space: {space.name} ({space_id})")
        self._schedule_persist()
        return space

    # --- Routing ---

    def submit_event(self, space_id: str, object_id: Optional[str], payload: Dict[str, Any],
                     timeline_context: "TimelineContext", **kwargs) -> "SubmitResult":
        """
        Routes an inbound action to its space.

        Raises:
            KeyError: if space_id is not registered.
            DecoherenceError: propagated from the space.
        """
        space = self.get_space(space_id)
        if space is None:
            raise KeyError(f"Space '{space_id}' is not registered")
        return space.submit_event(object_id, payload, timeline_context, **kwargs)

    # --- Persistence ---

    async def _ensure_storage_ready(self) -> bool:
        if self._storage is None:
            return False
        if not self._storage_initialized:
            self._storage_initialized = await self._storage.initialize()
        return self._storage_initialized

    def _schedule_persist(self) -> None:
        if self._storage is None:
            return
        # Without a running loop the definitions are written on the next change or on shutdown
        self._background.spawn(self._persist_registry_state(), "persist-registry")

    async def _persist_registry_state(self) -> bool:
        if not await self._ensure_storage_ready():
            return False
        definitions = {
            space_id: {"name": space.name, "description": space.description,
                       "root_branch_id": space.root_branch_id}
            for space_id, space in self.get_spaces().items()
        }
        state = {"space_definitions": definitions, "persisted_at": time.time()}
        return await self._storage.store_system_state(f"registry_state_{self._registry_key}", state)

    async def load_space_definitions(self) -> List[Dict[str, Any]]:
        """Returns the persisted space definitions (not the spaces themselves)."""
        if not await self._ensure_storage_ready():
            return []
        state = await self._storage.load_system_state(f"registry_state_{self._registry_key}")
        if not state:
            return []
        return [dict(definition, space_id=space_id)
                for space_id, definition in state.get("space_definitions", {}).items()]

    async def restore_spaces(self, **space_kwargs) -> List["Space"]:
        """Recreates every persisted space and loads its timelines from storage."""
        restored = []
        for definition in await self.load_space_definitions():
            space = self.get_or_create_space(definition["space_id"], name=definition.get("name"),
                                             description=definition.get("description", ""),
                                             root_branch_id=definition.get("root_branch_id", "primary"),
                                             **space_kwargs)
            await space.start()
            restored.append(space)
        logger.info(f"Restored {len(restored)} spaces from storage")
        return restored

    async def shutdown(self) -> None:
        for space in self.get_spaces().values():
            try:
                await space.shutdown()
            except Exception as e:
                logger.error(f"Error shutting down space {space.id}: {e}", exc_info=True)
        await self._background.wait()
        await self._persist_registry_state()
        if self._storage is not None:
            await self._storage.shutdown()
            self._storage_initialized = False
