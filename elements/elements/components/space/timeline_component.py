"""
Timeline Component
Manages the Loom DAG (event history) for a Space.
"""
import asyncio
import logging
import threading
import time
import uuid
from typing import Dict, Any, Optional, List, Set, Iterator, Callable, Tuple

from ..base_component import Component
from ..utils.background_tasks import BackgroundTasks
from elements.component_registry import register_component
from storage import StorageInterface

from .errors import DecoherenceError, DecoherenceCode, EventNotFoundError
from .loom_types import (
    Event, NewEvent, Branch, DEFAULT_TIMELINE_ID, EVENT_TIMELINE_MERGE,
)

logger = logging.getLogger(__name__)

AppendListener = Callable[[Event], None]


@register_component
class TimelineComponent(Component):
    """
    Append-only, branch-partitioned event log for the owning Space.

    Every branch has a single head. Appends are optimistic: the caller names
    the head it expects to extend and loses the race with STALE_PARENT if the
    head moved. Events are never mutated or removed; structural anomalies
    (missing parents, cycles) mark only the affected branch decoherent.

    Persistence is optional. When a StorageInterface is attached, appends and
    branch metadata changes are queued and written asynchronously, keyed by
    (branch_id, event_id) with a branch_id -> head index.
    """
    COMPONENT_TYPE = "TimelineComponent"

    def __init__(self, space_id: Optional[str] = None, storage: Optional[StorageInterface] = None,
                 owns_storage: bool = True, **kwargs):
        super().__init__(**kwargs)
        self._space_id = space_id
        self._storage = storage
        # A storage shared between spaces is closed by whoever created it
        self._owns_storage = owns_storage
        self._storage_initialized = False

        self._events: Dict[str, Event] = {}
        self._depths: Dict[str, int] = {}
        self._branches: Dict[str, Branch] = {}

        # Event store and head index; held only for short critical sections
        self._lock = threading.RLock()
        # Branch-metadata table lock, taken by fork/merge/designation
        self.metadata_lock = threading.RLock()

        self._pending_writes: List[Tuple[str, Any]] = []
        self._persist_lock: Optional[asyncio.Lock] = None
        self._background = BackgroundTasks(space_id or "timeline")
        self._append_listeners: List[AppendListener] = []

    def _on_initialize(self) -> bool:
        if not self._space_id and self.owner:
            self._space_id = self.owner.id
        self._background.owner_id = self.space_id
        return True

    @property
    def space_id(self) -> str:
        return self._space_id or self.owner_id

    @property
    def has_storage(self) -> bool:
        return self._storage is not None

    # --- Branch metadata table ---

    def create_branch_root(self, branch_id: str = DEFAULT_TIMELINE_ID, is_primary: bool = True,
                           creator: Optional[str] = None, reason: Optional[str] = None) -> Branch:
        """Registers a new root branch with no events. The first append writes its root event."""
        branch = Branch(branch_id=branch_id, root_branch_id=branch_id, is_primary=is_primary,
                        creator=creator, reason=reason or "root")
        self.register_branch(branch)
        logger.info(f"[{self.space_id}] Created root timeline '{branch_id}' (primary={is_primary}).")
        return branch

    def register_branch(self, branch: Branch) -> Branch:
        with self._lock:
            if branch.branch_id in self._branches:
                raise ValueError(f"Timeline '{branch.branch_id}' already exists in space '{self.space_id}'")
            if branch.head_event_id is not None and branch.head_event_id not in self._events:
                raise EventNotFoundError(branch.head_event_id)
            self._branches[branch.branch_id] = branch
            self._queue_write("branch", branch.to_dict())
        return branch

    def unregister_branch(self, branch_id: str) -> Optional[Branch]:
        """Drops branch metadata. Events stay in the log."""
        with self._lock:
            branch = self._branches.pop(branch_id, None)
            if branch:
                self._queue_write("branch_removed", branch_id)
            return branch

    def update_branch(self, branch: Branch) -> None:
        """Persists a metadata change made by the branch manager (e.g. primary designation)."""
        with self._lock:
            self._queue_write("branch", branch.to_dict())

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        return self._branches.get(branch_id)

    def branches(self) -> List[Branch]:
        with self._lock:
            return list(self._branches.values())

    def head(self, branch_id: str) -> Optional[str]:
        branch = self._branches.get(branch_id)
        if branch is None:
            raise DecoherenceError(DecoherenceCode.BRANCH_DECOHERENT,
                                   f"Unknown timeline '{branch_id}'", branch_id)
        return branch.head_event_id

    def get_primary_timeline(self, root_branch_id: Optional[str] = None) -> Optional[str]:
        """Returns the primary branch id, optionally restricted to one causal subtree."""
        for branch in self.branches():
            if branch.is_primary and (root_branch_id is None or branch.root_branch_id == root_branch_id):
                return branch.branch_id
        return None

    def mark_decoherent(self, branch_id: str, reason: str) -> None:
        """Permanently marks a branch decoherent. Never cleared implicitly."""
        with self._lock:
            branch = self._branches.get(branch_id)
            if branch is None or branch.decoherent:
                return
            branch.decoherent = True
            branch.decoherence_reason = reason
            self._queue_write("branch", branch.to_dict())
        logger.error(f"[{self.space_id}] Timeline '{branch_id}' marked decoherent: {reason}")

    # --- Appending ---

    def append(self, branch_id: str, candidate: NewEvent, expected_parent_id: Optional[str]) -> Event:
        """
        Appends a single-parent event to a branch.

        Args:
            branch_id: Target branch.
            candidate: The event to write.
            expected_parent_id: Head the caller believes the branch has. None only
                                for the first event of an empty root branch.

        Returns:
            The stored Event.

        Raises:
            DecoherenceError: STALE_PARENT if the head moved, BRANCH_DECOHERENT for
                              unknown/decohered branches or structural anomalies.
        """
        if candidate.event_type == EVENT_TIMELINE_MERGE:
            raise ValueError("timeline_merge events must be written with append_merge")
        return self._append(branch_id, candidate, expected_parent_id, extra_parent_ids=())

    def append_merge(self, branch_id: str, candidate: NewEvent, expected_parent_id: str,
                     other_parent_ids: Tuple[str, ...]) -> Event:
        """Appends the one multi-parent event type the log accepts: timeline_merge."""
        if candidate.event_type != EVENT_TIMELINE_MERGE:
            raise ValueError(f"Only {EVENT_TIMELINE_MERGE} events may have multiple parents")
        return self._append(branch_id, candidate, expected_parent_id, extra_parent_ids=tuple(other_parent_ids))

    def _append(self, branch_id: str, candidate: NewEvent, expected_parent_id: Optional[str],
                extra_parent_ids: Tuple[str, ...]) -> Event:
        with self._lock:
            branch = self._branches.get(branch_id)
            if branch is None:
                raise DecoherenceError(DecoherenceCode.BRANCH_DECOHERENT,
                                       f"Unknown timeline '{branch_id}'", branch_id)
            if branch.decoherent:
                raise DecoherenceError(DecoherenceCode.BRANCH_DECOHERENT,
                                       f"Timeline '{branch_id}' is decoherent: {branch.decoherence_reason}", branch_id)
            if branch.head_event_id != expected_parent_id:
                raise DecoherenceError(
                    DecoherenceCode.STALE_PARENT,
                    f"Expected parent '{expected_parent_id}' but head of '{branch_id}' is '{branch.head_event_id}'",
                    branch_id)

            parent_ids = ((expected_parent_id,) if expected_parent_id is not None else ()) + extra_parent_ids
            for parent_id in parent_ids:
                if parent_id not in self._events:
                    reason = f"parent '{parent_id}' missing from log"
                    self.mark_decoherent(branch_id, reason)
                    raise DecoherenceError(DecoherenceCode.BRANCH_DECOHERENT, reason, branch_id)

            event_id = candidate.event_id or f"event_{uuid.uuid4().hex}"
            if event_id in self._events or event_id in parent_ids:
                reason = f"event id '{event_id}' already present; append would create a cycle"
                self.mark_decoherent(branch_id, reason)
                raise DecoherenceError(DecoherenceCode.BRANCH_DECOHERENT, reason, branch_id)

            event = Event(
                id=event_id,
                parent_ids=parent_ids,
                branch_id=branch_id,
                event_type=candidate.event_type,
                payload=candidate.payload,
                timestamp=candidate.timestamp if candidate.timestamp is not None else time.time(),
                object_id=candidate.object_id,
            )
            self._events[event_id] = event
            self._depths[event_id] = 1 + max((self._depths[p] for p in parent_ids), default=-1)
            branch.head_event_id = event_id
            self._queue_write("event", event)

        logger.debug(f"[{self.space_id}] Event '{event_id}' ({event.event_type}) added to timeline '{branch_id}' (parents: {list(parent_ids)}).")
        for listener in list(self._append_listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"[{self.space_id}] Append listener failed for event {event_id}: {e}", exc_info=True)
        return event

    def add_append_listener(self, listener: AppendListener) -> None:
        self._append_listeners.append(listener)

    def remove_append_listener(self, listener: AppendListener) -> None:
        if listener in self._append_listeners:
            self._append_listeners.remove(listener)

    # --- Reading ---

    def get(self, event_id: str) -> Event:
        event = self._events.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    def has_event(self, event_id: str) -> bool:
        return event_id in self._events

    def depth(self, event_id: str) -> int:
        if event_id not in self._depths:
            raise EventNotFoundError(event_id)
        return self._depths[event_id]

    def event_count(self) -> int:
        return len(self._events)

    def ancestors(self, event_id: str) -> Iterator[Event]:
        """
        Lazily yields the first-parent chain of event_id, ordered root-to-target.

        Only ids are collected up front; events are yielded one at a time.
        A cycle or missing parent marks the owning branch decoherent.
        """
        chain = self._first_parent_chain(event_id)
        for ancestor_id in reversed(chain):
            yield self._events[ancestor_id]

    def chain_until(self, head_event_id: Optional[str], stop_event_id: Optional[str]) -> Optional[List[Event]]:
        """
        Events on the first-parent chain after stop_event_id up to head, oldest first.

        Returns None if stop_event_id is not on the chain (a gap).
        """
        if head_event_id is None:
            return [] if stop_event_id is None else None
        collected: List[Event] = []
        seen: Set[str] = set()
        current: Optional[str] = head_event_id
        while current is not None:
            if current == stop_event_id:
                collected.reverse()
                return collected
            if current in seen:
                self._report_anomaly(current, "cycle detected in parent chain")
            seen.add(current)
            event = self._events.get(current)
            if event is None:
                self._report_anomaly(current, "parent missing from log")
            collected.append(event)
            current = event.parent_id
        if stop_event_id is None:
            collected.reverse()
            return collected
        return None

    def _first_parent_chain(self, event_id: str) -> List[str]:
        if event_id not in self._events:
            raise EventNotFoundError(event_id)
        chain: List[str] = []
        seen: Set[str] = set()
        current: Optional[str] = event_id
        while current is not None:
            if current in seen:
                self._report_anomaly(current, "cycle detected in parent chain")
            event = self._events.get(current)
            if event is None:
                self._report_anomaly(current, "parent missing from log")
            seen.add(current)
            chain.append(current)
            current = event.parent_id
        return chain

    def _report_anomaly(self, event_id: str, reason: str) -> None:
        owner_branch = None
        event = self._events.get(event_id)
        if event is not None:
            owner_branch = event.branch_id
        else:
            # Attribute a dangling reference to whichever branch references it
            for candidate in self._events.values():
                if event_id in candidate.parent_ids:
                    owner_branch = candidate.branch_id
                    break
        if owner_branch:
            self.mark_decoherent(owner_branch, f"{reason} at '{event_id}'")
        raise DecoherenceError(DecoherenceCode.BRANCH_DECOHERENT, f"{reason} at '{event_id}'", owner_branch)

    def is_ancestor(self, candidate_id: str, descendant_id: Optional[str]) -> bool:
        """
        True if candidate_id equals descendant_id or is reachable through any parent link.
        Traversal is pruned by depth: an ancestor is always strictly shallower.
        """
        if descendant_id is None:
            return False
        if candidate_id == descendant_id:
            return True
        target_depth = self._depths.get(candidate_id)
        if target_depth is None or descendant_id not in self._events:
            return False
        stack = [descendant_id]
        visited: Set[str] = set()
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            event = self._events.get(current)
            if event is None:
                self._report_anomaly(current, "parent missing from log")
            for parent_id in event.parent_ids:
                if parent_id == candidate_id:
                    return True
                parent_depth = self._depths.get(parent_id)
                if parent_depth is not None and parent_depth > target_depth:
                    stack.append(parent_id)
                elif parent_depth is None:
                    self._report_anomaly(parent_id, "parent missing from log")
        return False

    def get_timeline_events(self, branch_id: str, limit: int = 0) -> List[Event]:
        """Events on the branch's first-parent chain, oldest first. limit keeps the newest N."""
        head = self.head(branch_id)
        if head is None:
            return []
        events = list(self.ancestors(head))
        if limit > 0:
            return events[-limit:]
        return events

    # --- Persistence ---

    def _queue_write(self, kind: str, item: Any) -> None:
        if self._storage is None:
            return
        self._pending_writes.append((kind, item))
        # Without a running loop the backlog waits for flush() on shutdown
        self._background.spawn(self.flush(), f"flush-{kind}")

    async def _ensure_storage_ready(self) -> bool:
        if self._storage is None:
            return False
        if not self._storage_initialized:
            self._storage_initialized = await self._storage.initialize()
            if not self._storage_initialized:
                logger.error(f"[{self.space_id}] Failed to initialize storage backend for timeline")
        return self._storage_initialized

    async def flush(self) -> bool:
        """Writes every queued append and metadata change, in order."""
        if self._storage is None:
            return True
        if self._persist_lock is None:
            self._persist_lock = asyncio.Lock()
        async with self._persist_lock:
            if not self._pending_writes:
                return True
            if not await self._ensure_storage_ready():
                return False
            while self._pending_writes:
                kind, item = self._pending_writes[0]
                if kind == "event":
                    ok = await self._storage.append_event(self.space_id, item.branch_id, item.to_dict())
                    ok = ok and await self._storage.set_branch_head(self.space_id, item.branch_id, item.id)
                elif kind == "branch":
                    ok = await self._storage.store_branch(self.space_id, item)
                    ok = ok and await self._storage.set_branch_head(self.space_id, item["branch_id"], item["head_event_id"])
                else:
                    ok = await self._storage.delete_branch(self.space_id, item)
                if not ok:
                    logger.error(f"[{self.space_id}] Storage rejected {kind} write; {len(self._pending_writes)} writes still pending")
                    return False
                self._pending_writes.pop(0)
        return True

    async def load_from_storage(self) -> bool:
        """Restores events and branch metadata for this space from storage."""
        if not await self._ensure_storage_ready():
            return False
        event_dicts = await self._storage.load_events(self.space_id)
        branch_dicts = await self._storage.load_branches(self.space_id)
        heads = await self._storage.load_branch_heads(self.space_id)

        with self._lock:
            pending = [Event.from_dict(d) for d in event_dicts]
            # Parents first: storage order is per-branch, so settle depths iteratively
            remaining = {e.id: e for e in pending if e.id not in self._events}
            progressed = True
            while remaining and progressed:
                progressed = False
                for event_id, event in list(remaining.items()):
                    if all(p in self._events for p in event.parent_ids):
                        self._events[event_id] = event
                        self._depths[event_id] = 1 + max((self._depths[p] for p in event.parent_ids), default=-1)
                        del remaining[event_id]
                        progressed = True
            for branch_data in branch_dicts:
                branch = Branch.from_dict(branch_data)
                branch.head_event_id = heads.get(branch.branch_id, branch.head_event_id)
                self._branches[branch.branch_id] = branch
            for event in remaining.values():
                self.mark_decoherent(event.branch_id, f"stored event '{event.id}' references missing parent")

        logger.info(f"[{self.space_id}] Loaded {len(self._events)} events and {len(self._branches)} timelines from storage")
        return True

    async def shutdown(self) -> bool:
        """Flushes pending writes and shuts the storage backend down if this timeline owns it."""
        if self._storage is None:
            return True
        await self._background.wait()
        flushed = await self.flush()
        if self._storage_initialized and self._owns_storage:
            await self._storage.shutdown()
            self._storage_initialized = False
        return flushed
