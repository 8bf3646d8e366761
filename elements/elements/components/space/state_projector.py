"""
State Projector Component
Derives and caches per-branch object state by folding the Loom DAG.
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, List, Set, Tuple

from ..base_component import Component
from elements.component_registry import register_component

from .errors import EventNotFoundError
from .loom_types import Event, ObjectState, DEFAULT_OBJECT_EVENT_TYPE
from .timeline_component import TimelineComponent

logger = logging.getLogger(__name__)

MERGE_STRATEGY_APPEND = "append"
MERGE_STRATEGY_INTERLEAVE = "interleave"
MERGE_STRATEGY_EDIT = "edit"


class StateReducer(ABC):
    """
    Object-type-specific fold over events.

    apply_event must be pure, deterministic and total: it returns a new value
    and never mutates the one it was given.
    """

    @abstractmethod
    def initial_state(self, object_id: str) -> Any:
        pass

    @abstractmethod
    def apply_event(self, state: Any, event: Event) -> Any:
        pass


class MergePayloadReducer(StateReducer):
    """Default reducer: object state is a dict, each event's payload is merged on top."""

    DELETE_EVENT_TYPE = "object_deleted"

    def initial_state(self, object_id: str) -> Dict[str, Any]:
        return {}

    def apply_event(self, state: Dict[str, Any], event: Event) -> Dict[str, Any]:
        if event.event_type == self.DELETE_EVENT_TYPE:
            return {}
        new_state = dict(state or {})
        new_state.update(event.payload)
        return new_state


class AppendLogReducer(StateReducer):
    """Object state is the ordered list of payloads applied to it (message-list style objects)."""

    def initial_state(self, object_id: str) -> List[Dict[str, Any]]:
        return []

    def apply_event(self, state: List[Dict[str, Any]], event: Event) -> List[Dict[str, Any]]:
        return list(state or []) + [event.payload]


@register_component
class StateProjectorComponent(Component):
    """
    Owns ObjectState for every (object_id, branch_id) pair of a space.

    Cache hits are advanced by folding only the events appended since the
    cached cursor. A miss, a gap (cursor not on the head's first-parent chain)
    or a rebasing merge in the new range triggers a full replay from the root.
    Callers only ever receive deep copies.
    """
    COMPONENT_TYPE = "StateProjectorComponent"
    DEPENDENCIES = ["TimelineComponent"]

    def __init__(self, timeline: Optional[TimelineComponent] = None,
                 default_reducer: Optional[StateReducer] = None, **kwargs):
        super().__init__(**kwargs)
        self._timeline = timeline
        self._default_reducer: StateReducer = default_reducer or MergePayloadReducer()
        self._reducers: Dict[str, StateReducer] = {}
        self._cache: Dict[Tuple[str, str], ObjectState] = {}
        self._lock = threading.RLock()
        self._full_replays = 0

    def _on_initialize(self) -> bool:
        if self._timeline is None:
            self._timeline = self.get_sibling_component(TimelineComponent)
        if self._timeline is None:
            logger.error(f"[{self.owner_id}] StateProjectorComponent requires a TimelineComponent")
            return False
        return True

    # --- Reducers ---

    def register_reducer(self, object_id: str, reducer: StateReducer) -> None:
        """Uses reducer for object_id from now on; cached projections of that object are dropped."""
        with self._lock:
            self._reducers[object_id] = reducer
            for key in [k for k in self._cache if k[0] == object_id]:
                del self._cache[key]

    def set_default_reducer(self, reducer: StateReducer) -> None:
        with self._lock:
            self._default_reducer = reducer
            self._cache.clear()

    def reducer_for(self, object_id: str) -> StateReducer:
        return self._reducers.get(object_id, self._default_reducer)

    # --- Projection ---

    def state_of(self, object_id: str, branch_id: str) -> ObjectState:
        """
        Projects object_id on branch_id as of the branch head at call time.

        Raises:
            DecoherenceError: BRANCH_DECOHERENT if the branch is unknown.
        """
        head = self._timeline.head(branch_id)
        with self._lock:
            key = (object_id, branch_id)
            cached = self._cache.get(key)
            if cached is not None and cached.cursor_event_id == head:
                return cached.clone()

            state = None
            if cached is not None:
                state = self._advance(cached, head)
            if state is None:
                state = self._replay(object_id, branch_id, head)
            self._cache[key] = state
            return state.clone()

    def state_at(self, object_id: str, event_id: Optional[str], branch_id: Optional[str] = None) -> ObjectState:
        """Projects object_id as of an arbitrary event. Not cached."""
        if event_id is not None and not self._timeline.has_event(event_id):
            raise EventNotFoundError(event_id)
        owner_branch = branch_id or (self._timeline.get(event_id).branch_id if event_id else "")
        with self._lock:
            return self._replay(object_id, owner_branch, event_id).clone()

    def _advance(self, cached: ObjectState, head: Optional[str]) -> Optional[ObjectState]:
        """Folds events since the cached cursor. Returns None when a full replay is required."""
        new_events = self._timeline.chain_until(head, cached.cursor_event_id)
        if new_events is None:
            logger.debug(f"[{self.owner_id}] Gap for '{cached.object_id}' on '{cached.branch_id}': cursor "
                         f"'{cached.cursor_event_id}' not on head '{head}' chain")
            return None
        if any(e.is_merge and e.payload_get("strategy") == MERGE_STRATEGY_INTERLEAVE for e in new_events):
            return None
        effective: List[Event] = []
        for event in new_events:
            self._expand_into(event, effective, set())
        state = cached.clone()
        self._fold(state, effective)
        state.cursor_event_id = head
        return state

    def _replay(self, object_id: str, branch_id: str, head: Optional[str]) -> ObjectState:
        self._full_replays += 1
        reducer = self.reducer_for(object_id)
        state = ObjectState(object_id=object_id, branch_id=branch_id,
                            value=reducer.initial_state(object_id), cursor_event_id=head)
        self._fold(state, self.effective_history(head))
        return state

    def _fold(self, state: ObjectState, events: List[Event]) -> None:
        reducer = self.reducer_for(state.object_id)
        for event in events:
            if event.object_id != state.object_id or event.id in state.applied_event_ids:
                continue
            state.value = reducer.apply_event(state.value, event)
            state.applied_event_ids.add(event.id)
            state.version += 1

    def effective_history(self, head_event_id: Optional[str]) -> List[Event]:
        """
        Linearizes everything visible from head_event_id, root first.

        timeline_merge events expand according to their strategy:
        append replays the source events after the target history,
        interleave rewinds to the common ancestor and replays the recorded
        timestamp order, edit contributes the caller's edit as one event.
        """
        if head_event_id is None:
            return []
        effective: List[Event] = []
        for event in self._timeline.ancestors(head_event_id):
            self._expand_into(event, effective, set())
        return effective

    def _expand_into(self, event: Event, out: List[Event], expanding: Set[str]) -> None:
        if not event.is_merge:
            out.append(event)
            return
        if event.id in expanding:
            logger.warning(f"[{self.owner_id}] Merge '{event.id}' replays itself; skipping nested expansion")
            return
        # Only a top-level interleave rewinds; nested inside another merge it just replays
        nested = bool(expanding)
        expanding.add(event.id)
        strategy = event.payload_get("strategy", MERGE_STRATEGY_APPEND)

        if strategy == MERGE_STRATEGY_EDIT:
            out.append(self._edit_effect(event))
        else:
            if strategy == MERGE_STRATEGY_INTERLEAVE and not nested:
                rebase_from = event.payload_get("rebase_from_event_id")
                cut = 0
                if rebase_from is not None:
                    cut = len(out)
                    for index in range(len(out) - 1, -1, -1):
                        if out[index].id == rebase_from:
                            cut = index + 1
                            break
                del out[cut:]
            for replay_id in event.payload_get("replay_event_ids", []):
                self._expand_into(self._timeline.get(replay_id), out, expanding)
            out.append(event)
        expanding.discard(event.id)

    def _edit_effect(self, merge_event: Event) -> Event:
        edit = merge_event.payload_get("edit") or {}
        return Event(
            id=merge_event.id,
            parent_ids=merge_event.parent_ids,
            branch_id=merge_event.branch_id,
            event_type=edit.get("event_type", DEFAULT_OBJECT_EVENT_TYPE),
            payload=edit.get("payload") or {},
            timestamp=merge_event.timestamp,
            object_id=edit.get("object_id"),
        )

    # --- Branch lifecycle ---

    def observed_objects(self, branch_id: str) -> List[str]:
        with self._lock:
            return sorted(object_id for (object_id, b) in self._cache if b == branch_id)

    def clone_branch(self, parent_branch_id: str, child_branch_id: str,
                     fork_point_event_id: Optional[str], fork_event_id: Optional[str]) -> int:
        """
        Seeds the child's cache with deep copies of every object observed on the parent,
        projected at the fork point. Returns the number of cloned objects.
        """
        with self._lock:
            cloned = 0
            for object_id in self.observed_objects(parent_branch_id):
                source = self._cache[(object_id, parent_branch_id)]
                if source.cursor_event_id != fork_point_event_id:
                    source = self._replay(object_id, parent_branch_id, fork_point_event_id)
                self._cache[(object_id, child_branch_id)] = source.clone(
                    branch_id=child_branch_id, cursor_event_id=fork_event_id)
                cloned += 1
        logger.debug(f"[{self.owner_id}] Cloned {cloned} object states from '{parent_branch_id}' to '{child_branch_id}'")
        return cloned

    def drop_branch(self, branch_id: str) -> int:
        with self._lock:
            keys = [k for k in self._cache if k[1] == branch_id]
            for key in keys:
                del self._cache[key]
        return len(keys)

    @property
    def full_replay_count(self) -> int:
        return self._full_replays
