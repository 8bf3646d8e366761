"""
Space
An addressable container hosting one Loom (event log and its timelines).
"""

import logging
import time
from typing import Dict, Any, Optional, List, Callable

from host.observability import get_tracer
from storage import StorageInterface

from .base import BaseElement
from .components.space import (
    TimelineComponent, CoherenceValidator, StateProjectorComponent, BranchManagerComponent,
    NotificationHubComponent,
)
from .components.space.errors import DecoherenceError, DecoherenceCode
from .components.space.loom_types import (
    Event, NewEvent, ObjectState, TimelineContext, SubmitResult, StateChangeNotification,
    DEFAULT_TIMELINE_ID, DEFAULT_OBJECT_EVENT_TYPE,
)
from .components.space.state_projector import StateReducer, MERGE_STRATEGY_APPEND, MERGE_STRATEGY_EDIT

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class Space(BaseElement):
    """
    Coordinator for one space's Loom.

    Functionality lives in the components: TimelineComponent (event log),
    CoherenceValidator, StateProjectorComponent, BranchManagerComponent and
    NotificationHubComponent. The Space gates inbound actions, appends them
    and announces the change; it keeps no timeline state of its own.
    """

    def __init__(self, element_id: str, name: str, description: str = "",
                 storage: Optional[StorageInterface] = None,
                 owns_storage: bool = True,
                 root_branch_id: str = DEFAULT_TIMELINE_ID,
                 max_delivery_attempts: int = 3,
                 retry_delay_seconds: float = 0.0,
                 max_queue_size: int = 1000,
                 max_backlog: int = 1000,
                 default_reducer: Optional[StateReducer] = None):
        super().__init__(element_id=element_id, name=name, description=description)
        self.root_branch_id = root_branch_id

        self._timeline: Optional[TimelineComponent] = self.add_component(
            TimelineComponent, space_id=element_id, storage=storage, owns_storage=owns_storage)
        self._validator: Optional[CoherenceValidator] = self.add_component(CoherenceValidator)
        self._projector: Optional[StateProjectorComponent] = self.add_component(
            StateProjectorComponent, default_reducer=default_reducer)
        self._branch_manager: Optional[BranchManagerComponent] = self.add_component(BranchManagerComponent)
        self._hub: Optional[NotificationHubComponent] = self.add_component(
            NotificationHubComponent, space_id=element_id,
            max_delivery_attempts=max_delivery_attempts, retry_delay_seconds=retry_delay_seconds,
            max_queue_size=max_queue_size, max_backlog=max_backlog)

        missing = self.validate_component_dependencies()
        if missing or not all((self._timeline, self._validator, self._projector, self._branch_manager, self._hub)):
            raise RuntimeError(f"Space {element_id} failed to assemble its components (unsatisfied: {missing})")

        # With storage attached the root is created (or restored) in start()
        if storage is None:
            self._timeline.create_branch_root(root_branch_id, is_primary=True, creator=element_id)

    # --- Component accessors ---

    @property
    def timeline(self) -> TimelineComponent:
        return self._timeline

    @property
    def validator(self) -> CoherenceValidator:
        return self._validator

    @property
    def projector(self) -> StateProjectorComponent:
        return self._projector

    @property
    def branch_manager(self) -> BranchManagerComponent:
        return self._branch_manager

    @property
    def notifications(self) -> NotificationHubComponent:
        return self._hub

    # --- Lifecycle ---

    async def start(self) -> None:
        """Restores persisted timelines (if any) and starts notification delivery."""
        if self._timeline.has_storage:
            await self._timeline.load_from_storage()
            if self._timeline.get_branch(self.root_branch_id) is None:
                self._timeline.create_branch_root(self.root_branch_id, is_primary=True, creator=self.id)
        self._hub.start()
        logger.info(f"[{self.id}] Space started with {len(self._timeline.branches())} timelines")

    async def shutdown(self) -> None:
        await self._hub.drain()
        await self._hub.stop()
        await self._timeline.shutdown()
        logger.info(f"[{self.id}] Space shut down")

    # --- Contexts ---

    def get_primary_timeline(self) -> Optional[str]:
        return self._timeline.get_primary_timeline(self.root_branch_id)

    def context_for(self, branch_id: Optional[str] = None) -> TimelineContext:
        """Fresh context at the current head of branch_id (default: the primary timeline)."""
        branch_id = branch_id or self.get_primary_timeline()
        branch = self._timeline.get_branch(branch_id) if branch_id else None
        if branch is None:
            raise DecoherenceError(DecoherenceCode.BRANCH_DECOHERENT,
                                   f"Unknown timeline '{branch_id}'", branch_id)
        return TimelineContext.for_branch(branch)

    # --- Inbound actions ---

    def submit_event(self, object_id: Optional[str], payload: Dict[str, Any],
                     timeline_context: TimelineContext, event_type: str = DEFAULT_OBJECT_EVENT_TYPE,
                     actor_id: Optional[str] = None) -> SubmitResult:
        """
        Validates timeline_context, appends the event at the branch head and announces it.

        Returns:
            SubmitResult with the new event id and a context advanced to it.

        Raises:
            DecoherenceError: from validation, or STALE_PARENT if another writer
                              advanced the branch between validation and append.
        """
        with tracer.start_as_current_span("space.submit_event") as span:
            span.set_attribute("loom.space_id", self.id)
            span.set_attribute("loom.branch_id", timeline_context.branch_id)
            span.set_attribute("loom.event_type", event_type)

            branch = self._validator.validate_for_action(timeline_context, actor_id)
            expected_head = branch.head_event_id
            event = self._timeline.append(
                branch.branch_id,
                NewEvent(event_type=event_type, payload=payload, object_id=object_id),
                expected_parent_id=expected_head,
            )
            self._validator.record_entanglement(branch.root_branch_id, actor_id)

            updated_context = TimelineContext(branch_id=branch.branch_id, is_primary=branch.is_primary,
                                              last_event_id=event.id, root_branch_id=branch.root_branch_id)
            self._announce(event, updated_context)
            span.set_attribute("loom.event_id", event.id)

        logger.debug(f"[{self.id}] Accepted {event_type} for '{object_id}' on '{branch.branch_id}' as {event.id}")
        return SubmitResult(event_id=event.id, updated_context=updated_context)

    def _announce(self, event: Event, context: TimelineContext) -> None:
        change = StateChangeNotification(
            space_id=self.id,
            object_id=event.object_id,
            timeline_context=context,
            changed_at=event.timestamp,
            event_id=event.id,
            message={"event_type": event.event_type, "payload": event.payload},
        )
        self._hub.publish(context.branch_id, change)

    # --- Reads ---

    def state_of(self, object_id: str, branch_id: Optional[str] = None) -> ObjectState:
        return self._projector.state_of(object_id, branch_id or self.get_primary_timeline())

    def read_state(self, object_id: str, timeline_context: TimelineContext,
                   actor_id: Optional[str] = None) -> ObjectState:
        """state_of for a client context: validates it and records the read for entanglement."""
        branch = self._validator.validate(timeline_context)
        self._validator.record_entanglement(branch.root_branch_id, actor_id)
        return self._projector.state_of(object_id, branch.branch_id)

    def register_reducer(self, object_id: str, reducer: StateReducer) -> None:
        self._projector.register_reducer(object_id, reducer)

    def history_page(self, max_events: int, start_from: Optional[str] = None,
                     branch_id: Optional[str] = None) -> Dict[str, Any]:
        """
        One page of linear history on a timeline (default: primary), oldest first.

        Args:
            max_events: Page size.
            start_from: Return events after this id; None starts at the root.
            branch_id: Timeline to read.

        Returns:
            {'events', 'object_states', 'has_more', 'continuation_token'}; the
            continuation token is the id of the last returned event.
        """
        branch_id = branch_id or self.get_primary_timeline()
        head = self._timeline.head(branch_id)
        pending = self._timeline.chain_until(head, start_from)
        if pending is None:
            raise DecoherenceError(DecoherenceCode.STALE_CONTEXT,
                                   f"'{start_from}' is not on the history of '{branch_id}'", branch_id)
        page = pending[:max(0, max_events)]
        object_ids = sorted({e.object_id for e in page if e.object_id})
        object_states = {oid: self._projector.state_of(oid, branch_id).to_dict() for oid in object_ids}
        return {
            "events": [e.to_dict() for e in page],
            "object_states": object_states,
            "has_more": len(pending) > len(page),
            "continuation_token": page[-1].id if page else start_from,
            "head_event_id": head,
        }

    # --- Branching ---

    def fork(self, timeline_context: TimelineContext, reason: Optional[str] = None,
             creator: Optional[str] = None, branch_id: Optional[str] = None) -> TimelineContext:
        with tracer.start_as_current_span("space.fork") as span:
            span.set_attribute("loom.space_id", self.id)
            span.set_attribute("loom.parent_branch_id", timeline_context.branch_id)
            new_context = self._branch_manager.fork(timeline_context, reason=reason, creator=creator,
                                                    branch_id=branch_id)
            span.set_attribute("loom.branch_id", new_context.branch_id)
        return new_context

    def merge(self, source_branch_id: str, target_branch_id: str, strategy: str = MERGE_STRATEGY_APPEND,
              edit: Optional[Dict[str, Any]] = None, creator: Optional[str] = None,
              expected_target_head: Optional[str] = None) -> str:
        with tracer.start_as_current_span("space.merge") as span:
            span.set_attribute("loom.space_id", self.id)
            span.set_attribute("loom.merge.strategy", strategy)
            merge_event_id = self._branch_manager.merge(source_branch_id, target_branch_id, strategy=strategy,
                                                        edit=edit, creator=creator,
                                                        expected_target_head=expected_target_head)
        merge_event = self._timeline.get(merge_event_id)
        target_context = self.context_for(target_branch_id)
        if strategy == MERGE_STRATEGY_EDIT:
            self._announce(merge_event, target_context)
        else:
            self._hub.publish(target_branch_id, StateChangeNotification(
                space_id=self.id, object_id=None, timeline_context=target_context,
                changed_at=merge_event.timestamp, event_id=merge_event_id,
                message={"event_type": merge_event.event_type, "strategy": strategy,
                         "source_branch_id": source_branch_id}))
        return merge_event_id

    def designate_primary(self, branch_id: str):
        return self._branch_manager.designate_primary(branch_id)

    def demote_primary(self, branch_id: str):
        return self._branch_manager.demote_primary(branch_id)

    def prune(self, branch_id: str) -> bool:
        return self._branch_manager.prune(branch_id)

    def list_branches(self) -> List[Dict[str, Any]]:
        return [b.to_dict() for b in self._branch_manager.list_branches(self.root_branch_id)]

    # --- Subscriptions ---

    def on_state_change(self, callback: Callable[[StateChangeNotification], Any],
                        branch_id: Optional[str] = None) -> str:
        return self._hub.subscribe(callback, branch_id=branch_id)

    def register_external_sink(self, callback: Callable[[Dict[str, Any]], Any]) -> str:
        return self._hub.register_external_sink(callback)

    def add_event_listener(self, listener: Callable[[Event], None]) -> None:
        """Synchronous hook called for every appended event (used by the space host to broadcast)."""
        self._timeline.add_append_listener(listener)

    def remove_event_listener(self, listener: Callable[[Event], None]) -> None:
        self._timeline.remove_append_listener(listener)

    def summary(self) -> Dict[str, Any]:
        primary = self.get_primary_timeline()
        return {
            "space_id": self.id,
            "name": self.name,
            "description": self.description,
            "primary_branch_id": primary,
            "head_event_id": self._timeline.head(primary) if primary else None,
            "branch_count": len(self._timeline.branches()),
            "event_count": self._timeline.event_count(),
            "summarized_at": time.time(),
        }
