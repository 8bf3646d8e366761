"""
Branch Manager Component
Creates forks, performs merges and tracks primary-timeline designation.
"""
import logging
import time
import uuid
from typing import Dict, Any, Optional, List

from ..base_component import Component
from elements.component_registry import register_component

from .coherence_validator import CoherenceValidator
from .errors import DecoherenceError, DecoherenceCode, MergeError
from .loom_types import (
    Branch, Event, NewEvent, TimelineContext, EVENT_TIMELINE_FORK, EVENT_TIMELINE_MERGE,
    DEFAULT_OBJECT_EVENT_TYPE,
)
from .state_projector import (
    StateProjectorComponent, MERGE_STRATEGY_APPEND, MERGE_STRATEGY_INTERLEAVE, MERGE_STRATEGY_EDIT,
)
from .timeline_component import TimelineComponent

logger = logging.getLogger(__name__)

MERGE_STRATEGIES = (MERGE_STRATEGY_APPEND, MERGE_STRATEGY_INTERLEAVE, MERGE_STRATEGY_EDIT)


@register_component
class BranchManagerComponent(Component):
    """
    Fork, merge and primary designation for one space.

    Fork and merge hold the timeline's metadata lock for the whole operation.
    The event-store lock is only taken inside individual appends, so readers
    and writers on other branches are not blocked by a state clone.
    """
    COMPONENT_TYPE = "BranchManagerComponent"
    DEPENDENCIES = ["TimelineComponent", "CoherenceValidator", "StateProjectorComponent"]

    def __init__(self, timeline: Optional[TimelineComponent] = None,
                 validator: Optional[CoherenceValidator] = None,
                 projector: Optional[StateProjectorComponent] = None, **kwargs):
        super().__init__(**kwargs)
        self._timeline = timeline
        self._validator = validator
        self._projector = projector

    def _on_initialize(self) -> bool:
        self._timeline = self._timeline or self.get_sibling_component(TimelineComponent)
        self._validator = self._validator or self.get_sibling_component(CoherenceValidator)
        self._projector = self._projector or self.get_sibling_component(StateProjectorComponent)
        if not (self._timeline and self._validator and self._projector):
            logger.error(f"[{self.owner_id}] BranchManagerComponent is missing a required sibling component")
            return False
        return True

    # --- Fork ---

    def fork(self, parent_context: TimelineContext, reason: Optional[str] = None,
             creator: Optional[str] = None, branch_id: Optional[str] = None) -> TimelineContext:
        """
        Creates a non-primary timeline that branches off at parent_context.last_event_id.

        The new branch starts with a timeline_fork event whose parent is the fork
        point, and a deep copy of every object state observed on the parent.

        Returns:
            A context pointing at the fork event on the new branch.

        Raises:
            DecoherenceError: if parent_context fails validation.
            ValueError: if the parent context has no cursor or branch_id is taken.
        """
        with self._timeline.metadata_lock:
            parent = self._validator.validate(parent_context)
            fork_point = parent_context.last_event_id
            if fork_point is None:
                raise ValueError(f"Cannot fork timeline '{parent.branch_id}' before its first event")

            new_branch_id = branch_id or f"timeline_{uuid.uuid4().hex[:12]}"
            branch = Branch(
                branch_id=new_branch_id,
                root_branch_id=parent.root_branch_id,
                parent_branch_id=parent.branch_id,
                fork_point_event_id=fork_point,
                head_event_id=fork_point,
                is_primary=False,
                creator=creator,
                reason=reason,
            )
            self._timeline.register_branch(branch)
            fork_event = self._timeline.append(
                new_branch_id,
                NewEvent(event_type=EVENT_TIMELINE_FORK, payload={
                    "parent_branch_id": parent.branch_id,
                    "fork_point_event_id": fork_point,
                    "reason": reason,
                    "creator": creator,
                }),
                expected_parent_id=fork_point,
            )
            cloned = self._projector.clone_branch(parent.branch_id, new_branch_id, fork_point, fork_event.id)

        logger.info(f"[{self.owner_id}] Forked timeline '{new_branch_id}' from '{parent.branch_id}' at "
                    f"'{fork_point}' ({cloned} object states cloned, reason: {reason})")
        return TimelineContext(branch_id=new_branch_id, is_primary=False,
                               last_event_id=fork_event.id, root_branch_id=branch.root_branch_id)

    # --- Merge ---

    def common_ancestor(self, a_head: Optional[str], b_head: Optional[str]) -> Optional[str]:
        """Deepest event on a_head's first-parent chain that is also an ancestor of b_head."""
        if a_head is None or b_head is None:
            return None
        current: Optional[str] = a_head
        while current is not None:
            if self._timeline.is_ancestor(current, b_head):
                return current
            current = self._timeline.get(current).parent_id
        return None

    def _divergent_events(self, head: Optional[str], other_head: Optional[str]) -> List[Event]:
        """Events on head's first-parent chain that other_head cannot already see, oldest first."""
        collected: List[Event] = []
        current = head
        while current is not None and not self._timeline.is_ancestor(current, other_head):
            event = self._timeline.get(current)
            collected.append(event)
            current = event.parent_id
        collected.reverse()
        return collected

    def merge(self, source_branch_id: str, target_branch_id: str, strategy: str = MERGE_STRATEGY_APPEND,
              edit: Optional[Dict[str, Any]] = None, creator: Optional[str] = None,
              expected_target_head: Optional[str] = None) -> str:
        """
        Writes a single timeline_merge event into the target referencing both heads.

        Args:
            source_branch_id: Branch whose history is brought in.
            target_branch_id: Branch that receives the merge event.
            strategy: 'append', 'interleave' or 'edit'.
            edit: For 'edit', the resulting event: {'object_id', 'payload', 'event_type'}.
            creator: Recorded on the merge event.
            expected_target_head: If given, the merge is rejected with STALE_PARENT
                                  unless the target head still equals it.

        Returns:
            The merge event id.
        """
        if strategy not in MERGE_STRATEGIES:
            raise MergeError(f"Unknown merge strategy '{strategy}'. Expected one of {MERGE_STRATEGIES}")
        if strategy == MERGE_STRATEGY_EDIT and (not edit or "object_id" not in edit):
            raise MergeError("The 'edit' merge strategy requires an edit with an object_id")
        if source_branch_id == target_branch_id:
            raise MergeError("Cannot merge a timeline into itself")

        with self._timeline.metadata_lock:
            source = self._require_coherent(source_branch_id)
            target = self._require_coherent(target_branch_id)
            if source.root_branch_id != target.root_branch_id:
                raise MergeError(f"Timelines '{source_branch_id}' and '{target_branch_id}' do not share a root")

            target_head = target.head_event_id
            source_head = source.head_event_id
            if expected_target_head is not None and expected_target_head != target_head:
                raise DecoherenceError(DecoherenceCode.STALE_PARENT,
                                       f"Target '{target_branch_id}' moved from '{expected_target_head}' "
                                       f"to '{target_head}' before merge", target_branch_id)
            if target_head is None or source_head is None:
                raise MergeError("Cannot merge an empty timeline")

            ancestor = self.common_ancestor(target_head, source_head)
            source_events = self._divergent_events(source_head, target_head)
            payload: Dict[str, Any] = {
                "strategy": strategy,
                "source_branch_id": source_branch_id,
                "target_branch_id": target_branch_id,
                "source_head_event_id": source_head,
                "target_head_event_id": target_head,
                "common_ancestor_event_id": ancestor,
                "creator": creator,
            }

            if strategy == MERGE_STRATEGY_APPEND:
                payload["replay_event_ids"] = [e.id for e in source_events]
            elif strategy == MERGE_STRATEGY_INTERLEAVE:
                target_events = self._divergent_events(target_head, source_head)
                ordered = sorted(target_events + source_events, key=lambda e: (e.timestamp, e.branch_id))
                payload["rebase_from_event_id"] = ancestor
                payload["replay_event_ids"] = [e.id for e in ordered]
            else:
                payload["edit"] = {
                    "object_id": edit["object_id"],
                    "event_type": edit.get("event_type", DEFAULT_OBJECT_EVENT_TYPE),
                    "payload": edit.get("payload") or {},
                }
                # Kept for audit only; never replayed into target state
                payload["retained_source_event_ids"] = [e.id for e in source_events]

            merge_event = self._timeline.append_merge(
                target_branch_id,
                NewEvent(event_type=EVENT_TIMELINE_MERGE, payload=payload,
                         object_id=edit["object_id"] if strategy == MERGE_STRATEGY_EDIT else None),
                expected_parent_id=target_head,
                other_parent_ids=(source_head,),
            )

        logger.info(f"[{self.owner_id}] Merged '{source_branch_id}' into '{target_branch_id}' "
                    f"({strategy}, {len(source_events)} source events) as '{merge_event.id}'")
        return merge_event.id

    def _require_coherent(self, branch_id: str) -> Branch:
        branch = self._timeline.get_branch(branch_id)
        if branch is None or branch.decoherent:
            raise DecoherenceError(DecoherenceCode.BRANCH_DECOHERENT,
                                   f"Timeline '{branch_id}' is unknown or decoherent", branch_id)
        return branch

    # --- Primary designation ---

    def designate_primary(self, branch_id: str) -> Branch:
        """
        Marks branch_id as the primary of its causal subtree. Idempotent.

        Raises:
            DecoherenceError: PRIMARY_CONFLICT if another branch in the subtree is primary,
                              BRANCH_DECOHERENT if the branch is unknown or decohered.
        """
        with self._timeline.metadata_lock:
            branch = self._require_coherent(branch_id)
            if branch.is_primary:
                return branch
            for other in self._timeline.branches():
                if other.is_primary and other.root_branch_id == branch.root_branch_id:
                    raise DecoherenceError(DecoherenceCode.PRIMARY_CONFLICT,
                                           f"Timeline '{other.branch_id}' is already primary for "
                                           f"'{branch.root_branch_id}'", branch_id)
            branch.is_primary = True
            self._timeline.update_branch(branch)
        logger.info(f"[{self.owner_id}] Designated '{branch_id}' as primary timeline")
        return branch

    def demote_primary(self, branch_id: str) -> Branch:
        """Clears the primary flag. Contexts still claiming primary become stale."""
        with self._timeline.metadata_lock:
            branch = self._timeline.get_branch(branch_id)
            if branch is None:
                raise DecoherenceError(DecoherenceCode.BRANCH_DECOHERENT,
                                       f"Unknown timeline '{branch_id}'", branch_id)
            if branch.is_primary:
                branch.is_primary = False
                self._timeline.update_branch(branch)
                logger.info(f"[{self.owner_id}] Demoted primary timeline '{branch_id}'")
        return branch

    # --- Pruning & listing ---

    def prune(self, branch_id: str) -> bool:
        """
        Removes a non-primary leaf branch from the metadata table and drops its
        cached state. Its events stay in the log.
        """
        with self._timeline.metadata_lock:
            branch = self._timeline.get_branch(branch_id)
            if branch is None:
                return False
            if branch.is_primary:
                raise ValueError(f"Cannot prune primary timeline '{branch_id}'")
            children = [b.branch_id for b in self._timeline.branches() if b.parent_branch_id == branch_id]
            if children:
                raise ValueError(f"Cannot prune '{branch_id}': it has forks {children}")
            self._timeline.unregister_branch(branch_id)
            dropped = self._projector.drop_branch(branch_id)
        logger.info(f"[{self.owner_id}] Pruned timeline '{branch_id}' ({dropped} cached states dropped)")
        return True

    def list_branches(self, root_branch_id: Optional[str] = None) -> List[Branch]:
        branches = self._timeline.branches()
        if root_branch_id is not None:
            branches = [b for b in branches if b.root_branch_id == root_branch_id]
        return sorted(branches, key=lambda b: (b.created_at, b.branch_id))

    def branch_info(self, branch_id: str) -> Optional[Dict[str, Any]]:
        branch = self._timeline.get_branch(branch_id)
        if branch is None:
            return None
        info = branch.to_dict()
        info["created_at_readable"] = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(branch.created_at))
        return info
