"""
Coherence Validator Component
Decides whether an operation against a timeline context is still legal.
"""
import logging
import threading
from typing import Dict, Optional, Set

from ..base_component import Component
from elements.component_registry import register_component

from .errors import DecoherenceError, DecoherenceCode, EventNotFoundError
from .loom_types import Branch, TimelineContext
from .timeline_component import TimelineComponent

logger = logging.getLogger(__name__)


@register_component
class CoherenceValidator(Component):
    """
    Re-validates client-held TimelineContexts against the authoritative log.

    A context is only a cursor; the branch it names may have been advanced,
    demoted or decohered since it was issued. Every inbound action and every
    fork passes through validate() first.
    """
    COMPONENT_TYPE = "CoherenceValidator"
    DEPENDENCIES = ["TimelineComponent"]

    def __init__(self, timeline: Optional[TimelineComponent] = None, **kwargs):
        super().__init__(**kwargs)
        self._timeline = timeline
        # root_branch_id -> actors that have read or written in that subtree
        self._entangled: Dict[str, Set[str]] = {}
        self._entangled_lock = threading.Lock()

    def _on_initialize(self) -> bool:
        if self._timeline is None:
            self._timeline = self.get_sibling_component(TimelineComponent)
        if self._timeline is None:
            logger.error(f"[{self.owner_id}] CoherenceValidator requires a TimelineComponent")
            return False
        return True

    @property
    def timeline(self) -> TimelineComponent:
        return self._timeline

    def validate(self, context: TimelineContext) -> Branch:
        """
        Checks a context against the current branch table and head.

        Returns:
            The Branch the context refers to.

        Raises:
            DecoherenceError: BRANCH_DECOHERENT for unknown or decohered branches,
                              STALE_CONTEXT when the cursor is no longer on the
                              branch lineage or the primary claim is outdated.
        """
        branch = self._timeline.get_branch(context.branch_id)
        if branch is None:
            raise DecoherenceError(DecoherenceCode.BRANCH_DECOHERENT,
                                   f"Unknown timeline '{context.branch_id}'", context.branch_id)
        if branch.decoherent:
            raise DecoherenceError(DecoherenceCode.BRANCH_DECOHERENT,
                                   f"Timeline '{branch.branch_id}' is decoherent: {branch.decoherence_reason}",
                                   branch.branch_id)

        if context.is_primary and not branch.is_primary:
            raise DecoherenceError(DecoherenceCode.STALE_CONTEXT,
                                   f"Context claims primary but '{branch.branch_id}' is no longer primary",
                                   branch.branch_id)
        if context.root_branch_id != branch.root_branch_id:
            raise DecoherenceError(DecoherenceCode.STALE_CONTEXT,
                                   f"Context root '{context.root_branch_id}' does not match "
                                   f"'{branch.root_branch_id}'", branch.branch_id)

        head = branch.head_event_id
        self._check_head_structure(branch)

        if context.last_event_id is None:
            # A cursor from before the root event is on every root lineage
            if branch.is_root:
                return branch
            raise DecoherenceError(DecoherenceCode.STALE_CONTEXT,
                                   f"Context has no cursor but '{branch.branch_id}' was forked at "
                                   f"'{branch.fork_point_event_id}'", branch.branch_id)

        if not self._timeline.has_event(context.last_event_id):
            raise DecoherenceError(DecoherenceCode.STALE_CONTEXT,
                                   f"Context cursor '{context.last_event_id}' is not in the log",
                                   branch.branch_id)
        if not self._timeline.is_ancestor(context.last_event_id, head):
            raise DecoherenceError(DecoherenceCode.STALE_CONTEXT,
                                   f"Context cursor '{context.last_event_id}' is not on the lineage of "
                                   f"'{branch.branch_id}' head '{head}'", branch.branch_id)
        return branch

    def _check_head_structure(self, branch: Branch) -> None:
        """Head must exist and belong to this branch or be its fork point."""
        head = branch.head_event_id
        if head is None:
            return
        try:
            head_event = self._timeline.get(head)
        except EventNotFoundError:
            reason = f"head '{head}' missing from log"
            self._timeline.mark_decoherent(branch.branch_id, reason)
            raise DecoherenceError(DecoherenceCode.BRANCH_DECOHERENT, reason, branch.branch_id)
        if head_event.branch_id != branch.branch_id and head != branch.fork_point_event_id:
            reason = f"head '{head}' belongs to timeline '{head_event.branch_id}'"
            self._timeline.mark_decoherent(branch.branch_id, reason)
            raise DecoherenceError(DecoherenceCode.BRANCH_DECOHERENT, reason, branch.branch_id)

    # --- Entanglement ---

    def record_entanglement(self, root_branch_id: str, actor_id: Optional[str]) -> None:
        """Records that actor_id has read or written events in the subtree rooted at root_branch_id."""
        if not actor_id:
            return
        with self._entangled_lock:
            self._entangled.setdefault(root_branch_id, set()).add(actor_id)

    def is_entangled(self, root_branch_id: str, actor_id: Optional[str]) -> bool:
        if not actor_id:
            return False
        with self._entangled_lock:
            return actor_id in self._entangled.get(root_branch_id, set())

    def validate_for_action(self, context: TimelineContext, actor_id: Optional[str] = None) -> Branch:
        """
        validate() plus the entanglement rule: a forked subtree with no primary
        refuses actions from actors that already touched it.

        Raises:
            DecoherenceError: any validate() code, or PRIMARY_UNDESIGNATED.
        """
        branch = self.validate(context)
        if actor_id and self.is_entangled(branch.root_branch_id, actor_id):
            subtree = [b for b in self._timeline.branches() if b.root_branch_id == branch.root_branch_id]
            has_forks = len(subtree) > 1
            has_primary = any(b.is_primary for b in subtree)
            if has_forks and not has_primary:
                raise DecoherenceError(
                    DecoherenceCode.PRIMARY_UNDESIGNATED,
                    f"Subtree '{branch.root_branch_id}' has forks but no primary; "
                    f"actor '{actor_id}' must wait for a designation", branch.branch_id)
        return branch
