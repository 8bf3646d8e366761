"""
Agent Session
Per-agent coordinator that turns space changes and uplink history into a
budgeted context through the render delegates and the compression engine.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional, List, Set, Tuple

from host.config import CompressionConfig
from rendering.api import RenderElement, RenderElementKind, RenderingOptions, CompressionHint
from rendering.delegates import DelegateRegistry

from .base import BaseElement
from .space import Space
from .uplink import UplinkProxy
from .components.compression_engine_component import CompressionEngineComponent, CompressedAssembly
from .components.space.loom_types import StateChangeNotification, TimelineContext
from .components.uplink.errors import UplinkError

logger = logging.getLogger(__name__)


class SessionPhase(Enum):
    IDLE = "idle"
    RENDERING = "rendering"


@dataclass
class SessionContext:
    """
    Everything one agent session carries between calls: the phase, the branch
    it reads each space from, the changes not yet rendered and its focus.
    Owned by exactly one AgentSession; nothing here is shared globally.
    """
    session_id: str
    phase: SessionPhase = SessionPhase.IDLE
    timeline_contexts: Dict[str, TimelineContext] = field(default_factory=dict)
    pending_updates: List[StateChangeNotification] = field(default_factory=list)
    focus_topics: List[str] = field(default_factory=list)
    last_rendered_at: Optional[float] = None


class AgentSession(BaseElement):
    """
    Coordinator for one agent's view of its spaces and uplinks.

    Subscribes to each watched space's notifications, keeps the pending
    changes in its SessionContext and, on build_context(), renders watched
    objects and remote history bundles and compresses them to the budget.
    """

    def __init__(self, element_id: str, name: str, description: str = "",
                 delegates: Optional[DelegateRegistry] = None,
                 compression_config: Optional[CompressionConfig] = None):
        super().__init__(element_id=element_id, name=name, description=description)
        self.context = SessionContext(session_id=element_id)
        self.delegates = delegates or DelegateRegistry.with_defaults()
        self._engine: Optional[CompressionEngineComponent] = self.add_component(
            CompressionEngineComponent, config=compression_config)
        self._spaces: Dict[str, Space] = {}
        self._subscriptions: Dict[str, str] = {}
        self._watched_objects: Dict[str, Set[str]] = {}
        self._uplinks: Dict[str, UplinkProxy] = {}
        self._hints: Dict[str, CompressionHint] = {}

    @property
    def engine(self) -> CompressionEngineComponent:
        return self._engine

    # --- Sources ---

    def watch_space(self, space: Space, timeline_context: Optional[TimelineContext] = None,
                    object_ids: Optional[List[str]] = None) -> None:
        """
        Follows a space on one branch (the primary when no context is given).
        Objects named in object_ids are always rendered; others are rendered
        once they change.
        """
        context = timeline_context or space.context_for()
        self.context.timeline_contexts[space.id] = context
        self._spaces[space.id] = space
        self._watched_objects.setdefault(space.id, set()).update(object_ids or [])
        previous = self._subscriptions.pop(space.id, None)
        if previous:
            space.notifications.unsubscribe(previous)
        self._subscriptions[space.id] = space.on_state_change(self._on_state_change, branch_id=context.branch_id)
        logger.info(f"[{self.id}] Watching space {space.id} on branch {context.branch_id}")

    def unwatch_space(self, space_id: str) -> None:
        space = self._spaces.pop(space_id, None)
        subscription = self._subscriptions.pop(space_id, None)
        if space and subscription:
            space.notifications.unsubscribe(subscription)
        self.context.timeline_contexts.pop(space_id, None)
        self._watched_objects.pop(space_id, None)

    def add_uplink(self, proxy: UplinkProxy) -> None:
        self._uplinks[proxy.id] = proxy

    def set_focus(self, topics: List[str]) -> None:
        self.context.focus_topics = list(topics)

    def set_hint(self, element_id: str, hint: CompressionHint) -> None:
        self._hints[element_id] = hint

    def _on_state_change(self, notification: StateChangeNotification) -> None:
        self.context.pending_updates.append(notification)
        if notification.object_id:
            self._watched_objects.setdefault(notification.space_id, set()).add(notification.object_id)

    # --- Rendering ---

    def _state_elements(self, options: RenderingOptions) -> List[RenderElement]:
        latest: Dict[Tuple[str, str], float] = {}
        for update in self.context.pending_updates:
            if update.object_id:
                latest[(update.space_id, update.object_id)] = update.changed_at

        elements = []
        for space_id, space in self._spaces.items():
            context = self.context.timeline_contexts[space_id]
            for object_id in sorted(self._watched_objects.get(space_id, ())):
                state = space.read_state(object_id, context, actor_id=self.id).to_dict()
                state["element_id"] = f"{space_id}:{context.branch_id}:{object_id}"
                state["timestamp"] = latest.get((space_id, object_id), self.context.last_rendered_at or time.time())
                elements.append(self.delegates.render(RenderElementKind.OBJECT_STATE, state, options))
        return elements

    async def _bundle_elements(self, options: RenderingOptions, timeout: Optional[float]) -> List[RenderElement]:
        elements = []
        for proxy in self._uplinks.values():
            for span in proxy.spans():
                try:
                    events = await proxy.history_bundle(span.id, timeout=timeout)
                except UplinkError as e:
                    logger.warning(f"[{self.id}] History for span {span.id} of {proxy.remote_space_id} unavailable: {e}")
                    continue
                if not events:
                    continue
                elements.append(self.delegates.render(
                    RenderElementKind.REMOTE_BUNDLE, {"span": span, "events": events}, options))
        return elements

    async def build_context(self, budget: Optional[int] = None, now: Optional[float] = None,
                            history_timeout: Optional[float] = None,
                            extra_elements: Optional[List[RenderElement]] = None) -> CompressedAssembly:
        """
        Renders every watched source and compresses the result to budget.
        Pending updates are consumed only when rendering succeeds.

        Raises:
            DecoherenceError: a watched branch can no longer be read.
        """
        self.context.phase = SessionPhase.RENDERING
        try:
            options = RenderingOptions()
            elements = list(extra_elements or [])
            elements.extend(await self._bundle_elements(options, history_timeout))
            elements.extend(self._state_elements(options))
            assembly = self._engine.compress(elements, budget=budget, hints=self._hints,
                                             focus_topics=self.context.focus_topics, now=now)
            self.context.pending_updates = []
            self.context.last_rendered_at = now if now is not None else time.time()
            return assembly
        finally:
            self.context.phase = SessionPhase.IDLE

    def close(self) -> None:
        for space_id in list(self._spaces):
            self.unwatch_space(space_id)
        self._uplinks.clear()

    def describe(self) -> Dict[str, Any]:
        return {
            "session_id": self.context.session_id,
            "phase": self.context.phase.value,
            "spaces": {sid: ctx.to_dict() for sid, ctx in self.context.timeline_contexts.items()},
            "pending_updates": len(self.context.pending_updates),
            "uplinks": sorted(self._uplinks),
            "focus_topics": list(self.context.focus_topics),
        }
