"""
Render Delegates

Standard RenderDelegates for each RenderElementKind and the registry that
dispatches on kind.
"""

import json
import logging
from typing import Dict, Any, List, Optional

from elements.elements.components.utils.compression_utils import BundleMessage, format_message

from .api import (
    RenderDelegate,
    RenderElement,
    RenderElementKind,
    RenderingOptions,
    RenderingFormat,
    CompressionHint,
)

logger = logging.getLogger(__name__)


def _hint_from(state: Dict[str, Any]) -> CompressionHint:
    hint = state.get("hint")
    if isinstance(hint, CompressionHint):
        return hint
    if isinstance(hint, dict):
        return CompressionHint.from_dict(hint)
    return CompressionHint()


class TextDelegate(RenderDelegate):
    KIND = RenderElementKind.TEXT

    def render(self, state: Dict[str, Any], options: RenderingOptions) -> RenderElement:
        kwargs = {"timestamp": state["timestamp"]} if "timestamp" in state else {}
        return RenderElement(
            element_id=state["element_id"],
            kind=self.KIND,
            content=self.clip(str(state.get("text", "")), options),
            hint=_hint_from(state),
            **kwargs,
        )


class ObjectStateDelegate(RenderDelegate):
    """Renders a projected ObjectState dict (see ObjectState.to_dict)."""
    KIND = RenderElementKind.OBJECT_STATE

    def render(self, state: Dict[str, Any], options: RenderingOptions) -> RenderElement:
        object_id = state["object_id"]
        value = state.get("value")
        if options.format == RenderingFormat.JSON:
            body = json.dumps(value, sort_keys=True, default=str)
        elif isinstance(value, dict):
            body = "\n".join(f"- {k}: {v}" for k, v in sorted(value.items()))
        else:
            body = str(value)
        header = f"## {object_id}" if options.format == RenderingFormat.MARKDOWN else f"[{object_id}]"
        if options.include_details:
            header += f" (branch {state.get('branch_id')}, v{state.get('version', 0)})"
        kwargs = {"timestamp": state["timestamp"]} if "timestamp" in state else {}
        return RenderElement(
            element_id=state.get("element_id", f"{state.get('branch_id')}:{object_id}"),
            kind=self.KIND,
            content=self.clip(f"{header}\n{body}", options),
            hint=_hint_from(state),
            attributes={"object_id": object_id, "branch_id": state.get("branch_id")},
            **kwargs,
        )


class MessageListDelegate(RenderDelegate):
    """Renders an object whose state is a list of message dicts ({'sender', 'text'})."""
    KIND = RenderElementKind.MESSAGE_LIST

    def render(self, state: Dict[str, Any], options: RenderingOptions) -> RenderElement:
        messages = state.get("messages") or []
        lines = [f"{m.get('sender', 'unknown')}: {m.get('text', '')}" for m in messages]
        kwargs = {"timestamp": state["timestamp"]} if "timestamp" in state else {}
        return RenderElement(
            element_id=state["element_id"],
            kind=self.KIND,
            content=self.clip("\n".join(lines), options),
            hint=_hint_from(state),
            attributes={"message_count": len(messages)},
            **kwargs,
        )


class RemoteBundleDelegate(RenderDelegate):
    """
    Renders a history bundle: state carries 'span' (ConnectionSpan) and 'events'.
    The span and events stay on the element for tiered compression.
    """
    KIND = RenderElementKind.REMOTE_BUNDLE

    def render(self, state: Dict[str, Any], options: RenderingOptions) -> RenderElement:
        span = state["span"]
        events = list(state.get("events") or [])
        messages = [BundleMessage.from_event(e) for e in events]
        content = "\n".join(format_message(m) for m in messages)
        timestamp = span.end_time or (events[-1].timestamp if events else span.start_time)
        return RenderElement(
            element_id=state.get("element_id", span.id),
            kind=self.KIND,
            content=content,
            timestamp=timestamp,
            hint=_hint_from(state),
            span=span,
            events=events,
            attributes={"remote_space_id": span.remote_space_id, "interrupted": span.interrupted},
        )


class StatusDelegate(RenderDelegate):
    KIND = RenderElementKind.STATUS

    def render(self, state: Dict[str, Any], options: RenderingOptions) -> RenderElement:
        parts = [f"{k}={v}" for k, v in sorted(state.items()) if k not in ("element_id", "hint")]
        return RenderElement(
            element_id=state["element_id"],
            kind=self.KIND,
            content=self.clip(" ".join(parts), options),
            hint=_hint_from(state),
        )


class DelegateRegistry:
    """
    Maps each RenderElementKind to one RenderDelegate.
    """

    def __init__(self, delegates: Optional[List[RenderDelegate]] = None):
        self._delegates: Dict[RenderElementKind, RenderDelegate] = {}
        for delegate in delegates or []:
            self.register(delegate)

    @classmethod
    def with_defaults(cls) -> 'DelegateRegistry':
        return cls([TextDelegate(), ObjectStateDelegate(), MessageListDelegate(),
                    RemoteBundleDelegate(), StatusDelegate()])

    def register(self, delegate: RenderDelegate) -> None:
        if not isinstance(delegate.KIND, RenderElementKind):
            raise TypeError(f"{type(delegate).__name__}.KIND must be a RenderElementKind")
        if delegate.KIND in self._delegates:
            logger.debug(f"Replacing delegate for {delegate.KIND.value}")
        self._delegates[delegate.KIND] = delegate

    def get(self, kind: RenderElementKind) -> Optional[RenderDelegate]:
        return self._delegates.get(kind)

    def kinds(self) -> List[RenderElementKind]:
        return list(self._delegates.keys())

    def render(self, kind: RenderElementKind, state: Dict[str, Any],
               options: Optional[RenderingOptions] = None) -> RenderElement:
        """
        Raises:
            KeyError: no delegate registered for kind.
        """
        delegate = self._delegates.get(kind)
        if delegate is None:
            raise KeyError(f"No render delegate registered for kind '{kind.value}'")
        element = delegate.render(state, options or RenderingOptions())
        if element.kind != kind:
            raise ValueError(f"{type(delegate).__name__} produced kind '{element.kind.value}' for '{kind.value}'")
        return element
