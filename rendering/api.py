"""
Rendering API

Defines what a renderer hands to the compression engine: RenderElements with
a closed set of kinds, advisory CompressionHints and the RenderDelegate
capability that turns projected state into a RenderElement.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional

from elements.elements.components.space.loom_types import Event, ConnectionSpan, TimelineContext

logger = logging.getLogger(__name__)


class RenderElementKind(Enum):
    """Closed set of renderable element kinds. Delegates are dispatched on this tag."""
    TEXT = "text"                     # Free text (notes, instructions)
    OBJECT_STATE = "object_state"     # Projected state of one object on one branch
    MESSAGE_LIST = "message_list"     # Local conversation-like object
    REMOTE_BUNDLE = "remote_bundle"   # History bundle of a connection span
    STATUS = "status"                 # Space or uplink status line


class RenderingFormat(Enum):
    """Supported rendering formats."""
    TEXT = "text"
    MARKDOWN = "markdown"
    JSON = "json"


@dataclass
class CompressionHint:
    """
    Advisory metadata guiding the compression engine.

    importance ranges 0..1; preserve_verbatim exempts the element from
    every compression step regardless of budget.
    """
    importance: float = 0.5
    related_elements: List[str] = field(default_factory=list)
    suggested_summary: Optional[str] = None
    preserve_verbatim: bool = False

    def __post_init__(self):
        self.importance = min(1.0, max(0.0, float(self.importance)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "importance": self.importance,
            "related_elements": list(self.related_elements),
            "suggested_summary": self.suggested_summary,
            "preserve_verbatim": self.preserve_verbatim,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CompressionHint':
        return cls(
            importance=data.get("importance", 0.5),
            related_elements=list(data.get("related_elements", [])),
            suggested_summary=data.get("suggested_summary"),
            preserve_verbatim=data.get("preserve_verbatim", False),
        )


@dataclass
class RenderElement:
    """
    One renderable unit of agent context.

    Remote bundles carry their span and its events so the compression engine
    can tier and thread them; every other kind is plain content.
    """
    element_id: str
    kind: RenderElementKind
    content: str
    timestamp: float = field(default_factory=time.time)
    hint: CompressionHint = field(default_factory=CompressionHint)
    span: Optional[ConnectionSpan] = None
    events: List[Event] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_remote_bundle(self) -> bool:
        return self.kind == RenderElementKind.REMOTE_BUNDLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "element_id": self.element_id,
            "kind": self.kind.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "hint": self.hint.to_dict(),
            "span": self.span.to_dict() if self.span else None,
            "events": [e.to_dict() for e in self.events],
            "attributes": dict(self.attributes),
        }


class RenderingOptions:
    """
    Options for controlling how an element is rendered.
    """

    def __init__(self,
                 format: RenderingFormat = RenderingFormat.TEXT,
                 max_length: Optional[int] = None,
                 include_details: bool = True,
                 timeline_context: Optional[TimelineContext] = None,
                 custom_options: Dict[str, Any] = None):
        """
        Initialize rendering options.

        Args:
            format: Desired output format
            max_length: Maximum length of the rendered content
            include_details: Whether to include detailed information
            timeline_context: Branch the rendered state was read from
            custom_options: Additional custom options
        """
        self.format = format
        self.max_length = max_length
        self.include_details = include_details
        self.timeline_context = timeline_context
        self.custom_options = custom_options or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": self.format.value,
            "max_length": self.max_length,
            "include_details": self.include_details,
            "timeline_context": self.timeline_context.to_dict() if self.timeline_context else None,
            "custom_options": self.custom_options,
        }


class RenderDelegate(ABC):
    """
    Capability that renders one kind of state into a RenderElement.

    Delegates declare the kind they produce; a DelegateRegistry holds at most
    one delegate per kind.
    """

    KIND: RenderElementKind = RenderElementKind.TEXT

    @abstractmethod
    def render(self, state: Dict[str, Any], options: RenderingOptions) -> RenderElement:
        """
        Render state into a RenderElement of this delegate's KIND.

        Args:
            state: The state to render (projected object state, span data, ...)
            options: Rendering options

        Returns:
            The rendered element
        """
        pass

    def clip(self, content: str, options: RenderingOptions) -> str:
        if options.max_length is not None and len(content) > options.max_length:
            return content[:options.max_length]
        return content
