"""
Loom Data Structures

Value types shared by the timeline, projector, branch manager and uplink:
events, branch metadata, timeline contexts and projected object state.
"""

import copy
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Tuple, Set

# Constants
DEFAULT_TIMELINE_ID = "primary"

# System event types
EVENT_TIMELINE_FORK = "timeline_fork"
EVENT_TIMELINE_MERGE = "timeline_merge"
DEFAULT_OBJECT_EVENT_TYPE = "object_updated"


@dataclass(frozen=True, init=False)
class Event:
    """
    A single immutable node in the Loom DAG.

    parent_ids is empty only for a branch root. Only timeline_merge events
    carry more than one parent; the first parent is always the lineage the
    event was appended to.

    The payload is copied in on construction and every read of .payload
    returns a fresh copy, so no holder of an Event can change logged history.
    """
    id: str
    parent_ids: Tuple[str, ...]
    branch_id: str
    event_type: str
    _payload: Dict[str, Any] = field(repr=False)
    timestamp: float
    object_id: Optional[str] = None

    def __init__(self, id: str, parent_ids: Tuple[str, ...], branch_id: str, event_type: str,
                 payload: Optional[Dict[str, Any]], timestamp: float, object_id: Optional[str] = None):
        object.__setattr__(self, "id", id)
        object.__setattr__(self, "parent_ids", tuple(parent_ids))
        object.__setattr__(self, "branch_id", branch_id)
        object.__setattr__(self, "event_type", event_type)
        object.__setattr__(self, "_payload", copy.deepcopy(payload) if payload is not None else {})
        object.__setattr__(self, "timestamp", timestamp)
        object.__setattr__(self, "object_id", object_id)

    @property
    def payload(self) -> Dict[str, Any]:
        return copy.deepcopy(self._payload)

    def payload_get(self, key: str, default: Any = None) -> Any:
        """Copy of one payload entry, without copying the whole payload."""
        return copy.deepcopy(self._payload.get(key, default))

    @property
    def parent_id(self) -> Optional[str]:
        return self.parent_ids[0] if self.parent_ids else None

    @property
    def is_merge(self) -> bool:
        return self.event_type == EVENT_TIMELINE_MERGE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage and the wire."""
        return {
            "id": self.id,
            "parent_ids": list(self.parent_ids),
            "branch_id": self.branch_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "object_id": self.object_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Event':
        """Create from dictionary (for loading from storage)."""
        return cls(
            id=data["id"],
            parent_ids=tuple(data.get("parent_ids") or ()),
            branch_id=data["branch_id"],
            event_type=data["event_type"],
            payload=data.get("payload") or {},
            timestamp=data["timestamp"],
            object_id=data.get("object_id"),
        )


@dataclass
class NewEvent:
    """Candidate event handed to TimelineComponent.append before it gets an id."""
    event_type: str = DEFAULT_OBJECT_EVENT_TYPE
    payload: Dict[str, Any] = field(default_factory=dict)
    object_id: Optional[str] = None
    timestamp: Optional[float] = None
    event_id: Optional[str] = None


@dataclass
class Branch:
    """Metadata for one timeline in a space."""
    branch_id: str
    root_branch_id: str
    parent_branch_id: Optional[str] = None
    fork_point_event_id: Optional[str] = None
    head_event_id: Optional[str] = None
    is_primary: bool = False
    created_at: float = field(default_factory=time.time)
    creator: Optional[str] = None
    reason: Optional[str] = None
    decoherent: bool = False
    decoherence_reason: Optional[str] = None

    @property
    def is_root(self) -> bool:
        return self.parent_branch_id is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch_id": self.branch_id,
            "root_branch_id": self.root_branch_id,
            "parent_branch_id": self.parent_branch_id,
            "fork_point_event_id": self.fork_point_event_id,
            "head_event_id": self.head_event_id,
            "is_primary": self.is_primary,
            "created_at": self.created_at,
            "creator": self.creator,
            "reason": self.reason,
            "decoherent": self.decoherent,
            "decoherence_reason": self.decoherence_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Branch':
        return cls(
            branch_id=data["branch_id"],
            root_branch_id=data.get("root_branch_id") or data["branch_id"],
            parent_branch_id=data.get("parent_branch_id"),
            fork_point_event_id=data.get("fork_point_event_id"),
            head_event_id=data.get("head_event_id"),
            is_primary=data.get("is_primary", False),
            created_at=data.get("created_at", time.time()),
            creator=data.get("creator"),
            reason=data.get("reason"),
            decoherent=data.get("decoherent", False),
            decoherence_reason=data.get("decoherence_reason"),
        )


@dataclass(frozen=True)
class TimelineContext:
    """
    Client-held cursor into a branch.

    Not authoritative: every use is re-validated by the CoherenceValidator
    because the branch may have moved or decohered since it was issued.
    """
    branch_id: str
    is_primary: bool
    last_event_id: Optional[str]
    root_branch_id: str

    def advanced_to(self, event_id: str, is_primary: Optional[bool] = None) -> 'TimelineContext':
        return TimelineContext(
            branch_id=self.branch_id,
            is_primary=self.is_primary if is_primary is None else is_primary,
            last_event_id=event_id,
            root_branch_id=self.root_branch_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch_id": self.branch_id,
            "is_primary": self.is_primary,
            "last_event_id": self.last_event_id,
            "root_branch_id": self.root_branch_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TimelineContext':
        return cls(
            branch_id=data["branch_id"],
            is_primary=bool(data.get("is_primary", False)),
            last_event_id=data.get("last_event_id"),
            root_branch_id=data.get("root_branch_id") or data["branch_id"],
        )

    @classmethod
    def for_branch(cls, branch: Branch) -> 'TimelineContext':
        return cls(
            branch_id=branch.branch_id,
            is_primary=branch.is_primary,
            last_event_id=branch.head_event_id,
            root_branch_id=branch.root_branch_id,
        )


@dataclass
class ObjectState:
    """Projection of one object on one branch, folded up to cursor_event_id."""
    object_id: str
    branch_id: str
    value: Any
    cursor_event_id: Optional[str] = None
    applied_event_ids: Set[str] = field(default_factory=set)
    version: int = 0

    def clone(self, branch_id: Optional[str] = None, cursor_event_id: Optional[str] = None) -> 'ObjectState':
        """Deep copy; no mutable structure is shared with the source."""
        return ObjectState(
            object_id=self.object_id,
            branch_id=branch_id or self.branch_id,
            value=copy.deepcopy(self.value),
            cursor_event_id=cursor_event_id if cursor_event_id is not None else self.cursor_event_id,
            applied_event_ids=set(self.applied_event_ids),
            version=self.version,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_id": self.object_id,
            "branch_id": self.branch_id,
            "value": copy.deepcopy(self.value),
            "cursor_event_id": self.cursor_event_id,
            "version": self.version,
        }


@dataclass
class SubmitResult:
    """Result of Space.submit_event."""
    event_id: str
    updated_context: TimelineContext


@dataclass
class StateChangeNotification:
    """Payload delivered to rendering consumers via on_state_change."""
    space_id: str
    object_id: Optional[str]
    timeline_context: TimelineContext
    changed_at: float
    event_id: Optional[str] = None
    message: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "space_id": self.space_id,
            "object_id": self.object_id,
            "timeline_context": self.timeline_context.to_dict(),
            "changed_at": self.changed_at,
            "event_id": self.event_id,
        }

    def to_external_payload(self) -> Dict[str, Any]:
        """Shape handed to outward-facing propagation sinks."""
        return {
            "space_id": self.space_id,
            "object_id": self.object_id,
            "message": copy.deepcopy(self.message) if self.message is not None else {},
            "timeline_context": self.timeline_context.to_dict(),
        }


def events_to_dicts(events: List[Event]) -> List[Dict[str, Any]]:
    return [e.to_dict() for e in events]


@dataclass
class ConnectionSpan:
    """
    One contiguous period an uplink proxy was attached to a remote space.

    Only the span is stored locally; the remote events inside it are fetched
    on demand as a history bundle.
    """
    id: str
    remote_space_id: str
    start_event_id: Optional[str]
    start_time: float
    end_event_id: Optional[str] = None
    end_time: Optional[float] = None
    is_active: bool = True
    interrupted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "remote_space_id": self.remote_space_id,
            "start_event_id": self.start_event_id,
            "start_time": self.start_time,
            "end_event_id": self.end_event_id,
            "end_time": self.end_time,
            "is_active": self.is_active,
            "interrupted": self.interrupted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConnectionSpan':
        return cls(
            id=data["id"],
            remote_space_id=data["remote_space_id"],
            start_event_id=data.get("start_event_id"),
            start_time=data.get("start_time", 0.0),
            end_event_id=data.get("end_event_id"),
            end_time=data.get("end_time"),
            is_active=data.get("is_active", False),
            interrupted=data.get("interrupted", False),
        )
