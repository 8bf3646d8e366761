"""
Uplink Wire Protocol
Message shapes exchanged between an uplink proxy and a remote space host.
"""

import hashlib
import hmac
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List

from ..space.loom_types import Event

STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"
STATUS_OK = "ok"
STATUS_ERROR = "error"

CONNECTION_TYPE_UPLINK = "uplink"

ACTION_SUBMIT_EVENT = "submit_event"

# Socket.IO event names
SIO_EVENT_CONNECT_SPACE = "loom_connect"
SIO_EVENT_HISTORY = "loom_history"
SIO_EVENT_ACTION = "loom_action"
SIO_EVENT_BROADCAST = "loom_broadcast"


def sign_agent_id(agent_id: str, secret: str) -> str:
    """HMAC-SHA256 of the agent id, hex encoded."""
    return hmac.new(secret.encode("utf-8"), agent_id.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_agent_signature(agent_id: str, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_agent_id(agent_id, secret), signature)


@dataclass
class ConnectRequest:
    agent_credentials: Dict[str, Any]
    target_space_id: str
    connection_type: str = CONNECTION_TYPE_UPLINK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_credentials": dict(self.agent_credentials),
            "target_space_id": self.target_space_id,
            "connection_type": self.connection_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConnectRequest':
        return cls(
            agent_credentials=dict(data.get("agent_credentials") or {}),
            target_space_id=data["target_space_id"],
            connection_type=data.get("connection_type", CONNECTION_TYPE_UPLINK),
        )


@dataclass
class ConnectResponse:
    status: str
    reason: Optional[str] = None
    connection_params: Optional[Dict[str, Any]] = None
    space_summary: Optional[Dict[str, Any]] = None

    @property
    def accepted(self) -> bool:
        return self.status == STATUS_ACCEPTED

    @property
    def session_id(self) -> Optional[str]:
        return (self.connection_params or {}).get("session_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "connection_params": self.connection_params,
            "space_summary": self.space_summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConnectResponse':
        return cls(
            status=data.get("status", STATUS_REJECTED),
            reason=data.get("reason"),
            connection_params=data.get("connection_params"),
            space_summary=data.get("space_summary"),
        )


@dataclass
class HistoryRequest:
    space_id: str
    max_events: int
    start_from: Optional[str] = None
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "space_id": self.space_id,
            "max_events": self.max_events,
            "start_from": self.start_from,
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoryRequest':
        return cls(
            space_id=data["space_id"],
            max_events=int(data.get("max_events", 0)),
            start_from=data.get("start_from"),
            session_id=data.get("session_id"),
        )


@dataclass
class HistoryResponse:
    events: List[Event] = field(default_factory=list)
    object_states: Dict[str, Any] = field(default_factory=dict)
    has_more: bool = False
    continuation_token: Optional[str] = None
    head_event_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events": [e.to_dict() for e in self.events],
            "object_states": self.object_states,
            "has_more": self.has_more,
            "continuation_token": self.continuation_token,
            "head_event_id": self.head_event_id,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoryResponse':
        return cls(
            events=[Event.from_dict(e) for e in data.get("events") or []],
            object_states=dict(data.get("object_states") or {}),
            has_more=bool(data.get("has_more", False)),
            continuation_token=data.get("continuation_token"),
            head_event_id=data.get("head_event_id"),
            error=data.get("error"),
        )


@dataclass
class ActionRequest:
    space_id: str
    action_type: str
    action_data: Dict[str, Any]
    session_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "space_id": self.space_id,
            "action_type": self.action_type,
            "action_data": self.action_data,
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActionRequest':
        return cls(
            space_id=data["space_id"],
            action_type=data["action_type"],
            action_data=dict(data.get("action_data") or {}),
            session_id=data.get("session_id", ""),
        )


@dataclass
class ActionResponse:
    status: str
    result_id: Optional[str] = None
    timestamp: Optional[float] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "result_id": self.result_id,
                "timestamp": self.timestamp, "error": self.error}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActionResponse':
        return cls(status=data.get("status", STATUS_ERROR), result_id=data.get("result_id"),
                   timestamp=data.get("timestamp"), error=data.get("error"))


@dataclass
class BroadcastEvent:
    space_id: str
    event: Event
    sent_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"space_id": self.space_id, "event": self.event.to_dict(), "sent_at": self.sent_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BroadcastEvent':
        return cls(space_id=data["space_id"], event=Event.from_dict(data["event"]),
                   sent_at=data.get("sent_at", time.time()))
