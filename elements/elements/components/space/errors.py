"""
Loom Errors
Exceptions raised by the event log, coherence validator and branch manager.
"""

import enum
from typing import Optional


class DecoherenceCode(enum.Enum):
    """Reasons an operation against a timeline was refused."""
    STALE_PARENT = "STALE_PARENT"                  # Branch head moved since the caller read it
    STALE_CONTEXT = "STALE_CONTEXT"                # Context cursor no longer on the branch lineage
    BRANCH_DECOHERENT = "BRANCH_DECOHERENT"        # Branch unknown or marked decoherent
    PRIMARY_CONFLICT = "PRIMARY_CONFLICT"          # Another branch in the subtree is already primary
    PRIMARY_UNDESIGNATED = "PRIMARY_UNDESIGNATED"  # Forked subtree without primary, actor entangled


class LoomError(Exception):
    """Base class for all Loom errors."""


class DecoherenceError(LoomError):
    """
    Raised when a timeline operation would violate causality.

    The core never retries these. Callers decide whether to refresh their
    context and try again.
    """

    def __init__(self, code: DecoherenceCode, message: str, branch_id: Optional[str] = None):
        super().__init__(f"{code.value}: {message}")
        self.code = code
        self.branch_id = branch_id
        self.message = message

    def to_dict(self):
        return {"error": "DecoherenceError", "code": self.code.value,
                "branch_id": self.branch_id, "message": self.message}


class EventNotFoundError(LoomError, KeyError):
    """Raised when an event id is not present in the log."""

    def __init__(self, event_id: str):
        super().__init__(event_id)
        self.event_id = event_id

    def __str__(self):
        return f"Event '{self.event_id}' not found"


class MergeError(LoomError, ValueError):
    """Raised for merge requests that cannot be expressed (bad strategy, missing edit)."""
