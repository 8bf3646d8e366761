"""
Abstract storage interface for Loom persistence.

Defines the contract that all storage backends must implement. The layout is
storage-engine agnostic: append-only event writes keyed by
(branch_id, event_id), a secondary index branch_id -> head_event_id, and
branch metadata keyed by branch_id. All keys are scoped by space.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
import logging

logger = logging.getLogger(__name__)


class StorageInterface(ABC):
    """
    Abstract base class for all storage backends.

    Methods report failure by returning False (or None for loads of missing
    data) and logging, never by raising, so that a failing backend cannot
    corrupt in-memory log state.
    """

    def __init__(self, storage_config: Dict[str, Any]):
        """
        Initialize the storage backend.

        Args:
            storage_config: Configuration dictionary specific to the storage type
        """
        self.config = storage_config
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def initialize(self) -> bool:
        """
        Initialize the storage backend.

        Returns:
            True if initialization succeeded, False otherwise
        """
        pass

    @abstractmethod
    async def shutdown(self) -> bool:
        """
        Properly shutdown the storage backend.

        Returns:
            True if shutdown succeeded, False otherwise
        """
        pass

    # ===== Event Log =====

    @abstractmethod
    async def append_event(self, space_id: str, branch_id: str, event_data: Dict[str, Any]) -> bool:
        """
        Append one event record. Records are never rewritten.

        Args:
            space_id: Owning space
            branch_id: Branch the event was appended to
            event_data: Serialized Event (must contain 'id')

        Returns:
            True if the write succeeded (or the identical record already exists)
        """
        pass

    @abstractmethod
    async def load_events(self, space_id: str, branch_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Load event records for a space, optionally for a single branch.

        Returns:
            Event dicts in append order per branch
        """
        pass

    # ===== Head Index =====

    @abstractmethod
    async def set_branch_head(self, space_id: str, branch_id: str, head_event_id: Optional[str]) -> bool:
        """Point the branch_id -> head_event_id index at a new head."""
        pass

    @abstractmethod
    async def load_branch_heads(self, space_id: str) -> Dict[str, Optional[str]]:
        """Load the full head index for a space."""
        pass

    # ===== Branch Metadata =====

    @abstractmethod
    async def store_branch(self, space_id: str, branch_data: Dict[str, Any]) -> bool:
        """Create or replace branch metadata keyed by branch_data['branch_id']."""
        pass

    @abstractmethod
    async def load_branches(self, space_id: str) -> List[Dict[str, Any]]:
        """Load all branch metadata for a space."""
        pass

    @abstractmethod
    async def delete_branch(self, space_id: str, branch_id: str) -> bool:
        """Drop branch metadata and its head index entry. Event records are kept."""
        pass

    # ===== System State =====

    @abstractmethod
    async def store_system_state(self, state_key: str, state_data: Dict[str, Any]) -> bool:
        """
        Store system state data (connection spans, registry snapshots).

        Args:
            state_key: Unique key for the state data
            state_data: State data to store

        Returns:
            True if storage succeeded, False otherwise
        """
        pass

    @abstractmethod
    async def load_system_state(self, state_key: str) -> Optional[Dict[str, Any]]:
        """
        Load system state data.

        Returns:
            State data dict or None if not found
        """
        pass

    # ===== Utility Methods =====

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check on the storage backend.

        Returns:
            Dictionary with health status and metrics
        """
        return {
            "status": "unknown",
            "backend_type": self.__class__.__name__,
            "message": "Health check not implemented"
        }
