"""
Storage module for Loom persistence.

Provides pluggable storage backends for the event log, branch metadata and
system state.
"""

from .storage_interface import StorageInterface
from .file_storage import FileStorage
from .sqlite_storage import SQLiteStorage
from .storage_factory import StorageFactory, create_storage, create_storage_from_env

__all__ = [
    'StorageInterface',
    'FileStorage',
    'SQLiteStorage',
    'StorageFactory',
    'create_storage',
    'create_storage_from_env',
]


def get_available_backends():
    """Get list of available storage backends."""
    return StorageFactory.get_available_backends()
