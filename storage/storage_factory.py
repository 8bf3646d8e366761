"""
Storage factory for creating storage backend instances.

Provides a centralized way to create and configure different storage backends
based on configuration parameters.
"""

from typing import Dict, Any, Optional, Type, TYPE_CHECKING
import logging

from .storage_interface import StorageInterface
from .file_storage import FileStorage
from .sqlite_storage import SQLiteStorage

if TYPE_CHECKING:
    from host.config import StorageConfig

logger = logging.getLogger(__name__)


class StorageFactory:
    """
    Factory class for creating storage backend instances.

    Backends are swappable by configuration without changing client code.
    """

    _STORAGE_BACKENDS: Dict[str, Type[StorageInterface]] = {
        'file': FileStorage,
        'sqlite': SQLiteStorage,
    }

    @classmethod
    def create_storage(cls, storage_type: str, storage_config: Dict[str, Any]) -> StorageInterface:
        """
        Create a storage backend instance.

        Raises:
            ValueError: If storage_type is not supported
        """
        if storage_type not in cls._STORAGE_BACKENDS:
            available_types = ', '.join(cls._STORAGE_BACKENDS.keys())
            raise ValueError(f"Unsupported storage type '{storage_type}'. Available types: {available_types}")

        storage_class = cls._STORAGE_BACKENDS[storage_type]
        logger.info(f"Creating {storage_type} storage backend")
        return storage_class(storage_config)

    @classmethod
    def get_available_backends(cls) -> Dict[str, str]:
        """Backend names mapped to the first line of their class docstring."""
        return {
            name: storage_class.__doc__.strip().split('\n')[0] if storage_class.__doc__ else "No description"
            for name, storage_class in cls._STORAGE_BACKENDS.items()
        }

    @classmethod
    def register_backend(cls, name: str, storage_class: type) -> None:
        """
        Register a new storage backend.

        Raises:
            ValueError: If the class doesn't implement StorageInterface
        """
        if not issubclass(storage_class, StorageInterface):
            raise ValueError(f"Storage class {storage_class.__name__} must implement StorageInterface")
        cls._STORAGE_BACKENDS[name] = storage_class
        logger.info(f"Registered storage backend: {name}")

    @classmethod
    def create_from_config(cls, config: 'StorageConfig') -> StorageInterface:
        """Create a backend from the storage section of the host settings."""
        if config.storage_type == 'sqlite':
            storage_config = {
                'db_path': config.sqlite_db_path,
                'connection_timeout': config.sqlite_timeout,
                'enable_wal_mode': config.sqlite_wal_mode,
            }
        else:
            storage_config = {
                'base_dir': config.base_dir,
                'pretty_print_json': config.pretty_print_json,
            }
        return cls.create_storage(config.storage_type, storage_config)


def create_storage(storage_type: str = 'file', **kwargs) -> StorageInterface:
    """
    Convenience function to create a storage backend.

    Args:
        storage_type: Type of storage backend
        **kwargs: Configuration parameters for the storage backend
    """
    return StorageFactory.create_storage(storage_type, kwargs)


def create_storage_from_env(config: Optional['StorageConfig'] = None) -> StorageInterface:
    """Create a storage backend from LOOM_STORAGE_* environment variables."""
    if config is None:
        from host.config import StorageConfig
        config = StorageConfig()
    return StorageFactory.create_from_config(config)
