"""
Base Component
Base class for all components in the Component-based architecture.
"""

import logging
from typing import Dict, Optional, List, TYPE_CHECKING
import uuid

if TYPE_CHECKING:
    from ..base import BaseElement

logger = logging.getLogger(__name__)


class Component:
    """
    Base class for all components in the Component-based architecture.

    Components provide specific behaviors to Elements. Each Component is
    attached to at most one Element; the 'owner' attribute is set by the
    owning Element after construction. A component can also be used on its
    own (owner stays None), which is how most unit tests drive them.
    """

    # Component unique type identifier
    COMPONENT_TYPE: str = "base_component"

    # Other component types that must be present on the same element
    DEPENDENCIES: List[str] = []

    def __init__(self, *args, **kwargs):
        self.id = f"{self.COMPONENT_TYPE}_{uuid.uuid4().hex[:8]}"
        self.owner: Optional['BaseElement'] = None
        self._is_initialized = False

        logger.debug(f"Created component: {self.COMPONENT_TYPE} ({self.id})")

    @property
    def owner_id(self) -> str:
        return self.owner.id if self.owner else "unowned"

    def get_sibling_component(self, component_type) -> Optional['Component']:
        if not self.owner:
            return None
        return self.owner.get_component_by_type(component_type)

    def initialize(self) -> bool:
        """
        Initialize the component after it has been attached to an element.

        Returns:
            True if initialization was successful, False otherwise
        """
        if self._is_initialized:
            return True

        initialization_result = self._on_initialize()

        if initialization_result:
            self._is_initialized = True
            logger.debug(f"Initialized component: {self.COMPONENT_TYPE} ({self.id})")

        return initialization_result

    def _on_initialize(self) -> bool:
        """Override in subclasses to provide custom initialization."""
        return True

    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    def cleanup(self) -> bool:
        """
        Clean up the component when it is removed from its element.

        Returns:
            True if cleanup was successful, False otherwise
        """
        cleanup_result = self._on_cleanup()
        if cleanup_result:
            logger.debug(f"Cleaned up component: {self.COMPONENT_TYPE} ({self.id})")
        return cleanup_result

    def _on_cleanup(self) -> bool:
        return True

    def validate_dependencies(self, components: Dict[str, 'Component']) -> bool:
        """
        Validate that all required dependencies are present.

        Args:
            components: Dictionary of components attached to the same element

        Returns:
            True if all dependencies are satisfied, False otherwise
        """
        for dependency in self.DEPENDENCIES:
            if not any(comp.COMPONENT_TYPE == dependency for comp in components.values()):
                logger.error(f"Missing dependency {dependency} for component {self.COMPONENT_TYPE}")
                return False
        return True
