"""
Base Element
Base class for all elements in the Component-based architecture.
"""

import logging
from typing import Dict, Optional, List, Type, Union

from .components.base_component import Component
from ..component_registry import find_component_class

logger = logging.getLogger(__name__)


class BaseElement:
    """
    Minimal structural node: an id, a name and a set of attached Components.

    All state and behavior live in the Components; the element only wires
    them together and hands out references.
    """

    def __init__(self, element_id: str, name: str, description: str = ""):
        self.id = element_id
        self.name = name
        self.description = description
        self._components: Dict[str, Component] = {}
        logger.info(f"Created element: {name} ({element_id})")

    def add_component(self, component_type: Union[str, Type[Component]], **kwargs) -> Optional[Component]:
        """
        Instantiate, attach and initialize a component.

        Args:
            component_type: Component class, or the COMPONENT_TYPE name it was registered under
            **kwargs: Additional arguments to pass to the component constructor

        Returns:
            The added component, or None if the component could not be added
        """
        if isinstance(component_type, str):
            component_class = find_component_class(component_type)
            if component_class is None:
                logger.error(f"Element {self.id}: no component registered as '{component_type}'")
                return None
            component_type = component_class

        component = component_type(**kwargs)
        component.owner = self

        if self.get_component_by_type(component.COMPONENT_TYPE):
            logger.warning(f"Element {self.id} already has a component of type {component.COMPONENT_TYPE}. Cannot add duplicate.")
            return None

        if not component.initialize():
            logger.error(f"Failed to initialize component {component.COMPONENT_TYPE} on {self.id}")
            return None

        self._components[component.id] = component
        logger.debug(f"Added component {component.COMPONENT_TYPE} ({component.id}) to element {self.id}")
        return component

    def remove_component(self, component_id: str) -> bool:
        component = self._components.get(component_id)
        if not component:
            return False

        for other_comp in self._components.values():
            if component.COMPONENT_TYPE in other_comp.DEPENDENCIES:
                logger.warning(f"Cannot remove component {component.COMPONENT_TYPE}: it is a dependency for {other_comp.COMPONENT_TYPE}")
                return False

        if not component.cleanup():
            logger.warning(f"Component {component.COMPONENT_TYPE} reported cleanup failure")

        del self._components[component_id]
        return True

    def get_component(self, component_id: str) -> Optional[Component]:
        return self._components.get(component_id)

    def get_component_by_type(self, component_type: Union[str, Type[Component]]) -> Optional[Component]:
        """Get a component by its type (class or string identifier)."""
        target_type_name = component_type if isinstance(component_type, str) else component_type.COMPONENT_TYPE
        for comp in self._components.values():
            if not isinstance(component_type, str) and isinstance(comp, component_type):
                return comp
            if comp.COMPONENT_TYPE == target_type_name:
                return comp
        return None

    def get_components(self) -> Dict[str, Component]:
        return self._components

    def validate_component_dependencies(self) -> List[str]:
        """Returns the COMPONENT_TYPEs whose dependencies are not satisfied."""
        return [comp.COMPONENT_TYPE for comp in self._components.values()
                if not comp.validate_dependencies(self._components)]
