"""
Component Registry
Maps COMPONENT_TYPE names to Component classes so elements can attach
components by name.
"""
import logging
from typing import Dict, List, Type, Optional

from .elements.components.base_component import Component

logger = logging.getLogger(__name__)

COMPONENT_REGISTRY: Dict[str, Type[Component]] = {}


def register_component(cls: Type[Component]):
    """
    Class decorator. Registers the class under its COMPONENT_TYPE.
    """
    if not issubclass(cls, Component):
        raise TypeError(f"Class {cls.__name__} must inherit from Component to be registered.")

    component_type = getattr(cls, 'COMPONENT_TYPE', None)
    if not component_type or not isinstance(component_type, str):
        raise ValueError(f"Component class {cls.__name__} must have a valid string COMPONENT_TYPE attribute.")

    existing = COMPONENT_REGISTRY.get(component_type)
    if existing is not None and existing is not cls:
        logger.warning(f"Component type '{component_type}' is already registered by {existing.__name__}. "
                       f"Overwriting with {cls.__name__}.")

    COMPONENT_REGISTRY[component_type] = cls
    logger.debug(f"Registered component: '{component_type}' -> {cls.__name__}")
    return cls


def find_component_class(name: str) -> Optional[Type[Component]]:
    """Returns the class registered under `name`, or None."""
    return COMPONENT_REGISTRY.get(name)


def registered_component_types() -> List[str]:
    return sorted(COMPONENT_REGISTRY)
