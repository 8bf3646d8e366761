"""
Elements Module
Defines the element system hosting Looms: spaces, uplink proxies and the registry.
"""

from elements.elements.base import BaseElement
from elements.elements.space import Space
from elements.space_registry import SpaceRegistry
from .elements.uplink import UplinkProxy

__all__ = [
    'BaseElement',
    'Space',
    'SpaceRegistry',
    'UplinkProxy',
]
