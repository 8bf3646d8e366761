"""
Components package
This package contains the components used in the component-based architecture.
"""

from .base_component import Component

__all__ = ["Component"]
