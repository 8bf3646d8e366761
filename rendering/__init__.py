"""
Rendering System

Capability interface between projected state and the compression engine:
RenderElements with a closed set of kinds, CompressionHints and the
delegates that produce them.
"""

from .api import (
    RenderElementKind,
    RenderElement,
    RenderingFormat,
    RenderingOptions,
    CompressionHint,
    RenderDelegate,
)

from .delegates import (
    TextDelegate,
    ObjectStateDelegate,
    MessageListDelegate,
    RemoteBundleDelegate,
    StatusDelegate,
    DelegateRegistry,
)

__all__ = [
    # API
    'RenderElementKind',
    'RenderElement',
    'RenderingFormat',
    'RenderingOptions',
    'CompressionHint',
    'RenderDelegate',

    # Delegates
    'TextDelegate',
    'ObjectStateDelegate',
    'MessageListDelegate',
    'RemoteBundleDelegate',
    'StatusDelegate',
    'DelegateRegistry',
]
