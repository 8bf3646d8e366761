"""
Uplink components package
This package contains components specific to Uplink elements.
"""

from .connection_component import ConnectionSpanTracker
from .history_component import HistoryVirtualizerComponent
from .errors import UplinkError, UplinkConnectionError, UplinkTransportError, HistoryUnavailableError
from .transport import UplinkTransport, LocalUplinkTransport, SocketIOUplinkTransport

__all__ = [
    "ConnectionSpanTracker", "HistoryVirtualizerComponent",
    "UplinkError", "UplinkConnectionError", "UplinkTransportError", "HistoryUnavailableError",
    "UplinkTransport", "LocalUplinkTransport", "SocketIOUplinkTransport",
]
