"""
Uplink Transports
Carry wire-protocol messages between an uplink proxy and a remote space host.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, Callable, TYPE_CHECKING

import socketio

from .errors import UplinkTransportError
from .protocol import (
    ConnectRequest, ConnectResponse, HistoryRequest, HistoryResponse, ActionRequest, ActionResponse,
    BroadcastEvent, SIO_EVENT_CONNECT_SPACE, SIO_EVENT_HISTORY, SIO_EVENT_ACTION, SIO_EVENT_BROADCAST,
)

if TYPE_CHECKING:
    from host.space_host import RemoteSpaceHost

logger = logging.getLogger(__name__)

BroadcastHandler = Callable[[BroadcastEvent], None]


class UplinkTransport(ABC):
    """
    Request/response channel to one remote space host plus a push channel for broadcasts.

    Implementations raise UplinkTransportError for local network failures and
    never retry on their own. Timeouts are applied by the caller.
    """

    def __init__(self):
        self._broadcast_handler: Optional[BroadcastHandler] = None

    def set_broadcast_handler(self, handler: Optional[BroadcastHandler]) -> None:
        self._broadcast_handler = handler

    def _deliver_broadcast(self, message: BroadcastEvent) -> None:
        if self._broadcast_handler is None:
            return
        try:
            self._broadcast_handler(message)
        except Exception as e:
            logger.error(f"Broadcast handler failed for event {message.event.id}: {e}", exc_info=True)

    @abstractmethod
    async def connect(self, request: ConnectRequest) -> ConnectResponse:
        pass

    @abstractmethod
    async def request_history(self, request: HistoryRequest) -> HistoryResponse:
        pass

    @abstractmethod
    async def send_action(self, request: ActionRequest) -> ActionResponse:
        pass

    @abstractmethod
    async def disconnect(self, session_id: Optional[str]) -> None:
        pass


class LocalUplinkTransport(UplinkTransport):
    """In-process transport against a RemoteSpaceHost; used for co-located spaces and tests."""

    def __init__(self, host: 'RemoteSpaceHost'):
        super().__init__()
        self._host = host

    async def connect(self, request: ConnectRequest) -> ConnectResponse:
        return self._host.handle_connect(request, push=self._deliver_broadcast)

    async def request_history(self, request: HistoryRequest) -> HistoryResponse:
        return self._host.handle_history(request)

    async def send_action(self, request: ActionRequest) -> ActionResponse:
        return self._host.handle_action(request)

    async def disconnect(self, session_id: Optional[str]) -> None:
        if session_id:
            self._host.end_session(session_id)


class SocketIOUplinkTransport(UplinkTransport):
    """Socket.IO client transport; the space host side is host.socketio_server.SocketIOSpaceHostServer."""

    def __init__(self, url: str, request_timeout: float = 10.0, auth: Optional[Dict[str, Any]] = None,
                 client: Optional[socketio.AsyncClient] = None):
        super().__init__()
        self.url = url
        self.request_timeout = request_timeout
        self._auth = auth
        self._client = client or socketio.AsyncClient(logger=False, reconnection=False,
                                                      request_timeout=request_timeout)
        self._client.on(SIO_EVENT_BROADCAST, self._on_broadcast)

    async def _on_broadcast(self, data: Dict[str, Any]) -> None:
        try:
            message = BroadcastEvent.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed broadcast from {self.url}: {e}")
            return
        self._deliver_broadcast(message)

    async def _ensure_connected(self) -> None:
        if self._client.connected:
            return
        try:
            await self._client.connect(self.url, auth=self._auth, namespaces=["/"],
                                       wait_timeout=self.request_timeout)
        except socketio.exceptions.ConnectionError as e:
            raise UplinkTransportError(f"Could not reach space host at {self.url}: {e}", "connect") from e

    async def _call(self, event: str, payload: Dict[str, Any], operation: str) -> Dict[str, Any]:
        await self._ensure_connected()
        try:
            result = await self._client.call(event, payload, timeout=self.request_timeout)
        except socketio.exceptions.TimeoutError as e:
            raise UplinkTransportError(f"{operation} to {self.url} timed out", operation) from e
        except (socketio.exceptions.ConnectionError, socketio.exceptions.DisconnectedError) as e:
            raise UplinkTransportError(f"{operation} to {self.url} failed: {e}", operation) from e
        if not isinstance(result, dict):
            raise UplinkTransportError(f"{operation} to {self.url} returned {type(result).__name__}", operation)
        return result

    async def connect(self, request: ConnectRequest) -> ConnectResponse:
        return ConnectResponse.from_dict(await self._call(SIO_EVENT_CONNECT_SPACE, request.to_dict(), "connect"))

    async def request_history(self, request: HistoryRequest) -> HistoryResponse:
        return HistoryResponse.from_dict(await self._call(SIO_EVENT_HISTORY, request.to_dict(), "history"))

    async def send_action(self, request: ActionRequest) -> ActionResponse:
        return ActionResponse.from_dict(await self._call(SIO_EVENT_ACTION, request.to_dict(), "action"))

    async def disconnect(self, session_id: Optional[str]) -> None:
        if self._client.connected:
            await self._client.disconnect()
