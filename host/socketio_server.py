"""
Socket.IO Space Host Server
Exposes a RemoteSpaceHost over Socket.IO on an aiohttp application.
"""

import logging
from typing import Dict, Any, Optional, Set

import socketio
from aiohttp import web

from elements.elements.components.uplink.protocol import (
    ConnectRequest, HistoryRequest, ActionRequest, BroadcastEvent, ConnectResponse, HistoryResponse,
    ActionResponse, STATUS_REJECTED, STATUS_ERROR,
    SIO_EVENT_CONNECT_SPACE, SIO_EVENT_HISTORY, SIO_EVENT_ACTION, SIO_EVENT_BROADCAST,
)
from host.observability import get_tracer
from host.space_host import RemoteSpaceHost

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class SocketIOSpaceHostServer:
    """
    Socket.IO server in front of a RemoteSpaceHost.

    Each Socket.IO connection may open sessions on several spaces; all of
    them are closed when the connection drops.
    """

    def __init__(self, space_host: RemoteSpaceHost, host: str = "0.0.0.0", port: int = 6100):
        self.space_host = space_host
        self.host = host
        self.port = port
        self.sio = socketio.AsyncServer(async_mode='aiohttp', cors_allowed_origins='*')
        self.app = web.Application()
        self.sio.attach(self.app)
        self.app.router.add_get('/health', self._health)
        self._runner: Optional[web.AppRunner] = None
        self._sid_sessions: Dict[str, Set[str]] = {}

        self.sio.on('connect', self._on_connect)
        self.sio.on('disconnect', self._on_disconnect)
        self.sio.on(SIO_EVENT_CONNECT_SPACE, self._on_connect_space)
        self.sio.on(SIO_EVENT_HISTORY, self._on_history)
        self.sio.on(SIO_EVENT_ACTION, self._on_action)

    async def _on_connect(self, sid, environ, auth=None):
        logger.info(f"Client connected: {sid}")
        self._sid_sessions.setdefault(sid, set())

    async def _on_disconnect(self, sid, *args):
        for session_id in self._sid_sessions.pop(sid, set()):
            self.space_host.end_session(session_id)
        logger.info(f"Client disconnected: {sid}")

    async def _on_connect_space(self, sid, data: Dict[str, Any]) -> Dict[str, Any]:
        with tracer.start_as_current_span("space_host.connect") as span:
            try:
                request = ConnectRequest.from_dict(data)
            except (KeyError, TypeError) as e:
                return ConnectResponse(status=STATUS_REJECTED, reason=f"malformed_request: {e}").to_dict()
            span.set_attribute("loom.space_id", request.target_space_id)

            async def push(message: BroadcastEvent) -> None:
                await self.sio.emit(SIO_EVENT_BROADCAST, message.to_dict(), to=sid)

            response = self.space_host.handle_connect(request, push=push)
            span.set_attribute("loom.connect.status", response.status)
            if response.accepted:
                self._sid_sessions.setdefault(sid, set()).add(response.session_id)
            return response.to_dict()

    async def _on_history(self, sid, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            request = HistoryRequest.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            return HistoryResponse(error=f"malformed_request: {e}").to_dict()
        if request.session_id not in self._sid_sessions.get(sid, set()):
            return HistoryResponse(error="invalid_token").to_dict()
        return self.space_host.handle_history(request).to_dict()

    async def _on_action(self, sid, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            request = ActionRequest.from_dict(data)
        except (KeyError, TypeError) as e:
            return ActionResponse(status=STATUS_ERROR, error={"reason": f"malformed_request: {e}"}).to_dict()
        if request.session_id not in self._sid_sessions.get(sid, set()):
            return ActionResponse(status=STATUS_ERROR, error={"reason": "invalid_token"}).to_dict()
        return self.space_host.handle_action(request).to_dict()

    async def _health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "spaces": sorted(self.space_host.registry.get_spaces().keys()),
            "connections": len(self._sid_sessions),
        })

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"Space host listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        await self.space_host.drain()
        self.space_host.close()
        logger.info("Space host stopped")
