"""
Uplink Proxy Element
Local stand-in for a remote space, built from connection span and history components.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional, List, Callable, AsyncIterator

from storage import StorageInterface

from .base import BaseElement
from .components.space.loom_types import Event, ConnectionSpan, TimelineContext
from .components.uplink import ConnectionSpanTracker, HistoryVirtualizerComponent
from .components.uplink.errors import UplinkConnectionError, UplinkTransportError
from .components.uplink.protocol import (
    ConnectRequest, ConnectResponse, ActionRequest, ActionResponse, BroadcastEvent, ACTION_SUBMIT_EVENT,
    sign_agent_id,
)
from .components.uplink.transport import UplinkTransport

logger = logging.getLogger(__name__)


def build_credentials(agent_id: str, token: str, shared_secret: Optional[str] = None) -> Dict[str, Any]:
    """Credential dict for a ConnectRequest; signs agent_id when a shared secret is configured."""
    credentials = {"agent_id": agent_id, "token": token}
    if shared_secret:
        credentials["signature"] = sign_agent_id(agent_id, shared_secret)
    return credentials


class UplinkProxy(BaseElement):
    """
    Proxy element for a remote space.

    - ConnectionSpanTracker records when this proxy was attached
    - HistoryVirtualizerComponent fetches the remote events of a span on demand

    Remote events are never copied into local storage.
    """

    def __init__(self, element_id: str, name: str, remote_space_id: str,
                 transport: UplinkTransport, credentials: Dict[str, Any],
                 description: str = "", storage: Optional[StorageInterface] = None,
                 history_page_size: int = 100, history_timeout_seconds: float = 10.0):
        super().__init__(element_id=element_id, name=name, description=description)
        self.remote_space_id = remote_space_id
        self._transport = transport
        self._credentials = dict(credentials)
        self.session_id: Optional[str] = None
        self.remote_space_summary: Dict[str, Any] = {}
        self._remote_listeners: List[Callable[[Event], None]] = []
        self._connecting = False
        self._pending_broadcasts: List[Event] = []
        self._broadcast_lock = threading.Lock()

        self._tracker: Optional[ConnectionSpanTracker] = self.add_component(
            ConnectionSpanTracker, remote_space_id=remote_space_id, storage=storage, proxy_id=element_id)
        self._history: Optional[HistoryVirtualizerComponent] = self.add_component(
            HistoryVirtualizerComponent, transport=transport,
            page_size=history_page_size, timeout_seconds=history_timeout_seconds)
        if not self._tracker or not self._history:
            raise RuntimeError(f"UplinkProxy {element_id} failed to initialize its components")

        self._transport.set_broadcast_handler(self._on_broadcast)
        logger.info(f"Created uplink proxy: {name} ({element_id}) -> {remote_space_id}")

    @property
    def tracker(self) -> ConnectionSpanTracker:
        return self._tracker

    @property
    def history(self) -> HistoryVirtualizerComponent:
        return self._history

    @property
    def is_connected(self) -> bool:
        return self._tracker.is_attached

    # --- Connection lifecycle ---

    async def load(self) -> bool:
        """Restores persisted spans. Spans interrupted by a restart come back closed."""
        return await self._tracker.load()

    async def connect(self, timeout: Optional[float] = None) -> ConnectionSpan:
        """
        Connects to the remote space and opens a connection span at its head.

        Raises:
            UplinkConnectionError: the remote host rejected the request; `reason` is verbatim.
            UplinkTransportError: the host could not be reached in time.
        """
        if self._tracker.is_attached:
            return self._tracker.active_span

        with self._broadcast_lock:
            self._connecting = True
            self._pending_broadcasts = []
        try:
            response = await self._request_session(timeout)
            params = response.connection_params or {}
            self.session_id = params.get("session_id")
            self.remote_space_summary = response.space_summary or {}
            span = self._tracker.attach(params.get("head_event_id"))
            self._history.set_transport(self._transport, self.session_id)
        finally:
            with self._broadcast_lock:
                self._connecting = False
                buffered, self._pending_broadcasts = self._pending_broadcasts, []

        for event in buffered:
            self._observe(event)
        return span

    async def _request_session(self, timeout: Optional[float]) -> ConnectResponse:
        request = ConnectRequest(agent_credentials=self._credentials, target_space_id=self.remote_space_id)
        try:
            response = await asyncio.wait_for(self._transport.connect(request), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise UplinkTransportError(f"Connect to {self.remote_space_id} timed out", "connect") from e
        if not response.accepted:
            logger.warning(f"[{self.id}] Connection to {self.remote_space_id} rejected: {response.reason}")
            raise UplinkConnectionError(response.reason or "rejected")
        return response

    async def disconnect(self) -> Optional[ConnectionSpan]:
        """Closes the active span at the last observed remote head and ends the session."""
        span = self._tracker.detach()
        session_id, self.session_id = self.session_id, None
        self._history.set_transport(self._transport, None)
        try:
            await self._transport.disconnect(session_id)
        except UplinkTransportError as e:
            logger.warning(f"[{self.id}] Disconnect from {self.remote_space_id} failed: {e}")
        await self._tracker.wait_persisted()
        return span

    # --- Remote events ---

    def add_remote_listener(self, callback: Callable[[Event], None]) -> None:
        self._remote_listeners.append(callback)

    def _on_broadcast(self, message: BroadcastEvent) -> None:
        if message.space_id != self.remote_space_id:
            return
        with self._broadcast_lock:
            if self._connecting:
                self._pending_broadcasts.append(message.event)
                return
        self._observe(message.event)

    def _observe(self, event: Event) -> None:
        if not self._tracker.is_attached:
            return
        self._tracker.observe_remote_event(event)
        for listener in list(self._remote_listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"[{self.id}] Remote event listener failed for {event.id}: {e}", exc_info=True)

    # --- History ---

    def spans(self) -> List[ConnectionSpan]:
        return self._tracker.spans()

    @asynccontextmanager
    async def _read_session(self, span_ids: List[str], timeout: Optional[float]) -> AsyncIterator[None]:
        """
        Makes sure history can be requested. While detached, a session is
        opened for the duration of the reads, unless every bundle is memoized.
        """
        if self.session_id or all(self._history.cached_bundle(s) is not None for s in span_ids):
            yield
            return
        response = await self._request_session(timeout)
        session_id = response.session_id
        self._history.set_transport(self._transport, session_id)
        try:
            yield
        finally:
            self._history.set_transport(self._transport, self.session_id)
            try:
                await self._transport.disconnect(session_id)
            except UplinkTransportError as e:
                logger.warning(f"[{self.id}] Closing history session on {self.remote_space_id} failed: {e}")

    async def history_bundle(self, span_id: str, timeout: Optional[float] = None) -> List[Event]:
        """
        Remote events of one span, fetched on demand. Works while detached.

        Raises:
            KeyError: unknown span.
            UplinkConnectionError: the remote host refused the read session.
            UplinkTransportError, HistoryUnavailableError: see HistoryVirtualizerComponent.
        """
        if self._tracker.get_span(span_id) is None:
            raise KeyError(f"Unknown connection span '{span_id}'")
        async with self._read_session([span_id], timeout):
            return await self._history.history_bundle(span_id, timeout=timeout)

    async def history_bundles(self, timeout: Optional[float] = None) -> Dict[str, List[Event]]:
        """Bundles for every span, keyed by span id, oldest span first."""
        spans = self._tracker.spans()
        bundles: Dict[str, List[Event]] = {}
        async with self._read_session([s.id for s in spans], timeout):
            for span in spans:
                bundles[span.id] = await self._history.history_bundle(span.id, timeout=timeout)
        return bundles

    # --- Actions ---

    async def send_action(self, object_id: str, payload: Dict[str, Any],
                          timeline_context: Optional[TimelineContext] = None,
                          event_type: str = "object_updated",
                          timeout: Optional[float] = None) -> ActionResponse:
        """
        Submits an event to the remote space. Remote rejections come back in the
        response's `error`; only local transport failures raise.
        """
        if not self.session_id:
            raise UplinkConnectionError("not_connected", f"{self.id} is not connected to {self.remote_space_id}")
        action_data: Dict[str, Any] = {"object_id": object_id, "payload": payload, "event_type": event_type}
        if timeline_context is not None:
            action_data["timeline_context"] = timeline_context.to_dict()
        request = ActionRequest(space_id=self.remote_space_id, action_type=ACTION_SUBMIT_EVENT,
                                action_data=action_data, session_id=self.session_id)
        try:
            return await asyncio.wait_for(self._transport.send_action(request), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise UplinkTransportError(f"Action on {self.remote_space_id} timed out", "action") from e

    def get_connection_state(self) -> Dict[str, Any]:
        state = self._tracker.get_connection_state()
        state["session_id"] = self.session_id
        return state
