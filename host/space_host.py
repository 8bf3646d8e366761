"""
Remote Space Host
Serves the uplink wire protocol for the spaces in a SpaceRegistry.
"""

import asyncio
import inspect
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Callable

from elements.space_registry import SpaceRegistry
from elements.elements.components.utils.background_tasks import BackgroundTasks
from elements.elements.components.space.errors import DecoherenceError, LoomError
from elements.elements.components.space.loom_types import Event, TimelineContext
from elements.elements.components.uplink.errors import (
    REJECT_INVALID_SIGNATURE, REJECT_INVALID_TOKEN, REJECT_INSUFFICIENT_PERMISSIONS, REJECT_UNKNOWN_SPACE,
)
from elements.elements.components.uplink.protocol import (
    ConnectRequest, ConnectResponse, HistoryRequest, HistoryResponse, ActionRequest, ActionResponse,
    BroadcastEvent, STATUS_ACCEPTED, STATUS_REJECTED, STATUS_OK, STATUS_ERROR, ACTION_SUBMIT_EVENT,
    verify_agent_signature,
)

logger = logging.getLogger(__name__)

PERMISSION_READ = "read"
PERMISSION_WRITE = "write"

PushCallback = Callable[[BroadcastEvent], Any]


@dataclass
class HostSession:
    session_id: str
    agent_id: str
    space_id: str
    permissions: List[str]
    push: Optional[PushCallback] = None
    created_at: float = field(default_factory=time.time)


class RemoteSpaceHost:
    """
    Server side of the uplink protocol.

    Credentials are checked against a token registry
    (token -> {'agent_id', 'permissions'}), optionally with an HMAC signature
    over the agent id. Accepted sessions receive a BroadcastEvent for every
    event appended to the space's primary timeline.
    """

    def __init__(self, registry: SpaceRegistry, tokens: Optional[Dict[str, Dict[str, Any]]] = None,
                 shared_secret: Optional[str] = None, history_page_limit: int = 500):
        self.registry = registry
        self._tokens = dict(tokens or {})
        self._shared_secret = shared_secret
        self.history_page_limit = history_page_limit
        self._sessions: Dict[str, HostSession] = {}
        self._lock = threading.Lock()
        self._listeners: Dict[str, Callable[[Event], None]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._background = BackgroundTasks("space_host")

    # --- Credentials ---

    def register_token(self, token: str, agent_id: str, permissions: List[str]) -> None:
        self._tokens[token] = {"agent_id": agent_id, "permissions": list(permissions)}

    def check_credentials(self, credentials: Dict[str, Any], required: str = PERMISSION_READ) -> Optional[str]:
        """Returns a rejection reason, or None if the credentials are acceptable."""
        agent_id = credentials.get("agent_id")
        if self._shared_secret is not None:
            if not agent_id or not verify_agent_signature(agent_id, credentials.get("signature"), self._shared_secret):
                return REJECT_INVALID_SIGNATURE
        entry = self._tokens.get(credentials.get("token") or "")
        if entry is None or (agent_id and entry.get("agent_id") not in (None, agent_id)):
            return REJECT_INVALID_TOKEN
        if required not in entry.get("permissions", []):
            return REJECT_INSUFFICIENT_PERMISSIONS
        return None

    # --- Protocol handlers ---

    def handle_connect(self, request: ConnectRequest, push: Optional[PushCallback] = None) -> ConnectResponse:
        reason = self.check_credentials(request.agent_credentials, PERMISSION_READ)
        if reason is not None:
            logger.warning(f"Rejected connect to '{request.target_space_id}': {reason}")
            return ConnectResponse(status=STATUS_REJECTED, reason=reason)

        space = self.registry.get_space(request.target_space_id)
        if space is None:
            return ConnectResponse(status=STATUS_REJECTED, reason=REJECT_UNKNOWN_SPACE)

        self._remember_loop()
        token_entry = self._tokens[request.agent_credentials["token"]]
        session = HostSession(
            session_id=f"session_{uuid.uuid4().hex[:12]}",
            agent_id=request.agent_credentials.get("agent_id") or token_entry.get("agent_id") or "anonymous",
            space_id=space.id,
            permissions=list(token_entry.get("permissions", [])),
            push=push,
        )
        # Reading the head and registering the session happen without a suspension
        # point, so every later broadcast is strictly after the reported head.
        with self._lock:
            self._ensure_listener(space)
            summary = space.summary()
            self._sessions[session.session_id] = session

        logger.info(f"Session {session.session_id} opened for agent '{session.agent_id}' on space '{space.id}'")
        return ConnectResponse(
            status=STATUS_ACCEPTED,
            connection_params={
                "session_id": session.session_id,
                "head_event_id": summary["head_event_id"],
                "primary_branch_id": summary["primary_branch_id"],
                "history_page_limit": self.history_page_limit,
            },
            space_summary=summary,
        )

    def handle_history(self, request: HistoryRequest) -> HistoryResponse:
        session = self._sessions.get(request.session_id or "")
        if session is None or session.space_id != request.space_id:
            return HistoryResponse(error=REJECT_INVALID_TOKEN)
        space = self.registry.get_space(request.space_id)
        if space is None:
            return HistoryResponse(error=REJECT_UNKNOWN_SPACE)
        max_events = max(1, min(request.max_events or self.history_page_limit, self.history_page_limit))
        try:
            page = space.history_page(max_events, start_from=request.start_from)
        except LoomError as e:
            logger.warning(f"History request on '{request.space_id}' from '{request.start_from}' failed: {e}")
            return HistoryResponse(error=str(e))
        return HistoryResponse(
            events=[Event.from_dict(e) for e in page["events"]],
            object_states=page["object_states"],
            has_more=page["has_more"],
            continuation_token=page["continuation_token"],
            head_event_id=page["head_event_id"],
        )

    def handle_action(self, request: ActionRequest) -> ActionResponse:
        session = self._sessions.get(request.session_id)
        if session is None or session.space_id != request.space_id:
            return ActionResponse(status=STATUS_ERROR, error={"reason": REJECT_INVALID_TOKEN})
        if PERMISSION_WRITE not in session.permissions:
            return ActionResponse(status=STATUS_ERROR, error={"reason": REJECT_INSUFFICIENT_PERMISSIONS})
        if request.action_type != ACTION_SUBMIT_EVENT:
            return ActionResponse(status=STATUS_ERROR,
                                  error={"reason": "unsupported_action", "action_type": request.action_type})

        space = self.registry.get_space(request.space_id)
        if space is None:
            return ActionResponse(status=STATUS_ERROR, error={"reason": REJECT_UNKNOWN_SPACE})
        data = request.action_data
        try:
            context_data = data.get("timeline_context")
            context = TimelineContext.from_dict(context_data) if context_data else space.context_for()
            result = space.submit_event(data.get("object_id"), data.get("payload") or {}, context,
                                        event_type=data.get("event_type", "object_updated"),
                                        actor_id=session.agent_id)
        except DecoherenceError as e:
            return ActionResponse(status=STATUS_ERROR, error=e.to_dict(), timestamp=time.time())
        return ActionResponse(status=STATUS_OK, result_id=result.event_id, timestamp=time.time())

    def end_session(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session:
            logger.info(f"Session {session_id} closed for agent '{session.agent_id}'")
        return session is not None

    def sessions_for(self, space_id: str) -> List[HostSession]:
        with self._lock:
            return [s for s in self._sessions.values() if s.space_id == space_id]

    # --- Broadcast ---

    def _remember_loop(self) -> None:
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            pass

    def _ensure_listener(self, space) -> None:
        if space.id in self._listeners:
            return

        def on_append(event: Event, space=space) -> None:
            if event.branch_id != space.get_primary_timeline():
                return
            self.broadcast(space.id, event)

        self._listeners[space.id] = on_append
        space.add_event_listener(on_append)

    def broadcast(self, space_id: str, event: Event) -> int:
        """Pushes event to every session on space_id. Never blocks the appending writer."""
        message = BroadcastEvent(space_id=space_id, event=event)
        sessions = self.sessions_for(space_id)
        for session in sessions:
            if session.push is not None:
                self._dispatch(session, message)
        return len(sessions)

    def _dispatch(self, session: HostSession, message: BroadcastEvent) -> None:
        try:
            result = session.push(message)
        except Exception as e:
            logger.error(f"Broadcast to session {session.session_id} failed: {e}", exc_info=True)
            return
        if not inspect.iscoroutine(result):
            return
        name = f"push-{session.session_id}"
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Appended from another thread: hand the push to the host loop
            if self._loop is not None and self._loop.is_running():
                asyncio.run_coroutine_threadsafe(self._spawn_push(result, name), self._loop)
            else:
                result.close()
                logger.warning(f"No event loop to deliver broadcast to session {session.session_id}")
            return
        self._background.spawn(result, name)

    async def _spawn_push(self, push, name: str) -> None:
        self._background.spawn(push, name)

    async def drain(self) -> None:
        """Waits for broadcast pushes still in flight."""
        await self._background.wait()

    def close(self) -> None:
        for space_id, listener in list(self._listeners.items()):
            space = self.registry.get_space(space_id)
            if space is not None:
                space.remove_event_listener(listener)
        self._listeners.clear()
        with self._lock:
            self._sessions.clear()
