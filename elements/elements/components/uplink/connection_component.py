"""
Uplink Connection Component
Records connection spans of an UplinkProxy to a remote space.
"""

import asyncio
import logging
import threading
import time
import uuid
from typing import Dict, Any, Optional, List

from ..base_component import Component
from ..utils.background_tasks import BackgroundTasks
from ..space.loom_types import ConnectionSpan, Event
from elements.component_registry import register_component
from storage import StorageInterface

logger = logging.getLogger(__name__)


@register_component
class ConnectionSpanTracker(Component):
    """
    Tracks the periods an uplink was attached to a remote space.

    Only spans are stored: remote events seen while attached move an
    in-memory cursor and are never recorded. Local storage is therefore
    O(number of spans), and the events inside a span are fetched on demand
    by the HistoryVirtualizerComponent.
    """
    COMPONENT_TYPE = "ConnectionSpanTracker"

    def __init__(self, remote_space_id: Optional[str] = None, storage: Optional[StorageInterface] = None,
                 proxy_id: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.remote_space_id = remote_space_id or "unknown_remote"
        self._proxy_id = proxy_id
        self._storage = storage
        self._storage_initialized = False
        self._spans: List[ConnectionSpan] = []
        self._active: Optional[ConnectionSpan] = None
        self._remote_head: Optional[str] = None
        self._remote_head_time: Optional[float] = None
        self._lock = threading.Lock()
        self._persist_lock: Optional[asyncio.Lock] = None
        self._background = BackgroundTasks(proxy_id or "uplink")

    def _on_initialize(self) -> bool:
        if not self._proxy_id and self.owner:
            self._proxy_id = self.owner.id
        self._background.owner_id = self.proxy_id
        return True

    @property
    def proxy_id(self) -> str:
        return self._proxy_id or self.owner_id

    @property
    def state_key(self) -> str:
        return f"uplink_spans_{self.proxy_id}_{self.remote_space_id}"

    # --- Span lifecycle ---

    @property
    def is_attached(self) -> bool:
        return self._active is not None

    @property
    def active_span(self) -> Optional[ConnectionSpan]:
        return self._active

    @property
    def current_remote_head(self) -> Optional[str]:
        return self._remote_head

    def attach(self, remote_head_event_id: Optional[str]) -> ConnectionSpan:
        """
        Opens a span anchored at the remote head. A second attach while a span
        is active returns the active span unchanged.
        """
        with self._lock:
            if self._active is not None:
                logger.debug(f"[{self.proxy_id}] Already attached to {self.remote_space_id} ({self._active.id})")
                return self._active
            now = time.time()
            if self._spans and self._spans[-1].end_time is not None and now < self._spans[-1].end_time:
                now = self._spans[-1].end_time
            span = ConnectionSpan(
                id=f"span_{uuid.uuid4().hex[:12]}",
                remote_space_id=self.remote_space_id,
                start_event_id=remote_head_event_id,
                start_time=now,
            )
            self._spans.append(span)
            self._active = span
            self._remote_head = remote_head_event_id
            self._remote_head_time = now
        logger.info(f"[{self.proxy_id}] Attached to {self.remote_space_id} at '{remote_head_event_id}' ({span.id})")
        self._schedule_persist()
        return span

    def observe_remote_event(self, event: Event) -> None:
        """Moves the in-memory remote head cursor. Nothing is recorded."""
        with self._lock:
            if self._active is None:
                return
            self._remote_head = event.id
            self._remote_head_time = event.timestamp

    def detach(self) -> Optional[ConnectionSpan]:
        """Closes the active span at the last observed remote head. No-op if not attached."""
        with self._lock:
            span = self._active
            if span is None:
                return None
            span.end_event_id = self._remote_head
            span.end_time = time.time()
            span.is_active = False
            self._active = None
        logger.info(f"[{self.proxy_id}] Detached from {self.remote_space_id} at '{span.end_event_id}' ({span.id})")
        self._schedule_persist()
        return span

    def spans(self) -> List[ConnectionSpan]:
        with self._lock:
            return list(self._spans)

    def get_span(self, span_id: str) -> Optional[ConnectionSpan]:
        with self._lock:
            for span in self._spans:
                if span.id == span_id:
                    return span
        return None

    def span_end_bound(self, span: ConnectionSpan) -> Optional[str]:
        """Last remote event inside the span: end_event_id once closed, the live cursor while active."""
        if span.is_active and span is self._active:
            return self._remote_head
        return span.end_event_id

    # --- Persistence ---

    def _schedule_persist(self) -> None:
        if self._storage is None:
            return
        # Without a running loop persist() must be awaited explicitly
        self._background.spawn(self.persist(), "persist-spans")

    async def wait_persisted(self) -> None:
        """Waits for span writes scheduled by attach and detach."""
        await self._background.wait()

    async def _ensure_storage_ready(self) -> bool:
        if self._storage is None:
            return False
        if not self._storage_initialized:
            self._storage_initialized = await self._storage.initialize()
        return self._storage_initialized

    async def persist(self) -> bool:
        if self._persist_lock is None:
            self._persist_lock = asyncio.Lock()
        async with self._persist_lock:
            if not await self._ensure_storage_ready():
                return False
            # Snapshot under the lock so the last writer stores the latest spans
            data = {"remote_space_id": self.remote_space_id, "spans": [s.to_dict() for s in self.spans()]}
            return await self._storage.store_system_state(self.state_key, data)

    async def load(self) -> bool:
        """
        Restores spans from storage. A span still marked active was cut off by a
        restart; its end is unknown so it is closed as an empty, interrupted window.
        """
        if not await self._ensure_storage_ready():
            return False
        data = await self._storage.load_system_state(self.state_key)
        if not data:
            return True
        restored = [ConnectionSpan.from_dict(d) for d in data.get("spans", [])]
        interrupted = 0
        for span in restored:
            if span.is_active:
                span.is_active = False
                span.interrupted = True
                span.end_event_id = span.start_event_id
                span.end_time = span.end_time or span.start_time
                interrupted += 1
        with self._lock:
            self._spans = restored
            self._active = None
        if interrupted:
            logger.warning(f"[{self.proxy_id}] Closed {interrupted} interrupted spans for {self.remote_space_id}")
        logger.info(f"[{self.proxy_id}] Loaded {len(restored)} connection spans for {self.remote_space_id}")
        return True

    def get_connection_state(self) -> Dict[str, Any]:
        return {
            "remote_space_id": self.remote_space_id,
            "attached": self.is_attached,
            "active_span_id": self._active.id if self._active else None,
            "remote_head_event_id": self._remote_head,
            "span_count": len(self._spans),
        }
