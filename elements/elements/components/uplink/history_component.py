"""
History Virtualizer Component
Reconstructs the remote events inside a connection span on demand.
"""

import asyncio
import logging
from typing import Dict, Optional, List, Tuple

from ..base_component import Component
from ..space.loom_types import Event
from elements.component_registry import register_component
from host.observability import get_tracer

from .connection_component import ConnectionSpanTracker
from .errors import UplinkTransportError, HistoryUnavailableError
from .protocol import HistoryRequest
from .transport import UplinkTransport

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


@register_component
class HistoryVirtualizerComponent(Component):
    """
    Turns a ConnectionSpan into its ordered remote events by paging
    HistoryRequests against the remote space host.

    This is the only network-bound read in the core. Each page is bounded by
    a timeout; a timeout or transport failure raises UplinkTransportError and
    is never retried here. Cancelling the awaiting task cancels the request.
    Bundles of closed spans never change, so they are memoized.
    """
    COMPONENT_TYPE = "HistoryVirtualizerComponent"
    DEPENDENCIES = ["ConnectionSpanTracker"]

    def __init__(self, transport: Optional[UplinkTransport] = None,
                 tracker: Optional[ConnectionSpanTracker] = None,
                 page_size: int = 100, timeout_seconds: float = 10.0, **kwargs):
        super().__init__(**kwargs)
        self._transport = transport
        self._tracker = tracker
        self.page_size = max(1, int(page_size))
        self.timeout_seconds = timeout_seconds
        self.session_id: Optional[str] = None
        self._closed_bundles: Dict[str, Tuple[Event, ...]] = {}

    def _on_initialize(self) -> bool:
        if self._tracker is None:
            self._tracker = self.get_sibling_component(ConnectionSpanTracker)
        if self._tracker is None:
            logger.error(f"[{self.owner_id}] HistoryVirtualizerComponent requires a ConnectionSpanTracker")
            return False
        return True

    def set_transport(self, transport: UplinkTransport, session_id: Optional[str]) -> None:
        self._transport = transport
        self.session_id = session_id

    def cached_bundle(self, span_id: str) -> Optional[List[Event]]:
        """Memoized bundle of a closed span, or None if it has not been fetched yet."""
        cached = self._closed_bundles.get(span_id)
        return list(cached) if cached is not None else None

    async def history_bundle(self, span_id: str, timeout: Optional[float] = None) -> List[Event]:
        """
        Remote events after the span's start event up to and including its end
        event (the live remote head while the span is active), oldest first.

        Raises:
            KeyError: unknown span.
            UplinkTransportError: a page timed out or the transport failed.
            HistoryUnavailableError: the remote host could not serve the window.
        """
        span = self._tracker.get_span(span_id)
        if span is None:
            raise KeyError(f"Unknown connection span '{span_id}'")
        cached = self._closed_bundles.get(span_id)
        if cached is not None:
            return list(cached)

        end_event_id = self._tracker.span_end_bound(span)
        if end_event_id is None or end_event_id == span.start_event_id:
            return []
        if self._transport is None:
            raise UplinkTransportError(f"No transport for {span.remote_space_id}", "history")

        with tracer.start_as_current_span("uplink.history_bundle") as trace_span:
            trace_span.set_attribute("uplink.span_id", span_id)
            trace_span.set_attribute("uplink.remote_space_id", span.remote_space_id)
            events = await self._page_until(span.remote_space_id, span.start_event_id, end_event_id,
                                            timeout if timeout is not None else self.timeout_seconds)
            trace_span.set_attribute("uplink.bundle_size", len(events))

        if not span.is_active:
            self._closed_bundles[span_id] = tuple(events)
        logger.debug(f"[{self.owner_id}] Bundle for {span_id}: {len(events)} events")
        return events

    async def _page_until(self, remote_space_id: str, start_event_id: Optional[str], end_event_id: str,
                          timeout: float) -> List[Event]:
        collected: List[Event] = []
        cursor = start_event_id
        while True:
            request = HistoryRequest(space_id=remote_space_id, max_events=self.page_size,
                                     start_from=cursor, session_id=self.session_id)
            try:
                response = await asyncio.wait_for(self._transport.request_history(request), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise UplinkTransportError(
                    f"History request to {remote_space_id} timed out after {timeout}s", "history") from e

            if response.error:
                raise HistoryUnavailableError(f"{remote_space_id} refused history after '{cursor}': {response.error}")
            for event in response.events:
                collected.append(event)
                if event.id == end_event_id:
                    return collected
            if not response.has_more or not response.events:
                raise HistoryUnavailableError(
                    f"{remote_space_id} history ended before span end '{end_event_id}' "
                    f"({len(collected)} events received)")
            cursor = response.continuation_token
