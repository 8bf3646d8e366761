"""
Notification Hub Component
Fans out state-change notifications to in-process subscribers and, for the
primary timeline only, to external propagation sinks.
"""
import asyncio
import copy
import inspect
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, Any, Optional, List, Callable, Tuple

from ..base_component import Component
from elements.component_registry import register_component

from .loom_types import StateChangeNotification

logger = logging.getLogger(__name__)

# Subscribers receive a StateChangeNotification, sinks the external payload dict.
# Either may be a plain function or a coroutine function.
NotificationCallback = Callable[[Any], Any]


@dataclass
class _Subscription:
    subscriber_id: str
    callback: NotificationCallback
    is_external: bool = False
    branch_id: Optional[str] = None
    queue: Optional[asyncio.Queue] = None
    task: Optional[asyncio.Task] = None
    delivered: int = 0
    failed: int = 0
    retried: int = 0
    dropped: int = 0


@dataclass
class HubStats:
    published: int = 0
    external_published: int = 0
    external_suppressed: int = 0
    backlog_dropped: int = 0


@register_component
class NotificationHubComponent(Component):
    """
    Non-blocking publish/subscribe for one space.

    Every subscriber and every external sink owns an asyncio.Queue drained by
    its own worker task, so a slow consumer never stalls the writer that
    published and per-subscriber order equals publish order. Delivery is
    at-least-once: a failing callback is retried up to max_delivery_attempts.
    Each subscriber receives its own copy of a notification.

    Queues hold at most max_queue_size notifications and the pre-start
    backlog at most max_backlog. On overflow the new notification is dropped
    for that consumer, counted and logged; older queued notifications are
    never displaced, so what is delivered stays in publish order.

    External sinks only ever see changes whose timeline_context.is_primary is
    true. Non-primary changes are not enqueued for sinks at all.
    """
    COMPONENT_TYPE = "NotificationHubComponent"

    def __init__(self, space_id: Optional[str] = None, max_delivery_attempts: int = 3,
                 retry_delay_seconds: float = 0.0, max_queue_size: int = 1000,
                 max_backlog: int = 1000, **kwargs):
        super().__init__(**kwargs)
        self._space_id = space_id
        self.max_queue_size = max(1, int(max_queue_size))
        self.max_backlog = max(1, int(max_backlog))
        self.max_delivery_attempts = max(1, int(max_delivery_attempts))
        self.retry_delay_seconds = retry_delay_seconds

        self._subscriptions: Dict[str, _Subscription] = {}
        self._subs_lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread_id: Optional[int] = None
        # Publishes that arrive before start() are held here in order
        self._backlog: List[Tuple[str, StateChangeNotification]] = []
        self._stats = HubStats()

    def _on_initialize(self) -> bool:
        if not self._space_id and self.owner:
            self._space_id = self.owner.id
        return True

    @property
    def space_id(self) -> str:
        return self._space_id or self.owner_id

    @property
    def is_running(self) -> bool:
        return self._loop is not None

    # --- Registration ---

    def subscribe(self, callback: NotificationCallback, branch_id: Optional[str] = None,
                  subscriber_id: Optional[str] = None) -> str:
        """
        Registers an in-process subscriber (e.g. a renderer).

        Args:
            callback: Receives each StateChangeNotification.
            branch_id: If set, only changes on this timeline are delivered.
            subscriber_id: Optional stable id.

        Returns:
            The subscriber id.
        """
        subscription = _Subscription(subscriber_id=subscriber_id or f"sub_{uuid.uuid4().hex[:8]}",
                                     callback=callback, branch_id=branch_id)
        return self._add_subscription(subscription)

    def register_external_sink(self, callback: NotificationCallback, sink_id: Optional[str] = None) -> str:
        """Registers an outward-facing propagation sink. It only ever sees primary-timeline changes."""
        subscription = _Subscription(subscriber_id=sink_id or f"sink_{uuid.uuid4().hex[:8]}",
                                     callback=callback, is_external=True)
        return self._add_subscription(subscription)

    def _add_subscription(self, subscription: _Subscription) -> str:
        with self._subs_lock:
            if subscription.subscriber_id in self._subscriptions:
                raise ValueError(f"Subscriber '{subscription.subscriber_id}' already registered")
            self._subscriptions[subscription.subscriber_id] = subscription
        if self._loop is not None:
            self._run_in_loop(self._start_worker, subscription)
        logger.debug(f"[{self.space_id}] Registered {'external sink' if subscription.is_external else 'subscriber'} "
                     f"'{subscription.subscriber_id}'")
        return subscription.subscriber_id

    def unsubscribe(self, subscriber_id: str) -> bool:
        with self._subs_lock:
            subscription = self._subscriptions.pop(subscriber_id, None)
        if subscription is None:
            return False
        if subscription.task is not None and self._loop is not None:
            self._run_in_loop(subscription.task.cancel)
        return True

    unregister_external_sink = unsubscribe

    # --- Lifecycle ---

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """
        Binds the hub to an event loop and starts one worker per subscriber.
        Must be called from the loop's thread unless a loop is passed explicitly.
        """
        if self._loop is not None:
            return
        self._loop = loop or asyncio.get_running_loop()
        self._loop_thread_id = threading.get_ident() if loop is None else None
        with self._subs_lock:
            subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            self._run_in_loop(self._start_worker, subscription)
        backlog, self._backlog = self._backlog, []
        for branch_id, change in backlog:
            self._run_in_loop(self._enqueue, branch_id, change)
        logger.info(f"[{self.space_id}] NotificationHub started with {len(subscriptions)} subscribers "
                    f"({len(backlog)} backlogged notifications)")

    def _run_in_loop(self, func: Callable, *args) -> None:
        if self._loop_thread_id is not None and threading.get_ident() == self._loop_thread_id:
            func(*args)
        else:
            self._loop.call_soon_threadsafe(func, *args)

    def _start_worker(self, subscription: _Subscription) -> None:
        if subscription.task is not None and not subscription.task.done():
            return
        if self._loop_thread_id is None:
            self._loop_thread_id = threading.get_ident()
        subscription.queue = asyncio.Queue(maxsize=self.max_queue_size)
        subscription.task = self._loop.create_task(self._worker(subscription))

    async def drain(self) -> None:
        """Waits until every queued notification has been delivered or given up on."""
        if self._loop is None:
            self.start()
        # Let any call_soon_threadsafe hand-offs land before joining
        await asyncio.sleep(0)
        with self._subs_lock:
            queues = [s.queue for s in self._subscriptions.values() if s.queue is not None]
        await asyncio.gather(*(q.join() for q in queues))

    async def stop(self) -> None:
        """Cancels all workers. Undelivered notifications are dropped and logged."""
        with self._subs_lock:
            subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            if subscription.queue is not None and subscription.queue.qsize():
                logger.warning(f"[{self.space_id}] Dropping {subscription.queue.qsize()} undelivered "
                               f"notifications for '{subscription.subscriber_id}'")
            if subscription.task is not None and not subscription.task.done():
                subscription.task.cancel()
                try:
                    await subscription.task
                except asyncio.CancelledError:
                    pass
            subscription.task = None
            subscription.queue = None
        self._loop = None
        self._loop_thread_id = None
        logger.info(f"[{self.space_id}] NotificationHub stopped")

    # --- Publishing ---

    def publish(self, branch_id: str, change: StateChangeNotification) -> None:
        """
        Enqueues change for every matching subscriber and returns immediately.
        Safe to call from any thread.
        """
        if self._loop is None:
            if len(self._backlog) >= self.max_backlog:
                self._stats.backlog_dropped += 1
                logger.warning(f"[{self.space_id}] Backlog full ({self.max_backlog}); dropping notification "
                               f"for event {change.event_id}")
                return
            self._backlog.append((branch_id, change))
            return
        self._run_in_loop(self._enqueue, branch_id, change)

    def _enqueue(self, branch_id: str, change: StateChangeNotification) -> None:
        self._stats.published += 1
        is_primary = bool(change.timeline_context and change.timeline_context.is_primary)
        with self._subs_lock:
            subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            if subscription.queue is None:
                continue
            if subscription.is_external:
                if not is_primary:
                    self._stats.external_suppressed += 1
                    continue
                self._stats.external_published += 1
                self._offer(subscription, change.to_external_payload(), change)
            else:
                if subscription.branch_id is not None and subscription.branch_id != branch_id:
                    continue
                self._offer(subscription, copy.deepcopy(change), change)

    def _offer(self, subscription: _Subscription, item: Any, change: StateChangeNotification) -> None:
        try:
            subscription.queue.put_nowait(item)
        except asyncio.QueueFull:
            subscription.dropped += 1
            logger.warning(f"[{self.space_id}] Queue for '{subscription.subscriber_id}' is full "
                           f"({self.max_queue_size}); dropping notification for event {change.event_id}")

    async def _worker(self, subscription: _Subscription) -> None:
        queue = subscription.queue
        while True:
            item = await queue.get()
            try:
                await self._deliver(subscription, item)
            finally:
                queue.task_done()

    async def _deliver(self, subscription: _Subscription, item: Any) -> None:
        for attempt in range(1, self.max_delivery_attempts + 1):
            try:
                result = subscription.callback(item)
                if inspect.isawaitable(result):
                    await result
                subscription.delivered += 1
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt < self.max_delivery_attempts:
                    subscription.retried += 1
                    logger.warning(f"[{self.space_id}] Delivery to '{subscription.subscriber_id}' failed "
                                   f"(attempt {attempt}/{self.max_delivery_attempts}): {e}")
                    if self.retry_delay_seconds:
                        await asyncio.sleep(self.retry_delay_seconds)
                else:
                    subscription.failed += 1
                    logger.error(f"[{self.space_id}] Giving up on delivery to '{subscription.subscriber_id}' "
                                 f"after {attempt} attempts: {e}", exc_info=True)

    @property
    def stats(self) -> Dict[str, Any]:
        with self._subs_lock:
            per_subscriber = {
                s.subscriber_id: {"delivered": s.delivered, "failed": s.failed, "retried": s.retried,
                                  "dropped": s.dropped,
                                  "pending": s.queue.qsize() if s.queue is not None else 0}
                for s in self._subscriptions.values()
            }
        return {
            "published": self._stats.published,
            "external_published": self._stats.external_published,
            "external_suppressed": self._stats.external_suppressed,
            "backlog": len(self._backlog),
            "backlog_dropped": self._stats.backlog_dropped,
            "subscribers": per_subscriber,
        }

    def _on_cleanup(self) -> bool:
        with self._subs_lock:
            for subscription in self._subscriptions.values():
                if subscription.task is not None and not subscription.task.done():
                    subscription.task.cancel()
        return True
