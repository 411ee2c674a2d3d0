"""Async event bus owned by a controller.

Each controller creates its own bus and tears it down in ``close()``;
there is no process-wide instance.
"""

import asyncio
from typing import Dict, List, Callable, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from collections import defaultdict
from loguru import logger


@dataclass
class Event:
    """Base event class."""
    type: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: Optional[str] = None


class Subscription:
    """Handle returned by ``EventBus.subscribe``; cancel it to stop delivery."""

    def __init__(self, bus: "EventBus", pattern: str, handler: Callable[[Event], Any]):
        self.bus = bus
        self.pattern = pattern
        self.handler = handler
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.bus.unsubscribe(self.pattern, self.handler)
            self.active = False


class EventBus:
    """
    Async pub/sub event bus for in-process notification.

    Event types follow pattern: category.action
    Examples: query.state, asset.slot

    Events are delivered in emission order. Handlers hold strong
    references until unsubscribed or the bus is stopped.
    """

    def __init__(self, maxsize: int = 1000, name: str = "bus"):
        self.name = name
        self._subscribers: Dict[str, List[Callable[[Event], Any]]] = defaultdict(list)
        self._event_queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._running = False
        self._processor_task: Optional[asyncio.Task] = None
        self._stats = defaultdict(int)

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, event_pattern: str, handler: Callable[[Event], Any]) -> Subscription:
        """
        Subscribe to events matching pattern.
        Pattern can use wildcards: 'asset.*' matches all asset events.
        """
        self._subscribers[event_pattern].append(handler)
        logger.debug(f"{self.name}: subscribed handler to pattern: {event_pattern}")
        return Subscription(self, event_pattern, handler)

    def unsubscribe(self, event_pattern: str, handler: Callable[[Event], Any]) -> None:
        """Unsubscribe handler from event pattern."""
        handlers = self._subscribers.get(event_pattern)
        if not handlers:
            return
        self._subscribers[event_pattern] = [h for h in handlers if h != handler]

    def subscriber_count(self) -> int:
        return sum(len(handlers) for handlers in self._subscribers.values())

    async def emit(self, event: Event) -> None:
        """Emit an event to the bus."""
        self.emit_nowait(event)

    def emit_nowait(self, event: Event) -> bool:
        """
        Emit an event without waiting (non-async).
        Returns True if successful, False if queue is full.
        """
        try:
            self._event_queue.put_nowait(event)
            self._stats['emitted'] += 1
            logger.debug(f"{self.name}: emitted event: {event.type}")
            return True
        except asyncio.QueueFull:
            logger.warning(f"{self.name}: event queue full, dropping event: {event.type}")
            self._stats['dropped'] += 1
            return False

    async def start(self) -> None:
        """Start the event processor."""
        if self._running:
            logger.warning(f"{self.name}: event bus already running")
            return

        self._running = True
        self._processor_task = asyncio.create_task(self._process_events())
        logger.debug(f"{self.name}: event bus started")

    async def join(self) -> None:
        """Wait until every queued event has been delivered."""
        if self._running:
            await self._event_queue.join()

    async def stop(self) -> None:
        """Deliver pending events, stop the processor and drop all subscribers."""
        if not self._running:
            self._subscribers.clear()
            return

        await self._event_queue.join()
        self._running = False
        if self._processor_task:
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
            self._processor_task = None
        self._subscribers.clear()
        logger.debug(f"{self.name}: event bus stopped")

    async def _process_events(self) -> None:
        """Process events from the queue."""
        while self._running:
            event = await self._event_queue.get()
            try:
                await self._dispatch(event)
                self._stats['processed'] += 1
            except Exception as e:
                logger.error(f"{self.name}: error processing event: {e}")
                self._stats['processing_errors'] += 1
            finally:
                self._event_queue.task_done()

    async def _dispatch(self, event: Event) -> None:
        handlers = []
        for pattern, pattern_handlers in list(self._subscribers.items()):
            if self._matches_pattern(event.type, pattern):
                handlers.extend(pattern_handlers)

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"{self.name}: handler error for event {event.type}: {e}")
                self._stats['handler_errors'] += 1

    def _matches_pattern(self, event_type: str, pattern: str) -> bool:
        """Check if event type matches subscription pattern."""
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            prefix = pattern[:-2]
            return event_type.startswith(prefix + ".")
        return event_type == pattern

    def get_stats(self) -> Dict[str, int]:
        """Get event bus statistics."""
        return dict(self._stats)

    def reset_stats(self) -> None:
        """Reset statistics."""
        self._stats.clear()
