"""Query controller: turns query text into the current result list.

Each non-empty search advances an epoch before the request is sent. When a
response arrives it only touches state if its epoch is still the current
one, so a superseded request never needs its transport cancelled.
"""

import asyncio
from collections import defaultdict
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from loguru import logger

from .bus import Event, EventBus, Subscription
from .client import SearchBackend
from .errors import FetchError
from .models import Entity, QueryPhase, QueryState


STATE_EVENT = "query.state"


def dedupe(entities: Iterable[Entity]) -> List[Entity]:
    """Drop repeated entities, keeping the first occurrence and the order."""
    seen = set()
    unique = []
    for entity in entities:
        if entity in seen:
            continue
        seen.add(entity)
        unique.append(entity)
    return unique


class QueryController:
    """Owns the query state and publishes every change to subscribers."""

    def __init__(self, client: SearchBackend, event_bus: Optional[EventBus] = None):
        """
        Initialize query controller.

        Args:
            client: Object with an async ``search_entities(query)`` method
            event_bus: Bus to publish on; a private one is created if omitted
        """
        self.client = client
        self.event_bus = event_bus or EventBus(maxsize=0, name="query")
        self._state = QueryState()
        # Last state that was not LOADING
        self._settled = self._state
        self._epoch = 0
        self._pending_text = ""
        self._tasks: Set[asyncio.Task] = set()
        self._stats = defaultdict(int)

    async def __aenter__(self) -> "QueryController":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        await self.event_bus.start()

    async def close(self) -> None:
        """Cancel scheduled searches, flush notifications and stop the bus."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.event_bus.stop()
        logger.debug("Query controller closed")

    # Read side

    @property
    def state(self) -> QueryState:
        return self._state

    @property
    def query(self) -> str:
        return self._state.query

    @property
    def results(self) -> List[Entity]:
        return list(self._state.results)

    @property
    def loading(self) -> bool:
        return self._state.loading

    @property
    def phase(self) -> QueryPhase:
        return self._state.phase

    @property
    def last_error(self) -> Optional[FetchError]:
        return self._state.last_error

    @property
    def epoch(self) -> int:
        return self._epoch

    def subscribe(self, handler: Callable[[QueryState], Any]) -> Subscription:
        """Call ``handler`` with a state snapshot after every transition."""
        def deliver(event: Event):
            return handler(event.data['state'])

        return self.event_bus.subscribe(STATE_EVENT, deliver)

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    # Write side

    def set_query(self, text: str) -> None:
        """Store the text being typed without searching."""
        self._pending_text = text

    async def submit(self) -> None:
        """Search the text stored by ``set_query``."""
        await self.search(self._pending_text)

    def search_nowait(self, query: str) -> asyncio.Task:
        """Schedule a search and return its task."""
        task = asyncio.create_task(self.search(query))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def search(self, query: str) -> None:
        """
        Search for ``query`` and publish the outcome.

        An empty query clears the results without a network call. Errors end
        in the FAILED phase; nothing is raised to the caller.
        """
        self._epoch += 1
        epoch = self._epoch
        self._pending_text = query
        self._stats['searches'] += 1

        if not query:
            logger.debug("Empty query, clearing results")
            self._publish(QueryState(
                query="",
                results=(),
                loading=False,
                phase=QueryPhase.LOADED,
                epoch=epoch
            ))
            return

        # Previous results stay visible while loading
        self._publish(QueryState(
            query=query,
            results=self._state.results,
            loading=True,
            phase=QueryPhase.LOADING,
            epoch=epoch
        ))

        entities = None
        error = None
        try:
            entities = await self.client.search_entities(query)
        except asyncio.CancelledError:
            if epoch == self._epoch:
                logger.debug(f"Search for '{query}' cancelled, restoring last outcome")
                self._stats['cancelled'] += 1
                self._publish(replace(self._settled, epoch=epoch))
            raise
        except FetchError as e:
            error = e
        except Exception as e:
            logger.exception(f"Unexpected search failure for '{query}'")
            error = FetchError(f"Unexpected search failure: {e}")

        if epoch != self._epoch:
            logger.debug(f"Discarding stale response for '{query}' (epoch {epoch} < {self._epoch})")
            self._stats['stale_discarded'] += 1
            return

        if error is not None:
            logger.warning(f"Search for '{query}' failed: {error.message}")
            self._stats['failures'] += 1
            self._publish(QueryState(
                query=query,
                results=(),
                loading=False,
                phase=QueryPhase.FAILED,
                last_error=error,
                epoch=epoch
            ))
            return

        results = tuple(dedupe(entities))
        logger.debug(f"Search for '{query}' loaded {len(results)} results")
        self._publish(QueryState(
            query=query,
            results=results,
            loading=False,
            phase=QueryPhase.LOADED,
            epoch=epoch
        ))

    def _publish(self, state: QueryState) -> None:
        self._state = state
        if not state.loading:
            self._settled = state
        self.event_bus.emit_nowait(Event(
            type=STATE_EVENT,
            data={'state': state},
            source="query"
        ))
