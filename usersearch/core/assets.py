"""Lazy, memoized avatar cache.

Slots go ABSENT -> PENDING -> LOADED | FAILED. A PENDING or LOADED slot
short-circuits further requests, which gives at most one download in flight
per entity. FAILED slots are fetched again on the next request.

Entries are never evicted; the cache lives as long as the session.
"""

import asyncio
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, Optional, Set

from loguru import logger

from .bus import Event, EventBus, Subscription
from .client import AssetBackend, decode_image
from .config import Config
from .errors import FetchError
from .models import AssetSlot, Entity, EntityId, SlotState


SLOT_EVENT = "asset.slot"


class AssetCache:
    """Maps entity ids to asset slots and fetches missing assets on request."""

    def __init__(self, client: AssetBackend, config: Optional[Config] = None,
                 event_bus: Optional[EventBus] = None):
        """
        Initialize asset cache.

        Args:
            client: Object with an async ``fetch_bytes(uri)`` method
            config: Configuration; defaults are used when omitted
            event_bus: Bus to publish on; a private one is created if omitted
        """
        self.client = client
        self.config = config or Config()
        self.event_bus = event_bus or EventBus(maxsize=0, name="assets")
        self._slots: Dict[EntityId, AssetSlot] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._stats = defaultdict(int)

        limit = self.config.assets.max_concurrent_fetches
        self._semaphore = asyncio.Semaphore(limit) if limit > 0 else None

    async def __aenter__(self) -> "AssetCache":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        await self.event_bus.start()

    async def close(self) -> None:
        """Wait for outstanding downloads, flush notifications and stop the bus."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.event_bus.stop()
        logger.debug(f"Asset cache closed with {len(self._slots)} entries")

    # Read side

    def get(self, entity_id: EntityId) -> AssetSlot:
        return self._slots.get(entity_id) or AssetSlot.absent()

    def snapshot(self) -> Dict[EntityId, AssetSlot]:
        return dict(self._slots)

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, entity_id: EntityId) -> bool:
        return entity_id in self._slots

    def subscribe(self, handler: Callable[[EntityId, AssetSlot], Any]) -> Subscription:
        """Call ``handler(entity_id, slot)`` after every slot transition."""
        def deliver(event: Event):
            return handler(event.data['id'], event.data['slot'])

        return self.event_bus.subscribe(SLOT_EVENT, deliver)

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    # Write side

    def request_nowait(self, entity: Entity) -> asyncio.Task:
        """Schedule a request (e.g. when a row becomes visible)."""
        task = asyncio.create_task(self.request(entity))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def request_many(self, entities: Iterable[Entity]) -> None:
        """Request every entity concurrently and wait for all of them."""
        await asyncio.gather(*(self.request(entity) for entity in entities))

    async def request(self, entity: Entity) -> None:
        """
        Fetch the entity's asset unless it is loaded or already in flight.

        Failures are stored in the slot and never raised.
        """
        # No await between the check and marking PENDING
        slot = self._slots.get(entity.id)
        if slot is not None and slot.blocks_fetch:
            self._stats['short_circuits'] += 1
            return

        if slot is not None and slot.state == SlotState.FAILED:
            logger.debug(f"Retrying failed asset for {entity.id}")
        self._set_slot(entity.id, AssetSlot.pending())

        try:
            data = await self._download(entity.avatar_url)
        except asyncio.CancelledError:
            # A cancelled download is not in flight any more
            logger.debug(f"Asset fetch for {entity.id} cancelled")
            self._stats['cancelled'] += 1
            self._set_slot(entity.id, slot or AssetSlot.absent())
            raise
        except FetchError as e:
            logger.warning(f"Asset fetch for {entity.id} failed: {e.message}")
            self._stats['failures'] += 1
            self._set_slot(entity.id, AssetSlot.failed(e))
            return
        except Exception as e:
            logger.exception(f"Unexpected asset failure for {entity.id}")
            self._stats['failures'] += 1
            self._set_slot(entity.id, AssetSlot.failed(
                FetchError(f"Unexpected asset failure: {e}", url=entity.avatar_url)
            ))
            return

        self._stats['loaded'] += 1
        self._set_slot(entity.id, AssetSlot.loaded(data))

    async def _download(self, uri: str) -> bytes:
        self._stats['fetches'] += 1
        if self._semaphore is None:
            data = await self.client.fetch_bytes(uri)
        else:
            async with self._semaphore:
                data = await self.client.fetch_bytes(uri)

        if self.config.assets.verify_images:
            data = decode_image(data, url=uri)
        return data

    def _set_slot(self, entity_id: EntityId, slot: AssetSlot) -> None:
        self._slots[entity_id] = slot
        logger.debug(f"Asset slot {entity_id} -> {slot.state.value}")
        self.event_bus.emit_nowait(Event(
            type=SLOT_EVENT,
            data={'id': entity_id, 'slot': slot},
            source="assets"
        ))
