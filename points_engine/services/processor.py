"""
Event processor: applies decoded events to the engine in stream order.

Each event is deduplicated by ``(txHash, logIndex)``, dispatched to its
registered handler and marked processed. Handler writes are staged in the
store: if the handler raises, every row it touched is restored and the event
stays unprocessed, so a retry starts from the same state. When a database is
attached the store is then flushed inside one transaction.
"""

import logging
from typing import Iterable

from points_engine.data_models.events import ChainEvent
from points_engine.engine import PointsEngine
from points_engine.handlers.registry import require_handler
from points_engine.utils.logger import describe_event
from points_engine.utils.redis_utils import processing_lock

logger = logging.getLogger(__name__)


def sort_events(events: Iterable[ChainEvent]):
    return sorted(events, key=lambda e: (e.block_number, e.log_index))


class EventProcessor:
    """Dispatches events through the handler registry."""

    def __init__(self, engine: PointsEngine, redis_client=None):
        self.engine = engine
        self.redis_client = redis_client
        self._bootstrapped = False

    async def _apply(self, event: ChainEvent) -> bool:
        store = self.engine.store
        if store.is_processed(event.key):
            logger.debug(f"Skipping already processed event {event.key}")
            return False

        fn = require_handler(event.contract, event.event_name)

        try:
            with store.staged():
                if not self._bootstrapped:
                    await self.engine.configuration.bootstrap_defaults(event.block_timestamp)
                await fn(event, self.engine)
        except Exception as e:
            logger.error(f"Error handling {describe_event(event)}: {e}", exc_info=True)
            raise

        self._bootstrapped = True
        store.mark_processed(event.key, event.event_name, event.block_number, event.log_index)
        await self.engine.flush()
        return True

    async def process(self, event: ChainEvent) -> bool:
        """
        Apply one event.

        Returns:
            False if the event had already been processed, True otherwise

        Raises:
            UnknownEventError: No handler is registered for the event
            ProcessingLockError: The shared processing lock is held elsewhere
        """
        async with processing_lock(self.redis_client):
            return await self._apply(event)

    async def process_many(self, events: Iterable[ChainEvent], ordered: bool = False) -> int:
        """Apply a batch under one lock hold, in (block, logIndex) order. Returns the number applied."""
        batch = list(events) if ordered else sort_events(events)
        applied = 0
        async with processing_lock(self.redis_client):
            for event in batch:
                if await self._apply(event):
                    applied += 1
        logger.info(f"Applied {applied} of {len(batch)} events")
        return applied
