"""
Steps shared by many handlers.
"""

from points_engine.data_models.events import ChainEvent


async def record_transaction(event: ChainEvent, engine) -> None:
    """Apply due epoch transitions and count the event's transaction."""
    await engine.epochs.record_protocol_transaction(event.tx_hash, event.block_timestamp, event.block_number)


def event_timestamp(event: ChainEvent, param: str = 'timestamp') -> int:
    """An explicit ``timestamp`` parameter when the event carries one, else the block time."""
    value = event.optional_int(param)
    return value if value is not None else event.block_timestamp
