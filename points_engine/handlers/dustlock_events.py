"""
DustLock vote-escrow events.

Locks are mirrored into DustLockToken rows; whenever a lock's amount, end or
owner changes, the owner's total voting power is recomputed. Locks created
before the DustLock start block never touch voting power.
"""

from points_engine.constants import AddressConstants, DustLockConstants, LeaderboardConstants
from points_engine.data_models.entities import DustLockToken
from points_engine.handlers.common import record_transaction
from points_engine.handlers.registry import handler

DUST_LOCK = 'DustLock'
ZERO_ADDRESS = AddressConstants.ZERO_ADDRESS


def tracks_voting_power(block_number: int) -> bool:
    return block_number >= LeaderboardConstants.DUST_LOCK_START_BLOCK


def unlock_end(unlock_timestamp: int) -> int:
    """End of a freshly unlocked permanent lock: max lock time, rounded down to a week."""
    week = DustLockConstants.WEEK
    return ((unlock_timestamp + DustLockConstants.MAX_LOCK_TIME) // week) * week


async def _get_or_init_token(engine, token_id: int, timestamp: int) -> DustLockToken:
    token = await engine.store.dust_lock_token.get(str(token_id))
    if not token:
        token = DustLockToken(id=str(token_id), created_at=timestamp, updated_at=timestamp)
    return token


async def _save_and_recalculate(event, engine, token: DustLockToken, event_type: str) -> None:
    token.updated_at = event.block_timestamp
    engine.store.dust_lock_token.set(token)
    if token.owner and tracks_voting_power(event.block_number):
        await engine.voting_power.recalculate_user_total_vp(
            token.owner, event.block_timestamp, event.tx_hash, event_type, event.log_index, event.block_number,
        )


@handler(DUST_LOCK, 'Deposit')
async def handle_deposit(event, engine):
    await record_transaction(event, engine)
    token = await _get_or_init_token(engine, event.int_param('tokenId'), event.block_timestamp)
    token.locked_amount += event.int_param('value')
    token.end = event.int_param('locktime')
    token.last_deposit_type = event.int_param('depositType')
    await _save_and_recalculate(event, engine, token, 'DEPOSIT')


async def _withdraw(event, engine, event_type: str) -> None:
    await record_transaction(event, engine)
    token_id = event.int_param('tokenId')
    token = await _get_or_init_token(engine, token_id, event.block_timestamp)
    token.locked_amount = max(token.locked_amount - event.int_param('value'), 0)
    token.updated_at = event.block_timestamp
    engine.store.dust_lock_token.set(token)

    if token.owner and tracks_voting_power(event.block_number):
        await engine.voting_power.update_user_voting_power(
            token.owner, token_id, 0, event.block_timestamp, event.tx_hash, event_type, event.log_index,
        )


@handler(DUST_LOCK, 'Withdraw')
async def handle_withdraw(event, engine):
    await _withdraw(event, engine, 'WITHDRAW')


@handler(DUST_LOCK, 'EarlyWithdraw')
async def handle_early_withdraw(event, engine):
    await _withdraw(event, engine, 'EARLY_WITHDRAW')


@handler(DUST_LOCK, 'LockPermanent')
async def handle_lock_permanent(event, engine):
    await record_transaction(event, engine)
    token = await _get_or_init_token(engine, event.int_param('tokenId'), event.block_timestamp)
    token.is_permanent = True
    token.end = 0
    token.locked_amount = event.int_param('amount')
    await _save_and_recalculate(event, engine, token, 'LOCK_PERMANENT')


@handler(DUST_LOCK, 'UnlockPermanent')
async def handle_unlock_permanent(event, engine):
    await record_transaction(event, engine)
    token = await _get_or_init_token(engine, event.int_param('tokenId'), event.block_timestamp)
    token.is_permanent = False
    token.end = unlock_end(event.int_param('ts'))
    token.locked_amount = event.int_param('amount')
    await _save_and_recalculate(event, engine, token, 'UNLOCK_PERMANENT')


@handler(DUST_LOCK, 'Merge')
async def handle_merge(event, engine):
    await record_transaction(event, engine)
    token = await _get_or_init_token(engine, event.int_param('to'), event.block_timestamp)
    token.locked_amount = event.int_param('amountFinal')
    token.end = event.int_param('locktime')
    await _save_and_recalculate(event, engine, token, 'MERGE')


@handler(DUST_LOCK, 'Split')
async def handle_split(event, engine):
    await record_transaction(event, engine)
    locktime = event.int_param('locktime')

    first = await _get_or_init_token(engine, event.int_param('tokenId1'), event.block_timestamp)
    first.locked_amount = event.int_param('splitAmount1')
    first.end = locktime

    second = await _get_or_init_token(engine, event.int_param('tokenId2'), event.block_timestamp)
    second.locked_amount = event.int_param('splitAmount2')
    second.end = locktime
    second.updated_at = event.block_timestamp
    engine.store.dust_lock_token.set(second)

    # Both halves share an owner at split time
    await _save_and_recalculate(event, engine, first, 'SPLIT')


@handler(DUST_LOCK, 'Transfer')
async def handle_transfer(event, engine):
    await record_transaction(event, engine)
    token_id = event.int_param('tokenId')
    sender = event.address_param('from')
    recipient = event.address_param('to')
    timestamp = event.block_timestamp

    token = await _get_or_init_token(engine, token_id, timestamp)
    token.owner = '' if recipient == ZERO_ADDRESS else recipient
    token.updated_at = timestamp
    engine.store.dust_lock_token.set(token)

    if sender != ZERO_ADDRESS:
        await engine.voting_power.update_user_token_list(sender, token_id, timestamp, 'remove')
        await engine.voting_power.get_or_create_user_state(sender, timestamp)
    if recipient != ZERO_ADDRESS:
        await engine.voting_power.update_user_token_list(recipient, token_id, timestamp, 'add')
        await engine.voting_power.get_or_create_user_state(recipient, timestamp)

    if not tracks_voting_power(event.block_number):
        return
    if sender != ZERO_ADDRESS:
        await engine.voting_power.recalculate_user_total_vp(
            sender, timestamp, event.tx_hash, 'TRANSFER_OUT', event.log_index, event.block_number,
        )
    if recipient != ZERO_ADDRESS:
        await engine.voting_power.recalculate_user_total_vp(
            recipient, timestamp, event.tx_hash, 'TRANSFER_IN', event.log_index, event.block_number,
        )
