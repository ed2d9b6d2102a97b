"""
NFT partnership registry events and partner collection transfers.
"""

from points_engine.constants import AddressConstants
from points_engine.handlers.common import record_transaction
from points_engine.handlers.registry import handler
from points_engine.services.settlement import SettlementOptions

REGISTRY = 'NFTPartnershipRegistry'
PARTNER_NFT_CONTRACTS = ('PartnerNFT', 'The10kSquad', 'Overnads', 'SolveilPass')

# Transfers already moved the balance, so re-reading it from chain is redundant
TRANSFER_SETTLEMENT = SettlementOptions(ignore_cooldown=True, skip_nft_sync=True)


@handler(REGISTRY, 'PartnershipAdded')
async def handle_partnership_added(event, engine):
    await record_transaction(event, engine)
    await engine.nft_ownership.add_partnership(
        event.address_param('collection'),
        str(event.param('name')),
        bool(event.param('active')),
        event.int_param('startTimestamp'),
        event.int_param('endTimestamp'),
        event.int_param('currentFirstBonus'),
        event.int_param('currentDecayRatio'),
        event.block_timestamp,
        static_boost_bps=event.optional_int('staticBoostBps'),
    )


@handler(REGISTRY, 'PartnershipUpdated')
async def handle_partnership_updated(event, engine):
    await record_transaction(event, engine)
    await engine.nft_ownership.update_partnership(
        event.address_param('collection'),
        str(event.param('name')),
        bool(event.param('active')),
        event.int_param('startTimestamp'),
        event.int_param('endTimestamp'),
        event.block_timestamp,
        static_boost_bps=event.optional_int('staticBoostBps'),
    )


@handler(REGISTRY, 'PartnershipRemoved')
async def handle_partnership_removed(event, engine):
    await record_transaction(event, engine)
    await engine.nft_ownership.remove_partnership(event.address_param('collection'), event.block_timestamp)


@handler(REGISTRY, 'MultiplierParamsUpdated')
async def handle_multiplier_params_updated(event, engine):
    await record_transaction(event, engine)
    engine.nft_ownership.update_multiplier_params(
        event.int_param('newFirstBonus'), event.int_param('newDecayRatio'), event.int_param('timestamp'),
    )


async def _move_nft(event, engine, collection: str, user_id: str, delta: int) -> None:
    timestamp = event.block_timestamp
    was_owning, has_nft = await engine.nft_ownership.apply_balance_delta(
        user_id, collection, delta, timestamp, event.block_number
    )
    if was_owning == has_nft:
        return

    state, old_multiplier = await engine.multipliers.apply_nft_balance_change(
        user_id, has_nft, timestamp, use_partnerships=True
    )
    await engine.settlement.settle_points_for_user(
        user_id, None, timestamp, event.block_number, TRANSFER_SETTLEMENT
    )

    if state.nft_multiplier != old_multiplier:
        reason = f"NFT_RECEIVED:{collection}" if has_nft else f"NFT_TRANSFERRED:{collection}"
        engine.multipliers.create_multiplier_snapshot(state, timestamp, event.tx_hash, reason, event.log_index)


async def handle_nft_transfer(event, engine):
    """Track holdings by delta; only crossing 0 <-> positive touches the multiplier."""
    await record_transaction(event, engine)
    collection = event.src
    sender = event.address_param('from')
    recipient = event.address_param('to')

    if sender == recipient and sender != AddressConstants.ZERO_ADDRESS:
        await engine.nft_ownership.touch_ownership(sender, collection, event.block_timestamp, event.block_number)
        return

    if sender != AddressConstants.ZERO_ADDRESS:
        await _move_nft(event, engine, collection, sender, -1)
    if recipient != AddressConstants.ZERO_ADDRESS:
        await _move_nft(event, engine, collection, recipient, 1)


for _contract in PARTNER_NFT_CONTRACTS:
    handler(_contract, 'Transfer')(handle_nft_transfer)
