"""
LeaderboardKeeper events.

The keeper pushes authoritative state for users the indexer cannot observe
directly: voting power, partner NFT balances and LP liquidity, plus forced
settlements.
"""

import logging

from points_engine.handlers.common import event_timestamp, record_transaction
from points_engine.handlers.registry import handler
from points_engine.services.settlement import SettlementOptions
from points_engine.utils.fixed_point import combine_multipliers

logger = logging.getLogger(__name__)

KEEPER = 'LeaderboardKeeper'
KEEPER_SETTLEMENT = SettlementOptions(ignore_cooldown=True)


@handler(KEEPER, 'VotingPowerSynced')
async def handle_voting_power_synced(event, engine):
    await record_transaction(event, engine)
    user_id = event.address_param('user')
    timestamp = event_timestamp(event)
    voting_power = event.int_param('votingPower')

    state = await engine.multipliers.get_or_create_user_state(user_id, timestamp)
    state.voting_power = voting_power
    state.vp_multiplier = await engine.voting_power.calculate_vp_multiplier(voting_power)
    state.vp_tier_index = await engine.voting_power.find_vp_tier_index(voting_power)
    state.nft_multiplier = await engine.multipliers.calculate_nft_multiplier_from_count(state.nft_count)
    state.combined_multiplier = combine_multipliers(state.nft_multiplier, state.vp_multiplier)
    state.last_update = timestamp
    engine.store.user_leaderboard_state.set(state)


@handler(KEEPER, 'NFTBalanceSynced')
async def handle_nft_balance_synced(event, engine):
    await record_transaction(event, engine)
    user_id = event.address_param('user')
    collection = event.address_param('collection')
    timestamp = event_timestamp(event)

    was_owning, has_nft = await engine.nft_ownership.set_balance(
        user_id, collection, event.int_param('balance'), timestamp, event.block_number
    )
    engine.nft_ownership.write_baseline(user_id, collection, timestamp, event.block_number)

    if was_owning != has_nft:
        await engine.multipliers.apply_nft_balance_change(user_id, has_nft, timestamp, use_partnerships=False)


@handler(KEEPER, 'LPBalanceSynced')
async def handle_lp_balance_synced(event, engine):
    await record_transaction(event, engine)
    pool = event.address_param('pool')
    liquidity = event.int_param('liquidity')

    config = await engine.store.lp_pool_config.get(pool)
    if not config or liquidity <= 0:
        logger.debug(f"Ignoring LP sync for {pool}: config={config is not None} liquidity={liquidity}")
        return

    await engine.lp.sync_user_lp_positions_from_chain(
        event.address_param('user'),
        event_timestamp(event),
        event.block_number,
        force_rescan=True,
        managers=[config.position_manager],
    )


@handler(KEEPER, 'UserSettled')
async def handle_user_settled(event, engine):
    await record_transaction(event, engine)
    await engine.settlement.settle_points_for_all_reserves(
        event.address_param('user'), event_timestamp(event), event.block_number, KEEPER_SETTLEMENT
    )
