"""
Leaderboard admin events: epochs, rate config, VP tiers, LP pools,
blacklist and manual point adjustments.
"""

import logging

from points_engine.data_models.entities import ManualPointsAward
from points_engine.handlers.common import event_timestamp, record_transaction
from points_engine.handlers.registry import handler
from points_engine.services.configuration import bonus_from_wei
from points_engine.utils.fixed_point import from_scaled_points

logger = logging.getLogger(__name__)

EPOCH_MANAGER = 'EpochManager'
LEADERBOARD_CONFIG = 'LeaderboardConfig'
VP_MULTIPLIER = 'VotingPowerMultiplier'


# ============================================
# Epochs
# ============================================

@handler(EPOCH_MANAGER, 'EpochStart')
async def handle_epoch_start(event, engine):
    await record_transaction(event, engine)
    await engine.epochs.schedule_epoch_start(
        event.int_param('epochNumber'), event.int_param('startTime'),
        event.block_timestamp, event.block_number,
    )


@handler(EPOCH_MANAGER, 'EpochEnd')
async def handle_epoch_end(event, engine):
    await record_transaction(event, engine)
    await engine.epochs.schedule_epoch_end(
        event.int_param('epochNumber'), event.int_param('endTime'),
        event.block_timestamp, event.block_number,
    )


# ============================================
# Rate config
# ============================================

@handler(LEADERBOARD_CONFIG, 'ConfigSnapshot')
async def handle_config_snapshot(event, engine):
    await record_transaction(event, engine)
    await engine.configuration.apply_config_snapshot({
        'deposit_rate_bps': event.int_param('depositRateBps'),
        'borrow_rate_bps': event.int_param('borrowRateBps'),
        'vp_rate_bps': event.int_param('vpRateBps'),
        'supply_daily_bonus': bonus_from_wei(event.int_param('supplyDailyBonus')),
        'borrow_daily_bonus': bonus_from_wei(event.int_param('borrowDailyBonus')),
        'repay_daily_bonus': bonus_from_wei(event.int_param('repayDailyBonus')),
        'withdraw_daily_bonus': bonus_from_wei(event.int_param('withdrawDailyBonus')),
        'cooldown_seconds': event.int_param('cooldownSeconds'),
        'min_daily_bonus_usd': float(event.int_param('minDailyBonusUsd')),
    }, event.int_param('timestamp'))


@handler(LEADERBOARD_CONFIG, 'DepositRateUpdated')
async def handle_deposit_rate_updated(event, engine):
    await record_transaction(event, engine)
    await engine.configuration.update_config(event_timestamp(event), deposit_rate_bps=event.int_param('newRate'))


@handler(LEADERBOARD_CONFIG, 'BorrowRateUpdated')
async def handle_borrow_rate_updated(event, engine):
    await record_transaction(event, engine)
    await engine.configuration.update_config(event_timestamp(event), borrow_rate_bps=event.int_param('newRate'))


@handler(LEADERBOARD_CONFIG, 'VpRateUpdated')
async def handle_vp_rate_updated(event, engine):
    await record_transaction(event, engine)
    await engine.configuration.update_config(event_timestamp(event), vp_rate_bps=event.int_param('newRate'))


@handler(LEADERBOARD_CONFIG, 'LPRateUpdated')
async def handle_lp_rate_updated(event, engine):
    await record_transaction(event, engine)
    await engine.configuration.update_config(event_timestamp(event), lp_rate_bps=event.int_param('newRate'))


@handler(LEADERBOARD_CONFIG, 'DailyBonusUpdated')
async def handle_daily_bonus_updated(event, engine):
    await record_transaction(event, engine)
    await engine.configuration.update_config(
        event_timestamp(event),
        supply_daily_bonus=bonus_from_wei(event.int_param('newSupplyBonus')),
        borrow_daily_bonus=bonus_from_wei(event.int_param('newBorrowBonus')),
        repay_daily_bonus=bonus_from_wei(event.int_param('newRepayBonus')),
        withdraw_daily_bonus=bonus_from_wei(event.int_param('newWithdrawBonus')),
    )


@handler(LEADERBOARD_CONFIG, 'CooldownUpdated')
async def handle_cooldown_updated(event, engine):
    await record_transaction(event, engine)
    await engine.configuration.update_config(event_timestamp(event), cooldown_seconds=event.int_param('newSeconds'))


@handler(LEADERBOARD_CONFIG, 'MinDailyBonusUsdUpdated')
async def handle_min_daily_bonus_usd_updated(event, engine):
    await record_transaction(event, engine)
    await engine.configuration.update_config(
        event_timestamp(event), min_daily_bonus_usd=float(event.int_param('newMin'))
    )


# ============================================
# LP pools
# ============================================

@handler(LEADERBOARD_CONFIG, 'LPPoolConfigured')
async def handle_lp_pool_configured(event, engine):
    await record_transaction(event, engine)
    timestamp = event_timestamp(event)
    lp_rate_bps = event.int_param('lpRateBps')
    await engine.lp.configure_pool(
        event.address_param('pool'),
        event.address_param('positionManager'),
        event.address_param('token0'),
        event.address_param('token1'),
        lp_rate_bps,
        timestamp,
        event.block_number,
    )
    # The most recently configured pool's rate becomes the global LP rate
    await engine.configuration.update_config(timestamp, lp_rate_bps=lp_rate_bps)


@handler(LEADERBOARD_CONFIG, 'LPPoolDisabled')
async def handle_lp_pool_disabled(event, engine):
    await record_transaction(event, engine)
    await engine.lp.disable_pool(event.address_param('pool'), event_timestamp(event))


# ============================================
# Blacklist and manual points
# ============================================

@handler(LEADERBOARD_CONFIG, 'AddressBlacklisted')
async def handle_address_blacklisted(event, engine):
    await record_transaction(event, engine)
    await engine.leaderboard.set_blacklisted(event.address_param('account'), True, event_timestamp(event))


@handler(LEADERBOARD_CONFIG, 'AddressUnblacklisted')
async def handle_address_unblacklisted(event, engine):
    await record_transaction(event, engine)
    await engine.leaderboard.set_blacklisted(event.address_param('account'), False, event_timestamp(event))


async def _apply_manual_points(event, engine, sign: int) -> None:
    await record_transaction(event, engine)
    user_id = event.address_param('user')
    timestamp = event_timestamp(event)
    await engine.ledger.get_or_create_user_state(user_id, timestamp)

    state, epoch = await engine.ledger.get_current_epoch()
    if not epoch:
        return

    scaled_points = event.int_param('points')
    engine.store.manual_points_award.set(ManualPointsAward(
        id=f"{event.tx_hash}-{event.log_index}",
        user_id=user_id,
        epoch_number=epoch.epoch_number,
        points=sign * from_scaled_points(scaled_points),
        reason=str(event.params.get('reason', '')),
        awarded_at=timestamp,
        tx_hash=event.tx_hash,
    ))

    _, _, _, combined = await engine.multipliers.refresh_user_voting_power_state(user_id, timestamp)
    await engine.ledger.apply_manual_points(user_id, epoch.epoch_number, sign * scaled_points, combined, timestamp)
    logger.info(f"Manual points {'awarded to' if sign > 0 else 'removed from'} {user_id}: "
                f"{from_scaled_points(scaled_points)}")


@handler(LEADERBOARD_CONFIG, 'PointsAwarded')
async def handle_points_awarded(event, engine):
    await _apply_manual_points(event, engine, 1)


@handler(LEADERBOARD_CONFIG, 'PointsRemoved')
async def handle_points_removed(event, engine):
    await _apply_manual_points(event, engine, -1)


# ============================================
# Voting power tiers
# ============================================

@handler(VP_MULTIPLIER, 'TierAdded')
async def handle_tier_added(event, engine):
    await record_transaction(event, engine)
    engine.configuration.add_vp_tier(
        event.int_param('tierIndex'), event.int_param('minVotingPower'),
        event.int_param('multiplierBps'), event.block_timestamp,
    )


@handler(VP_MULTIPLIER, 'TierUpdated')
async def handle_tier_updated(event, engine):
    await record_transaction(event, engine)
    await engine.configuration.update_vp_tier(
        event.int_param('tierIndex'), event.int_param('newMinVotingPower'),
        event.int_param('newMultiplierBps'), event.block_timestamp,
    )


@handler(VP_MULTIPLIER, 'TierRemoved')
async def handle_tier_removed(event, engine):
    await record_transaction(event, engine)
    await engine.configuration.remove_vp_tier(event.int_param('tierIndex'), event.block_timestamp)
