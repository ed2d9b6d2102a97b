"""
Epoch point totals, lifetime aggregation and the commit path to the leaderboard.

Every point-category write ends in ``commit_epoch_stats``: totals are
recomputed, the stats are saved, lifetime points are re-aggregated and the
display total is pushed to the leaderboard.
"""

import logging

from points_engine.constants import MathConstants, normalize_address
from points_engine.data_models.entities import UserEpochStats, UserPoints
from points_engine.services.base import BaseService
from points_engine.services.interfaces import LeaderboardUpdater
from points_engine.services.testnet_bonus import TestnetBonusService
from points_engine.utils.fixed_point import from_scaled_points

logger = logging.getLogger(__name__)

BASIS_POINTS = MathConstants.BASIS_POINTS


def recompute_epoch_total_points(stats: UserEpochStats) -> int:
    """Sum of every raw point category."""
    return (
        stats.deposit_points
        + stats.borrow_points
        + stats.lp_points
        + stats.daily_supply_points
        + stats.daily_borrow_points
        + stats.daily_repay_points
        + stats.daily_withdraw_points
        + stats.daily_vp_points
        + stats.daily_lp_points
        + stats.manual_award_points
    )


def compute_total_points_with_multiplier(stats: UserEpochStats, testnet_bonus_bps: int = 0) -> int:
    """
    Sum of multiplied categories plus the flat ones, with the testnet bonus applied.

    Daily bonuses and manual awards are never multiplied.
    """
    base_points = (
        stats.deposit_points_with_multiplier
        + stats.borrow_points_with_multiplier
        + stats.vp_points_with_multiplier
        + stats.lp_points_with_multiplier
        + stats.daily_supply_points
        + stats.daily_borrow_points
        + stats.daily_repay_points
        + stats.daily_withdraw_points
        + stats.daily_lp_points
        + stats.manual_award_points
    )
    if testnet_bonus_bps > 0:
        return (base_points * (BASIS_POINTS + testnet_bonus_bps)) // BASIS_POINTS
    return base_points


class PointsLedgerService(BaseService):
    """Writes epoch stats and propagates them to lifetime totals and rankings."""

    def __init__(self, store, leaderboard: LeaderboardUpdater, testnet_bonus: TestnetBonusService):
        super().__init__(store)
        self.leaderboard = leaderboard
        self.testnet_bonus = testnet_bonus

    def refresh_totals(self, stats: UserEpochStats) -> None:
        stats.total_points = recompute_epoch_total_points(stats)
        stats.testnet_bonus_bps = self.testnet_bonus.bonus_for_epoch(stats.user_id, stats.epoch_number)
        stats.total_points_with_multiplier = compute_total_points_with_multiplier(
            stats, stats.testnet_bonus_bps
        )

    async def commit_epoch_stats(self, stats: UserEpochStats, timestamp: int) -> None:
        """Save stats with fresh totals, then update lifetime points and the leaderboard."""
        self.refresh_totals(stats)
        self.store.user_epoch_stats.set(stats)
        await self.update_lifetime_points(stats.user_id, stats.epoch_number, stats.last_updated_at)
        await self.leaderboard.update(
            stats.user_id, from_scaled_points(stats.total_points_with_multiplier), timestamp
        )

    async def update_lifetime_points(self, user_id: str, epoch_number: int, timestamp: int) -> None:
        """Re-aggregate a user's lifetime totals over every epoch they took part in."""
        user_id = normalize_address(user_id)
        user_points = await self.store.user_points.get(user_id)
        if not user_points:
            user_points = UserPoints(id=user_id, user_id=user_id, last_updated_at=timestamp)

        if epoch_number not in user_points.epochs_participated:
            user_points.epochs_participated.append(epoch_number)

        deposit = borrow = daily_supply = daily_borrow = 0
        daily_repay = daily_withdraw = daily_vp = total = 0
        for epoch in user_points.epochs_participated:
            stats = await self.store.user_epoch_stats.get(f"{user_id}:{epoch}")
            if not stats:
                continue
            deposit += stats.deposit_points
            borrow += stats.borrow_points
            daily_supply += stats.daily_supply_points
            daily_borrow += stats.daily_borrow_points
            daily_repay += stats.daily_repay_points
            daily_withdraw += stats.daily_withdraw_points
            daily_vp += stats.daily_vp_points
            total += stats.total_points

        user_points.lifetime_deposit_points = deposit
        user_points.lifetime_borrow_points = borrow
        user_points.lifetime_daily_supply_points = daily_supply
        user_points.lifetime_daily_borrow_points = daily_borrow
        user_points.lifetime_daily_repay_points = daily_repay
        user_points.lifetime_daily_withdraw_points = daily_withdraw
        user_points.lifetime_daily_vp_points = daily_vp
        user_points.lifetime_total_points = total
        user_points.last_updated_at = timestamp
        self.store.user_points.set(user_points)

        if total <= 0:
            return

        state = await self.get_or_create_user_state(user_id, timestamp)
        state.lifetime_points = total
        state.total_epochs_participated = len(user_points.epochs_participated)
        state.last_update = timestamp
        self.store.user_leaderboard_state.set(state)

        leaderboard_state = await self.store.get_leaderboard_state()
        if leaderboard_state and leaderboard_state.current_epoch_number > 0:
            await self.leaderboard.update_all_time(user_id, from_scaled_points(total), timestamp)

    async def apply_manual_points(self, user_id: str, epoch_number: int, points_delta: int,
                                  combined_multiplier: int, timestamp: int) -> UserEpochStats:
        """
        Add (or, with a negative delta, remove) admin-awarded scaled points.

        The manual category is floored at zero. Manual points are never
        multiplied; the current combined multiplier is only recorded.
        """
        stats = await self.get_or_create_epoch_stats(user_id, epoch_number, timestamp)
        stats.manual_award_points = max(stats.manual_award_points + points_delta, 0)
        stats.total_multiplier_bps = combined_multiplier
        stats.last_applied_multiplier_bps = combined_multiplier
        stats.last_updated_at = timestamp
        await self.commit_epoch_stats(stats, timestamp)
        return stats
