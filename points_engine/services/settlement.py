"""
Settlement orchestrator: the entry point run for a user on every relevant event.

A settlement re-syncs external holdings, settles LP positions, refreshes
voting power, accrues every reserve the user has touched (subject to the
cooldown), rolls the daily USD highwater and finally pays voting-power
points for the elapsed interval. Each step only counts what happened since
its own marker, so settling twice at one timestamp is a no-op.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from points_engine.constants import (
    LeaderboardConstants, MathConstants, TimeConstants, is_gateway_address, is_treasury_address, normalize_address,
)
from points_engine.services.base import BaseService, get_current_day
from points_engine.services.lp_accrual import LPAccrualService
from points_engine.services.multipliers import MultiplierService
from points_engine.services.nft_ownership import NFTOwnershipService
from points_engine.services.points_ledger import PointsLedgerService
from points_engine.services.price_oracle import PriceOracleService
from points_engine.services.reserve_accrual import (
    ReserveAccrualService, get_current_balances_from_scaled, user_reserve_id,
)
from points_engine.services.voting_power import VotingPowerService
from points_engine.utils.fixed_point import (
    apply_multiplier_scaled, combine_multipliers, to_decimal, to_scaled_points,
)

logger = logging.getLogger(__name__)

VP_SCALE = MathConstants.WAD


@dataclass(frozen=True)
class SettlementOptions:
    ignore_cooldown: bool = False
    skip_nft_sync: bool = False
    skip_lp_sync: bool = False
    skip_reserve_accrual: bool = False


DEFAULT_OPTIONS = SettlementOptions()


class SettlementService(BaseService):
    """Drives a full per-user settlement across every point source."""

    def __init__(self, store, price_oracle: PriceOracleService, voting_power: VotingPowerService,
                 multipliers: MultiplierService, reserves: ReserveAccrualService, lp: LPAccrualService,
                 nft_ownership: NFTOwnershipService, ledger: PointsLedgerService):
        super().__init__(store)
        self.price_oracle = price_oracle
        self.voting_power = voting_power
        self.multipliers = multipliers
        self.reserves = reserves
        self.lp = lp
        self.nft_ownership = nft_ownership
        self.ledger = ledger

    async def settle_points_for_user(self, user_id: str, reserve_id: Optional[str], timestamp: int,
                                     block_number: int,
                                     options: SettlementOptions = DEFAULT_OPTIONS) -> None:
        """
        Settle a user up to ``timestamp``.

        Before the leaderboard start block, or with no epoch yet, only the
        voting power state is refreshed. During the gap after an epoch has
        closed, accrual is capped at the epoch end.

        Args:
            user_id: User address
            reserve_id: Reserve that triggered the settlement, if any; always
                accrued even when the user is in cooldown
            timestamp: Event timestamp
            block_number: Event block
            options: Sync and cooldown switches
        """
        user_id = normalize_address(user_id)
        reserve_id = reserve_id.lower() if reserve_id else None
        if is_gateway_address(user_id) or is_treasury_address(user_id):
            return

        if block_number < LeaderboardConstants.LEADERBOARD_START_BLOCK:
            await self.multipliers.refresh_user_voting_power_state(user_id, timestamp)
            return

        state = await self.store.get_leaderboard_state()
        if not state or state.current_epoch_number == 0:
            await self.multipliers.refresh_user_voting_power_state(user_id, timestamp)
            return

        epoch_number = state.current_epoch_number
        epoch = await self.get_epoch(epoch_number)
        if not epoch:
            return

        balance_timestamp = timestamp
        if not state.is_active and epoch.end_time and timestamp > epoch.end_time:
            balance_timestamp = epoch.end_time

        if not options.skip_nft_sync:
            await self.nft_ownership.sync_user_nft_ownership_from_chain(user_id, timestamp, block_number)
        if not options.skip_lp_sync:
            await self.lp.sync_user_lp_positions_from_chain(user_id, timestamp, block_number)
            await self.lp.settle_user_lp_positions(user_id, timestamp, block_number)

        _, _, _, combined = await self.multipliers.refresh_user_voting_power_state(user_id, timestamp)

        config = await self.store.get_leaderboard_config()
        cooldown_seconds = config.cooldown_seconds if config else LeaderboardConstants.DEFAULT_COOLDOWN_SECONDS

        stats = await self.get_or_create_epoch_stats(user_id, epoch_number, timestamp)
        previous_updated_at = stats.last_updated_at

        in_cooldown = False
        if not options.ignore_cooldown and state.is_active and stats.last_updated_at > 0:
            in_cooldown = timestamp - stats.last_updated_at < cooldown_seconds

        if not options.skip_reserve_accrual:
            await self._settle_reserves(user_id, reserve_id, epoch_number, timestamp, balance_timestamp,
                                        block_number, in_cooldown, options.ignore_cooldown, combined)

        should_settle_vp = options.ignore_cooldown or not in_cooldown or reserve_id is not None
        vp_rate_bps = config.vp_rate_bps if config else 0
        if should_settle_vp and vp_rate_bps > 0:
            await self._settle_voting_power(user_id, epoch_number, max(epoch.start_time, previous_updated_at),
                                            balance_timestamp, vp_rate_bps, timestamp)

    async def settle_points_for_all_reserves(self, user_id: str, timestamp: int, block_number: int,
                                             options: SettlementOptions = DEFAULT_OPTIONS) -> None:
        await self.settle_points_for_user(user_id, None, timestamp, block_number, options)

    async def _settle_reserves(self, user_id: str, reserve_id: Optional[str], epoch_number: int,
                               timestamp: int, balance_timestamp: int, block_number: int,
                               in_cooldown: bool, ignore_cooldown: bool, combined_multiplier: int) -> None:
        if reserve_id:
            await self.reserves.add_reserve_to_user_list(user_id, reserve_id, timestamp)

        reserve_list = await self.store.user_reserve_list.get(user_id)
        if reserve_list:
            reserve_ids = reserve_list.reserve_ids
        else:
            reserve_ids = [reserve_id] if reserve_id else []
        if not reserve_ids:
            return

        total_supply_usd = 0.0
        total_borrow_usd = 0.0
        for user_reserve_reserve_id in reserve_ids:
            user_reserve = await self.store.user_reserve.get(user_reserve_id(user_id, user_reserve_reserve_id))
            if not user_reserve:
                continue
            reserve = await self.store.reserve.get(user_reserve_reserve_id)
            if not reserve:
                continue

            index_override = None
            if balance_timestamp < reserve.last_update_timestamp:
                index_override = await self.reserves.get_epoch_end_index_override(
                    user_reserve_reserve_id, epoch_number, balance_timestamp
                )
            supply, debt = get_current_balances_from_scaled(reserve, user_reserve, balance_timestamp,
                                                            index_override)
            if supply <= 0 and debt <= 0:
                continue

            if ignore_cooldown or not in_cooldown or user_reserve_reserve_id == reserve_id:
                await self.reserves.accrue_points_for_user_reserve(
                    user_id, user_reserve_reserve_id, timestamp, block_number,
                    combined_multiplier=combined_multiplier,
                )

            await self.price_oracle.ensure_asset_price(reserve.underlying_asset, timestamp)
            oracle = await self.store.price_oracle_asset.get(normalize_address(reserve.price))
            if not oracle or oracle.price_e8 == 0:
                continue
            price_usd = oracle.price_e8 / MathConstants.PRICE_SCALE
            total_supply_usd += to_decimal(supply, reserve.decimals) * price_usd
            total_borrow_usd += to_decimal(debt, reserve.decimals) * price_usd

        activity = await self.get_or_create_daily_activity(user_id, get_current_day(timestamp), timestamp)
        activity.daily_supply_usd_highwater = max(total_supply_usd, activity.daily_supply_usd_highwater)
        activity.daily_borrow_usd_highwater = max(total_borrow_usd, activity.daily_borrow_usd_highwater)
        activity.updated_at = timestamp
        self.store.user_daily_activity.set(activity)

    async def _settle_voting_power(self, user_id: str, epoch_number: int, accrual_start: int,
                                   accrual_end: int, vp_rate_bps: int, timestamp: int) -> None:
        """Pay ``averageVP * vp_rate_bps / 10000`` points per day over the interval."""
        if accrual_end <= accrual_start:
            return
        average_vp = await self.voting_power.calculate_average_voting_power(user_id, accrual_start, accrual_end)
        if average_vp <= 0:
            return

        rate_per_second = (vp_rate_bps / MathConstants.BASIS_POINTS) / TimeConstants.SECONDS_PER_DAY
        vp_points = (average_vp / VP_SCALE) * rate_per_second * (accrual_end - accrual_start)
        if vp_points <= 0:
            return
        vp_points_scaled = to_scaled_points(vp_points)

        user_state = await self.get_or_create_user_state(user_id, timestamp)
        average_vp_multiplier = await self.voting_power.calculate_vp_multiplier(average_vp)
        combined = combine_multipliers(user_state.nft_multiplier, average_vp_multiplier)

        stats = await self.get_or_create_epoch_stats(user_id, epoch_number, timestamp)
        stats.daily_vp_points += vp_points_scaled
        stats.vp_points_with_multiplier += apply_multiplier_scaled(vp_points_scaled, combined)
        stats.vp_multiplier_bps = combined
        stats.total_multiplier_bps = combined
        stats.last_applied_multiplier_bps = combined
        stats.last_updated_at = timestamp
        await self.ledger.commit_epoch_stats(stats, timestamp)
        logger.debug(f"VP points for {user_id}: {vp_points:.6f} over [{accrual_start}, {accrual_end}]")
