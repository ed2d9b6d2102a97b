"""
Deposit and borrow point accrual for lending reserves, plus daily flat bonuses.

Accrual integrates a user's token balance against the asset's cumulative
price-hours index:

    points = tokens * (idx_now - idx_last) * rate_bps / (10^decimals * 10^8 * 10000 * 24)

scaled by 1e18, with idx deltas taken in 8-decimal fixed point. The per-epoch
reset baseline guarantees the first settlement in an epoch never counts
pre-epoch price-hours.
"""

import logging
import math
from typing import Optional, Tuple

from points_engine.constants import (
    LeaderboardConstants, MathConstants, TimeConstants, normalize_address,
)
from points_engine.data_models.entities import (
    Reserve, ReserveIndexSnapshot, UserEpochStats, UserReserve, UserReserveList, UserReservePoints,
)
from points_engine.services.base import BaseService, get_current_day
from points_engine.services.multipliers import MultiplierService
from points_engine.services.points_ledger import PointsLedgerService
from points_engine.services.price_oracle import PriceOracleService
from points_engine.utils.fixed_point import (
    apply_multiplier_scaled, get_reserve_normalized_income, get_reserve_normalized_variable_debt,
    ray_mul, to_decimal, to_scaled_points, to_scaled_tokens,
)

logger = logging.getLogger(__name__)

BASIS_POINTS = MathConstants.BASIS_POINTS
POINTS_SCALE = MathConstants.POINTS_SCALE
PRICE_SCALE = MathConstants.PRICE_SCALE

# Daily action kind -> activity flag
DAILY_ACTIVITY_FLAGS = {
    'supply': 'has_supplied',
    'borrow': 'has_borrowed',
    'repay': 'has_repaid',
    'withdraw': 'has_withdrawn',
}


def user_reserve_id(user_id: str, reserve_id: str) -> str:
    return f"{normalize_address(user_id)}-{reserve_id.lower()}"


def get_current_balances_from_scaled(reserve: Reserve, user_reserve: UserReserve, timestamp: int,
                                     index_override: Optional[Tuple[int, int]] = None) -> Tuple[int, int]:
    """
    Supply and variable debt balances at ``timestamp``.

    Before the reserve's last update there is nothing to roll forward, so the
    stored current balances are used unless a frozen epoch-end index applies.
    """
    if timestamp < reserve.last_update_timestamp and index_override is None:
        return user_reserve.current_a_token_balance, user_reserve.current_variable_debt

    if index_override is not None:
        liquidity_index, borrow_index = index_override
    else:
        liquidity_index = get_reserve_normalized_income(reserve, timestamp)
        borrow_index = get_reserve_normalized_variable_debt(reserve, timestamp)

    if user_reserve.scaled_a_token_balance > 0 and liquidity_index > 0:
        supply = ray_mul(user_reserve.scaled_a_token_balance, liquidity_index)
    else:
        supply = user_reserve.current_a_token_balance

    if user_reserve.scaled_variable_debt > 0 and borrow_index > 0:
        variable_debt = ray_mul(user_reserve.scaled_variable_debt, borrow_index)
    else:
        variable_debt = user_reserve.current_variable_debt

    return supply, variable_debt


class ReserveAccrualService(BaseService):
    """Per-(user, reserve) accrual, balance baselines and daily bonuses."""

    def __init__(self, store, price_oracle: PriceOracleService, multipliers: MultiplierService,
                 ledger: PointsLedgerService):
        super().__init__(store)
        self.price_oracle = price_oracle
        self.multipliers = multipliers
        self.ledger = ledger

    # ============================================
    # Bookkeeping
    # ============================================

    async def add_reserve_to_user_list(self, user_id: str, reserve_id: str, timestamp: int) -> None:
        user_id = normalize_address(user_id)
        reserve_id = reserve_id.lower()
        reserve_list = await self.store.user_reserve_list.get(user_id)
        if reserve_list is None:
            self.store.user_reserve_list.set(UserReserveList(id=user_id, reserve_ids=[reserve_id],
                                                             updated_at=timestamp))
            return
        if reserve_id not in reserve_list.reserve_ids:
            reserve_list.reserve_ids.append(reserve_id)
        reserve_list.updated_at = timestamp
        self.store.user_reserve_list.set(reserve_list)

    async def get_or_create_user_reserve_points(self, user_id: str, reserve_id: str) -> UserReservePoints:
        user_id = normalize_address(user_id)
        reserve_id = reserve_id.lower()
        urp_id = f"{user_id}:{reserve_id}"
        urp = await self.store.user_reserve_points.get(urp_id)
        if not urp:
            urp = UserReservePoints(id=urp_id, user_id=user_id, reserve_id=reserve_id)
            self.store.user_reserve_points.set(urp)
        return urp

    async def maybe_store_epoch_end_snapshot(self, reserve: Reserve, timestamp: int) -> None:
        """
        Freeze a reserve's indices at the end of a closed epoch.

        Taken on the first reserve update after the close, before the update
        moves the indices past the boundary.
        """
        state = await self.store.get_leaderboard_state()
        if not state or state.current_epoch_number == 0 or state.is_active:
            return

        epoch = await self.get_epoch(state.current_epoch_number)
        if not epoch or epoch.end_time <= 0:
            return
        if timestamp <= epoch.end_time or reserve.last_update_timestamp > epoch.end_time:
            return

        snapshot_id = f"epochEnd:{state.current_epoch_number}:{reserve.id}"
        if snapshot_id in self.store.reserve_index_snapshot:
            return

        self.store.reserve_index_snapshot.set(ReserveIndexSnapshot(
            id=snapshot_id,
            epoch_number=state.current_epoch_number,
            reserve_id=reserve.id,
            liquidity_index=get_reserve_normalized_income(reserve, epoch.end_time),
            variable_borrow_index=get_reserve_normalized_variable_debt(reserve, epoch.end_time),
            timestamp=epoch.end_time,
        ))
        logger.debug(f"Stored epoch {epoch.epoch_number} end indices for {reserve.id}")

    async def get_epoch_end_index_override(self, reserve_id: str, epoch_number: int,
                                        balance_timestamp: int) -> Optional[Tuple[int, int]]:
        snapshot = await self.store.reserve_index_snapshot.get(f"epochEnd:{epoch_number}:{reserve_id}")
        if not snapshot or snapshot.timestamp != balance_timestamp:
            return None
        return snapshot.liquidity_index, snapshot.variable_borrow_index

    # ============================================
    # Accrual
    # ============================================

    async def accrue_points_for_user_reserve(self, user_id: str, reserve_id: str, timestamp: int,
                                             block_number: Optional[int] = None,
                                             skip_point_accrual: bool = False,
                                             combined_multiplier: Optional[int] = None) -> None:
        """
        Accrue deposit and borrow points since the user's last settlement of this reserve.

        With ``skip_point_accrual`` only the balance baseline is advanced.
        After an epoch has closed, balances and the price index are capped at
        the epoch's end so gap-period settlements earn nothing extra.
        """
        user_id = normalize_address(user_id)
        reserve_id = reserve_id.lower()
        reserve = await self.store.reserve.get(reserve_id)
        if not reserve:
            return
        user_reserve = await self.store.user_reserve.get(user_reserve_id(user_id, reserve_id))
        if not user_reserve:
            return

        state = await self.store.get_leaderboard_state()
        if not state or state.current_epoch_number == 0:
            return

        is_active_epoch = state.is_active
        epoch_number = state.current_epoch_number
        epoch_end_time = 0
        if not is_active_epoch:
            ended = await self.get_epoch(epoch_number)
            if not ended or ended.end_time <= 0:
                return
            epoch_end_time = ended.end_time

        is_epoch_over = not is_active_epoch and epoch_end_time > 0 and timestamp > epoch_end_time
        balance_timestamp = epoch_end_time if (not skip_point_accrual and is_epoch_over) else timestamp

        urp = await self.get_or_create_user_reserve_points(user_id, reserve_id)
        if not skip_point_accrual and is_epoch_over and urp.last_update_timestamp >= epoch_end_time:
            return

        index_override = None
        if balance_timestamp < reserve.last_update_timestamp:
            index_override = await self.get_epoch_end_index_override(reserve_id, epoch_number, balance_timestamp)
        current_supply, current_borrow = get_current_balances_from_scaled(
            reserve, user_reserve, balance_timestamp, index_override
        )

        await self.price_oracle.ensure_asset_price(reserve.underlying_asset, timestamp)
        oracle = await self.store.price_oracle_asset.get(normalize_address(reserve.price))
        if not oracle:
            return
        oracle, idx_before = await self.price_oracle.update_price_oracle_index(oracle, timestamp)

        idx = oracle.cumulative_usd_price_hours
        if is_epoch_over and oracle.last_price_usd > 0:
            gap_hours = (timestamp - epoch_end_time) / TimeConstants.SECONDS_PER_HOUR
            idx = max(0.0, idx - oracle.last_price_usd * gap_hours)

        stats = await self.store.user_epoch_stats.get(f"{user_id}:{epoch_number}")
        if not stats:
            if not is_active_epoch and current_supply == 0 and current_borrow == 0:
                return
            stats = UserEpochStats(id=f"{user_id}:{epoch_number}", user_id=user_id,
                                   epoch_number=epoch_number, first_seen_at=timestamp,
                                   last_updated_at=timestamp)

        epoch = await self.get_epoch(epoch_number)
        if not epoch:
            return
        epoch_start = epoch.start_time

        config = await self.store.get_leaderboard_config()
        deposit_rate = config.deposit_rate_bps if config else LeaderboardConstants.DEFAULT_DEPOSIT_RATE_BPS
        borrow_rate = config.borrow_rate_bps if config else LeaderboardConstants.DEFAULT_BORROW_RATE_BPS

        if urp.reset_timestamp < epoch_start:
            tolerance = LeaderboardConstants.RESET_BASELINE_TOLERANCE
            use_reset_baseline = epoch_start <= oracle.reset_timestamp <= epoch_start + tolerance
            baseline = oracle.reset_cumulative_usd_price_hours if use_reset_baseline else idx_before
            urp.reset_timestamp = epoch_start
            urp.reset_deposit_index = baseline
            urp.reset_borrow_index = baseline

        decimals = reserve.decimals
        current_deposit_tokens = to_decimal(current_supply, decimals)
        current_borrow_tokens = to_decimal(current_borrow, decimals)

        # First settlement in an epoch: current balances are the entry baseline
        use_epoch_baseline = urp.last_update_timestamp < epoch_start
        if use_epoch_baseline:
            deposit_scaled = current_supply
            borrow_scaled = current_borrow
        else:
            deposit_scaled = to_scaled_tokens(urp.last_deposit_tokens, decimals)
            borrow_scaled = to_scaled_tokens(urp.last_borrow_tokens, decimals)

        if oracle.price_e8 > 0:
            fallback_price_e8 = oracle.price_e8
        elif oracle.last_price_usd > 0:
            fallback_price_e8 = math.floor(oracle.last_price_usd * PRICE_SCALE)
        else:
            fallback_price_e8 = 0
        fallback_delta_e8 = 0
        if use_epoch_baseline and fallback_price_e8 > 0 and balance_timestamp > epoch_start:
            fallback_delta_e8 = (fallback_price_e8 * (balance_timestamp - epoch_start)) // TimeConstants.SECONDS_PER_HOUR

        denominator = (10 ** decimals) * PRICE_SCALE * BASIS_POINTS * TimeConstants.HOURS_PER_DAY

        def points_for(tokens_scaled: int, last_index: float, reset_index: float, rate_bps: int) -> int:
            if tokens_scaled <= 0:
                return 0
            start_index = max(last_index, reset_index)
            delta_e8 = math.floor((idx - start_index) * PRICE_SCALE) if idx > start_index else 0
            if use_epoch_baseline and delta_e8 == 0 and fallback_delta_e8 > 0:
                delta_e8 = fallback_delta_e8
            if delta_e8 <= 0:
                return 0
            return (tokens_scaled * delta_e8 * rate_bps * POINTS_SCALE) // denominator

        deposit_points = points_for(deposit_scaled, urp.last_deposit_index, urp.reset_deposit_index, deposit_rate)
        borrow_points = points_for(borrow_scaled, urp.last_borrow_index, urp.reset_borrow_index, borrow_rate)

        current_deposit_usd = 0.0
        current_borrow_usd = 0.0
        if oracle.price_e8 > 0:
            price_usd = oracle.price_e8 / PRICE_SCALE
            current_deposit_usd = current_deposit_tokens * price_usd
            current_borrow_usd = current_borrow_tokens * price_usd

        if skip_point_accrual:
            deposit_points = 0
            borrow_points = 0

        previous_update = urp.last_update_timestamp
        urp.deposit_points += deposit_points
        urp.borrow_points += borrow_points
        urp.total_points = urp.deposit_points + urp.borrow_points
        urp.last_deposit_tokens = current_deposit_tokens
        urp.last_borrow_tokens = current_borrow_tokens
        urp.last_deposit_usd = current_deposit_usd
        urp.last_borrow_usd = current_borrow_usd
        urp.last_deposit_index = idx
        urp.last_borrow_index = idx
        urp.last_update_timestamp = timestamp
        self.store.user_reserve_points.set(urp)

        if skip_point_accrual or (deposit_points <= 0 and borrow_points <= 0):
            return

        stats.deposit_points += deposit_points
        stats.borrow_points += borrow_points
        stats.last_updated_at = timestamp

        accrual_start = epoch_start if use_epoch_baseline else previous_update
        if balance_timestamp > accrual_start:
            multiplier = await self.multipliers.calculate_average_combined_multiplier(
                user_id, accrual_start, balance_timestamp
            )
        elif combined_multiplier is not None:
            multiplier = combined_multiplier
        else:
            _, _, _, multiplier = await self.multipliers.refresh_user_voting_power_state(user_id, timestamp)

        if deposit_points > 0:
            stats.deposit_points_with_multiplier += apply_multiplier_scaled(deposit_points, multiplier)
            stats.deposit_multiplier_bps = multiplier
        if borrow_points > 0:
            stats.borrow_points_with_multiplier += apply_multiplier_scaled(borrow_points, multiplier)
            stats.borrow_multiplier_bps = multiplier
        stats.total_multiplier_bps = multiplier
        stats.last_applied_multiplier_bps = multiplier

        await self.ledger.commit_epoch_stats(stats, timestamp)

    async def sync_user_reserve_points_baseline(self, user_id: str, reserve_id: str, timestamp: int,
                                                block_number: int) -> None:
        """Stamp the post-event balance as the new baseline without accruing."""
        if block_number < LeaderboardConstants.LEADERBOARD_START_BLOCK:
            return
        await self.accrue_points_for_user_reserve(user_id, reserve_id, timestamp, block_number,
                                                  skip_point_accrual=True)

    # ============================================
    # Daily activity
    # ============================================

    async def update_daily_highwater(self, kind: str, user_id: str, reserve_id: str, amount: int,
                                     timestamp: int) -> None:
        """Add an action's USD value to the user's running total for the day."""
        reserve = await self.store.reserve.get(reserve_id.lower())
        if not reserve:
            return

        amount_usd = to_decimal(amount, reserve.decimals) * await self.price_oracle.get_asset_price_usd(
            reserve.underlying_asset, timestamp
        )
        activity = await self.get_or_create_daily_activity(user_id, get_current_day(timestamp), timestamp)
        field_name = f"daily_{kind}_usd_highwater"
        setattr(activity, field_name, getattr(activity, field_name) + amount_usd)
        activity.updated_at = timestamp
        self.store.user_daily_activity.set(activity)

    async def award_daily_points(self, kind: str, user_id: str, timestamp: int) -> None:
        """
        Pay the flat daily bonus for an action kind, at most once per UTC day.

        Requires an active epoch, a nonzero configured bonus and a daily USD
        total of at least ``min_daily_bonus_usd``.
        """
        flag = DAILY_ACTIVITY_FLAGS[kind]
        user_id = normalize_address(user_id)
        state = await self.store.get_leaderboard_state()
        if not state or state.current_epoch_number == 0 or not state.is_active:
            return

        epoch_number = state.current_epoch_number
        if not await self.get_epoch(epoch_number):
            return
        day = get_current_day(timestamp)

        config = await self.store.get_leaderboard_config()
        bonus = getattr(config, f"{kind}_daily_bonus") if config else 0
        if not bonus:
            return

        stats = await self.get_or_create_epoch_stats(user_id, epoch_number, timestamp)
        activity = await self.get_or_create_daily_activity(user_id, day, timestamp)

        timestamp_field = f"{kind}_timestamp"
        if not getattr(activity, flag):
            setattr(activity, timestamp_field, timestamp)
        setattr(activity, flag, True)
        activity.updated_at = timestamp
        self.store.user_daily_activity.set(activity)

        day_field = f"last_{kind}_points_day"
        if getattr(stats, day_field) == day:
            return
        if getattr(activity, f"daily_{kind}_usd_highwater") < config.min_daily_bonus_usd:
            return

        points_field = f"daily_{kind}_points"
        setattr(stats, points_field, getattr(stats, points_field) + to_scaled_points(bonus))
        setattr(stats, day_field, day)
        stats.last_updated_at = timestamp

        _, _, _, combined = await self.multipliers.refresh_user_voting_power_state(user_id, timestamp)
        stats.total_multiplier_bps = combined
        stats.last_applied_multiplier_bps = combined
        await self.ledger.commit_epoch_stats(stats, timestamp)
        logger.debug(f"Daily {kind} bonus for {user_id} on day {day}")

    async def award_daily_supply_points(self, user_id: str, timestamp: int) -> None:
        await self.award_daily_points('supply', user_id, timestamp)

    async def award_daily_borrow_points(self, user_id: str, timestamp: int) -> None:
        await self.award_daily_points('borrow', user_id, timestamp)

    async def award_daily_repay_points(self, user_id: str, timestamp: int) -> None:
        await self.award_daily_points('repay', user_id, timestamp)

    async def award_daily_withdraw_points(self, user_id: str, timestamp: int) -> None:
        await self.award_daily_points('withdraw', user_id, timestamp)
