"""
Concentrated liquidity positions and their in-range point accrual.

A position earns points only while ``tick_lower <= current_tick < tick_upper``:

    points = value_usd_e8 * lp_rate_bps * in_range_seconds * 1e18 / (1e8 * 10000 * 86400)

Each position is settled before any change to its liquidity, owner or range
status, and at every epoch close. Pool token prices for AUSD-paired pools
are derived from the pool's sqrtPriceX96 with AUSD pegged at $1.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from points_engine.config import Config
from points_engine.constants import (
    AddressConstants, BootstrapConstants, MathConstants, TimeConstants, normalize_address,
)
from points_engine.data_models.entities import (
    LPMintData, LPPoolConfig, LPPoolFeeStats, LPPoolPositionIndex, LPPoolRegistry, LPPoolState,
    LPPoolStats, LPPoolVolumeBucket, TokenInfo, UserLPBaseline, UserLPPosition,
    UserLPPositionIndex, UserLPStats,
)
from points_engine.services.base import BaseService
from points_engine.services.chain_reader import ChainReader, LPPositionData
from points_engine.services.multipliers import MultiplierService
from points_engine.services.points_ledger import PointsLedgerService
from points_engine.utils.fixed_point import apply_multiplier_scaled
from points_engine.utils.uniswap_math import (
    calculate_paired_price_from_pool, calculate_position_value_usd, get_amounts_for_liquidity,
    is_position_in_range,
)

logger = logging.getLogger(__name__)

ZERO_ADDRESS = AddressConstants.ZERO_ADDRESS
AUSD_ADDRESS = AddressConstants.AUSD
AUSD_PRICE_E8 = MathConstants.PRICE_SCALE
AUSD_DECIMALS_FALLBACK = 6
DEFAULT_TOKEN_DECIMALS = 18

FEE_UNITS_DENOMINATOR = 1_000_000
VOLUME_BUCKET_SECONDS = 3600
VOLUME_WINDOW_HOURS = 24
DAYS_PER_YEAR = 365

REGISTRY_ID = 'global'
DEFAULT_POOL = BootstrapConstants.LP_POOLS[0]


@dataclass(frozen=True)
class LPSettlementResult:
    """Outcome of settling one position up to a timestamp."""
    accumulated_seconds: int
    settled_points: int
    points_earned: int
    settled_at: int
    points_start: int
    points_end: int


def derive_position_amounts(liquidity: int, tick_lower: int, tick_upper: int, sqrt_price_x96: int,
                            fallback_amount0: int, fallback_amount1: int) -> Tuple[int, int]:
    """Token amounts from liquidity at the pool price, or the fallbacks when either is unknown."""
    if liquidity == 0 or sqrt_price_x96 == 0:
        return fallback_amount0, fallback_amount1
    return get_amounts_for_liquidity(sqrt_price_x96, tick_lower, tick_upper, liquidity)


def calculate_lp_points(value_usd: int, lp_rate_bps: int, seconds: int) -> int:
    if seconds <= 0 or value_usd <= 0 or lp_rate_bps <= 0:
        return 0
    numerator = value_usd * lp_rate_bps * seconds * MathConstants.POINTS_SCALE
    denominator = MathConstants.PRICE_SCALE * MathConstants.BASIS_POINTS * TimeConstants.SECONDS_PER_DAY
    return numerator // denominator


def swap_volume_usd(amount0: int, amount1: int, token0_price: int, token1_price: int,
                    token0_decimals: int, token1_decimals: int) -> int:
    value0 = (abs(amount0) * token0_price) // (10 ** token0_decimals)
    value1 = (abs(amount1) * token1_price) // (10 ** token1_decimals)
    return max(value0, value1)


def tx_mint_key(tx_hash: str, amount0: int, amount1: int, liquidity: int) -> str:
    return f"tx:{tx_hash}:{amount0}:{amount1}:{liquidity}"


class LPAccrualService(BaseService):
    """Position tracking, pool state and LP point settlement."""

    def __init__(self, store, chain_reader: ChainReader, multipliers: MultiplierService,
                 ledger: PointsLedgerService):
        super().__init__(store)
        self.chain_reader = chain_reader
        self.multipliers = multipliers
        self.ledger = ledger

    # ============================================
    # Pool configuration
    # ============================================

    async def get_active_pool_config(self, pool: str) -> Optional[LPPoolConfig]:
        config = await self.store.lp_pool_config.get(normalize_address(pool))
        if not config or not config.is_active:
            return None
        return config

    async def list_active_pool_configs(self) -> List[LPPoolConfig]:
        registry = await self.store.lp_pool_registry.get(REGISTRY_ID)
        if not registry:
            return []
        configs = []
        for pool_id in registry.pool_ids:
            config = await self.store.lp_pool_config.get(pool_id)
            if config and config.is_active:
                configs.append(config)
        return configs

    async def get_effective_pool_config(self, pool: str) -> Optional[LPPoolConfig]:
        """The pool's own config, or the sole active pool when it has none."""
        config = await self.store.lp_pool_config.get(normalize_address(pool))
        if config:
            return config if config.is_active else None
        configs = await self.list_active_pool_configs()
        return configs[0] if len(configs) == 1 else None

    def _register_pool(self, registry: Optional[LPPoolRegistry], pool: str, timestamp: int) -> None:
        pool_ids = list(registry.pool_ids) if registry else []
        if registry and pool in pool_ids:
            return
        pool_ids.append(pool)
        self.store.lp_pool_registry.set(LPPoolRegistry(id=REGISTRY_ID, pool_ids=pool_ids, last_update=timestamp))

    async def ensure_default_pool_config(self, timestamp: int) -> LPPoolConfig:
        """The built-in AUSD/DUST pool config, created on first use."""
        pool = DEFAULT_POOL['pool']
        config = await self.store.lp_pool_config.get(pool)
        if config:
            return config

        state = await self.store.get_leaderboard_state()
        global_config = await self.store.get_leaderboard_config()
        config = LPPoolConfig(
            id=pool,
            pool=pool,
            position_manager=DEFAULT_POOL['position_manager'],
            token0=DEFAULT_POOL['token0'],
            token1=DEFAULT_POOL['token1'],
            fee=DEFAULT_POOL['fee'],
            lp_rate_bps=(global_config.lp_rate_bps or 0) if global_config else 0,
            is_active=True,
            enabled_at_epoch=state.current_epoch_number if state else 1,
            enabled_at_timestamp=timestamp,
            last_update=timestamp,
        )
        self.store.lp_pool_config.set(config)
        self._register_pool(await self.store.lp_pool_registry.get(REGISTRY_ID), pool, timestamp)
        if pool not in self.store.lp_pool_state:
            self.store.lp_pool_state.set(LPPoolState(id=pool, pool=pool, last_update=timestamp))
        return config

    async def _tracked_pool_config(self, pool: str, timestamp: int) -> Optional[LPPoolConfig]:
        pool = normalize_address(pool)
        if pool == DEFAULT_POOL['pool']:
            return await self.ensure_default_pool_config(timestamp)
        return await self.get_active_pool_config(pool)

    async def configure_pool(self, pool: str, position_manager: str, token0: str, token1: str,
                             lp_rate_bps: int, timestamp: int, block_number: int) -> LPPoolConfig:
        """Create or re-enable a pool config. The pool's price state is reset."""
        pool = normalize_address(pool)
        fee = None
        if Config.should_use_eth_calls():
            fee = await self.chain_reader.read_pool_fee(pool, block_number)
        existing = await self.store.lp_pool_config.get(pool)
        if fee is None and existing and existing.fee is not None:
            fee = existing.fee

        state = await self.store.get_leaderboard_state()
        config = LPPoolConfig(
            id=pool,
            pool=pool,
            position_manager=normalize_address(position_manager),
            token0=normalize_address(token0),
            token1=normalize_address(token1),
            fee=fee,
            lp_rate_bps=lp_rate_bps,
            is_active=True,
            enabled_at_epoch=state.current_epoch_number if state else 1,
            enabled_at_timestamp=timestamp,
            last_update=timestamp,
        )
        self.store.lp_pool_config.set(config)
        self._register_pool(await self.store.lp_pool_registry.get(REGISTRY_ID), pool, timestamp)
        self.store.lp_pool_state.set(LPPoolState(id=pool, pool=pool, last_update=timestamp))
        logger.info(f"LP pool {pool} configured at {lp_rate_bps} bps")
        return config

    async def disable_pool(self, pool: str, timestamp: int) -> None:
        """Settle every position in the pool, then stop it from accruing."""
        pool = normalize_address(pool)
        config = await self.store.lp_pool_config.get(pool)
        if not config:
            return
        await self.settle_lp_pool_positions(pool, timestamp)

        config = await self.store.lp_pool_config.get(pool)
        state = await self.store.get_leaderboard_state()
        config.is_active = False
        config.disabled_at_epoch = state.current_epoch_number if state else 1
        config.disabled_at_timestamp = timestamp
        config.last_update = timestamp
        self.store.lp_pool_config.set(config)
        logger.info(f"LP pool {pool} disabled")

    async def ensure_pool_fee(self, config: LPPoolConfig, timestamp: int,
                              block_number: Optional[int] = None) -> Optional[int]:
        if config.fee is not None:
            return config.fee
        if not Config.should_use_eth_calls():
            return None
        fee = await self.chain_reader.read_pool_fee(config.pool, block_number)
        if fee is None:
            return None
        config.fee = fee
        config.last_update = timestamp
        self.store.lp_pool_config.set(config)
        return fee

    async def resolve_pool_config_for_position(self, position_manager: str, position: LPPositionData,
                                               timestamp: int,
                                               block_number: Optional[int] = None) -> Optional[LPPoolConfig]:
        """Match on-chain position data to a tracked pool by manager, token pair and fee."""
        manager = normalize_address(position_manager)
        token0 = normalize_address(position.token0)
        token1 = normalize_address(position.token1)
        matching = [
            config for config in await self.list_active_pool_configs()
            if config.position_manager == manager and config.token0 == token0 and config.token1 == token1
        ]
        if len(matching) == 1:
            fee = await self.ensure_pool_fee(matching[0], timestamp, block_number)
            return matching[0] if fee is None or fee == position.fee else None
        for config in matching:
            fee = await self.ensure_pool_fee(config, timestamp, block_number)
            if fee is not None and fee == position.fee:
                return config
        return None

    async def get_effective_lp_rate_bps(self, config: LPPoolConfig) -> int:
        """Single-pool setups follow the global LP rate when one is set."""
        registry = await self.store.lp_pool_registry.get(REGISTRY_ID)
        if not registry or len(registry.pool_ids) <= 1:
            global_config = await self.store.get_leaderboard_config()
            if global_config and global_config.lp_rate_bps is not None:
                return global_config.lp_rate_bps
        return config.lp_rate_bps

    # ============================================
    # Tokens and pool prices
    # ============================================

    async def get_token_decimals(self, token: str, fallback: int, timestamp: int = 0) -> int:
        token = normalize_address(token)
        info = await self.store.token_info.get(token)
        if info and info.decimals > 0:
            return info.decimals

        if Config.should_use_eth_calls():
            decimals = await self.chain_reader.read_token_decimals(token)
            if decimals:
                self.store.token_info.set(TokenInfo(
                    id=token,
                    symbol=info.symbol if info else None,
                    name=info.name if info else None,
                    decimals=decimals,
                    last_update=timestamp,
                ))
                return decimals
        return fallback

    async def get_pool_token_decimals(self, config: LPPoolConfig, timestamp: int = 0) -> Tuple[int, int]:
        fallback0 = AUSD_DECIMALS_FALLBACK if config.token0 == AUSD_ADDRESS else DEFAULT_TOKEN_DECIMALS
        fallback1 = AUSD_DECIMALS_FALLBACK if config.token1 == AUSD_ADDRESS else DEFAULT_TOKEN_DECIMALS
        return (
            await self.get_token_decimals(config.token0, fallback0, timestamp),
            await self.get_token_decimals(config.token1, fallback1, timestamp),
        )

    @staticmethod
    def pool_token_prices(config: LPPoolConfig, sqrt_price_x96: int, decimals: Tuple[int, int],
                          current: Tuple[int, int] = (0, 0)) -> Tuple[int, int]:
        """(token0, token1) prices in 8-decimal USD. Only AUSD pairs are priced from the pool."""
        is_ausd_token0 = config.token0 == AUSD_ADDRESS
        if not is_ausd_token0 and config.token1 != AUSD_ADDRESS:
            return current
        paired = calculate_paired_price_from_pool(
            sqrt_price_x96, AUSD_PRICE_E8, is_ausd_token0, decimals[0], decimals[1]
        )
        if is_ausd_token0:
            return AUSD_PRICE_E8, paired
        return paired, AUSD_PRICE_E8

    async def get_or_create_pool_state(self, pool: str, timestamp: int) -> LPPoolState:
        pool = normalize_address(pool)
        state = await self.store.lp_pool_state.get(pool)
        if not state:
            state = LPPoolState(id=pool, pool=pool, last_update=timestamp)
            self.store.lp_pool_state.set(state)
        return state

    async def seed_pool_state_from_chain(self, pool: str, timestamp: int,
                                         block_number: Optional[int] = None) -> LPPoolState:
        """Fill in an unpriced pool state from slot0 when chain reads are allowed."""
        state = await self.get_or_create_pool_state(pool, timestamp)
        if not Config.should_use_eth_calls():
            return state
        if state.sqrt_price_x96 and state.token0_price and state.token1_price:
            return state

        slot0 = await self.chain_reader.read_pool_slot0(state.pool, block_number)
        if slot0 is None:
            logger.debug(f"slot0 unavailable for pool {state.pool}")
            return state

        prices = (state.token0_price, state.token1_price)
        config = await self.get_effective_pool_config(state.pool)
        if config:
            decimals = await self.get_pool_token_decimals(config, timestamp)
            prices = self.pool_token_prices(config, slot0.sqrt_price_x96, decimals, prices)

        state.current_tick = slot0.tick
        state.sqrt_price_x96 = slot0.sqrt_price_x96
        state.token0_price, state.token1_price = prices
        state.last_update = timestamp
        self.store.lp_pool_state.set(state)
        return state

    # ============================================
    # Position indices and stats
    # ============================================

    async def _add_to_index(self, table, index_cls, key: str, position_id: str, timestamp: int) -> None:
        index = await table.get(key)
        if not index:
            index = index_cls(id=key, last_update=timestamp)
        if position_id not in index.position_ids:
            index.position_ids.append(position_id)
        index.last_update = timestamp
        table.set(index)

    async def _remove_from_index(self, table, key: str, position_id: str, timestamp: int) -> None:
        index = await table.get(key)
        if not index or position_id not in index.position_ids:
            return
        index.position_ids.remove(position_id)
        index.last_update = timestamp
        table.set(index)

    async def add_position_to_user_index(self, user_id: str, position_id: str, timestamp: int) -> None:
        await self._add_to_index(self.store.user_lp_position_index, UserLPPositionIndex,
                                 normalize_address(user_id), position_id, timestamp)

    async def remove_position_from_user_index(self, user_id: str, position_id: str, timestamp: int) -> None:
        await self._remove_from_index(self.store.user_lp_position_index, normalize_address(user_id),
                                      position_id, timestamp)

    async def add_position_to_pool_index(self, pool: str, position_id: str, timestamp: int) -> None:
        await self._add_to_index(self.store.lp_pool_position_index, LPPoolPositionIndex,
                                 normalize_address(pool), position_id, timestamp)

    async def remove_position_from_pool_index(self, pool: str, position_id: str, timestamp: int) -> None:
        await self._remove_from_index(self.store.lp_pool_position_index, normalize_address(pool),
                                      position_id, timestamp)

    async def _list_positions(self, table, key: str) -> List[UserLPPosition]:
        index = await table.get(key)
        if not index:
            return []
        positions = []
        for position_id in index.position_ids:
            position = await self.store.user_lp_position.get(position_id)
            if position:
                positions.append(position)
        return positions

    async def list_user_positions(self, user_id: str) -> List[UserLPPosition]:
        return await self._list_positions(self.store.user_lp_position_index, normalize_address(user_id))

    async def list_pool_positions(self, pool: str) -> List[UserLPPosition]:
        return await self._list_positions(self.store.lp_pool_position_index, normalize_address(pool))

    async def update_user_lp_stats(self, user_id: str, timestamp: int) -> None:
        user_id = normalize_address(user_id)
        stats = UserLPStats(id=user_id, last_update=timestamp)
        for position in await self.list_user_positions(user_id):
            if position.is_empty:
                continue
            stats.total_positions += 1
            stats.total_value_usd += position.value_usd
            if position.is_in_range:
                stats.in_range_positions += 1
                stats.in_range_value_usd += position.value_usd
        self.store.user_lp_stats.set(stats)

    async def update_pool_lp_stats(self, pool: str, timestamp: int) -> None:
        pool = normalize_address(pool)
        stats = LPPoolStats(id=pool, pool=pool, last_update=timestamp)
        for position in await self.list_pool_positions(pool):
            if position.is_empty:
                continue
            stats.total_positions += 1
            stats.total_value_usd += position.value_usd
            if position.is_in_range:
                stats.in_range_positions += 1
                stats.in_range_value_usd += position.value_usd
        self.store.lp_pool_stats.set(stats)

    async def update_pool_fee_stats(self, config: LPPoolConfig, volume_usd: int, timestamp: int,
                                    block_number: Optional[int] = None) -> None:
        """Add swap volume to the hourly bucket and recompute the trailing 24h fee APR."""
        if volume_usd == 0:
            return
        pool = config.pool
        bucket_start = (timestamp // VOLUME_BUCKET_SECONDS) * VOLUME_BUCKET_SECONDS
        bucket_id = f"{pool}:{bucket_start}"
        bucket = await self.store.lp_pool_volume_bucket.get(bucket_id)
        bucket_volume = (bucket.volume_usd if bucket else 0) + volume_usd
        self.store.lp_pool_volume_bucket.set(LPPoolVolumeBucket(
            id=bucket_id, pool=pool, bucket_start=bucket_start, volume_usd=bucket_volume, last_update=timestamp,
        ))

        volume_24h = bucket_volume
        for hour in range(1, VOLUME_WINDOW_HOURS):
            start = bucket_start - hour * VOLUME_BUCKET_SECONDS
            if start < 0:
                break
            window_bucket = await self.store.lp_pool_volume_bucket.get(f"{pool}:{start}")
            if window_bucket:
                volume_24h += window_bucket.volume_usd

        fee = await self.ensure_pool_fee(config, timestamp, block_number) or config.fee or 0
        fees_24h = (volume_24h * fee) // FEE_UNITS_DENOMINATOR if fee > 0 else 0
        pool_stats = await self.store.lp_pool_stats.get(pool)
        tvl = pool_stats.in_range_value_usd if pool_stats else 0
        fee_apr_bps = 0
        if fees_24h > 0 and tvl > 0:
            fee_apr_bps = (fees_24h * DAYS_PER_YEAR * MathConstants.BASIS_POINTS) // tvl

        self.store.lp_pool_fee_stats.set(LPPoolFeeStats(
            id=pool, pool=pool, volume_usd_24h=volume_24h, fees_usd_24h=fees_24h,
            fee_apr_bps=fee_apr_bps, last_update=timestamp,
        ))

    # ============================================
    # Settlement
    # ============================================

    async def settle_lp_position(self, position: UserLPPosition, timestamp: int) -> LPSettlementResult:
        """
        Points earned by a position since its last settlement.

        Nothing is written here; callers apply the result with the position's
        new state. Accrual stops at the epoch end once an epoch has closed.
        """
        state = await self.store.get_leaderboard_state()
        epoch_number = state.current_epoch_number if state else 0
        epoch_start = 0
        effective_timestamp = timestamp

        if epoch_number > 0:
            epoch = await self.get_epoch(epoch_number)
            if epoch:
                epoch_start = epoch.start_time
                if not state.is_active and epoch.end_time and timestamp > epoch.end_time:
                    effective_timestamp = epoch.end_time
        else:
            epoch_start = timestamp

        additional_seconds = 0
        if position.is_in_range and position.last_in_range_timestamp > 0:
            additional_seconds = max(timestamp - position.last_in_range_timestamp, 0)
        accumulated = position.accumulated_in_range_seconds + additional_seconds

        config = await self.get_effective_pool_config(position.pool)
        if not config or epoch_number == 0:
            return LPSettlementResult(accumulated, position.settled_lp_points, 0,
                                      effective_timestamp, 0, effective_timestamp)

        accrual_start = max(position.last_in_range_timestamp, position.last_settled_at, epoch_start)
        points_start = 0
        seconds = 0
        if position.is_in_range and position.last_in_range_timestamp > 0 and effective_timestamp > accrual_start:
            points_start = accrual_start
            seconds = effective_timestamp - accrual_start

        rate_bps = await self.get_effective_lp_rate_bps(config)
        points = calculate_lp_points(position.value_usd, rate_bps, seconds)
        if points == 0:
            logger.debug(f"Position {position.id} earned nothing (in_range={position.is_in_range}, "
                         f"seconds={seconds}, value={position.value_usd}, rate={rate_bps})")

        return LPSettlementResult(accumulated, position.settled_lp_points + points, points,
                                  effective_timestamp, points_start, effective_timestamp)

    @staticmethod
    def _apply_settlement(position: UserLPPosition, result: LPSettlementResult, timestamp: int) -> None:
        position.accumulated_in_range_seconds = result.accumulated_seconds
        position.settled_lp_points = result.settled_points
        position.last_settled_at = result.settled_at
        position.last_update = timestamp

    async def update_user_epoch_lp_points(self, user_id: str, points_earned: int, timestamp: int,
                                          accrual_start: int, accrual_end: int) -> None:
        """Credit LP points to the current epoch, scaled by the average combined multiplier."""
        if points_earned == 0:
            return
        state = await self.store.get_leaderboard_state()
        if not state or state.current_epoch_number == 0:
            return
        epoch_number = state.current_epoch_number
        if not await self.get_epoch(epoch_number):
            return

        _, _, _, combined = await self.multipliers.refresh_user_voting_power_state(user_id, timestamp)
        if accrual_end > accrual_start:
            combined = await self.multipliers.calculate_average_combined_multiplier(
                user_id, accrual_start, accrual_end
            )

        stats = await self.get_or_create_epoch_stats(user_id, epoch_number, timestamp)
        stats.lp_points += points_earned
        stats.lp_points_with_multiplier += apply_multiplier_scaled(points_earned, combined)
        stats.lp_multiplier_bps = combined
        stats.total_multiplier_bps = combined
        stats.last_applied_multiplier_bps = combined
        stats.last_updated_at = timestamp
        await self.ledger.commit_epoch_stats(stats, timestamp)

    async def _credit(self, position: UserLPPosition, result: LPSettlementResult, timestamp: int) -> None:
        await self.update_user_epoch_lp_points(position.user_id, result.points_earned, timestamp,
                                               result.points_start, result.points_end)

    async def settle_user_lp_positions(self, user_id: str, timestamp: int,
                                       block_number: Optional[int] = None) -> None:
        """Settle and revalue every live position a user holds."""
        user_id = normalize_address(user_id)
        positions = await self.list_user_positions(user_id)
        if not positions:
            return

        by_pool: Dict[str, List[UserLPPosition]] = {}
        for position in positions:
            by_pool.setdefault(normalize_address(position.pool), []).append(position)

        for pool, pool_positions in by_pool.items():
            config = await self.get_effective_pool_config(pool)
            if not config:
                continue
            pool_state = await self.seed_pool_state_from_chain(pool, timestamp, block_number)
            decimals = await self.get_pool_token_decimals(config, timestamp)

            for position in pool_positions:
                if position.is_empty:
                    continue
                was_in_range = position.is_in_range
                is_now_in_range = is_position_in_range(position.tick_lower, position.tick_upper,
                                                       pool_state.current_tick)
                result = await self.settle_lp_position(position, timestamp)
                self._revalue(position, pool_state, decimals)
                position.is_in_range = is_now_in_range
                position.last_in_range_timestamp = timestamp if is_now_in_range else 0
                self._apply_settlement(position, result, timestamp)
                self.store.user_lp_position.set(position)

                if result.points_earned > 0 or was_in_range != is_now_in_range:
                    await self._credit(position, result, timestamp)

        await self.update_user_lp_stats(user_id, timestamp)

    @staticmethod
    def _revalue(position: UserLPPosition, pool_state: LPPoolState, decimals: Tuple[int, int],
                 prices: Optional[Tuple[int, int]] = None, sqrt_price_x96: Optional[int] = None) -> None:
        sqrt_price = pool_state.sqrt_price_x96 if sqrt_price_x96 is None else sqrt_price_x96
        token0_price, token1_price = prices or (pool_state.token0_price, pool_state.token1_price)
        position.amount0, position.amount1 = derive_position_amounts(
            position.liquidity, position.tick_lower, position.tick_upper, sqrt_price,
            position.amount0, position.amount1,
        )
        position.value_usd = calculate_position_value_usd(
            position.amount0, position.amount1, token0_price, token1_price, decimals[0], decimals[1]
        )

    async def settle_lp_pool_positions(self, pool: str, timestamp: int) -> None:
        """Settle every live position in a pool, keeping each one's range status."""
        pool = normalize_address(pool)
        config = await self.get_effective_pool_config(pool)
        if not config:
            return

        positions = await self.list_pool_positions(pool)
        stats = LPPoolStats(id=pool, pool=pool, last_update=timestamp)
        if not positions:
            self.store.lp_pool_stats.set(stats)
            return

        pool_state = await self.get_or_create_pool_state(pool, timestamp)
        decimals = await self.get_pool_token_decimals(config, timestamp)
        touched_users = []
        for position in positions:
            if position.is_empty:
                continue
            result = await self.settle_lp_position(position, timestamp)
            self._revalue(position, pool_state, decimals)
            position.last_in_range_timestamp = timestamp if position.is_in_range else 0
            self._apply_settlement(position, result, timestamp)
            self.store.user_lp_position.set(position)

            await self._credit(position, result, timestamp)
            if position.user_id not in touched_users:
                touched_users.append(position.user_id)

            stats.total_positions += 1
            stats.total_value_usd += position.value_usd
            if position.is_in_range:
                stats.in_range_positions += 1
                stats.in_range_value_usd += position.value_usd

        self.store.lp_pool_stats.set(stats)
        for user_id in touched_users:
            await self.update_user_lp_stats(user_id, timestamp)

    async def settle_all_lp_pool_positions(self, timestamp: int) -> None:
        for config in await self.list_active_pool_configs():
            await self.settle_lp_pool_positions(config.pool, timestamp)

    async def update_positions_in_range_status(self, pool: str, current_tick: int, timestamp: int,
                                               prices: Tuple[int, int], sqrt_price_x96: int) -> None:
        """Settle positions whose range status may have flipped after a tick move."""
        pool = normalize_address(pool)
        config = await self.get_effective_pool_config(pool)
        if not config:
            return

        positions = await self.list_pool_positions(pool)
        stats = LPPoolStats(id=pool, pool=pool, last_update=timestamp)
        if not positions:
            self.store.lp_pool_stats.set(stats)
            return

        pool_state = await self.get_or_create_pool_state(pool, timestamp)
        decimals = await self.get_pool_token_decimals(config, timestamp)
        touched_users = []
        for position in positions:
            if position.is_empty:
                continue
            was_in_range = position.is_in_range
            is_now_in_range = is_position_in_range(position.tick_lower, position.tick_upper, current_tick)
            if not was_in_range and not is_now_in_range:
                stats.total_positions += 1
                stats.total_value_usd += position.value_usd
                continue

            result = await self.settle_lp_position(position, timestamp)
            self._revalue(position, pool_state, decimals, prices, sqrt_price_x96)
            position.is_in_range = is_now_in_range
            position.last_in_range_timestamp = timestamp if is_now_in_range else 0
            self._apply_settlement(position, result, timestamp)
            self.store.user_lp_position.set(position)

            if result.points_earned > 0 or was_in_range != is_now_in_range:
                await self._credit(position, result, timestamp)
            if position.user_id not in touched_users:
                touched_users.append(position.user_id)

            stats.total_positions += 1
            stats.total_value_usd += position.value_usd
            if is_now_in_range:
                stats.in_range_positions += 1
                stats.in_range_value_usd += position.value_usd

        self.store.lp_pool_stats.set(stats)
        for user_id in touched_users:
            await self.update_user_lp_stats(user_id, timestamp)

    # ============================================
    # Position lifecycle
    # ============================================

    async def _create_position(self, position_id: str, owner: str, manager: str, config: LPPoolConfig,
                               data: LPPositionData, fallback_amounts: Tuple[int, int], timestamp: int,
                               block_number: Optional[int]) -> UserLPPosition:
        pool_state = await self.seed_pool_state_from_chain(config.pool, timestamp, block_number)
        decimals = await self.get_pool_token_decimals(config, timestamp)
        prices = self.pool_token_prices(config, pool_state.sqrt_price_x96, decimals,
                                        (pool_state.token0_price, pool_state.token1_price))
        is_in_range = is_position_in_range(data.tick_lower, data.tick_upper, pool_state.current_tick)

        position = UserLPPosition(
            id=position_id,
            token_id=int(position_id),
            user_id=owner,
            pool=config.pool,
            position_manager=manager,
            tick_lower=data.tick_lower,
            tick_upper=data.tick_upper,
            liquidity=data.liquidity,
            amount0=fallback_amounts[0],
            amount1=fallback_amounts[1],
            is_in_range=is_in_range,
            last_in_range_timestamp=timestamp if is_in_range else 0,
            last_settled_at=timestamp,
            created_at=timestamp,
            last_update=timestamp,
        )
        self._revalue(position, pool_state, decimals, prices)
        self.store.user_lp_position.set(position)

        await self.add_position_to_pool_index(config.pool, position_id, timestamp)
        await self.add_position_to_user_index(owner, position_id, timestamp)
        if prices != (pool_state.token0_price, pool_state.token1_price):
            pool_state.token0_price, pool_state.token1_price = prices
            pool_state.last_update = timestamp
            self.store.lp_pool_state.set(pool_state)
        return position

    async def _position_data_from_mint(self, mint: Optional[LPMintData],
                                       timestamp: int) -> Tuple[Optional[LPPoolConfig], Optional[LPPositionData]]:
        if not mint:
            return None, None
        config = await self._tracked_pool_config(mint.pool, timestamp)
        if not config:
            return None, None
        return config, LPPositionData(config.token0, config.token1, 0, mint.tick_lower,
                                      mint.tick_upper, mint.liquidity)

    async def _read_position(self, manager: str, token_id: int, timestamp: int, block_number: int,
                             fallback: Optional[LPPoolConfig]):
        data = None
        if Config.should_use_eth_calls():
            data = await self.chain_reader.read_lp_position(manager, token_id, block_number)
        if data is None:
            return fallback, None
        return await self.resolve_pool_config_for_position(manager, data, timestamp, block_number), data

    async def _modify_liquidity(self, position: UserLPPosition, liquidity_delta: int,
                                fallback_amounts: Tuple[int, int], timestamp: int, block_number: int) -> None:
        config = await self._tracked_pool_config(position.pool, timestamp)
        if not config:
            return

        pool_state = await self.seed_pool_state_from_chain(position.pool, timestamp, block_number)
        was_in_range = position.is_in_range
        is_now_in_range = is_position_in_range(position.tick_lower, position.tick_upper, pool_state.current_tick)
        result = await self.settle_lp_position(position, timestamp)

        position.liquidity += liquidity_delta
        position.amount0, position.amount1 = fallback_amounts
        self._revalue(position, pool_state, await self.get_pool_token_decimals(config, timestamp))
        if is_now_in_range:
            position.last_in_range_timestamp = timestamp
        elif was_in_range:
            position.last_in_range_timestamp = 0
        position.is_in_range = is_now_in_range
        self._apply_settlement(position, result, timestamp)
        self.store.user_lp_position.set(position)

        await self._credit(position, result, timestamp)
        await self.update_user_lp_stats(position.user_id, timestamp)
        await self.update_pool_lp_stats(position.pool, timestamp)

    async def increase_liquidity(self, token_id: int, position_manager: str, liquidity: int, amount0: int,
                                 amount1: int, timestamp: int, block_number: int, tx_hash: str,
                                 tx_from: Optional[str] = None) -> None:
        """
        Add liquidity to a position, creating it when this is the first event seen for it.

        Creation resolves the pool from on-chain position data, falling back
        to the pool-side mint recorded earlier in the same transaction.
        """
        position_id = str(token_id)
        manager = normalize_address(position_manager)
        default_config = None
        if manager == DEFAULT_POOL['position_manager']:
            default_config = await self.ensure_default_pool_config(timestamp)

        position = await self.store.user_lp_position.get(position_id)
        if position:
            await self._modify_liquidity(position, liquidity,
                                         (position.amount0 + amount0, position.amount1 + amount1),
                                         timestamp, block_number)
            return

        if f"pending:{position_id}" in self.store.lp_mint_data:
            return

        config, data = await self._read_position(manager, token_id, timestamp, block_number, default_config)
        mint_key = tx_mint_key(tx_hash, amount0, amount1, liquidity)
        mint = None
        if data is None or config is None:
            mint = await self.store.lp_mint_data.get(mint_key)
            mint_config, mint_data = await self._position_data_from_mint(mint, timestamp)
            if mint_config:
                config, data = mint_config, mint_data
        if data is None or config is None:
            logger.debug(f"IncreaseLiquidity for unknown position {position_id} skipped")
            return

        owner = normalize_address(tx_from) if tx_from else ZERO_ADDRESS
        data = LPPositionData(data.token0, data.token1, data.fee, data.tick_lower, data.tick_upper, liquidity)
        await self._create_position(position_id, owner, manager, config, data, (amount0, amount1),
                                    timestamp, block_number)
        await self.update_user_lp_stats(owner, timestamp)
        await self.update_pool_lp_stats(config.pool, timestamp)

        if mint:
            self.store.lp_mint_data.delete_unsafe(f"{mint.pool}:{mint.tick_lower}:{mint.tick_upper}:{mint.tx_hash}")
        self.store.lp_mint_data.delete_unsafe(mint_key)

    async def decrease_liquidity(self, token_id: int, liquidity: int, amount0: int, amount1: int,
                                 timestamp: int, block_number: int) -> None:
        position = await self.store.user_lp_position.get(str(token_id))
        if not position:
            return
        fallback = (max(position.amount0 - amount0, 0), max(position.amount1 - amount1, 0))
        await self._modify_liquidity(position, -liquidity, fallback, timestamp, block_number)

    async def transfer_position(self, token_id: int, position_manager: str, from_address: str,
                                to_address: str, timestamp: int, block_number: int) -> None:
        """Position NFT transfer: mint creates, burn closes, anything else changes owner."""
        position_id = str(token_id)
        manager = normalize_address(position_manager)
        from_address = normalize_address(from_address)
        to_address = normalize_address(to_address)
        default_config = None
        if manager == DEFAULT_POOL['position_manager']:
            default_config = await self.ensure_default_pool_config(timestamp)

        if from_address == ZERO_ADDRESS:
            await self._mint_position(position_id, token_id, manager, to_address, default_config,
                                      timestamp, block_number)
            return

        position = await self.store.user_lp_position.get(position_id)
        if not position:
            return
        result = await self.settle_lp_position(position, timestamp)
        old_owner = position.user_id
        await self._credit(position, result, timestamp)

        if to_address == ZERO_ADDRESS:
            position.liquidity = 0
            position.amount0 = 0
            position.amount1 = 0
            position.is_in_range = False
            position.value_usd = 0
            self._apply_settlement(position, result, timestamp)
            self.store.user_lp_position.set(position)
            await self.remove_position_from_user_index(old_owner, position_id, timestamp)
            await self.remove_position_from_pool_index(position.pool, position_id, timestamp)
            await self.update_user_lp_stats(old_owner, timestamp)
            await self.update_pool_lp_stats(position.pool, timestamp)
            return

        position.user_id = to_address
        position.last_in_range_timestamp = timestamp if position.is_in_range else 0
        self._apply_settlement(position, result, timestamp)
        self.store.user_lp_position.set(position)
        await self.remove_position_from_user_index(old_owner, position_id, timestamp)
        await self.add_position_to_user_index(to_address, position_id, timestamp)
        await self.update_user_lp_stats(old_owner, timestamp)
        await self.update_user_lp_stats(to_address, timestamp)
        await self.update_pool_lp_stats(position.pool, timestamp)

    async def _mint_position(self, position_id: str, token_id: int, manager: str, owner: str,
                             default_config: Optional[LPPoolConfig], timestamp: int, block_number: int) -> None:
        existing = await self.store.user_lp_position.get(position_id)
        if existing:
            if existing.user_id != owner:
                previous_owner = existing.user_id
                existing.user_id = owner
                existing.last_update = timestamp
                self.store.user_lp_position.set(existing)
                await self.remove_position_from_user_index(previous_owner, position_id, timestamp)
                await self.add_position_to_user_index(owner, position_id, timestamp)
                await self.update_user_lp_stats(previous_owner, timestamp)
                await self.update_user_lp_stats(owner, timestamp)
            return

        config, data = await self._read_position(manager, token_id, timestamp, block_number, default_config)
        pending_key = f"pending:{position_id}"
        mint = await self.store.lp_mint_data.get(pending_key)
        if data is None or config is None:
            mint_config, mint_data = await self._position_data_from_mint(mint, timestamp)
            if mint_config:
                config, data = mint_config, mint_data
        if data is None or config is None:
            logger.debug(f"Position mint {position_id} skipped: no position data or pool config")
            return

        fallback = (mint.amount0, mint.amount1) if mint else (0, 0)
        await self._create_position(position_id, owner, manager, config, data, fallback, timestamp, block_number)
        if mint:
            self.store.lp_mint_data.delete_unsafe(pending_key)
        await self.update_user_lp_stats(owner, timestamp)
        await self.update_pool_lp_stats(config.pool, timestamp)

    # ============================================
    # Pool events
    # ============================================

    async def initialize_pool(self, pool: str, tick: int, sqrt_price_x96: int, timestamp: int) -> None:
        pool = normalize_address(pool)
        config = await self._tracked_pool_config(pool, timestamp)
        if not config:
            return
        decimals = await self.get_pool_token_decimals(config, timestamp)
        prices = self.pool_token_prices(config, sqrt_price_x96, decimals)
        self.store.lp_pool_state.set(LPPoolState(
            id=pool, pool=pool, current_tick=tick, sqrt_price_x96=sqrt_price_x96,
            token0_price=prices[0], token1_price=prices[1], last_update=timestamp,
        ))

    async def record_swap(self, pool: str, tick: int, sqrt_price_x96: int, amount0: int, amount1: int,
                          timestamp: int, block_number: int) -> None:
        """New pool price; settles positions on a tick move and records volume."""
        pool = normalize_address(pool)
        config = await self._tracked_pool_config(pool, timestamp)
        if not config:
            return

        state = await self.store.lp_pool_state.get(pool)
        old_tick = state.current_tick if state else 0
        decimals = await self.get_pool_token_decimals(config, timestamp)
        current = (state.token0_price, state.token1_price) if state else (0, 0)
        prices = self.pool_token_prices(config, sqrt_price_x96, decimals, current)

        self.store.lp_pool_state.set(LPPoolState(
            id=pool, pool=pool, current_tick=tick, sqrt_price_x96=sqrt_price_x96,
            token0_price=prices[0], token1_price=prices[1], last_update=timestamp,
        ))
        if tick != old_tick:
            await self.update_positions_in_range_status(pool, tick, timestamp, prices, sqrt_price_x96)

        volume = swap_volume_usd(amount0, amount1, prices[0], prices[1], decimals[0], decimals[1])
        await self.update_pool_fee_stats(config, volume, timestamp, block_number)

    async def record_pool_mint(self, pool: str, owner: str, tick_lower: int, tick_upper: int, liquidity: int,
                               amount0: int, amount1: int, timestamp: int, tx_hash: str) -> None:
        """Keep pool-side mint details for the position event that follows in the same transaction."""
        pool = normalize_address(pool)
        config = await self._tracked_pool_config(pool, timestamp)
        if not config:
            return

        def mint_data(key: str) -> LPMintData:
            return LPMintData(
                id=key, pool=pool, position_manager=config.position_manager, owner=normalize_address(owner),
                tick_lower=tick_lower, tick_upper=tick_upper, liquidity=liquidity, amount0=amount0,
                amount1=amount1, tx_hash=tx_hash, timestamp=timestamp,
            )

        self.store.lp_mint_data.set(mint_data(f"{pool}:{tick_lower}:{tick_upper}:{tx_hash}"))
        key = tx_mint_key(tx_hash, amount0, amount1, liquidity)
        if key not in self.store.lp_mint_data:
            self.store.lp_mint_data.set(mint_data(key))

    # ============================================
    # Chain reconciliation
    # ============================================

    async def sync_user_lp_positions_from_chain(self, user_id: str, timestamp: int,
                                                block_number: Optional[int] = None,
                                                force_rescan: bool = False,
                                                managers: Optional[List[str]] = None) -> None:
        """
        Discover positions a user holds on-chain that no event has told us about.

        Each position manager is scanned once per user unless ``force_rescan``.
        A failed read leaves that manager unbaselined so the next call retries.
        """
        if not Config.lp_chain_sync_enabled():
            return
        user_id = normalize_address(user_id)
        configs = await self.list_active_pool_configs()
        if not configs:
            return

        unique_managers = []
        for config in configs:
            if config.position_manager not in unique_managers:
                unique_managers.append(config.position_manager)
        if managers:
            allowed = {normalize_address(m) for m in managers}
            unique_managers = [m for m in unique_managers if m in allowed]

        created_any = False
        touched_pools = []
        for manager in unique_managers:
            baseline_id = f"{user_id}:{manager}"
            if baseline_id in self.store.user_lp_baseline and not force_rescan:
                continue

            balance = await self.chain_reader.read_lp_balance(manager, user_id, block_number)
            if balance is None:
                logger.debug(f"LP balance unavailable for {user_id} on {manager}")
                continue

            token_ids = []
            for index in range(balance):
                token_id = await self.chain_reader.read_lp_token_of_owner_by_index(
                    manager, user_id, index, block_number
                )
                if token_id is None:
                    break
                token_ids.append(token_id)
            if len(token_ids) != balance:
                continue

            read_failed = False
            for token_id in token_ids:
                position_id = str(token_id)
                existing = await self.store.user_lp_position.get(position_id)
                if existing:
                    await self.add_position_to_user_index(user_id, position_id, timestamp)
                    await self.add_position_to_pool_index(existing.pool, position_id, timestamp)
                    continue

                data = await self.chain_reader.read_lp_position(manager, token_id, block_number)
                if data is None:
                    read_failed = True
                    break
                config = await self.resolve_pool_config_for_position(manager, data, timestamp, block_number)
                if not config:
                    continue
                pool_state = await self.seed_pool_state_from_chain(config.pool, timestamp, block_number)
                if pool_state.sqrt_price_x96 == 0:
                    read_failed = True
                    break

                await self._create_position(position_id, user_id, manager, config, data, (0, 0),
                                            timestamp, block_number)
                created_any = True
                if config.pool not in touched_pools:
                    touched_pools.append(config.pool)

            if read_failed:
                continue
            self.store.user_lp_baseline.set(UserLPBaseline(
                id=baseline_id, user_id=user_id, position_manager=manager,
                checked_at=timestamp, checked_block=block_number or 0,
            ))

        if created_any:
            await self.update_user_lp_stats(user_id, timestamp)
        for pool in touched_pools:
            await self.update_pool_lp_stats(pool, timestamp)
