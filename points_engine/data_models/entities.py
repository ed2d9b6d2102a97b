"""
Persisted entity models for the points engine.

Every entity is a mutable dataclass keyed by a string ``id``. Entities are
stored as JSON payloads, so field values are limited to ints, floats, strings,
bools, None and lists of those. Large fixed-point integers (ray indices,
scaled points) round-trip unchanged through JSON.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import List, Optional

from points_engine.constants import LeaderboardConstants, MathConstants

NEUTRAL = LeaderboardConstants.NEUTRAL_MULTIPLIER


class EntityMixin:
    """Dict conversion shared by all entities."""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


# ============================================
# Epochs and global configuration
# ============================================

@dataclass
class LeaderboardState(EntityMixin):
    """Global epoch pointer (singleton ``current``)."""
    id: str = 'current'
    current_epoch_number: int = 0
    is_active: bool = False
    version: int = 0


@dataclass
class LeaderboardEpoch(EntityMixin):
    """A scoring period. Zero start/end fields mean "not yet observed"."""
    id: str
    epoch_number: int
    start_block: int = 0
    start_time: int = 0
    end_block: int = 0
    end_time: int = 0
    is_active: bool = False
    duration: Optional[int] = None
    scheduled_start_time: int = 0
    scheduled_end_time: int = 0
    created_at: int = 0
    updated_at: int = 0


@dataclass
class LeaderboardConfig(EntityMixin):
    """Rate and bonus parameters (singleton ``global``)."""
    id: str = 'global'
    deposit_rate_bps: int = 0
    borrow_rate_bps: int = 0
    vp_rate_bps: int = 0
    lp_rate_bps: Optional[int] = None
    supply_daily_bonus: float = 0.0
    borrow_daily_bonus: float = 0.0
    repay_daily_bonus: float = 0.0
    withdraw_daily_bonus: float = 0.0
    cooldown_seconds: int = 0
    min_daily_bonus_usd: float = 0.0
    last_update: int = 0
    version: int = 0


@dataclass
class LeaderboardConfigSnapshot(EntityMixin):
    id: str
    deposit_rate_bps: int
    borrow_rate_bps: int
    vp_rate_bps: int
    supply_daily_bonus: float
    borrow_daily_bonus: float
    repay_daily_bonus: float
    withdraw_daily_bonus: float
    cooldown_seconds: int
    min_daily_bonus_usd: float
    timestamp: int


@dataclass
class ProtocolStats(EntityMixin):
    id: str = '1'
    total_transactions: int = 0
    last_tx_hash: str = '0x'
    last_tx_timestamp: int = 0
    updated_at: int = 0


# ============================================
# Per-user scoring ledgers
# ============================================

@dataclass
class UserLeaderboardState(EntityMixin):
    """Multiplier inputs and lifetime totals for one user."""
    id: str
    nft_count: int = 0
    nft_multiplier: int = NEUTRAL
    voting_power: int = 0
    vp_tier_index: int = 0
    vp_multiplier: int = NEUTRAL
    combined_multiplier: int = NEUTRAL
    total_epochs_participated: int = 0
    lifetime_points: int = 0
    current_epoch_id: Optional[str] = None
    current_epoch_rank: Optional[int] = None
    last_update: int = 0


@dataclass
class UserEpochStats(EntityMixin):
    """Canonical per-epoch scoring ledger, keyed ``{user}:{epoch}``."""
    id: str
    user_id: str
    epoch_number: int
    deposit_points: int = 0
    borrow_points: int = 0
    lp_points: int = 0
    daily_supply_points: int = 0
    daily_borrow_points: int = 0
    daily_repay_points: int = 0
    daily_withdraw_points: int = 0
    daily_vp_points: int = 0
    daily_lp_points: int = 0
    manual_award_points: int = 0
    deposit_multiplier_bps: int = NEUTRAL
    borrow_multiplier_bps: int = NEUTRAL
    vp_multiplier_bps: int = NEUTRAL
    lp_multiplier_bps: int = NEUTRAL
    deposit_points_with_multiplier: int = 0
    borrow_points_with_multiplier: int = 0
    vp_points_with_multiplier: int = 0
    lp_points_with_multiplier: int = 0
    last_supply_points_day: int = -1
    last_borrow_points_day: int = -1
    last_repay_points_day: int = -1
    last_withdraw_points_day: int = -1
    last_vp_points_day: int = -1
    total_points: int = 0
    total_points_with_multiplier: int = 0
    total_multiplier_bps: int = NEUTRAL
    last_applied_multiplier_bps: int = NEUTRAL
    testnet_bonus_bps: int = 0
    rank: int = 0
    first_seen_at: int = 0
    last_updated_at: int = 0


@dataclass
class UserPoints(EntityMixin):
    """Lifetime aggregate across every epoch the user took part in."""
    id: str
    user_id: str
    lifetime_deposit_points: int = 0
    lifetime_borrow_points: int = 0
    lifetime_daily_supply_points: int = 0
    lifetime_daily_borrow_points: int = 0
    lifetime_daily_repay_points: int = 0
    lifetime_daily_withdraw_points: int = 0
    lifetime_daily_vp_points: int = 0
    lifetime_total_points: int = 0
    epochs_participated: List[int] = field(default_factory=list)
    last_updated_at: int = 0


@dataclass
class UserReservePoints(EntityMixin):
    """Accrual markers for one user-reserve pair, keyed ``{user}:{reserve}``."""
    id: str
    user_id: str
    reserve_id: str
    last_update_timestamp: int = 0
    last_deposit_usd: float = 0.0
    last_borrow_usd: float = 0.0
    last_deposit_index: float = 0.0
    last_borrow_index: float = 0.0
    last_deposit_tokens: float = 0.0
    last_borrow_tokens: float = 0.0
    deposit_points: int = 0
    borrow_points: int = 0
    total_points: int = 0
    reset_timestamp: int = 0
    reset_deposit_index: float = 0.0
    reset_borrow_index: float = 0.0


@dataclass
class UserDailyActivity(EntityMixin):
    """Per-day activity flags and USD highwaters, keyed ``{user}:{epoch}:{day}``."""
    id: str
    user_id: str
    day: int
    has_supplied: bool = False
    has_borrowed: bool = False
    has_repaid: bool = False
    has_withdrawn: bool = False
    supply_timestamp: Optional[int] = None
    borrow_timestamp: Optional[int] = None
    repay_timestamp: Optional[int] = None
    withdraw_timestamp: Optional[int] = None
    updated_at: int = 0
    daily_supply_usd_highwater: float = 0.0
    daily_borrow_usd_highwater: float = 0.0
    daily_repay_usd_highwater: float = 0.0
    daily_withdraw_usd_highwater: float = 0.0


@dataclass
class UserMultiplierSnapshot(EntityMixin):
    id: str
    user_id: str
    timestamp: int
    nft_count: int
    nft_multiplier: int
    voting_power: int
    vp_multiplier: int
    combined_multiplier: int
    change_reason: str
    tx_hash: str


@dataclass
class UserVotingPowerHistory(EntityMixin):
    id: str
    user_id: str
    token_id: int
    voting_power: int
    timestamp: int
    tx_hash: str
    event_type: str


# ============================================
# Voting power and NFT multipliers
# ============================================

@dataclass
class VotingPowerTier(EntityMixin):
    id: str
    tier_index: int
    min_voting_power: int
    multiplier_bps: int
    created_at: int = 0
    last_update: int = 0
    is_active: bool = True


@dataclass
class NFTMultiplierConfig(EntityMixin):
    id: str = 'current'
    first_bonus: int = 0
    decay_ratio: int = 0
    last_update: int = 0


@dataclass
class NFTMultiplierSnapshot(EntityMixin):
    id: str
    first_bonus: int
    decay_ratio: int
    timestamp: int


@dataclass
class NFTPartnership(EntityMixin):
    """A partner collection. ``static_boost_bps`` of None or 0 means decay-type."""
    id: str
    collection: str
    name: str = ''
    static_boost_bps: Optional[int] = None
    active: bool = True
    start_timestamp: int = 0
    end_timestamp: Optional[int] = None
    added_at: int = 0
    last_update: int = 0


@dataclass
class NFTPartnershipRegistryState(EntityMixin):
    id: str = 'current'
    active_collections: List[str] = field(default_factory=list)
    total_active: int = 0
    last_update: int = 0


@dataclass
class UserNFTOwnership(EntityMixin):
    """Partner-collection holdings, keyed ``{user}:{collection}``."""
    id: str
    user_id: str
    partnership: str
    balance: int = 0
    has_nft: bool = False
    last_checked_timestamp: int = 0
    last_checked_block: int = 0


@dataclass
class UserNFTBaseline(EntityMixin):
    id: str
    user_id: str
    partnership: str
    checked_at: int = 0
    checked_block: int = 0


@dataclass
class DustLockToken(EntityMixin):
    """A vote-escrow lock, keyed by token id."""
    id: str
    owner: str = ''
    locked_amount: int = 0
    end: int = 0
    is_permanent: bool = False
    created_at: int = 0
    updated_at: int = 0
    last_deposit_type: Optional[int] = None


@dataclass
class UserTokenList(EntityMixin):
    id: str
    token_ids: List[int] = field(default_factory=list)
    updated_at: int = 0


# ============================================
# Prices and lending reserves
# ============================================

@dataclass
class PriceOracleAsset(EntityMixin):
    """Cached asset price plus its cumulative USD price-hours index."""
    id: str
    price_e8: int = 0
    last_price_usd: float = 0.0
    last_update_timestamp: int = 0
    cumulative_usd_price_hours: float = 0.0
    reset_timestamp: int = 0
    reset_cumulative_usd_price_hours: float = 0.0


@dataclass
class TokenInfo(EntityMixin):
    id: str
    symbol: Optional[str] = None
    name: Optional[str] = None
    decimals: int = 0
    last_update: int = 0


@dataclass
class Reserve(EntityMixin):
    """A lending market, keyed ``{asset}-{pool}``."""
    id: str
    underlying_asset: str
    pool: str
    symbol: str = ''
    decimals: int = MathConstants.PRICE_DECIMALS
    price: str = ''
    a_token: str = ''
    variable_debt_token: str = ''
    liquidity_rate: int = 0
    variable_borrow_rate: int = 0
    stable_borrow_rate: int = 0
    liquidity_index: int = MathConstants.RAY
    variable_borrow_index: int = MathConstants.RAY
    last_update_timestamp: int = 0
    total_a_token_supply: int = 0
    total_scaled_variable_debt: int = 0
    total_current_variable_debt: int = 0


@dataclass
class UserReserve(EntityMixin):
    """A user's balances in one reserve, keyed ``{user}-{reserve}``."""
    id: str
    user_id: str
    reserve_id: str
    pool: str = ''
    scaled_a_token_balance: int = 0
    current_a_token_balance: int = 0
    scaled_variable_debt: int = 0
    current_variable_debt: int = 0
    principal_stable_debt: int = 0
    current_stable_debt: int = 0
    current_total_debt: int = 0
    liquidity_rate: int = 0
    variable_borrow_index: int = 0
    last_update_timestamp: int = 0


@dataclass
class UserReserveList(EntityMixin):
    id: str
    reserve_ids: List[str] = field(default_factory=list)
    updated_at: int = 0


@dataclass
class SubToken(EntityMixin):
    """An aToken or debt token, keyed by its own address."""
    id: str
    underlying_asset: str
    pool: str
    token_type: str


@dataclass
class ContractToPoolMapping(EntityMixin):
    """Maps a pool or configurator proxy to its addresses provider."""
    id: str
    pool_id: str


@dataclass
class ReserveIndexSnapshot(EntityMixin):
    """Reserve indices frozen at an epoch end, keyed ``epochEnd:{n}:{reserve}``."""
    id: str
    epoch_number: int
    reserve_id: str
    liquidity_index: int
    variable_borrow_index: int
    timestamp: int


@dataclass
class PendingGatewayWithdrawal(EntityMixin):
    id: str
    tx_hash: str
    reserve: str
    gateway: str
    actual_user: str


# ============================================
# Admin records and ranking structures
# ============================================

@dataclass
class LeaderboardBlacklist(EntityMixin):
    id: str
    is_blacklisted: bool = False
    updated_at: int = 0


@dataclass
class ManualPointsAward(EntityMixin):
    id: str
    user_id: str
    epoch_number: int
    points: float
    reason: str
    awarded_at: int
    tx_hash: str


@dataclass
class TopK(EntityMixin):
    id: str
    epoch_number: int
    k: int = LeaderboardConstants.MAX_TOP_K
    entries: List[str] = field(default_factory=list)
    updated_at: int = 0


@dataclass
class TopKEntry(EntityMixin):
    id: str
    epoch_number: int
    user_id: str
    points: float
    rank: int
    updated_at: int = 0


@dataclass
class ScoreBucket(EntityMixin):
    id: str
    epoch_number: int
    bucket_index: int
    lower: float
    upper: float
    count: int = 0
    updated_at: int = 0


@dataclass
class LeaderboardTotals(EntityMixin):
    id: str
    epoch_number: int
    total_users: int = 0
    updated_at: int = 0


@dataclass
class UserIndex(EntityMixin):
    """A user's current score and bucket within one scope."""
    id: str
    epoch_number: int
    user_id: str
    points: float = 0.0
    bucket_index: int = -1
    updated_at: int = 0


# ============================================
# Concentrated liquidity positions
# ============================================

@dataclass
class LPPoolConfig(EntityMixin):
    id: str
    pool: str
    position_manager: str
    token0: str
    token1: str
    fee: Optional[int] = None
    lp_rate_bps: int = 0
    is_active: bool = True
    enabled_at_epoch: int = 0
    enabled_at_timestamp: int = 0
    disabled_at_epoch: Optional[int] = None
    disabled_at_timestamp: Optional[int] = None
    last_update: int = 0


@dataclass
class LPPoolRegistry(EntityMixin):
    id: str = 'global'
    pool_ids: List[str] = field(default_factory=list)
    last_update: int = 0


@dataclass
class LPPoolState(EntityMixin):
    """Pool price state. Token prices are 8-decimal USD."""
    id: str
    pool: str
    current_tick: int = 0
    sqrt_price_x96: int = 0
    token0_price: int = 0
    token1_price: int = 0
    last_update: int = 0


@dataclass
class LPPoolStats(EntityMixin):
    id: str
    pool: str
    total_positions: int = 0
    in_range_positions: int = 0
    total_value_usd: int = 0
    in_range_value_usd: int = 0
    last_update: int = 0


@dataclass
class LPPoolVolumeBucket(EntityMixin):
    id: str
    pool: str
    bucket_start: int
    volume_usd: int = 0
    last_update: int = 0


@dataclass
class LPPoolFeeStats(EntityMixin):
    id: str
    pool: str
    volume_usd_24h: int = 0
    fees_usd_24h: int = 0
    fee_apr_bps: int = 0
    last_update: int = 0


@dataclass
class UserLPPosition(EntityMixin):
    """A concentrated liquidity position, keyed by its NFT token id."""
    id: str
    token_id: int
    user_id: str
    pool: str
    position_manager: str
    tick_lower: int
    tick_upper: int
    liquidity: int = 0
    amount0: int = 0
    amount1: int = 0
    is_in_range: bool = False
    value_usd: int = 0
    last_in_range_timestamp: int = 0
    accumulated_in_range_seconds: int = 0
    last_settled_at: int = 0
    settled_lp_points: int = 0
    created_at: int = 0
    last_update: int = 0

    @property
    def is_empty(self) -> bool:
        return self.liquidity == 0 and self.amount0 == 0 and self.amount1 == 0


@dataclass
class UserLPPositionIndex(EntityMixin):
    id: str
    position_ids: List[str] = field(default_factory=list)
    last_update: int = 0


@dataclass
class LPPoolPositionIndex(EntityMixin):
    id: str
    position_ids: List[str] = field(default_factory=list)
    last_update: int = 0


@dataclass
class UserLPStats(EntityMixin):
    id: str
    total_positions: int = 0
    in_range_positions: int = 0
    total_value_usd: int = 0
    in_range_value_usd: int = 0
    last_update: int = 0


@dataclass
class UserLPBaseline(EntityMixin):
    id: str
    user_id: str
    position_manager: str
    checked_at: int = 0
    checked_block: int = 0


@dataclass
class LPMintData(EntityMixin):
    """Pool-side mint details kept until the matching position event arrives."""
    id: str
    pool: str
    position_manager: str
    owner: str
    tick_lower: int
    tick_upper: int
    liquidity: int
    amount0: int
    amount1: int
    tx_hash: str
    timestamp: int
