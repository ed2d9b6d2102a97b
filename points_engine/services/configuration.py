"""
Leaderboard configuration management.

Holds the rate/bonus config singleton, its snapshot trail, the voting power
tier table and the one-time bootstrap of default configuration. Per-field
update events mutate the config independently; a missing config starts from
all-zero values.
"""

import logging
from typing import Any, Dict, Optional

from points_engine.config import Config
from points_engine.constants import BootstrapConstants, LeaderboardConstants, MathConstants
from points_engine.data_models.entities import (
    LeaderboardConfig, LeaderboardConfigSnapshot, VotingPowerTier,
)
from points_engine.services.base import BaseService
from points_engine.services.lp_accrual import LPAccrualService
from points_engine.services.nft_ownership import NFTOwnershipService

logger = logging.getLogger(__name__)

# Daily bonuses arrive in wei
BONUS_SCALE = MathConstants.WAD

CONFIG_FIELDS = (
    'deposit_rate_bps', 'borrow_rate_bps', 'vp_rate_bps', 'lp_rate_bps',
    'supply_daily_bonus', 'borrow_daily_bonus', 'repay_daily_bonus', 'withdraw_daily_bonus',
    'cooldown_seconds', 'min_daily_bonus_usd',
)


def bonus_from_wei(value: int) -> float:
    return int(value) / BONUS_SCALE


class ConfigurationService(BaseService):
    """Manages leaderboard configuration with a snapshot trail and bootstrap defaults."""

    def __init__(self, store, nft_ownership: NFTOwnershipService, lp: LPAccrualService):
        super().__init__(store)
        self.nft_ownership = nft_ownership
        self.lp = lp

    async def get_or_init_leaderboard_config(self, timestamp: int) -> LeaderboardConfig:
        """
        Get the config singleton, creating it with all-zero values if absent.

        Args:
            timestamp: Used as ``last_update`` of a newly created config

        Returns:
            The current configuration
        """
        config = await self.store.get_leaderboard_config()
        if not config:
            config = self.store.save_leaderboard_config(LeaderboardConfig(lp_rate_bps=0, last_update=timestamp))
        return config

    async def update_config(self, timestamp: int, **fields: Any) -> LeaderboardConfig:
        """Apply a per-field update. Unknown fields are rejected."""
        unknown = set(fields) - set(CONFIG_FIELDS)
        if unknown:
            raise ValueError(f"Unknown leaderboard config fields: {sorted(unknown)}")

        config = await self.get_or_init_leaderboard_config(timestamp)
        for name, value in fields.items():
            setattr(config, name, value)
        config.last_update = timestamp
        self.store.save_leaderboard_config(config)
        logger.debug(f"Leaderboard config updated: {fields}")
        return config

    async def apply_config_snapshot(self, values: Dict[str, Any], snapshot_timestamp: int) -> LeaderboardConfig:
        """
        Record a full config snapshot and replace the live config with it.

        The LP rate is not part of snapshots and is carried over.
        """
        self.store.leaderboard_config_snapshot.set(LeaderboardConfigSnapshot(
            id=str(snapshot_timestamp),
            deposit_rate_bps=values['deposit_rate_bps'],
            borrow_rate_bps=values['borrow_rate_bps'],
            vp_rate_bps=values['vp_rate_bps'],
            supply_daily_bonus=values['supply_daily_bonus'],
            borrow_daily_bonus=values['borrow_daily_bonus'],
            repay_daily_bonus=values['repay_daily_bonus'],
            withdraw_daily_bonus=values['withdraw_daily_bonus'],
            cooldown_seconds=values['cooldown_seconds'],
            min_daily_bonus_usd=values['min_daily_bonus_usd'],
            timestamp=snapshot_timestamp,
        ))

        existing = await self.store.get_leaderboard_config()
        config = LeaderboardConfig(
            lp_rate_bps=existing.lp_rate_bps if existing and existing.lp_rate_bps is not None else 0,
            last_update=snapshot_timestamp,
            version=existing.version if existing else 0,
        )
        for name, value in values.items():
            setattr(config, name, value)
        return self.store.save_leaderboard_config(config)

    # ============================================
    # Voting power tiers
    # ============================================

    def add_vp_tier(self, tier_index: int, min_voting_power: int, multiplier_bps: int,
                    timestamp: int) -> VotingPowerTier:
        if tier_index >= LeaderboardConstants.MAX_VP_TIERS:
            logger.warning(f"VP tier {tier_index} is beyond the scanned range and will be ignored")
        tier = VotingPowerTier(
            id=str(tier_index),
            tier_index=tier_index,
            min_voting_power=min_voting_power,
            multiplier_bps=multiplier_bps,
            created_at=timestamp,
            last_update=timestamp,
            is_active=True,
        )
        self.store.voting_power_tier.set(tier)
        return tier

    async def update_vp_tier(self, tier_index: int, min_voting_power: int, multiplier_bps: int,
                             timestamp: int) -> Optional[VotingPowerTier]:
        tier = await self.store.voting_power_tier.get(str(tier_index))
        if not tier:
            return None
        tier.min_voting_power = min_voting_power
        tier.multiplier_bps = multiplier_bps
        tier.last_update = timestamp
        self.store.voting_power_tier.set(tier)
        return tier

    async def remove_vp_tier(self, tier_index: int, timestamp: int) -> Optional[VotingPowerTier]:
        """Soft-delete: the tier stays but is skipped by multiplier lookups."""
        tier = await self.store.voting_power_tier.get(str(tier_index))
        if not tier:
            return None
        tier.is_active = False
        tier.last_update = timestamp
        self.store.voting_power_tier.set(tier)
        return tier

    # ============================================
    # Bootstrap
    # ============================================

    async def bootstrap_defaults(self, timestamp: int) -> bool:
        """
        Seed default config, NFT partnerships and the default LP pool.

        Each piece is only seeded when absent, so this is safe to call on
        every event. Returns True if anything was written.
        """
        if not Config.bootstrap_enabled():
            return False

        seeded = False
        if not await self.store.get_leaderboard_config():
            config = LeaderboardConfig(last_update=timestamp)
            for name, value in BootstrapConstants.LEADERBOARD_CONFIG.items():
                setattr(config, name, value)
            self.store.save_leaderboard_config(config)
            seeded = True

        if 'current' not in self.store.nft_multiplier_config:
            multiplier_config = BootstrapConstants.NFT_MULTIPLIER_CONFIG
            self.nft_ownership.set_multiplier_config(
                multiplier_config['first_bonus'], multiplier_config['decay_ratio'], timestamp
            )
            for collection, name, static_boost_bps in BootstrapConstants.NFT_PARTNERSHIPS:
                if collection in self.store.nft_partnership:
                    continue
                await self.nft_ownership.add_partnership(
                    collection, name, True, 0, 0,
                    multiplier_config['first_bonus'], multiplier_config['decay_ratio'], timestamp,
                    static_boost_bps=static_boost_bps,
                )
            seeded = True

        for pool in BootstrapConstants.LP_POOLS:
            if pool['pool'] not in self.store.lp_pool_config:
                await self.lp.ensure_default_pool_config(timestamp)
                seeded = True

        if seeded:
            logger.info("Bootstrapped default leaderboard configuration")
        return seeded
