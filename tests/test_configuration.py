"""
Tests for the config singleton, snapshots, VP tiers and the default bootstrap.
"""

import pytest

from conftest import T0
from points_engine.constants import BootstrapConstants
from points_engine.services.configuration import bonus_from_wei

DEFAULT_POOL = BootstrapConstants.LP_POOLS[0]['pool']

SNAPSHOT = {
    'deposit_rate_bps': 300,
    'borrow_rate_bps': 600,
    'vp_rate_bps': 1000,
    'supply_daily_bonus': 1.5,
    'borrow_daily_bonus': 2.0,
    'repay_daily_bonus': 0.0,
    'withdraw_daily_bonus': 0.0,
    'cooldown_seconds': 600,
    'min_daily_bonus_usd': 10.0,
}


class TestLeaderboardConfig:

    @pytest.mark.asyncio
    async def test_init_is_all_zero(self, engine):
        config = await engine.configuration.get_or_init_leaderboard_config(T0)

        assert config.version == 1
        assert config.lp_rate_bps == 0
        assert config.deposit_rate_bps == 0

    @pytest.mark.asyncio
    async def test_field_update_bumps_version(self, engine, store):
        await engine.configuration.update_config(T0, deposit_rate_bps=150)
        await engine.configuration.update_config(T0 + 1, cooldown_seconds=60)

        config = await store.get_leaderboard_config()
        assert config.deposit_rate_bps == 150
        assert config.cooldown_seconds == 60
        assert config.version == 3
        assert config.last_update == T0 + 1

    @pytest.mark.asyncio
    async def test_unknown_field_is_rejected(self, engine):
        with pytest.raises(ValueError):
            await engine.configuration.update_config(T0, bogus_rate=1)

    @pytest.mark.asyncio
    async def test_snapshot_replaces_config_but_keeps_lp_rate(self, engine, store):
        await engine.configuration.update_config(T0, lp_rate_bps=2500, deposit_rate_bps=1)

        await engine.configuration.apply_config_snapshot(SNAPSHOT, T0 + 10)

        config = await store.get_leaderboard_config()
        assert config.lp_rate_bps == 2500
        assert config.deposit_rate_bps == 300
        assert config.min_daily_bonus_usd == 10.0
        snapshot = await store.leaderboard_config_snapshot.get(str(T0 + 10))
        assert snapshot.vp_rate_bps == 1000

    def test_bonus_from_wei(self):
        assert bonus_from_wei(15 * 10 ** 17) == 1.5


class TestVotingPowerTiers:

    @pytest.mark.asyncio
    async def test_add_update_remove(self, engine, store):
        engine.configuration.add_vp_tier(0, 100, 12000, T0)
        await engine.configuration.update_vp_tier(0, 200, 13000, T0 + 1)

        tier = await store.voting_power_tier.get('0')
        assert (tier.min_voting_power, tier.multiplier_bps) == (200, 13000)
        assert await engine.voting_power.calculate_vp_multiplier(250) == 13000

        await engine.configuration.remove_vp_tier(0, T0 + 2)

        assert '0' in store.voting_power_tier
        assert not (await store.voting_power_tier.get('0')).is_active
        assert await engine.voting_power.calculate_vp_multiplier(250) == 10000

    @pytest.mark.asyncio
    async def test_missing_tier(self, engine):
        assert await engine.configuration.update_vp_tier(7, 1, 1, T0) is None
        assert await engine.configuration.remove_vp_tier(7, T0) is None


class TestBootstrap:

    @pytest.mark.asyncio
    async def test_disabled(self, engine, store):
        assert not await engine.configuration.bootstrap_defaults(T0)
        assert await store.get_leaderboard_config() is None

    @pytest.mark.asyncio
    async def test_seeds_defaults_once(self, engine, store, monkeypatch):
        monkeypatch.delenv('DISABLE_BOOTSTRAP')

        assert await engine.configuration.bootstrap_defaults(T0)

        config = await store.get_leaderboard_config()
        assert (config.deposit_rate_bps, config.borrow_rate_bps) == (200, 500)
        assert (config.vp_rate_bps, config.lp_rate_bps) == (2500, 2500)
        nft_config = await store.nft_multiplier_config.get('current')
        assert (nft_config.first_bonus, nft_config.decay_ratio) == (1000, 9000)
        assert len(store.nft_partnership) == 3
        registry = await store.nft_partnership_registry_state.get('current')
        assert registry.total_active == 3
        pool_config = await store.lp_pool_config.get(DEFAULT_POOL)
        assert pool_config.lp_rate_bps == 2500
        assert pool_config.is_active

        assert not await engine.configuration.bootstrap_defaults(T0 + 1)

    @pytest.mark.asyncio
    async def test_existing_config_is_kept(self, engine, store, monkeypatch):
        monkeypatch.delenv('DISABLE_BOOTSTRAP')
        await engine.configuration.update_config(T0, deposit_rate_bps=42)

        await engine.configuration.bootstrap_defaults(T0 + 1)

        assert (await store.get_leaderboard_config()).deposit_rate_bps == 42
