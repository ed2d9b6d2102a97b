"""
Tests for the NFT multiplier series, partnership boosts and combined multipliers.
"""

import pytest

from conftest import T0, USER
from points_engine.constants import LeaderboardConstants
from points_engine.services.multipliers import MultiplierService
from points_engine.services.nft_ownership import NFTOwnershipService
from points_engine.services.chain_reader import NullChainReader
from points_engine.services.voting_power import VotingPowerService

DECAY_COLLECTION = '0x00000000000000000000000000000000000000aa'
STATIC_COLLECTION = '0x00000000000000000000000000000000000000bb'


@pytest.fixture
def multipliers(store):
    return MultiplierService(store, VotingPowerService(store))


@pytest.fixture
def nft_ownership(store, multipliers):
    return NFTOwnershipService(store, NullChainReader(), multipliers)


class TestCountMultiplier:

    @pytest.mark.asyncio
    async def test_without_config_is_neutral(self, multipliers):
        assert await multipliers.calculate_nft_multiplier_from_count(3) == LeaderboardConstants.NEUTRAL_MULTIPLIER

    @pytest.mark.asyncio
    @pytest.mark.parametrize('count, expected', [(0, 10000), (1, 11000), (2, 11900), (3, 12710)])
    async def test_geometric_series(self, multipliers, nft_ownership, count, expected):
        nft_ownership.set_multiplier_config(1000, 9000, T0)
        assert await multipliers.calculate_nft_multiplier_from_count(count) == expected

    @pytest.mark.asyncio
    async def test_capped(self, multipliers, nft_ownership):
        nft_ownership.set_multiplier_config(50000, 10000, T0)
        assert await multipliers.calculate_nft_multiplier_from_count(3) == LeaderboardConstants.MAX_NFT_MULTIPLIER


class TestPartnershipMultiplier:

    async def _add(self, nft_ownership, collection, static_boost=0, start=0):
        await nft_ownership.add_partnership(collection, 'Partner', True, start, 0, 1000, 9000, T0,
                                            static_boost_bps=static_boost)

    @pytest.mark.asyncio
    async def test_static_boost_is_flat(self, multipliers, nft_ownership):
        await self._add(nft_ownership, DECAY_COLLECTION)
        await self._add(nft_ownership, STATIC_COLLECTION, static_boost=2000)
        await nft_ownership.apply_balance_delta(USER, DECAY_COLLECTION, 1, T0, 1)
        await nft_ownership.apply_balance_delta(USER, STATIC_COLLECTION, 1, T0, 1)

        assert await multipliers.calculate_nft_multiplier_for_user(USER, T0) == 13000

    @pytest.mark.asyncio
    async def test_future_partnership_is_ignored(self, multipliers, nft_ownership):
        await self._add(nft_ownership, DECAY_COLLECTION, start=T0 + 100)
        await nft_ownership.apply_balance_delta(USER, DECAY_COLLECTION, 1, T0, 1)

        assert await multipliers.calculate_nft_multiplier_for_user(USER, T0) == 10000
        assert await multipliers.calculate_nft_multiplier_for_user(USER, T0 + 100) == 11000

    @pytest.mark.asyncio
    async def test_removed_partnership_is_ignored(self, multipliers, nft_ownership):
        await self._add(nft_ownership, DECAY_COLLECTION)
        await nft_ownership.apply_balance_delta(USER, DECAY_COLLECTION, 1, T0, 1)
        await nft_ownership.remove_partnership(DECAY_COLLECTION, T0 + 1)

        assert await multipliers.calculate_nft_multiplier_for_user(USER, T0 + 1) == 10000

    @pytest.mark.asyncio
    async def test_balance_clamps_at_zero(self, nft_ownership):
        was_owning, has_nft = await nft_ownership.apply_balance_delta(USER, DECAY_COLLECTION, -1, T0, 1)
        assert (was_owning, has_nft) == (False, False)
        assert f"{USER}:{DECAY_COLLECTION}" not in nft_ownership.store.user_nft_ownership


class TestUserMultiplierState:

    @pytest.mark.asyncio
    async def test_nft_balance_change_by_count(self, multipliers, nft_ownership):
        nft_ownership.set_multiplier_config(1000, 9000, T0)

        state, old_multiplier = await multipliers.apply_nft_balance_change(USER, True, T0, use_partnerships=False)

        assert old_multiplier == 10000
        assert state.nft_count == 1
        assert state.nft_multiplier == 11000
        assert state.combined_multiplier == 11000

    @pytest.mark.asyncio
    async def test_count_never_negative(self, multipliers):
        state, _ = await multipliers.apply_nft_balance_change(USER, False, T0, use_partnerships=False)
        assert state.nft_count == 0

    @pytest.mark.asyncio
    async def test_refresh_fresh_user(self, multipliers):
        assert await multipliers.refresh_user_voting_power_state(USER, T0) == (0, 10000, 0, 10000)
