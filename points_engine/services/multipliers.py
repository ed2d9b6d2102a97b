"""
NFT and combined multipliers.

The NFT multiplier is a geometric series of per-collection bonuses on top of
the neutral 10000 bps, optionally mixed with flat static boosts for
partnerships that define one. The combined multiplier is the product of the
NFT and voting-power multipliers, normalized to bps and capped at 10x.
"""

import logging
from typing import Tuple

from points_engine.constants import LeaderboardConstants, MathConstants, normalize_address
from points_engine.services.base import BaseService
from points_engine.services.voting_power import VotingPowerService
from points_engine.utils.fixed_point import combine_multipliers

logger = logging.getLogger(__name__)

BASIS_POINTS = MathConstants.BASIS_POINTS


class MultiplierService(BaseService):
    """Computes and refreshes per-user multiplier state."""

    def __init__(self, store, voting_power: VotingPowerService):
        super().__init__(store)
        self.voting_power = voting_power

    async def calculate_nft_multiplier_from_count(self, collection_count: int) -> int:
        if collection_count <= 0:
            return BASIS_POINTS

        config = await self.store.nft_multiplier_config.get('current')
        if not config:
            return BASIS_POINTS

        total = BASIS_POINTS
        bonus = config.first_bonus
        for _ in range(collection_count):
            total += bonus
            bonus = (bonus * config.decay_ratio) // BASIS_POINTS

        return min(total, LeaderboardConstants.MAX_NFT_MULTIPLIER)

    async def calculate_nft_multiplier_for_user(self, user_id: str, timestamp: int = 0) -> int:
        """
        Multiplier from the partnerships a user currently holds.

        Collections with a positive static boost add it flat; the rest feed
        the decay series. Partnerships outside their active window are
        ignored when ``timestamp`` is given.
        """
        user_id = normalize_address(user_id)
        registry = await self.store.nft_partnership_registry_state.get('current')
        if not registry:
            state = await self.store.user_leaderboard_state.get(user_id)
            return await self.calculate_nft_multiplier_from_count(state.nft_count if state else 0)

        decay_count = 0
        static_total = 0
        for collection in registry.active_collections:
            ownership = await self.store.user_nft_ownership.get(f"{user_id}:{collection}")
            if not ownership or not ownership.has_nft:
                continue

            partnership = await self.store.nft_partnership.get(collection)
            if partnership:
                if not partnership.active:
                    continue
                if timestamp and partnership.start_timestamp > timestamp:
                    continue
                if timestamp and partnership.end_timestamp and partnership.end_timestamp < timestamp:
                    continue
                if partnership.static_boost_bps:
                    static_total += partnership.static_boost_bps
                    continue
            decay_count += 1

        decay_multiplier = await self.calculate_nft_multiplier_from_count(decay_count)
        return min(decay_multiplier + static_total, LeaderboardConstants.MAX_NFT_MULTIPLIER)

    async def refresh_user_voting_power_state(self, user_id: str,
                                              timestamp: int) -> Tuple[int, int, int, int]:
        """
        Recompute VP, its tier and the combined multiplier from current locks.

        The user state is only written when something changed. Returns
        ``(voting_power, vp_multiplier, vp_tier_index, combined_multiplier)``.
        """
        state = await self.get_or_create_user_state(user_id, timestamp)
        current_vp = await self.voting_power.calculate_current_voting_power(state.id, timestamp)
        vp_multiplier = await self.voting_power.calculate_vp_multiplier(current_vp)
        vp_tier_index = await self.voting_power.find_vp_tier_index(current_vp)
        combined = combine_multipliers(state.nft_multiplier, vp_multiplier)

        if (state.voting_power != current_vp or state.vp_multiplier != vp_multiplier
                or state.vp_tier_index != vp_tier_index or state.combined_multiplier != combined):
            state.voting_power = current_vp
            state.vp_multiplier = vp_multiplier
            state.vp_tier_index = vp_tier_index
            state.combined_multiplier = combined
            state.last_update = timestamp
            self.store.user_leaderboard_state.set(state)

        return current_vp, vp_multiplier, vp_tier_index, combined

    async def calculate_average_combined_multiplier(self, user_id: str, start_timestamp: int,
                                                    end_timestamp: int) -> int:
        """Combined multiplier using the tier of the average VP over the interval."""
        state = await self.get_or_create_user_state(user_id, end_timestamp)
        average_vp = await self.voting_power.calculate_average_voting_power(
            state.id, start_timestamp, end_timestamp
        )
        vp_multiplier = await self.voting_power.calculate_vp_multiplier(average_vp)
        return combine_multipliers(state.nft_multiplier, vp_multiplier)

    async def apply_nft_balance_change(self, user_id: str, has_nft: bool, timestamp: int,
                                       use_partnerships: bool = True):
        """
        Adjust a user's NFT count after a collection flipped between owned and not owned.

        Returns ``(state, old_nft_multiplier)`` with the state already saved.
        """
        state = await self.get_or_create_user_state(user_id, timestamp)
        old_multiplier = state.nft_multiplier

        if has_nft:
            state.nft_count += 1
        else:
            state.nft_count = max(state.nft_count - 1, 0)
        self.store.user_leaderboard_state.set(state)

        if use_partnerships:
            state.nft_multiplier = await self.calculate_nft_multiplier_for_user(state.id, timestamp)
        else:
            state.nft_multiplier = await self.calculate_nft_multiplier_from_count(state.nft_count)
        state.combined_multiplier = combine_multipliers(state.nft_multiplier, state.vp_multiplier)
        state.last_update = timestamp
        self.store.user_leaderboard_state.set(state)
        return state, old_multiplier
