"""
Voting power from vote-escrow locks and the voting-power tier table.

A decaying lock's power falls linearly from its amount to zero at ``end``;
a permanent lock keeps its full amount. All divisions truncate.
"""

import logging
from typing import Optional

from points_engine.constants import DustLockConstants, LeaderboardConstants, normalize_address
from points_engine.data_models.entities import DustLockToken, UserTokenList, UserVotingPowerHistory
from points_engine.services.base import BaseService
from points_engine.utils.fixed_point import combine_multipliers

logger = logging.getLogger(__name__)

NEUTRAL = LeaderboardConstants.NEUTRAL_MULTIPLIER


def calculate_voting_power(locked_amount: int, lock_end: int, is_permanent: bool,
                           current_timestamp: int) -> int:
    if locked_amount == 0:
        return 0
    if is_permanent:
        return locked_amount
    if lock_end <= current_timestamp:
        return 0
    return (locked_amount * (lock_end - current_timestamp)) // DustLockConstants.MAX_LOCK_TIME


def calculate_token_voting_power(token: DustLockToken, timestamp: int) -> int:
    return calculate_voting_power(token.locked_amount, token.end, token.is_permanent, timestamp)


def calculate_average_token_voting_power(token: DustLockToken, start_timestamp: int,
                                         end_timestamp: int) -> int:
    """
    Time-weighted average voting power of one lock over [start, end].

    Uses the trapezoid over the sub-interval where the lock is alive, weighted
    by that sub-interval's share of the window. Degenerates to the
    instantaneous value at ``end`` for an empty window.
    """
    if end_timestamp <= start_timestamp:
        return calculate_token_voting_power(token, end_timestamp)

    if token.locked_amount == 0:
        return 0
    if token.is_permanent:
        return token.locked_amount
    if token.end <= start_timestamp:
        return 0

    effective_end = min(end_timestamp, token.end)
    vp_start = calculate_token_voting_power(token, start_timestamp)
    vp_end = calculate_token_voting_power(token, effective_end)
    active_duration = effective_end - start_timestamp
    total_duration = end_timestamp - start_timestamp

    avg_over_active = (vp_start + vp_end) // 2
    if end_timestamp <= token.end or total_duration == active_duration:
        return avg_over_active

    return (avg_over_active * active_duration) // total_duration


class VotingPowerService(BaseService):
    """Lock ledger lookups, tier mapping and per-user voting power state."""

    async def update_user_token_list(self, user_id: str, token_id: int, timestamp: int,
                                     action: str) -> None:
        user_id = normalize_address(user_id)
        token_list = await self.store.user_token_list.get(user_id)
        token_ids = list(token_list.token_ids) if token_list else []

        if action == 'add':
            if token_id not in token_ids:
                token_ids.append(token_id)
        else:
            token_ids = [existing for existing in token_ids if existing != token_id]

        self.store.user_token_list.set(UserTokenList(id=user_id, token_ids=token_ids, updated_at=timestamp))

    async def _owned_tokens(self, user_id: str):
        token_list = await self.store.user_token_list.get(normalize_address(user_id))
        if not token_list:
            return []
        tokens = []
        for token_id in token_list.token_ids:
            token = await self.store.dust_lock_token.get(str(token_id))
            if token:
                tokens.append((token_id, token))
        return tokens

    async def calculate_current_voting_power(self, user_id: str, timestamp: int) -> int:
        total = 0
        for _, token in await self._owned_tokens(user_id):
            total += calculate_token_voting_power(token, timestamp)
        return total

    async def calculate_average_voting_power(self, user_id: str, start_timestamp: int,
                                             end_timestamp: int) -> int:
        """Sum of per-lock averages over [start, end]."""
        if end_timestamp <= start_timestamp:
            return await self.calculate_current_voting_power(user_id, end_timestamp)

        total = 0
        for _, token in await self._owned_tokens(user_id):
            total += calculate_average_token_voting_power(token, start_timestamp, end_timestamp)
        return total

    async def calculate_vp_multiplier(self, voting_power: int) -> int:
        """Highest qualifying active tier's multiplier, scanning tiers in order."""
        multiplier = NEUTRAL
        for i in range(LeaderboardConstants.MAX_VP_TIERS):
            tier = await self.store.voting_power_tier.get(str(i))
            if not tier or not tier.is_active:
                continue
            if voting_power >= tier.min_voting_power:
                multiplier = tier.multiplier_bps
            else:
                break
        return min(multiplier, LeaderboardConstants.MAX_VP_MULTIPLIER)

    async def find_vp_tier_index(self, voting_power: int) -> int:
        tier_index = 0
        for i in range(LeaderboardConstants.MAX_VP_TIERS):
            tier = await self.store.voting_power_tier.get(str(i))
            if not tier or not tier.is_active:
                continue
            if voting_power >= tier.min_voting_power:
                tier_index = tier.tier_index
            else:
                break
        return tier_index

    def create_vp_history_entry(self, user_id: str, token_id: int, voting_power: int, timestamp: int,
                                tx_hash: str, event_type: str, log_index: int) -> None:
        user_id = normalize_address(user_id)
        self.store.user_voting_power_history.set(UserVotingPowerHistory(
            id=f"{user_id}:{timestamp}:{tx_hash}:{log_index}",
            user_id=user_id,
            token_id=token_id,
            voting_power=voting_power,
            timestamp=timestamp,
            tx_hash=tx_hash,
            event_type=event_type,
        ))

    async def update_user_voting_power(self, user_id: str, token_id: int, new_voting_power: int,
                                       timestamp: int, tx_hash: str, event_type: str,
                                       log_index: int) -> None:
        """Set a user's voting power directly and record the change."""
        state = await self.get_or_create_user_state(user_id, timestamp)
        old_vp = state.voting_power

        state.voting_power = new_voting_power
        state.vp_multiplier = await self.calculate_vp_multiplier(new_voting_power)
        state.vp_tier_index = await self.find_vp_tier_index(new_voting_power)
        state.combined_multiplier = combine_multipliers(state.nft_multiplier, state.vp_multiplier)
        state.last_update = timestamp
        self.store.user_leaderboard_state.set(state)

        if old_vp != new_voting_power:
            self.create_multiplier_snapshot(state, timestamp, tx_hash, event_type, log_index)

        self.create_vp_history_entry(state.id, token_id, new_voting_power, timestamp, tx_hash,
                                     event_type, log_index)

    async def recalculate_user_total_vp(self, user_id: str, timestamp: int, tx_hash: str,
                                        event_type: str, log_index: int,
                                        block_number: Optional[int] = None) -> None:
        """Recompute a user's voting power from every lock they own."""
        if block_number is not None and block_number < LeaderboardConstants.DUST_LOCK_START_BLOCK:
            return

        user_id = normalize_address(user_id)
        token_list = await self.store.user_token_list.get(user_id)
        if not token_list or not token_list.token_ids:
            state = await self.get_or_create_user_state(user_id, timestamp)
            state.voting_power = 0
            state.vp_multiplier = NEUTRAL
            state.vp_tier_index = 0
            state.combined_multiplier = state.nft_multiplier
            state.last_update = timestamp
            self.store.user_leaderboard_state.set(state)
            return

        total_vp = 0
        max_vp = 0
        max_token_id = 0
        for token_id, token in await self._owned_tokens(user_id):
            vp = calculate_token_voting_power(token, timestamp)
            total_vp += vp
            if vp > max_vp:
                max_vp = vp
                max_token_id = token_id

        state = await self.get_or_create_user_state(user_id, timestamp)
        old_vp = state.voting_power

        state.voting_power = total_vp
        state.vp_multiplier = await self.calculate_vp_multiplier(total_vp)
        state.vp_tier_index = await self.find_vp_tier_index(total_vp)
        state.combined_multiplier = combine_multipliers(state.nft_multiplier, state.vp_multiplier)
        state.last_update = timestamp
        self.store.user_leaderboard_state.set(state)

        # Compare against the total so multi-lock users don't produce spurious snapshots
        if old_vp != total_vp:
            self.create_multiplier_snapshot(state, timestamp, tx_hash, event_type, log_index)

        if max_token_id > 0:
            self.create_vp_history_entry(user_id, max_token_id, max_vp, timestamp, tx_hash,
                                         event_type, log_index)
