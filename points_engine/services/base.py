"""
Base service class for the points engine.

Every service receives the entity store explicitly and shares the
get-or-create helpers for the per-user ledgers defined here.
"""

import logging
from typing import Optional, Tuple

from points_engine.constants import TimeConstants, normalize_address
from points_engine.data_models.entities import (
    LeaderboardEpoch, LeaderboardState, UserDailyActivity, UserEpochStats,
    UserLeaderboardState, UserMultiplierSnapshot,
)
from points_engine.database.store import EntityStore

logger = logging.getLogger(__name__)


def get_current_day(timestamp: int) -> int:
    return timestamp // TimeConstants.SECONDS_PER_DAY


class BaseService:
    """Base class for all services with explicit store access."""

    def __init__(self, store: EntityStore):
        """
        Initialize base service with the entity store.

        Args:
            store: Keyed entity store shared by every component
        """
        self.store = store

    async def get_epoch(self, epoch_number: int) -> Optional[LeaderboardEpoch]:
        return await self.store.leaderboard_epoch.get(str(epoch_number))

    async def get_current_epoch(self) -> Tuple[Optional[LeaderboardState], Optional[LeaderboardEpoch]]:
        """Global state and the epoch it points at (either may be None)."""
        state = await self.store.get_leaderboard_state()
        if not state or state.current_epoch_number == 0:
            return state, None
        return state, await self.get_epoch(state.current_epoch_number)

    async def get_or_create_user_state(self, user_id: str, timestamp: int) -> UserLeaderboardState:
        user_id = normalize_address(user_id)
        state = await self.store.user_leaderboard_state.get(user_id)
        if not state:
            state = UserLeaderboardState(id=user_id, last_update=timestamp)
            self.store.user_leaderboard_state.set(state)
        return state

    async def get_or_create_epoch_stats(self, user_id: str, epoch_number: int,
                                        timestamp: int) -> UserEpochStats:
        user_id = normalize_address(user_id)
        stats_id = f"{user_id}:{epoch_number}"
        stats = await self.store.user_epoch_stats.get(stats_id)
        if not stats:
            stats = UserEpochStats(
                id=stats_id,
                user_id=user_id,
                epoch_number=epoch_number,
                first_seen_at=timestamp,
            )
            self.store.user_epoch_stats.set(stats)
        return stats

    async def get_or_create_daily_activity(self, user_id: str, day: int,
                                           timestamp: int) -> UserDailyActivity:
        """Daily activity row, scoped to the active epoch (0 while none is active)."""
        user_id = normalize_address(user_id)
        state = await self.store.get_leaderboard_state()
        epoch_number = state.current_epoch_number if state and state.is_active else 0
        activity_id = f"{user_id}:{epoch_number}:{day}"
        activity = await self.store.user_daily_activity.get(activity_id)
        if not activity:
            activity = UserDailyActivity(id=activity_id, user_id=user_id, day=day, updated_at=timestamp)
            self.store.user_daily_activity.set(activity)
        return activity

    def create_multiplier_snapshot(self, state: UserLeaderboardState, timestamp: int, tx_hash: str,
                                   change_reason: str, log_index: Optional[int] = None) -> None:
        """Append an audit record of the user's multiplier inputs."""
        snapshot_id = f"{state.id}:{timestamp}:{tx_hash}:{log_index or 0}"
        self.store.user_multiplier_snapshot.set(UserMultiplierSnapshot(
            id=snapshot_id,
            user_id=state.id,
            timestamp=timestamp,
            nft_count=state.nft_count,
            nft_multiplier=state.nft_multiplier,
            voting_power=state.voting_power,
            vp_multiplier=state.vp_multiplier,
            combined_multiplier=state.combined_multiplier,
            change_reason=change_reason,
            tx_hash=tx_hash,
        ))
