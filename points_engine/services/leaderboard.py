"""
Leaderboard ranking maintenance: TopK lists, score histograms and totals.

Each scope (an epoch, or epoch 0 for all-time lifetime totals) keeps:
- a UserIndex per user with their points and histogram bucket
- ScoreBucket counts for the histogram
- a LeaderboardTotals row counting users with positive points
- a TopK list of entry ids, sorted by points desc then user id asc

The current epoch is mirrored into the unprefixed "global" records that the
query layer reads.
"""

import logging
import math
from typing import List, Optional, Tuple

from points_engine.config import Config
from points_engine.constants import LeaderboardConstants, normalize_address
from points_engine.data_models.entities import (
    LeaderboardBlacklist, LeaderboardTotals, ScoreBucket, TopK, TopKEntry, UserIndex,
)
from points_engine.services.base import BaseService

logger = logging.getLogger(__name__)

MAX_BUCKETS = LeaderboardConstants.MAX_BUCKETS
ALL_TIME_EPOCH = LeaderboardConstants.ALL_TIME_EPOCH
GLOBAL_ID = LeaderboardConstants.GLOBAL_SCOPE
MAX_COUNT = 2147483647


def normalize_points(points: float) -> float:
    if not math.isfinite(points) or points < 0:
        return 0.0
    return points


def sort_entries(entries: List[TopKEntry]) -> List[TopKEntry]:
    return sorted(entries, key=lambda entry: (-entry.points, entry.user_id))


def bucket_index_for(points: float) -> int:
    """
    Histogram bucket for a points value.

    Linear head [0, 0.1), [0.1, 0.5), [0.5, 1), then doubling buckets
    [1, 2), [2, 4), ... up to MAX_BUCKETS - 1.
    """
    if points < 0.1:
        return 0
    if points < 0.5:
        return 1
    if points < 1:
        return 2

    index = 3
    bound = 1
    while index < MAX_BUCKETS - 1 and points >= bound * 2:
        bound *= 2
        index += 1
    return index


def bucket_bounds(index: int) -> Tuple[float, float]:
    if index == 0:
        return 0, 0.1
    if index == 1:
        return 0.1, 0.5
    if index == 2:
        return 0.5, 1
    lower = 2 ** (index - 3)
    return lower, lower * 2


class LeaderboardService(BaseService):
    """Keeps ranking structures consistent with users' point totals."""

    def __init__(self, store, top_k_size: Optional[int] = None):
        super().__init__(store)
        self.top_k_size = min(top_k_size or Config.TOP_K_SIZE, LeaderboardConstants.MAX_TOP_K)

    async def is_user_blacklisted(self, user_id: str) -> bool:
        record = await self.store.leaderboard_blacklist.get(normalize_address(user_id))
        return bool(record and record.is_blacklisted)

    # ============================================
    # Public API
    # ============================================

    async def update(self, user_id: str, points: float, timestamp: int) -> None:
        """Rank a user's current-epoch points."""
        user_id = normalize_address(user_id)
        if await self.is_user_blacklisted(user_id):
            return
        state = await self.store.get_leaderboard_state()
        if not state or state.current_epoch_number == 0:
            return
        if not await self.get_epoch(state.current_epoch_number):
            return

        await self._update_for_epoch(user_id, points, timestamp, state.current_epoch_number,
                                     sync_global=True, update_user_state=True)

    async def update_all_time(self, user_id: str, lifetime_points: float, timestamp: int) -> None:
        """Rank a user's lifetime points in the all-time scope."""
        user_id = normalize_address(user_id)
        if await self.is_user_blacklisted(user_id):
            return
        await self._update_for_epoch(user_id, lifetime_points, timestamp, ALL_TIME_EPOCH,
                                     sync_global=False, update_user_state=False)

    async def remove_user(self, user_id: str, timestamp: int) -> None:
        """Purge a user from every ranking structure they occupy."""
        user_id = normalize_address(user_id)
        state = await self.store.get_leaderboard_state()
        if state and state.current_epoch_number > 0:
            await self._remove_for_epoch(user_id, state.current_epoch_number, timestamp, sync_global=True)
        await self._remove_for_epoch(user_id, ALL_TIME_EPOCH, timestamp, sync_global=False)
        logger.info(f"Removed {user_id} from leaderboards")

    # ============================================
    # Scoped structures
    # ============================================

    async def _get_or_init_top_k(self, epoch_number: int, top_k_id: Optional[str] = None) -> TopK:
        top_k_id = top_k_id or f"epoch:{epoch_number}"
        top_k = await self.store.top_k.get(top_k_id)
        if not top_k:
            top_k = TopK(id=top_k_id, epoch_number=epoch_number, k=self.top_k_size)
            self.store.top_k.set(top_k)
        return top_k

    async def _get_or_init_totals(self, epoch_number: int) -> LeaderboardTotals:
        totals_id = f"epoch:{epoch_number}"
        totals = await self.store.leaderboard_totals.get(totals_id)
        if not totals:
            totals = LeaderboardTotals(id=totals_id, epoch_number=epoch_number)
            self.store.leaderboard_totals.set(totals)
        return totals

    async def _get_or_init_bucket(self, epoch_number: int, index: int, timestamp: int) -> ScoreBucket:
        bucket_id = f"epoch:{epoch_number}:b:{index}"
        bucket = await self.store.score_bucket.get(bucket_id)
        if not bucket:
            lower, upper = bucket_bounds(index)
            bucket = ScoreBucket(id=bucket_id, epoch_number=epoch_number, bucket_index=index,
                                 lower=lower, upper=upper, updated_at=timestamp)
            self.store.score_bucket.set(bucket)
        return bucket

    async def _sync_global_bucket(self, epoch_number: int, bucket: ScoreBucket) -> None:
        state = await self.store.get_leaderboard_state()
        if not state or state.current_epoch_number != epoch_number:
            return

        global_id = f"b:{bucket.bucket_index}"
        global_bucket = await self.store.score_bucket.get(global_id)
        if not global_bucket:
            global_bucket = ScoreBucket(id=global_id, epoch_number=epoch_number,
                                        bucket_index=bucket.bucket_index, lower=bucket.lower,
                                        upper=bucket.upper, updated_at=bucket.updated_at)
        global_bucket.count = bucket.count
        self.store.score_bucket.set(global_bucket)

    async def _adjust_bucket(self, epoch_number: int, index: int, delta: int, timestamp: int,
                             sync_global: bool) -> None:
        bucket = await self._get_or_init_bucket(epoch_number, index, timestamp)
        if delta < 0:
            bucket.count = max(bucket.count + delta, 0)
        else:
            bucket.count = min(bucket.count + delta, MAX_COUNT)
        bucket.updated_at = timestamp
        self.store.score_bucket.set(bucket)
        if sync_global:
            await self._sync_global_bucket(epoch_number, bucket)

    async def _adjust_totals(self, epoch_number: int, delta: int, timestamp: int) -> LeaderboardTotals:
        totals = await self._get_or_init_totals(epoch_number)
        if delta < 0:
            totals.total_users = max(totals.total_users + delta, 0)
        else:
            totals.total_users = min(totals.total_users + delta, MAX_COUNT)
        totals.updated_at = timestamp
        self.store.leaderboard_totals.set(totals)
        return totals

    def _write_global_totals(self, epoch_number: int, total_users: int, timestamp: int) -> None:
        self.store.leaderboard_totals.set(LeaderboardTotals(
            id=GLOBAL_ID, epoch_number=epoch_number, total_users=total_users, updated_at=timestamp,
        ))

    # ============================================
    # TopK
    # ============================================

    async def _load_entries(self, top_k: TopK) -> List[TopKEntry]:
        entries = []
        for entry_id in top_k.entries:
            entry = await self.store.top_k_entry.get(entry_id)
            if entry:
                entry.points = normalize_points(entry.points)
                entries.append(entry)
        return entries

    def _write_ranked(self, top_k: TopK, ranked: List[TopKEntry], timestamp: int) -> None:
        next_ids = []
        for rank, entry in enumerate(ranked, start=1):
            entry.rank = rank
            entry.updated_at = timestamp
            self.store.top_k_entry.set(entry)
            next_ids.append(entry.id)

        keep = set(next_ids)
        for entry_id in top_k.entries:
            if entry_id not in keep:
                self.store.top_k_entry.delete_unsafe(entry_id)

        top_k.entries = next_ids
        top_k.updated_at = timestamp
        self.store.top_k.set(top_k)

    async def _upsert_top_k(self, epoch_number: int, user_id: str, points: float, timestamp: int,
                            sync_global: bool) -> None:
        top_k = await self._get_or_init_top_k(epoch_number)
        by_user = {entry.user_id: entry for entry in await self._load_entries(top_k)}
        by_user[user_id] = TopKEntry(
            id=f"epoch:{epoch_number}:{user_id}",
            epoch_number=epoch_number,
            user_id=user_id,
            points=normalize_points(points),
            rank=0,
        )

        top_entries = sort_entries(list(by_user.values()))[:top_k.k or self.top_k_size]
        self._write_ranked(top_k, top_entries, timestamp)

        if sync_global:
            global_top_k = await self._get_or_init_top_k(epoch_number, GLOBAL_ID)
            global_top_k.epoch_number = epoch_number
            mirrored = [
                TopKEntry(id=f"global:{entry.user_id}", epoch_number=epoch_number,
                          user_id=entry.user_id, points=entry.points, rank=entry.rank)
                for entry in top_entries
            ]
            self._write_ranked(global_top_k, mirrored, timestamp)

    async def _remove_from_top_k(self, epoch_number: int, user_id: str, timestamp: int,
                                 top_k_id: Optional[str] = None) -> None:
        top_k = await self.store.top_k.get(top_k_id or f"epoch:{epoch_number}")
        if not top_k or not top_k.entries:
            return

        entries = await self._load_entries(top_k)
        remaining = [entry for entry in entries if entry.user_id != user_id]
        if len(remaining) == len(entries):
            return
        self._write_ranked(top_k, sort_entries(remaining), timestamp)

    # ============================================
    # Per-scope update and removal
    # ============================================

    async def _update_for_epoch(self, user_id: str, points: float, timestamp: int, epoch_number: int,
                                sync_global: bool, update_user_state: bool) -> None:
        points = normalize_points(points)

        user_index_id = f"{user_id}:{epoch_number}"
        user_index = await self.store.user_index.get(user_index_id)
        if not user_index:
            user_index = UserIndex(id=user_index_id, epoch_number=epoch_number, user_id=user_id,
                                   updated_at=timestamp)
        old_bucket = user_index.bucket_index
        had_points = old_bucket >= 0

        if points == 0:
            if had_points:
                await self._adjust_bucket(epoch_number, old_bucket, -1, timestamp, sync_global)
            user_index.points = 0.0
            user_index.bucket_index = -1
            user_index.updated_at = timestamp
            self.store.user_index.set(user_index)

            if update_user_state:
                await self._touch_user_state(user_id, timestamp)
            if had_points:
                await self._adjust_totals(epoch_number, -1, timestamp)

            await self._upsert_top_k(epoch_number, user_id, points, timestamp, sync_global)
            return

        new_bucket = bucket_index_for(points)
        if had_points and old_bucket == new_bucket:
            user_index.points = points
            user_index.updated_at = timestamp
            self.store.user_index.set(user_index)
            await self._upsert_top_k(epoch_number, user_id, points, timestamp, sync_global)
            return

        if had_points:
            await self._adjust_bucket(epoch_number, old_bucket, -1, timestamp, sync_global)
        await self._adjust_bucket(epoch_number, new_bucket, 1, timestamp, sync_global)

        user_index.points = points
        user_index.bucket_index = new_bucket
        user_index.updated_at = timestamp
        self.store.user_index.set(user_index)

        if update_user_state:
            await self._touch_user_state(user_id, timestamp)

        if not had_points:
            await self._adjust_totals(epoch_number, 1, timestamp)

        await self._upsert_top_k(epoch_number, user_id, points, timestamp, sync_global)

        if not sync_global:
            return

        self.store.user_index.set(UserIndex(
            id=user_id, epoch_number=epoch_number, user_id=user_id, points=points,
            bucket_index=new_bucket, updated_at=timestamp,
        ))
        epoch_totals = await self.store.leaderboard_totals.get(f"epoch:{epoch_number}")
        if epoch_totals:
            self._write_global_totals(epoch_number, epoch_totals.total_users, timestamp)

    async def _remove_for_epoch(self, user_id: str, epoch_number: int, timestamp: int,
                                sync_global: bool) -> None:
        user_index_id = f"{user_id}:{epoch_number}"
        user_index = await self.store.user_index.get(user_index_id)
        if user_index:
            if user_index.bucket_index >= 0:
                bucket = await self.store.score_bucket.get(f"epoch:{epoch_number}:b:{user_index.bucket_index}")
                if bucket:
                    bucket.count = max(bucket.count - 1, 0)
                    bucket.updated_at = timestamp
                    self.store.score_bucket.set(bucket)
                    if sync_global:
                        await self._sync_global_bucket(epoch_number, bucket)

            totals = await self.store.leaderboard_totals.get(f"epoch:{epoch_number}")
            if totals:
                # Zero-point users are indexed but never counted
                if user_index.bucket_index >= 0:
                    totals.total_users = max(totals.total_users - 1, 0)
                totals.updated_at = timestamp
                self.store.leaderboard_totals.set(totals)
                if sync_global:
                    self._write_global_totals(epoch_number, totals.total_users, timestamp)

            self.store.user_index.delete_unsafe(user_index_id)

        if sync_global and user_id in self.store.user_index:
            self.store.user_index.delete_unsafe(user_id)

        await self._remove_from_top_k(epoch_number, user_id, timestamp)
        if sync_global:
            await self._remove_from_top_k(epoch_number, user_id, timestamp, GLOBAL_ID)

    async def _touch_user_state(self, user_id: str, timestamp: int) -> None:
        state = await self.get_or_create_user_state(user_id, timestamp)
        state.last_update = timestamp
        self.store.user_leaderboard_state.set(state)

    async def get_top_k(self, epoch_number: int) -> List[TopKEntry]:
        """Ranked entries for an epoch scope."""
        top_k = await self.store.top_k.get(f"epoch:{epoch_number}")
        if not top_k:
            return []
        return await self._load_entries(top_k)

    async def set_blacklisted(self, user_id: str, is_blacklisted: bool, timestamp: int) -> None:
        """
        Flag or unflag a user.

        Blacklisting purges every ranking entry; point ledgers are kept.
        Unflagging does not re-rank the user until their next settlement.
        """
        user_id = normalize_address(user_id)
        self.store.leaderboard_blacklist.set(LeaderboardBlacklist(
            id=user_id, is_blacklisted=is_blacklisted, updated_at=timestamp,
        ))
        if is_blacklisted:
            await self.remove_user(user_id, timestamp)
