"""
Epoch lifecycle: scheduled start/end transitions and protocol transaction counting.

Epochs move NONE -> ACTIVE(n) -> ENDED(n) -> ACTIVE(n+1). Transitions are
driven purely by admin-set scheduled times, re-evaluated on every
transaction-bearing event. Observed start/end blocks are write-once;
observed start/end times only ever move earlier.
"""

import logging
from typing import Optional

from points_engine.constants import LeaderboardConstants
from points_engine.data_models.entities import LeaderboardEpoch, LeaderboardState, ProtocolStats
from points_engine.services.base import BaseService
from points_engine.services.interfaces import LPSettlement

logger = logging.getLogger(__name__)


def _first_positive(existing: Optional[int], fallback: int) -> int:
    return existing if existing and existing > 0 else fallback


def _earliest(existing: Optional[int], scheduled: int) -> int:
    return min(existing, scheduled) if existing and existing > 0 else scheduled


class EpochService(BaseService):
    """Applies scheduled epoch transitions and records epoch schedule events."""

    def __init__(self, store, lp_settlement: LPSettlement):
        super().__init__(store)
        self.lp_settlement = lp_settlement

    async def _close_epoch(self, epoch: LeaderboardEpoch, end_time: int, block_number: int,
                           timestamp: int) -> int:
        epoch.end_time = _earliest(epoch.end_time, end_time)
        if epoch.start_time > 0 and epoch.end_time >= epoch.start_time:
            epoch.duration = epoch.end_time - epoch.start_time
        else:
            epoch.duration = None
        epoch.end_block = _first_positive(epoch.end_block, block_number)
        epoch.is_active = False
        epoch.updated_at = timestamp
        self.store.leaderboard_epoch.set(epoch)
        logger.info(f"Epoch {epoch.epoch_number} closed at {epoch.end_time}")

        # Flush LP accrual up to the boundary
        await self.lp_settlement.settle_all_lp_pool_positions(epoch.end_time)
        return epoch.end_time

    def _open_epoch(self, epoch: LeaderboardEpoch, start_time: int, block_number: int,
                    timestamp: int) -> None:
        epoch.start_time = _earliest(epoch.start_time, start_time)
        epoch.start_block = _first_positive(epoch.start_block, block_number)
        # End fields may have been stamped by an early EpochEnd
        epoch.end_time = 0
        epoch.end_block = 0
        epoch.duration = None
        epoch.is_active = True
        epoch.updated_at = timestamp
        self.store.leaderboard_epoch.set(epoch)
        logger.info(f"Epoch {epoch.epoch_number} started at {epoch.start_time}")

    async def apply_scheduled_epoch_transitions(self, timestamp: int, block_number: int = 0) -> bool:
        """
        Start or end epochs whose scheduled time has passed.

        Bounded to MAX_SCHEDULED_TRANSITIONS steps per call. Returns True if
        the global state changed.
        """
        state = await self.store.get_leaderboard_state()
        current_epoch = state.current_epoch_number if state else 0
        is_active = bool(state and state.is_active and current_epoch > 0)
        updated = False

        for _ in range(LeaderboardConstants.MAX_SCHEDULED_TRANSITIONS):
            if is_active:
                epoch = await self.get_epoch(current_epoch)
                if not epoch:
                    break

                if 0 < epoch.scheduled_end_time <= timestamp:
                    await self._close_epoch(epoch, epoch.scheduled_end_time, block_number, timestamp)
                    is_active = False
                    updated = True
                    continue

                next_epoch = await self.get_epoch(current_epoch + 1)
                if next_epoch and 0 < next_epoch.scheduled_start_time <= timestamp:
                    # Next epoch started before this one was ever closed
                    await self._close_epoch(epoch, next_epoch.scheduled_start_time, block_number, timestamp)
                    self._open_epoch(next_epoch, next_epoch.scheduled_start_time, block_number, timestamp)
                    current_epoch = next_epoch.epoch_number
                    is_active = True
                    updated = True
                    continue
                break

            next_number = current_epoch + 1 if current_epoch > 0 else 1
            next_epoch = await self.get_epoch(next_number)
            if not next_epoch:
                break
            if 0 < next_epoch.scheduled_start_time <= timestamp:
                self._open_epoch(next_epoch, next_epoch.scheduled_start_time, block_number, timestamp)
                current_epoch = next_number
                is_active = True
                updated = True
                continue
            break

        if updated:
            if not state:
                state = LeaderboardState()
            state.current_epoch_number = current_epoch
            state.is_active = is_active
            self.store.save_leaderboard_state(state)
        return updated

    async def record_protocol_transaction(self, tx_hash: str, timestamp: int, block_number: int = 0) -> None:
        """Run pending epoch transitions, then count the transaction once."""
        await self.apply_scheduled_epoch_transitions(timestamp, block_number)

        stats = await self.store.protocol_stats.get('1')
        if not stats:
            stats = ProtocolStats(id='1', last_tx_timestamp=timestamp, updated_at=timestamp)
        if stats.last_tx_hash == tx_hash:
            self.store.protocol_stats.set(stats)
            return

        stats.total_transactions += 1
        stats.last_tx_hash = tx_hash
        stats.last_tx_timestamp = timestamp
        stats.updated_at = timestamp
        self.store.protocol_stats.set(stats)

    # ============================================
    # Schedule events
    # ============================================

    async def schedule_epoch_start(self, epoch_number: int, scheduled_start_time: int, timestamp: int,
                                   block_number: int) -> LeaderboardEpoch:
        """Record an epoch's scheduled start and apply any due transitions."""
        epoch = await self.get_epoch(epoch_number)
        if not epoch:
            epoch = LeaderboardEpoch(id=str(epoch_number), epoch_number=epoch_number, created_at=timestamp)

        is_due = 0 < scheduled_start_time <= timestamp
        if epoch.start_block <= 0 and is_due:
            epoch.start_block = block_number
        epoch.scheduled_start_time = scheduled_start_time
        epoch.updated_at = timestamp
        self.store.leaderboard_epoch.set(epoch)

        await self.apply_scheduled_epoch_transitions(timestamp, block_number)
        return epoch

    async def schedule_epoch_end(self, epoch_number: int, scheduled_end_time: int, timestamp: int,
                                 block_number: int) -> LeaderboardEpoch:
        """Record an epoch's scheduled end and apply any due transitions."""
        epoch = await self.get_epoch(epoch_number)
        if not epoch:
            epoch = LeaderboardEpoch(id=str(epoch_number), epoch_number=epoch_number, created_at=timestamp)

        is_due = 0 < scheduled_end_time <= timestamp
        if epoch.end_block <= 0 and is_due:
            epoch.end_block = block_number
        epoch.scheduled_end_time = scheduled_end_time
        epoch.updated_at = timestamp
        self.store.leaderboard_epoch.set(epoch)

        await self.apply_scheduled_epoch_transitions(timestamp, block_number)
        return epoch
