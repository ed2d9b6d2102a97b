"""
Tests for scheduled epoch transitions and protocol transaction counting.
"""

from unittest.mock import AsyncMock

import pytest

from conftest import BLOCK, T0
from points_engine.services.epochs import EpochService


class TestScheduledTransitions:

    @pytest.mark.asyncio
    async def test_due_start_activates_immediately(self, engine, store):
        await engine.epochs.schedule_epoch_start(1, T0, T0, BLOCK)

        state = await store.get_leaderboard_state()
        epoch = await store.leaderboard_epoch.get('1')
        assert state.current_epoch_number == 1
        assert state.is_active
        assert epoch.is_active
        assert epoch.start_time == T0
        assert epoch.start_block == BLOCK

    @pytest.mark.asyncio
    async def test_future_start_waits_for_a_transaction(self, engine, store):
        await engine.epochs.schedule_epoch_start(1, T0 + 100, T0, BLOCK)
        assert await store.get_leaderboard_state() is None

        await engine.epochs.record_protocol_transaction('0xa', T0 + 50, BLOCK + 1)
        assert await store.get_leaderboard_state() is None

        await engine.epochs.record_protocol_transaction('0xb', T0 + 150, BLOCK + 2)
        epoch = await store.leaderboard_epoch.get('1')
        assert epoch.is_active
        assert epoch.start_time == T0 + 100
        assert epoch.start_block == BLOCK + 2

    @pytest.mark.asyncio
    async def test_scheduled_end_closes_epoch(self, engine, store):
        await engine.epochs.schedule_epoch_start(1, T0, T0, BLOCK)
        await engine.epochs.schedule_epoch_end(1, T0 + 500, T0 + 10, BLOCK + 1)
        await engine.epochs.record_protocol_transaction('0xa', T0 + 600, BLOCK + 2)

        state = await store.get_leaderboard_state()
        epoch = await store.leaderboard_epoch.get('1')
        assert state.current_epoch_number == 1
        assert not state.is_active
        assert not epoch.is_active
        assert epoch.end_time == T0 + 500
        assert epoch.duration == 500

    @pytest.mark.asyncio
    async def test_next_start_closes_previous_epoch(self, engine, store):
        await engine.epochs.schedule_epoch_start(1, T0, T0, BLOCK)
        await engine.epochs.schedule_epoch_start(2, T0 + 300, T0 + 400, BLOCK + 1)

        state = await store.get_leaderboard_state()
        first = await store.leaderboard_epoch.get('1')
        second = await store.leaderboard_epoch.get('2')
        assert state.current_epoch_number == 2
        assert state.is_active
        assert not first.is_active
        assert first.end_time == T0 + 300
        assert second.is_active
        assert second.start_time == T0 + 300

    @pytest.mark.asyncio
    async def test_end_time_is_write_once(self, engine, store):
        await engine.epochs.schedule_epoch_start(1, T0, T0, BLOCK)
        await engine.epochs.schedule_epoch_end(1, T0 + 100, T0 + 200, BLOCK + 1)
        await engine.epochs.schedule_epoch_end(1, T0 + 150, T0 + 300, BLOCK + 2)

        epoch = await store.leaderboard_epoch.get('1')
        assert epoch.end_time == T0 + 100
        assert epoch.scheduled_end_time == T0 + 150

    @pytest.mark.asyncio
    async def test_start_is_write_once(self, engine, store):
        await engine.epochs.schedule_epoch_start(1, T0, T0, BLOCK)
        await engine.epochs.schedule_epoch_start(1, T0 + 50, T0 + 100, BLOCK + 5)

        epoch = await store.leaderboard_epoch.get('1')
        assert epoch.start_time == T0
        assert epoch.start_block == BLOCK
        assert epoch.scheduled_start_time == T0 + 50
        assert epoch.is_active

    @pytest.mark.asyncio
    async def test_early_end_block_is_replaced_on_open(self, engine, store):
        await engine.epochs.schedule_epoch_start(1, T0, T0, BLOCK)
        # Epoch 2's end is announced before epoch 2 exists as a running epoch
        await engine.epochs.schedule_epoch_end(2, T0 + 50, T0 + 100, BLOCK + 3)
        assert (await store.leaderboard_epoch.get('2')).end_block == BLOCK + 3

        await engine.epochs.schedule_epoch_start(2, T0 + 200, T0 + 300, BLOCK + 4)

        first = await store.leaderboard_epoch.get('1')
        second = await store.leaderboard_epoch.get('2')
        assert first.end_time == T0 + 200
        assert first.end_block == BLOCK + 4
        assert second.start_time == T0 + 200
        # Opened and immediately closed by its overdue schedule in the same pass
        assert not second.is_active
        assert second.end_block == BLOCK + 4
        assert second.end_time == T0 + 50
        assert second.duration is None

    @pytest.mark.asyncio
    async def test_catch_up_is_bounded_per_call(self, engine, store):
        for n in range(1, 9):
            await engine.epochs.schedule_epoch_end(n, T0 + 10 * n + 5, T0, BLOCK)
            await engine.epochs.schedule_epoch_start(n, T0 + 10 * n, T0, BLOCK)

        await engine.epochs.apply_scheduled_epoch_transitions(T0 + 1000, BLOCK + 1)

        state = await store.get_leaderboard_state()
        assert state.current_epoch_number == 3
        assert state.is_active

    @pytest.mark.asyncio
    async def test_closing_settles_lp_positions(self, store):
        lp_settlement = AsyncMock()
        epochs = EpochService(store, lp_settlement)

        await epochs.schedule_epoch_start(1, T0, T0, BLOCK)
        await epochs.schedule_epoch_end(1, T0 + 100, T0 + 200, BLOCK + 1)

        lp_settlement.settle_all_lp_pool_positions.assert_awaited_once_with(T0 + 100)


class TestTransactionCounting:

    @pytest.mark.asyncio
    @pytest.mark.parametrize('hashes, expected', [
        (['0xa', '0xa', '0xb'], 2),
        (['0xa', '0xb', '0xa'], 3),
    ])
    async def test_consecutive_duplicates_count_once(self, engine, store, hashes, expected):
        for tx_hash in hashes:
            await engine.epochs.record_protocol_transaction(tx_hash, T0, BLOCK)

        stats = await store.protocol_stats.get('1')
        assert stats.total_transactions == expected
