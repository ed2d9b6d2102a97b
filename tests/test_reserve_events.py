"""
End-to-end lending pool flows driven through the event processor.
"""

import pytest

from conftest import BLOCK, DAY, OTHER_USER, T0, USER
from points_engine.constants import AddressConstants, MathConstants
from points_engine.services.reserve_accrual import user_reserve_id

RAY = MathConstants.RAY
E18 = 10 ** 18
USDC = AddressConstants.USDC
GATEWAY = '0x800409dbd7157813bb76501c30e04596cc478f25'
TREASURY = '0xb2289e329d2f85f1ed31adbb30ea345278f21bcf'

PROVIDER = '0x00000000000000000000000000000000000000a1'
POOL = '0x00000000000000000000000000000000000000a2'
CONFIGURATOR = '0x00000000000000000000000000000000000000a3'
A_TOKEN = '0x00000000000000000000000000000000000000a4'
DEBT_TOKEN = '0x00000000000000000000000000000000000000a5'

RESERVE_ID = f"{USDC}-{PROVIDER}"

WETH = AddressConstants.WETH
WETH_A_TOKEN = '0x00000000000000000000000000000000000000b4'
WETH_DEBT_TOKEN = '0x00000000000000000000000000000000000000b5'
WETH_RESERVE_ID = f"{WETH}-{PROVIDER}"


async def setup_reserve(processor, make_event):
    """Start epoch 1 and list USDC on a pool behind PROVIDER."""
    await processor.process_many([
        make_event('EpochManager', 'EpochStart', {'epochNumber': 1, 'startTime': T0}),
        make_event('PoolAddressesProvider', 'ProxyCreated', {'proxyAddress': POOL}, src=PROVIDER),
        make_event('PoolAddressesProvider', 'ProxyCreated', {'proxyAddress': CONFIGURATOR}, src=PROVIDER),
        make_event('PoolConfigurator', 'ReserveInitialized', {
            'asset': USDC, 'aToken': A_TOKEN, 'variableDebtToken': DEBT_TOKEN,
        }, src=CONFIGURATOR),
    ])


def supply(make_event, user, amount, timestamp=T0, a_token=A_TOKEN, **kwargs):
    return make_event('AToken', 'Mint', {
        'onBehalfOf': user, 'value': amount, 'balanceIncrease': 0, 'index': RAY,
    }, timestamp=timestamp, src=a_token, **kwargs)


def withdraw(make_event, user, amount, timestamp=T0, **kwargs):
    return make_event('AToken', 'Burn', {
        'from': user, 'value': amount, 'balanceIncrease': 0, 'index': RAY,
    }, timestamp=timestamp, src=A_TOKEN, **kwargs)


def settle(make_event, user, timestamp):
    return make_event('LeaderboardKeeper', 'UserSettled', {'user': user}, timestamp=timestamp)


# ============================================================================
# Reserve setup
# ============================================================================

class TestReserveSetup:

    @pytest.mark.asyncio
    async def test_reserve_resolves_to_provider(self, processor, make_event, store):
        await setup_reserve(processor, make_event)

        reserve = await store.reserve.get(RESERVE_ID)
        assert reserve.symbol == 'USDC'
        assert reserve.decimals == 6
        assert reserve.liquidity_index == RAY
        assert (await store.sub_token.get(A_TOKEN)).token_type == 'aToken'
        assert (await store.sub_token.get(DEBT_TOKEN)).pool == PROVIDER
        assert (await store.price_oracle_asset.get(USDC)).price_e8 == 10 ** 8

    @pytest.mark.asyncio
    async def test_reserve_data_updated(self, processor, make_event, store):
        await setup_reserve(processor, make_event)
        await processor.process(make_event('Pool', 'ReserveDataUpdated', {
            'reserve': USDC, 'liquidityRate': RAY // 10, 'stableBorrowRate': 0,
            'variableBorrowRate': RAY // 5, 'liquidityIndex': RAY + 1, 'variableBorrowIndex': RAY + 2,
        }, timestamp=T0 + 10, src=POOL))

        reserve = await store.reserve.get(RESERVE_ID)
        assert reserve.liquidity_rate == RAY // 10
        assert reserve.variable_borrow_index == RAY + 2
        assert reserve.last_update_timestamp == T0 + 10

    @pytest.mark.asyncio
    async def test_untracked_token_is_ignored(self, processor, make_event, store):
        await setup_reserve(processor, make_event)
        await processor.process(make_event('AToken', 'Mint', {
            'onBehalfOf': USER, 'value': 1, 'balanceIncrease': 0, 'index': RAY,
        }, src='0x00000000000000000000000000000000000000ff'))

        assert len(store.user_reserve) == 0


# ============================================================================
# Deposit accrual
# ============================================================================

class TestDepositAccrual:

    @pytest.mark.asyncio
    async def test_one_day_of_usdc_deposit(self, processor, make_event, store, engine):
        await setup_reserve(processor, make_event)
        await processor.process(supply(make_event, USER, 1000 * 10 ** 6))

        user_reserve = await store.user_reserve.get(user_reserve_id(USER, RESERVE_ID))
        assert user_reserve.scaled_a_token_balance == 1000 * 10 ** 6

        await processor.process(settle(make_event, USER, T0 + DAY))

        stats = await store.user_epoch_stats.get(f"{USER}:1")
        assert stats.deposit_points == 10 * E18
        assert stats.deposit_points_with_multiplier == 10 * E18
        assert stats.total_points_with_multiplier == 10 * E18

        top = await engine.leaderboard.get_top_k(1)
        assert [(entry.user_id, entry.points) for entry in top] == [(USER, 10.0)]

    @pytest.mark.asyncio
    async def test_settling_twice_is_a_no_op(self, processor, make_event, store):
        await setup_reserve(processor, make_event)
        await processor.process(supply(make_event, USER, 1000 * 10 ** 6))
        await processor.process(settle(make_event, USER, T0 + DAY))
        await processor.process(settle(make_event, USER, T0 + DAY))

        assert (await store.user_epoch_stats.get(f"{USER}:1")).deposit_points == 10 * E18

    @pytest.mark.asyncio
    async def test_withdraw_reduces_balance(self, processor, make_event, store):
        await setup_reserve(processor, make_event)
        await processor.process(supply(make_event, USER, 1000 * 10 ** 6))
        await processor.process(withdraw(make_event, USER, 400 * 10 ** 6, timestamp=T0 + 10))

        user_reserve = await store.user_reserve.get(user_reserve_id(USER, RESERVE_ID))
        reserve = await store.reserve.get(RESERVE_ID)
        assert user_reserve.scaled_a_token_balance == 600 * 10 ** 6
        assert reserve.total_a_token_supply == 600 * 10 ** 6

    @pytest.mark.asyncio
    async def test_gateway_withdrawal_is_credited_to_sender(self, processor, make_event, store):
        await setup_reserve(processor, make_event)
        await processor.process(supply(make_event, USER, 1000 * 10 ** 6))

        tx_hash = '0x' + 'ab' * 32
        await processor.process_many([
            make_event('AToken', 'BalanceTransfer', {
                'from': USER, 'to': GATEWAY, 'value': 300 * 10 ** 6, 'index': RAY,
            }, timestamp=T0 + 10, src=A_TOKEN, tx_hash=tx_hash),
            withdraw(make_event, GATEWAY, 300 * 10 ** 6, timestamp=T0 + 10, tx_hash=tx_hash),
        ])

        user_reserve = await store.user_reserve.get(user_reserve_id(USER, RESERVE_ID))
        assert user_reserve.scaled_a_token_balance == 700 * 10 ** 6
        assert len(store.pending_gateway_withdrawal) == 0
        assert user_reserve_id(GATEWAY, RESERVE_ID) not in store.user_reserve

    @pytest.mark.asyncio
    async def test_transfer_between_users(self, processor, make_event, store):
        await setup_reserve(processor, make_event)
        await processor.process(supply(make_event, USER, 1000 * 10 ** 6))
        await processor.process(make_event('AToken', 'BalanceTransfer', {
            'from': USER, 'to': OTHER_USER, 'value': 250 * 10 ** 6, 'index': RAY,
        }, timestamp=T0 + 10, src=A_TOKEN))

        sender = await store.user_reserve.get(user_reserve_id(USER, RESERVE_ID))
        recipient = await store.user_reserve.get(user_reserve_id(OTHER_USER, RESERVE_ID))
        assert sender.scaled_a_token_balance == 750 * 10 ** 6
        assert recipient.scaled_a_token_balance == 250 * 10 ** 6
        assert (await store.user_reserve_list.get(OTHER_USER)).reserve_ids == [RESERVE_ID]

    @pytest.mark.asyncio
    async def test_treasury_mint_only_moves_totals(self, processor, make_event, store):
        await setup_reserve(processor, make_event)
        await processor.process(supply(make_event, TREASURY, 5 * 10 ** 6))

        assert len(store.user_reserve) == 0
        assert (await store.reserve.get(RESERVE_ID)).total_a_token_supply == 5 * 10 ** 6

    @pytest.mark.asyncio
    async def test_borrow_and_repay(self, processor, make_event, store):
        await setup_reserve(processor, make_event)
        params = {'value': 200 * 10 ** 6, 'balanceIncrease': 0, 'index': RAY}
        await processor.process(make_event('VariableDebtToken', 'Mint', dict(params, onBehalfOf=USER),
                                           src=DEBT_TOKEN))
        await processor.process(make_event('VariableDebtToken', 'Burn',
                                           dict(params, **{'from': USER, 'value': 50 * 10 ** 6}),
                                           timestamp=T0 + 10, src=DEBT_TOKEN))

        user_reserve = await store.user_reserve.get(user_reserve_id(USER, RESERVE_ID))
        assert user_reserve.scaled_variable_debt == 150 * 10 ** 6
        assert (await store.reserve.get(RESERVE_ID)).total_scaled_variable_debt == 150 * 10 ** 6


# ============================================================================
# Daily bonuses and epoch boundaries
# ============================================================================

class TestDailyBonus:

    @pytest.mark.asyncio
    async def test_paid_once_per_day(self, processor, make_event, store, engine):
        await setup_reserve(processor, make_event)
        await engine.configuration.update_config(T0, supply_daily_bonus=5.0)

        await processor.process(supply(make_event, USER, 10 * 10 ** 6))
        await processor.process(supply(make_event, USER, 10 * 10 ** 6, timestamp=T0 + 60))
        assert (await store.user_epoch_stats.get(f"{USER}:1")).daily_supply_points == 5 * E18

        await processor.process(supply(make_event, USER, 10 * 10 ** 6, timestamp=T0 + DAY))
        stats = await store.user_epoch_stats.get(f"{USER}:1")
        assert stats.daily_supply_points == 10 * E18
        assert stats.last_supply_points_day == (T0 + DAY) // DAY

    @pytest.mark.asyncio
    async def test_minimum_usd_threshold(self, processor, make_event, store, engine):
        await setup_reserve(processor, make_event)
        await engine.configuration.update_config(T0, supply_daily_bonus=5.0, min_daily_bonus_usd=100.0)

        await processor.process(supply(make_event, USER, 10 * 10 ** 6))
        assert (await store.user_epoch_stats.get(f"{USER}:1")).daily_supply_points == 0

        await processor.process(supply(make_event, USER, 95 * 10 ** 6, timestamp=T0 + 60))
        assert (await store.user_epoch_stats.get(f"{USER}:1")).daily_supply_points == 5 * E18


# ============================================================================
# Settlement cooldown
# ============================================================================

async def supply_usdc_and_weth(processor, make_event):
    """Supply USDC and WETH at T0, then settle both a day later."""
    await setup_reserve(processor, make_event)
    await processor.process(make_event('PoolConfigurator', 'ReserveInitialized', {
        'asset': WETH, 'aToken': WETH_A_TOKEN, 'variableDebtToken': WETH_DEBT_TOKEN,
    }, src=CONFIGURATOR))
    await processor.process(supply(make_event, USER, 1000 * 10 ** 6))
    await processor.process(supply(make_event, USER, E18, a_token=WETH_A_TOKEN))
    await processor.process(settle(make_event, USER, T0 + DAY))


class TestSettlementCooldown:

    @pytest.mark.asyncio
    async def test_only_triggering_reserve_accrues_in_cooldown(self, processor, make_event, store):
        await supply_usdc_and_weth(processor, make_event)

        await processor.process(supply(make_event, USER, 10 ** 6, timestamp=T0 + DAY + 60))

        usdc_points = await store.user_reserve_points.get(f"{USER}:{RESERVE_ID}")
        weth_points = await store.user_reserve_points.get(f"{USER}:{WETH_RESERVE_ID}")
        assert usdc_points.last_update_timestamp == T0 + DAY + 60
        assert weth_points.last_update_timestamp == T0 + DAY

    @pytest.mark.asyncio
    async def test_all_reserves_accrue_after_cooldown(self, processor, make_event, store):
        await supply_usdc_and_weth(processor, make_event)
        await processor.process(supply(make_event, USER, 10 ** 6, timestamp=T0 + DAY + 60))

        later = T0 + DAY + 2 * 3600
        await processor.process(supply(make_event, USER, 10 ** 6, timestamp=later))

        weth_points = await store.user_reserve_points.get(f"{USER}:{WETH_RESERVE_ID}")
        assert weth_points.last_update_timestamp == later


# ============================================================================
# Epoch boundary
# ============================================================================

class TestEpochBoundary:

    @pytest.mark.asyncio
    async def test_indices_frozen_at_epoch_end(self, processor, make_event, store):
        await setup_reserve(processor, make_event)
        await processor.process(make_event('EpochManager', 'EpochEnd', {'epochNumber': 1, 'endTime': T0 + DAY},
                                           timestamp=T0 + DAY))
        await processor.process(make_event('Pool', 'ReserveDataUpdated', {
            'reserve': USDC, 'liquidityRate': 0, 'stableBorrowRate': 0, 'variableBorrowRate': 0,
            'liquidityIndex': 2 * RAY, 'variableBorrowIndex': 2 * RAY,
        }, timestamp=T0 + 2 * DAY, src=POOL))

        snapshot = await store.reserve_index_snapshot.get(f"epochEnd:1:{RESERVE_ID}")
        assert snapshot.timestamp == T0 + DAY
        assert snapshot.liquidity_index == RAY
        assert (await store.reserve.get(RESERVE_ID)).liquidity_index == 2 * RAY

    @pytest.mark.asyncio
    async def test_accrual_stops_at_epoch_end(self, processor, make_event, store):
        await setup_reserve(processor, make_event)
        await processor.process(supply(make_event, USER, 1000 * 10 ** 6))
        await processor.process(make_event('EpochManager', 'EpochEnd', {'epochNumber': 1, 'endTime': T0 + DAY},
                                           timestamp=T0 + DAY))
        await processor.process(settle(make_event, USER, T0 + 3 * DAY))

        stats = await store.user_epoch_stats.get(f"{USER}:1")
        assert stats.deposit_points == 10 * E18

    @pytest.mark.asyncio
    async def test_settlement_before_start_block_only_refreshes(self, processor, make_event, store):
        await setup_reserve(processor, make_event)
        await processor.process(supply(make_event, USER, 1000 * 10 ** 6))
        await processor.process(make_event('LeaderboardKeeper', 'UserSettled', {'user': USER},
                                           timestamp=T0 + DAY, block=BLOCK - 2000))

        assert (await store.user_epoch_stats.get(f"{USER}:1")).deposit_points == 0
