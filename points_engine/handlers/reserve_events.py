"""
Lending pool events: reserve setup, index updates and aToken / variable
debt token balance changes.

Token events carry ray-scaled amounts; scaled balances move by
``ray_div(amount, index)`` and current balances are re-derived with the
event's index. Each balance change settles the user first, then stamps the
new balance as the accrual baseline.
"""

import logging

from points_engine.constants import (
    AddressConstants, TokenConstants, get_token_metadata, is_gateway_address, is_treasury_address,
    normalize_address,
)
from points_engine.data_models.entities import (
    ContractToPoolMapping, PendingGatewayWithdrawal, Reserve, SubToken, UserReserve,
)
from points_engine.handlers.common import record_transaction
from points_engine.handlers.registry import handler
from points_engine.services.reserve_accrual import user_reserve_id
from points_engine.utils.fixed_point import calculate_linear_interest, ray_div, ray_mul

logger = logging.getLogger(__name__)

ADDRESSES_PROVIDER = 'PoolAddressesProvider'
POOL_CONFIGURATOR = 'PoolConfigurator'
POOL = 'Pool'
A_TOKEN = 'AToken'
VARIABLE_DEBT_TOKEN = 'VariableDebtToken'

ZERO_ADDRESS = AddressConstants.ZERO_ADDRESS


async def resolve_pool_id(engine, contract_address: str) -> str:
    """Addresses provider behind a pool or configurator proxy; the address itself when unmapped."""
    contract_address = normalize_address(contract_address)
    mapping = await engine.store.contract_to_pool_mapping.get(contract_address)
    return mapping.pool_id if mapping else contract_address


def reserve_key(asset: str, pool_id: str) -> str:
    return f"{normalize_address(asset)}-{normalize_address(pool_id)}"


async def _sub_token_reserve(event, engine):
    sub_token = await engine.store.sub_token.get(event.src)
    if not sub_token:
        logger.debug(f"{event.event_name} from untracked token {event.src}")
        return None, None
    return sub_token, reserve_key(sub_token.underlying_asset, sub_token.pool)


async def _get_or_create_user_reserve(engine, user_id: str, reserve_id: str, pool_id: str,
                                      timestamp: int) -> UserReserve:
    user_reserve = await engine.store.user_reserve.get(user_reserve_id(user_id, reserve_id))
    if user_reserve:
        return user_reserve
    await engine.reserves.add_reserve_to_user_list(user_id, reserve_id, timestamp)
    return UserReserve(
        id=user_reserve_id(user_id, reserve_id),
        user_id=user_id,
        reserve_id=reserve_id,
        pool=pool_id,
        last_update_timestamp=timestamp,
    )


async def _after_balance_change(event, engine, user_id: str, reserve_id: str, kind: str = None,
                                amount: int = 0) -> None:
    """Stamp the new baseline, then count the action toward the user's daily bonus."""
    timestamp = event.block_timestamp
    await engine.reserves.sync_user_reserve_points_baseline(user_id, reserve_id, timestamp, event.block_number)
    if kind is None:
        return
    await engine.reserves.update_daily_highwater(kind, user_id, reserve_id, amount, timestamp)
    await engine.reserves.award_daily_points(kind, user_id, timestamp)


# ============================================
# Reserve setup
# ============================================

@handler(ADDRESSES_PROVIDER, 'ProxyCreated')
async def handle_proxy_created(event, engine):
    await record_transaction(event, engine)
    engine.store.contract_to_pool_mapping.set(ContractToPoolMapping(
        id=event.address_param('proxyAddress'),
        pool_id=event.src,
    ))


@handler(POOL_CONFIGURATOR, 'ReserveInitialized')
async def handle_reserve_initialized(event, engine):
    await record_transaction(event, engine)
    timestamp = event.block_timestamp
    pool_id = await resolve_pool_id(engine, event.src)
    asset = event.address_param('asset')
    a_token = event.address_param('aToken')
    variable_debt_token = event.address_param('variableDebtToken')

    metadata = get_token_metadata(asset)
    if metadata:
        symbol, decimals = metadata
    else:
        symbol = 'ERC20'
        decimals = await engine.lp.get_token_decimals(asset, TokenConstants.DEFAULT_DECIMALS, timestamp)

    reserve = Reserve(
        id=reserve_key(asset, pool_id),
        underlying_asset=asset,
        pool=pool_id,
        symbol=symbol,
        decimals=decimals,
        price=asset,
        a_token=a_token,
        variable_debt_token=variable_debt_token,
        last_update_timestamp=timestamp,
    )
    engine.store.reserve.set(reserve)

    sub_tokens = [(a_token, 'aToken'), (variable_debt_token, 'variableDebtToken')]
    stable_debt_token = normalize_address(event.params.get('stableDebtToken'))
    if stable_debt_token and stable_debt_token != ZERO_ADDRESS:
        sub_tokens.append((stable_debt_token, 'stableDebtToken'))
    for address, token_type in sub_tokens:
        engine.store.sub_token.set(SubToken(id=address, underlying_asset=asset, pool=pool_id,
                                            token_type=token_type))

    await engine.price_oracle.ensure_asset_price(asset, timestamp)
    logger.info(f"Reserve initialized: {symbol} ({reserve.id})")


@handler(POOL, 'ReserveDataUpdated')
async def handle_reserve_data_updated(event, engine):
    await record_transaction(event, engine)
    timestamp = event.block_timestamp
    pool_id = await resolve_pool_id(engine, event.src)
    reserve = await engine.store.reserve.get(reserve_key(event.address_param('reserve'), pool_id))
    if not reserve:
        return

    # Indices must be frozen before this update moves them past an epoch end
    await engine.reserves.maybe_store_epoch_end_snapshot(reserve, timestamp)

    if timestamp > reserve.last_update_timestamp:
        interest = calculate_linear_interest(reserve.liquidity_rate, reserve.last_update_timestamp, timestamp)
        reserve.total_a_token_supply += ray_mul(reserve.total_a_token_supply, interest)

    reserve.liquidity_rate = event.int_param('liquidityRate')
    reserve.stable_borrow_rate = event.int_param('stableBorrowRate')
    reserve.variable_borrow_rate = event.int_param('variableBorrowRate')
    reserve.liquidity_index = event.int_param('liquidityIndex')
    reserve.variable_borrow_index = event.int_param('variableBorrowIndex')
    reserve.last_update_timestamp = timestamp
    engine.store.reserve.set(reserve)


# ============================================
# aToken
# ============================================

@handler(A_TOKEN, 'Mint')
async def handle_a_token_mint(event, engine):
    await record_transaction(event, engine)
    sub_token, reserve_id = await _sub_token_reserve(event, engine)
    if not sub_token:
        return

    timestamp = event.block_timestamp
    user_id = event.address_param('onBehalfOf')
    index = event.int_param('index')
    balance_change = event.int_param('value') - event.int_param('balanceIncrease')
    reserve = await engine.store.reserve.get(reserve_id)

    # Treasury mints are protocol revenue and only move reserve totals
    if not is_treasury_address(user_id):
        user_reserve = await _get_or_create_user_reserve(engine, user_id, reserve_id, sub_token.pool, timestamp)
        await engine.settlement.settle_points_for_user(user_id, reserve_id, timestamp, event.block_number)

        user_reserve.scaled_a_token_balance += ray_div(balance_change, index)
        user_reserve.current_a_token_balance = ray_mul(user_reserve.scaled_a_token_balance, index)
        if reserve:
            user_reserve.liquidity_rate = reserve.liquidity_rate
            user_reserve.variable_borrow_index = reserve.variable_borrow_index
        user_reserve.last_update_timestamp = timestamp
        engine.store.user_reserve.set(user_reserve)

    if reserve:
        reserve.total_a_token_supply += balance_change
        engine.store.reserve.set(reserve)

    if not is_treasury_address(user_id):
        await _after_balance_change(event, engine, user_id, reserve_id, 'supply', balance_change)


@handler(A_TOKEN, 'Burn')
async def handle_a_token_burn(event, engine):
    await record_transaction(event, engine)
    sub_token, reserve_id = await _sub_token_reserve(event, engine)
    if not sub_token:
        return

    timestamp = event.block_timestamp
    burn_from = event.address_param('from')
    pending_id = f"{event.tx_hash}:{sub_token.underlying_asset}:{burn_from}"
    pending = await engine.store.pending_gateway_withdrawal.get(pending_id)
    # Gateway withdrawals burn the gateway's aTokens on behalf of the real user
    user_id = normalize_address(pending.actual_user) if pending else burn_from

    index = event.int_param('index')
    balance_change = event.int_param('value') + event.int_param('balanceIncrease')
    reserve = await engine.store.reserve.get(reserve_id)
    user_reserve = await engine.store.user_reserve.get(user_reserve_id(user_id, reserve_id))

    await engine.settlement.settle_points_for_user(user_id, reserve_id, timestamp, event.block_number)

    if user_reserve:
        user_reserve.scaled_a_token_balance -= ray_div(balance_change, index)
        user_reserve.current_a_token_balance = ray_mul(user_reserve.scaled_a_token_balance, index)
        if reserve:
            user_reserve.liquidity_rate = reserve.liquidity_rate
            user_reserve.variable_borrow_index = reserve.variable_borrow_index
        user_reserve.last_update_timestamp = timestamp
        engine.store.user_reserve.set(user_reserve)

    if reserve:
        reserve.total_a_token_supply -= balance_change
        engine.store.reserve.set(reserve)

    await _after_balance_change(event, engine, user_id, reserve_id, 'withdraw', balance_change)
    if pending:
        engine.store.pending_gateway_withdrawal.delete_unsafe(pending_id)


@handler(A_TOKEN, 'BalanceTransfer')
async def handle_a_token_balance_transfer(event, engine):
    await record_transaction(event, engine)
    sub_token, reserve_id = await _sub_token_reserve(event, engine)
    if not sub_token:
        return

    timestamp = event.block_timestamp
    sender = event.address_param('from')
    recipient = event.address_param('to')

    if is_gateway_address(recipient):
        # The burn that follows in this transaction belongs to the sender
        engine.store.pending_gateway_withdrawal.set(PendingGatewayWithdrawal(
            id=f"{event.tx_hash}:{sub_token.underlying_asset}:{recipient}",
            tx_hash=event.tx_hash,
            reserve=sub_token.underlying_asset,
            gateway=recipient,
            actual_user=sender,
        ))
        return

    tracks_sender = sender != ZERO_ADDRESS and not is_gateway_address(sender)
    tracks_recipient = recipient != ZERO_ADDRESS

    sender_reserve = await engine.store.user_reserve.get(user_reserve_id(sender, reserve_id))
    if not sender_reserve and tracks_sender:
        sender_reserve = await _get_or_create_user_reserve(engine, sender, reserve_id, sub_token.pool, timestamp)
    recipient_reserve = await engine.store.user_reserve.get(user_reserve_id(recipient, reserve_id))
    if not recipient_reserve and tracks_recipient:
        recipient_reserve = await _get_or_create_user_reserve(engine, recipient, reserve_id, sub_token.pool,
                                                              timestamp)

    if tracks_sender:
        await engine.settlement.settle_points_for_user(sender, reserve_id, timestamp, event.block_number)
    if tracks_recipient:
        await engine.settlement.settle_points_for_user(recipient, reserve_id, timestamp, event.block_number)

    scaled_amount = event.int_param('value')
    current_amount = ray_mul(scaled_amount, event.int_param('index'))

    if recipient_reserve:
        recipient_reserve.scaled_a_token_balance += scaled_amount
        recipient_reserve.current_a_token_balance += current_amount
        recipient_reserve.last_update_timestamp = timestamp
        engine.store.user_reserve.set(recipient_reserve)

    if sender_reserve:
        sender_reserve.scaled_a_token_balance = max(sender_reserve.scaled_a_token_balance - scaled_amount, 0)
        sender_reserve.current_a_token_balance = max(sender_reserve.current_a_token_balance - current_amount, 0)
        sender_reserve.last_update_timestamp = timestamp
        engine.store.user_reserve.set(sender_reserve)

    if sender != ZERO_ADDRESS:
        await _after_balance_change(event, engine, sender, reserve_id)
    if tracks_recipient:
        await _after_balance_change(event, engine, recipient, reserve_id, 'supply', current_amount)


# ============================================
# Variable debt token
# ============================================

@handler(VARIABLE_DEBT_TOKEN, 'Mint')
async def handle_variable_debt_mint(event, engine):
    await record_transaction(event, engine)
    sub_token, reserve_id = await _sub_token_reserve(event, engine)
    if not sub_token:
        return

    timestamp = event.block_timestamp
    user_id = event.address_param('onBehalfOf')
    index = event.int_param('index')
    balance_change = event.int_param('value') - event.int_param('balanceIncrease')
    scaled_change = ray_div(balance_change, index)
    reserve = await engine.store.reserve.get(reserve_id)

    user_reserve = await _get_or_create_user_reserve(engine, user_id, reserve_id, sub_token.pool, timestamp)
    await engine.settlement.settle_points_for_user(user_id, reserve_id, timestamp, event.block_number)

    user_reserve.scaled_variable_debt += scaled_change
    user_reserve.current_variable_debt = ray_mul(user_reserve.scaled_variable_debt, index)
    user_reserve.current_total_debt = user_reserve.current_stable_debt + user_reserve.current_variable_debt
    user_reserve.liquidity_rate = reserve.liquidity_rate if reserve else 0
    user_reserve.variable_borrow_index = (reserve.variable_borrow_index if reserve else 0) or index
    user_reserve.last_update_timestamp = timestamp
    engine.store.user_reserve.set(user_reserve)

    if reserve:
        reserve.total_scaled_variable_debt += scaled_change
        reserve.total_current_variable_debt = ray_mul(reserve.total_scaled_variable_debt, index)
        engine.store.reserve.set(reserve)

    await _after_balance_change(event, engine, user_id, reserve_id, 'borrow', balance_change)


@handler(VARIABLE_DEBT_TOKEN, 'Burn')
async def handle_variable_debt_burn(event, engine):
    await record_transaction(event, engine)
    sub_token, reserve_id = await _sub_token_reserve(event, engine)
    if not sub_token:
        return

    timestamp = event.block_timestamp
    user_id = event.address_param('from')
    user_reserve = await engine.store.user_reserve.get(user_reserve_id(user_id, reserve_id))
    if not user_reserve:
        return

    index = event.int_param('index')
    balance_change = event.int_param('value') + event.int_param('balanceIncrease')
    scaled_change = ray_div(balance_change, index)
    reserve = await engine.store.reserve.get(reserve_id)

    await engine.settlement.settle_points_for_user(user_id, reserve_id, timestamp, event.block_number)

    user_reserve.scaled_variable_debt -= scaled_change
    user_reserve.current_variable_debt = ray_mul(user_reserve.scaled_variable_debt, index)
    user_reserve.current_total_debt = user_reserve.current_stable_debt + user_reserve.current_variable_debt
    if reserve:
        user_reserve.liquidity_rate = reserve.liquidity_rate
    user_reserve.variable_borrow_index = (reserve.variable_borrow_index if reserve else 0) or index
    user_reserve.last_update_timestamp = timestamp
    engine.store.user_reserve.set(user_reserve)

    if reserve:
        reserve.total_scaled_variable_debt -= scaled_change
        reserve.total_current_variable_debt = ray_mul(reserve.total_scaled_variable_debt, index)
        engine.store.reserve.set(reserve)

    await _after_balance_change(event, engine, user_id, reserve_id, 'repay', balance_change)


# ============================================
# Oracle observations
# ============================================

async def handle_price_observed(event, engine):
    await record_transaction(event, engine)
    base_unit = event.int_param('baseUnit')
    if base_unit <= 0:
        logger.warning(f"Ignoring price observation with base unit {base_unit} (tx {event.tx_hash})")
        return
    if not event.params.get('ok', True):
        logger.debug(f"Oracle flagged fallback for {event.param('asset')}")
    await engine.price_oracle.set_asset_price(
        event.address_param('asset'), event.int_param('price'), event.block_timestamp, base_unit=base_unit,
    )


for _contract in (A_TOKEN, VARIABLE_DEBT_TOKEN):
    handler(_contract, 'PriceObserved')(handle_price_observed)
