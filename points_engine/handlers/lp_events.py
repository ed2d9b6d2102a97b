"""
Uniswap V3 position manager and pool events.
"""

from points_engine.handlers.common import record_transaction
from points_engine.handlers.registry import handler

POSITION_MANAGER = 'NonfungiblePositionManager'
POOL = 'UniswapV3Pool'


# ============================================
# Position manager
# ============================================

@handler(POSITION_MANAGER, 'IncreaseLiquidity')
async def handle_increase_liquidity(event, engine):
    await record_transaction(event, engine)
    await engine.lp.increase_liquidity(
        event.int_param('tokenId'),
        event.src,
        event.int_param('liquidity'),
        event.int_param('amount0'),
        event.int_param('amount1'),
        event.block_timestamp,
        event.block_number,
        event.tx_hash,
        tx_from=event.tx_from,
    )


@handler(POSITION_MANAGER, 'DecreaseLiquidity')
async def handle_decrease_liquidity(event, engine):
    await record_transaction(event, engine)
    await engine.lp.decrease_liquidity(
        event.int_param('tokenId'),
        event.int_param('liquidity'),
        event.int_param('amount0'),
        event.int_param('amount1'),
        event.block_timestamp,
        event.block_number,
    )


@handler(POSITION_MANAGER, 'Transfer')
async def handle_position_transfer(event, engine):
    await record_transaction(event, engine)
    await engine.lp.transfer_position(
        event.int_param('tokenId'),
        event.src,
        event.address_param('from'),
        event.address_param('to'),
        event.block_timestamp,
        event.block_number,
    )


# ============================================
# Pool
# ============================================

# Price-only pool events do not count as protocol transactions

@handler(POOL, 'Initialize')
async def handle_pool_initialize(event, engine):
    await engine.lp.initialize_pool(
        event.src, event.int_param('tick'), event.int_param('sqrtPriceX96'), event.block_timestamp,
    )


@handler(POOL, 'Swap')
async def handle_pool_swap(event, engine):
    await engine.lp.record_swap(
        event.src,
        event.int_param('tick'),
        event.int_param('sqrtPriceX96'),
        event.int_param('amount0'),
        event.int_param('amount1'),
        event.block_timestamp,
        event.block_number,
    )


@handler(POOL, 'Mint')
async def handle_pool_mint(event, engine):
    await record_transaction(event, engine)
    await engine.lp.record_pool_mint(
        event.src,
        event.address_param('owner'),
        event.int_param('tickLower'),
        event.int_param('tickUpper'),
        event.int_param('amount'),
        event.int_param('amount0'),
        event.int_param('amount1'),
        event.block_timestamp,
        event.tx_hash,
    )


@handler(POOL, 'Burn')
async def handle_pool_burn(event, engine):
    # Liquidity removal is tracked through DecreaseLiquidity
    await record_transaction(event, engine)
