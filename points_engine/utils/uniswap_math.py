"""
Uniswap V3 tick and liquidity math (TickMath + LiquidityAmounts), exact integer form.
"""

from typing import Tuple

MIN_TICK = -887272
MAX_TICK = 887272
Q96 = 2 ** 96
Q192 = 2 ** 192
MAX_UINT256 = 2 ** 256 - 1

# (bit, multiplier) pairs from TickMath.getSqrtRatioAtTick
_TICK_RATIOS = (
    (0x2, 0xfff97272373d413259a46990580e213a),
    (0x4, 0xfff2e50f5f656932ef12357cf3c7fdcc),
    (0x8, 0xffe5caca7e10e4e61c3624eaa0941cd0),
    (0x10, 0xffcb9843d60f6159c9db58835c926644),
    (0x20, 0xff973b41fa98c081472e6896dfb254c0),
    (0x40, 0xff2ea16466c96a3843ec78b326b52861),
    (0x80, 0xfe5dee046a99a2a811c461f1969c3053),
    (0x100, 0xfcbe86c7900a88aedcffc83b479aa3a4),
    (0x200, 0xf987a7253ac413176f2b074cf7815e54),
    (0x400, 0xf3392b0822b70005940c7a398e4b70f3),
    (0x800, 0xe7159475a2c29b7443b29c7fa6e889d9),
    (0x1000, 0xd097f3bdfd2022b8845ad8f792aa5825),
    (0x2000, 0xa9f746462d870fdf8a65dc1f90e061e5),
    (0x4000, 0x70d869a156d2a1b890bb3df62baf32f7),
    (0x8000, 0x31be135f97d08fd981231505542fcfa6),
    (0x10000, 0x9aa508b5b7a84e1c677de54f3e99bc9),
    (0x20000, 0x5d6af8dedb81196699c329225ee604),
    (0x40000, 0x2216e584f5fa1ea926041bedfe98),
    (0x80000, 0x48a170391f7dc42444e8fa2),
)


def get_sqrt_ratio_at_tick(tick: int) -> int:
    """sqrt(1.0001^tick) * 2^96, rounded up like the on-chain library."""
    abs_tick = abs(tick)
    if abs_tick > MAX_TICK:
        raise ValueError(f"Tick {tick} out of bounds [{MIN_TICK}, {MAX_TICK}]")

    if abs_tick & 0x1:
        ratio = 0xfffcb933bd6fad37aa2d162d1a594001
    else:
        ratio = 0x100000000000000000000000000000000

    for bit, multiplier in _TICK_RATIOS:
        if abs_tick & bit:
            ratio = (ratio * multiplier) >> 128

    if tick > 0:
        ratio = MAX_UINT256 // ratio

    return (ratio >> 32) + (0 if ratio % (1 << 32) == 0 else 1)


def get_amount0_for_liquidity(sqrt_a: int, sqrt_b: int, liquidity: int) -> int:
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    if sqrt_a == 0:
        return 0
    return ((liquidity << 96) * (sqrt_b - sqrt_a) // sqrt_b) // sqrt_a


def get_amount1_for_liquidity(sqrt_a: int, sqrt_b: int, liquidity: int) -> int:
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    return liquidity * (sqrt_b - sqrt_a) // Q96


def get_amounts_for_liquidity(
    sqrt_price_x96: int, tick_lower: int, tick_upper: int, liquidity: int
) -> Tuple[int, int]:
    """Token amounts represented by a position at the given pool price."""
    sqrt_a = get_sqrt_ratio_at_tick(tick_lower)
    sqrt_b = get_sqrt_ratio_at_tick(tick_upper)
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a

    if sqrt_price_x96 <= sqrt_a:
        return get_amount0_for_liquidity(sqrt_a, sqrt_b, liquidity), 0
    if sqrt_price_x96 < sqrt_b:
        return (
            get_amount0_for_liquidity(sqrt_price_x96, sqrt_b, liquidity),
            get_amount1_for_liquidity(sqrt_a, sqrt_price_x96, liquidity),
        )
    return 0, get_amount1_for_liquidity(sqrt_a, sqrt_b, liquidity)


def is_position_in_range(tick_lower: int, tick_upper: int, current_tick: int) -> bool:
    return tick_lower <= current_tick < tick_upper


def calculate_paired_price_from_pool(
    sqrt_price_x96: int,
    stable_price_e8: int,
    is_stable_token0: bool,
    token0_decimals: int,
    token1_decimals: int,
) -> int:
    """
    USD price (8 decimals) of the non-stable token in a stable-paired pool.

    sqrtPriceX96^2 / 2^192 is token1/token0 in raw units; decimals adjust it
    to a human ratio.
    """
    if sqrt_price_x96 == 0 or stable_price_e8 == 0:
        return 0

    price_x192 = sqrt_price_x96 * sqrt_price_x96

    if is_stable_token0:
        numerator = stable_price_e8 * Q192
        denominator = price_x192
        dec_diff = token1_decimals - token0_decimals
    else:
        numerator = stable_price_e8 * price_x192
        denominator = Q192
        dec_diff = token0_decimals - token1_decimals

    if dec_diff >= 0:
        numerator *= 10 ** dec_diff
    else:
        denominator *= 10 ** (-dec_diff)
    return numerator // denominator


def calculate_position_value_usd(
    amount0: int,
    amount1: int,
    token0_price_e8: int,
    token1_price_e8: int,
    token0_decimals: int = 18,
    token1_decimals: int = 18,
) -> int:
    """Position value in 8-decimal USD."""
    value0 = (amount0 * token0_price_e8) // (10 ** token0_decimals)
    value1 = (amount1 * token1_price_e8) // (10 ** token1_decimals)
    return value0 + value1
