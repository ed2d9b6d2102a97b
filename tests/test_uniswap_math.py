"""
Tests for tick math, liquidity amounts and pool-derived prices.
"""

import pytest

from points_engine.utils.uniswap_math import (
    MAX_TICK, MIN_TICK, Q96, calculate_paired_price_from_pool, calculate_position_value_usd,
    get_amounts_for_liquidity, get_sqrt_ratio_at_tick, is_position_in_range,
)


class TestSqrtRatio:

    def test_tick_zero_is_one(self):
        assert get_sqrt_ratio_at_tick(0) == Q96

    def test_bounds_match_on_chain_constants(self):
        assert get_sqrt_ratio_at_tick(MIN_TICK) == 4295128739
        assert get_sqrt_ratio_at_tick(MAX_TICK) == 1461446703485210103287273052203988822378723970342

    def test_monotonic(self):
        assert get_sqrt_ratio_at_tick(-1) < get_sqrt_ratio_at_tick(0) < get_sqrt_ratio_at_tick(1)

    @pytest.mark.parametrize('tick', [MIN_TICK - 1, MAX_TICK + 1])
    def test_out_of_bounds(self, tick):
        with pytest.raises(ValueError):
            get_sqrt_ratio_at_tick(tick)


class TestAmountsForLiquidity:

    def test_price_below_range_is_all_token0(self):
        sqrt_price = get_sqrt_ratio_at_tick(-120)
        amount0, amount1 = get_amounts_for_liquidity(sqrt_price, -60, 60, 10 ** 18)
        assert amount0 > 0
        assert amount1 == 0

    def test_price_above_range_is_all_token1(self):
        sqrt_price = get_sqrt_ratio_at_tick(120)
        amount0, amount1 = get_amounts_for_liquidity(sqrt_price, -60, 60, 10 ** 18)
        assert amount0 == 0
        assert amount1 > 0

    def test_price_in_range_holds_both(self):
        amount0, amount1 = get_amounts_for_liquidity(Q96, -60, 60, 10 ** 18)
        assert amount0 > 0
        assert amount1 > 0

    def test_zero_liquidity(self):
        assert get_amounts_for_liquidity(Q96, -60, 60, 0) == (0, 0)


class TestRange:

    def test_lower_bound_is_inclusive(self):
        assert is_position_in_range(-60, 60, -60)

    def test_upper_bound_is_exclusive(self):
        assert not is_position_in_range(-60, 60, 60)

    def test_inside(self):
        assert is_position_in_range(-60, 60, 0)


class TestPrices:

    def test_paired_price_at_parity(self):
        assert calculate_paired_price_from_pool(Q96, 10 ** 8, True, 18, 18) == 10 ** 8
        assert calculate_paired_price_from_pool(Q96, 10 ** 8, False, 18, 18) == 10 ** 8

    def test_paired_price_adjusts_for_decimals(self):
        # 1e12 raw token1 per raw token0 is one token each at 6 / 18 decimals
        sqrt_price = 10 ** 6 * Q96
        assert calculate_paired_price_from_pool(sqrt_price, 10 ** 8, True, 6, 18) == 10 ** 8

    def test_paired_price_without_price(self):
        assert calculate_paired_price_from_pool(0, 10 ** 8, True, 18, 18) == 0

    def test_position_value(self):
        value = calculate_position_value_usd(10 ** 18, 2 * 10 ** 6, 10 ** 8, 10 ** 8, 18, 6)
        assert value == 3 * 10 ** 8
