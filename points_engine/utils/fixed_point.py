"""
Fixed-point arithmetic for reserve indices and point balances.

All ray (1e27) and basis-point divisions truncate toward zero. Point totals are
integers scaled by 1e18 and are only converted to floats for display.
"""

import math

from points_engine.constants import LeaderboardConstants, MathConstants

RAY = MathConstants.RAY
WAD_RAY_RATIO = MathConstants.WAD_RAY_RATIO
SECONDS_PER_YEAR = MathConstants.SECONDS_PER_YEAR
POINTS_SCALE = MathConstants.POINTS_SCALE
BASIS_POINTS = MathConstants.BASIS_POINTS


def ray_mul(a: int, b: int) -> int:
    if a == 0 or b == 0:
        return 0
    return (a * b) // RAY


def ray_div(a: int, b: int) -> int:
    if b == 0:
        return 0
    return (a * RAY) // b


def wad_to_ray(a: int) -> int:
    return a * WAD_RAY_RATIO


def ray_to_wad(a: int) -> int:
    return a // WAD_RAY_RATIO


def calculate_linear_interest(rate: int, last_updated: int, now: int) -> int:
    """Accrued ray fraction for a linearly compounding rate over [last_updated, now]."""
    if now <= last_updated:
        return 0
    time_delta = ray_div(wad_to_ray(now - last_updated), wad_to_ray(SECONDS_PER_YEAR))
    return ray_mul(rate, time_delta)


def calculate_compounded_interest(rate: int, last_updated: int, now: int) -> int:
    """
    Ray growth factor for a per-second compounding rate.

    Uses the three-term binomial expansion of (1 + r)^n.
    """
    if now <= last_updated:
        return RAY

    exp = now - last_updated
    exp_minus_one = exp - 1
    exp_minus_two = exp - 2 if exp > 2 else 0

    rate_per_second = rate // SECONDS_PER_YEAR
    base_power_two = ray_mul(rate_per_second, rate_per_second)
    base_power_three = ray_mul(base_power_two, rate_per_second)

    second_term = (exp * exp_minus_one * base_power_two) // 2
    third_term = (exp * exp_minus_one * exp_minus_two * base_power_three) // 6

    return RAY + rate_per_second * exp + second_term + third_term


def get_reserve_normalized_income(reserve, timestamp: int) -> int:
    """Liquidity index rolled forward to timestamp."""
    if reserve.liquidity_index == 0:
        return 0
    if timestamp <= reserve.last_update_timestamp:
        return reserve.liquidity_index
    cumulated = calculate_linear_interest(
        reserve.liquidity_rate, reserve.last_update_timestamp, timestamp
    )
    return ray_mul(RAY + cumulated, reserve.liquidity_index)


def get_reserve_normalized_variable_debt(reserve, timestamp: int) -> int:
    """Variable borrow index rolled forward to timestamp."""
    if reserve.variable_borrow_index == 0:
        return 0
    if timestamp <= reserve.last_update_timestamp:
        return reserve.variable_borrow_index
    cumulated = calculate_compounded_interest(
        reserve.variable_borrow_rate, reserve.last_update_timestamp, timestamp
    )
    return ray_mul(cumulated, reserve.variable_borrow_index)


def to_decimal(value: int, decimals: int) -> float:
    if value == 0:
        return 0.0
    return value / (10 ** decimals)


def to_scaled_tokens(tokens: float, decimals: int) -> int:
    if not math.isfinite(tokens) or tokens <= 0:
        return 0
    return math.floor(tokens * (10 ** decimals))


def to_scaled_points(value: float) -> int:
    if not math.isfinite(value):
        return 0
    return math.floor(value * POINTS_SCALE)


def from_scaled_points(scaled: int) -> float:
    return scaled / POINTS_SCALE


def apply_multiplier_scaled(raw_points_scaled: int, multiplier_bps: int) -> int:
    """Scale a raw point delta by a multiplier, capped at MAX_MULTIPLIER."""
    max_multiplier_bps = LeaderboardConstants.MAX_MULTIPLIER * BASIS_POINTS
    effective_bps = min(multiplier_bps, max_multiplier_bps)
    return (raw_points_scaled * effective_bps) // BASIS_POINTS


def combine_multipliers(nft_multiplier_bps: int, vp_multiplier_bps: int) -> int:
    combined = (nft_multiplier_bps * vp_multiplier_bps) // BASIS_POINTS
    return min(combined, LeaderboardConstants.MAX_COMBINED_MULTIPLIER)
