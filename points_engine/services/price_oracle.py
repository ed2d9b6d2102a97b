"""
Per-asset USD price cache with a cumulative price-hours index.

``cumulative_usd_price_hours`` integrates price over time, so the USD-time
exposure of a constant token balance between two settlements is
``balance * (index_now - index_then)`` without replaying price history.
A per-epoch reset baseline records the index value at epoch start.
"""

import logging
from typing import Tuple

from points_engine.constants import (
    MathConstants, TimeConstants, TokenConstants, get_token_metadata, normalize_address,
)
from points_engine.data_models.entities import PriceOracleAsset
from points_engine.services.base import BaseService

logger = logging.getLogger(__name__)

PRICE_SCALE = MathConstants.PRICE_SCALE


def default_price_e8(asset: str) -> int:
    """Static seed price for a known token, else $1."""
    metadata = get_token_metadata(asset)
    if metadata is None:
        return TokenConstants.FALLBACK_PRICE_E8
    return TokenConstants.DEFAULT_PRICES_E8.get(metadata[0], TokenConstants.FALLBACK_PRICE_E8)


def oracle_price_usd(oracle: PriceOracleAsset) -> float:
    if oracle.last_price_usd > 0:
        return oracle.last_price_usd
    return oracle.price_e8 / PRICE_SCALE


class PriceOracleService(BaseService):
    """Seeds, reads and integrates asset prices."""

    async def get_asset_price_usd(self, asset: str, timestamp: int = 0) -> float:
        asset = normalize_address(asset)
        oracle = await self.store.price_oracle_asset.get(asset)
        if not oracle:
            await self.ensure_asset_price(asset, timestamp)
            oracle = await self.store.price_oracle_asset.get(asset)
            if not oracle:
                return 0.0
        return oracle_price_usd(oracle)

    async def ensure_asset_price(self, asset: str, timestamp: int) -> None:
        """
        Seed a price record from static defaults if none has been observed.

        The seed timestamp is pulled back to the current epoch's start when the
        epoch started earlier, so the first settlement in an epoch integrates
        the whole epoch rather than nothing.
        """
        asset = normalize_address(asset)
        existing = await self.store.price_oracle_asset.get(asset)
        if existing and existing.last_update_timestamp > 0:
            return

        seed_timestamp = timestamp
        if timestamp > 0:
            state, epoch = await self.get_current_epoch()
            if epoch and 0 < epoch.start_time < seed_timestamp:
                seed_timestamp = epoch.start_time

        price_e8 = default_price_e8(asset)
        self.store.price_oracle_asset.set(PriceOracleAsset(
            id=asset,
            price_e8=price_e8,
            last_price_usd=price_e8 / PRICE_SCALE,
            last_update_timestamp=seed_timestamp,
            cumulative_usd_price_hours=existing.cumulative_usd_price_hours if existing else 0.0,
            reset_timestamp=existing.reset_timestamp if existing else 0,
            reset_cumulative_usd_price_hours=(
                existing.reset_cumulative_usd_price_hours if existing else 0.0
            ),
        ))
        logger.debug(f"Seeded default price for {asset}: {price_e8} (ts={seed_timestamp})")

    async def update_price_oracle_index(self, oracle: PriceOracleAsset,
                                        timestamp: int) -> Tuple[PriceOracleAsset, float]:
        """
        Roll the cumulative index forward to ``timestamp``.

        Returns the saved record and the index value before this update. On the
        first update inside a newly started epoch the reset baseline is set to
        the index at epoch start, back-filled at the current price.
        """
        idx_before = oracle.cumulative_usd_price_hours
        cumulative = oracle.cumulative_usd_price_hours
        price_usd = oracle_price_usd(oracle)

        reset_timestamp = oracle.reset_timestamp or 0
        reset_cumulative = oracle.reset_cumulative_usd_price_hours or 0.0

        state = await self.store.get_leaderboard_state()
        epoch = None
        if state and state.is_active:
            epoch = await self.get_epoch(state.current_epoch_number)
        epoch_start = epoch.start_time if epoch else 0
        is_first_update_in_epoch = (
            epoch_start > 0 and reset_timestamp < epoch_start and timestamp >= epoch_start
        )

        if oracle.last_update_timestamp > 0 and price_usd > 0:
            accumulate_from = oracle.last_update_timestamp
            # Assume the current price held since epoch start
            if is_first_update_in_epoch and oracle.last_update_timestamp > epoch_start:
                accumulate_from = epoch_start

            dt_seconds = timestamp - accumulate_from
            if dt_seconds > 0:
                cumulative += price_usd * (dt_seconds / TimeConstants.SECONDS_PER_HOUR)

        if epoch and is_first_update_in_epoch:
            baseline = idx_before
            if 0 < oracle.last_update_timestamp < epoch_start and price_usd > 0:
                seconds_to_start = epoch_start - oracle.last_update_timestamp
                baseline += price_usd * (seconds_to_start / TimeConstants.SECONDS_PER_HOUR)
            reset_timestamp = epoch_start
            reset_cumulative = baseline

        oracle.cumulative_usd_price_hours = cumulative
        oracle.reset_timestamp = reset_timestamp
        oracle.reset_cumulative_usd_price_hours = reset_cumulative
        oracle.last_update_timestamp = timestamp
        self.store.price_oracle_asset.set(oracle)
        return oracle, idx_before

    async def set_asset_price(self, asset: str, price: int, timestamp: int,
                              base_unit: int = PRICE_SCALE) -> PriceOracleAsset:
        """
        Record an observed oracle price.

        The index is first rolled forward at the previous price so the new
        price only applies from ``timestamp`` on.
        """
        asset = normalize_address(asset)
        price_e8 = price if base_unit == PRICE_SCALE else (price * PRICE_SCALE) // base_unit

        existing = await self.store.price_oracle_asset.get(asset)
        if existing:
            oracle, _ = await self.update_price_oracle_index(existing, timestamp)
        else:
            oracle = PriceOracleAsset(id=asset)

        oracle.price_e8 = price_e8
        oracle.last_price_usd = price_e8 / PRICE_SCALE
        oracle.last_update_timestamp = timestamp
        self.store.price_oracle_asset.set(oracle)
        return oracle
