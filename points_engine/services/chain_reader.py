"""
Best-effort on-chain reads.

Every method returns None when the value is unavailable; callers keep their
stored state in that case. ``NullChainReader`` is the offline default and is
also what the engine uses whenever external calls are disabled.
"""

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class LPPositionData:
    """Position fields as returned by a position manager's ``positions``."""
    token0: str
    token1: str
    fee: int
    tick_lower: int
    tick_upper: int
    liquidity: int


@dataclass(frozen=True)
class Slot0:
    sqrt_price_x96: int
    tick: int


class ChainReader(Protocol):
    async def read_token_decimals(self, token: str, block_number: Optional[int] = None) -> Optional[int]:
        ...

    async def read_nft_balance(self, collection: str, owner: str,
                               block_number: Optional[int] = None) -> Optional[int]:
        ...

    async def read_lp_position(self, position_manager: str, token_id: int,
                               block_number: Optional[int] = None) -> Optional[LPPositionData]:
        ...

    async def read_lp_balance(self, position_manager: str, owner: str,
                              block_number: Optional[int] = None) -> Optional[int]:
        ...

    async def read_lp_token_of_owner_by_index(self, position_manager: str, owner: str, index: int,
                                              block_number: Optional[int] = None) -> Optional[int]:
        ...

    async def read_pool_slot0(self, pool: str, block_number: Optional[int] = None) -> Optional[Slot0]:
        ...

    async def read_pool_fee(self, pool: str, block_number: Optional[int] = None) -> Optional[int]:
        ...


class NullChainReader:
    """Reader with no chain access: everything is unavailable."""

    async def read_token_decimals(self, token, block_number=None):
        return None

    async def read_nft_balance(self, collection, owner, block_number=None):
        return None

    async def read_lp_position(self, position_manager, token_id, block_number=None):
        return None

    async def read_lp_balance(self, position_manager, owner, block_number=None):
        return None

    async def read_lp_token_of_owner_by_index(self, position_manager, owner, index, block_number=None):
        return None

    async def read_pool_slot0(self, pool, block_number=None):
        return None

    async def read_pool_fee(self, pool, block_number=None):
        return None
