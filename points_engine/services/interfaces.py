"""
Capability interfaces wired at composition time.

Settlement and epoch management depend on these instead of on the concrete
leaderboard and LP services, which breaks the import cycle between them.
"""

from typing import Protocol


class LeaderboardUpdater(Protocol):
    async def update(self, user_id: str, points: float, timestamp: int) -> None:
        ...

    async def update_all_time(self, user_id: str, lifetime_points: float, timestamp: int) -> None:
        ...

    async def remove_user(self, user_id: str, timestamp: int) -> None:
        ...


class LPSettlement(Protocol):
    async def settle_all_lp_pool_positions(self, timestamp: int) -> None:
        ...
