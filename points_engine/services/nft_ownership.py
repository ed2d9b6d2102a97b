"""
Partner NFT collections and per-user holdings.

Each partnership is either static-boost (``static_boost_bps > 0``, a flat
bonus) or decay-type (part of the geometric series). Holdings are tracked
from Transfer events; a one-time on-chain balance check per (user,
collection) baselines holders who acquired their NFTs before the
partnership was tracked.
"""

import logging
from typing import Optional, Tuple

from points_engine.config import Config
from points_engine.constants import normalize_address
from points_engine.data_models.entities import (
    NFTMultiplierConfig, NFTMultiplierSnapshot, NFTPartnership, NFTPartnershipRegistryState,
    UserNFTBaseline, UserNFTOwnership,
)
from points_engine.services.base import BaseService
from points_engine.services.chain_reader import ChainReader
from points_engine.services.multipliers import MultiplierService

logger = logging.getLogger(__name__)

REGISTRY_ID = 'current'


class NFTOwnershipService(BaseService):
    """Partnership registry, holdings and chain baselining."""

    def __init__(self, store, chain_reader: ChainReader, multipliers: MultiplierService):
        super().__init__(store)
        self.chain_reader = chain_reader
        self.multipliers = multipliers

    # ============================================
    # Registry
    # ============================================

    async def update_active_collections(self, collection: str, is_active: bool, timestamp: int) -> None:
        collection = normalize_address(collection)
        registry = await self.store.nft_partnership_registry_state.get(REGISTRY_ID)
        if not registry:
            registry = NFTPartnershipRegistryState(id=REGISTRY_ID, last_update=timestamp)

        if is_active and collection not in registry.active_collections:
            registry.active_collections.append(collection)
        elif not is_active and collection in registry.active_collections:
            registry.active_collections.remove(collection)
        registry.total_active = len(registry.active_collections)
        registry.last_update = timestamp
        self.store.nft_partnership_registry_state.set(registry)

    def set_multiplier_config(self, first_bonus: int, decay_ratio: int, timestamp: int) -> None:
        self.store.nft_multiplier_config.set(NFTMultiplierConfig(
            id='current', first_bonus=first_bonus, decay_ratio=decay_ratio, last_update=timestamp,
        ))

    async def add_partnership(self, collection: str, name: str, active: bool, start_timestamp: int,
                              end_timestamp: int, first_bonus: int, decay_ratio: int, timestamp: int,
                              static_boost_bps: Optional[int] = None) -> NFTPartnership:
        """
        Register a partner collection.

        A missing ``static_boost_bps`` keeps whatever boost the partnership
        already had; an explicit 0 makes it decay-type.
        """
        collection = normalize_address(collection)
        existing = await self.store.nft_partnership.get(collection)
        if static_boost_bps is None and existing:
            static_boost_bps = existing.static_boost_bps

        partnership = NFTPartnership(
            id=collection,
            collection=collection,
            name=name,
            static_boost_bps=static_boost_bps,
            active=active,
            start_timestamp=start_timestamp,
            end_timestamp=end_timestamp if end_timestamp > 0 else None,
            added_at=timestamp,
            last_update=timestamp,
        )
        self.store.nft_partnership.set(partnership)
        self.set_multiplier_config(first_bonus, decay_ratio, timestamp)
        await self.update_active_collections(collection, active, timestamp)
        logger.info(f"Partnership {name} ({collection}) added, active={active}")
        return partnership

    async def update_partnership(self, collection: str, name: str, active: bool, start_timestamp: int,
                                 end_timestamp: int, timestamp: int,
                                 static_boost_bps: Optional[int] = None) -> None:
        collection = normalize_address(collection)
        partnership = await self.store.nft_partnership.get(collection)
        if partnership:
            partnership.name = name
            partnership.active = active
            if static_boost_bps is not None:
                partnership.static_boost_bps = static_boost_bps
            partnership.start_timestamp = start_timestamp
            partnership.end_timestamp = end_timestamp if end_timestamp > 0 else None
            partnership.last_update = timestamp
            self.store.nft_partnership.set(partnership)
        await self.update_active_collections(collection, active, timestamp)

    async def remove_partnership(self, collection: str, timestamp: int) -> None:
        collection = normalize_address(collection)
        partnership = await self.store.nft_partnership.get(collection)
        if partnership:
            partnership.active = False
            partnership.last_update = timestamp
            self.store.nft_partnership.set(partnership)
        await self.update_active_collections(collection, False, timestamp)

    def update_multiplier_params(self, first_bonus: int, decay_ratio: int, timestamp: int) -> None:
        self.store.nft_multiplier_snapshot.set(NFTMultiplierSnapshot(
            id=str(timestamp), first_bonus=first_bonus, decay_ratio=decay_ratio, timestamp=timestamp,
        ))
        self.set_multiplier_config(first_bonus, decay_ratio, timestamp)

    # ============================================
    # Holdings
    # ============================================

    async def touch_ownership(self, user_id: str, collection: str, timestamp: int, block_number: int) -> None:
        ownership = await self.store.user_nft_ownership.get(
            f"{normalize_address(user_id)}:{normalize_address(collection)}"
        )
        if not ownership:
            return
        ownership.last_checked_timestamp = timestamp
        ownership.last_checked_block = block_number
        self.store.user_nft_ownership.set(ownership)

    def _write_balance(self, user_id: str, collection: str, balance: int, existed: bool,
                       timestamp: int, block_number: int) -> None:
        ownership_id = f"{user_id}:{collection}"
        if balance > 0:
            self.store.user_nft_ownership.set(UserNFTOwnership(
                id=ownership_id,
                user_id=user_id,
                partnership=collection,
                balance=balance,
                has_nft=True,
                last_checked_timestamp=timestamp,
                last_checked_block=block_number,
            ))
        elif existed:
            self.store.user_nft_ownership.delete_unsafe(ownership_id)

    async def apply_balance_delta(self, user_id: str, collection: str, delta: int, timestamp: int,
                                  block_number: int) -> Tuple[bool, bool]:
        """
        Shift a user's balance in one collection, clamped at zero.

        Returns ``(was_owning, has_nft)``.
        """
        user_id = normalize_address(user_id)
        collection = normalize_address(collection)
        ownership = await self.store.user_nft_ownership.get(f"{user_id}:{collection}")
        old_balance = ownership.balance if ownership else 0
        new_balance = max(old_balance + delta, 0)
        self._write_balance(user_id, collection, new_balance, ownership is not None, timestamp, block_number)
        return old_balance > 0, new_balance > 0

    async def set_balance(self, user_id: str, collection: str, balance: int, timestamp: int,
                          block_number: int) -> Tuple[bool, bool]:
        """Overwrite a user's balance from an authoritative source. Returns ``(was_owning, has_nft)``."""
        user_id = normalize_address(user_id)
        collection = normalize_address(collection)
        ownership = await self.store.user_nft_ownership.get(f"{user_id}:{collection}")
        old_balance = ownership.balance if ownership else 0
        self._write_balance(user_id, collection, max(balance, 0), ownership is not None, timestamp, block_number)
        return old_balance > 0, balance > 0

    def write_baseline(self, user_id: str, collection: str, timestamp: int, block_number: int) -> None:
        self.store.user_nft_baseline.set(UserNFTBaseline(
            id=f"{user_id}:{collection}",
            user_id=user_id,
            partnership=collection,
            checked_at=timestamp,
            checked_block=block_number,
        ))

    async def sync_user_nft_ownership_from_chain(self, user_id: str, timestamp: int,
                                                 block_number: Optional[int] = None) -> None:
        """
        Baseline each active collection once per user from its on-chain balance.

        Collections whose balance cannot be read stay unbaselined and are
        retried on the next settlement.
        """
        if not Config.nft_chain_sync_enabled():
            return
        user_id = normalize_address(user_id)
        registry = await self.store.nft_partnership_registry_state.get(REGISTRY_ID)
        if not registry or not registry.active_collections:
            return

        for collection in list(registry.active_collections):
            collection = normalize_address(collection)
            if f"{user_id}:{collection}" in self.store.user_nft_baseline:
                continue

            balance = await self.chain_reader.read_nft_balance(collection, user_id, block_number)
            if balance is None:
                logger.debug(f"NFT balance unavailable for {user_id} in {collection}")
                continue

            was_owning, has_nft = await self.set_balance(user_id, collection, balance, timestamp,
                                                         block_number or 0)
            if was_owning != has_nft:
                await self.multipliers.apply_nft_balance_change(user_id, has_nft, timestamp,
                                                                use_partnerships=False)
            self.write_baseline(user_id, collection, timestamp, block_number or 0)
