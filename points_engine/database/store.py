"""
Keyed entity store used by every engine component.

Handlers read and write entities through typed tables with the same three
operations the ingestion layer provides: an async ``get`` returning a detached
copy (or None), and synchronous ``set`` / ``delete_unsafe``. Writes are held in
memory and tracked as dirty until ``flush`` persists them through a SQLAlchemy
session. The two global singletons are reached only through versioned
accessors so every write to them bumps ``version``. Writes made inside
``staged()`` are undone if the block raises.
"""

import copy
import logging
from contextlib import contextmanager
from typing import Dict, Generic, Iterator, Optional, Set, Tuple, Type, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from points_engine.data_models.entities import (
    ContractToPoolMapping, DustLockToken, LPMintData, LPPoolConfig, LPPoolFeeStats, LPPoolPositionIndex,
    LPPoolRegistry, LPPoolState, LPPoolStats, LPPoolVolumeBucket, LeaderboardBlacklist, LeaderboardConfig,
    LeaderboardConfigSnapshot, LeaderboardEpoch, LeaderboardState, LeaderboardTotals,
    ManualPointsAward, NFTMultiplierConfig, NFTMultiplierSnapshot, NFTPartnership,
    NFTPartnershipRegistryState, PendingGatewayWithdrawal, PriceOracleAsset, ProtocolStats,
    Reserve, ReserveIndexSnapshot, ScoreBucket, SubToken, TokenInfo, TopK, TopKEntry,
    UserDailyActivity, UserEpochStats, UserIndex, UserLPBaseline, UserLPPosition,
    UserLPPositionIndex, UserLPStats, UserLeaderboardState, UserMultiplierSnapshot,
    UserNFTBaseline, UserNFTOwnership, UserPoints, UserReserve, UserReserveList,
    UserReservePoints, UserTokenList, UserVotingPowerHistory, VotingPowerTier,
)
from points_engine.database.models import EntityRecord, ProcessedEvent
from points_engine.utils.exceptions import StoreError

logger = logging.getLogger(__name__)

T = TypeVar('T')

STATE_ID = 'current'
CONFIG_ID = 'global'


class Table(Generic[T]):
    """In-memory keyed table for one entity type."""

    def __init__(self, entity_cls: Type[T]):
        self.entity_cls = entity_cls
        self.name = entity_cls.__name__
        self._rows: Dict[str, dict] = {}
        self._dirty: Set[str] = set()
        self._deleted: Set[str] = set()
        # Prior (row, dirty, deleted) per id touched while staging
        self._journal: Optional[Dict[str, Tuple[Optional[dict], bool, bool]]] = None

    def _record(self, entity_id: str) -> None:
        if self._journal is None or entity_id in self._journal:
            return
        self._journal[entity_id] = (
            self._rows.get(entity_id),
            entity_id in self._dirty,
            entity_id in self._deleted,
        )

    def begin(self) -> None:
        self._journal = {}

    def commit(self) -> None:
        self._journal = None

    def rollback(self) -> None:
        """Restore every row touched since ``begin``."""
        for entity_id, (row, dirty, deleted) in (self._journal or {}).items():
            if row is None:
                self._rows.pop(entity_id, None)
            else:
                self._rows[entity_id] = row
            if dirty:
                self._dirty.add(entity_id)
            else:
                self._dirty.discard(entity_id)
            if deleted:
                self._deleted.add(entity_id)
            else:
                self._deleted.discard(entity_id)
        self._journal = None

    async def get(self, entity_id: str) -> Optional[T]:
        row = self._rows.get(entity_id)
        if row is None:
            return None
        return self.entity_cls.from_dict(copy.deepcopy(row))

    def set(self, entity: T) -> None:
        if not isinstance(entity, self.entity_cls):
            raise StoreError('set', f"{type(entity).__name__} written to {self.name} table")
        if not getattr(entity, 'id', None):
            raise StoreError('set', f"{self.name} entity has no id")
        self._record(entity.id)
        self._rows[entity.id] = entity.to_dict()
        self._dirty.add(entity.id)
        self._deleted.discard(entity.id)

    def delete_unsafe(self, entity_id: str) -> None:
        self._record(entity_id)
        self._rows.pop(entity_id, None)
        self._dirty.discard(entity_id)
        self._deleted.add(entity_id)

    def ids(self) -> Iterator[str]:
        return iter(list(self._rows))

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._rows

    @property
    def has_pending_changes(self) -> bool:
        return bool(self._dirty or self._deleted)


class EntityStore:
    """All entity tables plus processed-event markers."""

    def __init__(self):
        # Epochs and configuration
        self.leaderboard_state: Table[LeaderboardState] = Table(LeaderboardState)
        self.leaderboard_epoch: Table[LeaderboardEpoch] = Table(LeaderboardEpoch)
        self.leaderboard_config: Table[LeaderboardConfig] = Table(LeaderboardConfig)
        self.leaderboard_config_snapshot: Table[LeaderboardConfigSnapshot] = Table(LeaderboardConfigSnapshot)
        self.protocol_stats: Table[ProtocolStats] = Table(ProtocolStats)

        # Per-user ledgers
        self.user_leaderboard_state: Table[UserLeaderboardState] = Table(UserLeaderboardState)
        self.user_epoch_stats: Table[UserEpochStats] = Table(UserEpochStats)
        self.user_points: Table[UserPoints] = Table(UserPoints)
        self.user_reserve_points: Table[UserReservePoints] = Table(UserReservePoints)
        self.user_daily_activity: Table[UserDailyActivity] = Table(UserDailyActivity)
        self.user_multiplier_snapshot: Table[UserMultiplierSnapshot] = Table(UserMultiplierSnapshot)
        self.user_voting_power_history: Table[UserVotingPowerHistory] = Table(UserVotingPowerHistory)

        # Voting power and NFTs
        self.voting_power_tier: Table[VotingPowerTier] = Table(VotingPowerTier)
        self.nft_multiplier_config: Table[NFTMultiplierConfig] = Table(NFTMultiplierConfig)
        self.nft_multiplier_snapshot: Table[NFTMultiplierSnapshot] = Table(NFTMultiplierSnapshot)
        self.nft_partnership: Table[NFTPartnership] = Table(NFTPartnership)
        self.nft_partnership_registry_state: Table[NFTPartnershipRegistryState] = Table(NFTPartnershipRegistryState)
        self.user_nft_ownership: Table[UserNFTOwnership] = Table(UserNFTOwnership)
        self.user_nft_baseline: Table[UserNFTBaseline] = Table(UserNFTBaseline)
        self.dust_lock_token: Table[DustLockToken] = Table(DustLockToken)
        self.user_token_list: Table[UserTokenList] = Table(UserTokenList)

        # Prices and reserves
        self.price_oracle_asset: Table[PriceOracleAsset] = Table(PriceOracleAsset)
        self.token_info: Table[TokenInfo] = Table(TokenInfo)
        self.reserve: Table[Reserve] = Table(Reserve)
        self.user_reserve: Table[UserReserve] = Table(UserReserve)
        self.user_reserve_list: Table[UserReserveList] = Table(UserReserveList)
        self.sub_token: Table[SubToken] = Table(SubToken)
        self.contract_to_pool_mapping: Table[ContractToPoolMapping] = Table(ContractToPoolMapping)
        self.reserve_index_snapshot: Table[ReserveIndexSnapshot] = Table(ReserveIndexSnapshot)
        self.pending_gateway_withdrawal: Table[PendingGatewayWithdrawal] = Table(PendingGatewayWithdrawal)

        # Admin and ranking
        self.leaderboard_blacklist: Table[LeaderboardBlacklist] = Table(LeaderboardBlacklist)
        self.manual_points_award: Table[ManualPointsAward] = Table(ManualPointsAward)
        self.top_k: Table[TopK] = Table(TopK)
        self.top_k_entry: Table[TopKEntry] = Table(TopKEntry)
        self.score_bucket: Table[ScoreBucket] = Table(ScoreBucket)
        self.leaderboard_totals: Table[LeaderboardTotals] = Table(LeaderboardTotals)
        self.user_index: Table[UserIndex] = Table(UserIndex)

        # Liquidity positions
        self.lp_pool_config: Table[LPPoolConfig] = Table(LPPoolConfig)
        self.lp_pool_registry: Table[LPPoolRegistry] = Table(LPPoolRegistry)
        self.lp_pool_state: Table[LPPoolState] = Table(LPPoolState)
        self.lp_pool_stats: Table[LPPoolStats] = Table(LPPoolStats)
        self.lp_pool_volume_bucket: Table[LPPoolVolumeBucket] = Table(LPPoolVolumeBucket)
        self.lp_pool_fee_stats: Table[LPPoolFeeStats] = Table(LPPoolFeeStats)
        self.user_lp_position: Table[UserLPPosition] = Table(UserLPPosition)
        self.user_lp_position_index: Table[UserLPPositionIndex] = Table(UserLPPositionIndex)
        self.lp_pool_position_index: Table[LPPoolPositionIndex] = Table(LPPoolPositionIndex)
        self.user_lp_stats: Table[UserLPStats] = Table(UserLPStats)
        self.user_lp_baseline: Table[UserLPBaseline] = Table(UserLPBaseline)
        self.lp_mint_data: Table[LPMintData] = Table(LPMintData)

        self._processed: Set[str] = set()
        self._pending_processed: Dict[str, tuple] = {}

    def tables(self) -> Dict[str, Table]:
        """Tables keyed by entity type name."""
        return {
            table.name: table
            for table in vars(self).values()
            if isinstance(table, Table)
        }

    def table_for(self, entity_type: str) -> Table:
        table = self.tables().get(entity_type)
        if table is None:
            raise StoreError('lookup', f"unknown entity type '{entity_type}'")
        return table

    # ============================================
    # Versioned singletons
    # ============================================

    async def get_leaderboard_state(self) -> Optional[LeaderboardState]:
        return await self.leaderboard_state.get(STATE_ID)

    def save_leaderboard_state(self, state: LeaderboardState) -> LeaderboardState:
        if state.id != STATE_ID:
            raise StoreError('save_leaderboard_state', f"unexpected id '{state.id}'")
        state.version += 1
        self.leaderboard_state.set(state)
        return state

    async def get_leaderboard_config(self) -> Optional[LeaderboardConfig]:
        return await self.leaderboard_config.get(CONFIG_ID)

    def save_leaderboard_config(self, config: LeaderboardConfig) -> LeaderboardConfig:
        if config.id != CONFIG_ID:
            raise StoreError('save_leaderboard_config', f"unexpected id '{config.id}'")
        config.version += 1
        self.leaderboard_config.set(config)
        return config

    # ============================================
    # Processed events
    # ============================================

    def is_processed(self, event_key: str) -> bool:
        return event_key in self._processed

    def mark_processed(self, event_key: str, event_name: str, block_number: int, log_index: int = 0) -> None:
        self._processed.add(event_key)
        self._pending_processed[event_key] = (event_name, block_number, log_index)

    # ============================================
    # Staging
    # ============================================

    @contextmanager
    def staged(self):
        """
        Stage every table write made inside the block.

        Writes are kept when the block exits normally and undone when it
        raises, so a failed event leaves no rows behind for the next flush.
        """
        tables = self.tables().values()
        if any(table._journal is not None for table in tables):
            raise StoreError('staged', "writes are already being staged")
        for table in tables:
            table.begin()
        try:
            yield self
        except BaseException:
            for table in tables:
                table.rollback()
            raise
        for table in tables:
            table.commit()

    # ============================================
    # Persistence
    # ============================================

    @property
    def has_pending_changes(self) -> bool:
        if self._pending_processed:
            return True
        return any(table.has_pending_changes for table in self.tables().values())

    async def flush(self, session: AsyncSession) -> int:
        """
        Write dirty entities and processed markers through the session.

        The caller owns the transaction. Returns the number of rows written
        or deleted.
        """
        written = 0
        for name, table in self.tables().items():
            for entity_id in sorted(table._deleted):
                await session.execute(
                    delete(EntityRecord).where(
                        EntityRecord.entity_type == name,
                        EntityRecord.entity_id == entity_id,
                    )
                )
                written += 1
            for entity_id in sorted(table._dirty):
                await session.merge(EntityRecord(
                    entity_type=name,
                    entity_id=entity_id,
                    payload=table._rows[entity_id],
                ))
                written += 1

        for event_key, (event_name, block_number, log_index) in self._pending_processed.items():
            await session.merge(ProcessedEvent(
                event_key=event_key,
                event_name=event_name,
                block_number=block_number,
                log_index=log_index,
            ))
            written += 1

        await session.flush()
        self.clear_pending()
        logger.debug(f"Flushed {written} entity changes")
        return written

    def clear_pending(self) -> None:
        for table in self.tables().values():
            table._dirty.clear()
            table._deleted.clear()
        self._pending_processed.clear()

    async def load(self, session: AsyncSession) -> int:
        """Hydrate every table from the database. Returns the number of entities loaded."""
        tables = self.tables()
        loaded = 0
        result = await session.execute(select(EntityRecord))
        for record in result.scalars():
            table = tables.get(record.entity_type)
            if table is None:
                logger.warning(f"Skipping stored entity of unknown type {record.entity_type}")
                continue
            table._rows[record.entity_id] = record.payload
            loaded += 1

        result = await session.execute(select(ProcessedEvent.event_key))
        self._processed.update(result.scalars())
        self.clear_pending()
        logger.info(f"Loaded {loaded} entities and {len(self._processed)} processed events")
        return loaded
