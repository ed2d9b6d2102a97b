"""
Composition root: builds every service over one entity store.

The leaderboard and LP services are handed to the ledger and the epoch
manager through their capability interfaces, so no service module imports
the one that calls back into it.
"""

import importlib
from typing import Optional

from points_engine.config import Config
from points_engine.database.database import Database
from points_engine.database.store import EntityStore
from points_engine.services.chain_reader import ChainReader, NullChainReader
from points_engine.services.configuration import ConfigurationService
from points_engine.services.epochs import EpochService
from points_engine.services.leaderboard import LeaderboardService
from points_engine.services.lp_accrual import LPAccrualService
from points_engine.services.multipliers import MultiplierService
from points_engine.services.nft_ownership import NFTOwnershipService
from points_engine.services.points_ledger import PointsLedgerService
from points_engine.services.price_oracle import PriceOracleService
from points_engine.services.reserve_accrual import ReserveAccrualService
from points_engine.services.settlement import SettlementService
from points_engine.services.testnet_bonus import TestnetBonusService
from points_engine.services.voting_power import VotingPowerService
from points_engine.utils.logger import setup_logger

HANDLER_MODULES = [
    'points_engine.handlers.leaderboard_events',
    'points_engine.handlers.nft_events',
    'points_engine.handlers.dustlock_events',
    'points_engine.handlers.keeper_events',
    'points_engine.handlers.lp_events',
    'points_engine.handlers.reserve_events',
]


def load_handlers() -> None:
    """Import every handler module so its handlers register themselves."""
    for module in HANDLER_MODULES:
        importlib.import_module(module)


class PointsEngine:
    """All engine services wired over a shared store."""

    def __init__(self, store: Optional[EntityStore] = None, chain_reader: Optional[ChainReader] = None,
                 testnet_bonus: Optional[TestnetBonusService] = None, db: Optional[Database] = None):
        self.logger = setup_logger(__name__)
        self.store = store if store is not None else EntityStore()
        self.db = db

        # External reads are only attempted when enabled
        if chain_reader is None or not Config.should_use_eth_calls():
            chain_reader = NullChainReader()
        self.chain_reader = chain_reader

        self.price_oracle = PriceOracleService(self.store)
        self.voting_power = VotingPowerService(self.store)
        self.multipliers = MultiplierService(self.store, self.voting_power)
        self.leaderboard = LeaderboardService(self.store, Config.TOP_K_SIZE)
        self.testnet_bonus = testnet_bonus if testnet_bonus is not None else TestnetBonusService.from_file()
        self.ledger = PointsLedgerService(self.store, self.leaderboard, self.testnet_bonus)
        self.lp = LPAccrualService(self.store, self.chain_reader, self.multipliers, self.ledger)
        self.epochs = EpochService(self.store, self.lp)
        self.reserves = ReserveAccrualService(self.store, self.price_oracle, self.multipliers, self.ledger)
        self.nft_ownership = NFTOwnershipService(self.store, self.chain_reader, self.multipliers)
        self.settlement = SettlementService(
            self.store, self.price_oracle, self.voting_power, self.multipliers,
            self.reserves, self.lp, self.nft_ownership, self.ledger,
        )
        self.configuration = ConfigurationService(self.store, self.nft_ownership, self.lp)

        load_handlers()

    async def load(self) -> int:
        """Hydrate the store from the attached database, if any."""
        if self.db is None:
            return 0
        async with self.db.get_session() as session:
            return await self.store.load(session)

    async def flush(self) -> int:
        """Persist pending store changes in one transaction."""
        if self.db is None or not self.store.has_pending_changes:
            return 0
        async with self.db.transaction() as session:
            return await self.store.flush(session)
