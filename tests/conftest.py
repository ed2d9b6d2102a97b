"""
Shared fixtures for the points engine tests.

Every test runs offline: chain reads and the default-config bootstrap are
disabled unless a test re-enables them.
"""

import itertools

import pytest

from points_engine.constants import LeaderboardConstants
from points_engine.data_models.entities import LeaderboardEpoch, LeaderboardState
from points_engine.data_models.events import ChainEvent
from points_engine.database.store import EntityStore
from points_engine.engine import PointsEngine
from points_engine.services.processor import EventProcessor
from points_engine.services.testnet_bonus import TestnetBonusService

DAY = 86400

# Midnight UTC, so day boundaries are easy to reason about
T0 = 19676 * DAY
BLOCK = LeaderboardConstants.LEADERBOARD_START_BLOCK + 1000

USER = '0x1111111111111111111111111111111111111111'
OTHER_USER = '0x2222222222222222222222222222222222222222'


@pytest.fixture(autouse=True)
def offline_env(monkeypatch):
    monkeypatch.setenv('DISABLE_ETH_CALLS', 'true')
    monkeypatch.setenv('DISABLE_BOOTSTRAP', 'true')
    monkeypatch.delenv('DISABLE_EXTERNAL_CALLS', raising=False)
    monkeypatch.delenv('ENABLE_NFT_CHAIN_SYNC', raising=False)
    monkeypatch.delenv('ENABLE_LP_CHAIN_SYNC', raising=False)


@pytest.fixture
def store():
    return EntityStore()


@pytest.fixture
def engine(store):
    return PointsEngine(store=store, testnet_bonus=TestnetBonusService())


@pytest.fixture
def processor(engine):
    return EventProcessor(engine)


class EventFactory:
    """Builds ChainEvents with unique transaction hashes and increasing log indices."""

    def __init__(self):
        self._counter = itertools.count(1)

    def __call__(self, contract, event_name, params=None, block=BLOCK, timestamp=T0, src='',
                 tx_hash=None, log_index=None, tx_from=None):
        n = next(self._counter)
        return ChainEvent(
            contract=contract,
            event_name=event_name,
            params=dict(params or {}),
            block_number=block,
            block_timestamp=timestamp,
            tx_hash=tx_hash or f"0x{n:064x}",
            log_index=n if log_index is None else log_index,
            src_address=src,
            tx_from=tx_from,
        )


@pytest.fixture
def make_event():
    return EventFactory()


def activate_epoch(store, epoch_number=1, start_time=T0):
    """Put the store into an active epoch without going through the schedule."""
    store.leaderboard_epoch.set(LeaderboardEpoch(
        id=str(epoch_number), epoch_number=epoch_number, start_time=start_time,
        scheduled_start_time=start_time, is_active=True,
    ))
    store.save_leaderboard_state(LeaderboardState(current_epoch_number=epoch_number, is_active=True))
