"""
Tests for the replay command line.
"""

import json

import pytest

from conftest import BLOCK, DAY, T0, USER
from points_engine.config import Config
from points_engine.main import build_parser, main, read_events, replay
from points_engine.utils.exceptions import PointsEngineError

E18 = 10 ** 18


def record(contract, event, params, block, timestamp, tx_hash, log_index=0):
    return {
        'contract': contract,
        'event': event,
        'params': params,
        'block': {'number': block, 'timestamp': timestamp},
        'transaction': {'hash': tx_hash, 'from': USER},
        'logIndex': log_index,
    }


def write_events(path, records):
    path.write_text('\n'.join(json.dumps(r) for r in records) + '\n\n', encoding='utf-8')
    return str(path)


@pytest.fixture
def events_file(tmp_path):
    # Written out of order; replay sorts by block
    return write_events(tmp_path / 'events.jsonl', [
        record('LeaderboardConfig', 'PointsAwarded', {'user': USER, 'points': str(5 * E18), 'reason': 'launch'},
               BLOCK + 1, T0 + 10, '0xb'),
        record('EpochManager', 'EpochStart', {'epochNumber': 1, 'startTime': T0}, BLOCK, T0, '0xa'),
    ])


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    monkeypatch.setattr(Config, 'REDIS_URL', None)
    monkeypatch.setattr(Config, 'TESTNET_BONUS_FILE', '')


class TestReadEvents:

    def test_blank_lines_are_skipped(self, events_file):
        events = read_events(events_file)
        assert [e.event_name for e in events] == ['PointsAwarded', 'EpochStart']

    def test_invalid_json_reports_line(self, tmp_path):
        path = tmp_path / 'bad.jsonl'
        path.write_text('{"contract": "Pool"}\n{not json\n', encoding='utf-8')

        with pytest.raises(PointsEngineError, match=':2:'):
            read_events(str(path))


class TestReplay:

    @pytest.mark.asyncio
    async def test_in_memory_replay(self, events_file):
        engine = await replay(events_file, persist=False)

        top = await engine.leaderboard.get_top_k(1)
        assert [(entry.user_id, entry.points) for entry in top] == [(USER, 5.0)]

    @pytest.mark.asyncio
    async def test_replay_resumes_from_database(self, events_file, tmp_path):
        database_url = f"sqlite:///{tmp_path / 'points.db'}"
        await replay(events_file, database_url)

        # A second run over the same file applies nothing new
        more = write_events(tmp_path / 'more.jsonl', [
            record('LeaderboardConfig', 'PointsAwarded', {'user': USER, 'points': str(5 * E18), 'reason': 'launch'},
                   BLOCK + 1, T0 + 10, '0xb'),
            record('LeaderboardConfig', 'PointsAwarded', {'user': USER, 'points': str(E18), 'reason': 'quest'},
                   BLOCK + 2, T0 + DAY, '0xc'),
        ])
        engine = await replay(more, database_url)

        stats = await engine.store.user_epoch_stats.get(f"{USER}:1")
        assert stats.manual_award_points == 6 * E18


class TestCli:

    def test_parser(self):
        args = build_parser().parse_args(['replay', 'events.jsonl', '--no-persist', '--epoch', '0'])
        assert args.command == 'replay'
        assert args.events == 'events.jsonl'
        assert args.no_persist
        assert args.epoch == 0

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    @pytest.mark.asyncio
    async def test_main_prints_leaderboard(self, events_file, capsys):
        assert await main(['replay', events_file, '--no-persist']) == 0

        output = capsys.readouterr().out
        assert 'Top 1 (epoch 1)' in output
        assert USER in output

    @pytest.mark.asyncio
    async def test_main_reports_bad_input(self, tmp_path):
        path = tmp_path / 'bad.jsonl'
        path.write_text('{not json\n', encoding='utf-8')

        assert await main(['replay', str(path), '--no-persist']) == 1
