import argparse
import asyncio
import json
import logging
import sys
import traceback
from typing import List, Optional

from points_engine.config import Config
from points_engine.data_models.events import ChainEvent
from points_engine.database.database import Database
from points_engine.engine import PointsEngine
from points_engine.services.processor import EventProcessor
from points_engine.utils.exceptions import PointsEngineError
from points_engine.utils.logger import setup_logger
from points_engine.utils.redis_utils import RedisUtils

logger = setup_logger(__name__)


def read_events(path: str) -> List[ChainEvent]:
    """Decode a JSON-lines event file; blank lines are skipped."""
    events = []
    with open(path, encoding='utf-8') as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise PointsEngineError(f"{path}:{line_number}: invalid JSON: {e}") from e
            events.append(ChainEvent.from_dict(record))
    return events


async def replay(path: str, database_url: Optional[str] = None, persist: bool = True) -> PointsEngine:
    """Apply every event in ``path`` in (block, logIndex) order."""
    events = read_events(path)
    logger.info(f"Loaded {len(events)} events from {path}")

    db = None
    if persist:
        db = Database(database_url)
        await db.initialize()

    redis_client = await RedisUtils.create_redis_client()
    try:
        engine = PointsEngine(db=db)
        loaded = await engine.load()
        if loaded:
            logger.info(f"Restored {loaded} entities from the database")

        processor = EventProcessor(engine, redis_client)
        applied = await processor.process_many(events)
        logger.info(f"Replay complete: {applied} applied, {len(events) - applied} skipped")
        return engine
    finally:
        if redis_client is not None:
            await redis_client.aclose()
        if db:
            await db.close()


async def print_top_k(engine: PointsEngine, epoch_number: Optional[int] = None) -> None:
    if epoch_number is None:
        state = await engine.store.get_leaderboard_state()
        epoch_number = state.current_epoch_number if state else 0

    entries = await engine.leaderboard.get_top_k(epoch_number)
    scope = 'all-time' if epoch_number == 0 else f"epoch {epoch_number}"
    print(f"Top {len(entries)} ({scope})")
    for entry in entries:
        print(f"{entry.rank:>4}  {entry.user_id}  {entry.points:,.4f}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='points_engine', description='Leaderboard points engine')
    subparsers = parser.add_subparsers(dest='command', required=True)

    replay_parser = subparsers.add_parser('replay', help='Replay a JSON-lines event file')
    replay_parser.add_argument('events', help='Path to the events file')
    replay_parser.add_argument('--database-url', default=None,
                               help='Database URL (defaults to DATABASE_URL)')
    replay_parser.add_argument('--no-persist', action='store_true',
                               help='Keep state in memory only')
    replay_parser.add_argument('--epoch', type=int, default=None,
                               help='Epoch to print (defaults to the current epoch, 0 for all-time)')
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    Config.validate()

    try:
        engine = await replay(args.events, args.database_url, persist=not args.no_persist)
    except PointsEngineError as e:
        logger.error(f"Replay failed: {e}")
        return 1
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        traceback.print_exc()
        return 1

    await print_top_k(engine, args.epoch)
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
