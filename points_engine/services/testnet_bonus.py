"""
Epoch-1 testnet participation bonus.

The bonus map is a JSON object ``{address: bonusBps}`` loaded once from
``TESTNET_BONUS_FILE``. Addresses missing from the map get no bonus.
"""

import json
import logging
from typing import Dict, Optional

from points_engine.config import Config
from points_engine.constants import normalize_address
from points_engine.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

BONUS_EPOCH = 1


class TestnetBonusService:
    """Lookup of per-address testnet bonus bps."""

    __test__ = False

    def __init__(self, bonuses: Optional[Dict[str, int]] = None):
        self._bonuses = {normalize_address(k): int(v) for k, v in (bonuses or {}).items()}

    @classmethod
    def from_file(cls, path: Optional[str] = None) -> 'TestnetBonusService':
        path = path if path is not None else Config.TESTNET_BONUS_FILE
        if not path:
            return cls()
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Could not load testnet bonus file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Testnet bonus file {path} must contain a JSON object")

        logger.info(f"Loaded {len(data)} testnet bonus entries from {path}")
        return cls(data)

    def get_bonus_bps(self, user_id: str) -> int:
        return self._bonuses.get(normalize_address(user_id), 0)

    def bonus_for_epoch(self, user_id: str, epoch_number: int) -> int:
        if epoch_number != BONUS_EPOCH:
            return 0
        return self.get_bonus_bps(user_id)

    def __len__(self) -> int:
        return len(self._bonuses)
