"""
Decoded chain event as delivered by the ingestion layer.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from points_engine.constants import normalize_address
from points_engine.utils.exceptions import EventDecodeError


@dataclass(frozen=True)
class ChainEvent:
    """One decoded log. ``params`` holds the event fields by their ABI names."""
    contract: str
    event_name: str
    params: Dict[str, Any]
    block_number: int
    block_timestamp: int
    tx_hash: str
    log_index: int
    src_address: str = ''
    tx_from: Optional[str] = None

    @property
    def key(self) -> str:
        """Deduplication key for re-delivered logs."""
        return f"{self.tx_hash}:{self.log_index}"

    @property
    def src(self) -> str:
        return normalize_address(self.src_address)

    def param(self, name: str) -> Any:
        """Required parameter lookup."""
        if name not in self.params:
            raise EventDecodeError(self.event_name, f"missing parameter '{name}'")
        return self.params[name]

    def int_param(self, name: str) -> int:
        value = self.param(name)
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise EventDecodeError(self.event_name, f"'{name}' is not an integer: {value!r}") from e

    def address_param(self, name: str) -> str:
        value = self.param(name)
        if not isinstance(value, str):
            raise EventDecodeError(self.event_name, f"'{name}' is not an address: {value!r}")
        return normalize_address(value)

    def optional_int(self, name: str) -> Optional[int]:
        if self.params.get(name) is None:
            return None
        return self.int_param(name)

    @classmethod
    def from_dict(cls, data: dict) -> 'ChainEvent':
        """Build from a JSON record (replay files)."""
        try:
            return cls(
                contract=data['contract'],
                event_name=data['event'],
                params=dict(data.get('params') or {}),
                block_number=int(data['block']['number']),
                block_timestamp=int(data['block']['timestamp']),
                tx_hash=data['transaction']['hash'],
                log_index=int(data.get('logIndex', 0)),
                src_address=data.get('srcAddress', ''),
                tx_from=data['transaction'].get('from'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise EventDecodeError(str(data.get('event', '?')), f"bad event record: {e}") from e
