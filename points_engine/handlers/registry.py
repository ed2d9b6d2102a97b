"""
Handler registry keyed by ``(contract, event_name)``.

Handler modules register themselves at import time with the ``handler``
decorator; every handler is ``async def fn(event, engine)``.
"""

from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from points_engine.utils.exceptions import UnknownEventError

Handler = Callable[..., Awaitable[None]]

_HANDLERS: Dict[Tuple[str, str], Handler] = {}


def handler(contract: str, *event_names: str):
    """Register the decorated coroutine for one or more events of a contract."""
    def decorator(fn: Handler) -> Handler:
        for event_name in event_names:
            _HANDLERS[(contract, event_name)] = fn
        return fn
    return decorator


def get_handler(contract: str, event_name: str) -> Optional[Handler]:
    return _HANDLERS.get((contract, event_name))


def require_handler(contract: str, event_name: str) -> Handler:
    fn = get_handler(contract, event_name)
    if fn is None:
        raise UnknownEventError(contract, event_name)
    return fn


def registered_events() -> List[Tuple[str, str]]:
    return sorted(_HANDLERS)
