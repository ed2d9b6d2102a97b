"""
Custom exceptions for the points engine.

Missing entities are not errors: store lookups return None and callers skip.
These exceptions cover malformed input and infrastructure misuse only.
"""

class PointsEngineError(Exception):
    """Base exception for points engine errors."""
    def __init__(self, message: str, context: dict = None):
        super().__init__(message)
        self.context = context or {}

class EventDecodeError(PointsEngineError):
    """Raised when an event is missing required parameters or has bad values."""
    def __init__(self, event_name: str, details: str):
        super().__init__(
            f"Malformed '{event_name}' event: {details}",
            {'event': event_name}
        )

class UnknownEventError(PointsEngineError):
    """Raised when no handler is registered for an event."""
    def __init__(self, contract: str, event_name: str):
        super().__init__(
            f"No handler registered for {contract}.{event_name}",
            {'contract': contract, 'event': event_name}
        )

class StoreError(PointsEngineError):
    """Raised when the entity store is used incorrectly."""
    def __init__(self, operation: str, details: str = None):
        super().__init__(
            f"Store error during {operation}: {details}",
            {'operation': operation}
        )

class ConfigurationError(PointsEngineError):
    """Raised when engine configuration is invalid."""

class ProcessingLockError(PointsEngineError):
    """Raised when the distributed processing lock cannot be acquired."""
    def __init__(self, lock_name: str, timeout: float):
        super().__init__(
            f"Could not acquire processing lock '{lock_name}' within {timeout}s",
            {'lock': lock_name}
        )
