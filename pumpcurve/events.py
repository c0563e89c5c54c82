"""
Notifications emitted by the curve controller for indexers and monitoring.
"""
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenCreated:
    mint: bytes
    creator: bytes
    name: str
    symbol: str
    timestamp: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TokenBought:
    mint: bytes
    buyer: bytes
    base_in: int
    asset_out: int
    protocol_fee: int
    virtual_base_reserve: int
    virtual_asset_reserve: int
    completed: bool
    timestamp: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TokenSold:
    mint: bytes
    seller: bytes
    asset_in: int
    base_out: int
    virtual_base_reserve: int
    virtual_asset_reserve: int
    timestamp: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CurveCompleted:
    """Final snapshot handed to the pool migration subsystem."""
    mint: bytes
    creator: bytes
    virtual_base_reserve: int
    virtual_asset_reserve: int
    real_base_accrued: int
    total_sold: int
    completed_at: int

    def to_dict(self) -> dict:
        return asdict(self)


class EventLog:
    """
    Synchronous fan-out of notifications.

    Subscribers run in the emitting thread, in subscription order. A failing
    subscriber is logged and skipped; it never undoes a committed operation.
    """

    def __init__(self, max_history: Optional[int] = 10_000):
        self.max_history = max_history
        self.history = []
        self._subscribers: list[Callable] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable):
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable):
        """Stop delivering to callback. Unknown callbacks are ignored."""
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def emit(self, event):
        with self._lock:
            self.history.append(event)
            if self.max_history is not None and len(self.history) > self.max_history:
                del self.history[:len(self.history) - self.max_history]
            subscribers = list(self._subscribers)

        logger.debug(f"Event {type(event).__name__}: {event}")
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber {callback!r} failed on {type(event).__name__}: {e}")

    def of_type(self, event_type) -> list:
        with self._lock:
            return [e for e in self.history if isinstance(e, event_type)]
