"""
Correlation Registry
Process-wide table of outstanding RPC calls keyed by correlation id.

Delivery (consumer thread) and timeout (caller thread) race to settle the
same entry; whichever pops it first wins and the other becomes a no-op.
"""

import logging
import threading
import time
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class Outcome(Enum):
    DELIVERED = "DELIVERED"
    TIMED_OUT = "TIMED_OUT"


class PendingCall:
    """Single-use resolution slot for one outstanding call"""

    def __init__(self, correlation_id: str, timeout: float):
        self.correlation_id = correlation_id
        self.created_at = time.monotonic()
        self.deadline = self.created_at + timeout
        self.outcome: Optional[Outcome] = None
        self.payload: Any = None
        self._settled = threading.Event()

    @property
    def settled(self) -> bool:
        return self._settled.is_set()

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until settled or timeout elapses; True if settled"""
        return self._settled.wait(timeout)

    def _settle(self, outcome: Outcome, payload: Any = None):
        self.outcome = outcome
        self.payload = payload
        self._settled.set()

    def __repr__(self):
        return f"PendingCall({self.correlation_id}, outcome={self.outcome})"


class CorrelationRegistry:
    """Lock-guarded map of correlation id -> PendingCall"""

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingCall] = {}

    def register(self, correlation_id: str, timeout: float) -> PendingCall:
        with self._lock:
            if correlation_id in self._pending:
                raise ValueError(f"Correlation id {correlation_id} is already outstanding")
            pending = PendingCall(correlation_id, timeout)
            self._pending[correlation_id] = pending
        return pending

    def complete(self, correlation_id: str, payload: Any) -> bool:
        """Resolve with a delivered payload; False if already resolved or unknown"""
        with self._lock:
            pending = self._pending.pop(correlation_id, None)
        if pending is None:
            logger.warning(f"Dropping reply for unknown or settled correlation id {correlation_id}")
            return False
        pending._settle(Outcome.DELIVERED, payload)
        return True

    def expire(self, correlation_id: str) -> bool:
        """Resolve with the timeout marker; False if already resolved or unknown"""
        with self._lock:
            pending = self._pending.pop(correlation_id, None)
        if pending is None:
            return False
        pending._settle(Outcome.TIMED_OUT)
        return True

    def is_pending(self, correlation_id: str) -> bool:
        with self._lock:
            return correlation_id in self._pending

    def __len__(self):
        with self._lock:
            return len(self._pending)
