"""
Transactional store interface and its in-memory implementation
"""

import itertools
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from service_orders.errors import InvalidTransition
from service_orders.models import OrderFilters, OrderStatus, ServiceOrder


class OrderTransaction(ABC):
    """Writes staged here become visible only on commit()"""

    @abstractmethod
    def create(self, data: Dict[str, Any]) -> ServiceOrder:
        pass

    @abstractmethod
    def lock(self, order_id: int, tenant_id: int) -> Optional[ServiceOrder]:
        """Re-read the order inside this transaction and hold it until commit or rollback"""
        pass

    @abstractmethod
    def update(self, order: ServiceOrder, changes: Dict[str, Any]) -> ServiceOrder:
        pass

    @abstractmethod
    def commit(self):
        pass

    @abstractmethod
    def rollback(self):
        pass


class OrderRepository(ABC):

    @abstractmethod
    def begin(self) -> OrderTransaction:
        pass

    @abstractmethod
    def find(self, order_id: int, tenant_id: int) -> Optional[ServiceOrder]:
        """Order with that id belonging to that tenant, or None"""
        pass

    @abstractmethod
    def list(self, filters: OrderFilters) -> List[ServiceOrder]:
        pass


# ============================================================================
# In-memory
# ============================================================================

class InMemoryTransaction(OrderTransaction):

    def __init__(self, repository: "InMemoryOrderRepository"):
        self.repository = repository
        self.staged: Dict[int, ServiceOrder] = {}
        # status each touched order had when this transaction read it
        self.read_status: Dict[int, OrderStatus] = {}
        self.closed = False

    def _check_open(self):
        if self.closed:
            raise RuntimeError("Transaction already closed")

    def create(self, data: Dict[str, Any]) -> ServiceOrder:
        self._check_open()
        now = datetime.now(timezone.utc)
        order = ServiceOrder(
            id=self.repository._next_id(),
            status=data.get("status", OrderStatus.RECEIVED),
            created_at=now,
            updated_at=now,
            **{k: v for k, v in data.items() if k != "status"},
        )
        self.staged[order.id] = order
        return replace(order)

    def lock(self, order_id: int, tenant_id: int) -> Optional[ServiceOrder]:
        self._check_open()
        order = self.repository.find(order_id, tenant_id)
        if order is not None:
            self.read_status[order.id] = order.status
        return order

    def update(self, order: ServiceOrder, changes: Dict[str, Any]) -> ServiceOrder:
        self._check_open()
        self.read_status.setdefault(order.id, order.status)
        current = self.staged.get(order.id) or order
        updated = current.with_changes({**changes, "updated_at": datetime.now(timezone.utc)})
        self.staged[order.id] = updated
        return replace(updated)

    def commit(self):
        self._check_open()
        try:
            self.repository._apply(self.staged, self.read_status)
        finally:
            self.closed = True

    def rollback(self):
        self.staged.clear()
        self.closed = True


class InMemoryOrderRepository(OrderRepository):
    """Dict-backed store for local runs and tests"""

    def __init__(self):
        self._lock = threading.Lock()
        self._orders: Dict[int, ServiceOrder] = {}
        self._ids = itertools.count(1)

    def _next_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def _apply(self, staged: Dict[int, ServiceOrder], read_status: Dict[int, OrderStatus]):
        with self._lock:
            for order_id, status in read_status.items():
                stored = self._orders.get(order_id)
                if stored is None or stored.status is not status:
                    raise InvalidTransition(f"Service order {order_id} changed while it was being updated")
            for order_id, order in staged.items():
                self._orders[order_id] = replace(order, transaction_ids=list(order.transaction_ids))

    def begin(self) -> OrderTransaction:
        return InMemoryTransaction(self)

    def find(self, order_id: int, tenant_id: int) -> Optional[ServiceOrder]:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.tenant_id != tenant_id:
                return None
            return replace(order, transaction_ids=list(order.transaction_ids))

    def list(self, filters: OrderFilters) -> List[ServiceOrder]:
        with self._lock:
            return [replace(o) for o in sorted(self._orders.values(), key=lambda o: o.id) if filters.matches(o)]

    def __len__(self):
        with self._lock:
            return len(self._orders)
