"""
Service order domain model
Status enum with its transition table, the order record, remote call results
and listing filters
"""

from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================================
# Status
# ============================================================================

class OrderStatus(Enum):
    """Order status; values are the ones stored and exposed on the wire"""
    RECEIVED = "Received"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    DELIVERED = "delivered"


TRANSITIONS = {
    OrderStatus.RECEIVED: {OrderStatus.IN_PROGRESS},
    OrderStatus.IN_PROGRESS: {OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: {OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED, OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
}

TERMINAL_STATUSES = {OrderStatus.DELIVERED}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


# ============================================================================
# Order
# ============================================================================

@dataclass
class ServiceOrder:
    id: int
    technician_id: int
    client_id: int
    tenant_id: int
    status: OrderStatus
    initial_date: Optional[datetime] = None
    final_date: Optional[datetime] = None
    delivery_declaration: Optional[str] = None
    problem: Optional[str] = None
    solution: Optional[str] = None
    return_declaration: Optional[str] = None
    hours: Optional[int] = None
    total_value: Optional[float] = None
    transaction_ids: List[int] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def with_changes(self, changes: Dict[str, Any]) -> "ServiceOrder":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("initial_date", "final_date", "created_at", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass(frozen=True)
class LineItem:
    item_id: int
    amount: int

    def to_dict(self) -> Dict[str, int]:
        return {"item_id": self.item_id, "amount": self.amount}


# ============================================================================
# Remote call results
# ============================================================================

class CallFailure(Enum):
    """Why a gateway call produced a negative result"""
    DENIED = "denied"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    BROKER = "broker"


@dataclass(frozen=True)
class AuthorizationResult:
    valid: bool
    role: Optional[str] = None
    user_id: Optional[int] = None
    tenant_id: Optional[int] = None
    reason: Optional[str] = None
    failure: Optional[CallFailure] = None

    @classmethod
    def denied(cls, reason: str, failure: CallFailure = CallFailure.DENIED, role: Optional[str] = None):
        return cls(valid=False, role=role, reason=reason, failure=failure)


@dataclass(frozen=True)
class StockValidationResult:
    success: bool
    transaction_ids: List[int] = field(default_factory=list)
    error: Optional[str] = None
    failure: Optional[CallFailure] = None

    @classmethod
    def failed(cls, error: str, failure: CallFailure = CallFailure.REJECTED):
        return cls(success=False, error=error, failure=failure)


# ============================================================================
# Listing
# ============================================================================

@dataclass
class OrderFilters:
    """
    Listing filters, always scoped to one tenant

    initial_date_from / initial_date_to both bound the order's initial_date;
    with only one of them set the range is open on the other side.
    """
    tenant_id: int
    client_id: Optional[int] = None
    initial_date_from: Optional[datetime] = None
    initial_date_to: Optional[datetime] = None
    status: Optional[OrderStatus] = None
    total_value_gte: Optional[float] = None
    total_value_lte: Optional[float] = None

    def matches(self, order: ServiceOrder) -> bool:
        if order.tenant_id != self.tenant_id:
            return False
        if self.client_id is not None and order.client_id != self.client_id:
            return False
        if self.initial_date_from is not None or self.initial_date_to is not None:
            if order.initial_date is None:
                return False
            if self.initial_date_from is not None and order.initial_date < self.initial_date_from:
                return False
            if self.initial_date_to is not None and order.initial_date > self.initial_date_to:
                return False
        if self.status is not None and order.status != self.status:
            return False
        if self.total_value_gte is not None or self.total_value_lte is not None:
            if order.total_value is None:
                return False
            if self.total_value_gte is not None and order.total_value < self.total_value_gte:
                return False
            if self.total_value_lte is not None and order.total_value > self.total_value_lte:
                return False
        return True
