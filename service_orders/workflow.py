"""
Service Order Workflow
Sequences the authorization and stock calls around a transactional boundary
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from service_orders import config
from service_orders.errors import (
    AuthorizationDenied,
    BrokerError,
    InvalidTransition,
    NotFound,
    RPCTimeout,
    ServiceOrderError,
    StockValidationError,
)
from service_orders.messaging.gateways import AuthorizationGateway, StockGateway
from service_orders.models import (
    AuthorizationResult,
    CallFailure,
    LineItem,
    OrderFilters,
    OrderStatus,
    ServiceOrder,
    StockValidationResult,
    can_transition,
)
from service_orders.repository import OrderRepository
from service_orders.utils.notify import push_status

logger = logging.getLogger(__name__)

COMPLETION_FIELDS_MESSAGE = (
    "Final date, return declaration, hours, and items are required "
    "when marking a service order as completed."
)


def authorization_error(result: AuthorizationResult) -> ServiceOrderError:
    if result.failure is CallFailure.TIMEOUT:
        return RPCTimeout(result.reason or "Authorization timed out")
    if result.failure is CallFailure.BROKER:
        return BrokerError(result.reason or "Authorization unavailable")
    return AuthorizationDenied(result.reason or "Access denied")


def stock_error(result: StockValidationResult) -> ServiceOrderError:
    if result.failure is CallFailure.TIMEOUT:
        return RPCTimeout(result.error or "Stock validation timed out")
    if result.failure is CallFailure.BROKER:
        return BrokerError(result.error or "Stock validation unavailable")
    return StockValidationError(result.error or "Stock validation failed for one or more items.")


def to_line_items(items: Optional[Iterable[Any]]) -> List[LineItem]:
    line_items = []
    for item in items or []:
        if isinstance(item, LineItem):
            line_items.append(item)
        else:
            line_items.append(LineItem(item_id=int(item["item_id"]), amount=int(item["amount"])))
    return line_items


def require_completion_fields(
    final_date: Optional[datetime],
    return_declaration: Optional[str],
    hours: Optional[int],
    items: Optional[Iterable[Any]],
):
    # an empty item list would mean "release everything", never a completion
    if final_date is None or not return_declaration or hours is None or not items:
        raise InvalidTransition(COMPLETION_FIELDS_MESSAGE)


class ServiceOrderWorkflow:
    """
    Creates service orders and moves them between statuses.

    Flow for every mutation:
    1. Local checks (required fields, known order, non-terminal status)
    2. Open the transaction, lock the order row and re-check its status
    3. Remote gateway call (stock), if the transition needs one
    4. Persist and commit, or roll back and raise on any remote failure

    The transaction stays open for the remote round trip so a failed stock
    call leaves the row untouched.
    """

    def __init__(
        self,
        repository: OrderRepository,
        auth_gateway: AuthorizationGateway,
        stock_gateway: StockGateway,
        client_role: str = config.CLIENT_ROLE,
        notifier: Callable[[int, str], None] = push_status,
    ):
        self.repository = repository
        self.auth_gateway = auth_gateway
        self.stock_gateway = stock_gateway
        self.client_role = client_role
        self.notifier = notifier

    @contextmanager
    def _transaction(self):
        tx = self.repository.begin()
        try:
            yield tx
        except Exception:
            logger.warning("Rolling back service order transaction")
            tx.rollback()
            raise
        tx.commit()

    def _authorize(self, token: Optional[str]) -> AuthorizationResult:
        access = self.auth_gateway.authorize(token)
        if not access.valid:
            raise authorization_error(access)
        return access

    def _committed(self, order: ServiceOrder) -> ServiceOrder:
        logger.info(f"Service order {order.id} is now {order.status.value}")
        self.notifier(order.id, order.status.value)
        return order

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def create(self, token: Optional[str], body: Dict[str, Any]) -> ServiceOrder:
        """
        Register a new order in status Received.

        The caller must hold the technician role and body['client_id'] must
        resolve to a client; nothing is written otherwise.
        """
        access = self._authorize(token)

        client_id = body["client_id"]
        client = self.auth_gateway.verify_client(client_id)
        if not client.valid:
            raise authorization_error(client)
        if client.role != self.client_role:
            raise AuthorizationDenied("UNKNOWN CLIENT", code="INVALID_ROLE", status_code=400)

        with self._transaction() as tx:
            order = tx.create({
                "technician_id": access.user_id,
                "client_id": client_id,
                "tenant_id": access.tenant_id,
                "status": OrderStatus.RECEIVED,
                "initial_date": body.get("initial_date"),
                "delivery_declaration": body.get("delivery_declaration"),
                "problem": body.get("problem"),
            })

        return self._committed(order)

    # ------------------------------------------------------------------
    # status updates
    # ------------------------------------------------------------------

    def update_status(self, token: Optional[str], body: Dict[str, Any]) -> ServiceOrder:
        try:
            target = OrderStatus(body.get("status"))
        except ValueError:
            raise InvalidTransition(f"Unsupported status {body.get('status')!r}")

        if target is OrderStatus.COMPLETED:
            require_completion_fields(
                body.get("final_date"), body.get("return_declaration"), body.get("hours"), body.get("items")
            )
        elif target is not OrderStatus.IN_PROGRESS:
            raise InvalidTransition(f"Status {target.value} cannot be set through an update")

        access = self._authorize(token)
        order = self.repository.find(body["id"], access.tenant_id)
        if order is None:
            raise NotFound(f"Service order with ID '{body['id']}' not found.")

        if target is OrderStatus.IN_PROGRESS:
            return self.transition_to_in_progress(order)
        return self.transition_to_completed(
            order, body["final_date"], body["return_declaration"], body["hours"], body["items"]
        )

    def _check_transition(self, order: ServiceOrder, target: OrderStatus):
        if order.is_terminal:
            raise InvalidTransition(f"Service order {order.id} is {order.status.value} and can no longer change")
        if not can_transition(order.status, target):
            raise InvalidTransition(
                f"Service order {order.id} cannot move from {order.status.value} to {target.value}"
            )

    def _lock(self, tx, order: ServiceOrder, target: OrderStatus) -> ServiceOrder:
        """Fresh, locked copy of the order, re-checked against the target status"""
        current = tx.lock(order.id, order.tenant_id)
        if current is None:
            raise NotFound(f"Service order with ID '{order.id}' not found.")
        self._check_transition(current, target)
        return current

    def transition_to_in_progress(self, order: ServiceOrder) -> ServiceOrder:
        """
        Move an order to inProgress.

        Coming back from completed releases the stock reserved under the
        order's transaction ids first and clears the completion fields.
        """
        self._check_transition(order, OrderStatus.IN_PROGRESS)

        with self._transaction() as tx:
            order = self._lock(tx, order, OrderStatus.IN_PROGRESS)
            if order.status is OrderStatus.COMPLETED:
                result = self.stock_gateway.validate_stock(
                    order.tenant_id, order.technician_id, order.client_id, [], order.transaction_ids
                )
                if not result.success:
                    logger.warning(f"Stock release failed for order {order.id}: {result.error}")
                    raise stock_error(result)
                changes = {
                    "status": OrderStatus.IN_PROGRESS,
                    "final_date": None,
                    "return_declaration": None,
                    "hours": None,
                }
            else:
                changes = {"status": OrderStatus.IN_PROGRESS}
            updated = tx.update(order, changes)

        return self._committed(updated)

    def transition_to_completed(
        self,
        order: ServiceOrder,
        final_date: Optional[datetime],
        return_declaration: Optional[str],
        hours: Optional[int],
        items: Optional[Iterable[Any]],
    ) -> ServiceOrder:
        require_completion_fields(final_date, return_declaration, hours, items)
        self._check_transition(order, OrderStatus.COMPLETED)
        line_items = to_line_items(items)

        with self._transaction() as tx:
            order = self._lock(tx, order, OrderStatus.COMPLETED)
            result = self.stock_gateway.validate_stock(
                order.tenant_id, order.technician_id, order.client_id, line_items, order.transaction_ids or []
            )
            if not result.success:
                logger.warning(f"Stock validation failed for order {order.id}: {result.error}")
                raise stock_error(result)

            updated = tx.update(order, {
                "status": OrderStatus.COMPLETED,
                "transaction_ids": result.transaction_ids,
                "final_date": final_date,
                "return_declaration": return_declaration,
                "hours": hours,
            })

        return self._committed(updated)

    # ------------------------------------------------------------------
    # listing
    # ------------------------------------------------------------------

    def list_orders(self, token: Optional[str], **criteria) -> List[ServiceOrder]:
        access = self._authorize(token)
        filters = OrderFilters(tenant_id=access.tenant_id, **criteria)
        return self.repository.list(filters)
