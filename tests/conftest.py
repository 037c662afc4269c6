import threading
from typing import Any, Callable, Dict, List, NamedTuple, Optional

import pytest

from service_orders import config
from service_orders.messaging.broker import ReplyRoute
from service_orders.messaging.gateways import AuthorizationGateway, StockGateway
from service_orders.messaging.registry import CorrelationRegistry
from service_orders.messaging.rpc import RpcBridge
from service_orders.models import OrderStatus
from service_orders.repository import InMemoryOrderRepository
from service_orders.workflow import ServiceOrderWorkflow

TEST_TIMEOUT_MS = 200

TECHNICIAN = {"valid": True, "role": "ROLE_TECHNICIAN", "userId": 7, "companyId": 1}


class Published(NamedTuple):
    exchange: str
    routing_key: str
    payload: Dict[str, Any]
    correlation_id: str
    reply: ReplyRoute
    expiration_ms: Optional[int]


class FakePublisher:
    """
    Stands in for RabbitMQPublisher and plays the remote services: a reply
    handler registered for an exchange answers through the real registry,
    right away or after a delay. No handler (or a None answer) means no reply.
    """

    def __init__(self, registry: CorrelationRegistry):
        self.registry = registry
        self.published: List[Published] = []
        self.replies: Dict[str, Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]] = {}
        self.delays: Dict[str, float] = {}
        self.error: Optional[Exception] = None
        self.timers: List[threading.Timer] = []
        self._lock = threading.Lock()

    def publish(self, exchange, routing_key, payload, correlation_id, reply, expiration_ms=None):
        if self.error is not None:
            raise self.error
        with self._lock:
            self.published.append(Published(exchange, routing_key, payload, correlation_id, reply, expiration_ms))

        handler = self.replies.get(exchange)
        if handler is None:
            return
        response = handler(payload)
        if response is None:
            return

        delay = self.delays.get(exchange, 0)
        if delay:
            timer = threading.Timer(delay, self.registry.complete, (correlation_id, response))
            self.timers.append(timer)
            timer.start()
        else:
            self.registry.complete(correlation_id, response)

    def calls_to(self, exchange: str) -> List[Published]:
        with self._lock:
            return [p for p in self.published if p.exchange == exchange]

    def join_timers(self):
        for timer in self.timers:
            timer.join()


@pytest.fixture
def registry():
    return CorrelationRegistry()


@pytest.fixture
def publisher(registry):
    fake = FakePublisher(registry)
    fake.replies[config.AUTH_EXCHANGE] = lambda payload: dict(TECHNICIAN)
    fake.replies[config.VERIFICATION_EXCHANGE] = lambda payload: {"role": "CLIENT"}
    fake.replies[config.STOCK_EXCHANGE] = lambda payload: {"transactionIds": [101, 102]}
    yield fake
    fake.join_timers()


@pytest.fixture
def bridge(publisher, registry):
    return RpcBridge(publisher, registry)


@pytest.fixture
def auth_gateway(bridge):
    return AuthorizationGateway(bridge, timeout_ms=TEST_TIMEOUT_MS, verification_timeout_ms=TEST_TIMEOUT_MS)


@pytest.fixture
def stock_gateway(bridge):
    return StockGateway(bridge, timeout_ms=TEST_TIMEOUT_MS)


@pytest.fixture
def repository():
    return InMemoryOrderRepository()


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def workflow(repository, auth_gateway, stock_gateway, notifications):
    return ServiceOrderWorkflow(
        repository,
        auth_gateway,
        stock_gateway,
        notifier=lambda order_id, status: notifications.append((order_id, status)),
    )


@pytest.fixture
def seed_order(repository):
    """Persist an order directly, bypassing the workflow"""

    def _seed(status: OrderStatus = OrderStatus.IN_PROGRESS, **fields):
        data = {"technician_id": 7, "client_id": 55, "tenant_id": 1, "status": status}
        data.update(fields)
        tx = repository.begin()
        order = tx.create(data)
        tx.commit()
        return order

    return _seed
