import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from service_orders import config, main
from service_orders.main import create_app
from service_orders.models import OrderStatus

HEADERS = {"Authorization": "Bearer technician"}

NEW_ORDER = {
    "serviceOrder": {
        "initial_date": "2999-01-01T10:00:00Z",
        "delivery_declaration": "Printer",
        "client_id": 55,
        "problem": "Paper jam",
    }
}


@pytest.fixture
def client(workflow):
    with TestClient(create_app(workflow)) as test_client:
        yield test_client


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_create_returns_201_with_received_order(client, repository):
    response = client.post("/serviceorder/create", json=NEW_ORDER, headers=HEADERS)

    assert response.status_code == 201
    body = response.json()
    assert body["serviceOrder"]["status"] == "Received"
    assert body["serviceOrder"]["tenant_id"] == 1
    assert len(repository) == 1


def test_create_rejects_invalid_structure(client, publisher):
    bad = {"serviceOrder": {"client_id": "abc"}}

    response = client.post("/serviceorder/create", json=bad, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_FIELDS"
    assert publisher.published == []


def test_create_rejects_initial_date_in_past(client):
    past = {"serviceOrder": dict(NEW_ORDER["serviceOrder"], initial_date="2001-01-01T10:00:00Z")}

    assert client.post("/serviceorder/create", json=past, headers=HEADERS).status_code == 400


def test_create_maps_authorization_timeout_to_504(client, publisher, repository):
    del publisher.replies[config.AUTH_EXCHANGE]

    response = client.post("/serviceorder/create", json=NEW_ORDER, headers=HEADERS)

    assert response.status_code == 504
    assert response.json()["error"] == "RPC_TIMEOUT"
    assert len(repository) == 0


def test_create_maps_denied_access_to_403(client, publisher):
    publisher.replies[config.AUTH_EXCHANGE] = lambda payload: {"valid": False}

    assert client.post("/serviceorder/create", json=NEW_ORDER, headers=HEADERS).status_code == 403


def test_update_to_completed(client, seed_order, repository):
    order = seed_order(OrderStatus.IN_PROGRESS)
    body = {
        "serviceOrder": {
            "id": order.id,
            "status": "completed",
            "final_date": "2030-01-01T18:00:00Z",
            "return_declaration": "Fixed",
            "hours": 2,
            "items": [{"item_id": 3, "amount": 1}],
        }
    }

    response = client.put("/serviceorder/update", json=body, headers=HEADERS)

    assert response.status_code == 200
    assert repository.find(order.id, 1).transaction_ids == [101, 102]


def test_update_without_completion_fields_is_400(client, seed_order, publisher):
    order = seed_order(OrderStatus.IN_PROGRESS)
    body = {"serviceOrder": {"id": order.id, "status": "completed"}}

    response = client.put("/serviceorder/update", json=body, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_TRANSITION"
    assert publisher.published == []


def test_update_rejects_non_positive_amount(client, seed_order):
    order = seed_order(OrderStatus.IN_PROGRESS)
    body = {
        "serviceOrder": {
            "id": order.id,
            "status": "completed",
            "final_date": "2030-01-01T18:00:00Z",
            "return_declaration": "Fixed",
            "hours": 2,
            "items": [{"item_id": 3, "amount": 0}],
        }
    }

    response = client.put("/serviceorder/update", json=body, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_FIELDS"


def test_update_unknown_order_is_404(client):
    body = {"serviceOrder": {"id": 999, "status": "inProgress"}}

    assert client.put("/serviceorder/update", json=body, headers=HEADERS).status_code == 404


def test_stock_rejection_message_is_returned(client, seed_order, publisher):
    order = seed_order(OrderStatus.IN_PROGRESS)
    publisher.replies[config.STOCK_EXCHANGE] = lambda payload: {"error": "Item 3 out of stock"}
    body = {
        "serviceOrder": {
            "id": order.id,
            "status": "completed",
            "final_date": "2030-01-01T18:00:00Z",
            "return_declaration": "Fixed",
            "hours": 2,
            "items": [{"item_id": 3, "amount": 1}],
        }
    }

    response = client.put("/serviceorder/update", json=body, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["message"] == "Item 3 out of stock"


def test_list_with_filters(client, seed_order):
    seed_order(OrderStatus.COMPLETED, client_id=55, total_value=120.0)
    seed_order(OrderStatus.RECEIVED, client_id=56, total_value=10.0)

    response = client.get(
        "/serviceorder/list",
        params={"client_id": 55, "status": "completed", "total_value_gte": 100},
        headers=HEADERS,
    )

    assert response.status_code == 200
    orders = response.json()["serviceOrders"]
    assert [o["client_id"] for o in orders] == [55]


def test_list_rejects_unknown_status(client):
    response = client.get("/serviceorder/list", params={"status": "cancelled"}, headers=HEADERS)

    assert response.status_code == 400


def test_startup_failure_stops_consumer_and_closes_publisher(monkeypatch):
    events = []

    class RecordingPublisher:
        def __init__(self, url):
            pass

        def close(self):
            events.append("publisher closed")

    class RecordingConsumer:
        def __init__(self, url, registry, routes):
            pass

        def start(self):
            events.append("consumer started")

        def stop(self):
            events.append("consumer stopped")

    def failing_repository():
        raise RuntimeError("DATABASE_URL not set")

    monkeypatch.setattr(main, "RabbitMQPublisher", RecordingPublisher)
    monkeypatch.setattr(main, "ReplyConsumer", RecordingConsumer)
    monkeypatch.setattr(main, "build_repository", failing_repository)

    async def start_app():
        async with main.broker_lifespan(FastAPI()):
            pass

    with pytest.raises(RuntimeError):
        asyncio.run(start_app())

    assert events == ["consumer started", "consumer stopped", "publisher closed"]
