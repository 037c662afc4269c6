import threading
import time

import pytest

from service_orders.errors import BrokerError, RPCTimeout
from service_orders.messaging.broker import ReplyRoute

REPLY = ReplyRoute("test.response_ex", "test.reply", "test.response")


def test_call_returns_reply_and_releases_registry_entry(bridge, publisher, registry):
    publisher.replies["test.ex"] = lambda payload: {"echo": payload["n"]}

    assert bridge.call("test.ex", "", {"n": 1}, REPLY, 500) == {"echo": 1}
    assert len(registry) == 0

    sent = publisher.calls_to("test.ex")[0]
    assert sent.reply == REPLY
    assert sent.expiration_ms == 500
    assert sent.payload == {"n": 1}


def test_call_waits_for_delayed_reply(bridge, publisher):
    publisher.replies["test.ex"] = lambda payload: {"ok": True}
    publisher.delays["test.ex"] = 0.05

    assert bridge.call("test.ex", "", {}, REPLY, 1000) == {"ok": True}


def test_call_times_out_without_reply(bridge, publisher, registry):
    started = time.monotonic()
    with pytest.raises(RPCTimeout):
        bridge.call("silent.ex", "", {}, REPLY, 100)

    assert time.monotonic() - started >= 0.09
    assert len(registry) == 0
    assert len(publisher.calls_to("silent.ex")) == 1


def test_reply_after_deadline_is_not_exposed(bridge, publisher, registry):
    publisher.replies["slow.ex"] = lambda payload: {"late": True}
    publisher.delays["slow.ex"] = 0.3

    with pytest.raises(RPCTimeout):
        bridge.call("slow.ex", "", {}, REPLY, 50)

    publisher.join_timers()
    correlation_id = publisher.calls_to("slow.ex")[0].correlation_id
    assert registry.complete(correlation_id, {"again": True}) is False
    assert len(registry) == 0


def test_publish_failure_surfaces_as_broker_error(bridge, publisher, registry):
    publisher.error = BrokerError("connection refused")

    with pytest.raises(BrokerError):
        bridge.call("test.ex", "", {}, REPLY, 500)
    assert len(registry) == 0


def test_unexpected_publish_error_becomes_broker_error_and_frees_entry(bridge, publisher, registry):
    publisher.error = RuntimeError("socket closed")

    with pytest.raises(BrokerError) as exc:
        bridge.call("test.ex", "", {}, REPLY, 500)

    assert isinstance(exc.value.__cause__, RuntimeError)
    assert len(registry) == 0


def test_each_call_gets_a_fresh_correlation_id(bridge, publisher):
    publisher.replies["test.ex"] = lambda payload: {}
    for _ in range(5):
        bridge.call("test.ex", "", {}, REPLY, 500)

    ids = {p.correlation_id for p in publisher.calls_to("test.ex")}
    assert len(ids) == 5


def test_out_of_order_replies_reach_their_own_callers(bridge, publisher):
    publisher.replies["first.ex"] = lambda payload: {"answer": "first"}
    publisher.replies["second.ex"] = lambda payload: {"answer": "second"}
    publisher.delays["first.ex"] = 0.2
    publisher.delays["second.ex"] = 0.01

    results = {}
    finished = []

    def run(name):
        results[name] = bridge.call(f"{name}.ex", "", {}, REPLY, 2000)
        finished.append(name)

    first = threading.Thread(target=run, args=("first",))
    first.start()
    time.sleep(0.02)
    second = threading.Thread(target=run, args=("second",))
    second.start()
    first.join()
    second.join()

    assert results == {"first": {"answer": "first"}, "second": {"answer": "second"}}
    assert finished == ["second", "first"]
