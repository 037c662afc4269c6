"""
RabbitMQ adapter - request publishing and reply consumption
"""

import json
import logging
import threading
import time
from typing import Any, Dict, Iterable, NamedTuple, Optional

import pika
import pika.exceptions

from service_orders.errors import BrokerError

logger = logging.getLogger(__name__)


class ReplyRoute(NamedTuple):
    """Where the remote service publishes its reply, and where we consume it"""
    exchange: str
    routing_key: str
    queue: str


def connection_parameters(url: str) -> pika.URLParameters:
    params = pika.URLParameters(url)
    params.heartbeat = 30
    params.blocked_connection_timeout = 30
    return params


def declare_topology(channel, routes: Iterable[ReplyRoute]):
    """Declare reply exchanges, reply queues and their bindings"""
    for route in routes:
        channel.exchange_declare(exchange=route.exchange, exchange_type="direct", durable=True)
        channel.queue_declare(queue=route.queue, durable=True)
        channel.queue_bind(queue=route.queue, exchange=route.exchange, routing_key=route.routing_key)
        logger.info(f"Reply route declared {route.exchange} -[{route.routing_key}]-> {route.queue}")


# ============================================================================
# Publisher
# ============================================================================

class RabbitMQPublisher:
    """
    Publishes RPC requests over a single connection.

    pika's BlockingConnection is not thread-safe, so every publish holds the
    lock. A connection found closed is re-opened before publishing; a publish
    that fails is reported as BrokerError and never retried.
    """

    def __init__(self, url: str, connection_factory=pika.BlockingConnection):
        self.url = url
        self.connection_factory = connection_factory
        self.connection = None
        self.channel = None
        self._lock = threading.Lock()

    def _connect(self):
        self.connection = self.connection_factory(connection_parameters(self.url))
        self.channel = self.connection.channel()
        logger.info("Publisher connected to RabbitMQ")

    def _ensure_channel(self):
        if self.connection is None or self.connection.is_closed or self.channel is None or self.channel.is_closed:
            if self.connection is not None and not self.connection.is_closed:
                self.connection.close()
            self._connect()

    def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: Dict[str, Any],
        correlation_id: str,
        reply: ReplyRoute,
        expiration_ms: Optional[int] = None,
    ):
        properties = pika.BasicProperties(
            content_type="application/json",
            correlation_id=correlation_id,
            reply_to=reply.routing_key,
            headers={"reply_exchange": reply.exchange},
            # the request is useless to us once the caller gave up
            expiration=str(int(expiration_ms)) if expiration_ms is not None else None,
        )
        body = json.dumps(payload, default=str).encode("utf-8")

        with self._lock:
            try:
                self._ensure_channel()
                self.channel.basic_publish(
                    exchange=exchange,
                    routing_key=routing_key,
                    body=body,
                    properties=properties,
                )
            except pika.exceptions.AMQPError as e:
                logger.error(f"Publish failed exchange={exchange} correlation_id={correlation_id} err={e!r}")
                self.connection = None
                self.channel = None
                raise BrokerError(f"Failed to publish to {exchange}: {e!r}") from e

        logger.info(f"Published exchange={exchange} correlation_id={correlation_id}")

    def close(self):
        with self._lock:
            try:
                if self.connection and not self.connection.is_closed:
                    self.connection.close()
                logger.info("Publisher connection closed")
            except pika.exceptions.AMQPError as e:
                logger.error(f"Error closing publisher connection: {e!r}")
            finally:
                self.connection = None
                self.channel = None


# ============================================================================
# Reply consumer
# ============================================================================

def extract_correlation_id(properties, body: Any) -> Optional[str]:
    """
    Prefer the AMQP correlation_id property; fall back to a JSON
    'correlationId' field in the body.
    """
    if properties is not None and properties.correlation_id:
        return str(properties.correlation_id)
    if isinstance(body, dict) and body.get("correlationId"):
        return str(body["correlationId"])
    return None


class ReplyConsumer(threading.Thread):
    """
    Consumes every reply queue on its own connection and hands each reply to
    the correlation registry. Replies nobody waits for any more are dropped.
    """

    def __init__(
        self,
        url: str,
        registry,
        routes: Iterable[ReplyRoute],
        connection_factory=pika.BlockingConnection,
        reconnect_delay: float = 2.0,
    ):
        super().__init__(name="reply-consumer", daemon=True)
        self.url = url
        self.registry = registry
        self.routes = list(routes)
        self.connection_factory = connection_factory
        self.reconnect_delay = reconnect_delay
        self.connection = None
        self.channel = None
        self._stopping = threading.Event()

    def on_message(self, channel, method, properties, body: bytes):
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Dropping malformed reply err={e}")
            channel.basic_ack(delivery_tag=method.delivery_tag)
            return

        correlation_id = extract_correlation_id(properties, payload)
        if correlation_id is None:
            logger.warning("Dropping reply without correlation id")
        else:
            self.registry.complete(correlation_id, payload)

        channel.basic_ack(delivery_tag=method.delivery_tag)

    def _consume(self):
        self.connection = self.connection_factory(connection_parameters(self.url))
        self.channel = self.connection.channel()
        declare_topology(self.channel, self.routes)
        for route in self.routes:
            self.channel.basic_consume(queue=route.queue, on_message_callback=self.on_message)
        if self._stopping.is_set():
            return
        logger.info(f"Consuming replies on {', '.join(r.queue for r in self.routes)}")
        self.channel.start_consuming()

    def run(self):
        while not self._stopping.is_set():
            try:
                self._consume()
            except pika.exceptions.AMQPError as e:
                if self._stopping.is_set():
                    break
                logger.warning(f"Reply consumer lost connection (will reconnect) err={e!r}")
                time.sleep(self.reconnect_delay)
            except Exception as e:
                logger.error(f"Reply consumer failed (will reconnect) err={e!r}")
                time.sleep(self.reconnect_delay)
            finally:
                self._close_connection()

    def _close_connection(self):
        try:
            if self.connection and not self.connection.is_closed:
                self.connection.close()
        except pika.exceptions.AMQPError as e:
            logger.warning(f"Error closing consumer connection: {e!r}")
        self.connection = None
        self.channel = None

    def stop(self, timeout: float = 5.0):
        self._stopping.set()
        connection, channel = self.connection, self.channel
        if connection is not None and channel is not None and not connection.is_closed:
            connection.add_callback_threadsafe(channel.stop_consuming)
        if self.is_alive():
            self.join(timeout)
        else:
            self._close_connection()
        logger.info("Reply consumer stopped")
