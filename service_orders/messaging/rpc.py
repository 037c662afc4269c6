"""
RPC Bridge
Presents a publish / reply-queue exchange as one blocking call bounded by a timeout
"""

import logging
import uuid
from typing import Any, Dict

from service_orders.errors import BrokerError, RPCTimeout
from service_orders.messaging.broker import ReplyRoute
from service_orders.messaging.registry import CorrelationRegistry, Outcome

logger = logging.getLogger(__name__)


class RpcBridge:
    """
    Publishes a request tagged with a fresh correlation id and waits for the
    reply consumer to settle the matching registry entry.

    Single attempt, no retry: the call either returns the reply payload, raises
    RPCTimeout when the deadline wins the race, or raises BrokerError when the
    publish itself fails.
    """

    def __init__(self, publisher, registry: CorrelationRegistry):
        self.publisher = publisher
        self.registry = registry

    def call(
        self,
        exchange: str,
        routing_key: str,
        payload: Dict[str, Any],
        reply: ReplyRoute,
        timeout_ms: int,
    ) -> Any:
        correlation_id = str(uuid.uuid4())
        pending = self.registry.register(correlation_id, timeout_ms / 1000.0)

        logger.info(
            f"RPC call exchange={exchange} reply_queue={reply.queue} "
            f"correlation_id={correlation_id} timeout={timeout_ms}ms"
        )

        try:
            self.publisher.publish(
                exchange,
                routing_key,
                payload,
                correlation_id=correlation_id,
                reply=reply,
                expiration_ms=timeout_ms,
            )
        except BrokerError:
            self.registry.expire(correlation_id)
            raise
        except Exception as e:
            self.registry.expire(correlation_id)
            logger.error(f"Publish to {exchange} failed unexpectedly corr={correlation_id} err={e!r}")
            raise BrokerError(f"Failed to publish to {exchange}: {e}") from e

        if not pending.wait(pending.remaining()):
            # deadline passed; a delivery may still slip in before expire()
            self.registry.expire(correlation_id)
            pending.wait()

        if pending.outcome is Outcome.TIMED_OUT:
            logger.warning(
                f"RPC timeout exchange={exchange} correlation_id={correlation_id} after {timeout_ms}ms"
            )
            raise RPCTimeout(f"No response received from {exchange} within {timeout_ms}ms")

        logger.info(f"RPC reply received correlation_id={correlation_id}")
        return pending.payload
