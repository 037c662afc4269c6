"""
Typed gateways over the RPC bridge.

Low-level failures (timeout, broker) never escape as exceptions from here:
they come back as negative results whose ``failure`` says what went wrong.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from service_orders import config
from service_orders.errors import BrokerError, RPCTimeout
from service_orders.messaging.broker import ReplyRoute
from service_orders.messaging.rpc import RpcBridge
from service_orders.models import (
    AuthorizationResult,
    CallFailure,
    LineItem,
    StockValidationResult,
)

logger = logging.getLogger(__name__)


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class AuthorizationGateway:
    """Exchanges credentials and client ids for role / tenant decisions"""

    def __init__(
        self,
        bridge: RpcBridge,
        timeout_ms: int = config.AUTH_TIMEOUT_MS,
        verification_timeout_ms: int = config.VERIFICATION_TIMEOUT_MS,
        required_role: str = config.REQUIRED_ROLE,
    ):
        self.bridge = bridge
        self.timeout_ms = timeout_ms
        self.verification_timeout_ms = verification_timeout_ms
        self.required_role = required_role
        self.reply = ReplyRoute(config.AUTH_REPLY_EXCHANGE, config.AUTH_REPLY_ROUTING_KEY, config.AUTH_REPLY_QUEUE)
        self.verification_reply = ReplyRoute(
            config.VERIFICATION_REPLY_EXCHANGE,
            config.VERIFICATION_REPLY_ROUTING_KEY,
            config.VERIFICATION_REPLY_QUEUE,
        )

    def _call(self, exchange: str, routing_key: str, payload: Dict[str, Any], reply: ReplyRoute, timeout_ms: int):
        try:
            return self.bridge.call(exchange, routing_key, payload, reply, timeout_ms), None
        except RPCTimeout as e:
            return None, AuthorizationResult.denied(e.message, CallFailure.TIMEOUT)
        except BrokerError as e:
            return None, AuthorizationResult.denied(e.message, CallFailure.BROKER)

    def authorize(self, token: Optional[str]) -> AuthorizationResult:
        """
        Validate the caller's credential token.

        Valid only when the authorization service accepts the token and the
        role it reports is the one this service requires.
        """
        if not token:
            return AuthorizationResult.denied("Missing authorization token")

        response, failure = self._call(
            config.AUTH_EXCHANGE, config.AUTH_ROUTING_KEY, {"token": token}, self.reply, self.timeout_ms
        )
        if failure is not None:
            logger.warning(f"Authorization call failed: {failure.reason}")
            return failure

        if not isinstance(response, dict) or response.get("error"):
            reason = response.get("error") if isinstance(response, dict) else "Malformed authorization response"
            return AuthorizationResult.denied(str(reason))

        role = response.get("role")
        if not response.get("valid", False):
            return AuthorizationResult.denied("Access denied", role=role)
        if role != self.required_role:
            return AuthorizationResult.denied(f"Role {role} is not allowed", role=role)

        return AuthorizationResult(
            valid=True,
            role=role,
            user_id=_as_int(response.get("userId")),
            tenant_id=_as_int(response.get("companyId")),
        )

    def verify_client(self, client_id: int) -> AuthorizationResult:
        """Ask the user service which role the given client id holds"""
        response, failure = self._call(
            config.VERIFICATION_EXCHANGE,
            config.VERIFICATION_ROUTING_KEY,
            {"client_id": client_id},
            self.verification_reply,
            self.verification_timeout_ms,
        )
        if failure is not None:
            logger.warning(f"Client verification failed client_id={client_id}: {failure.reason}")
            return failure

        if not isinstance(response, dict) or response.get("error"):
            reason = response.get("error") if isinstance(response, dict) else "Malformed verification response"
            return AuthorizationResult.denied(str(reason))

        return AuthorizationResult(
            valid=True,
            role=response.get("role"),
            user_id=client_id,
            tenant_id=_as_int(response.get("companyId")),
        )


class StockGateway:
    """Reserves or releases inventory for a service order's line items"""

    def __init__(self, bridge: RpcBridge, timeout_ms: int = config.STOCK_TIMEOUT_MS):
        self.bridge = bridge
        self.timeout_ms = timeout_ms
        self.reply = ReplyRoute(config.STOCK_REPLY_EXCHANGE, config.STOCK_REPLY_ROUTING_KEY, config.STOCK_REPLY_QUEUE)

    def validate_stock(
        self,
        tenant_id: int,
        technician_id: int,
        client_id: int,
        items: Iterable[LineItem],
        transaction_ids: Optional[List[int]] = None,
    ) -> StockValidationResult:
        # an empty item list releases everything held under transaction_ids
        payload = {
            "companie_id": tenant_id,
            "technician_id": technician_id,
            "client_id": client_id,
            "items": [item.to_dict() for item in items],
            "transactionIds": list(transaction_ids or []),
        }
        try:
            response = self.bridge.call(
                config.STOCK_EXCHANGE, config.STOCK_ROUTING_KEY, payload, self.reply, self.timeout_ms
            )
        except RPCTimeout as e:
            return StockValidationResult.failed(e.message, CallFailure.TIMEOUT)
        except BrokerError as e:
            return StockValidationResult.failed(e.message, CallFailure.BROKER)

        if not isinstance(response, dict):
            return StockValidationResult.failed("Malformed stock response")
        if response.get("error"):
            return StockValidationResult.failed(str(response["error"]))

        return StockValidationResult(
            success=True,
            transaction_ids=list(response.get("transactionIds") or []),
        )
