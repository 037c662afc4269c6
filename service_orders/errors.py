"""
Error taxonomy for the service-order core.

Every error carries a machine readable ``code`` and the HTTP ``status_code``
the presentation layer answers with.
"""

from typing import Optional


class ServiceOrderError(Exception):
    """Base class for every error surfaced by the workflow"""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"error": self.code, "message": self.message}


class AuthorizationDenied(ServiceOrderError):
    """Bad or expired credential, or a role other than the expected one"""

    code = "ACCESS_DENIED"
    status_code = 403


class RPCTimeout(ServiceOrderError):
    """No matching response arrived before the call's deadline"""

    code = "RPC_TIMEOUT"
    status_code = 504


class BrokerError(ServiceOrderError):
    """Publish or consume failure below the RPC layer"""

    code = "BROKER_UNAVAILABLE"
    status_code = 503


class StockValidationError(ServiceOrderError):
    """The stock service rejected the request; message is the remote one"""

    code = "INVALID_FIELDS"
    status_code = 400


class NotFound(ServiceOrderError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidTransition(ServiceOrderError):
    code = "INVALID_TRANSITION"
    status_code = 400
