"""
Error taxonomy for the broker integration layer.

Validation and broker business errors are normally folded into
``success=False`` results by the adapters; transport errors propagate.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_FAILED = "AUTH_FAILED"
    AUTH_EXPIRED = "AUTH_EXPIRED"
    NOT_LOGGED_IN = "NOT_LOGGED_IN"
    BROKER_ERROR = "BROKER_ERROR"


class BrokerError(Exception):
    """Base exception for everything raised by brokerlink."""
    pass


class UnknownBrokerError(BrokerError):
    """Raised when a broker key is not registered."""

    def __init__(self, broker: str, available: Optional[list[str]] = None):
        self.broker = broker
        self.available = sorted(available or [])
        listing = ", ".join(self.available) or "none"
        super().__init__(f"Unknown broker '{broker}'. Available brokers: {listing}")


class InvalidPluginError(BrokerError):
    """Raised when a plugin descriptor cannot produce adapter instances."""
    pass


class BrokerValidationError(BrokerError):
    """Raised when a request or credential set is malformed."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        self.errors = list(errors or [message])
        super().__init__(message)


class BrokerAuthError(BrokerError):
    """Raised when credentials or tokens are rejected."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.AUTH_FAILED):
        self.code = code
        super().__init__(message)


class BrokerRequestError(BrokerError):
    """Raised when a query that must return a value is refused (e.g. unknown order)."""
    pass


class BrokerTransportError(BrokerError):
    """Raised on network failure or timeout talking to a broker."""
    pass
