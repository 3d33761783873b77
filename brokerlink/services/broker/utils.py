"""
Helpers shared by every broker adapter: order validation, status
normalization, symbol formatting, retry with backoff and rate limiting.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from brokerlink.core.config import settings
from brokerlink.core.exceptions import BrokerValidationError
from brokerlink.services.broker.base import (
    LIMIT_PRICE_TYPES,
    STOP_ORDER_TYPES,
    OrderAction,
    OrderRequest,
    OrderStatus,
    OrderType,
    Validity,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── Order validation ───────────────────────────────────

@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)


def _blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_order_request(request: OrderRequest) -> ValidationResult:
    """Check an order before any network call. One message per bad field."""
    errors: list[str] = []

    action = _enum_value(request.action)
    order_type = _enum_value(request.order_type)
    validity = _enum_value(request.validity)

    if _blank(request.symbol):
        errors.append("Symbol is required")

    if action not in {a.value for a in OrderAction}:
        errors.append("Action must be BUY or SELL")

    if not _is_number(request.quantity):
        errors.append("Quantity must be a number")
    elif request.quantity <= 0:
        errors.append("Quantity must be greater than 0")
    elif not float(request.quantity).is_integer():
        errors.append("Quantity must be a whole number")

    if order_type not in {t.value for t in OrderType}:
        errors.append("Invalid order type")

    if request.price is not None and not _is_number(request.price):
        errors.append("Price must be a number")
    elif order_type in LIMIT_PRICE_TYPES:
        if request.price is None or request.price <= 0:
            errors.append(f"Price is required for {order_type} orders")
    elif request.price is not None and request.price <= 0:
        errors.append("Price must be greater than 0")

    if request.trigger_price is not None and not _is_number(request.trigger_price):
        errors.append("Trigger price must be a number")
    elif order_type in STOP_ORDER_TYPES and (request.trigger_price is None or request.trigger_price <= 0):
        errors.append("Trigger price is required for stop-loss orders")
    elif request.trigger_price is not None and request.trigger_price <= 0:
        errors.append("Trigger price must be greater than 0")

    if _blank(request.exchange):
        errors.append("Exchange is required")

    if _blank(request.product_type):
        errors.append("Product type is required")

    if validity not in {v.value for v in Validity}:
        errors.append("Invalid validity type")

    if _blank(request.account_id):
        errors.append("Account ID is required")

    return ValidationResult(is_valid=not errors, errors=errors)


# ── Status normalization ───────────────────────────────

STATUS_MAP: dict[str, OrderStatus] = {
    # Common
    "PENDING": OrderStatus.PENDING,
    "OPEN": OrderStatus.PENDING,
    "NEW": OrderStatus.PENDING,
    "SUBMITTED": OrderStatus.PENDING,
    "ACCEPTED": OrderStatus.PENDING,
    "PLACED": OrderStatus.PENDING,
    "TRANSIT": OrderStatus.PENDING,
    "COMPLETE": OrderStatus.EXECUTED,
    "FILLED": OrderStatus.EXECUTED,
    "TRADED": OrderStatus.EXECUTED,
    "EXECUTED": OrderStatus.EXECUTED,
    "CANCELLED": OrderStatus.CANCELLED,
    "CANCELED": OrderStatus.CANCELLED,
    "EXPIRED": OrderStatus.CANCELLED,
    "REJECTED": OrderStatus.REJECTED,
    "FAILED": OrderStatus.REJECTED,
    "PARTIAL": OrderStatus.PARTIAL,
    "PARTIALLY_FILLED": OrderStatus.PARTIAL,
    "PARTIALLY FILLED": OrderStatus.PARTIAL,
    # Broker-specific
    "TRIGGER_PENDING": OrderStatus.PENDING,
    "MODIFY_PENDING": OrderStatus.PENDING,
    "CANCEL_PENDING": OrderStatus.PENDING,
    "PENDING_NEW": OrderStatus.PENDING,
    "AMO_RECEIVED": OrderStatus.PENDING,
}


def standardize_order_status(status: Any, table: Optional[dict] = None) -> OrderStatus:
    """Map a broker status token onto the canonical five. Unknown -> PENDING."""
    if status is None:
        return OrderStatus.PENDING
    if isinstance(status, OrderStatus):
        return status
    lookup = STATUS_MAP if table is None else table
    key = status if isinstance(status, int) and not isinstance(status, bool) else str(status).upper().strip()
    return lookup.get(key, OrderStatus.PENDING)


# ── Symbols / numbers ──────────────────────────────────

def format_symbol_for_exchange(symbol: str, exchange: str) -> str:
    normalized_symbol = symbol.upper().strip()
    normalized_exchange = exchange.upper().strip()

    if normalized_exchange == "NSE":
        return normalized_symbol if normalized_symbol.endswith("-EQ") else f"{normalized_symbol}-EQ"
    if normalized_exchange == "BSE":
        # BSE doesn't use the -EQ suffix
        return normalized_symbol.replace("-EQ", "")
    return normalized_symbol


def to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def calculate_position_pnl(average_price: float, current_price: Optional[float], quantity: float) -> float:
    current = average_price if current_price is None else current_price
    return (current - average_price) * quantity


def calculate_order_value(request: OrderRequest) -> float:
    return (request.price or 0) * (request.quantity or 0)


# ── Retry ──────────────────────────────────────────────

async def retry_operation(
    operation: Callable[[], Awaitable[T]],
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Await ``operation`` up to ``max_attempts`` times.

    Waits ``base_delay * attempt`` seconds between attempts and re-raises the
    last error once attempts are exhausted. Validation failures are never
    retried. Unset limits fall back to the ``RETRY_*`` settings.
    """
    if max_attempts is None:
        max_attempts = settings.RETRY_MAX_ATTEMPTS
    if base_delay is None:
        base_delay = settings.RETRY_BASE_DELAY_SECONDS
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except BrokerValidationError:
            raise
        except retry_on as e:
            if attempt == max_attempts:
                logger.warning("Operation failed after %d attempts: %s", attempt, e)
                raise
            delay = base_delay * attempt
            logger.info("Attempt %d/%d failed (%s), retrying in %.2fs", attempt, max_attempts, e, delay)
            await sleep(delay)

    raise AssertionError("unreachable")


# ── Rate limiting ──────────────────────────────────────

class RateLimiter:
    """
    Sliding-window limiter: at most ``max_calls`` within ``window_seconds``.

    Excess callers are delayed, not rejected. The lock makes concurrent
    coroutines queue in arrival order.
    """

    def __init__(
        self,
        max_calls: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._calls: list[float] = []
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        self._calls = [t for t in self._calls if now - t < self.window_seconds]

    @property
    def current_count(self) -> int:
        self._prune(self._clock())
        return len(self._calls)

    async def wait_if_needed(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._calls) < self.max_calls:
                    break
                # After pruning, the oldest call is still inside the window
                wait_time = self.window_seconds - (now - self._calls[0])
                logger.debug("Rate limit reached, waiting %.3fs", wait_time)
                await self._sleep(wait_time)
            self._calls.append(now)
