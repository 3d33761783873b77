"""
Abstract broker adapter interface.

All broker implementations (Shoonya, Fyers) must implement this, so calling
code can authenticate, trade and query without branching on broker identity.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from brokerlink.services.broker.credentials import BrokerCredentials


# ── Enums ──────────────────────────────────────────────

class OrderAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    SL_LIMIT = "SL-LIMIT"
    SL_MARKET = "SL-MARKET"


class Validity(str, Enum):
    DAY = "DAY"
    IOC = "IOC"
    GTD = "GTD"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    PARTIAL = "PARTIAL"


# Order types that carry a limit price
LIMIT_PRICE_TYPES = frozenset({OrderType.LIMIT.value, OrderType.SL_LIMIT.value})
# Order types that carry a trigger price
STOP_ORDER_TYPES = frozenset({OrderType.SL_LIMIT.value, OrderType.SL_MARKET.value})


# ── Data Classes ───────────────────────────────────────

@dataclass
class LoginResult:
    success: bool
    message: str = ""
    auth_url: Optional[str] = None          # OAuth redirect target
    requires_auth_code: bool = False
    error_code: Optional[str] = None
    data: dict = field(default_factory=dict)  # opaque broker payload


@dataclass
class LogoutResult:
    success: bool
    message: str = ""


@dataclass
class OrderRequest:
    symbol: str
    action: str                             # OrderAction value
    quantity: int
    order_type: str                         # OrderType value
    exchange: str
    product_type: str
    validity: str = Validity.DAY.value
    account_id: str = ""
    price: Optional[float] = None           # required for LIMIT / SL-LIMIT
    trigger_price: Optional[float] = None   # required for SL-LIMIT / SL-MARKET
    remarks: Optional[str] = None


@dataclass
class OrderResponse:
    success: bool
    message: str = ""
    order_id: Optional[str] = None
    broker_order_id: Optional[str] = None
    status: Optional[OrderStatus] = None
    error_code: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    data: dict = field(default_factory=dict)


@dataclass
class OrderInfo:
    """Canonical view of one broker order, as returned by order book queries."""
    order_id: str
    symbol: str
    exchange: str
    action: str
    quantity: float
    status: OrderStatus
    price: float = 0.0
    filled_quantity: float = 0.0
    average_price: float = 0.0
    raw_status: str = ""
    order_type: Optional[str] = None
    product_type: Optional[str] = None
    rejection_reason: str = ""
    order_time: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class Position:
    symbol: str
    exchange: str
    quantity: float
    average_price: float
    current_price: float
    product_type: str = ""

    @property
    def pnl(self) -> float:
        # Derived on every access so it can never drift from its inputs
        return (self.current_price - self.average_price) * self.quantity


@dataclass
class Quote:
    symbol: str
    exchange: str
    ltp: float
    change: float = 0.0
    change_percent: float = 0.0
    volume: float = 0.0
    high: float = 0.0
    low: float = 0.0
    open: float = 0.0
    close: float = 0.0
    timestamp: Optional[datetime] = None

    @property
    def price(self) -> float:
        return self.ltp


@dataclass
class SearchResult:
    symbol: str
    token: str
    exchange: str
    description: str = ""
    lot_size: int = 1
    tick_size: float = 0.05
    instrument_type: str = ""


@dataclass
class TokenInfo:
    access_token: str
    token_expiry_time: Optional[datetime] = None
    refresh_token: Optional[str] = None
    refresh_token_expiry_time: Optional[datetime] = None


@dataclass
class AccountInfo:
    """Everything a caller needs to persist after a successful login."""
    account_id: str
    user_id: str
    broker: str
    user_name: str = ""
    email: str = ""
    exchanges: list[str] = field(default_factory=list)
    products: list[str] = field(default_factory=list)
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry_time: Optional[datetime] = None          # None = no expiry
    refresh_token_expiry_time: Optional[datetime] = None
    account_status: str = "ACTIVE"


# ── Abstract Base ──────────────────────────────────────

class BrokerAdapter(ABC):
    """
    Abstract base class for all broker integrations.

    Session state (tokens, user id) lives on the instance. Hold one instance
    per account when calls must be serialized per account.
    """

    broker_name: str = "unknown"

    # ── Authentication ─────────────────────────────────

    @abstractmethod
    async def login(self, credentials: BrokerCredentials) -> LoginResult:
        """Run the broker's auth handshake. Never raises on rejected credentials."""
        ...

    @abstractmethod
    async def logout(self) -> LogoutResult:
        """Drop the broker session and clear local state."""
        ...

    @abstractmethod
    async def is_logged_in(self) -> bool:
        """True when the instance holds a session token (no network call)."""
        ...

    @abstractmethod
    async def validate_session(self, account_id: Optional[str] = None) -> bool:
        """Probe the broker; clears local state when the session is gone."""
        ...

    # ── Orders ─────────────────────────────────────────

    @abstractmethod
    async def place_order(self, request: OrderRequest) -> OrderResponse:
        """Submit a new order."""
        ...

    @abstractmethod
    async def cancel_order(self, order_id: str) -> OrderResponse:
        """Cancel a pending order."""
        ...

    @abstractmethod
    async def get_order_book(self, account_id: Optional[str] = None) -> list[OrderInfo]:
        """All orders of the trading day."""
        ...

    async def get_order_history(self, account_id: Optional[str] = None) -> list[OrderInfo]:
        return await self.get_order_book(account_id)

    @abstractmethod
    async def get_order_status(self, account_id: Optional[str], order_id: str) -> OrderInfo:
        """Current state of a single order."""
        ...

    # ── Portfolio / market data ────────────────────────

    @abstractmethod
    async def get_positions(self, account_id: Optional[str] = None) -> list[Position]:
        ...

    @abstractmethod
    async def search_scrip(self, exchange: str, text: str) -> list[SearchResult]:
        ...

    @abstractmethod
    async def get_quotes(self, exchange: str, token: str) -> Quote:
        ...

    # ── Mapping helpers ────────────────────────────────

    @abstractmethod
    def extract_account_info(self, login_response: LoginResult, credentials: BrokerCredentials) -> AccountInfo:
        """Build the persistable account snapshot from a successful login."""
        ...

    @abstractmethod
    def extract_order_info(self, order_response: OrderResponse, order_input: OrderRequest) -> dict[str, Any]:
        """Pull the broker order id out of a placement response."""
        ...

    @abstractmethod
    def map_order_status(self, raw_status: Any) -> OrderStatus:
        """Translate a broker status token into the canonical vocabulary."""
        ...

    # ── Lifecycle ──────────────────────────────────────

    async def aclose(self) -> None:
        """Release network resources. Session state is kept."""
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
