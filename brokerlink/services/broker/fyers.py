"""
Fyers API v3 adapter — OAuth2 authorization-code flow with refresh tokens.

Login is two-legged: the first call hands back an ``auth_url`` for the user
to visit, the second exchanges the returned ``auth_code`` for tokens.
Authenticated REST calls send ``Authorization: <client_id>:<access_token>``.
"""

import hashlib
import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx

from brokerlink.core.config import Settings, settings as default_settings
from brokerlink.core.exceptions import (
    BrokerAuthError,
    BrokerError,
    BrokerRequestError,
    BrokerTransportError,
    BrokerValidationError,
    ErrorCode,
)
from brokerlink.services.broker.base import (
    AccountInfo,
    BrokerAdapter,
    LoginResult,
    LogoutResult,
    OrderInfo,
    OrderRequest,
    OrderResponse,
    OrderStatus,
    OrderType,
    Position,
    Quote,
    SearchResult,
    TokenInfo,
    Validity,
)
from brokerlink.services.broker.credentials import OAuthCredentials, require_credentials
from brokerlink.services.broker.registry import BrokerCapabilities
from brokerlink.services.broker.utils import (
    RateLimiter,
    format_symbol_for_exchange,
    standardize_order_status,
    to_float,
    validate_order_request,
)

logger = logging.getLogger(__name__)

_OK = "ok"
# Session-level token failures only; "Invalid symbol token" is a business error
_AUTH_ERROR = re.compile(
    r"unauthori[sz]ed"
    r"|\binvalid (?:access |auth )?token\b"
    r"|\b(?:access |auth )?token (?:is |has )?(?:been )?(?:invalid|expired)"
    r"|\bexpired (?:access )?token\b",
    re.IGNORECASE,
)

# ── Code tables ───────────────────────────────────────

_ORDER_TYPE_CODES = {
    OrderType.LIMIT.value: 1,
    OrderType.MARKET.value: 2,
    OrderType.SL_LIMIT.value: 3,
    OrderType.SL_MARKET.value: 4,
}
_ORDER_TYPE_NAMES = {code: name for name, code in _ORDER_TYPE_CODES.items()}

_SIDE_CODES = {"BUY": 1, "SELL": -1}

_PRODUCT_CODES = {
    "CNC": "CNC", "DELIVERY": "CNC",
    "MIS": "INTRADAY", "INTRADAY": "INTRADAY",
    "NRML": "MARGIN", "MARGIN": "MARGIN",
    "CO": "CO", "BO": "BO",
}

FYERS_STATUS_MAP: dict[int, OrderStatus] = {
    1: OrderStatus.CANCELLED,
    2: OrderStatus.EXECUTED,
    3: OrderStatus.PENDING,      # not used by the exchange
    4: OrderStatus.PENDING,      # transit
    5: OrderStatus.REJECTED,
    6: OrderStatus.PENDING,
    7: OrderStatus.CANCELLED,    # expired
}

FYERS_CAPABILITIES = BrokerCapabilities(
    auth_type=OAuthCredentials.kind,
    exchanges=["NSE", "BSE", "MCX", "NFO", "BFO", "CDS"],
    order_types=list(_ORDER_TYPE_CODES),
    product_types=["CNC", "INTRADAY", "MARGIN", "CO", "BO"],
    supports_refresh_token=True,
    token_expires=True,
    max_orders_per_second=10,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def app_id_hash(client_id: str, secret_key: str) -> str:
    return hashlib.sha256(f"{client_id}:{secret_key}".encode("utf-8")).hexdigest()


def format_fyers_symbol(symbol: str, exchange: str) -> str:
    """``SBIN`` on NSE -> ``NSE:SBIN-EQ``. Already-prefixed symbols pass through."""
    if ":" in symbol:
        return symbol.upper().strip()
    exch = (exchange or "NSE").upper().strip()
    return f"{exch}:{format_symbol_for_exchange(symbol, exch)}"


def split_fyers_symbol(symbol: str) -> tuple[str, str]:
    if ":" in symbol:
        exchange, _, name = symbol.partition(":")
        return exchange, name
    return "", symbol


class FyersAdapter(BrokerAdapter):
    """
    Fyers OAuth adapter.

    Args:
        config:       settings to read URLs / token lifetimes from
        client:       pre-built ``httpx.AsyncClient`` (tests inject a mock transport)
        api_url:      override for ``FYERS_API_URL``
        data_url:     override for ``FYERS_DATA_URL``
        timeout:      per-request timeout in seconds
        rate_limiter: optional limiter every request waits on
        clock:        returns "now" as an aware datetime; used for token expiry
    """

    broker_name = "fyers"

    def __init__(
        self,
        config: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        api_url: Optional[str] = None,
        data_url: Optional[str] = None,
        timeout: Optional[float] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        cfg = config or default_settings
        self._api_url = (api_url or cfg.FYERS_API_URL).rstrip("/")
        self._data_url = (data_url or cfg.FYERS_DATA_URL).rstrip("/")
        self._timeout = timeout or cfg.REQUEST_TIMEOUT_SECONDS
        self._access_ttl = timedelta(hours=cfg.FYERS_ACCESS_TOKEN_TTL_HOURS)
        self._refresh_ttl = timedelta(days=cfg.FYERS_REFRESH_TOKEN_TTL_DAYS)
        self._client = client
        self._rate_limiter = rate_limiter
        self._clock = clock

        self._credentials: Optional[OAuthCredentials] = None
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None
        self._refresh_expiry: Optional[datetime] = None

    # ── helpers ────────────────────────────────────────

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _auth_header(self) -> dict:
        client_id = self._credentials.client_id if self._credentials else ""
        return {"Authorization": f"{client_id}:{self._access_token}"}

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        authenticated: bool = True,
    ) -> tuple[int, dict]:
        """
        Send one request and return ``(http_status, payload)``.

        Fyers reports business errors as ``{"s": "error", "message": ...}``,
        often with a 4xx status; those are returned for inspection. Network
        failures and non-JSON error bodies raise ``BrokerTransportError``.
        """
        if self._rate_limiter:
            await self._rate_limiter.wait_if_needed()

        headers = self._auth_header() if authenticated else {}
        try:
            r = await self._get_client().request(method, url, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Fyers %s %s transport error: %s (%s)", method, url, e, type(e).__name__)
            raise BrokerTransportError(f"Fyers API request failed: {str(e) or type(e).__name__}") from e

        try:
            payload = r.json()
        except ValueError:
            payload = None

        if not isinstance(payload, dict):
            logger.error("Fyers %s %s HTTP %s: %s", method, url, r.status_code, r.text[:500])
            raise BrokerTransportError(f"Fyers API request failed: HTTP {r.status_code}")

        return r.status_code, payload

    @staticmethod
    def _is_ok(payload: dict) -> bool:
        return payload.get("s") == _OK

    @staticmethod
    def _error_message(payload: dict, default: str = "Unknown error occurred") -> str:
        return str(payload.get("message") or payload.get("error") or default)

    def _is_auth_error(self, status_code: int, payload: dict) -> bool:
        return status_code == 401 or bool(_AUTH_ERROR.search(self._error_message(payload, "")))

    def _clear_tokens(self) -> None:
        self._access_token = None
        self._refresh_token = None
        self._token_expiry = None
        self._refresh_expiry = None

    def _require_session(self) -> None:
        if not self._access_token:
            raise BrokerAuthError("Not logged in to Fyers. Please login first.", ErrorCode.NOT_LOGGED_IN)

    def _check(self, status_code: int, payload: dict, what: str) -> dict:
        """Raise for a refused query, clearing tokens on auth failures."""
        if self._is_ok(payload):
            return payload
        message = self._error_message(payload, f"Failed to fetch {what}")
        if self._is_auth_error(status_code, payload):
            self._clear_tokens()
            raise BrokerAuthError(message, ErrorCode.AUTH_EXPIRED)
        raise BrokerRequestError(message)

    def _failed_order(self, status_code: int, payload: dict, default: str) -> OrderResponse:
        message = self._error_message(payload, default)
        code = ErrorCode.BROKER_ERROR
        if self._is_auth_error(status_code, payload):
            self._clear_tokens()
            code = ErrorCode.AUTH_EXPIRED
        return OrderResponse(success=False, message=message, error_code=code.value, data=payload)

    def _not_logged_in(self) -> OrderResponse:
        return OrderResponse(
            success=False,
            message="Not logged in to Fyers. Please login first.",
            error_code=ErrorCode.NOT_LOGGED_IN.value,
        )

    # ── Authentication ─────────────────────────────────

    def generate_auth_url(self, credentials: OAuthCredentials) -> str:
        url = httpx.URL(
            f"{self._api_url}/generate-authcode",
            params={
                "client_id": credentials.client_id,
                "redirect_uri": credentials.redirect_uri,
                "response_type": "code",
                "state": credentials.state or "brokerlink",
            },
        )
        return str(url)

    def get_token_info(self) -> Optional[TokenInfo]:
        if not self._access_token:
            return None
        return TokenInfo(
            access_token=self._access_token,
            token_expiry_time=self._token_expiry,
            refresh_token=self._refresh_token,
            refresh_token_expiry_time=self._refresh_expiry,
        )

    async def login(self, credentials) -> LoginResult:
        try:
            creds = require_credentials(credentials, OAuthCredentials, "Fyers")
        except BrokerValidationError as e:
            return LoginResult(
                success=False,
                message=str(e),
                error_code=ErrorCode.VALIDATION_ERROR.value,
                data={"errors": e.errors},
            )
        self._credentials = creds

        if creds.access_token:
            # Tokens persisted by the caller, together with whatever expiry it stored
            token_expiry = _aware(creds.token_expiry_time)
            if token_expiry is not None and token_expiry <= self._clock():
                logger.warning("Stored Fyers access token for %s expired at %s", creds.client_id, token_expiry)
                return LoginResult(
                    success=False,
                    message="Stored access token has expired",
                    error_code=ErrorCode.AUTH_EXPIRED.value,
                )
            self._access_token = creds.access_token
            self._refresh_token = creds.refresh_token
            self._token_expiry = token_expiry
            self._refresh_expiry = _aware(creds.refresh_token_expiry_time)
            logger.info("Fyers session restored for client %s", creds.client_id)
            return LoginResult(
                success=True,
                message="Session restored from access token",
                data={"token_info": self.get_token_info()},
            )

        if creds.auth_code:
            return await self.complete_oauth(creds.auth_code, creds)

        auth_url = self.generate_auth_url(creds)
        logger.info("Fyers OAuth started for client %s", creds.client_id)
        return LoginResult(
            success=True,
            message="Please complete OAuth authentication",
            auth_url=auth_url,
            requires_auth_code=True,
        )

    async def complete_oauth(self, auth_code: str, credentials: Optional[OAuthCredentials] = None) -> LoginResult:
        """Exchange an authorization code for access and refresh tokens."""
        if credentials is not None:
            try:
                self._credentials = require_credentials(credentials, OAuthCredentials, "Fyers")
            except BrokerValidationError as e:
                return LoginResult(
                    success=False,
                    message=str(e),
                    error_code=ErrorCode.VALIDATION_ERROR.value,
                    data={"errors": e.errors},
                )
        creds = self._credentials
        if creds is None or not auth_code:
            return LoginResult(
                success=False,
                message="Auth code and credentials are required to complete OAuth",
                error_code=ErrorCode.VALIDATION_ERROR.value,
            )

        status_code, response = await self._request(
            "POST",
            f"{self._api_url}/validate-authcode",
            json={
                "grant_type": "authorization_code",
                "appIdHash": app_id_hash(creds.client_id, creds.secret_key),
                "code": auth_code,
            },
            authenticated=False,
        )

        if not (self._is_ok(response) and response.get("access_token")):
            message = self._error_message(response, "Access token generation failed")
            logger.warning("Fyers token exchange failed for client %s: %s", creds.client_id, message)
            return LoginResult(
                success=False,
                message=message,
                error_code=ErrorCode.AUTH_FAILED.value,
                data=response,
            )

        now = self._clock()
        self._access_token = response["access_token"]
        self._refresh_token = response.get("refresh_token")
        self._token_expiry = now + self._access_ttl
        self._refresh_expiry = now + self._refresh_ttl if self._refresh_token else None
        logger.info("Fyers access token generated for client %s", creds.client_id)

        profile: dict = {}
        try:
            profile = await self.get_profile()
        except BrokerError as e:
            logger.warning("Fyers profile fetch failed after login: %s", e)

        return LoginResult(
            success=True,
            message="Access token generated successfully",
            data={"token_info": self.get_token_info(), "profile": profile},
        )

    async def refresh_access_token(
        self,
        refresh_token: Optional[str] = None,
        pin: Optional[str] = None,
    ) -> LoginResult:
        creds = self._credentials
        token = refresh_token or self._refresh_token
        pin = pin or (creds.pin if creds else None)
        if creds is None or not token or not pin:
            return LoginResult(
                success=False,
                message="Client credentials, refresh token and PIN are required to refresh",
                error_code=ErrorCode.VALIDATION_ERROR.value,
            )

        status_code, response = await self._request(
            "POST",
            f"{self._api_url}/validate-refresh-token",
            json={
                "grant_type": "refresh_token",
                "appIdHash": app_id_hash(creds.client_id, creds.secret_key),
                "refresh_token": token,
                "pin": pin,
            },
            authenticated=False,
        )

        if not (self._is_ok(response) and response.get("access_token")):
            message = self._error_message(response, "Token refresh failed")
            logger.warning("Fyers token refresh failed for client %s: %s", creds.client_id, message)
            return LoginResult(
                success=False,
                message=message,
                error_code=ErrorCode.AUTH_FAILED.value,
                data=response,
            )

        self._access_token = response["access_token"]
        self._token_expiry = self._clock() + self._access_ttl
        if response.get("refresh_token"):
            self._refresh_token = response["refresh_token"]
            self._refresh_expiry = self._clock() + self._refresh_ttl
        else:
            self._refresh_token = token
        logger.info("Fyers access token refreshed for client %s", creds.client_id)
        return LoginResult(
            success=True,
            message="Access token refreshed",
            data={"token_info": self.get_token_info()},
        )

    async def logout(self) -> LogoutResult:
        # Fyers has no server-side logout for API tokens
        self._clear_tokens()
        return LogoutResult(success=True, message="Logged out from Fyers")

    async def is_logged_in(self) -> bool:
        return self._access_token is not None

    async def validate_session(self, account_id: Optional[str] = None) -> bool:
        if not self._access_token:
            return False
        try:
            await self.get_profile()
        except BrokerError as e:
            logger.info("Fyers session no longer valid: %s", e)
            self._clear_tokens()
            return False
        return True

    async def get_profile(self) -> dict:
        self._require_session()
        status_code, response = await self._request("GET", f"{self._api_url}/profile")
        return self._check(status_code, response, "profile").get("data", {}) or {}

    # ── Orders ─────────────────────────────────────────

    def _order_payload(self, request: OrderRequest) -> dict:
        order_type = getattr(request.order_type, "value", request.order_type)
        action = getattr(request.action, "value", request.action)
        validity = getattr(request.validity, "value", request.validity)
        product = str(request.product_type).upper()
        return {
            "symbol": format_fyers_symbol(request.symbol, request.exchange),
            "qty": int(request.quantity),
            "type": _ORDER_TYPE_CODES[order_type],
            "side": _SIDE_CODES[action],
            "productType": _PRODUCT_CODES.get(product, product),
            "limitPrice": request.price or 0,
            "stopPrice": request.trigger_price or 0,
            # Fyers only accepts DAY / IOC
            "validity": Validity.DAY.value if validity == Validity.GTD.value else validity,
            "disclosedQty": 0,
            "offlineOrder": False,
            "stopLoss": 0,
            "takeProfit": 0,
            "orderTag": request.remarks or "",
        }

    async def place_order(self, request: OrderRequest) -> OrderResponse:
        validation = validate_order_request(request)
        if not validation.is_valid:
            return OrderResponse(
                success=False,
                message="Order validation failed: " + "; ".join(validation.errors),
                error_code=ErrorCode.VALIDATION_ERROR.value,
                errors=validation.errors,
            )

        if not self._access_token:
            return self._not_logged_in()

        body = self._order_payload(request)
        logger.info(
            "Placing Fyers order: side=%s %s x%s type=%s",
            body["side"], body["symbol"], body["qty"], body["type"],
        )
        status_code, response = await self._request("POST", f"{self._api_url}/orders/sync", json=body)

        if self._is_ok(response) and response.get("id"):
            order_id = str(response["id"])
            logger.info("Fyers order placed: %s", order_id)
            return OrderResponse(
                success=True,
                message=response.get("message") or "Order placed successfully",
                order_id=order_id,
                broker_order_id=order_id,
                status=OrderStatus.PENDING,
                data=response,
            )

        logger.warning("Fyers order rejected: %s", self._error_message(response))
        return self._failed_order(status_code, response, "Order placement failed")

    async def cancel_order(self, order_id: str) -> OrderResponse:
        if not self._access_token:
            return self._not_logged_in()

        status_code, response = await self._request(
            "DELETE", f"{self._api_url}/orders/sync", json={"id": order_id}
        )
        if self._is_ok(response):
            return OrderResponse(
                success=True,
                message=response.get("message") or "Order cancelled successfully",
                order_id=order_id,
                broker_order_id=str(response.get("id") or order_id),
                status=OrderStatus.CANCELLED,
                data=response,
            )
        return self._failed_order(status_code, response, "Order cancellation failed")

    def _to_order_info(self, row: dict) -> OrderInfo:
        exchange, symbol = split_fyers_symbol(str(row.get("symbol", "")))
        filled = to_float(row.get("filledQty"))
        status = self.map_order_status(row.get("status"))
        if status == OrderStatus.PENDING and filled > 0:
            status = OrderStatus.PARTIAL
        try:
            order_type = _ORDER_TYPE_NAMES.get(int(row.get("type")))
        except (TypeError, ValueError):
            order_type = None
        return OrderInfo(
            order_id=str(row.get("id", "")),
            symbol=symbol,
            exchange=exchange,
            action="BUY" if str(row.get("side")) == "1" else "SELL",
            quantity=to_float(row.get("qty")),
            price=to_float(row.get("limitPrice")),
            filled_quantity=filled,
            average_price=to_float(row.get("tradedPrice")),
            status=status,
            raw_status=str(row.get("status", "")),
            order_type=order_type,
            product_type=row.get("productType"),
            rejection_reason=(row.get("message") or "") if status == OrderStatus.REJECTED else "",
            order_time=row.get("orderDateTime"),
            raw=row,
        )

    async def get_order_book(self, account_id: Optional[str] = None) -> list[OrderInfo]:
        self._require_session()
        status_code, response = await self._request("GET", f"{self._api_url}/orders")
        payload = self._check(status_code, response, "order book")
        return [self._to_order_info(row) for row in payload.get("orderBook") or []]

    async def get_order_status(self, account_id: Optional[str], order_id: str) -> OrderInfo:
        self._require_session()
        status_code, response = await self._request(
            "GET", f"{self._api_url}/orders", params={"id": order_id}
        )
        rows = self._check(status_code, response, "order status").get("orderBook") or []
        for row in rows:
            if str(row.get("id")) == str(order_id):
                return self._to_order_info(row)
        raise BrokerRequestError(f"Order {order_id} not found in Fyers order book")

    # ── Portfolio / market data ────────────────────────

    async def get_positions(self, account_id: Optional[str] = None) -> list[Position]:
        self._require_session()
        status_code, response = await self._request("GET", f"{self._api_url}/positions")
        positions = []
        for row in self._check(status_code, response, "positions").get("netPositions") or []:
            exchange, symbol = split_fyers_symbol(str(row.get("symbol", "")))
            average = to_float(row.get("netAvg"), to_float(row.get("avgPrice")))
            positions.append(Position(
                symbol=symbol,
                exchange=exchange,
                quantity=to_float(row.get("netQty")),
                average_price=average,
                current_price=to_float(row.get("ltp"), average),
                product_type=row.get("productType", ""),
            ))
        return positions

    async def _fetch_quote(self, symbol: str) -> dict:
        self._require_session()
        status_code, response = await self._request(
            "GET", f"{self._data_url}/quotes", params={"symbols": symbol}
        )
        entries = self._check(status_code, response, "quotes").get("d") or []
        for entry in entries:
            if entry.get("s", _OK) == _OK and isinstance(entry.get("v"), dict) and "errmsg" not in entry["v"]:
                return entry
        raise BrokerRequestError(f"No quote available for {symbol}")

    async def get_quotes(self, exchange: str, token: str) -> Quote:
        symbol = format_fyers_symbol(token, exchange)
        entry = await self._fetch_quote(symbol)
        v = entry["v"]
        tt = v.get("tt")
        return Quote(
            symbol=v.get("symbol") or entry.get("n") or symbol,
            exchange=v.get("exchange") or split_fyers_symbol(symbol)[0],
            ltp=to_float(v.get("lp")),
            change=to_float(v.get("ch")),
            change_percent=to_float(v.get("chp")),
            volume=to_float(v.get("volume")),
            high=to_float(v.get("high_price")),
            low=to_float(v.get("low_price")),
            open=to_float(v.get("open_price")),
            close=to_float(v.get("prev_close_price")),
            timestamp=datetime.fromtimestamp(int(tt), tz=timezone.utc) if str(tt or "").isdigit() else None,
        )

    async def search_scrip(self, exchange: str, text: str) -> list[SearchResult]:
        """Fyers has no search endpoint; resolve the exact symbol through quotes."""
        symbol = format_fyers_symbol(text, exchange)
        try:
            entry = await self._fetch_quote(symbol)
        except BrokerRequestError:
            return []
        v = entry["v"]
        return [SearchResult(
            symbol=v.get("symbol") or entry.get("n") or symbol,
            token=str(v.get("fyToken") or entry.get("n") or symbol),
            exchange=split_fyers_symbol(symbol)[0],
            description=v.get("description", "") or "",
        )]

    async def get_market_depth(self, symbol: str, exchange: str = "NSE") -> dict:
        self._require_session()
        fyers_symbol = format_fyers_symbol(symbol, exchange)
        status_code, response = await self._request(
            "GET",
            f"{self._data_url}/depth",
            params={"symbol": fyers_symbol, "ota_flag": 1},
        )
        depth = self._check(status_code, response, "market depth").get("d") or {}
        return depth.get(fyers_symbol, {})

    async def get_history(
        self,
        symbol: str,
        resolution: str,
        range_from: Any,
        range_to: Any,
        exchange: str = "NSE",
    ) -> list[dict]:
        """
        OHLCV candles. ``range_from`` / ``range_to`` are dates, datetimes or
        ``yyyy-mm-dd`` strings.
        """
        self._require_session()

        def as_day(value: Any) -> str:
            if isinstance(value, (date, datetime)):
                return value.strftime("%Y-%m-%d")
            return str(value)

        status_code, response = await self._request(
            "GET",
            f"{self._data_url}/history",
            params={
                "symbol": format_fyers_symbol(symbol, exchange),
                "resolution": resolution,
                "date_format": 1,
                "range_from": as_day(range_from),
                "range_to": as_day(range_to),
                "cont_flag": 1,
            },
        )
        candles = self._check(status_code, response, "history").get("candles") or []
        return [
            {
                "timestamp": datetime.fromtimestamp(int(c[0]), tz=timezone.utc),
                "open": to_float(c[1]),
                "high": to_float(c[2]),
                "low": to_float(c[3]),
                "close": to_float(c[4]),
                "volume": to_float(c[5]) if len(c) > 5 else 0.0,
            }
            for c in candles
            if len(c) >= 5
        ]

    # ── Mapping helpers ────────────────────────────────

    def extract_account_info(self, login_response: LoginResult, credentials) -> AccountInfo:
        creds = require_credentials(credentials, OAuthCredentials, "Fyers")
        data = login_response.data or {}
        token_info: Optional[TokenInfo] = data.get("token_info")
        profile = data.get("profile") or {}

        if login_response.requires_auth_code:
            status = "PROCEED_TO_OAUTH"
        elif login_response.success and token_info is not None:
            # No known expiry resolves as PROCEED_TO_OAUTH once persisted
            if token_info.token_expiry_time is None and token_info.refresh_token_expiry_time is None:
                status = "PROCEED_TO_OAUTH"
            else:
                status = "ACTIVE"
        else:
            status = "INACTIVE"

        fy_id = profile.get("fy_id") or creds.client_id
        return AccountInfo(
            account_id=fy_id,
            user_id=fy_id,
            broker=self.broker_name,
            user_name=profile.get("name") or profile.get("display_name") or "",
            email=profile.get("email_id", "") or "",
            exchanges=list(FYERS_CAPABILITIES.exchanges),
            products=list(FYERS_CAPABILITIES.product_types),
            access_token=token_info.access_token if token_info else None,
            refresh_token=token_info.refresh_token if token_info else None,
            token_expiry_time=token_info.token_expiry_time if token_info else None,
            refresh_token_expiry_time=token_info.refresh_token_expiry_time if token_info else None,
            account_status=status,
        )

    def extract_order_info(self, order_response: OrderResponse, order_input: OrderRequest) -> dict[str, Any]:
        broker_order_id = order_response.broker_order_id or (order_response.data or {}).get("id")
        return {"broker_order_id": str(broker_order_id) if broker_order_id else None}

    def map_order_status(self, raw_status: Any) -> OrderStatus:
        if isinstance(raw_status, str) and raw_status.strip().lstrip("-").isdigit():
            raw_status = int(raw_status)
        if isinstance(raw_status, int) and not isinstance(raw_status, bool):
            return standardize_order_status(raw_status, FYERS_STATUS_MAP)
        return standardize_order_status(raw_status)

    # ── Lifecycle ──────────────────────────────────────

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
