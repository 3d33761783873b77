"""
Finvasia Shoonya (Noren) adapter — direct auth with SHA256 + TOTP.

Every call is a form-encoded POST whose body is ``jData=<json>``;
authenticated calls append ``&jKey=<session token>``. The session token has
no fixed expiry, so liveness is checked with a cheap ``Limits`` probe.
"""

import hashlib
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import pyotp

from brokerlink.core.config import Settings, settings as default_settings
from brokerlink.core.exceptions import (
    BrokerAuthError,
    BrokerRequestError,
    BrokerTransportError,
    BrokerValidationError,
    ErrorCode,
)
from brokerlink.services.broker.base import (
    STOP_ORDER_TYPES,
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
)
from brokerlink.services.broker.credentials import DirectAuthCredentials, require_credentials
from brokerlink.services.broker.registry import BrokerCapabilities
from brokerlink.services.broker.utils import (
    RateLimiter,
    format_symbol_for_exchange,
    standardize_order_status,
    to_float,
    validate_order_request,
)

logger = logging.getLogger(__name__)

_OK = "Ok"
_FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}

# ── Code tables ───────────────────────────────────────

_ACTION_CODES = {"BUY": "B", "SELL": "S"}

_ORDER_TYPE_CODES = {
    OrderType.MARKET.value: "MKT",
    OrderType.LIMIT.value: "LMT",
    OrderType.SL_LIMIT.value: "SL-LMT",
    OrderType.SL_MARKET.value: "SL-MKT",
}
_ORDER_TYPE_NAMES = {code: name for name, code in _ORDER_TYPE_CODES.items()}

_PRODUCT_CODES = {
    "CNC": "C", "DELIVERY": "C",
    "MIS": "I", "INTRADAY": "I",
    "NRML": "M", "MARGIN": "M",
    "BO": "B", "CO": "H",
}

_SESSION_ERROR = re.compile(r"session expired|invalid session", re.IGNORECASE)

# Noren reports request_time in exchange local time
_IST = timezone(timedelta(hours=5, minutes=30), "IST")

SHOONYA_CAPABILITIES = BrokerCapabilities(
    auth_type=DirectAuthCredentials.kind,
    exchanges=["NSE", "BSE", "NFO", "BFO", "MCX", "CDS"],
    order_types=list(_ORDER_TYPE_CODES),
    product_types=["CNC", "MIS", "NRML", "BO", "CO"],
    supports_refresh_token=False,
    token_expires=False,
    max_orders_per_second=10,
)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class ShoonyaAdapter(BrokerAdapter):
    """
    Shoonya direct-auth adapter.

    Args:
        config:       settings to read URLs / timeouts from
        client:       pre-built ``httpx.AsyncClient`` (tests inject a mock transport)
        base_url:     override for ``SHOONYA_BASE_URL``
        timeout:      per-request timeout in seconds
        rate_limiter: optional limiter every request waits on
    """

    broker_name = "shoonya"

    def __init__(
        self,
        config: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        cfg = config or default_settings
        self._base_url = (base_url or cfg.SHOONYA_BASE_URL).rstrip("/")
        self._apk_version = cfg.SHOONYA_APK_VERSION
        self._timeout = timeout or cfg.REQUEST_TIMEOUT_SECONDS
        self._client = client
        self._rate_limiter = rate_limiter
        self._session_token: Optional[str] = None
        self._user_id: Optional[str] = None

    # ── helpers ────────────────────────────────────────

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _post(self, endpoint: str, data: dict, authenticated: bool = False) -> Any:
        """
        Send one Noren request and return the decoded JSON payload.

        Broker error payloads are returned as-is for the caller to inspect;
        only network failures and non-JSON answers raise.
        """
        if self._rate_limiter:
            await self._rate_limiter.wait_if_needed()

        body = f"jData={json.dumps(data)}"
        if authenticated:
            body += f"&jKey={self._session_token}"

        try:
            r = await self._get_client().post(
                f"{self._base_url}/{endpoint}",
                content=body,
                headers=_FORM_HEADERS,
            )
        except httpx.HTTPError as e:
            logger.error("Shoonya %s transport error: %s (%s)", endpoint, e, type(e).__name__)
            raise BrokerTransportError(f"Shoonya API request failed: {str(e) or type(e).__name__}") from e

        try:
            payload = r.json()
        except ValueError:
            payload = None

        if r.is_error:
            # Noren answers most business errors with HTTP 400 + {stat, emsg}
            if isinstance(payload, dict) and ("emsg" in payload or "stat" in payload):
                return payload
            logger.error("Shoonya %s HTTP %s: %s", endpoint, r.status_code, r.text[:500])
            raise BrokerTransportError(f"Shoonya API request failed: HTTP {r.status_code}")

        if payload is None:
            raise BrokerTransportError(f"Shoonya API request failed: non-JSON response from {endpoint}")
        return payload

    @staticmethod
    def _is_ok(payload: Any) -> bool:
        return isinstance(payload, dict) and payload.get("stat") == _OK

    @staticmethod
    def _error_message(payload: Any, default: str = "Unknown error occurred") -> str:
        if isinstance(payload, dict):
            if payload.get("emsg"):
                return str(payload["emsg"])
            if payload.get("error"):
                return str(payload["error"])
            if payload.get("stat") == "Not_Ok":
                return "Operation failed"
        return default

    def _is_session_error(self, payload: Any) -> bool:
        return bool(_SESSION_ERROR.search(self._error_message(payload, "")))

    def _clear_session(self) -> None:
        self._session_token = None
        self._user_id = None

    def _require_session(self) -> str:
        if not self._session_token or not self._user_id:
            raise BrokerAuthError("Not logged in to Shoonya. Please login first.", ErrorCode.NOT_LOGGED_IN)
        return self._user_id

    def _raise_if_session_lost(self, payload: Any) -> None:
        if self._is_session_error(payload):
            self._clear_session()
            raise BrokerAuthError(self._error_message(payload), ErrorCode.AUTH_EXPIRED)

    def _rows(self, payload: Any, what: str) -> list[dict]:
        """Normalize list endpoints: a list on success, {stat: Not_Ok} when empty."""
        if isinstance(payload, list):
            return [row for row in payload if isinstance(row, dict)]
        self._raise_if_session_lost(payload)
        if not self._is_ok(payload):
            logger.info("Shoonya %s returned no data: %s", what, self._error_message(payload))
        return []

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def get_session_token(self) -> Optional[str]:
        return self._session_token

    # ── Authentication ─────────────────────────────────

    async def login(self, credentials) -> LoginResult:
        try:
            creds = require_credentials(credentials, DirectAuthCredentials, "Shoonya")
        except BrokerValidationError as e:
            return LoginResult(
                success=False,
                message=str(e),
                error_code=ErrorCode.VALIDATION_ERROR.value,
                data={"errors": e.errors},
            )

        try:
            factor2 = pyotp.TOTP(creds.totp_key).now()
        except (TypeError, ValueError) as e:
            logger.error("Shoonya TOTP generation failed for %s: %s", creds.user_id, type(e).__name__)
            return LoginResult(
                success=False,
                message="Failed to generate TOTP. Check the TOTP key.",
                error_code=ErrorCode.VALIDATION_ERROR.value,
            )

        login_data = {
            "uid": creds.user_id,
            "pwd": sha256_hex(creds.password),
            "factor2": factor2,
            "vc": creds.vendor_code,
            "appkey": sha256_hex(f"{creds.user_id}|{creds.api_secret}"),
            "imei": creds.imei,
            "source": "API",
            "apkversion": self._apk_version,
        }

        logger.info("Shoonya login attempt for user %s", creds.user_id)
        response = await self._post("QuickAuth", login_data)

        if self._is_ok(response) and response.get("susertoken"):
            self._session_token = response["susertoken"]
            self._user_id = creds.user_id
            logger.info("Shoonya login successful for user %s", creds.user_id)
            return LoginResult(success=True, message="Login successful", data=response)

        message = self._error_message(response, "Login failed")
        logger.warning("Shoonya login failed for user %s: %s", creds.user_id, message)
        return LoginResult(
            success=False,
            message=message,
            error_code=ErrorCode.AUTH_FAILED.value,
            data=response if isinstance(response, dict) else {},
        )

    async def logout(self) -> LogoutResult:
        if not self._session_token:
            return LogoutResult(success=True, message="No active session")

        try:
            response = await self._post("Logout", {"uid": self._user_id or ""}, authenticated=True)
        except BrokerTransportError as e:
            logger.warning("Shoonya logout failed, clearing session anyway: %s", e)
            return LogoutResult(success=True, message="Logout completed with errors")
        finally:
            self._clear_session()

        if self._is_ok(response):
            return LogoutResult(success=True, message="Logout successful")
        return LogoutResult(success=False, message=self._error_message(response, "Logout failed"))

    async def is_logged_in(self) -> bool:
        return self._session_token is not None

    async def validate_session(self, account_id: Optional[str] = None) -> bool:
        uid = account_id or self._user_id
        if not self._session_token or not uid:
            return False

        try:
            response = await self._post("Limits", {"uid": uid, "actid": uid}, authenticated=True)
        except BrokerTransportError as e:
            logger.warning("Shoonya session probe failed: %s", e)
            self._clear_session()
            return False

        if self._is_ok(response):
            return True
        logger.info("Shoonya session no longer valid: %s", self._error_message(response))
        self._clear_session()
        return False

    # ── Orders ─────────────────────────────────────────

    def _order_payload(self, request: OrderRequest, uid: str) -> dict:
        order_type = getattr(request.order_type, "value", request.order_type)
        product = str(request.product_type).upper()
        data = {
            "uid": uid,
            "actid": request.account_id or uid,
            "exch": request.exchange.upper(),
            "tsym": format_symbol_for_exchange(request.symbol, request.exchange),
            "qty": str(int(request.quantity)),
            "dscqty": "0",
            "prc": "0" if order_type in (OrderType.MARKET.value, OrderType.SL_MARKET.value) else str(request.price),
            "prd": _PRODUCT_CODES.get(product, product),
            "trantype": _ACTION_CODES[getattr(request.action, "value", request.action)],
            "prctyp": _ORDER_TYPE_CODES[order_type],
            "ret": getattr(request.validity, "value", request.validity),
            "remarks": request.remarks or "",
            "ordersource": "API",
        }
        if order_type in STOP_ORDER_TYPES and request.trigger_price:
            data["trgprc"] = str(request.trigger_price)
        return data

    def _failed_order(self, response: Any, default: str) -> OrderResponse:
        message = self._error_message(response, default)
        code = ErrorCode.BROKER_ERROR
        if self._is_session_error(response):
            self._clear_session()
            code = ErrorCode.AUTH_EXPIRED
        return OrderResponse(
            success=False,
            message=message,
            error_code=code.value,
            data=response if isinstance(response, dict) else {},
        )

    async def place_order(self, request: OrderRequest) -> OrderResponse:
        validation = validate_order_request(request)
        if not validation.is_valid:
            return OrderResponse(
                success=False,
                message="Order validation failed: " + "; ".join(validation.errors),
                error_code=ErrorCode.VALIDATION_ERROR.value,
                errors=validation.errors,
            )

        if not self._session_token or not self._user_id:
            return OrderResponse(
                success=False,
                message="Not logged in to Shoonya. Please login first.",
                error_code=ErrorCode.NOT_LOGGED_IN.value,
            )

        data = self._order_payload(request, self._user_id)
        logger.info(
            "Placing Shoonya order: %s %s x%s (%s)",
            data["trantype"], data["tsym"], data["qty"], data["prctyp"],
        )
        response = await self._post("PlaceOrder", data, authenticated=True)

        if self._is_ok(response) and response.get("norenordno"):
            order_id = str(response["norenordno"])
            logger.info("Shoonya order placed: %s", order_id)
            return OrderResponse(
                success=True,
                message="Order placed successfully",
                order_id=order_id,
                broker_order_id=order_id,
                status=OrderStatus.PENDING,
                data=response,
            )

        logger.warning("Shoonya order rejected: %s", self._error_message(response))
        return self._failed_order(response, "Order placement failed")

    async def modify_order(
        self,
        order_id: str,
        exchange: str,
        symbol: str,
        quantity: int,
        order_type: str,
        price: Optional[float] = None,
        trigger_price: Optional[float] = None,
        validity: str = "DAY",
    ) -> OrderResponse:
        if not self._session_token or not self._user_id:
            return OrderResponse(
                success=False,
                message="Not logged in to Shoonya. Please login first.",
                error_code=ErrorCode.NOT_LOGGED_IN.value,
            )

        order_type = getattr(order_type, "value", order_type)
        data = {
            "uid": self._user_id,
            "exch": exchange.upper(),
            "norenordno": order_id,
            "tsym": format_symbol_for_exchange(symbol, exchange),
            "qty": str(int(quantity)),
            "prctyp": _ORDER_TYPE_CODES.get(order_type, order_type),
            "prc": "0" if order_type in (OrderType.MARKET.value, OrderType.SL_MARKET.value) else str(price or 0),
            "ret": validity,
        }
        if order_type in STOP_ORDER_TYPES and trigger_price:
            data["trgprc"] = str(trigger_price)

        response = await self._post("ModifyOrder", data, authenticated=True)
        if self._is_ok(response):
            return OrderResponse(
                success=True,
                message="Order modified successfully",
                order_id=order_id,
                broker_order_id=str(response.get("result") or order_id),
                data=response,
            )
        return self._failed_order(response, "Order modification failed")

    async def cancel_order(self, order_id: str) -> OrderResponse:
        if not self._session_token or not self._user_id:
            return OrderResponse(
                success=False,
                message="Not logged in to Shoonya. Please login first.",
                error_code=ErrorCode.NOT_LOGGED_IN.value,
            )

        response = await self._post(
            "CancelOrder",
            {"uid": self._user_id, "norenordno": order_id},
            authenticated=True,
        )
        if self._is_ok(response):
            return OrderResponse(
                success=True,
                message="Order cancelled successfully",
                order_id=order_id,
                broker_order_id=str(response.get("result") or order_id),
                status=OrderStatus.CANCELLED,
                data=response,
            )
        return self._failed_order(response, "Order cancellation failed")

    def _to_order_info(self, row: dict) -> OrderInfo:
        raw_status = str(row.get("status", ""))
        return OrderInfo(
            order_id=str(row.get("norenordno", "")),
            symbol=row.get("tsym", ""),
            exchange=row.get("exch", ""),
            action="BUY" if row.get("trantype") == "B" else "SELL",
            quantity=to_float(row.get("qty")),
            price=to_float(row.get("prc")),
            filled_quantity=to_float(row.get("fillshares")),
            average_price=to_float(row.get("avgprc")),
            status=self.map_order_status(raw_status),
            raw_status=raw_status,
            order_type=_ORDER_TYPE_NAMES.get(row.get("prctyp"), row.get("prctyp")),
            product_type=row.get("prd"),
            rejection_reason=row.get("rejreason", "") or "",
            order_time=row.get("norentm"),
            raw=row,
        )

    async def get_order_book(self, account_id: Optional[str] = None) -> list[OrderInfo]:
        uid = self._require_session()
        response = await self._post("OrderBook", {"uid": account_id or uid}, authenticated=True)
        return [self._to_order_info(row) for row in self._rows(response, "order book")]

    async def get_order_status(self, account_id: Optional[str], order_id: str) -> OrderInfo:
        uid = self._require_session()
        response = await self._post(
            "SingleOrdHist",
            {"uid": account_id or uid, "norenordno": order_id},
            authenticated=True,
        )
        rows = self._rows(response, "order history")
        if not rows:
            raise BrokerRequestError(
                f"Order {order_id} not found: {self._error_message(response, 'no history')}"
            )
        # History is newest-first
        return self._to_order_info(rows[0])

    async def get_trade_book(self, account_id: Optional[str] = None) -> list[dict]:
        uid = self._require_session()
        actid = account_id or uid
        response = await self._post("TradeBook", {"uid": uid, "actid": actid}, authenticated=True)
        return self._rows(response, "trade book")

    async def get_limits(self, account_id: Optional[str] = None) -> dict:
        uid = self._require_session()
        actid = account_id or uid
        response = await self._post("Limits", {"uid": uid, "actid": actid}, authenticated=True)
        if self._is_ok(response):
            return response
        self._raise_if_session_lost(response)
        raise BrokerRequestError(self._error_message(response, "Failed to fetch limits"))

    # ── Portfolio / market data ────────────────────────

    async def get_positions(self, account_id: Optional[str] = None) -> list[Position]:
        uid = self._require_session()
        actid = account_id or uid
        response = await self._post("PositionBook", {"uid": uid, "actid": actid}, authenticated=True)
        positions = []
        for row in self._rows(response, "position book"):
            average = to_float(row.get("netavgprc"), to_float(row.get("netupldprc")))
            positions.append(Position(
                symbol=row.get("tsym", ""),
                exchange=row.get("exch", ""),
                quantity=to_float(row.get("netqty")),
                average_price=average,
                current_price=to_float(row.get("lp"), average),
                product_type=row.get("prd", ""),
            ))
        return positions

    async def search_scrip(self, exchange: str, text: str) -> list[SearchResult]:
        uid = self._require_session()
        response = await self._post(
            "SearchScrip",
            {"uid": uid, "exch": exchange.upper(), "stext": text},
            authenticated=True,
        )
        if not self._is_ok(response):
            self._raise_if_session_lost(response)
            return []

        return [
            SearchResult(
                symbol=v.get("tsym", ""),
                token=str(v.get("token", "")),
                exchange=v.get("exch", exchange.upper()),
                description=v.get("cname", "") or "",
                lot_size=int(to_float(v.get("ls"), 1)),
                tick_size=to_float(v.get("ti"), 0.05),
                instrument_type=v.get("instname", "") or "",
            )
            for v in response.get("values", [])
        ]

    @staticmethod
    def _parse_quote_time(payload: dict) -> Optional[datetime]:
        if payload.get("lut"):
            try:
                return datetime.fromtimestamp(int(payload["lut"]), tz=timezone.utc)
            except (TypeError, ValueError, OverflowError):
                pass
        if payload.get("request_time"):
            try:
                local = datetime.strptime(payload["request_time"], "%H:%M:%S %d-%m-%Y")
                return local.replace(tzinfo=_IST).astimezone(timezone.utc)
            except ValueError:
                pass
        return None

    async def get_quotes(self, exchange: str, token: str) -> Quote:
        uid = self._require_session()
        response = await self._post(
            "GetQuotes",
            {"uid": uid, "exch": exchange.upper(), "token": str(token)},
            authenticated=True,
        )
        if not self._is_ok(response):
            self._raise_if_session_lost(response)
            raise BrokerRequestError(self._error_message(response, "Failed to get quotes"))

        ltp = to_float(response.get("lp"))
        close = to_float(response.get("c"))
        change = ltp - close if close else 0.0
        return Quote(
            symbol=response.get("tsym", str(token)),
            exchange=response.get("exch", exchange.upper()),
            ltp=ltp,
            change=change,
            change_percent=(change / close * 100) if close else 0.0,
            volume=to_float(response.get("v")),
            high=to_float(response.get("h")),
            low=to_float(response.get("l")),
            open=to_float(response.get("o")),
            close=close,
            timestamp=self._parse_quote_time(response),
        )

    # ── Mapping helpers ────────────────────────────────

    def extract_account_info(self, login_response: LoginResult, credentials) -> AccountInfo:
        creds = require_credentials(credentials, DirectAuthCredentials, "Shoonya")
        data = login_response.data or {}
        products = []
        for p in data.get("prarr", []) or []:
            products.append(p.get("prd", "") if isinstance(p, dict) else str(p))
        return AccountInfo(
            account_id=data.get("actid") or creds.user_id,
            user_id=creds.user_id,
            broker=self.broker_name,
            user_name=data.get("uname", "") or "",
            email=data.get("email", "") or "",
            exchanges=list(data.get("exarr", []) or []),
            products=products,
            access_token=data.get("susertoken"),
            token_expiry_time=None,          # Shoonya session tokens do not expire on a clock
            account_status="ACTIVE" if login_response.success else "INACTIVE",
        )

    def extract_order_info(self, order_response: OrderResponse, order_input: OrderRequest) -> dict[str, Any]:
        broker_order_id = order_response.broker_order_id or (order_response.data or {}).get("norenordno")
        return {"broker_order_id": str(broker_order_id) if broker_order_id else None}

    def map_order_status(self, raw_status: Any) -> OrderStatus:
        return standardize_order_status(raw_status)

    # ── Lifecycle ──────────────────────────────────────

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
