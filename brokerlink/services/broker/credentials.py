"""
Broker credential variants.

Exactly one variant is valid per broker key: direct-auth brokers take
``DirectAuthCredentials``, OAuth brokers take ``OAuthCredentials``. Adapters
reject the wrong variant at the boundary with ``BrokerValidationError``.
"""

from dataclasses import MISSING, dataclass, fields
from datetime import datetime, timezone
from typing import Any, ClassVar, Mapping, Optional, Union

from brokerlink.core.exceptions import BrokerValidationError


def _blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def _to_datetime(value: Any) -> datetime:
    """Accept a datetime or an ISO-8601 string; naive values are taken as UTC."""
    if not isinstance(value, datetime):
        try:
            value = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            raise BrokerValidationError(f"Invalid timestamp: {value}") from None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class DirectAuthCredentials:
    user_id: str
    password: str
    vendor_code: str
    api_secret: str
    imei: str
    totp_key: str

    kind: ClassVar[str] = "direct"

    def missing_fields(self) -> list[str]:
        labels = {
            "user_id": "User ID",
            "password": "Password",
            "vendor_code": "Vendor code",
            "api_secret": "API secret",
            "imei": "IMEI",
            "totp_key": "TOTP key",
        }
        return [f"{label} is required" for name, label in labels.items() if _blank(getattr(self, name))]

    def __repr__(self) -> str:
        return f"DirectAuthCredentials(user_id={self.user_id!r})"


@dataclass(frozen=True)
class OAuthCredentials:
    client_id: str
    secret_key: str
    redirect_uri: str
    auth_code: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    pin: Optional[str] = None            # needed by Fyers for refresh-token grants
    state: Optional[str] = None
    # Stored alongside access_token so a restored session keeps its expiry
    token_expiry_time: Optional[datetime] = None
    refresh_token_expiry_time: Optional[datetime] = None

    kind: ClassVar[str] = "oauth"

    def missing_fields(self) -> list[str]:
        labels = {
            "client_id": "Client ID",
            "secret_key": "Secret key",
            "redirect_uri": "Redirect URI",
        }
        return [f"{label} is required" for name, label in labels.items() if _blank(getattr(self, name))]

    def __repr__(self) -> str:
        return f"OAuthCredentials(client_id={self.client_id!r}, has_auth_code={bool(self.auth_code)})"


BrokerCredentials = Union[DirectAuthCredentials, OAuthCredentials]

# Accepted spellings for each field: snake_case first, then the camelCase
# names used by front ends.
_ALIASES: dict[str, dict[str, tuple[str, ...]]] = {
    DirectAuthCredentials.kind: {
        "user_id": ("user_id", "userId", "uid"),
        "password": ("password",),
        "vendor_code": ("vendor_code", "vendorCode", "vc"),
        "api_secret": ("api_secret", "apiSecret", "apiKey"),
        "imei": ("imei",),
        "totp_key": ("totp_key", "totpKey", "totpSecret"),
    },
    OAuthCredentials.kind: {
        "client_id": ("client_id", "clientId", "app_id", "appId"),
        "secret_key": ("secret_key", "secretKey"),
        "redirect_uri": ("redirect_uri", "redirectUri"),
        "auth_code": ("auth_code", "authCode"),
        "access_token": ("access_token", "accessToken"),
        "refresh_token": ("refresh_token", "refreshToken"),
        "pin": ("pin",),
        "state": ("state",),
        "token_expiry_time": ("token_expiry_time", "tokenExpiryTime"),
        "refresh_token_expiry_time": ("refresh_token_expiry_time", "refreshTokenExpiryTime"),
    },
}

_VARIANTS = {
    DirectAuthCredentials.kind: DirectAuthCredentials,
    OAuthCredentials.kind: OAuthCredentials,
}

_DATETIME_FIELDS = {"token_expiry_time", "refresh_token_expiry_time"}


def parse_credentials(kind: str, payload: Mapping[str, Any]) -> BrokerCredentials:
    """Build a credential variant from a loose mapping (e.g. a request body)."""
    if kind not in _VARIANTS:
        raise BrokerValidationError(f"Unsupported credential type: {kind}")

    values: dict[str, Any] = {}
    for name, aliases in _ALIASES[kind].items():
        for alias in aliases:
            if payload.get(alias) is not None:
                raw = payload[alias]
                values[name] = _to_datetime(raw) if name in _DATETIME_FIELDS else str(raw).strip()
                break

    variant = _VARIANTS[kind]
    # Fill absent required fields so missing_fields() can report all of them at once
    for f in fields(variant):
        if f.default is MISSING and f.name not in values:
            values[f.name] = ""

    credentials = variant(**values)
    errors = credentials.missing_fields()
    if errors:
        raise BrokerValidationError("Invalid credentials: " + ", ".join(errors), errors)
    return credentials


def require_credentials(credentials: Any, expected: type, broker: str):
    """Reject a credential variant that does not belong to this broker."""
    if not isinstance(credentials, expected):
        got = getattr(credentials, "kind", type(credentials).__name__)
        raise BrokerValidationError(
            f"{broker} expects {expected.kind} credentials, got {got}"
        )
    errors = credentials.missing_fields()
    if errors:
        raise BrokerValidationError("Invalid credentials: " + ", ".join(errors), errors)
    return credentials
