"""
Account status resolution.

Turns a stored account record plus "now" into an ``EffectiveStatus``. Every
resolver is a pure function; the broker name picks which one runs.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Union

from brokerlink.schemas.account import AccountStatus, DbAccountRecord, EffectiveStatus
from brokerlink.services.broker.base import AccountInfo

logger = logging.getLogger(__name__)

Resolver = Callable[[DbAccountRecord, datetime], EffectiveStatus]


def _utc(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def _is_past(moment: Optional[datetime], now: datetime) -> bool:
    # A token that expires exactly now is already unusable
    return moment is not None and _utc(moment) <= now


def _verdict(
    status: AccountStatus,
    token_expired: bool,
    can_deactivate: bool = True,
    refresh_required: bool = False,
) -> EffectiveStatus:
    is_active = status == AccountStatus.ACTIVE
    return EffectiveStatus(
        account_status=status,
        is_active=is_active,
        is_token_expired=token_expired,
        should_show_activate_button=not is_active,
        should_show_deactivate_button=is_active and can_deactivate,
        refresh_required=refresh_required,
    )


# ── Resolvers ──────────────────────────────────────────

def default_resolver(record: DbAccountRecord, now: datetime) -> EffectiveStatus:
    """ACTIVE only when stored ACTIVE and any stored access-token expiry lies ahead."""
    token_expired = _is_past(record.token_expiry_time, now)
    if record.account_status != AccountStatus.ACTIVE or token_expired:
        return _verdict(AccountStatus.INACTIVE, token_expired)
    return _verdict(AccountStatus.ACTIVE, False)


def no_expiry_resolver(record: DbAccountRecord, now: datetime) -> EffectiveStatus:
    """For brokers whose session tokens never expire. Timestamps are ignored."""
    status = AccountStatus.ACTIVE if record.account_status == AccountStatus.ACTIVE else AccountStatus.INACTIVE
    return _verdict(status, token_expired=False, can_deactivate=False)


def oauth_resolver(record: DbAccountRecord, now: datetime) -> EffectiveStatus:
    access_expiry = record.token_expiry_time
    refresh_expiry = record.refresh_token_expiry_time

    if record.account_status != AccountStatus.ACTIVE or (access_expiry is None and refresh_expiry is None):
        return _verdict(AccountStatus.PROCEED_TO_OAUTH, _is_past(access_expiry, now))

    if _is_past(refresh_expiry, now):
        # Full re-authorization needed
        return _verdict(AccountStatus.INACTIVE, True)

    if _is_past(access_expiry, now):
        return _verdict(
            AccountStatus.INACTIVE,
            True,
            refresh_required=refresh_expiry is not None,
        )

    return _verdict(AccountStatus.ACTIVE, False)


# ── Dispatch ───────────────────────────────────────────

class AccountStatusResolvers:
    """Broker name -> resolver, case-insensitive, with a fallback."""

    def __init__(self, default: Resolver = default_resolver):
        self._default = default
        self._resolvers: dict[str, Resolver] = {}

    def register(self, broker_name: str, resolver: Resolver) -> None:
        self._resolvers[broker_name.strip().lower()] = resolver

    def unregister(self, broker_name: str) -> None:
        self._resolvers.pop(broker_name.strip().lower(), None)

    def get(self, broker_name: Optional[str]) -> Resolver:
        return self._resolvers.get((broker_name or "").strip().lower(), self._default)

    def resolve(
        self,
        record: Union[DbAccountRecord, Mapping[str, Any]],
        now: Optional[datetime] = None,
    ) -> EffectiveStatus:
        if not isinstance(record, DbAccountRecord):
            record = DbAccountRecord.model_validate(record)
        now = _utc(now) if now is not None else datetime.now(timezone.utc)
        return self.get(record.broker_name)(record, now)

    def __contains__(self, broker_name: object) -> bool:
        return isinstance(broker_name, str) and broker_name.strip().lower() in self._resolvers


def create_default_resolvers() -> AccountStatusResolvers:
    resolvers = AccountStatusResolvers()
    resolvers.register("shoonya", no_expiry_resolver)
    resolvers.register("fyers", oauth_resolver)
    return resolvers


_default_resolvers = create_default_resolvers()


def resolve_account_status(
    record: Union[DbAccountRecord, Mapping[str, Any]],
    now: Optional[datetime] = None,
    resolvers: Optional[AccountStatusResolvers] = None,
) -> EffectiveStatus:
    """
    Compute the effective status of a stored account.

    Pass ``now`` for deterministic results; it defaults to the current UTC
    time. ``resolvers`` overrides the built-in broker table.
    """
    return (resolvers or _default_resolvers).resolve(record, now)


def build_account_record(
    account_info: AccountInfo,
    broker_name: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> DbAccountRecord:
    """Shape a login's ``AccountInfo`` into the record a caller would persist."""
    return DbAccountRecord(
        broker_name=broker_name or account_info.broker,
        account_id=account_info.account_id,
        user_id=account_info.user_id,
        account_status=account_info.account_status,
        token_expiry_time=account_info.token_expiry_time,
        refresh_token_expiry_time=account_info.refresh_token_expiry_time,
        created_at=created_at or datetime.now(timezone.utc),
    )
