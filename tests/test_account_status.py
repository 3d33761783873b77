"""
Tests for account status resolution.
"""
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FIXED_NOW
from brokerlink.schemas.account import AccountStatus, DbAccountRecord, EffectiveStatus
from brokerlink.services.account.status import (
    AccountStatusResolvers,
    build_account_record,
    default_resolver,
    resolve_account_status,
)
from brokerlink.services.broker.base import AccountInfo

PAST = FIXED_NOW - timedelta(hours=1)
FUTURE = FIXED_NOW + timedelta(hours=1)


def record(broker="fyers", status="ACTIVE", token_expiry=None, refresh_expiry=None, **extra):
    return DbAccountRecord(
        broker_name=broker,
        account_id="ACC-1",
        user_id="USER-1",
        account_status=status,
        token_expiry_time=token_expiry,
        refresh_token_expiry_time=refresh_expiry,
        **extra,
    )


# ── OAuth brokers ──────────────────────────────────────

class TestOAuthResolver:

    def test_access_expired_refresh_valid(self):
        result = resolve_account_status(record(token_expiry=PAST, refresh_expiry=FUTURE), FIXED_NOW)

        assert result.account_status == AccountStatus.INACTIVE
        assert result.is_token_expired
        assert result.should_show_activate_button
        assert not result.should_show_deactivate_button
        assert result.refresh_required

    def test_both_tokens_valid(self):
        result = resolve_account_status(record(token_expiry=FUTURE, refresh_expiry=FUTURE), FIXED_NOW)

        assert result.account_status == AccountStatus.ACTIVE
        assert result.is_active
        assert result.should_show_deactivate_button
        assert not result.should_show_activate_button
        assert not result.is_token_expired
        assert not result.refresh_required

    def test_refresh_expired_needs_full_reauth(self):
        result = resolve_account_status(record(token_expiry=PAST, refresh_expiry=PAST), FIXED_NOW)

        assert result.account_status == AccountStatus.INACTIVE
        assert result.is_token_expired
        assert not result.refresh_required

    def test_refresh_expired_with_valid_access_token(self):
        result = resolve_account_status(record(token_expiry=FUTURE, refresh_expiry=PAST), FIXED_NOW)
        assert result.account_status == AccountStatus.INACTIVE

    @pytest.mark.parametrize("status", ["INACTIVE", "PROCEED_TO_OAUTH", None])
    def test_not_active_proceeds_to_oauth(self, status):
        result = resolve_account_status(record(status=status, token_expiry=FUTURE, refresh_expiry=FUTURE), FIXED_NOW)

        assert result.account_status == AccountStatus.PROCEED_TO_OAUTH
        assert not result.is_active
        assert result.should_show_activate_button

    def test_no_expiry_metadata_proceeds_to_oauth(self):
        result = resolve_account_status(record(), FIXED_NOW)
        assert result.account_status == AccountStatus.PROCEED_TO_OAUTH
        assert not result.is_token_expired

    def test_expiry_exactly_now_counts_as_expired(self):
        result = resolve_account_status(record(token_expiry=FIXED_NOW, refresh_expiry=FUTURE), FIXED_NOW)
        assert result.is_token_expired

    def test_broker_name_is_case_insensitive(self):
        result = resolve_account_status(record(broker="  FYERS ", token_expiry=PAST, refresh_expiry=FUTURE), FIXED_NOW)
        assert result.refresh_required


# ── No-expiry brokers ──────────────────────────────────

class TestNoExpiryResolver:

    @pytest.mark.parametrize("token_expiry", [None, PAST, FUTURE])
    def test_timestamps_are_ignored(self, token_expiry):
        result = resolve_account_status(
            record(broker="shoonya", token_expiry=token_expiry, refresh_expiry=token_expiry), FIXED_NOW
        )

        assert result.account_status == AccountStatus.ACTIVE
        assert result.is_active
        assert not result.is_token_expired

    @pytest.mark.parametrize("status", ["ACTIVE", "INACTIVE", None])
    def test_never_offers_deactivate(self, status):
        result = resolve_account_status(record(broker="Shoonya", status=status, token_expiry=PAST), FIXED_NOW)
        assert not result.should_show_deactivate_button

    def test_inactive_stays_inactive(self):
        result = resolve_account_status(record(broker="shoonya", status="INACTIVE"), FIXED_NOW)

        assert result.account_status == AccountStatus.INACTIVE
        assert result.should_show_activate_button


# ── Default resolver ───────────────────────────────────

class TestDefaultResolver:

    def test_unknown_broker_uses_default(self):
        result = resolve_account_status(record(broker="zerodha", token_expiry=PAST), FIXED_NOW)

        assert result.account_status == AccountStatus.INACTIVE
        assert result.is_token_expired

    def test_active_without_expiry(self):
        result = resolve_account_status(record(broker="zerodha"), FIXED_NOW)
        assert result.account_status == AccountStatus.ACTIVE
        assert result.should_show_deactivate_button

    @pytest.mark.parametrize("status", [None, "INACTIVE", "PROCEED_TO_OAUTH"])
    def test_missing_or_inactive_status(self, status):
        result = resolve_account_status(record(broker="zerodha", status=status, token_expiry=FUTURE), FIXED_NOW)
        assert result.account_status == AccountStatus.INACTIVE


# ── Records ────────────────────────────────────────────

class TestDbAccountRecord:

    def test_iso_strings_and_naive_datetimes(self):
        rec = DbAccountRecord(
            broker_name="fyers",
            account_status="active",
            token_expiry_time="2026-10-19T10:15:00Z",
            refresh_token_expiry_time=datetime(2026, 11, 18, 9, 15),
            created_at="",
        )

        assert rec.account_status == AccountStatus.ACTIVE
        assert rec.token_expiry_time == FIXED_NOW + timedelta(hours=1)
        assert rec.refresh_token_expiry_time.tzinfo == timezone.utc
        assert rec.created_at is None

    def test_unknown_status_resolves_inactive(self):
        rec = DbAccountRecord(broker_name="zerodha", account_status="SUSPENDED")

        assert rec.account_status == AccountStatus.INACTIVE
        assert resolve_account_status(rec, FIXED_NOW).account_status == AccountStatus.INACTIVE

    def test_mapping_input(self):
        result = resolve_account_status({
            "broker_name": "fyers",
            "account_status": "ACTIVE",
            "token_expiry_time": FUTURE.isoformat(),
            "refresh_token_expiry_time": FUTURE.isoformat(),
        }, FIXED_NOW)

        assert result.is_active


def test_resolver_is_pure():
    rec = record(token_expiry=PAST, refresh_expiry=FUTURE)
    snapshot = rec.model_dump()

    first = resolve_account_status(rec, FIXED_NOW)
    second = resolve_account_status(rec, FIXED_NOW)

    assert first == second
    assert rec.model_dump() == snapshot


def test_naive_now_is_treated_as_utc():
    rec = record(token_expiry=FUTURE, refresh_expiry=FUTURE)
    naive_now = FIXED_NOW.replace(tzinfo=None)

    assert resolve_account_status(rec, naive_now) == resolve_account_status(rec, FIXED_NOW)


def test_custom_resolver_table():
    resolvers = AccountStatusResolvers()
    resolvers.register("Paper", lambda rec, now: EffectiveStatus(
        account_status=AccountStatus.ACTIVE,
        is_active=True,
        is_token_expired=False,
        should_show_activate_button=False,
        should_show_deactivate_button=False,
    ))

    assert "paper" in resolvers
    assert resolve_account_status(record(broker="PAPER", status="INACTIVE"), FIXED_NOW, resolvers).is_active
    # Brokers not in the table fall back to the default resolver
    assert resolvers.get("fyers") is default_resolver

    resolvers.unregister("paper")
    assert "paper" not in resolvers


def test_build_account_record_from_login():
    info = AccountInfo(
        account_id="XY01234",
        user_id="XY01234",
        broker="fyers",
        access_token="acc-1",
        token_expiry_time=FIXED_NOW + timedelta(hours=24),
        refresh_token_expiry_time=FIXED_NOW + timedelta(days=30),
        account_status="ACTIVE",
    )

    rec = build_account_record(info, created_at=FIXED_NOW)

    assert rec.broker_name == "fyers"
    assert rec.account_status == AccountStatus.ACTIVE
    assert rec.created_at == FIXED_NOW
    assert resolve_account_status(rec, FIXED_NOW).is_active
    assert not resolve_account_status(rec, FIXED_NOW + timedelta(days=2)).is_active
