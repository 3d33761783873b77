"""
Tests for settings and logging setup.
"""
import logging

from brokerlink.core.config import Settings
from brokerlink.core.exceptions import BrokerValidationError, UnknownBrokerError
from brokerlink.core.logging import setup_logging


def test_defaults():
    cfg = Settings(_env_file=None)

    assert cfg.REQUEST_TIMEOUT_SECONDS == 30.0
    assert cfg.FYERS_ACCESS_TOKEN_TTL_HOURS == 24
    assert cfg.FYERS_REFRESH_TOKEN_TTL_DAYS == 30
    assert cfg.SHOONYA_BASE_URL.endswith("/NorenWClientTP")
    assert cfg.ENABLED_BROKERS == []


def test_every_field_is_broker_config():
    assert not {"APP_NAME", "APP_VERSION"} & set(Settings.model_fields)


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("REQUEST_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("ENABLED_BROKERS", '["shoonya"]')

    cfg = Settings(_env_file=None)

    assert cfg.REQUEST_TIMEOUT_SECONDS == 5.0
    assert cfg.ENABLED_BROKERS == ["shoonya"]


def test_setup_logging_quiets_http_clients():
    logging.getLogger("httpx").setLevel(logging.DEBUG)

    setup_logging("debug")

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING


def test_error_messages():
    err = UnknownBrokerError("zerodha", ["shoonya", "fyers"])
    assert str(err) == "Unknown broker 'zerodha'. Available brokers: fyers, shoonya"

    err = BrokerValidationError("bad")
    assert err.errors == ["bad"]
