"""Pydantic schemas for stored broker accounts and their computed status."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, field_validator


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    PROCEED_TO_OAUTH = "PROCEED_TO_OAUTH"


class DbAccountRecord(BaseModel):
    """
    Account row as persisted by the calling application.

    Read-only here. Timestamps may arrive as datetimes, ISO strings or None;
    naive datetimes are taken to be UTC.
    """
    broker_name: str
    account_id: str = ""
    user_id: str = ""
    account_status: Optional[AccountStatus] = None
    token_expiry_time: Optional[datetime] = None
    refresh_token_expiry_time: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator("account_status", mode="before")
    def norm_status(cls, v: Any):
        if v is None or isinstance(v, AccountStatus):
            return v
        v = str(getattr(v, "value", v)).strip().upper()
        if not v:
            return None
        # Anything we don't recognise is treated as not usable
        return v if v in AccountStatus.__members__ else AccountStatus.INACTIVE

    @field_validator("token_expiry_time", "refresh_token_expiry_time", "created_at", mode="before")
    def blank_to_none(cls, v: Any):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("token_expiry_time", "refresh_token_expiry_time", "created_at")
    def assume_utc(cls, v: Optional[datetime]):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class EffectiveStatus(BaseModel):
    """Computed usability verdict for one account record at one instant. Never stored."""
    account_status: AccountStatus
    is_active: bool
    is_token_expired: bool
    should_show_activate_button: bool
    should_show_deactivate_button: bool
    refresh_required: bool = False   # access token expired, refresh token still valid
