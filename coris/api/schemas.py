from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_PASSWORD_LENGTH = 128


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


# auth


class SignupRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=20, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserOut(BaseModel):
    id: str
    email: Optional[str] = None


class AuthResponse(BaseModel):
    user: UserOut
    csrf: str


class MeResponse(BaseModel):
    user: UserOut


class CsrfResponse(BaseModel):
    csrf: str


class OkResponse(BaseModel):
    ok: bool = True
    message: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={"example": {"ok": True}})


class ErrorResponse(BaseModel):
    error: str


# bills

TemplateFrequency = Literal["weekly", "biweekly", "monthly", "quarterly", "yearly"]
ScheduleFrequency = Literal["weekly", "biweekly", "monthly"]


class TemplateCreateRequest(BaseModel):
    bill_name: str = Field(..., min_length=1, max_length=200)
    category: str = Field(..., min_length=1, max_length=100)
    frequency: TemplateFrequency
    due_day: Optional[int] = Field(default=None, ge=1, le=31)
    default_amount: float = Field(..., gt=0)
    is_variable: bool = False
    notes: str = Field(default="", max_length=2000)


class TemplateUpdateRequest(BaseModel):
    bill_name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    frequency: Optional[TemplateFrequency] = None
    due_day: Optional[int] = Field(default=None, ge=1, le=31)
    default_amount: Optional[float] = Field(default=None, gt=0)
    is_variable: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class OccurrenceAmountRequest(BaseModel):
    amount: float = Field(..., gt=0)


class MarkPaidRequest(BaseModel):
    paid_date: Optional[datetime] = None
    amount_paid: Optional[float] = Field(default=None, gt=0)


class ScheduleSetRequest(BaseModel):
    frequency: ScheduleFrequency
    next_paycheck_date: date
    typical_net_pay: Optional[float] = Field(default=None, gt=0)

    @field_validator("next_paycheck_date", mode="before")
    @classmethod
    def _require_iso_date(cls, value):
        if isinstance(value, str) and not re.fullmatch(r"\d{4}-\d{2}-\d{2}", value):
            raise ValueError("next_paycheck_date must be YYYY-MM-DD")
        return value
