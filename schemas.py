import datetime as dt
from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import TransactionType, UserRole


PIN_PATTERN = r"^\d{4}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
# Stays exactly representable as a float and well inside SQLite INTEGER.
MAX_AMOUNT = 10**15


class RegisterIn(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(..., min_length=6, max_length=128)
    name: str = Field(..., min_length=1, max_length=255)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value


class LoginIn(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(..., min_length=1)


class TransactionIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    type: TransactionType
    amount: float = Field(..., ge=0, le=MAX_AMOUNT, allow_inf_nan=False)
    date: date

    @field_validator("description")
    @classmethod
    def _strip_description(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Description is required")
        return value


class ProfileUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    timezone: Optional[str] = Field(default=None, max_length=64)
    password: Optional[str] = Field(default=None, min_length=6, max_length=128)

    @field_validator("password", mode="before")
    @classmethod
    def _blank_password_is_unchanged(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class PinUpdateIn(BaseModel):
    pin: Optional[str] = Field(default=None, pattern=PIN_PATTERN)
    pin_enabled: bool

    @field_validator("pin", mode="before")
    @classmethod
    def _blank_pin_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class PinVerifyIn(BaseModel):
    pin: str = Field(..., pattern=PIN_PATTERN)


class AdminUserCreateIn(RegisterIn):
    role: UserRole = UserRole.user


class AdminUserUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    password: Optional[str] = Field(default=None, min_length=6, max_length=128)

    @field_validator("password", mode="before")
    @classmethod
    def _blank_password_is_unchanged(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class RoleUpdateIn(BaseModel):
    role: UserRole


class ImportRow(BaseModel):
    model_config = ConfigDict(extra="forbid")

    row: int
    description: str
    type: TransactionType
    amount: int = Field(..., ge=0, le=MAX_AMOUNT)
    date: dt.date


class ViewParams(BaseModel):
    search: str = ""
    date_from: Optional[dt.date] = None
    date_to: Optional[dt.date] = None
    type: Optional[TransactionType] = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=25, ge=1, le=500)
    chart_granularity: Literal["day", "month"] = "day"
    reference_date: Optional[dt.date] = None
