from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from venueauth.service.permissions import ALL_PERMISSIONS, SubUserRole

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code clients can switch on."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters used for look-alike spoofing."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_LOCAL_PHONE = re.compile(r"^01[0125]\d{8}$")
_CODE = re.compile(r"^\d{6}$")
_USERNAME = re.compile(r"^[A-Za-z0-9_.-]+$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_local_phone(value: str) -> str:
    value = value.strip()
    if not _LOCAL_PHONE.match(value):
        raise ValueError(
            "Phone number must be in format 01xxxxxxxxx (11 digits starting with 010, 011, 012, or 015)"
        )
    return value


def _validate_password(value: str) -> str:
    if len(value) < 6:
        raise ValueError("Password must be at least 6 characters long")
    if len(value) > 100:
        raise ValueError("Password must not exceed 100 characters")
    return value


def _validate_strong_password(value: str) -> str:
    _validate_password(value)
    if not (
        re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)
    ):
        raise ValueError("Password must contain uppercase, lowercase, and a digit")
    return value


def _validate_sub_user_password(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if len(value) > 100:
        raise ValueError("Password must not exceed 100 characters")
    return value


def _validate_code(value: str) -> str:
    value = value.strip()
    if not _CODE.match(value):
        raise ValueError("Verification code must be 6 digits")
    return value


def _validate_identifier(value: str) -> str:
    value = value.strip()
    if "@" in value:
        return _validate_email(value)
    return _validate_local_phone(value)


# -- device metadata -----------------------------------------------------------


class DeviceFields(BaseModel):
    device_name: Optional[str] = Field(default=None, max_length=100)
    device_type: Optional[str] = Field(default=None, max_length=50)


# -- registration and login ---------------------------------------------------


class RegisterVenueRequest(BaseModel):
    email: str
    password: str
    phone_number: str
    venue_name: str = Field(..., min_length=3, max_length=200)
    venue_type: str = Field(..., pattern="^(playstation|football_court|padel_court|multi_purpose)$")

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_strong_password(value)

    @field_validator("phone_number")
    @classmethod
    def _phone(cls, value: str) -> str:
        return _validate_local_phone(value)

    @field_validator("venue_name")
    @classmethod
    def _venue_name(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class RegisterCustomerRequest(BaseModel):
    email: str
    password: str
    phone_number: str
    full_name: str = Field(..., min_length=2, max_length=100)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password(value)

    @field_validator("phone_number")
    @classmethod
    def _phone(cls, value: str) -> str:
        return _validate_local_phone(value)


class CustomerLoginRequest(DeviceFields):
    email_or_phone: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=100)

    @field_validator("email_or_phone")
    @classmethod
    def _identifier(cls, value: str) -> str:
        return _validate_identifier(value)


class VenueLoginRequest(BaseModel):
    email_or_phone: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=100)

    @field_validator("email_or_phone")
    @classmethod
    def _identifier(cls, value: str) -> str:
        return _validate_identifier(value)


class RefreshRequest(DeviceFields):
    refresh_token: str = Field(..., min_length=32, max_length=512)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


# -- account ----------------------------------------------------------------


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=100)
    new_password: str
    logout_all_devices: bool = False

    @field_validator("new_password")
    @classmethod
    def _new_password(cls, value: str) -> str:
        return _validate_password(value)


class DeactivateRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=100)


class SendVerificationCodeRequest(BaseModel):
    user_id: str = Field(..., max_length=64)
    method: str = Field(..., pattern="^(email|phone)$")
    purpose: str = Field(
        default="account_verification",
        pattern="^(account_verification|password_reset)$",
    )


class VerifyAccountRequest(DeviceFields):
    user_id: str = Field(..., max_length=64)
    method: str = Field(..., pattern="^(email|phone)$")
    code: str

    @field_validator("code")
    @classmethod
    def _code(cls, value: str) -> str:
        return _validate_code(value)


class ValidateTokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)
    include_user_details: bool = False


# -- password reset -----------------------------------------------------------


class ForgotPasswordRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254)
    user_type: str = Field(default="customer", pattern="^(customer|venue)$")


class ValidateResetCodeRequest(BaseModel):
    user_id: str = Field(..., max_length=64)
    method: str = Field(..., pattern="^(email|phone)$")
    code: str

    @field_validator("code")
    @classmethod
    def _code(cls, value: str) -> str:
        return _validate_code(value)


class ResetPasswordRequest(ValidateResetCodeRequest):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _new_password(cls, value: str) -> str:
        return _validate_password(value)


# -- venue sub-users ------------------------------------------------------------


def _validate_username(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if not 3 <= len(value) <= 50:
        raise ValueError("Username must be between 3 and 50 characters")
    if not _USERNAME.match(value):
        raise ValueError("Username may contain letters, digits, '.', '_' and '-' only")
    return value


def _parse_role(value: Any) -> Optional[SubUserRole]:
    if value is None or isinstance(value, SubUserRole):
        return value
    if isinstance(value, str):
        try:
            return SubUserRole[value.strip().upper()]
        except KeyError:
            raise ValueError("role must be one of admin, coworker, operator, staff") from None
    return SubUserRole(int(value))


def _validate_mask(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    if value < 0 or value & ~ALL_PERMISSIONS.value:
        raise ValueError("permissions contains unknown bits")
    return value


class FirstAdminRequest(BaseModel):
    username: str
    password: str

    @field_validator("username")
    @classmethod
    def _username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_sub_user_password(value)


class SubUserLoginRequest(DeviceFields):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=100)


class SubUserRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=32, max_length=512)


class SubUserCreateRequest(FirstAdminRequest):
    role: SubUserRole
    permissions: Optional[int] = None

    @field_validator("role", mode="before")
    @classmethod
    def _role(cls, value: Any) -> Optional[SubUserRole]:
        return _parse_role(value)

    @field_validator("permissions")
    @classmethod
    def _permissions(cls, value: Optional[int]) -> Optional[int]:
        return _validate_mask(value)


class SubUserUpdateRequest(BaseModel):
    role: Optional[SubUserRole] = None
    permissions: Optional[int] = None
    is_active: Optional[bool] = None

    @field_validator("role", mode="before")
    @classmethod
    def _role(cls, value: Any) -> Optional[SubUserRole]:
        return _parse_role(value)

    @field_validator("permissions")
    @classmethod
    def _permissions(cls, value: Optional[int]) -> Optional[int]:
        return _validate_mask(value)


class SubUserChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=100)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _new_password(cls, value: str) -> str:
        return _validate_sub_user_password(value)


class SubUserResetPasswordRequest(BaseModel):
    new_password: str
    must_change_password: bool = True

    @field_validator("new_password")
    @classmethod
    def _new_password(cls, value: str) -> str:
        return _validate_sub_user_password(value)
