from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional

from venueauth.service.permissions import SubUserRole, VenuePermissions


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationChannel(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


class VerificationPurpose(str, Enum):
    ACCOUNT_VERIFICATION = "account_verification"
    PASSWORD_RESET = "password_reset"


def code_slot(channel: VerificationChannel, purpose: VerificationPurpose) -> str:
    """Key under which a user's code for one channel and purpose is stored."""
    return f"{VerificationChannel(channel).value}:{VerificationPurpose(purpose).value}"


@dataclass
class VerificationCode:
    code: Optional[str] = None
    expires_at: Optional[datetime] = None
    # only meaningful for password reset codes
    used: bool = False


@dataclass
class User:
    id: str
    email: str
    phone_number: Optional[str] = None
    venue_id: Optional[str] = None
    full_name: Optional[str] = None
    is_active: bool = True
    is_email_verified: bool = False
    is_phone_verified: bool = False
    codes: Dict[str, VerificationCode] = field(default_factory=dict)
    last_password_reset_request: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None

    @property
    def user_type(self) -> str:
        return "venue" if self.venue_id else "customer"

    @property
    def roles(self) -> List[str]:
        return ["Venue"] if self.venue_id else ["Customer"]

    @property
    def is_verified(self) -> bool:
        return self.is_email_verified or self.is_phone_verified

    def code_for(
        self, channel: VerificationChannel, purpose: VerificationPurpose
    ) -> VerificationCode:
        return self.codes.get(code_slot(channel, purpose)) or VerificationCode()

    def is_channel_verified(self, channel: VerificationChannel) -> bool:
        if VerificationChannel(channel) is VerificationChannel.EMAIL:
            return self.is_email_verified
        return self.is_phone_verified


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class Venue:
    id: str
    name: str
    venue_type: str
    email: Optional[str] = None
    is_profile_complete: bool = False
    requires_sub_user_setup: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token: str
    refresh_token_expiry: datetime
    is_active: bool = True
    device_name: str = "Unknown Device"
    device_type: str = "Unknown"
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    access_token_jti: Optional[str] = None
    access_token_expiry: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        ttl_days: int = 30,
        *,
        device_name: str | None = None,
        device_type: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            refresh_token_expiry=now + timedelta(days=ttl_days),
            device_name=device_name or "Unknown Device",
            device_type=device_type or "Unknown",
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=now,
            last_activity_at=now,
        )

    def is_usable(self, now: datetime | None = None) -> bool:
        return self.is_active and self.refresh_token_expiry > (now or utcnow())


@dataclass
class VenueSubUser:
    id: str
    venue_id: str
    username: str
    password_hash: str
    password_algo: str = "argon2id"
    role: SubUserRole = SubUserRole.STAFF
    permissions: VenuePermissions = VenuePermissions.NONE
    is_active: bool = True
    is_founder_admin: bool = False
    must_change_password: bool = True
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_by_sub_user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def is_locked(self, now: datetime | None = None) -> bool:
        return self.locked_until is not None and self.locked_until > (now or utcnow())


@dataclass
class VenueSubUserSession:
    id: str
    sub_user_id: str
    venue_id: str
    refresh_token: str
    refresh_token_expiry: datetime
    # snapshot taken at login, not re-derived on validation
    permissions: VenuePermissions = VenuePermissions.NONE
    is_active: bool = True
    device_name: str = "Sub-User Session"
    device_type: str = "Unknown"
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    access_token_jti: Optional[str] = None
    access_token_expiry: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        sub_user: VenueSubUser,
        refresh_token: str,
        ttl_days: int = 30,
        *,
        device_type: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "VenueSubUserSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            sub_user_id=sub_user.id,
            venue_id=sub_user.venue_id,
            refresh_token=refresh_token,
            refresh_token_expiry=now + timedelta(days=ttl_days),
            permissions=VenuePermissions(int(sub_user.permissions)),
            device_type=device_type or "Unknown",
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=now,
            last_activity_at=now,
        )

    def is_usable(self, now: datetime | None = None) -> bool:
        return self.is_active and self.refresh_token_expiry > (now or utcnow())


@dataclass
class VenueAuditLog:
    id: str
    venue_id: str
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    actor_sub_user_id: Optional[str] = None
    details: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
