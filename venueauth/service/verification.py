from __future__ import annotations

import asyncio
import hmac
import math
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from venueauth.config import Settings
from venueauth.logging import get_logger
from venueauth.service.email import EmailService
from venueauth.service.results import Result, handler_boundary
from venueauth.service.sms import SmsService
from venueauth.storage.models import User, VerificationChannel, VerificationPurpose

logger = get_logger(__name__)

CODE_DIGITS = 6
INVALID_CODE_MESSAGE = "Invalid or expired verification code"


def local_phone_digits(phone_number: str) -> str:
    """Strip the stored "+2" country prefix, leaving the 11-digit local number."""
    return phone_number[2:] if phone_number.startswith("+2") else phone_number


class VerificationService:
    """Numeric one-time codes for account verification and password reset.

    Codes live on the user record, one slot per channel and purpose. An
    account-verification code is not re-issued while the outstanding one
    still has more than ``verification_resend_block_minutes`` left; reset
    codes are throttled by a single per-user "last reset request" time
    shared by both channels.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
        sms: Optional[SmsService] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.email = email or EmailService()
        self.sms = sms or SmsService()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def code_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.verification_code_ttl_minutes)

    def generate_code(self) -> Tuple[bool, str]:
        try:
            low = 10 ** (CODE_DIGITS - 1)
            return True, str(secrets.randbelow(9 * low) + low)
        except OSError as exc:
            logger.error("verification_code_generation_failed", error=str(exc))
            return False, ""

    def validate_code(
        self,
        submitted: Optional[str],
        stored: Optional[str],
        expires_at: Optional[datetime],
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        if not submitted or not stored or expires_at is None:
            return False
        if expires_at <= (now or self._now()):
            return False
        return hmac.compare_digest(submitted.encode(), stored.encode())

    def _display_name(self, user: User) -> str:
        if user.full_name:
            return user.full_name.split()[0]
        if user.venue_id:
            venue = self.store.get_venue(user.venue_id)
            if venue:
                return venue.name
        return user.email.split("@", 1)[0]

    def _resend_wait_seconds(self, user: User, channel: VerificationChannel) -> int:
        current = user.code_for(channel, VerificationPurpose.ACCOUNT_VERIFICATION)
        if not current.code or current.expires_at is None:
            return 0
        block = timedelta(minutes=self.settings.verification_resend_block_minutes)
        remaining = current.expires_at - self._now()
        if remaining <= block:
            return 0
        return math.ceil((remaining - block).total_seconds())

    def _reset_wait_seconds(self, user: User) -> int:
        if user.last_password_reset_request is None:
            return 0
        allowed_at = user.last_password_reset_request + timedelta(
            seconds=self.settings.password_reset_interval_seconds
        )
        return max(0, math.ceil((allowed_at - self._now()).total_seconds()))

    async def _deliver(
        self,
        user: User,
        channel: VerificationChannel,
        purpose: VerificationPurpose,
        code: str,
    ) -> bool:
        minutes = self.settings.verification_code_ttl_minutes
        if channel is VerificationChannel.PHONE:
            return await self.sms.send_code(
                local_phone_digits(user.phone_number), code, minutes=minutes
            )
        sender = (
            self.email.send_password_reset_code
            if purpose is VerificationPurpose.PASSWORD_RESET
            else self.email.send_verification_code
        )
        return await asyncio.to_thread(
            sender, user.email, self._display_name(user), code, minutes=minutes
        )

    @handler_boundary("An error occurred while sending verification code")
    async def send_code(
        self,
        *,
        user_id: str,
        method: VerificationChannel,
        purpose: VerificationPurpose = VerificationPurpose.ACCOUNT_VERIFICATION,
    ) -> Result[Dict[str, Any]]:
        channel = VerificationChannel(method)
        purpose = VerificationPurpose(purpose)
        user = self.store.get_user(user_id)
        if not user:
            return Result.not_found("User not found")

        label = "Email" if channel is VerificationChannel.EMAIL else "Phone number"
        contact = user.email if channel is VerificationChannel.EMAIL else user.phone_number
        if not contact:
            kind = "email" if channel is VerificationChannel.EMAIL else "phone number"
            return Result.invalid(f"No {kind} associated with this account")

        now = self._now()
        if purpose is VerificationPurpose.ACCOUNT_VERIFICATION:
            if user.is_channel_verified(channel):
                return Result.invalid(f"{label} already verified")
            wait = self._resend_wait_seconds(user, channel)
            if wait:
                minutes = math.ceil(wait / 60)
                return Result.rate_limited(
                    f"Please wait {minutes} minutes before requesting another code.",
                    wait,
                )
        else:
            if not user.is_channel_verified(channel):
                return Result.invalid(f"{label} not verified")
            wait = self._reset_wait_seconds(user)
            if wait:
                return Result.rate_limited(
                    f"Please wait {wait} seconds before requesting another code.",
                    wait,
                )

        ok, code = self.generate_code()
        if not ok:
            return Result.failure("Failed to generate verification code")

        expires_at = now + self.code_ttl
        with self.store.transaction():
            self.store.set_verification_code(user.id, channel, purpose, code, expires_at)
            if purpose is VerificationPurpose.PASSWORD_RESET:
                self.store.set_last_password_reset_request(user.id, now)

        if not await self._deliver(user, channel, purpose, code):
            logger.warning(
                "verification_code_delivery_failed",
                user_id=user.id,
                channel=channel.value,
                purpose=purpose.value,
            )
            return Result.failure("Failed to send verification code")

        logger.info(
            "verification_code_sent",
            user_id=user.id,
            channel=channel.value,
            purpose=purpose.value,
        )
        payload: Dict[str, Any] = {
            "message": f"Verification code sent to your {label.lower()}",
            "expires_in_minutes": self.settings.verification_code_ttl_minutes,
        }
        if self.settings.expose_verification_codes:
            payload["verification_code"] = code
        return Result.success(payload)

    @handler_boundary("An error occurred while verifying the account")
    async def verify(
        self, *, user_id: str, method: VerificationChannel, code: str
    ) -> Result[User]:
        """Consume an account-verification code and set the channel's verified flag."""
        channel = VerificationChannel(method)
        user = self.store.get_user(user_id)
        if not user:
            return Result.not_found("User not found")
        stored = user.code_for(channel, VerificationPurpose.ACCOUNT_VERIFICATION)
        if not self.validate_code(code, stored.code, stored.expires_at):
            logger.info("verification_code_rejected", user_id=user.id, channel=channel.value)
            return Result.invalid(INVALID_CODE_MESSAGE)

        with self.store.transaction():
            self.store.clear_verification_code(
                user.id, channel, VerificationPurpose.ACCOUNT_VERIFICATION
            )
            user = self.store.mark_verified(user.id, channel)
        logger.info("account_verified", user_id=user.id, channel=channel.value)
        return Result.success(user, message="Account verified successfully")

    def check_reset_code(
        self, user: User, channel: VerificationChannel, code: str
    ) -> Result[Dict[str, Any]]:
        """Inspect a password reset code without consuming it."""
        stored = user.code_for(channel, VerificationPurpose.PASSWORD_RESET)
        if stored.used:
            return Result.invalid("Reset code has already been used.")
        if not self.validate_code(code, stored.code, stored.expires_at):
            return Result.invalid("Invalid or expired reset code.")
        remaining = (stored.expires_at - self._now()).total_seconds() / 60
        return Result.success({"expires_in_minutes": round(remaining, 1)})
