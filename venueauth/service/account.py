from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from venueauth.config import Settings
from venueauth.logging import get_logger
from venueauth.service.auth import AuthService, hash_password
from venueauth.service.results import Result, handler_boundary
from venueauth.service.tokens import DeviceInfo, SessionSummary, TokenService
from venueauth.service.validation import TokenValidation, TokenValidator
from venueauth.service.verification import VerificationService
from venueauth.storage.models import User, VerificationChannel, VerificationPurpose

logger = get_logger(__name__)

GENERIC_RESET_MESSAGE = (
    "If an account exists with this information, you'll receive further instructions."
)


def _mask_email(email: str) -> str:
    local, _, domain = email.partition("@")
    return f"{local[:2]}***@{domain}" if domain else "***"


def _mask_phone(phone: str) -> str:
    return f"*******{phone[-4:]}" if len(phone) > 4 else "***"


class AccountService:
    """Command handlers for an authenticated primary user's account.

    Covers logout, session management, password change and reset,
    deactivation, account verification and token validation.
    """

    def __init__(
        self,
        store,
        auth: AuthService,
        tokens: TokenService,
        verification: VerificationService,
        validator: TokenValidator,
        settings: Settings,
    ) -> None:
        self.store = store
        self.auth = auth
        self.tokens = tokens
        self.verification = verification
        self.validator = validator
        self.settings = settings

    # -- sessions -----------------------------------------------------------

    @handler_boundary("An error occurred during logout")
    async def logout(self, *, user_id: str, refresh_token: Optional[str]) -> Result[None]:
        session = (
            self.store.get_active_session_by_refresh_token(refresh_token)
            if refresh_token
            else None
        )
        if session is None or session.user_id != user_id:
            return Result.not_found("No active session found")
        if not await self.tokens.revoke_token(refresh_token):
            return Result.failure("Failed to logout")
        return Result.success(None, message="Logged out successfully")

    @handler_boundary("An error occurred during logout")
    async def logout_all(self, *, user_id: str) -> Result[None]:
        await self.tokens.revoke_all_user_tokens(user_id)
        return Result.success(None, message="Logged out from all devices successfully")

    @handler_boundary("An error occurred while revoking session")
    async def revoke_session(self, *, user_id: str, session_id: str) -> Result[None]:
        if not await self.tokens.revoke_session(user_id, session_id):
            return Result.not_found("Session not found")
        return Result.success(None, message="Session revoked successfully")

    @handler_boundary("An error occurred while retrieving active sessions")
    async def get_active_sessions(
        self, *, user_id: str, current_refresh_token: Optional[str] = None
    ) -> Result[List[SessionSummary]]:
        return Result.success(self.tokens.get_active_sessions(user_id, current_refresh_token))

    # -- password and lifecycle ---------------------------------------------

    @handler_boundary("An error occurred while changing password")
    async def change_password(
        self,
        *,
        user_id: str,
        current_password: str,
        new_password: str,
        logout_all_devices: bool = False,
    ) -> Result[None]:
        user = self.store.get_user(user_id)
        if not user:
            return Result.not_found("User not found")
        if not await asyncio.to_thread(self.auth.verify_password, user_id, current_password):
            return Result.unauthorized("Current password is incorrect")
        digest, algo = await asyncio.to_thread(hash_password, new_password)
        self.store.save_password(user_id, digest, algo)
        if logout_all_devices:
            await self.tokens.revoke_all_user_tokens(user_id)
        logger.info("password_changed", user_id=user_id, logout_all=logout_all_devices)
        return Result.success(None, message="Password changed successfully")

    @handler_boundary("An error occurred while deactivating account")
    async def deactivate(self, *, user_id: str, password: str) -> Result[None]:
        user = self.store.get_user(user_id)
        if not user or not await asyncio.to_thread(
            self.auth.verify_password, user_id, password
        ):
            return Result.unauthorized(
                "Failed to deactivate account. Please check your password."
            )
        with self.store.transaction():
            self.store.set_user_active(user_id, False)
            ended = self.store.deactivate_user_sessions(user_id)
        await self.tokens.blacklist.blacklist_sessions(ended)
        logger.info("account_deactivated", user_id=user_id, sessions_ended=len(ended))
        return Result.success(None, message="Account deactivated successfully")

    # -- verification -------------------------------------------------------

    @handler_boundary("An error occurred while verifying the account")
    async def verify_account(
        self,
        *,
        user_id: str,
        method: VerificationChannel,
        code: str,
        device: Optional[DeviceInfo] = None,
    ) -> Result[Dict[str, Any]]:
        """Verify a channel and sign the user in on success."""
        verified = await self.verification.verify(user_id=user_id, method=method, code=code)
        if not verified.ok:
            return verified
        user: User = verified.value
        data: Dict[str, Any] = {
            "message": verified.message,
            "user_type": user.user_type,
            "tokens": None,
        }
        if user.is_active:
            # verifying the second channel from the same device rotates that session
            data["tokens"] = await self.tokens.issue_tokens(
                user, device=device, new_session=False
            )
        if user.venue_id:
            venue = self.store.get_venue(user.venue_id)
            if venue:
                data["venue"] = {
                    "id": venue.id,
                    "name": venue.name,
                    "venue_type": venue.venue_type,
                    "is_profile_complete": venue.is_profile_complete,
                }
                data["required_actions"] = (
                    [] if venue.is_profile_complete else ["COMPLETE_PROFILE"]
                )
        return Result.success(data)

    async def validate_token(
        self, *, token: str, include_user_details: bool = False
    ) -> TokenValidation:
        return await self.validator.validate(token, include_user_details=include_user_details)

    # -- password reset -----------------------------------------------------

    def _reset_methods(self, user: User) -> List[Dict[str, str]]:
        methods = []
        if user.is_email_verified and user.email:
            methods.append({"method": "email", "hint": _mask_email(user.email)})
        if user.is_phone_verified and user.phone_number:
            methods.append({"method": "phone", "hint": _mask_phone(user.phone_number)})
        return methods

    @handler_boundary("An error occurred processing your request.")
    async def forgot_password(self, *, identifier: str, user_type: str) -> Result[Dict[str, Any]]:
        """Start a reset without revealing whether the account exists."""
        if not self.auth.is_identifier_well_formed(identifier):
            return Result.invalid("Invalid email or phone number format")
        generic = {"message": GENERIC_RESET_MESSAGE, "requires_verification": False}
        user = self.auth.find_user(identifier)
        if not user or user.user_type != user_type:
            return Result.success(generic)
        if not user.is_active:
            logger.info("password_reset_inactive_account", user_id=user.id)
            return Result.success(generic)
        if not user.is_verified:
            return Result.success(
                {
                    "message": (
                        "Your account needs to be verified first. Please check your "
                        "phone/email for verification instructions."
                    ),
                    "user_id": user.id,
                    "requires_verification": True,
                }
            )
        logger.info("password_reset_initiated", user_id=user.id)
        return Result.success(
            {
                "message": (
                    "Password reset process initiated. Please choose your preferred "
                    "method to receive the reset code."
                ),
                "user_id": user.id,
                "requires_verification": False,
                "methods": self._reset_methods(user),
            }
        )

    @handler_boundary("An error occurred validating the reset code.")
    async def validate_reset_code(
        self, *, user_id: str, method: VerificationChannel, code: str
    ) -> Result[Dict[str, Any]]:
        user = self.store.get_user(user_id)
        if not user:
            return Result.success({"is_valid": False, "message": "Invalid user."})
        checked = self.verification.check_reset_code(user, VerificationChannel(method), code)
        if not checked.ok:
            return Result.success({"is_valid": False, "message": checked.message})
        return Result.success(
            {
                "is_valid": True,
                "message": "Reset code is valid.",
                "expires_in_minutes": checked.value["expires_in_minutes"],
            }
        )

    @handler_boundary("An error occurred resetting your password.")
    async def reset_password(
        self,
        *,
        user_id: str,
        method: VerificationChannel,
        code: str,
        new_password: str,
    ) -> Result[None]:
        channel = VerificationChannel(method)
        user = self.store.get_user(user_id)
        if not user:
            return Result.invalid("Invalid request.")
        if not user.is_active:
            return Result.unauthorized("Account is inactive")
        checked = self.verification.check_reset_code(user, channel, code)
        if not checked.ok:
            return checked

        digest, algo = await asyncio.to_thread(hash_password, new_password)
        with self.store.transaction():
            self.store.save_password(user_id, digest, algo)
            self.store.clear_verification_code(
                user_id, channel, VerificationPurpose.PASSWORD_RESET, mark_used=True
            )
            ended = self.store.deactivate_user_sessions(user_id)
        await self.tokens.blacklist.blacklist_sessions(ended)
        logger.info("password_reset_completed", user_id=user_id, sessions_ended=len(ended))
        return Result.success(
            None,
            message="Password reset successfully. Please log in with your new password.",
        )
