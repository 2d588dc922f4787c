from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from venueauth.config import Settings
from venueauth.logging import get_logger
from venueauth.service.results import Result, handler_boundary
from venueauth.service.tokens import (
    TOKEN_TYPE_ACCESS,
    DeviceInfo,
    TokenClaims,
    TokenPair,
    TokenService,
)
from venueauth.service.validation import TokenValidator
from venueauth.service.verification import VerificationService
from venueauth.storage.errors import ConstraintViolation
from venueauth.storage.models import User, VerificationChannel

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
LOCAL_PHONE_RE = re.compile(r"^01\d{9}$")
INVALID_CREDENTIALS = "Invalid credentials"

_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> Tuple[str, str]:
    return _pwd_hasher.hash(password), PASSWORD_ALGO


def check_password(stored_hash: Optional[str], algo: Optional[str], password: str) -> bool:
    """Constant-time argon2 check; any malformed or foreign hash fails."""
    if not stored_hash or algo != PASSWORD_ALGO:
        return False
    try:
        return _pwd_hasher.verify(stored_hash, password)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False


def format_phone(local_digits: str) -> str:
    """``01012345678`` -> ``+201012345678``."""
    return f"+2{local_digits}"


@dataclass
class AuthContext:
    """Identity of an authenticated request, built from verified token claims."""

    claims: TokenClaims

    @property
    def token_type(self) -> str:
        return self.claims.token_type

    @property
    def user_id(self) -> str:
        return self.claims.subject

    @property
    def venue_id(self) -> Optional[str]:
        return self.claims.venue_id

    @property
    def sub_user_id(self) -> Optional[str]:
        return self.claims.sub_user_id

    @property
    def permissions(self) -> int:
        return int(self.claims.permissions or 0)

    @property
    def jti(self) -> str:
        return self.claims.jti


class AuthService:
    """Registration, primary and venue-gateway login, and bearer authentication."""

    def __init__(
        self,
        store,
        tokens: TokenService,
        verification: VerificationService,
        validator: TokenValidator,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.verification = verification
        self.validator = validator
        self.settings = settings

    # -- passwords ----------------------------------------------------------

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if not check_password(stored_hash, algo, password):
            logger.warning("password_verification_failed", user_id=user_id)
            return False
        return True

    def save_password(self, user_id: str, password: str) -> None:
        digest, algo = hash_password(password)
        self.store.save_password(user_id, digest, algo)

    # -- lookups ------------------------------------------------------------

    def find_user(self, identifier: str) -> Optional[User]:
        """Resolve an email address or an 11-digit local phone number."""
        identifier = (identifier or "").strip()
        if "@" in identifier:
            return self.store.get_user_by_email(identifier)
        if LOCAL_PHONE_RE.match(identifier):
            return self.store.get_user_by_phone(format_phone(identifier))
        return None

    @staticmethod
    def is_identifier_well_formed(identifier: str) -> bool:
        identifier = (identifier or "").strip()
        return "@" in identifier or bool(LOCAL_PHONE_RE.match(identifier))

    # -- registration -------------------------------------------------------

    @staticmethod
    def _conflict_from(exc: ConstraintViolation) -> Result[Any]:
        if exc.field == "phone_number":
            return Result.conflict("Phone number already registered")
        return Result.conflict("Email already registered")

    def _precheck_unique(self, email: str, phone: str) -> Optional[Result[Any]]:
        if self.store.get_user_by_email(email):
            return Result.conflict("Email already registered")
        if self.store.get_user_by_phone(phone):
            return Result.conflict("Phone number already registered")
        return None

    async def _send_registration_code(self, user: User) -> Optional[str]:
        result = await self.verification.send_code(
            user_id=user.id, method=VerificationChannel.PHONE
        )
        if not result.ok:
            # the account exists either way; the user can ask for a new code
            logger.warning("registration_code_not_sent", user_id=user.id, reason=result.message)
            return None
        return (result.value or {}).get("verification_code")

    def _send_welcome(self, user: User, name: str) -> None:
        task = asyncio.get_running_loop().create_task(
            asyncio.to_thread(self.verification.email.send_welcome, user.email, name)
        )
        task.add_done_callback(_log_task_failure)

    @handler_boundary("An error occurred during registration")
    async def register_venue(
        self,
        *,
        email: str,
        password: str,
        phone_number: str,
        venue_name: str,
        venue_type: str,
    ) -> Result[Dict[str, Any]]:
        phone = format_phone(phone_number)
        conflict = self._precheck_unique(email, phone)
        if conflict:
            return conflict
        digest, algo = await asyncio.to_thread(hash_password, password)
        try:
            with self.store.transaction():
                venue = self.store.create_venue(venue_name, venue_type, email=email.lower())
                user = self.store.create_user(email, phone_number=phone, venue_id=venue.id)
                self.store.save_password(user.id, digest, algo)
        except ConstraintViolation as exc:
            return self._conflict_from(exc)

        code = await self._send_registration_code(user)
        self._send_welcome(user, venue.name)
        logger.info("venue_registered", user_id=user.id, venue_id=venue.id, venue_type=venue_type)
        return Result.success(
            {
                "message": "Registration successful. Please verify your phone number.",
                "user_id": user.id,
                "venue_id": venue.id,
                "requires_verification": True,
                "requires_profile_completion": not venue.is_profile_complete,
                "verification_code": code,
            }
        )

    @handler_boundary("An error occurred during registration")
    async def register_customer(
        self,
        *,
        email: str,
        password: str,
        phone_number: str,
        full_name: str,
    ) -> Result[Dict[str, Any]]:
        phone = format_phone(phone_number)
        conflict = self._precheck_unique(email, phone)
        if conflict:
            return conflict
        digest, algo = await asyncio.to_thread(hash_password, password)
        try:
            with self.store.transaction():
                user = self.store.create_user(email, phone_number=phone, full_name=full_name)
                self.store.save_password(user.id, digest, algo)
        except ConstraintViolation as exc:
            return self._conflict_from(exc)

        code = await self._send_registration_code(user)
        self._send_welcome(user, full_name.split()[0] if full_name else user.email)
        logger.info("customer_registered", user_id=user.id)
        return Result.success(
            {
                "message": "Registration successful. Please verify your phone number.",
                "user_id": user.id,
                "requires_verification": True,
                "verification_code": code,
            }
        )

    # -- login --------------------------------------------------------------

    async def _check_credentials(
        self, identifier: str, password: str, *, venue_account: bool
    ) -> Result[User]:
        user = self.find_user(identifier)
        if not user or bool(user.venue_id) != venue_account:
            return Result.unauthorized(INVALID_CREDENTIALS)
        if not await asyncio.to_thread(self.verify_password, user.id, password):
            return Result.unauthorized(INVALID_CREDENTIALS)
        if not user.is_active:
            return Result.unauthorized("Account is deactivated")
        if not user.is_verified:
            return Result.unauthorized("Account not verified")
        return Result.success(user)

    @handler_boundary("An error occurred during login")
    async def customer_login(
        self, *, identifier: str, password: str, device: Optional[DeviceInfo] = None
    ) -> Result[TokenPair]:
        checked = await self._check_credentials(identifier, password, venue_account=False)
        if not checked.ok:
            logger.info("customer_login_rejected", reason=checked.message)
            return checked
        pair = await self.tokens.issue_tokens(checked.value, device=device, new_session=True)
        logger.info("customer_login_succeeded", user_id=checked.value.id, session_id=pair.session_id)
        return Result.success(pair)

    @handler_boundary("An error occurred during login")
    async def venue_login(self, *, identifier: str, password: str) -> Result[Dict[str, Any]]:
        """First step of venue login: returns a gateway token, not an operational one."""
        checked = await self._check_credentials(identifier, password, venue_account=True)
        if not checked.ok:
            logger.info("venue_login_rejected", reason=checked.message)
            return checked
        user = checked.value
        venue = self.store.get_venue(user.venue_id)
        if not venue:
            return Result.not_found("Venue not found")
        if self.store.count_sub_users(venue.id) == 0 and not venue.requires_sub_user_setup:
            venue = self.store.set_venue_requires_sub_user_setup(venue.id, True)

        gateway = self.tokens.issue_gateway_token(user, venue)
        logger.info("venue_login_succeeded", user_id=user.id, venue_id=venue.id)
        return Result.success(
            {
                "gateway_token": gateway.token,
                "gateway_token_expires_at": gateway.expires_at.isoformat(),
                "requires_sub_user_setup": venue.requires_sub_user_setup,
                "next_step": (
                    "create-first-admin" if venue.requires_sub_user_setup else "sub-user-login"
                ),
                "venue": {
                    "id": venue.id,
                    "name": venue.name,
                    "venue_type": venue.venue_type,
                    "is_profile_complete": venue.is_profile_complete,
                },
                "user": {
                    "id": user.id,
                    "email": user.email,
                    "is_phone_verified": user.is_phone_verified,
                    "is_email_verified": user.is_email_verified,
                },
            }
        )

    # -- request authentication --------------------------------------------

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        token_types: Iterable[str] = (TOKEN_TYPE_ACCESS,),
    ) -> Optional[AuthContext]:
        """Resolve a bearer header to an ``AuthContext`` or None.

        Access and operational tokens must still be backed by an active
        session; gateway tokens have no session and only need a live,
        active venue account.
        """
        token = self._extract_bearer(authorization)
        if not token:
            return None
        allowed = set(token_types)
        payload = self.validator.codec.decode(token)
        token_type = (payload or {}).get("type") or TOKEN_TYPE_ACCESS
        if token_type not in allowed:
            if payload is not None:
                logger.info("token_type_rejected", token_type=token_type, allowed=sorted(allowed))
            return None

        outcome = await self.validator.validate(token, include_user_details=True)
        if not outcome.is_valid:
            logger.info("authentication_failed", status=outcome.status.value, reason=outcome.message)
            return None
        return AuthContext(claims=outcome.claims)


def _log_task_failure(task: "asyncio.Task[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("background_task_failed", error_type=type(exc).__name__, error=str(exc))
