"""Bearer token validation.

Checks run cheapest first: structure and signature, claim extraction,
expiry, blacklist, then the optional store-backed user and session lookup.
Each outcome is built by its own constructor so every exit path carries an
explicit set of fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from venueauth.logging import get_logger
from venueauth.service.blacklist import TokenBlacklist
from venueauth.service.tokens import JWTCodec, TokenClaims

logger = get_logger(__name__)


class ValidationStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"
    REVOKED = "revoked"
    FAILED = "failed"


@dataclass(frozen=True)
class TokenValidation:
    status: ValidationStatus
    message: str
    claims: Optional[TokenClaims] = None
    user: Optional[Dict[str, Any]] = None

    @property
    def is_valid(self) -> bool:
        return self.status is ValidationStatus.VALID

    @classmethod
    def valid(
        cls, claims: TokenClaims, user: Optional[Dict[str, Any]] = None
    ) -> "TokenValidation":
        return cls(ValidationStatus.VALID, "Token is valid", claims=claims, user=user)

    @classmethod
    def invalid(cls, message: str = "Invalid token") -> "TokenValidation":
        return cls(ValidationStatus.INVALID, message)

    @classmethod
    def expired(cls, claims: TokenClaims) -> "TokenValidation":
        return cls(ValidationStatus.EXPIRED, "Token has expired", claims=claims)

    @classmethod
    def revoked(cls, claims: TokenClaims) -> "TokenValidation":
        return cls(ValidationStatus.REVOKED, "Token has been revoked", claims=claims)

    @classmethod
    def failed(cls, message: str, claims: Optional[TokenClaims] = None) -> "TokenValidation":
        return cls(ValidationStatus.FAILED, message, claims=claims)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "is_valid": self.is_valid,
            "status": self.status.value,
            "message": self.message,
        }
        if self.claims is not None:
            data["user_id"] = self.claims.subject
            data["expires_at"] = self.claims.expires_at.isoformat()
            if self.is_valid:
                data["claims"] = self.claims.summary()
        if self.user is not None:
            data["user"] = self.user
        return data


class TokenValidator:
    def __init__(self, codec: JWTCodec, blacklist: TokenBlacklist, store=None) -> None:
        self.codec = codec
        self.blacklist = blacklist
        self.store = store

    async def validate(
        self,
        token: Optional[str],
        *,
        include_user_details: bool = False,
        now: Optional[datetime] = None,
    ) -> TokenValidation:
        now = now or datetime.now(timezone.utc)
        if not token or token.count(".") != 2:
            return TokenValidation.invalid("Invalid token format")

        payload = self.codec.decode(token)
        if payload is None:
            return TokenValidation.invalid()
        try:
            claims = TokenClaims.from_payload(payload)
        except ValueError as exc:
            logger.warning("token_claims_invalid", error=str(exc))
            return TokenValidation.invalid()

        if claims.is_expired(now):
            return TokenValidation.expired(claims)

        if await self.blacklist.is_blacklisted(claims.jti):
            logger.info("access_token_blacklisted", jti=claims.jti, user_id=claims.subject)
            return TokenValidation.revoked(claims)

        if not include_user_details:
            return TokenValidation.valid(claims)
        if self.store is None:
            raise RuntimeError("user detail enrichment requires a store")
        return self._enrich(claims, now)

    def _enrich(self, claims: TokenClaims, now: datetime) -> TokenValidation:
        if claims.is_operational:
            sub_user = self.store.get_sub_user(claims.subject)
            if not sub_user or not sub_user.is_active:
                return TokenValidation.failed("User account is inactive", claims)
            if not self.store.has_active_sub_user_session(sub_user.id, now):
                return TokenValidation.failed("No active session found", claims)
            return TokenValidation.valid(
                claims,
                {
                    "id": sub_user.id,
                    "username": sub_user.username,
                    "venue_id": sub_user.venue_id,
                    "role": sub_user.role.name.lower(),
                },
            )

        user = self.store.get_user(claims.subject)
        if not user or not user.is_active:
            return TokenValidation.failed("User account is inactive", claims)
        if claims.is_gateway:
            # gateway tokens open no session; the live venue account backs them
            if user.venue_id != claims.venue_id:
                return TokenValidation.failed("Venue account not found", claims)
        elif not self.store.has_active_session(user.id, now):
            return TokenValidation.failed("No active session found", claims)
        return TokenValidation.valid(
            claims,
            {
                "id": user.id,
                "email": user.email,
                "phone_number": user.phone_number,
                "user_type": user.user_type,
                "venue_id": user.venue_id,
                "is_email_verified": user.is_email_verified,
                "is_phone_verified": user.is_phone_verified,
            },
        )
