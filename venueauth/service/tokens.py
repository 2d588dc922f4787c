from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from venueauth.config import Settings
from venueauth.logging import get_logger
from venueauth.service.blacklist import TokenBlacklist
from venueauth.service.results import Result
from venueauth.storage.models import (
    Session,
    User,
    Venue,
    VenueSubUser,
    VenueSubUserSession,
)

logger = get_logger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_GATEWAY = "venue-gateway"
TOKEN_TYPE_OPERATIONAL = "venue-operational"

SUB_USER_ROLE_NAME = "VenueSubUser"

INVALID_REFRESH_MESSAGE = "Invalid or expired refresh token"


class JWTCodec:
    """HS256 signing and verification.

    ``decode`` checks structure, algorithm, signature, issuer and audience.
    Expiry is left to the caller so an expired token can be reported as
    such instead of as malformed.
    """

    def __init__(self, secret: str, issuer: str, audience: str) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[Dict[str, Any]]:
        if not token or token.count(".") != 2:
            return None
        header_b64, payload_b64, sig_b64 = token.split(".")
        if not header_b64 or not payload_b64 or not sig_b64:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        return payload


@dataclass(frozen=True)
class TokenClaims:
    """Typed claim set carried by every token this service issues."""

    subject: str
    jti: str
    expires_at: datetime
    token_type: str = TOKEN_TYPE_ACCESS
    issued_at: Optional[datetime] = None
    email: Optional[str] = None
    roles: Tuple[str, ...] = ()
    venue_id: Optional[str] = None
    venue_name: Optional[str] = None
    venue_type: Optional[str] = None
    is_venue_profile_complete: Optional[bool] = None
    customer_id: Optional[str] = None
    full_name: Optional[str] = None
    sub_user_id: Optional[str] = None
    sub_user_role: Optional[int] = None
    permissions: Optional[int] = None

    # claim name on the wire -> attribute
    _OPTIONAL_CLAIMS = (
        ("email", "email"),
        ("venueId", "venue_id"),
        ("venueName", "venue_name"),
        ("venueType", "venue_type"),
        ("isVenueProfileComplete", "is_venue_profile_complete"),
        ("customerId", "customer_id"),
        ("fullName", "full_name"),
        ("subUserId", "sub_user_id"),
        ("subUserRole", "sub_user_role"),
        ("permissions", "permissions"),
    )

    @property
    def is_operational(self) -> bool:
        return self.token_type == TOKEN_TYPE_OPERATIONAL

    @property
    def is_gateway(self) -> bool:
        return self.token_type == TOKEN_TYPE_GATEWAY

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or datetime.now(timezone.utc))

    def to_payload(self, issuer: str, audience: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "iss": issuer,
            "aud": audience,
            "sub": self.subject,
            "jti": self.jti,
            "type": self.token_type,
            "roles": list(self.roles),
            "exp": int(self.expires_at.timestamp()),
        }
        if self.issued_at:
            payload["iat"] = int(self.issued_at.timestamp())
        for claim, attr in self._OPTIONAL_CLAIMS:
            value = getattr(self, attr)
            if value is not None:
                payload[claim] = value
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        """Rebuild claims from a verified payload; ValueError if a required claim is missing."""
        subject = payload.get("sub")
        jti = payload.get("jti")
        exp = payload.get("exp")
        if not subject or not jti or exp is None:
            raise ValueError("token is missing required claims")
        try:
            expires_at = datetime.fromtimestamp(float(exp), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValueError("invalid exp claim") from exc
        iat = payload.get("iat")
        issued_at = (
            datetime.fromtimestamp(float(iat), tz=timezone.utc)
            if isinstance(iat, (int, float))
            else None
        )
        roles = payload.get("roles") or []
        if isinstance(roles, str):
            roles = [roles]
        optional = {
            attr: payload.get(claim)
            for claim, attr in cls._OPTIONAL_CLAIMS
            if payload.get(claim) is not None
        }
        if "permissions" in optional:
            optional["permissions"] = int(optional["permissions"])
        if "sub_user_role" in optional:
            optional["sub_user_role"] = int(optional["sub_user_role"])
        return cls(
            subject=str(subject),
            jti=str(jti),
            expires_at=expires_at,
            token_type=payload.get("type") or TOKEN_TYPE_ACCESS,
            issued_at=issued_at,
            roles=tuple(str(r) for r in roles),
            **optional,
        )

    def summary(self) -> Dict[str, Any]:
        """Non-sensitive claim overview returned alongside freshly issued tokens."""
        data = {
            "userId": self.subject,
            "roles": list(self.roles),
            "tokenType": self.token_type,
        }
        for claim, attr in self._OPTIONAL_CLAIMS:
            value = getattr(self, attr)
            if value is not None:
                data[claim] = value
        return data


@dataclass(frozen=True)
class DeviceInfo:
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def as_updates(self) -> Dict[str, Optional[str]]:
        return {
            "device_name": self.device_name,
            "device_type": self.device_type,
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
        }


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    user_type: str
    claims: TokenClaims
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "access_token_expires_at": self.access_token_expires_at.isoformat(),
            "refresh_token_expires_at": self.refresh_token_expires_at.isoformat(),
            "user_type": self.user_type,
            "session_id": self.session_id,
            "claims": self.claims.summary(),
        }


@dataclass
class SessionSummary:
    id: str
    device_name: str
    device_type: str
    user_agent: Optional[str]
    ip_address: Optional[str]
    created_at: datetime
    last_activity_at: Optional[datetime]
    is_current: bool = False

    @classmethod
    def from_session(cls, session: Session, *, is_current: bool) -> "SessionSummary":
        return cls(
            id=session.id,
            device_name=session.device_name,
            device_type=session.device_type,
            user_agent=session.user_agent,
            ip_address=session.ip_address,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            is_current=is_current,
        )


@dataclass
class GatewayToken:
    token: str
    expires_at: datetime
    claims: TokenClaims = field(repr=False)


class TokenService:
    """Issues, rotates and revokes access/refresh token pairs.

    Access tokens are stateless JWTs; revocation before expiry goes through
    the blacklist. Refresh tokens are opaque random strings whose only state
    is the Session row holding them.
    """

    def __init__(self, store, blacklist: TokenBlacklist, settings: Settings) -> None:
        self.store = store
        self.blacklist = blacklist
        self.settings = settings
        self.codec = JWTCodec(
            settings.jwt_secret, settings.jwt_issuer, settings.jwt_audience
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def generate_refresh_token() -> str:
        """Unpredictable opaque token, 86 URL-safe characters."""
        return secrets.token_urlsafe(64)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    def build_claims(
        self,
        user: User,
        venue: Optional[Venue] = None,
        *,
        expires_at: datetime,
        token_type: str = TOKEN_TYPE_ACCESS,
    ) -> TokenClaims:
        now = self._now()
        venue_fields: Dict[str, Any] = {}
        if user.venue_id:
            venue_fields["venue_id"] = user.venue_id
            if venue is not None:
                venue_fields.update(
                    venue_name=venue.name,
                    venue_type=venue.venue_type,
                    is_venue_profile_complete=venue.is_profile_complete,
                )
        else:
            venue_fields.update(customer_id=user.id, full_name=user.full_name)
        return TokenClaims(
            subject=user.id,
            jti=str(uuid.uuid4()),
            expires_at=expires_at,
            token_type=token_type,
            issued_at=now,
            email=user.email,
            roles=tuple(user.roles),
            **venue_fields,
        )

    def encode_claims(self, claims: TokenClaims) -> str:
        return self.codec.encode(
            claims.to_payload(self.settings.jwt_issuer, self.settings.jwt_audience)
        )

    def _access_claims(self, user: User, venue: Optional[Venue]) -> TokenClaims:
        expires_at = self._now() + timedelta(minutes=self.settings.access_token_ttl_minutes)
        return self.build_claims(user, venue, expires_at=expires_at)

    def _load_venue(self, user: User) -> Optional[Venue]:
        return self.store.get_venue(user.venue_id) if user.venue_id else None

    async def issue_tokens(
        self,
        user: User,
        *,
        device: Optional[DeviceInfo] = None,
        venue: Optional[Venue] = None,
        new_session: bool = True,
    ) -> TokenPair:
        """Mint a token pair and write exactly one Session row for it.

        With ``new_session=False`` an existing live session for the same
        device fingerprint is rotated in place instead of adding a row.
        """
        device = device or DeviceInfo()
        venue = venue or self._load_venue(user)
        claims = self._access_claims(user, venue)
        refresh_token = self.generate_refresh_token()
        refresh_expiry = self._now() + self.refresh_ttl

        session = None
        if not new_session:
            existing = self.store.find_active_session_for_device(
                user.id,
                device.device_name or "Unknown Device",
                device.device_type or "Unknown",
                device.user_agent,
            )
            if existing:
                old_jti = existing.access_token_jti
                old_expiry = existing.access_token_expiry or claims.expires_at
                session = self.store.rotate_refresh_token(
                    existing.refresh_token,
                    refresh_token,
                    refresh_expiry,
                    access_token_jti=claims.jti,
                    access_token_expiry=claims.expires_at,
                    device=device.as_updates(),
                )
                if session and old_jti:
                    await self.blacklist.blacklist(old_jti, old_expiry)

        if session is None:
            session = Session.new(
                user.id,
                refresh_token,
                self.settings.refresh_token_ttl_days,
                device_name=device.device_name,
                device_type=device.device_type,
                user_agent=device.user_agent,
                ip_address=device.ip_address,
            )
            session.refresh_token_expiry = refresh_expiry
            session.access_token_jti = claims.jti
            session.access_token_expiry = claims.expires_at
            self.store.create_session(session)

        logger.info(
            "tokens_issued",
            user_id=user.id,
            session_id=session.id,
            venue_id=user.venue_id,
        )
        return TokenPair(
            access_token=self.encode_claims(claims),
            refresh_token=refresh_token,
            access_token_expires_at=claims.expires_at,
            refresh_token_expires_at=refresh_expiry,
            user_type=user.user_type,
            claims=claims,
            session_id=session.id,
        )

    async def refresh_tokens(
        self, refresh_token: str, device: Optional[DeviceInfo] = None
    ) -> Result[TokenPair]:
        """Exchange a live refresh token for a new pair; the old token becomes unusable."""
        device = device or DeviceInfo()
        if not refresh_token:
            return Result.expired(INVALID_REFRESH_MESSAGE)
        session = self.store.get_active_session_by_refresh_token(refresh_token)
        if session is None:
            logger.info("refresh_rejected", reason="no_live_session")
            return Result.expired(INVALID_REFRESH_MESSAGE)

        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            logger.warning("refresh_rejected", reason="user_inactive", user_id=session.user_id)
            return Result.unauthorized("User not found or inactive")
        if not user.is_phone_verified:
            logger.warning("refresh_rejected", reason="phone_unverified", user_id=user.id)
            return Result.unauthorized("Phone number not verified")

        venue = self._load_venue(user)
        claims = self._access_claims(user, venue)
        new_refresh = self.generate_refresh_token()
        refresh_expiry = self._now() + self.refresh_ttl
        rotated = self.store.rotate_refresh_token(
            refresh_token,
            new_refresh,
            refresh_expiry,
            access_token_jti=claims.jti,
            access_token_expiry=claims.expires_at,
            device=device.as_updates(),
        )
        if rotated is None:
            # another request rotated or revoked it first
            logger.info("refresh_rejected", reason="rotation_lost", user_id=user.id)
            return Result.expired(INVALID_REFRESH_MESSAGE)

        logger.info("tokens_refreshed", user_id=user.id, session_id=rotated.id)
        return Result.success(
            TokenPair(
                access_token=self.encode_claims(claims),
                refresh_token=new_refresh,
                access_token_expires_at=claims.expires_at,
                refresh_token_expires_at=refresh_expiry,
                user_type=user.user_type,
                claims=claims,
                session_id=rotated.id,
            )
        )

    async def revoke_token(self, refresh_token: str) -> bool:
        """Deactivate the session holding ``refresh_token``; False if no such session."""
        session = self.store.deactivate_session_by_refresh_token(refresh_token)
        if session is None:
            return False
        await self.blacklist.blacklist_sessions([session])
        logger.info("session_revoked", user_id=session.user_id, session_id=session.id)
        return True

    async def revoke_all_user_tokens(self, user_id: str) -> bool:
        sessions = self.store.deactivate_user_sessions(user_id)
        await self.blacklist.blacklist_sessions(sessions)
        logger.info("all_sessions_revoked", user_id=user_id, count=len(sessions))
        return True

    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        """Revoke one of the user's sessions; False when it does not belong to them."""
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            return False
        session = self.store.deactivate_session(session_id)
        if session is not None:
            await self.blacklist.blacklist_sessions([session])
        logger.info("session_revoked", user_id=user_id, session_id=session_id)
        return True

    def get_active_sessions(
        self, user_id: str, current_refresh_token: Optional[str] = None
    ) -> List[SessionSummary]:
        sessions = self.store.list_active_sessions(user_id)
        return [
            SessionSummary.from_session(
                s,
                is_current=bool(current_refresh_token)
                and hmac.compare_digest(s.refresh_token, current_refresh_token),
            )
            for s in sessions
        ]

    def cleanup_expired_sessions(self) -> int:
        now = self._now()
        idle_before = now - timedelta(days=self.settings.session_idle_days)
        removed = self.store.delete_expired_sessions(now, idle_before)
        purged = self.blacklist.purge_expired()
        logger.info("session_cleanup_completed", removed=removed, blacklist_purged=purged)
        return removed

    # -- venue gateway and sub-user tokens --------------------------------

    def issue_gateway_token(self, user: User, venue: Venue) -> GatewayToken:
        """Short-lived token allowing a venue owner to pick or create a sub-user."""
        expires_at = self._now() + timedelta(hours=self.settings.gateway_token_ttl_hours)
        claims = self.build_claims(
            user, venue, expires_at=expires_at, token_type=TOKEN_TYPE_GATEWAY
        )
        logger.info("gateway_token_issued", user_id=user.id, venue_id=venue.id)
        return GatewayToken(token=self.encode_claims(claims), expires_at=expires_at, claims=claims)

    def _sub_user_claims(self, sub_user: VenueSubUser) -> TokenClaims:
        now = self._now()
        return TokenClaims(
            subject=sub_user.id,
            jti=str(uuid.uuid4()),
            expires_at=now
            + timedelta(minutes=self.settings.sub_user_access_token_ttl_minutes),
            token_type=TOKEN_TYPE_OPERATIONAL,
            issued_at=now,
            roles=(SUB_USER_ROLE_NAME,),
            venue_id=sub_user.venue_id,
            sub_user_id=sub_user.id,
            sub_user_role=int(sub_user.role),
            permissions=int(sub_user.permissions),
        )

    def issue_sub_user_tokens(
        self, sub_user: VenueSubUser, device: Optional[DeviceInfo] = None
    ) -> TokenPair:
        """Open a session carrying the current permission snapshot.

        Synchronous so callers can run it inside the store transaction that
        re-checked the sub-user is still active.
        """
        device = device or DeviceInfo()
        claims = self._sub_user_claims(sub_user)
        refresh_token = self.generate_refresh_token()
        session = VenueSubUserSession.new(
            sub_user,
            refresh_token,
            self.settings.refresh_token_ttl_days,
            device_type=device.device_type,
            user_agent=device.user_agent,
            ip_address=device.ip_address,
        )
        session.access_token_jti = claims.jti
        session.access_token_expiry = claims.expires_at
        self.store.create_sub_user_session(session)
        logger.info(
            "sub_user_tokens_issued",
            sub_user_id=sub_user.id,
            venue_id=sub_user.venue_id,
            session_id=session.id,
        )
        return TokenPair(
            access_token=self.encode_claims(claims),
            refresh_token=refresh_token,
            access_token_expires_at=claims.expires_at,
            refresh_token_expires_at=session.refresh_token_expiry,
            user_type="venue-sub-user",
            claims=claims,
            session_id=session.id,
        )

    async def refresh_sub_user_tokens(self, refresh_token: str) -> Result[TokenPair]:
        if not refresh_token:
            return Result.expired(INVALID_REFRESH_MESSAGE)
        session = self.store.get_active_sub_user_session_by_refresh_token(refresh_token)
        if session is None:
            return Result.expired(INVALID_REFRESH_MESSAGE)
        new_refresh = self.generate_refresh_token()
        refresh_expiry = self._now() + self.refresh_ttl
        with self.store.transaction():
            # lock the row so a concurrent permission edit or deactivation is not raced
            sub_user = self.store.get_sub_user(session.sub_user_id, for_update=True)
            if not sub_user or not sub_user.is_active:
                return Result.unauthorized("Account is deactivated")
            claims = self._sub_user_claims(sub_user)
            rotated = self.store.rotate_sub_user_refresh_token(
                refresh_token,
                new_refresh,
                refresh_expiry,
                access_token_jti=claims.jti,
                access_token_expiry=claims.expires_at,
                permissions=int(sub_user.permissions),
            )
        if rotated is None:
            return Result.expired(INVALID_REFRESH_MESSAGE)
        logger.info("sub_user_tokens_refreshed", sub_user_id=sub_user.id, session_id=rotated.id)
        return Result.success(
            TokenPair(
                access_token=self.encode_claims(claims),
                refresh_token=new_refresh,
                access_token_expires_at=claims.expires_at,
                refresh_token_expires_at=refresh_expiry,
                user_type="venue-sub-user",
                claims=claims,
                session_id=rotated.id,
            )
        )

    async def revoke_sub_user_sessions(self, sub_user_id: str) -> int:
        sessions = self.store.deactivate_sub_user_sessions(sub_user_id)
        await self.blacklist.blacklist_sessions(sessions)
        if sessions:
            logger.info("sub_user_sessions_revoked", sub_user_id=sub_user_id, count=len(sessions))
        return len(sessions)
