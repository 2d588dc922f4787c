from __future__ import annotations

import copy
import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from venueauth.logging import get_logger
from venueauth.service.permissions import SubUserRole, VenuePermissions
from venueauth.storage.errors import ConstraintViolation
from venueauth.storage.models import (
    Session,
    User,
    Venue,
    VenueAuditLog,
    VenueSubUser,
    VenueSubUserSession,
    VerificationChannel,
    VerificationCode,
    VerificationPurpose,
    code_slot,
    utcnow,
)


class MemoryStore:
    """Thread-safe in-memory store persisted to a JSON state file.

    Used for tests and single-process development. Every public method takes
    ``_data_lock``; ``transaction()`` holds it for the whole block so a
    multi-step workflow is applied atomically or not at all.
    """

    def __init__(self, fs_root: str = "/tmp/venueauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.venues: Dict[str, Venue] = {}
        self.sessions: Dict[str, Session] = {}
        self.sub_users: Dict[str, VenueSubUser] = {}
        self.sub_user_sessions: Dict[str, VenueSubUserSession] = {}
        self.audit_logs: List[VenueAuditLog] = []
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- transactions -----------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = self._snapshot()
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._tx_depth -= 1
            self._persist_state()

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(
            {
                "users": self.users,
                "credentials": self.credentials,
                "venues": self.venues,
                "sessions": self.sessions,
                "sub_users": self.sub_users,
                "sub_user_sessions": self.sub_user_sessions,
                "audit_logs": self.audit_logs,
            }
        )

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    # -- users ------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        phone_number: Optional[str] = None,
        venue_id: Optional[str] = None,
        full_name: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, field="email"
                )
            if phone_number and any(
                u.phone_number == phone_number for u in self.users.values()
            ):
                raise ConstraintViolation(
                    "phone number already exists",
                    {"field": "phone_number"},
                    field="phone_number",
                )
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                phone_number=phone_number,
                venue_id=venue_id,
                full_name=full_name,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.phone_number == phone_number), None
            )

    def set_verification_code(
        self,
        user_id: str,
        channel: VerificationChannel,
        purpose: VerificationPurpose,
        code: str,
        expires_at: datetime,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.codes[code_slot(channel, purpose)] = VerificationCode(
                code=code, expires_at=expires_at, used=False
            )
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def clear_verification_code(
        self,
        user_id: str,
        channel: VerificationChannel,
        purpose: VerificationPurpose,
        *,
        mark_used: bool = False,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.codes[code_slot(channel, purpose)] = VerificationCode(used=mark_used)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def mark_verified(self, user_id: str, channel: VerificationChannel) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if VerificationChannel(channel) is VerificationChannel.EMAIL:
                user.is_email_verified = True
            else:
                user.is_phone_verified = True
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def set_last_password_reset_request(
        self, user_id: str, requested_at: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.last_password_reset_request = requested_at
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.deactivated_at = None if is_active else utcnow()
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- venues -----------------------------------------------------------

    def create_venue(
        self, name: str, venue_type: str, *, email: Optional[str] = None
    ) -> Venue:
        with self._data_lock:
            venue = Venue(
                id=str(uuid.uuid4()),
                name=name,
                venue_type=venue_type,
                email=email.strip().lower() if email else None,
            )
            self.venues[venue.id] = venue
            self._persist_state()
            return venue

    def get_venue(self, venue_id: str) -> Optional[Venue]:
        with self._data_lock:
            return self.venues.get(venue_id)

    def set_venue_requires_sub_user_setup(
        self, venue_id: str, value: bool
    ) -> Optional[Venue]:
        with self._data_lock:
            venue = self.venues.get(venue_id)
            if not venue:
                return None
            venue.requires_sub_user_setup = value
            self._persist_state()
            return venue

    # -- primary sessions -------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if any(
                s.refresh_token == session.refresh_token for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already exists", field="refresh_token"
                )
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def get_active_session_by_refresh_token(
        self, refresh_token: str, now: Optional[datetime] = None
    ) -> Optional[Session]:
        now = now or utcnow()
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token == refresh_token and s.is_usable(now)
                ),
                None,
            )

    def find_active_session_for_device(
        self,
        user_id: str,
        device_name: str,
        device_type: str,
        user_agent: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[Session]:
        now = now or utcnow()
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.sessions.values()
                    if s.user_id == user_id
                    and s.is_usable(now)
                    and s.device_name == device_name
                    and s.device_type == device_type
                    and s.user_agent == user_agent
                ),
                None,
            )

    def rotate_refresh_token(
        self,
        old_refresh_token: str,
        new_refresh_token: str,
        new_expiry: datetime,
        *,
        now: Optional[datetime] = None,
        access_token_jti: Optional[str] = None,
        access_token_expiry: Optional[datetime] = None,
        device: Optional[Dict[str, Optional[str]]] = None,
    ) -> Optional[Session]:
        """Swap the refresh token only if ``old_refresh_token`` is still live.

        Returns the updated session, or None when another caller already
        rotated it or it was revoked/expired in the meantime.
        """
        now = now or utcnow()
        with self._data_lock:
            session = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token == old_refresh_token and s.is_usable(now)
                ),
                None,
            )
            if session is None:
                return None
            session.refresh_token = new_refresh_token
            session.refresh_token_expiry = new_expiry
            session.access_token_jti = access_token_jti
            session.access_token_expiry = access_token_expiry
            for key, value in (device or {}).items():
                if value is not None:
                    setattr(session, key, value)
            session.updated_at = now
            session.last_activity_at = now
            self._persist_state()
            return session

    def deactivate_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            if session.is_active:
                session.is_active = False
                session.updated_at = utcnow()
                self._persist_state()
            return session

    def deactivate_session_by_refresh_token(
        self, refresh_token: str
    ) -> Optional[Session]:
        with self._data_lock:
            session = next(
                (s for s in self.sessions.values() if s.refresh_token == refresh_token),
                None,
            )
            if not session:
                return None
            return self.deactivate_session(session.id)

    def deactivate_user_sessions(self, user_id: str) -> List[Session]:
        """Deactivate every active session of a user; returns the ones that changed."""
        with self._data_lock:
            changed = []
            now = utcnow()
            for session in self.sessions.values():
                if session.user_id == user_id and session.is_active:
                    session.is_active = False
                    session.updated_at = now
                    changed.append(session)
            if changed:
                self._persist_state()
            return changed

    def list_active_sessions(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[Session]:
        now = now or utcnow()
        with self._data_lock:
            results = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_usable(now)
            ]
            return sorted(
                results,
                key=lambda s: s.last_activity_at or s.created_at,
                reverse=True,
            )

    def has_active_session(self, user_id: str, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        with self._data_lock:
            return any(
                s.user_id == user_id and s.is_usable(now) for s in self.sessions.values()
            )

    def delete_expired_sessions(self, now: datetime, idle_before: datetime) -> int:
        """Remove sessions past refresh expiry, or active but idle since ``idle_before``."""

        def _stale(s) -> bool:
            last_seen = s.last_activity_at or s.created_at
            return s.refresh_token_expiry <= now or (
                s.is_active and last_seen < idle_before
            )

        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if _stale(s)]
            stale_sub = [sid for sid, s in self.sub_user_sessions.items() if _stale(s)]
            for sid in stale:
                self.sessions.pop(sid, None)
            for sid in stale_sub:
                self.sub_user_sessions.pop(sid, None)
            removed = len(stale) + len(stale_sub)
            if removed:
                self._persist_state()
            return removed

    # -- sub-users --------------------------------------------------------

    def count_sub_users(self, venue_id: str) -> int:
        with self._data_lock:
            return sum(1 for s in self.sub_users.values() if s.venue_id == venue_id)

    def create_sub_user(self, sub_user: VenueSubUser) -> VenueSubUser:
        with self._data_lock:
            key = sub_user.username.casefold()
            if any(
                s.venue_id == sub_user.venue_id and s.username.casefold() == key
                for s in self.sub_users.values()
            ):
                raise ConstraintViolation(
                    "username already exists in venue",
                    {"field": "username"},
                    field="username",
                )
            self.sub_users[sub_user.id] = sub_user
            self._persist_state()
            return sub_user

    def get_sub_user(
        self, sub_user_id: str, *, for_update: bool = False
    ) -> Optional[VenueSubUser]:
        # for_update is a no-op here: transaction() already holds the lock
        with self._data_lock:
            return self.sub_users.get(sub_user_id)

    def get_sub_user_by_username(
        self, venue_id: str, username: str
    ) -> Optional[VenueSubUser]:
        key = username.casefold()
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.sub_users.values()
                    if s.venue_id == venue_id and s.username.casefold() == key
                ),
                None,
            )

    def list_sub_users(self, venue_id: str) -> List[VenueSubUser]:
        with self._data_lock:
            results = [s for s in self.sub_users.values() if s.venue_id == venue_id]
            return sorted(results, key=lambda s: s.created_at)

    def _update_sub_user(
        self, sub_user_id: str, *, require_active: bool = False, **fields: Any
    ) -> Optional[VenueSubUser]:
        """Write ``fields`` onto a fresh copy of the record, leaving other columns alone."""
        with self._data_lock:
            current = self.sub_users.get(sub_user_id)
            if current is None or (require_active and not current.is_active):
                return None
            updated = replace(current, **fields)
            self.sub_users[sub_user_id] = updated
            self._persist_state()
            return updated

    def update_sub_user_access(
        self,
        sub_user_id: str,
        *,
        role: SubUserRole,
        permissions: int,
        is_active: bool,
    ) -> Optional[VenueSubUser]:
        return self._update_sub_user(
            sub_user_id,
            role=SubUserRole(role),
            permissions=VenuePermissions(int(permissions)),
            is_active=is_active,
            updated_at=utcnow(),
        )

    def set_sub_user_password(
        self,
        sub_user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        must_change_password: bool,
        changed_at: datetime,
        clear_lockout: bool = False,
        require_active: bool = False,
    ) -> Optional[VenueSubUser]:
        fields: Dict[str, Any] = {
            "password_hash": password_hash,
            "password_algo": password_algo,
            "must_change_password": must_change_password,
            "password_changed_at": changed_at,
            "updated_at": changed_at,
        }
        if clear_lockout:
            fields.update(failed_login_attempts=0, locked_until=None)
        return self._update_sub_user(sub_user_id, require_active=require_active, **fields)

    def record_sub_user_login(
        self, sub_user_id: str, now: datetime
    ) -> Optional[VenueSubUser]:
        return self._update_sub_user(
            sub_user_id,
            require_active=True,
            failed_login_attempts=0,
            locked_until=None,
            last_login_at=now,
        )

    def record_sub_user_login_failure(
        self, sub_user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[VenueSubUser]:
        with self._data_lock:
            current = self.sub_users.get(sub_user_id)
            if current is None:
                return None
            attempts = current.failed_login_attempts + 1
            return self._update_sub_user(
                sub_user_id,
                failed_login_attempts=attempts,
                locked_until=lock_until if attempts >= max_attempts else current.locked_until,
            )

    def delete_sub_user(self, sub_user_id: str) -> bool:
        with self._data_lock:
            if self.sub_users.pop(sub_user_id, None) is None:
                return False
            for sid, sess in list(self.sub_user_sessions.items()):
                if sess.sub_user_id == sub_user_id:
                    self.sub_user_sessions.pop(sid, None)
            self._persist_state()
            return True

    def create_sub_user_session(
        self, session: VenueSubUserSession
    ) -> VenueSubUserSession:
        with self._data_lock:
            if any(
                s.refresh_token == session.refresh_token
                for s in self.sub_user_sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already exists", field="refresh_token"
                )
            self.sub_user_sessions[session.id] = session
            self._persist_state()
            return session

    def get_active_sub_user_session_by_refresh_token(
        self, refresh_token: str, now: Optional[datetime] = None
    ) -> Optional[VenueSubUserSession]:
        now = now or utcnow()
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.sub_user_sessions.values()
                    if s.refresh_token == refresh_token and s.is_usable(now)
                ),
                None,
            )

    def rotate_sub_user_refresh_token(
        self,
        old_refresh_token: str,
        new_refresh_token: str,
        new_expiry: datetime,
        *,
        now: Optional[datetime] = None,
        access_token_jti: Optional[str] = None,
        access_token_expiry: Optional[datetime] = None,
        permissions: Optional[int] = None,
    ) -> Optional[VenueSubUserSession]:
        now = now or utcnow()
        with self._data_lock:
            session = self.get_active_sub_user_session_by_refresh_token(
                old_refresh_token, now
            )
            if session is None:
                return None
            session.refresh_token = new_refresh_token
            session.refresh_token_expiry = new_expiry
            session.access_token_jti = access_token_jti
            session.access_token_expiry = access_token_expiry
            if permissions is not None:
                session.permissions = VenuePermissions(int(permissions))
            session.updated_at = now
            session.last_activity_at = now
            self._persist_state()
            return session

    def deactivate_sub_user_sessions(
        self, sub_user_id: str
    ) -> List[VenueSubUserSession]:
        with self._data_lock:
            changed = []
            now = utcnow()
            for session in self.sub_user_sessions.values():
                if session.sub_user_id == sub_user_id and session.is_active:
                    session.is_active = False
                    session.updated_at = now
                    changed.append(session)
            if changed:
                self._persist_state()
            return changed

    def has_active_sub_user_session(
        self, sub_user_id: str, now: Optional[datetime] = None
    ) -> bool:
        now = now or utcnow()
        with self._data_lock:
            return any(
                s.sub_user_id == sub_user_id and s.is_usable(now)
                for s in self.sub_user_sessions.values()
            )

    # -- audit ------------------------------------------------------------

    def record_audit(
        self,
        venue_id: str,
        action: str,
        entity_type: str,
        *,
        entity_id: Optional[str] = None,
        actor_sub_user_id: Optional[str] = None,
        details: Optional[Dict] = None,
    ) -> VenueAuditLog:
        with self._data_lock:
            entry = VenueAuditLog(
                id=str(uuid.uuid4()),
                venue_id=venue_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_sub_user_id=actor_sub_user_id,
                details=details,
            )
            self.audit_logs.append(entry)
            self._persist_state()
            return entry

    # -- persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        if self._tx_depth:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "venues": [self._serialize_venue(v) for v in self.venues.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "sub_users": [
                self._serialize_sub_user(s) for s in self.sub_users.values()
            ],
            "sub_user_sessions": [
                self._serialize_sub_user_session(s)
                for s in self.sub_user_sessions.values()
            ],
            "audit_logs": [self._serialize_audit(a) for a in self.audit_logs],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.venues = {
            v["id"]: self._deserialize_venue(v) for v in data.get("venues", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.sub_users = {
            s["id"]: self._deserialize_sub_user(s) for s in data.get("sub_users", [])
        }
        self.sub_user_sessions = {
            s["id"]: self._deserialize_sub_user_session(s)
            for s in data.get("sub_user_sessions", [])
        }
        self.audit_logs = [
            self._deserialize_audit(a) for a in data.get("audit_logs", [])
        ]
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "phone_number": user.phone_number,
            "venue_id": user.venue_id,
            "full_name": user.full_name,
            "is_active": user.is_active,
            "is_email_verified": user.is_email_verified,
            "is_phone_verified": user.is_phone_verified,
            "codes": {
                slot: {
                    "code": c.code,
                    "expires_at": self._serialize_datetime(c.expires_at),
                    "used": c.used,
                }
                for slot, c in user.codes.items()
            },
            "last_password_reset_request": self._serialize_datetime(
                user.last_password_reset_request
            ),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "deactivated_at": self._serialize_datetime(user.deactivated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            phone_number=data.get("phone_number"),
            venue_id=data.get("venue_id"),
            full_name=data.get("full_name"),
            is_active=data.get("is_active", True),
            is_email_verified=data.get("is_email_verified", False),
            is_phone_verified=data.get("is_phone_verified", False),
            codes={
                slot: VerificationCode(
                    code=c.get("code"),
                    expires_at=self._deserialize_datetime(c.get("expires_at")),
                    used=bool(c.get("used", False)),
                )
                for slot, c in (data.get("codes") or {}).items()
            },
            last_password_reset_request=self._deserialize_datetime(
                data.get("last_password_reset_request")
            ),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
            deactivated_at=self._deserialize_datetime(data.get("deactivated_at")),
        )

    def _serialize_venue(self, venue: Venue) -> dict:
        return {
            "id": venue.id,
            "name": venue.name,
            "venue_type": venue.venue_type,
            "email": venue.email,
            "is_profile_complete": venue.is_profile_complete,
            "requires_sub_user_setup": venue.requires_sub_user_setup,
            "created_at": self._serialize_datetime(venue.created_at),
        }

    def _deserialize_venue(self, data: dict) -> Venue:
        return Venue(
            id=data["id"],
            name=data["name"],
            venue_type=data["venue_type"],
            email=data.get("email"),
            is_profile_complete=data.get("is_profile_complete", False),
            requires_sub_user_setup=data.get("requires_sub_user_setup", True),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session_common(self, session) -> dict:
        return {
            "id": session.id,
            "refresh_token": session.refresh_token,
            "refresh_token_expiry": self._serialize_datetime(
                session.refresh_token_expiry
            ),
            "is_active": session.is_active,
            "device_name": session.device_name,
            "device_type": session.device_type,
            "user_agent": session.user_agent,
            "ip_address": session.ip_address,
            "access_token_jti": session.access_token_jti,
            "access_token_expiry": self._serialize_datetime(
                session.access_token_expiry
            ),
            "created_at": self._serialize_datetime(session.created_at),
            "updated_at": self._serialize_datetime(session.updated_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
        }

    def _deserialize_session_common(self, data: dict) -> dict:
        return {
            "id": data["id"],
            "refresh_token": data["refresh_token"],
            "refresh_token_expiry": self._deserialize_datetime(
                data["refresh_token_expiry"]
            ),
            "is_active": data.get("is_active", True),
            "device_name": data.get("device_name") or "Unknown Device",
            "device_type": data.get("device_type") or "Unknown",
            "user_agent": data.get("user_agent"),
            "ip_address": data.get("ip_address"),
            "access_token_jti": data.get("access_token_jti"),
            "access_token_expiry": self._deserialize_datetime(
                data.get("access_token_expiry")
            ),
            "created_at": self._deserialize_datetime(data["created_at"]),
            "updated_at": self._deserialize_datetime(data.get("updated_at")),
            "last_activity_at": self._deserialize_datetime(data.get("last_activity_at")),
        }

    def _serialize_session(self, session: Session) -> dict:
        return {**self._serialize_session_common(session), "user_id": session.user_id}

    def _deserialize_session(self, data: dict) -> Session:
        return Session(user_id=data["user_id"], **self._deserialize_session_common(data))

    def _serialize_sub_user_session(self, session: VenueSubUserSession) -> dict:
        return {
            **self._serialize_session_common(session),
            "sub_user_id": session.sub_user_id,
            "venue_id": session.venue_id,
            "permissions": int(session.permissions),
        }

    def _deserialize_sub_user_session(self, data: dict) -> VenueSubUserSession:
        return VenueSubUserSession(
            sub_user_id=data["sub_user_id"],
            venue_id=data["venue_id"],
            permissions=VenuePermissions(int(data.get("permissions", 0))),
            **self._deserialize_session_common(data),
        )

    def _serialize_sub_user(self, sub_user: VenueSubUser) -> dict:
        return {
            "id": sub_user.id,
            "venue_id": sub_user.venue_id,
            "username": sub_user.username,
            "password_hash": sub_user.password_hash,
            "password_algo": sub_user.password_algo,
            "role": int(sub_user.role),
            "permissions": int(sub_user.permissions),
            "is_active": sub_user.is_active,
            "is_founder_admin": sub_user.is_founder_admin,
            "must_change_password": sub_user.must_change_password,
            "failed_login_attempts": sub_user.failed_login_attempts,
            "locked_until": self._serialize_datetime(sub_user.locked_until),
            "last_login_at": self._serialize_datetime(sub_user.last_login_at),
            "password_changed_at": self._serialize_datetime(sub_user.password_changed_at),
            "created_by_sub_user_id": sub_user.created_by_sub_user_id,
            "created_at": self._serialize_datetime(sub_user.created_at),
            "updated_at": self._serialize_datetime(sub_user.updated_at),
        }

    def _deserialize_sub_user(self, data: dict) -> VenueSubUser:
        return VenueSubUser(
            id=data["id"],
            venue_id=data["venue_id"],
            username=data["username"],
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", "argon2id"),
            role=SubUserRole(int(data.get("role", SubUserRole.STAFF))),
            permissions=VenuePermissions(int(data.get("permissions", 0))),
            is_active=data.get("is_active", True),
            is_founder_admin=data.get("is_founder_admin", False),
            must_change_password=data.get("must_change_password", False),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            password_changed_at=self._deserialize_datetime(
                data.get("password_changed_at")
            ),
            created_by_sub_user_id=data.get("created_by_sub_user_id"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )

    def _serialize_audit(self, entry: VenueAuditLog) -> dict:
        return {
            "id": entry.id,
            "venue_id": entry.venue_id,
            "action": entry.action,
            "entity_type": entry.entity_type,
            "entity_id": entry.entity_id,
            "actor_sub_user_id": entry.actor_sub_user_id,
            "details": entry.details,
            "created_at": self._serialize_datetime(entry.created_at),
        }

    def _deserialize_audit(self, data: dict) -> VenueAuditLog:
        return VenueAuditLog(
            id=data["id"],
            venue_id=data["venue_id"],
            action=data["action"],
            entity_type=data["entity_type"],
            entity_id=data.get("entity_id"),
            actor_sub_user_id=data.get("actor_sub_user_id"),
            details=data.get("details"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
