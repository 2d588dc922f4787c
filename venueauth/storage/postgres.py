from __future__ import annotations

import json
import threading
import uuid
from contextlib import contextmanager, nullcontext
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SESSION_COLUMNS = (
    "device_name",
    "device_type",
    "user_agent",
    "ip_address",
)

# constraint name -> field reported in ConstraintViolation
_UNIQUE_FIELDS = {
    "app_user_email_key": "email",
    "app_user_phone_number_key": "phone_number",
    "venue_sub_user_venue_id_username_key_key": "username",
    "auth_session_refresh_token_key": "refresh_token",
    "venue_sub_user_session_refresh_token_key": "refresh_token",
}


def _unique_field(exc: errors.UniqueViolation) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    name = getattr(diag, "constraint_name", None) if diag else None
    return _UNIQUE_FIELDS.get(name or "")


class PostgresStore:
    """Postgres-backed store for users, venues, sessions and sub-users.

    Each call checks a connection out of the pool and commits on exit.
    Inside ``transaction()`` the calling thread reuses one pinned connection
    so the whole block commits or rolls back together.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._tx_local = threading.local()
        self._verify_required_schema()

    def _connect(self):
        conn = getattr(self._tx_local, "conn", None)
        if conn is not None:
            return nullcontext(conn)
        return self.pool.connection()

    @contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        if getattr(self._tx_local, "conn", None) is not None:
            # nested: join the outer transaction
            yield self
            return
        with self.pool.connection() as conn:
            with conn.transaction():
                self._tx_local.conn = conn
                try:
                    yield self
                finally:
                    self._tx_local.conn = None

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = [
            "venue",
            "app_user",
            "user_auth_credential",
            "user_verification_code",
            "auth_session",
            "venue_sub_user",
            "venue_sub_user_session",
            "venue_audit_log",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _str_or_none(value) -> Optional[str]:
        return str(value) if value is not None else None

    def _user_from_row(self, row: dict, code_rows: List[dict]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            phone_number=row.get("phone_number"),
            venue_id=self._str_or_none(row.get("venue_id")),
            full_name=row.get("full_name"),
            is_active=row.get("is_active", True),
            is_email_verified=row.get("is_email_verified", False),
            is_phone_verified=row.get("is_phone_verified", False),
            codes={
                c["slot"]: VerificationCode(
                    code=c.get("code"),
                    expires_at=c.get("expires_at"),
                    used=bool(c.get("used", False)),
                )
                for c in code_rows
            },
            last_password_reset_request=row.get("last_password_reset_request"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
            deactivated_at=row.get("deactivated_at"),
        )

    @staticmethod
    def _venue_from_row(row: dict) -> Venue:
        return Venue(
            id=str(row["id"]),
            name=row["name"],
            venue_type=row["venue_type"],
            email=row.get("email"),
            is_profile_complete=row.get("is_profile_complete", False),
            requires_sub_user_setup=row.get("requires_sub_user_setup", True),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _session_fields(row: dict) -> dict:
        return {
            "id": str(row["id"]),
            "refresh_token": row["refresh_token"],
            "refresh_token_expiry": row["refresh_token_expiry"],
            "is_active": row.get("is_active", True),
            "device_name": row.get("device_name"),
            "device_type": row.get("device_type"),
            "user_agent": row.get("user_agent"),
            "ip_address": row.get("ip_address"),
            "access_token_jti": row.get("access_token_jti"),
            "access_token_expiry": row.get("access_token_expiry"),
            "created_at": row.get("created_at") or utcnow(),
            "updated_at": row.get("updated_at"),
            "last_activity_at": row.get("last_activity_at"),
        }

    def _session_from_row(self, row: dict) -> Session:
        return Session(user_id=str(row["user_id"]), **self._session_fields(row))

    def _sub_user_session_from_row(self, row: dict) -> VenueSubUserSession:
        return VenueSubUserSession(
            sub_user_id=str(row["sub_user_id"]),
            venue_id=str(row["venue_id"]),
            permissions=VenuePermissions(int(row.get("permissions") or 0)),
            **self._session_fields(row),
        )

    @staticmethod
    def _sub_user_from_row(row: dict) -> VenueSubUser:
        return VenueSubUser(
            id=str(row["id"]),
            venue_id=str(row["venue_id"]),
            username=row["username"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            role=SubUserRole(int(row["role"])),
            permissions=VenuePermissions(int(row.get("permissions") or 0)),
            is_active=row.get("is_active", True),
            is_founder_admin=row.get("is_founder_admin", False),
            must_change_password=row.get("must_change_password", False),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            password_changed_at=row.get("password_changed_at"),
            created_by_sub_user_id=(
                str(row["created_by_sub_user_id"])
                if row.get("created_by_sub_user_id")
                else None
            ),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

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
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            phone_number=phone_number,
            venue_id=venue_id,
            full_name=full_name,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, phone_number, venue_id, full_name, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.phone_number,
                        user.venue_id,
                        user.full_name,
                        user.is_active,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = _unique_field(exc) or "email"
            raise ConstraintViolation(
                f"{field} already exists", {"field": field}, field=field
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("venue missing", {"venue_id": venue_id}) from exc
        return user

    def _load_user(self, where: str, param: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {where} = %s", (param,)
            ).fetchone()
            if not row:
                return None
            code_rows = conn.execute(
                "SELECT slot, code, expires_at, used FROM user_verification_code WHERE user_id = %s",
                (row["id"],),
            ).fetchall()
        return self._user_from_row(row, code_rows)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._load_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._load_user("email", email.strip().lower())

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        return self._load_user("phone_number", phone_number)

    def set_verification_code(
        self,
        user_id: str,
        channel: VerificationChannel,
        purpose: VerificationPurpose,
        code: str,
        expires_at: datetime,
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_verification_code (user_id, slot, code, expires_at, used)
                    VALUES (%s, %s, %s, %s, FALSE)
                    ON CONFLICT (user_id, slot) DO UPDATE
                    SET code = EXCLUDED.code, expires_at = EXCLUDED.expires_at, used = FALSE
                    """,
                    (user_id, code_slot(channel, purpose), code, expires_at),
                )
                conn.execute(
                    "UPDATE app_user SET updated_at = now() WHERE id = %s", (user_id,)
                )
        except errors.ForeignKeyViolation:
            return None
        return self.get_user(user_id)

    def clear_verification_code(
        self,
        user_id: str,
        channel: VerificationChannel,
        purpose: VerificationPurpose,
        *,
        mark_used: bool = False,
    ) -> Optional[User]:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_verification_code SET code = NULL, expires_at = NULL, used = %s
                WHERE user_id = %s AND slot = %s
                """,
                (mark_used, user_id, code_slot(channel, purpose)),
            )
        return self.get_user(user_id)

    def mark_verified(self, user_id: str, channel: VerificationChannel) -> Optional[User]:
        column = (
            "is_email_verified"
            if VerificationChannel(channel) is VerificationChannel.EMAIL
            else "is_phone_verified"
        )
        with self._connect() as conn:
            result = conn.execute(
                f"UPDATE app_user SET {column} = TRUE, updated_at = now() WHERE id = %s",
                (user_id,),
            )
        if result.rowcount == 0:
            return None
        return self.get_user(user_id)

    def set_last_password_reset_request(
        self, user_id: str, requested_at: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET last_password_reset_request = %s WHERE id = %s",
                (requested_at, user_id),
            )
        if result.rowcount == 0:
            return None
        return self.get_user(user_id)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET is_active = %s,
                    deactivated_at = CASE WHEN %s THEN NULL ELSE now() END,
                    updated_at = now()
                WHERE id = %s
                """,
                (is_active, is_active, user_id),
            )
        if result.rowcount == 0:
            return None
        return self.get_user(user_id)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            ) from exc

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- venues -----------------------------------------------------------

    def create_venue(
        self, name: str, venue_type: str, *, email: Optional[str] = None
    ) -> Venue:
        venue = Venue(
            id=str(uuid.uuid4()),
            name=name,
            venue_type=venue_type,
            email=email.strip().lower() if email else None,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO venue (id, name, venue_type, email, is_profile_complete, requires_sub_user_setup, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    venue.id,
                    venue.name,
                    venue.venue_type,
                    venue.email,
                    venue.is_profile_complete,
                    venue.requires_sub_user_setup,
                    venue.created_at,
                ),
            )
        return venue

    def get_venue(self, venue_id: str) -> Optional[Venue]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM venue WHERE id = %s", (venue_id,)).fetchone()
        return self._venue_from_row(row) if row else None

    def set_venue_requires_sub_user_setup(
        self, venue_id: str, value: bool
    ) -> Optional[Venue]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE venue SET requires_sub_user_setup = %s WHERE id = %s RETURNING *",
                (value, venue_id),
            ).fetchone()
        return self._venue_from_row(row) if row else None

    # -- primary sessions -------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, refresh_token, refresh_token_expiry, is_active,
                        device_name, device_type, user_agent, ip_address,
                        access_token_jti, access_token_expiry, created_at, last_activity_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token,
                        session.refresh_token_expiry,
                        session.is_active,
                        session.device_name,
                        session.device_type,
                        session.user_agent,
                        session.ip_address,
                        session.access_token_jti,
                        session.access_token_expiry,
                        session.created_at,
                        session.last_activity_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token already exists", field="refresh_token"
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session user missing", {"user_id": session.user_id}
            ) from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_active_session_by_refresh_token(
        self, refresh_token: str, now: Optional[datetime] = None
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE refresh_token = %s AND is_active AND refresh_token_expiry > %s
                """,
                (refresh_token, now or utcnow()),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_active_session_for_device(
        self,
        user_id: str,
        device_name: str,
        device_type: str,
        user_agent: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND is_active AND refresh_token_expiry > %s
                  AND device_name = %s AND device_type = %s
                  AND user_agent IS NOT DISTINCT FROM %s
                ORDER BY last_activity_at DESC NULLS LAST
                LIMIT 1
                """,
                (user_id, now or utcnow(), device_name, device_type, user_agent),
            ).fetchone()
        return self._session_from_row(row) if row else None

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
        """Conditional single-row update; a concurrent loser matches zero rows."""
        now = now or utcnow()
        device = device or {}
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE auth_session
                    SET refresh_token = %s,
                        refresh_token_expiry = %s,
                        access_token_jti = %s,
                        access_token_expiry = %s,
                        device_name = COALESCE(%s, device_name),
                        device_type = COALESCE(%s, device_type),
                        user_agent = COALESCE(%s, user_agent),
                        ip_address = COALESCE(%s, ip_address),
                        updated_at = %s,
                        last_activity_at = %s
                    WHERE refresh_token = %s AND is_active AND refresh_token_expiry > %s
                    RETURNING *
                    """,
                    (
                        new_refresh_token,
                        new_expiry,
                        access_token_jti,
                        access_token_expiry,
                        *(device.get(col) for col in _SESSION_COLUMNS),
                        now,
                        now,
                        old_refresh_token,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token already exists", field="refresh_token"
            ) from exc
        return self._session_from_row(row) if row else None

    def deactivate_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET is_active = FALSE,
                    updated_at = CASE WHEN is_active THEN now() ELSE updated_at END
                WHERE id = %s
                RETURNING *
                """,
                (session_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def deactivate_session_by_refresh_token(
        self, refresh_token: str
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET is_active = FALSE,
                    updated_at = CASE WHEN is_active THEN now() ELSE updated_at END
                WHERE refresh_token = %s
                RETURNING *
                """,
                (refresh_token,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def deactivate_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, updated_at = now()
                WHERE user_id = %s AND is_active
                RETURNING *
                """,
                (user_id,),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def list_active_sessions(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND is_active AND refresh_token_expiry > %s
                ORDER BY COALESCE(last_activity_at, created_at) DESC
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def has_active_session(self, user_id: str, now: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS found FROM auth_session
                WHERE user_id = %s AND is_active AND refresh_token_expiry > %s
                LIMIT 1
                """,
                (user_id, now or utcnow()),
            ).fetchone()
        return bool(row)

    def delete_expired_sessions(self, now: datetime, idle_before: datetime) -> int:
        removed = 0
        with self._connect() as conn:
            for table in ("auth_session", "venue_sub_user_session"):
                result = conn.execute(
                    f"""
                    DELETE FROM {table}
                    WHERE refresh_token_expiry <= %s
                       OR (is_active AND COALESCE(last_activity_at, created_at) < %s)
                    """,
                    (now, idle_before),
                )
                removed += max(result.rowcount, 0)
        return removed

    # -- sub-users --------------------------------------------------------

    def count_sub_users(self, venue_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM venue_sub_user WHERE venue_id = %s",
                (venue_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    def create_sub_user(self, sub_user: VenueSubUser) -> VenueSubUser:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO venue_sub_user (
                        id, venue_id, username, username_key, password_hash, password_algo,
                        role, permissions, is_active, is_founder_admin, must_change_password,
                        failed_login_attempts, created_by_sub_user_id, password_changed_at, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sub_user.id,
                        sub_user.venue_id,
                        sub_user.username,
                        sub_user.username.casefold(),
                        sub_user.password_hash,
                        sub_user.password_algo,
                        int(sub_user.role),
                        int(sub_user.permissions),
                        sub_user.is_active,
                        sub_user.is_founder_admin,
                        sub_user.must_change_password,
                        sub_user.failed_login_attempts,
                        sub_user.created_by_sub_user_id,
                        sub_user.password_changed_at,
                        sub_user.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "username already exists in venue",
                {"field": "username"},
                field="username",
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "venue missing", {"venue_id": sub_user.venue_id}
            ) from exc
        return sub_user

    def get_sub_user(
        self, sub_user_id: str, *, for_update: bool = False
    ) -> Optional[VenueSubUser]:
        sql = "SELECT * FROM venue_sub_user WHERE id = %s"
        if for_update:
            sql += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(sql, (sub_user_id,)).fetchone()
        return self._sub_user_from_row(row) if row else None

    def get_sub_user_by_username(
        self, venue_id: str, username: str
    ) -> Optional[VenueSubUser]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM venue_sub_user WHERE venue_id = %s AND username_key = %s",
                (venue_id, username.casefold()),
            ).fetchone()
        return self._sub_user_from_row(row) if row else None

    def list_sub_users(self, venue_id: str) -> List[VenueSubUser]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM venue_sub_user WHERE venue_id = %s ORDER BY created_at",
                (venue_id,),
            ).fetchall()
        return [self._sub_user_from_row(r) for r in rows]

    def update_sub_user_access(
        self,
        sub_user_id: str,
        *,
        role: SubUserRole,
        permissions: int,
        is_active: bool,
    ) -> Optional[VenueSubUser]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE venue_sub_user
                SET role = %s, permissions = %s, is_active = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (int(role), int(permissions), is_active, sub_user_id),
            ).fetchone()
        return self._sub_user_from_row(row) if row else None

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
        lockout = ", failed_login_attempts = 0, locked_until = NULL" if clear_lockout else ""
        active = " AND is_active" if require_active else ""
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE venue_sub_user
                SET password_hash = %s, password_algo = %s, must_change_password = %s,
                    password_changed_at = %s, updated_at = %s{lockout}
                WHERE id = %s{active}
                RETURNING *
                """,
                (
                    password_hash,
                    password_algo,
                    must_change_password,
                    changed_at,
                    changed_at,
                    sub_user_id,
                ),
            ).fetchone()
        return self._sub_user_from_row(row) if row else None

    def record_sub_user_login(
        self, sub_user_id: str, now: datetime
    ) -> Optional[VenueSubUser]:
        """Stamp a successful login; None when the sub-user is gone or inactive.

        The row stays locked until the surrounding transaction ends, so a
        concurrent deactivation waits and then sees the new session.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE venue_sub_user
                SET failed_login_attempts = 0, locked_until = NULL, last_login_at = %s
                WHERE id = %s AND is_active
                RETURNING *
                """,
                (now, sub_user_id),
            ).fetchone()
        return self._sub_user_from_row(row) if row else None

    def record_sub_user_login_failure(
        self, sub_user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[VenueSubUser]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE venue_sub_user
                SET failed_login_attempts = failed_login_attempts + 1,
                    locked_until = CASE
                        WHEN failed_login_attempts + 1 >= %s THEN %s
                        ELSE locked_until
                    END
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, lock_until, sub_user_id),
            ).fetchone()
        return self._sub_user_from_row(row) if row else None

    def delete_sub_user(self, sub_user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM venue_sub_user WHERE id = %s", (sub_user_id,)
            )
        return result.rowcount > 0

    def create_sub_user_session(
        self, session: VenueSubUserSession
    ) -> VenueSubUserSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO venue_sub_user_session (
                        id, sub_user_id, venue_id, refresh_token, refresh_token_expiry,
                        permissions, is_active, device_name, device_type, user_agent,
                        ip_address, access_token_jti, access_token_expiry, created_at,
                        last_activity_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.sub_user_id,
                        session.venue_id,
                        session.refresh_token,
                        session.refresh_token_expiry,
                        int(session.permissions),
                        session.is_active,
                        session.device_name,
                        session.device_type,
                        session.user_agent,
                        session.ip_address,
                        session.access_token_jti,
                        session.access_token_expiry,
                        session.created_at,
                        session.last_activity_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token already exists", field="refresh_token"
            ) from exc
        return session

    def get_active_sub_user_session_by_refresh_token(
        self, refresh_token: str, now: Optional[datetime] = None
    ) -> Optional[VenueSubUserSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM venue_sub_user_session
                WHERE refresh_token = %s AND is_active AND refresh_token_expiry > %s
                """,
                (refresh_token, now or utcnow()),
            ).fetchone()
        return self._sub_user_session_from_row(row) if row else None

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
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE venue_sub_user_session
                SET refresh_token = %s, refresh_token_expiry = %s,
                    access_token_jti = %s, access_token_expiry = %s,
                    permissions = COALESCE(%s, permissions),
                    updated_at = %s, last_activity_at = %s
                WHERE refresh_token = %s AND is_active AND refresh_token_expiry > %s
                RETURNING *
                """,
                (
                    new_refresh_token,
                    new_expiry,
                    access_token_jti,
                    access_token_expiry,
                    int(permissions) if permissions is not None else None,
                    now,
                    now,
                    old_refresh_token,
                    now,
                ),
            ).fetchone()
        return self._sub_user_session_from_row(row) if row else None

    def deactivate_sub_user_sessions(
        self, sub_user_id: str
    ) -> List[VenueSubUserSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE venue_sub_user_session SET is_active = FALSE, updated_at = now()
                WHERE sub_user_id = %s AND is_active
                RETURNING *
                """,
                (sub_user_id,),
            ).fetchall()
        return [self._sub_user_session_from_row(r) for r in rows]

    def has_active_sub_user_session(
        self, sub_user_id: str, now: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS found FROM venue_sub_user_session
                WHERE sub_user_id = %s AND is_active AND refresh_token_expiry > %s
                LIMIT 1
                """,
                (sub_user_id, now or utcnow()),
            ).fetchone()
        return bool(row)

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
        entry = VenueAuditLog(
            id=str(uuid.uuid4()),
            venue_id=venue_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_sub_user_id=actor_sub_user_id,
            details=details,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO venue_audit_log (id, venue_id, action, entity_type, entity_id, actor_sub_user_id, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.venue_id,
                    entry.action,
                    entry.entity_type,
                    entry.entity_id,
                    entry.actor_sub_user_id,
                    json.dumps(details) if details else None,
                    entry.created_at,
                ),
            )
        return entry

    def close(self) -> None:
        self.pool.close()
