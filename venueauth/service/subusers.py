"""Venue sub-user accounts: provisioning, login, management.

Usernames are unique per venue and compared case-insensitively, both for
the uniqueness constraint and at login. The founder admin (the first
sub-user of a venue) keeps the Admin role and full permissions and can be
neither deactivated nor deleted.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from venueauth.config import Settings
from venueauth.logging import get_logger
from venueauth.service.auth import check_password, hash_password
from venueauth.service.permissions import (
    ALL_PERMISSIONS,
    SubUserRole,
    VenuePermissions,
    default_permissions_for,
    has_permissions,
    normalize_permissions,
    permission_names,
)
from venueauth.service.results import Result, handler_boundary
from venueauth.service.tokens import DeviceInfo, TokenPair, TokenService
from venueauth.storage.errors import ConstraintViolation
from venueauth.storage.models import VenueSubUser

logger = get_logger(__name__)

AUDIT_ENTITY = "VenueSubUser"
ACTION_CREATED = "SubUser.Created"
ACTION_UPDATED = "SubUser.Updated"
ACTION_DELETED = "SubUser.Deleted"
ACTION_DEACTIVATED = "SubUser.Deactivated"
ACTION_PASSWORD_CHANGED = "SubUser.PasswordChanged"
ACTION_PASSWORD_RESET = "SubUser.PasswordReset"
ACTION_LOGIN = "SubUser.Login"
ACTION_LOGOUT = "SubUser.Logout"
ACTION_LOGIN_FAILED = "SubUser.LoginFailed"

INVALID_LOGIN = "Invalid username or password"
NOT_FOUND = "Sub-user not found"


def serialize_sub_user(sub_user: VenueSubUser) -> Dict[str, Any]:
    return {
        "id": sub_user.id,
        "venue_id": sub_user.venue_id,
        "username": sub_user.username,
        "role": sub_user.role.name.lower(),
        "permissions": int(sub_user.permissions),
        "permission_names": permission_names(sub_user.permissions),
        "is_active": sub_user.is_active,
        "is_founder_admin": sub_user.is_founder_admin,
        "must_change_password": sub_user.must_change_password,
        "last_login_at": sub_user.last_login_at.isoformat() if sub_user.last_login_at else None,
        "created_at": sub_user.created_at.isoformat(),
    }


class SubUserService:
    def __init__(self, store, tokens: TokenService, settings: Settings) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _scoped(
        self, venue_id: str, sub_user_id: str, *, for_update: bool = False
    ) -> Optional[VenueSubUser]:
        """Load a sub-user only if it belongs to ``venue_id``."""
        sub_user = self.store.get_sub_user(sub_user_id, for_update=for_update)
        if not sub_user or sub_user.venue_id != venue_id:
            return None
        return sub_user

    def _audit(self, sub_user: VenueSubUser, action: str, actor: Optional[str], **details) -> None:
        self.store.record_audit(
            sub_user.venue_id,
            action,
            AUDIT_ENTITY,
            entity_id=sub_user.id,
            actor_sub_user_id=actor,
            details=details or None,
        )

    def check_permission(
        self,
        granted: int,
        required: VenuePermissions,
        *,
        sub_user_id: Optional[str] = None,
        venue_id: Optional[str] = None,
    ) -> bool:
        if has_permissions(granted, required):
            return True
        # masks go to the log only, never to the client
        logger.warning(
            "sub_user_permission_denied",
            sub_user_id=sub_user_id,
            venue_id=venue_id,
            required=int(required),
            held=int(granted),
        )
        return False

    # -- provisioning -------------------------------------------------------

    @handler_boundary("An error occurred while creating the first admin")
    async def create_first_admin(
        self, *, venue_id: str, username: str, password: str
    ) -> Result[Dict[str, Any]]:
        digest, algo = await asyncio.to_thread(hash_password, password)
        now = self._now()
        try:
            with self.store.transaction():
                if not self.store.get_venue(venue_id):
                    return Result.not_found("Venue not found")
                # inactive sub-users count too
                if self.store.count_sub_users(venue_id) > 0:
                    return Result.conflict("Sub-users already exist")
                admin = self.store.create_sub_user(
                    VenueSubUser(
                        id=str(uuid.uuid4()),
                        venue_id=venue_id,
                        username=username.strip(),
                        password_hash=digest,
                        password_algo=algo,
                        role=SubUserRole.ADMIN,
                        permissions=ALL_PERMISSIONS,
                        is_founder_admin=True,
                        must_change_password=False,
                        password_changed_at=now,
                        created_at=now,
                    )
                )
                self.store.set_venue_requires_sub_user_setup(venue_id, False)
                self._audit(admin, ACTION_CREATED, None, founder=True)
        except ConstraintViolation:
            return Result.conflict("Sub-users already exist")
        logger.info("first_admin_created", venue_id=venue_id, sub_user_id=admin.id)
        return Result.success(serialize_sub_user(admin))

    @handler_boundary("An error occurred while creating the sub-user")
    async def create_sub_user(
        self,
        *,
        venue_id: str,
        actor_sub_user_id: Optional[str],
        username: str,
        password: str,
        role: SubUserRole,
        permissions: Optional[int] = None,
    ) -> Result[Dict[str, Any]]:
        role = SubUserRole(role)
        mask = (
            normalize_permissions(permissions)
            if permissions is not None
            else default_permissions_for(role)
        )
        if self.store.get_sub_user_by_username(venue_id, username.strip()):
            return Result.conflict("Username already exists in this venue")
        digest, algo = await asyncio.to_thread(hash_password, password)
        try:
            with self.store.transaction():
                sub_user = self.store.create_sub_user(
                    VenueSubUser(
                        id=str(uuid.uuid4()),
                        venue_id=venue_id,
                        username=username.strip(),
                        password_hash=digest,
                        password_algo=algo,
                        role=role,
                        permissions=mask,
                        must_change_password=True,
                        created_by_sub_user_id=actor_sub_user_id,
                    )
                )
                self._audit(
                    sub_user, ACTION_CREATED, actor_sub_user_id,
                    role=role.name.lower(), permissions=int(mask),
                )
        except ConstraintViolation:
            return Result.conflict("Username already exists in this venue")
        logger.info(
            "sub_user_created",
            venue_id=venue_id,
            sub_user_id=sub_user.id,
            actor_sub_user_id=actor_sub_user_id,
        )
        return Result.success(serialize_sub_user(sub_user))

    # -- login / session ----------------------------------------------------

    def _record_failed_login(self, sub_user: VenueSubUser) -> VenueSubUser:
        lock_until = self._now() + timedelta(minutes=self.settings.sub_user_lockout_minutes)
        with self.store.transaction():
            updated = self.store.record_sub_user_login_failure(
                sub_user.id,
                max_attempts=self.settings.sub_user_max_failed_logins,
                lock_until=lock_until,
            )
            if updated is None:
                return sub_user
            self._audit(
                updated, ACTION_LOGIN_FAILED, updated.id,
                reason="invalid_password", failed_attempts=updated.failed_login_attempts,
            )
        return updated

    @handler_boundary("An error occurred during authentication")
    async def authenticate(
        self,
        *,
        venue_id: str,
        username: str,
        password: str,
        device: Optional[DeviceInfo] = None,
    ) -> Result[Dict[str, Any]]:
        sub_user = self.store.get_sub_user_by_username(venue_id, (username or "").strip())
        if not sub_user:
            self.store.record_audit(
                venue_id, ACTION_LOGIN_FAILED, AUDIT_ENTITY, details={"reason": "user_not_found"}
            )
            return Result.unauthorized(INVALID_LOGIN)

        now = self._now()
        if sub_user.is_locked(now):
            logger.info("sub_user_login_locked", sub_user_id=sub_user.id, venue_id=venue_id)
            return Result.unauthorized(
                f"Account locked until {sub_user.locked_until:%Y-%m-%d %H:%M} UTC"
            )

        valid = await asyncio.to_thread(
            check_password, sub_user.password_hash, sub_user.password_algo, password
        )
        if not valid:
            updated = self._record_failed_login(sub_user)
            logger.warning(
                "sub_user_login_failed",
                sub_user_id=sub_user.id,
                venue_id=venue_id,
                failed_attempts=updated.failed_login_attempts,
                locked=updated.is_locked(),
            )
            return Result.unauthorized(INVALID_LOGIN)

        if not sub_user.is_active:
            return Result.unauthorized("Account is deactivated")

        # the row may have changed while the hash was checked; the stamp only
        # lands on a still-active sub-user and the session opens in the same unit
        with self.store.transaction():
            current = self.store.record_sub_user_login(sub_user.id, now)
            if current is None:
                logger.info("sub_user_login_raced_deactivation", sub_user_id=sub_user.id)
                return Result.unauthorized("Account is deactivated")
            pair = self.tokens.issue_sub_user_tokens(current, device)
            self._audit(current, ACTION_LOGIN, current.id, session_id=pair.session_id)
        logger.info("sub_user_login_succeeded", sub_user_id=current.id, venue_id=venue_id)
        return Result.success(
            {
                "tokens": pair,
                "sub_user": serialize_sub_user(current),
                "must_change_password": current.must_change_password,
            }
        )

    async def refresh(self, refresh_token: str) -> Result[TokenPair]:
        return await self.tokens.refresh_sub_user_tokens(refresh_token)

    @handler_boundary("An error occurred during logout")
    async def logout(self, *, sub_user_id: str) -> Result[int]:
        sub_user = self.store.get_sub_user(sub_user_id)
        if not sub_user:
            return Result.not_found(NOT_FOUND)
        count = await self.tokens.revoke_sub_user_sessions(sub_user_id)
        self._audit(sub_user, ACTION_LOGOUT, sub_user_id, sessions=count)
        return Result.success(count, message="Logged out successfully")

    # -- queries ------------------------------------------------------------

    def list_sub_users(self, venue_id: str) -> List[Dict[str, Any]]:
        return [serialize_sub_user(s) for s in self.store.list_sub_users(venue_id)]

    def get_sub_user(self, *, venue_id: str, sub_user_id: str) -> Result[Dict[str, Any]]:
        sub_user = self._scoped(venue_id, sub_user_id)
        if not sub_user:
            return Result.not_found(NOT_FOUND)
        return Result.success(serialize_sub_user(sub_user))

    # -- management ---------------------------------------------------------

    @staticmethod
    def _founder_conflict(
        sub_user: VenueSubUser,
        role: Optional[SubUserRole],
        permissions: Optional[int],
        is_active: Optional[bool],
    ) -> Optional[str]:
        if not sub_user.is_founder_admin:
            return None
        if role is not None and SubUserRole(role) is not SubUserRole.ADMIN:
            return "The founder admin must keep the Admin role"
        if permissions is not None and int(permissions) != int(sub_user.permissions):
            return "The founder admin's permissions cannot be changed"
        if is_active is False:
            return "Cannot deactivate the founder admin"
        return None

    @handler_boundary("An error occurred while updating the sub-user")
    async def update_sub_user(
        self,
        *,
        venue_id: str,
        sub_user_id: str,
        actor_sub_user_id: Optional[str],
        role: Optional[SubUserRole] = None,
        permissions: Optional[int] = None,
        is_active: Optional[bool] = None,
    ) -> Result[Dict[str, Any]]:
        ended = []
        with self.store.transaction():
            sub_user = self._scoped(venue_id, sub_user_id, for_update=True)
            if not sub_user:
                return Result.not_found(NOT_FOUND)
            conflict = self._founder_conflict(sub_user, role, permissions, is_active)
            if conflict:
                return Result.conflict(conflict)

            new_role = SubUserRole(role) if role is not None else sub_user.role
            if permissions is not None:
                new_mask = normalize_permissions(permissions)
            elif role is not None:
                new_mask = default_permissions_for(new_role)
            else:
                new_mask = sub_user.permissions
            new_active = sub_user.is_active if is_active is None else is_active

            updated = self.store.update_sub_user_access(
                sub_user_id, role=new_role, permissions=new_mask, is_active=new_active
            )
            deactivating = sub_user.is_active and not updated.is_active
            if deactivating:
                ended = self.store.deactivate_sub_user_sessions(sub_user_id)
            self._audit(
                updated,
                ACTION_DEACTIVATED if deactivating else ACTION_UPDATED,
                actor_sub_user_id,
                old={
                    "role": sub_user.role.name.lower(),
                    "permissions": int(sub_user.permissions),
                    "is_active": sub_user.is_active,
                },
                new={
                    "role": updated.role.name.lower(),
                    "permissions": int(updated.permissions),
                    "is_active": updated.is_active,
                },
            )
        if ended:
            await self.tokens.blacklist.blacklist_sessions(ended)
        logger.info(
            "sub_user_updated",
            venue_id=venue_id,
            sub_user_id=sub_user_id,
            actor_sub_user_id=actor_sub_user_id,
            deactivated=deactivating,
        )
        return Result.success(serialize_sub_user(updated))

    @handler_boundary("An error occurred while deleting the sub-user")
    async def delete_sub_user(
        self, *, venue_id: str, sub_user_id: str, actor_sub_user_id: Optional[str]
    ) -> Result[Dict[str, Any]]:
        """Delete the sub-user, end its sessions and audit it as one unit."""
        with self.store.transaction():
            sub_user = self._scoped(venue_id, sub_user_id, for_update=True)
            if not sub_user:
                return Result.not_found(NOT_FOUND)
            if sub_user.is_founder_admin:
                return Result.conflict("Cannot delete the founder admin")
            if sub_user_id == actor_sub_user_id:
                return Result.conflict("You cannot delete your own account")
            ended = self.store.deactivate_sub_user_sessions(sub_user_id)
            self.store.delete_sub_user(sub_user_id)
            self._audit(
                sub_user, ACTION_DELETED, actor_sub_user_id, username=sub_user.username
            )
        await self.tokens.blacklist.blacklist_sessions(ended)
        logger.info(
            "sub_user_deleted",
            venue_id=venue_id,
            sub_user_id=sub_user_id,
            actor_sub_user_id=actor_sub_user_id,
            sessions_ended=len(ended),
        )
        return Result.success(
            {"deleted_sub_user_id": sub_user_id, "sessions_terminated": len(ended)},
            message="Sub-user deleted successfully",
        )

    @handler_boundary("An error occurred while changing the password")
    async def change_own_password(
        self, *, sub_user_id: str, current_password: str, new_password: str
    ) -> Result[None]:
        sub_user = self.store.get_sub_user(sub_user_id)
        if not sub_user or not sub_user.is_active:
            return Result.not_found(NOT_FOUND)
        if not await asyncio.to_thread(
            check_password, sub_user.password_hash, sub_user.password_algo, current_password
        ):
            return Result.unauthorized("Current password is incorrect")
        digest, algo = await asyncio.to_thread(hash_password, new_password)
        with self.store.transaction():
            updated = self.store.set_sub_user_password(
                sub_user_id,
                digest,
                algo,
                must_change_password=False,
                changed_at=self._now(),
                require_active=True,
            )
            if updated is None:
                return Result.not_found(NOT_FOUND)
            self._audit(updated, ACTION_PASSWORD_CHANGED, sub_user_id)
        logger.info("sub_user_password_changed", sub_user_id=sub_user_id)
        return Result.success(None, message="Password changed successfully")

    @handler_boundary("An error occurred while resetting the password")
    async def reset_password(
        self,
        *,
        venue_id: str,
        sub_user_id: str,
        actor_sub_user_id: Optional[str],
        new_password: str,
        must_change_password: bool = True,
    ) -> Result[None]:
        sub_user = self._scoped(venue_id, sub_user_id)
        if not sub_user:
            return Result.not_found(NOT_FOUND)
        if sub_user.is_founder_admin and actor_sub_user_id != sub_user_id:
            return Result.forbidden("Only the founder admin can reset their own password")

        digest, algo = await asyncio.to_thread(hash_password, new_password)
        with self.store.transaction():
            updated = self.store.set_sub_user_password(
                sub_user_id,
                digest,
                algo,
                must_change_password=must_change_password,
                changed_at=self._now(),
                clear_lockout=True,
            )
            if updated is None:
                return Result.not_found(NOT_FOUND)
            ended = self.store.deactivate_sub_user_sessions(sub_user_id)
            self._audit(
                updated, ACTION_PASSWORD_RESET, actor_sub_user_id,
                must_change_password=must_change_password,
            )
        await self.tokens.blacklist.blacklist_sessions(ended)
        logger.info(
            "sub_user_password_reset",
            venue_id=venue_id,
            sub_user_id=sub_user_id,
            actor_sub_user_id=actor_sub_user_id,
        )
        return Result.success(None, message="Password reset successfully")
