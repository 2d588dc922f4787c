from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from venueauth.api.schemas import (
    ChangePasswordRequest,
    CustomerLoginRequest,
    DeactivateRequest,
    DeviceFields,
    Envelope,
    FirstAdminRequest,
    ForgotPasswordRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterCustomerRequest,
    RegisterVenueRequest,
    ResetPasswordRequest,
    SendVerificationCodeRequest,
    SubUserChangePasswordRequest,
    SubUserCreateRequest,
    SubUserLoginRequest,
    SubUserRefreshRequest,
    SubUserResetPasswordRequest,
    SubUserUpdateRequest,
    ValidateResetCodeRequest,
    ValidateTokenRequest,
    VenueLoginRequest,
    VerifyAccountRequest,
)
from venueauth.logging import bind_request_context, get_logger
from venueauth.service.auth import AuthContext
from venueauth.service.errors import AuthenticationError, ForbiddenError, RateLimitedError
from venueauth.service.permissions import VenuePermissions
from venueauth.service.results import Result
from venueauth.service.runtime import check_rate_limit, get_runtime
from venueauth.service.tokens import (
    TOKEN_TYPE_ACCESS,
    TOKEN_TYPE_GATEWAY,
    TOKEN_TYPE_OPERATIONAL,
    DeviceInfo,
    SessionSummary,
    TokenPair,
)
from venueauth.storage.models import VerificationChannel, VerificationPurpose

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RATE_LIMIT_WINDOW_SECONDS = 60


# -- helpers ------------------------------------------------------------------


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def _device(request: Request, body: Optional[DeviceFields] = None) -> DeviceInfo:
    return DeviceInfo(
        device_name=body.device_name if body else None,
        device_type=body.device_type if body else None,
        user_agent=(request.headers.get("User-Agent") or "")[:500] or None,
        ip_address=_client_ip(request),
    )


async def _enforce_rate_limit(key: str, limit: int) -> None:
    runtime = get_runtime()
    allowed, _remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, RATE_LIMIT_WINDOW_SECONDS, return_remaining=True
    )
    if not allowed:
        logger.info("rate_limit_exceeded", key=key.split(":", 1)[0])
        raise RateLimitedError(
            "Too many requests. Please try again later.",
            retry_after_seconds=reset_seconds or RATE_LIMIT_WINDOW_SECONDS,
        )


def _ok(data: Any = None, message: Optional[str] = None) -> Envelope:
    if message:
        if data is None:
            data = {"message": message}
        elif isinstance(data, dict):
            data = {"message": message, **data}
    return Envelope(status="ok", data=data)


def _envelope(result: Result[Any]) -> Envelope:
    """Unwrap a service result; failures raise the matching ``ServiceError``."""
    value = result.unwrap()
    if isinstance(value, TokenPair):
        value = value.to_dict()
    return _ok(value, result.message)


def _session_to_dict(summary: SessionSummary) -> Dict[str, Any]:
    return {
        "id": summary.id,
        "device_name": summary.device_name,
        "device_type": summary.device_type,
        "user_agent": summary.user_agent,
        "ip_address": summary.ip_address,
        "created_at": summary.created_at.isoformat(),
        "last_activity_at": (
            summary.last_activity_at.isoformat() if summary.last_activity_at else None
        ),
        "is_current": summary.is_current,
    }


# -- principals ------------------------------------------------------------------


async def _principal(authorization: Optional[str], token_type: str) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, token_types=(token_type,))
    if not ctx:
        raise AuthenticationError("invalid or expired token")
    bind_request_context(
        user_id=ctx.user_id,
        venue_id=ctx.venue_id,
        sub_user_id=ctx.sub_user_id,
    )
    return ctx


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await _principal(authorization, TOKEN_TYPE_ACCESS)


async def get_venue_gateway(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await _principal(authorization, TOKEN_TYPE_GATEWAY)


async def get_sub_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await _principal(authorization, TOKEN_TYPE_OPERATIONAL)


def require_permissions(required: VenuePermissions):
    """Dependency factory: an operational token holding every bit of ``required``."""

    async def dependency(principal: AuthContext = Depends(get_sub_user)) -> AuthContext:
        runtime = get_runtime()
        if not runtime.sub_users.check_permission(
            principal.permissions,
            required,
            sub_user_id=principal.sub_user_id,
            venue_id=principal.venue_id,
        ):
            raise ForbiddenError("You do not have permission to perform this action")
        return principal

    return dependency


# -- registration and login --------------------------------------------------


@router.post("/auth/venue/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register_venue(body: RegisterVenueRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"register:{_client_ip(request)}", runtime.settings.login_rate_limit_per_minute
    )
    result = await runtime.auth.register_venue(
        email=body.email,
        password=body.password,
        phone_number=body.phone_number,
        venue_name=body.venue_name,
        venue_type=body.venue_type,
    )
    return _envelope(result)


@router.post("/auth/customer/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register_customer(body: RegisterCustomerRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"register:{_client_ip(request)}", runtime.settings.login_rate_limit_per_minute
    )
    result = await runtime.auth.register_customer(
        email=body.email,
        password=body.password,
        phone_number=body.phone_number,
        full_name=body.full_name,
    )
    return _envelope(result)


@router.post("/auth/customer/login", response_model=Envelope, tags=["auth"])
async def customer_login(body: CustomerLoginRequest, request: Request):
    """Password login for customers; each login opens a new session."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"login:{body.email_or_phone}", runtime.settings.login_rate_limit_per_minute
    )
    result = await runtime.auth.customer_login(
        identifier=body.email_or_phone,
        password=body.password,
        device=_device(request, body),
    )
    return _envelope(result)


@router.post("/auth/venue/login", response_model=Envelope, tags=["auth"])
async def venue_login(body: VenueLoginRequest):
    """First step of venue login: returns a gateway token for sub-user login or setup."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"login:{body.email_or_phone}", runtime.settings.login_rate_limit_per_minute
    )
    result = await runtime.auth.venue_login(
        identifier=body.email_or_phone, password=body.password
    )
    return _envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"refresh:{_client_ip(request)}", runtime.settings.refresh_rate_limit_per_minute
    )
    result = await runtime.tokens.refresh_tokens(body.refresh_token, _device(request, body))
    return _envelope(result)


# -- sessions and account -----------------------------------------------------


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    result = await runtime.account.logout(
        user_id=principal.user_id, refresh_token=body.refresh_token
    )
    return _envelope(result)


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return _envelope(await runtime.account.logout_all(user_id=principal.user_id))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    principal: AuthContext = Depends(get_user),
    x_refresh_token: Optional[str] = Header(None, alias="X-Refresh-Token"),
):
    """Active sessions, most recently used first; ``is_current`` marks the caller's."""
    runtime = get_runtime()
    result = await runtime.account.get_active_sessions(
        user_id=principal.user_id, current_refresh_token=x_refresh_token
    )
    sessions = [_session_to_dict(s) for s in result.unwrap()]
    return _ok({"sessions": sessions, "total": len(sessions)})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    result = await runtime.account.revoke_session(
        user_id=principal.user_id, session_id=session_id
    )
    return _envelope(result)


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    result = await runtime.account.change_password(
        user_id=principal.user_id,
        current_password=body.current_password,
        new_password=body.new_password,
        logout_all_devices=body.logout_all_devices,
    )
    return _envelope(result)


@router.post("/auth/deactivate", response_model=Envelope, tags=["auth"])
async def deactivate_account(
    body: DeactivateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    result = await runtime.account.deactivate(
        user_id=principal.user_id, password=body.password
    )
    return _envelope(result)


# -- verification -------------------------------------------------------------


@router.post("/auth/verification/send", response_model=Envelope, tags=["verification"])
async def send_verification_code(body: SendVerificationCodeRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"verification:{body.user_id}", runtime.settings.verification_rate_limit_per_minute
    )
    result = await runtime.verification.send_code(
        user_id=body.user_id,
        method=VerificationChannel(body.method),
        purpose=VerificationPurpose(body.purpose),
    )
    return _envelope(result)


@router.post("/auth/verify", response_model=Envelope, tags=["verification"])
async def verify_account(body: VerifyAccountRequest, request: Request):
    """Consume a verification code; a newly verified active account is signed in."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"verify:{body.user_id}", runtime.settings.verification_rate_limit_per_minute
    )
    result = await runtime.account.verify_account(
        user_id=body.user_id,
        method=VerificationChannel(body.method),
        code=body.code,
        device=_device(request, body),
    )
    data = result.unwrap()
    if data.get("tokens") is not None:
        data["tokens"] = data["tokens"].to_dict()
    return _ok(data)


@router.post("/auth/token/validate", response_model=Envelope, tags=["auth"])
async def validate_token(body: ValidateTokenRequest):
    runtime = get_runtime()
    outcome = await runtime.account.validate_token(
        token=body.token, include_user_details=body.include_user_details
    )
    return _ok(outcome.to_dict())


# -- password reset -----------------------------------------------------------


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"forgot:{_client_ip(request)}", runtime.settings.verification_rate_limit_per_minute
    )
    result = await runtime.account.forgot_password(
        identifier=body.identifier, user_type=body.user_type
    )
    return _envelope(result)


@router.post("/auth/password/reset/validate", response_model=Envelope, tags=["auth"])
async def validate_reset_code(body: ValidateResetCodeRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"reset:{body.user_id}", runtime.settings.verification_rate_limit_per_minute
    )
    result = await runtime.account.validate_reset_code(
        user_id=body.user_id, method=VerificationChannel(body.method), code=body.code
    )
    return _envelope(result)


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"reset:{body.user_id}", runtime.settings.verification_rate_limit_per_minute
    )
    result = await runtime.account.reset_password(
        user_id=body.user_id,
        method=VerificationChannel(body.method),
        code=body.code,
        new_password=body.new_password,
    )
    return _envelope(result)


# -- venue sub-users: gateway and session ----------------------------------------


@router.post(
    "/venue/sub-users/first-admin", response_model=Envelope, status_code=201, tags=["sub-users"]
)
async def create_first_admin(
    body: FirstAdminRequest, principal: AuthContext = Depends(get_venue_gateway)
):
    runtime = get_runtime()
    result = await runtime.sub_users.create_first_admin(
        venue_id=principal.venue_id, username=body.username, password=body.password
    )
    return _envelope(result)


@router.post("/venue/sub-users/login", response_model=Envelope, tags=["sub-users"])
async def sub_user_login(
    body: SubUserLoginRequest,
    request: Request,
    principal: AuthContext = Depends(get_venue_gateway),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"sub-login:{principal.venue_id}:{body.username.casefold()}",
        runtime.settings.login_rate_limit_per_minute,
    )
    result = await runtime.sub_users.authenticate(
        venue_id=principal.venue_id,
        username=body.username,
        password=body.password,
        device=_device(request, body),
    )
    data = result.unwrap()
    data["tokens"] = data["tokens"].to_dict()
    return _ok(data)


@router.post("/venue/sub-users/refresh", response_model=Envelope, tags=["sub-users"])
async def sub_user_refresh(body: SubUserRefreshRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"refresh:{_client_ip(request)}", runtime.settings.refresh_rate_limit_per_minute
    )
    return _envelope(await runtime.sub_users.refresh(body.refresh_token))


@router.post("/venue/sub-users/logout", response_model=Envelope, tags=["sub-users"])
async def sub_user_logout(principal: AuthContext = Depends(get_sub_user)):
    runtime = get_runtime()
    result = await runtime.sub_users.logout(sub_user_id=principal.sub_user_id)
    count = result.unwrap()
    return _ok({"sessions_terminated": count}, result.message)


@router.post("/venue/sub-users/me/password", response_model=Envelope, tags=["sub-users"])
async def sub_user_change_password(
    body: SubUserChangePasswordRequest, principal: AuthContext = Depends(get_sub_user)
):
    runtime = get_runtime()
    result = await runtime.sub_users.change_own_password(
        sub_user_id=principal.sub_user_id,
        current_password=body.current_password,
        new_password=body.new_password,
    )
    return _envelope(result)


# -- venue sub-users: management -------------------------------------------------


@router.get("/venue/sub-users", response_model=Envelope, tags=["sub-users"])
async def list_sub_users(
    principal: AuthContext = Depends(require_permissions(VenuePermissions.VIEW_SUB_USERS)),
):
    runtime = get_runtime()
    items = runtime.sub_users.list_sub_users(principal.venue_id)
    return _ok({"items": items, "total": len(items)})


@router.get("/venue/sub-users/{sub_user_id}", response_model=Envelope, tags=["sub-users"])
async def get_sub_user_detail(
    sub_user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions(VenuePermissions.VIEW_SUB_USERS)),
):
    runtime = get_runtime()
    return _envelope(
        runtime.sub_users.get_sub_user(venue_id=principal.venue_id, sub_user_id=sub_user_id)
    )


@router.post("/venue/sub-users", response_model=Envelope, status_code=201, tags=["sub-users"])
async def create_sub_user(
    body: SubUserCreateRequest,
    principal: AuthContext = Depends(require_permissions(VenuePermissions.CREATE_SUB_USERS)),
):
    runtime = get_runtime()
    result = await runtime.sub_users.create_sub_user(
        venue_id=principal.venue_id,
        actor_sub_user_id=principal.sub_user_id,
        username=body.username,
        password=body.password,
        role=body.role,
        permissions=body.permissions,
    )
    return _envelope(result)


@router.patch("/venue/sub-users/{sub_user_id}", response_model=Envelope, tags=["sub-users"])
async def update_sub_user(
    body: SubUserUpdateRequest,
    sub_user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions(VenuePermissions.EDIT_SUB_USERS)),
):
    runtime = get_runtime()
    result = await runtime.sub_users.update_sub_user(
        venue_id=principal.venue_id,
        sub_user_id=sub_user_id,
        actor_sub_user_id=principal.sub_user_id,
        role=body.role,
        permissions=body.permissions,
        is_active=body.is_active,
    )
    return _envelope(result)


@router.delete("/venue/sub-users/{sub_user_id}", response_model=Envelope, tags=["sub-users"])
async def delete_sub_user(
    sub_user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions(VenuePermissions.DELETE_SUB_USERS)),
):
    runtime = get_runtime()
    result = await runtime.sub_users.delete_sub_user(
        venue_id=principal.venue_id,
        sub_user_id=sub_user_id,
        actor_sub_user_id=principal.sub_user_id,
    )
    return _envelope(result)


@router.post(
    "/venue/sub-users/{sub_user_id}/reset-password", response_model=Envelope, tags=["sub-users"]
)
async def reset_sub_user_password(
    body: SubUserResetPasswordRequest,
    sub_user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(
        require_permissions(VenuePermissions.RESET_SUB_USER_PASSWORDS)
    ),
):
    runtime = get_runtime()
    result = await runtime.sub_users.reset_password(
        venue_id=principal.venue_id,
        sub_user_id=sub_user_id,
        actor_sub_user_id=principal.sub_user_id,
        new_password=body.new_password,
        must_change_password=body.must_change_password,
    )
    return _envelope(result)
