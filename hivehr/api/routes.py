from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from hivehr.api.schemas import (
    AccountResponse,
    CreateUserRequest,
    DomainForgotPasswordRequest,
    EmployeeResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RegisterRequest,
    RegistrationResponse,
    ResetPasswordRequest,
    SessionInfoResponse,
    TenantResponse,
    UpdateEmployeeRequest,
    UpdateRoleRequest,
    UserListResponse,
    UserResponse,
)
from hivehr.logging import bind_tenant, get_logger
from hivehr.service.auth import AuthContext
from hivehr.service.runtime import get_runtime
from hivehr.service.session import SESSION_COOKIE_NAME

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _request_host(request: Request) -> Optional[str]:
    return request.headers.get("host")


def _timestamp(epoch: Optional[int]) -> Optional[datetime]:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


async def get_session_context(request: Request) -> AuthContext:
    """Resolve the caller from the session cookie bound to the request host."""
    runtime = get_runtime()
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    ctx = await runtime.auth.authenticate(token, _request_host(request))
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    bind_tenant(ctx.tenant_id, ctx.user_id)
    return ctx


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Sign in on the tenant named by the request host.

    Raises:
        400: The request host is not a tenant subdomain
        401: Credentials rejected
        404: No active tenant for the subdomain
    """
    runtime = get_runtime()
    host = _request_host(request)
    result = await runtime.auth.login_for_host(host, body.login_identifier, body.password)
    runtime.codec.apply_cookie(response, result.session.token, host)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=UserResponse.from_user(result.user),
            tenant_domain=result.session.record.tenant_domain,
            session_expires_at=_timestamp(result.session.record.expires_at),
        ),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    result = await runtime.registration.register(
        company_name=body.company_name,
        company_domain=body.company_domain,
        admin_name=body.admin_name,
        admin_email=body.admin_email,
        admin_password=body.admin_password,
        admin_username=body.admin_username,
    )
    return Envelope(
        status="ok",
        data=RegistrationResponse(
            tenant=TenantResponse.from_tenant(result.tenant),
            admin_user=UserResponse.from_user(result.admin_user),
            login_url=result.login_url,
        ),
    )


@router.post("/auth/logout", tags=["auth"])
async def logout(request: Request):
    """Clear the session cookie and send the browser to its tenant's login page."""
    runtime = get_runtime()
    token = request.cookies.get(SESSION_COOKIE_NAME)
    redirect = RedirectResponse(runtime.auth.logout_redirect(token), status_code=303)
    runtime.codec.clear_cookie(redirect, _request_host(request))
    return redirect


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def session_info(ctx: AuthContext = Depends(get_session_context)):
    return Envelope(
        status="ok",
        data=SessionInfoResponse(
            user_id=ctx.user_id,
            role=ctx.role,
            tenant_id=ctx.tenant_id,
            tenant_domain=ctx.tenant_domain,
            username=ctx.username,
            expires_at=_timestamp(ctx.expires_at),
        ),
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.recovery.request_reset_for_host(_request_host(request), body.email)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.post("/auth/forgot-password/domain", response_model=Envelope, tags=["auth"])
async def forgot_password_for_domain(body: DomainForgotPasswordRequest):
    """Root-domain variant: the company domain comes from the body."""
    runtime = get_runtime()
    result = await runtime.recovery.request_reset(body.email, body.company_domain)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    await runtime.recovery.complete_reset_for_host(
        _request_host(request), body.token, body.new_password
    )
    return Envelope(status="ok", data=MessageResponse(message="Password has been reset."))


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(ctx: AuthContext = Depends(get_session_context)):
    view = get_runtime().accounts.me(ctx)
    return Envelope(
        status="ok",
        data=AccountResponse(
            user=UserResponse.from_user(view.user),
            employee=EmployeeResponse.from_profile(view.employee) if view.employee else None,
        ),
    )


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(get_session_context),
):
    users = get_runtime().accounts.list_users(ctx, limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[UserResponse.from_user(u) for u in users])
    )


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(body: CreateUserRequest, ctx: AuthContext = Depends(get_session_context)):
    view = await get_runtime().accounts.create_account(
        ctx,
        name=body.name,
        email=body.email,
        role=body.role,
        username=body.username,
        position=body.position,
        department=body.department,
        phone=body.phone,
        manager_id=body.manager_id,
    )
    return Envelope(
        status="ok",
        data=AccountResponse(
            user=UserResponse.from_user(view.user),
            employee=EmployeeResponse.from_profile(view.employee) if view.employee else None,
        ),
    )


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    user_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_session_context),
):
    get_runtime().accounts.delete_account(ctx, user_id)
    return Envelope(status="ok", data={"deleted": True, "user_id": user_id})


@router.put("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def update_user_role(
    body: UpdateRoleRequest,
    user_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_session_context),
):
    user = get_runtime().accounts.change_role(ctx, user_id, body.role)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/employees/{employee_id}", response_model=Envelope, tags=["employees"])
async def get_employee(
    employee_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_session_context),
):
    profile = get_runtime().accounts.get_profile(ctx, employee_id)
    return Envelope(status="ok", data=EmployeeResponse.from_profile(profile))


@router.patch("/employees/{employee_id}", response_model=Envelope, tags=["employees"])
async def update_employee(
    body: UpdateEmployeeRequest,
    employee_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_session_context),
):
    profile = get_runtime().accounts.update_profile(ctx, employee_id, body.changed_fields())
    return Envelope(status="ok", data=EmployeeResponse.from_profile(profile))
