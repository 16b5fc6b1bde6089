from __future__ import annotations

from dataclasses import replace
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, Path, Request

from portalauth.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
    VerifyResponse,
)
from portalauth.logging import get_correlation_id
from portalauth.service.auth import REGISTRATION_DEVICE, AuthContext, AuthResult
from portalauth.service.runtime import Runtime
from portalauth.storage.models import Account, DeviceInfo, Session

router = APIRouter(prefix="/auth", tags=["auth"])

# Checked in order; "Mobile" wins over the browser brand a mobile UA also carries
_DEVICE_LABELS = (
    ("Mobile", "Mobile Device"),
    ("Tablet", "Tablet"),
    ("Chrome", "Chrome Browser"),
    ("Firefox", "Firefox Browser"),
    ("Safari", "Safari Browser"),
    ("Edge", "Edge Browser"),
)


def describe_device(user_agent: Optional[str]) -> str:
    """Derive a coarse, human-readable device label from a User-Agent header."""
    if not user_agent:
        return "Unknown Device"
    for marker, label in _DEVICE_LABELS:
        if marker in user_agent:
            return label
    return "Desktop Browser"


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _device_from_request(request: Request) -> DeviceInfo:
    user_agent = request.headers.get("user-agent")
    return DeviceInfo(
        device_info=describe_device(user_agent),
        ip_address=request.client.host if request.client else "Unknown IP",
        user_agent=user_agent or "Unknown User Agent",
    )


def _envelope(data) -> Envelope:
    return Envelope(data=data, request_id=get_correlation_id() or str(uuid4()))


def _user_response(account: Account, session_id: Optional[str] = None) -> UserResponse:
    return UserResponse(
        id=account.id,
        email=account.email,
        role=account.role,
        first_name=account.first_name,
        last_name=account.last_name,
        session_id=session_id,
        current_session_id=account.current_session_id,
        last_login_at=account.last_login_at,
    )


def _context_response(ctx: AuthContext) -> UserResponse:
    return UserResponse(**ctx.to_public())


def _session_response(session: Session) -> SessionResponse:
    return SessionResponse(**session.to_public())


def _auth_response(result: AuthResult, message: str) -> AuthResponse:
    return AuthResponse(
        user=_user_response(result.account, result.session.session_id),
        tokens=TokenResponse(
            access_token=result.tokens.access.token,
            refresh_token=result.tokens.refresh.token,
            expires_at=result.tokens.access.expires_at,
            session_id=result.session.session_id,
        ),
        message=message,
        session_info=_session_response(result.session),
    )


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Bearer-token dependency; raises the typed 401 errors from AuthService."""
    runtime = get_runtime(request)
    return await runtime.auth.authenticate(authorization)


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request):
    """Create an account and open its first session.

    Raises:
        409: If an account with this email already exists
    """
    runtime = get_runtime(request)
    device = _device_from_request(request)
    result = await runtime.auth.register(
        body.email,
        body.password,
        {"first_name": body.first_name, "last_name": body.last_name},
        replace(device, device_info=REGISTRATION_DEVICE.device_info),
    )
    return _envelope(_auth_response(result, "User registered successfully"))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Any session the account already has is terminated first.

    Raises:
        401: If credentials are invalid
    """
    runtime = get_runtime(request)
    result = await runtime.auth.login(
        body.email, body.password, _device_from_request(request)
    )
    return _envelope(_auth_response(result, "Login successful"))


@router.post("/refresh", response_model=Envelope)
async def refresh(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime(request)
    pair = await runtime.auth.refresh(body.refresh_token)
    return _envelope(
        TokenResponse(
            access_token=pair.access.token,
            refresh_token=pair.refresh.token,
            expires_at=pair.access.expires_at,
            session_id=pair.access.payload.session_id,
        )
    )


@router.get("/profile", response_model=Envelope)
async def profile(ctx: AuthContext = Depends(get_current_user)):
    return _envelope(_context_response(ctx))


@router.post("/verify", response_model=Envelope)
async def verify(ctx: AuthContext = Depends(get_current_user)):
    return _envelope(VerifyResponse(valid=True, user=_context_response(ctx)))


@router.post("/logout", response_model=Envelope)
async def logout(request: Request, ctx: AuthContext = Depends(get_current_user)):
    runtime = get_runtime(request)
    await runtime.auth.logout(
        ctx.user_id,
        ctx.session_id,
        ctx.token_id,
        token_expires_at=ctx.token_expires_at,
    )
    return _envelope(MessageResponse(message="Logout successful"))


@router.post("/logout-all", response_model=Envelope)
async def logout_all(request: Request, ctx: AuthContext = Depends(get_current_user)):
    runtime = get_runtime(request)
    count = await runtime.auth.logout_all(ctx.user_id)
    return _envelope(
        MessageResponse(message="All sessions terminated successfully", count=count)
    )


@router.get("/sessions", response_model=Envelope)
async def list_sessions(request: Request, ctx: AuthContext = Depends(get_current_user)):
    runtime = get_runtime(request)
    sessions = await runtime.auth.list_sessions(ctx.user_id)
    return _envelope(
        SessionListResponse(sessions=[_session_response(s) for s in sessions])
    )


@router.delete("/sessions/{session_id}", response_model=Envelope)
async def terminate_session(
    request: Request,
    session_id: str = Path(..., min_length=1, max_length=128),
    ctx: AuthContext = Depends(get_current_user),
):
    """Terminate one of the caller's own sessions.

    Raises:
        401: If the session is not an active session of the caller
    """
    runtime = get_runtime(request)
    await runtime.auth.terminate_owned(ctx.user_id, session_id)
    return _envelope(MessageResponse(message="Session terminated successfully"))
