from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from staffauth.api.schemas import (
    BackupCodesRequest,
    BackupCodesResponse,
    Envelope,
    IdentityResponse,
    LoginHistoryList,
    LoginHistoryResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    Pagination,
    PasswordChangeRequest,
    RefreshResponse,
    SecurityEventList,
    SecurityEventResponse,
    SessionList,
    SessionResponse,
    TokenRefreshRequest,
    TwoFactorDisableRequest,
    TwoFactorEnableRequest,
    TwoFactorSetupResponse,
    UnlockRequest,
)
from staffauth.logging import get_logger
from staffauth.service.audit import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from staffauth.service.auth import IdentitySummary
from staffauth.service.runtime import get_runtime
from staffauth.service.tokens import AccessClaims
from staffauth.storage.models import (
    LoginHistoryRecord,
    Origin,
    Page,
    RefreshTokenRecord,
    SecurityEvent,
    SecurityEventKind,
    Severity,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


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


def _origin_from_request(request: Request) -> Origin:
    """Client address: first X-Forwarded-For hop, then X-Real-IP, then the peer."""
    ip_address: Optional[str] = None
    if get_runtime().settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ip_address = forwarded.split(",")[0].strip() or None
        if not ip_address:
            ip_address = (request.headers.get("x-real-ip") or "").strip() or None
    if not ip_address and request.client:
        ip_address = request.client.host
    return Origin(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_claims(authorization: Optional[str] = Header(None)) -> AccessClaims:
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return await get_runtime().auth.authenticate(token)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _identity_response(summary: IdentitySummary) -> IdentityResponse:
    return IdentityResponse(
        id=summary.id,
        tenant_id=summary.tenant_id,
        email=summary.email,
        role=summary.role.value,
        name=summary.name,
        two_factor_enabled=summary.two_factor_enabled,
        last_login_at=summary.last_login_at,
    )


def _event_response(event: SecurityEvent) -> SecurityEventResponse:
    return SecurityEventResponse(
        id=event.id,
        tenant_id=event.tenant_id,
        identity_id=event.identity_id,
        kind=event.kind.value,
        severity=event.severity.value,
        description=event.description,
        metadata=event.metadata,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        created_at=event.created_at,
    )


def _history_response(record: LoginHistoryRecord) -> LoginHistoryResponse:
    return LoginHistoryResponse(
        id=record.id,
        identity_id=record.identity_id,
        email=record.email,
        success=record.success,
        fail_reason=record.fail_reason,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        created_at=record.created_at,
    )


def _session_response(record: RefreshTokenRecord) -> SessionResponse:
    return SessionResponse(
        id=record.id,
        identity_id=record.identity_id,
        created_at=record.created_at,
        expires_at=record.expires_at,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
    )


def _pagination(page: Page) -> Pagination:
    return Pagination(**page.pagination())


# auth
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password, plus a second factor when enrolled.

    Raises:
        401: invalid credentials, or a second factor is required
        403: identity or tenant inactive
        423: identity locked after repeated failures
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        _origin_from_request(request),
        totp_code=body.totp_code,
        backup_code=body.backup_code,
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            identity=_identity_response(result.identity),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
            suspicious=result.suspicious,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token, _origin_from_request(request))
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    claims: AccessClaims = Depends(get_claims),
):
    runtime = get_runtime()
    await runtime.auth.logout(
        claims,
        body.refresh_token if body else None,
        _origin_from_request(request),
    )
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(claims: AccessClaims = Depends(get_claims)):
    summary = get_runtime().auth.identity_summary(claims.identity_id)
    return Envelope(status="ok", data=_identity_response(summary))


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    claims: AccessClaims = Depends(get_claims),
):
    """Change the caller's password.

    Every refresh token is revoked and the presented access token is
    denylisted, so the client must log in again.
    """
    runtime = get_runtime()
    await runtime.auth.change_password(
        claims.identity_id,
        body.current_password,
        body.new_password,
        _origin_from_request(request),
        claims=claims,
    )
    return Envelope(status="ok", data={"status": "changed"})


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
async def two_factor_setup(claims: AccessClaims = Depends(get_claims)):
    setup = get_runtime().auth.begin_two_factor_setup(claims.identity_id)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(secret=setup.secret, otpauth_uri=setup.otpauth_uri),
    )


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def two_factor_enable(
    body: TwoFactorEnableRequest,
    request: Request,
    claims: AccessClaims = Depends(get_claims),
):
    codes = get_runtime().auth.enable_two_factor(
        claims.identity_id, body.code, _origin_from_request(request)
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def two_factor_disable(
    body: TwoFactorDisableRequest,
    request: Request,
    claims: AccessClaims = Depends(get_claims),
):
    await get_runtime().auth.disable_two_factor(
        claims.identity_id, body.password, body.code, _origin_from_request(request)
    )
    return Envelope(status="ok", data={"two_factor_enabled": False})


@router.post("/auth/2fa/backup-codes", response_model=Envelope, tags=["auth"])
async def two_factor_backup_codes(
    body: BackupCodesRequest,
    request: Request,
    claims: AccessClaims = Depends(get_claims),
):
    codes = await get_runtime().auth.regenerate_backup_codes(
        claims.identity_id, body.password, _origin_from_request(request)
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


# security administration
@router.get("/security/events", response_model=Envelope, tags=["security"])
async def list_security_events(
    identity_id: Optional[str] = Query(None, max_length=128),
    kind: Optional[SecurityEventKind] = Query(None),
    severity: Optional[Severity] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    claims: AccessClaims = Depends(get_claims),
):
    result = get_runtime().auth.list_security_events(
        claims,
        identity_id=identity_id,
        kind=kind,
        severity=severity,
        since=_as_utc(since),
        until=_as_utc(until),
        page=page,
        limit=limit,
    )
    return Envelope(
        status="ok",
        data=SecurityEventList(
            items=[_event_response(e) for e in result.items],
            pagination=_pagination(result),
        ),
    )


@router.get("/security/login-history", response_model=Envelope, tags=["security"])
async def list_login_history(
    identity_id: Optional[str] = Query(None, max_length=128),
    success: Optional[bool] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    claims: AccessClaims = Depends(get_claims),
):
    result = get_runtime().auth.list_login_history(
        claims,
        identity_id=identity_id,
        success=success,
        since=_as_utc(since),
        until=_as_utc(until),
        page=page,
        limit=limit,
    )
    return Envelope(
        status="ok",
        data=LoginHistoryList(
            items=[_history_response(r) for r in result.items],
            pagination=_pagination(result),
        ),
    )


@router.get("/security/sessions", response_model=Envelope, tags=["security"])
async def list_sessions(
    identity_id: Optional[str] = Query(None, max_length=128),
    claims: AccessClaims = Depends(get_claims),
):
    sessions = get_runtime().auth.list_active_sessions(claims, identity_id=identity_id)
    return Envelope(
        status="ok", data=SessionList(items=[_session_response(s) for s in sessions])
    )


@router.delete("/security/sessions/{session_id}", response_model=Envelope, tags=["security"])
async def terminate_session(
    request: Request,
    session_id: str = Path(..., max_length=128),
    claims: AccessClaims = Depends(get_claims),
):
    await get_runtime().auth.terminate_session(
        claims, session_id, _origin_from_request(request)
    )
    return Envelope(status="ok", data={"session_id": session_id, "terminated": True})


@router.post("/security/unlock", response_model=Envelope, tags=["security"])
async def unlock_account(
    body: UnlockRequest,
    request: Request,
    claims: AccessClaims = Depends(get_claims),
):
    await get_runtime().auth.unlock_account(
        claims, body.identity_id, _origin_from_request(request)
    )
    return Envelope(status="ok", data={"identity_id": body.identity_id, "unlocked": True})


@router.get("/security/report", response_model=Envelope, tags=["security"])
async def security_report(
    days: int = Query(30, ge=1, le=365),
    claims: AccessClaims = Depends(get_claims),
):
    report = get_runtime().auth.security_report(claims, days=days)
    return Envelope(status="ok", data=report)
