from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from authgate.api.schemas import (
    AccountResponse,
    BackupCodesResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MfaCodeRequest,
    MfaLoginRequest,
    MfaSetupResponse,
    MfaStatusResponse,
    PublicKeyResponse,
    RegisterRequest,
    RevokeAllResponse,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenResponse,
)
from authgate.logging import get_correlation_id, get_logger
from authgate.service.auth import ADMIN_ROLE, ClientInfo, LoginResult, Principal
from authgate.service.rate_limit import resolve_client_address
from authgate.service.runtime import get_runtime
from authgate.storage.models import Account

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


def _ok(data: Any) -> Envelope:
    return Envelope(status="ok", data=data, request_id=get_correlation_id() or str(uuid4()))


def _client_info(request: Request) -> ClientInfo:
    peer = request.client.host if request.client else None
    return ClientInfo(
        ip_address=resolve_client_address(request.headers, peer),
        user_agent=request.headers.get("user-agent"),
    )


def _account_to_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        roles=list(account.roles),
        mfa_enabled=account.mfa_enabled,
        created_at=account.created_at,
    )


def _login_to_response(result: LoginResult) -> LoginResponse:
    if result.mfa_required:
        return LoginResponse(mfa_required=True, mfa_token=result.mfa_token)
    tokens = result.tokens
    if tokens is None:
        raise _http_error("server_error", "login did not produce tokens", status_code=500)
    return LoginResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        session_id=result.session_id,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


async def get_admin_principal(
    principal: Principal = Depends(get_principal),
) -> Principal:
    if not principal.has_role(ADMIN_ROLE):
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


# authentication
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account with the default ``USER`` role.

    Raises:
        409: If the email is already registered
    """
    runtime = get_runtime()
    account = await runtime.auth.register(body.email, body.password, _client_info(request))
    return _ok(_account_to_response(account))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Password step of login.

    Returns a token pair, or ``mfa_required`` with a one-time ``mfa_token``
    to submit to ``/auth/login/mfa`` when the account has MFA enabled.

    Raises:
        401: If credentials are invalid
        403: If the account is locked
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, _client_info(request))
    return _ok(_login_to_response(result))


@router.post("/auth/login/mfa", response_model=Envelope, tags=["auth"])
async def login_mfa(body: MfaLoginRequest, request: Request):
    """Second factor step: TOTP code or backup code against the login challenge."""
    runtime = get_runtime()
    result = await runtime.auth.verify_mfa(body.mfa_token, body.code, _client_info(request))
    return _ok(_login_to_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token, _client_info(request))
    return _ok(
        TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        )
    )


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(body: LogoutRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token, _client_info(request))
    return Response(status_code=204)


@router.post("/auth/logout/all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    counts = await runtime.auth.revoke_all_user_tokens(
        principal.account_id, _client_info(request)
    )
    return _ok(RevokeAllResponse(**counts))


@router.get("/auth/keys", response_model=Envelope, tags=["auth"])
async def public_keys():
    """Public signing key as PEM and JWKS for offline token verification."""
    runtime = get_runtime()
    return _ok(
        PublicKeyResponse(
            kid=runtime.keys.key_id,
            public_key_pem=runtime.keys.public_key_pem(),
            keys=[runtime.keys.jwk()],
        )
    )


# mfa enrollment
@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: Principal = Depends(get_principal)):
    """Start enrollment; MFA stays disabled until ``/auth/mfa/enable`` succeeds.

    Raises:
        409: If MFA is already enabled
    """
    runtime = get_runtime()
    setup = runtime.auth.mfa_setup(principal)
    return _ok(MfaSetupResponse(secret=setup.secret, provisioning_uri=setup.provisioning_uri))


@router.post("/auth/mfa/enable", response_model=Envelope, tags=["mfa"])
async def mfa_enable(
    body: MfaCodeRequest, request: Request, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    codes = runtime.auth.mfa_enable(principal, body.code, _client_info(request))
    return _ok(BackupCodesResponse(backup_codes=codes))


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(
    body: MfaCodeRequest, request: Request, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    runtime.auth.mfa_disable(principal, body.code, _client_info(request))
    return _ok(MfaStatusResponse(mfa_enabled=False, backup_codes_remaining=0))


@router.post("/auth/mfa/backup-codes/regenerate", response_model=Envelope, tags=["mfa"])
async def mfa_regenerate_backup_codes(
    body: MfaCodeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    codes = runtime.auth.mfa_regenerate_backup_codes(principal, body.code)
    return _ok(BackupCodesResponse(backup_codes=codes))


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    return _ok(MfaStatusResponse(**runtime.auth.mfa_status(principal)))


# sessions
@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    records = await runtime.auth.list_sessions(principal)
    return _ok(
        SessionListResponse(
            items=[
                SessionResponse(
                    id=record.id,
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                    created_at=record.created_at,
                )
                for record in records
            ]
        )
    )


@router.delete("/auth/sessions/{session_id}", status_code=204, tags=["sessions"])
async def revoke_session(
    request: Request,
    session_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal, session_id, _client_info(request))
    return Response(status_code=204)


# administration
@router.post("/admin/accounts/{account_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock_account(
    request: Request,
    account_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_principal),
):
    """Clear the lock flag and failure counter of an account.

    Raises:
        403: If the caller lacks the ``ADMIN`` role
        404: If the account does not exist
    """
    runtime = get_runtime()
    account = runtime.auth.unlock_account(principal, account_id, _client_info(request))
    logger.info("admin_account_unlocked", account_id=account_id, admin_id=principal.account_id)
    return _ok(_account_to_response(account))
