from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, Response

from hrauth.api.schemas import (
    ChallengeResponse,
    DeliveryAttemptResponse,
    Disable2faRequest,
    Enable2faConfirmRequest,
    Enable2faSendRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    OtpResendRequest,
    OtpVerifyRequest,
    PasswordForgotRequest,
    PasswordResetRequest,
    PasswordResetValidateRequest,
    ProfileResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    TwoFactorStatusResponse,
)
from hrauth.logging import get_logger
from hrauth.service.delivery import DeliveryAttempt
from hrauth.service.runtime import check_rate_limit, get_runtime
from hrauth.service.tokens import TokenClaims, TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RATE_LIMIT_WINDOW_SECONDS = 60


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one token from the bucket for ``key``.

    Raises:
        HTTPException with 429 and ``Retry-After`` when the bucket is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={"Retry-After": str(max(1, reset_seconds))},
        )
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _tokens_payload(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_at=tokens.expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _attempts_payload(attempts: List[DeliveryAttempt]) -> List[DeliveryAttemptResponse]:
    return [
        DeliveryAttemptResponse(
            channel=a.channel, kind=a.kind, delivered=a.delivered, error=a.error
        )
        for a in attempts
    ]


async def get_current_claims(authorization: Optional[str] = Header(None)) -> TokenClaims:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email or phone plus password.

    Accounts without 2FA get a token pair straight away. Accounts with 2FA get
    a challenge id instead; the code goes out over the account's 2FA method.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this client or identifier
    """
    runtime = get_runtime()
    limit = runtime.settings.login_rate_limit_per_minute
    await _enforce_rate_limit(runtime, f"login:ip:{_client_ip(request)}", limit)
    await _enforce_rate_limit(
        runtime, f"login:id:{body.identifier.lower()}", limit, response=response
    )
    result = await runtime.auth.login(body.identifier, body.password)
    return Envelope(
        status="ok",
        data=LoginResponse(
            requires_2fa=result.requires_2fa,
            challenge_id=result.challenge_id,
            channel=result.channel,
            tokens=_tokens_payload(result.tokens) if result.tokens else None,
        ),
    )


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_login_otp(body: OtpVerifyRequest, request: Request):
    runtime = get_runtime()
    limit = runtime.settings.otp_rate_limit_per_minute
    await _enforce_rate_limit(runtime, f"otp:verify:ip:{_client_ip(request)}", limit)
    tokens = await runtime.auth.verify_login_otp(body.challenge_id, body.code)
    return Envelope(status="ok", data=_tokens_payload(tokens))


@router.post("/auth/2fa/resend", response_model=Envelope, tags=["auth"])
async def resend_otp(body: OtpResendRequest, request: Request):
    runtime = get_runtime()
    limit = runtime.settings.otp_rate_limit_per_minute
    await _enforce_rate_limit(runtime, f"otp:resend:ip:{_client_ip(request)}", limit)
    await _enforce_rate_limit(runtime, f"otp:resend:challenge:{body.challenge_id}", limit)
    challenge_id = await runtime.auth.resend_otp(body.challenge_id)
    return Envelope(status="ok", data=ChallengeResponse(challenge_id=challenge_id))


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: PasswordForgotRequest, request: Request, background_tasks: BackgroundTasks
):
    """Email a reset link. The response is identical whether or not the account exists.

    The lookup and delivery run after the response is sent so its timing does
    not depend on the account.
    """
    runtime = get_runtime()
    limit = runtime.settings.reset_rate_limit_per_minute
    await _enforce_rate_limit(runtime, f"reset:ip:{_client_ip(request)}", limit)
    await _enforce_rate_limit(runtime, f"reset:email:{body.email}", limit)
    background_tasks.add_task(runtime.auth.request_password_reset, body.email)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/validate", response_model=Envelope, tags=["auth"])
async def validate_password_reset_token(body: PasswordResetValidateRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:validate:ip:{_client_ip(request)}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    runtime.auth.validate_password_reset_token(body.challenge_id, body.code)
    return Envelope(status="ok", data={"status": "valid"})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:ip:{_client_ip(request)}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    attempts = await runtime.auth.reset_password(
        body.challenge_id, body.code, body.new_password
    )
    return Envelope(
        status="ok",
        data={"status": "reset", "notifications": _attempts_payload(attempts)},
    )


@router.post("/auth/2fa/send", response_model=Envelope, tags=["auth"])
async def send_enable_2fa(
    body: Enable2faSendRequest, claims: TokenClaims = Depends(get_current_claims)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:enable:{claims.account_id}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    challenge_id = await runtime.auth.send_enable_2fa(claims.account_id, body.channel)
    return Envelope(
        status="ok", data=ChallengeResponse(challenge_id=challenge_id, channel=body.channel)
    )


@router.post("/auth/2fa/confirm", response_model=Envelope, tags=["auth"])
async def confirm_enable_2fa(
    body: Enable2faConfirmRequest, claims: TokenClaims = Depends(get_current_claims)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:confirm:{claims.account_id}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    result = await runtime.auth.confirm_enable_2fa(
        claims.account_id, body.challenge_id, body.code
    )
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            two_factor_enabled=result.two_factor_enabled,
            two_factor_method=result.two_factor_method,
            tokens=_tokens_payload(result.tokens) if result.tokens else None,
        ),
    )


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def disable_2fa(
    body: Disable2faRequest, claims: TokenClaims = Depends(get_current_claims)
):
    """Turn 2FA off. Requires the current password; other sessions are signed out."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:disable:{claims.account_id}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    result = await runtime.auth.disable_2fa(claims.account_id, body.password)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            two_factor_enabled=False,
            two_factor_method=None,
            tokens=_tokens_payload(result.tokens) if result.tokens else None,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_tokens_payload(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(claims: TokenClaims = Depends(get_current_claims)):
    """Sign out everywhere by invalidating every token issued so far."""
    runtime = get_runtime()
    await runtime.auth.logout(claims.account_id)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout/token", response_model=Envelope, tags=["auth"])
async def revoke_current_access_token(claims: TokenClaims = Depends(get_current_claims)):
    runtime = get_runtime()
    await runtime.auth.revoke_access_token(claims.account_id, claims.jti, claims.expires_at)
    return Envelope(status="ok", data={"message": "token revoked"})


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def get_profile(claims: TokenClaims = Depends(get_current_claims)):
    runtime = get_runtime()
    account = runtime.auth.get_profile(claims.account_id)
    return Envelope(
        status="ok",
        data=ProfileResponse(
            id=account.id,
            email=account.email,
            phone=account.phone,
            role=account.role,
            two_factor_enabled=account.two_factor_enabled,
            two_factor_method=account.two_factor_method,
            last_login_at=account.last_login_at,
        ),
    )
