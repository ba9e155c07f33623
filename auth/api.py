"""HTTP routes for authentication.

Thin transport over AuthService: collects the caller's SessionContext from
the connection and cookies, runs the operation in the threadpool (hashing
is CPU-bound), then maps the AuthResult onto status, body, rate-limit
headers and cookies.

AuthService.federated_sign_in has no route here: the OAuth provider callback
that completes the provider handshake calls it directly.
"""

import ipaddress
import json
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from api.base import error_response, result_response
from auth.config import AuthConfig
from auth.service import AuthService
from auth.types import AuthResult, AvatarUpload, ErrorKind, SessionContext
from utils.timezone import seconds_until

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
RESET_TOKEN_COOKIE = "hashedResetPasswordToken"
RESET_EXPIRY_COOKIE = "resetPasswordExpiry"

MAX_AVATAR_BYTES = 5 * 1024 * 1024


def _valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def _get_client_ip(request: Request, trust_forwarded: bool) -> str:
    """Client address used as the rate-limit key. Proxy headers only when trusted."""
    if trust_forwarded:
        forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
        candidate = forwarded or request.headers.get("X-Real-IP", "").strip()
        if candidate and _valid_ip(candidate):
            return candidate

    if request.client and _valid_ip(request.client.host):
        return request.client.host
    return "unknown"


async def _json_payload(request: Request) -> Any:
    """Parsed JSON body; None for an empty or malformed body (validation reports it)."""
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def create_auth_router(auth_service: AuthService, config: AuthConfig) -> APIRouter:
    """Create auth router with injected service."""
    router = APIRouter(prefix="/auth", tags=["auth"])

    def context(request: Request) -> SessionContext:
        return SessionContext(
            client_address=_get_client_ip(request, config.trust_forwarded_headers),
            user_agent=request.headers.get("User-Agent"),
            access_token=request.cookies.get(ACCESS_COOKIE),
            refresh_token=request.cookies.get(REFRESH_COOKIE),
            reset_token=request.cookies.get(RESET_TOKEN_COOKIE),
        )

    def cookie_options() -> dict:
        return {"httponly": True, "secure": config.cookie_secure, "samesite": "lax", "path": "/"}

    def respond(request: Request, result: AuthResult) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        response = JSONResponse(
            status_code=result.status_code,
            content=result_response(result, request_id).body(),
        )

        if result.rate_limit is not None:
            response.headers["X-RateLimit-Limit"] = str(result.rate_limit.limit)
            response.headers["X-RateLimit-Remaining"] = str(result.rate_limit.remaining)
            response.headers["X-RateLimit-Reset"] = str(int(result.rate_limit.reset_at.timestamp()))
        if not result.success and result.retry_after_seconds:
            response.headers["Retry-After"] = str(result.retry_after_seconds)

        options = cookie_options()
        if result.tokens is not None:
            response.set_cookie(
                ACCESS_COOKIE,
                result.tokens.access_token,
                max_age=seconds_until(result.tokens.access_expires_at),
                **options,
            )
            response.set_cookie(
                REFRESH_COOKIE,
                result.tokens.refresh_token,
                max_age=seconds_until(result.tokens.refresh_expires_at),
                **options,
            )
        elif result.clear_tokens:
            response.delete_cookie(ACCESS_COOKIE, **options)
            response.delete_cookie(REFRESH_COOKIE, **options)

        if result.reset_session is not None:
            max_age = seconds_until(result.reset_session.expires_at)
            response.set_cookie(RESET_TOKEN_COOKIE, result.reset_session.token, max_age=max_age, **options)
            response.set_cookie(
                RESET_EXPIRY_COOKIE, result.reset_session.expires_at.isoformat(), max_age=max_age, **options
            )
        elif result.clear_reset_session:
            response.delete_cookie(RESET_TOKEN_COOKIE, **options)
            response.delete_cookie(RESET_EXPIRY_COOKIE, **options)

        return response

    @router.post("/signup")
    async def signup(request: Request):
        payload = await _json_payload(request)
        result = await run_in_threadpool(auth_service.register, context(request), payload)
        return respond(request, result)

    @router.post("/signin")
    async def signin(request: Request):
        """Check the password and send an email-verification OTP."""
        payload = await _json_payload(request)
        result = await run_in_threadpool(auth_service.sign_in, context(request), payload)
        return respond(request, result)

    @router.post("/request-otp")
    async def request_otp(request: Request):
        payload = await _json_payload(request)
        result = await run_in_threadpool(auth_service.request_otp, context(request), payload)
        return respond(request, result)

    @router.post("/verify-otp")
    async def verify_otp(request: Request):
        """Sets token cookies (email-verification) or reset cookies (password-reset)."""
        payload = await _json_payload(request)
        result = await run_in_threadpool(auth_service.verify_otp, context(request), payload)
        return respond(request, result)

    @router.post("/reset-password")
    async def reset_password(request: Request):
        payload = await _json_payload(request)
        result = await run_in_threadpool(auth_service.reset_password, context(request), payload)
        return respond(request, result)

    @router.post("/change-password")
    async def change_password(request: Request):
        payload = await _json_payload(request)
        result = await run_in_threadpool(auth_service.change_password, context(request), payload)
        return respond(request, result)

    @router.post("/refresh-tokens")
    async def refresh_tokens(request: Request):
        result = await run_in_threadpool(auth_service.refresh_tokens, context(request))
        return respond(request, result)

    @router.get("/me")
    async def get_profile(request: Request):
        result = await run_in_threadpool(auth_service.get_profile, context(request))
        return respond(request, result)

    @router.patch("/profile")
    async def update_profile(request: Request):
        """Multipart form (name, bio, avatarFile) or a JSON body without the file."""
        avatar = None
        if request.headers.get("Content-Type", "").startswith("multipart/form-data"):
            form = await request.form()
            payload = {key: form.get(key) for key in ("name", "bio") if form.get(key) is not None}
            upload = form.get("avatarFile")
            if isinstance(upload, UploadFile) and upload.filename:
                content = await upload.read()
                if len(content) > MAX_AVATAR_BYTES:
                    return JSONResponse(
                        status_code=422,
                        content=error_response(
                            ErrorKind.VALIDATION_ERROR,
                            "Invalid data received!",
                            422,
                            fields={"avatarFile": ["Avatar must be at most 5 MB"]},
                            request_id=getattr(request.state, "request_id", None),
                        ).body(),
                    )
                avatar = AvatarUpload(
                    filename=upload.filename,
                    content=content,
                    content_type=upload.content_type or "application/octet-stream",
                )
        else:
            payload = await _json_payload(request)

        result = await run_in_threadpool(auth_service.update_profile, context(request), payload, avatar)
        return respond(request, result)

    @router.delete("/account")
    async def delete_account(request: Request):
        """Body {"type": "soft"|"hard"}; ?type= is accepted too. Defaults to soft."""
        payload = await _json_payload(request)
        if payload is None:
            payload = {"type": request.query_params["type"]} if "type" in request.query_params else {}
        result = await run_in_threadpool(auth_service.delete_account, context(request), payload)
        return respond(request, result)

    @router.put("/reactivate")
    async def reactivate(request: Request):
        result = await run_in_threadpool(auth_service.reactivate_account, context(request))
        return respond(request, result)

    @router.post("/signout")
    async def signout(request: Request):
        """Revoke the refresh token and clear cookies."""
        result = await run_in_threadpool(auth_service.sign_out, context(request))
        return respond(request, result)

    return router
