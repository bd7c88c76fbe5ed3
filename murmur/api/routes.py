from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Response

from murmur.api.schemas import (
    AccessTokenResponse,
    ConfirmEmailRequest,
    DeletedUserResponse,
    Envelope,
    ForgotPasswordRequest,
    InboxMessage,
    InboxResponse,
    MessageResponse,
    Pagination,
    ResetPasswordRequest,
    SendMessageRequest,
    SigninRequest,
    SigninResponse,
    SignupRequest,
    UpdateProfileRequest,
    UserListResponse,
    UserResponse,
)
from murmur.logging import get_logger
from murmur.service.auth import AuthContext
from murmur.service.errors import RateLimitedError
from murmur.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter()


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> int:
    """Consume one token from the bucket for ``key``.

    Returns:
        Remaining requests in the current window

    Raises:
        RateLimitedError: bucket is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after_seconds": reset_seconds}
        )
    return remaining


async def get_user(
    accesstoken: Optional[str] = Header(None, convert_underscores=False),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(accesstoken)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    runtime = get_runtime()
    runtime.auth.require_role(principal, "admin")
    return principal


def _user_response(runtime, user) -> UserResponse:
    return UserResponse(**runtime.auth.user_profile(user))


@router.post("/users/signup", response_model=Envelope, status_code=201, tags=["users"])
async def signup(body: SignupRequest):
    """Create an account and queue an email confirmation code.

    Raises:
        400: If any field fails validation
        409: If the email or first/last name pair is already taken
    """
    runtime = get_runtime()
    user = await runtime.auth.signup(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        age=body.age,
        gender=body.gender,
        phone=body.phone,
    )
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.put("/users/confirm-otp", response_model=Envelope, tags=["users"])
async def confirm_email(body: ConfirmEmailRequest):
    runtime = get_runtime()
    user = await runtime.auth.confirm_email(body.email, body.otp)
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.post("/users/signin", response_model=Envelope, tags=["users"])
async def signin(body: SigninRequest, response: Response):
    """Exchange email and password for an access and a refresh token.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signin:{body.email}",
        runtime.settings.signin_rate_limit_per_minute,
        60,
        response=response,
    )
    user, tokens = await runtime.auth.signin(body.email, body.password)
    return Envelope(
        status="ok",
        data=SigninResponse(
            user_id=user.id,
            access_token=tokens["access_token"],
            refresh_token=tokens["refresh_token"],
            role=user.role,
        ),
    )


@router.post("/users/signout", response_model=Envelope, tags=["users"])
async def signout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.signout(principal.claims)
    return Envelope(status="ok", data={"signed_out": True})


@router.post("/users/refresh-token", response_model=Envelope, tags=["users"])
async def refresh_token(
    refreshtoken: Optional[str] = Header(None, convert_underscores=False),
):
    runtime = get_runtime()
    access_token = await runtime.auth.refresh_access_token(refreshtoken)
    return Envelope(status="ok", data=AccessTokenResponse(access_token=access_token))


@router.post("/users/forgot-password", response_model=Envelope, tags=["users"])
async def forgot_password(body: ForgotPasswordRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data={"code_sent": True})


@router.post("/users/reset-password", response_model=Envelope, tags=["users"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.email, body.otp, body.new_password)
    return Envelope(status="ok", data={"password_reset": True})


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=_user_response(runtime, principal.user))


@router.put("/users/update", response_model=Envelope, tags=["users"])
async def update_profile(
    body: UpdateProfileRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(principal.user_id, body.changes())
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.delete("/users/delete", response_model=Envelope, tags=["users"])
async def delete_account(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    deleted = await runtime.auth.delete_account(principal.user_id)
    return Envelope(status="ok", data=DeletedUserResponse(**deleted))


@router.get("/users/list-users", response_model=Envelope, tags=["admin"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(limit=limit)
    return Envelope(
        status="ok",
        data=UserListResponse(items=[_user_response(runtime, u) for u in users]),
    )


@router.post(
    "/messages/send/{receiver_id}",
    response_model=Envelope,
    status_code=201,
    tags=["messages"],
)
async def send_message(
    body: SendMessageRequest,
    receiver_id: str = Path(..., max_length=64),
):
    """Send an anonymous message.

    Raises:
        400: If content is empty/too long or receiver_id is not a valid id
        404: If the receiver does not exist
        429: If the receiver already got the hourly maximum
    """
    runtime = get_runtime()
    message = runtime.messages.send(receiver_id, body.content)
    return Envelope(
        status="ok",
        data=MessageResponse(
            id=message.id,
            receiver_id=message.receiver_id,
            content=message.content,
            created_at=message.created_at,
        ),
    )


@router.get("/messages", response_model=Envelope, tags=["messages"])
async def list_messages(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    items, pagination = runtime.messages.list_inbox(
        principal.user_id, page=page, limit=limit
    )
    return Envelope(
        status="ok",
        data=InboxResponse(
            items=[
                InboxMessage(id=m.id, content=m.content, created_at=m.created_at)
                for m in items
            ],
            pagination=Pagination(**pagination),
        ),
    )
