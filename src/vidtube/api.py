"""FastAPI application exposing the user account and channel endpoints."""

import logging
import time
from typing import List, Optional

from fastapi import (
    APIRouter,
    Body,
    Cookie,
    Depends,
    FastAPI,
    File,
    Form,
    Request,
    Response,
    UploadFile,
)
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import Counter

from .auth import get_current_user, get_optional_user
from .config import settings
from .database import init_db
from .errors import setup_exception_handlers
from .profiles import get_channel_profile, get_watch_history
from .schemas import (
    ApiResponse,
    ChangePasswordRequest,
    ChannelProfile,
    EmptyData,
    LoginRequest,
    LoginResult,
    RefreshTokenRequest,
    TokenPair,
    UpdateAccountRequest,
    UserOut,
    WatchHistoryItem,
)
from .services import (
    change_current_password,
    login_user,
    logout_user,
    refresh_access_token,
    register_user,
    update_account_details,
    update_user_avatar,
    update_user_cover_image,
)
from .uploads import UploadSlot, discard_staged, stage_upload

app = FastAPI(title=settings.api_title)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
setup_exception_handlers(app)
init_db()

logger = logging.getLogger(__name__)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"

REQUEST_COUNTER = Counter(
    "api_requests_total",
    "Account API requests by route template and status",
    ["method", "endpoint", "status"],
)


def _count_request(request: Request, status: int) -> None:
    # Label by route template so /c/{username} does not grow one series per channel.
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    REQUEST_COUNTER.labels(
        method=request.method, endpoint=endpoint, status=str(status)
    ).inc()


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log each account request and count it per route template.

    Errors escaping a handler are counted as 500 and re-raised so the
    envelope handler in :mod:`vidtube.errors` can render them. Token
    cookies and headers are never logged.
    """
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        _count_request(request, 500)
        logger.exception("error handling %s %s", request.method, request.url.path)
        raise
    _count_request(request, response.status_code)
    logger.info(
        "%s %s -> %s in %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    return response


def _set_token_cookies(response: Response, access_token: str, refresh_token: str) -> None:
    options = {"httponly": True, "secure": settings.cookie_secure}
    response.set_cookie(ACCESS_COOKIE, access_token, **options)
    response.set_cookie(REFRESH_COOKIE, refresh_token, **options)


def _clear_token_cookies(response: Response) -> None:
    options = {"httponly": True, "secure": settings.cookie_secure}
    response.delete_cookie(ACCESS_COOKIE, **options)
    response.delete_cookie(REFRESH_COOKIE, **options)


router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.post("/register", status_code=201, response_model=ApiResponse[UserOut])
def register(
    full_name: str = Form("", alias="fullName"),
    email: str = Form(""),
    username: str = Form(""),
    password: str = Form(""),
    avatar: Optional[List[UploadFile]] = File(None),
    cover_image: Optional[List[UploadFile]] = File(None, alias="coverImage"),
):
    """Register a user; ``avatar`` is required, ``coverImage`` optional."""
    avatar_slot = UploadSlot.from_files("avatar", avatar)
    cover_slot = UploadSlot.from_files("coverImage", cover_image)
    staged: List[Optional[str]] = []
    try:
        avatar_file = avatar_slot.single()
        cover_file = cover_slot.single()
        staged.append(stage_upload(avatar_file))
        staged.append(stage_upload(cover_file))
        user = register_user(full_name, email, username, password, staged[0], staged[1])
    finally:
        discard_staged(staged)
    return ApiResponse.build(201, user, "User registered successfully")


@router.post("/login", response_model=ApiResponse[LoginResult])
def login(payload: LoginRequest, response: Response):
    result = login_user(payload.password, email=payload.email, username=payload.username)
    _set_token_cookies(response, result.access_token, result.refresh_token)
    return ApiResponse.build(200, result, "User logged in successfully")


@router.post("/logout", response_model=ApiResponse[EmptyData])
def logout(response: Response, current_user: UserOut = Depends(get_current_user)):
    logout_user(current_user.id)
    _clear_token_cookies(response)
    return ApiResponse.build(200, EmptyData(), "User logged out successfully")


@router.post("/refresh-token", response_model=ApiResponse[TokenPair])
def refresh_token(
    response: Response,
    payload: Optional[RefreshTokenRequest] = Body(None),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Exchange the refresh token from the cookie or body for a new pair."""
    incoming = refresh_cookie or (payload.refresh_token if payload else None)
    tokens = refresh_access_token(incoming)
    _set_token_cookies(response, tokens["access_token"], tokens["refresh_token"])
    return ApiResponse.build(200, TokenPair(**tokens), "Access token refreshed")


@router.post("/change-password", response_model=ApiResponse[EmptyData])
def change_password(
    payload: ChangePasswordRequest, current_user: UserOut = Depends(get_current_user)
):
    change_current_password(current_user.id, payload.old_password, payload.new_password)
    return ApiResponse.build(200, EmptyData(), "Password changed successfully")


@router.get("/current-user", response_model=ApiResponse[UserOut])
def read_current_user(current_user: UserOut = Depends(get_current_user)):
    return ApiResponse.build(200, current_user, "Current user fetched successfully")


@router.patch("/update-account", response_model=ApiResponse[UserOut])
def update_account(
    payload: UpdateAccountRequest, current_user: UserOut = Depends(get_current_user)
):
    user = update_account_details(current_user.id, payload.full_name, payload.email)
    return ApiResponse.build(200, user, "Account details updated successfully")


def _stage_and_update(upload_files, field_name: str, user_id: int, update):
    slot = UploadSlot.from_files(field_name, upload_files)
    staged: List[Optional[str]] = []
    try:
        staged.append(stage_upload(slot.single()))
        return update(user_id, staged[0])
    finally:
        discard_staged(staged)


@router.patch("/update-avatar", response_model=ApiResponse[UserOut])
def update_avatar(
    avatar: Optional[List[UploadFile]] = File(None),
    current_user: UserOut = Depends(get_current_user),
):
    user = _stage_and_update(avatar, "avatar", current_user.id, update_user_avatar)
    return ApiResponse.build(200, user, "Avatar updated successfully")


@router.patch("/update-cover", response_model=ApiResponse[UserOut])
def update_cover(
    cover_image: Optional[List[UploadFile]] = File(None, alias="coverImage"),
    current_user: UserOut = Depends(get_current_user),
):
    user = _stage_and_update(cover_image, "coverImage", current_user.id, update_user_cover_image)
    return ApiResponse.build(200, user, "Cover image updated successfully")


@router.get("/c/{username}", response_model=ApiResponse[ChannelProfile])
def channel_profile(username: str, viewer: Optional[UserOut] = Depends(get_optional_user)):
    profile = get_channel_profile(username, viewer.id if viewer else None)
    return ApiResponse.build(200, profile, "Channel fetched successfully")


@router.get("/history", response_model=ApiResponse[List[WatchHistoryItem]])
def history(current_user: UserOut = Depends(get_current_user)):
    videos = get_watch_history(current_user.id)
    return ApiResponse.build(200, videos, "Watch history fetched successfully")


app.include_router(router)
