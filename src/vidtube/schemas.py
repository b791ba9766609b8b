"""Pydantic request bodies, response views and the response envelope."""

from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    """Serialize with camelCase keys; accept either spelling on input."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ApiResponse(CamelModel, Generic[T]):
    """Uniform success envelope."""

    status_code: int
    data: T
    message: str = "Success"
    success: bool = True

    @classmethod
    def build(cls, status_code: int, data, message: str = "Success"):
        return cls(
            status_code=status_code,
            data=data,
            message=message,
            success=status_code < 400,
        )


class UserOut(CamelModel):
    """User record with credential fields stripped."""

    id: int
    username: str
    email: str
    full_name: str
    avatar: str
    cover_image: str = ""
    watch_history: List[int] = []
    created_at: datetime
    updated_at: Optional[datetime] = None


class LoginRequest(CamelModel):
    email: Optional[str] = None
    username: Optional[str] = None
    password: str


class LoginResult(CamelModel):
    user: UserOut
    access_token: str
    refresh_token: str


class TokenPair(CamelModel):
    access_token: str
    refresh_token: str


class RefreshTokenRequest(CamelModel):
    refresh_token: Optional[str] = None


class ChangePasswordRequest(CamelModel):
    old_password: str
    new_password: str


class UpdateAccountRequest(CamelModel):
    full_name: Optional[str] = None
    email: Optional[str] = None


class ChannelProfile(CamelModel):
    """Public view of a channel with its subscription counts."""

    full_name: str
    username: str
    subscribers_count: int
    channels_subscribed_to_count: int
    is_subscribed: bool
    avatar: str
    cover_image: str = ""
    email: str


class OwnerSnapshot(CamelModel):
    full_name: str
    username: str
    avatar: str


class WatchHistoryItem(CamelModel):
    """A watched video with its owner denormalized into it."""

    id: int
    video_file: str
    thumbnail: str
    title: str
    description: str = ""
    duration: float = 0.0
    views: int = 0
    is_published: bool = True
    created_at: datetime
    updated_at: Optional[datetime] = None
    owner: Optional[OwnerSnapshot] = None


class EmptyData(CamelModel):
    pass
