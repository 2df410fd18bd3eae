"""
API request and response models for Inkwell REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
blog/models.py, which own the internal domain representation. Route handlers
map between the two.

Cached reads are returned inside CachedResponse so every client can see
whether the payload came from the cache or the store and how long the read
took.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cache.store import CachedRead

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Post ids become part of cache keys (posts:<id>), so ':' is never allowed.
POST_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"
EMAIL_PATTERN = r"^[^@\s:]+@[^@\s:]+\.[^@\s:]+$"
SEARCH_PATTERN = r"^[^:]*$"

# Literal path segments under /posts/; a post with one of these ids could never
# be read back.
RESERVED_POST_IDS = frozenset({"top-commented", "top-liked"})


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    user = "user"
    admin = "admin"


class SourceEnum(str, Enum):
    cache = "cache"
    store = "store"


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class CachedResponse(BaseModel):
    """Envelope for every cache-aside read."""

    success: bool = True
    source: SourceEnum
    elapsed_ms: float
    data: Any

    @classmethod
    def from_read(cls, read: CachedRead) -> "CachedResponse":
        """Build the envelope from a cache-layer CachedRead."""
        return cls(source=read.source, elapsed_ms=read.elapsed_ms, data=read.data)


class MessageResponse(BaseModel):
    success: bool = True
    message: str
    data: Any = None


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=50)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    # bcrypt truncates at 72 bytes; cap well below.
    password: str = Field(min_length=6, max_length=64)


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255)
    password: str = Field(max_length=64)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255)
    code: str = Field(pattern=r"^\d{6}$", description="The 6-digit code from the reset notification.")
    new_password: str = Field(min_length=6, max_length=64)


class LoginResponse(BaseModel):
    success: bool = True
    access_token: str
    refresh_token: str = Field(serialization_alias="refreshToken")
    token_type: str = "bearer"
    expires_in: int
    user: dict


class MeResponse(BaseModel):
    user_id: int
    role: str


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, min_length=3, max_length=50)
    role: Optional[RoleEnum] = None


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------


class PostCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(pattern=POST_ID_PATTERN, description="Caller-chosen post id, e.g. 'p1'.")
    title: str = Field(min_length=3, max_length=200)
    content: str = Field(min_length=5, max_length=20_000)

    @field_validator("id")
    @classmethod
    def not_reserved(cls, v: str) -> str:
        if v in RESERVED_POST_IDS:
            raise ValueError(f"'{v}' is a reserved post id")
        return v


class PostUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: Optional[str] = Field(default=None, min_length=3, max_length=200)
    content: Optional[str] = Field(default=None, min_length=5, max_length=20_000)


class CommentCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    text: str = Field(min_length=1, max_length=2_000)
