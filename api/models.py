"""
API request and response models for DevSolve REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
qa/models.py, which own the internal domain representation. Route handlers map
between the two with the from_* factory methods below.

Every response body is an Envelope:
    {"success": bool, "message"?: str, "data"?: ..., "errors"?: {field: msg},
     "pagination"?: {...}, "requires_verification"?: true}
Absent keys are omitted rather than sent as null.

Field validators carry the user-facing messages the web forms display, so a
RequestValidationError can be flattened straight into the errors map.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any, Literal, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import AfterValidator, BaseModel, ConfigDict, field_validator

from auth.models import User
from qa.models import Answer, Question, QuestionPage

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PASSWORD_MIN = 8
PASSWORD_MAX = 128


def _check_email(value: str) -> str:
    value = value.strip().lower()
    if not value:
        raise ValueError("Email is required")
    if not EMAIL_PATTERN.match(value):
        raise ValueError("Please enter a valid email address")
    return value


def _check_new_password(value: str) -> str:
    if not value:
        raise ValueError("Password is required")
    if len(value) < PASSWORD_MIN:
        raise ValueError(f"Password must be at least {PASSWORD_MIN} characters")
    if len(value) > PASSWORD_MAX:
        raise ValueError(f"Password cannot exceed {PASSWORD_MAX} characters")
    return value


def _check_name(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("Name is required")
    if len(value) < 2:
        raise ValueError("Name must be at least 2 characters")
    if len(value) > 50:
        raise ValueError("Name cannot exceed 50 characters")
    return value


EmailField = Annotated[str, AfterValidator(_check_email)]
NewPasswordField = Annotated[str, AfterValidator(_check_new_password)]
NameField = Annotated[str, AfterValidator(_check_name)]


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def from_page(cls, page: QuestionPage) -> "Pagination":
        return cls(page=page.page, limit=page.limit, total=page.total, pages=page.pages)


class Envelope(BaseModel):
    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    errors: Optional[dict[str, str]] = None
    pagination: Optional[Pagination] = None
    requires_verification: Optional[bool] = None


def envelope_response(status_code: int = 200, *, data: Any = None, **fields: Any) -> JSONResponse:
    """Render an Envelope as a JSONResponse. success defaults to status_code < 400.

    data is encoded on its own so that None-valued fields inside it (an unset
    avatar, say) are kept; only the envelope's own absent keys are dropped.
    """
    fields.setdefault("success", status_code < 400)
    body = Envelope(**fields).model_dump(mode="json", exclude_none=True)
    if data is not None:
        body["data"] = jsonable_encoder(data)
    return JSONResponse(status_code=status_code, content=body)


# ---------------------------------------------------------------------------
# Auth request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    name: NameField
    email: EmailField
    password: NewPasswordField


class LoginRequest(BaseModel):
    """Login credentials. Only presence is checked; strength rules apply at registration."""

    email: str
    password: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("Email is required")
        return value

    @field_validator("password")
    @classmethod
    def require_password(cls, value: str) -> str:
        if not value:
            raise ValueError("Password is required")
        return value


class EmailRequest(BaseModel):
    """Body for POST /auth/forgot-password and POST /auth/verify-email (resend)."""

    email: EmailField


class ResetPasswordRequest(BaseModel):
    token: str
    password: NewPasswordField

    @field_validator("token")
    @classmethod
    def require_token(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Reset token is required")
        return value


# ---------------------------------------------------------------------------
# Q&A and profile request models
# ---------------------------------------------------------------------------


class QuestionCreate(BaseModel):
    """Body for POST /api/questions. Tags are stripped, lower-cased and de-duplicated."""

    title: str
    body: str
    tags: list[str]

    @field_validator("title")
    @classmethod
    def check_title(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 15:
            raise ValueError("Title must be at least 15 characters")
        if len(value) > 150:
            raise ValueError("Title cannot exceed 150 characters")
        return value

    @field_validator("body")
    @classmethod
    def check_body(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 30:
            raise ValueError("Question body must be at least 30 characters")
        return value

    @field_validator("tags")
    @classmethod
    def check_tags(cls, values: list[str]) -> list[str]:
        seen: list[str] = []
        for tag in values:
            normalized = tag.strip().lower()
            if normalized and normalized not in seen:
                seen.append(normalized)
        if not seen:
            raise ValueError("At least one tag is required")
        if len(seen) > 5:
            raise ValueError("A question can have at most 5 tags")
        return seen


class AnswerCreate(BaseModel):
    body: str

    @field_validator("body")
    @classmethod
    def check_body(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 30:
            raise ValueError("Answer must be at least 30 characters")
        return value


class VoteRequest(BaseModel):
    """Body for the vote endpoints. "none" withdraws the caller's vote."""

    direction: Literal["up", "down", "none"]

    @property
    def value(self) -> int:
        return {"up": 1, "down": -1, "none": 0}[self.direction]


class UserPatch(BaseModel):
    """Body for PATCH /api/users/{id}.

    Only name and avatar are mutable here. Any other key (email, role,
    password, reputation, ...) is ignored rather than rejected.
    """

    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    avatar: Optional[str] = None

    @field_validator("name")
    @classmethod
    def check_name(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_name(value)

    @field_validator("avatar")
    @classmethod
    def check_avatar(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) > 500:
            raise ValueError("Avatar URL cannot exceed 500 characters")
        return value


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserOut(BaseModel):
    """The account owner's view of their own record."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    avatar: Optional[str] = None
    role: str
    reputation: int
    is_verified: bool
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            avatar=user.avatar,
            role=user.role,
            reputation=user.reputation,
            is_verified=user.is_verified,
            created_at=user.created_at,
        )


class ProfileOut(BaseModel):
    """Public profile -- what anyone may see about a user. No email."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    avatar: Optional[str] = None
    role: str
    reputation: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "ProfileOut":
        return cls(
            id=user.id,
            name=user.name,
            avatar=user.avatar,
            role=user.role,
            reputation=user.reputation,
            created_at=user.created_at,
        )


class AuthorOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    avatar: Optional[str] = None
    reputation: int

    @classmethod
    def from_user(cls, user: Optional[User]) -> Optional["AuthorOut"]:
        if user is None:
            return None
        return cls(id=user.id, name=user.name, avatar=user.avatar, reputation=user.reputation)


class AnswerOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    question_id: int
    body: str
    is_accepted: bool
    upvotes: int = 0
    downvotes: int = 0
    vote_score: int = 0
    author: Optional[AuthorOut] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_answer(cls, answer: Answer, author: Optional[User]) -> "AnswerOut":
        return cls(
            id=answer.id,
            question_id=answer.question_id,
            body=answer.body,
            is_accepted=answer.is_accepted,
            upvotes=answer.upvotes,
            downvotes=answer.downvotes,
            vote_score=answer.vote_score,
            author=AuthorOut.from_user(author),
            created_at=answer.created_at,
        )


class QuestionOut(BaseModel):
    """A question with its author's public profile embedded.

    author is None when the referenced user no longer exists.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    title: str
    body: str
    tags: list[str]
    views: int
    is_closed: bool
    upvotes: int = 0
    downvotes: int = 0
    vote_score: int = 0
    answer_count: int = 0
    author: Optional[AuthorOut] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_question(cls, question: Question, author: Optional[User]) -> "QuestionOut":
        return cls(
            id=question.id,
            title=question.title,
            body=question.body,
            tags=list(question.tags),
            views=question.views,
            is_closed=question.is_closed,
            upvotes=question.upvotes,
            downvotes=question.downvotes,
            vote_score=question.vote_score,
            answer_count=question.answer_count,
            author=AuthorOut.from_user(author),
            created_at=question.created_at,
            updated_at=question.updated_at,
        )


class QuestionDetailOut(QuestionOut):
    answers: list[AnswerOut] = []


class VoteOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    upvotes: int
    downvotes: int
    vote_score: int

    @classmethod
    def from_counts(cls, counts: tuple[int, int]) -> "VoteOut":
        upvotes, downvotes = counts
        return cls(upvotes=upvotes, downvotes=downvotes, vote_score=upvotes - downvotes)


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
