"""Pydantic request bodies for the course and tutor APIs.

Field names are snake_case in Python and camelCase on the wire, matching what
the frontends send.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

__all__ = [
    "ActivityEventBody",
    "ApplicationDecisionBody",
    "AssistantQueryBody",
    "CourseCreateBody",
    "CourseUpdateBody",
    "LoginBody",
    "QuizAttemptBody",
    "QuizQuestionBody",
    "RefreshBody",
    "RegisterBody",
    "RoleUpdateBody",
    "TopicCreateBody",
    "TutorApplicationBody",
    "TutorAssignmentBody",
    "is_valid_email",
]

_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_PATTERN.match(value or ""))


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- auth ----------
class RegisterBody(_CamelModel):
    email: str = Field(max_length=320)
    password: str = Field(min_length=8, max_length=200)
    full_name: str = Field(min_length=1, max_length=200)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not is_valid_email(value):
            raise ValueError("invalid email address")
        return value


class LoginBody(_CamelModel):
    """Credentials are optional here so the route can answer with its own 400 message."""

    email: Any = None
    password: Any = None


class RefreshBody(_CamelModel):
    refresh_token: Any = None


# ---------- courses / lessons / quiz ----------
class CourseCreateBody(_CamelModel):
    course_name: str = Field(min_length=3, max_length=200)
    slug: str = Field(min_length=3, max_length=120)
    description: str | None = Field(default=None, max_length=4000)
    is_published: bool = True

    @field_validator("slug")
    @classmethod
    def _check_slug(cls, value: str) -> str:
        if not _SLUG_PATTERN.match(value):
            raise ValueError("slug must be lowercase words separated by hyphens")
        return value


class CourseUpdateBody(_CamelModel):
    course_name: str | None = Field(default=None, min_length=3, max_length=200)
    slug: str | None = Field(default=None, min_length=3, max_length=120)
    description: str | None = Field(default=None, max_length=4000)
    is_published: bool | None = None

    @field_validator("slug")
    @classmethod
    def _check_slug(cls, value: str | None) -> str | None:
        if value is not None and not _SLUG_PATTERN.match(value):
            raise ValueError("slug must be lowercase words separated by hyphens")
        return value


class TopicCreateBody(_CamelModel):
    module_no: int = Field(ge=0, description="0 is the course introduction and is not graded.")
    topic_number: int = Field(default=1, ge=1)
    topic_name: str = Field(min_length=1, max_length=200)
    module_name: str | None = Field(default=None, max_length=200)
    content: str | None = None
    video_url: str | None = Field(default=None, max_length=1000)


class QuizQuestionBody(_CamelModel):
    prompt: str = Field(min_length=1, max_length=2000)
    options: List[str] = Field(min_length=2, max_length=8)
    correct_index: int = Field(ge=0)
    position: int = Field(default=0, ge=0)


class QuizAttemptBody(_CamelModel):
    answers: List[int] = Field(
        description="Selected option index per question, in question order.",
    )


# ---------- activity ----------
class ActivityEventBody(_CamelModel):
    course_id: str = Field(min_length=1)
    event_type: Literal[
        "idle",
        "active",
        "video_play",
        "video_pause",
        "video_seek",
        "video_complete",
        "quiz_attempt",
    ]
    module_no: int | None = Field(default=None, ge=0)
    topic_id: str | None = None
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Event details, e.g. idleSeconds, fromSeconds/toSeconds for seeks, passed for quizzes.",
    )


# ---------- admin ----------
class RoleUpdateBody(_CamelModel):
    role: Literal["learner", "tutor", "admin"]


class TutorAssignmentBody(_CamelModel):
    user_id: str = Field(min_length=1)
    role: str = Field(default="lead", max_length=50)
    display_name: str | None = Field(default=None, max_length=200)


class ApplicationDecisionBody(_CamelModel):
    status: Literal["approved", "rejected"]


# ---------- tutor backend ----------
class AssistantQueryBody(_CamelModel):
    course_id: Any = None
    question: Any = None


class TutorApplicationBody(_CamelModel):
    full_name: str = Field(min_length=3, max_length=200)
    email: str = Field(max_length=320)
    phone: str | None = Field(default=None, min_length=10, max_length=30)
    headline: str = Field(min_length=4, max_length=240)
    course_title: str = Field(min_length=4, max_length=200)
    course_description: str = Field(min_length=16, max_length=4000)
    target_audience: str = Field(min_length=4, max_length=2000)
    expertise_area: str = Field(min_length=2, max_length=200)
    experience_years: int | None = Field(default=None, ge=0, le=60)
    availability: str = Field(min_length=3, max_length=200)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        if not is_valid_email(value.strip()):
            raise ValueError("invalid email address")
        return value.strip()
