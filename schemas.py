import re
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator
from pydantic.networks import validate_email

# Each stored model corresponds to a Mongo collection named by class name lowercased

Role = Literal["student", "instructor"]

YOUTUBE_URL_RE = re.compile(r"^.*(youtu\.be/|v/|u/\w/|embed/|watch\?v=|&v=)([^#&?]*).*")
YOUTUBE_ID_LENGTH = 11


def extract_youtube_id(value: str) -> Optional[str]:
    """Pull the 11-character video id out of a YouTube URL."""
    match = YOUTUBE_URL_RE.match(value)
    if match and len(match.group(2)) == YOUTUBE_ID_LENGTH:
        return match.group(2)
    return None


def _require_text(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("must not be empty")
    return value


class User(BaseModel):
    name: str
    email: str
    password: str = Field(..., description="bcrypt hash")
    role: Role


class UserCreate(BaseModel):
    name: str
    email: str
    password: str = Field(..., min_length=6)
    role: Role

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        return _require_text(value).strip()

    @field_validator("email")
    @classmethod
    def email_is_valid(cls, value: str) -> str:
        # stored as typed; login matches it the same way
        value = value.strip()
        validate_email(value)
        return value


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def strip_email(cls, value: str) -> str:
        return value.strip()


class UserPublic(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    name: str
    email: str
    role: str
    createdAt: Optional[str] = None


class AuthResponse(BaseModel):
    token: str
    user: UserPublic


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class Video(BaseModel):
    title: str
    youtubeId: str

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value: str) -> str:
        return _require_text(value)

    @field_validator("youtubeId")
    @classmethod
    def normalize_youtube_id(cls, value: str) -> str:
        value = _require_text(value).strip()
        return extract_youtube_id(value) or value


class CourseIn(BaseModel):
    title: str
    description: str
    category: str
    videos: List[Video] = Field(..., min_length=1)

    @field_validator("title", "description", "category")
    @classmethod
    def not_blank(cls, value: str) -> str:
        # category is stored exactly as sent; filtering is an exact match
        return _require_text(value)


class EnrollmentCreate(BaseModel):
    courseId: str


class ProgressUpdate(BaseModel):
    videoIndex: StrictInt
