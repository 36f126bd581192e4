"""
Database Schemas for the Book Club API

Each document model represents a MongoDB collection. The collection name is the
lowercased class name. Example: class Thread -> "thread" collection.

Stored documents are mapped with `from_document`, which fails closed: a document
missing a required field, or holding a value of the wrong type, maps to None and
is left out of any list built with `map_documents`.
"""

import logging
from datetime import datetime
from typing import Annotated, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError, model_validator

logger = logging.getLogger(__name__)

D = TypeVar("D", bound="Document")

# Trimmed on the way in; blank input is a validation error
NonBlank = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


def normalize_answer(answer: str) -> str:
    """Trim, collapse runs of whitespace and case fold."""
    return " ".join(answer.split()).casefold()


class Document(BaseModel):
    id: str = Field(..., description="String form of the document _id")

    @classmethod
    def collection_name(cls) -> str:
        return cls.__name__.lower()

    @classmethod
    def from_document(cls: Type[D], doc: Optional[dict]) -> Optional[D]:
        if not doc:
            return None
        data = {**doc}
        _id = data.pop("_id", None)
        if _id is None:
            return None
        data["id"] = str(_id)
        try:
            return cls.model_validate(data, strict=True)
        except ValidationError as e:
            logger.debug("Dropping malformed %s %s: %s", cls.collection_name(), data["id"], e)
            return None


def map_documents(model: Type[D], docs: Iterable[dict]) -> List[D]:
    mapped = (model.from_document(doc) for doc in docs)
    return [m for m in mapped if m is not None]


# ----------------- Documents -----------------

class User(Document):
    username: str = Field(..., description="Immutable handle")
    avatar_url: str = Field(..., description="Profile image URL")
    group_ids: List[str] = Field(..., description="Groups the user belongs to")
    email: Optional[str] = None
    display_name: Optional[str] = Field(None, description="Editable name, falls back to username")
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _default_display_name(self) -> "User":
        if not self.display_name or not self.display_name.strip():
            self.display_name = self.username
        return self


class Group(Document):
    title: str
    author: str = Field(..., description="Author of the book the group reads")
    image_url: str = Field(..., description="Cover image URL")
    owner_id: str
    moderator_ids: List[str] = Field(default_factory=list)
    member_ids: List[str]
    moderation_question: str
    correct_answer: str = Field(..., exclude=True)
    created_at: datetime
    updated_at: datetime

    def has_member(self, user_id: Optional[str]) -> bool:
        return user_id is not None and user_id in self.member_ids

    def has_moderator(self, user_id: Optional[str]) -> bool:
        return user_id is not None and (user_id == self.owner_id or user_id in self.moderator_ids)

    def accepts_answer(self, answer: str) -> bool:
        return normalize_answer(answer) == normalize_answer(self.correct_answer)


class Post(Document):
    author: str
    author_id: Optional[str] = None
    title: str
    body: str
    created_at: datetime


class Thread(Document):
    group_id: str
    author_id: str
    username: Optional[str] = None
    content: str
    like_count: int
    reply_count: int
    is_mod_tagged: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None


class Reply(Document):
    thread_id: str
    username: str
    author_id: Optional[str] = None
    avatar_url: Optional[str] = None
    content: str
    created_at: datetime


class Like(Document):
    thread_id: str
    user_id: str
    created_at: datetime

    @staticmethod
    def key(thread_id: str, user_id: str) -> str:
        # One like per (thread, user)
        return f"{thread_id}:{user_id}"


# ----------------- Requests -----------------

class RegisterRequest(BaseModel):
    username: NonBlank
    email: NonBlank
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: NonBlank
    password: str


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    display_name: Optional[NonBlank] = None
    avatar_url: Optional[str] = None


class PostCreate(BaseModel):
    title: NonBlank
    body: NonBlank
    author: Optional[NonBlank] = Field(None, description="Display name, defaults to the caller's username")


class GroupCreate(BaseModel):
    title: NonBlank
    author: NonBlank
    image_url: NonBlank
    moderation_question: NonBlank
    correct_answer: NonBlank


class JoinRequest(BaseModel):
    answer: str


class ThreadCreate(BaseModel):
    content: NonBlank
    is_mod_tagged: bool = False


class ReplyCreate(BaseModel):
    content: NonBlank


# ----------------- Responses -----------------

class AuthResponse(BaseModel):
    token: str
    user_id: str
    anonymous: bool = False
    profile: Optional[User] = None


class ProfileResponse(User):
    is_own_profile: bool = False


class GroupDetail(Group):
    is_member: bool = False
    is_moderator: bool = False

    @classmethod
    def for_user(cls, group: Group, user_id: Optional[str]) -> "GroupDetail":
        return cls(**dict(group), is_member=group.has_member(user_id), is_moderator=group.has_moderator(user_id))


class ThreadDetail(Thread):
    liked_by_me: bool = False


class LikeState(BaseModel):
    liked: bool
    like_count: int


class ReplyCreated(BaseModel):
    id: str
    warning: Optional[str] = None
