from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import Column, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands datetimes back naive; treat those as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TodoStatus(str, Enum):
    not_started = "not_started"
    in_progress = "in_progress"
    on_hold = "on_hold"
    completed = "completed"


def _status_column() -> Column:
    return Column(
        SAEnum(TodoStatus, name="todo_status", create_constraint=True),
        nullable=False,
        default=TodoStatus.not_started,
        index=True,
    )


# Database Tables
class User(SQLModel, table=True):
    """User account with hashed password."""
    __tablename__ = "users"

    id: int | None = Field(default=None, primary_key=True)
    name: str
    email: str = Field(unique=True, index=True)
    hashed_password: str
    last_login_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TodoTagLink(SQLModel, table=True):
    __tablename__ = "todo_tags"

    todo_id: int | None = Field(
        default=None, foreign_key="todos.id", primary_key=True, ondelete="CASCADE"
    )
    tag_id: int | None = Field(
        default=None, foreign_key="tags.id", primary_key=True, ondelete="CASCADE"
    )


class Category(SQLModel, table=True):
    __tablename__ = "categories"
    __table_args__ = (UniqueConstraint("user_id", "name"),)

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    user_id: int = Field(foreign_key="users.id", index=True, ondelete="CASCADE")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Tag(SQLModel, table=True):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name"),)

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    user_id: int = Field(foreign_key="users.id", index=True, ondelete="CASCADE")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    todos: list["Todo"] = Relationship(back_populates="tags", link_model=TodoTagLink)


class Todo(SQLModel, table=True):
    __tablename__ = "todos"

    id: int | None = Field(default=None, primary_key=True)
    title: str = Field(index=True)
    description: str | None = Field(default=None)
    status: TodoStatus = Field(default=TodoStatus.not_started, sa_column=_status_column())
    favorite: bool = Field(default=False, index=True)
    sequence: int = Field(default=0, index=True)
    user_id: int = Field(foreign_key="users.id", index=True, ondelete="CASCADE")
    category_id: int | None = Field(
        default=None, foreign_key="categories.id", index=True, ondelete="SET NULL"
    )
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    category: Optional[Category] = Relationship()
    tags: list[Tag] = Relationship(back_populates="todos", link_model=TodoTagLink)
    subtasks: list["Subtask"] = Relationship(
        back_populates="todo",
        cascade_delete=True,
        sa_relationship_kwargs={"order_by": "Subtask.sequence"},
    )


class Subtask(SQLModel, table=True):
    __tablename__ = "subtasks"

    id: int | None = Field(default=None, primary_key=True)
    title: str
    status: TodoStatus = Field(default=TodoStatus.not_started, sa_column=_status_column())
    sequence: int = Field(default=0, index=True)
    todo_id: int = Field(foreign_key="todos.id", index=True, ondelete="CASCADE")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    todo: Optional[Todo] = Relationship(back_populates="subtasks")


class RefreshToken(SQLModel, table=True):
    """Opaque refresh token; valid while not blacklisted and not expired."""
    __tablename__ = "refresh_tokens"

    id: int | None = Field(default=None, primary_key=True)
    token: str = Field(max_length=64, unique=True, index=True)
    user_id: int = Field(foreign_key="users.id", index=True, ondelete="CASCADE")
    expires_at: datetime
    blacklisted: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= as_utc(self.expires_at)

    def is_valid(self, now: datetime | None = None) -> bool:
        return not self.blacklisted and not self.is_expired(now)


# API Schemas
class CategoryCreate(SQLModel):
    name: str


class CategoryRead(SQLModel):
    id: int
    name: str
    created_at: datetime
    updated_at: datetime


class TagCreate(SQLModel):
    name: str


class TagRead(SQLModel):
    id: int
    name: str
    created_at: datetime
    updated_at: datetime


class SubtaskCreate(SQLModel):
    title: str
    todo_id: int
    status: TodoStatus = TodoStatus.not_started


class SubtaskUpdate(SQLModel):
    title: str | None = None
    status: TodoStatus | None = None


class SubtaskStatusUpdate(SQLModel):
    status: TodoStatus


class SubtaskBulkStatus(SQLModel):
    todo_id: int
    status: TodoStatus


class SubtaskRead(SQLModel):
    id: int
    title: str
    status: TodoStatus
    completed: bool
    sequence: int
    todo_id: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_subtask(cls, subtask: Subtask) -> "SubtaskRead":
        # completed is derived from status, never stored
        return cls(
            **subtask.model_dump(),
            completed=subtask.status == TodoStatus.completed,
        )


class SubtaskStatusResponse(SQLModel):
    subtask: SubtaskRead
    todo_status: TodoStatus


class SubtaskList(SQLModel):
    subtasks: list[SubtaskRead]
    todo_status: TodoStatus | None = None


class SubtaskReorder(SQLModel):
    todo_id: int
    subtasks: list[Any]


class TodoCreate(SQLModel):
    title: str
    description: str | None = None
    category_id: int | None = None
    favorite: bool = False
    tag_ids: list[int] = []


class TodoUpdate(SQLModel):
    title: str | None = None
    description: str | None = None
    category_id: int | None = None
    favorite: bool | None = None
    tag_ids: list[int] | None = None


class TodoRead(SQLModel):
    id: int
    title: str
    description: str | None
    status: TodoStatus
    completed: bool
    favorite: bool
    sequence: int
    category_id: int | None
    category: CategoryRead | None = None
    tags: list[TagRead] = []
    subtasks: list[SubtaskRead] = []
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_todo(cls, todo: Todo) -> "TodoRead":
        return cls(
            **todo.model_dump(),
            completed=todo.status == TodoStatus.completed,
            category=CategoryRead.model_validate(todo.category) if todo.category else None,
            tags=[TagRead.model_validate(tag) for tag in todo.tags],
            subtasks=[SubtaskRead.from_subtask(s) for s in todo.subtasks],
        )


class Pagination(SQLModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next: bool
    has_prev: bool


class TodoPage(SQLModel):
    todos: list[TodoRead]
    pagination: Pagination


class TodoReorder(SQLModel):
    todo_orders: list[Any]


class ReorderResult(SQLModel):
    updated_count: int


class TodoProgress(SQLModel):
    total: int
    completed: int
    percentage: int


# User Models
class UserCreate(SQLModel):
    """Request model for registration."""
    name: str
    email: str
    password: str


class UserRead(SQLModel):
    """Response model - excludes password."""
    id: int
    name: str
    email: str


class UserUpdate(SQLModel):
    name: str | None = None
    email: str | None = None


class LoginRequest(SQLModel):
    email: str
    password: str


class AuthResponse(BaseModel):
    """Login/registration result; the refresh token travels as a cookie."""
    model_config = ConfigDict(populate_by_name=True)

    user: UserRead
    access_token: str = PydanticField(alias="accessToken")


class AccessTokenResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = PydanticField(alias="accessToken")


class RefreshTokenBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str | None = PydanticField(default=None, alias="refreshToken")


class SessionRead(SQLModel):
    id: int
    created_at: datetime
    expires_at: datetime
