import logging
import math
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from todoflow.database import SessionDep
from todoflow.dependencies import CurrentUserDep
from todoflow.exceptions import InvalidInput, InvalidMembership, StorageError
from todoflow.models import (
    Category,
    Pagination,
    ReorderResult,
    Subtask,
    Tag,
    Todo,
    TodoCreate,
    TodoPage,
    TodoProgress,
    TodoRead,
    TodoReorder,
    TodoStatus,
    TodoUpdate,
)
from todoflow.ordering import next_sequence, parse_assignments, reorder

router = APIRouter(prefix="/api/todos", tags=["todos"])
logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {
    "sequence": Todo.sequence,
    "title": Todo.title,
    "status": Todo.status,
    "created_at": Todo.created_at,
    "updated_at": Todo.updated_at,
}


def get_owned_todo(session: Session, todo_id: int, user_id: int) -> Todo:
    todo = session.exec(
        select(Todo).where(Todo.id == todo_id, Todo.user_id == user_id)
    ).first()
    if not todo:
        raise HTTPException(status_code=404, detail="Todo not found")
    return todo


def _clean_title(title: str) -> str:
    title = (title or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    return title


def _owned_category(session: Session, category_id: int, user_id: int) -> Category:
    category = session.exec(
        select(Category).where(Category.id == category_id, Category.user_id == user_id)
    ).first()
    if not category:
        raise HTTPException(status_code=400, detail="Invalid category ID")
    return category


def _owned_tags(session: Session, tag_ids: list[int], user_id: int) -> list[Tag]:
    """Tags among ``tag_ids`` that belong to the user; others are dropped."""
    if not tag_ids:
        return []
    return list(session.exec(select(Tag).where(Tag.id.in_(tag_ids), Tag.user_id == user_id)).all())


def _commit(session: Session, action: str):
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Failed to {action}: {exc}")
        raise HTTPException(status_code=500, detail=f"Failed to {action}")


@router.get("/", response_model=TodoPage)
def list_todos(
    session: SessionDep,
    current_user: CurrentUserDep,
    page: int = 1,
    limit: int = 10,
    status: TodoStatus | None = None,
    completed: bool | None = None,
    favorite: bool | None = None,
    category_id: int | None = None,
    search: str | None = None,
    sort_by: str = "sequence",
    sort_order: str = "ASC",
):
    """List the current user's todos, ordered by sequence by default."""
    conditions = [Todo.user_id == current_user.user_id]
    if status is not None:
        conditions.append(Todo.status == status)
    elif completed is not None:
        conditions.append(
            Todo.status == TodoStatus.completed if completed else Todo.status != TodoStatus.completed
        )
    if favorite is not None:
        conditions.append(Todo.favorite == favorite)
    if category_id is not None:
        conditions.append(Todo.category_id == category_id)
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(Todo.title.ilike(pattern), Todo.description.ilike(pattern)))

    page = max(1, page)
    limit = min(100, max(1, limit))
    column = SORTABLE_FIELDS.get(sort_by, Todo.sequence)
    order = column.desc() if sort_order.upper() == "DESC" else column.asc()

    total = session.exec(select(func.count()).select_from(Todo).where(*conditions)).one()
    todos = session.exec(
        select(Todo)
        .where(*conditions)
        .order_by(order, Todo.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    total_pages = math.ceil(total / limit)
    return TodoPage(
        todos=[TodoRead.from_todo(todo) for todo in todos],
        pagination=Pagination(
            current_page=page,
            total_pages=total_pages,
            total_items=total,
            items_per_page=limit,
            has_next=page < total_pages,
            has_prev=page > 1,
        ),
    )


@router.post("/", response_model=TodoRead, status_code=201)
def create_todo(todo_create: TodoCreate, session: SessionDep, current_user: CurrentUserDep):
    """Create a todo at the end of the user's list."""
    title = _clean_title(todo_create.title)
    if todo_create.category_id is not None:
        _owned_category(session, todo_create.category_id, current_user.user_id)

    todo = Todo(
        title=title,
        description=(todo_create.description or "").strip() or None,
        favorite=todo_create.favorite,
        category_id=todo_create.category_id,
        user_id=current_user.user_id,
        status=TodoStatus.not_started,
        sequence=next_sequence(session, Todo.sequence, Todo.user_id, current_user.user_id),
    )
    todo.tags = _owned_tags(session, todo_create.tag_ids, current_user.user_id)
    session.add(todo)
    _commit(session, "create todo")
    session.refresh(todo)
    return TodoRead.from_todo(todo)


@router.put("/reorder", response_model=ReorderResult)
def reorder_todos(payload: TodoReorder, session: SessionDep, current_user: CurrentUserDep):
    """Apply drag-and-drop order: [{id, sequence}, ...], all or nothing."""
    try:
        assignments = parse_assignments(payload.todo_orders, allow_empty=True)
        updated = reorder(session, Todo, Todo.user_id, current_user.user_id, assignments)
    except InvalidInput as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except InvalidMembership as exc:
        raise HTTPException(status_code=404, detail=f"Todos not found: {exc.ids}")
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return ReorderResult(updated_count=updated)


@router.get("/{todo_id}", response_model=TodoRead)
def get_todo(todo_id: int, session: SessionDep, current_user: CurrentUserDep):
    """Get a single todo with its category, tags and subtasks."""
    return TodoRead.from_todo(get_owned_todo(session, todo_id, current_user.user_id))


@router.put("/{todo_id}", response_model=TodoRead)
def update_todo(todo_id: int, todo_update: TodoUpdate, session: SessionDep, current_user: CurrentUserDep):
    """Update only the provided fields; tag_ids replaces the whole tag set."""
    todo = get_owned_todo(session, todo_id, current_user.user_id)

    update_data = todo_update.model_dump(exclude_unset=True)
    if "title" in update_data:
        todo.title = _clean_title(update_data["title"])
    if "description" in update_data:
        todo.description = (update_data["description"] or "").strip() or None
    if "category_id" in update_data:
        if update_data["category_id"] is not None:
            _owned_category(session, update_data["category_id"], current_user.user_id)
        todo.category_id = update_data["category_id"]
    if update_data.get("favorite") is not None:
        todo.favorite = update_data["favorite"]
    if "tag_ids" in update_data:
        todo.tags = _owned_tags(session, update_data["tag_ids"] or [], current_user.user_id)
    todo.updated_at = datetime.now(timezone.utc)

    # field changes and the tag set land in one transaction
    session.add(todo)
    _commit(session, "update todo")
    session.refresh(todo)
    return TodoRead.from_todo(todo)


@router.put("/{todo_id}/favorite", response_model=TodoRead)
def set_favorite(todo_id: int, session: SessionDep, current_user: CurrentUserDep, value: bool | None = None):
    """Set favorite to ``value``, or toggle it when no value is given."""
    todo = get_owned_todo(session, todo_id, current_user.user_id)
    todo.favorite = (not todo.favorite) if value is None else value
    todo.updated_at = datetime.now(timezone.utc)
    session.add(todo)
    _commit(session, "update favorite")
    session.refresh(todo)
    return TodoRead.from_todo(todo)


@router.get("/{todo_id}/progress", response_model=TodoProgress)
def get_progress(todo_id: int, session: SessionDep, current_user: CurrentUserDep):
    """Completion statistics over the todo's subtasks."""
    get_owned_todo(session, todo_id, current_user.user_id)
    statuses = session.exec(select(Subtask.status).where(Subtask.todo_id == todo_id)).all()
    total = len(statuses)
    completed = sum(1 for s in statuses if s == TodoStatus.completed)
    # half rounds up, not to even
    percentage = math.floor(completed * 100 / total + 0.5) if total else 0
    return TodoProgress(total=total, completed=completed, percentage=percentage)


@router.delete("/{todo_id}", status_code=204)
def delete_todo(todo_id: int, session: SessionDep, current_user: CurrentUserDep):
    """Delete a todo together with its subtasks and tag links."""
    todo = get_owned_todo(session, todo_id, current_user.user_id)
    session.delete(todo)
    _commit(session, "delete todo")
    return None
