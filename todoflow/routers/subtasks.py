import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from todoflow.database import SessionDep
from todoflow.dependencies import CurrentUserDep
from todoflow.exceptions import InvalidInput, InvalidMembership, StorageError
from todoflow.models import (
    Subtask,
    SubtaskBulkStatus,
    SubtaskCreate,
    SubtaskList,
    SubtaskRead,
    SubtaskReorder,
    SubtaskStatusResponse,
    SubtaskStatusUpdate,
    SubtaskUpdate,
    Todo,
    TodoStatus,
)
from todoflow.ordering import next_sequence, parse_assignments, reorder
from todoflow.routers.todos import get_owned_todo
from todoflow.status import refresh_todo_status

router = APIRouter(prefix="/api/subtasks", tags=["subtasks"])
logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {
    "sequence": Subtask.sequence,
    "title": Subtask.title,
    "status": Subtask.status,
    "created_at": Subtask.created_at,
    "updated_at": Subtask.updated_at,
}


def get_owned_subtask(session: Session, subtask_id: int, user_id: int) -> Subtask:
    subtask = session.exec(
        select(Subtask)
        .join(Todo, Todo.id == Subtask.todo_id)
        .where(Subtask.id == subtask_id, Todo.user_id == user_id)
    ).first()
    if not subtask:
        raise HTTPException(status_code=404, detail="Subtask not found")
    return subtask


def _commit(session: Session, action: str):
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Failed to {action}: {exc}")
        raise HTTPException(status_code=500, detail=f"Failed to {action}")


def _recompute(session: Session, todo_id: int) -> TodoStatus:
    try:
        return refresh_todo_status(session, todo_id)
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc))


def _ordered(session: Session, todo_id: int) -> list[SubtaskRead]:
    subtasks = session.exec(
        select(Subtask)
        .where(Subtask.todo_id == todo_id)
        .order_by(Subtask.sequence.asc(), Subtask.created_at.desc())
    ).all()
    return [SubtaskRead.from_subtask(s) for s in subtasks]


@router.get("/", response_model=SubtaskList)
def list_subtasks(
    todo_id: int,
    session: SessionDep,
    current_user: CurrentUserDep,
    status: TodoStatus | None = None,
    completed: bool | None = None,
    page: int = 1,
    limit: int = 50,
    sort_by: str = "sequence",
    sort_order: str = "ASC",
):
    """List the subtasks of one of the user's todos."""
    todo = get_owned_todo(session, todo_id, current_user.user_id)

    query = select(Subtask).where(Subtask.todo_id == todo_id)
    if status is not None:
        query = query.where(Subtask.status == status)
    elif completed is not None:
        query = query.where(
            Subtask.status == TodoStatus.completed if completed else Subtask.status != TodoStatus.completed
        )
    column = SORTABLE_FIELDS.get(sort_by, Subtask.sequence)
    order = column.desc() if sort_order.upper() == "DESC" else column.asc()
    page = max(1, page)
    limit = min(100, max(1, limit))

    subtasks = session.exec(
        query.order_by(order, Subtask.created_at.desc()).offset((page - 1) * limit).limit(limit)
    ).all()
    return SubtaskList(
        subtasks=[SubtaskRead.from_subtask(s) for s in subtasks], todo_status=todo.status
    )


@router.post("/", response_model=SubtaskRead, status_code=201)
def create_subtask(subtask_create: SubtaskCreate, session: SessionDep, current_user: CurrentUserDep):
    """Append a subtask to a todo and roll its status up."""
    title = (subtask_create.title or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="Subtask title is required")
    get_owned_todo(session, subtask_create.todo_id, current_user.user_id)

    subtask = Subtask(
        title=title,
        todo_id=subtask_create.todo_id,
        status=subtask_create.status,
        sequence=next_sequence(session, Subtask.sequence, Subtask.todo_id, subtask_create.todo_id),
    )
    session.add(subtask)
    _commit(session, "create subtask")
    _recompute(session, subtask.todo_id)
    session.refresh(subtask)
    return SubtaskRead.from_subtask(subtask)


@router.put("/reorder", response_model=SubtaskList)
def reorder_subtasks(payload: SubtaskReorder, session: SessionDep, current_user: CurrentUserDep):
    """Rewrite subtask sequences of one todo atomically; returns the full ordered list."""
    todo = get_owned_todo(session, payload.todo_id, current_user.user_id)
    try:
        assignments = parse_assignments(payload.subtasks)
        reorder(session, Subtask, Subtask.todo_id, todo.id, assignments)
    except InvalidInput as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except InvalidMembership as exc:
        raise HTTPException(
            status_code=404,
            detail=f"Subtasks {exc.ids} do not belong to todo {payload.todo_id}",
        )
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return SubtaskList(subtasks=_ordered(session, payload.todo_id))


@router.put("/bulk-status", response_model=SubtaskList)
def set_all_statuses(payload: SubtaskBulkStatus, session: SessionDep, current_user: CurrentUserDep):
    """Give every subtask of a todo the same status."""
    get_owned_todo(session, payload.todo_id, current_user.user_id)
    now = datetime.now(timezone.utc)
    for subtask in session.exec(select(Subtask).where(Subtask.todo_id == payload.todo_id)).all():
        subtask.status = payload.status
        subtask.updated_at = now
        session.add(subtask)
    _commit(session, "update subtask statuses")
    todo_status = _recompute(session, payload.todo_id)
    return SubtaskList(subtasks=_ordered(session, payload.todo_id), todo_status=todo_status)


@router.get("/{subtask_id}", response_model=SubtaskRead)
def get_subtask(subtask_id: int, session: SessionDep, current_user: CurrentUserDep):
    return SubtaskRead.from_subtask(get_owned_subtask(session, subtask_id, current_user.user_id))


@router.put("/{subtask_id}", response_model=SubtaskRead)
def update_subtask(
    subtask_id: int, subtask_update: SubtaskUpdate, session: SessionDep, current_user: CurrentUserDep
):
    """Edit title and/or status."""
    update_data = subtask_update.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(
            status_code=400, detail="At least one field (title or status) must be provided"
        )
    subtask = get_owned_subtask(session, subtask_id, current_user.user_id)

    if "title" in update_data:
        title = (update_data["title"] or "").strip()
        if not title:
            raise HTTPException(status_code=400, detail="Title must be a non-empty string")
        subtask.title = title
    if update_data.get("status") is not None:
        subtask.status = update_data["status"]
    subtask.updated_at = datetime.now(timezone.utc)

    session.add(subtask)
    _commit(session, "update subtask")
    if "status" in update_data:
        _recompute(session, subtask.todo_id)
    session.refresh(subtask)
    return SubtaskRead.from_subtask(subtask)


@router.put("/{subtask_id}/status", response_model=SubtaskStatusResponse)
def update_subtask_status(
    subtask_id: int, payload: SubtaskStatusUpdate, session: SessionDep, current_user: CurrentUserDep
):
    """Set a subtask's status and recompute the parent todo's status."""
    subtask = get_owned_subtask(session, subtask_id, current_user.user_id)
    subtask.status = payload.status
    subtask.updated_at = datetime.now(timezone.utc)
    session.add(subtask)
    _commit(session, "update subtask status")

    todo_status = _recompute(session, subtask.todo_id)
    session.refresh(subtask)
    return SubtaskStatusResponse(subtask=SubtaskRead.from_subtask(subtask), todo_status=todo_status)


@router.delete("/{subtask_id}", status_code=204)
def delete_subtask(subtask_id: int, session: SessionDep, current_user: CurrentUserDep):
    """Delete a subtask; the parent's status is recomputed without it."""
    subtask = get_owned_subtask(session, subtask_id, current_user.user_id)
    todo_id = subtask.todo_id
    session.delete(subtask)
    _commit(session, "delete subtask")
    _recompute(session, todo_id)
    return None
