"""Roll subtask statuses up into the status of their parent todo.

A todo's ``status`` always equals :func:`determine_parent_status` applied to
its current subtasks. The database does not enforce this; every code path
that changes a subtask's status (create, update, delete, bulk set) calls
:func:`refresh_todo_status` afterwards.
"""
import logging
from collections import Counter
from collections.abc import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from todoflow.exceptions import NotFound, StorageError
from todoflow.models import Subtask, Todo, TodoStatus, utcnow

logger = logging.getLogger(__name__)

_KNOWN_STATUSES = {status.value for status in TodoStatus}


def determine_parent_status(statuses: Iterable[str]) -> TodoStatus:
    """Map a multiset of subtask statuses to the parent todo status.

    Rules, first match wins:

    1. no subtasks -> not_started
    2. all completed -> completed
    3. all not_started -> not_started
    4. any in_progress or on_hold -> in_progress
    5. anything else (completed mixed with not_started) -> in_progress

    Unknown status strings are left out of the per-status counts but still
    count toward the total, so they can never make a todo completed.
    """
    statuses = list(statuses)
    total = len(statuses)
    if total == 0:
        return TodoStatus.not_started

    values = [getattr(status, "value", status) for status in statuses]
    counts = Counter(TodoStatus(value) for value in values if value in _KNOWN_STATUSES)

    if counts[TodoStatus.completed] == total:
        return TodoStatus.completed
    if counts[TodoStatus.not_started] == total:
        return TodoStatus.not_started
    if counts[TodoStatus.in_progress] > 0 or counts[TodoStatus.on_hold] > 0:
        return TodoStatus.in_progress
    return TodoStatus.in_progress


def refresh_todo_status(session: Session, todo_id: int) -> TodoStatus:
    """Recompute and persist the status of ``todo_id`` from its subtasks.

    The todo row is written even when the status did not change.
    """
    todo = session.get(Todo, todo_id)
    if todo is None:
        raise NotFound(f"Todo {todo_id} not found")

    statuses = session.exec(select(Subtask.status).where(Subtask.todo_id == todo_id)).all()
    new_status = determine_parent_status(statuses)

    todo.status = new_status
    todo.updated_at = utcnow()
    try:
        session.add(todo)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Failed to update todo status for todo {todo_id}: {exc}")
        raise StorageError(f"Failed to update todo status for todo {todo_id}: {exc}") from exc

    session.refresh(todo)
    logger.debug(f"Todo {todo_id} status recomputed from {len(statuses)} subtasks: {new_status.value}")
    return new_status
