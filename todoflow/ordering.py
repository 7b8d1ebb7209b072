"""Sequence allocation and bulk reordering for todos and subtasks.

Todos are ordered within their owner, subtasks within their parent todo.
``sequence`` is a sort hint: uniqueness and contiguity are not enforced.
"""
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from todoflow.exceptions import InvalidInput, InvalidMembership, StorageError
from todoflow.models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SequenceAssignment:
    id: int
    sequence: int


def next_sequence(session: Session, column, scope_column, scope_value: int) -> int:
    """Return max(sequence) + 1 within the scope, or 1 when it is empty.

    Read-then-write without a lock: two concurrent creates in the same scope
    can both get the same value.
    """
    current = session.exec(select(func.max(column)).where(scope_column == scope_value)).one()
    return (current or 0) + 1


def _coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def parse_assignments(items: list[Any], allow_empty: bool = False) -> list[SequenceAssignment]:
    """Validate raw ``{id, sequence}`` entries; reject the whole batch on any bad entry."""
    if not isinstance(items, list) or (not items and not allow_empty):
        raise InvalidInput("Provide a non-empty array of objects with id and sequence fields")

    assignments = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise InvalidInput(f"Entry at index {index} must be an object")
        for key in ("id", "sequence"):
            if key not in item:
                raise InvalidInput(f"Entry at index {index} is missing '{key}' field")
        entity_id = _coerce_int(item["id"])
        if entity_id is None:
            raise InvalidInput(f"Entry at index {index} has invalid 'id' field: {item['id']!r}")
        sequence = _coerce_int(item["sequence"])
        if sequence is None:
            raise InvalidInput(
                f"Entry at index {index} has invalid 'sequence' field: {item['sequence']!r}"
            )
        assignments.append(SequenceAssignment(id=entity_id, sequence=sequence))
    return assignments


def reorder(
    session: Session,
    model: type[SQLModel],
    scope_column,
    scope_value: int,
    assignments: list[SequenceAssignment],
) -> int:
    """Overwrite the sequence of every listed entity in one transaction.

    Raises InvalidMembership, before touching anything, if any id is outside
    the scope. Entities in the scope that are not listed keep their sequence.
    Returns the number of assignments applied.
    """
    if not assignments:
        return 0
    requested = [a.id for a in assignments]
    entities = session.exec(
        select(model).where(model.id.in_(requested), scope_column == scope_value)
    ).all()
    by_id = {entity.id: entity for entity in entities}

    missing = sorted({entity_id for entity_id in requested if entity_id not in by_id})
    if missing:
        raise InvalidMembership(missing, scope=f"{scope_column.key}={scope_value}")

    now = utcnow()
    try:
        for assignment in assignments:
            entity = by_id[assignment.id]
            entity.sequence = assignment.sequence
            entity.updated_at = now
            session.add(entity)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Reorder of {model.__name__} in {scope_column.key}={scope_value} rolled back: {exc}")
        raise StorageError(f"Failed to reorder {model.__name__}: {exc}") from exc

    logger.info(f"Reordered {len(assignments)} {model.__name__} rows in {scope_column.key}={scope_value}")
    return len(assignments)
