import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from todoflow.exceptions import InvalidInput, InvalidMembership, StorageError
from todoflow.models import Subtask, Todo, User
from todoflow.ordering import SequenceAssignment, next_sequence, parse_assignments, reorder


def _make_todos(session: Session, user: User, count: int) -> list[Todo]:
    todos = [Todo(title=f"Todo {i}", user_id=user.id, sequence=i) for i in range(1, count + 1)]
    session.add_all(todos)
    session.commit()
    for todo in todos:
        session.refresh(todo)
    return todos


def _sequences(session: Session, user: User) -> dict[int, int]:
    todos = session.exec(select(Todo).where(Todo.user_id == user.id)).all()
    return {todo.id: todo.sequence for todo in todos}


def test_next_sequence_starts_at_one(session: Session, todo: Todo):
    assert next_sequence(session, Subtask.sequence, Subtask.todo_id, todo.id) == 1


def test_next_sequence_follows_max(session: Session, user: User):
    _make_todos(session, user, 3)
    session.add(Todo(title="Far away", user_id=user.id, sequence=10))
    session.commit()

    assert next_sequence(session, Todo.sequence, Todo.user_id, user.id) == 11


def test_next_sequence_is_scoped(session: Session, user: User):
    other = User(name="Dave", email="dave@example.com", hashed_password="x")
    session.add(other)
    session.commit()
    _make_todos(session, user, 4)

    assert next_sequence(session, Todo.sequence, Todo.user_id, other.id) == 1


def test_parse_assignments_accepts_numeric_strings():
    parsed = parse_assignments([{"id": "3", "sequence": 1}, {"id": 4, "sequence": 2.0}])
    assert parsed == [SequenceAssignment(id=3, sequence=1), SequenceAssignment(id=4, sequence=2)]


@pytest.mark.parametrize(
    "items, message",
    [
        ([], "non-empty"),
        ("nope", "non-empty"),
        ([{"id": 1, "sequence": 1}, 7], "index 1 must be an object"),
        ([{"sequence": 1}], "index 0 is missing 'id'"),
        ([{"id": 1}], "index 0 is missing 'sequence'"),
        ([{"id": "abc", "sequence": 1}], "invalid 'id'"),
        ([{"id": 1, "sequence": True}], "invalid 'sequence'"),
        ([{"id": 1, "sequence": 1.5}], "invalid 'sequence'"),
    ],
)
def test_parse_assignments_rejects_bad_input(items, message):
    with pytest.raises(InvalidInput, match=message):
        parse_assignments(items)


def test_reorder_applies_listed_and_keeps_others(session: Session, user: User):
    a, b, c = _make_todos(session, user, 3)

    updated = reorder(
        session,
        Todo,
        Todo.user_id,
        user.id,
        [SequenceAssignment(a.id, 5), SequenceAssignment(b.id, 2)],
    )

    assert updated == 2
    assert _sequences(session, user) == {a.id: 5, b.id: 2, c.id: 3}


def test_reorder_is_all_or_nothing(session: Session, user: User):
    other = User(name="Eve", email="eve@example.com", hashed_password="x")
    session.add(other)
    session.commit()
    mine = _make_todos(session, user, 2)
    theirs = Todo(title="Not yours", user_id=other.id, sequence=1)
    session.add(theirs)
    session.commit()
    before = _sequences(session, user)

    with pytest.raises(InvalidMembership) as excinfo:
        reorder(
            session,
            Todo,
            Todo.user_id,
            user.id,
            [SequenceAssignment(mine[0].id, 9), SequenceAssignment(theirs.id, 1)],
        )

    assert excinfo.value.ids == [theirs.id]
    session.expire_all()
    assert _sequences(session, user) == before


def test_reorder_rejects_unknown_ids(session: Session, todo: Todo):
    with pytest.raises(InvalidMembership):
        reorder(session, Subtask, Subtask.todo_id, todo.id, [SequenceAssignment(999, 1)])


def test_reorder_rolls_back_when_commit_fails(session: Session, user: User, monkeypatch):
    a, b = _make_todos(session, user, 2)
    before = _sequences(session, user)

    def failing_commit():
        # the new sequences reach the database before the commit fails
        session.flush()
        raise OperationalError("UPDATE todos", {}, Exception("disk I/O error"))

    monkeypatch.setattr(session, "commit", failing_commit)
    with pytest.raises(StorageError):
        reorder(
            session,
            Todo,
            Todo.user_id,
            user.id,
            [SequenceAssignment(a.id, 7), SequenceAssignment(b.id, 8)],
        )
    monkeypatch.undo()

    assert _sequences(session, user) == before


def test_parse_assignments_can_allow_empty():
    assert parse_assignments([], allow_empty=True) == []
    with pytest.raises(InvalidInput):
        parse_assignments("nope", allow_empty=True)


def test_reorder_nothing(session: Session, user: User):
    assert reorder(session, Todo, Todo.user_id, user.id, []) == 0
