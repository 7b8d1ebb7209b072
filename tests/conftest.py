import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel

from todoflow import models  # noqa: F401
from todoflow.database import create_db_engine, get_session
from todoflow.main import app
from todoflow.models import Todo, User

PASSWORD = "Secret123!"


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(name="engine")
def engine_fixture():
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="client")
def client_fixture(session: Session):
    app.dependency_overrides[get_session] = lambda: session
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="register_user")
def register_user_fixture():
    def register(client: TestClient, email="alice@example.com", name="Alice", password=PASSWORD):
        response = client.post(
            "/api/auth/register", json={"email": email, "name": name, "password": password}
        )
        assert response.status_code == 201, response.text
        return response.json()

    return register


@pytest.fixture(name="auth_client")
def auth_client_fixture(client: TestClient, register_user):
    """Client registered as alice, sending her access token on every request."""
    data = register_user(client)
    client.headers["Authorization"] = f"Bearer {data['accessToken']}"
    return client


@pytest.fixture(name="other_client")
def other_client_fixture(client: TestClient, register_user):
    """A second user, bob, with his own cookie jar."""
    other = TestClient(app)
    data = register_user(other, email="bob@example.com", name="Bob")
    other.headers["Authorization"] = f"Bearer {data['accessToken']}"
    return other


@pytest.fixture(name="user")
def user_fixture(session: Session) -> User:
    user = User(name="Carol", email="carol@example.com", hashed_password="not-a-real-hash")
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture(name="todo")
def todo_fixture(session: Session, user: User) -> Todo:
    todo = Todo(title="Plan trip", user_id=user.id, sequence=1)
    session.add(todo)
    session.commit()
    session.refresh(todo)
    return todo
