from fastapi.testclient import TestClient

from todoflow.main import app

PASSWORD = "Secret123!"


def test_register(client: TestClient):
    response = client.post(
        "/api/auth/register",
        json={"email": "alice@example.com", "name": "Alice", "password": PASSWORD},
    )
    assert response.status_code == 201
    data = response.json()
    assert data["user"] == {"id": data["user"]["id"], "name": "Alice", "email": "alice@example.com"}
    assert "accessToken" in data
    assert "hashed_password" not in data["user"]
    assert client.cookies.get("refreshToken")


def test_register_duplicate_email(client: TestClient, register_user):
    register_user(client)
    response = client.post(
        "/api/auth/register",
        json={"email": "alice@example.com", "name": "Alice", "password": PASSWORD},
    )
    assert response.status_code == 409
    assert response.json()["detail"] == "User with this email already exists"


def test_register_weak_password(client: TestClient):
    response = client.post(
        "/api/auth/register",
        json={"email": "alice@example.com", "name": "Alice", "password": "password"},
    )
    assert response.status_code == 400
    assert "Password does not meet requirements" in response.json()["detail"]


def test_register_missing_field_is_bad_request(client: TestClient):
    response = client.post("/api/auth/register", json={"email": "alice@example.com"})
    assert response.status_code == 400
    assert isinstance(response.json()["detail"], list)


def test_login(client: TestClient, register_user):
    register_user(client)
    client.cookies.clear()

    response = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
    )
    assert response.status_code == 200
    assert response.json()["user"]["email"] == "alice@example.com"
    assert client.cookies.get("refreshToken")


def test_login_bad_credentials(client: TestClient, register_user):
    register_user(client)
    response = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": "Wrong123!"}
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"


def test_me_requires_token(client: TestClient):
    assert client.get("/api/auth/me").status_code == 401


def test_me_with_garbage_token(client: TestClient):
    response = client.get("/api/auth/me", headers={"Authorization": "Bearer nonsense"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid access token"


def test_me(auth_client: TestClient):
    response = auth_client.get("/api/auth/me")
    assert response.status_code == 200
    assert response.json()["name"] == "Alice"


def test_update_me(auth_client: TestClient, other_client: TestClient):
    response = auth_client.put("/api/auth/me", json={"name": "Alice Cooper"})
    assert response.status_code == 200
    assert response.json()["name"] == "Alice Cooper"

    taken = auth_client.put("/api/auth/me", json={"email": "bob@example.com"})
    assert taken.status_code == 409

    empty = auth_client.put("/api/auth/me", json={})
    assert empty.status_code == 400


def test_access_token_from_cookie(client: TestClient, register_user):
    register_user(client)
    response = client.get("/api/auth/access-token")
    assert response.status_code == 200
    assert response.json()["accessToken"]


def test_access_token_from_header(client: TestClient, register_user):
    register_user(client)
    refresh_token = client.cookies.get("refreshToken")

    fresh = TestClient(app)
    response = fresh.get("/api/auth/access-token", headers={"x-refresh-token": refresh_token})
    assert response.status_code == 200

    me = fresh.get(
        "/api/auth/me", headers={"Authorization": f"Bearer {response.json()['accessToken']}"}
    )
    assert me.json()["email"] == "alice@example.com"


def test_refresh_from_body(client: TestClient, register_user):
    register_user(client)
    refresh_token = client.cookies.get("refreshToken")
    client.cookies.clear()

    response = client.post("/api/auth/refresh", json={"refreshToken": refresh_token})
    assert response.status_code == 200
    assert response.json()["accessToken"]


def test_access_token_without_refresh_token(client: TestClient):
    response = client.get("/api/auth/access-token")
    assert response.status_code == 401
    assert response.json()["detail"] == "Refresh token is required"


def test_logout_revokes_refresh_token(client: TestClient, register_user):
    register_user(client)
    refresh_token = client.cookies.get("refreshToken")

    response = client.post("/api/auth/logout")
    assert response.status_code == 200
    assert response.json() == {"message": "Logged out successfully"}
    assert client.cookies.get("refreshToken") is None

    again = client.get("/api/auth/access-token", headers={"x-refresh-token": refresh_token})
    assert again.status_code == 401
    assert again.json()["detail"].startswith("Token refresh failed")


def test_logout_without_token_still_succeeds(client: TestClient):
    response = client.post("/api/auth/logout")
    assert response.status_code == 200

    unknown = client.post("/api/auth/logout", json={"refreshToken": "deadbeef"})
    assert unknown.status_code == 200


def test_logout_all_and_sessions(auth_client: TestClient):
    auth_client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
    )
    sessions = auth_client.get("/api/auth/sessions")
    assert sessions.status_code == 200
    assert len(sessions.json()) == 2

    response = auth_client.post("/api/auth/logout-all")
    assert response.json() == {"revoked": 2}
    assert auth_client.get("/api/auth/sessions").json() == []
    assert auth_client.get("/api/auth/access-token").status_code == 401


def test_health(client: TestClient):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert "X-Process-Time" in response.headers
