import logging

from fastapi import APIRouter, HTTPException, Request, Response, status

from todoflow.config import get_settings
from todoflow.dependencies import AuthServiceDep, CurrentUserDep
from todoflow.exceptions import (
    Conflict,
    InvalidCredentials,
    InvalidInput,
    InvalidOrExpiredToken,
    StorageError,
    UserNotFound,
)
from todoflow.models import (
    AccessTokenResponse,
    AuthResponse,
    LoginRequest,
    RefreshTokenBody,
    SessionRead,
    UserCreate,
    UserRead,
    UserUpdate,
)
from todoflow.security import validate_email

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)


def set_refresh_cookie(response: Response, refresh_token: str):
    settings = get_settings()
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        max_age=settings.refresh_token_expire_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def clear_refresh_cookie(response: Response):
    settings = get_settings()
    response.delete_cookie(
        settings.refresh_cookie_name,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def _refresh_token_from(request: Request, body: RefreshTokenBody | None, header: bool) -> str | None:
    """Cookie first, then request body, then (optionally) the x-refresh-token header."""
    token = request.cookies.get(get_settings().refresh_cookie_name)
    if not token and body is not None:
        token = body.refresh_token
    if not token and header:
        token = request.headers.get("x-refresh-token")
    return token or None


@router.post("/register", response_model=AuthResponse, status_code=201)
def register(user_data: UserCreate, response: Response, auth: AuthServiceDep):
    """Create an account and start a session."""
    try:
        result = auth.register(user_data.email, user_data.name, user_data.password)
    except InvalidInput as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except Conflict as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    set_refresh_cookie(response, result.tokens.refresh_token)
    return AuthResponse(
        user=UserRead.model_validate(result.user), access_token=result.tokens.access_token
    )


@router.post("/login", response_model=AuthResponse)
def login(credentials: LoginRequest, response: Response, auth: AuthServiceDep):
    """Authenticate with email and password; the refresh token is set as a cookie."""
    try:
        result = auth.login(credentials.email, credentials.password)
    except InvalidInput as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except InvalidCredentials as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        )

    set_refresh_cookie(response, result.tokens.refresh_token)
    return AuthResponse(
        user=UserRead.model_validate(result.user), access_token=result.tokens.access_token
    )


@router.post("/logout")
def logout(request: Request, response: Response, auth: AuthServiceDep, body: RefreshTokenBody | None = None):
    """Blacklist the presented refresh token. Always succeeds for the caller."""
    refresh_token = _refresh_token_from(request, body, header=False)
    if refresh_token:
        try:
            auth.logout(refresh_token)
        except StorageError:
            logger.exception("Logout could not blacklist the refresh token")
    clear_refresh_cookie(response)
    return {"message": "Logged out successfully"}


def _refresh(auth, refresh_token: str | None) -> AccessTokenResponse:
    if not refresh_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token is required",
        )
    try:
        access_token = auth.refresh_access_token(refresh_token)
    except (InvalidOrExpiredToken, UserNotFound) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Token refresh failed: {exc}",
        )
    return AccessTokenResponse(access_token=access_token)


@router.get("/access-token", response_model=AccessTokenResponse)
def access_token(request: Request, auth: AuthServiceDep, body: RefreshTokenBody | None = None):
    """New access token from the refresh token in cookie, body or x-refresh-token header."""
    return _refresh(auth, _refresh_token_from(request, body, header=True))


@router.post("/refresh", response_model=AccessTokenResponse)
def refresh(request: Request, auth: AuthServiceDep, body: RefreshTokenBody | None = None):
    return _refresh(auth, _refresh_token_from(request, body, header=False))


@router.post("/logout-all")
def logout_all(response: Response, current_user: CurrentUserDep, auth: AuthServiceDep):
    """Revoke every refresh token of the current user."""
    revoked = auth.blacklist_all_for_user(current_user.user_id)
    clear_refresh_cookie(response)
    return {"revoked": revoked}


@router.get("/sessions", response_model=list[SessionRead])
def list_sessions(current_user: CurrentUserDep, auth: AuthServiceDep):
    return auth.active_sessions(current_user.user_id)


@router.get("/me", response_model=UserRead)
def read_current_user(current_user: CurrentUserDep, auth: AuthServiceDep):
    """Return current authenticated user info."""
    user = auth.users.get(current_user.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.put("/me", response_model=UserRead)
def update_current_user(user_update: UserUpdate, current_user: CurrentUserDep, auth: AuthServiceDep):
    user = auth.users.get(current_user.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")

    changes = {}
    if user_update.name and user_update.name.strip():
        changes["name"] = user_update.name.strip()
    if user_update.email and user_update.email.strip():
        email = user_update.email.strip()
        if not validate_email(email):
            raise HTTPException(status_code=400, detail="Invalid email format")
        if auth.users.email_taken(email, exclude_user_id=user.id):
            raise HTTPException(status_code=409, detail="Email is already taken")
        changes["email"] = email.lower()
    if not changes:
        raise HTTPException(status_code=400, detail="No valid fields to update")

    return auth.users.update(user, **changes)
