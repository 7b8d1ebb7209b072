from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from todoflow.auth import AccessTokenPayload, verify_access_token
from todoflow.auth_service import AuthService
from todoflow.database import SessionDep
from todoflow.exceptions import AccessTokenExpired, AccessTokenInvalid

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def get_current_user(token: Annotated[str, Depends(oauth2_scheme)]) -> AccessTokenPayload:
    """Extract the caller's identity from the bearer access token."""
    try:
        return verify_access_token(token)
    except (AccessTokenExpired, AccessTokenInvalid) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_auth_service(session: SessionDep) -> AuthService:
    return AuthService(session)


CurrentUserDep = Annotated[AccessTokenPayload, Depends(get_current_user)]
AuthServiceDep = Annotated[AuthService, Depends(get_auth_service)]
