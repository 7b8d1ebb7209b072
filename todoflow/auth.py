import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel

from todoflow.config import get_settings
from todoflow.exceptions import AccessTokenExpired, AccessTokenInvalid


class AccessTokenPayload(BaseModel):
    """Identity carried by an access token."""
    user_id: int
    email: str
    name: str


def create_access_token(
    user_id: int, email: str, name: str, expires_delta: Optional[timedelta] = None
) -> str:
    """Create a signed JWT access token for a user."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode = {
        "sub": str(user_id),
        "user_id": user_id,
        "email": email,
        "name": name,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": now,
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def verify_access_token(token: str) -> AccessTokenPayload:
    """Validate signature, expiry, issuer and audience; no database lookup."""
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
        )
    except ExpiredSignatureError as exc:
        raise AccessTokenExpired("Access token expired") from exc
    except JWTError as exc:
        raise AccessTokenInvalid("Invalid access token") from exc

    try:
        return AccessTokenPayload(
            user_id=payload["user_id"], email=payload["email"], name=payload["name"]
        )
    except (KeyError, ValueError) as exc:
        raise AccessTokenInvalid("Invalid access token") from exc


def generate_refresh_token() -> str:
    """256 random bits, hex encoded."""
    return secrets.token_hex(32)


def refresh_token_expiry(now: Optional[datetime] = None) -> datetime:
    days = get_settings().refresh_token_expire_days
    return (now or datetime.now(timezone.utc)) + timedelta(days=days)
