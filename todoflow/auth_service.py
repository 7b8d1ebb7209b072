"""Registration, login and the access/refresh token lifecycle.

Refresh tokens move from issued to blacklisted (logout, revoke) or expired
(time passing, noticed when the token is next presented). Neither state can
be left. Refreshing issues a new access token and keeps the refresh token.
"""
import logging
from dataclasses import dataclass

from sqlmodel import Session

from todoflow.auth import create_access_token, generate_refresh_token, refresh_token_expiry
from todoflow.exceptions import (
    Conflict,
    InvalidCredentials,
    InvalidInput,
    InvalidOrExpiredToken,
    TokenNotFound,
    UserNotFound,
)
from todoflow.models import RefreshToken, User, utcnow
from todoflow.repositories import RefreshTokenRepository, UserRepository
from todoflow.security import hash_password, password_problems, validate_email, verify_password

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class AuthResult:
    user: User
    tokens: TokenPair


class AuthService:
    def __init__(self, session: Session):
        self.users = UserRepository(session)
        self.refresh_tokens = RefreshTokenRepository(session)

    def register(self, email: str, name: str, password: str) -> AuthResult:
        email = (email or "").strip()
        name = (name or "").strip()
        if not email or not name or not password:
            raise InvalidInput("All fields are required")
        if not validate_email(email):
            raise InvalidInput("Invalid email format")
        problems = password_problems(password)
        if problems:
            raise InvalidInput("Password does not meet requirements: " + "; ".join(problems))
        if self.users.find_by_email(email):
            raise Conflict("User with this email already exists")

        user = self.users.create(email=email, name=name, hashed_password=hash_password(password))
        logger.info(f"Registered user {user.id}")
        return AuthResult(user=user, tokens=self.issue_token_pair(user))

    def login(self, email: str, password: str) -> AuthResult:
        if not email or not password:
            raise InvalidInput("Email and password are required")
        user = self.users.find_by_email(email.strip())
        if user is None or not verify_password(password, user.hashed_password):
            raise InvalidCredentials("Invalid email or password")

        self.users.update(user, last_login_at=utcnow())
        return AuthResult(user=user, tokens=self.issue_token_pair(user))

    def issue_token_pair(self, user: User) -> TokenPair:
        """Sign an access token and persist a brand new refresh token.

        Earlier refresh tokens of the user stay valid, so several sessions
        can coexist.
        """
        access_token = create_access_token(user.id, user.email, user.name)
        refresh_token = generate_refresh_token()
        self.refresh_tokens.create(
            token=refresh_token, user_id=user.id, expires_at=refresh_token_expiry()
        )
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    def refresh_access_token(self, refresh_token: str) -> str:
        """Exchange a valid refresh token for a new access token."""
        row = self.refresh_tokens.find_by_token(refresh_token)
        if row is None:
            logger.info("Refresh rejected: token not found")
            raise InvalidOrExpiredToken("Invalid or expired refresh token")
        if row.blacklisted:
            logger.info(f"Refresh rejected: token {row.id} is blacklisted")
            raise InvalidOrExpiredToken("Invalid or expired refresh token")
        if row.is_expired():
            logger.info(f"Refresh rejected: token {row.id} expired at {row.expires_at}")
            raise InvalidOrExpiredToken("Invalid or expired refresh token")

        user = self.users.get(row.user_id)
        if user is None:
            logger.warning(f"Refresh rejected: user {row.user_id} of token {row.id} no longer exists")
            raise UserNotFound("User not found")
        return create_access_token(user.id, user.email, user.name)

    def logout(self, refresh_token: str) -> bool:
        """Blacklist the token if it exists. Unknown tokens are not an error."""
        if self.refresh_tokens.find_by_token(refresh_token) is None:
            return False
        return self.refresh_tokens.blacklist(refresh_token)

    def blacklist_token(self, refresh_token: str) -> None:
        if not self.refresh_tokens.blacklist(refresh_token):
            raise TokenNotFound("Token not found")

    def blacklist_all_for_user(self, user_id: int) -> int:
        """Sign out everywhere; returns how many tokens were revoked."""
        count = self.refresh_tokens.blacklist_all_for_user(user_id)
        logger.info(f"Blacklisted {count} refresh tokens for user {user_id}")
        return count

    def active_sessions(self, user_id: int) -> list[RefreshToken]:
        return self.refresh_tokens.find_valid_by_user(user_id)

    def cleanup_tokens(self, blacklisted_days_old: int = 30) -> int:
        """Delete expired tokens and blacklisted tokens older than the cutoff."""
        expired = self.refresh_tokens.delete_expired()
        blacklisted = self.refresh_tokens.delete_old_blacklisted(blacklisted_days_old)
        logger.info(f"Token cleanup removed {expired} expired and {blacklisted} blacklisted tokens")
        return expired + blacklisted
