"""Thin persistence layer for users and refresh tokens.

Every database failure is rolled back and re-raised as StorageError with a
message naming the operation that failed.
"""
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from todoflow.exceptions import StorageError
from todoflow.models import RefreshToken, User, utcnow


class BaseRepository:
    def __init__(self, session: Session):
        self.session = session

    def _fail(self, action: str, exc: SQLAlchemyError) -> StorageError:
        self.session.rollback()
        return StorageError(f"Failed to {action}: {exc}")


class UserRepository(BaseRepository):
    def get(self, user_id: int) -> User | None:
        try:
            return self.session.get(User, user_id)
        except SQLAlchemyError as exc:
            raise self._fail("find user by id", exc) from exc

    def find_by_email(self, email: str) -> User | None:
        try:
            return self.session.exec(select(User).where(User.email == email.lower())).first()
        except SQLAlchemyError as exc:
            raise self._fail("find user by email", exc) from exc

    def email_taken(self, email: str, exclude_user_id: int | None = None) -> bool:
        query = select(User.id).where(User.email == email.lower())
        if exclude_user_id is not None:
            query = query.where(User.id != exclude_user_id)
        try:
            return self.session.exec(query).first() is not None
        except SQLAlchemyError as exc:
            raise self._fail("check email availability", exc) from exc

    def create(self, email: str, name: str, hashed_password: str) -> User:
        user = User(email=email.lower(), name=name, hashed_password=hashed_password)
        try:
            self.session.add(user)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("create user", exc) from exc
        self.session.refresh(user)
        return user

    def update(self, user: User, **fields) -> User:
        for key, value in fields.items():
            setattr(user, key, value)
        user.updated_at = utcnow()
        try:
            self.session.add(user)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("update user", exc) from exc
        self.session.refresh(user)
        return user


class RefreshTokenRepository(BaseRepository):
    def find_by_token(self, token: str) -> RefreshToken | None:
        try:
            return self.session.exec(select(RefreshToken).where(RefreshToken.token == token)).first()
        except SQLAlchemyError as exc:
            raise self._fail("find refresh token", exc) from exc

    def find_valid_by_user(self, user_id: int) -> list[RefreshToken]:
        try:
            rows = self.session.exec(
                select(RefreshToken)
                .where(RefreshToken.user_id == user_id, RefreshToken.blacklisted == False)  # noqa: E712
                .order_by(RefreshToken.created_at.desc())
            ).all()
        except SQLAlchemyError as exc:
            raise self._fail("find valid tokens by user id", exc) from exc
        now = utcnow()
        return [row for row in rows if not row.is_expired(now)]

    def create(self, token: str, user_id: int, expires_at: datetime) -> RefreshToken:
        row = RefreshToken(token=token, user_id=user_id, expires_at=expires_at)
        try:
            self.session.add(row)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("create refresh token", exc) from exc
        self.session.refresh(row)
        return row

    def blacklist(self, token: str) -> bool:
        """Blacklist one token; False when no such token exists."""
        row = self.find_by_token(token)
        if row is None:
            return False
        row.blacklisted = True
        row.updated_at = utcnow()
        try:
            self.session.add(row)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("blacklist token", exc) from exc
        return True

    def blacklist_all_for_user(self, user_id: int) -> int:
        try:
            rows = self.session.exec(
                select(RefreshToken).where(
                    RefreshToken.user_id == user_id, RefreshToken.blacklisted == False  # noqa: E712
                )
            ).all()
            now = utcnow()
            for row in rows:
                row.blacklisted = True
                row.updated_at = now
                self.session.add(row)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("blacklist all user tokens", exc) from exc
        return len(rows)

    def _delete_where(self, action: str, *conditions) -> int:
        try:
            rows = self.session.exec(select(RefreshToken).where(*conditions)).all()
            for row in rows:
                self.session.delete(row)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail(action, exc) from exc
        return len(rows)

    def delete_expired(self, now: datetime | None = None) -> int:
        return self._delete_where(
            "delete expired tokens", RefreshToken.expires_at < (now or utcnow())
        )

    def delete_old_blacklisted(self, days_old: int = 30, now: datetime | None = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=days_old)
        return self._delete_where(
            "delete old blacklisted tokens",
            RefreshToken.blacklisted == True,  # noqa: E712
            RefreshToken.updated_at < cutoff,
        )
