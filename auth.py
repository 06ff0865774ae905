from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from config import get_settings
from errors import NotAuthenticated, ValidationError
from models import User
from schemas import CredentialsIn

MIN_PASSWORD_LENGTH = 8
DUPLICATE_EMAIL = "An account with this email already exists"


@dataclass(frozen=True)
class SessionContext:
    user_id: int
    email: str


def require_user(user: Optional[SessionContext]) -> SessionContext:
    if user is None or not user.user_id:
        raise NotAuthenticated("Not authenticated")
    return user


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="session")


def issue_session_token(user: User) -> str:
    return _serializer().dumps({"u": user.id, "e": user.email})


def load_session(session: Session, token: Optional[str]) -> SessionContext:
    if not token:
        raise NotAuthenticated("Not authenticated")
    max_age = get_settings().session_max_age_hours * 3600
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired as exc:
        raise NotAuthenticated("Session expired") from exc
    except BadSignature as exc:
        raise NotAuthenticated("Invalid session token") from exc

    user = session.get(User, data.get("u"))
    if not user:
        raise NotAuthenticated("Not authenticated")
    return SessionContext(user_id=user.id, email=user.email)


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _find(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(func.lower(User.email) == email.lower())
        )

    def register(self, data: CredentialsIn) -> User:
        # stored lower-cased so the unique index is case-insensitive
        email = data.email.strip().lower()
        if not email or "@" not in email:
            raise ValidationError("A valid email is required")
        if len(data.password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        if self._find(email):
            raise ValidationError(DUPLICATE_EMAIL)
        user = User(email=email, password_hash=generate_password_hash(data.password))
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            # a concurrent signup took the address between the check and the insert
            self.session.rollback()
            raise ValidationError(DUPLICATE_EMAIL) from exc
        self.session.refresh(user)
        return user

    def authenticate(self, data: CredentialsIn) -> User:
        user = self._find(data.email.strip())
        if not user or not check_password_hash(user.password_hash, data.password):
            raise NotAuthenticated("Invalid email or password")
        return user

    @staticmethod
    def context_for(user: User) -> SessionContext:
        return SessionContext(user_id=user.id, email=user.email)
