"""Username/password authentication with server-side login sessions."""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import bcrypt
from fastapi import Depends, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings
from .database import LoginSession
from .errors import Conflict, Unauthorized, ValidationError, handle_service_error
from .models.user import User

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid username or password"


def hash_password(password: str, rounds: int = 12) -> str:
    """Hash password using bcrypt. Input beyond bcrypt's 72-byte limit is ignored."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode("utf-8")[:72], salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:72], password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


class Authenticator:
    """Registers users and manages the sessions that gate the rest of the app."""

    def __init__(self, session_factory: sessionmaker, settings: Settings) -> None:
        self.session_factory = session_factory
        self.cookie_name = settings.session_cookie_name
        self.session_ttl = timedelta(minutes=settings.session_ttl_minutes)
        self.bcrypt_rounds = settings.bcrypt_rounds
        # unknown usernames are verified against this so every failed login runs bcrypt
        self._dummy_hash = hash_password(secrets.token_urlsafe(16), self.bcrypt_rounds)

    def register(self, username: str, password: str) -> int:
        """Create a user and return its id. Does not log the user in."""
        if not username or not password:
            raise ValidationError("Username and password are required")

        session: Session = self.session_factory()
        try:
            if session.query(User).filter(User.username == username).first():
                raise Conflict("Username already exists")
            user = User(
                username=username,
                password_hash=hash_password(password, self.bcrypt_rounds),
            )
            session.add(user)
            session.commit()
            logger.info("registered user %s", username)
            return user.id
        except IntegrityError as exc:
            # lost a race with a concurrent registration of the same name
            session.rollback()
            raise Conflict("Username already exists") from exc
        except Exception as exc:
            handle_service_error(session, exc, "Registration failed")
        finally:
            session.close()

    def login(self, username: str, password: str) -> LoginSession:
        """Verify credentials and open a new session for the user."""
        session: Session = self.session_factory()
        try:
            user = None
            if username and password:
                user = session.query(User).filter(User.username == username).first()
            if user is None:
                verify_password(password or "", self._dummy_hash)
            if user is None or not verify_password(password, user.password_hash):
                logger.warning("failed login for %s", username)
                raise Unauthorized(INVALID_CREDENTIALS)

            now = datetime.utcnow()
            record = LoginSession(
                token=secrets.token_urlsafe(32),
                user_id=user.id,
                username=user.username,
                created_at=now,
                expires_at=now + self.session_ttl,
            )
            session.add(record)
            session.commit()
            logger.info("user %s logged in", user.username)
            return record
        except Exception as exc:
            handle_service_error(session, exc, "Login failed")
        finally:
            session.close()

    def logout(self, token: Optional[str]) -> None:
        """Destroy the session bound to ``token``, if any."""
        if not token:
            return
        session: Session = self.session_factory()
        try:
            session.query(LoginSession).filter(LoginSession.token == token).delete()
            session.commit()
        except Exception as exc:
            handle_service_error(session, exc, "Failed to end session")
        finally:
            session.close()

    def resolve(self, token: Optional[str]) -> Optional[LoginSession]:
        """Return the live session for ``token``; expired sessions are removed."""
        if not token:
            return None
        session: Session = self.session_factory()
        try:
            record = session.get(LoginSession, token)
            if record is None:
                return None
            if record.expires_at <= datetime.utcnow():
                session.delete(record)
                session.commit()
                logger.info("session for %s expired", record.username)
                return None
            return record
        except Exception as exc:
            handle_service_error(session, exc)
        finally:
            session.close()

    def auth_status(self, token: Optional[str]) -> Dict[str, Any]:
        record = self.resolve(token)
        if record is None:
            return {"authenticated": False}
        return {"authenticated": True, "username": record.username}


def get_authenticator(request: Request) -> Authenticator:
    return request.app.state.authenticator


def session_token(request: Request) -> Optional[str]:
    return request.cookies.get(get_authenticator(request).cookie_name)


def current_session(
    request: Request, token: Optional[str] = Depends(session_token)
) -> Optional[LoginSession]:
    """Session bound to the request, or ``None``. Page routes redirect on ``None``."""
    return get_authenticator(request).resolve(token)


def require_user(
    record: Optional[LoginSession] = Depends(current_session),
) -> LoginSession:
    """Gate for JSON routes: a missing session is a 401, never a redirect."""
    if record is None:
        raise Unauthorized("Authentication required")
    return record
