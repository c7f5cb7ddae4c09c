from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from stepflow.config import Settings
from stepflow.logging import get_logger
from stepflow.storage.models import Session, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def create_user(
        self, email: str, handle: Optional[str] = None, *, is_active: bool = True, meta: Optional[dict] = None
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(
        self, user_id: str, ttl_minutes: int = 60 * 24, user_agent: str | None = None, *, meta: Optional[dict] = None
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    session_id: Optional[str] = None


class AuthService:
    """Password signup/login and opaque session tokens."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def signup(
        self,
        email: str,
        password: str,
        handle: Optional[str] = None,
        *,
        user_agent: Optional[str] = None,
    ) -> tuple[User, Session]:
        user = self.store.create_user(email=email, handle=handle)
        self.save_password(user.id, password)
        session = self.store.create_session(
            user.id,
            ttl_minutes=self.settings.session_ttl_minutes,
            user_agent=user_agent,
        )
        self.logger.info("user_signed_up", user_id=user.id)
        return user, session

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
    ) -> tuple[Optional[User], Optional[Session]]:
        user = self.store.get_user_by_email(email)
        if not user or not user.is_active or not self.verify_password(user.id, password):
            return None, None
        session = self.store.create_session(
            user.id,
            ttl_minutes=self.settings.session_ttl_minutes,
            user_agent=user_agent,
        )
        return user, session

    async def revoke(self, session_id: str) -> None:
        self.store.revoke_session(session_id)

    async def resolve_session(self, session_id: Optional[str]) -> Optional[AuthContext]:
        if not session_id:
            return None
        session = self.store.get_session(session_id)
        if not session:
            return None
        if session.is_expired(self._now()):
            self.logger.info("session_expired", session_id=session_id)
            self.store.revoke_session(session_id)
            return None
        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            return None
        return AuthContext(user_id=user.id, session_id=session.id)

    async def authenticate(
        self, authorization: Optional[str], session_id: Optional[str]
    ) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if token:
            ctx = await self.resolve_session(token)
            if ctx:
                return ctx
        return await self.resolve_session(session_id)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
