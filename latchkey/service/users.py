from __future__ import annotations

import dataclasses
import secrets
import threading
import uuid
from typing import Any, Dict, Mapping, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from latchkey.logging import get_logger
from latchkey.storage.errors import ConstraintViolation
from latchkey.storage.models import User

logger = get_logger(__name__)


class UserRepository(Protocol):
    """Boundary to wherever user records actually live.

    The core calls ``get_by`` to resolve an identity from a stored user id and
    ``authenticate`` to check credentials; the remaining methods serve
    extensions (e-mail confirmation, password reset) and the user
    lifecycle helpers.
    """

    def get_by(self, **criteria: Any) -> Optional[Any]: ...

    def authenticate(self, params: Mapping[str, Any]) -> Optional[Any]: ...

    def update(self, user: Any, **changes: Any) -> Any: ...

    def register(self, params: Mapping[str, Any]) -> Any: ...

    def delete(self, user: Any) -> bool: ...


class MemoryUserRepository:
    """Thread-safe in-process user repository with argon2id password hashes."""

    user_id_field = "email"

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self._lock = threading.RLock()
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def create(
        self,
        email: str,
        password: str,
        *,
        user_id: Optional[str] = None,
        require_confirmation: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=user_id or str(uuid.uuid4()),
                email=email,
                password_hash=self._hash_password(password),
                email_confirmation_token=(
                    secrets.token_urlsafe(24) if require_confirmation else None
                ),
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
        logger.info("user_created", user_id=user.id)
        return user

    def register(self, params: Mapping[str, Any]) -> User:
        """Create a user from submitted form params.

        Raises :class:`ConstraintViolation` naming the offending field.
        """
        email = str(params.get("email") or "").strip()
        password = params.get("password") or ""
        if not email:
            raise ConstraintViolation("email is required", {"field": "email"})
        if not password:
            raise ConstraintViolation("password is required", {"field": "password"})
        return self.create(email, password)

    def get_by(self, **criteria: Any) -> Optional[User]:
        if not criteria:
            return None
        with self._lock:
            if set(criteria) == {"id"}:
                return self.users.get(str(criteria["id"]))
            for user in self.users.values():
                if all(getattr(user, name, None) == value for name, value in criteria.items()):
                    return user
        return None

    def authenticate(self, params: Mapping[str, Any]) -> Optional[User]:
        login_value = params.get(self.user_id_field)
        password = params.get("password")
        if not login_value or not password:
            return None
        user = self.get_by(**{self.user_id_field: login_value})
        if not user or not user.password_hash:
            return None
        try:
            self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", user_id=user.id)
            return None
        return user

    def update(self, user: User, **changes: Any) -> User:
        if "email" in changes:
            owner = self.get_by(email=changes["email"])
            if owner is not None and owner.id != user.id:
                raise ConstraintViolation("email already exists", {"field": "email"})
        if "password" in changes:
            changes["password_hash"] = self._hash_password(changes.pop("password"))
        with self._lock:
            updated = dataclasses.replace(self.users.get(user.id, user), **changes)
            self.users[updated.id] = updated
        return updated

    def delete(self, user: User) -> bool:
        with self._lock:
            return self.users.pop(user.id, None) is not None


__all__ = ["UserRepository", "MemoryUserRepository"]
