# src/guardian_sync/server/auth.py

"""
Auth service boundary: password hashing, bearer tokens, account linking.

Tokens are HS256 JWTs carrying {"id", "role"}; the same token authenticates
REST calls and the notification channel handshake.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta

import bcrypt
import jwt

from ..core.errors import (
    AlreadyExistsError,
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ValidationError,
)
from ..core.ports import TaskRepo
from ..tasks.task_models import Role, User, new_id, utc_now

logger = logging.getLogger(__name__)

_JWT_ALGORITHM = "HS256"


def generate_code() -> str:
    """Short unguessable connect code for a dependent (8 upper-case hex chars)."""
    return secrets.token_hex(4).upper()


class AuthService:
    def __init__(self, repo: TaskRepo, *, secret: str, token_ttl_hours: int = 24) -> None:
        self._repo = repo
        self._secret = secret
        self._ttl = timedelta(hours=max(1, int(token_ttl_hours)))

    # ---- tokens ----

    def issue_token(self, user: User) -> str:
        now = utc_now()
        payload = {
            "id": user.id,
            "role": user.role.value,
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttl).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=_JWT_ALGORITHM)

    def verify_token(self, token: str | None) -> User:
        """Decode a bearer token and load its user. Raises AuthenticationError."""
        if not token:
            raise AuthenticationError("Authorization required")
        try:
            claims = jwt.decode(token, self._secret, algorithms=[_JWT_ALGORITHM])
        except jwt.PyJWTError as e:
            logger.debug("Token rejected: %s", e)
            raise AuthenticationError("Invalid token") from e

        user = self._repo.get_user(str(claims.get("id") or ""))
        if user is None:
            raise AuthenticationError("Invalid token")
        return user

    # ---- accounts ----

    def register(self, *, name: str, password: str, role: str) -> tuple[User, str]:
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required")
        if not password:
            raise ValidationError("password is required")
        try:
            parsed_role = Role(role)
        except ValueError as e:
            raise ValidationError("role must be 'guardian' or 'dependent'") from e

        if self._repo.get_user_by_name(name) is not None:
            raise AlreadyExistsError("A user with this name already exists")

        pw_hash = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
        user = User(
            id=new_id(),
            name=name,
            password_hash=pw_hash,
            role=parsed_role,
            code=generate_code() if parsed_role == Role.DEPENDENT else None,
        )
        self._repo.add_user(user)
        logger.info("Registered user id=%s role=%s", user.id, user.role.value)
        return user, self.issue_token(user)

    def login(self, *, name: str, password: str) -> tuple[User, str]:
        user = self._repo.get_user_by_name((name or "").strip())
        if user is None or not password:
            raise AuthenticationError("Invalid name or password")
        if not bcrypt.checkpw(password.encode("utf-8"), user.password_hash.encode("utf-8")):
            raise AuthenticationError("Invalid name or password")
        logger.info("Login user id=%s", user.id)
        return user, self.issue_token(user)

    def link(self, guardian: User, code: str) -> User:
        """
        Link the dependent owning `code` to `guardian`.

        Linking the same pair again is a no-op success; a dependent already
        linked to a different guardian is rejected (linkage is irreversible).
        """
        if guardian.role != Role.GUARDIAN:
            raise AuthorizationError("Only a guardian can link a dependent")

        dependent = self._repo.get_user_by_code((code or "").strip().upper())
        if dependent is None:
            raise NotFoundError("Unknown dependent code")

        if dependent.guardian_id == guardian.id:
            return dependent
        if dependent.guardian_id:
            raise AlreadyExistsError("This dependent is already linked to a guardian")

        if not self._repo.link_dependent(dependent.id, guardian.id):
            # Lost a race with another guardian between the read and the write.
            current = self._repo.get_user(dependent.id)
            if current is not None and current.guardian_id == guardian.id:
                return current
            raise AlreadyExistsError("This dependent is already linked to a guardian")

        dependent.guardian_id = guardian.id
        logger.info("Linked dependent=%s to guardian=%s", dependent.id, guardian.id)
        return dependent
