from __future__ import annotations

import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from .database import Database
from .errors import Conflict, InvalidArgument, NotFound, Unauthorized
from .models import SessionToken, User, UserRole

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
TOKEN_EXPIRY_MINUTES = 12 * 60
MIN_PASSWORD_LENGTH = 8
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class AuthService:
    database: Database

    def register_user(
        self,
        name: str,
        email: str,
        password: str,
        *,
        role: UserRole = UserRole.TECHNICIAN,
    ) -> User:
        normalized = self._normalize_email(email)
        if not name.strip():
            raise InvalidArgument("Name cannot be empty.")
        self._check_password(password)
        if self.database.get_user_by_email(normalized):
            raise Conflict("An account with this email already exists.")
        user = self.database.add_user(name.strip(), normalized, self._hash_password(password), role)
        logger.info("Registered user %s with role %s", user.email, role.value)
        return user

    def authenticate(self, email: str, password: str) -> Optional[SessionToken]:
        normalized = email.strip().lower()
        user = self.database.get_user_by_email(normalized)
        if not user:
            return None
        if not self._verify_password(password, user.password_hash):
            return None
        token = secrets.token_urlsafe(TOKEN_BYTES)
        expires_at = _utcnow() + timedelta(minutes=TOKEN_EXPIRY_MINUTES)
        return self.database.add_session_token(user.id, token, expires_at)

    def get_user_for_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        session = self.database.get_session_token(token)
        if not session:
            return None
        if session.expires_at < _utcnow():
            return None
        return self.database.get_user(session.user_id)

    def logout(self, token: str) -> None:
        self.database.delete_session_token(token)

    # User administration
    def list_users(self, *, requester: User) -> List[User]:
        self.require_admin(requester)
        return self.database.list_users()

    def create_user(
        self,
        *,
        requester: User,
        name: str,
        email: str,
        password: str,
        role: UserRole,
    ) -> User:
        self.require_admin(requester)
        return self.register_user(name, email, password, role=role)

    def update_user(
        self,
        *,
        requester: User,
        user_id: int,
        name: str,
        email: str,
        role: UserRole,
    ) -> User:
        self.require_admin(requester)
        user = self.database.get_user(user_id)
        if not user:
            raise NotFound("User not found.")
        normalized = self._normalize_email(email)
        existing = self.database.get_user_by_email(normalized)
        if existing and existing.id != user_id:
            raise Conflict("An account with this email already exists.")
        if user.role == UserRole.ADMIN and role != UserRole.ADMIN:
            admins = self.database.list_users_by_roles([UserRole.ADMIN])
            if len(admins) <= 1:
                raise Conflict("At least one administrator must remain.")
        updated = self.database.update_user(user_id, name=name.strip(), email=normalized, role=role)
        assert updated is not None
        return updated

    def reset_password(self, *, requester: User, user_id: int, new_password: str) -> None:
        if requester.id != user_id:
            self.require_admin(requester)
        if not self.database.get_user(user_id):
            raise NotFound("User not found.")
        self._check_password(new_password)
        self.database.update_user_password(user_id, self._hash_password(new_password))

    def delete_user(self, *, requester: User, user_id: int) -> None:
        self.require_admin(requester)
        if requester.id == user_id:
            raise Conflict("You cannot delete your own account.")
        if not self.database.get_user(user_id):
            raise NotFound("User not found.")
        if self.database.count_inspections_for_technician(user_id):
            raise Conflict("User has recorded inspections and cannot be deleted.")
        if not self.database.delete_user_unless_last_admin(user_id):
            raise Conflict("At least one administrator must remain.")
        logger.info("User %s deleted by %s", user_id, requester.email)

    @staticmethod
    def require_admin(user: User) -> None:
        if user.role != UserRole.ADMIN:
            raise Unauthorized("Administrator access required.")

    @staticmethod
    def require_role(user: User, *roles: UserRole) -> None:
        if user.role not in roles:
            raise Unauthorized("You do not have permission to perform this action.")

    @staticmethod
    def _normalize_email(email: str) -> str:
        normalized = email.strip().lower()
        if not EMAIL_PATTERN.match(normalized):
            raise InvalidArgument("A valid email address is required.")
        return normalized

    @staticmethod
    def _check_password(password: str) -> None:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidArgument(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")

    def _hash_password(self, password: str) -> str:
        salt = secrets.token_hex(16)
        digest = hashlib.sha256(f"{salt}:{password}".encode("utf-8")).hexdigest()
        return f"{salt}${digest}"

    def _verify_password(self, password: str, stored: str) -> bool:
        try:
            salt, digest = stored.split("$", 1)
        except ValueError:
            return False
        check = hashlib.sha256(f"{salt}:{password}".encode("utf-8")).hexdigest()
        return secrets.compare_digest(check, digest)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
