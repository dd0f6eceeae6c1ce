from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from authcore.storage.models import RefreshSession, User


class CredentialStore(Protocol):
    """Owns user identity rows.

    ``create_user`` raises ``ConstraintViolation`` when email, username or the
    (provider, subject) pair is already taken; that constraint, not a prior
    lookup, is what serialises concurrent registrations.
    """

    def create_user(
        self,
        email: str,
        username: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        oauth_provider: Optional[str] = None,
        oauth_subject: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_oauth(self, provider: str, subject: str) -> Optional[User]: ...

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> bool: ...

    def set_two_factor(
        self, user_id: str, secret: Optional[str], enabled: bool
    ) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...


class SessionStore(Protocol):
    """Owns refresh-session rows."""

    def create_session(
        self,
        user_id: str,
        ttl_days: int = 7,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> RefreshSession: ...

    def consume_session(self, token: str) -> Optional[RefreshSession]:
        """Atomically delete and return the row; ``None`` if another caller got it first."""
        ...

    def delete_session(self, token: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def list_user_sessions(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> List[RefreshSession]: ...


class AuthStore(CredentialStore, SessionStore, Protocol):
    """Both contracts; the bundled backends implement them together."""
