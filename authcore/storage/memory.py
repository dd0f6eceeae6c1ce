from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.common import (
    SecretCipher,
    ensure_aware,
    generate_uuid,
    normalize_email,
    require_credential,
    require_secret_for_enabled,
)
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import RefreshSession, User, utcnow


class MemoryStore:
    """In-process credential and session store.

    Used for tests and single-instance development. State is snapshotted to
    ``<fs_root>/state/memory_store.json`` after each write so a restart keeps
    accounts. All reads and writes hold ``_data_lock``.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/authcore",
        *,
        mfa_encryption_key: str = "authcore-memory-store-development-key",
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        # user_id -> User with two_factor_secret stored encrypted
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, RefreshSession] = {}
        # RLock so helpers can be called while a write already holds the lock
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key)
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _export(self, stored: User) -> User:
        return replace(stored, two_factor_secret=self._cipher.decrypt(stored.two_factor_secret))

    def _find_conflict(
        self,
        email: str,
        username: str,
        oauth_provider: Optional[str],
        oauth_subject: Optional[str],
    ) -> Optional[str]:
        lowered_username = username.lower()
        for existing in self.users.values():
            if existing.email == email:
                return "email"
            if existing.username.lower() == lowered_username:
                return "username"
            if (
                oauth_subject
                and existing.oauth_subject == oauth_subject
                and existing.oauth_provider == oauth_provider
            ):
                return "oauth_subject"
        return None

    # users
    def create_user(
        self,
        email: str,
        username: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        oauth_provider: Optional[str] = None,
        oauth_subject: Optional[str] = None,
    ) -> User:
        require_credential(password_hash, oauth_subject)
        normalized_email = normalize_email(email)
        with self._data_lock:
            conflict = self._find_conflict(
                normalized_email, username, oauth_provider, oauth_subject
            )
            if conflict:
                raise ConstraintViolation(f"{conflict} already exists", {"field": conflict})
            user = User(
                id=generate_uuid(),
                email=normalized_email,
                username=username,
                password_hash=password_hash,
                password_algo=password_algo,
                oauth_provider=oauth_provider,
                oauth_subject=oauth_subject,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._export(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._export(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return self._export(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.username.lower() == lowered), None
            )
            return self._export(user) if user else None

    def get_user_by_oauth(self, provider: str, subject: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.oauth_provider == provider and u.oauth_subject == subject
                ),
                None,
            )
            return self._export(user) if user else None

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.password_algo = password_algo
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def set_two_factor(
        self, user_id: str, secret: Optional[str], enabled: bool
    ) -> Optional[User]:
        require_secret_for_enabled(secret, enabled)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.two_factor_secret = self._cipher.encrypt(secret)
            user.two_factor_enabled = enabled
            user.updated_at = utcnow()
            self._persist_state()
            return self._export(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for token, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(token, None)
            self._persist_state()
            return True

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_days: int = 7,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> RefreshSession:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": user_id})
            sess = RefreshSession.new(
                user_id, ttl_days=ttl_days, user_agent=user_agent, ip_addr=ip_addr
            )
            self.sessions[sess.token] = sess
            self._persist_state()
            return sess

    def consume_session(self, token: str) -> Optional[RefreshSession]:
        with self._data_lock:
            sess = self.sessions.pop(token, None)
            if sess is not None:
                self._persist_state()
            return sess

    def delete_session(self, token: str) -> bool:
        return self.consume_session(token) is not None

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [t for t, s in self.sessions.items() if s.user_id == user_id]
            for token in stale:
                self.sessions.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_user_sessions(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> List[RefreshSession]:
        current = now or utcnow()
        with self._data_lock:
            active = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and not s.is_expired(current)
            ]
        return sorted(active, key=lambda s: s.created_at, reverse=True)

    # persistence
    @staticmethod
    def _serialize_user(user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "password_hash": user.password_hash,
            "password_algo": user.password_algo,
            "oauth_provider": user.oauth_provider,
            "oauth_subject": user.oauth_subject,
            "two_factor_enabled": user.two_factor_enabled,
            "two_factor_secret": user.two_factor_secret,
            "created_at": user.created_at.isoformat(),
            "updated_at": user.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_user(data: Dict[str, Any]) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            username=data["username"],
            password_hash=data.get("password_hash"),
            password_algo=data.get("password_algo"),
            oauth_provider=data.get("oauth_provider"),
            oauth_subject=data.get("oauth_subject"),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            two_factor_secret=data.get("two_factor_secret"),
            created_at=ensure_aware(datetime.fromisoformat(data["created_at"])),
            updated_at=ensure_aware(
                datetime.fromisoformat(data.get("updated_at") or data["created_at"])
            ),
        )

    @staticmethod
    def _serialize_session(sess: RefreshSession) -> Dict[str, Any]:
        return {
            "token": sess.token,
            "user_id": sess.user_id,
            "created_at": sess.created_at.isoformat(),
            "expires_at": sess.expires_at.isoformat(),
            "user_agent": sess.user_agent,
            "ip_addr": sess.ip_addr,
        }

    @staticmethod
    def _deserialize_session(data: Dict[str, Any]) -> RefreshSession:
        return RefreshSession(
            token=data["token"],
            user_id=data["user_id"],
            created_at=ensure_aware(datetime.fromisoformat(data["created_at"])),
            expires_at=ensure_aware(datetime.fromisoformat(data["expires_at"])),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
        )

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["token"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True
