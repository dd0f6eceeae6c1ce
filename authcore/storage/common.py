"""Storage helpers shared between the memory and Postgres backends.

Both backends enforce the same identity invariants and encrypt TOTP secrets
the same way, so a record written by one reads identically through the other.
"""

from __future__ import annotations

import base64
import hashlib
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger
from authcore.storage.models import RefreshSession, User

logger = get_logger(__name__)


def generate_uuid() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    return email.strip().lower()


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def require_credential(
    password_hash: Optional[str], oauth_subject: Optional[str]
) -> None:
    """A user must be able to authenticate somehow: password, OAuth, or both."""
    if not password_hash and not oauth_subject:
        raise ValueError("user requires a password hash or an oauth subject")


def require_secret_for_enabled(secret: Optional[str], enabled: bool) -> None:
    if enabled and not secret:
        raise ValueError("two-factor cannot be enabled without a secret")


class SecretCipher:
    """Fernet wrapper for TOTP secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("secret encryption key material is required")
        try:
            self._fernet = Fernet(self._derive_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize secret cipher") from exc

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            # A rotated key makes the stored secret unusable; the user must re-enrol.
            logger.warning("two_factor_secret_decrypt_failed")
            return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    if row is None:
        return default
    if isinstance(row, Mapping):
        return row.get(key, default)
    return getattr(row, key, default)


def row_to_user(row: Mapping[str, Any], cipher: SecretCipher) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        username=row["username"],
        password_hash=safe_row_value(row, "password_hash"),
        password_algo=safe_row_value(row, "password_algo"),
        oauth_provider=safe_row_value(row, "oauth_provider"),
        oauth_subject=safe_row_value(row, "oauth_subject"),
        two_factor_enabled=bool(safe_row_value(row, "two_factor_enabled", False)),
        two_factor_secret=cipher.decrypt(safe_row_value(row, "two_factor_secret")),
        created_at=ensure_aware(row["created_at"]),
        updated_at=ensure_aware(safe_row_value(row, "updated_at") or row["created_at"]),
    )


def row_to_session(row: Mapping[str, Any]) -> RefreshSession:
    return RefreshSession(
        token=row["token"],
        user_id=str(row["user_id"]),
        created_at=ensure_aware(row["created_at"]),
        expires_at=ensure_aware(row["expires_at"]),
        user_agent=safe_row_value(row, "user_agent"),
        ip_addr=safe_row_value(row, "ip_addr"),
    )
