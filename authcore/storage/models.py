from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

# 64 random bytes, hex encoded: 512 bits of entropy
REFRESH_TOKEN_BYTES = 64


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    username: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    oauth_provider: Optional[str] = None
    oauth_subject: Optional[str] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def has_pending_two_factor(self) -> bool:
        return bool(self.two_factor_secret) and not self.two_factor_enabled


@dataclass
class RefreshSession:
    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_days: int = 7,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        now: datetime | None = None,
    ) -> "RefreshSession":
        issued = now or utcnow()
        return cls(
            token=secrets.token_hex(REFRESH_TOKEN_BYTES),
            user_id=user_id,
            created_at=issued,
            expires_at=issued + timedelta(days=ttl_days),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())
