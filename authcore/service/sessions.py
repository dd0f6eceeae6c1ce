from __future__ import annotations

from typing import List, Optional

from authcore.logging import get_logger
from authcore.service.errors import InvalidSessionError, SessionExpiredError
from authcore.service.stores import CredentialStore, SessionStore
from authcore.service.tokens import TokenIssuer, TokenPair
from authcore.storage.models import RefreshSession, utcnow

logger = get_logger(__name__)


class SessionRotator:
    """Single-use refresh-token rotation and revocation."""

    def __init__(
        self, store: CredentialStore, sessions: SessionStore, issuer: TokenIssuer
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.issuer = issuer

    def rotate(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> TokenPair:
        """Exchange a refresh token for a new pair.

        The presented token is consumed atomically, so of two concurrent calls
        with the same token only one gets the row back. An expired row is
        consumed as well and is reported as expired.
        """
        consumed = self.sessions.consume_session(refresh_token) if refresh_token else None
        if consumed is None:
            logger.warning("refresh_rejected", reason="unknown_or_reused")
            raise InvalidSessionError()
        if consumed.is_expired(utcnow()):
            logger.info("refresh_rejected", reason="expired", user_id=consumed.user_id)
            raise SessionExpiredError()
        user = self.store.get_user(consumed.user_id)
        if user is None:
            logger.warning("refresh_rejected", reason="user_missing", user_id=consumed.user_id)
            raise InvalidSessionError()
        pair = self.issuer.issue_session(
            user.id,
            user.email,
            user.username,
            user_agent=user_agent or consumed.user_agent,
            ip_addr=ip_addr or consumed.ip_addr,
        )
        logger.info("refresh_rotated", user_id=user.id)
        return pair

    def revoke(self, refresh_token: str) -> None:
        if self.sessions.delete_session(refresh_token):
            logger.info("session_revoked")

    def revoke_all(self, user_id: str) -> int:
        count = self.sessions.delete_user_sessions(user_id)
        if count:
            logger.info("sessions_revoked", user_id=user_id, count=count)
        return count

    def list_sessions(self, user_id: str) -> List[RefreshSession]:
        return self.sessions.list_user_sessions(user_id, now=utcnow())
