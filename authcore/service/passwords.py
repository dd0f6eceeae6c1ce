from __future__ import annotations

import contextlib
import secrets
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from authcore.logging import get_logger
from authcore.service.errors import (
    AuthenticationError,
    BadGatewayError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
)
from authcore.service.profiles import NullProfileClient, ProfileServiceClient
from authcore.service.sessions import SessionRotator
from authcore.service.stores import CredentialStore
from authcore.service.tokens import TokenIssuer, TokenPair
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class LoginResultType(str, Enum):
    SESSION = "SESSION"
    TEMP = "TEMP"


@dataclass
class LoginResult:
    type: LoginResultType
    tokens: Optional[TokenPair] = None
    temp_token: Optional[str] = None


class PasswordAuthenticator:
    """Email and password login, registration and password changes."""

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        rotator: SessionRotator,
        profiles: ProfileServiceClient | NullProfileClient,
        *,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.rotator = rotator
        self.profiles = profiles
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _check_password(self, user: User, password: str) -> bool:
        if not user.has_password:
            return False
        if user.password_algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=user.password_algo)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _burn_verification(self, password: str) -> None:
        """Spend one argon2 verification so unknown emails cost the same as known ones."""
        with self._dummy_lock:
            if self._dummy_hash is None:
                self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(24))
            dummy = self._dummy_hash
        with contextlib.suppress(VerifyMismatchError):
            self._pwd_hasher.verify(dummy, password)

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if user is None:
            self._burn_verification(password)
            logger.info("login_failed", reason="invalid_credentials")
            raise InvalidCredentialsError()
        if not self._check_password(user, password):
            logger.info("login_failed", reason="invalid_credentials", user_id=user.id)
            raise InvalidCredentialsError()

        if user.two_factor_enabled:
            logger.info("login_step_up_required", user_id=user.id)
            return LoginResult(
                type=LoginResultType.TEMP, temp_token=self.issuer.issue_temp(user.id)
            )

        # One active session per user
        self.rotator.revoke_all(user.id)
        tokens = self.issuer.issue_session(
            user.id, user.email, user.username, user_agent=user_agent, ip_addr=ip_addr
        )
        logger.info("login_succeeded", user_id=user.id)
        return LoginResult(type=LoginResultType.SESSION, tokens=tokens)

    async def register(self, email: str, password: str, username: str) -> User:
        """Create a password account and its profile.

        The lookups below only short-circuit the common case; the store's
        unique constraints decide concurrent registrations. If the profile
        service refuses the account, the credential record is deleted again
        and the caller gets a 502.
        """
        if self.store.get_user_by_email(email) is not None:
            raise ConflictError("email already registered", detail={"field": "email"})
        if self.store.get_user_by_username(username) is not None:
            raise ConflictError("username already taken", detail={"field": "username"})

        password_hash, algo = self._hash_password(password)
        try:
            user = self.store.create_user(
                email, username, password_hash=password_hash, password_algo=algo
            )
        except ConstraintViolation as exc:
            field = exc.field or "identity"
            raise ConflictError(f"{field} already exists", detail={"field": field}) from exc

        try:
            await self.profiles.create_profile(user.id, user.email, user.username)
        except BadGatewayError:
            self.store.delete_user(user.id)
            logger.warning("registration_rolled_back", user_id=user.id)
            raise
        logger.info("user_registered", user_id=user.id)
        return user

    async def update_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        if not self._check_password(user, current_password):
            logger.info("password_change_failed", user_id=user_id)
            raise AuthenticationError("invalid credentials")
        password_hash, algo = self._hash_password(new_password)
        if not self.store.update_password(user_id, password_hash, algo):
            raise NotFoundError("user not found")
        revoked = self.rotator.revoke_all(user_id)
        logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)

    async def logout(self, access_token: str) -> int:
        """Revoke every refresh session of the token's subject."""
        claims = self.issuer.verify_access(access_token)
        revoked = self.rotator.revoke_all(claims.sub)
        await self.profiles.update_status(claims.sub, "offline")
        logger.info("logout", user_id=claims.sub, sessions_revoked=revoked)
        return revoked
