from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError
from authcore.service.stores import SessionStore

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
TEMP_TOKEN_TYPE = "temp"
PARTIAL_OAUTH_TOKEN_TYPE = "partial_oauth"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass
class AccessClaims:
    sub: str
    email: str
    username: str
    iat: int
    exp: int


@dataclass
class PartialIdentity:
    """OAuth subject waiting for a username before an account exists."""

    oauth_id: str
    email: str
    provider: str


class TokenIssuer:
    """Signs and verifies HS256 tokens and mints store-backed refresh tokens.

    Access tokens are stateless and live ``access_token_ttl_minutes``. Temp and
    partial-OAuth tokens authorise exactly one follow-up step. Refresh tokens
    are opaque and only meaningful through the session store.
    """

    def __init__(self, settings: Settings, sessions: SessionStore) -> None:
        if not settings.jwt_secret:
            raise RuntimeError("token issuer requires a signing secret")
        self.settings = settings
        self.sessions = sessions
        self._secret = settings.jwt_secret.encode()

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    def issue_session(
        self,
        user_id: str,
        email: str,
        username: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> TokenPair:
        access_token = self._issue(
            {"sub": user_id, "email": email, "username": username},
            token_type=ACCESS_TOKEN_TYPE,
            ttl_seconds=self.access_ttl_seconds,
        )
        session = self.sessions.create_session(
            user_id,
            ttl_days=self.settings.refresh_token_ttl_days,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        logger.info("session_issued", user_id=user_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=session.token,
            expires_in=self.access_ttl_seconds,
        )

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._verify(token, ACCESS_TOKEN_TYPE)
        sub, email, username = (payload.get(k) for k in ("sub", "email", "username"))
        if not (
            isinstance(sub, str) and sub
            and isinstance(email, str) and email
            and isinstance(username, str) and username
        ):
            logger.warning("access_token_missing_claims")
            raise AuthenticationError("invalid token")
        return AccessClaims(
            sub=sub,
            email=email,
            username=username,
            iat=int(payload.get("iat") or 0),
            exp=int(payload["exp"]),
        )

    def issue_temp(self, user_id: str) -> str:
        return self._issue(
            {"sub": user_id},
            token_type=TEMP_TOKEN_TYPE,
            ttl_seconds=self.settings.temp_token_ttl_minutes * 60,
        )

    def verify_temp(self, token: str) -> str:
        payload = self._verify(token, TEMP_TOKEN_TYPE)
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise AuthenticationError("invalid token")
        return sub

    def issue_partial_federated(self, oauth_id: str, email: str, provider: str) -> str:
        return self._issue(
            {"sub": oauth_id, "email": email, "provider": provider},
            token_type=PARTIAL_OAUTH_TOKEN_TYPE,
            ttl_seconds=self.settings.temp_token_ttl_minutes * 60,
        )

    def verify_partial_federated(self, token: str) -> PartialIdentity:
        payload = self._verify(token, PARTIAL_OAUTH_TOKEN_TYPE)
        oauth_id, email, provider = (payload.get(k) for k in ("sub", "email", "provider"))
        if not all(isinstance(v, str) and v for v in (oauth_id, email, provider)):
            raise AuthenticationError("invalid token")
        return PartialIdentity(oauth_id=oauth_id, email=email, provider=provider)

    def _issue(self, claims: dict[str, Any], *, token_type: str, ttl_seconds: int) -> str:
        now = int(time.time())
        payload = {
            **claims,
            "type": token_type,
            "iss": self.settings.jwt_issuer,
            "iat": now,
            "exp": now + ttl_seconds,
        }
        return self._encode_jwt(payload)

    def _verify(self, token: str, expected_type: str) -> dict[str, Any]:
        payload = self._decode_jwt(token) if token else None
        if payload is None:
            raise AuthenticationError("invalid token")
        if payload.get("type") != expected_type:
            logger.warning(
                "token_type_mismatch", expected=expected_type, actual=payload.get("type")
            )
            raise AuthenticationError("invalid token")
        return payload

    # HS256 compact serialisation
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        # compact JWTs are base64url; hmac.compare_digest only takes ASCII str
        if not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 before checking the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload
