from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Optional
from urllib.parse import quote, urlencode

import qrcode

from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError, BadRequestError, ConflictError
from authcore.service.profiles import NullProfileClient, ProfileServiceClient
from authcore.service.sessions import SessionRotator
from authcore.service.stores import CredentialStore
from authcore.service.tokens import TokenIssuer, TokenPair

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
# 160-bit shared secret
TOTP_SECRET_BYTES = 20
# adjacent steps accepted for clock skew
TOTP_WINDOW = 1


@dataclass
class TOTPProvisioning:
    otpauth_url: str
    qr_payload: str
    secret_base32: str


def new_secret() -> str:
    return base64.b32encode(os.urandom(TOTP_SECRET_BYTES)).decode("ascii").rstrip("=")


def qr_data_url(payload: str) -> str:
    """PNG QR code for ``payload`` as a ``data:`` URL an <img> tag can show."""
    img = qrcode.make(payload)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def generate_code(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``timestamp``; empty string for a malformed secret."""
    normalized = secret.replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_code(
    secret: str,
    code: str,
    *,
    at: Optional[float] = None,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_INTERVAL,
) -> bool:
    if not secret or not code or len(code) != TOTP_DIGITS:
        return False
    if not (code.isascii() and code.isdigit()):
        return False
    now = time.time() if at is None else at
    for step in range(-window, window + 1):
        generated = generate_code(secret, now + step * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


class TOTPAuthenticator:
    """Two-factor enrolment and step-up verification with time-based codes."""

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        rotator: SessionRotator,
        profiles: ProfileServiceClient | NullProfileClient,
        *,
        mfa_issuer: str = "AuthCore",
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.rotator = rotator
        self.profiles = profiles
        self.mfa_issuer = mfa_issuer

    # helpers kept public for callers that verify codes outside a flow
    generate_code = staticmethod(generate_code)
    verify_code = staticmethod(verify_code)

    def _otpauth_url(self, email: str, secret: str) -> str:
        label = quote(f"{self.mfa_issuer}:{email}", safe="@:")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.mfa_issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{params}"

    def setup(self, user_id: str, email: str) -> TOTPProvisioning:
        """Start enrolment; a repeated setup replaces a still-pending secret."""
        user = self.store.get_user(user_id)
        if user is None:
            raise AuthenticationError("invalid token")
        if user.two_factor_enabled:
            raise ConflictError("two-factor authentication already enabled")
        secret = new_secret()
        self.store.set_two_factor(user_id, secret, False)
        url = self._otpauth_url(email, secret)
        logger.info("totp_setup_started", user_id=user_id)
        return TOTPProvisioning(
            otpauth_url=url, qr_payload=qr_data_url(url), secret_base32=secret
        )

    async def confirm(self, user_id: str, code: str) -> None:
        user = self.store.get_user(user_id)
        if user is None:
            raise AuthenticationError("invalid token")
        if user.two_factor_enabled:
            raise ConflictError("two-factor authentication already enabled")
        if not user.has_pending_two_factor:
            raise BadRequestError("two-factor setup has not been started")
        if not verify_code(user.two_factor_secret, code):
            logger.info("totp_confirm_failed", user_id=user_id)
            raise AuthenticationError("invalid code")
        self.store.set_two_factor(user_id, user.two_factor_secret, True)
        await self.profiles.update_two_factor_state(user_id, True)
        logger.info("totp_enabled", user_id=user_id)

    async def disable(self, user_id: str) -> None:
        if self.store.set_two_factor(user_id, None, False) is None:
            raise AuthenticationError("invalid token")
        await self.profiles.update_two_factor_state(user_id, False)
        logger.info("totp_disabled", user_id=user_id)

    def verify_step_up(
        self,
        temp_token: str,
        code: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> TokenPair:
        user_id = self.issuer.verify_temp(temp_token)
        user = self.store.get_user(user_id)
        # a vanished user or secret is reported like a bad code
        if user is None or not user.two_factor_enabled or not user.two_factor_secret:
            logger.warning("totp_step_up_rejected", reason="no_secret", user_id=user_id)
            raise AuthenticationError("invalid code")
        if not verify_code(user.two_factor_secret, code):
            logger.info("totp_step_up_rejected", reason="bad_code", user_id=user_id)
            raise AuthenticationError("invalid code")
        self.rotator.revoke_all(user.id)
        tokens = self.issuer.issue_session(
            user.id, user.email, user.username, user_agent=user_agent, ip_addr=ip_addr
        )
        logger.info("totp_step_up_succeeded", user_id=user.id)
        return tokens
