from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol
from urllib.parse import urlencode, urlparse

import httpx

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    AuthenticationError,
    BadGatewayError,
    BadRequestError,
    ConflictError,
    ServerError,
)
from authcore.service.profiles import NullProfileClient, ProfileServiceClient
from authcore.service.sessions import SessionRotator
from authcore.service.stores import CredentialStore
from authcore.service.tokens import TokenIssuer, TokenPair
from authcore.storage.common import normalize_email
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import utcnow
from authcore.storage.redis_cache import OAuthState

logger = get_logger(__name__)

OAUTH_STATE_TTL = timedelta(minutes=10)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}


class OAuthStateCache(Protocol):
    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime
    ) -> None: ...

    async def pop_oauth_state(self, state: str) -> Optional[OAuthState]: ...


@dataclass(frozen=True)
class FederatedIdentity:
    provider: str
    subject: str
    email: str
    display_name: Optional[str] = None


@dataclass
class OAuthStart:
    authorization_url: str
    state: str


@dataclass
class FederatedResult:
    tokens: Optional[TokenPair] = None
    temp_token: Optional[str] = None
    needs_username: bool = False


def parse_userinfo(provider: str, userinfo: Any) -> Optional[FederatedIdentity]:
    """Turn a provider's userinfo JSON into a ``FederatedIdentity``.

    Returns ``None`` if the payload lacks a subject id; the email may still be
    empty for GitHub accounts with a private address.
    """
    if not isinstance(userinfo, dict):
        return None
    if provider == "google":
        subject = userinfo.get("id") or userinfo.get("sub")
        name = userinfo.get("name")
    elif provider == "github":
        subject = userinfo.get("id")
        name = userinfo.get("login")
    else:
        return None
    if subject in (None, ""):
        return None
    email = userinfo.get("email")
    return FederatedIdentity(
        provider=provider,
        subject=str(subject),
        email=normalize_email(email) if isinstance(email, str) else "",
        display_name=name if isinstance(name, str) else None,
    )


def _primary_verified_email(emails: Any) -> Optional[str]:
    if not isinstance(emails, list):
        return None
    for entry in emails:
        if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
            email = entry.get("email")
            if isinstance(email, str) and email:
                return email
    return None


class FederatedIdentityLinker:
    """OAuth authorization-code login, matching identities to local accounts.

    Accounts are never merged implicitly: an email that already belongs to a
    local account without this OAuth subject is a conflict.
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        issuer: TokenIssuer,
        rotator: SessionRotator,
        profiles: ProfileServiceClient | NullProfileClient,
        state_cache: OAuthStateCache,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.issuer = issuer
        self.rotator = rotator
        self.profiles = profiles
        self.state_cache = state_cache
        self._transport = transport

    def _get_oauth_credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    def _redirect_uri(self, provider: str) -> str:
        """Callback URL for ``provider``, from its override or the shared template."""
        redirect_uri = self.settings.oauth_redirect_uri_for(provider)
        if not redirect_uri:
            logger.error("oauth_redirect_uri_missing", provider=provider)
            raise ServerError("oauth is not configured")
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"} or not parsed.netloc:
            raise ServerError("oauth is not configured")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ServerError("oauth is not configured")
        return redirect_uri

    def _require_provider(self, provider: str) -> tuple[str, str]:
        if provider not in OAUTH_PROVIDERS:
            raise BadRequestError(f"unsupported oauth provider: {provider}")
        client_id, client_secret = self._get_oauth_credentials(provider)
        if not client_id or not client_secret:
            logger.warning("oauth_not_configured", provider=provider)
            raise BadRequestError(f"oauth provider {provider} is not configured")
        return client_id, client_secret

    async def start(self, provider: str) -> OAuthStart:
        client_id, _ = self._require_provider(provider)
        redirect_uri = self._redirect_uri(provider)
        state = secrets.token_urlsafe(32)
        await self.state_cache.set_oauth_state(state, provider, utcnow() + OAUTH_STATE_TTL)

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "online"
        authorization_url = f"{provider_config['auth_url']}?{urlencode(params)}"
        logger.info("oauth_started", provider=provider)
        return OAuthStart(authorization_url=authorization_url, state=state)

    async def _consume_state(self, provider: str, state: str) -> None:
        entry = await self.state_cache.pop_oauth_state(state) if state else None
        if entry is None:
            logger.warning("oauth_state_invalid", provider=provider, reason="missing")
            raise AuthenticationError("invalid oauth state")
        stored_provider, expires_at = entry
        if stored_provider != provider:
            logger.warning("oauth_state_invalid", provider=provider, reason="provider_mismatch")
            raise AuthenticationError("invalid oauth state")
        if expires_at <= utcnow():
            logger.warning("oauth_state_invalid", provider=provider, reason="expired")
            raise AuthenticationError("invalid oauth state")

    async def _exchange_code(self, provider: str, code: str) -> FederatedIdentity:
        """Trade the authorization code for the provider's view of the user.

        One attempt per request with a bounded timeout; any transport error,
        non-2xx status or malformed payload becomes ``BadGatewayError``.
        """
        client_id, client_secret = self._require_provider(provider)
        provider_config = OAUTH_PROVIDERS[provider]
        token_data = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "redirect_uri": self._redirect_uri(provider),
            "grant_type": "authorization_code",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.oauth_timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise BadGatewayError("oauth provider did not return an access token")

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                identity = parse_userinfo(provider, userinfo_response.json())
                if identity is None:
                    logger.error("oauth_identity_missing_uid", provider=provider)
                    raise BadGatewayError("oauth provider returned an incomplete identity")

                # GitHub hides private addresses from /user
                if provider == "github" and not identity.email:
                    emails_response = await client.get(
                        provider_config["emails_url"], headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        primary = _primary_verified_email(emails_response.json())
                        if primary:
                            identity = FederatedIdentity(
                                provider=identity.provider,
                                subject=identity.subject,
                                email=normalize_email(primary),
                                display_name=identity.display_name,
                            )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_failed",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise BadGatewayError("oauth provider rejected the request") from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_failed", provider=provider, error=str(exc))
            raise BadGatewayError("oauth provider unavailable") from exc
        except ValueError as exc:
            logger.error("oauth_exchange_failed", provider=provider, error="invalid json")
            raise BadGatewayError("oauth provider returned invalid data") from exc

        if not identity.email:
            logger.error("oauth_identity_missing_email", provider=provider)
            raise BadGatewayError("oauth provider returned no email address")
        logger.info("oauth_exchange_succeeded", provider=provider)
        return identity

    async def complete(
        self,
        provider: str,
        code: str,
        state: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> FederatedResult:
        await self._consume_state(provider, state)
        identity = await self._exchange_code(provider, code)

        linked = self.store.get_user_by_oauth(identity.provider, identity.subject)
        if linked is not None:
            self.rotator.revoke_all(linked.id)
            tokens = self.issuer.issue_session(
                linked.id,
                linked.email,
                linked.username,
                user_agent=user_agent,
                ip_addr=ip_addr,
            )
            logger.info("oauth_login_succeeded", provider=provider, user_id=linked.id)
            return FederatedResult(tokens=tokens)

        if self.store.get_user_by_email(identity.email) is not None:
            logger.info("oauth_email_conflict", provider=provider)
            raise ConflictError(
                "an account with this email exists; use password login",
                detail={"field": "email"},
            )

        temp_token = self.issuer.issue_partial_federated(
            identity.subject, identity.email, identity.provider
        )
        logger.info("oauth_username_required", provider=provider)
        return FederatedResult(temp_token=temp_token, needs_username=True)

    async def set_username(
        self,
        temp_token: str,
        username: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> TokenPair:
        partial = self.issuer.verify_partial_federated(temp_token)
        if self.store.get_user_by_username(username) is not None:
            raise ConflictError("username already taken", detail={"field": "username"})
        try:
            user = self.store.create_user(
                partial.email,
                username,
                oauth_provider=partial.provider,
                oauth_subject=partial.oauth_id,
            )
        except ConstraintViolation as exc:
            field = exc.field or "identity"
            raise ConflictError(f"{field} already exists", detail={"field": field}) from exc

        try:
            await self.profiles.create_profile(
                user.id, user.email, user.username, oauth_enabled=True
            )
        except BadGatewayError:
            self.store.delete_user(user.id)
            logger.warning("oauth_registration_rolled_back", user_id=user.id)
            raise

        tokens = self.issuer.issue_session(
            user.id, user.email, user.username, user_agent=user_agent, ip_addr=ip_addr
        )
        logger.info("oauth_user_created", provider=partial.provider, user_id=user.id)
        return tokens
