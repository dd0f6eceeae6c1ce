from __future__ import annotations

from typing import Any, Optional

import httpx

from authcore.logging import get_logger
from authcore.service.errors import BadGatewayError

logger = get_logger(__name__)


class ProfileServiceClient:
    """Client for the profile service's internal endpoints.

    ``create_profile`` is part of registration and raises on failure. Status
    and 2FA updates are notifications: failures are logged, never raised,
    because the credential store stays authoritative for that state.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            follow_redirects=False,
            transport=self._transport,
        )

    async def _send(self, method: str, path: str, payload: dict[str, Any]) -> None:
        async with self._client() as client:
            response = await client.request(method, path, json=payload)
            response.raise_for_status()

    async def create_profile(
        self, user_id: str, email: str, username: str, *, oauth_enabled: bool = False
    ) -> None:
        payload = {
            "authId": user_id,
            "email": email,
            "username": username,
            "oauthEnabled": oauth_enabled,
        }
        try:
            await self._send("POST", "/internal/create-user", payload)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "profile_create_failed",
                user_id=user_id,
                status_code=exc.response.status_code,
            )
            raise BadGatewayError("profile service rejected the account") from exc
        except httpx.HTTPError as exc:
            logger.error("profile_create_failed", user_id=user_id, error=str(exc))
            raise BadGatewayError("profile service unavailable") from exc
        logger.info("profile_created", user_id=user_id)

    async def update_status(self, user_id: str, status: str) -> None:
        await self._notify(
            "/internal/update-user-status", {"userId": user_id, "status": status}, user_id
        )

    async def update_two_factor_state(self, user_id: str, enabled: bool) -> None:
        await self._notify(
            "/internal/update-2fa-state",
            {"userId": user_id, "twoFactorEnabled": enabled},
            user_id,
        )

    async def _notify(self, path: str, payload: dict[str, Any], user_id: str) -> None:
        try:
            await self._send("PATCH", path, payload)
        except httpx.HTTPError as exc:
            logger.warning(
                "profile_notify_failed", path=path, user_id=user_id, error=str(exc)
            )


class NullProfileClient:
    """Stands in when no profile service is configured; only logs."""

    async def create_profile(
        self, user_id: str, email: str, username: str, *, oauth_enabled: bool = False
    ) -> None:
        logger.info("profile_service_disabled", action="create_profile", user_id=user_id)

    async def update_status(self, user_id: str, status: str) -> None:
        logger.debug("profile_service_disabled", action="update_status", user_id=user_id)

    async def update_two_factor_state(self, user_id: str, enabled: bool) -> None:
        logger.debug(
            "profile_service_disabled", action="update_two_factor_state", user_id=user_id
        )
