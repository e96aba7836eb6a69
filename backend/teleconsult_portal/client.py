from __future__ import annotations

import logging
from typing import Any

import httpx

from teleconsult_core.errors import NetworkError, classify_status

from .config import PortalSettings
from .session import SessionCredentials

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


class PortalClient:
    """Async client for the consultation API.

    Every failure is raised as a classified ``PortalError``; httpx exceptions do
    not leave this class.
    """

    def __init__(
        self,
        settings: PortalSettings,
        session: SessionCredentials,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._session = session
        self._client = httpx.AsyncClient(
            base_url=settings.api_url,
            timeout=httpx.Timeout(settings.timeout_seconds, connect=settings.connect_timeout_seconds),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> PortalClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> Any:
        headers: dict[str, str] = {}
        token = self._session.bearer_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("%s %s timed out", method, path)
            raise NetworkError("The consultation service timed out.") from exc
        except httpx.RequestError as exc:
            logger.warning("%s %s failed: %s", method, path, exc.__class__.__name__)
            raise NetworkError() from exc

        if response.status_code >= 400:
            message = _error_message(response)
            logger.info("%s %s -> %s", method, path, response.status_code)
            raise classify_status(response.status_code, message)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            # A 2xx means the command ran, so the raw text is its result, never a retryable error.
            logger.warning("%s %s -> %s returned a non-JSON body", method, path, response.status_code)
            return response.text
