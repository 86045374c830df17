from __future__ import annotations

import asyncio
import json
import logging
from http import HTTPStatus
from typing import Any, Optional

import aiohttp

from lakehouse_orchestrator.services.auth_service import TokenProvider
from lakehouse_orchestrator.services.errors import ConcurrentUpdateError, GcpApiError, ResourceAlreadyExistsError


logger = logging.getLogger(__name__)


class GcpRestClient:
    """Authenticated JSON calls against Google Cloud REST APIs.

    Every request carries `Authorization: Bearer <token>` and
    `Accept: application/json`. Errors are raised with Google's own error text
    prefixed by "Error <code>:" so transient-error patterns can match them.
    """

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession,
        token_provider: TokenProvider,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._session = session
        self._token_provider = token_provider
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _authorized_request(
        self,
        *,
        method: str,
        url: str,
        params: Optional[dict[str, Any]] = None,
        body: Optional[bytes] = None,
        headers: Optional[dict[str, str]] = None,
        error_cls: type[GcpApiError] = GcpApiError,
    ) -> tuple[int, bytes]:
        token = await self._token_provider.access_token()

        effective_headers: dict[str, str] = {
            "Accept": "application/json",
            "Authorization": f"Bearer {token}",
        }
        if headers:
            effective_headers.update(headers)
        if body is not None:
            effective_headers.setdefault("Content-Type", "application/json")

        try:
            async with self._session.request(
                method.upper(),
                url,
                params=params,
                data=body,
                headers=effective_headers,
                timeout=self._timeout,
            ) as resp:
                return (resp.status, await resp.read())
        except aiohttp.ClientError as exc:
            logger.warning("GCP request failed (method=%s url=%s): %s", method, url, exc)
            raise error_cls(f"Request failed (method={method} url={url}): {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise error_cls(f"Request timed out (method={method} url={url})") from exc

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json_body: Any = None,
        data: Optional[bytes] = None,
        headers: Optional[dict[str, str]] = None,
        error_cls: type[GcpApiError] = GcpApiError,
    ) -> dict[str, Any]:
        body = data
        if json_body is not None:
            body = json.dumps(json_body).encode("utf-8")

        status, payload = await self._authorized_request(
            method=method, url=url, params=params, body=body, headers=headers, error_cls=error_cls
        )

        if HTTPStatus.OK <= status < HTTPStatus.MULTIPLE_CHOICES:
            return self._decode(payload)

        message = self._error_message(status=status, payload=payload)
        if status == HTTPStatus.CONFLICT:
            # ABORTED is an optimistic-concurrency failure (stale etag), not a duplicate.
            if self._error_status(payload) == "ABORTED":
                raise ConcurrentUpdateError(message, status=status, payload=payload)
            raise ResourceAlreadyExistsError(message, status=status, payload=payload)
        raise error_cls(message, status=status, payload=payload)

    @staticmethod
    def _decode(payload: bytes) -> dict[str, Any]:
        if not payload:
            return {}
        try:
            parsed = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return {}
        return parsed if isinstance(parsed, dict) else {"items": parsed}

    @staticmethod
    def _error_message(*, status: int, payload: bytes) -> str:
        # Typical body: {"error": {"code": 400, "message": "...", "status": "INVALID_ARGUMENT"}}
        details = ""
        try:
            parsed = json.loads(payload.decode("utf-8")) if payload else {}
            error = parsed.get("error") if isinstance(parsed, dict) else None
            if isinstance(error, dict):
                details = str(error.get("message") or "")
        except (UnicodeDecodeError, json.JSONDecodeError):
            pass
        if not details:
            details = payload.decode("utf-8", errors="replace") if payload else ""
        return f"Error {status}: {details}".strip()

    @staticmethod
    def _error_status(payload: bytes) -> str:
        try:
            parsed = json.loads(payload.decode("utf-8")) if payload else {}
        except (UnicodeDecodeError, json.JSONDecodeError):
            return ""
        error = parsed.get("error") if isinstance(parsed, dict) else None
        return str(error.get("status") or "") if isinstance(error, dict) else ""
