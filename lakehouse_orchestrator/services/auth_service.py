from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Optional, Protocol, Sequence

import google.auth
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request

from lakehouse_orchestrator.services.errors import OrchestratorError


logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class TokenProviderError(OrchestratorError):
    pass


class TokenProvider(Protocol):
    async def access_token(self) -> str: ...


class StaticTokenProvider:
    """Bearer token handed in from outside (env var, CI secret, test fixture)."""

    def __init__(self, token: str) -> None:
        if not token or not token.strip():
            raise ValueError("token must be provided")
        self._token = token.strip()

    async def access_token(self) -> str:
        return self._token


class GoogleAuthTokenProvider:
    """Access tokens from Application Default Credentials.

    Credentials are resolved on first use and refreshed whenever they are no
    longer valid. google-auth is blocking, so resolution and refresh run in a
    worker thread.
    """

    def __init__(self, *, scopes: Sequence[str] = (CLOUD_PLATFORM_SCOPE,)) -> None:
        self._scopes = list(scopes)
        self._credentials: Any = None
        self._lock = asyncio.Lock()

    async def access_token(self) -> str:
        async with self._lock:
            try:
                if self._credentials is None:
                    self._credentials, project = await asyncio.to_thread(google.auth.default, scopes=self._scopes)
                    logger.info("Using application default credentials (project=%s)", project)
                if not self._credentials.valid:
                    await asyncio.to_thread(self._credentials.refresh, Request())
            except GoogleAuthError as exc:
                logger.exception("Failed obtaining Google Cloud credentials")
                raise TokenProviderError(f"Failed obtaining Google Cloud credentials: {exc}") from exc

            token: Optional[str] = self._credentials.token
            if not token:
                raise TokenProviderError("Google Cloud credentials returned an empty access token")
            return token


def token_provider_from_env() -> TokenProvider:
    token = os.getenv("GOOGLE_OAUTH_ACCESS_TOKEN")
    if token:
        return StaticTokenProvider(token)
    return GoogleAuthTokenProvider()
