from __future__ import annotations

import asyncio
import logging

from lakehouse_orchestrator.services.retry_service import Sleep


logger = logging.getLogger(__name__)


class ReadinessGate:
    """Fixed-duration wait where the platform gives no completion signal.

    Used after API enablement/IAM propagation and after the workflows finish.
    Cannot fail; when disabled (tests, dry runs) it returns immediately.
    """

    def __init__(self, *, enabled: bool = True, sleep: Sleep = asyncio.sleep) -> None:
        self._enabled = enabled
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def wait(self, duration: float, *, reason: str = "") -> None:
        if duration <= 0:
            return
        if not self._enabled:
            logger.info("Readiness gate disabled; skipping %.0fs wait (%s)", duration, reason or "unspecified")
            return

        logger.info("Waiting %.0fs for readiness (%s)", duration, reason or "unspecified")
        await self._sleep(duration)
