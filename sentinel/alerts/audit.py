"""
Optional commit/reveal audit trail for alert reasoning.

The hook is called from background tasks only. Whether it is configured,
slow or failing has no effect on which alerts fire or when they are sent.
"""
import asyncio
import hashlib
import json
import logging
from typing import Any, Dict, Optional, Protocol, Set

from sentinel.alerts.formatters import json_safe
from sentinel.models.alert_models import Alert

logger = logging.getLogger(__name__)


class AuditTrailHook(Protocol):
    async def commit(self, alert: Alert, reasoning: Dict[str, Any]) -> str:
        """Publish a commitment (hash) of the reasoning and return its id."""
        ...

    async def reveal(self, commitment: str, reasoning: Dict[str, Any]) -> None:
        ...


def reasoning_digest(reasoning: Dict[str, Any]) -> str:
    """SHA-256 hex digest of the reasoning as canonical JSON."""
    canonical = json.dumps(json_safe(reasoning), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditRecorder:
    def __init__(self, hook: Optional[AuditTrailHook] = None):
        self.hook = hook
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    @property
    def enabled(self) -> bool:
        return self.hook is not None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _commit(self, alert: Alert, reasoning: Dict[str, Any]) -> Optional[str]:
        try:
            commitment = await self.hook.commit(alert, reasoning)
            logger.info("audit commit alert=%s commitment=%s digest=%s", alert.id, commitment, reasoning_digest(reasoning))
            return commitment
        except Exception as exc:
            self.failures += 1
            logger.warning("audit commit failed alert=%s err=%s", alert.id, exc)
            return None

    async def _reveal(self, commit_task: asyncio.Task, reasoning: Dict[str, Any]):
        commitment = await commit_task
        if not commitment:
            return
        try:
            await self.hook.reveal(commitment, reasoning)
        except Exception as exc:
            self.failures += 1
            logger.warning("audit reveal failed commitment=%s err=%s", commitment, exc)

    def commit(self, alert: Alert, reasoning: Dict[str, Any]) -> Optional[asyncio.Task]:
        if self.hook is None:
            return None
        return self._spawn(self._commit(alert, reasoning))

    def reveal(self, commit_task: Optional[asyncio.Task], reasoning: Dict[str, Any]):
        if self.hook is None or commit_task is None:
            return
        self._spawn(self._reveal(commit_task, reasoning))

    async def drain(self):
        """Wait for outstanding audit calls (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def pending(self) -> int:
        return len(self._tasks)
