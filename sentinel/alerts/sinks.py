import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from sentinel.alerts import formatters
from sentinel.errors import SinkDeliveryError
from sentinel.models.alert_models import Alert, SinkType, WebhookConfig

logger = logging.getLogger(__name__)

RETRY_BASE_SEC = 1.0
RETRY_MAX_SEC = 10.0
HEADERS = {"Content-Type": "application/json", "User-Agent": formatters.USER_AGENT}


def retry_delay(attempt: int, base_sec: float = RETRY_BASE_SEC, max_sec: float = RETRY_MAX_SEC) -> float:
    """Delay before retry number `attempt` (1-based): 1s, 2s, 4s ... capped."""
    return min(base_sec * (2 ** (attempt - 1)), max_sec)


def build_payload(sink: WebhookConfig, alert: Alert, now: float) -> Dict[str, Any]:
    if sink.type == SinkType.DISCORD:
        payload = formatters.format_discord(alert)
    elif sink.type == SinkType.TELEGRAM:
        payload = formatters.format_telegram(alert)
    else:
        payload = formatters.format_generic(alert, now)
    return formatters.json_safe(payload)


@dataclass
class DeliveryResult:
    success: bool
    response_ms: float = 0.0
    attempts: int = 0
    error: Optional[str] = None


class WebhookSender:
    """
    POSTs formatted alerts to sink URLs with bounded retry.

    Failures never propagate: the final outcome is a DeliveryResult the
    alert system turns into per-sink statistics.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self._session = session
        self._owns_session = False
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(headers=HEADERS)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None
        self._owns_session = False

    async def post_once(self, sink: WebhookConfig, payload: Dict[str, Any]):
        session = self._get_session()
        try:
            async with session.post(
                sink.url,
                json=payload,
                headers=HEADERS,
                timeout=aiohttp.ClientTimeout(total=sink.timeout_sec),
            ) as resp:
                if resp.status >= 300:
                    body = await resp.text()
                    raise SinkDeliveryError(sink.name, f"http {resp.status}: {body[:200]}", status=resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise SinkDeliveryError(sink.name, f"{type(exc).__name__}: {exc}") from exc

    async def send(self, sink: WebhookConfig, alert: Alert) -> DeliveryResult:
        payload = build_payload(sink, alert, self._wall_clock())
        last_error = None
        for attempt in range(1, sink.retry_attempts + 1):
            started = self._clock()
            try:
                await self.post_once(sink, payload)
                return DeliveryResult(
                    success=True,
                    response_ms=(self._clock() - started) * 1000.0,
                    attempts=attempt,
                )
            except SinkDeliveryError as exc:
                last_error = str(exc)
                logger.info(
                    "sink delivery attempt failed sink=%s attempt=%s/%s err=%s",
                    sink.name,
                    attempt,
                    sink.retry_attempts,
                    exc,
                )
                if attempt < sink.retry_attempts:
                    await self._sleep(retry_delay(attempt))
        logger.warning("sink delivery failed sink=%s type=%s attempts=%s err=%s", sink.name, sink.type.value, sink.retry_attempts, last_error)
        return DeliveryResult(success=False, attempts=sink.retry_attempts, error=last_error)
