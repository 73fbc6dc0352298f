"""
Polling loop tying the pipeline together.

Each cycle: bulk fetch -> price samples -> risk score + prediction -> alert
evaluation, one position at a time. Between cycles, change events from the
monitor trigger ad-hoc re-evaluation of the affected position.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from sentinel.alerts.alert_system import AlertSystem
from sentinel.models.position_models import Position, PositionChange
from sentinel.models.risk_models import LiquidationPrediction, RiskLevel, RiskScore
from sentinel.risk.risk_engine import RiskEngine
from sentinel.services.event_bus import (
    POSITION_CREATED,
    POSITION_DELETED,
    POSITION_UPDATED,
    SOURCE_POLL,
    EventEnvelope,
    InProcessEventBus,
    drain,
)
from sentinel.services.position_monitor import PositionMonitor

logger = logging.getLogger(__name__)


class PositionReport(BaseModel):
    """Position plus its derived risk. risk/prediction are None when error is set."""
    position: Position
    risk: Optional[RiskScore] = None
    prediction: Optional[LiquidationPrediction] = None
    alerts: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    evaluated_at: float = 0.0


def classify(report: PositionReport) -> str:
    if report.risk is None:
        return "unknown"
    if report.risk.risk_level == RiskLevel.CRITICAL:
        return "critical"
    if report.risk.risk_level in (RiskLevel.HIGH, RiskLevel.MEDIUM):
        return "warning"
    return "healthy"


class MonitoringCoordinator:
    def __init__(
        self,
        monitor: PositionMonitor,
        engine: RiskEngine,
        alerts: AlertSystem,
        *,
        event_bus: Optional[InProcessEventBus] = None,
        poll_interval_sec: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.monitor = monitor
        self.engine = engine
        self.alerts = alerts
        self.event_bus = event_bus
        self.poll_interval_sec = poll_interval_sec
        self._clock = clock
        self._subscription = (
            event_bus.subscribe({POSITION_CREATED, POSITION_UPDATED, POSITION_DELETED}) if event_bus else None
        )
        self._reports: Dict[str, PositionReport] = {}
        self._task: Optional[asyncio.Task] = None
        self.is_running = False
        self.started_at = clock()
        self.last_cycle_at: Optional[float] = None
        self.last_cycle_error: Optional[str] = None
        self.cycle_count = 0

    # Evaluation

    def _record_prices(self, positions: List[Position], ts: float):
        seen = set()
        for position in positions:
            for entry in position.collateral:
                if entry.asset_id in seen:
                    continue
                price = entry.price or (entry.value_usd / entry.amount if entry.amount > 0 else None)
                if not price:
                    continue
                seen.add(entry.asset_id)
                self.engine.record_sample(entry.asset_id, price, timestamp=ts)

    async def process_position(self, position: Position) -> PositionReport:
        now = self._clock()
        try:
            score = self.engine.score(position)
            prediction = self.engine.predict(position, score)
            fired = []
            alert = await self.alerts.evaluate(position, score)
            if alert is not None:
                fired.append(alert.id)
            alert = await self.alerts.evaluate_prediction(position, prediction)
            if alert is not None:
                fired.append(alert.id)
            report = PositionReport(position=position, risk=score, prediction=prediction, alerts=fired, evaluated_at=now)
        except Exception as exc:
            logger.exception("position evaluation failed id=%s", position.id)
            report = PositionReport(position=position, error=f"{type(exc).__name__}: {exc}", evaluated_at=now)
        self._reports[position.id] = report
        return report

    async def run_cycle(self) -> List[PositionReport]:
        started = self._clock()
        try:
            positions = await self.monitor.fetch_all()
        except Exception as exc:
            self.last_cycle_error = str(exc)
            logger.warning("monitoring cycle fetch failed err=%s", exc)
            return []

        self._record_prices(positions, started)
        reports = []
        for position in positions:
            reports.append(await self.process_position(position))

        live = {p.id for p in positions}
        for pid in [pid for pid in self._reports if pid not in live]:
            del self._reports[pid]

        self.cycle_count += 1
        self.last_cycle_at = self._clock()
        self.last_cycle_error = None
        logger.info(
            "monitoring cycle done positions=%s errors=%s ms=%.0f",
            len(reports),
            sum(1 for r in reports if r.error),
            (self.last_cycle_at - started) * 1000,
        )
        return reports

    async def handle_event(self, envelope: EventEnvelope) -> bool:
        """Re-evaluate on a pushed change. Changes found by the poll are already scored by run_cycle."""
        if envelope.source == SOURCE_POLL:
            return False
        change: PositionChange = envelope.data
        if envelope.event_type == POSITION_DELETED:
            self._reports.pop(change.position.id, None)
            return True
        await self.process_position(change.position)
        return True

    async def drain_events(self) -> int:
        if self._subscription is None:
            return 0
        handled = 0
        for envelope in drain(self._subscription.queue):
            if await self.handle_event(envelope):
                handled += 1
        return handled

    # Loop

    async def _wait_for_events(self, timeout: float):
        deadline = self._clock() + timeout
        while self.is_running:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            if self._subscription is None:
                await asyncio.sleep(remaining)
                return
            try:
                envelope = await asyncio.wait_for(self._subscription.queue.get(), timeout=remaining)
            except asyncio.TimeoutError:
                return
            await self.handle_event(envelope)

    async def _loop(self):
        while self.is_running:
            await self.run_cycle()
            await self._wait_for_events(self.poll_interval_sec)

    async def start(self):
        if self.is_running:
            return
        self.is_running = True
        self.started_at = self._clock()
        await self.monitor.start()
        self._task = asyncio.create_task(self._loop())
        logger.info("monitoring coordinator started interval=%ss", self.poll_interval_sec)

    async def stop(self):
        self.is_running = False
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.monitor.stop()
        if self._subscription is not None and self.event_bus is not None:
            self.event_bus.unsubscribe(self._subscription)
            self._subscription = None
        logger.info("monitoring coordinator stopped cycles=%s", self.cycle_count)

    # Queries

    def reports(self) -> List[PositionReport]:
        return list(self._reports.values())

    def summary(self) -> Dict[str, int]:
        counts = {"critical": 0, "warning": 0, "healthy": 0, "unknown": 0}
        for report in self._reports.values():
            counts[classify(report)] += 1
        return counts

    def health(self) -> Dict[str, Any]:
        monitor_status = self.monitor.status()
        degraded = not monitor_status["connected"] or self.last_cycle_error is not None
        return {
            "status": "degraded" if degraded else "ok",
            "uptime_sec": self._clock() - self.started_at,
            "last_cycle_at": self.last_cycle_at,
            "last_cycle_error": self.last_cycle_error,
            "cycles": self.cycle_count,
            "dependencies": {
                "monitor": monitor_status["state"] != "stopped" and self.is_running,
                "risk_engine": True,
                "alert_system": True,
            },
            "transport": monitor_status,
        }
