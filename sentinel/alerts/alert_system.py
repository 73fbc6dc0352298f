import asyncio
import itertools
import logging
import math
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from sentinel.alerts.audit import AuditRecorder, AuditTrailHook
from sentinel.alerts.formatters import emoji_for
from sentinel.alerts.sinks import DeliveryResult, WebhookSender
from sentinel.models.alert_models import (
    SEVERITY_BY_TYPE,
    Alert,
    AlertMetrics,
    AlertThresholds,
    AlertType,
    SinkStats,
    ThresholdsUpdate,
    WebhookConfig,
    WebhookUpdate,
)
from sentinel.models.position_models import Position
from sentinel.models.risk_models import LiquidationPrediction, RiskScore

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SEC = 60.0
CRITICAL_COOLDOWN_SEC = 30.0
HISTORY_LIMIT = 1000
RATE_LIMIT_WINDOW_SEC = 60.0


class AlertSystem:
    """
    Threshold evaluation, cooldowns, per-sink rate limiting and concurrent
    dispatch. Sink failures end up in per-sink stats and are never raised to
    the caller.
    """

    def __init__(
        self,
        thresholds: Optional[AlertThresholds] = None,
        sinks: Optional[List[WebhookConfig]] = None,
        *,
        sender: Optional[WebhookSender] = None,
        audit_hook: Optional[AuditTrailHook] = None,
        clock: Callable[[], float] = time.time,
        cooldown_sec: float = DEFAULT_COOLDOWN_SEC,
        critical_cooldown_sec: float = CRITICAL_COOLDOWN_SEC,
        history_limit: int = HISTORY_LIMIT,
    ):
        self.thresholds = thresholds or AlertThresholds()
        self.sender = sender or WebhookSender()
        self.audit = AuditRecorder(audit_hook)
        self._clock = clock
        self.cooldown_sec = cooldown_sec
        self.critical_cooldown_sec = critical_cooldown_sec
        self._sinks: Dict[str, WebhookConfig] = {}
        self._stats: Dict[str, SinkStats] = {}
        self._history: Deque[Alert] = deque(maxlen=history_limit)
        self._cooldowns: Dict[str, float] = {}
        self._sent_times: Dict[str, Deque[float]] = {}
        self._ids = itertools.count(1)

        self.total_alerts = 0
        self.alerts_by_type: Dict[str, int] = {}
        self.alerts_by_protocol: Dict[str, int] = {}
        self.cooldown_hits = 0
        self._processing_ms_total = 0.0

        for sink in sinks or []:
            self.add_sink(sink)

    # Configuration

    def get_thresholds(self) -> AlertThresholds:
        return self.thresholds.model_copy()

    def update_thresholds(self, update: Union[ThresholdsUpdate, Dict[str, Any]]) -> AlertThresholds:
        if isinstance(update, dict):
            update = ThresholdsUpdate(**update)
        changes = update.model_dump(exclude_none=True)
        merged = AlertThresholds(**{**self.thresholds.model_dump(), **changes})
        if merged.health_factor_critical > merged.health_factor_warning:
            raise ValueError("health_factor_critical must not exceed health_factor_warning")
        self.thresholds = merged
        logger.info("alert thresholds updated changes=%s", changes)
        return self.get_thresholds()

    def effective_thresholds(self, sink: Optional[WebhookConfig] = None) -> AlertThresholds:
        if sink is None or sink.custom_thresholds is None:
            return self.thresholds
        overrides = sink.custom_thresholds.model_dump(exclude_none=True)
        return AlertThresholds(**{**self.thresholds.model_dump(), **overrides})

    def sinks(self) -> List[WebhookConfig]:
        return list(self._sinks.values())

    def add_sink(self, sink: WebhookConfig) -> WebhookConfig:
        name = sink.name or sink.url
        if name in self._sinks:
            raise ValueError(f"sink already exists: {name}")
        if name != sink.name:
            sink = sink.model_copy(update={"name": name})
        self._sinks[name] = sink
        self._stats[name] = SinkStats(name=name, type=sink.type)
        logger.info("alert sink added name=%s type=%s", name, sink.type.value)
        return sink

    def remove_sink(self, name: str) -> bool:
        removed = self._sinks.pop(name, None)
        self._stats.pop(name, None)
        self._sent_times.pop(name, None)
        if removed is not None:
            logger.info("alert sink removed name=%s", name)
        return removed is not None

    def update_sink(self, name: str, update: Union[WebhookUpdate, Dict[str, Any]]) -> WebhookConfig:
        current = self._sinks.get(name)
        if current is None:
            raise KeyError(name)
        if isinstance(update, dict):
            update = WebhookUpdate(**update)
        changes = update.model_dump(exclude_unset=True, exclude_none=True)
        updated = WebhookConfig(**{**current.model_dump(), **changes})
        self._sinks[name] = updated
        stats = self._stats.get(name)
        if stats is not None and stats.type != updated.type:
            self._stats[name] = stats.model_copy(update={"type": updated.type})
        logger.info("alert sink updated name=%s fields=%s", name, sorted(changes))
        return updated

    # Threshold checks

    def should_warn(self, score: RiskScore, sink: Optional[WebhookConfig] = None) -> bool:
        t = self.effective_thresholds(sink)
        return (
            score.health_factor <= t.health_factor_warning
            or score.collateral_ratio <= t.collateral_ratio_warning
            or score.distance_to_liquidation <= t.distance_to_liquidation_percent
        )

    def should_alert_critical(self, score: RiskScore, sink: Optional[WebhookConfig] = None) -> bool:
        t = self.effective_thresholds(sink)
        return (
            score.health_factor <= t.health_factor_critical
            or score.collateral_ratio <= t.collateral_ratio_critical
            or score.distance_to_liquidation <= t.distance_to_liquidation_critical_percent
        )

    def should_predict(self, prediction: LiquidationPrediction, sink: Optional[WebhookConfig] = None) -> bool:
        t = self.effective_thresholds(sink)
        minutes = prediction.minutes_to_liquidation
        imminent = math.isfinite(minutes) and minutes <= t.prediction_horizon_minutes
        return prediction.probability >= t.liquidation_probability or imminent

    # Cooldown and rate limit

    def _on_cooldown(self, key: str, cooldown_sec: float) -> bool:
        last = self._cooldowns.get(key)
        if last is None:
            return False
        remaining = cooldown_sec - (self._clock() - last)
        if remaining > 0:
            self.cooldown_hits += 1
            logger.debug("alert cooldown active key=%s remaining_sec=%.0f", key, remaining)
            return True
        return False

    def _set_cooldown(self, key: str):
        self._cooldowns[key] = self._clock()

    def _rate_limited(self, sink: WebhookConfig) -> bool:
        now = self._clock()
        sent = self._sent_times.setdefault(sink.name, deque())
        while sent and now - sent[0] >= RATE_LIMIT_WINDOW_SEC:
            sent.popleft()
        if len(sent) >= sink.rate_limit_per_minute:
            stats = self._stats[sink.name]
            self._stats[sink.name] = stats.model_copy(update={"rate_limit_hits": stats.rate_limit_hits + 1})
            logger.info("alert sink rate limited name=%s limit=%s", sink.name, sink.rate_limit_per_minute)
            return True
        sent.append(now)
        return False

    @staticmethod
    def _crossed(data: Dict[str, Any], health_factor: float, collateral_ratio: float, distance: float) -> bool:
        """Same metrics as should_warn / should_alert_critical, read back from alert data."""
        checks = (
            (data.get("healthFactor"), health_factor),
            (data.get("collateralRatio"), collateral_ratio),
            (data.get("distanceToLiquidation"), distance),
        )
        known = [(value, limit) for value, limit in checks if value is not None]
        if not known:
            return True
        return any(value <= limit for value, limit in known)

    def _eligible(self, alert: Alert, sink: WebhookConfig) -> bool:
        if not sink.enabled or alert.type not in sink.alert_types:
            return False
        t = self.effective_thresholds(sink)
        if alert.type == AlertType.WARNING and not self._crossed(
            alert.data, t.health_factor_warning, t.collateral_ratio_warning, t.distance_to_liquidation_percent
        ):
            return False
        if alert.type == AlertType.CRITICAL and not self._crossed(
            alert.data, t.health_factor_critical, t.collateral_ratio_critical, t.distance_to_liquidation_critical_percent
        ):
            return False
        probability = alert.data.get("probability")
        if alert.type == AlertType.PREDICTION and probability is not None and probability < t.liquidation_probability:
            minutes = alert.data.get("minutesToLiquidation")
            if minutes is None or not math.isfinite(minutes) or minutes > t.prediction_horizon_minutes:
                return False
        return True

    # Alert construction

    def _new_alert(
        self,
        alert_type: AlertType,
        message: str,
        data: Dict[str, Any],
        position_id: str = "",
        protocol: str = "",
    ) -> Alert:
        now = self._clock()
        return Alert(
            id=f"alert-{int(now * 1000)}-{next(self._ids)}",
            type=alert_type,
            severity=SEVERITY_BY_TYPE[alert_type],
            position_id=position_id,
            protocol=protocol,
            message=message,
            data=data,
            timestamp=now,
        )

    @staticmethod
    def _score_data(score: RiskScore) -> Dict[str, Any]:
        return {
            "healthFactor": score.health_factor,
            "riskLevel": score.risk_level.value,
            "collateralRatio": score.collateral_ratio,
            "distanceToLiquidation": score.distance_to_liquidation,
            "currentPrice": score.current_price,
            "liquidationPrice": score.liquidation_price,
        }

    async def evaluate(self, position: Position, score: RiskScore) -> Optional[Alert]:
        """Fire a critical alert, else a warning, when a threshold is crossed and the cooldown allows."""
        if self.should_alert_critical(score):
            key = f"{AlertType.CRITICAL.value}-{position.id}"
            if self._on_cooldown(key, self.critical_cooldown_sec):
                return None
            data = self._score_data(score)
            data["estimatedLoss"] = score.estimated_loss
            alert = self._new_alert(
                AlertType.CRITICAL,
                f"{emoji_for(AlertType.CRITICAL)} CRITICAL: Position at immediate liquidation risk! Health: {score.health_factor:.2f}",
                data,
                position.id,
                position.protocol.value,
            )
        elif self.should_warn(score):
            key = f"{AlertType.WARNING.value}-{position.id}"
            if self._on_cooldown(key, self.cooldown_sec):
                return None
            alert = self._new_alert(
                AlertType.WARNING,
                f"{emoji_for(AlertType.WARNING)} WARNING: Position health factor dropped to {score.health_factor:.2f}",
                self._score_data(score),
                position.id,
                position.protocol.value,
            )
        else:
            return None

        await self.dispatch(alert, reasoning={"position": position.model_dump(mode="json"), "risk": score.model_dump(mode="json")})
        self._set_cooldown(key)
        return alert

    async def evaluate_prediction(self, position: Position, prediction: LiquidationPrediction) -> Optional[Alert]:
        if not self.should_predict(prediction):
            return None
        key = f"{AlertType.PREDICTION.value}-{position.id}"
        if self._on_cooldown(key, self.cooldown_sec):
            return None

        minutes = prediction.minutes_to_liquidation
        message = f"{emoji_for(AlertType.PREDICTION)} PREDICTION: {prediction.probability * 100:.0f}% chance of liquidation"
        if math.isfinite(minutes):
            message += f" in {minutes:.0f} minutes"
        alert = self._new_alert(
            AlertType.PREDICTION,
            message,
            {
                "probability": prediction.probability,
                "minutesToLiquidation": minutes,
                "confidence": prediction.confidence,
                "factors": list(prediction.factors),
                "priceTarget": prediction.price_target,
            },
            position.id,
            position.protocol.value,
        )
        await self.dispatch(
            alert,
            reasoning={"position": position.model_dump(mode="json"), "prediction": prediction.model_dump(mode="json")},
        )
        self._set_cooldown(key)
        return alert

    async def send_info(self, message: str, data: Optional[Dict[str, Any]] = None) -> Alert:
        alert = self._new_alert(AlertType.INFO, f"{emoji_for(AlertType.INFO)} {message}", data or {})
        await self.dispatch(alert)
        return alert

    async def send_custom(
        self,
        alert_type: AlertType,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        position_id: str = "",
        protocol: str = "",
    ) -> Alert:
        alert = self._new_alert(alert_type, f"{emoji_for(alert_type)} {message}", data or {}, position_id, protocol)
        await self.dispatch(alert)
        return alert

    # Dispatch

    def _record(self, alert: Alert):
        self._history.append(alert)
        self.total_alerts += 1
        self.alerts_by_type[alert.type.value] = self.alerts_by_type.get(alert.type.value, 0) + 1
        if alert.protocol:
            self.alerts_by_protocol[alert.protocol] = self.alerts_by_protocol.get(alert.protocol, 0) + 1

    def _record_delivery(self, sink: WebhookConfig, result: DeliveryResult):
        stats = self._stats.get(sink.name)
        if stats is None:
            return
        now = self._clock()
        total = stats.total_sent + 1
        update: Dict[str, Any] = {"total_sent": total, "last_sent": now}
        if result.success:
            update["success_count"] = stats.success_count + 1
            update["last_success"] = now
            update["average_response_ms"] = (stats.average_response_ms * (total - 1) + result.response_ms) / total
        else:
            update["failure_count"] = stats.failure_count + 1
            update["last_failure"] = now
        self._stats[sink.name] = stats.model_copy(update=update)

    async def _deliver(self, sink: WebhookConfig, alert: Alert):
        try:
            result = await self.sender.send(sink, alert)
        except Exception as exc:
            logger.exception("alert sink crashed name=%s", sink.name)
            result = DeliveryResult(success=False, error=str(exc))
        self._record_delivery(sink, result)
        if result.success:
            logger.info("alert delivered sink=%s type=%s ms=%.0f", sink.name, sink.type.value, result.response_ms)

    async def dispatch(self, alert: Alert, reasoning: Optional[Dict[str, Any]] = None):
        started = time.perf_counter()
        self._record(alert)
        log = logger.warning if alert.severity >= 2 else logger.info
        log(
            "alert type=%s severity=%s/4 position=%s protocol=%s msg=%s",
            alert.type.value,
            alert.severity,
            alert.position_id or "-",
            alert.protocol or "-",
            alert.message,
        )

        commit_task = None
        if reasoning is not None and alert.type != AlertType.INFO:
            commit_task = self.audit.commit(alert, reasoning)

        targets = [s for s in self._sinks.values() if self._eligible(alert, s)]
        targets = [s for s in targets if not self._rate_limited(s)]
        if targets:
            await asyncio.gather(*(self._deliver(sink, alert) for sink in targets))

        if commit_task is not None:
            self.audit.reveal(commit_task, reasoning)
        self._processing_ms_total += (time.perf_counter() - started) * 1000.0

    # Queries

    def history(
        self,
        limit: Optional[int] = None,
        alert_type: Optional[AlertType] = None,
        position_id: Optional[str] = None,
    ) -> List[Alert]:
        rows = [
            a
            for a in self._history
            if (alert_type is None or a.type == alert_type) and (position_id is None or a.position_id == position_id)
        ]
        rows.reverse()
        return rows[:limit] if limit else rows

    def sink_stats(self, name: str) -> Optional[SinkStats]:
        return self._stats.get(name)

    def metrics(self) -> AlertMetrics:
        return AlertMetrics(
            total_alerts=self.total_alerts,
            alerts_by_type=dict(self.alerts_by_type),
            alerts_by_protocol=dict(self.alerts_by_protocol),
            cooldown_hits=self.cooldown_hits,
            average_processing_ms=self._processing_ms_total / self.total_alerts if self.total_alerts else 0.0,
            sinks=list(self._stats.values()),
        )

    async def close(self):
        await self.audit.drain()
        await self.sender.close()
