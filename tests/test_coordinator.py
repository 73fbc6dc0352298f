import asyncio

from sentinel.alerts.alert_system import AlertSystem
from sentinel.alerts.sinks import DeliveryResult
from sentinel.errors import TransportError
from sentinel.models.position_models import ChangeKind, CollateralEntry, DebtEntry, Position, PositionChange, Protocol
from sentinel.risk.risk_engine import RiskEngine
from sentinel.services.coordinator import MonitoringCoordinator
from sentinel.services.event_bus import (
    POSITION_CREATED,
    POSITION_DELETED,
    POSITION_UPDATED,
    SOURCE_NOTIFICATION,
    SOURCE_POLL,
    InProcessEventBus,
)

SOL = "So11111111111111111111111111111111111111112"


class _Monitor:
    def __init__(self, positions=None):
        self.positions = list(positions or [])
        self.fail = False
        self.started = False
        self.stopped = False
        self._watched = []

    async def fetch_all(self):
        if self.fail:
            raise TransportError("rpc unreachable")
        return list(self.positions)

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    def watch(self, address):
        if address in self._watched:
            return False
        self._watched.append(address)
        return True

    def unwatch(self, address):
        if address not in self._watched:
            return False
        self._watched.remove(address)
        return True

    def watched(self):
        return list(self._watched)

    def status(self):
        return {"state": "connected", "connected": True, "watched": len(self._watched)}


class _PollingMonitor(_Monitor):
    """Publishes a Created change for every position it returns, like a first bulk fetch."""

    def __init__(self, positions, bus):
        super().__init__(positions)
        self.bus = bus

    async def fetch_all(self):
        positions = await super().fetch_all()
        for position in positions:
            change = PositionChange(kind=ChangeKind.CREATED, position=position)
            self.bus.publish_nowait(POSITION_CREATED, change, source=SOURCE_POLL, key=position.id)
        return positions


class _Sender:
    def __init__(self):
        self.sent = []

    async def send(self, sink, alert):
        self.sent.append(alert)
        return DeliveryResult(success=True, response_ms=1.0, attempts=1)

    async def close(self):
        return None


class _FlakyEngine(RiskEngine):
    def score(self, position):
        if position.id.endswith("broken"):
            raise ValueError("bad reserve data")
        return super().score(position)


def _position(account, hf, price=150.0, debt=100.0):
    return Position(
        id=f"kamino:{account}",
        protocol=Protocol.KAMINO,
        owner="owner1",
        account_address=account,
        collateral=[CollateralEntry(asset_id=SOL, amount=1.0, value_usd=price, price=price)],
        debt=[DebtEntry(asset_id="USDC", amount=debt, value_usd=debt)],
        health_factor=hf,
        liquidation_threshold=0.8,
    )


def _coordinator(positions, bus=None, engine=None):
    monitor = _Monitor(positions)
    alerts = AlertSystem(sender=_Sender(), clock=lambda: 1_700_000_000.0)
    engine = engine or RiskEngine(clock=lambda: 1_700_000_000.0)
    coordinator = MonitoringCoordinator(monitor, engine, alerts, event_bus=bus, clock=lambda: 1_700_000_000.0)
    return coordinator, monitor, alerts


def test_run_cycle_scores_and_alerts():
    coordinator, _, alerts = _coordinator([_position("risky", 1.05), _position("safe", 2.5, price=1000.0)])
    reports = asyncio.run(coordinator.run_cycle())

    assert len(reports) == 2
    by_id = {r.position.id: r for r in reports}
    assert by_id["kamino:risky"].risk.health_factor == 1.05
    assert by_id["kamino:risky"].alerts
    assert by_id["kamino:safe"].alerts == []
    assert coordinator.summary() == {"critical": 1, "warning": 0, "healthy": 1, "unknown": 0}
    assert alerts.metrics().alerts_by_type["critical"] == 1
    assert coordinator.engine.history.count(SOL) == 1
    assert coordinator.cycle_count == 1


def test_evaluation_error_marks_position_and_continues():
    engine = _FlakyEngine(clock=lambda: 1_700_000_000.0)
    coordinator, _, _ = _coordinator([_position("broken", 1.2), _position("ok", 2.5, price=1000.0)], engine=engine)
    reports = asyncio.run(coordinator.run_cycle())

    broken = [r for r in reports if r.position.id == "kamino:broken"][0]
    assert broken.risk is None
    assert "bad reserve data" in broken.error
    assert coordinator.summary()["unknown"] == 1
    assert coordinator.summary()["healthy"] == 1


def test_fetch_failure_marks_cycle_degraded():
    coordinator, monitor, _ = _coordinator([_position("a", 2.0)])
    asyncio.run(coordinator.run_cycle())
    monitor.fail = True
    assert asyncio.run(coordinator.run_cycle()) == []

    health = coordinator.health()
    assert health["status"] == "degraded"
    assert "rpc unreachable" in health["last_cycle_error"]
    assert health["cycles"] == 1
    # last good reports are kept
    assert len(coordinator.reports()) == 1


def test_stale_reports_are_dropped():
    coordinator, monitor, _ = _coordinator([_position("a", 2.0), _position("b", 2.0)])
    asyncio.run(coordinator.run_cycle())
    monitor.positions = monitor.positions[:1]
    asyncio.run(coordinator.run_cycle())
    assert [r.position.id for r in coordinator.reports()] == ["kamino:a"]


def test_change_events_trigger_reevaluation():
    async def _run():
        bus = InProcessEventBus()
        coordinator, _, _ = _coordinator([], bus=bus)
        updated = _position("a", 1.25)
        bus.publish_nowait(POSITION_UPDATED, PositionChange(kind=ChangeKind.UPDATED, position=updated))
        handled = await coordinator.drain_events()
        level = coordinator.reports()[0].risk.risk_level.value

        bus.publish_nowait(POSITION_DELETED, PositionChange(kind=ChangeKind.DELETED, position=updated))
        await coordinator.drain_events()
        return handled, level, coordinator.reports()

    handled, level, remaining = asyncio.run(_run())
    assert handled == 1
    assert level == "high"
    assert remaining == []


def test_start_runs_cycles_until_stopped():
    async def _run():
        bus = InProcessEventBus()
        monitor = _Monitor([_position("a", 2.0)])
        alerts = AlertSystem(sender=_Sender())
        coordinator = MonitoringCoordinator(monitor, RiskEngine(), alerts, event_bus=bus, poll_interval_sec=0.01)
        await coordinator.start()
        await asyncio.sleep(0.05)
        await coordinator.stop()
        return coordinator, monitor, bus

    coordinator, monitor, bus = asyncio.run(_run())
    assert monitor.started and monitor.stopped
    assert coordinator.cycle_count >= 1
    assert not coordinator.is_running
    assert bus.stats()["subscriptions"] == 0


def test_poll_changes_are_not_scored_twice():
    async def _run():
        bus = InProcessEventBus()
        monitor = _PollingMonitor([_position("risky", 1.05)], bus)
        alerts = AlertSystem(sender=_Sender(), clock=lambda: 1_700_000_000.0)
        coordinator = MonitoringCoordinator(
            monitor, RiskEngine(clock=lambda: 1_700_000_000.0), alerts, event_bus=bus, clock=lambda: 1_700_000_000.0
        )
        await coordinator.run_cycle()
        skipped = await coordinator.drain_events()
        hits_after_poll = alerts.cooldown_hits

        pushed = PositionChange(kind=ChangeKind.UPDATED, position=_position("risky", 1.04))
        bus.publish_nowait(POSITION_UPDATED, pushed, source=SOURCE_NOTIFICATION, key=pushed.position.id)
        handled = await coordinator.drain_events()
        return skipped, hits_after_poll, handled, alerts, coordinator

    skipped, hits_after_poll, handled, alerts, coordinator = asyncio.run(_run())
    assert skipped == 0
    assert hits_after_poll == 0
    assert alerts.metrics().alerts_by_type["critical"] == 1
    assert handled == 1
    assert alerts.cooldown_hits > 0
    assert coordinator.reports()[0].position.health_factor == 1.04
