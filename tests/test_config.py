import json

import pytest

from config import Config
from sentinel.errors import ConfigError
from sentinel.models.alert_models import SinkType

ENV_KEYS = (
    "SOLANA_RPC_URL",
    "SOLANA_WS_URL",
    "WATCH_ADDRESSES",
    "LIQUIDATION_WARNING_THRESHOLD",
    "CRITICAL_HEALTH_THRESHOLD",
    "LIQUIDATION_PROBABILITY_THRESHOLD",
    "POLL_INTERVAL_SEC",
    "WEBHOOK_URL",
    "WEBHOOK_TYPE",
    "ALERT_SINKS_JSON",
    "RECONNECT_MAX_ATTEMPTS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_and_derived_ws_url(monkeypatch):
    monkeypatch.setenv("SOLANA_RPC_URL", "https://rpc.example.test")
    cfg = Config()
    assert cfg.SOLANA_WS_URL == "wss://rpc.example.test"
    assert cfg.POLL_INTERVAL_SEC == 10.0
    assert cfg.WATCH_ADDRESSES == []

    thresholds = cfg.thresholds()
    assert thresholds.health_factor_warning == 1.3
    assert thresholds.health_factor_critical == 1.1
    assert thresholds.liquidation_probability == 0.7
    # no addresses and no sinks: valid, with warnings
    assert cfg.validate() is False


def test_watch_addresses_and_webhook_shortcut(monkeypatch):
    monkeypatch.setenv("WATCH_ADDRESSES", " addr1, addr2 ,,")
    monkeypatch.setenv("WEBHOOK_URL", "https://discord.com/api/webhooks/1/x")
    monkeypatch.setenv("WEBHOOK_TYPE", "discord")
    cfg = Config()
    assert cfg.WATCH_ADDRESSES == ["addr1", "addr2"]
    sinks = cfg.sinks()
    assert len(sinks) == 1
    assert sinks[0].name == "default"
    assert sinks[0].type == SinkType.DISCORD
    assert cfg.validate() is True


def test_alert_sinks_json(monkeypatch):
    rows = [
        {"name": "tg", "type": "telegram", "url": "https://api.telegram.org/botX/sendMessage", "rate_limit_per_minute": 5},
        {"name": "ops", "url": "https://ops.test/hook", "alert_types": ["critical"]},
    ]
    monkeypatch.setenv("ALERT_SINKS_JSON", json.dumps(rows))
    sinks = Config().sinks()
    assert [s.name for s in sinks] == ["tg", "ops"]
    assert sinks[0].rate_limit_per_minute == 5
    assert sinks[1].type == SinkType.GENERIC


def test_invalid_values_are_all_reported(monkeypatch):
    monkeypatch.setenv("POLL_INTERVAL_SEC", "fast")
    monkeypatch.setenv("RECONNECT_MAX_ATTEMPTS", "1.5")
    monkeypatch.setenv("LIQUIDATION_PROBABILITY_THRESHOLD", "1.5")
    cfg = Config()
    assert cfg.POLL_INTERVAL_SEC is None
    with pytest.raises(ConfigError) as exc:
        cfg.validate()
    message = str(exc.value)
    assert "POLL_INTERVAL_SEC" in message
    assert "RECONNECT_MAX_ATTEMPTS" in message
    assert "LIQUIDATION_PROBABILITY_THRESHOLD" in message


def test_critical_above_warning_is_rejected(monkeypatch):
    monkeypatch.setenv("LIQUIDATION_WARNING_THRESHOLD", "1.2")
    monkeypatch.setenv("CRITICAL_HEALTH_THRESHOLD", "1.4")
    with pytest.raises(ConfigError) as exc:
        Config().validate()
    assert "CRITICAL_HEALTH_THRESHOLD" in str(exc.value)


def test_malformed_sinks_json(monkeypatch):
    monkeypatch.setenv("ALERT_SINKS_JSON", "{not json")
    with pytest.raises(ConfigError):
        Config().sinks()
    monkeypatch.setenv("ALERT_SINKS_JSON", json.dumps({"name": "x"}))
    with pytest.raises(ConfigError):
        Config().validate()
