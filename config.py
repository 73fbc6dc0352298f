import json
import logging
import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from sentinel.errors import ConfigError
from sentinel.models.alert_models import AlertThresholds, SinkType, WebhookConfig
from sentinel.oracle.price_resolver import JUPITER_PRICE_API

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"


def _ws_from_rpc(url: str) -> str:
    if url.startswith("https://"):
        return "wss://" + url[len("https://") :]
    if url.startswith("http://"):
        return "ws://" + url[len("http://") :]
    return url


class Config:
    """
    Sentinel configuration.
    All settings are loaded from environment variables; numbers are parsed
    lazily so that validate() can report every malformed value at once.
    """

    def __init__(self):
        self._invalid: List[str] = []

        # Solana transport
        self.SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", DEFAULT_RPC_URL)
        self.SOLANA_WS_URL = os.getenv("SOLANA_WS_URL") or _ws_from_rpc(self.SOLANA_RPC_URL)
        self.WATCH_ADDRESSES = [a.strip() for a in os.getenv("WATCH_ADDRESSES", "").split(",") if a.strip()]
        self.POLL_INTERVAL_SEC = self._float("POLL_INTERVAL_SEC", 10.0)

        # Alert thresholds
        self.LIQUIDATION_WARNING_THRESHOLD = self._float("LIQUIDATION_WARNING_THRESHOLD", 1.3)
        self.CRITICAL_HEALTH_THRESHOLD = self._float("CRITICAL_HEALTH_THRESHOLD", 1.1)
        self.LIQUIDATION_PROBABILITY_THRESHOLD = self._float("LIQUIDATION_PROBABILITY_THRESHOLD", 0.7)
        self.PREDICTION_HORIZON_MINUTES = self._float("PREDICTION_HORIZON_MINUTES", 30.0)

        # Sinks
        self.WEBHOOK_URL = os.getenv("WEBHOOK_URL", "")
        self.WEBHOOK_TYPE = os.getenv("WEBHOOK_TYPE", SinkType.GENERIC.value)
        self.ALERT_SINKS_JSON = os.getenv("ALERT_SINKS_JSON", "")

        # Subscription channel
        self.RECONNECT_BASE_SEC = self._float("RECONNECT_BASE_SEC", 1.0)
        self.RECONNECT_MAX_SEC = self._float("RECONNECT_MAX_SEC", 30.0)
        self.RECONNECT_MAX_ATTEMPTS = self._int("RECONNECT_MAX_ATTEMPTS", 5)
        self.KEEPALIVE_INTERVAL_SEC = self._float("KEEPALIVE_INTERVAL_SEC", 20.0)
        self.KEEPALIVE_TIMEOUT_SEC = self._float("KEEPALIVE_TIMEOUT_SEC", 10.0)

        # Prices / risk
        self.PRICE_CACHE_TTL_SEC = self._float("PRICE_CACHE_TTL_SEC", 10.0)
        self.PRICE_API_URL = os.getenv("PRICE_API_URL", JUPITER_PRICE_API)
        self.PERIODS_PER_YEAR = self._float("PERIODS_PER_YEAR", 8760.0)

        # Process
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.PORT = self._int("PORT", 8000)

    def _float(self, key: str, default: float) -> Optional[float]:
        raw = os.getenv(key)
        if raw is None or raw.strip() == "":
            return default
        try:
            return float(raw)
        except ValueError:
            self._invalid.append(f"{key}={raw!r} is not a number")
            return None

    def _int(self, key: str, default: int) -> Optional[int]:
        raw = os.getenv(key)
        if raw is None or raw.strip() == "":
            return default
        try:
            return int(raw)
        except ValueError:
            self._invalid.append(f"{key}={raw!r} is not an integer")
            return None

    def thresholds(self) -> AlertThresholds:
        return AlertThresholds(
            health_factor_warning=self.LIQUIDATION_WARNING_THRESHOLD,
            health_factor_critical=self.CRITICAL_HEALTH_THRESHOLD,
            liquidation_probability=self.LIQUIDATION_PROBABILITY_THRESHOLD,
            prediction_horizon_minutes=self.PREDICTION_HORIZON_MINUTES,
        )

    def sinks(self) -> List[WebhookConfig]:
        """Sinks from ALERT_SINKS_JSON plus the WEBHOOK_URL shortcut."""
        out: List[WebhookConfig] = []
        if self.ALERT_SINKS_JSON.strip():
            try:
                rows = json.loads(self.ALERT_SINKS_JSON)
                if not isinstance(rows, list):
                    raise ConfigError("ALERT_SINKS_JSON must be a JSON list")
                out.extend(WebhookConfig(**row) for row in rows)
            except (ValueError, TypeError, ValidationError) as exc:
                raise ConfigError(f"ALERT_SINKS_JSON is invalid: {exc}") from exc
        if self.WEBHOOK_URL:
            try:
                out.append(WebhookConfig(name="default", type=self.WEBHOOK_TYPE, url=self.WEBHOOK_URL))
            except ValidationError as exc:
                raise ConfigError(f"WEBHOOK_TYPE is invalid: {exc}") from exc
        return out

    def validate(self) -> bool:
        """Validate configuration on startup. Raises ConfigError; returns False when only warnings were found."""
        errors = list(self._invalid)
        warnings = []

        warn, crit = self.LIQUIDATION_WARNING_THRESHOLD, self.CRITICAL_HEALTH_THRESHOLD
        if warn is not None and crit is not None:
            if crit <= 0 or warn <= 0:
                errors.append("health thresholds must be positive")
            elif crit > warn:
                errors.append(f"CRITICAL_HEALTH_THRESHOLD={crit} exceeds LIQUIDATION_WARNING_THRESHOLD={warn}")
        p = self.LIQUIDATION_PROBABILITY_THRESHOLD
        if p is not None and not 0 < p <= 1:
            errors.append(f"LIQUIDATION_PROBABILITY_THRESHOLD={p} must be in (0, 1]")
        for key in ("POLL_INTERVAL_SEC", "RECONNECT_BASE_SEC", "RECONNECT_MAX_SEC", "PERIODS_PER_YEAR", "PRICE_CACHE_TTL_SEC"):
            value = getattr(self, key)
            if value is not None and value <= 0:
                errors.append(f"{key} must be positive")
        if self.RECONNECT_MAX_ATTEMPTS is not None and self.RECONNECT_MAX_ATTEMPTS < 1:
            errors.append("RECONNECT_MAX_ATTEMPTS must be at least 1")

        try:
            sinks = self.sinks()
        except ConfigError as exc:
            errors.append(str(exc))
            sinks = []

        if errors:
            raise ConfigError("; ".join(errors))

        if not self.WATCH_ADDRESSES:
            warnings.append("WATCH_ADDRESSES not set (add addresses via POST /positions/watch)")
        if not sinks:
            warnings.append("no alert sinks configured (alerts are logged only)")
        for w in warnings:
            logger.warning("⚠️  %s", w)
        return len(warnings) == 0


config = Config()
