"""
Sink payload formats: Discord rich embed, Telegram markdown text and a
generic JSON envelope.
"""
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from sentinel.models.alert_models import Alert, AlertType

BOT_NAME = "SENTINEL Bot"
FOOTER = "SENTINEL • DeFi Position Monitor"
USER_AGENT = "SENTINEL-Bot/1.0"
SOURCE = "SENTINEL"
AGENT = "mrrobot"
VERSION = "1.0"

EMOJI = {
    AlertType.CRITICAL: "🚨",
    AlertType.WARNING: "⚠️",
    AlertType.PREDICTION: "🔮",
    AlertType.INFO: "ℹ️",
}
COLOR = {
    AlertType.CRITICAL: 0xFF0000,
    AlertType.WARNING: 0xFF8C00,
    AlertType.PREDICTION: 0x9932CC,
    AlertType.INFO: 0x00BFFF,
}
DEFAULT_COLOR = 0x808080
DEFAULT_EMOJI = "📢"
SPACER = "\u200b"


def json_safe(value: Any) -> Any:
    """Recursively replace non-finite floats with None and enums with their values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def iso_time(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def emoji_for(alert_type: AlertType) -> str:
    return EMOJI.get(alert_type, DEFAULT_EMOJI)


def _health_dot(hf: float) -> str:
    return "🔴" if hf < 1.1 else "🟡" if hf < 1.3 else "🟢"


def _distance_dot(distance: float) -> str:
    return "🔴" if distance < 5 else "🟡" if distance < 15 else "🟢"


def _probability_dot(p: float) -> str:
    return "🔴" if p > 0.8 else "🟡" if p > 0.5 else "🟢"


def _has(data: Dict[str, Any], key: str) -> bool:
    value = data.get(key)
    return isinstance(value, (int, float)) and math.isfinite(value)


def format_discord(alert: Alert) -> Dict[str, Any]:
    data = alert.data
    fields: List[Dict[str, Any]] = []

    if alert.position_id:
        fields.append({"name": "📍 Position", "value": f"`{alert.position_id}`", "inline": True})
        fields.append({"name": "🏛️ Protocol", "value": alert.protocol, "inline": True})
        fields.append({"name": SPACER, "value": SPACER, "inline": True})
    if _has(data, "healthFactor"):
        hf = data["healthFactor"]
        fields.append({"name": f"{_health_dot(hf)} Health Factor", "value": f"**{hf:.4f}**", "inline": True})
    if _has(data, "collateralRatio"):
        fields.append({"name": "💎 Collateral Ratio", "value": f"**{data['collateralRatio']:.4f}**", "inline": True})
    if _has(data, "distanceToLiquidation"):
        distance = data["distanceToLiquidation"]
        fields.append(
            {"name": f"{_distance_dot(distance)} Distance to Liquidation", "value": f"**{distance:.2f}%**", "inline": True}
        )
    if _has(data, "currentPrice") and _has(data, "liquidationPrice"):
        fields.append({"name": "💰 Current Price", "value": f"${data['currentPrice']:.4f}", "inline": True})
        fields.append({"name": "⚡ Liquidation Price", "value": f"${data['liquidationPrice']:.4f}", "inline": True})
        fields.append({"name": SPACER, "value": SPACER, "inline": True})
    if _has(data, "probability"):
        p = data["probability"]
        fields.append(
            {"name": f"{_probability_dot(p)} Liquidation Probability", "value": f"**{p * 100:.1f}%**", "inline": True}
        )
    if _has(data, "minutesToLiquidation"):
        fields.append(
            {"name": "⏰ Time to Liquidation", "value": f"**{data['minutesToLiquidation']:.0f} minutes**", "inline": True}
        )
    if _has(data, "confidence"):
        fields.append({"name": "🎯 Confidence", "value": f"{data['confidence'] * 100:.1f}%", "inline": True})

    embed = {
        "title": f"{emoji_for(alert.type)} {alert.type.value.upper()} Alert",
        "description": alert.message,
        "color": COLOR.get(alert.type, DEFAULT_COLOR),
        "fields": fields,
        "timestamp": iso_time(alert.timestamp),
        "footer": {"text": FOOTER},
        "author": {"name": BOT_NAME},
    }
    return {"username": BOT_NAME, "embeds": [embed], "allowed_mentions": {"parse": []}}


def format_telegram(alert: Alert) -> Dict[str, Any]:
    data = alert.data
    lines = [f"{emoji_for(alert.type)} *{alert.type.value.upper()} ALERT*", "", alert.message, ""]

    if alert.position_id:
        lines.append(f"📍 *Position:* `{alert.position_id}`")
        lines.append(f"🏛️ *Protocol:* {alert.protocol}")
        lines.append("")
    if _has(data, "healthFactor"):
        hf = data["healthFactor"]
        lines.append(f"{_health_dot(hf)} *Health Factor:* `{hf:.4f}`")
    if _has(data, "collateralRatio"):
        lines.append(f"💎 *Collateral Ratio:* `{data['collateralRatio']:.4f}`")
    if _has(data, "distanceToLiquidation"):
        distance = data["distanceToLiquidation"]
        lines.append(f"{_distance_dot(distance)} *Distance to Liquidation:* `{distance:.2f}%`")
    if _has(data, "currentPrice") and _has(data, "liquidationPrice"):
        lines.append(f"💰 *Current Price:* ${data['currentPrice']:.4f}")
        lines.append(f"⚡ *Liquidation Price:* ${data['liquidationPrice']:.4f}")
    if _has(data, "probability"):
        p = data["probability"]
        lines.append(f"{_probability_dot(p)} *Liquidation Probability:* `{p * 100:.1f}%`")
    if _has(data, "minutesToLiquidation"):
        lines.append(f"⏰ *Time to Liquidation:* `{data['minutesToLiquidation']:.0f} minutes`")
    if _has(data, "confidence"):
        lines.append(f"🎯 *Confidence:* `{data['confidence'] * 100:.1f}%`")
    if _has(data, "estimatedLoss"):
        lines.append(f"💸 *Estimated Loss:* `${data['estimatedLoss']:.2f}`")

    lines.append("")
    lines.append(f"⏱️ *Time:* `{iso_time(alert.timestamp)}`")
    lines.append("")
    lines.append(f"_{FOOTER}_")

    return {
        "text": "\n".join(lines),
        "parse_mode": "Markdown",
        "disable_web_page_preview": True,
        "disable_notification": alert.severity < 3,
    }


def format_generic(alert: Alert, now: float) -> Dict[str, Any]:
    return {
        "alert": alert.model_copy(update={"data": json_safe(alert.data)}).model_dump(mode="json"),
        "source": SOURCE,
        "agent": AGENT,
        "version": VERSION,
        "timestamp": int(now * 1000),
    }
