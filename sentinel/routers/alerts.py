from typing import Optional

import colorlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from sentinel.alerts.formatters import json_safe
from sentinel.models.alert_models import AlertType, ThresholdsUpdate, WebhookConfig, WebhookUpdate

logger = colorlog.getLogger(__name__)

router = APIRouter(prefix="/alerts", tags=["Alerts"])


def _alert_system(request: Request):
    alerts = getattr(request.app.state, "alert_system", None)
    if alerts is None:
        raise HTTPException(status_code=503, detail="alert system not ready")
    return alerts


def _sink_view(sink: WebhookConfig) -> dict:
    # URLs often embed tokens (Telegram bot token, Discord webhook secret)
    view = sink.model_dump(mode="json")
    url = view.get("url") or ""
    view["url"] = url[:24] + "..." if len(url) > 24 else url
    return view


@router.get("")
async def list_alerts(
    request: Request,
    limit: int = 50,
    type: Optional[AlertType] = None,
    position_id: Optional[str] = None,
):
    alerts = _alert_system(request)
    limit = max(1, min(limit, 1000))
    rows = alerts.history(limit=limit, alert_type=type, position_id=position_id)
    return json_safe([a.model_dump(mode="python") for a in rows])


@router.get("/metrics")
async def alert_metrics(request: Request):
    return json_safe(_alert_system(request).metrics().model_dump(mode="python"))


@router.get("/thresholds")
async def get_thresholds(request: Request):
    return _alert_system(request).get_thresholds().model_dump()


@router.put("/thresholds")
async def update_thresholds(request: Request, body: ThresholdsUpdate):
    alerts = _alert_system(request)
    try:
        updated = alerts.update_thresholds(body)
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    engine = getattr(request.app.state, "risk_engine", None)
    if engine is not None:
        engine.update_thresholds(updated.health_factor_warning, updated.health_factor_critical)
    return updated.model_dump()


@router.get("/sinks")
async def list_sinks(request: Request):
    return [_sink_view(s) for s in _alert_system(request).sinks()]


@router.post("/sinks")
async def add_sink(request: Request, body: WebhookConfig):
    alerts = _alert_system(request)
    try:
        sink = alerts.add_sink(body)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _sink_view(sink)


@router.patch("/sinks/{name}")
async def update_sink(request: Request, name: str, body: WebhookUpdate):
    alerts = _alert_system(request)
    try:
        sink = alerts.update_sink(name, body)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"unknown sink {name}")
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _sink_view(sink)


@router.delete("/sinks/{name}")
async def remove_sink(request: Request, name: str):
    if not _alert_system(request).remove_sink(name):
        raise HTTPException(status_code=404, detail=f"unknown sink {name}")
    logger.info("sink removed via api name=%s", name)
    return {"name": name, "removed": True}
