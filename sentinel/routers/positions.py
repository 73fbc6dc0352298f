from typing import Optional

import colorlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from sentinel.alerts.formatters import json_safe

logger = colorlog.getLogger(__name__)

router = APIRouter(prefix="/positions", tags=["Positions"])


class WatchRequest(BaseModel):
    address: str


def _coordinator(request: Request):
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="monitor not ready")
    return coordinator


@router.get("")
async def list_positions(request: Request, protocol: Optional[str] = None, level: Optional[str] = None):
    """Every watched position with its latest risk score, prediction and a summary."""
    coordinator = _coordinator(request)
    rows = []
    for report in coordinator.reports():
        if protocol and report.position.protocol.value != protocol:
            continue
        if level and (report.risk is None or report.risk.risk_level.value != level):
            continue
        rows.append(report.model_dump(mode="python"))
    rows.sort(key=lambda r: (r["risk"] or {}).get("health_factor", float("inf")))
    return json_safe({"positions": rows, "summary": coordinator.summary(), "count": len(rows)})


@router.get("/{position_id}")
async def get_position(request: Request, position_id: str):
    coordinator = _coordinator(request)
    for report in coordinator.reports():
        if report.position.id == position_id:
            return json_safe(report.model_dump(mode="python"))
    raise HTTPException(status_code=404, detail=f"unknown position {position_id}")


@router.post("/watch")
async def watch_address(request: Request, body: WatchRequest):
    coordinator = _coordinator(request)
    address = body.address.strip()
    if not address:
        raise HTTPException(status_code=400, detail="address is required")
    added = coordinator.monitor.watch(address)
    logger.info("watch requested address=%s added=%s", address, added)
    return {"address": address, "added": added, "watched": coordinator.monitor.watched()}


@router.delete("/watch/{address}")
async def unwatch_address(request: Request, address: str):
    coordinator = _coordinator(request)
    if not coordinator.monitor.unwatch(address):
        raise HTTPException(status_code=404, detail=f"address not watched: {address}")
    return {"address": address, "removed": True, "watched": coordinator.monitor.watched()}
