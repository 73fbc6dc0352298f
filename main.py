from contextlib import asynccontextmanager
import logging
import time

import aiohttp
import colorlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from config import config
from sentinel.alerts.alert_system import AlertSystem
from sentinel.alerts.sinks import WebhookSender
from sentinel.oracle.price_resolver import PriceResolver
from sentinel.risk.risk_engine import RiskEngine
from sentinel.services.coordinator import MonitoringCoordinator
from sentinel.services.event_bus import InProcessEventBus
from sentinel.services.position_monitor import BackoffPolicy, PositionMonitor
from sentinel.services.reserve_cache import ReserveCache
from sentinel.services.rpc_client import SolanaRpcClient

# Import Routers
from sentinel.routers import alerts, positions

# Configure Colored Logging
handler = colorlog.StreamHandler()
handler.setFormatter(colorlog.ColoredFormatter(
    '%(log_color)s%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    log_colors={
        'DEBUG': 'cyan',
        'INFO': 'green',
        'WARNING': 'yellow',
        'ERROR': 'red',
        'CRITICAL': 'red,bg_white',
    }
))
logger = colorlog.getLogger()
if not logger.handlers:
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))

# App version
VERSION = "0.1.0"


# Lifespan manager to handle startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("🚀 Sentinel Starting...")
    config.validate()

    # Shared HTTP session for RPC, price API and webhooks
    app.state.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
    session = app.state.session

    rpc = SolanaRpcClient(config.SOLANA_RPC_URL, session=session)
    prices = PriceResolver(session=session, api_url=config.PRICE_API_URL, ttl_sec=config.PRICE_CACHE_TTL_SEC)
    cache = ReserveCache(rpc=rpc, prices=prices)
    event_bus = InProcessEventBus()

    try:
        await cache.load_kamino_reserves()
        await cache.load_drift_markets()
    except Exception as e:
        # positions referencing missing reserves are refreshed lazily by the monitor
        logger.warning("⚠️  Reserve preload failed: %s", e)

    monitor = PositionMonitor(
        rpc,
        cache,
        prices,
        config.SOLANA_WS_URL,
        event_bus=event_bus,
        backoff=BackoffPolicy(
            base_sec=config.RECONNECT_BASE_SEC,
            max_sec=config.RECONNECT_MAX_SEC,
            max_attempts=config.RECONNECT_MAX_ATTEMPTS,
        ),
        keepalive_interval_sec=config.KEEPALIVE_INTERVAL_SEC,
        keepalive_timeout_sec=config.KEEPALIVE_TIMEOUT_SEC,
    )
    for address in config.WATCH_ADDRESSES:
        monitor.watch(address)

    engine = RiskEngine(
        prices,
        warning_threshold=config.LIQUIDATION_WARNING_THRESHOLD,
        critical_threshold=config.CRITICAL_HEALTH_THRESHOLD,
        periods_per_year=config.PERIODS_PER_YEAR,
    )
    alert_system = AlertSystem(
        config.thresholds(),
        config.sinks(),
        sender=WebhookSender(session=session),
    )
    coordinator = MonitoringCoordinator(
        monitor,
        engine,
        alert_system,
        event_bus=event_bus,
        poll_interval_sec=config.POLL_INTERVAL_SEC,
    )

    app.state.event_bus = event_bus
    app.state.reserve_cache = cache
    app.state.price_resolver = prices
    app.state.risk_engine = engine
    app.state.alert_system = alert_system
    app.state.coordinator = coordinator

    await coordinator.start()
    await alert_system.send_info(
        "Sentinel online",
        {"watched": len(config.WATCH_ADDRESSES), "sinks": len(alert_system.sinks())},
    )

    yield
    # Shutdown
    logger.info("🛑 Shutting down sentinel...")
    await coordinator.stop()
    await alert_system.close()
    await session.close()


app = FastAPI(
    title="Sentinel API",
    description="Liquidation-risk monitor for Solana lending and margin positions",
    version=VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include Routers
app.include_router(positions.router)
app.include_router(alerts.router)


@app.get("/health")
async def health(request: Request):
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        return {"status": "starting", "version": VERSION, "timestamp": int(time.time() * 1000)}
    body = coordinator.health()
    body["version"] = VERSION
    body["event_bus"] = request.app.state.event_bus.stats()
    body["reserve_cache"] = request.app.state.reserve_cache.stats()
    body["prices"] = request.app.state.price_resolver.stats()
    body["risk_engine"] = request.app.state.risk_engine.stats()
    body["timestamp"] = int(time.time() * 1000)
    return body


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
