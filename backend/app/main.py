import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from config import settings
from models import async_session, engine
from api.sites import router as sites_router
from api.sensors import router as sensors_router
from api.alarms import router as alarms_router
from api.layout import router as layout_router
from core.websocket import SiteBroadcaster, router as ws_router, events_to_ws_bridge
from services.alarm_service import AlarmService
from services.ingestion import IngestionCoordinator
from services.layout_service import LayoutService
from services.repositories import AlarmRepository, SensorRepository
from services.site_registry import SiteRegistry
from services.site_status import SiteStatusService

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("monitoring.main")

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Monitoring backend starting... DEBUG=%s", settings.DEBUG)

    # Redis
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=False)
    app.state.redis = redis
    logger.info("Redis connected: %s", settings.REDIS_URL)

    # Persistence + configuration
    sensor_repo = SensorRepository(async_session)
    alarm_repo = AlarmRepository(async_session)
    registry = SiteRegistry(
        settings.SITES_CONFIG_PATH,
        settings.COUNTIES_CONFIG_PATH,
        settings.SENSORS_CONFIG_PATH,
        settings.LAYOUTS_DIR,
    )
    app.state.sensor_repo = sensor_repo
    app.state.alarm_repo = alarm_repo
    app.state.registry = registry

    # Query services
    app.state.site_status = SiteStatusService(
        sensor_repo, alarm_repo, registry,
        online_threshold_minutes=settings.ONLINE_THRESHOLD_MINUTES,
    )
    app.state.alarm_service = AlarmService(alarm_repo)
    app.state.layout_service = LayoutService(
        sensor_repo, registry,
        online_threshold_minutes=settings.ONLINE_THRESHOLD_MINUTES,
    )

    # Redis → WebSocket fan-out
    broadcaster = SiteBroadcaster()
    app.state.broadcaster = broadcaster
    bridge_task = asyncio.create_task(
        events_to_ws_bridge(redis, broadcaster, settings.EVENTS_CHANNEL)
    )

    # MQTT ingestion
    coordinator = None
    ingest_task = None
    if settings.MQTT_ENABLED:
        coordinator = IngestionCoordinator(
            redis, sensor_repo, alarm_repo,
            broker=settings.MQTT_BROKER,
            port=settings.MQTT_PORT,
            username=settings.MQTT_USERNAME,
            password=settings.MQTT_PASSWORD,
            client_id=settings.MQTT_CLIENT_ID,
            topic_pattern=settings.MQTT_TOPIC_PATTERN,
            events_channel=settings.EVENTS_CHANNEL,
            reconnect_delay=settings.MQTT_RECONNECT_DELAY,
            connect_timeout=settings.MQTT_CONNECT_TIMEOUT,
            queue_size=settings.INGEST_QUEUE_SIZE,
        )
        ingest_task = asyncio.create_task(coordinator.start())
        logger.info("MQTT ingestion enabled")
    else:
        logger.info("MQTT ingestion DISABLED (MQTT_ENABLED=false)")
    app.state.ingestion = coordinator

    yield

    # Shutdown
    logger.info("Monitoring backend shutting down...")
    if coordinator:
        await coordinator.stop()

    all_tasks = [bridge_task]
    if ingest_task:
        all_tasks.append(ingest_task)
    for t in all_tasks:
        t.cancel()
    for t in all_tasks:
        try:
            await t
        except asyncio.CancelledError:
            pass

    await broadcaster.close()
    await redis.close()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Gas & Fire Monitoring API",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sites_router)
app.include_router(sensors_router)
app.include_router(alarms_router)
app.include_router(layout_router)
app.include_router(ws_router)


@app.get("/health")
async def health():
    coordinator = app.state.ingestion
    mqtt = {"enabled": coordinator is not None}
    if coordinator is not None:
        mqtt.update(
            connected=coordinator.is_connected,
            state=coordinator.state.value,
            broker=f"{coordinator.broker}:{coordinator.port}",
            stats=dict(coordinator.stats),
        )
    return {
        "status": "ok",
        "version": VERSION,
        "mqtt": mqtt,
        "ws_clients": app.state.broadcaster.client_count,
    }
