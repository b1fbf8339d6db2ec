"""
REST API module for Weather Service.

Provides endpoints for:
- Registering cities to track (geocoded, persisted, then sampled every tick)
- Queueing notification e-mails
- Ingestion status and manual runs
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .config import (
    ClickHouseConfig,
    ConfigError,
    RabbitConfig,
    WeatherApiConfig,
    ingest_interval_seconds,
)
from .database import AnalyticsStore, StoreError
from .fetcher import OpenWeatherFetcher
from .ingestion import BatchWriter
from .publisher import PublishError, PublisherNotConnected, TaskPublisher
from .registry import CityRegistry, RegistrationError
from .scheduler import IngestionScheduler
from .tasks import NotificationTask

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Models
# =============================================================================

class City(BaseModel):
    name: str
    latitude: float
    longitude: float


class RegisterCitiesRequest(BaseModel):
    cities: List[str] = Field(..., min_length=1)


class RegisterCitiesResponse(BaseModel):
    added: List[City]
    tracked: int


class NotificationRequest(BaseModel):
    to: str = Field(..., min_length=3)
    subject: str
    body: str
    type: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)


class IngestionResultModel(BaseModel):
    success: bool
    rows_written: int
    cities: int
    error_message: Optional[str]
    run_time: str
    duration_ms: int


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    database: str
    scheduler: str
    broker: str


# =============================================================================
# Global State
# =============================================================================

store: Optional[AnalyticsStore] = None
registry: Optional[CityRegistry] = None
scheduler: Optional[IngestionScheduler] = None
publisher: Optional[TaskPublisher] = None


def _init_ingestion() -> None:
    """Store, registry and scheduler. A config or store error disables ingestion only."""
    global store, registry, scheduler

    try:
        clickhouse_config = ClickHouseConfig.from_env()
        api_config = WeatherApiConfig.from_env()
        interval = ingest_interval_seconds()
    except ConfigError as e:
        logger.error(f"Ingestion disabled: {e}")
        return

    fetcher = OpenWeatherFetcher.from_config(api_config)
    try:
        store = AnalyticsStore.connect(clickhouse_config)
        store.init_schema()
        registry = CityRegistry(store, fetcher)
        registry.load()
    except StoreError as e:
        logger.error(f"Failed to initialize ClickHouse: {e}")
        store = registry = None
        return

    scheduler = IngestionScheduler(registry, BatchWriter(fetcher, store), interval=interval)
    scheduler.start()


def _init_publisher() -> None:
    global publisher

    try:
        rabbit_config = RabbitConfig.from_env()
    except ConfigError as e:
        logger.error(f"Notifications disabled: {e}")
        return

    publisher = TaskPublisher.from_config(rabbit_config)
    try:
        publisher.connect()
    except PublishError as e:
        # publish() reports PublisherNotConnected until a restart
        logger.error(f"Failed to initialize RabbitMQ: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global store, registry, scheduler, publisher

    logger.info("Starting Weather Service...")
    _init_ingestion()
    _init_publisher()

    yield

    # Shutdown
    logger.info("Shutting down...")
    if scheduler:
        scheduler.stop()
    if publisher:
        publisher.close()
    if store:
        store.close()
    store = registry = scheduler = publisher = None
    logger.info("Shutdown complete")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Weather Service API",
    description="Tracked-city weather sampling and e-mail notifications",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# API Endpoints - Info
# =============================================================================

@app.get("/", tags=["Info"])
async def root():
    """API information."""
    return {
        "name": "Weather Service API",
        "version": "1.0.0",
        "description": "OpenWeather samples for tracked cities, stored in ClickHouse"
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint."""
    database_ok = store is not None
    scheduler_ok = scheduler is not None and scheduler.is_running
    broker_ok = publisher is not None and publisher.is_connected

    return HealthResponse(
        status="healthy" if database_ok and scheduler_ok and broker_ok else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        database="connected" if database_ok else "disconnected",
        scheduler="running" if scheduler_ok else "stopped",
        broker="connected" if broker_ok else "disconnected"
    )


# =============================================================================
# API Endpoints - Cities
# =============================================================================

@app.get("/cities", tags=["Cities"])
async def get_cities():
    """Get list of tracked cities."""
    if not registry:
        raise HTTPException(status_code=503, detail="Registry not available")

    cities = registry.names()
    return {
        "cities": cities,
        "count": len(cities)
    }


@app.post("/v1/cities", response_model=RegisterCitiesResponse, status_code=201, tags=["Cities"])
def register_cities(request: RegisterCitiesRequest):
    """Start tracking cities. Either every new city is added or none is."""
    if not registry:
        raise HTTPException(status_code=503, detail="Registry not available")

    try:
        added = registry.register(request.cities)
    except RegistrationError as e:
        raise HTTPException(status_code=400, detail=f"addCities error: {e}")

    return RegisterCitiesResponse(
        added=[City(name=c.name, latitude=c.latitude, longitude=c.longitude) for c in added],
        tracked=len(registry)
    )


# =============================================================================
# API Endpoints - Notifications
# =============================================================================

@app.post("/v1/notifications", status_code=202, tags=["Notifications"])
def queue_notification(request: NotificationRequest):
    """Queue an e-mail for the consumer pool."""
    if not publisher:
        raise HTTPException(status_code=503, detail="Broker not configured")

    task = NotificationTask(
        recipient=request.to,
        subject=request.subject,
        body=request.body,
        kind=request.type,
        metadata=request.meta
    )
    try:
        publisher.publish(task)
    except (PublisherNotConnected, PublishError) as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {"message": "Notification queued"}


# =============================================================================
# API Endpoints - Admin
# =============================================================================

@app.post("/fetch", response_model=IngestionResultModel, tags=["Admin"])
def trigger_fetch():
    """Manually trigger an ingestion run."""
    if not scheduler:
        raise HTTPException(status_code=503, detail="Scheduler not available")

    result = scheduler.trigger_immediate_run()
    if result is None:
        raise HTTPException(status_code=409, detail="Ingestion run already in progress")
    return IngestionResultModel(**result.__dict__)


@app.get("/fetch/results", tags=["Admin"])
async def get_fetch_results():
    """Get scheduler status and the last ingestion result."""
    if not scheduler:
        raise HTTPException(status_code=503, detail="Scheduler not available")

    return scheduler.get_scheduler_status()


def main() -> None:
    import uvicorn
    uvicorn.run(
        "weather_service.api:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("DEBUG", "false").lower() == "true"
    )


if __name__ == "__main__":
    main()
