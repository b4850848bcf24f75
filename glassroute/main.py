from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from glassroute.api.deps import Services
from glassroute.api.errors import install_error_handlers
from glassroute.api.routes import router as api_router
from glassroute.api.workflow import router as workflow_router
from glassroute.config import load_config
from glassroute.models.database import DatabaseManager
from glassroute.telemetry.classifier import TelemetryProcessor
from glassroute.telemetry.queue import TelemetryQueue
from glassroute.telemetry.store import TelemetryStore, sweep_forever

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = load_config()
    db = DatabaseManager(config.database.path, busy_timeout_seconds=config.database.busy_timeout_seconds)
    db.initialize()

    store = TelemetryStore(config.telemetry.path)
    store.initialize()

    processor = TelemetryProcessor(config.thresholds)
    services = Services.build(processor)

    queue = TelemetryQueue(
        lambda reading: processor.process(db, store, reading),
        attempts=config.queue.attempts,
        backoff_seconds=config.queue.backoff_seconds,
        concurrency=config.queue.concurrency,
        failed_limit=config.queue.failed_limit,
    )
    if config.queue.auto_start:
        queue.start()

    sweep_task = asyncio.create_task(
        sweep_forever(store, config.telemetry.retention_days, config.telemetry.purge_interval_seconds)
    )

    app.state.config = config
    app.state.db = db
    app.state.services = services
    app.state.telemetry_store = store
    app.state.queue = queue

    yield

    sweep_task.cancel()
    with suppress(asyncio.CancelledError):
        await sweep_task

    await queue.stop()
    store.close()


app = FastAPI(
    title="Glass Recycling Collection API",
    version="1.0.0",
    description="Bin lifecycle, retirement requests and collection routes for glass recycling",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)
app.include_router(api_router)
app.include_router(workflow_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
