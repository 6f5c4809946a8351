from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from .db import init_db
from .routers import checkins, sync, ws
from .core.config import get_settings
from .core.redis import ping_redis
from .core.nats import nats_close
from .core.broadcast import NatsConnectionRegistry, get_registry

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("event-checkin-svc")

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    # best-effort connect to infra; service still runs if these fail
    registry = get_registry()
    if isinstance(registry, NatsConnectionRegistry):
        try:
            await registry.start()
        except Exception:
            logger.warning("NATS unavailable; realtime events stay local to this instance", exc_info=True)
    if not await ping_redis():
        logger.warning("redis unavailable; single-use QR scans will be refused")
    yield
    await nats_close()

app = FastAPI(title="event-checkin-svc", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkins.router)
app.include_router(sync.router)
app.include_router(ws.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "event-checkin-svc"}

Instrumentator().instrument(app).expose(app)
