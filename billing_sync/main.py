from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from billing_sync.api.routers import billing, plans
from billing_sync.infrastructure.db.engine import create_schema, get_engine
from billing_sync.shared.config import get_settings


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    if settings.db_auto_create and settings.postgres_dsn:
        logger.info("main: create_schema")
        create_schema(get_engine(settings.postgres_dsn))
    yield


logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(title="Billing Sync API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(plans.router)
app.include_router(billing.router)


@app.get("/health")
def health():
    return {"status": "ok"}
