from __future__ import annotations

import asyncio
import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from app.core.errors import DomainError
from app.core.middleware import RequestLogMiddleware
from app.db.base import Base
from app.db.session import engine

# Register models
from app.db import models  # noqa: F401

from services.auth.api import router as auth_router
from services.catalog.api import router as catalog_router
from services.inventory.api import router as inventory_router
from services.sales.api import router as sales_router
from services.purchasing.api import router as purchasing_router
from services.manufacturing.api import router as manufacturing_router
from services.notifications.api import router as notifications_router
from services.admin.events_api import router as events_admin_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("app")

app = FastAPI(title="Factory ERP")
app.add_middleware(RequestLogMiddleware)


@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        log.error("domain error on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(IntegrityError)
async def _integrity_error(request: Request, exc: IntegrityError):
    log.warning("integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(
        status_code=409,
        content={"error": "integrity_error", "detail": "Data integrity violation (duplicate or referenced record)"},
    )


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception):
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal server error"})


app.include_router(auth_router)
app.include_router(catalog_router)
app.include_router(inventory_router)
app.include_router(sales_router)
app.include_router(purchasing_router)
app.include_router(manufacturing_router)
app.include_router(notifications_router)
app.include_router(events_admin_router)


@app.on_event("startup")
async def _startup():
    # Dev-friendly schema creation (migrations are available for real upgrades)
    Base.metadata.create_all(bind=engine)

    if os.getenv("EVENT_DISPATCHER_ENABLED", "1") != "0":
        from app.events.dispatcher import run_dispatcher_forever

        poll = float(os.getenv("EVENT_DISPATCHER_POLL_SECONDS", "1.0"))
        asyncio.create_task(run_dispatcher_forever(poll_interval_seconds=poll))
        log.info("event dispatcher started (poll=%ss)", poll)


@app.get("/health")
def health():
    return {"ok": True}
