# /backend/clinic/main.py

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from clinic import config
from clinic.api.routers import (
    appointments, auth, calendar, cron, dashboard, patients, reports, schedules, services, surveys, therapists,
)
from clinic.db import Database, get_db
from clinic.errors import register_exception_handlers
from clinic.kafka import build_producer, start_producer, stop_producer
from clinic.middleware.gatekeeper import GatekeeperMiddleware
from clinic.services.audit import AuditLogger, DatabaseAuditStore, KafkaAuditStore
from clinic.services.email_service import EmailService, build_email_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database: Database = app.state.database
    database.connect()
    producer = None
    if config.AUDIT_BACKEND == "kafka":
        producer = await start_producer(build_producer())
        app.state.audit_logger = AuditLogger(KafkaAuditStore(producer, config.AUDIT_TOPIC))
        logger.info("Audit entries are streamed to %s", config.AUDIT_TOPIC)
    try:
        yield
    finally:
        await stop_producer(producer)
        await database.dispose()


def create_app(
    database: Optional[Database] = None,
    email_service: Optional[EmailService] = None,
) -> FastAPI:
    app = FastAPI(title=config.APP_NAME, lifespan=lifespan)

    app.state.database = database or Database()
    app.state.audit_logger = AuditLogger(DatabaseAuditStore(app.state.database))
    app.state.email_service = email_service or build_email_service()

    register_exception_handlers(app)

    app.add_middleware(GatekeeperMiddleware)
    # outermost, so preflight and rejections carry CORS headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth.router)
    app.include_router(appointments.router)
    app.include_router(patients.router)
    app.include_router(services.router)
    app.include_router(therapists.router)
    app.include_router(therapists.links_router)
    app.include_router(schedules.router)
    app.include_router(surveys.router)
    app.include_router(surveys.admin_router)
    app.include_router(dashboard.router)
    app.include_router(reports.router)
    app.include_router(calendar.router)
    app.include_router(cron.router)

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/db-health")
    async def db_health(db: AsyncSession = Depends(get_db)):
        result = await db.execute(text("SELECT 1"))
        return {"db": "ok", "result": result.scalar_one()}

    return app


app = create_app()
