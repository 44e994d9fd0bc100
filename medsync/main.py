"""
FastAPI application entrypoint.

Run locally:  uvicorn medsync.main:app --reload
"""

import logging

from fastapi import FastAPI

from medsync.api.routes import router
from medsync.config import settings
from medsync.models.database import default_engine, init_db, make_session_factory
from medsync.reconciliation.records import SourceType
from medsync.services.persistence import InMemoryMedicationStore, SqlMedicationStore
from medsync.services.sources import StaticSourceAdapter
from medsync.sync.service import MedicationSyncService

logging.basicConfig(
    level=settings.LOG_LEVEL, format="%(levelname)s | %(name)s | %(message)s"
)
logger = logging.getLogger(__name__)


def build_default_service(app: FastAPI) -> MedicationSyncService:
    """Service wired from settings. Real EHR/pharmacy connectors replace the static adapters."""
    if settings.PERSISTENCE_BACKEND == "memory":
        persistence = InMemoryMedicationStore()
    else:
        engine = default_engine()
        app.state.engine = engine
        persistence = SqlMedicationStore(make_session_factory(engine))

    adapters = {SourceType.EHR: StaticSourceAdapter(), SourceType.PHARMACY: StaticSourceAdapter()}
    return MedicationSyncService(
        adapters=adapters,
        persistence=persistence,
        intervals=settings.sync_intervals(),
        fetch_timeout_seconds=settings.SOURCE_FETCH_TIMEOUT_SECONDS,
        history_limit=settings.SYNC_HISTORY_LIMIT,
    )


def create_app(service: MedicationSyncService | None = None) -> FastAPI:
    app = FastAPI(
        title="Medication Sync API",
        description=(
            "Collects a patient's medications from EHR, pharmacy and local "
            "records, detects conflicts between sources and reconciles them "
            "on a per-patient schedule."
        ),
        version="1.0.0",
    )
    app.state.engine = None
    app.state.sync_service = service or build_default_service(app)
    app.include_router(router, prefix="/api/v1")

    @app.on_event("startup")
    def on_startup():
        if app.state.engine is not None:
            init_db(app.state.engine)

    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.sync_service.shutdown()

    return app


app = create_app()
