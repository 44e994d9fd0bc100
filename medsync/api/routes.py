"""
FastAPI routes for medication sync.

Thin layer over MedicationSyncService: request models are converted to
domain config, domain errors are mapped to HTTP status codes.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import text

from medsync.config import settings
from medsync.errors import ConfigurationError, EntityNotConfiguredError, SyncInProgressError
from medsync.schemas.api import (
    HealthResponse,
    InitializeResponse,
    MessageResponse,
    SyncConfigRequest,
    SyncRunResponse,
    SyncStatusResponse,
)
from medsync.sync.service import MedicationSyncService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_sync_service(request: Request) -> MedicationSyncService:
    return request.app.state.sync_service


def _not_configured(exc: EntityNotConfiguredError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(request: Request):
    """Basic health endpoint – verifies DB connectivity when a database is configured."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        db_status = "not_configured"
    else:
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            db_status = "connected"
        except Exception:
            logger.exception("Health check could not reach the database")
            db_status = "disconnected"
    return HealthResponse(status="healthy", environment=settings.ENVIRONMENT, database=db_status)


# ---------------------------------------------------------------------------
# Sync lifecycle
# ---------------------------------------------------------------------------

@router.put("/patients/{entity_id}/sync", response_model=InitializeResponse)
async def initialize_sync(
    entity_id: str,
    request: SyncConfigRequest,
    service: MedicationSyncService = Depends(get_sync_service),
):
    """Configure sync for a patient, start its schedule and run the initial pass."""
    try:
        result = await service.initialize(entity_id, request.to_config())
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return InitializeResponse(
        entity_id=entity_id,
        next_sync_at=result.next_sync_at,
        initial_sync=SyncRunResponse.from_result(result.initial_pass),
    )


@router.post("/patients/{entity_id}/sync/run", response_model=SyncRunResponse)
async def trigger_sync(entity_id: str, service: MedicationSyncService = Depends(get_sync_service)):
    """Run one reconciliation pass now."""
    try:
        result = await service.trigger_manual_sync(entity_id)
    except EntityNotConfiguredError as exc:
        raise _not_configured(exc)
    except SyncInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return SyncRunResponse.from_result(result)


@router.post("/patients/{entity_id}/sync/start", response_model=MessageResponse)
async def start_sync(entity_id: str, service: MedicationSyncService = Depends(get_sync_service)):
    try:
        await service.start(entity_id)
    except EntityNotConfiguredError as exc:
        raise _not_configured(exc)
    return MessageResponse(entity_id=entity_id, message="Medication synchronization started")


@router.delete("/patients/{entity_id}/sync", response_model=MessageResponse)
async def stop_sync(entity_id: str, service: MedicationSyncService = Depends(get_sync_service)):
    try:
        await service.stop(entity_id)
    except EntityNotConfiguredError as exc:
        raise _not_configured(exc)
    return MessageResponse(entity_id=entity_id, message="Medication synchronization stopped")


@router.get("/patients/{entity_id}/sync", response_model=SyncStatusResponse)
async def get_sync_status(entity_id: str, service: MedicationSyncService = Depends(get_sync_service)):
    try:
        status = service.status(entity_id)
    except EntityNotConfiguredError as exc:
        raise _not_configured(exc)
    return SyncStatusResponse.from_status(status)
