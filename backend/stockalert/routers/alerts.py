"""Alert router — the console's entry points into the engine.

Endpoints:
    POST  /generate                 Evaluate an inventory snapshot (debounced)
    GET   /                         List alerts with filters
    GET   /stats                    Counts over current alerts
    POST  /{alert_id}/acknowledge   Acknowledge an open alert
    GET   /settings                 Active alert settings
    PATCH /settings                 Partial settings update (privileged)
    POST  /cleanup                  Age-based cleanup now (privileged)

Every endpoint needs an authenticated actor.  Settings changes, forced runs
and manual cleanup are authorized by the engine's SettingsGuard.
"""

from fastapi import APIRouter, Depends, Query, status

from stockalert.auth.deps import get_current_actor, get_engine, require_permission
from stockalert.schemas.alerts import (
    Actor,
    AlertSettings,
    AlertStats,
    AutoAlert,
    CleanupResult,
    GenerateRequest,
    RunSummary,
    SettingsUpdate,
    Severity,
)
from stockalert.services.engine import AlertEngine

router = APIRouter()


# ── Evaluation ───────────────────────────────────────────────

@router.post("/generate", response_model=RunSummary)
async def generate_alerts(
    body: GenerateRequest,
    engine: AlertEngine = Depends(get_engine),
    actor: Actor = Depends(require_permission("alerts.generate")),
):
    """Run the evaluator against the supplied snapshot.  A call inside the
    debounce window returns ``admitted: false`` and creates nothing."""
    return await engine.generate_alerts(body.items, force=body.force, actor=actor)


# ── Alerts ───────────────────────────────────────────────────

@router.get("/", response_model=list[AutoAlert])
async def list_alerts(
    severity: Severity | None = Query(None, description="Filter by severity"),
    unacknowledged_only: bool = Query(False),
    engine: AlertEngine = Depends(get_engine),
    _actor: Actor = Depends(require_permission("alerts.read")),
):
    return engine.list_alerts(severity=severity, unacknowledged_only=unacknowledged_only)


@router.get("/stats", response_model=AlertStats)
async def get_stats(
    engine: AlertEngine = Depends(get_engine),
    _actor: Actor = Depends(require_permission("alerts.read")),
):
    return engine.get_stats()


@router.post("/{alert_id}/acknowledge", response_model=AutoAlert)
async def acknowledge_alert(
    alert_id: str,
    engine: AlertEngine = Depends(get_engine),
    actor: Actor = Depends(require_permission("alerts.acknowledge")),
):
    return await engine.acknowledge_alert(alert_id, actor.id)


# ── Settings ─────────────────────────────────────────────────

@router.get("/settings", response_model=AlertSettings)
async def get_settings(
    engine: AlertEngine = Depends(get_engine),
    _actor: Actor = Depends(get_current_actor),
):
    return engine.get_settings()


@router.patch("/settings", response_model=AlertSettings)
async def update_settings(
    body: SettingsUpdate,
    engine: AlertEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    return await engine.update_settings(body, actor)


# ── Cleanup ──────────────────────────────────────────────────

@router.post("/cleanup", response_model=CleanupResult, status_code=status.HTTP_200_OK)
async def run_cleanup(
    force: bool = Query(False, description="Ignore autoAcknowledge.enabled"),
    engine: AlertEngine = Depends(get_engine),
    actor: Actor = Depends(require_permission("alerts.cleanup")),
):
    evicted = await engine.run_cleanup(force=force, actor=actor)
    return CleanupResult(evicted=evicted)
