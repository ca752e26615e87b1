"""
Security API Router

Endpoints for prompt/response analysis, alerts, the audit log,
conversation threat state and host security checks.
"""
import os
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from aiedr.models.security import (
    AlertActionResponse,
    AlertListResponse,
    BlockedRequest,
    BlockedResponse,
    ClearedResponse,
    ConversationEndResponse,
    ConversationStateResponse,
    HostSecurityReportResponse,
    MonitoringStatusResponse,
    MonitoringTriggerResponse,
    PromptAnalysisRequest,
    ResponseAnalysisRequest,
    SettingsResponse,
    SettingsUpdateRequest,
    StatusResponse,
    ThreatAnalysisResponse,
)
from aiedr.services.base import ConfigurationError, ValidationError
from aiedr.services.edr_service import ThreatDetectionEngine
from aiedr.services.monitoring_scheduler import HostMonitoringScheduler
from aiedr.services.threat_types import ThreatAnalysis

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/security", tags=["security"])

limiter = Limiter(key_func=get_remote_address)

ANALYSIS_RATE_LIMIT = os.getenv("AIEDR_ANALYSIS_RATE_LIMIT", "120/minute")
HOST_CHECK_RATE_LIMIT = os.getenv("AIEDR_HOST_CHECK_RATE_LIMIT", "6/minute")

# Never echoed back through the settings endpoint
HIDDEN_SETTINGS = {"redis_url"}


# Dependency injection
def get_engine(request: Request) -> ThreatDetectionEngine:
    """Get the engine built at startup"""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Engine not initialized")
    return engine


def get_monitor(request: Request) -> Optional[HostMonitoringScheduler]:
    return getattr(request.app.state, "monitor", None)


def _analysis_response(engine: ThreatDetectionEngine, analysis: ThreatAnalysis) -> ThreatAnalysisResponse:
    return ThreatAnalysisResponse(**analysis.to_dict(), decision=engine.decide(analysis).value)


def _visible_settings(engine: ThreatDetectionEngine) -> dict:
    return {k: v for k, v in engine.settings.to_dict().items() if k not in HIDDEN_SETTINGS}


# =============================================================================
# Analysis
# =============================================================================


@router.post("/prompt", response_model=ThreatAnalysisResponse)
@limiter.limit(ANALYSIS_RATE_LIMIT)
async def analyze_prompt(
    payload: PromptAnalysisRequest,
    request: Request,
    engine: ThreatDetectionEngine = Depends(get_engine),
):
    """
    Analyze an inbound user message.

    Runs pattern analysis, fuses the AI intent verdict when enabled and
    records attack attempts against the conversation. The response carries
    a decision (block / confirm / allow); enforcing it is up to the caller.
    """
    try:
        analysis = await engine.analyze_prompt(
            payload.content,
            conversation_context=payload.conversation_context,
            conversation_id=payload.conversation_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    return _analysis_response(engine, analysis)


@router.post("/response", response_model=ThreatAnalysisResponse)
@limiter.limit(ANALYSIS_RATE_LIMIT)
async def analyze_response(
    payload: ResponseAnalysisRequest,
    request: Request,
    engine: ThreatDetectionEngine = Depends(get_engine),
):
    """Analyze a model response. Credentials are redacted in sanitized_content."""
    try:
        analysis = await engine.analyze_response(payload.content, conversation_id=payload.conversation_id)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    return _analysis_response(engine, analysis)


# =============================================================================
# Alerts
# =============================================================================


@router.get("/alerts", response_model=AlertListResponse)
async def list_alerts(
    include_acknowledged: bool = False,
    engine: ThreatDetectionEngine = Depends(get_engine),
):
    """List alerts, newest first. Acknowledged alerts are hidden unless requested."""
    alerts = engine.alerts() if include_acknowledged else engine.active_alerts()
    return AlertListResponse(
        alerts=[a.to_dict() for a in alerts],
        total=len(alerts),
        current_threat_level=engine.current_threat_level().value,
    )


@router.post("/alerts/{alert_id}/acknowledge", response_model=AlertActionResponse)
async def acknowledge_alert(alert_id: str, engine: ThreatDetectionEngine = Depends(get_engine)):
    if not await engine.acknowledge_alert(alert_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return AlertActionResponse(alert_id=alert_id, status="acknowledged")


@router.delete("/alerts/acknowledged", response_model=ClearedResponse)
async def clear_acknowledged_alerts(engine: ThreatDetectionEngine = Depends(get_engine)):
    return ClearedResponse(cleared=await engine.clear_acknowledged_alerts())


@router.delete("/alerts/{alert_id}", response_model=AlertActionResponse)
async def clear_alert(alert_id: str, engine: ThreatDetectionEngine = Depends(get_engine)):
    """Remove an alert. Unknown IDs are not an error."""
    removed = await engine.clear_alert(alert_id)
    return AlertActionResponse(alert_id=alert_id, status="cleared" if removed else "not_found")


@router.get("/status", response_model=StatusResponse)
async def get_status(engine: ThreatDetectionEngine = Depends(get_engine)):
    return StatusResponse(**engine.status())


# =============================================================================
# Audit log
# =============================================================================


@router.get("/audit/export")
async def export_audit_log(engine: ThreatDetectionEngine = Depends(get_engine)):
    """
    Export the audit log as a JSON array.

    The export is itself audited, so it appears in the next export.
    """
    payload = await engine.export_audit_log()
    return Response(
        content=payload,
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="aiedr_audit_log.json"'},
    )


@router.delete("/audit", response_model=ClearedResponse)
async def clear_audit_log(engine: ThreatDetectionEngine = Depends(get_engine)):
    return ClearedResponse(cleared=await engine.clear_audit_log())


# =============================================================================
# Conversations
# =============================================================================


@router.get("/conversations/{conversation_id}", response_model=ConversationStateResponse)
async def get_conversation_state(conversation_id: str, engine: ThreatDetectionEngine = Depends(get_engine)):
    state = engine.conversation_state(conversation_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No threat state for conversation")
    return ConversationStateResponse(**state.to_dict())


@router.post("/conversations/{conversation_id}/blocked", response_model=BlockedResponse)
async def report_blocked(
    conversation_id: str,
    payload: BlockedRequest,
    engine: ThreatDetectionEngine = Depends(get_engine),
):
    """Report that the caller blocked a message in this conversation."""
    try:
        mitigated = await engine.record_blocked_alerts(payload.alert_ids, conversation_id)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    state = engine.conversation_state(conversation_id)
    return BlockedResponse(
        conversation_id=conversation_id,
        mitigated_alerts=mitigated,
        blocked_attempts=state.blocked_attempts if state else 0,
    )


@router.delete("/conversations/{conversation_id}", response_model=ConversationEndResponse)
async def end_conversation(conversation_id: str, engine: ThreatDetectionEngine = Depends(get_engine)):
    """End a conversation and forget its threat history."""
    try:
        had_state = await engine.end_conversation(conversation_id)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    return ConversationEndResponse(conversation_id=conversation_id, had_threat_state=had_state)


# =============================================================================
# Host security
# =============================================================================


@router.post("/host/check", response_model=HostSecurityReportResponse)
@limiter.limit(HOST_CHECK_RATE_LIMIT)
async def check_host(request: Request, engine: ThreatDetectionEngine = Depends(get_engine)):
    """
    Run a full host security audit.

    Checks run concurrently; a check that fails degrades the report
    instead of failing the request.
    """
    report = await engine.check_host()
    return HostSecurityReportResponse(**report.to_dict())


@router.get("/host/report", response_model=HostSecurityReportResponse)
async def get_host_report(engine: ThreatDetectionEngine = Depends(get_engine)):
    if engine.last_host_report is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No host security check has run yet")
    return HostSecurityReportResponse(**engine.last_host_report.to_dict())


@router.get("/monitoring/status", response_model=MonitoringStatusResponse)
async def get_monitoring_status(monitor: Optional[HostMonitoringScheduler] = Depends(get_monitor)):
    if monitor is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Monitoring not initialized")
    return MonitoringStatusResponse(**monitor.get_status())


@router.post("/monitoring/trigger", response_model=MonitoringTriggerResponse)
async def trigger_monitoring(
    background_tasks: BackgroundTasks,
    monitor: Optional[HostMonitoringScheduler] = Depends(get_monitor),
):
    """Run a host check now, in the background."""
    if monitor is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Monitoring not initialized")

    background_tasks.add_task(monitor.run_now)
    return MonitoringTriggerResponse(
        status="started",
        message="Host security check started in background. Check logs for progress."
    )


# =============================================================================
# Settings
# =============================================================================


@router.get("/settings", response_model=SettingsResponse)
async def get_settings(engine: ThreatDetectionEngine = Depends(get_engine)):
    return SettingsResponse(settings=_visible_settings(engine))


@router.patch("/settings", response_model=SettingsResponse)
async def update_settings(
    payload: SettingsUpdateRequest,
    engine: ThreatDetectionEngine = Depends(get_engine),
    monitor: Optional[HostMonitoringScheduler] = Depends(get_monitor),
):
    """Change engine settings. The change is written to the audit log."""
    try:
        new_settings = engine.settings.with_changes(**payload.model_dump(exclude_none=True))
        changed = await engine.update_settings(new_settings)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except ConfigurationError as e:
        problems = "; ".join(e.details.get("invalid_configs", []))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{e.message}: {problems}")

    if monitor is not None and changed:
        monitor.apply_settings(engine.settings)

    return SettingsResponse(
        settings=_visible_settings(engine),
        changed={k: v for k, v in changed.items() if k not in HIDDEN_SETTINGS},
    )
