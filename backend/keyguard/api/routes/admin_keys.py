"""Admin endpoints for credential rotation and key monitoring.

All routes require an operator (see ``keyguard.core.security.get_operator``).
Rotation is additionally rate limited per caller address with the
``KEY_ADMIN`` preset.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Dict

import pydantic
from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from keyguard.api.dependencies import client_ip, get_audit_logger, get_key_manager, rate_limit
from keyguard.core.exceptions import ValidationError
from keyguard.core.security import Operator, get_operator
from keyguard.models.enums import KeyType
from keyguard.models.schemas import (
    KeyRotationRequest,
    KeyRotationResponse,
    KeyStatusResponse,
    MonitoringData,
    MonitoringResponse,
    MonitoringSummary,
)
from keyguard.services.audit_service import KeyAuditLogger
from keyguard.services.key_security import KeySecurityManager

router = APIRouter(prefix="/admin", tags=["admin"])


def parse_rotation_request(body: Dict[str, Any]) -> KeyRotationRequest:
    """Validate a rotation body, reporting problems as 400 field errors."""
    try:
        return KeyRotationRequest.model_validate(body)
    except pydantic.ValidationError as exc:
        field_errors: Dict[str, str] = {}
        for err in exc.errors():
            field = str(err["loc"][0]) if err["loc"] else "body"
            field_errors.setdefault(field, err["msg"])
        raise ValidationError("Invalid request data", field_errors=field_errors) from None


@router.post("/rotate-keys", response_model=KeyRotationResponse, response_model_by_alias=True)
async def rotate_keys(
    request: Request,
    body: Dict[str, Any] = Body(...),
    operator: Operator = Depends(get_operator),
    _limit=Depends(rate_limit("admin:rotate-keys", "KEY_ADMIN")),
    manager: KeySecurityManager = Depends(get_key_manager),
) -> KeyRotationResponse:
    """Rotate one managed credential."""
    payload = parse_rotation_request(body)
    record = await manager.rotate_key(
        payload.key_type,
        payload.new_key,
        actor_id=operator.user_id,
        reason=payload.reason,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return KeyRotationResponse(
        success=True,
        message=f"{record.key_type.value} key rotated successfully",
        rotated_at=record.last_rotated_at,
        rotated_by=operator.user_id,
    )


@router.get("/rotate-keys", response_model=KeyStatusResponse, response_model_by_alias=True)
async def key_status(
    operator: Operator = Depends(get_operator),
    manager: KeySecurityManager = Depends(get_key_manager),
):
    """Validate every stored credential; 503 when any of them is invalid."""
    report = await manager.validate_keys(actor_id=operator.user_id)
    response = KeyStatusResponse(
        **report.model_dump(),
        success=report.all_valid,
        validated_by=operator.user_id,
    )
    code = status.HTTP_200_OK if report.all_valid else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=response.model_dump(mode="json", by_alias=True))


@router.get("/key-monitoring", response_model=MonitoringResponse, response_model_by_alias=True)
async def key_monitoring(
    days: int = Query(30, ge=1, le=365),
    operator: Operator = Depends(get_operator),
    manager: KeySecurityManager = Depends(get_key_manager),
    audit_logger: KeyAuditLogger = Depends(get_audit_logger),
) -> MonitoringResponse:
    """Usage statistics, recent events and alerts for the dashboard."""
    stats = await audit_logger.get_key_usage_stats(days=days)
    alerts = manager.recent_alerts(limit=10)
    summary = MonitoringSummary(
        total_keys=len(KeyType),
        active_keys=len(manager.key_store.configured_types()),
        open_alerts=sum(1 for a in alerts if not a.resolved),
        last_validated=manager.last_validated or dt.datetime.now(dt.timezone.utc),
    )
    return MonitoringResponse(
        success=True,
        data=MonitoringData(
            key_usage_stats={s.key_type: s for s in stats},
            recent_events=manager.recent_events(limit=20),
            security_alerts=alerts,
            summary=summary,
        ),
    )
