"""
Admin Routes — Audit trail access, chain verification, security audits and retention.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from campus_pay.dependencies import get_audit_service, get_security_audit_service
from campus_pay.schemas.schemas import ERROR_RESPONSES, AuditLogEntry, SecurityAuditResponse, SecurityEventEntry
from campus_pay.services.audit_service import AuditService
from campus_pay.services.security_audit_service import SecurityAuditService

router = APIRouter(prefix="/api/admin", tags=["Admin"], responses=ERROR_RESPONSES)


@router.get("/audit/{campus_id}", response_model=List[AuditLogEntry])
def get_audit_trail(
    campus_id: str,
    limit: int = Query(100, ge=1, le=1000),
    audit: AuditService = Depends(get_audit_service),
):
    """Most recent audit entries for a campus, oldest first."""
    return audit.get_trail(campus_id, limit=limit)


@router.get("/audit/{campus_id}/verify")
def verify_audit_chain(campus_id: str, audit: AuditService = Depends(get_audit_service)):
    """Recompute the campus's hash chain and report the first broken link."""
    return audit.verify_chain(campus_id)


@router.post("/security-audit/{campus_id}", response_model=SecurityAuditResponse)
def perform_security_audit(campus_id: str, service: SecurityAuditService = Depends(get_security_audit_service)):
    return service.perform_security_audit(campus_id)


@router.get("/security-events", response_model=List[SecurityEventEntry])
def list_security_events(
    campus_id: Optional[str] = None,
    days: int = Query(30, ge=1, le=365),
    severity: Optional[str] = None,
    audit: AuditService = Depends(get_audit_service),
):
    return audit.recent_security_events(campus_id, days=days, severity=severity)


@router.get("/security-metrics")
def security_metrics(campus_id: Optional[str] = None, audit: AuditService = Depends(get_audit_service)):
    return audit.security_metrics(campus_id)


@router.delete("/audit")
def purge_audit_log(
    older_than_days: Optional[int] = Query(None, ge=0),
    audit: AuditService = Depends(get_audit_service),
):
    """Age-based purge. Defaults to the configured retention window."""
    return {"success": True, **audit.clear_older_than(older_than_days)}
