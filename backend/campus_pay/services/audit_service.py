"""
Audit Service — Append-only, hash-chained trail of payment operations,
plus security events with a pluggable alert hook.
"""
import json
import logging
import threading
import time
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from campus_pay.config import get_settings
from campus_pay.errors import ValidationError, handle_error
from campus_pay.models.audit import PaymentAuditLog, PaymentSecurityEvent
from campus_pay.utils.hashing import generate_chain_hash
from campus_pay.utils.logger import level_for

logger = logging.getLogger(__name__)

SEVERITIES = ("low", "medium", "high", "critical")
REQUIRED_DETAIL_KEYS = ("operation_performed", "operation_result", "execution_time_ms")

AlertHook = Callable[[Dict[str, Any]], None]

# Serialises read-latest-then-insert on each campus chain
_chain_locks: Dict[str, threading.Lock] = {}
_chain_locks_guard = threading.Lock()


def _chain_lock(campus_id: str) -> threading.Lock:
    with _chain_locks_guard:
        return _chain_locks.setdefault(campus_id, threading.Lock())


def log_alert(alert: Dict[str, Any]) -> None:
    """Default alert hook: a CRITICAL log line."""
    logger.critical(
        f"ALERT [{alert.get('kind')}] {alert.get('event_type')} "
        f"campus={alert.get('campus_id')} id={alert.get('id')}"
    )


def elapsed_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000, 2)


def _jsonable(data: Any) -> Any:
    # JSON columns reject Decimal/datetime; store their string forms
    return json.loads(json.dumps(data, default=str))


def _chain_payload(entry: PaymentAuditLog) -> dict:
    return {
        "campus_id": entry.campus_id,
        "event_type": entry.event_type,
        "event_category": entry.event_category,
        "severity": entry.severity,
        "event_details": entry.event_details,
        "security_context": entry.security_context,
        "system_context": entry.system_context,
        "compliance_tags": entry.compliance_tags,
        "created_at": entry.created_at.isoformat(),
    }


class AuditService:
    """Creates tamper-evident audit entries and security events."""

    def __init__(self, db: Session, alert_hook: Optional[AlertHook] = None, settings=None):
        self.db = db
        self.alert_hook = alert_hook or log_alert
        self.settings = settings or get_settings()

    # ─── Audit entries ──────────────────────────────────────────────

    def log(
        self,
        campus_id: str,
        event_type: str,
        event_category: str,
        severity: str,
        event_details: Dict[str, Any],
        security_context: Optional[Dict] = None,
        system_context: Optional[Dict] = None,
        compliance_tags: Optional[List[str]] = None,
        is_sensitive_data: bool = True,
    ) -> PaymentAuditLog:
        """Append one audit entry, chained to the campus's previous entry.

        Args:
            campus_id: Tenant the operation belongs to.
            event_type: e.g. settlement_initiated, credential_access.
            event_category: settlement | configuration | credential | payment | security.
            severity: low | medium | high | critical. Critical fires the alert hook.
            event_details: Must contain operation_performed, operation_result
                and execution_time_ms.

        Raises:
            ValidationError: unknown severity or missing mandatory detail keys.
        """
        if severity not in SEVERITIES:
            raise ValidationError("VAL_002", details={"field": "severity", "value": severity})
        missing = [key for key in REQUIRED_DETAIL_KEYS if key not in (event_details or {})]
        if missing:
            raise ValidationError("VAL_001", details={"missing_event_details": missing})

        system = {
            "request_id": uuid.uuid4().hex,
            "system_version": self.settings.SYSTEM_VERSION,
            "environment": self.settings.ENVIRONMENT,
            **(system_context or {}),
        }

        with _chain_lock(campus_id):
            last_entry = (
                self.db.query(PaymentAuditLog)
                .filter(PaymentAuditLog.campus_id == campus_id)
                .order_by(PaymentAuditLog.id.desc())
                .first()
            )
            previous_hash = last_entry.payload_hash if last_entry else ""

            entry = PaymentAuditLog(
                campus_id=campus_id,
                event_type=event_type,
                event_category=event_category,
                severity=severity,
                event_details=_jsonable(event_details),
                security_context=_jsonable(security_context or {}),
                system_context=_jsonable(system),
                compliance_tags=list(compliance_tags or ["PCI_DSS", "financial_audit"]),
                is_sensitive_data=is_sensitive_data,
                data_classification="confidential" if is_sensitive_data else "internal",
                previous_hash=previous_hash,
                created_at=datetime.utcnow(),
            )
            entry.payload_hash = generate_chain_hash(_chain_payload(entry), previous_hash)

            self.db.add(entry)
            self.db.commit()
        self.db.refresh(entry)

        logger.log(
            level_for(severity),
            f"AUDIT {event_type} campus={campus_id} "
            f"result={event_details.get('operation_result')} severity={severity}",
        )
        if severity == "critical":
            self._alert("audit", entry.id, campus_id, event_type, event_details)
        return entry

    def record_failure(
        self,
        campus_id: str,
        event_type: str,
        event_category: str,
        operation: str,
        error: Exception,
        started_at: float,
        extra_details: Optional[Dict] = None,
        security_context: Optional[Dict] = None,
    ) -> PaymentAuditLog:
        """Persist a failed operation, classified through the error catalogue.

        VAL/BIZ failures are expected and recorded at ``medium``; anything else
        is an incident at ``high``. CRED failures also open a security event.
        """
        payment_error, _, should_log = handle_error(error, {"operation": operation})
        details = {
            "operation_performed": operation,
            "operation_result": "failure",
            "execution_time_ms": elapsed_ms(started_at),
            "error_code": payment_error.code,
            "error_message": payment_error.message,
            **(extra_details or {}),
        }

        if should_log:
            logger.error(f"{operation} failed for campus {campus_id}: {payment_error}")
            severity = "high"
        else:
            logger.info(f"{operation} rejected for campus {campus_id}: {payment_error}")
            severity = "medium"

        entry = self.log(
            campus_id, event_type, event_category, severity, details,
            security_context=security_context,
        )

        if payment_error.category == "CRED":
            self.security_event(
                campus_id, "credential_failure", "high",
                threat_details={"operation": operation, "error_code": payment_error.code},
                detection_details={"audit_entry_id": entry.id},
            )
        return entry

    # ─── Security events ────────────────────────────────────────────

    def security_event(
        self,
        campus_id: str,
        event_type: str,
        severity: str,
        threat_details: Optional[Dict] = None,
        detection_details: Optional[Dict] = None,
    ) -> PaymentSecurityEvent:
        """Persist a security event; critical ones fire the alert hook synchronously."""
        if severity not in SEVERITIES:
            raise ValidationError("VAL_002", details={"field": "severity", "value": severity})

        event = PaymentSecurityEvent(
            campus_id=campus_id,
            event_type=event_type,
            severity=severity,
            status="detected",
            threat_details=_jsonable(threat_details or {}),
            detection_details=_jsonable({
                "detected_at": datetime.utcnow().isoformat(),
                "detection_method": "automated",
                **(detection_details or {}),
            }),
            notification_details={"alert_sent": severity == "critical"},
            created_at=datetime.utcnow(),
        )
        self.db.add(event)
        self.db.commit()
        self.db.refresh(event)

        logger.log(level_for(severity), f"SECURITY {event_type} campus={campus_id} severity={severity}")
        if severity == "critical":
            self._alert("security", event.id, campus_id, event_type, event.threat_details)
        return event

    def _alert(self, kind: str, record_id: int, campus_id: str, event_type: str, details: Dict) -> None:
        alert = {
            "kind": kind,
            "id": record_id,
            "campus_id": campus_id,
            "event_type": event_type,
            "details": details,
        }
        try:
            self.alert_hook(alert)
        except Exception:
            # The record is already persisted; a broken hook must not undo it
            logger.exception(f"Alert hook failed for {kind} record {record_id}")

    # ─── Queries ────────────────────────────────────────────────────

    def get_trail(self, campus_id: str, limit: int = 100) -> List[PaymentAuditLog]:
        """Most recent ``limit`` entries for a campus, oldest first."""
        entries = (
            self.db.query(PaymentAuditLog)
            .filter(PaymentAuditLog.campus_id == campus_id)
            .order_by(PaymentAuditLog.id.desc())
            .limit(limit)
            .all()
        )
        return list(reversed(entries))

    def recent_security_events(
        self,
        campus_id: Optional[str] = None,
        days: int = 30,
        severity: Optional[str] = None,
    ) -> List[PaymentSecurityEvent]:
        cutoff = datetime.utcnow() - timedelta(days=days)
        query = self.db.query(PaymentSecurityEvent).filter(PaymentSecurityEvent.created_at >= cutoff)
        if campus_id:
            query = query.filter(PaymentSecurityEvent.campus_id == campus_id)
        if severity:
            query = query.filter(PaymentSecurityEvent.severity == severity)
        return query.order_by(PaymentSecurityEvent.created_at.desc()).all()

    def security_metrics(self, campus_id: Optional[str] = None) -> dict:
        events = self.recent_security_events(campus_id, days=30)
        day_ago = datetime.utcnow() - timedelta(hours=24)
        return {
            "total_events": len(events),
            "events_last_24h": sum(1 for e in events if e.created_at >= day_ago),
            "by_severity": dict(Counter(e.severity for e in events)),
            "by_type": dict(Counter(e.event_type for e in events)),
            "unresolved": sum(1 for e in events if e.status in ("detected", "investigating")),
        }

    def verify_chain(self, campus_id: str) -> dict:
        """Verify the integrity of a campus's audit chain.

        Each entry's hash is recomputed from its stored content, and each link
        must point at the preceding entry's hash. The first remaining entry's
        ``previous_hash`` is not checked, since retention purges cut the head.

        Returns:
            dict with 'valid' (bool), 'total_entries', and 'broken_at' (if invalid).
        """
        entries = (
            self.db.query(PaymentAuditLog)
            .filter(PaymentAuditLog.campus_id == campus_id)
            .order_by(PaymentAuditLog.id.asc())
            .all()
        )

        if not entries:
            return {"valid": True, "total_entries": 0, "broken_at": None}

        for i, entry in enumerate(entries):
            if i > 0 and entry.previous_hash != entries[i - 1].payload_hash:
                return {
                    "valid": False,
                    "total_entries": len(entries),
                    "broken_at": entry.id,
                    "message": f"Chain broken at entry {entry.id} ({entry.event_type})",
                }
            expected = generate_chain_hash(_chain_payload(entry), entry.previous_hash or "")
            if entry.payload_hash != expected:
                return {
                    "valid": False,
                    "total_entries": len(entries),
                    "broken_at": entry.id,
                    "message": f"Entry {entry.id} ({entry.event_type}) content does not match its hash",
                }

        return {"valid": True, "total_entries": len(entries), "broken_at": None}

    # ─── Retention ──────────────────────────────────────────────────

    def clear_older_than(self, days: Optional[int] = None) -> dict:
        """Purge audit entries and security events older than ``days``.

        Pure age cutoff: approximate, and it may remove entries an open
        investigation still wants. Defaults to AUDIT_RETENTION_DAYS.
        """
        days = self.settings.AUDIT_RETENTION_DAYS if days is None else days
        if days < 0:
            raise ValidationError("VAL_002", details={"field": "days", "value": days})

        cutoff = datetime.utcnow() - timedelta(days=days)
        audit_removed = (
            self.db.query(PaymentAuditLog)
            .filter(PaymentAuditLog.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        events_removed = (
            self.db.query(PaymentSecurityEvent)
            .filter(PaymentSecurityEvent.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()

        logger.info(f"Audit purge older than {days} days: {audit_removed} entries, {events_removed} security events")
        return {"audit_logs_removed": audit_removed, "security_events_removed": events_removed}
