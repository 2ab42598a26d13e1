"""
Security Audit Service — Scores a campus's payment security posture.

Scoring starts at 100:
    -20  per credential storage issue
    -10  Razorpay enabled without a dedicated webhook secret
    -10  per live-mode gateway never successfully tested
    -5   per enabled gateway without an active settlement configuration
    -15  per critical security event in 30 days (max -45)
    -5   per high security event in 30 days (max -15)
"""
import logging
import time
import uuid
from datetime import datetime

from sqlalchemy.orm import Session

from campus_pay.errors import CredentialError
from campus_pay.models.settlement import PaymentGatewayConfiguration
from campus_pay.services.audit_service import AuditService, elapsed_ms
from campus_pay.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)

COMPLIANT_SCORE = 85
ATTENTION_SCORE = 70


def compliance_status(score: int, issues: list) -> str:
    if score >= COMPLIANT_SCORE and not issues:
        return "compliant"
    if score >= ATTENTION_SCORE:
        return "needs_attention"
    return "non_compliant"


class SecurityAuditService:

    def __init__(self, db: Session, credential_store: CredentialStore, audit: AuditService):
        self.db = db
        self.credential_store = credential_store
        self.audit = audit

    def perform_security_audit(self, campus_id: str) -> dict:
        started = time.perf_counter()
        score = 100
        issues = []
        recommendations = []

        storage = self.credential_store.validate_security(campus_id)
        score -= 20 * len(storage["issues"])
        issues.extend(storage["issues"])
        recommendations.extend(storage["recommendations"])

        try:
            credentials = self.credential_store.retrieve(campus_id) or {}
        except CredentialError:
            # Already reported by validate_security
            credentials = {}
        status = self.credential_store.get_status(campus_id)

        razorpay = credentials.get("razorpay")
        if razorpay and razorpay.get("enabled") and not razorpay.get("webhook_secret"):
            score -= 10
            issues.append("Razorpay webhooks are verified with the API key secret")
            recommendations.append("Configure a dedicated Razorpay webhook secret")

        for gateway, fields in credentials.items():
            if fields.get("mode") == "live" and status.get(gateway, {}).get("test_status") != "success":
                score -= 10
                issues.append(f"{gateway} is in live mode but has not passed a connection test")
                recommendations.append(f"Test the {gateway} connection")

            if fields.get("enabled"):
                config = (
                    self.db.query(PaymentGatewayConfiguration)
                    .filter(
                        PaymentGatewayConfiguration.campus_id == campus_id,
                        PaymentGatewayConfiguration.gateway_provider == gateway,
                    )
                    .first()
                )
                if config is None or config.status != "active":
                    score -= 5
                    recommendations.append(f"Activate the settlement configuration for {gateway}")

        critical = self.audit.recent_security_events(campus_id, days=30, severity="critical")
        high = self.audit.recent_security_events(campus_id, days=30, severity="high")
        if critical:
            score -= min(15 * len(critical), 45)
            issues.append(f"{len(critical)} critical security event(s) in the last 30 days")
            recommendations.append("Investigate recent critical security events")
        if high:
            score -= min(5 * len(high), 15)
            recommendations.append("Review recent high-severity security events")

        score = max(0, min(100, score))
        status_label = compliance_status(score, issues)
        report_id = f"SECAUDIT_{datetime.utcnow().strftime('%Y%m%d%H%M%S')}_{uuid.uuid4().hex[:8].upper()}"

        severity = "high" if score < ATTENTION_SCORE else "medium" if score < COMPLIANT_SCORE else "low"
        self.audit.log(
            campus_id, "security_audit", "security", severity,
            {
                "operation_performed": "perform_security_audit",
                "operation_result": "success",
                "execution_time_ms": elapsed_ms(started),
                "audit_report_id": report_id,
                "overall_score": score,
                "compliance_status": status_label,
                "issue_count": len(issues),
            },
            compliance_tags=["PCI_DSS", "security_audit"],
        )
        logger.info(f"Security audit {report_id} for campus {campus_id}: score {score} ({status_label})")

        return {
            "overall_score": score,
            "security_issues": issues,
            "compliance_status": status_label,
            "recommendations": recommendations,
            "audit_report_id": report_id,
        }
