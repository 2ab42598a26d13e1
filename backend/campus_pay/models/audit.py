"""
Audit Log Models — Immutable, tamper-evident trail of payment operations.
Every entry is SHA-256 hashed and chained per campus.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON, Boolean, event

from campus_pay.database import Base


class PaymentAuditLog(Base):
    __tablename__ = "payment_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    campus_id = Column(String(64), nullable=False, index=True)

    event_type = Column(String(50), nullable=False)
    # Types: settlement_initiated, settlement_failed, webhook_received,
    #        gateway_configured, gateway_tested, credential_access,
    #        credential_modified, credential_migrated, key_rotated,
    #        payment_initiated, payment_verified, audit_review
    event_category = Column(String(24), nullable=False)   # settlement | configuration | credential | payment | security
    severity = Column(String(10), nullable=False)         # low | medium | high | critical

    event_details = Column(JSON, default=dict)     # operation_performed, operation_result, execution_time_ms, ...
    security_context = Column(JSON, default=dict)
    system_context = Column(JSON, default=dict)
    compliance_tags = Column(JSON, default=list)

    is_sensitive_data = Column(Boolean, default=True)
    data_classification = Column(String(16), default="confidential")

    payload_hash = Column(String(64))       # SHA-256 chain hash of this entry
    previous_hash = Column(String(64))      # Chain link to the campus's previous entry

    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class PaymentSecurityEvent(Base):
    __tablename__ = "payment_security_events"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    campus_id = Column(String(64), nullable=False, index=True)

    event_type = Column(String(50), nullable=False)   # webhook_tampering | credential_failure | suspicious_activity | ...
    severity = Column(String(10), nullable=False)
    status = Column(String(16), default="detected")   # detected | investigating | resolved | false_positive

    threat_details = Column(JSON, default=dict)
    detection_details = Column(JSON, default=dict)
    notification_details = Column(JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)


@event.listens_for(PaymentAuditLog, "before_update")
def _refuse_audit_update(mapper, connection, target):
    raise ValueError("Audit log entries are append-only")
