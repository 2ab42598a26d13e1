"""
Webhook Service — Verifies gateway settlement webhooks and applies them.

Gateways deliver at least once. Completion side effects are tied to the
settlement's own state transition, so a redelivered webhook is a no-op.
"""
import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy.orm import Session

from campus_pay.errors import TransactionStateError, ValidationError, WebhookSignatureError
from campus_pay.models.settlement import PaymentSettlement
from campus_pay.services.audit_service import AuditService, elapsed_ms
from campus_pay.services.credential_store import CredentialStore
from campus_pay.services.gateway_clients import GatewayClient
from campus_pay.services.settlement_service import SettlementService
from campus_pay.utils.hashing import canonical_json

logger = logging.getLogger(__name__)

COMPLETED_STATUSES = ("processed", "settled", "completed", "success")
FAILED_STATUSES = ("failed", "reversed", "cancelled")

# Campus used for audit entries that cannot be attributed to a tenant
UNATTRIBUTED_CAMPUS = "unattributed"


def map_gateway_status(status: Optional[str]) -> str:
    """Gateway settlement status → our settlement status."""
    normalized = (status or "").strip().lower()
    if normalized in COMPLETED_STATUSES:
        return "completed"
    if normalized in FAILED_STATUSES:
        return "failed"
    return "processing"


def decode_payload(payload: Union[bytes, str, Dict[str, Any]]) -> Tuple[bytes, Dict[str, Any]]:
    """Return (bytes that were signed, parsed body).

    Raw bodies are verified byte-for-byte. Dict payloads are signed over
    their canonical JSON encoding.
    """
    if isinstance(payload, dict):
        return canonical_json(payload), payload
    raw = payload.encode("utf-8") if isinstance(payload, str) else payload
    try:
        body = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError("VAL_002", details={"reason": "webhook body is not valid JSON"}) from e
    if not isinstance(body, dict):
        raise ValidationError("VAL_002", details={"reason": "webhook body must be a JSON object"})
    return raw, body


def settlement_reference(body: Dict[str, Any]) -> Optional[str]:
    """Settlement id from a flat body or a Razorpay-style ``payload.settlement.entity``."""
    entity = body.get("payload", {}).get("settlement", {}).get("entity", {}) if isinstance(body.get("payload"), dict) else {}
    reference = body.get("settlement_id") or body.get("id") or entity.get("id")
    return str(reference) if reference else None


def gateway_status(body: Dict[str, Any]) -> Optional[str]:
    entity = body.get("payload", {}).get("settlement", {}).get("entity", {}) if isinstance(body.get("payload"), dict) else {}
    return body.get("status") or entity.get("status")


class SettlementWebhookService:

    def __init__(
        self,
        db: Session,
        credential_store: CredentialStore,
        audit: AuditService,
        gateways: Dict[str, GatewayClient],
        settlement_service: SettlementService,
    ):
        self.db = db
        self.credential_store = credential_store
        self.audit = audit
        self.gateways = gateways
        self.settlement_service = settlement_service

    def verify_signature(self, gateway: str, campus_id: str, payload: bytes, signature: Optional[str]) -> bool:
        """Check ``signature`` against the campus's credentials for ``gateway``."""
        client = self.gateways.get(gateway)
        if client is None:
            return False
        credentials = self.credential_store.get_gateway(campus_id, gateway)
        if not credentials:
            return False
        return client.verify_webhook_signature(credentials, payload, signature)

    def handle_settlement_webhook(
        self,
        gateway: str,
        payload: Union[bytes, str, Dict[str, Any]],
        signature: Optional[str],
        context: Optional[Dict[str, Any]] = None,
    ) -> dict:
        """Verify and apply a settlement webhook.

        Returns:
            {"success": bool, "settlement": PaymentSettlement | None}
        """
        started = time.perf_counter()
        context = context or {}

        if gateway not in self.gateways:
            raise ValidationError("VAL_002", details={"gateway": gateway})
        raw, body = decode_payload(payload)

        reference = settlement_reference(body)
        settlement = self.settlement_service.find_by_reference(gateway, reference) if reference else None
        if settlement is None:
            # No settlement means no campus secret, so the signature cannot be trusted
            logger.warning(f"{gateway} webhook for unknown settlement {reference!r}")
            self._reject(UNATTRIBUTED_CAMPUS, reference, gateway, context, started, reason="settlement not found")
            return {"success": False, "settlement": None}

        campus_id = settlement.campus_id
        if not self.verify_signature(gateway, campus_id, raw, signature):
            self._reject(campus_id, settlement.id, gateway, context, started)
            return {"success": False, "settlement": None}

        try:
            changed = self._apply(settlement, body)
        except Exception as e:
            self.db.rollback()
            self.audit.record_failure(
                campus_id, "webhook_received", "settlement", "handle_settlement_webhook", e, started,
                extra_details={"gateway": gateway, "settlement_id": settlement.id},
                security_context=context,
            )
            raise

        self.audit.log(
            campus_id, "webhook_received", "settlement", "low",
            {
                "operation_performed": "handle_settlement_webhook",
                "operation_result": "success",
                "execution_time_ms": elapsed_ms(started),
                "gateway": gateway,
                "settlement_id": settlement.id,
                "gateway_status": gateway_status(body),
                "settlement_status": settlement.settlement_status,
                "state_changed": changed,
            },
            security_context=context,
        )
        return {"success": True, "settlement": settlement}

    def _reject(
        self,
        campus_id: str,
        settlement_id: Optional[str],
        gateway: str,
        context: dict,
        started: float,
        reason: str = "invalid signature",
    ) -> None:
        threat = {
            "gateway": gateway,
            "settlement_id": settlement_id,
            "reason": reason,
            "source_ip": context.get("ip_address"),
            "user_agent": context.get("user_agent"),
        }
        self.audit.security_event(
            campus_id, "webhook_tampering", "critical",
            threat_details=threat,
            detection_details={"detection_method": "signature_verification"},
        )
        self.audit.record_failure(
            campus_id, "webhook_received", "security", "handle_settlement_webhook",
            WebhookSignatureError(details=threat), started,
            extra_details={"gateway": gateway, "settlement_id": settlement_id, "reason": reason},
            security_context=context,
        )

    def _apply(self, settlement: PaymentSettlement, body: Dict[str, Any]) -> bool:
        """Apply the mapped status. Returns True when this call changed the row."""
        target = map_gateway_status(gateway_status(body))
        service = self.settlement_service
        details = {
            **(settlement.processing_details or {}),
            "last_webhook_status": gateway_status(body),
            "last_webhook_at": datetime.utcnow().isoformat(),
        }

        try:
            if target == "completed":
                if settlement.settlement_status == "pending":
                    service.transition(settlement, "processing")
                extra = {"processing_details": details}
                if body.get("utr"):
                    extra["gateway_settlement_reference"] = str(body["utr"])
                return service.complete(settlement, **extra)
            if target == "failed":
                reason = body.get("failure_reason") or f"gateway reported {gateway_status(body)}"
                return service.fail(settlement, reason, retryable=False)
            return service.transition(settlement, "processing", processing_details=details)
        except TransactionStateError as e:
            # Out-of-order delivery against a terminal settlement; state is kept
            logger.warning(f"Ignoring webhook for settlement {settlement.id}: {e} {e.details}")
            return False
