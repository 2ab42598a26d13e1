"""
Payment Service — Fee payment orders and their verification.

A transaction moves pending → success | failed exactly once. Verifying an
already successful transaction returns it unchanged; the one permitted
change is a later webhook confirmation setting ``webhook_verified``.
"""
import asyncio
import logging
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session

from campus_pay.config import get_settings
from campus_pay.errors import GatewayError, TransactionStateError, ValidationError, WebhookSignatureError
from campus_pay.models.transaction import PaymentTransaction
from campus_pay.services.audit_service import AuditService, elapsed_ms
from campus_pay.services.credential_store import CredentialStore
from campus_pay.services.gateway_clients import GatewayClient, default_gateways
from campus_pay.utils.validators import validate_amount

logger = logging.getLogger(__name__)

FAILED_PROOF_STATUSES = ("failed", "failure", "cancelled")


class PaymentService:

    def __init__(
        self,
        db: Session,
        credential_store: CredentialStore,
        audit: AuditService,
        gateways: Optional[Dict[str, GatewayClient]] = None,
        settings=None,
    ):
        self.db = db
        self.credential_store = credential_store
        self.audit = audit
        self.gateways = gateways if gateways is not None else default_gateways()
        self.settings = settings or get_settings()

    def _audit(self, campus_id: str, event_type: str, severity: str, operation: str, started: float, **details):
        self.audit.log(
            campus_id, event_type, "payment", severity,
            {
                "operation_performed": operation,
                "operation_result": details.pop("result", "success"),
                "execution_time_ms": elapsed_ms(started),
                **details,
            },
        )

    async def create_order(
        self,
        campus_id: str,
        fee_id: str,
        student_id: str,
        gateway: str,
        amount,
        currency: str = "INR",
    ) -> dict:
        """Open a gateway order and a pending transaction for one fee payment."""
        started = time.perf_counter()
        valid, message = validate_amount(amount)
        if not valid:
            raise ValidationError("VAL_003", details={"amount": str(amount), "reason": message})

        client = self.gateways.get(gateway)
        if client is None:
            raise ValidationError("VAL_002", details={"gateway": gateway})
        credentials = self.credential_store.get_gateway(campus_id, gateway)
        if not credentials or not credentials.get("enabled"):
            raise GatewayError("GATEWAY_001", details={"gateway": gateway, "reason": "gateway not enabled"})

        transaction_id = str(uuid.uuid4())
        try:
            order = await asyncio.wait_for(
                client.create_order(credentials, {"amount": amount, "currency": currency, "receipt": transaction_id}),
                timeout=self.settings.GATEWAY_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            raise GatewayError("GATEWAY_007", details={"gateway": gateway}) from e

        txn = PaymentTransaction(
            id=transaction_id,
            campus_id=campus_id,
            fee_id=fee_id,
            student_id=student_id,
            gateway=gateway,
            amount=Decimal(str(amount)),
            currency=currency,
            status="pending",
            gateway_order_id=order["order_id"],
            gateway_response={"order": order},
        )
        self.db.add(txn)
        self.db.commit()

        self._audit(campus_id, "payment_initiated", "low", "create_order", started,
                    transaction_id=transaction_id, gateway=gateway, amount=str(amount), fee_id=fee_id)
        return {"transaction_id": transaction_id, **order}

    def verify_payment(self, transaction_id: str, proof: dict, via_webhook: bool = False) -> PaymentTransaction:
        """Verify a payment proof and settle the transaction's status once.

        Raises:
            TransactionStateError: unknown transaction (TRANS_001) or already failed (TRANS_002).
            WebhookSignatureError: the proof's signature does not verify.
        """
        started = time.perf_counter()
        txn = self.db.query(PaymentTransaction).filter(PaymentTransaction.id == transaction_id).first()
        if txn is None:
            raise TransactionStateError("TRANS_001", details={"transaction_id": transaction_id})
        if txn.status == "failed":
            raise TransactionStateError("TRANS_002", details={"transaction_id": transaction_id, "status": txn.status})
        if txn.status == "success" and (txn.webhook_verified or not via_webhook):
            return txn

        client = self.gateways[txn.gateway]
        credentials = self.credential_store.get_gateway(txn.campus_id, txn.gateway) or {}
        signed_proof = {**proof, "order_id": txn.gateway_order_id, "amount": proof.get("amount", str(txn.amount))}

        if not credentials or not client.verify_payment(credentials, signed_proof):
            txn.verification_attempts = (txn.verification_attempts or 0) + 1
            self.db.commit()
            error = WebhookSignatureError(details={"transaction_id": transaction_id})
            self.audit.record_failure(txn.campus_id, "payment_verified", "payment", "verify_payment", error, started)
            raise error

        if txn.status == "success":
            # Webhook confirming an already applied payment: flag only
            self.db.query(PaymentTransaction).filter(
                PaymentTransaction.id == txn.id, PaymentTransaction.webhook_verified.is_(False)
            ).update({"webhook_verified": True}, synchronize_session=False)
            self.db.commit()
            self.db.refresh(txn)
            return txn

        failed = str(proof.get("status", "")).lower() in FAILED_PROOF_STATUSES
        now = datetime.utcnow()
        values = {
            "status": "failed" if failed else "success",
            "gateway_payment_id": proof.get("payment_id"),
            "webhook_verified": via_webhook,
            "verification_attempts": (txn.verification_attempts or 0) + 1,
            "gateway_response": {**(txn.gateway_response or {}), "verification": {
                "payment_id": proof.get("payment_id"),
                "status": proof.get("status"),
                "verified_at": now.isoformat(),
                "via_webhook": via_webhook,
            }},
        }
        if not failed:
            values["completed_at"] = now

        applied = (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.id == txn.id, PaymentTransaction.status == "pending")
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(txn)

        if applied:
            self._audit(txn.campus_id, "payment_verified", "low" if not failed else "medium", "verify_payment",
                        started, transaction_id=txn.id, status=txn.status, via_webhook=via_webhook)
        return txn
