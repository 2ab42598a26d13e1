"""
Settlement Service — Drives automatic settlement runs and guards the
settlement state machine.

    pending ──▶ processing ──▶ completed
       │             │
       └──▶ failed ◀─┘

A record is only created once every pre-check has passed. After that it is
never deleted: failures become status transitions. Eligible transactions are
claimed by stamping their ``settlement_id`` in the same commit that creates
the record, and released again if the settlement fails.
"""
import asyncio
import logging
import time
import uuid
import weakref
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError as StorageIntegrityError
from sqlalchemy.orm import Session

from campus_pay.config import get_settings
from campus_pay.errors import (
    BusinessRuleError, DataConflictError, GatewayError, GatewayTimeoutError,
    PaymentError, TransactionStateError, ValidationError,
)
from campus_pay.models.bank_details import SchoolBankDetails
from campus_pay.models.settlement import PaymentGatewayConfiguration, PaymentSettlement
from campus_pay.models.transaction import PaymentTransaction
from campus_pay.schemas.schemas import FeeStructure, GatewaySettings
from campus_pay.services.audit_service import AuditService, elapsed_ms
from campus_pay.services.credential_cipher import mask_account_number
from campus_pay.services.credential_store import CredentialStore
from campus_pay.services.gateway_clients import GatewayClient, default_gateways
from campus_pay.services.notification_service import SettlementNotifier
from campus_pay.services.settlement_calculator import (
    SettlementAmounts, SettlementPeriod, check_limits, compute_amounts,
    settlement_hash, settlement_period, to_decimal,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("processing", "failed"),
    "processing": ("completed", "failed"),
    "completed": (),
    "failed": (),
}
TERMINAL_STATES = ("completed", "failed")

# Per-loop registry of (campus, gateway) run locks
_run_locks: "weakref.WeakKeyDictionary" = weakref.WeakKeyDictionary()


def _run_lock(campus_id: str, gateway: str) -> asyncio.Lock:
    locks = _run_locks.setdefault(asyncio.get_running_loop(), {})
    return locks.setdefault((campus_id, gateway), asyncio.Lock())


class SettlementService:
    """Settlement orchestration over one database session."""

    def __init__(
        self,
        db: Session,
        credential_store: CredentialStore,
        audit: AuditService,
        gateways: Optional[Dict[str, GatewayClient]] = None,
        notifier: Optional[SettlementNotifier] = None,
        settings=None,
    ):
        self.db = db
        self.credential_store = credential_store
        self.audit = audit
        self.gateways = gateways if gateways is not None else default_gateways()
        self.notifier = notifier or SettlementNotifier()
        self.settings = settings or get_settings()

    # ─── Orchestration ──────────────────────────────────────────────

    async def process_automatic_settlement(
        self,
        campus_id: str,
        gateway: str,
        settlement_date: Optional[datetime] = None,
    ) -> PaymentSettlement:
        """Run one settlement for (campus, gateway) over the configured window.

        Raises:
            GatewayError: config missing/inactive or credentials unusable (GATEWAY_001),
                gateway failure, or GatewayTimeoutError on timeout.
            BusinessRuleError: no eligible transactions (BIZ_008) or net below
                the minimum (BIZ_007).
            DataConflictError: a concurrent run already claimed the window (DATA_002).
        """
        started = time.perf_counter()
        settlement_date = settlement_date or datetime.utcnow()

        self.audit.log(
            campus_id, "settlement_initiated", "settlement", "medium",
            {
                "operation_performed": "process_automatic_settlement",
                "operation_result": "pending",
                "execution_time_ms": 0,
                "gateway_provider": gateway,
                "settlement_date": settlement_date.isoformat(),
            },
            compliance_tags=["PCI_DSS", "financial_audit", "settlement"],
        )

        try:
            async with _run_lock(campus_id, gateway):
                settlement = await self._run(campus_id, gateway, settlement_date)
        except Exception as e:
            self.db.rollback()
            self.audit.record_failure(
                campus_id, "settlement_failed", "settlement", "process_automatic_settlement",
                e, started, extra_details={"gateway_provider": gateway},
            )
            raise

        self.audit.log(
            campus_id, "settlement_processed", "settlement", "low",
            {
                "operation_performed": "process_automatic_settlement",
                "operation_result": "success",
                "execution_time_ms": elapsed_ms(started),
                "gateway_provider": gateway,
                "settlement_id": settlement.id,
                "settlement_batch_id": settlement.settlement_batch_id,
                "net_settlement_amount": str(settlement.net_settlement_amount),
                "transaction_count": len(settlement.transaction_summary.get("transaction_ids", [])),
            },
            compliance_tags=["PCI_DSS", "financial_audit", "settlement"],
        )
        return settlement

    async def _run(self, campus_id: str, gateway: str, settlement_date: datetime) -> PaymentSettlement:
        client = self.gateways.get(gateway)
        if client is None:
            raise ValidationError("VAL_002", details={"gateway": gateway})

        config = self._active_configuration(campus_id, gateway)
        credentials = self.credential_store.get_gateway(campus_id, gateway)
        if not credentials or not credentials.get("enabled"):
            raise GatewayError("GATEWAY_001", details={"gateway": gateway, "reason": "credentials missing or disabled"})

        gateway_settings = GatewaySettings(**(config.gateway_settings or {}))
        fee_structure = FeeStructure(**(config.fee_structure or {}))
        period = settlement_period(
            gateway_settings.settlement_schedule, settlement_date, gateway_settings.custom_settlement_days
        )

        transactions = self._eligible_transactions(campus_id, gateway, period)
        if not transactions:
            raise BusinessRuleError("BIZ_008", details={
                "gateway": gateway,
                "period_start": period.start.isoformat(),
                "period_end": period.end.isoformat(),
            })

        amounts = compute_amounts(
            transactions, fee_structure,
            default_tax_rate=to_decimal(self.settings.GST_RATE_PERCENT),
            period=period,
        )
        check_limits(amounts, gateway_settings.minimum_settlement_amount, gateway_settings.maximum_settlement_amount)

        currency = (
            gateway_settings.settlement_currency or fee_structure.currency or self.settings.SETTLEMENT_CURRENCY
        )
        settlement = self._create_record(campus_id, gateway, settlement_date, period, amounts, fee_structure, currency)
        return await self._submit(settlement, client, credentials)

    def _active_configuration(self, campus_id: str, gateway: str) -> PaymentGatewayConfiguration:
        config = (
            self.db.query(PaymentGatewayConfiguration)
            .filter(
                PaymentGatewayConfiguration.campus_id == campus_id,
                PaymentGatewayConfiguration.gateway_provider == gateway,
            )
            .first()
        )
        if config is None or config.status != "active":
            raise GatewayError("GATEWAY_001", details={
                "gateway": gateway,
                "reason": "configuration missing" if config is None else f"configuration is {config.status}",
            })
        return config

    def _eligible_transactions(self, campus_id: str, gateway: str, period: SettlementPeriod) -> List[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.campus_id == campus_id,
                PaymentTransaction.gateway == gateway,
                PaymentTransaction.status == "success",
                PaymentTransaction.webhook_verified.is_(True),
                PaymentTransaction.settlement_id.is_(None),
                PaymentTransaction.completed_at >= period.start,
                PaymentTransaction.completed_at <= period.end,
            )
            .order_by(PaymentTransaction.completed_at.asc())
            .all()
        )

    def _bank_snapshot(self, campus_id: str) -> dict:
        bank = (
            self.db.query(SchoolBankDetails)
            .filter(SchoolBankDetails.campus_id == campus_id, SchoolBankDetails.is_active.is_(True))
            .order_by(SchoolBankDetails.id.desc())
            .first()
        )
        if bank is None:
            return {}
        return {
            "bank_name": bank.bank_name,
            "account_holder_name": bank.account_holder_name,
            "account_number": mask_account_number(bank.account_number),
            "ifsc_code": bank.ifsc_code,
        }

    def _create_record(
        self,
        campus_id: str,
        gateway: str,
        settlement_date: datetime,
        period: SettlementPeriod,
        amounts: SettlementAmounts,
        fee_structure: FeeStructure,
        currency: str,
    ) -> PaymentSettlement:
        """Insert the pending record and claim its transactions in one commit."""
        now = datetime.utcnow()
        transaction_ids = sorted(amounts.transaction_ids)
        settlement = PaymentSettlement(
            id=str(uuid.uuid4()),
            campus_id=campus_id,
            gateway_provider=gateway,
            settlement_batch_id=f"SETL_{gateway.upper()}_{now.strftime('%Y%m%d%H%M%S')}_{uuid.uuid4().hex[:8].upper()}",
            settlement_date=settlement_date,
            settlement_period_start=period.start,
            settlement_period_end=period.end,
            settlement_status="pending",
            total_transaction_amount=amounts.total_transaction_amount,
            total_gateway_fees=amounts.total_gateway_fees,
            total_platform_fees=amounts.total_platform_fees,
            total_taxes=amounts.total_taxes,
            net_settlement_amount=amounts.net_settlement_amount,
            currency=currency,
            school_bank_details=self._bank_snapshot(campus_id),
            transaction_summary={
                "total_transactions": amounts.transaction_count,
                "transaction_ids": transaction_ids,
                "fee_bearer": fee_structure.fee_bearer,
            },
            processing_details={"initiated_at": now.isoformat(), "retryable": False},
            security_metadata={
                "settlement_hash": settlement_hash(
                    campus_id, gateway, transaction_ids,
                    amounts.total_transaction_amount, amounts.net_settlement_amount,
                ),
                "encryption_version": self.settings.ENCRYPTION_VERSION,
                "security_flags": [],
            },
            notification_status={"school_notified": False},
        )

        try:
            self.db.add(settlement)
            self.db.flush()
            claimed = (
                self.db.query(PaymentTransaction)
                .filter(
                    PaymentTransaction.id.in_(transaction_ids),
                    PaymentTransaction.settlement_id.is_(None),
                )
                .update({"settlement_id": settlement.id}, synchronize_session=False)
            )
            if claimed != len(transaction_ids):
                raise DataConflictError(details={
                    "reason": "transactions were claimed by another settlement",
                    "expected": len(transaction_ids),
                    "claimed": claimed,
                })
            self.db.commit()
        except StorageIntegrityError as e:
            self.db.rollback()
            raise DataConflictError(details={
                "reason": "a settlement already exists for this period",
                "period_start": period.start.isoformat(),
                "period_end": period.end.isoformat(),
            }) from e
        except DataConflictError:
            self.db.rollback()
            raise

        self.db.refresh(settlement)
        logger.info(
            f"Settlement {settlement.settlement_batch_id} created for campus {campus_id}: "
            f"{amounts.transaction_count} transactions, net {amounts.net_settlement_amount}"
        )
        return settlement

    async def _submit(self, settlement: PaymentSettlement, client: GatewayClient, credentials: dict) -> PaymentSettlement:
        request = {
            "settlement_id": settlement.id,
            "settlement_batch_id": settlement.settlement_batch_id,
            "amount": str(settlement.net_settlement_amount),
            "currency": settlement.currency,
            "bank_account": settlement.school_bank_details,
            "transaction_ids": settlement.transaction_summary.get("transaction_ids", []),
        }
        timeout = self.settings.GATEWAY_TIMEOUT_SECONDS

        try:
            result = await asyncio.wait_for(client.initiate_settlement(credentials, request), timeout=timeout)
        except asyncio.TimeoutError as e:
            self.fail(settlement, f"gateway did not respond within {timeout}s", retryable=True)
            raise GatewayTimeoutError(details={"settlement_id": settlement.id, "timeout_seconds": timeout}) from e
        except PaymentError as e:
            self.fail(settlement, str(e), retryable=isinstance(e, GatewayError))
            raise
        except Exception as e:
            self.fail(settlement, str(e), retryable=True)
            raise GatewayError("GATEWAY_002", details={"settlement_id": settlement.id, "reason": str(e)}) from e

        self.transition(
            settlement, "processing",
            gateway_settlement_id=result.get("settlement_id"),
            gateway_settlement_reference=result.get("reference"),
            processing_details={
                **(settlement.processing_details or {}),
                "processed_at": datetime.utcnow().isoformat(),
                "gateway_status": result.get("status"),
            },
        )
        self._notify(settlement, "initiated")
        return settlement

    # ─── State machine ──────────────────────────────────────────────

    def transition(self, settlement: PaymentSettlement, new_status: str, **fields) -> bool:
        """Move ``settlement`` to ``new_status`` if the state machine allows it.

        Returns True only for the caller whose conditional update changed the
        row; a same-state request or a lost race returns False.

        Raises:
            TransactionStateError: TRANS_008 for a disallowed transition.
        """
        current = settlement.settlement_status
        if new_status == current:
            return False
        if new_status not in ALLOWED_TRANSITIONS.get(current, ()):
            raise TransactionStateError("TRANS_008", details={
                "settlement_id": settlement.id,
                "from": current,
                "to": new_status,
            })

        now = datetime.utcnow()
        values = {"settlement_status": new_status, "updated_at": now, **fields}
        if new_status == "completed":
            values.setdefault("completed_at", now)

        updated = (
            self.db.query(PaymentSettlement)
            .filter(PaymentSettlement.id == settlement.id, PaymentSettlement.settlement_status == current)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(settlement)

        if updated:
            logger.info(f"Settlement {settlement.settlement_batch_id}: {current} -> {new_status}")
        return bool(updated)

    def fail(self, settlement: PaymentSettlement, reason: str, retryable: bool = False) -> bool:
        """Mark a settlement failed and release its transactions for a later run."""
        moved = self.transition(
            settlement, "failed",
            processing_details={
                **(settlement.processing_details or {}),
                "failed_at": datetime.utcnow().isoformat(),
                "failure_reason": reason,
                "retryable": retryable,
            },
        )
        if moved:
            released = (
                self.db.query(PaymentTransaction)
                .filter(PaymentTransaction.settlement_id == settlement.id)
                .update({"settlement_id": None}, synchronize_session=False)
            )
            self.db.commit()
            logger.warning(
                f"Settlement {settlement.settlement_batch_id} failed ({reason}); "
                f"released {released} transactions"
            )
        return moved

    def _notify(self, settlement: PaymentSettlement, event: str) -> None:
        try:
            result = self.notifier.notify(settlement, event)
        except Exception:
            logger.exception(f"Notification for settlement {settlement.settlement_batch_id} ({event}) failed")
            return
        settlement.notification_status = {
            **(settlement.notification_status or {}),
            "school_notified": True,
            f"{event}_notified_at": datetime.utcnow().isoformat(),
            "channels": [d.get("channel") for d in result.get("deliveries", [])],
        }
        self.db.commit()

    def complete(self, settlement: PaymentSettlement, **fields) -> bool:
        """Complete a processing settlement. Side effects run for the winner only."""
        moved = self.transition(settlement, "completed", **fields)
        if moved:
            self._notify(settlement, "completed")
        return moved

    # ─── Queries ────────────────────────────────────────────────────

    def get_settlement(self, settlement_id: str) -> Optional[PaymentSettlement]:
        return self.db.query(PaymentSettlement).filter(PaymentSettlement.id == settlement_id).first()

    def find_by_reference(self, gateway: str, reference: str) -> Optional[PaymentSettlement]:
        """Locate a settlement by our id or the gateway-assigned id."""
        return (
            self.db.query(PaymentSettlement)
            .filter(
                PaymentSettlement.gateway_provider == gateway,
                (PaymentSettlement.gateway_settlement_id == reference) | (PaymentSettlement.id == reference),
            )
            .first()
        )

    def list_settlements(self, campus_id: str, status: Optional[str] = None, limit: int = 50) -> List[PaymentSettlement]:
        query = self.db.query(PaymentSettlement).filter(PaymentSettlement.campus_id == campus_id)
        if status:
            query = query.filter(PaymentSettlement.settlement_status == status)
        return query.order_by(PaymentSettlement.created_at.desc()).limit(limit).all()
