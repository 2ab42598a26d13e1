"""
Settlement runs: end-to-end processing, pre-check failures that leave no
record, gateway failures and timeouts, concurrency, and the state machine.
"""
import asyncio
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from campus_pay.errors import (
    BusinessRuleError, DataConflictError, GatewayError, GatewayTimeoutError,
    TransactionStateError, ValidationError,
)
from campus_pay.models import PaymentSettlement, PaymentTransaction
from campus_pay.services.gateway_clients import RazorpayClient
from campus_pay.services.settlement_calculator import settlement_period
from campus_pay.services.settlement_service import SettlementService

from conftest import CAMPUS, RAZORPAY, RecordingNotifier


class ExplodingRazorpay(RazorpayClient):
    async def initiate_settlement(self, credentials, settlement):
        raise RuntimeError("connection reset by peer")


def _settlements(db):
    db.expire_all()
    return db.query(PaymentSettlement).all()


def _unclaimed(db):
    db.expire_all()
    return db.query(PaymentTransaction).filter(PaymentTransaction.settlement_id.is_(None)).count()


def _trail(audit, event_type):
    return [entry for entry in audit.get_trail(CAMPUS) if entry.event_type == event_type]


def _run(service, as_of=None, gateway="razorpay"):
    return asyncio.run(service.process_automatic_settlement(CAMPUS, gateway, as_of or datetime.utcnow()))


def _service(db, store, audit, settings, client=None, notifier=None, **overrides):
    return SettlementService(
        db, store, audit,
        gateways={"razorpay": client or RazorpayClient()},
        notifier=notifier or RecordingNotifier(),
        settings=settings.model_copy(update=overrides) if overrides else settings,
    )


@pytest.fixture
def two_payments(make_transaction):
    return [make_transaction("1500"), make_transaction("1500")]


class TestProcessSettlement:

    def test_end_to_end(self, db, razorpay_campus, two_payments, settlement_service, audit, notifier):
        settlement = _run(settlement_service)

        assert settlement.settlement_status == "processing"
        assert settlement.total_transaction_amount == Decimal("3000.00")
        assert settlement.total_gateway_fees == Decimal("64.00")
        assert settlement.total_platform_fees == Decimal("32.00")
        assert settlement.total_taxes == Decimal("17.28")
        assert settlement.net_settlement_amount == Decimal("2886.72")
        assert settlement.gateway_settlement_id.startswith("setl_")
        assert settlement.gateway_settlement_reference.startswith("UTR")
        assert settlement.settlement_batch_id.startswith("SETL_RAZORPAY_")
        assert settlement.transaction_summary["transaction_ids"] == sorted(t.id for t in two_payments)
        assert len(settlement.security_metadata["settlement_hash"]) == 64
        assert settlement.school_bank_details["account_number"] == "**********6789"

        processed = _trail(audit, "settlement_processed")
        assert len(processed) == 1
        assert processed[0].event_details["operation_result"] == "success"
        assert len(_trail(audit, "settlement_initiated")) == 1
        assert notifier.count("initiated") == 1

    def test_currency_defaults_to_settings(self, razorpay_campus, two_payments, settlement_service, settings):
        assert _run(settlement_service).currency == settings.SETTLEMENT_CURRENCY

    def test_settlement_currency_wins_over_fee_currency(self, razorpay_campus, two_payments, gateway_service, settlement_service):
        gateway_service.upsert_gateway_configuration(
            CAMPUS, "razorpay",
            gateway_settings={"settlement_schedule": "weekly", "settlement_currency": "USD"},
            fee_structure={"gateway_fee_percentage": "2", "currency": "EUR"},
        )
        assert _run(settlement_service).currency == "USD"

    def test_transactions_are_claimed(self, db, razorpay_campus, two_payments, settlement_service):
        settlement = _run(settlement_service)
        db.expire_all()
        assert {t.settlement_id for t in db.query(PaymentTransaction).all()} == {settlement.id}

    def test_claimed_transactions_are_not_settled_twice(self, db, razorpay_campus, two_payments, settlement_service):
        _run(settlement_service)
        with pytest.raises(BusinessRuleError) as exc:
            _run(settlement_service, datetime.utcnow() + timedelta(minutes=1))
        assert exc.value.code == "BIZ_008"
        assert len(_settlements(db)) == 1

    def test_unverified_and_old_transactions_are_excluded(self, db, razorpay_campus, make_transaction, settlement_service):
        make_transaction("1500")
        make_transaction("1500")
        make_transaction("5000", webhook_verified=False)
        make_transaction("5000", completed_at=datetime.utcnow() - timedelta(days=30))
        make_transaction("5000", gateway="payu")

        settlement = _run(settlement_service)
        assert settlement.net_settlement_amount == Decimal("2886.72")
        assert settlement.transaction_summary["total_transactions"] == 2


class TestPreChecksCreateNothing:

    def test_below_minimum(self, db, razorpay_campus, make_transaction, settlement_service, audit):
        make_transaction("50")
        with pytest.raises(BusinessRuleError) as exc:
            _run(settlement_service)
        assert exc.value.code == "BIZ_007"
        assert _settlements(db) == []
        assert _unclaimed(db) == 1

        failures = _trail(audit, "settlement_failed")
        assert len(failures) == 1
        assert failures[0].severity == "medium"
        assert failures[0].event_details["error_code"] == "BIZ_007"

    def test_no_eligible_transactions(self, db, razorpay_campus, settlement_service):
        with pytest.raises(BusinessRuleError) as exc:
            _run(settlement_service)
        assert exc.value.code == "BIZ_008"
        assert _settlements(db) == []

    def test_inactive_configuration(self, db, razorpay_campus, two_payments, settlement_service, gateway_service):
        gateway_service.upsert_gateway_configuration(CAMPUS, "razorpay", status="inactive")
        with pytest.raises(GatewayError) as exc:
            _run(settlement_service)
        assert exc.value.code == "GATEWAY_001"
        assert _settlements(db) == []

    def test_missing_configuration(self, db, bank_details, store, two_payments, settlement_service):
        store.store(CAMPUS, {"razorpay": dict(RAZORPAY)})
        with pytest.raises(GatewayError) as exc:
            _run(settlement_service)
        assert exc.value.code == "GATEWAY_001"

    def test_disabled_credentials(self, db, razorpay_campus, two_payments, store, settlement_service):
        store.update_gateway(CAMPUS, "razorpay", {"enabled": False})
        with pytest.raises(GatewayError) as exc:
            _run(settlement_service)
        assert exc.value.code == "GATEWAY_001"
        assert _settlements(db) == []
        assert _unclaimed(db) == 2

    def test_unknown_gateway(self, razorpay_campus, settlement_service):
        with pytest.raises(ValidationError):
            _run(settlement_service, gateway="stripe")


class TestGatewayFailures:

    def test_timeout_fails_retryably_and_releases_transactions(self, db, razorpay_campus, two_payments, store, audit, settings):
        service = _service(db, store, audit, settings, client=RazorpayClient(latency=2), GATEWAY_TIMEOUT_SECONDS=0.05)

        with pytest.raises(GatewayTimeoutError):
            _run(service)

        [settlement] = _settlements(db)
        assert settlement.settlement_status == "failed"
        assert settlement.processing_details["retryable"] is True
        assert _unclaimed(db) == 2

        failures = _trail(audit, "settlement_failed")
        assert failures[0].event_details["error_code"] == "GATEWAY_007"
        assert failures[0].severity == "high"

    def test_released_transactions_settle_on_the_next_run(self, db, razorpay_campus, two_payments, store, audit, settings):
        failing = _service(db, store, audit, settings, client=RazorpayClient(latency=2), GATEWAY_TIMEOUT_SECONDS=0.05)
        with pytest.raises(GatewayTimeoutError):
            _run(failing)

        retry = _service(db, store, audit, settings)
        settlement = _run(retry, datetime.utcnow() + timedelta(minutes=1))
        assert settlement.settlement_status == "processing"
        assert settlement.net_settlement_amount == Decimal("2886.72")

    def test_timed_out_period_can_be_retried(self, db, razorpay_campus, two_payments, store, audit, settings):
        as_of = datetime.utcnow()
        failing = _service(db, store, audit, settings, client=RazorpayClient(latency=2), GATEWAY_TIMEOUT_SECONDS=0.05)
        with pytest.raises(GatewayTimeoutError):
            _run(failing, as_of)

        settlement = _run(_service(db, store, audit, settings), as_of)

        assert settlement.settlement_status == "processing"
        assert settlement.net_settlement_amount == Decimal("2886.72")
        statuses = sorted(s.settlement_status for s in _settlements(db))
        assert statuses == ["failed", "processing"]
        assert _unclaimed(db) == 0

    def test_gateway_exception_fails_the_settlement(self, db, razorpay_campus, two_payments, store, audit, settings):
        service = _service(db, store, audit, settings, client=ExplodingRazorpay())

        with pytest.raises(GatewayError) as exc:
            _run(service)
        assert exc.value.code == "GATEWAY_002"

        [settlement] = _settlements(db)
        assert settlement.settlement_status == "failed"
        assert "connection reset" in settlement.processing_details["failure_reason"]
        assert _unclaimed(db) == 2

    def test_failing_notifier_does_not_fail_the_run(self, db, razorpay_campus, two_payments, store, audit, settings):
        notifier = RecordingNotifier(fail=True)
        service = _service(db, store, audit, settings, notifier=notifier)

        settlement = _run(service)

        assert settlement.settlement_status == "processing"
        assert notifier.count("initiated") == 1


class TestConcurrency:

    def test_concurrent_runs_create_one_record(self, db, razorpay_campus, two_payments, settlement_service):
        as_of = datetime.utcnow()

        async def both():
            return await asyncio.gather(
                settlement_service.process_automatic_settlement(CAMPUS, "razorpay", as_of),
                settlement_service.process_automatic_settlement(CAMPUS, "razorpay", as_of),
                return_exceptions=True,
            )

        results = asyncio.run(both())

        settled = [r for r in results if isinstance(r, PaymentSettlement)]
        rejected = [r for r in results if isinstance(r, BusinessRuleError)]
        assert len(settled) == 1
        assert len(rejected) == 1
        assert len(_settlements(db)) == 1

    def test_existing_record_for_the_period_is_a_conflict(self, db, razorpay_campus, two_payments, settlement_service):
        as_of = datetime.utcnow()
        period = settlement_period("weekly", as_of)
        db.add(PaymentSettlement(
            id=str(uuid.uuid4()),
            campus_id=CAMPUS,
            gateway_provider="razorpay",
            settlement_batch_id="SETL_RAZORPAY_EXISTING",
            settlement_period_start=period.start,
            settlement_period_end=period.end,
            settlement_status="processing",
        ))
        db.commit()

        with pytest.raises(DataConflictError) as exc:
            _run(settlement_service, as_of)
        assert exc.value.code == "DATA_002"
        assert len(_settlements(db)) == 1
        assert _unclaimed(db) == 2


class TestStateMachine:

    @pytest.fixture
    def settlement(self, razorpay_campus, two_payments, settlement_service):
        return _run(settlement_service)

    def test_processing_to_completed_once(self, settlement, settlement_service, notifier):
        assert settlement_service.complete(settlement) is True
        assert settlement.settlement_status == "completed"
        assert settlement.completed_at is not None
        assert settlement_service.complete(settlement) is False
        assert notifier.count("completed") == 1

    def test_completed_is_terminal(self, settlement, settlement_service):
        settlement_service.complete(settlement)
        for target in ("processing", "failed", "pending"):
            with pytest.raises(TransactionStateError) as exc:
                settlement_service.transition(settlement, target)
            assert exc.value.code == "TRANS_008"

    def test_failed_is_terminal(self, settlement, settlement_service):
        assert settlement_service.fail(settlement, "bank rejected") is True
        with pytest.raises(TransactionStateError):
            settlement_service.complete(settlement)

    def test_pending_cannot_skip_to_completed(self, db, razorpay_campus, settlement_service):
        period = settlement_period("daily", datetime.utcnow())
        pending = PaymentSettlement(
            id=str(uuid.uuid4()), campus_id=CAMPUS, gateway_provider="razorpay",
            settlement_batch_id="SETL_RAZORPAY_PENDING",
            settlement_period_start=period.start, settlement_period_end=period.end,
            settlement_status="pending",
        )
        db.add(pending)
        db.commit()

        with pytest.raises(TransactionStateError):
            settlement_service.complete(pending)
        assert settlement_service.transition(pending, "processing") is True

    def test_failure_releases_transactions(self, db, settlement, settlement_service):
        settlement_service.fail(settlement, "bank rejected")
        assert _unclaimed(db) == 2
        assert settlement.processing_details["retryable"] is False


class TestQueries:

    def test_find_by_reference(self, razorpay_campus, two_payments, settlement_service):
        settlement = _run(settlement_service)
        assert settlement_service.find_by_reference("razorpay", settlement.gateway_settlement_id).id == settlement.id
        assert settlement_service.find_by_reference("razorpay", settlement.id).id == settlement.id
        assert settlement_service.find_by_reference("payu", settlement.id) is None

    def test_list_settlements(self, razorpay_campus, two_payments, settlement_service):
        settlement = _run(settlement_service)
        assert [s.id for s in settlement_service.list_settlements(CAMPUS)] == [settlement.id]
        assert settlement_service.list_settlements(CAMPUS, status="completed") == []
