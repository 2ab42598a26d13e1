"""
Shared fixtures: in-memory database, a cipher with a random key, services
wired the way the API wires them, and seeded campus data.
"""
import base64
import os
from datetime import datetime, timedelta
from decimal import Decimal

# Must be set before campus_pay.config is first imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PAYMENT_CREDENTIAL_ENCRYPTION_KEY", base64.b64encode(os.urandom(32)).decode("ascii"))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from campus_pay.config import Settings
from campus_pay.database import init_db
from campus_pay.models import PaymentTransaction, SchoolBankDetails
from campus_pay.services.audit_service import AuditService
from campus_pay.services.credential_cipher import CredentialCipher
from campus_pay.services.credential_store import CredentialStore
from campus_pay.services.gateway_clients import default_gateways
from campus_pay.services.gateway_service import GatewayService
from campus_pay.services.payment_service import PaymentService
from campus_pay.services.security_audit_service import SecurityAuditService
from campus_pay.services.settlement_service import SettlementService
from campus_pay.services.webhook_service import SettlementWebhookService
from campus_pay.utils.rate_limiter import reset_rate_limits

CAMPUS = "campus-001"

RAZORPAY = {
    "key_id": "rzp_test_1DP5mmOlF5G5ag",
    "key_secret": "thisisasecretkey1234",
    "webhook_secret": "whsec_campus_settlements",
    "enabled": True,
    "mode": "test",
}


class RecordingNotifier:
    """Notifier double that remembers every call."""

    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    def notify(self, settlement, event="completed"):
        self.calls.append((settlement.id, event))
        if self.fail:
            raise RuntimeError("smtp unavailable")
        return {"success": True, "event": event, "deliveries": [{"channel": "email"}]}

    def count(self, event):
        return sum(1 for _, e in self.calls if e == event)


@pytest.fixture(autouse=True)
def _clear_rate_limits():
    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite://",
        PAYMENT_CREDENTIAL_ENCRYPTION_KEY=base64.b64encode(os.urandom(32)).decode("ascii"),
        GATEWAY_TIMEOUT_SECONDS=1.0,
        ENVIRONMENT="test",
    )


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def cipher_key():
    return os.urandom(32)


@pytest.fixture
def cipher(cipher_key):
    return CredentialCipher(cipher_key)


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def audit(db, alerts, settings):
    return AuditService(db, alert_hook=alerts.append, settings=settings)


@pytest.fixture
def store(db, cipher, audit, settings):
    return CredentialStore(db, cipher, audit, settings)


@pytest.fixture
def gateways():
    return default_gateways()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def settlement_service(db, store, audit, gateways, notifier, settings):
    return SettlementService(db, store, audit, gateways, notifier, settings)


@pytest.fixture
def webhook_service(db, store, audit, gateways, settlement_service):
    return SettlementWebhookService(db, store, audit, gateways, settlement_service)


@pytest.fixture
def gateway_service(db, store, audit, gateways, settings):
    return GatewayService(db, store, audit, gateways, settings)


@pytest.fixture
def payment_service(db, store, audit, gateways, settings):
    return PaymentService(db, store, audit, gateways, settings)


@pytest.fixture
def security_audit_service(db, store, audit):
    return SecurityAuditService(db, store, audit)


@pytest.fixture
def bank_details(db):
    row = SchoolBankDetails(
        campus_id=CAMPUS,
        bank_name="HDFC Bank",
        account_number="50100123456789",
        account_holder_name="Springfield Public School",
        ifsc_code="HDFC0001234",
        branch_name="MG Road",
        gateway_status={},
        is_active=True,
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def make_transaction(db):
    """Factory for settled-looking payment transactions."""
    counter = {"n": 0}

    def _make(amount, completed_at=None, **fields):
        counter["n"] += 1
        txn = PaymentTransaction(
            id=fields.pop("id", f"txn-{counter['n']:04d}"),
            campus_id=fields.pop("campus_id", CAMPUS),
            fee_id=fields.pop("fee_id", f"fee-{counter['n']}"),
            student_id=fields.pop("student_id", f"student-{counter['n']}"),
            gateway=fields.pop("gateway", "razorpay"),
            amount=Decimal(str(amount)),
            currency="INR",
            status=fields.pop("status", "success"),
            webhook_verified=fields.pop("webhook_verified", True),
            completed_at=completed_at or datetime.utcnow() - timedelta(days=1),
            **fields,
        )
        db.add(txn)
        db.commit()
        return txn

    return _make


@pytest.fixture
def razorpay_campus(bank_details, store, gateway_service):
    """Campus with enabled Razorpay credentials and an active weekly config.

    Fees: gateway 2% + 2, platform 1% + 1, GST 18%, minimum 100.
    """
    store.store(CAMPUS, {"razorpay": dict(RAZORPAY)})
    gateway_service.upsert_gateway_configuration(
        CAMPUS, "razorpay",
        gateway_settings={"settlement_schedule": "weekly", "minimum_settlement_amount": "100"},
        fee_structure={
            "gateway_fee_percentage": "2",
            "gateway_fee_fixed": "2",
            "transaction_fee_percentage": "1",
            "transaction_fee_fixed": "1",
        },
        status="active",
    )
    return CAMPUS
