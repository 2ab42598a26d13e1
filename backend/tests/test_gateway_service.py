"""
Gateway management: validation before writes, masking, connection tests,
enable/disable rules and settlement configuration.
"""
import asyncio
import json

import pytest

from campus_pay.errors import BusinessRuleError, NotConfiguredError, ValidationError
from campus_pay.models import PaymentGatewayConfiguration, SchoolBankDetails
from campus_pay.services.gateway_clients import RazorpayClient
from campus_pay.services.gateway_service import GatewayService

from conftest import CAMPUS, RAZORPAY

RAZORPAY_FIELDS = {k: v for k, v in RAZORPAY.items() if k not in ("enabled",)}


def _envelope(db):
    db.expire_all()
    return db.query(SchoolBankDetails).filter(SchoolBankDetails.campus_id == CAMPUS).one().encrypted_payment_credentials


class TestConfigure:

    def test_missing_field_is_rejected_without_writing(self, db, bank_details, gateway_service):
        with pytest.raises(ValidationError) as exc:
            gateway_service.configure_gateway(CAMPUS, "razorpay", {"key_id": "abc"})
        assert exc.value.code == "VAL_001"
        assert any(loc.endswith("key_secret") for loc in exc.value.details["missing_or_invalid"])
        assert _envelope(db) is None

    def test_bad_key_format_is_rejected(self, db, bank_details, gateway_service):
        with pytest.raises(ValidationError) as exc:
            gateway_service.configure_gateway(CAMPUS, "razorpay", {"key_id": "abc", "key_secret": "secret"})
        assert exc.value.code == "VAL_002"
        assert _envelope(db) is None

    def test_unsupported_gateway(self, bank_details, gateway_service):
        with pytest.raises(ValidationError) as exc:
            gateway_service.configure_gateway(CAMPUS, "stripe", {"api_key": "sk_test"})
        assert exc.value.code == "VAL_002"

    def test_requires_bank_details(self, gateway_service):
        with pytest.raises(NotConfiguredError):
            gateway_service.configure_gateway(CAMPUS, "razorpay", RAZORPAY_FIELDS)

    def test_returns_masked_credentials(self, bank_details, gateway_service):
        masked = gateway_service.configure_gateway(CAMPUS, "razorpay", RAZORPAY_FIELDS)
        assert masked["razorpay"]["key_secret"] == "this***1234"
        assert RAZORPAY["webhook_secret"] not in json.dumps(masked)

    def test_configuring_a_second_gateway_keeps_the_first(self, bank_details, store, gateway_service):
        gateway_service.configure_gateway(CAMPUS, "razorpay", RAZORPAY_FIELDS)
        gateway_service.configure_gateway(CAMPUS, "payu", {"merchant_key": "gtKFFx", "merchant_salt": "eCwWELxi4Fm"})
        assert set(store.retrieve(CAMPUS)) == {"razorpay", "payu"}

    def test_reconfiguring_resets_the_test_status(self, bank_details, store, gateway_service):
        gateway_service.configure_gateway(CAMPUS, "razorpay", RAZORPAY_FIELDS)
        asyncio.run(gateway_service.test_gateway(CAMPUS, "razorpay"))
        gateway_service.configure_gateway(CAMPUS, "razorpay", RAZORPAY_FIELDS)
        assert store.get_status(CAMPUS)["razorpay"]["test_status"] == "untested"

    def test_is_audited(self, bank_details, gateway_service, audit):
        gateway_service.configure_gateway(CAMPUS, "razorpay", RAZORPAY_FIELDS)
        [entry] = [e for e in audit.get_trail(CAMPUS) if e.event_type == "gateway_configured"]
        assert entry.severity == "high"
        assert entry.event_details["gateway"] == "razorpay"


class TestAvailableGateways:

    def test_lists_status_without_secrets(self, bank_details, gateway_service):
        gateway_service.configure_gateway(CAMPUS, "razorpay", RAZORPAY_FIELDS, enabled=False)
        gateway_service.configure_gateway(CAMPUS, "payu", {"merchant_key": "gtKFFx", "merchant_salt": "eCwWELxi4Fm"})

        result = gateway_service.get_available_gateways(CAMPUS)

        assert result["available"] == ["razorpay", "payu", "cashfree"]
        assert result["enabled"] == ["payu"]
        assert result["configurations"]["razorpay"]["configured"] is True
        serialized = json.dumps(result)
        for secret in (RAZORPAY["key_secret"], RAZORPAY["webhook_secret"], "eCwWELxi4Fm"):
            assert secret not in serialized

    def test_unconfigured_campus(self, gateway_service):
        assert gateway_service.get_available_gateways(CAMPUS)["configurations"] == {}


class TestConnectionTest:

    def test_success_is_recorded(self, bank_details, store, gateway_service):
        gateway_service.configure_gateway(CAMPUS, "razorpay", RAZORPAY_FIELDS)
        result = asyncio.run(gateway_service.test_gateway(CAMPUS, "razorpay"))

        assert result["success"] is True
        status = store.get_status(CAMPUS)["razorpay"]
        assert status["test_status"] == "success"
        assert status["last_tested"] is not None

    def test_unconfigured_gateway(self, bank_details, gateway_service):
        result = asyncio.run(gateway_service.test_gateway(CAMPUS, "payu"))
        assert result == {"success": False, "message": "payu is not configured"}

    def test_timeout_is_a_failed_test(self, bank_details, db, store, audit, settings):
        service = GatewayService(
            db, store, audit,
            gateways={"razorpay": RazorpayClient(latency=2)},
            settings=settings.model_copy(update={"GATEWAY_TIMEOUT_SECONDS": 0.05}),
        )
        service.configure_gateway(CAMPUS, "razorpay", RAZORPAY_FIELDS)

        result = asyncio.run(service.test_gateway(CAMPUS, "razorpay"))

        assert result["success"] is False
        assert "did not respond" in result["message"]
        assert store.get_status(CAMPUS)["razorpay"]["test_status"] == "failed"

    def test_result_is_copied_to_the_configuration(self, razorpay_campus, db, gateway_service):
        asyncio.run(gateway_service.test_gateway(CAMPUS, "razorpay"))
        db.expire_all()
        config = db.query(PaymentGatewayConfiguration).filter_by(campus_id=CAMPUS, gateway_provider="razorpay").one()
        assert config.testing_details["test_status"] == "success"


class TestToggle:

    def test_enable_requires_a_passing_test(self, bank_details, gateway_service):
        gateway_service.configure_gateway(CAMPUS, "razorpay", RAZORPAY_FIELDS, enabled=False)
        with pytest.raises(BusinessRuleError) as exc:
            gateway_service.toggle_gateway(CAMPUS, "razorpay", True)
        assert exc.value.code == "BIZ_009"

    def test_enable_after_test(self, bank_details, store, gateway_service):
        gateway_service.configure_gateway(CAMPUS, "razorpay", RAZORPAY_FIELDS, enabled=False)
        asyncio.run(gateway_service.test_gateway(CAMPUS, "razorpay"))

        entry = gateway_service.toggle_gateway(CAMPUS, "razorpay", True)

        assert entry["enabled"] is True
        assert store.retrieve(CAMPUS)["razorpay"]["enabled"] is True
        assert store.get_status(CAMPUS)["razorpay"]["test_status"] == "success"

    def test_disable_never_needs_a_test(self, bank_details, store, gateway_service):
        gateway_service.configure_gateway(CAMPUS, "razorpay", RAZORPAY_FIELDS)
        gateway_service.toggle_gateway(CAMPUS, "razorpay", False)
        assert store.retrieve(CAMPUS)["razorpay"]["enabled"] is False
        assert store.get_status(CAMPUS)["razorpay"]["enabled"] is False

    def test_unconfigured_gateway(self, bank_details, gateway_service):
        with pytest.raises(BusinessRuleError) as exc:
            gateway_service.toggle_gateway(CAMPUS, "cashfree", False)
        assert exc.value.code == "BIZ_005"


class TestSettlementConfiguration:

    def test_upsert_replaces_existing(self, db, bank_details, gateway_service):
        gateway_service.upsert_gateway_configuration(CAMPUS, "razorpay", {"settlement_schedule": "daily"})
        config = gateway_service.upsert_gateway_configuration(
            CAMPUS, "razorpay", {"settlement_schedule": "monthly", "minimum_settlement_amount": "500"},
        )
        assert db.query(PaymentGatewayConfiguration).count() == 1
        assert config.gateway_settings["settlement_schedule"] == "monthly"
        assert config.gateway_settings["minimum_settlement_amount"] == "500"

    def test_only_one_primary(self, db, bank_details, gateway_service):
        gateway_service.upsert_gateway_configuration(CAMPUS, "razorpay", is_primary=True)
        gateway_service.upsert_gateway_configuration(CAMPUS, "payu", is_primary=True)
        db.expire_all()
        primaries = db.query(PaymentGatewayConfiguration).filter_by(campus_id=CAMPUS, is_primary=True).all()
        assert [c.gateway_provider for c in primaries] == ["payu"]

    def test_invalid_settings(self, bank_details, gateway_service):
        with pytest.raises(ValidationError) as exc:
            gateway_service.upsert_gateway_configuration(CAMPUS, "razorpay", {"settlement_schedule": "hourly"})
        assert exc.value.code == "VAL_002"
