"""
Error catalogue: HTTP status mapping, response shape and categorization.
"""
import pytest

from campus_pay.errors import (
    ERROR_CODES, BusinessRuleError, CredentialError, DataConflictError, GatewayError,
    GatewayTimeoutError, IntegrityError, InternalError, KeyConfigurationError,
    NotConfiguredError, PaymentError, TransactionStateError, ValidationError,
    WebhookSignatureError, categorize, handle_error,
)


class TestStatusMapping:

    @pytest.mark.parametrize("code,status", [
        ("AUTH_001", 401),
        ("VAL_001", 400),
        ("BIZ_007", 422),
        ("RATE_001", 429),
        ("DATA_002", 409),
        ("TRANS_008", 400),
        ("CRED_002", 500),
        ("GATEWAY_007", 502),
        ("SYS_003", 500),
    ])
    def test_prefix_determines_status(self, code, status):
        assert PaymentError(code).http_status == status

    def test_every_catalogued_code_has_a_status(self):
        for code in ERROR_CODES:
            assert PaymentError(code).http_status in (400, 401, 409, 422, 429, 500, 502)

    @pytest.mark.parametrize("error,code", [
        (ValidationError(), "VAL_001"),
        (BusinessRuleError(), "BIZ_001"),
        (NotConfiguredError(), "BIZ_005"),
        (TransactionStateError(), "TRANS_002"),
        (DataConflictError(), "DATA_002"),
        (CredentialError(), "CRED_002"),
        (KeyConfigurationError(), "CRED_001"),
        (IntegrityError(), "CRED_002"),
        (GatewayError(), "GATEWAY_002"),
        (WebhookSignatureError(), "GATEWAY_005"),
        (GatewayTimeoutError(), "GATEWAY_007"),
        (InternalError(), "SYS_003"),
    ])
    def test_default_codes(self, error, code):
        assert error.code == code

    def test_unknown_code_falls_back_to_internal_message(self):
        error = PaymentError("XYZ_999")
        assert error.message == ERROR_CODES["SYS_003"]
        assert error.http_status == 500


class TestResponseShape:

    def test_details_hidden_by_default(self):
        response = BusinessRuleError("BIZ_007", details={"net_settlement_amount": "42.00"}).to_response()
        assert response["success"] is False
        assert response["error"]["code"] == "BIZ_007"
        assert response["error"]["message"] == ERROR_CODES["BIZ_007"]
        assert response["error"]["user_message"] == "Not enough collected to settle yet"
        assert response["error"]["suggestions"]
        assert "details" not in response["error"]

    def test_details_on_request(self):
        response = BusinessRuleError("BIZ_007", details={"net_settlement_amount": "42.00"}).to_response(include_details=True)
        assert response["error"]["details"] == {"net_settlement_amount": "42.00"}

    def test_default_user_message_and_suggestions(self):
        error = DataConflictError()
        assert error.user_message.startswith("An error occurred")
        assert error.suggestions == ["Try again later", "Contact support if the problem continues"]

    def test_str_includes_code(self):
        assert str(WebhookSignatureError()) == f"[GATEWAY_005] {ERROR_CODES['GATEWAY_005']}"


class TestCategorize:

    def test_payment_errors_pass_through(self):
        error = GatewayTimeoutError()
        assert categorize(error) is error

    @pytest.mark.parametrize("message,code", [
        ("database connection refused", "SYS_001"),
        ("read timeout", "SYS_001"),
        ("invalid literal for int()", "VAL_002"),
        ("field required", "VAL_002"),
        ("bad token", "AUTH_001"),
        ("gateway returned 503", "GATEWAY_002"),
        ("something odd happened", "SYS_003"),
    ])
    def test_message_keywords(self, message, code):
        assert categorize(RuntimeError(message)).code == code

    def test_context_is_attached(self):
        error = categorize(RuntimeError("boom"), {"operation": "settle"})
        assert error.details == {"original_message": "boom", "context": {"operation": "settle"}}


class TestHandleError:

    def test_expected_errors_are_not_incidents(self):
        error, status, should_log = handle_error(ValidationError("VAL_003"))
        assert (error.code, status, should_log) == ("VAL_003", 400, False)

    def test_catalogued_incidents_are_logged(self):
        _, status, should_log = handle_error(IntegrityError())
        assert (status, should_log) == (500, True)

    def test_foreign_exceptions_are_always_logged(self):
        # Categorized as VAL_002 but still an unexpected exception
        error, status, should_log = handle_error(ValueError("invalid amount"))
        assert (error.code, status, should_log) == ("VAL_002", 400, True)
