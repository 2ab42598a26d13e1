"""
Payment Error Catalogue — prefix-coded errors shared by every payment service.

Prefix → HTTP status:
    AUTH 401 · VAL 400 · BIZ 422 · RATE 429 · DATA 409 · TRANS 400
    CRED 500 · GATEWAY 502 · SYS 500

VAL and BIZ errors are expected and user-correctable; they are surfaced
directly and not logged as incidents. Everything else is an incident.
"""
from typing import Dict, List, Optional, Tuple


ERROR_CODES: Dict[str, str] = {
    # Authentication & Authorization
    "AUTH_001": "Invalid or expired authentication token",
    "AUTH_002": "Insufficient permissions for this operation",
    "AUTH_003": "User account is disabled or suspended",
    "AUTH_004": "Session has expired, please login again",

    # Payment Gateway
    "GATEWAY_001": "Payment gateway configuration is missing or invalid",
    "GATEWAY_002": "Payment gateway is temporarily unavailable",
    "GATEWAY_003": "Payment gateway credentials are invalid or expired",
    "GATEWAY_004": "Payment amount exceeds gateway limits",
    "GATEWAY_005": "Payment gateway signature verification failed",
    "GATEWAY_006": "Unsupported payment method for selected gateway",
    "GATEWAY_007": "Payment gateway request timed out",

    # Transactions
    "TRANS_001": "Transaction not found or invalid transaction ID",
    "TRANS_002": "Transaction has already been processed",
    "TRANS_003": "Transaction amount mismatch",
    "TRANS_004": "Transaction has expired",
    "TRANS_005": "Insufficient balance or payment failed",
    "TRANS_006": "Transaction was cancelled by user",
    "TRANS_007": "Transaction declined by bank or payment provider",
    "TRANS_008": "Invalid settlement state transition",

    # Credentials & Encryption
    "CRED_001": "Encryption key is missing or invalid",
    "CRED_002": "Failed to encrypt or decrypt payment credentials",
    "CRED_003": "Payment credentials format is invalid",
    "CRED_004": "Credential rotation failed",
    "CRED_005": "Legacy credentials migration required",

    # Validation
    "VAL_001": "Required fields are missing from request",
    "VAL_002": "Invalid data format or type",
    "VAL_003": "Amount must be greater than zero",
    "VAL_004": "Invalid email address format",
    "VAL_005": "Invalid phone number format",
    "VAL_006": "Invalid date or date range",

    # Business Rules
    "BIZ_001": "Fee has already been paid",
    "BIZ_002": "Student is not enrolled in the specified class",
    "BIZ_003": "Payment deadline has passed",
    "BIZ_004": "Discount or scholarship not applicable",
    "BIZ_005": "Campus bank details are not configured",
    "BIZ_006": "Fee category is not active or available",
    "BIZ_007": "Settlement amount is below the minimum threshold",
    "BIZ_008": "No eligible transactions found for settlement",
    "BIZ_009": "Gateway must pass a connection test before it can be enabled",

    # System
    "SYS_001": "Database connection failed",
    "SYS_002": "External service is unavailable",
    "SYS_003": "Internal server error occurred",
    "SYS_004": "Service timeout exceeded",
    "SYS_005": "Memory or resource limit exceeded",

    # Rate Limiting & Abuse
    "RATE_001": "Too many requests, please try again later",
    "RATE_002": "Maximum transaction attempts exceeded",
    "RATE_003": "Suspicious activity detected, account temporarily locked",

    # Data Integrity
    "DATA_001": "Data corruption detected",
    "DATA_002": "Concurrent modification conflict",
    "DATA_003": "Referenced entity not found",
    "DATA_004": "Data validation failed",
}

HTTP_STATUS_BY_PREFIX: Dict[str, int] = {
    "AUTH": 401,
    "VAL": 400,
    "BIZ": 422,
    "RATE": 429,
    "DATA": 409,
    "TRANS": 400,
    "CRED": 500,
    "GATEWAY": 502,
    "SYS": 500,
}

# Expected, user-correctable: not logged as incidents
NON_INCIDENT_PREFIXES = ("VAL", "BIZ")

USER_MESSAGES: Dict[str, str] = {
    "AUTH_001": "Please log in again to continue",
    "AUTH_002": "You don't have permission to perform this action",
    "GATEWAY_001": "Payment gateway is not configured properly",
    "GATEWAY_002": "Payment service is temporarily unavailable",
    "GATEWAY_007": "The payment provider did not respond in time",
    "TRANS_001": "The payment transaction could not be found",
    "TRANS_005": "Payment was declined by your bank",
    "VAL_001": "Some required details are missing",
    "VAL_003": "Please enter a valid amount greater than zero",
    "BIZ_001": "This fee has already been paid",
    "BIZ_005": "Payment system is being set up for your school",
    "BIZ_007": "Not enough collected to settle yet",
    "BIZ_008": "There is nothing to settle for this period",
    "BIZ_009": "Test the gateway connection before enabling it",
    "RATE_001": "Too many attempts, please wait a moment and try again",
    "SYS_003": "Something went wrong, please try again later",
}

RECOVERY_SUGGESTIONS: Dict[str, List[str]] = {
    "AUTH_001": ["Log out and log back in", "Clear browser cache and cookies", "Contact support if issue persists"],
    "AUTH_002": ["Contact your administrator for access", "Verify you have the correct role assigned"],
    "GATEWAY_001": ["Configure the gateway credentials", "Activate the gateway settlement configuration"],
    "GATEWAY_002": ["Try again in a few minutes", "Use a different payment method", "Contact support"],
    "GATEWAY_007": ["The settlement is marked retryable", "It will be picked up by the next scheduled run"],
    "TRANS_005": ["Check your bank balance", "Try a different payment method", "Contact your bank"],
    "VAL_001": ["Check the gateway's required credential fields"],
    "VAL_003": ["Enter an amount greater than ₹1", "Check for decimal places or special characters"],
    "BIZ_001": ["Check your payment history", "Contact the fee office if payment is missing"],
    "BIZ_005": ["Set up the school's bank details first"],
    "BIZ_007": ["Wait for more payments to accumulate", "Lower the minimum settlement amount"],
    "RATE_001": ["Wait 5-10 minutes before trying again", "Clear browser cache"],
    "SYS_003": ["Refresh the page and try again", "Check your internet connection", "Contact support"],
}

DEFAULT_USER_MESSAGE = "An error occurred, please contact support if the problem persists"
DEFAULT_SUGGESTIONS = ["Try again later", "Contact support if the problem continues"]


class PaymentError(Exception):
    """Base exception for all payment subsystem errors."""

    default_code = "SYS_003"

    def __init__(
        self,
        code: Optional[str] = None,
        details: Optional[dict] = None,
        *,
        message: Optional[str] = None,
        user_message: Optional[str] = None,
        suggestions: Optional[List[str]] = None,
    ):
        self.code = code or self.default_code
        self.message = message or ERROR_CODES.get(self.code, ERROR_CODES["SYS_003"])
        super().__init__(self.message)
        self.details = details or {}
        self.user_message = user_message or USER_MESSAGES.get(self.code, DEFAULT_USER_MESSAGE)
        self.suggestions = suggestions or RECOVERY_SUGGESTIONS.get(self.code, DEFAULT_SUGGESTIONS)

    def __str__(self):
        return f"[{self.code}] {self.message}"

    @property
    def category(self) -> str:
        return self.code.split("_")[0]

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_PREFIX.get(self.category, 500)

    @property
    def should_log(self) -> bool:
        return self.category not in NON_INCIDENT_PREFIXES

    def to_response(self, include_details: bool = False) -> dict:
        """Format for API responses. ``details`` only when explicitly requested."""
        error = {"code": self.code, "message": self.message}
        if self.user_message:
            error["user_message"] = self.user_message
        if self.suggestions:
            error["suggestions"] = list(self.suggestions)
        if include_details and self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


class ValidationError(PaymentError):
    default_code = "VAL_001"


class BusinessRuleError(PaymentError):
    default_code = "BIZ_001"


class NotConfiguredError(BusinessRuleError):
    """Campus bank details have not been set up."""
    default_code = "BIZ_005"


class TransactionStateError(PaymentError):
    default_code = "TRANS_002"


class DataConflictError(PaymentError):
    default_code = "DATA_002"


class RateLimitError(PaymentError):
    default_code = "RATE_001"


class CredentialError(PaymentError):
    """Encryption subsystem failure. Always fatal, never user-correctable."""
    default_code = "CRED_002"


class KeyConfigurationError(CredentialError):
    default_code = "CRED_001"


class IntegrityError(CredentialError):
    """Ciphertext failed authentication: tampered, corrupted, or wrong key."""
    default_code = "CRED_002"


class GatewayError(PaymentError):
    default_code = "GATEWAY_002"


class WebhookSignatureError(GatewayError):
    default_code = "GATEWAY_005"


class GatewayTimeoutError(GatewayError):
    default_code = "GATEWAY_007"


class InternalError(PaymentError):
    default_code = "SYS_003"


def categorize(error: Exception, context: Optional[dict] = None) -> PaymentError:
    """Map an arbitrary exception onto the catalogue by inspecting its message."""
    if isinstance(error, PaymentError):
        return error

    message = str(error).lower()
    details = {"original_message": str(error)}
    if context:
        details["context"] = context

    if any(word in message for word in ("connection", "database", "timeout")):
        return InternalError("SYS_001", details)
    if any(word in message for word in ("validation", "invalid", "required")):
        return ValidationError("VAL_002", details)
    if any(word in message for word in ("unauthorized", "token", "auth")):
        return PaymentError("AUTH_001", details)
    if any(word in message for word in ("gateway", "payment", "signature")):
        return GatewayError("GATEWAY_002", details)
    return InternalError("SYS_003", details)


def handle_error(error: Exception, context: Optional[dict] = None) -> Tuple[PaymentError, int, bool]:
    """Normalise any exception into ``(payment_error, http_status, should_log)``."""
    payment_error = categorize(error, context)
    should_log = payment_error.should_log if isinstance(error, PaymentError) else True
    return payment_error, payment_error.http_status, should_log
