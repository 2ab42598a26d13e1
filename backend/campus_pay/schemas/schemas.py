"""
Pydantic Schemas — Credential variants plus request & response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Optional, Dict, List, Literal, Union, Any
from pydantic import BaseModel, Field, TypeAdapter


GatewayName = Literal["razorpay", "payu", "cashfree"]
SUPPORTED_GATEWAYS = ("razorpay", "payu", "cashfree")


# ──────────────── Credential Envelope ────────────────

class EncryptedCredential(BaseModel):
    """Opaque AEAD envelope. Unknown fields from newer versions are ignored."""
    encrypted_data: str
    iv: str
    tag: str
    algorithm: str

    class Config:
        extra = "ignore"


# ──────────────── Gateway Credentials (tagged variant) ────────────────

class _GatewayCredentialsBase(BaseModel):
    enabled: bool = False
    mode: Literal["test", "live"] = "test"

    class Config:
        extra = "allow"


class RazorpayCredentials(_GatewayCredentialsBase):
    gateway: Literal["razorpay"] = "razorpay"
    key_id: str = Field(..., min_length=1)
    key_secret: str = Field(..., min_length=1)
    webhook_secret: Optional[str] = None


class PayUCredentials(_GatewayCredentialsBase):
    gateway: Literal["payu"] = "payu"
    merchant_key: str = Field(..., min_length=1)
    merchant_salt: str = Field(..., min_length=1)


class CashfreeCredentials(_GatewayCredentialsBase):
    gateway: Literal["cashfree"] = "cashfree"
    app_id: str = Field(..., min_length=1)
    secret_key: str = Field(..., min_length=1)


GatewayCredentials = Annotated[
    Union[RazorpayCredentials, PayUCredentials, CashfreeCredentials],
    Field(discriminator="gateway"),
]


_credentials_adapter = TypeAdapter(GatewayCredentials)


def parse_gateway_credentials(gateway: str, fields: Dict[str, Any]):
    """Validate one gateway's fields into its credential variant.

    Raises pydantic.ValidationError on missing/invalid fields.
    """
    return _credentials_adapter.validate_python({**fields, "gateway": gateway})


class GatewayCredentialSet(BaseModel):
    """All gateway credentials owned by one campus."""
    razorpay: Optional[RazorpayCredentials] = None
    payu: Optional[PayUCredentials] = None
    cashfree: Optional[CashfreeCredentials] = None


class GatewayStatus(BaseModel):
    """Non-sensitive mirror of one gateway's credential state."""
    enabled: bool = False
    configured: bool = False
    last_tested: Optional[str] = None
    test_status: Literal["untested", "success", "failed"] = "untested"


# ──────────────── Gateway Requests ────────────────

class GatewayConfigureRequest(BaseModel):
    credentials: Dict[str, Any] = Field(..., description="Gateway-specific credential fields")
    enabled: bool = True


class GatewayToggleRequest(BaseModel):
    enabled: bool


class GatewayTestResponse(BaseModel):
    success: bool
    message: str
    details: Optional[Dict] = None


class AvailableGatewaysResponse(BaseModel):
    available: List[str] = []
    enabled: List[str] = []
    configurations: Dict[str, GatewayStatus] = {}


class MigrationResponse(BaseModel):
    success: bool
    message: str
    migrated_gateways: List[str] = []


class GatewaySettings(BaseModel):
    auto_settlement_enabled: bool = True
    settlement_schedule: Literal["daily", "weekly", "monthly", "custom"] = "weekly"
    custom_settlement_days: Optional[List[int]] = None
    minimum_settlement_amount: Decimal = Decimal("100")
    maximum_settlement_amount: Optional[Decimal] = None
    settlement_currency: Optional[str] = None


class FeeStructure(BaseModel):
    gateway_fee_percentage: Decimal = Decimal("0")
    gateway_fee_fixed: Decimal = Decimal("0")
    transaction_fee_percentage: Decimal = Decimal("0")
    transaction_fee_fixed: Decimal = Decimal("0")
    tax_rate_percentage: Optional[Decimal] = None
    currency: Optional[str] = None
    fee_bearer: Literal["school", "student", "split"] = "school"


class SettlementConfigRequest(BaseModel):
    gateway_settings: GatewaySettings = GatewaySettings()
    fee_structure: FeeStructure = FeeStructure()
    status: Literal["active", "inactive", "suspended", "under_review"] = "active"
    is_primary: bool = False


# ──────────────── Settlement ────────────────

class SettlementProcessRequest(BaseModel):
    settlement_date: Optional[datetime] = None


class SettlementResponse(BaseModel):
    id: str
    campus_id: str
    gateway_provider: str
    settlement_batch_id: str
    settlement_status: str
    settlement_period_start: datetime
    settlement_period_end: datetime
    total_transaction_amount: Decimal
    total_gateway_fees: Decimal
    total_platform_fees: Decimal
    total_taxes: Decimal
    net_settlement_amount: Decimal
    currency: str = "INR"
    gateway_settlement_id: Optional[str] = None
    transaction_summary: Optional[Dict] = None
    security_metadata: Optional[Dict] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WebhookResponse(BaseModel):
    success: bool
    settlement: Optional[SettlementResponse] = None


# ──────────────── Payments ────────────────

class OrderCreateRequest(BaseModel):
    fee_id: str
    student_id: str
    gateway: GatewayName
    amount: Decimal = Field(..., gt=0)
    currency: str = "INR"


class PaymentVerifyRequest(BaseModel):
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[str] = None
    via_webhook: bool = False


class TransactionResponse(BaseModel):
    id: str
    campus_id: str
    gateway: str
    amount: Decimal
    currency: str
    status: str
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    webhook_verified: bool = False
    settlement_id: Optional[str] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ──────────────── Admin / Audit ────────────────

class AuditLogEntry(BaseModel):
    id: int
    campus_id: str
    event_type: str
    event_category: str
    severity: str
    event_details: Optional[Dict] = None
    compliance_tags: Optional[List[str]] = None
    payload_hash: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SecurityEventEntry(BaseModel):
    id: int
    campus_id: str
    event_type: str
    severity: str
    status: str
    threat_details: Optional[Dict] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SecurityAuditResponse(BaseModel):
    overall_score: int
    security_issues: List[str] = []
    compliance_status: str
    recommendations: List[str] = []
    audit_report_id: str


# ──────────────── Generic ────────────────

class ErrorBody(BaseModel):
    code: str
    message: str
    user_message: Optional[str] = None
    suggestions: Optional[List[str]] = None
    details: Optional[Dict] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorBody


# Documented error shapes for every router, keyed by HTTP status
ERROR_RESPONSES = {status: {"model": ErrorResponse} for status in (400, 409, 422, 429, 500, 502)}
