from campus_pay.models.bank_details import SchoolBankDetails
from campus_pay.models.transaction import PaymentTransaction
from campus_pay.models.settlement import PaymentGatewayConfiguration, PaymentSettlement
from campus_pay.models.audit import PaymentAuditLog, PaymentSecurityEvent

__all__ = [
    "SchoolBankDetails", "PaymentTransaction",
    "PaymentGatewayConfiguration", "PaymentSettlement",
    "PaymentAuditLog", "PaymentSecurityEvent",
]
