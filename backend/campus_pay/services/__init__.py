from campus_pay.services.credential_cipher import CredentialCipher
from campus_pay.services.credential_store import CredentialStore
from campus_pay.services.audit_service import AuditService
from campus_pay.services.settlement_service import SettlementService
from campus_pay.services.webhook_service import SettlementWebhookService
from campus_pay.services.gateway_service import GatewayService
from campus_pay.services.security_audit_service import SecurityAuditService
from campus_pay.services.payment_service import PaymentService
from campus_pay.services.notification_service import SettlementNotifier

__all__ = [
    "CredentialCipher", "CredentialStore", "AuditService", "SettlementService",
    "SettlementWebhookService", "GatewayService", "SecurityAuditService",
    "PaymentService", "SettlementNotifier",
]
