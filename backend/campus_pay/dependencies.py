"""
FastAPI dependency wiring — builds per-request services over one DB session.
"""
from functools import lru_cache
from typing import Dict

from fastapi import Depends
from sqlalchemy.orm import Session

from campus_pay.config import get_settings
from campus_pay.database import get_db
from campus_pay.services.audit_service import AuditService
from campus_pay.services.credential_cipher import CredentialCipher
from campus_pay.services.credential_store import CredentialStore
from campus_pay.services.gateway_clients import GatewayClient, default_gateways
from campus_pay.services.gateway_service import GatewayService
from campus_pay.services.notification_service import SettlementNotifier
from campus_pay.services.payment_service import PaymentService
from campus_pay.services.security_audit_service import SecurityAuditService
from campus_pay.services.settlement_service import SettlementService
from campus_pay.services.webhook_service import SettlementWebhookService


@lru_cache()
def get_cipher() -> CredentialCipher:
    """Process-wide cipher. Raises CRED_001 on first use if the key is missing."""
    return CredentialCipher.from_settings(get_settings())


@lru_cache()
def get_gateways() -> Dict[str, GatewayClient]:
    return default_gateways()


@lru_cache()
def get_notifier() -> SettlementNotifier:
    return SettlementNotifier()


def get_audit_service(db: Session = Depends(get_db)) -> AuditService:
    return AuditService(db)


def get_credential_store(
    db: Session = Depends(get_db),
    cipher: CredentialCipher = Depends(get_cipher),
    audit: AuditService = Depends(get_audit_service),
) -> CredentialStore:
    return CredentialStore(db, cipher, audit)


def get_settlement_service(
    db: Session = Depends(get_db),
    store: CredentialStore = Depends(get_credential_store),
    audit: AuditService = Depends(get_audit_service),
    gateways: Dict[str, GatewayClient] = Depends(get_gateways),
    notifier: SettlementNotifier = Depends(get_notifier),
) -> SettlementService:
    return SettlementService(db, store, audit, gateways, notifier)


def get_webhook_service(
    db: Session = Depends(get_db),
    store: CredentialStore = Depends(get_credential_store),
    audit: AuditService = Depends(get_audit_service),
    gateways: Dict[str, GatewayClient] = Depends(get_gateways),
    settlements: SettlementService = Depends(get_settlement_service),
) -> SettlementWebhookService:
    return SettlementWebhookService(db, store, audit, gateways, settlements)


def get_gateway_service(
    db: Session = Depends(get_db),
    store: CredentialStore = Depends(get_credential_store),
    audit: AuditService = Depends(get_audit_service),
    gateways: Dict[str, GatewayClient] = Depends(get_gateways),
) -> GatewayService:
    return GatewayService(db, store, audit, gateways)


def get_payment_service(
    db: Session = Depends(get_db),
    store: CredentialStore = Depends(get_credential_store),
    audit: AuditService = Depends(get_audit_service),
    gateways: Dict[str, GatewayClient] = Depends(get_gateways),
) -> PaymentService:
    return PaymentService(db, store, audit, gateways)


def get_security_audit_service(
    db: Session = Depends(get_db),
    store: CredentialStore = Depends(get_credential_store),
    audit: AuditService = Depends(get_audit_service),
) -> SecurityAuditService:
    return SecurityAuditService(db, store, audit)
