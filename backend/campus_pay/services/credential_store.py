"""
Credential Store — Per-campus encrypted gateway credentials.

The encrypted envelope and the non-sensitive status mirror live on the
campus's active SchoolBankDetails row and are always written together.
Status queries read the mirror only, never the envelope.
"""
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session

from campus_pay.config import get_settings
from campus_pay.errors import CredentialError, NotConfiguredError, ValidationError
from campus_pay.models.bank_details import SchoolBankDetails
from campus_pay.schemas.schemas import (
    SUPPORTED_GATEWAYS, GatewayCredentialSet, GatewayStatus, parse_gateway_credentials,
)
from campus_pay.services.audit_service import AuditService, elapsed_ms
from campus_pay.services.credential_cipher import CredentialCipher, KeyMaterial, mask_credentials, rotate

logger = logging.getLogger(__name__)

ROTATED_ENCRYPTION_VERSION = "v2"
KNOWN_ENCRYPTION_VERSIONS = ("v1", "v2")

# One lock per campus, shared by every store instance in the process
_campus_locks: Dict[str, threading.RLock] = {}
_campus_locks_guard = threading.Lock()


def _campus_lock(campus_id: str) -> threading.RLock:
    with _campus_locks_guard:
        return _campus_locks.setdefault(campus_id, threading.RLock())


def normalize_credentials(credentials: Union[dict, GatewayCredentialSet]) -> Dict[str, dict]:
    """Validate every gateway entry into its variant and return plain dicts.

    Raises:
        ValidationError: unsupported gateway (VAL_002) or missing fields (VAL_001).
    """
    if isinstance(credentials, GatewayCredentialSet):
        credentials = credentials.model_dump(exclude_none=True)

    normalized = {}
    for gateway, fields in (credentials or {}).items():
        if gateway not in SUPPORTED_GATEWAYS:
            raise ValidationError("VAL_002", details={"gateway": gateway, "supported": list(SUPPORTED_GATEWAYS)})
        if hasattr(fields, "model_dump"):
            fields = fields.model_dump(exclude_none=True)
        try:
            model = parse_gateway_credentials(gateway, dict(fields or {}))
        except SchemaValidationError as e:
            raise ValidationError("VAL_001", details={
                "gateway": gateway,
                "errors": [
                    {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in e.errors()
                ],
            }) from e
        normalized[gateway] = model.model_dump(exclude_none=True)
    return normalized


class CredentialStore:
    """Encrypted credential persistence for one database session."""

    def __init__(self, db: Session, cipher: CredentialCipher, audit: Optional[AuditService] = None, settings=None):
        self.db = db
        self.cipher = cipher
        self.audit = audit
        self.settings = settings or get_settings()

    # ─── Helpers ────────────────────────────────────────────────────

    def _bank_details(self, campus_id: str) -> Optional[SchoolBankDetails]:
        return (
            self.db.query(SchoolBankDetails)
            .filter(SchoolBankDetails.campus_id == campus_id, SchoolBankDetails.is_active.is_(True))
            .order_by(SchoolBankDetails.id.desc())
            .first()
        )

    def _require_bank_details(self, campus_id: str) -> SchoolBankDetails:
        row = self._bank_details(campus_id)
        if row is None:
            raise NotConfiguredError(details={"campus_id": campus_id})
        return row

    def _audit(self, campus_id: str, event_type: str, severity: str, operation: str, started: float, **details):
        if self.audit is None:
            return
        self.audit.log(
            campus_id, event_type, "credential", severity,
            {
                "operation_performed": operation,
                "operation_result": "success",
                "execution_time_ms": elapsed_ms(started),
                **details,
            },
            compliance_tags=["PCI_DSS", "credential_security"],
        )

    def _audit_failure(self, campus_id: str, operation: str, error: Exception, started: float):
        if self.audit is not None:
            self.audit.record_failure(campus_id, "credential_access", "credential", operation, error, started)

    @staticmethod
    def _derive_status(credentials: Dict[str, dict], previous: Optional[Dict[str, dict]]) -> Dict[str, dict]:
        previous = previous or {}
        status = {}
        for gateway, fields in credentials.items():
            prior = previous.get(gateway, {})
            status[gateway] = GatewayStatus(
                enabled=bool(fields.get("enabled", False)),
                configured=True,
                last_tested=prior.get("last_tested"),
                test_status=prior.get("test_status", "untested"),
            ).model_dump()
        return status

    def _persist(self, row: SchoolBankDetails, credentials: Dict[str, dict], encryption_version: Optional[str] = None):
        envelope = self.cipher.encrypt(credentials)
        row.encrypted_payment_credentials = envelope.model_dump()
        row.gateway_status = self._derive_status(credentials, row.gateway_status)
        row.payment_gateway_credentials = None
        row.encryption_version = encryption_version or self.settings.ENCRYPTION_VERSION
        row.credential_updated_at = datetime.utcnow()
        self.db.commit()

    # ─── Store / retrieve ───────────────────────────────────────────

    def store(self, campus_id: str, credentials: Union[dict, GatewayCredentialSet]) -> Dict[str, dict]:
        """Encrypt and persist the full credential set with its status mirror.

        Raises:
            ValidationError: an entry does not match its gateway variant.
            NotConfiguredError: the campus has no bank details yet.
        """
        started = time.perf_counter()
        normalized = normalize_credentials(credentials)
        with _campus_lock(campus_id):
            row = self._require_bank_details(campus_id)
            self._persist(row, normalized)
        self._audit(campus_id, "credential_modified", "high", "store_credentials", started,
                    gateways=sorted(normalized))
        return normalized

    def retrieve(self, campus_id: str) -> Optional[Dict[str, dict]]:
        """Decrypted credential set; legacy plaintext as a fallback; else None.

        Raises:
            IntegrityError: the stored envelope does not authenticate.
        """
        started = time.perf_counter()
        with _campus_lock(campus_id):
            row = self._bank_details(campus_id)
            if row is None:
                return None

            if row.encrypted_payment_credentials:
                try:
                    credentials = self.cipher.decrypt(row.encrypted_payment_credentials)
                except CredentialError as e:
                    self._audit_failure(campus_id, "retrieve_credentials", e, started)
                    raise
                source = "encrypted"
            elif row.payment_gateway_credentials:
                logger.warning(
                    f"Campus {campus_id} is using legacy plaintext gateway credentials; "
                    f"run the credential migration"
                )
                credentials = dict(row.payment_gateway_credentials)
                source = "legacy"
            else:
                return None

        self._audit(campus_id, "credential_access", "low", "retrieve_credentials", started,
                    source=source, gateways=sorted(credentials))
        return credentials

    def get_gateway(self, campus_id: str, gateway: str) -> Optional[dict]:
        credentials = self.retrieve(campus_id)
        if not credentials:
            return None
        return credentials.get(gateway)

    def update_gateway(self, campus_id: str, gateway: str, fields: Dict[str, Any]) -> dict:
        """Merge ``fields`` into one gateway's entry; other gateways are untouched."""
        with _campus_lock(campus_id):
            current = self.retrieve(campus_id) or {}
            merged = {**current.get(gateway, {}), **fields}
            merged.pop("gateway", None)
            updated = {**current, gateway: merged}
            stored = self.store(campus_id, updated)
        return stored[gateway]

    def remove_gateway(self, campus_id: str, gateway: str) -> bool:
        """Drop one gateway's entry. The credential set itself persists."""
        with _campus_lock(campus_id):
            current = self.retrieve(campus_id) or {}
            if gateway not in current:
                return False
            remaining = {name: fields for name, fields in current.items() if name != gateway}
            self.store(campus_id, remaining)
        return True

    # ─── Status mirror ──────────────────────────────────────────────

    def get_status(self, campus_id: str) -> Dict[str, dict]:
        """Non-sensitive per-gateway status. Never reads the envelope."""
        row = self._bank_details(campus_id)
        if row is None:
            return {}
        return {gateway: dict(status) for gateway, status in (row.gateway_status or {}).items()}

    def update_status(self, campus_id: str, gateway: str, **fields) -> dict:
        with _campus_lock(campus_id):
            row = self._require_bank_details(campus_id)
            mirror = dict(row.gateway_status or {})
            entry = GatewayStatus(**{**mirror.get(gateway, {}), **fields}).model_dump()
            mirror[gateway] = entry
            row.gateway_status = mirror
            self.db.commit()
        return entry

    # ─── Migration & rotation ───────────────────────────────────────

    def migrate_legacy(self, campus_id: str) -> dict:
        """Encrypt legacy plaintext credentials and clear them. Safe to repeat."""
        started = time.perf_counter()
        with _campus_lock(campus_id):
            row = self._require_bank_details(campus_id)

            if row.encrypted_payment_credentials:
                return {"success": True, "message": "Credentials already encrypted", "migrated_gateways": []}
            if not row.payment_gateway_credentials:
                return {"success": True, "message": "No legacy credentials to migrate", "migrated_gateways": []}

            legacy = dict(row.payment_gateway_credentials)
            self._persist(row, legacy)

        migrated = sorted(legacy)
        logger.info(f"Migrated legacy credentials for campus {campus_id}: {migrated}")
        self._audit(campus_id, "credential_migrated", "medium", "migrate_legacy_credentials", started,
                    migrated_gateways=migrated)
        return {
            "success": True,
            "message": f"Migrated {len(migrated)} gateway credential set(s) to encrypted storage",
            "migrated_gateways": migrated,
        }

    def rotate_key(self, campus_id: str, old_key: KeyMaterial) -> dict:
        """Re-encrypt the campus envelope from ``old_key`` to this store's cipher.

        The old key is only ever a parameter to the pure ``rotate``.
        """
        started = time.perf_counter()
        with _campus_lock(campus_id):
            row = self._require_bank_details(campus_id)
            if not row.encrypted_payment_credentials:
                return {"success": False, "message": "No encrypted credentials to rotate"}

            try:
                envelope = rotate(row.encrypted_payment_credentials, old_key, self.cipher)
            except CredentialError as e:
                self.db.rollback()
                if self.audit is not None:
                    self.audit.record_failure(campus_id, "key_rotated", "credential", "rotate_encryption_key", e, started)
                return {"success": False, "message": f"Key rotation failed: {e}"}

            row.encrypted_payment_credentials = envelope.model_dump()
            row.encryption_version = ROTATED_ENCRYPTION_VERSION
            row.credential_updated_at = datetime.utcnow()
            self.db.commit()

        self._audit(campus_id, "key_rotated", "high", "rotate_encryption_key", started,
                    encryption_version=ROTATED_ENCRYPTION_VERSION)
        return {"success": True, "message": "Encryption key rotated successfully"}

    # ─── Display & checks ───────────────────────────────────────────

    def get_masked(self, campus_id: str) -> Dict[str, dict]:
        return mask_credentials(self.retrieve(campus_id) or {})

    def validate_security(self, campus_id: str) -> dict:
        """Inspect a campus's credential storage for weaknesses."""
        issues: List[str] = []
        recommendations: List[str] = []

        cipher_check = self.cipher.validate()
        if not cipher_check["valid"]:
            issues.append(cipher_check["message"])

        row = self._bank_details(campus_id)
        if row is None:
            issues.append("Bank details are not configured")
            recommendations.append("Set up the school's bank details")
            return {"valid": False, "issues": issues, "recommendations": recommendations}

        if row.payment_gateway_credentials:
            issues.append("Legacy plaintext gateway credentials are present")
            recommendations.append("Run the legacy credential migration")

        if not row.encrypted_payment_credentials:
            if not row.payment_gateway_credentials:
                recommendations.append("Configure at least one payment gateway")
        else:
            if row.encryption_version not in KNOWN_ENCRYPTION_VERSIONS:
                issues.append(f"Credentials use an outdated encryption version ({row.encryption_version})")
                recommendations.append("Re-encrypt credentials with the current key")
            try:
                self.cipher.decrypt(row.encrypted_payment_credentials)
            except CredentialError:
                issues.append("Stored credentials failed the integrity check")
                recommendations.append("Re-configure gateway credentials or rotate from the previous key")

            max_age = timedelta(days=self.settings.CREDENTIAL_MAX_AGE_DAYS)
            if row.credential_updated_at and datetime.utcnow() - row.credential_updated_at > max_age:
                recommendations.append(
                    f"Credentials are older than {self.settings.CREDENTIAL_MAX_AGE_DAYS} days; rotate them"
                )

        return {"valid": not issues, "issues": issues, "recommendations": recommendations}
