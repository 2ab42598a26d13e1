"""
Gateway Service — Configure, test, toggle and list a campus's payment gateways,
and maintain their settlement configuration.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session

from campus_pay.config import get_settings
from campus_pay.errors import BusinessRuleError, ValidationError
from campus_pay.models.settlement import PaymentGatewayConfiguration
from campus_pay.schemas.schemas import SUPPORTED_GATEWAYS, FeeStructure, GatewaySettings, parse_gateway_credentials
from campus_pay.services.audit_service import AuditService, elapsed_ms
from campus_pay.services.credential_cipher import mask_credentials
from campus_pay.services.credential_store import CredentialStore
from campus_pay.services.gateway_clients import GatewayClient, default_gateways

logger = logging.getLogger(__name__)


class GatewayService:

    def __init__(
        self,
        db: Session,
        credential_store: CredentialStore,
        audit: AuditService,
        gateways: Optional[Dict[str, GatewayClient]] = None,
        settings=None,
    ):
        self.db = db
        self.credential_store = credential_store
        self.audit = audit
        self.gateways = gateways if gateways is not None else default_gateways()
        self.settings = settings or get_settings()

    def _client(self, gateway: str) -> GatewayClient:
        if gateway not in SUPPORTED_GATEWAYS or gateway not in self.gateways:
            raise ValidationError("VAL_002", details={"gateway": gateway, "supported": list(SUPPORTED_GATEWAYS)})
        return self.gateways[gateway]

    def _audit(self, campus_id: str, event_type: str, severity: str, operation: str, started: float, **details):
        self.audit.log(
            campus_id, event_type, "configuration", severity,
            {
                "operation_performed": operation,
                "operation_result": details.pop("result", "success"),
                "execution_time_ms": elapsed_ms(started),
                **details,
            },
        )

    def configure_gateway(
        self,
        campus_id: str,
        gateway: str,
        credentials: Dict[str, Any],
        enabled: bool = True,
    ) -> Dict[str, dict]:
        """Validate and store one gateway's credentials.

        All validation happens before anything is written.

        Returns:
            The campus's full credential set, masked.

        Raises:
            ValidationError: unsupported gateway, missing fields (VAL_001) or
                badly formatted fields (VAL_002).
            NotConfiguredError: no bank details for the campus.
        """
        started = time.perf_counter()
        client = self._client(gateway)

        try:
            entry = parse_gateway_credentials(gateway, {**credentials, "enabled": enabled})
        except SchemaValidationError as e:
            raise ValidationError("VAL_001", details={
                "gateway": gateway,
                "missing_or_invalid": [".".join(str(p) for p in err["loc"]) for err in e.errors()],
            }) from e

        fields = entry.model_dump(exclude_none=True)
        problems = client.validate_credentials(fields)
        if problems:
            raise ValidationError("VAL_002", details={"gateway": gateway, "problems": problems})

        current = self.credential_store.retrieve(campus_id) or {}
        stored = self.credential_store.store(campus_id, {**current, gateway: fields})
        self.credential_store.update_status(
            campus_id, gateway, enabled=enabled, configured=True, last_tested=None, test_status="untested",
        )

        logger.info(f"Configured {gateway} for campus {campus_id} (enabled={enabled}, mode={entry.mode})")
        self._audit(campus_id, "gateway_configured", "high", "configure_gateway", started,
                    gateway=gateway, enabled=enabled, mode=entry.mode)
        return mask_credentials(stored)

    async def test_gateway(self, campus_id: str, gateway: str) -> dict:
        """Check a gateway's credentials against the provider and record the result."""
        started = time.perf_counter()
        client = self._client(gateway)
        credentials = self.credential_store.get_gateway(campus_id, gateway)
        if not credentials:
            return {"success": False, "message": f"{gateway} is not configured"}

        timeout = self.settings.GATEWAY_TIMEOUT_SECONDS
        try:
            result = await asyncio.wait_for(client.test_connection(credentials), timeout=timeout)
        except asyncio.TimeoutError:
            result = {"success": False, "message": f"{gateway} did not respond within {timeout}s"}

        tested_at = datetime.utcnow().isoformat()
        self.credential_store.update_status(
            campus_id, gateway,
            last_tested=tested_at,
            test_status="success" if result["success"] else "failed",
        )

        config = self._configuration(campus_id, gateway)
        if config is not None:
            config.testing_details = {
                "last_tested": tested_at,
                "test_status": "success" if result["success"] else "failed",
                "message": result["message"],
            }
            self.db.commit()

        self._audit(campus_id, "gateway_tested", "medium", "test_gateway", started,
                    gateway=gateway, result="success" if result["success"] else "failure",
                    message=result["message"])
        return {"success": result["success"], "message": result["message"]}

    def toggle_gateway(self, campus_id: str, gateway: str, enabled: bool) -> dict:
        """Enable or disable a configured gateway. Enabling needs a passing test."""
        started = time.perf_counter()
        self._client(gateway)

        status = self.credential_store.get_status(campus_id).get(gateway)
        if not status or not status.get("configured"):
            raise BusinessRuleError("BIZ_005", details={"gateway": gateway, "reason": "gateway not configured"})
        if enabled and status.get("test_status") != "success":
            raise BusinessRuleError("BIZ_009", details={"gateway": gateway, "test_status": status.get("test_status")})

        self.credential_store.update_gateway(campus_id, gateway, {"enabled": enabled})
        entry = self.credential_store.update_status(campus_id, gateway, enabled=enabled)

        self._audit(campus_id, "gateway_toggled", "medium", "toggle_gateway", started,
                    gateway=gateway, enabled=enabled)
        return entry

    def get_available_gateways(self, campus_id: str) -> dict:
        """Supported gateways plus the campus's status mirror. Never decrypts."""
        status = self.credential_store.get_status(campus_id)
        return {
            "available": list(SUPPORTED_GATEWAYS),
            "enabled": [name for name in SUPPORTED_GATEWAYS if status.get(name, {}).get("enabled")],
            "configurations": mask_credentials(status),
        }

    def _configuration(self, campus_id: str, gateway: str) -> Optional[PaymentGatewayConfiguration]:
        return (
            self.db.query(PaymentGatewayConfiguration)
            .filter(
                PaymentGatewayConfiguration.campus_id == campus_id,
                PaymentGatewayConfiguration.gateway_provider == gateway,
            )
            .first()
        )

    def upsert_gateway_configuration(
        self,
        campus_id: str,
        gateway: str,
        gateway_settings: Union[GatewaySettings, dict, None] = None,
        fee_structure: Union[FeeStructure, dict, None] = None,
        status: str = "active",
        is_primary: bool = False,
    ) -> PaymentGatewayConfiguration:
        """Create or replace the settlement configuration for one gateway."""
        started = time.perf_counter()
        self._client(gateway)

        try:
            settings_model = gateway_settings if isinstance(gateway_settings, GatewaySettings) \
                else GatewaySettings(**(gateway_settings or {}))
            fees_model = fee_structure if isinstance(fee_structure, FeeStructure) \
                else FeeStructure(**(fee_structure or {}))
        except SchemaValidationError as e:
            raise ValidationError("VAL_002", details={"errors": [err["msg"] for err in e.errors()]}) from e

        config = self._configuration(campus_id, gateway)
        if config is None:
            config = PaymentGatewayConfiguration(campus_id=campus_id, gateway_provider=gateway)
            self.db.add(config)

        config.status = status
        config.is_primary = is_primary
        config.gateway_settings = settings_model.model_dump(mode="json")
        config.fee_structure = fees_model.model_dump(mode="json")
        config.configuration_details = {
            **(config.configuration_details or {}),
            "last_modified": datetime.utcnow().isoformat(),
        }

        if is_primary:
            (
                self.db.query(PaymentGatewayConfiguration)
                .filter(
                    PaymentGatewayConfiguration.campus_id == campus_id,
                    PaymentGatewayConfiguration.gateway_provider != gateway,
                )
                .update({"is_primary": False}, synchronize_session=False)
            )
        self.db.commit()
        self.db.refresh(config)

        self._audit(campus_id, "settlement_configured", "medium", "upsert_gateway_configuration", started,
                    gateway=gateway, status=status, is_primary=is_primary)
        return config
