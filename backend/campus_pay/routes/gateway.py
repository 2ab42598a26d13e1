"""
Gateway Routes — Per-campus gateway credentials, testing and settlement config.
"""
from fastapi import APIRouter, Depends

from campus_pay.dependencies import get_credential_store, get_gateway_service
from campus_pay.schemas.schemas import (
    ERROR_RESPONSES, AvailableGatewaysResponse, GatewayConfigureRequest, GatewayTestResponse,
    GatewayToggleRequest, MigrationResponse, SettlementConfigRequest,
)
from campus_pay.services.credential_store import CredentialStore
from campus_pay.services.gateway_service import GatewayService
from campus_pay.utils.rate_limiter import rate_limit

router = APIRouter(prefix="/api/gateways", tags=["Gateways"], responses=ERROR_RESPONSES)


@router.get("/{campus_id}", response_model=AvailableGatewaysResponse)
def get_available_gateways(campus_id: str, service: GatewayService = Depends(get_gateway_service)):
    """Supported gateways and the campus's (non-sensitive) status per gateway."""
    return service.get_available_gateways(campus_id)


@router.post("/{campus_id}/migrate", response_model=MigrationResponse)
def migrate_legacy_credentials(campus_id: str, store: CredentialStore = Depends(get_credential_store)):
    """Encrypt any legacy plaintext credentials. Safe to call repeatedly."""
    return store.migrate_legacy(campus_id)


@router.post("/{campus_id}/{gateway}")
def configure_gateway(
    campus_id: str,
    gateway: str,
    payload: GatewayConfigureRequest,
    service: GatewayService = Depends(get_gateway_service),
    _throttle: bool = Depends(rate_limit(requests=10, window=60, scope="gateway-config")),
):
    """Store credentials for one gateway. Response is masked."""
    credentials = service.configure_gateway(campus_id, gateway, payload.credentials, payload.enabled)
    return {"success": True, "gateway": gateway, "credentials": credentials}


@router.post("/{campus_id}/{gateway}/test", response_model=GatewayTestResponse)
async def test_gateway(campus_id: str, gateway: str, service: GatewayService = Depends(get_gateway_service)):
    return await service.test_gateway(campus_id, gateway)


@router.post("/{campus_id}/{gateway}/toggle")
def toggle_gateway(
    campus_id: str,
    gateway: str,
    payload: GatewayToggleRequest,
    service: GatewayService = Depends(get_gateway_service),
):
    status = service.toggle_gateway(campus_id, gateway, payload.enabled)
    return {"success": True, "gateway": gateway, "status": status}


@router.put("/{campus_id}/{gateway}/settlement-config")
def configure_settlement(
    campus_id: str,
    gateway: str,
    payload: SettlementConfigRequest,
    service: GatewayService = Depends(get_gateway_service),
):
    """Settlement schedule, thresholds and fee structure for one gateway."""
    config = service.upsert_gateway_configuration(
        campus_id, gateway,
        gateway_settings=payload.gateway_settings,
        fee_structure=payload.fee_structure,
        status=payload.status,
        is_primary=payload.is_primary,
    )
    return {
        "success": True,
        "gateway": gateway,
        "status": config.status,
        "is_primary": config.is_primary,
        "gateway_settings": config.gateway_settings,
        "fee_structure": config.fee_structure,
    }
