"""
Settlement Routes — Settlement runs, gateway webhooks and batch listings.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from campus_pay.dependencies import get_settlement_service, get_webhook_service
from campus_pay.schemas.schemas import ERROR_RESPONSES, SettlementProcessRequest, SettlementResponse, WebhookResponse
from campus_pay.services.settlement_service import SettlementService
from campus_pay.services.webhook_service import SettlementWebhookService

router = APIRouter(prefix="/api/settlements", tags=["Settlements"], responses=ERROR_RESPONSES)

# Header each gateway sends its webhook signature in
SIGNATURE_HEADERS = {
    "razorpay": "x-razorpay-signature",
    "payu": "x-payu-signature",
    "cashfree": "x-webhook-signature",
}


@router.post("/webhook/{gateway}", response_model=WebhookResponse)
async def settlement_webhook(
    gateway: str,
    request: Request,
    service: SettlementWebhookService = Depends(get_webhook_service),
):
    """Gateway callback. The raw body is verified before anything is parsed into state."""
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADERS.get(gateway, "x-signature"))
    context = {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }
    result = service.handle_settlement_webhook(gateway, body, signature, context)
    if not result["success"]:
        return JSONResponse(status_code=400, content={"success": False, "settlement": None})
    settlement = result["settlement"]
    return {"success": True, "settlement": SettlementResponse.model_validate(settlement) if settlement else None}


@router.post("/{campus_id}/{gateway}/process", response_model=SettlementResponse)
async def process_settlement(
    campus_id: str,
    gateway: str,
    payload: Optional[SettlementProcessRequest] = None,
    service: SettlementService = Depends(get_settlement_service),
):
    """Run an automatic settlement for one campus and gateway."""
    settlement_date = payload.settlement_date if payload else None
    return await service.process_automatic_settlement(campus_id, gateway, settlement_date)


@router.get("/{campus_id}", response_model=List[SettlementResponse])
def list_settlements(
    campus_id: str,
    status: Optional[str] = None,
    limit: int = 50,
    service: SettlementService = Depends(get_settlement_service),
):
    return service.list_settlements(campus_id, status=status, limit=min(limit, 200))
