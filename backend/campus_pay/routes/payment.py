"""
Payment Routes — Fee payment orders and verification.
"""
from fastapi import APIRouter, Depends

from campus_pay.dependencies import get_payment_service
from campus_pay.schemas.schemas import ERROR_RESPONSES, OrderCreateRequest, PaymentVerifyRequest, TransactionResponse
from campus_pay.services.payment_service import PaymentService
from campus_pay.utils.rate_limiter import rate_limit

router = APIRouter(prefix="/api/payments", tags=["Payments"], responses=ERROR_RESPONSES)


@router.post("/{campus_id}/orders")
async def create_order(
    campus_id: str,
    payload: OrderCreateRequest,
    service: PaymentService = Depends(get_payment_service),
    _throttle: bool = Depends(rate_limit(requests=20, window=60, scope="payment-order")),
):
    """Open a gateway order for one fee payment."""
    order = await service.create_order(
        campus_id, payload.fee_id, payload.student_id, payload.gateway, payload.amount, payload.currency,
    )
    return {"success": True, "order": order}


@router.post("/{transaction_id}/verify", response_model=TransactionResponse)
def verify_payment(
    transaction_id: str,
    payload: PaymentVerifyRequest,
    service: PaymentService = Depends(get_payment_service),
):
    """Verify a payment proof. Repeating it on a settled payment changes nothing."""
    proof = payload.model_dump(exclude_none=True, exclude={"via_webhook"})
    return service.verify_payment(transaction_id, proof, via_webhook=payload.via_webhook)
