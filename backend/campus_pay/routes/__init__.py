from campus_pay.routes.gateway import router as gateway_router
from campus_pay.routes.settlement import router as settlement_router
from campus_pay.routes.payment import router as payment_router
from campus_pay.routes.admin import router as admin_router

__all__ = ["gateway_router", "settlement_router", "payment_router", "admin_router"]
