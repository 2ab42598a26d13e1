"""
Notification Service — Settlement notifications to the school (simulated email/SMS).
"""
import logging
import time
from typing import Any, Dict

logger = logging.getLogger(__name__)


class SettlementNotifier:
    """Simulated dispatcher. Callers treat it as fire-and-forget."""

    channels = ("email", "sms")

    def notify(self, settlement, event: str = "completed") -> Dict[str, Any]:
        message = (
            f"Settlement {settlement.settlement_batch_id} {event}: "
            f"{settlement.currency} {settlement.net_settlement_amount} via {settlement.gateway_provider}"
        )
        sent = []
        for channel in self.channels:
            logger.info(f"[{channel.upper()}] campus {settlement.campus_id}: {message}")
            sent.append({
                "channel": channel,
                "provider": f"Mock{channel.capitalize()}Gateway",
                "sid": f"{channel[:2].upper()}{int(time.time())}",
                "status": "sent",
            })
        return {"success": True, "event": event, "deliveries": sent}
