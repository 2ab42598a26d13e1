"""
Gateway Clients — Razorpay, PayU and Cashfree behind one interface.

Remote calls (orders, settlements, connection tests) are simulated; signature
and hash verification is real. Credentials are passed in per call, already
decrypted, and are never stored on the client.
"""
import asyncio
import hashlib
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from campus_pay.utils.hashing import hmac_b64, hmac_hex, signatures_match
from campus_pay.utils.validators import validate_razorpay_key_id

logger = logging.getLogger(__name__)


class GatewayClient:
    """Base gateway client. Subclasses set ``name`` and ``required_fields``."""

    name: str = ""
    required_fields: tuple = ()

    def __init__(self, latency: float = 0.0):
        self.latency = latency

    def validate_credentials(self, credentials: Optional[dict]) -> List[str]:
        """Problems with a credential entry; empty when usable."""
        credentials = credentials or {}
        return [f"{name} is required" for name in self.required_fields if not credentials.get(name)]

    def webhook_secret(self, credentials: dict) -> Optional[str]:
        raise NotImplementedError

    def sign_webhook(self, credentials: dict, payload: bytes) -> str:
        raise NotImplementedError

    def verify_webhook_signature(self, credentials: dict, payload: bytes, signature: Optional[str]) -> bool:
        if not self.webhook_secret(credentials):
            return False
        return signatures_match(self.sign_webhook(credentials, payload), signature)

    def verify_payment(self, credentials: dict, proof: dict) -> bool:
        raise NotImplementedError

    async def _simulate_call(self):
        await asyncio.sleep(self.latency)

    async def create_order(self, credentials: dict, request: dict) -> dict:
        await self._simulate_call()
        return {
            "gateway": self.name,
            "order_id": f"order_{uuid.uuid4().hex[:14]}",
            "amount": str(request["amount"]),
            "currency": request.get("currency", "INR"),
            "receipt": request.get("receipt"),
            "status": "created",
        }

    async def initiate_settlement(self, credentials: dict, settlement: dict) -> dict:
        await self._simulate_call()
        logger.info(f"{self.name}: settlement {settlement.get('settlement_batch_id')} submitted")
        return {
            "settlement_id": f"setl_{uuid.uuid4().hex[:14]}",
            "reference": f"UTR{datetime.utcnow().strftime('%Y%m%d')}{uuid.uuid4().hex[:8].upper()}",
            "status": "processing",
        }

    async def test_connection(self, credentials: dict) -> dict:
        await self._simulate_call()
        problems = self.validate_credentials(credentials)
        if problems:
            return {"success": False, "message": "; ".join(problems)}
        return {"success": True, "message": f"{self.name} credentials verified ({credentials.get('mode', 'test')} mode)"}


class RazorpayClient(GatewayClient):
    name = "razorpay"
    required_fields = ("key_id", "key_secret")

    def validate_credentials(self, credentials: Optional[dict]) -> List[str]:
        problems = super().validate_credentials(credentials)
        key_id = (credentials or {}).get("key_id")
        if key_id and not validate_razorpay_key_id(key_id):
            problems.append("key_id must look like rzp_test_... or rzp_live_...")
        return problems

    def webhook_secret(self, credentials: dict) -> Optional[str]:
        return credentials.get("webhook_secret") or credentials.get("key_secret")

    def sign_webhook(self, credentials: dict, payload: bytes) -> str:
        return hmac_hex(self.webhook_secret(credentials), payload)

    def verify_payment(self, credentials: dict, proof: dict) -> bool:
        # signature = HMAC-SHA256(key_secret, "order_id|payment_id")
        message = f"{proof.get('order_id')}|{proof.get('payment_id')}".encode("utf-8")
        return signatures_match(hmac_hex(credentials["key_secret"], message), proof.get("signature"))


class PayUClient(GatewayClient):
    name = "payu"
    required_fields = ("merchant_key", "merchant_salt")

    def webhook_secret(self, credentials: dict) -> Optional[str]:
        return credentials.get("merchant_salt")

    def sign_webhook(self, credentials: dict, payload: bytes) -> str:
        return hmac_hex(self.webhook_secret(credentials), payload, hashlib.sha512)

    def verify_payment(self, credentials: dict, proof: dict) -> bool:
        # Reverse hash: sha512(salt|status|txnid|amount|key)
        sequence = "|".join([
            credentials["merchant_salt"],
            str(proof.get("status", "")),
            str(proof.get("order_id", "")),
            str(proof.get("amount", "")),
            credentials["merchant_key"],
        ])
        expected = hashlib.sha512(sequence.encode("utf-8")).hexdigest()
        return signatures_match(expected, proof.get("signature"))


class CashfreeClient(GatewayClient):
    name = "cashfree"
    required_fields = ("app_id", "secret_key")

    def webhook_secret(self, credentials: dict) -> Optional[str]:
        return credentials.get("secret_key")

    def sign_webhook(self, credentials: dict, payload: bytes) -> str:
        return hmac_b64(self.webhook_secret(credentials), payload)

    def verify_payment(self, credentials: dict, proof: dict) -> bool:
        message = "".join([
            str(proof.get("order_id", "")),
            str(proof.get("amount", "")),
            str(proof.get("payment_id", "")),
            str(proof.get("status", "")),
        ]).encode("utf-8")
        return signatures_match(hmac_b64(credentials["secret_key"], message), proof.get("signature"))


def default_gateways() -> Dict[str, GatewayClient]:
    return {client.name: client for client in (RazorpayClient(), PayUClient(), CashfreeClient())}
