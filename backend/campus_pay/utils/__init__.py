from campus_pay.utils.hashing import generate_hash, generate_chain_hash, hmac_hex, hmac_b64, signatures_match
from campus_pay.utils.validators import validate_razorpay_key_id, validate_amount

__all__ = [
    "generate_hash", "generate_chain_hash", "hmac_hex", "hmac_b64", "signatures_match",
    "validate_razorpay_key_id", "validate_amount",
]
