"""
Cryptographic Hashing Utilities — SHA-256 payload hashing and HMAC signatures.
"""
import base64
import hashlib
import hmac
import json


def canonical_json(data) -> bytes:
    """Deterministic JSON encoding: sorted keys, compact separators, str() fallback."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def generate_hash(data: dict) -> str:
    """Generate a SHA-256 hash of a dictionary (deterministic, sorted keys)."""
    return hashlib.sha256(canonical_json(data)).hexdigest()


def generate_chain_hash(current_data: dict, previous_hash: str = "") -> str:
    """Generate a chain hash: SHA-256(previous_hash + current_payload).
    Creates a tamper-evident linked chain for the audit trail.
    """
    current_hash = generate_hash(current_data)
    chain_input = f"{previous_hash}{current_hash}".encode("utf-8")
    return hashlib.sha256(chain_input).hexdigest()


def hmac_hex(secret: str, message: bytes, digestmod=hashlib.sha256) -> str:
    """Hex HMAC of ``message`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), message, digestmod).hexdigest()


def hmac_b64(secret: str, message: bytes, digestmod=hashlib.sha256) -> str:
    """Base64 HMAC of ``message`` keyed with ``secret``."""
    digest = hmac.new(secret.encode("utf-8"), message, digestmod).digest()
    return base64.b64encode(digest).decode("ascii")


def signatures_match(expected: str, received: str | None) -> bool:
    """Constant-time signature comparison."""
    if not received:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.strip().encode("utf-8"))
