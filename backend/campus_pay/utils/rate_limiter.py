"""
Simple Memory-based Rate Limiter.
In production, use Redis or a dedicated middleware like slowapi.
"""
import time
from fastapi import Request
from typing import Dict, Tuple

from campus_pay.errors import RateLimitError

# In-memory storage: {(scope, ip): (timestamp, count)}
_rate_limit_store: Dict[Tuple[str, str], Tuple[float, int]] = {}


def rate_limit(requests: int, window: int, scope: str = "default"):
    """
    Dependency for rate limiting sensitive endpoints.
    Example: Depends(rate_limit(requests=5, window=60, scope="gateway-config"))
    """
    def limiter(request: Request):
        ip = request.client.host if request.client else "unknown"
        key = (scope, ip)
        now = time.time()

        if key not in _rate_limit_store:
            _rate_limit_store[key] = (now, 1)
            return True

        last_ts, count = _rate_limit_store[key]

        # Reset window if expired
        if now - last_ts > window:
            _rate_limit_store[key] = (now, 1)
            return True

        if count >= requests:
            raise RateLimitError(details={"retry_after_seconds": int(window - (now - last_ts))})

        _rate_limit_store[key] = (last_ts, count + 1)
        return True

    return limiter


def reset_rate_limits():
    """Clear all counters (used between tests)."""
    _rate_limit_store.clear()
