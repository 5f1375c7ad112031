# Redis-backed fixed-window rate limiter for write endpoints.
# - Per-IP counters keyed rl:v1:ip:{ip}:{scope} with a TTL-based window.
# - Fail-open if Redis is unavailable, so the API remains usable in dev or outages.
import logging
import os
from typing import Callable, Literal, Optional

from fastapi import HTTPException, Request, status

from .redis_client import get_redis, is_redis_enabled

logger = logging.getLogger("lodgely.rate_limit")

Scope = Literal["write", "message"]


def _to_int(val: Optional[str], default: int) -> int:
    try:
        return int(val) if val is not None else default
    except ValueError:
        return default


def _window_seconds() -> int:
    return _to_int(os.getenv("RATE_LIMIT_WINDOW_SECONDS"), 60)


# Per-scope cap per window:
# - RATE_LIMIT_WRITE_PER_WINDOW   (default 30)
# - RATE_LIMIT_MESSAGE_PER_WINDOW (default 60)
def _limit_for_scope(scope: Scope) -> int:
    if scope == "message":
        return _to_int(os.getenv("RATE_LIMIT_MESSAGE_PER_WINDOW"), 60)
    return _to_int(os.getenv("RATE_LIMIT_WRITE_PER_WINDOW"), 30)


def _client_ip(request: Request) -> str:
    # Remote address only; X-Forwarded-For is not trusted here
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit(scope: Scope) -> Callable[[Request], None]:
    """
    FastAPI dependency enforcing a fixed-window cap per client IP and scope.

    Responds 429 with {"error": "rate_limited", "retry_after": seconds} when the
    cap is exceeded. Redis disabled or failing means no limiting.
    """
    window = _window_seconds()
    limit = _limit_for_scope(scope)

    def _dependency(request: Request) -> None:
        if not is_redis_enabled():
            return

        r = get_redis()
        if r is None:
            return

        ip = _client_ip(request)
        key = f"rl:v1:ip:{ip}:{scope}"
        try:
            current = r.incr(key, amount=1)
            if current == 1:
                r.expire(key, window)
            if current > limit:
                ttl = r.ttl(key)
                retry_after = ttl if isinstance(ttl, int) and ttl > 0 else window
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail={"error": "rate_limited", "scope": scope, "limit": limit, "retry_after": retry_after},
                )
        except HTTPException:
            raise
        except Exception as exc:
            logger.warning("Rate limit fail-open (scope=%s, ip=%s): %s", scope, ip, exc)

    return _dependency
