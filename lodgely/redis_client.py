# Redis client helper: opt-in, fail-open access to a shared Redis connection.
# Used by the change-feed bridge (cross-process fan-out) and the per-property accept lock.
import logging
import os
from typing import Optional

_logger = logging.getLogger("lodgely.redis")


# Basic truthy parser for env flags (1, true, yes, on)
def _truthy(val: Optional[str]) -> bool:
    if val is None:
        return False
    return val.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def is_redis_enabled() -> bool:
    return _truthy(os.getenv("REDIS_ENABLED", "false"))


# Cached client and a one-shot initialization guard.
# Once initialization has been attempted and failed, the process stays fail-open.
_client = None
_initialized = False


def get_redis():
    """
    Return a Redis client if enabled and reachable; otherwise return None.

    Never raises: callers treat None as "run without cross-process coordination".
    """
    global _client, _initialized
    if not is_redis_enabled():
        return None
    if _client is not None:
        return _client
    if _initialized:
        return None

    url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    try:
        import redis

        client = redis.Redis.from_url(
            url,
            socket_timeout=0.25,
            socket_connect_timeout=0.25,
            retry_on_timeout=False,
            health_check_interval=0,
        )
        client.ping()
        _client = client
        _logger.info("Connected to Redis at %s", url)
        return _client
    except Exception as exc:
        _logger.warning("Redis unavailable (fail-open): %s", exc)
        _client = None
        return None
    finally:
        _initialized = True


def reset_redis() -> None:
    """Forget the cached client so the next get_redis() reconnects (tests, forked workers)."""
    global _client, _initialized
    _client = None
    _initialized = False
