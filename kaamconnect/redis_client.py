# Optional Redis connection shared by the change feed fan-out and the rate limiter.
# REDIS_ENABLED switches it on; every caller must cope with get_redis() returning None.
import logging
import os
from typing import Optional

_logger = logging.getLogger("kaamconnect.redis")

_TRUTHY = {"1", "true", "t", "yes", "y", "on"}


def _truthy(val: Optional[str]) -> bool:
    return val is not None and val.strip().lower() in _TRUTHY


def is_redis_enabled() -> bool:
    return _truthy(os.getenv("REDIS_ENABLED", "false"))


# Lazily created client; _attempted stays True after a failed connect so we do not retry per call
_client = None
_attempted = False


def get_redis():
    """
    Return a connected Redis client, or None when Redis is disabled or unreachable.

    The first call connects and pings. A failed attempt is remembered for the
    rest of the process, so callers degrade to local-only behavior instead of
    paying a connect timeout on every request.
    """
    global _client, _attempted
    if not is_redis_enabled():
        return None
    if _client is not None:
        return _client
    if _attempted:
        return None

    url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    _attempted = True
    try:
        import redis

        client = redis.Redis.from_url(
            url,
            socket_connect_timeout=0.25,
            retry_on_timeout=False,
            health_check_interval=30,
        )
        client.ping()
    except Exception as exc:
        _logger.warning("Redis unavailable, continuing without it: %s", exc)
        return None

    _client = client
    _logger.info("Connected to Redis at %s", url)
    return _client
