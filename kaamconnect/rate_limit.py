# Per-IP fixed-window rate limiting backed by Redis counters.
# Keys: rl:v1:ip:{ip}:{scope}. Fails open when Redis is disabled or erroring.
import logging
import os
from typing import Callable, Dict, Literal, Optional

from fastapi import HTTPException, Request, status

from .redis_client import get_redis, is_redis_enabled

logger = logging.getLogger("kaamconnect.rate_limit")

Scope = Literal["login", "signup", "write"]

# Per-window caps, overridable via RATE_LIMIT_{SCOPE}_PER_WINDOW
_DEFAULT_LIMITS: Dict[str, int] = {"login": 10, "signup": 5, "write": 30}


def _env_int(name: str, default: int) -> int:
    raw: Optional[str] = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def _client_ip(request: Request) -> str:
    # X-Forwarded-For is deliberately not parsed
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit(scope: Scope) -> Callable[[Request], None]:
    """
    Build a FastAPI dependency enforcing the `scope` limit per client IP.

    The first hit in a window sets the key's TTL (RATE_LIMIT_WINDOW_SECONDS,
    default 60); later hits share that expiry. Over the limit -> 429 with
    retry_after seconds.
    """
    window = _env_int("RATE_LIMIT_WINDOW_SECONDS", 60)
    limit = _env_int(f"RATE_LIMIT_{scope.upper()}_PER_WINDOW", _DEFAULT_LIMITS[scope])

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
            ttl = r.ttl(key) if current > limit else None
        except Exception as exc:
            logger.warning("Rate limit fail-open (scope=%s, ip=%s): %s", scope, ip, exc)
            return

        if ttl is not None:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "rate_limited",
                    "scope": scope,
                    "limit": limit,
                    "window_seconds": window,
                    "retry_after": ttl if isinstance(ttl, int) and ttl > 0 else window,
                },
            )

    return _dependency
