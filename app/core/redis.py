from __future__ import annotations
import logging
import time
import redis.asyncio as redis
from .config import get_settings

logger = logging.getLogger(__name__)

_settings = get_settings()
_r: redis.Redis | None = None

def get_redis() -> redis.Redis:
    global _r
    if _r is None:
        _r = redis.from_url(_settings.redis_url, decode_responses=True)
    return _r

async def ping_redis() -> bool:
    try:
        r = get_redis()
        pong = await r.ping()
        return bool(pong)
    except Exception:
        logger.warning("redis unreachable at %s", _settings.redis_url)
        return False

# ---- Consumed-nonce store for QR tokens ----
async def consume_nonce(nonce: str, ttl_seconds: int) -> bool:
    """
    Return True if we successfully mark this nonce as used (first scan),
    return False if it's already present (replay).
    """
    r = get_redis()
    # SET if Not eXists with EXpire; the key outlives the token it guards
    ok = await r.set(f"qr:nonce:{nonce}", "1", ex=max(int(ttl_seconds), 1), nx=True)
    return bool(ok)

async def release_nonce(nonce: str) -> None:
    """Undo `consume_nonce` when the scan it guarded was not written."""
    await get_redis().delete(f"qr:nonce:{nonce}")

# ---- Fixed-window rate limit per IP and scan purpose ----
async def allow_request(ip: str, route_key: str) -> bool:
    if not _settings.rl_enabled:
        return True
    window = _settings.rl_window_seconds
    bucket = int(time.time()) // window
    key = f"rl:{route_key}:{ip}:{bucket}"
    pipe = get_redis().pipeline()
    pipe.incr(key)
    pipe.expire(key, window * 2)
    count, _ = await pipe.execute()
    if int(count) > _settings.rl_max_reqs:
        logger.info("rate limit hit for %s on %s", ip, route_key)
        return False
    return True
