import logging
import time

import redis.asyncio as redis

from config import REDIS_URL

# ---------------------------------------------------------
# LOGGING
# ---------------------------------------------------------
logger = logging.getLogger("api.redis")

_redis_client = None


# ---------------------------------------------------------
# REDIS INIT
# ---------------------------------------------------------
def get_redis_client(url: str = REDIS_URL):
    global _redis_client
    if _redis_client is None:
        logger.info("[REDIS] Initializing Redis client")
        _redis_client = redis.from_url(url, decode_responses=True)
    return _redis_client


# ---------------------------------------------------------
# CONNECTION DIAGNOSTICS
# ---------------------------------------------------------
async def ping_redis(client) -> dict:
    t0 = time.time()
    try:
        pong = await client.ping()
    except redis.RedisError as e:
        logger.error(f"[REDIS] ping failed: {e}")
        return {"ok": False, "error": str(e)}
    ms = int((time.time() - t0) * 1000)
    return {"ok": bool(pong), "latency_ms": ms}
