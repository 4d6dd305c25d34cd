"""
Verrou de cron distribué (Redis SET NX EX).

Un run planifié qui chevauche le précédent est simplement ignoré.
Le TTL libère le verrou si le worker meurt en cours de run.
"""
import uuid
from typing import Any, Callable, Dict, Optional

import redis

from app.core.config import REDIS_URL, CRON_LOCK_TTL_SECONDS
from app.core.logging import get_logger

logger = get_logger(__name__)

LOCK_PREFIX = "cron_lock:"

# Suppression atomique: uniquement si on détient encore le verrou
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def get_redis():
    return redis.from_url(REDIS_URL)


def with_cron_lock(
    name: str,
    fn: Callable[[], Dict[str, Any]],
    ttl: int = CRON_LOCK_TTL_SECONDS,
    redis_conn: Optional[redis.Redis] = None,
) -> Dict[str, Any]:
    """
    Exécute fn sous verrou. Retourne {"status": "skipped"} si un autre run tient le verrou.
    """
    conn = redis_conn or get_redis()
    key = f"{LOCK_PREFIX}{name}"
    token = uuid.uuid4().hex

    if not conn.set(key, token, nx=True, ex=ttl):
        logger.info(f"Cron {name} already running, skipping", lock=key)
        return {"status": "skipped", "reason": "locked", "lock": name}

    try:
        return fn()
    finally:
        try:
            conn.eval(_RELEASE_SCRIPT, 1, key, token)
        except redis.RedisError as e:
            logger.warning(f"Failed to release cron lock {name}: {e}", error_type=type(e).__name__)
