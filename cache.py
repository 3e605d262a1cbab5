import os
import json
import logging
import redis

# Memoización opcional de vistas; con TTL 0 (por defecto) no se toca Redis
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "0"))

redis_client = redis.from_url(REDIS_URL)


def cache_key(view: str, as_of, *params) -> str:
    parts = [str(p).lower() for p in params]
    return ":".join(["signals", view, *parts, as_of.date().isoformat()])


def remember(key: str, compute, ttl: int = None, client=None):
    """Devuelve la vista cacheada o la calcula y la guarda. Redis nunca rompe el request."""
    ttl = CACHE_TTL_SECONDS if ttl is None else ttl
    if ttl <= 0:
        return compute()

    client = client or redis_client
    try:
        cached = client.get(key)
        if cached:
            return json.loads(cached)
    except redis.RedisError as e:
        logging.warning(f"⚠️ Redis no disponible, calculando sin caché: {e}")
        return compute()

    payload = compute()
    try:
        client.set(key, json.dumps(payload), ex=ttl)
    except redis.RedisError as e:
        logging.warning(f"⚠️ No se pudo guardar {key} en caché: {e}")
    return payload
