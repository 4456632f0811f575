# safu/utils/__init__.py
import redis.asyncio as redis

from safu.config import settings

# Shared client for request fingerprints; connects lazily on first command
redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=False, socket_connect_timeout=5, socket_timeout=5)
