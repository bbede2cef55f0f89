import logging
from datetime import datetime, timezone
import redis
from . import config

__all__ = [
    'logger',
    'get_redis_client',
    'truncate',
    'utcnow',
]


def logger() -> logging.Logger:
    return logging.getLogger('sandbox')


def get_redis_client() -> redis.Redis:
    return redis.Redis.from_url(config.get_redis_url())


def utcnow() -> datetime:
    # naive UTC, the database columns carry no timezone
    return datetime.now(timezone.utc).replace(tzinfo=None)


def truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    marker = '\n...(truncated)'
    if limit <= len(marker):
        return text[:limit]
    return text[:limit - len(marker)] + marker
