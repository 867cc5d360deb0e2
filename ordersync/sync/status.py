"""Per-store sync status kept in Redis.

Contract:
- One JSON blob per store under ecomanager:sync:{store_identifier}
- Entries expire after the configured TTL (24h by default)
- If Redis is down, reads return None and writes are dropped (fail-open;
  the order table remains the source of truth for cursors)
"""

from __future__ import annotations

import json
import logging
from typing import Any

from ordersync.models import SyncStatus

logger = logging.getLogger(__name__)

_KEY_PREFIX = "ecomanager:sync"
_DEFAULT_TTL_SECONDS = 86400


def connect_redis(redis_url: str):
    """Redis client with decoded string responses."""
    import redis as redis_lib

    return redis_lib.from_url(redis_url, decode_responses=True)


class SyncStatusStore:
    def __init__(self, redis_client: Any, ttl_seconds: int = _DEFAULT_TTL_SECONDS) -> None:
        self._redis = redis_client
        self._ttl = ttl_seconds

    @staticmethod
    def key(store_identifier: str) -> str:
        return f"{_KEY_PREFIX}:{store_identifier}"

    def save(self, status: SyncStatus) -> None:
        try:
            self._redis.set(
                self.key(status.store_identifier), json.dumps(status.to_dict()), ex=self._ttl
            )
        except Exception:
            logger.warning(
                "Redis unavailable, sync status not saved for %s",
                status.store_identifier,
                exc_info=True,
            )

    def get(self, store_identifier: str) -> SyncStatus | None:
        try:
            raw = self._redis.get(self.key(store_identifier))
        except Exception:
            logger.warning("Redis unavailable, no sync status for %s", store_identifier, exc_info=True)
            return None
        if not raw:
            return None
        try:
            return SyncStatus.from_dict(json.loads(raw))
        except (TypeError, ValueError):
            logger.warning("Discarding unreadable sync status for %s", store_identifier)
            return None
