"""
Session persistence adapters

Only the session id, bearer token, expiry and election id are ever
persisted. Stores are tab-scoped and cleared on logout, on an
unauthorized response and on expiry.
"""

import json
import logging
import math
from typing import Dict, Optional, Protocol

import redis

from evote_client.config import Settings, get_settings
from evote_client.utils.timestamps import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

SessionRecord = Dict[str, str]


class SessionStore(Protocol):
    def get(self) -> Optional[SessionRecord]:
        ...

    def set(self, record: SessionRecord) -> None:
        ...

    def clear(self) -> None:
        ...


class MemorySessionStore:
    """Process-local store; survives nothing but the flow object itself"""

    def __init__(self):
        self._record: Optional[SessionRecord] = None

    def get(self) -> Optional[SessionRecord]:
        return dict(self._record) if self._record is not None else None

    def set(self, record: SessionRecord) -> None:
        self._record = dict(record)

    def clear(self) -> None:
        self._record = None


class RedisSessionStore:
    """
    Redis-backed store keyed per terminal tab

    The key expires together with the session so a stale bearer token
    is never handed back after a reload.
    """

    def __init__(
        self,
        tab_id: str,
        redis_client: Optional[redis.Redis] = None,
        settings: Optional[Settings] = None
    ):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        settings = settings or get_settings()
        if redis_client is None:
            if not settings.REDIS_URL:
                raise ValueError("REDIS_URL is not configured")
            redis_client = redis.Redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True
            )
        self.redis_client = redis_client
        self.key = f"{settings.SESSION_KEY_PREFIX}:{tab_id}"

    def get(self) -> Optional[SessionRecord]:
        raw = self.redis_client.get(self.key)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            record = json.loads(raw)
        except json.JSONDecodeError:
            self.logger.error(f"Discarding unreadable session record at {self.key}")
            self.clear()
            return None
        return record

    def set(self, record: SessionRecord) -> None:
        expires_at = parse_timestamp(record["expiresAt"])
        ttl = math.ceil((expires_at - utc_now()).total_seconds())
        if ttl <= 0:
            self.logger.warning("Refusing to persist an already expired session")
            self.clear()
            return
        self.redis_client.set(self.key, json.dumps(record), ex=ttl)
        self.logger.info(f"Session persisted at {self.key} for {ttl}s")

    def clear(self) -> None:
        self.redis_client.delete(self.key)
        self.logger.info(f"Session cleared at {self.key}")
