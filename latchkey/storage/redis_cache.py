from __future__ import annotations

import hashlib
import json
from typing import Optional

from redis import Redis

from latchkey.logging import get_logger
from latchkey.service.credential_store import CachedIdentity

logger = get_logger(__name__)


class RedisCredentialStore:
    """Credential cache shared between worker processes through Redis.

    Cookie values are never written to Redis; keys carry their SHA-256 digest.
    Each user has an index set of their keys so a theft response or logout
    can evict every cached cookie for that user.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    KEY_PREFIX = "latchkey:cred:"
    USER_INDEX_PREFIX = "latchkey:cred_user:"

    def __init__(
        self,
        redis_url: str,
        *,
        ttl_seconds: int,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @classmethod
    def _key(cls, cookie_value: str) -> str:
        digest = hashlib.sha256(cookie_value.encode("utf-8")).hexdigest()
        return f"{cls.KEY_PREFIX}{digest}"

    @classmethod
    def _user_index_key(cls, user_id: str) -> str:
        return f"{cls.USER_INDEX_PREFIX}{user_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def put(self, cookie_value: str, identity: CachedIdentity) -> None:
        key = self._key(cookie_value)
        index_key = self._user_index_key(identity.user_id)
        pipe = self.client.pipeline()
        pipe.set(key, json.dumps(identity.to_dict()), ex=self.ttl_seconds)
        pipe.sadd(index_key, key)
        pipe.expire(index_key, self.ttl_seconds)
        pipe.execute()

    def get(self, cookie_value: str) -> Optional[CachedIdentity]:
        key = self._key(cookie_value)
        raw = self.client.get(key)
        if not raw:
            return None
        try:
            return CachedIdentity.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("credential_store_entry_invalid", error=str(exc))
            self.client.delete(key)
            return None

    def delete(self, cookie_value: str) -> None:
        self.client.delete(self._key(cookie_value))

    def evict_user(self, user_id: str) -> int:
        index_key = self._user_index_key(user_id)
        keys = self.client.smembers(index_key)
        if not keys:
            return 0
        pipe = self.client.pipeline()
        for key in keys:
            pipe.delete(key)
        pipe.delete(index_key)
        results = pipe.execute()
        # Last result belongs to the index set itself
        return sum(int(bool(deleted)) for deleted in results[:-1])

    def clear(self) -> None:
        for prefix in (self.KEY_PREFIX, self.USER_INDEX_PREFIX):
            keys = list(self.client.scan_iter(match=f"{prefix}*"))
            if keys:
                self.client.delete(*keys)

    def close(self) -> None:
        self.client.close()


__all__ = ["RedisCredentialStore"]
