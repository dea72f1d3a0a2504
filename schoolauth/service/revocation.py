from __future__ import annotations

import hashlib
import math
import threading
from datetime import datetime
from typing import Dict, Optional, Union

from schoolauth.logging import get_logger
from schoolauth.service.tokens import Clock, utcnow
from schoolauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def token_key(token: str) -> str:
    """Store tokens by digest so a leaked revocation list exposes no bearer values."""
    return hashlib.sha256(token.encode()).hexdigest()


class RevocationStore:
    """Denylist of tokens rejected even though their signature is valid.

    Entries live as long as the token they block is still accepted. Redis holds the
    shared list; a process-local map mirrors every revocation made by this
    process and is the only list when Redis is not configured.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.cache = cache
        self._clock = clock or utcnow
        self._local: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def _remaining_seconds(self, expires_at: datetime) -> int:
        return math.ceil((expires_at - self._clock()).total_seconds())

    def _purge_expired(self, now: datetime) -> None:
        expired = [key for key, exp in self._local.items() if exp <= now]
        for key in expired:
            del self._local[key]

    async def revoke(self, token: str, *, expires_at: datetime) -> bool:
        """Revoke ``token`` until ``expires_at``, the last instant it validates.

        Returns False without storing anything when the token has already
        expired. Revoking the same token twice is harmless.
        """
        ttl = self._remaining_seconds(expires_at)
        if ttl <= 0:
            return False
        key = token_key(token)
        with self._lock:
            self._purge_expired(self._clock())
            self._local[key] = expires_at
        if self.cache:
            try:
                await self.cache.revoke_token(key, ttl)
            except Exception as exc:
                logger.warning(
                    "revocation_cache_write_failed", token_hash=key[:12], error=str(exc)
                )
        logger.info("token_revoked", token_hash=key[:12], ttl_seconds=ttl)
        return True

    async def is_revoked(self, token: str) -> bool:
        key = token_key(token)
        now = self._clock()
        with self._lock:
            local_exp = self._local.get(key)
            if local_exp is not None:
                if local_exp > now:
                    return True
                del self._local[key]
        if self.cache:
            try:
                return await self.cache.is_token_revoked(key)
            except Exception as exc:
                # Fail closed: an unreachable denylist must not admit revoked tokens
                logger.warning(
                    "revocation_check_failed_defaulting_to_revoked",
                    token_hash=key[:12],
                    error=str(exc),
                )
                return True
        return False

    async def remove(self, token: str) -> None:
        key = token_key(token)
        with self._lock:
            self._local.pop(key, None)
        if self.cache:
            await self.cache.remove_revocation(key)

    async def clear(self) -> int:
        with self._lock:
            removed = len(self._local)
            self._local.clear()
        if self.cache:
            removed = await self.cache.clear_revocations()
        return removed
