"""Failed-login counting and timed account locks.

Per identity the policy moves between ``Unlocked(attempts)`` and
``Locked(until)``:

* a failed check increments the counter; reaching ``max_attempts`` locks the
  account until ``now + lockout_duration``
* a successful check resets the counter to zero
* a lock whose ``until`` has passed is cleared lazily by the next attempt,
  which then proceeds as ``Unlocked(0)``
* while ``now < until`` every attempt fails without a credential check
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from schoolauth.config import Settings
from schoolauth.logging import get_logger
from schoolauth.service.errors import AccountLocked
from schoolauth.service.tokens import Clock, utcnow
from schoolauth.storage.models import Identity

logger = get_logger(__name__)


class LockoutStore(Protocol):
    def increment_failed_attempts(self, identity_id: str) -> int: ...

    def reset_failed_attempts(self, identity_id: str) -> None: ...

    def lock_until(self, identity_id: str, until: datetime) -> None: ...

    def unlock(
        self, identity_id: str, *, expired_before: Optional[datetime] = None
    ) -> bool: ...


@dataclass(frozen=True)
class FailureOutcome:
    attempts: int
    locked_until: Optional[datetime] = None

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


class LockoutPolicy:
    def __init__(
        self,
        store: LockoutStore,
        *,
        max_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=30),
        clock: Optional[Clock] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration
        self._clock = clock or utcnow

    @classmethod
    def from_settings(
        cls, store: LockoutStore, settings: Settings, *, clock: Optional[Clock] = None
    ) -> "LockoutPolicy":
        return cls(
            store,
            max_attempts=settings.max_login_attempts,
            lockout_duration=timedelta(minutes=settings.lockout_duration_minutes),
            clock=clock,
        )

    @property
    def lockout_minutes(self) -> int:
        return int(self.lockout_duration.total_seconds() // 60)

    def check(self, identity: Identity) -> Identity:
        """Gate an attempt on ``identity``.

        Raises AccountLocked inside the lock window. An expired lock is
        cleared and the returned identity reflects ``Unlocked(0)``.
        """
        if identity.locked_until is None:
            return identity
        now = self._clock()
        if identity.is_locked(now):
            logger.info(
                "login_blocked_account_locked",
                identity_id=identity.id,
                locked_until=identity.locked_until.isoformat(),
            )
            raise AccountLocked(
                "account is locked; try again later",
                detail={"locked_until": identity.locked_until.isoformat()},
            )
        self.store.unlock(identity.id, expired_before=now)
        logger.info("account_lock_expired", identity_id=identity.id)
        identity.locked_until = None
        identity.failed_attempts = 0
        return identity

    def record_failure(self, identity: Identity) -> FailureOutcome:
        attempts = self.store.increment_failed_attempts(identity.id)
        identity.failed_attempts = attempts
        if attempts < self.max_attempts:
            logger.warning(
                "login_failed", identity_id=identity.id, attempts=attempts
            )
            return FailureOutcome(attempts=attempts)
        until = self._clock() + self.lockout_duration
        self.store.lock_until(identity.id, until)
        identity.locked_until = until
        logger.warning(
            "account_locked",
            identity_id=identity.id,
            attempts=attempts,
            locked_until=until.isoformat(),
        )
        return FailureOutcome(attempts=attempts, locked_until=until)

    def record_success(self, identity: Identity) -> None:
        self.store.reset_failed_attempts(identity.id)
        identity.failed_attempts = 0
