from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from admincore.config import Settings
from admincore.logging import get_logger, log_login_event
from admincore.service.errors import NotFoundError
from admincore.storage.models import AccountState, LoginEvent, LoginOutcome, User

logger = get_logger(__name__)

EventSink = Callable[[LoginEvent], None]


def _default_sink(event: LoginEvent) -> None:
    log_login_event(event, logger)


class AccountLifecycle:
    """Failed-attempt counting and lock transitions for user accounts.

    Active -> Locked when the counter reaches ``max_login_attempts``; a lock
    lapses lazily at the next authentication attempt after its expiry, which
    also resets the counter. Disabled is entered and left only through user
    administration.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sink = event_sink or _default_sink

    def now(self) -> datetime:
        return self._clock()

    def state_of(self, user: User, now: Optional[datetime] = None) -> AccountState:
        if not user.is_active:
            return AccountState.DISABLED
        if self.is_locked(user, now):
            return AccountState.LOCKED
        return AccountState.ACTIVE

    def is_locked(self, user: User, now: Optional[datetime] = None) -> bool:
        locked_until = user.account_locked_until
        return locked_until is not None and locked_until > (now or self.now())

    def clear_if_expired(self, user: User) -> User:
        if user.account_locked_until is None:
            return user
        now = self.now()
        if user.account_locked_until > now:
            return user
        updated = self.store.clear_expired_lock(user.id, now=now)
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user.id})
        logger.info("account_lock_expired", user_id=user.id)
        return updated

    def record_failure(self, user: User) -> User:
        """Atomically count a failed attempt, locking at the threshold."""
        updated = self.store.record_failed_login(
            user.id,
            now=self.now(),
            max_attempts=self.settings.max_login_attempts,
            lock_duration=self.settings.lock_duration,
        )
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user.id})
        if self.is_locked(updated):
            logger.warning(
                "account_locked",
                user_id=updated.id,
                failed_attempts=updated.failed_login_attempts,
            )
        return updated

    def record_success(self, user: User) -> User:
        updated = self.store.record_successful_login(user.id, now=self.now())
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user.id})
        return updated

    def unlock(self, user_id: str) -> User:
        updated = self.store.unlock_user(user_id)
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("account_unlocked", user_id=user_id)
        return updated

    def emit(
        self,
        email: str,
        outcome: LoginOutcome,
        *,
        user: Optional[User] = None,
        client_ip: Optional[str] = None,
    ) -> LoginEvent:
        event = LoginEvent(
            email=email,
            outcome=outcome,
            user_id=user.id if user else None,
            client_ip=client_ip,
            failed_attempts=user.failed_login_attempts if user else 0,
            occurred_at=self.now(),
        )
        self._sink(event)
        return event
