import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(hours=24)
DEFAULT_SWEEP_INTERVAL = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    state: Any = None
    data: dict[str, Any] = field(default_factory=dict)
    last_activity: datetime = field(default_factory=_utcnow)


class SessionStore:
    """Volatile per-user conversation state. A restart drops every in-flight flow."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._sessions: dict[int | str, Session] = {}
        self._locks: dict[int | str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id) -> bool:
        return user_id in self._sessions

    def get(self, user_id: int | str) -> Session:
        session = self._sessions.get(user_id)
        if session is None:
            session = Session(last_activity=self._clock())
            self._sessions[user_id] = session
        session.last_activity = self._clock()
        return session

    def set_state(self, user_id: int | str, state: Any) -> Session:
        session = self.get(user_id)
        session.state = state
        return session

    def set_data(self, user_id: int | str, key: str, value: Any) -> Session:
        session = self.get(user_id)
        session.data[key] = value
        return session

    def update_data(self, user_id: int | str, patch: dict[str, Any]) -> Session:
        session = self.get(user_id)
        session.data.update(patch)
        return session

    def clear(self, user_id: int | str) -> Session:
        session = Session(last_activity=self._clock())
        self._sessions[user_id] = session
        return session

    def lock(self, user_id: int | str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def sweep(self, max_age: timedelta = DEFAULT_MAX_AGE) -> int:
        cutoff = self._clock() - max_age
        expired = [uid for uid, s in self._sessions.items() if s.last_activity < cutoff]
        for uid in expired:
            del self._sessions[uid]
        # Updates that never touched a session (e.g. /help) still leave a lock behind.
        for uid in list(self._locks):
            if uid not in self._sessions and not self._locks[uid].locked():
                del self._locks[uid]
        return len(expired)

    async def run_sweeper(
        self,
        interval: timedelta = DEFAULT_SWEEP_INTERVAL,
        max_age: timedelta = DEFAULT_MAX_AGE,
        sleep=asyncio.sleep,
    ) -> None:
        while True:
            await sleep(interval.total_seconds())
            try:
                removed = self.sweep(max_age)
                if removed:
                    LOGGER.info("session sweep removed %s idle sessions", removed)
            except Exception:
                LOGGER.exception("session sweep failed")
