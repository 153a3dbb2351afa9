"""clubhouse_sync.session_pool

Session Pool: owns the requests.Session objects used by the Source Fetcher.

Sessions are created lazily, reused across runs, and capped at
max_sessions.  A run leases one session and shares it between its fetch
threads.  A broken session is replaced in place with PooledSession.recreate().
Closing a session only drops its idle connections; a request already
reading a response runs until its own timeout, so callers that cancel
fetches still wait for the ones in flight.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator

import requests

from clubhouse_sync.config import DEFAULT_USER_AGENT
from clubhouse_sync.shared import SessionPoolClosed, SessionUnavailable

log = logging.getLogger(__name__)


def make_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    session = requests.Session()
    session.headers.update({
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,text/csv;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
    })
    return session


class PooledSession:
    """A leasable wrapper whose underlying session can be swapped."""

    def __init__(self, session_id: int, factory: Callable[[], requests.Session]) -> None:
        self.session_id = session_id
        self._factory = factory
        self._lock = threading.Lock()
        self._session = factory()
        self.generation = 1

    @property
    def session(self) -> requests.Session:
        with self._lock:
            return self._session

    def recreate(self) -> None:
        """Discard the current session and create a fresh one."""
        fresh = self._factory()
        with self._lock:
            old, self._session = self._session, fresh
            self.generation += 1
        log.info("session=%d recreated (generation %d)", self.session_id, self.generation)
        _close_quietly(old, self.session_id)

    def close(self) -> None:
        with self._lock:
            old = self._session
        _close_quietly(old, self.session_id)


def _close_quietly(session: requests.Session, session_id: int) -> None:
    try:
        session.close()
    except Exception as exc:  # noqa: BLE001
        log.warning("session=%d close failed: %s", session_id, exc)


class SessionPool:
    def __init__(
        self,
        factory: Callable[[], requests.Session] | None = None,
        max_sessions: int = 2,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be >= 1")
        self._factory = factory or (lambda: make_session(user_agent))
        self.max_sessions = max_sessions
        self._cond = threading.Condition()
        self._idle: list[PooledSession] = []
        self._leased: set[PooledSession] = set()
        self._ids = itertools.count(1)
        self._created = 0
        self._closed = False

    @property
    def created(self) -> int:
        return self._created

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self, timeout: float | None = None) -> PooledSession:
        """Lease a session, creating one if the pool is under capacity.

        Raises:
            SessionPoolClosed: After shutdown().
            SessionUnavailable: No session became free within timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    raise SessionPoolClosed("session pool is shut down")
                if self._idle:
                    pooled = self._idle.pop()
                    break
                if self._created < self.max_sessions:
                    pooled = PooledSession(next(self._ids), self._factory)
                    self._created += 1
                    log.info("session=%d created", pooled.session_id)
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise SessionUnavailable(
                        f"no session free within {timeout}s "
                        f"(max_sessions={self.max_sessions})"
                    )
                self._cond.wait(remaining)
            self._leased.add(pooled)
            return pooled

    def release(self, pooled: PooledSession) -> None:
        with self._cond:
            self._leased.discard(pooled)
            if self._closed:
                pooled.close()
                return
            self._idle.append(pooled)
            self._cond.notify()

    @contextmanager
    def lease(self, timeout: float | None = None) -> Iterator[PooledSession]:
        pooled = self.acquire(timeout)
        try:
            yield pooled
        finally:
            self.release(pooled)

    def shutdown(self) -> None:
        """Close every session, leased ones included.  Idempotent."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            sessions = self._idle + list(self._leased)
            self._idle = []
            self._cond.notify_all()
        for pooled in sessions:
            pooled.close()
        log.info("session pool shut down (%d sessions closed)", len(sessions))
