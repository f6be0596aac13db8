"""
Session manager for MedVerify.

Bounded pool of headless browser sessions. Sessions are launched lazily up to
``max_sessions`` and replaced after repeated failures, after a fixed number of
uses, or when poisoned.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Dict, Optional

from ..errors import SessionAcquireTimeout, SessionPoolClosed
from .browser_session import BrowserSession

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Thread-safe pool of browser sessions.

    A session handed out by ``acquire`` is owned by exactly one caller until it
    is given back with ``release`` or discarded with ``recycle``.
    """

    def __init__(self, config: Optional[Dict] = None,
                 session_factory: Optional[Callable[[int], BrowserSession]] = None):
        """
        Initialize session manager.

        Args:
            config: Full verification configuration
            session_factory: Builds an unstarted session for a session id
        """
        self.config = config or {}
        pool_config = self.config.get("session_pool", {})
        self.max_sessions = int(pool_config.get("max_sessions", 2))
        self.max_uses_per_session = int(pool_config.get("max_uses_per_session", 50))
        self.max_consecutive_failures = int(pool_config.get("max_consecutive_failures", 2))
        self.default_acquire_timeout = float(self.config.get("timeouts", {}).get("acquire", 30.0))

        self._session_factory = session_factory or (lambda session_id: BrowserSession(session_id, self.config))
        self._condition = threading.Condition()
        self._idle = deque()
        self._in_use = set()
        self._live = 0
        self._next_id = 1
        self._closed = False

        self.stats = {
            "created": 0,
            "recycled": 0,
            "acquired": 0,
            "acquire_timeouts": 0,
            "launch_failures": 0,
        }

        logger.info(f"Initialized SessionManager (max_sessions={self.max_sessions})")

    def acquire(self, timeout: Optional[float] = None) -> BrowserSession:
        """
        Borrow a session, launching one if the pool has room.

        Args:
            timeout: Seconds to wait for a free session

        Returns:
            A started BrowserSession

        Raises:
            SessionAcquireTimeout: No session became available in time
            SessionPoolClosed: The pool was shut down
            BrowserCrash: A new session failed to launch
        """
        timeout = self.default_acquire_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout

        with self._condition:
            while True:
                if self._closed:
                    raise SessionPoolClosed("Session pool is shut down")

                if self._idle:
                    session = self._idle.popleft()
                    self._in_use.add(session)
                    self.stats["acquired"] += 1
                    return session

                if self._live < self.max_sessions:
                    self._live += 1
                    session_id = self._next_id
                    self._next_id += 1
                    break

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self.stats["acquire_timeouts"] += 1
                    raise SessionAcquireTimeout(
                        f"No browser session available within {timeout:.1f}s "
                        f"({self._live}/{self.max_sessions} in use)"
                    )
                self._condition.wait(remaining)

        # Launch outside the lock; the slot is already reserved
        try:
            session = self._session_factory(session_id)
            session.start()
        except Exception:
            with self._condition:
                self._live -= 1
                self.stats["launch_failures"] += 1
                self._condition.notify()
            raise

        with self._condition:
            self.stats["created"] += 1
            self.stats["acquired"] += 1
            if self._closed:
                self._live -= 1
                closed = True
            else:
                self._in_use.add(session)
                closed = False

        if closed:
            session.close()
            raise SessionPoolClosed("Session pool is shut down")
        return session

    def release(self, session: BrowserSession, failed: bool = False):
        """
        Return a session to the pool.

        Args:
            session: Session obtained from ``acquire``
            failed: Whether the caller's navigation failed
        """
        session.uses += 1
        if failed:
            session.consecutive_failures += 1
        else:
            session.consecutive_failures = 0

        reason = None
        if session.poisoned or session.closed:
            reason = "poisoned"
        elif session.consecutive_failures >= self.max_consecutive_failures:
            reason = f"{session.consecutive_failures} consecutive failures"
        elif session.uses >= self.max_uses_per_session:
            reason = f"reached {session.uses} uses"

        if reason:
            logger.info(f"Recycling browser session {session.session_id}: {reason}")
            self.recycle(session)
            return

        with self._condition:
            if session not in self._in_use:
                return
            self._in_use.discard(session)
            if not self._closed:
                self._idle.append(session)
                self._condition.notify()
                return
            self._live -= 1

        session.close()

    def recycle(self, session: BrowserSession):
        """
        Discard a session and free its pool slot.

        Args:
            session: Session obtained from ``acquire``
        """
        with self._condition:
            if session not in self._in_use:
                return
            self._in_use.discard(session)
            self._live -= 1
            self.stats["recycled"] += 1
            self._condition.notify()

        session.close()

    def shutdown(self):
        """Close idle sessions and refuse further acquisitions."""
        with self._condition:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._live -= len(idle)
            self._condition.notify_all()

        for session in idle:
            session.close()
        logger.info(f"Session pool shut down ({len(idle)} idle sessions closed)")

    def get_statistics(self) -> Dict[str, int]:
        """
        Get pool statistics.

        Returns:
            Dictionary with live, idle and in-use counts plus lifetime counters
        """
        with self._condition:
            stats = dict(self.stats)
            stats.update({
                "max_sessions": self.max_sessions,
                "live": self._live,
                "idle": len(self._idle),
                "in_use": len(self._in_use),
                "closed": self._closed,
            })
            return stats
