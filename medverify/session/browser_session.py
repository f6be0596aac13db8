"""
Headless browser session for MedVerify.

Each session owns one Playwright browser, context and page. Playwright's sync
API is bound to the thread that started it, so every page operation runs on a
dedicated single-thread executor and is awaited with an explicit timeout.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Optional

from ..errors import BrowserCrash, DeadlineExceeded, NavigationTimeout

logger = logging.getLogger(__name__)


class BrowserSession:
    """
    One pooled headless browser.

    A session is poisoned when a submitted operation is abandoned (its worker
    may still be blocked inside the browser) or the browser dies. Poisoned
    sessions must be recycled, never reused.
    """

    def __init__(self, session_id: int, config: Optional[Dict] = None):
        """
        Initialize browser session.

        Args:
            session_id: Pool-unique identifier
            config: Full verification configuration
        """
        config = config or {}
        self.session_id = session_id
        self.pool_config = config.get("session_pool", {})
        self.registry_config = config.get("registry", {})
        self.timeouts = config.get("timeouts", {})

        self.page = None
        self.poisoned = False
        self.uses = 0
        self.consecutive_failures = 0
        self.created_at = time.monotonic()
        self.search_lock = threading.Lock()

        self._playwright = None
        self._browser = None
        self._context = None
        self._closed = False
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"medverify-session-{session_id}"
        )

    def __repr__(self):
        return f"BrowserSession(id={self.session_id}, uses={self.uses}, poisoned={self.poisoned})"

    def start(self):
        """Launch the browser on the session's worker thread."""
        launch_timeout = float(self.timeouts.get("launch", 30.0))
        try:
            self.run(self._launch, launch_timeout)
        except NavigationTimeout:
            self.close()
            raise BrowserCrash(f"Browser session {self.session_id} did not start within {launch_timeout}s")
        except BrowserCrash:
            self.close()
            raise
        except Exception as e:
            self.close()
            raise BrowserCrash(f"Browser session {self.session_id} failed to start: {e}") from e

        logger.info(f"Started browser session {self.session_id}")

    def _launch(self):
        from playwright.sync_api import sync_playwright

        launch_options = {
            "headless": bool(self.pool_config.get("headless", True)),
            "args": list(self.pool_config.get("browser_args", [])),
        }
        executable_path = self.pool_config.get("executable_path")
        if executable_path:
            launch_options["executable_path"] = executable_path

        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(**launch_options)
        self._context = self._browser.new_context(
            user_agent=self.registry_config.get("user_agent"),
            viewport={"width": 1366, "height": 768},
            ignore_https_errors=True,
        )
        self.page = self._context.new_page()
        self.page.set_default_timeout(float(self.timeouts.get("page_load", 60.0)) * 1000)

    def _teardown(self):
        if self._context is not None:
            self._context.close()
        if self._browser is not None:
            self._browser.close()
        if self._playwright is not None:
            self._playwright.stop()

    def run(self, operation: Callable[..., Any], timeout: float, *args,
            deadline: Optional[float] = None) -> Any:
        """
        Run a browser operation on the session thread.

        Args:
            operation: Callable executed on the session thread
            timeout: Seconds to wait for the operation
            *args: Positional arguments for ``operation``
            deadline: Absolute ``time.monotonic()`` deadline of the caller

        Returns:
            Whatever ``operation`` returns

        Raises:
            NavigationTimeout: The operation did not finish within ``timeout``
            DeadlineExceeded: The caller's deadline expired first
            BrowserCrash: The session is poisoned or closed
        """
        if self._closed or self.poisoned:
            raise BrowserCrash(f"Browser session {self.session_id} is no longer usable")

        limited_by_deadline = False
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DeadlineExceeded("Deadline expired before browser operation started")
            if remaining < timeout:
                timeout = remaining
                limited_by_deadline = True

        future = self._executor.submit(operation, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            self.poisoned = True
            name = getattr(operation, "__name__", "operation")
            logger.warning(f"Browser session {self.session_id}: {name} abandoned after {timeout:.1f}s")
            if limited_by_deadline:
                raise DeadlineExceeded(f"Deadline expired during {name}")
            raise NavigationTimeout(f"{name} did not complete within {timeout:.1f}s")

    def close(self):
        """Tear down the browser and stop the session thread."""
        if self._closed:
            return
        self._closed = True

        if self.poisoned:
            # Queued behind the stuck operation; runs once it returns
            logger.warning(f"Discarding poisoned browser session {self.session_id}")
            self._executor.submit(self._teardown_quietly)
            self._executor.shutdown(wait=False)
        else:
            future = self._executor.submit(self._teardown)
            try:
                future.result(timeout=float(self.timeouts.get("launch", 30.0)))
            except FutureTimeoutError:
                logger.warning(f"Browser session {self.session_id} teardown timed out")
            except Exception as e:
                logger.warning(f"Browser session {self.session_id} teardown failed: {e}")
            self._executor.shutdown(wait=False, cancel_futures=True)

        self.page = None
        logger.info(f"Closed browser session {self.session_id} after {self.uses} uses")

    def _teardown_quietly(self):
        try:
            self._teardown()
        except Exception as e:
            logger.warning(f"Browser session {self.session_id} teardown failed: {e}")
        logger.info(f"Released browser of poisoned session {self.session_id}")

    @property
    def closed(self) -> bool:
        return self._closed
