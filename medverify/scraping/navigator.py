"""
Registry navigator for MedVerify.

Drives one registry search on a pooled browser session and captures the
rendered results page. The navigator never retries; transient failures are
reported as ``NetworkError`` or ``NavigationTimeout`` for the orchestrator to
decide on.
"""

import logging
import time
from typing import Dict, List, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from ..errors import (
    BrowserCrash,
    NavigationTimeout,
    NavigatorError,
    NetworkError,
    RegistryBlocked,
)
from ..models import DocumentType, NavigatorState, RawPageContent
from ..normalize.name_normalizer import fold_text
from ..session.browser_session import BrowserSession

logger = logging.getLogger(__name__)

# Extra seconds the session thread is given beyond Playwright's own timeout
STEP_GRACE_SECONDS = 5.0

_CRASH_MARKERS = ("target closed", "has been closed", "crashed", "browser has disconnected", "connection closed")

_FOLD_JS = "(s) => (s || '').normalize('NFD').replace(/[\\u0300-\\u036f]/g, '').toUpperCase()"

SEARCH_FORM_READY_JS = "(name) => typeof window[name] === 'function'"

SUBMIT_SEARCH_JS = "([name, value]) => { window[name](value); return true; }"

RESULTS_READY_JS = f"""(markers) => {{
    const fold = {_FOLD_JS};
    const text = fold(document.body ? document.body.innerText : '');
    if (markers.no_results.some((m) => text.includes(m))) return 'empty';
    const rows = Array.from(document.querySelectorAll('table tr'));
    const hasRecord = rows.some((row) => {{
        const cells = Array.from(row.querySelectorAll('td, th'));
        return cells.length > 0 && markers.labels.some((l) => fold(cells[0].innerText).startsWith(l));
    }});
    return hasRecord ? 'results' : '';
}}"""

RESULT_KIND_JS = RESULTS_READY_JS

EXPAND_POSTGRADUATE_JS = f"""(markers) => {{
    const fold = {_FOLD_JS};
    const controls = Array.from(document.querySelectorAll('button, input[type="button"], a'));
    const control = controls.find((el) => {{
        const text = fold(el.innerText || el.value || '');
        return markers.some((m) => text.includes(m));
    }});
    if (!control) return false;
    control.dispatchEvent(new MouseEvent('click', {{ bubbles: true, cancelable: true }}));
    return true;
}}"""

SPECIALTY_READY_JS = f"""(markers) => {{
    const fold = {_FOLD_JS};
    const cells = Array.from(document.querySelectorAll('table td, table th'));
    return cells.some((cell) => markers.some((m) => fold(cell.innerText).includes(m)));
}}"""


class Navigator:
    """
    Registry search state machine.

    ``Idle -> NavigatingToSearchForm -> SubmittingQuery -> WaitingForResults``
    ends in ``ResultsReady`` or ``NoResults`` on success, and in ``Blocked``
    or ``Failed`` when an error is raised.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize navigator with configuration.

        Args:
            config: Full verification configuration
        """
        config = config or {}
        registry = config.get("registry", {})
        parser_config = config.get("parser", {})
        timeouts = config.get("timeouts", {})

        self.registry_url = registry.get("url")
        self.search_functions: Dict[str, str] = dict(registry.get("search_functions", {}))
        self.challenge_markers = [m.lower() for m in registry.get("challenge_markers", [])]

        self.page_load_timeout = float(timeouts.get("page_load", 60.0))
        self.search_form_timeout = float(timeouts.get("search_form", 10.0))
        self.results_timeout = float(timeouts.get("results", 15.0))
        self.specialty_timeout = float(timeouts.get("specialty", 5.0))
        self.search_timeout = float(timeouts.get("search", 90.0))

        self.result_markers = {
            "no_results": [fold_text(m) for m in parser_config.get("no_results_markers", [])],
            "labels": [fold_text(m) for m in
                       parser_config.get("name_labels", []) + parser_config.get("document_labels", [])],
        }
        self.postgraduate_markers = [fold_text(m) for m in parser_config.get("postgraduate_markers", ["POSTGRADO"])]
        self.specialty_markers = [fold_text(m) for m in parser_config.get("specialty_markers", ["ESPECIALISTA EN"])]

        logger.info(f"Initialized Navigator for {self.registry_url}")

    def search(self, session: BrowserSession, document_type: DocumentType, document_number: str,
               deadline: Optional[float] = None) -> RawPageContent:
        """
        Run one registry search.

        Args:
            session: Session borrowed from the pool
            document_type: Document type
            document_number: Canonical document number
            deadline: Absolute ``time.monotonic()`` deadline of the caller

        Returns:
            RawPageContent captured in ``ResultsReady`` or ``NoResults``

        Raises:
            NavigatorError: The search could not be completed
            DeadlineExceeded: The caller's deadline expired
        """
        if not session.search_lock.acquire(blocking=False):
            raise NavigatorError(f"Browser session {session.session_id} already has a search in flight")

        history: List[str] = [NavigatorState.IDLE.value]
        try:
            return self._search(session, DocumentType(document_type), document_number, deadline, history)
        except RegistryBlocked as e:
            history.append(NavigatorState.BLOCKED.value)
            e.detail.setdefault("state_history", history)
            raise
        except NavigatorError as e:
            history.append(NavigatorState.FAILED.value)
            e.detail.setdefault("state_history", history)
            logger.warning(f"Registry search failed in state {history[-2]}: {e}")
            raise
        finally:
            session.search_lock.release()

    def _search(self, session: BrowserSession, document_type: DocumentType, document_number: str,
                deadline: Optional[float], history: List[str]) -> RawPageContent:
        search_function = self.search_functions.get(document_type.value)
        if not search_function:
            raise NavigatorError(f"No registry search function configured for {document_type.value}")

        search_deadline = time.monotonic() + self.search_timeout
        page = session.page

        def open_search_form():
            page.goto(self.registry_url, wait_until="domcontentloaded",
                      timeout=self.page_load_timeout * 1000)

        def read_content():
            return page.content()

        def wait_for_search_form():
            page.wait_for_function(SEARCH_FORM_READY_JS, arg=search_function,
                                   timeout=self.search_form_timeout * 1000)

        def submit_query():
            page.evaluate(SUBMIT_SEARCH_JS, [search_function, document_number])

        def wait_for_results():
            page.wait_for_function(RESULTS_READY_JS, arg=self.result_markers,
                                   timeout=self.results_timeout * 1000)
            return page.evaluate(RESULT_KIND_JS, self.result_markers)

        history.append(NavigatorState.NAVIGATING_TO_SEARCH_FORM.value)
        self._step(session, open_search_form, self.page_load_timeout, search_deadline, deadline)
        self._check_challenge(self._step(session, read_content, self.page_load_timeout, search_deadline, deadline))
        self._step(session, wait_for_search_form, self.search_form_timeout, search_deadline, deadline)

        history.append(NavigatorState.SUBMITTING_QUERY.value)
        self._step(session, submit_query, self.search_form_timeout, search_deadline, deadline)

        history.append(NavigatorState.WAITING_FOR_RESULTS.value)
        try:
            kind = self._step(session, wait_for_results, self.results_timeout, search_deadline, deadline)
        except NavigationTimeout:
            # A challenge injected after submission also stalls the results
            self._check_challenge(self._step(session, read_content, self.results_timeout,
                                             search_deadline, deadline))
            raise

        if kind == "empty":
            final_state = NavigatorState.NO_RESULTS
        else:
            self._expand_postgraduate(session, search_deadline, deadline)
            final_state = NavigatorState.RESULTS_READY

        html = self._step(session, read_content, self.results_timeout, search_deadline, deadline)
        self._check_challenge(html)
        history.append(final_state.value)

        logger.info(f"Registry search for {document_type.value} finished in state {final_state.value}")
        return RawPageContent(
            html=html,
            url=page.url,
            document_type=document_type,
            document_number=document_number,
            final_state=final_state,
            state_history=list(history),
        )

    def _expand_postgraduate(self, session: BrowserSession, search_deadline: float, deadline: Optional[float]):
        page = session.page

        def click_postgraduate():
            return page.evaluate(EXPAND_POSTGRADUATE_JS, self.postgraduate_markers)

        def wait_for_specialty():
            page.wait_for_function(SPECIALTY_READY_JS, arg=self.specialty_markers,
                                   timeout=self.specialty_timeout * 1000)

        if not self._step(session, click_postgraduate, self.specialty_timeout, search_deadline, deadline):
            logger.debug("No postgraduate control on results page")
            return

        try:
            self._step(session, wait_for_specialty, self.specialty_timeout, search_deadline, deadline)
        except NavigationTimeout as e:
            if session.poisoned:
                raise
            logger.info(f"Specialty not shown after postgraduate expansion: {e}")

    def _step(self, session: BrowserSession, operation, timeout: float,
              search_deadline: float, deadline: Optional[float]):
        remaining = search_deadline - time.monotonic()
        if remaining <= 0:
            raise NavigationTimeout(f"Registry search exceeded {self.search_timeout:.0f}s")

        try:
            return session.run(operation, min(timeout + STEP_GRACE_SECONDS, remaining), deadline=deadline)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(f"{operation.__name__} timed out: {e.message}") from e
        except PlaywrightError as e:
            raise self.map_playwright_error(e, operation.__name__) from e

    @staticmethod
    def map_playwright_error(error: PlaywrightError, step: str = "") -> NavigatorError:
        """
        Map a Playwright error to the navigator error taxonomy.

        Args:
            error: Error raised by Playwright
            step: Name of the failing step

        Returns:
            NavigatorError subclass instance
        """
        message = error.message or str(error)
        lowered = message.lower()

        if "net::err_" in lowered or "ns_error_" in lowered:
            return NetworkError(f"{step}: {message}")
        if any(marker in lowered for marker in _CRASH_MARKERS):
            return BrowserCrash(f"{step}: {message}")
        if "timeout" in lowered:
            return NavigationTimeout(f"{step}: {message}")
        return NavigatorError(f"{step}: {message}")

    def _check_challenge(self, html: str):
        lowered = (html or "").lower()
        for marker in self.challenge_markers:
            if marker in lowered:
                raise RegistryBlocked(f"Registry returned an automation challenge ({marker!r})")
