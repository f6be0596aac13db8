"""
Unit tests for the registry navigator and browser sessions.
"""

import time
import pytest
import sys
from pathlib import Path

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from registry_fixtures import (
    CHALLENGE_HTML,
    NO_RESULTS_HTML,
    FakeBrowserSession,
    FakePage,
    make_config,
)

from medverify.errors import (
    BrowserCrash,
    DeadlineExceeded,
    NavigationTimeout,
    NavigatorError,
    NetworkError,
    RegistryBlocked,
)
from medverify.models import DocumentType, NavigatorState
from medverify.scraping.navigator import Navigator


class TestNavigator:
    """Test cases for the registry search workflow."""

    def setup_method(self):
        """Setup test fixtures."""
        self.config = make_config()
        self.navigator = Navigator(self.config)
        self.sessions = []

    def teardown_method(self):
        """Close sessions opened by the test."""
        for session in self.sessions:
            session.close()

    def _session(self, page):
        session = FakeBrowserSession(len(self.sessions) + 1, self.config, page=page)
        session.start()
        self.sessions.append(session)
        return session

    def test_search_with_results(self):
        """Test the successful search path."""
        page = FakePage()
        session = self._session(page)

        content = self.navigator.search(session, DocumentType.NATIONAL_ID, "V-13266929")

        assert content.final_state == NavigatorState.RESULTS_READY
        assert content.document_number == "V-13266929"
        assert "ANGHINIE SANCHEZ RODRIGUEZ" in content.html
        assert content.url == self.config["registry"]["url"]
        assert page.submitted == ["xajax_getPrfsnalByCed", "V-13266929"]
        assert content.state_history == [
            "Idle", "NavigatingToSearchForm", "SubmittingQuery", "WaitingForResults", "ResultsReady",
        ]

    def test_postgraduate_section_expanded(self):
        """Test that the specialty section is opened."""
        page = FakePage()
        session = self._session(page)
        self.navigator.search(session, DocumentType.NATIONAL_ID, "V-13266929")
        assert "expand" in page.calls
        assert "specialty" in page.calls

    def test_missing_specialty_is_not_a_failure(self):
        """Test specialty wait timing out."""
        page = FakePage(errors={"specialty": PlaywrightTimeoutError("Timeout 5000ms exceeded.")})
        session = self._session(page)

        content = self.navigator.search(session, DocumentType.NATIONAL_ID, "V-13266929")
        assert content.final_state == NavigatorState.RESULTS_READY

    def test_no_postgraduate_control(self):
        """Test physicians without postgraduate studies."""
        page = FakePage(has_postgraduate=False)
        session = self._session(page)
        self.navigator.search(session, DocumentType.NATIONAL_ID, "V-13266929")
        assert "specialty" not in page.calls

    def test_no_results(self):
        """Test explicit no-results page."""
        page = FakePage(results_html=NO_RESULTS_HTML, result_kind="empty")
        session = self._session(page)

        content = self.navigator.search(session, DocumentType.NATIONAL_ID, "V-99999999")
        assert content.final_state == NavigatorState.NO_RESULTS
        assert "expand" not in page.calls

    def test_professional_id_uses_its_search_function(self):
        """Test search function selection."""
        page = FakePage()
        session = self._session(page)
        self.navigator.search(session, DocumentType.PROFESSIONAL_ID, "MPPS-67301")
        assert page.submitted == ["xajax_getPrfsnalByMat", "MPPS-67301"]

    def test_results_timeout(self):
        """Test timeout while waiting for results."""
        page = FakePage(errors={"results": PlaywrightTimeoutError("Timeout 15000ms exceeded.")})
        session = self._session(page)

        with pytest.raises(NavigationTimeout) as exc_info:
            self.navigator.search(session, DocumentType.NATIONAL_ID, "V-13266929")
        assert exc_info.value.transient is True
        assert exc_info.value.detail["state_history"][-1] == NavigatorState.FAILED.value
        assert not session.poisoned

    def test_network_error(self):
        """Test network failures."""
        page = FakePage(errors={"goto": PlaywrightError("net::ERR_NAME_NOT_RESOLVED at https://sistemas.sacs.gob.ve")})
        session = self._session(page)

        with pytest.raises(NetworkError):
            self.navigator.search(session, DocumentType.NATIONAL_ID, "V-13266929")

    def test_browser_crash(self):
        """Test closed browser target."""
        page = FakePage(errors={"goto": PlaywrightError("Target page, context or browser has been closed")})
        session = self._session(page)

        with pytest.raises(BrowserCrash):
            self.navigator.search(session, DocumentType.NATIONAL_ID, "V-13266929")

    def test_challenge_blocks(self):
        """Test verification challenge."""
        page = FakePage(landing_html=CHALLENGE_HTML)
        session = self._session(page)

        with pytest.raises(RegistryBlocked) as exc_info:
            self.navigator.search(session, DocumentType.NATIONAL_ID, "V-13266929")
        assert exc_info.value.detail["state_history"][-1] == NavigatorState.BLOCKED.value
        assert "submit" not in page.calls

    def test_one_search_per_session(self):
        """Test that a busy session rejects a second search."""
        session = self._session(FakePage())
        session.search_lock.acquire()
        try:
            with pytest.raises(NavigatorError):
                self.navigator.search(session, DocumentType.NATIONAL_ID, "V-13266929")
        finally:
            session.search_lock.release()

    def test_deadline_abandons_step(self):
        """Test that a caller deadline abandons a stuck step."""
        page = FakePage(delays={"results": 2.0})
        session = self._session(page)

        started = time.monotonic()
        with pytest.raises(DeadlineExceeded):
            self.navigator.search(session, DocumentType.NATIONAL_ID, "V-13266929",
                                  deadline=time.monotonic() + 0.3)
        assert time.monotonic() - started < 1.5
        assert session.poisoned

    def test_map_playwright_error(self):
        """Test error mapping."""
        assert isinstance(Navigator.map_playwright_error(PlaywrightError("net::ERR_CONNECTION_RESET")), NetworkError)
        assert isinstance(Navigator.map_playwright_error(PlaywrightError("Browser has disconnected")), BrowserCrash)
        assert type(Navigator.map_playwright_error(PlaywrightError("Evaluation failed"))) is NavigatorError


class TestBrowserSession:
    """Test cases for the session worker thread."""

    def setup_method(self):
        """Setup test fixtures."""
        self.config = make_config()
        self.session = FakeBrowserSession(1, self.config)
        self.session.start()

    def teardown_method(self):
        """Close the session."""
        self.session.close()

    def test_run_returns_result(self):
        """Test operations run on the session thread."""
        assert self.session.run(lambda: 42, 1.0) == 42

    def test_run_timeout_poisons_session(self):
        """Test abandoned operations."""
        with pytest.raises(NavigationTimeout):
            self.session.run(lambda: time.sleep(1.0), 0.1)
        assert self.session.poisoned

        with pytest.raises(BrowserCrash):
            self.session.run(lambda: 1, 1.0)

    def test_launch_failure(self):
        """Test browser launch errors."""
        session = FakeBrowserSession(2, self.config, launch_error=RuntimeError("no chromium"))
        with pytest.raises(BrowserCrash):
            session.start()
        assert session.closed

    def test_poisoned_session_torn_down_after_stuck_step(self):
        """Test that a poisoned browser is still shut down once its step returns."""
        with pytest.raises(NavigationTimeout):
            self.session.run(lambda: time.sleep(0.5), 0.1)
        self.session.close()

        assert self.session.closed
        assert self.session.teardowns == 0
        time.sleep(1.0)
        assert self.session.teardowns == 1

    def test_close_tears_down_once(self):
        """Test teardown."""
        self.session.close()
        self.session.close()
        assert self.session.teardowns == 1
        assert self.session.closed


if __name__ == "__main__":
    pytest.main([__file__])
