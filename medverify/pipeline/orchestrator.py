"""
Verification orchestrator for MedVerify.

Runs the end-to-end verification workflow: cache lookup, registry search on a
pooled browser session with bounded retries, parsing, classification,
identity scoring, candidate selection and result assembly.
"""

import dataclasses
import logging
import random
import threading
import time
from collections import Counter, deque
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..audit.audit_logger import AuditLogger
from ..cache.verification_cache import VerificationCache
from ..classify.profession_classifier import ProfessionClassifier
from ..errors import (
    BrowserCrash,
    DeadlineExceeded,
    NavigatorError,
    ParseError,
    RegistryBlocked,
    SessionAcquireTimeout,
    SessionPoolClosed,
)
from ..match.identity_matcher import IdentityMatcher
from ..models import (
    ClassifiedCandidate,
    ErrorKind,
    IdentityScore,
    LicenseStatus,
    RawPageContent,
    VerificationRequest,
    VerificationResult,
)
from ..normalize.document_normalizer import mask_document_number, normalize_request
from ..scraping.navigator import Navigator
from ..scraping.result_parser import ResultParser
from ..session.session_manager import SessionManager

logger = logging.getLogger(__name__)

# Outcomes that do not depend on registry availability
CACHEABLE_OUTCOMES = {
    None,
    ErrorKind.NOT_FOUND,
    ErrorKind.NON_PHYSICIAN_PROFESSION,
    ErrorKind.NAME_MISMATCH,
    ErrorKind.LICENSE_INACTIVE,
}

LEGAL = "legal"
REQUIRES_VERIFICATION = "requires_verification"
ILLEGAL = "illegal"

MAX_CRASH_RETRIES = 1


class VerificationOrchestrator:
    """
    Coordinates one verification per call.

    Thread-safe: concurrent calls share the session pool, the cache and the
    error statistics window. Concurrent calls for the same document trigger a
    single registry search.
    """

    def __init__(self, config: Dict, session_manager: SessionManager, navigator: Navigator,
                 parser: ResultParser, classifier: ProfessionClassifier, matcher: IdentityMatcher,
                 cache: VerificationCache, audit_logger: Optional[AuditLogger] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize orchestrator with its collaborators.

        Args:
            config: Full verification configuration
            session_manager: Browser session pool
            navigator: Registry navigator
            parser: Result parser
            classifier: Profession/specialty classifier
            matcher: Identity matcher
            cache: Verification cache
            audit_logger: Optional audit trail
            sleep: Backoff sleep function, injectable for tests
        """
        self.config = config
        self.session_manager = session_manager
        self.navigator = navigator
        self.parser = parser
        self.classifier = classifier
        self.matcher = matcher
        self.cache = cache
        self.audit_logger = audit_logger
        self._sleep = sleep

        retry_config = config.get("retry", {})
        self.max_attempts = int(retry_config.get("max_attempts", 3))
        self.base_delay = float(retry_config.get("base_delay", 1.0))
        self.max_delay = float(retry_config.get("max_delay", 15.0))
        self.jitter = bool(retry_config.get("jitter", True))

        timeouts = config.get("timeouts", {})
        self.parse_timeout = float(timeouts.get("parse", 5.0))
        self.acquire_timeout = float(timeouts.get("acquire", 30.0))

        self.verification_source = config.get("registry", {}).get("name", "sacs")
        self.error_window_seconds = float(config.get("stats", {}).get("error_window_seconds", 900))

        self._parse_executor = ThreadPoolExecutor(
            max_workers=max(1, session_manager.max_sessions), thread_name_prefix="medverify-parse"
        )
        self._stats_lock = threading.Lock()
        self._recent_errors = deque()
        self.stats = {
            "requests": 0,
            "cache_hits": 0,
            "registry_searches": 0,
            "rescored_from_cache": 0,
            "valid": 0,
            "deadline_exceeded": 0,
        }

        logger.info(f"Initialized VerificationOrchestrator (source={self.verification_source}, "
                    f"max_attempts={self.max_attempts})")

    def verify_license(self, document_type: str, document_number: str, first_name: str,
                       last_name: str, timeout: Optional[float] = None) -> VerificationResult:
        """
        Verify a license from raw request fields.

        Args:
            document_type: ``national-id`` or ``professional-id``
            document_number: Document number as typed by the user
            first_name: Claimed first name(s)
            last_name: Claimed last name(s)
            timeout: Overall deadline in seconds

        Returns:
            VerificationResult

        Raises:
            InvalidRequestError: The request is malformed
            DeadlineExceeded: ``timeout`` expired first
        """
        request = normalize_request(document_type, document_number, first_name, last_name)
        return self.verify(request, timeout=timeout)

    def verify(self, request: VerificationRequest, timeout: Optional[float] = None) -> VerificationResult:
        """
        Verify a normalized request.

        Args:
            request: Normalized verification request
            timeout: Overall deadline in seconds

        Returns:
            VerificationResult; never a partial result

        Raises:
            DeadlineExceeded: ``timeout`` expired first
        """
        started = time.monotonic()
        deadline = started + timeout if timeout is not None else None
        masked = mask_document_number(request.document_number)
        self._increment("requests")

        logger.info(f"Verifying {request.document_type.value} {masked}")

        try:
            result, from_cache = self.cache.resolve(
                request.cache_key,
                lambda: self._lookup(request, deadline),
                cacheable=lambda r: r.error_kind in CACHEABLE_OUTCOMES,
                wait_timeout=timeout,
            )
        except DeadlineExceeded:
            self._increment("deadline_exceeded")
            logger.warning(f"Deadline of {timeout}s exceeded verifying {masked}")
            raise

        if from_cache:
            self._increment("cache_hits")
            result = self._rescore_for_claimed_name(result, request)

        if result.is_valid:
            self._increment("valid")

        processing_time = time.monotonic() - started
        outcome = result.error_kind.value if result.error_kind else ("Valid" if result.is_valid else "Invalid")
        logger.info(f"Verification of {masked} finished: {outcome} "
                    f"({processing_time:.2f}s, cached={from_cache})")

        if self.audit_logger is not None:
            self.audit_logger.record_verification(request, result, processing_time, from_cache=from_cache)

        return result

    def _lookup(self, request: VerificationRequest, deadline: Optional[float]) -> VerificationResult:
        content, attempts, error_kind = self._search_registry(request, deadline)
        if error_kind is not None:
            self._record_error(error_kind)
            return self._error_result(error_kind, attempts)

        try:
            candidates = self._parse(content, deadline)
        except ParseError as e:
            logger.error(f"Registry page for {mask_document_number(request.document_number)} "
                         f"could not be parsed: {e}")
            self._record_error(ErrorKind.PARSE_ERROR)
            return self._error_result(ErrorKind.PARSE_ERROR, attempts, content.state_history)

        if not candidates:
            return self._not_found_result(attempts, content.state_history)

        return self._assemble(request, candidates, attempts, content.state_history)

    def _search_registry(self, request: VerificationRequest,
                         deadline: Optional[float]) -> Tuple[Optional[RawPageContent], int, Optional[ErrorKind]]:
        """
        Run the navigator with bounded retries.

        Returns:
            Tuple of (page content, navigator attempts, error kind); exactly
            one of content and error kind is set
        """
        attempts = 0
        crash_retries = 0

        while True:
            try:
                session = self.session_manager.acquire(self._remaining(self.acquire_timeout, deadline))
            except SessionAcquireTimeout as e:
                if self._expired(deadline):
                    raise DeadlineExceeded("Deadline expired waiting for a browser session") from e
                logger.warning(f"Browser session pool exhausted: {e}")
                return None, attempts, ErrorKind.SERVICE_UNAVAILABLE
            except SessionPoolClosed as e:
                logger.warning(f"{e}")
                return None, attempts, ErrorKind.SERVICE_UNAVAILABLE
            except BrowserCrash as e:
                crash_retries += 1
                logger.warning(f"Browser session failed to launch: {e}")
                if crash_retries > MAX_CRASH_RETRIES:
                    return None, attempts, ErrorKind.BROWSER_CRASH
                continue

            attempts += 1
            self._increment("registry_searches")
            try:
                content = self.navigator.search(session, request.document_type, request.document_number,
                                                deadline=deadline)
            except DeadlineExceeded:
                self.session_manager.recycle(session)
                raise
            except RegistryBlocked as e:
                logger.warning(f"Registry blocked the search: {e}")
                self.session_manager.recycle(session)
                return None, attempts, ErrorKind.SERVICE_UNAVAILABLE
            except BrowserCrash as e:
                self.session_manager.recycle(session)
                crash_retries += 1
                if crash_retries > MAX_CRASH_RETRIES:
                    logger.error(f"Browser crashed again on a fresh session: {e}")
                    return None, attempts, ErrorKind.BROWSER_CRASH
                logger.warning(f"Browser crashed, retrying on a fresh session: {e}")
                continue
            except NavigatorError as e:
                self.session_manager.release(session, failed=True)
                if not e.transient:
                    logger.error(f"Registry search failed: {e}")
                    return None, attempts, ErrorKind.SERVICE_UNAVAILABLE
                if attempts >= self.max_attempts:
                    logger.error(f"Registry search failed after {attempts} attempts: {e}")
                    return None, attempts, ErrorKind.SERVICE_UNAVAILABLE

                delay = self._backoff_delay(attempts)
                logger.warning(f"Registry search attempt {attempts}/{self.max_attempts} failed ({e}), "
                               f"retrying in {delay:.1f}s")
                if deadline is not None and time.monotonic() + delay >= deadline:
                    raise DeadlineExceeded("Deadline would expire during retry backoff") from e
                self._sleep(delay)
                continue

            self.session_manager.release(session)
            return content, attempts, None

    def _backoff_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay

    def _parse(self, content: RawPageContent, deadline: Optional[float]):
        timeout = self._remaining(self.parse_timeout, deadline)
        future = self._parse_executor.submit(self.parser.parse, content)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            if self._expired(deadline):
                raise DeadlineExceeded("Deadline expired while parsing registry page")
            raise ParseError(f"Parsing did not complete within {timeout:.1f}s")

    def _assemble(self, request: VerificationRequest, candidates, attempts: int,
                  state_history: List[str]) -> VerificationResult:
        classified = [self.classifier.classify(candidate) for candidate in candidates]
        scored = [(candidate, self.matcher.score(request.first_name, request.last_name, candidate.raw.name))
                  for candidate in classified]

        eligible = [pair for pair in scored if pair[0].is_physician_eligible]
        selected, identity = max(eligible or scored, key=lambda pair: pair[1].score)

        error_kind = self._decide(selected.is_physician_eligible, identity, selected.license_status)

        analysis = {
            "claimed_name": request.claimed_name,
            "registry_name": selected.raw.name,
            "identity": identity.to_dict(),
            "candidates_found": len(candidates),
            "eligible_candidates": len(eligible),
            "license_number": selected.raw.license_number,
            "registration_date": selected.raw.registration_date,
            "physician_eligible": selected.is_physician_eligible,
            "matched_table_entry": selected.matched_table_entry,
            "has_postgraduate": selected.raw.has_postgraduate,
            "profession_table_version": self.classifier.version,
            "attempts": attempts,
            "state_history": list(state_history),
        }
        analysis.update(self._legal_assessment(error_kind, selected))

        if len(candidates) > 1:
            logger.info(f"Selected {selected.profession_label} among {len(candidates)} candidates "
                        f"(identity score {identity.score:.2f})")

        return VerificationResult(
            is_valid=error_kind is None,
            is_verified=True,
            verification_source=self.verification_source,
            doctor_name=selected.raw.name or None,
            license_status=selected.license_status,
            profession=selected.profession_label,
            specialty=selected.specialty_label,
            verification_date=self._now(),
            analysis=analysis,
            error_kind=error_kind,
        )

    @staticmethod
    def _decide(eligible: bool, identity: IdentityScore, status: LicenseStatus) -> Optional[ErrorKind]:
        if not eligible:
            return ErrorKind.NON_PHYSICIAN_PROFESSION
        if not identity.is_match:
            return ErrorKind.NAME_MISMATCH
        if status != LicenseStatus.ACTIVE:
            return ErrorKind.LICENSE_INACTIVE
        return None

    @staticmethod
    def _legal_assessment(error_kind: Optional[ErrorKind],
                          selected: Optional[ClassifiedCandidate] = None,
                          license_status: Optional[LicenseStatus] = None) -> Dict[str, Any]:
        status = selected.license_status if selected is not None else license_status

        if error_kind is None:
            return {
                "legal_status": LEGAL,
                "recommendations": ["Professional may practice medicine as registered"],
            }
        if error_kind == ErrorKind.NON_PHYSICIAN_PROFESSION:
            return {
                "legal_status": ILLEGAL,
                "recommendations": [
                    "Registered profession does not authorize practicing medicine",
                    "Do not grant physician access",
                ],
            }
        if error_kind == ErrorKind.LICENSE_INACTIVE and status in (LicenseStatus.SUSPENDED, LicenseStatus.REVOKED):
            return {
                "legal_status": ILLEGAL,
                "recommendations": [f"License is {status.value}; physician access must not be granted"],
            }
        if error_kind == ErrorKind.NAME_MISMATCH:
            return {
                "legal_status": REQUIRES_VERIFICATION,
                "recommendations": [
                    "Registry name does not match the claimed name",
                    "Verify identity documents manually",
                ],
            }
        if error_kind == ErrorKind.NOT_FOUND:
            return {
                "legal_status": REQUIRES_VERIFICATION,
                "recommendations": [
                    "No registry record for this document",
                    "Check the document number and type",
                ],
            }
        return {
            "legal_status": REQUIRES_VERIFICATION,
            "recommendations": ["Registry verification could not be completed; retry later or verify manually"],
        }

    def _rescore_for_claimed_name(self, result: VerificationResult,
                                  request: VerificationRequest) -> VerificationResult:
        analysis = result.analysis or {}
        if not result.is_verified or not result.doctor_name:
            return result
        if analysis.get("claimed_name") == request.claimed_name:
            return result

        identity = self.matcher.score(request.first_name, request.last_name, result.doctor_name)
        error_kind = self._decide(bool(analysis.get("physician_eligible")), identity, result.license_status)

        rescored = dict(analysis)
        rescored.update({
            "claimed_name": request.claimed_name,
            "identity": identity.to_dict(),
            "rescored_from_cache": True,
        })
        rescored.update(self._legal_assessment(error_kind, license_status=result.license_status))

        self._increment("rescored_from_cache")
        logger.debug(f"Re-scored cached result for a different claimed name (score {identity.score:.2f})")

        return dataclasses.replace(
            result,
            is_valid=error_kind is None,
            error_kind=error_kind,
            analysis=rescored,
        )

    def _not_found_result(self, attempts: int, state_history: List[str]) -> VerificationResult:
        analysis = {
            "candidates_found": 0,
            "profession_table_version": self.classifier.version,
            "attempts": attempts,
            "state_history": list(state_history),
        }
        analysis.update(self._legal_assessment(ErrorKind.NOT_FOUND))
        return VerificationResult(
            is_valid=False,
            is_verified=False,
            verification_source=self.verification_source,
            doctor_name=None,
            license_status=LicenseStatus.UNKNOWN,
            profession=None,
            specialty=None,
            verification_date=self._now(),
            analysis=analysis,
            error_kind=ErrorKind.NOT_FOUND,
        )

    def _error_result(self, error_kind: ErrorKind, attempts: int,
                      state_history: Optional[List[str]] = None) -> VerificationResult:
        analysis = {
            "attempts": attempts,
            "state_history": list(state_history or []),
        }
        analysis.update(self._legal_assessment(error_kind))
        return VerificationResult(
            is_valid=False,
            is_verified=False,
            verification_source=self.verification_source,
            doctor_name=None,
            license_status=LicenseStatus.UNKNOWN,
            profession=None,
            specialty=None,
            verification_date=self._now(),
            analysis=analysis,
            error_kind=error_kind,
        )

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _remaining(timeout: float, deadline: Optional[float]) -> float:
        if deadline is None:
            return timeout
        return max(0.0, min(timeout, deadline - time.monotonic()))

    @staticmethod
    def _expired(deadline: Optional[float]) -> bool:
        return deadline is not None and time.monotonic() >= deadline

    def _increment(self, counter: str):
        with self._stats_lock:
            self.stats[counter] += 1

    def _record_error(self, error_kind: ErrorKind):
        now = time.monotonic()
        with self._stats_lock:
            self._recent_errors.append((now, error_kind.value))
            self._prune_errors(now)

    def _prune_errors(self, now: float):
        while self._recent_errors and now - self._recent_errors[0][0] > self.error_window_seconds:
            self._recent_errors.popleft()

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get monitoring statistics.

        Returns:
            Dictionary with request counters, pool and cache statistics and
            error counts within the recent window
        """
        with self._stats_lock:
            self._prune_errors(time.monotonic())
            recent_errors = dict(Counter(kind for _, kind in self._recent_errors))
            stats = dict(self.stats)

        stats.update({
            "session_pool": self.session_manager.get_statistics(),
            "cache": self.cache.get_statistics(),
            "recent_errors": recent_errors,
            "error_window_seconds": self.error_window_seconds,
        })
        return stats

    def shutdown(self):
        """Release browser sessions and worker threads."""
        self.session_manager.shutdown()
        self._parse_executor.shutdown(wait=False)
        logger.info("VerificationOrchestrator shut down")


def build_orchestrator(config: Dict, session_manager: Optional[SessionManager] = None,
                       navigator: Optional[Navigator] = None,
                       audit_logger: Optional[AuditLogger] = None) -> VerificationOrchestrator:
    """
    Build an orchestrator and its process-scoped collaborators.

    Args:
        config: Full verification configuration
        session_manager: Pre-built session pool (optional)
        navigator: Pre-built navigator (optional)
        audit_logger: Pre-built audit logger; created from ``audit`` config when enabled

    Returns:
        Ready-to-use VerificationOrchestrator
    """
    audit_config = config.get("audit", {})
    if audit_logger is None and audit_config.get("enabled", False):
        audit_logger = AuditLogger(audit_config)

    return VerificationOrchestrator(
        config=config,
        session_manager=session_manager or SessionManager(config),
        navigator=navigator or Navigator(config),
        parser=ResultParser(config.get("parser", {})),
        classifier=ProfessionClassifier(config=config.get("classification", {})),
        matcher=IdentityMatcher(config.get("matching", {})),
        cache=VerificationCache(config.get("cache", {})),
        audit_logger=audit_logger,
    )
