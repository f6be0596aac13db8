"""
Data model for MedVerify.

Request, candidate and result records shared by the scraping, classification,
matching and orchestration layers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

NOT_SPECIFIED = "NOT SPECIFIED"
UNKNOWN_PROFESSION = "UNKNOWN PROFESSION"


class DocumentType(str, Enum):
    """Kinds of document the registry can be searched by."""

    NATIONAL_ID = "national-id"
    PROFESSIONAL_ID = "professional-id"


class LicenseStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"
    UNKNOWN = "unknown"


class ErrorKind(str, Enum):
    """Terminal outcome reasons reported to the caller."""

    NOT_FOUND = "NotFound"
    NON_PHYSICIAN_PROFESSION = "NonPhysicianProfession"
    NAME_MISMATCH = "NameMismatch"
    LICENSE_INACTIVE = "LicenseInactive"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    PARSE_ERROR = "ParseError"
    BROWSER_CRASH = "BrowserCrash"


class NavigatorState(str, Enum):
    IDLE = "Idle"
    NAVIGATING_TO_SEARCH_FORM = "NavigatingToSearchForm"
    SUBMITTING_QUERY = "SubmittingQuery"
    WAITING_FOR_RESULTS = "WaitingForResults"
    RESULTS_READY = "ResultsReady"
    NO_RESULTS = "NoResults"
    BLOCKED = "Blocked"
    FAILED = "Failed"


@dataclass(frozen=True)
class VerificationRequest:
    """
    A normalized verification request.

    Instances are built by ``normalize_request``; the document number is
    already canonical and is never normalized again.
    """

    document_type: DocumentType
    document_number: str
    first_name: str
    last_name: str

    @property
    def cache_key(self) -> Tuple[str, str]:
        return (self.document_type.value, self.document_number)

    @property
    def claimed_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class RawPageContent:
    """Registry page captured by the navigator at the end of a search."""

    html: str
    url: str
    document_type: DocumentType
    document_number: str
    final_state: NavigatorState
    state_history: List[str] = field(default_factory=list)
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class RawCandidate:
    """Unparsed text fields from one registry result row."""

    name: str = ""
    profession_text: str = ""
    specialty_text: str = ""
    license_number: str = ""
    registration_date: str = ""
    legal_status_text: str = ""
    document_text: str = ""
    tome: str = ""
    folio: str = ""
    has_postgraduate: bool = False


@dataclass
class ClassifiedCandidate:
    raw: RawCandidate
    profession_label: str
    is_physician_eligible: bool
    specialty_label: str
    license_status: LicenseStatus
    matched_table_entry: Optional[str] = None


@dataclass
class IdentityScore:
    """Strength of match between a claimed name and a registry name."""

    score: float
    threshold: float
    matched_tokens: List[Tuple[str, str]] = field(default_factory=list)
    unmatched_claimed: List[str] = field(default_factory=list)
    unmatched_registry: List[str] = field(default_factory=list)

    @property
    def is_match(self) -> bool:
        return self.score >= self.threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": round(self.score, 4),
            "threshold": self.threshold,
            "is_match": self.is_match,
            "matched_tokens": [list(pair) for pair in self.matched_tokens],
            "unmatched_claimed": list(self.unmatched_claimed),
            "unmatched_registry": list(self.unmatched_registry),
        }


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one verification, as returned to the application layer."""

    is_valid: bool
    is_verified: bool
    verification_source: str
    doctor_name: Optional[str]
    license_status: LicenseStatus
    profession: Optional[str]
    specialty: Optional[str]
    verification_date: str
    analysis: Dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        """Render the external camelCase representation."""
        payload = {
            "isValid": self.is_valid,
            "isVerified": self.is_verified,
            "verificationSource": self.verification_source,
            "doctorName": self.doctor_name,
            "licenseStatus": self.license_status.value,
            "profession": self.profession,
            "specialty": self.specialty,
            "verificationDate": self.verification_date,
            "analysis": self.analysis,
        }
        if self.error_kind is not None:
            payload["errorKind"] = self.error_kind.value
        return payload


@dataclass
class CacheEntry:
    key: Tuple[str, str]
    result: VerificationResult
    expires_at: float
