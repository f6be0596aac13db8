"""
Profession/specialty classifier for MedVerify.

Profession and specialty are classified independently: the profession is
matched against the profession table to decide physician eligibility, and the
specialty is canonicalized against the specialty catalogue. Specialty text is
never used to fill in a profession, and a profession is never reported as a
specialty.
"""

import logging
import re
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple

import yaml
from thefuzz import fuzz, process

from ..models import (
    NOT_SPECIFIED,
    UNKNOWN_PROFESSION,
    ClassifiedCandidate,
    LicenseStatus,
    RawCandidate,
)
from ..normalize.name_normalizer import fold_text

logger = logging.getLogger(__name__)

PACKAGED_TABLE_PATH = Path(__file__).resolve().parent.parent / "data" / "profession_table.yaml"

_GENDER_MARKER_PATTERN = re.compile(r"\((?:A|O|AS|OS|ES)\)")
_NON_WORD_PATTERN = re.compile(r"[^\w\s]")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_SPECIALTY_SEPARATOR_PATTERN = re.compile(r"[,;\n]+")

_STATUS_ORDER = [LicenseStatus.REVOKED, LicenseStatus.SUSPENDED, LicenseStatus.ACTIVE]


def fold_registry_text(text: Optional[str]) -> str:
    """
    Fold registry text for table lookups.

    Uppercases, strips accents, drops gender markers such as ``(A)`` and
    replaces punctuation with spaces.

    Args:
        text: Raw registry text

    Returns:
        Folded text
    """
    folded = fold_text(text)
    folded = _GENDER_MARKER_PATTERN.sub(" ", folded)
    folded = _NON_WORD_PATTERN.sub(" ", folded)
    return _WHITESPACE_PATTERN.sub(" ", folded).strip()


def _marker_pattern(markers: List[str]) -> Optional[re.Pattern]:
    """Compile status markers into one pattern anchored at word starts."""
    folded = [fold_registry_text(m) for m in markers]
    folded = [m for m in folded if m]
    if not folded:
        return None
    return re.compile(r"\b(?:" + "|".join(re.escape(m) for m in folded) + ")")


def load_profession_table(table_path: Optional[str] = None) -> Dict:
    """
    Load the profession/specialty table from YAML.

    Args:
        table_path: Path to a table file; the packaged table when omitted

    Returns:
        Table dictionary
    """
    path = Path(table_path) if table_path else PACKAGED_TABLE_PATH

    with open(path, "r", encoding="utf-8") as f:
        table = yaml.safe_load(f) or {}

    if not isinstance(table.get("professions"), list) or not table["professions"]:
        raise ValueError(f"Profession table {path} has no 'professions' entries")

    logger.info(f"Loaded profession table version {table.get('version', 'unversioned')} from {path}")
    return table


class _ProfessionEntry:
    def __init__(self, canonical: str, physician_eligible: bool, patterns: List[FrozenSet[str]]):
        self.canonical = canonical
        self.physician_eligible = physician_eligible
        self.patterns = patterns

    def specificity(self, words: FrozenSet[str]) -> int:
        """Word count of the longest pattern fully contained in ``words``, 0 if none."""
        best = 0
        for pattern in self.patterns:
            if pattern and pattern <= words:
                best = max(best, len(pattern))
        return best


class ProfessionClassifier:
    """
    Classifies registry candidates into profession, specialty and status.

    Unknown professions are never physician-eligible.
    """

    def __init__(self, table: Optional[Dict] = None, config: Optional[Dict] = None):
        """
        Initialize classifier.

        Args:
            table: Profession table dictionary (loaded from disk when omitted)
            config: ``classification`` configuration section
        """
        config = config or {}
        self.table = table if table is not None else load_profession_table(config.get("profession_table"))
        self.version = str(self.table.get("version", "unversioned"))

        self.exclusion_markers = [
            fold_registry_text(marker) for marker in self.table.get("non_physician_markers", [])
        ]

        self.entries: List[_ProfessionEntry] = []
        for entry in self.table.get("professions", []):
            patterns = [frozenset(fold_registry_text(p).split()) for p in entry.get("patterns", [])]
            patterns.append(frozenset(fold_registry_text(entry["canonical"]).split()))
            self.entries.append(_ProfessionEntry(
                canonical=entry["canonical"],
                physician_eligible=bool(entry.get("physician_eligible", False)),
                patterns=patterns,
            ))

        specialties = self.table.get("specialties", {})
        self.specialty_prefixes = sorted(
            (fold_registry_text(p) for p in specialties.get("prefixes", [])), key=len, reverse=True
        )
        self.specialty_min_similarity = float(specialties.get("min_similarity", 0.85))
        self.specialty_variants: Dict[str, str] = {}
        for canonical, variants in specialties.get("catalogue", {}).items():
            self.specialty_variants[fold_registry_text(canonical)] = canonical
            for variant in variants or []:
                self.specialty_variants[fold_registry_text(variant)] = canonical

        status_table = self.table.get("license_status", {})
        self.negated_status_pattern = _marker_pattern(status_table.get("negated", []))
        self.status_rules: List[Tuple[LicenseStatus, Optional[re.Pattern]]] = [
            (status, _marker_pattern(status_table.get(status.value, [])))
            for status in _STATUS_ORDER
        ]

        logger.info(f"Initialized ProfessionClassifier with table version {self.version} "
                    f"({len(self.entries)} professions, {len(self.specialty_variants)} specialty variants)")

    def classify(self, candidate: RawCandidate) -> ClassifiedCandidate:
        """
        Classify one registry candidate.

        Args:
            candidate: Raw registry candidate

        Returns:
            ClassifiedCandidate with independent profession and specialty
        """
        label, eligible, entry = self.classify_profession(candidate.profession_text)
        specialty = self.classify_specialty(candidate.specialty_text, candidate.profession_text)
        status = self.classify_license_status(candidate.legal_status_text)

        return ClassifiedCandidate(
            raw=candidate,
            profession_label=label,
            is_physician_eligible=eligible,
            specialty_label=specialty,
            license_status=status,
            matched_table_entry=entry,
        )

    def classify_profession(self, profession_text: Optional[str]) -> Tuple[str, bool, Optional[str]]:
        """
        Match profession text against the profession table.

        Args:
            profession_text: Raw profession text

        Returns:
            Tuple of (profession_label, is_physician_eligible, matched_entry)
        """
        folded = fold_registry_text(profession_text)
        if not folded:
            return UNKNOWN_PROFESSION, False, None

        excluded = any(marker and marker in folded for marker in self.exclusion_markers)
        words = frozenset(folded.split())

        best_entry = None
        best_specificity = 0
        for entry in self.entries:
            if excluded and entry.physician_eligible:
                continue
            specificity = entry.specificity(words)
            if specificity > best_specificity or (
                specificity == best_specificity and specificity > 0
                and best_entry is not None and best_entry.physician_eligible
                and not entry.physician_eligible
            ):
                best_entry = entry
                best_specificity = specificity

        if best_entry is None:
            label = _WHITESPACE_PATTERN.sub(" ", profession_text.strip().upper())
            logger.warning(f"Profession not in table {self.version}: {label!r}; treating as not eligible")
            return label, False, None

        return best_entry.canonical, best_entry.physician_eligible, best_entry.canonical

    def is_profession_like(self, text: Optional[str]) -> bool:
        """True when ``text`` reads as a profession rather than a specialty."""
        words = frozenset(fold_registry_text(text).split())
        if not words:
            return False
        return any(words == pattern for entry in self.entries for pattern in entry.patterns)

    def classify_specialty(self, specialty_text: Optional[str], profession_text: Optional[str] = "") -> str:
        """
        Canonicalize specialty text.

        Args:
            specialty_text: Raw specialty text
            profession_text: Raw profession text of the same row

        Returns:
            Canonical specialty, or ``NOT SPECIFIED``
        """
        folded = fold_registry_text(specialty_text)
        if not folded:
            return NOT_SPECIFIED

        if folded == fold_registry_text(profession_text) or self.is_profession_like(folded):
            logger.debug(f"Specialty text {folded!r} is a profession; reporting {NOT_SPECIFIED}")
            return NOT_SPECIFIED

        labels: List[str] = []
        for part in _SPECIALTY_SEPARATOR_PATTERN.split(fold_text(specialty_text)):
            label = self._canonicalize_specialty(fold_registry_text(part))
            if label and label not in labels:
                labels.append(label)

        if not labels:
            return NOT_SPECIFIED
        return " Y ".join(labels)

    def _canonicalize_specialty(self, part: str) -> str:
        for prefix in self.specialty_prefixes:
            if part.startswith(prefix + " "):
                part = part[len(prefix):].strip()
                break

        if not part or self.is_profession_like(part):
            return ""

        if part in self.specialty_variants:
            return self.specialty_variants[part]

        if self.specialty_variants:
            best_match = process.extractOne(part, list(self.specialty_variants), scorer=fuzz.ratio)
            if best_match and best_match[1] >= self.specialty_min_similarity * 100:
                return self.specialty_variants[best_match[0]]

        return part

    def classify_license_status(self, legal_status_text: Optional[str]) -> LicenseStatus:
        """
        Map registry legal-status text to a license status.

        A listed record without status text is active.

        Args:
            legal_status_text: Raw legal-status text

        Returns:
            LicenseStatus
        """
        folded = fold_registry_text(legal_status_text)
        if not folded:
            return LicenseStatus.ACTIVE

        if self.negated_status_pattern and self.negated_status_pattern.search(folded):
            return LicenseStatus.SUSPENDED

        for status, pattern in self.status_rules:
            if pattern and pattern.search(folded):
                return status

        return LicenseStatus.UNKNOWN
