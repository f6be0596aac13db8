"""
Name normalization for MedVerify.

Folds claimed and registry names to an uppercase, accent-free form and splits
them into comparable tokens.
"""

import logging
import re
import unicodedata
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_IGNORE_TOKENS = ["DE", "DEL", "LA", "LAS", "LOS", "Y", "DA", "DI"]
DEFAULT_REMOVE_TITLES = ["DR", "DRA", "LIC", "LCDO", "LCDA", "MD"]

_PUNCTUATION_PATTERN = re.compile(r"[^\w\s]")
_WHITESPACE_PATTERN = re.compile(r"\s+")


def fold_text(text: Optional[str]) -> str:
    """
    Uppercase a string and strip diacritics and surrounding whitespace.

    Args:
        text: Raw text (may be None)

    Returns:
        Folded text, empty string for missing input
    """
    if not text or not isinstance(text, str):
        return ""

    decomposed = unicodedata.normalize("NFD", text)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    return _WHITESPACE_PATTERN.sub(" ", stripped.upper()).strip()


class NameNormalizer:
    """
    Normalizes person names for identity matching.

    Handles title removal, diacritic folding and particle filtering.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize name normalizer with configuration.

        Args:
            config: Matching configuration (``ignore_tokens``, ``remove_titles``)
        """
        config = config or {}
        self.ignore_tokens = {fold_text(t) for t in config.get("ignore_tokens", DEFAULT_IGNORE_TOKENS)}
        self.remove_titles = {fold_text(t) for t in config.get("remove_titles", DEFAULT_REMOVE_TITLES)}

    def normalize_name(self, name: Optional[str]) -> str:
        """
        Normalize a single name.

        Args:
            name: Raw name

        Returns:
            Folded name with punctuation removed
        """
        folded = fold_text(name)
        if not folded:
            return ""

        folded = _PUNCTUATION_PATTERN.sub(" ", folded)
        folded = folded.replace("_", " ")
        return _WHITESPACE_PATTERN.sub(" ", folded).strip()

    def extract_name_tokens(self, name: Optional[str]) -> List[str]:
        """
        Extract comparable tokens from a name.

        Titles and particles such as ``DE`` or ``LA`` are dropped; if that
        would leave nothing, the unfiltered tokens are kept.

        Args:
            name: Raw or normalized name

        Returns:
            List of name tokens
        """
        tokens = [t for t in self.normalize_name(name).split(" ") if t]
        filtered = [t for t in tokens if t not in self.ignore_tokens and t not in self.remove_titles]
        return filtered or tokens
