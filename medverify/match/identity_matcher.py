"""
Identity matcher for MedVerify.

Compares the claimed first/last name with the registry name using an
order-independent token alignment with Levenshtein partial credit.
"""

import logging
from typing import Dict, List, Optional, Tuple

from Levenshtein import distance as levenshtein_distance

from ..models import IdentityScore
from ..normalize.name_normalizer import NameNormalizer

logger = logging.getLogger(__name__)


class IdentityMatcher:
    """
    Scores a registry name against a claimed identity.

    Registry names often list both given names and both surnames while the
    claimed name may use only some of them, so the score is driven by how many
    claimed tokens are found, with a smaller penalty for registry tokens left
    unmatched.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize identity matcher with configuration.

        Args:
            config: ``matching`` configuration section
        """
        config = config or {}
        self.config = config
        self.threshold = float(config.get("threshold", 0.8))
        self.min_token_similarity = float(config.get("min_token_similarity", 0.6))
        self.extra_token_penalty = float(config.get("extra_token_penalty", 0.2))
        self.normalizer = NameNormalizer(config)

        logger.info(f"Initialized IdentityMatcher (threshold={self.threshold})")

    @staticmethod
    def token_similarity(token1: str, token2: str) -> float:
        """
        Similarity of two folded tokens, ``1 - edit_distance / max_length``.

        Args:
            token1: First token
            token2: Second token

        Returns:
            Similarity in [0, 1]
        """
        if token1 == token2:
            return 1.0
        longest = max(len(token1), len(token2))
        if longest == 0:
            return 0.0
        return max(0.0, 1.0 - levenshtein_distance(token1, token2) / longest)

    def _align_tokens(self, claimed: List[str],
                      registry: List[str]) -> Tuple[List[Tuple[str, str, float]], List[str], List[str]]:
        pairs = []
        for i, claimed_token in enumerate(claimed):
            for j, registry_token in enumerate(registry):
                similarity = self.token_similarity(claimed_token, registry_token)
                if similarity >= self.min_token_similarity:
                    pairs.append((similarity, i, j))

        # Greedy assignment, best pairs first; ties keep positional order
        pairs.sort(key=lambda p: (-p[0], p[1], p[2]))
        used_claimed = set()
        used_registry = set()
        aligned = []
        for similarity, i, j in pairs:
            if i in used_claimed or j in used_registry:
                continue
            used_claimed.add(i)
            used_registry.add(j)
            aligned.append((claimed[i], registry[j], similarity))

        unmatched_claimed = [t for i, t in enumerate(claimed) if i not in used_claimed]
        unmatched_registry = [t for j, t in enumerate(registry) if j not in used_registry]
        return aligned, unmatched_claimed, unmatched_registry

    def score(self, claimed_first: str, claimed_last: str, candidate_name: str) -> IdentityScore:
        """
        Score a candidate name against the claimed identity.

        Args:
            claimed_first: Claimed first name(s)
            claimed_last: Claimed last name(s)
            candidate_name: Full name as recorded by the registry

        Returns:
            IdentityScore with token breakdown
        """
        claimed = (self.normalizer.extract_name_tokens(claimed_first)
                   + self.normalizer.extract_name_tokens(claimed_last))
        registry = self.normalizer.extract_name_tokens(candidate_name)

        if not claimed or not registry:
            return IdentityScore(
                score=0.0,
                threshold=self.threshold,
                unmatched_claimed=claimed,
                unmatched_registry=registry,
            )

        aligned, unmatched_claimed, unmatched_registry = self._align_tokens(claimed, registry)

        credit = sum(similarity for _, _, similarity in aligned)
        coverage = credit / len(claimed)
        penalty = 1.0 - self.extra_token_penalty * len(unmatched_registry) / len(registry)
        score = max(0.0, min(1.0, coverage * penalty))

        return IdentityScore(
            score=score,
            threshold=self.threshold,
            matched_tokens=[(c, r) for c, r, _ in aligned],
            unmatched_claimed=unmatched_claimed,
            unmatched_registry=unmatched_registry,
        )
