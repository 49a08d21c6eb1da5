"""Item matching strategies for pairing invoice lines with contract pricing.

Implements Strategy Pattern so the matching heuristic can be swapped through
configuration and tested in isolation:
https://refactoring.guru/design-patterns/strategy/python

Strategies are combined in a chain, most precise first. ``create_matcher``
builds the chain for a configured strategy name.
"""

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from difflib import SequenceMatcher

from services.reconciliation.models import PricingTerm

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_item(text: str) -> str:
    """Lowercase and collapse punctuation/whitespace to single spaces."""
    return _NON_ALNUM.sub(" ", text.lower()).strip()


class ItemMatcher(ABC):
    """Finds the contract pricing entry an invoice line refers to."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Strategy identifier for logging."""

    @abstractmethod
    def find(self, description: str, pricing: Sequence[PricingTerm]) -> PricingTerm | None:
        """Return the matching pricing entry or None.

        Args:
            description: Invoice line description
            pricing: Contract pricing entries in contract order

        Returns:
            Matched entry, or None when nothing qualifies
        """


class ExactMatcher(ItemMatcher):
    """Normalized string equality."""

    @property
    def name(self) -> str:
        return "exact"

    def find(self, description: str, pricing: Sequence[PricingTerm]) -> PricingTerm | None:
        wanted = normalize_item(description)
        if not wanted:
            return None
        for term in pricing:
            if normalize_item(term.item) == wanted:
                return term
        return None


class SubstringMatcher(ItemMatcher):
    """Case-insensitive containment in either direction.

    When several contract items are contained in the description the longest
    (most specific) name wins; ties keep contract order.
    """

    @property
    def name(self) -> str:
        return "substring"

    def find(self, description: str, pricing: Sequence[PricingTerm]) -> PricingTerm | None:
        wanted = normalize_item(description)
        if not wanted:
            return None
        best: PricingTerm | None = None
        best_len = 0
        for term in pricing:
            item = normalize_item(term.item)
            if not item:
                continue
            if item in wanted or wanted in item:
                if len(item) > best_len:
                    best, best_len = term, len(item)
        return best


class SimilarityMatcher(ItemMatcher):
    """difflib ratio above a threshold; highest ratio wins."""

    def __init__(self, threshold: float = 0.8) -> None:
        self.threshold = threshold

    @property
    def name(self) -> str:
        return "similarity"

    def find(self, description: str, pricing: Sequence[PricingTerm]) -> PricingTerm | None:
        wanted = normalize_item(description)
        if not wanted:
            return None
        best: PricingTerm | None = None
        best_ratio = 0.0
        for term in pricing:
            ratio = SequenceMatcher(None, wanted, normalize_item(term.item)).ratio()
            if ratio >= self.threshold and ratio > best_ratio:
                best, best_ratio = term, ratio
        return best


class ChainMatcher(ItemMatcher):
    """Tries each strategy in order and returns the first hit."""

    def __init__(self, matchers: Sequence[ItemMatcher]) -> None:
        self.matchers = list(matchers)

    @property
    def name(self) -> str:
        return "+".join(m.name for m in self.matchers)

    def find(self, description: str, pricing: Sequence[PricingTerm]) -> PricingTerm | None:
        for matcher in self.matchers:
            term = matcher.find(description, pricing)
            if term is not None:
                logger.debug(f"Matched '{description}' to '{term.item}' via {matcher.name}")
                return term
        return None


def create_matcher(strategy: str = "substring", similarity_threshold: float = 0.8) -> ItemMatcher:
    """Build the matcher chain for a strategy name.

    Args:
        strategy: Most permissive strategy to fall back to (exact, substring, similarity)
        similarity_threshold: Minimum ratio for the similarity strategy

    Returns:
        Chain that always tries exact matching first

    Raises:
        ValueError: If the strategy is unknown
    """
    chains: dict[str, list[ItemMatcher]] = {
        "exact": [ExactMatcher()],
        "substring": [ExactMatcher(), SubstringMatcher()],
        "similarity": [
            ExactMatcher(),
            SubstringMatcher(),
            SimilarityMatcher(similarity_threshold),
        ],
    }
    if strategy not in chains:
        available = ", ".join(chains)
        raise ValueError(f"Unknown matching strategy: '{strategy}'. Available: {available}")
    return ChainMatcher(chains[strategy])
