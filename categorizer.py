import re
import logging
from typing import Dict, Optional, Pattern, Sequence

from rapidfuzz import fuzz

import heuristics
from heuristics import CategoryRule

logger = logging.getLogger(__name__)


class TransactionCategorizer:
    """Assigns categories by ordered keyword rules and derives merchant names."""

    def __init__(self,
                 rules: Sequence[CategoryRule] = heuristics.CATEGORY_RULES,
                 merchant_aliases: Optional[Dict[str, str]] = None,
                 upi_pattern: Pattern = heuristics.UPI_PATTERN,
                 upi_category: str = heuristics.UPI_CATEGORY,
                 placeholder_categories: Sequence[str] = heuristics.PLACEHOLDER_CATEGORIES):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.rules = tuple(rules)
        self.upi_pattern = upi_pattern
        self.upi_category = upi_category
        self.placeholder_categories = {category.lower() for category in placeholder_categories}

        aliases = merchant_aliases if merchant_aliases is not None else heuristics.MERCHANT_ALIASES
        # Longest keys first so "SWIGGY INSTAMART" wins over "SWIGGY"
        self.merchant_aliases = dict(sorted(aliases.items(), key=lambda item: len(item[0]), reverse=True))
        self._alias_patterns = {
            key: re.compile(rf'(?<![A-Z0-9]){re.escape(key)}(?![A-Z0-9])')
            for key in self.merchant_aliases
        }

    def matching_rule(self, description: str) -> Optional[CategoryRule]:
        for rule in self.rules:
            if rule.matches(description):
                return rule
        return None

    def categorize(self, description: str, current: Optional[str] = None,
                   raw_description: Optional[str] = None) -> Optional[str]:
        """
        Category for a transaction description, first matching rule wins.

        Args:
            description: Cleaned description
            current: Category already on the transaction (e.g. from the model)
            raw_description: Description before cleaning; UPI handles such as
                name@okaxis lose their '@' during cleaning

        Returns:
            Rule category, "UPI" for otherwise uncategorized UPI payments, or `current`
        """
        rule = self.matching_rule(description)
        if rule:
            return rule.category

        if self._is_placeholder(current):
            haystack = f"{raw_description or ''} {description}"
            if self.upi_pattern.search(haystack):
                return self.upi_category
        return current

    def extract_merchant(self, description: str) -> Optional[str]:
        """Merchant name from the alias table, exact token first then fuzzy."""
        description_upper = description.upper()

        for key, merchant in self.merchant_aliases.items():
            if self._alias_patterns[key].search(description_upper):
                return merchant

        best_match = None
        best_score = 0.0
        for key, merchant in self.merchant_aliases.items():
            if len(key) < heuristics.MERCHANT_FUZZY_MIN_KEY:
                continue
            score = fuzz.partial_ratio(key, description_upper)
            if score > heuristics.MERCHANT_FUZZY_THRESHOLD and score > best_score:
                best_match = merchant
                best_score = score

        if best_match:
            self.logger.debug(f"Fuzzy merchant match for '{description}': {best_match} ({best_score:.0f})")
        return best_match

    def _is_placeholder(self, category: Optional[str]) -> bool:
        return category is None or category.strip().lower() in self.placeholder_categories
