import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from config import Settings, settings as default_settings
from file_loader import Page
from heuristics import PAGE_SCORING_RULES, WeightedPattern

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageClassification:
    page_index: int
    has_native_text: bool
    relevance_score: int
    is_transaction_page: bool
    matched: Tuple[str, ...] = ()


class PageClassifier:
    """
    Decides, per page, whether OCR is needed and whether the page is worth
    high-resolution processing.

    Pages with a native text layer are scored from that text. Image-only
    pages are rendered at low resolution and scored from a quick OCR pass.
    """

    def __init__(self, renderer=None, ocr=None, rules: Sequence[WeightedPattern] = PAGE_SCORING_RULES,
                 threshold: Optional[int] = None, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.renderer = renderer
        self.ocr = ocr
        self.rules = tuple(rules)
        self.threshold = threshold if threshold is not None else self.settings.TRANSACTION_PAGE_THRESHOLD
        self.logger = logging.getLogger(self.__class__.__name__)

    def score_text(self, text: str) -> Tuple[int, Tuple[str, ...]]:
        """
        Weighted relevance score of a page's text.

        Returns:
            Tuple of (score, names of the indicator families that matched)
        """
        matched = tuple(rule.name for rule in self.rules if rule.matches(text))
        score = sum(rule.weight for rule in self.rules if rule.name in matched)
        return score, matched

    def classify(self, page: Page) -> PageClassification:
        if page.has_native_text(self.settings.NATIVE_TEXT_MIN_CHARS):
            score, matched = self.score_text(page.native_text)
            return self._result(page, True, score, matched)

        try:
            image = self.renderer.render(page, self.settings.OCR_LOW_DPI)
            text = self.ocr.quick_text(image)
        except ImportError:
            raise
        except Exception as e:
            self.logger.warning(f"Quick OCR failed for page {page.index}, treating as non-transaction: {e}")
            return PageClassification(page.index, False, 0, False)

        score, matched = self.score_text(text)
        return self._result(page, False, score, matched)

    def _result(self, page: Page, native: bool, score: int, matched: Tuple[str, ...]) -> PageClassification:
        is_transaction = score >= self.threshold
        self.logger.debug(f"Page {page.index}: score={score} matched={list(matched)} native={native}")
        return PageClassification(page.index, native, score, is_transaction, matched)
