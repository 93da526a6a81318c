"""
OCR for image-only statement pages using PaddleOCR, with row-preserving
layout reconstruction.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from rapidfuzz import fuzz, process

from config import Settings, settings as default_settings
from errors import RecognitionError
import heuristics

try:
    from paddleocr import PaddleOCR
    OCR_AVAILABLE = True
except ImportError:
    OCR_AVAILABLE = False

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextRegion:
    """Recognized text with its axis-aligned box (x0, y0, x1, y1) in image pixels."""
    text: str
    box: Tuple[float, float, float, float]
    confidence: float = 1.0

    @property
    def x_start(self) -> float:
        return self.box[0]

    @property
    def y_center(self) -> float:
        return (self.box[1] + self.box[3]) / 2.0

    @property
    def height(self) -> float:
        return self.box[3] - self.box[1]

    @classmethod
    def from_polygon(cls, text: str, points: Sequence[Sequence[float]], confidence: float = 1.0) -> "TextRegion":
        xs = [float(p[0]) for p in points]
        ys = [float(p[1]) for p in points]
        return cls(text=text, box=(min(xs), min(ys), max(xs), max(ys)), confidence=confidence)


class VocabularyHints:
    """Snaps near-miss OCR tokens to a domain vocabulary (bank names, markers)."""

    def __init__(self, vocabulary: Iterable[str] = heuristics.OCR_VOCABULARY,
                 min_score: int = heuristics.OCR_VOCABULARY_MIN_SCORE,
                 min_token: int = heuristics.OCR_VOCABULARY_MIN_TOKEN):
        self.vocabulary = [word.upper() for word in vocabulary]
        self._known = set(self.vocabulary)
        self.min_score = min_score
        self.min_token = min_token

    def apply(self, text: str) -> str:
        return ' '.join(self._snap(token) for token in text.split())

    def _snap(self, token: str) -> str:
        if len(token) < self.min_token or not token.isalpha():
            return token
        upper = token.upper()
        if upper in self._known:
            return token
        match = process.extractOne(upper, self.vocabulary, scorer=fuzz.ratio,
                                   score_cutoff=self.min_score)
        return match[0] if match else token


class PaddleTextRecognizer:
    """Text-recognition collaborator backed by PaddleOCR."""

    def __init__(self, settings: Optional[Settings] = None, hints: Optional[VocabularyHints] = None):
        if not OCR_AVAILABLE:
            raise ImportError("OCR dependencies not available. Install: pip install 'statement-extractor[ocr]'")

        self.settings = settings or default_settings
        self.hints = hints or VocabularyHints()
        self.ocr = PaddleOCR(use_angle_cls=True, lang=self.settings.OCR_LANG)
        self.logger = logging.getLogger(self.__class__.__name__)
        # PaddleOCR predictors are not safe to share across threads
        self._lock = threading.Lock()

    def recognize(self, image: np.ndarray) -> List[TextRegion]:
        """
        Recognize text regions in an image.

        Args:
            image: BGR image array

        Returns:
            Regions above the confidence and text-height floors

        Raises:
            RecognitionError: when nothing usable was recognized
        """
        try:
            with self._lock:
                ocr_results = self.ocr.ocr(image, cls=True)
        except ImportError:
            raise
        except Exception as e:
            self.logger.error(f"OCR engine failed: {str(e)}")
            raise RecognitionError(f"OCR engine failed: {e}") from e

        regions = []
        dropped = 0
        if ocr_results and ocr_results[0]:
            for result in ocr_results[0]:
                points = result[0]
                text, confidence = result[1][0], result[1][1]
                region = TextRegion.from_polygon(self.hints.apply(text), points, float(confidence))

                if confidence <= self.settings.OCR_MIN_CONFIDENCE or region.height < self.settings.OCR_MIN_TEXT_HEIGHT:
                    dropped += 1
                    continue
                if region.text.strip():
                    regions.append(region)

        self.logger.debug(f"Recognized {len(regions)} regions ({dropped} filtered)")
        if not regions:
            raise RecognitionError("No text regions recognized")
        return regions


class LayoutTextExtractor:
    """Rebuilds reading order by grouping regions into rows by vertical center."""

    def __init__(self, row_tolerance_ratio: float = heuristics.ROW_TOLERANCE_RATIO):
        self.row_tolerance_ratio = row_tolerance_ratio

    def group_rows(self, regions: Sequence[TextRegion], page_height: Optional[float] = None) -> List[List[TextRegion]]:
        """
        Group regions into rows, top of page first, each row left-to-right.

        A region joins the current row when its vertical center is within
        `row_tolerance_ratio * page_height` of the row's first region.
        """
        if not regions:
            return []
        if not page_height:
            page_height = max(region.box[3] for region in regions)
        tolerance = page_height * self.row_tolerance_ratio

        rows: List[List[TextRegion]] = []
        anchor = 0.0
        for region in sorted(regions, key=lambda r: (r.y_center, r.x_start)):
            if rows and abs(region.y_center - anchor) <= tolerance:
                rows[-1].append(region)
            else:
                rows.append([region])
                anchor = region.y_center

        return [sorted(row, key=lambda r: r.x_start) for row in rows]

    def extract(self, regions: Sequence[TextRegion], page_height: Optional[float] = None) -> str:
        """Join rows with newlines and fragments within a row with single spaces."""
        if not regions:
            raise RecognitionError("No text regions to lay out")
        rows = self.group_rows(regions, page_height)
        return '\n'.join(' '.join(region.text.strip() for region in row) for row in rows)


class OCRProcessor:
    """Image to text: recognition followed by layout reconstruction."""

    def __init__(self, recognizer=None, layout: Optional[LayoutTextExtractor] = None,
                 settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._recognizer = recognizer
        self.layout = layout or LayoutTextExtractor(self.settings.ROW_TOLERANCE_RATIO)
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def recognizer(self):
        # Built on first use so native-text documents never load the OCR models
        if self._recognizer is None:
            self._recognizer = PaddleTextRecognizer(self.settings)
        return self._recognizer

    def extract_text(self, image: np.ndarray) -> str:
        """Layout-preserving text for one page image; raises RecognitionError when empty."""
        regions = self.recognizer.recognize(image)
        return self.layout.extract(regions, page_height=image.shape[0])

    def quick_text(self, image: np.ndarray) -> str:
        """Unordered text dump used for relevance scoring."""
        regions = self.recognizer.recognize(image)
        return '\n'.join(region.text for region in regions)
