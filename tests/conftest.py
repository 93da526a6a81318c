import os
import sys
import time
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Dict, List, Tuple

import pytest


def pytest_sessionstart(session):
    # Ensure project root is on sys.path so the top-level modules resolve
    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


# --- Test utilities: fake rendering, recognition and extraction collaborators ---

@dataclass(frozen=True)
class FakeImage:
    page_index: int
    dpi: int
    shape: Tuple[int, int, int] = (1000, 800, 3)


class FakeRenderer:
    def __init__(self, fail_pages=()):
        self.fail_pages = set(fail_pages)
        self.calls: List[Tuple[int, int]] = []

    def render(self, page, dpi):
        from errors import DocumentError

        self.calls.append((page.index, dpi))
        if page.index in self.fail_pages:
            raise DocumentError(f"cannot render page {page.index}")
        return FakeImage(page.index, dpi)


class FakeRecognizer:
    """Returns one text region per configured line, stacked 100px apart."""

    def __init__(self, pages: Dict[int, List[str]], delays: Dict[int, float] = None):
        self.pages = pages
        self.delays = delays or {}
        self.calls: List[Tuple[int, int]] = []

    def recognize(self, image):
        from errors import RecognitionError
        from ocr_processor import TextRegion

        self.calls.append((image.page_index, image.dpi))
        delay = self.delays.get(image.page_index)
        if delay and image.dpi >= 300:
            time.sleep(delay)

        lines = self.pages.get(image.page_index, [])
        if not lines:
            raise RecognitionError("No text regions recognized")
        return [
            TextRegion(line, (10.0, 100.0 * i + 50, 700.0, 100.0 * i + 70))
            for i, line in enumerate(lines)
        ]


class FakeExtractor:
    def __init__(self, response: str):
        self.response = response
        self.texts: List[str] = []
        self.documents: List[Tuple[bytes, str]] = []

    def extract_text(self, normalized_text, schema=None, instructions=None):
        self.texts.append(normalized_text)
        return self.response

    def extract_document(self, document_bytes, mime_type='application/pdf', instructions=None, schema=None):
        self.documents.append((document_bytes, mime_type))
        return self.response


class FakeModels:
    """Stands in for `genai.Client().models`; replays responses or raises errors in order."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls: List[str] = []
        self.contents = []

    def generate_content(self, model, contents, config=None):
        self.calls.append(model)
        self.contents.append(contents)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(text=outcome)


class FakeGeminiClient:
    def __init__(self, outcomes):
        self.models = FakeModels(outcomes)


@pytest.fixture
def settings():
    from config import Settings

    return Settings(
        GEMINI_API_KEY="test-key",
        GEMINI_PRIMARY_MODEL="primary-model",
        GEMINI_LITE_MODEL="lite-model",
        PAGE_WORKERS=3,
        PAGE_BATCH_SIZE=5,
    )
