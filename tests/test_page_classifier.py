from conftest import FakeRecognizer, FakeRenderer

from file_loader import IMAGE_KIND, PDF_KIND, Page
from ocr_processor import OCRProcessor
from page_classifier import PageClassifier


def make_classifier(settings, pages=None, fail_pages=()):
    renderer = FakeRenderer(fail_pages)
    recognizer = FakeRecognizer(pages or {})
    classifier = PageClassifier(renderer, OCRProcessor(recognizer, settings=settings), settings=settings)
    return classifier, renderer, recognizer


def test_header_row_scores_five(settings):
    classifier, _, _ = make_classifier(settings)

    score, matched = classifier.score_text("Transaction Date | Particulars | Amount")

    assert score == 5
    assert set(matched) == {'date_token', 'amount_token', 'transaction_vocabulary', 'tabular_or_marker'}


def test_month_short_year_is_weighted_highest(settings):
    classifier, _, _ = make_classifier(settings)

    score, matched = classifier.score_text("12 MAR 24 UBER")

    assert matched == ('month_short_year',)
    assert score == 3


def test_plain_prose_scores_zero(settings):
    classifier, _, _ = make_classifier(settings)

    assert classifier.score_text("Rewards programme terms and conditions apply") == (0, ())


def test_native_page_is_scored_without_rendering(settings):
    classifier, renderer, recognizer = make_classifier(settings)
    page = Page(1, PDF_KIND, b'%PDF', native_text="Date Description Amount\n12/03/2024 SWIGGY 450.00 Dr")

    result = classifier.classify(page)

    assert result.has_native_text
    assert result.is_transaction_page
    assert renderer.calls == []
    assert recognizer.calls == []


def test_image_page_uses_low_resolution_quick_pass(settings):
    classifier, renderer, _ = make_classifier(settings, pages={1: ["Date  Particulars", "12/03/2024 SWIGGY 450.00"]})

    result = classifier.classify(Page(1, IMAGE_KIND, b'img'))

    assert renderer.calls == [(1, settings.OCR_LOW_DPI)]
    assert not result.has_native_text
    assert result.is_transaction_page


def test_short_native_text_falls_back_to_ocr(settings):
    classifier, renderer, _ = make_classifier(settings, pages={2: ["Rewards summary"]})

    result = classifier.classify(Page(2, PDF_KIND, b'%PDF', native_text="Page 2"))

    assert renderer.calls == [(2, settings.OCR_LOW_DPI)]
    assert not result.is_transaction_page


def test_quick_pass_failure_marks_page_irrelevant(settings):
    classifier, _, _ = make_classifier(settings, fail_pages=[3])

    result = classifier.classify(Page(3, IMAGE_KIND, b'img'))

    assert (result.page_index, result.has_native_text, result.relevance_score, result.is_transaction_page) == \
        (3, False, 0, False)


def test_empty_recognition_marks_page_irrelevant(settings):
    classifier, _, _ = make_classifier(settings, pages={})

    assert not classifier.classify(Page(4, IMAGE_KIND, b'img')).is_transaction_page
