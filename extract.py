"""
Main entry point for the credit card statement extraction pipeline.
"""
import argparse
import json
import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import pandas as pd

from config import Settings, settings as default_settings
from errors import DocumentError, ProcessingCancelled, RecognitionError, StatementError
from extractor import GeminiExtractor
from file_loader import Document, FileLoader, Page, PageRenderer
from ocr_processor import OCRProcessor
from page_classifier import PageClassification, PageClassifier
from postprocess import StatementPostProcessor
from preprocess import (
    TextNormalizer,
    extract_card_hints,
    extract_statement_period,
    find_candidate_transaction_lines,
)
from repository import JsonFileStatementRepository, StatementRepository
from response_parser import TolerantJsonDecoder
from schema import CardInfo, StatementPeriod, StatementRecord

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
CancelCheck = Callable[[], bool]

STAGE_BANDS = {
    'classification': (0.0, 0.5),
    'ocr': (0.5, 0.7),
    'extraction': (0.7, 0.95),
    'finalization': (0.95, 1.0),
}

MODES = ('text', 'document')


class ProgressTracker:
    """Reports a non-decreasing fraction in [0, 1] through fixed stage bands."""

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self._callback = callback
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def update(self, fraction: float) -> None:
        with self._lock:
            fraction = min(1.0, max(self._value, fraction))
            self._value = fraction
        if self._callback:
            self._callback(fraction)

    def stage(self, name: str, done: int, total: int) -> None:
        start, end = STAGE_BANDS[name]
        share = done / total if total else 1.0
        self.update(start + (end - start) * share)


@dataclass
class PipelineResult:
    record: StatementRecord
    normalized_text: str = ''
    classifications: List[PageClassification] = field(default_factory=list)
    candidate_lines: List[str] = field(default_factory=list)


class StatementProcessor:
    """Main processor for credit card statements."""

    def __init__(self, settings: Optional[Settings] = None,
                 file_loader: Optional[FileLoader] = None,
                 renderer=None,
                 ocr: Optional[OCRProcessor] = None,
                 classifier: Optional[PageClassifier] = None,
                 normalizer: Optional[TextNormalizer] = None,
                 extractor: Optional[GeminiExtractor] = None,
                 decoder: Optional[TolerantJsonDecoder] = None,
                 post_processor: Optional[StatementPostProcessor] = None,
                 repository: Optional[StatementRepository] = None):
        self.settings = settings or default_settings
        self.file_loader = file_loader or FileLoader()
        self.renderer = renderer or PageRenderer(self.settings)
        self.ocr = ocr or OCRProcessor(settings=self.settings)
        self.classifier = classifier or PageClassifier(self.renderer, self.ocr, settings=self.settings)
        self.normalizer = normalizer or TextNormalizer()
        self.extractor = extractor or GeminiExtractor(self.settings)
        self.decoder = decoder or TolerantJsonDecoder()
        self.post_processor = post_processor or StatementPostProcessor(settings=self.settings)
        self.repository = repository

    def process_file(self, file_path: str, mode: str = 'text',
                     progress_callback: Optional[ProgressCallback] = None,
                     should_cancel: Optional[CancelCheck] = None) -> StatementRecord:
        """
        Process a statement file end-to-end.

        Args:
            file_path: Path to a PDF or image statement
            mode: 'text' (OCR and text extraction) or 'document' (send the file itself)
            progress_callback: Receives progress fractions in [0, 1]
            should_cancel: Polled between page batches and stages

        Returns:
            Post-processed StatementRecord
        """
        document = self.file_loader.load_document(file_path)
        return self.run(document, mode, progress_callback, should_cancel).record

    def run(self, document: Document, mode: str = 'text',
            progress_callback: Optional[ProgressCallback] = None,
            should_cancel: Optional[CancelCheck] = None) -> PipelineResult:
        """Process a loaded document and return the record with intermediate artifacts."""
        if mode not in MODES:
            raise ValueError(f"Unknown mode '{mode}', expected one of {MODES}")

        progress = ProgressTracker(progress_callback)
        cancel = should_cancel or (lambda: False)
        logger.info(f"Starting {mode} processing of {document.name} ({len(document)} page(s))")

        try:
            if mode == 'document':
                result = self._run_document_mode(document, progress, cancel)
            else:
                result = self._run_text_mode(document, progress, cancel)

            self._check_cancel(cancel, 'finalization')
            result.record = self.post_processor.process(result.record)
            progress.stage('finalization', 1, 2)

            if self.repository is not None:
                self.repository.save(result.record)
            progress.stage('finalization', 2, 2)

        except Exception as e:
            logger.error(f"Error processing {document.name}: {str(e)}")
            raise

        logger.info(f"Successfully processed {len(result.record.transactions)} transactions")
        return result

    def _run_text_mode(self, document: Document, progress: ProgressTracker,
                       cancel: CancelCheck) -> PipelineResult:
        classifications = self._run_batched(list(document.pages), self.classifier.classify,
                                            'classification', progress, cancel)
        self._check_cancel(cancel, 'classification')

        ocr_pages = self._select_ocr_pages(document, classifications)
        page_texts = {
            page.index: page.native_text
            for page in document.pages if classifications[page.index].has_native_text
        }
        page_texts.update(self._run_batched(ocr_pages, self._ocr_page, 'ocr', progress, cancel))
        self._check_cancel(cancel, 'ocr')

        if not any(text and text.strip() for text in page_texts.values()):
            raise DocumentError(f"No text could be extracted from {document.name}")

        # Reassemble by page index; completion order never matters
        page_numbers = sorted(page_texts)
        normalized = self.normalizer.normalize([page_texts[i] for i in page_numbers], page_numbers)
        progress.stage('extraction', 0, 1)

        raw_response = self.extractor.extract_text(normalized)
        progress.stage('extraction', 2, 3)
        record = self.decoder.decode(raw_response)
        progress.stage('extraction', 1, 1)

        record = self._fill_from_text(record, normalized)
        return PipelineResult(
            record=record,
            normalized_text=normalized,
            classifications=[classifications[i] for i in sorted(classifications)],
            candidate_lines=find_candidate_transaction_lines(normalized),
        )

    def _run_document_mode(self, document: Document, progress: ProgressTracker,
                           cancel: CancelCheck) -> PipelineResult:
        self._check_cancel(cancel, 'extraction')
        progress.stage('extraction', 0, 1)

        raw_response = self.extractor.extract_document(document.data, document.mime_type)
        progress.stage('extraction', 2, 3)
        record = self.decoder.decode(raw_response)
        progress.stage('extraction', 1, 1)

        native_text = '\n'.join(page.native_text for page in document.pages if page.native_text)
        if native_text:
            record = self._fill_from_text(record, native_text)
        return PipelineResult(record=record)

    def _select_ocr_pages(self, document: Document,
                          classifications: Dict[int, PageClassification]) -> List[Page]:
        """Image-only pages worth high-resolution OCR; all of them when no page qualifies."""
        image_pages = [page for page in document.pages
                       if not classifications[page.index].has_native_text]
        if not any(c.is_transaction_page for c in classifications.values()):
            logger.warning("No page scored as a transaction page; processing every page")
            return image_pages

        selected = [page for page in image_pages if classifications[page.index].is_transaction_page]
        logger.info(f"Selected {len(selected)} of {len(image_pages)} image page(s) for OCR")
        return selected

    def _ocr_page(self, page: Page) -> str:
        try:
            image = self.renderer.render(page, self.settings.OCR_HIGH_DPI)
            return self.ocr.extract_text(image)
        except (RecognitionError, DocumentError) as e:
            logger.warning(f"Page {page.index} treated as empty: {e}")
            return ''

    def _run_batched(self, pages: Sequence[Page], task: Callable[[Page], Any], stage: str,
                     progress: ProgressTracker, cancel: CancelCheck) -> Dict[int, Any]:
        """Run `task` per page in batches, keyed by page index."""
        results: Dict[int, Any] = {}
        total = len(pages)
        if not total:
            progress.stage(stage, 1, 1)
            return results

        batch_size = max(1, self.settings.PAGE_BATCH_SIZE)
        with ThreadPoolExecutor(max_workers=max(1, self.settings.PAGE_WORKERS)) as executor:
            for start in range(0, total, batch_size):
                self._check_cancel(cancel, stage)
                batch = pages[start:start + batch_size]
                futures = {executor.submit(task, page): page.index for page in batch}
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
                    progress.stage(stage, len(results), total)
        return results

    @staticmethod
    def _check_cancel(cancel: CancelCheck, stage: str) -> None:
        if cancel():
            logger.info(f"Processing cancelled during {stage}")
            raise ProcessingCancelled(f"Cancelled during {stage}")

    @staticmethod
    def _fill_from_text(record: StatementRecord, text: str) -> StatementRecord:
        """Fill card issuer, last-4 and period the model left empty from the raw text."""
        card = record.card.model_copy(deep=True) if record.card else CardInfo()
        changed = False

        hints = extract_card_hints(text)
        if not card.issuer and hints.get('issuer'):
            card.issuer = hints['issuer']
            changed = True
        if not card.last4 and hints.get('last4'):
            card.last4 = hints['last4']
            changed = True
        if card.statement_period is None:
            period = extract_statement_period(text)
            if period:
                card.statement_period = StatementPeriod(from_date=period[0], to=period[1])
                changed = True

        if not changed:
            return record
        logger.info("Filled card details from statement text")
        return record.model_copy(update={'card': card})


def to_dataframe(record: StatementRecord) -> pd.DataFrame:
    """Flat transaction table, one row per transaction in statement order."""
    rows = []
    for transaction in record.transactions:
        derived = transaction.derived
        rows.append({
            'date': transaction.date,
            'description': transaction.description,
            'amount': transaction.amount,
            'currency': transaction.currency,
            'type': transaction.type.value,
            'category': derived.category if derived else None,
            'merchant': derived.merchant if derived else None,
        })
    return pd.DataFrame(rows, columns=['date', 'description', 'amount', 'currency',
                                       'type', 'category', 'merchant'])


def configure_logging(level: str, log_file: Optional[str]) -> None:
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(description='Extract transactions from credit card statements')
    parser.add_argument('file_path', help='Path to a PDF or image statement')
    parser.add_argument('-o', '--output', help='Output JSON file path')
    parser.add_argument('--csv', help='Also write transactions to this CSV file')
    parser.add_argument('--mode', choices=MODES, default='text',
                        help="'text' runs OCR and sends text; 'document' sends the file itself")
    parser.add_argument('--store', help='Append the statement to this JSON statement store')
    parser.add_argument('--narrative', action='store_true', help='Print a short spending summary')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    args = parser.parse_args(argv)

    configure_logging(default_settings.LOG_LEVEL, default_settings.LOG_FILE)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not Path(args.file_path).exists():
        print(f"Error: File not found - {args.file_path}")
        sys.exit(1)

    try:
        repository = JsonFileStatementRepository(args.store) if args.store else None
        processor = StatementProcessor(repository=repository)
        record = processor.process_file(args.file_path, mode=args.mode)

        output_data = record.to_json_dict()
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                json.dump(output_data, f, indent=2, ensure_ascii=False)
            print(f"Results written to: {args.output}")
        else:
            print(json.dumps(output_data, indent=2, ensure_ascii=False))

        if args.csv:
            to_dataframe(record).to_csv(args.csv, index=False)
            print(f"Transactions written to: {args.csv}")

        print("\nSummary:")
        print(f"- Total transactions processed: {len(record.transactions)}")
        if record.summary and record.summary.total_spend is not None:
            print(f"- Total spend: {record.summary.total_spend}")

        if record.transactions:
            categories = to_dataframe(record)['category'].fillna('Uncategorized').value_counts()
            print("\nCategory Breakdown:")
            for category, count in sorted(categories.items()):
                print(f"- {category}: {count} transactions")

        if args.narrative:
            print(f"\n{processor.extractor.generate_narrative(record)}")

    except StatementError as e:
        logger.error(f"Processing failed: {str(e)}")
        print(f"Error: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
