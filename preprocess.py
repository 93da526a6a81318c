import re
import logging
from datetime import date, datetime
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from dateutil import parser

import heuristics

logger = logging.getLogger(__name__)

TABLE_START = '__TABLE_START__'
TABLE_END = '__TABLE_END__'
_TABLE_BLOCK = re.compile(rf'{TABLE_START}\n(.*?)\n{TABLE_END}', re.DOTALL)

ISO_DATE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
ISO_DATETIME = re.compile(r'^(\d{4}-\d{2}-\d{2})[T ]\d')

DATE_FORMATS = (
    '%d/%m/%Y',
    '%m/%d/%Y',
    '%d-%m-%Y',
    '%m-%d-%Y',
    '%Y/%m/%d',
    '%d %b %Y',
    '%d %b %y',
    '%d %B %Y',
    '%d %B %y',
)

_MONTH_NAME = re.compile(rf"(?<![a-z])({'|'.join(heuristics.MONTHS)})", re.IGNORECASE)
_DATEUTIL_DEFAULT = datetime(2000, 1, 1)
MIN_YEAR = 1990
MAX_YEAR = 2100


def normalize_date(value: Optional[str]) -> Optional[str]:
    """
    Normalize a date string to YYYY-MM-DD.

    Canonical input is returned as is. Otherwise the fixed format list is
    tried in order, then a digit-group scan (day-month-year, two-digit years
    plus 2000), then dateutil with day-first parsing.

    Args:
        value: Date string in any of the supported formats

    Returns:
        Canonical date, or the stripped input when nothing parses
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text or ISO_DATE.match(text):
        return text

    iso_prefix = ISO_DATETIME.match(text)
    if iso_prefix:
        return iso_prefix.group(1)

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).strftime('%Y-%m-%d')
        except ValueError:
            continue

    scanned = _date_from_digit_groups(text)
    if scanned:
        return scanned

    try:
        parsed = parser.parse(text, dayfirst=True, default=_DATEUTIL_DEFAULT)
    except (ValueError, OverflowError):
        parsed = None
    if parsed is not None and MIN_YEAR <= parsed.year <= MAX_YEAR:
        return parsed.strftime('%Y-%m-%d')

    logger.warning(f"Could not normalize date: {text}")
    return text


def _date_from_digit_groups(text: str) -> Optional[str]:
    numbers = re.findall(r'\d+', text)
    month_match = _MONTH_NAME.search(text)

    if month_match and len(numbers) >= 2:
        month = heuristics.MONTHS.index(month_match.group(1).lower()) + 1
        day, year = int(numbers[0]), int(numbers[1])
    elif len(numbers) >= 3:
        if len(numbers[0]) == 4:
            year, month, day = int(numbers[0]), int(numbers[1]), int(numbers[2])
        else:
            day, month, year = int(numbers[0]), int(numbers[1]), int(numbers[2])
    else:
        return None

    if year < 100:
        year += 2000
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


class TextNormalizer:
    """
    Cleans page text for the extraction prompt while leaving detected
    transaction tables untouched apart from marker and date fixes.
    """

    def __init__(self,
                 header_vocabulary: Sequence[str] = heuristics.TABLE_HEADER_VOCABULARY,
                 min_header_hits: int = heuristics.TABLE_HEADER_MIN_HITS,
                 min_run: int = heuristics.TABLE_MIN_RUN,
                 date_pattern: Pattern = heuristics.ROW_DATE_PATTERN,
                 amount_pattern: Pattern = heuristics.ROW_AMOUNT_PATTERN):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.header_patterns = [re.compile(rf'\b{re.escape(word)}s?\b', re.IGNORECASE)
                                for word in header_vocabulary]
        self.min_header_hits = min_header_hits
        self.min_run = min_run
        self.date_pattern = date_pattern
        self.amount_pattern = amount_pattern

    def normalize(self, page_texts: Sequence[str], page_numbers: Optional[Sequence[int]] = None) -> str:
        """
        Clean and join page texts into one prompt-ready string.

        Args:
            page_texts: Text of each page, in document order
            page_numbers: Page numbers for the `===PAGE n===` delimiters;
                defaults to 1..len(page_texts)

        Returns:
            Page-delimited text with empty lines removed
        """
        if page_numbers is None:
            page_numbers = range(1, len(page_texts) + 1)

        sections = []
        tables = 0
        for number, text in zip(page_numbers, page_texts):
            marked = self.mark_tables(text or '')
            tables += marked.count(TABLE_START)
            sections.append(f"===PAGE {number}===\n{self._clean_marked(marked)}")

        joined = '\n'.join(sections)
        result = '\n'.join(line for line in joined.split('\n') if line.strip())
        self.logger.info(f"Normalized {len(sections)} page(s), {tables} table region(s) preserved")
        return result

    def is_table_header(self, line: str) -> bool:
        hits = sum(1 for pattern in self.header_patterns if pattern.search(line))
        return hits >= self.min_header_hits

    def is_transaction_row(self, line: str) -> bool:
        return bool(self.date_pattern.search(line)) and bool(self.amount_pattern.search(line))

    def mark_tables(self, page_text: str) -> str:
        """Wrap runs of `min_run` or more header/row lines with table markers."""
        lines = page_text.split('\n')
        qualifying = [bool(line.strip()) and (self.is_table_header(line) or self.is_transaction_row(line))
                      for line in lines]

        output = []
        i = 0
        while i < len(lines):
            if not qualifying[i]:
                output.append(lines[i])
                i += 1
                continue
            end = i
            while end < len(lines) and qualifying[end]:
                end += 1
            run = lines[i:end]
            if len(run) >= self.min_run:
                output.append(TABLE_START)
                output.extend(run)
                output.append(TABLE_END)
            else:
                output.extend(run)
            i = end
        return '\n'.join(output)

    def _clean_marked(self, marked: str) -> str:
        # re.split with one group alternates outside/table segments
        parts = _TABLE_BLOCK.split(marked)
        cleaned = []
        for i, part in enumerate(parts):
            cleaned.append(self.clean_table(part) if i % 2 else self.clean_text(part))
        return '\n'.join(cleaned)

    def clean_text(self, text: str) -> str:
        """Normalization for text outside table regions."""
        text = re.sub(r'(\w)-[^\S\n]*\n[^\S\n]*(\w)', r'\1\2', text)
        text = re.sub(r'[^\S\n]+', ' ', text)
        text = self._canonical_markers(text)
        text = re.sub(r'\bRs\.?\s*(?=\d)', 'Rs. ', text, flags=re.IGNORECASE)
        text = re.sub(r'\bINR\s*(?=\d)', 'INR ', text)
        text = re.sub(r'₹\s+(?=\d)', '₹', text)
        text = self._canonical_dates(text)
        return '\n'.join(line.strip() for line in text.split('\n'))

    def clean_table(self, text: str) -> str:
        """Column spacing is kept; only markers and date separators change."""
        return self._canonical_dates(self._canonical_markers(text))

    @staticmethod
    def _canonical_markers(text: str) -> str:
        text = re.sub(r'C\.R\.', 'CR', text)
        text = re.sub(r'D\.R\.', 'DR', text)
        return re.sub(r'(?<=\d)(\s*)(cr|dr)\b\.?',
                      lambda m: m.group(1) + m.group(2).upper(), text, flags=re.IGNORECASE)

    @staticmethod
    def _canonical_dates(text: str) -> str:
        return re.sub(r'\b(\d{1,2})/(\d{1,2})/(\d{2,4})\b', r'\1-\2-\3', text)


_SKIP_LINE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE) for pattern in (
        r'^page \d+',
        r'^statement (period|date)',
        r'^(opening|closing|previous|total)\b',
        r'^minimum amount due',
        r'^payment due date',
        r'^===PAGE \d+===$',
    )
]


def find_candidate_transaction_lines(text: str) -> List[str]:
    """
    Lines that look like transaction rows (a date and an amount), in order.

    Used to cross-check the decoded record; summary and header lines are skipped.
    """
    candidates = []
    for raw_line in text.split('\n'):
        line = raw_line.strip()
        if len(line) < 5 or any(pattern.search(line) for pattern in _SKIP_LINE_PATTERNS):
            continue
        if heuristics.ROW_DATE_PATTERN.search(line) and heuristics.ROW_AMOUNT_PATTERN.search(line):
            candidates.append(line)
    return candidates


def extract_statement_period(text: str) -> Optional[Tuple[str, str]]:
    """
    Find the statement period in raw text.

    Returns:
        (from, to) as found in the text, or None. A lone statement date is
        used for both ends.
    """
    for pattern in heuristics.STATEMENT_PERIOD_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        groups = [group for group in match.groups() if group]
        if len(groups) >= 2:
            return groups[0].strip(), groups[1].strip()
        if groups:
            return groups[0].strip(), groups[0].strip()
    return None


def extract_card_hints(text: str) -> Dict[str, str]:
    """Masked card last-4 and a known issuer name found in raw text."""
    hints = {}

    card_match = heuristics.CARD_LAST4_PATTERN.search(text)
    if card_match:
        hints['last4'] = card_match.group(1) or card_match.group(2)

    # The issuer named earliest in the text wins, normally the header
    earliest = None
    for issuer in heuristics.KNOWN_ISSUERS:
        match = re.search(rf'\b{re.escape(issuer)}\b', text, re.IGNORECASE)
        if match and (earliest is None or match.start() < earliest[0]):
            earliest = (match.start(), issuer)
    if earliest:
        hints['issuer'] = earliest[1]

    return hints
