"""
Tolerant decoding of model responses into StatementRecord.

Decoding escalates: strict typed decode, then sanitization passes and a
second strict decode, then an untyped parse mapped field by field onto the
typed models.
"""
import json
import logging
import re
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from errors import ExtractionDecodeError
from schema import (
    DEFAULT_CURRENCY,
    CardInfo,
    DerivedInfo,
    ForeignExchange,
    StatementPeriod,
    StatementRecord,
    StatementSummary,
    Transaction,
    TransactionType,
    to_decimal,
)

logger = logging.getLogger(__name__)

# Untyped parse result
JsonValue = Union[Dict[str, Any], List[Any], str, int, Decimal, bool, None]

MAX_COMMA_PASSES = 10
MAX_EXPANDED_EXPONENT = 30

_FENCE = re.compile(r'```[\w-]*[ \t]*\n?(.*?)\n?[ \t]*```', re.DOTALL)
_STRING_LITERAL = re.compile(r'"(?:\\.|[^"\\])*"', re.DOTALL)
_CONTROL_OUTSIDE = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')
_CONTROL_INSIDE = re.compile(r'[\x00-\x1f\x7f]')
_DIGIT_COMMA = re.compile(r'(\d),(\d)')
_TRAILING_COMMA = re.compile(r',\s*([}\]])')
_BARE_KEY = re.compile(r'([{,]\s*)([A-Za-z_][\w\-.]*)(\s*:)')
_SCIENTIFIC = re.compile(r'(?<![\w.])-?\d+(?:\.\d+)?[eE][+-]?\d+(?![\w.])')


def strip_code_fence(text: str) -> str:
    """Return the content of a markdown code fence, or the text without stray backticks."""
    stripped = text.strip()
    match = _FENCE.search(stripped)
    if match:
        return match.group(1).strip()
    stripped = re.sub(r'^```[\w-]*\s*', '', stripped)
    stripped = re.sub(r'\s*```$', '', stripped)
    return stripped.strip('`').strip()


def _outside_strings(text: str, fn: Callable[[str], str]) -> str:
    """Apply `fn` to every span of `text` that is not a JSON string literal."""
    pieces = []
    last = 0
    for match in _STRING_LITERAL.finditer(text):
        pieces.append(fn(text[last:match.start()]))
        pieces.append(match.group(0))
        last = match.end()
    pieces.append(fn(text[last:]))
    return ''.join(pieces)


def remove_digit_commas(text: str) -> str:
    for _ in range(MAX_COMMA_PASSES):
        updated = _outside_strings(text, lambda span: _DIGIT_COMMA.sub(r'\1\2', span))
        if updated == text:
            break
        text = updated
    return text


def strip_control_characters(text: str) -> str:
    pieces = []
    last = 0
    for match in _STRING_LITERAL.finditer(text):
        pieces.append(_CONTROL_OUTSIDE.sub('', text[last:match.start()]))
        pieces.append(_CONTROL_INSIDE.sub(' ', match.group(0)))
        last = match.end()
    pieces.append(_CONTROL_OUTSIDE.sub('', text[last:]))
    return ''.join(pieces)


def remove_trailing_commas(text: str) -> str:
    return _outside_strings(text, lambda span: _TRAILING_COMMA.sub(r'\1', span))


def quote_bare_keys(text: str) -> str:
    return _outside_strings(text, lambda span: _BARE_KEY.sub(r'\1"\2"\3', span))


def expand_scientific_notation(text: str) -> str:
    def expand(match):
        number = Decimal(match.group(0))
        # Huge exponents would expand into enormous digit strings
        if abs(number.adjusted()) > MAX_EXPANDED_EXPONENT:
            return match.group(0)
        return format(number, 'f')
    return _outside_strings(text, lambda span: _SCIENTIFIC.sub(expand, span))


def isolate_json_value(text: str) -> str:
    """Drop prose before the first `{`/`[` and after the last `}`/`]`."""
    starts = [i for i in (text.find('{'), text.find('[')) if i != -1]
    if not starts:
        return text
    end = max(text.rfind('}'), text.rfind(']'))
    start = min(starts)
    return text[start:end + 1] if end > start else text


DEFAULT_SANITIZERS: Tuple[Callable[[str], str], ...] = (
    remove_digit_commas,
    strip_control_characters,
    remove_trailing_commas,
    quote_bare_keys,
    expand_scientific_notation,
    isolate_json_value,
)


class TolerantJsonDecoder:
    """Turns raw model output into a StatementRecord or raises ExtractionDecodeError."""

    def __init__(self, sanitizers: Sequence[Callable[[str], str]] = DEFAULT_SANITIZERS):
        self.sanitizers = tuple(sanitizers)
        self.logger = logging.getLogger(self.__class__.__name__)

    def decode(self, raw_text: str) -> StatementRecord:
        """
        Decode a model response.

        Args:
            raw_text: Response text, possibly fenced and malformed

        Returns:
            StatementRecord with at least one transaction

        Raises:
            ExtractionDecodeError: when every strategy fails or no transactions survive
        """
        text = strip_code_fence(raw_text or '')
        if not text:
            raise ExtractionDecodeError("Extraction response is empty")

        record = self._strict_decode(text)
        if record is not None:
            return record

        sanitized = self.sanitize(text)
        record = self._strict_decode(sanitized)
        if record is not None:
            self.logger.warning("Response decoded after JSON sanitization")
            return record

        tree = self._parse_tree(sanitized)
        if tree is None:
            self.logger.error("Response is not parseable as JSON after sanitization")
            raise ExtractionDecodeError("Response is not parseable as JSON")

        self.logger.warning("Strict decode failed, reconstructing statement from untyped JSON")
        record = statement_from_tree(tree)
        if not record.transactions:
            raise ExtractionDecodeError("No transactions could be reconstructed from the response")
        return record

    def sanitize(self, text: str) -> str:
        for sanitizer in self.sanitizers:
            text = sanitizer(text)
        return text

    def _strict_decode(self, text: str) -> Optional[StatementRecord]:
        try:
            data = json.loads(text, parse_float=Decimal)
            record = StatementRecord.model_validate(data)
        except ValueError as e:
            # json.JSONDecodeError and pydantic ValidationError are both ValueErrors
            self.logger.debug(f"Strict decode failed: {e}")
            return None
        return record if record.transactions else None

    def _parse_tree(self, text: str) -> Optional[JsonValue]:
        try:
            return json.loads(text, parse_float=Decimal)
        except json.JSONDecodeError as e:
            repaired = text[:e.pos] + text[e.pos + 1:]
        try:
            tree = json.loads(repaired, parse_float=Decimal)
        except json.JSONDecodeError:
            return None
        self.logger.warning("Removed one offending character to parse the response")
        return tree


def _first(node: Any, *keys: str) -> Any:
    if not isinstance(node, dict):
        return None
    for key in keys:
        value = node.get(key)
        if value is not None:
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def statement_from_tree(tree: JsonValue) -> StatementRecord:
    """
    Map an untyped JSON tree onto StatementRecord, field by field.

    Card and summary keys are accepted in snake_case or camelCase. Transaction
    rows without a date or description are dropped; rows keep their order.

    Raises:
        ExtractionDecodeError: when the tree is not an object or array
    """
    if isinstance(tree, list):
        tree = {'transactions': tree}
    if not isinstance(tree, dict):
        raise ExtractionDecodeError(f"Top-level JSON value is a {type(tree).__name__}, not an object")

    card = _card_from_tree(_first(tree, 'card', 'card_info', 'cardInfo'))
    transactions, dropped = _transactions_from_tree(tree.get('transactions'))
    summary = _summary_from_tree(tree.get('summary'))

    if dropped:
        logger.warning(f"Dropped {dropped} transaction row(s) missing a date or description")
    logger.info(f"Reconstructed {len(transactions)} transaction(s)")
    return StatementRecord(card=card, transactions=transactions, summary=summary)


def _card_from_tree(node: Any) -> Optional[CardInfo]:
    if not isinstance(node, dict):
        return None

    last4 = _text(_first(node, 'last4', 'last_4', 'lastFour'))
    if not last4:
        number = _first(node, 'number', 'card_number', 'cardNumber')
        if number is not None:
            compact = re.sub(r'\s', '', str(number))
            last4 = compact[-4:] if len(compact) >= 4 else None

    period = None
    period_node = _first(node, 'statement_period', 'statementPeriod')
    start = _text(_first(period_node, 'from', 'from_date', 'fromDate', 'start'))
    end = _text(_first(period_node, 'to', 'to_date', 'toDate', 'end'))
    if start and end:
        period = StatementPeriod(from_date=start, to=end)

    card = CardInfo(
        issuer=_text(_first(node, 'issuer', 'name', 'bank')),
        product=_text(_first(node, 'product', 'card_type', 'cardType')),
        last4=last4,
        statement_period=period,
    )
    if card.issuer is None and card.product is None and card.last4 is None and period is None:
        return None
    return card


def _transactions_from_tree(rows: Any) -> Tuple[List[Transaction], int]:
    if not isinstance(rows, list):
        return [], 0

    transactions = []
    dropped = 0
    for row in rows:
        date = _text(_first(row, 'date', 'transaction_date', 'transactionDate'))
        description = _text(_first(row, 'description', 'narration', 'particulars', 'details'))
        if not date or not description:
            dropped += 1
            continue

        amount = to_decimal(row.get('amount'))
        marker = str(row.get('type') or '').strip().lower()
        is_credit = 'credit' in marker or marker in ('cr', 'c')

        transactions.append(Transaction(
            date=date,
            description=description,
            amount=amount if amount is not None else Decimal('0'),
            currency=_text(row.get('currency')) or DEFAULT_CURRENCY,
            type=TransactionType.CREDIT if is_credit else TransactionType.DEBIT,
            derived=_derived_from_tree(row),
        ))
    return transactions, dropped


def _derived_from_tree(row: Dict[str, Any]) -> Optional[DerivedInfo]:
    # category, merchant and fx may sit under "derived" or on the row itself
    node = row.get('derived') if isinstance(row.get('derived'), dict) else {}

    recurring = _first(node, 'is_recurring', 'isRecurring')
    if recurring is None:
        recurring = _first(row, 'is_recurring', 'isRecurring')

    fx = None
    fx_node = _first(node, 'fx') or _first(row, 'fx')
    original_amount = to_decimal(_first(fx_node, 'original_amount', 'originalAmount'))
    original_currency = _text(_first(fx_node, 'original_currency', 'originalCurrency'))
    if original_amount is not None and original_currency:
        fx = ForeignExchange(original_amount=original_amount, original_currency=original_currency)

    derived = DerivedInfo(
        category=_text(node.get('category')) or _text(row.get('category')),
        merchant=_text(node.get('merchant')) or _text(row.get('merchant')),
        is_recurring=recurring if isinstance(recurring, bool) else None,
        fx=fx,
    )
    if all(value is None for value in derived.model_dump().values()):
        return None
    return derived


def _summary_from_tree(node: Any) -> Optional[StatementSummary]:
    if not isinstance(node, dict):
        return None

    summary = StatementSummary(
        total_spend=to_decimal(_first(node, 'total_spend', 'totalSpend', 'total_debits', 'totalDebits')),
        total_credits=to_decimal(_first(node, 'total_credits', 'totalCredits')),
        opening_balance=to_decimal(_first(node, 'opening_balance', 'openingBalance')),
        closing_balance=to_decimal(_first(node, 'closing_balance', 'closingBalance')),
        min_payment=to_decimal(_first(node, 'min_payment', 'minPayment', 'minimum_due', 'minimumDue')),
        due_date=_text(_first(node, 'due_date', 'dueDate')),
    )
    if all(value is None for value in summary.model_dump().values()):
        return None
    return summary
