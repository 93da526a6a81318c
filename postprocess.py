"""
Deterministic clean-up applied to every decoded statement.
"""
import re
import logging
from decimal import Decimal
from typing import List, Optional

from categorizer import TransactionCategorizer
from config import Settings, settings as default_settings
from preprocess import normalize_date
from schema import (
    CardInfo,
    DerivedInfo,
    StatementRecord,
    StatementSummary,
    Transaction,
    TransactionType,
)

logger = logging.getLogger(__name__)

_DISALLOWED_DESCRIPTION_CHARS = re.compile(r'[^\w\s\-.,/]|_')


def clean_description(description: str) -> str:
    """Keep letters, digits, spaces and - . , / and collapse whitespace."""
    text = _DISALLOWED_DESCRIPTION_CHARS.sub('', description or '')
    return re.sub(r'\s+', ' ', text).strip()


class StatementPostProcessor:
    """
    Normalizes dates, descriptions, amounts and currencies, applies category
    rules and derives a summary when the statement has none.

    `process` works on a deep copy and is idempotent.
    """

    def __init__(self, categorizer: Optional[TransactionCategorizer] = None,
                 settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.categorizer = categorizer or TransactionCategorizer()
        self.logger = logging.getLogger(self.__class__.__name__)

    def process(self, record: StatementRecord) -> StatementRecord:
        """
        Return a normalized copy of `record`.

        Args:
            record: Decoded statement

        Returns:
            New StatementRecord; transaction order is unchanged
        """
        result = record.model_copy(deep=True)

        if result.card:
            self._process_card(result.card)
        for transaction in result.transactions:
            self._process_transaction(transaction)
        result.summary = self._process_summary(result.summary, result.transactions)

        self.logger.info(f"Post-processed {len(result.transactions)} transaction(s)")
        return result

    def _process_card(self, card: CardInfo) -> None:
        if card.issuer:
            card.issuer = card.issuer.strip()
        if card.last4:
            digits = re.sub(r'\D', '', card.last4)
            if len(digits) >= 4:
                card.last4 = digits[-4:]
        if card.statement_period:
            card.statement_period.from_date = normalize_date(card.statement_period.from_date)
            card.statement_period.to = normalize_date(card.statement_period.to)

    def _process_transaction(self, transaction: Transaction) -> None:
        raw_description = transaction.description
        transaction.date = normalize_date(transaction.date)
        transaction.description = clean_description(raw_description)
        transaction.amount = abs(transaction.amount)
        transaction.currency = (transaction.currency or '').strip().upper() or self.settings.DEFAULT_CURRENCY

        derived = transaction.derived or DerivedInfo()
        derived.category = self.categorizer.categorize(transaction.description, derived.category,
                                                       raw_description=raw_description)
        if not derived.merchant:
            derived.merchant = self.categorizer.extract_merchant(transaction.description)
        if derived.fx:
            derived.fx.original_amount = abs(derived.fx.original_amount)
            derived.fx.original_currency = derived.fx.original_currency.strip().upper()
        has_values = any(value is not None for value in
                         (derived.category, derived.merchant, derived.is_recurring, derived.fx))
        transaction.derived = derived if has_values else None

    def _process_summary(self, summary: Optional[StatementSummary],
                         transactions: List[Transaction]) -> StatementSummary:
        if summary is None:
            debits = sum((t.amount for t in transactions if t.type is TransactionType.DEBIT), Decimal('0'))
            credits = sum((t.amount for t in transactions if t.type is TransactionType.CREDIT), Decimal('0'))
            self.logger.info(f"Derived summary: spend={debits} credits={credits}")
            return StatementSummary(total_spend=debits, total_credits=credits)

        for field in ('total_spend', 'total_credits', 'opening_balance', 'closing_balance', 'min_payment'):
            value = getattr(summary, field)
            if value is not None:
                setattr(summary, field, abs(value))
        if summary.due_date:
            summary.due_date = normalize_date(summary.due_date)
        return summary
