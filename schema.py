from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_CURRENCY = "INR"

_NUMBER = re.compile(r'-?\d+(?:\.\d+)?')


def to_decimal(value: Any) -> Optional[Decimal]:
    """
    Convert numeric, numeric-string or generic number values to Decimal.

    Currency symbols, thousands separators and whitespace are ignored, and an
    amount in accounting parentheses is read as negative.

    Returns:
        Decimal value, or None when the input carries no finite number
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        number = Decimal(str(value))
        return number if number.is_finite() else None
    if not isinstance(value, str):
        return None

    text = value.strip()
    negative = text.startswith('(') and text.endswith(')')
    compact = re.sub(r'[\s,]', '', text)
    embedded = _NUMBER.search(compact)
    for candidate in (compact, embedded.group(0) if embedded else ''):
        if not candidate:
            continue
        try:
            number = Decimal(candidate)
        except InvalidOperation:
            continue
        if not number.is_finite():
            continue
        return -number if negative else number
    return None


def _magnitude(value: Any) -> Optional[Decimal]:
    number = to_decimal(value)
    return abs(number) if number is not None else None


class TransactionType(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"

    @classmethod
    def from_marker(cls, value: Any) -> "TransactionType":
        """Map debit/credit markers (debit, credit, DR, CR, D, C) to a type."""
        if isinstance(value, cls):
            return value
        marker = str(value).strip().lower().rstrip('.')
        if marker in ('debit', 'dr', 'd'):
            return cls.DEBIT
        if marker in ('credit', 'cr', 'c'):
            return cls.CREDIT
        raise ValueError(f"Unknown transaction type marker: {value!r}")


class StatementPeriod(BaseModel):
    """Statement date range; both ends canonical after post-processing."""
    model_config = ConfigDict(populate_by_name=True)

    from_date: str = Field(..., alias="from", description="First day covered by the statement")
    to: str = Field(..., description="Last day covered by the statement")


class CardInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    issuer: Optional[str] = None
    product: Optional[str] = None
    last4: Optional[str] = None
    statement_period: Optional[StatementPeriod] = None


class ForeignExchange(BaseModel):
    original_amount: Decimal
    original_currency: str

    @field_validator('original_amount', mode='before')
    @classmethod
    def clean_original_amount(cls, v):
        number = _magnitude(v)
        if number is None:
            raise ValueError(f"Not a monetary amount: {v!r}")
        return number


class DerivedInfo(BaseModel):
    category: Optional[str] = None
    merchant: Optional[str] = None
    is_recurring: Optional[bool] = None
    fx: Optional[ForeignExchange] = None


class Transaction(BaseModel):
    """Single statement line item. Amounts are magnitudes; direction lives in `type`."""

    date: str = Field(..., description="Transaction date, YYYY-MM-DD once post-processed")
    description: str
    amount: Decimal = Field(..., ge=0)
    currency: str = DEFAULT_CURRENCY
    type: TransactionType
    derived: Optional[DerivedInfo] = None

    @field_validator('date', 'description', mode='before')
    @classmethod
    def require_text(cls, v):
        if v is None or not str(v).strip():
            raise ValueError("Date and description must not be blank")
        return str(v).strip()

    @field_validator('amount', mode='before')
    @classmethod
    def clean_amount(cls, v):
        """Strip currency symbols and separators and drop the sign."""
        number = _magnitude(v)
        if number is None:
            raise ValueError(f"Not a monetary amount: {v!r}")
        return number

    @field_validator('currency', mode='before')
    @classmethod
    def default_currency(cls, v):
        if v is None or not str(v).strip():
            return DEFAULT_CURRENCY
        return str(v).strip().upper()

    @field_validator('type', mode='before')
    @classmethod
    def parse_type(cls, v):
        return TransactionType.from_marker(v)


class StatementSummary(BaseModel):
    total_spend: Optional[Decimal] = None
    total_credits: Optional[Decimal] = None
    opening_balance: Optional[Decimal] = None
    closing_balance: Optional[Decimal] = None
    min_payment: Optional[Decimal] = None
    due_date: Optional[str] = None

    @field_validator('total_spend', 'total_credits', 'opening_balance',
                     'closing_balance', 'min_payment', mode='before')
    @classmethod
    def clean_magnitudes(cls, v):
        return _magnitude(v)


class StatementRecord(BaseModel):
    """The pipeline's output: card metadata, ordered transactions and a summary."""
    card: Optional[CardInfo] = None
    transactions: List[Transaction] = Field(default_factory=list)
    summary: Optional[StatementSummary] = None

    @property
    def last4(self) -> Optional[str]:
        return self.card.last4 if self.card else None

    @property
    def statement_period(self) -> Optional[StatementPeriod]:
        return self.card.statement_period if self.card else None

    def to_json_dict(self) -> Dict[str, Any]:
        """JSON-ready dict using the wire aliases (e.g. `from`)."""
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)
