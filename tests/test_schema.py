from decimal import Decimal

import pytest
from pydantic import ValidationError

from schema import (
    CardInfo,
    StatementPeriod,
    StatementRecord,
    StatementSummary,
    Transaction,
    TransactionType,
    to_decimal,
)


@pytest.mark.parametrize("raw, expected", [
    ("₹1,234.50", Decimal("1234.50")),
    ("Rs. 99", Decimal("99")),
    ("(100.00)", Decimal("-100.00")),
    ("1.5e3", Decimal("1500")),
    (12.5, Decimal("12.5")),
    (7, Decimal("7")),
])
def test_to_decimal_accepts_common_encodings(raw, expected):
    assert to_decimal(raw) == expected


@pytest.mark.parametrize("raw", ["abc", "", "-", None, True, "nan", {"amount": 1}])
def test_to_decimal_rejects_non_numbers(raw):
    assert to_decimal(raw) is None


def test_transaction_normalizes_amount_type_and_currency():
    transaction = Transaction(date="2024-03-12", description="SWIGGY", amount="-450.00", type="Dr", currency=None)

    assert transaction.amount == Decimal("450.00")
    assert transaction.type is TransactionType.DEBIT
    assert transaction.currency == "INR"


def test_transaction_credit_markers():
    assert Transaction(date="d", description="x", amount=1, type="CR").type is TransactionType.CREDIT
    assert Transaction(date="d", description="x", amount=1, type="credit").type is TransactionType.CREDIT
    assert Transaction(date="d", description="x", amount=1, type="c", currency="usd").currency == "USD"


def test_transaction_rejects_unknown_type_and_missing_amount():
    with pytest.raises(ValidationError):
        Transaction(date="2024-03-12", description="x", amount=1, type="transfer")
    with pytest.raises(ValidationError):
        Transaction(date="2024-03-12", description="x", amount="n/a", type="debit")


def test_summary_magnitudes_are_non_negative():
    summary = StatementSummary(total_spend="-1,200.00", min_payment=-60)

    assert summary.total_spend == Decimal("1200.00")
    assert summary.min_payment == Decimal("60")
    assert summary.opening_balance is None


def test_record_json_uses_from_alias_and_reads_it_back():
    record = StatementRecord(
        card=CardInfo(issuer="HDFC", last4="1234",
                      statement_period=StatementPeriod(from_date="2024-03-01", to="2024-03-31")),
        transactions=[Transaction(date="2024-03-12", description="SWIGGY", amount="450.00", type="debit")],
    )

    data = record.to_json_dict()
    assert data["card"]["statement_period"] == {"from": "2024-03-01", "to": "2024-03-31"}
    assert data["transactions"][0]["amount"] == "450.00"

    restored = StatementRecord.model_validate(data)
    assert restored.to_json_dict() == data
    assert restored.last4 == "1234"


@pytest.mark.parametrize("field", ["date", "description"])
def test_transaction_requires_date_and_description(field):
    values = {"date": "2024-03-12", "description": "UBER", "amount": 1, "type": "debit"}
    values[field] = "   "

    with pytest.raises(ValidationError):
        Transaction(**values)
