from decimal import Decimal

import pytest

from categorizer import TransactionCategorizer
from postprocess import StatementPostProcessor, clean_description
from schema import (
    CardInfo,
    DerivedInfo,
    ForeignExchange,
    StatementPeriod,
    StatementRecord,
    StatementSummary,
    Transaction,
)


@pytest.fixture
def categorizer():
    return TransactionCategorizer()


@pytest.fixture
def post_processor(settings):
    return StatementPostProcessor(settings=settings)


def debit(description, amount="100.00", category=None, date="2024-03-12"):
    derived = DerivedInfo(category=category) if category else None
    return Transaction(date=date, description=description, amount=amount, type="debit", derived=derived)


@pytest.mark.parametrize("description, expected", [
    ("BPCL FUEL STATION SWIGGY", "Fuel"),
    ("UPI-SWIGGY-XXX", "Groceries"),
    ("SWIGGY INSTAMART ORDER", "Groceries"),
    ("SWIGGY BANGALORE", "Food & Dining"),
    ("ZOMATO ORDER 8812", "Food & Dining"),
    ("BLINKIT GURGAON", "Groceries"),
])
def test_category_rules_in_priority_order(categorizer, description, expected):
    assert categorizer.categorize(description) == expected


def test_upi_fallback_only_replaces_placeholders(categorizer):
    assert categorizer.categorize("PAYMENT TO rahulokaxis", None, raw_description="PAYMENT TO rahul@okaxis") == "UPI"
    assert categorizer.categorize("UPI RAMESH KUMAR", "Other") == "UPI"
    assert categorizer.categorize("UPI RAMESH KUMAR", "Shopping") == "Shopping"
    assert categorizer.categorize("AMAZON PAY", None) is None


def test_merchant_extraction(categorizer):
    assert categorizer.extract_merchant("SWIGGY INSTAMART ORDER") == "Swiggy Instamart"
    assert categorizer.extract_merchant("POS 1234 AMAZON SELLER") == "Amazon"
    assert categorizer.extract_merchant("BHARAT PETROLEM PUMP") == "Bharat Petroleum"
    assert categorizer.extract_merchant("CONSOLA PAYMENTS") is None


def test_description_cleaning():
    assert clean_description("  SWIGGY*  ORDER #123 _x ") == "SWIGGY ORDER 123 x"
    assert clean_description("UPI-SWIGGY-XXX/2024.03") == "UPI-SWIGGY-XXX/2024.03"


def test_transactions_are_normalized(post_processor):
    record = StatementRecord(transactions=[
        Transaction(date="12/03/2024", description="PAYMENT TO rahul@okaxis", amount="250", type="debit",
                    currency=" usd ",
                    derived=DerivedInfo(category="Other", fx=ForeignExchange(original_amount="-3.00",
                                                                             original_currency="usd "))),
    ])

    transaction = post_processor.process(record).transactions[0]

    assert transaction.date == "2024-03-12"
    assert transaction.description == "PAYMENT TO rahulokaxis"
    assert transaction.currency == "USD"
    assert transaction.derived.category == "UPI"
    assert transaction.derived.fx.original_amount == Decimal("3.00")
    assert transaction.derived.fx.original_currency == "USD"


def test_model_category_kept_when_no_rule_matches(post_processor):
    record = StatementRecord(transactions=[debit("APPLE SERVICES", category="Subscriptions")])

    assert post_processor.process(record).transactions[0].derived.category == "Subscriptions"


def test_rules_override_model_category(post_processor):
    record = StatementRecord(transactions=[debit("UPI-SWIGGY-XXX", category="Food & Dining")])

    derived = post_processor.process(record).transactions[0].derived
    assert derived.category == "Groceries"
    assert derived.merchant == "Swiggy"


def test_card_is_normalized(post_processor):
    record = StatementRecord(
        card=CardInfo(issuer=" HDFC Bank ", last4="XX 1234",
                      statement_period=StatementPeriod(from_date="01/03/2024", to="31 Mar 2024")),
        transactions=[debit("UBER")],
    )

    card = post_processor.process(record).card

    assert card.issuer == "HDFC Bank"
    assert card.last4 == "1234"
    assert (card.statement_period.from_date, card.statement_period.to) == ("2024-03-01", "2024-03-31")


def test_summary_is_derived_when_absent(post_processor):
    record = StatementRecord(transactions=[
        debit("SWIGGY", "450.00"),
        debit("AMAZON", "1299.00"),
        Transaction(date="2024-03-15", description="REFUND", amount="500.00", type="credit"),
    ])

    summary = post_processor.process(record).summary

    assert summary.total_spend == Decimal("1749.00")
    assert summary.total_credits == Decimal("500.00")


def test_existing_summary_is_kept(post_processor):
    record = StatementRecord(transactions=[debit("SWIGGY", "450.00")],
                             summary=StatementSummary(total_spend="9999.00", due_date="05/04/2024"))

    summary = post_processor.process(record).summary

    assert summary.total_spend == Decimal("9999.00")
    assert summary.total_credits is None
    assert summary.due_date == "2024-04-05"


def test_processing_is_idempotent_and_leaves_input_alone(post_processor):
    record = StatementRecord(transactions=[
        Transaction(date="12/03/2024", description="PAYMENT TO rahul@okaxis", amount="250", type="debit"),
        debit("UPI-SWIGGY-XXX", date="13 Mar 2024"),
        debit("SWIGGY*  BANGALORE"),
    ])
    before = record.to_json_dict()

    once = post_processor.process(record)
    twice = post_processor.process(once)

    assert twice.to_json_dict() == once.to_json_dict()
    assert record.to_json_dict() == before
    assert [t.description for t in once.transactions] == [
        "PAYMENT TO rahulokaxis", "UPI-SWIGGY-XXX", "SWIGGY BANGALORE",
    ]
