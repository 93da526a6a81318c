"""
Tunable pattern and weight tables used by the page classifier, the text
normalizer, the layout extractor and the categorizer.

Components take these as constructor arguments so a table can be swapped or
unit-tested without touching pipeline control flow.
"""
import re
from dataclasses import dataclass, field
from typing import Pattern, Tuple

MONTHS = ('jan', 'feb', 'mar', 'apr', 'may', 'jun',
          'jul', 'aug', 'sep', 'oct', 'nov', 'dec')
_MONTH_ALT = '|'.join(MONTHS)


@dataclass(frozen=True)
class WeightedPattern:
    """One indicator family in the relevance score."""
    name: str
    pattern: str
    weight: int
    regex: Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'regex', re.compile(self.pattern, re.IGNORECASE | re.MULTILINE))

    def matches(self, text: str) -> bool:
        return self.regex.search(text) is not None


@dataclass(frozen=True)
class CategoryRule:
    """
    Assigns `category` when any keyword occurs in the lower-cased description.

    When `requires` is non-empty, one of those tokens must also be present,
    which is how keyword combinations are expressed.
    """
    name: str
    category: str
    keywords: Tuple[str, ...]
    requires: Tuple[str, ...] = ()

    def matches(self, description: str) -> bool:
        text = description.lower()
        if not any(keyword in text for keyword in self.keywords):
            return False
        return not self.requires or any(token in text for token in self.requires)


# Page relevance scoring
PAGE_SCORING_RULES: Tuple[WeightedPattern, ...] = (
    WeightedPattern('date_token',
                    r'\b(date|dt)\b|\b\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}\b', 1),
    WeightedPattern('amount_token',
                    r'\bamount\b|\bamt\b|₹|\brs\.?(?=\s|\d|$)|\binr\b|\b\d+\.\d{2}\b', 1),
    WeightedPattern('transaction_vocabulary',
                    r'\b(transaction|particulars|description|narration|details|reference)s?\b', 1),
    WeightedPattern('tabular_or_marker',
                    r'\||-{4,}|_{4,}|\b(dr|cr)\b|\b(debit|credit)\b|\d\s+[cd]\s*$', 2),
    WeightedPattern('month_short_year',
                    rf'\b\d{{1,2}}\s*({_MONTH_ALT})[a-z]*\s*\d{{2}}\b', 3),
)

TRANSACTION_PAGE_THRESHOLD = 3


# Table detection
TABLE_HEADER_VOCABULARY: Tuple[str, ...] = (
    'date', 'transaction', 'description', 'amount', 'balance', 'debit',
    'credit', 'upi', 'payment', 'particulars', 'details',
)
TABLE_HEADER_MIN_HITS = 2
TABLE_MIN_RUN = 3

ROW_DATE_PATTERN = re.compile(
    r'\d{1,2}[/\- ][a-z]{3}[/\- ]\d{2,4}|\d{1,2}[/\- ]\d{1,2}[/\- ]\d{2,4}',
    re.IGNORECASE,
)
ROW_AMOUNT_PATTERN = re.compile(r'\d+,?\d*\.\d+|\d+,\d+')


# Layout grouping
ROW_TOLERANCE_RATIO = 0.02


# Categories, in strict priority order
FUEL_KEYWORDS = (
    'bharat petroleum', 'bpcl', 'indian oil', 'iocl', 'hpcl',
    'hindustan petroleum', 'shell', 'reliance petroleum',
)
GROCERY_DELIVERY_BRANDS = ('swiggy',)
GROCERY_SUBMODE_TOKENS = ('instamart', 'upi')
FOOD_KEYWORDS = (
    'swiggy', 'zomato', 'dominos', 'kfc', 'mcdonalds', 'pizzahut',
    'pizza hut', 'burger king',
)
GROCERY_KEYWORDS = (
    'bigbasket', 'big basket', 'grofers', 'blinkit', 'zepto', 'dmart',
    'reliance fresh', 'instamart',
)

CATEGORY_RULES: Tuple[CategoryRule, ...] = (
    CategoryRule('fuel', 'Fuel', FUEL_KEYWORDS),
    CategoryRule('grocery_delivery', 'Groceries', GROCERY_DELIVERY_BRANDS,
                 requires=GROCERY_SUBMODE_TOKENS),
    CategoryRule('food_delivery', 'Food & Dining', FOOD_KEYWORDS),
    CategoryRule('groceries', 'Groceries', GROCERY_KEYWORDS),
)

UPI_CATEGORY = 'UPI'
PLACEHOLDER_CATEGORIES = ('', 'other')
UPI_PATTERN = re.compile(r'upi|vpa|@ok|[\w.\-]+@[a-z]{2,}', re.IGNORECASE)


# Merchant names keyed by the upper-case token found in descriptions
MERCHANT_ALIASES = {
    'SWIGGY INSTAMART': 'Swiggy Instamart',
    'INSTAMART': 'Swiggy Instamart',
    'SWIGGY': 'Swiggy',
    'ZOMATO': 'Zomato',
    'DOMINOS': "Domino's Pizza",
    'MCDONALDS': "McDonald's",
    'KFC': 'KFC',
    'STARBUCKS': 'Starbucks',
    'BURGER KING': 'Burger King',
    'BIGBASKET': 'BigBasket',
    'BIG BASKET': 'BigBasket',
    'BLINKIT': 'Blinkit',
    'ZEPTO': 'Zepto',
    'DMART': 'DMart',
    'RELIANCE FRESH': 'Reliance Fresh',
    'BHARAT PETROLEUM': 'Bharat Petroleum',
    'BPCL': 'Bharat Petroleum',
    'INDIAN OIL': 'Indian Oil',
    'IOCL': 'Indian Oil',
    'HPCL': 'Hindustan Petroleum',
    'HINDUSTAN PETROLEUM': 'Hindustan Petroleum',
    'AMAZON': 'Amazon',
    'FLIPKART': 'Flipkart',
    'MYNTRA': 'Myntra',
    'UBER': 'Uber',
    'OLA': 'Ola',
    'NETFLIX': 'Netflix',
    'BOOKMYSHOW': 'BookMyShow',
    'AIRTEL': 'Airtel',
    'JIO': 'Jio',
    'APOLLO': 'Apollo Pharmacy',
    'MEDPLUS': 'MedPlus',
}
MERCHANT_FUZZY_THRESHOLD = 90
MERCHANT_FUZZY_MIN_KEY = 5


# Recognition vocabulary hints
OCR_VOCABULARY: Tuple[str, ...] = (
    'HDFC', 'ICICI', 'AXIS', 'KOTAK', 'HSBC', 'CITIBANK', 'INDUSIND', 'AMEX',
    'STANDARD', 'CHARTERED', 'STATEMENT', 'TRANSACTION', 'PARTICULARS',
    'NARRATION', 'REFERENCE', 'PAYMENT', 'RECEIVED', 'PURCHASE', 'DEBIT',
    'CREDIT', 'REFUND', 'CASHBACK', 'SURCHARGE', 'WAIVER', 'BALANCE',
    'AMOUNT', 'MINIMUM', 'RUPEES',
)
OCR_VOCABULARY_MIN_SCORE = 88
OCR_VOCABULARY_MIN_TOKEN = 4


# Issuers recognised by the regex fallback, longest names first
KNOWN_ISSUERS: Tuple[str, ...] = (
    'Standard Chartered', 'American Express', 'IndusInd', 'Yes Bank',
    'HDFC', 'ICICI', 'SBI', 'Axis', 'Kotak', 'HSBC', 'Citi', 'RBL',
)

STATEMENT_PERIOD_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r'Statement Period.*?(\d{1,2}\s*[A-Za-z]{3}\s*\d{2,4}).*?(\d{1,2}\s*[A-Za-z]{3}\s*\d{2,4})',
               re.IGNORECASE | re.DOTALL),
    re.compile(r'Period:.*?(\d{1,2}[/-]\d{1,2}[/-]\d{2,4}).*?(?:to|-).*?(\d{1,2}[/-]\d{1,2}[/-]\d{2,4})',
               re.IGNORECASE | re.DOTALL),
    re.compile(r'Statement Date.*?(\d{1,2}[/-]\d{1,2}[/-]\d{2,4})', re.IGNORECASE | re.DOTALL),
)

CARD_LAST4_PATTERN = re.compile(
    r'(?:card\s*(?:no|number|ending)?\.?\s*:?\s*)?(?:[X*x]{4}[\s-]?){2,3}(\d{4})|ending\s+(?:in\s+)?(\d{4})',
    re.IGNORECASE,
)
