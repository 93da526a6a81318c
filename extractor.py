"""
Gemini-backed extraction of statement JSON from normalized text or from the
original document bytes.
"""
import logging
import threading
from collections import OrderedDict
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from config import Settings, settings as default_settings
from errors import ExtractionTransportError, TransportErrorKind
from schema import StatementRecord, TransactionType

logger = logging.getLogger(__name__)


class ModelVariant(str, Enum):
    PRIMARY = "primary"  # multimodal input and harder reasoning
    LITE = "lite"        # plain-text extraction and narratives

    @property
    def alternate(self) -> "ModelVariant":
        return ModelVariant.LITE if self is ModelVariant.PRIMARY else ModelVariant.PRIMARY


class ModelSelector:
    """
    Shared, lock-protected choice between the two model variants.

    Each request names the variant it prefers. After a rate-limit toggle the
    selector is "swapped" and every request goes to the other variant until
    the next toggle. `force` pins all requests to one variant (tests, ops).
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._swapped = False
        self._forced: Optional[ModelVariant] = None

    @property
    def swapped(self) -> bool:
        with self._lock:
            return self._swapped

    def resolve(self, preferred: ModelVariant) -> ModelVariant:
        with self._lock:
            if self._forced is not None:
                return self._forced
            return preferred.alternate if self._swapped else preferred

    def toggle(self) -> None:
        with self._lock:
            self._swapped = not self._swapped
            if self._forced is not None:
                self._forced = self._forced.alternate

    def force(self, variant: Optional[ModelVariant]) -> None:
        with self._lock:
            self._forced = variant

    def reset(self) -> None:
        with self._lock:
            self._swapped = False
            self._forced = None


# One selector per process so a rate limit seen by any document steers the next call
DEFAULT_SELECTOR = ModelSelector()


STATEMENT_SCHEMA = """{
  "card": {
    "issuer": "string",
    "product": "string",
    "last4": "string",
    "statement_period": {"from": "YYYY-MM-DD", "to": "YYYY-MM-DD"}
  },
  "transactions": [
    {
      "date": "YYYY-MM-DD",
      "description": "string",
      "amount": 0.00,
      "currency": "INR",
      "type": "debit | credit",
      "derived": {
        "category": "string",
        "merchant": "string",
        "is_recurring": false,
        "fx": {"original_amount": 0.00, "original_currency": "USD"}
      }
    }
  ],
  "summary": {
    "total_spend": 0.00,
    "opening_balance": 0.00,
    "closing_balance": 0.00,
    "min_payment": 0.00,
    "due_date": "YYYY-MM-DD"
  }
}"""

MERCHANT_CATEGORY_HINTS = OrderedDict([
    ('Food & Dining', ['SWIGGY', 'ZOMATO', 'DOMINOS', 'KFC', 'MCDONALDS', 'STARBUCKS']),
    ('Groceries', ['INSTAMART', 'BIG BASKET', 'BLINKIT', 'ZEPTO', 'DMART', 'RELIANCE FRESH', 'LICIOUS']),
    ('Fuel', ['HPCL', 'IOCL', 'BHARAT PETROLEUM', 'SHELL']),
    ('Transportation', ['UBER', 'OLA', 'RAPIDO', 'IRCTC']),
    ('Shopping', ['AMAZON', 'FLIPKART', 'MYNTRA', 'AJIO', 'NYKAA']),
    ('Healthcare', ['APOLLO', 'MEDPLUS', 'PHARMEASY', '1MG']),
    ('Utilities', ['AIRTEL', 'JIO', 'VODAFONE', 'BESCOM', 'TATA POWER']),
    ('Entertainment', ['NETFLIX', 'BOOKMYSHOW', 'SPOTIFY', 'HOTSTAR']),
])

DOMAIN_RULES = """Issuer conventions:
- SBI Card: a trailing "C" after the amount means credit, "D" means debit.
- HDFC and most other issuers: "Cr" or "CR" means credit; "Dr", "DR" or no marker means debit.
- Payments received, refunds, reversals, cashback and fee waivers are credits. Purchases, fees, interest and taxes are debits.
- Amounts are positive numbers without currency symbols or thousands separators; direction is given only by "type".
- Currency defaults to "INR". Fill "fx" only when the row shows a foreign original amount.
- UPI transfers without a recognisable merchant use the category "UPI"."""

EXTRACTION_DIRECTIVES = """Extraction rules:
1. Process the statement row by row; every transaction row becomes exactly one entry.
2. Never merge rows, even when date, description and amount are identical.
3. Keep the original order of rows as printed.
4. Ignore table headers, page headers, footers and reward summaries.
5. Write dates as YYYY-MM-DD; expand two-digit years to 20YY.
6. Return only JSON matching the schema, with no commentary and no markdown."""


def build_category_hints(hints: Dict[str, List[str]] = MERCHANT_CATEGORY_HINTS) -> str:
    lines = ["Merchant category hints:"]
    for category, merchants in hints.items():
        lines.append(f"- {', '.join(merchants)} -> {category}")
    return '\n'.join(lines)


def build_extraction_prompt(schema: str = STATEMENT_SCHEMA, instructions: Optional[str] = None,
                            document_text: Optional[str] = None) -> str:
    """
    Assemble the extraction prompt.

    Args:
        schema: JSON shape the response must follow
        instructions: Extra caller directives appended after the built-in rules
        document_text: Normalized statement text; omitted for document uploads

    Returns:
        Prompt text
    """
    sections = [
        "You are an expert at reading Indian credit card statements. "
        "Extract the card details, every transaction and the statement summary.",
        f"Return JSON with exactly this structure:\n{schema}",
        DOMAIN_RULES,
        build_category_hints(),
        EXTRACTION_DIRECTIVES,
    ]
    if instructions:
        sections.append(instructions.strip())
    if document_text is not None:
        sections.append(f"Statement text (pages are delimited by ===PAGE n===):\n{document_text}")
    return '\n\n'.join(sections)


class GeminiExtractor:
    """Extraction service adapter with rate-limit fallback between two models."""

    def __init__(self, settings: Optional[Settings] = None, client=None,
                 selector: Optional[ModelSelector] = None):
        self.settings = settings or default_settings
        self.selector = selector or DEFAULT_SELECTOR
        self._client = client
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def client(self):
        if self._client is None:
            if not self.settings.GEMINI_API_KEY:
                raise ExtractionTransportError("GEMINI_API_KEY is not configured",
                                               TransportErrorKind.INVALID_REQUEST)
            self._client = genai.Client(api_key=self.settings.GEMINI_API_KEY)
        return self._client

    def model_name(self, variant: ModelVariant) -> str:
        if variant is ModelVariant.PRIMARY:
            return self.settings.GEMINI_PRIMARY_MODEL
        return self.settings.GEMINI_LITE_MODEL

    def extract_text(self, normalized_text: str, schema: str = STATEMENT_SCHEMA,
                     instructions: Optional[str] = None) -> str:
        """
        Extract statement JSON from normalized statement text.

        Args:
            normalized_text: Output of the text normalizer
            schema: Target JSON structure
            instructions: Additional directives

        Returns:
            Raw response text, possibly fenced or malformed JSON
        """
        if not normalized_text or not normalized_text.strip():
            raise ExtractionTransportError("No statement text to extract from",
                                           TransportErrorKind.INVALID_REQUEST)

        prompt = build_extraction_prompt(schema, instructions, normalized_text)
        self._check_size(len(prompt.encode('utf-8')))
        self.logger.info(f"Requesting text extraction ({len(normalized_text)} chars)")
        return self._generate(ModelVariant.LITE, [prompt], self._json_config())

    def extract_document(self, document_bytes: bytes, mime_type: str = 'application/pdf',
                         instructions: Optional[str] = None, schema: str = STATEMENT_SCHEMA) -> str:
        """
        Extract statement JSON directly from PDF or image bytes.

        Args:
            document_bytes: Raw file content
            mime_type: MIME type of the content
            instructions: Additional directives
            schema: Target JSON structure

        Returns:
            Raw response text
        """
        if not document_bytes:
            raise ExtractionTransportError("Document payload is empty",
                                           TransportErrorKind.INVALID_REQUEST)

        prompt = build_extraction_prompt(schema, instructions)
        self._check_size(len(document_bytes) + len(prompt.encode('utf-8')))
        self.logger.info(f"Requesting document extraction ({len(document_bytes)} bytes, {mime_type})")
        contents = [types.Part.from_bytes(data=document_bytes, mime_type=mime_type), prompt]
        return self._generate(ModelVariant.PRIMARY, contents, self._json_config())

    def generate_narrative(self, record: StatementRecord) -> str:
        """Two-sentence plain-language summary of where the money went."""
        spend_by_category: Dict[str, Decimal] = {}
        credits = Decimal('0')
        for transaction in record.transactions:
            if transaction.type is TransactionType.CREDIT:
                credits += transaction.amount
                continue
            category = (transaction.derived.category if transaction.derived else None) or 'Other'
            spend_by_category[category] = spend_by_category.get(category, Decimal('0')) + transaction.amount

        breakdown = '\n'.join(f"- {category}: {amount}" for category, amount
                              in sorted(spend_by_category.items(), key=lambda item: item[1], reverse=True))
        prompt = (
            "Write a friendly two-sentence summary of this credit card statement's spending. "
            "Mention the largest categories and any notable credits. Plain text only.\n\n"
            f"Spending by category:\n{breakdown or '- none'}\n"
            f"Total credits: {credits}\n"
            f"Number of transactions: {len(record.transactions)}"
        )
        text = self._generate(ModelVariant.LITE, [prompt], {"temperature": 0.4})
        return text.strip()

    def _json_config(self) -> Dict[str, Any]:
        return {
            "response_mime_type": "application/json",
            "temperature": self.settings.GEMINI_TEMPERATURE,
        }

    def _check_size(self, size: int) -> None:
        limit = self.settings.MAX_REQUEST_KB * 1024
        if size > limit:
            raise ExtractionTransportError(f"Request of {size} bytes exceeds the {limit} byte limit",
                                           TransportErrorKind.INVALID_REQUEST, status_code=413)

    def _generate(self, preferred: ModelVariant, contents: List[Any], config: Dict[str, Any]) -> str:
        """Send once; on a rate limit toggle the selector and retry once on the other model."""
        variant = self.selector.resolve(preferred)
        try:
            return self._send(variant, contents, config)
        except ExtractionTransportError as e:
            if not e.is_rate_limited:
                raise
            self.selector.toggle()
            self.logger.warning(f"{e.model} is rate limited, retrying once with "
                                f"{self.model_name(variant.alternate)}")

        try:
            return self._send(variant.alternate, contents, config)
        except ExtractionTransportError as e:
            if e.is_rate_limited:
                self.selector.toggle()
                self.logger.error("Both models are rate limited; giving up")
            raise

    def _send(self, variant: ModelVariant, contents: List[Any], config: Dict[str, Any]) -> str:
        model = self.model_name(variant)
        client = self.client
        self.logger.debug(f"Calling {model}")

        try:
            response = client.models.generate_content(model=model, contents=contents, config=config)
        except genai_errors.APIError as e:
            raise self._transport_error(e, model) from e
        except httpx.HTTPError as e:
            self.logger.error(f"Transport failure calling {model}: {e}")
            raise ExtractionTransportError(f"Transport failure calling {model}: {e}",
                                           TransportErrorKind.UPSTREAM, model=model) from e

        try:
            text = response.text
        except (AttributeError, ValueError) as e:
            raise ExtractionTransportError(f"Unreadable response from {model}: {e}",
                                           TransportErrorKind.DECODE, model=model) from e
        if not text or not text.strip():
            raise ExtractionTransportError(f"Empty response from {model}",
                                           TransportErrorKind.DECODE, model=model)
        return text

    def _transport_error(self, error: genai_errors.APIError, model: str) -> ExtractionTransportError:
        code = getattr(error, 'code', None)
        message = getattr(error, 'message', None) or str(error)
        if code == 429:
            kind = TransportErrorKind.RATE_LIMITED
        elif code in (400, 404, 413):
            kind = TransportErrorKind.INVALID_REQUEST
        else:
            kind = TransportErrorKind.UPSTREAM

        if kind is not TransportErrorKind.RATE_LIMITED:
            self.logger.error(f"{model} returned {code}: {message}")
        return ExtractionTransportError(f"{model} returned {code}: {message}", kind,
                                        status_code=code, model=model)
