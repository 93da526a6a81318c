"""
Failure types raised by the statement extraction pipeline.
"""
from enum import Enum
from typing import Optional


class StatementError(Exception):
    """Base class for every pipeline failure."""


class DocumentError(StatementError):
    """Invalid, corrupt or unreadable input document."""


class RecognitionError(StatementError):
    """Text recognition produced no usable regions for a page."""


class TransportErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    RATE_LIMITED = "rate_limited"
    UPSTREAM = "upstream"
    DECODE = "decode"


class ExtractionTransportError(StatementError):
    """Remote extraction call failed before a usable response body was read."""

    def __init__(self, message: str, kind: TransportErrorKind,
                 status_code: Optional[int] = None, model: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.model = model

    @property
    def is_rate_limited(self) -> bool:
        return self.kind is TransportErrorKind.RATE_LIMITED


class ExtractionDecodeError(StatementError):
    """Every JSON repair and reconstruction strategy was exhausted."""


class PersistenceError(StatementError):
    """Raised by repository implementations; the pipeline never handles it."""


class ProcessingCancelled(StatementError):
    """The caller's cancellation check fired between pages or stages."""
