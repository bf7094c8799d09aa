"""
llm-session :: Errors

Error kinds and the sentinel markers returned across the session boundary.

Failures are handled where they occur and converted to a typed outcome.
Nothing raised inside the engine, codec or runtime adapters is allowed to
escape a ModelSession call: callers get text, a vector, False/None, or one
of the markers below.

INL - 2025
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Why a session operation did not produce a normal result."""
    NOT_LOADED = "NotLoaded"
    INVALID_INPUT = "InvalidInput"
    LOAD_FAILED = "LoadFailed"
    TOKENIZE_FAILED = "TokenizeFailed"
    DECODE_FAILED = "DecodeFailed"
    LOGITS_UNAVAILABLE = "LogitsUnavailable"
    UNSUPPORTED = "Unsupported"


ERROR_MARKERS = {
    ErrorKind.NOT_LOADED: "[ERROR: Model not loaded]",
    ErrorKind.INVALID_INPUT: "[ERROR: Invalid input]",
    ErrorKind.LOAD_FAILED: "[ERROR: Model load failed]",
    ErrorKind.TOKENIZE_FAILED: "[ERROR: Tokenization failed]",
    ErrorKind.DECODE_FAILED: "[ERROR: Decode failed]",
    ErrorKind.LOGITS_UNAVAILABLE: "[ERROR: Logits unavailable]",
    ErrorKind.UNSUPPORTED: "[ERROR: Image input unsupported]",
}

_MARKER_PREFIX = "[ERROR: "


def error_marker(kind: ErrorKind) -> str:
    """Sentinel text for an error kind."""
    return ERROR_MARKERS[kind]


def is_error_marker(text: Optional[str]) -> bool:
    """True if `text` is one of the sentinel markers."""
    return text is not None and text.startswith(_MARKER_PREFIX) and text in ERROR_MARKERS.values()


def kind_from_marker(text: str) -> Optional[ErrorKind]:
    """Inverse of error_marker(); None for ordinary text."""
    for kind, marker in ERROR_MARKERS.items():
        if text == marker:
            return kind
    return None


class SessionError(Exception):
    """Base for errors raised inside the session layer. Never crosses the boundary."""

    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class TokenizeError(SessionError):
    """Runtime could not tokenize the text into the negotiated buffer."""
    kind = ErrorKind.TOKENIZE_FAILED


class RuntimeFailure(SessionError):
    """
    A runtime call failed or raised mid-operation.

    Raised by the engines when decode() reports failure or a runtime call
    throws; caught at the end of the same operation and turned into
    GenerationResult.error / EmbeddingResult.error with any partial text
    kept.
    """
    kind = ErrorKind.DECODE_FAILED
