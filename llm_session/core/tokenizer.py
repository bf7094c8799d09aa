"""
llm-session :: Tokenizer

Text ↔ integer token id conversion against the runtime's vocabulary.

Encoding is two-phase:
  1. try_encode(): ask the runtime with no output buffer. It answers with
     a negative count whose magnitude is the capacity it needs.
  2. encode_with_capacity(): call again with a buffer of that size.

Token count is not predictable from text length for most vocabularies,
so the runtime is the only authority on buffer size.

INL - 2025
"""

import codecs
import numpy as np
from typing import Iterable, Optional

from llm_session.core.errors import TokenizeError
from llm_session.core.logging import get_logger

logger = get_logger("llm_session.tokenizer")

TOKEN_DTYPE = np.int32


def as_token_sequence(ids: Iterable[int]) -> np.ndarray:
    """Freeze a list of ids into a read-only TokenSequence."""
    arr = np.array(list(ids), dtype=TOKEN_DTYPE)
    arr.flags.writeable = False
    return arr


class TokenCodec:
    """
    Codec bound to one loaded model's vocabulary.

    Input:  text (str)
    Output: TokenSequence (read-only np.int32 array, BOS first)
    """

    def __init__(self, runtime, model, add_bos: bool = True):
        self.runtime = runtime
        self.model = model
        self.add_bos = add_bos

    def try_encode(self, text: str) -> int:
        """Ask the runtime with no buffer; returns the capacity `text` needs."""
        n = self.runtime.tokenize(self.model, text, None, add_bos=self.add_bos)
        # A non-negative answer to an empty buffer means nothing needs storing
        return -n if n < 0 else n

    def encode_with_capacity(self, text: str, capacity: int) -> np.ndarray:
        """Tokenize into a buffer of `capacity` slots."""
        if capacity < 0:
            raise TokenizeError(f"Invalid capacity {capacity}")
        out = np.zeros(capacity, dtype=TOKEN_DTYPE)
        n = self.runtime.tokenize(self.model, text, out, add_bos=self.add_bos)
        if n < 0:
            raise TokenizeError(
                f"Buffer of {capacity} too small, runtime requires {-n}"
            )
        if n > capacity:
            raise TokenizeError(f"Runtime wrote {n} tokens into {capacity} slots")
        return as_token_sequence(out[:n])

    def encode(self, text: Optional[str]) -> np.ndarray:
        """Text → TokenSequence."""
        if text is None:
            raise TokenizeError("Cannot tokenize None")
        capacity = self.try_encode(text)
        tokens = self.encode_with_capacity(text, capacity)
        if len(tokens) == 0:
            raise TokenizeError("Tokenizer produced no tokens")
        logger.debug(f"Tokenized {len(text)} chars into {len(tokens)} tokens")
        return tokens

    def decode(self, token_id: int) -> bytes:
        """One token id → zero or more bytes of text."""
        return self.runtime.token_to_text(self.model, int(token_id))

    def decode_text(self, token_ids: Iterable[int]) -> str:
        """
        Detokenize a whole sequence: fragments joined, then the one space
        some vocabularies prepend to the first word removed.
        """
        text = b"".join(self.decode(t) for t in token_ids).decode("utf-8", errors="replace")
        if text.startswith(" ") and self.runtime.adds_space_prefix(self.model):
            text = text[1:]
        return text

    def is_end_of_sequence(self, token_id: int) -> bool:
        return bool(self.runtime.is_end_of_sequence(self.model, int(token_id)))


class FragmentDecoder:
    """
    Incremental UTF-8 decoding of byte fragments.

    A multi-byte character can be split across two tokens; the decoder
    holds the incomplete tail until the next fragment completes it.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = bytearray()

    def push(self, fragment: bytes) -> str:
        self._buffer.extend(fragment)
        return self._decoder.decode(fragment)

    def flush(self) -> str:
        return self._decoder.decode(b"", final=True)

    @property
    def raw(self) -> bytes:
        return bytes(self._buffer)

    def text(self) -> str:
        return self.raw.decode("utf-8", errors="replace")
