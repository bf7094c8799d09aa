"""
llm-session :: Embedding Extractor

One forward pass over the prompt, then the hidden state of the final
position. No logits requested, nothing cached on our side.

INL - 2025
"""

import numpy as np
from dataclasses import dataclass
from typing import Optional

from llm_session.core.errors import ErrorKind, RuntimeFailure, SessionError
from llm_session.core.logging import RequestLogger, get_logger
from llm_session.core.tokenizer import TokenCodec
from llm_session.engine.batch import BatchBuilder

logger = get_logger("llm_session.embedding")


@dataclass
class EmbeddingResult:
    vector: Optional[np.ndarray] = None
    num_prompt_tokens: int = 0
    error: Optional[ErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.vector is not None


class EmbeddingExtractor:
    """Prompt → fixed-length float32 vector (model hidden dimension)."""

    def __init__(
        self,
        runtime,
        model,
        context,
        codec: TokenCodec,
        n_batch: int = 512,
        request_logger: Optional[RequestLogger] = None,
    ):
        self.runtime = runtime
        self.model = model
        self.context = context
        self.codec = codec
        self.builder = BatchBuilder(max_batch_size=n_batch)
        self.log = request_logger or RequestLogger(0, logger)

    def extract(self, prompt: str) -> EmbeddingResult:
        try:
            tokens = self.codec.encode(prompt)
        except SessionError as e:
            self.log.error(f"Tokenization failed: {e}")
            return EmbeddingResult(error=ErrorKind.TOKENIZE_FAILED)

        n = len(tokens)
        if n > self.builder.max_batch_size:
            self.log.error(f"Prompt of {n} tokens exceeds batch size {self.builder.max_batch_size}")
            return EmbeddingResult(num_prompt_tokens=n, error=ErrorKind.DECODE_FAILED)

        # The pass starts at position 0, so sequence 0 must be empty.
        # Entries written here are left behind for the next call to clear.
        self.runtime.clear_cache(self.context)

        try:
            vector = self._forward(tokens)
        except RuntimeFailure as e:
            self.log.error(str(e))
            return EmbeddingResult(num_prompt_tokens=n, error=e.kind)

        vector = np.asarray(vector, dtype=np.float32).copy()
        self.log.debug("Embedding extracted", dim=int(vector.shape[0]), prompt_tokens=n)
        return EmbeddingResult(vector=vector, num_prompt_tokens=n)

    def _forward(self, tokens):
        try:
            ok = self.runtime.decode(self.context, self.builder.embedding(tokens))
            vector = self.runtime.get_embeddings(self.context, len(tokens) - 1) if ok else None
        except Exception as e:
            raise RuntimeFailure(f"Embedding pass raised {type(e).__name__}: {e}") from e
        if not ok:
            raise RuntimeFailure("Failed to decode embedding batch")
        if vector is None:
            raise RuntimeFailure("Embeddings unavailable for final position", ErrorKind.LOGITS_UNAVAILABLE)
        return vector
