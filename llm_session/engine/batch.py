"""
llm-session :: Batch Builder

Per-step input descriptor for the runtime's decode call.
All indexing is integer.

Invariants:
  - positions strictly increasing within a sequence
  - only tokens whose output is needed carry the logits flag:
    the last prompt token, or the single freshly generated token

INL - 2025
"""

import numpy as np
from dataclasses import dataclass
from typing import List, Sequence


@dataclass
class Batch:
    """
    One submission of tokens to the runtime.
    Parallel arrays, one entry per token.
    """
    token_ids: np.ndarray            # [n] i32
    positions: np.ndarray            # [n] i32, position in sequence
    seq_ids: np.ndarray              # [n] i32, sequence membership
    logits: np.ndarray               # [n] i8, 1 = emit logits

    @property
    def num_tokens(self) -> int:
        return len(self.token_ids)

    @property
    def wants_logits(self) -> bool:
        return bool(self.logits.any())

    @property
    def logits_index(self) -> int:
        """Batch index of the last token with the logits flag, -1 if none."""
        flagged = np.flatnonzero(self.logits)
        return int(flagged[-1]) if len(flagged) else -1

    def __len__(self) -> int:
        return self.num_tokens


class BatchBuilder:
    """Builds prompt, step and embedding batches for one sequence."""

    def __init__(self, max_batch_size: int = 512, seq_id: int = 0):
        if max_batch_size <= 0:
            raise ValueError(f"max_batch_size must be positive, got {max_batch_size}")
        self.max_batch_size = max_batch_size
        self.seq_id = seq_id

    def _build(self, tokens: Sequence[int], start_pos: int, flag_last: bool) -> Batch:
        n = len(tokens)
        if n == 0:
            raise ValueError("Cannot build an empty batch")
        logits = np.zeros(n, dtype=np.int8)
        if flag_last:
            logits[-1] = 1
        return Batch(
            token_ids=np.asarray(tokens, dtype=np.int32).copy(),
            positions=np.arange(start_pos, start_pos + n, dtype=np.int32),
            seq_ids=np.full(n, self.seq_id, dtype=np.int32),
            logits=logits,
        )

    def prompt(self, tokens: Sequence[int], start_pos: int = 0) -> List[Batch]:
        """
        Prompt batches. One batch when the prompt fits in max_batch_size,
        otherwise consecutive chunks; only the very last token asks for logits.
        """
        batches = []
        n = len(tokens)
        for offset in range(0, n, self.max_batch_size):
            chunk = tokens[offset:offset + self.max_batch_size]
            is_last = offset + self.max_batch_size >= n
            batches.append(self._build(chunk, start_pos + offset, flag_last=is_last))
        if not batches:
            raise ValueError("Cannot build batches for an empty prompt")
        return batches

    def step(self, token_id: int, position: int) -> Batch:
        """Single generated token at the next position, logits requested."""
        return self._build([int(token_id)], position, flag_last=True)

    def embedding(self, tokens: Sequence[int]) -> Batch:
        """Whole prompt in one batch, no logits requested."""
        return self._build(tokens, 0, flag_last=False)
