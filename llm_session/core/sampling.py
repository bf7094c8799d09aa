"""
llm-session :: Sampling

Turns one step's logits into exactly one integer token id.

Fixed stage order, each stage working on the previous survivors:
  1. repetition penalty   (last N tokens of the running history)
  2. top-k                (k highest logits, arg-max always kept)
  3. min-p                (drop p < min_p * p_max)
  4. top-p / nucleus      (smallest prefix with cumulative p >= top_p)
  5. temperature          (temperature <= 0 → greedy)
  6. final draw           (multinomial over renormalized survivors)

No stage is allowed to return an empty candidate set.

INL - 2025
"""

import torch
from collections import deque
from dataclasses import dataclass
from typing import Iterable, List, Optional


@dataclass
class SamplingParams:
    """Sampling parameters — call-site defaults, not per request."""
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    repetition_penalty: float = 1.1
    repeat_last_n: int = 64
    seed: Optional[int] = None

    @property
    def is_greedy(self) -> bool:
        return self.temperature <= 0.0


@dataclass
class Candidates:
    """
    Surviving vocabulary entries for one step.

    token_ids: (n,) long — vocabulary ids
    logits:    (n,) float — raw (possibly penalized/scaled) scores
    probs:     (n,) float or None — scratch, only set by stages that compute it
    """
    token_ids: torch.Tensor
    logits: torch.Tensor
    probs: Optional[torch.Tensor] = None

    def __len__(self) -> int:
        return self.token_ids.shape[0]

    @staticmethod
    def from_logits(logits: torch.Tensor) -> "Candidates":
        logits = logits.detach().reshape(-1).float()
        return Candidates(
            token_ids=torch.arange(logits.shape[0], dtype=torch.long, device=logits.device),
            logits=logits.clone(),
        )


# =========================================================================
# Stages
# =========================================================================

def apply_repetition_penalty(
    cands: Candidates,
    recent_tokens: Iterable[int],
    penalty: float,
) -> Candidates:
    """Penalize tokens that already appeared: reduce positive, amplify negative."""
    recent = list(recent_tokens)
    if penalty == 1.0 or not recent:
        return cands

    vocab = len(cands)
    token_set = torch.tensor(recent, dtype=torch.long, device=cands.logits.device).unique()
    token_set = token_set[(token_set >= 0) & (token_set < vocab)]
    if token_set.numel() == 0:
        return cands

    logits = cands.logits.clone()
    penalized = logits[token_set]
    penalized = torch.where(penalized > 0, penalized / penalty, penalized * penalty)
    logits[token_set] = penalized
    return Candidates(token_ids=cands.token_ids, logits=logits)


def top_k_filter(cands: Candidates, k: int) -> Candidates:
    """Keep the k highest-logit candidates, sorted descending. k <= 0 keeps all."""
    n = len(cands)
    if k <= 0 or k >= n:
        sorted_logits, order = cands.logits.sort(descending=True)
        return Candidates(token_ids=cands.token_ids[order], logits=sorted_logits)

    top_values, top_idx = cands.logits.topk(k)
    return Candidates(token_ids=cands.token_ids[top_idx], logits=top_values)


def min_p_filter(cands: Candidates, min_p: float) -> Candidates:
    """Drop candidates whose probability is below min_p times the top probability."""
    probs = torch.softmax(cands.logits, dim=-1)
    if min_p <= 0.0 or len(cands) <= 1:
        return Candidates(token_ids=cands.token_ids, logits=cands.logits, probs=probs)

    keep = probs >= min_p * probs.max()
    # The arg-max always satisfies p_max >= min_p * p_max for min_p <= 1
    if not bool(keep.any()):
        keep[probs.argmax()] = True
    return Candidates(
        token_ids=cands.token_ids[keep],
        logits=cands.logits[keep],
        probs=probs[keep],
    )


def top_p_filter(cands: Candidates, top_p: float) -> Candidates:
    """Keep the smallest probability-descending prefix whose cumulative mass >= top_p."""
    if top_p >= 1.0 or len(cands) <= 1:
        return cands

    probs = torch.softmax(cands.logits, dim=-1)
    sorted_probs, order = probs.sort(descending=True)
    cumulative = sorted_probs.cumsum(dim=-1)

    # Number of entries strictly below the threshold, plus the one that crosses it
    n_keep = int((cumulative < top_p).sum().item()) + 1
    n_keep = max(1, min(n_keep, len(cands)))
    keep = order[:n_keep]
    return Candidates(
        token_ids=cands.token_ids[keep],
        logits=cands.logits[keep],
        probs=sorted_probs[:n_keep],
    )


def apply_temperature(cands: Candidates, temperature: float) -> Candidates:
    """Scale logits by 1/temperature. Probabilities are invalidated."""
    if temperature <= 0.0 or temperature == 1.0:
        return Candidates(token_ids=cands.token_ids, logits=cands.logits)
    return Candidates(token_ids=cands.token_ids, logits=cands.logits / temperature)


def greedy_pick(cands: Candidates) -> int:
    """Max-logit survivor. Ties resolve to the first (lowest position) entry."""
    return int(cands.token_ids[cands.logits.argmax()].item())


def draw(cands: Candidates, generator: Optional[torch.Generator] = None) -> int:
    """Sample one token from the renormalized survivor distribution."""
    if len(cands) == 1:
        return int(cands.token_ids[0].item())
    probs = torch.softmax(cands.logits, dim=-1)
    idx = torch.multinomial(probs, num_samples=1, generator=generator)
    return int(cands.token_ids[idx].item())


# =========================================================================
# Chain
# =========================================================================

class SamplingChain:
    """
    Stateful only in its repetition window.

    The window is the running list of tokens seen so far in one generation
    (prompt + generated), trimmed to `repeat_last_n`. Create one chain per
    generation, or call reset() with the new prompt.
    """

    def __init__(self, params: Optional[SamplingParams] = None):
        self.params = params or SamplingParams()
        self._history: deque = deque(maxlen=max(self.params.repeat_last_n, 0))
        self._generator: Optional[torch.Generator] = None
        if self.params.seed is not None:
            self._generator = torch.Generator()
            self._generator.manual_seed(self.params.seed)

    @property
    def history(self) -> List[int]:
        return list(self._history)

    def reset(self, prompt_tokens: Iterable[int] = ()):
        self._history.clear()
        for t in prompt_tokens:
            self._history.append(int(t))

    def accept(self, token_id: int):
        self._history.append(int(token_id))

    def filter(self, logits: torch.Tensor) -> Candidates:
        """Stages 1-4: the survivors that enter temperature scaling."""
        p = self.params
        cands = Candidates.from_logits(logits)
        cands = apply_repetition_penalty(cands, self._history, p.repetition_penalty)
        cands = top_k_filter(cands, p.top_k)
        cands = min_p_filter(cands, p.min_p)
        cands = top_p_filter(cands, p.top_p)
        return cands

    def sample(self, logits: torch.Tensor) -> int:
        """
        Pick the next token from one step's logits.

        Args:
            logits: (vocab_size,) float tensor

        Returns:
            token_id: int
        """
        cands = self.filter(logits)
        if self.params.is_greedy:
            return greedy_pick(cands)
        cands = apply_temperature(cands, self.params.temperature)
        return draw(cands, self._generator)


def sample_token(
    logits: torch.Tensor,
    params: SamplingParams,
    past_tokens: Optional[List[int]] = None,
) -> int:
    """One-shot sampling with an explicit repetition history."""
    chain = SamplingChain(params)
    chain.reset(past_tokens or ())
    return chain.sample(logits)
