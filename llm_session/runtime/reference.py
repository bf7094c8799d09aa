"""
llm-session :: Reference Runtime

A small deterministic torch runtime that honours the full runtime
contract, so the session layer runs end to end without native code.

Model:
  h_t     = tanh(E[x_t] + decay * h_{t-1})     (hidden state, per position)
  logits  = W · h_t                            (W = lm_head or tied E)
  embed   = h_t

The per-context state cache behaves like a KV cache: a batch must start
exactly at the cached length, so reusing a stale cache fails the decode
the same way a real runtime rejects inconsistent positions.

Vocabulary: tokenizer.json beside the checkpoint (HuggingFace fast
tokenizer, token text via runtime/pieces.py), else a byte fallback:
  0 = </s>, 1 = <pad>, 2 = <s>, 3..258 = bytes 0x00..0xFF

INL - 2025
"""

import json
import numpy as np
import torch
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from llm_session.core.logging import get_logger
from llm_session.runtime.base import InferenceRuntime
from llm_session.runtime.loader import load_state_dict, model_dir_of
from llm_session.runtime.pieces import PieceDecoder

logger = get_logger("llm_session.runtime.reference")

BYTE_OFFSET = 3
BYTE_VOCAB_SIZE = 256 + BYTE_OFFSET


@dataclass
class ReferenceConfig:
    """Mirrors config.json next to a reference checkpoint."""
    bos_token_id: int = 2
    eos_token_id: int = 0
    pad_token_id: int = 1
    decay: float = 0.5

    @staticmethod
    def from_json(path: str) -> "ReferenceConfig":
        with open(path, "r") as f:
            data = json.load(f)
        config = ReferenceConfig()
        for key, val in data.items():
            if hasattr(config, key):
                setattr(config, key, val)
        return config


@dataclass
class ReferenceModel:
    path: str
    config: ReferenceConfig
    embed: torch.Tensor            # [vocab, hidden]
    lm_head: torch.Tensor          # [vocab, hidden]
    tokenizer: Optional[object] = None
    pieces: Optional[PieceDecoder] = None

    @property
    def vocab_size(self) -> int:
        return self.embed.shape[0]

    @property
    def hidden_size(self) -> int:
        return self.embed.shape[1]


class ReferenceContext:
    """Per-context state cache + outputs of the most recent decode."""

    def __init__(self, model: ReferenceModel, n_ctx: int, n_threads: int, n_batch: int):
        self.model = model
        self.n_ctx = n_ctx
        self.n_threads = n_threads
        self.n_batch = n_batch
        self.states = torch.zeros(n_ctx, model.hidden_size)
        self.n_past: int = 0
        self.logits: Dict[int, torch.Tensor] = {}
        self.embeddings: Dict[int, np.ndarray] = {}

    def clear(self):
        self.states.zero_()
        self.n_past = 0
        self.logits.clear()
        self.embeddings.clear()


def _load_tokenizer(model_dir) -> Tuple[Optional[object], Optional[PieceDecoder]]:
    tokenizer_path = model_dir / "tokenizer.json"
    if not tokenizer_path.exists():
        return None, None
    from tokenizers import Tokenizer
    tokenizer = Tokenizer.from_file(str(tokenizer_path))
    return tokenizer, PieceDecoder.from_file(tokenizer, str(tokenizer_path))


class ReferenceRuntime(InferenceRuntime):
    """CPU torch runtime over a tiny recurrent model."""

    name = "reference"

    def __init__(self):
        self.initialized = False

    def backend_init(self) -> None:
        self.initialized = True

    def backend_shutdown(self) -> None:
        self.initialized = False

    # --- handles ---

    def load_model(self, path: str, n_gpu_layers: int) -> Optional[ReferenceModel]:
        try:
            state_dict = load_state_dict(path)
        except Exception as e:
            logger.error(f"Failed to read checkpoint {path}: {e}")
            return None

        embed = state_dict.get("embed_tokens.weight")
        if embed is None or embed.dim() != 2:
            logger.error(f"{path}: missing 2-D embed_tokens.weight")
            return None
        embed = embed.float()

        lm_head = state_dict.get("lm_head.weight")
        if lm_head is None:
            lm_head = embed  # Tied embeddings
        elif lm_head.shape != embed.shape:
            logger.error(f"{path}: lm_head {tuple(lm_head.shape)} does not match embeddings {tuple(embed.shape)}")
            return None

        model_dir = model_dir_of(path)
        config_path = model_dir / "config.json"
        config = ReferenceConfig.from_json(str(config_path)) if config_path.exists() else ReferenceConfig()

        try:
            tokenizer, pieces = _load_tokenizer(model_dir)
        except Exception as e:
            logger.error(f"Failed to read tokenizer.json in {model_dir}: {e}")
            return None

        if tokenizer is not None:
            if tokenizer.get_vocab_size() > embed.shape[0]:
                logger.error(
                    f"Tokenizer vocab {tokenizer.get_vocab_size()} exceeds embedding rows {embed.shape[0]}"
                )
                return None
            if not config_path.exists():
                bos = tokenizer.token_to_id("<s>")
                eos = tokenizer.token_to_id("</s>")
                if bos is not None:
                    config.bos_token_id = bos
                if eos is not None:
                    config.eos_token_id = eos
        elif embed.shape[0] < BYTE_VOCAB_SIZE:
            logger.error(f"Byte fallback needs {BYTE_VOCAB_SIZE} vocab entries, checkpoint has {embed.shape[0]}")
            return None

        model = ReferenceModel(
            path=path,
            config=config,
            embed=embed,
            lm_head=lm_head.float(),
            tokenizer=tokenizer,
            pieces=pieces,
        )
        logger.info(
            f"Reference model loaded: vocab={model.vocab_size} hidden={model.hidden_size} "
            f"tokenizer={pieces.kind if pieces is not None else 'bytes'}"
        )
        return model

    def create_context(
        self, model: ReferenceModel, n_ctx: int, n_threads: int, n_batch: int,
    ) -> Optional[ReferenceContext]:
        if n_ctx <= 0 or n_batch <= 0:
            logger.error(f"Invalid context parameters n_ctx={n_ctx} n_batch={n_batch}")
            return None
        return ReferenceContext(model, n_ctx, n_threads, n_batch)

    def free_context(self, context: ReferenceContext) -> None:
        context.clear()

    def free_model(self, model: ReferenceModel) -> None:
        model.tokenizer = None
        model.pieces = None

    # --- vocabulary ---

    def tokenize(
        self, model: ReferenceModel, text: str, out: Optional[np.ndarray], add_bos: bool = True,
    ) -> int:
        if model.tokenizer is not None:
            ids = model.tokenizer.encode(text, add_special_tokens=False).ids
        else:
            ids = [b + BYTE_OFFSET for b in text.encode("utf-8")]
        if add_bos:
            ids = [model.config.bos_token_id] + list(ids)

        n = len(ids)
        if out is None or len(out) < n:
            return -n
        out[:n] = ids
        return n

    def _is_special(self, model: ReferenceModel, token_id: int) -> bool:
        cfg = model.config
        return token_id in (cfg.bos_token_id, cfg.eos_token_id, cfg.pad_token_id)

    def token_to_text(self, model: ReferenceModel, token_id: int) -> bytes:
        if self._is_special(model, token_id):
            return b""
        if model.pieces is not None:
            return model.pieces.piece(token_id)
        if BYTE_OFFSET <= token_id < BYTE_VOCAB_SIZE:
            return bytes([token_id - BYTE_OFFSET])
        return b""

    def adds_space_prefix(self, model: ReferenceModel) -> bool:
        return model.pieces is not None and model.pieces.space_prefix

    def is_end_of_sequence(self, model: ReferenceModel, token_id: int) -> bool:
        return token_id == model.config.eos_token_id

    def n_vocab(self, model: ReferenceModel) -> int:
        return model.vocab_size

    def n_embd(self, model: ReferenceModel) -> int:
        return model.hidden_size

    # --- compute ---

    def decode(self, context: ReferenceContext, batch) -> bool:
        n = batch.num_tokens
        if n == 0 or n > context.n_batch:
            logger.error(f"Invalid batch size {n} (n_batch={context.n_batch})")
            return False
        if (batch.seq_ids != 0).any():
            logger.error("Reference runtime holds a single sequence (seq_id 0)")
            return False

        expected = np.arange(context.n_past, context.n_past + n, dtype=np.int32)
        if not np.array_equal(batch.positions, expected):
            logger.error(
                f"Inconsistent positions: batch starts at {int(batch.positions[0])}, "
                f"cache holds {context.n_past}"
            )
            return False
        if context.n_past + n > context.n_ctx:
            logger.error(f"Context full: {context.n_past} + {n} > {context.n_ctx}")
            return False

        model = context.model
        token_ids = torch.from_numpy(batch.token_ids.astype(np.int64))
        if (token_ids < 0).any() or (token_ids >= model.vocab_size).any():
            logger.error("Token id out of vocabulary range")
            return False

        context.logits.clear()
        context.embeddings.clear()

        decay = float(model.config.decay)
        with torch.no_grad():
            h = context.states[context.n_past - 1] if context.n_past > 0 else torch.zeros(model.hidden_size)
            for i in range(n):
                h = torch.tanh(model.embed[token_ids[i]] + decay * h)
                context.states[context.n_past + i] = h
                context.embeddings[i] = h.numpy().copy()
                if batch.logits[i]:
                    context.logits[i] = model.lm_head @ h

        context.n_past += n
        return True

    def get_logits(self, context: ReferenceContext, index: int) -> Optional[torch.Tensor]:
        if index < 0 and context.logits:
            index = max(context.logits)
        return context.logits.get(index)

    def get_embeddings(self, context: ReferenceContext, index: int) -> Optional[np.ndarray]:
        if index < 0 and context.embeddings:
            index = max(context.embeddings)
        return context.embeddings.get(index)

    def clear_cache(self, context: ReferenceContext) -> None:
        context.clear()
