"""
llm-session :: llama.cpp Runtime

Adapter over the low-level llama.cpp bindings (llama-cpp-python) for
GGUF models. Install with the `llama` extra.

Mapping:
  load_model        → llama_model_load_from_file (+ n_gpu_layers)
  create_context    → llama_init_from_model (+ one reusable llama_batch)
  tokenize          → llama_tokenize (negative = required capacity)
  token_to_text     → llama_token_to_piece (resized on negative answer)
  decode            → llama_decode
  get_logits        → llama_get_logits_ith   (copied into a torch tensor)
  get_embeddings    → llama_get_embeddings_ith (copied into numpy)
  clear_cache       → llama_memory_clear

INL - 2025
"""

import ctypes
import numpy as np
import torch
from dataclasses import dataclass
from typing import Any, Optional

from llm_session.core.logging import get_logger
from llm_session.runtime.base import InferenceRuntime

logger = get_logger("llm_session.runtime.llama_cpp")

DECODE_ERRORS = {
    1: "No KV slot available",
    2: "Decoding aborted",
    -1: "Invalid input batch",
    -2: "Could not allocate compute graph",
    -3: "Graph computation failed",
}


@dataclass
class LlamaModelHandle:
    path: str
    model: Any
    vocab: Any


@dataclass
class LlamaContextHandle:
    model: LlamaModelHandle
    ctx: Any
    batch: Any
    n_batch: int
    n_vocab: int
    n_embd: int


class LlamaCppRuntime(InferenceRuntime):
    """GGUF models through llama.cpp."""

    name = "llama.cpp"

    def __init__(self):
        import llama_cpp

        self._ll = llama_cpp

    def backend_init(self) -> None:
        self._ll.llama_backend_init()

    def backend_shutdown(self) -> None:
        self._ll.llama_backend_free()

    # --- handles ---

    def load_model(self, path: str, n_gpu_layers: int) -> Optional[LlamaModelHandle]:
        ll = self._ll
        params = ll.llama_model_default_params()
        params.n_gpu_layers = n_gpu_layers

        model = ll.llama_model_load_from_file(path.encode("utf-8"), params)
        if not model:
            logger.error(f"llama.cpp rejected model file {path}")
            return None

        vocab = ll.llama_model_get_vocab(model)
        if not vocab:
            logger.error(f"Model {path} has no vocabulary")
            ll.llama_model_free(model)
            return None

        return LlamaModelHandle(path=path, model=model, vocab=vocab)

    def create_context(
        self, model: LlamaModelHandle, n_ctx: int, n_threads: int, n_batch: int,
    ) -> Optional[LlamaContextHandle]:
        ll = self._ll
        params = ll.llama_context_default_params()
        params.n_ctx = n_ctx
        params.n_threads = n_threads
        params.n_threads_batch = n_threads
        params.n_batch = n_batch

        ctx = ll.llama_init_from_model(model.model, params)
        if not ctx:
            logger.error("Failed to create llama.cpp context")
            return None

        batch = ll.llama_batch_init(n_batch, 0, 1)
        return LlamaContextHandle(
            model=model,
            ctx=ctx,
            batch=batch,
            n_batch=n_batch,
            n_vocab=self.n_vocab(model),
            n_embd=self.n_embd(model),
        )

    def free_context(self, context: LlamaContextHandle) -> None:
        self._ll.llama_batch_free(context.batch)
        self._ll.llama_free(context.ctx)

    def free_model(self, model: LlamaModelHandle) -> None:
        self._ll.llama_model_free(model.model)

    # --- vocabulary ---

    def tokenize(
        self, model: LlamaModelHandle, text: str, out: Optional[np.ndarray], add_bos: bool = True,
    ) -> int:
        ll = self._ll
        data = text.encode("utf-8")
        if out is None:
            return ll.llama_tokenize(model.vocab, data, len(data), None, 0, add_bos, False)

        capacity = len(out)
        buf = (ll.llama_token * max(capacity, 1))()
        n = ll.llama_tokenize(model.vocab, data, len(data), buf, capacity, add_bos, False)
        if n > 0:
            out[:n] = buf[:n]
        return n

    def token_to_text(self, model: LlamaModelHandle, token_id: int) -> bytes:
        ll = self._ll
        size = 32
        buf = (ctypes.c_char * size)()
        n = ll.llama_token_to_piece(model.vocab, token_id, buf, size, 0, False)
        if n < 0:
            size = -n
            buf = (ctypes.c_char * size)()
            n = ll.llama_token_to_piece(model.vocab, token_id, buf, size, 0, False)
            if n < 0:
                logger.warning(f"No text piece for token {token_id}")
                return b""
        return bytes(buf[:n])

    def is_end_of_sequence(self, model: LlamaModelHandle, token_id: int) -> bool:
        return bool(self._ll.llama_vocab_is_eog(model.vocab, token_id))

    def n_vocab(self, model: LlamaModelHandle) -> int:
        return int(self._ll.llama_vocab_n_tokens(model.vocab))

    def n_embd(self, model: LlamaModelHandle) -> int:
        return int(self._ll.llama_model_n_embd(model.model))

    # --- compute ---

    def decode(self, context: LlamaContextHandle, batch) -> bool:
        ll = self._ll
        n = batch.num_tokens
        if n == 0 or n > context.n_batch:
            logger.error(f"Invalid batch size {n} (n_batch={context.n_batch})")
            return False

        # No logits requested means an embedding pass
        embedding_pass = not batch.wants_logits
        ll.llama_set_embeddings(context.ctx, embedding_pass)

        b = context.batch
        b.n_tokens = n
        for i in range(n):
            b.token[i] = int(batch.token_ids[i])
            b.pos[i] = int(batch.positions[i])
            b.n_seq_id[i] = 1
            b.seq_id[i][0] = int(batch.seq_ids[i])
            b.logits[i] = int(batch.logits[i])
        if embedding_pass:
            # llama.cpp only keeps embeddings for output rows
            b.logits[n - 1] = 1

        rc = ll.llama_decode(context.ctx, b)
        if rc != 0:
            logger.error(f"llama_decode failed (code {rc}): {DECODE_ERRORS.get(rc, 'unknown error')}")
            return False
        return True

    def get_logits(self, context: LlamaContextHandle, index: int) -> Optional[torch.Tensor]:
        ptr = self._ll.llama_get_logits_ith(context.ctx, index)
        if not ptr:
            return None
        arr = np.ctypeslib.as_array(ptr, shape=(context.n_vocab,))
        return torch.from_numpy(arr.copy())

    def get_embeddings(self, context: LlamaContextHandle, index: int) -> Optional[np.ndarray]:
        ptr = self._ll.llama_get_embeddings_ith(context.ctx, index)
        if not ptr:
            return None
        return np.ctypeslib.as_array(ptr, shape=(context.n_embd,)).copy()

    def clear_cache(self, context: LlamaContextHandle) -> None:
        ll = self._ll
        ll.llama_memory_clear(ll.llama_get_memory(context.ctx), True)
