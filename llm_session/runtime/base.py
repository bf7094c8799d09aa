"""
llm-session :: Inference Runtime Interface

The opaque engine that owns the forward pass. The session layer only
ever talks to it through these calls; handles it returns are opaque.

Conventions:
  - failure to allocate → None (never a half-built handle)
  - tokenize() returns a negative count when `out` is missing or too
    small; its magnitude is the capacity required
  - decode() returns False on failure; the caller decides what to keep
  - get_logits()/get_embeddings() return None when the output for that
    batch index is unavailable

INL - 2025
"""

from typing import Any, Optional

import numpy as np
import torch


class InferenceRuntime:
    """Base class for runtime backends."""

    name: str = "runtime"

    # Image-conditioned generation capability. No protocol is defined for
    # it here; backends that report False get an Unsupported outcome.
    supports_image_input: bool = False

    # --- backend lifecycle ---

    def backend_init(self) -> None:
        pass

    def backend_shutdown(self) -> None:
        pass

    # --- handles ---

    def load_model(self, path: str, n_gpu_layers: int) -> Optional[Any]:
        raise NotImplementedError

    def create_context(
        self, model: Any, n_ctx: int, n_threads: int, n_batch: int,
    ) -> Optional[Any]:
        raise NotImplementedError

    def free_context(self, context: Any) -> None:
        raise NotImplementedError

    def free_model(self, model: Any) -> None:
        raise NotImplementedError

    # --- vocabulary ---

    def tokenize(
        self, model: Any, text: str, out: Optional[np.ndarray], add_bos: bool = True,
    ) -> int:
        raise NotImplementedError

    def token_to_text(self, model: Any, token_id: int) -> bytes:
        raise NotImplementedError

    def adds_space_prefix(self, model: Any) -> bool:
        """True when token_to_text() pieces start a sequence with one extra space."""
        return False

    def is_end_of_sequence(self, model: Any, token_id: int) -> bool:
        raise NotImplementedError

    def n_vocab(self, model: Any) -> int:
        raise NotImplementedError

    def n_embd(self, model: Any) -> int:
        raise NotImplementedError

    # --- compute ---

    def decode(self, context: Any, batch) -> bool:
        raise NotImplementedError

    def get_logits(self, context: Any, index: int) -> Optional[torch.Tensor]:
        raise NotImplementedError

    def get_embeddings(self, context: Any, index: int) -> Optional[np.ndarray]:
        raise NotImplementedError

    def clear_cache(self, context: Any) -> None:
        raise NotImplementedError

    def generate_with_image(
        self, model: Any, context: Any, prompt: str, image: bytes, max_tokens: int,
    ) -> str:
        raise NotImplementedError(f"{self.name} has no image input support")
