"""
llm-session :: Model Session

Owns one model/context pair and the only lock around it.

Lifecycle (all integer states):
    UNLOADED → LOADING → READY → GENERATING → READY → … → FREED
    FREED is terminal until the next load().

Every public operation (load, generate, embed, free) runs under one
non-reentrant lock, so at most one touches the runtime at a time no matter
which thread calls. is_loaded() is the exception: it only reads the two
handle references and never blocks.

Nothing raised below this layer crosses it: callers get text, a vector,
True/False, or an error marker (see core/errors.py).

INL - 2025
"""

import itertools
import logging
import os
import threading
from enum import IntEnum
from typing import Callable, Optional

import numpy as np

from llm_session.core.config import SessionConfig
from llm_session.core.errors import ErrorKind, error_marker
from llm_session.core.logging import RequestLogger, get_logger
from llm_session.core.metrics import PerformanceMonitor, SessionMetrics
from llm_session.core.tokenizer import TokenCodec
from llm_session.engine.embedding import EmbeddingExtractor, EmbeddingResult
from llm_session.engine.generation import GenerationEngine, GenerationResult

logger = get_logger("llm_session.session")


class SessionState(IntEnum):
    """Session lifecycle — integer states."""
    UNLOADED = 0
    LOADING = 1
    READY = 2
    GENERATING = 3
    FREED = 4


class ModelSession:
    """
    Stateful session around one InferenceRuntime.

    One instance per logical session; the runtime handles it creates are
    never shared and never leave the lock's critical section.
    """

    def __init__(
        self,
        runtime,
        config: Optional[SessionConfig] = None,
        metrics: Optional[SessionMetrics] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        self.runtime = runtime
        self.config = config or SessionConfig()
        self.metrics = metrics or SessionMetrics()
        self.monitor = monitor or PerformanceMonitor()

        self._lock = threading.Lock()
        self._model = None
        self._context = None
        self._backend_up = False
        self._state = SessionState.UNLOADED
        self._context_size: int = 0
        self._model_path: Optional[str] = None
        self._request_ids = itertools.count(1)

    # =====================================================================
    # Introspection
    # =====================================================================

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def context_size(self) -> int:
        return self._context_size

    @property
    def model_path(self) -> Optional[str]:
        return self._model_path

    def is_loaded(self) -> bool:
        """True iff both model and context handles are held. Non-blocking."""
        model, context = self._model, self._context
        return model is not None and context is not None

    def info(self) -> dict:
        """Snapshot of the loaded model's dimensions."""
        with self._lock:
            data = {
                "state": self._state.name,
                "backend": self.runtime.name,
                "model_path": self._model_path,
                "context_size": self._context_size,
            }
            if self._model is not None:
                data["n_vocab"] = self.runtime.n_vocab(self._model)
                data["n_embd"] = self.runtime.n_embd(self._model)
            return data

    # =====================================================================
    # Load / free
    # =====================================================================

    def load(self, path: Optional[str], context_size: int = 0) -> bool:
        """
        Load a model and create its context.

        Whatever was loaded before is fully freed first, even when the new
        path turns out to be unusable. On failure the session is left
        UNLOADED and safe to retry.
        """
        with self._lock:
            if self._holds_resources():
                self._log(logging.INFO, "Model already loaded, freeing before reload")
                self._release()

            if not path:
                self._set_state(SessionState.UNLOADED)
                self._log(logging.ERROR, "load(): model path is empty")
                self.metrics.on_error(ErrorKind.INVALID_INPUT.value)
                return False

            self._set_state(SessionState.LOADING)
            try:
                ok = self._load_locked(path, context_size)
            except Exception:
                self._log(logging.ERROR, f"Exception during model loading: {path}", exc_info=True)
                ok = False

            if not ok:
                self._release()
                self._set_state(SessionState.UNLOADED)
                self.metrics.on_error(ErrorKind.LOAD_FAILED.value)
            return ok

    def _load_locked(self, path: str, context_size: int) -> bool:
        if not os.path.exists(path) or not os.access(path, os.R_OK):
            self._log(logging.ERROR, f"Model path missing or unreadable: {path}")
            return False

        n_ctx = context_size if context_size > 0 else self.config.default_context_size
        self._log(logging.INFO, f"Loading model from: {path}", n_ctx=n_ctx)

        self.runtime.backend_init()
        self._backend_up = True

        model = self.runtime.load_model(path, self.config.n_gpu_layers)
        if model is None:
            self._log(logging.ERROR, f"Failed to load model from {path}")
            return False
        self._model = model

        context = self.runtime.create_context(
            model, n_ctx, self.config.n_threads, self.config.n_batch,
        )
        if context is None:
            self._log(logging.ERROR, "Failed to create context")
            return False
        self._context = context

        self._context_size = n_ctx
        self._model_path = path
        self._set_state(SessionState.READY)
        self.metrics.set_model(os.path.basename(path))
        self._log(logging.INFO, "Model loaded", n_ctx=n_ctx)
        return True

    def free(self) -> None:
        """Release context, then model, then backend state. Idempotent."""
        with self._lock:
            if not self._holds_resources():
                return
            self._log(logging.INFO, "Freeing model resources...")
            self._release()
            self._log(logging.INFO, "Resources freed")

    def _log(self, level: int, msg: str, exc_info: bool = False, **data):
        """Session-scoped line: tagged with backend and lifecycle state."""
        extra = {"backend": self.runtime.name, "state": self._state.name, "extra_data": data}
        logger.log(level, msg, exc_info=exc_info, extra=extra)

    def _set_state(self, state: SessionState):
        previous, self._state = self._state, state
        if previous != state:
            self._log(logging.DEBUG, f"{previous.name} -> {state.name}")

    def _request_logger(self, operation: str) -> RequestLogger:
        return RequestLogger(next(self._request_ids), logger, operation=operation, backend=self.runtime.name)

    def _holds_resources(self) -> bool:
        return self._model is not None or self._context is not None or self._backend_up

    def _release(self):
        """Reverse-of-acquisition teardown. Caller holds the lock."""
        context, model = self._context, self._model
        self._context = None
        self._model = None

        if context is not None:
            try:
                self.runtime.free_context(context)
            except Exception:
                self._log(logging.ERROR, "free_context failed", exc_info=True)
        if model is not None:
            try:
                self.runtime.free_model(model)
            except Exception:
                self._log(logging.ERROR, "free_model failed", exc_info=True)
        if self._backend_up:
            try:
                self.runtime.backend_shutdown()
            except Exception:
                self._log(logging.ERROR, "backend_shutdown failed", exc_info=True)
            self._backend_up = False

        self._context_size = 0
        self._model_path = None
        self._set_state(SessionState.FREED)

    # =====================================================================
    # Generate / embed
    # =====================================================================

    def _precheck(self, prompt) -> Optional[ErrorKind]:
        """Fail-fast checks done before waiting on the lock."""
        if self._state in (SessionState.UNLOADED, SessionState.FREED):
            return ErrorKind.NOT_LOADED
        if not isinstance(prompt, str) or not prompt:
            return ErrorKind.INVALID_INPUT
        return None

    def generate(self, prompt: Optional[str], max_tokens: Optional[int] = None) -> str:
        """Text completion, or an error marker. Never raises."""
        result = self.generate_result(prompt, max_tokens)
        if result.error is None:
            return result.text
        if result.error == ErrorKind.DECODE_FAILED and result.text:
            return result.text
        return error_marker(result.error)

    def generate_result(
        self,
        prompt: Optional[str],
        max_tokens: Optional[int] = None,
        on_fragment: Optional[Callable[[str], None]] = None,
    ) -> GenerationResult:
        """
        Typed generation outcome.

        on_fragment receives decoded text pieces as they are produced. It
        runs while the session lock is held and must not call back into
        this session.
        """
        if max_tokens is None:
            max_tokens = self.config.max_tokens

        error = self._precheck(prompt)
        if error is not None:
            self._log(logging.WARNING, f"generate() rejected: {error.value}")
            self.metrics.on_error(error.value)
            return GenerationResult(text="", finish_reason="error", error=error)

        with self._lock:
            if self._state != SessionState.READY or not self.is_loaded():
                self._log(logging.WARNING, "generate() rejected: model not loaded")
                self.metrics.on_error(ErrorKind.NOT_LOADED.value)
                return GenerationResult(text="", finish_reason="error", error=ErrorKind.NOT_LOADED)

            rlog = self._request_logger("generate")
            rlog.info(f"Generating response for: {prompt[:50]!r}", max_tokens=max_tokens)
            self._set_state(SessionState.GENERATING)
            try:
                engine = GenerationEngine(
                    self.runtime,
                    self._model,
                    self._context,
                    TokenCodec(self.runtime, self._model),
                    n_ctx=self._context_size,
                    n_batch=self.config.n_batch,
                    sampling_params=self.config.sampling,
                    request_logger=rlog,
                )
                result = engine.generate(prompt, max_tokens, on_fragment=on_fragment)
            except Exception:
                rlog.error("Exception during generation", exc_info=True)
                result = GenerationResult(
                    text="", finish_reason="error", error=ErrorKind.DECODE_FAILED,
                    elapsed_ms=rlog.elapsed_ms(),
                )
            finally:
                self._set_state(SessionState.READY)

        self._record_generation(result, rlog)
        return result

    def _record_generation(self, result: GenerationResult, rlog: RequestLogger):
        if result.error is not None:
            self.metrics.on_error(result.error.value)
            rlog.warning(
                f"Generation ended with {result.error.value}",
                generated=result.num_generated,
            )
        self.metrics.on_generation(len(result.prompt_tokens), result.num_generated, result.elapsed_ms)
        stats = self.monitor.record_inference(result.num_generated, result.elapsed_ms, self.runtime.name)
        rlog.finish(
            f"Generated {result.num_generated} tokens",
            finish_reason=result.finish_reason,
            tokens_per_sec=round(stats.tokens_per_second, 2),
        )

    def embed(self, prompt: Optional[str]) -> Optional[np.ndarray]:
        """Hidden-state vector for the prompt, or None. Never raises."""
        return self.embed_result(prompt).vector

    def embed_result(self, prompt: Optional[str]) -> EmbeddingResult:
        error = self._precheck(prompt)
        if error is not None:
            self._log(logging.WARNING, f"embed() rejected: {error.value}")
            self.metrics.on_error(error.value)
            return EmbeddingResult(error=error)

        with self._lock:
            if self._state != SessionState.READY or not self.is_loaded():
                self._log(logging.WARNING, "embed() rejected: model not loaded")
                self.metrics.on_error(ErrorKind.NOT_LOADED.value)
                return EmbeddingResult(error=ErrorKind.NOT_LOADED)

            rlog = self._request_logger("embed")
            self._set_state(SessionState.GENERATING)
            try:
                extractor = EmbeddingExtractor(
                    self.runtime,
                    self._model,
                    self._context,
                    TokenCodec(self.runtime, self._model),
                    n_batch=self.config.n_batch,
                    request_logger=rlog,
                )
                result = extractor.extract(prompt)
            except Exception:
                rlog.error("Exception during embedding", exc_info=True)
                result = EmbeddingResult(error=ErrorKind.DECODE_FAILED)
            finally:
                self._set_state(SessionState.READY)

        if result.error is not None:
            self.metrics.on_error(result.error.value)
            rlog.finish(f"Embedding failed with {result.error.value}", logging.WARNING)
        else:
            self.metrics.on_embedding(result.num_prompt_tokens)
            rlog.finish("Embedding complete", prompt_tokens=result.num_prompt_tokens)
        return result

    def generate_with_image(
        self, prompt: Optional[str], image: bytes, max_tokens: Optional[int] = None,
    ) -> str:
        """Image-conditioned generation, for runtimes that advertise it."""
        if not self.runtime.supports_image_input:
            self._log(logging.WARNING, "Runtime has no image input support")
            self.metrics.on_error(ErrorKind.UNSUPPORTED.value)
            return error_marker(ErrorKind.UNSUPPORTED)

        if max_tokens is None:
            max_tokens = self.config.max_tokens
        error = self._precheck(prompt)
        if error is None and not image:
            error = ErrorKind.INVALID_INPUT
        if error is not None:
            self.metrics.on_error(error.value)
            return error_marker(error)

        with self._lock:
            if self._state != SessionState.READY or not self.is_loaded():
                return error_marker(ErrorKind.NOT_LOADED)
            self._set_state(SessionState.GENERATING)
            try:
                self.runtime.clear_cache(self._context)
                return self.runtime.generate_with_image(
                    self._model, self._context, prompt, image, max_tokens,
                )
            except NotImplementedError:
                self._log(logging.WARNING, "Runtime advertises image input but does not implement it")
                return error_marker(ErrorKind.UNSUPPORTED)
            except Exception:
                self._log(logging.ERROR, "Exception during image generation", exc_info=True)
                return error_marker(ErrorKind.DECODE_FAILED)
            finally:
                self._set_state(SessionState.READY)

    # =====================================================================
    # Context manager
    # =====================================================================

    def __enter__(self) -> "ModelSession":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.free()


def create_session(backend: str = "reference", config: Optional[SessionConfig] = None):
    """
    Build a session for a backend name: "reference", "llama", or "fallback".

    "fallback" returns a FallbackResponder, which satisfies the same
    load/generate/embed/free/is_loaded contract without a runtime.
    """
    config = config or SessionConfig()
    if backend == "fallback":
        from llm_session.engine.fallback import FallbackResponder
        return FallbackResponder(config)

    from llm_session.runtime import get_runtime
    return ModelSession(get_runtime(backend), config)
