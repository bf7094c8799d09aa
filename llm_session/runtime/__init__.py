"""
llm-session :: Runtimes

Backends implementing the InferenceRuntime contract.
  - reference: small torch runtime (always available)
  - llama_cpp_runtime: GGUF models via llama-cpp-python (optional extra)
  - pieces: per-token bytes for tokenizer.json vocabularies
"""

from llm_session.runtime.base import InferenceRuntime
from llm_session.runtime.reference import ReferenceRuntime


def get_runtime(backend: str) -> InferenceRuntime:
    """Instantiate a runtime backend by name."""
    if backend == "reference":
        return ReferenceRuntime()
    if backend in ("llama", "llama.cpp", "llama_cpp"):
        from llm_session.runtime.llama_cpp_runtime import LlamaCppRuntime
        return LlamaCppRuntime()
    raise ValueError(f"Unknown runtime backend: {backend}. Available: reference, llama")
