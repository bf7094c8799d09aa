"""
llm-session: Session layer for autoregressive text-generation runtimes.

One loaded model/context pair, one lock, a fixed lifecycle:

  load      → Ready       (model + context handles owned by the session)
  generate  → Generating  (prompt batch, sample, one-token batches, stop)
  embed     → Generating  (one batch, hidden state of the last position)
  free      → Freed       (context first, then model)

Token IDs are integers everywhere; float only lives in logits and embeddings.

INL - 2025
"""

__version__ = "0.1.0"

from llm_session.engine.session import ModelSession, SessionState, create_session
from llm_session.engine.fallback import FallbackResponder
from llm_session.core.config import SessionConfig
from llm_session.core.sampling import SamplingParams, SamplingChain
from llm_session.core.errors import ErrorKind, error_marker, is_error_marker
