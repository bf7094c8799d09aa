"""
llm-session :: Core

Infrastructure shared by every runtime backend.
  - errors: error kinds and sentinel markers
  - tokenizer: text ↔ token id conversion (two-phase protocol)
  - sampling: logits → token id pipeline
  - config: session settings
  - metrics: performance history + Prometheus counters
  - chat_template: prompt formatting
"""

from llm_session.core.errors import ErrorKind, RuntimeFailure, SessionError, TokenizeError
from llm_session.core.tokenizer import TokenCodec
from llm_session.core.sampling import SamplingParams, SamplingChain, sample_token
from llm_session.core.config import SessionConfig
