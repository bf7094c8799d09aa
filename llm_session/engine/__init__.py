"""
llm-session :: Engine

  - batch: per-step runtime input descriptors
  - generation: the autoregressive decode loop
  - embedding: single-pass hidden-state extraction
  - session: lifecycle, lock, and the public five operations
  - fallback: canned responder with the same contract
"""

from llm_session.engine.batch import Batch, BatchBuilder
from llm_session.engine.generation import GenerationEngine, GenerationResult, DecodeState
from llm_session.engine.embedding import EmbeddingExtractor, EmbeddingResult
