"""
llm-session :: Test Embedding Extractor

INL - 2025
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import ScriptedRuntime
from llm_session.core.errors import ErrorKind
from llm_session.core.tokenizer import TokenCodec
from llm_session.engine.embedding import EmbeddingExtractor


def make_extractor(runtime, n_batch=512):
    model, context = {"path": "m"}, {}
    return EmbeddingExtractor(runtime, model, context, TokenCodec(runtime, model), n_batch=n_batch)


class TestEmbedding:
    def test_vector_of_last_position(self):
        runtime = ScriptedRuntime(n_embd=16)
        result = make_extractor(runtime).extract("Hello")
        assert result.ok
        assert result.vector.shape == (16,)
        assert result.vector.dtype == np.float32
        # ScriptedRuntime offsets each row by its batch index; last index is 5
        assert result.vector[0] == 5.0
        assert result.num_prompt_tokens == 6

    def test_single_batch_without_logits(self):
        runtime = ScriptedRuntime()
        make_extractor(runtime).extract("Hello")
        assert len(runtime.batches) == 1
        assert not runtime.batches[0].wants_logits
        assert "get_logits" not in runtime.calls

    def test_cache_cleared_before_pass(self):
        runtime = ScriptedRuntime()
        make_extractor(runtime).extract("Hello")
        assert runtime.calls.index("clear_cache") < runtime.calls.index("decode")

    def test_decode_failure(self):
        runtime = ScriptedRuntime()
        runtime.fail_decode_at = 0
        result = make_extractor(runtime).extract("Hello")
        assert result.error == ErrorKind.DECODE_FAILED
        assert result.vector is None

    def test_embeddings_unavailable(self):
        runtime = ScriptedRuntime()
        runtime.embeddings_none = True
        result = make_extractor(runtime).extract("Hello")
        assert result.error == ErrorKind.LOGITS_UNAVAILABLE
        assert not result.ok

    def test_runtime_exception(self):
        runtime = ScriptedRuntime()
        runtime.raise_decode_at = 0
        result = make_extractor(runtime).extract("Hello")
        assert result.error == ErrorKind.DECODE_FAILED
        assert result.vector is None
        assert result.num_prompt_tokens == 6

    def test_prompt_larger_than_batch(self):
        runtime = ScriptedRuntime()
        result = make_extractor(runtime, n_batch=4).extract("Hello")
        assert result.error == ErrorKind.DECODE_FAILED
        assert "decode" not in runtime.calls

    def test_tokenize_failure(self):
        runtime = ScriptedRuntime()
        runtime.tokenize_result = -2
        result = make_extractor(runtime).extract("Hello")
        assert result.error == ErrorKind.TOKENIZE_FAILED

    def test_vector_is_a_copy(self):
        runtime = ScriptedRuntime()
        extractor = make_extractor(runtime)
        a = extractor.extract("Hello").vector
        a[:] = -1.0
        b = extractor.extract("Hello").vector
        assert b[0] == 5.0
