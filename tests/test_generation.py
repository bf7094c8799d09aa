"""
llm-session :: Test Generation Engine

Tests for:
  - Stop on EOS, stop on max_tokens, stop on full context
  - Cache cleared before every call
  - Prompt batch shape (only the last token asks for logits)
  - Runtime faults: decode failure keeps partial text, absent logits
  - Streaming fragments

INL - 2025
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import ScriptedRuntime, ids_for
from llm_session.core.errors import ErrorKind
from llm_session.core.sampling import SamplingParams
from llm_session.core.tokenizer import TokenCodec
from llm_session.engine.generation import GenerationEngine, DecodeState

GREEDY = SamplingParams(temperature=0.0, repetition_penalty=1.0)


def make_engine(runtime, n_ctx=2048, n_batch=512):
    model, context = {"path": "m"}, {"n_ctx": n_ctx}
    return GenerationEngine(
        runtime, model, context, TokenCodec(runtime, model),
        n_ctx=n_ctx, n_batch=n_batch, sampling_params=GREEDY,
    )


# =========================================================================
# Stopping
# =========================================================================

class TestStopping:
    def test_stops_on_eos(self):
        runtime = ScriptedRuntime(ids_for("Hi!"))
        result = make_engine(runtime).generate("Hello", max_tokens=16)
        assert result.text == "Hi!"
        assert result.finish_reason == "stop"
        assert result.ok
        # EOS is sampled but never emitted
        assert result.num_generated == 3
        assert result.num_steps == 4

    def test_stops_at_max_tokens(self):
        runtime = ScriptedRuntime(ids_for("abcdefgh"))
        result = make_engine(runtime).generate("Hello", max_tokens=5)
        assert result.text == "abcde"
        assert result.num_generated == 5
        assert result.finish_reason == "length"

    def test_zero_max_tokens(self):
        runtime = ScriptedRuntime(ids_for("abc"))
        result = make_engine(runtime).generate("Hello", max_tokens=0)
        assert result.text == ""
        assert result.ok
        assert "get_logits" not in runtime.calls

    def test_immediate_eos_gives_empty_text(self):
        runtime = ScriptedRuntime([])
        result = make_engine(runtime).generate("Hello", max_tokens=8)
        assert result.text == ""
        assert result.finish_reason == "stop"
        assert result.ok

    def test_context_full(self):
        runtime = ScriptedRuntime(ids_for("x" * 50))
        # BOS + 5 prompt bytes = 6 positions; two more fit in n_ctx=8
        result = make_engine(runtime, n_ctx=8).generate("Hello", max_tokens=50)
        assert result.finish_reason == "length"
        assert result.ok
        last_pos = max(int(b.positions[-1]) for b in runtime.batches)
        assert last_pos < 8

    def test_prompt_longer_than_context(self):
        runtime = ScriptedRuntime(ids_for("abc"))
        result = make_engine(runtime, n_ctx=4).generate("Hello", max_tokens=5)
        assert result.error == ErrorKind.INVALID_INPUT
        assert "decode" not in runtime.calls

    def test_terminated_state(self):
        engine = make_engine(ScriptedRuntime(ids_for("a")))
        engine.generate("x", max_tokens=4)
        assert engine.state == DecodeState.TERMINATED


# =========================================================================
# Batches and cache
# =========================================================================

class TestBatches:
    def test_cache_cleared_first(self):
        runtime = ScriptedRuntime(ids_for("ab"))
        make_engine(runtime).generate("Hello", max_tokens=4)
        assert runtime.calls[0] == "clear_cache"

    def test_prompt_batch_flags_last_token(self):
        runtime = ScriptedRuntime(ids_for("ab"))
        make_engine(runtime).generate("Hello", max_tokens=4)
        prompt_batch = runtime.batches[0]
        assert prompt_batch.num_tokens == 6
        assert prompt_batch.logits.tolist() == [0, 0, 0, 0, 0, 1]

    def test_step_positions_follow_prompt(self):
        runtime = ScriptedRuntime(ids_for("abc"))
        make_engine(runtime).generate("Hello", max_tokens=8)
        steps = runtime.batches[1:]
        assert [int(b.positions[0]) for b in steps] == [6, 7, 8]
        assert all(b.num_tokens == 1 and b.logits_index == 0 for b in steps)

    def test_long_prompt_is_chunked(self):
        runtime = ScriptedRuntime(ids_for("a"))
        make_engine(runtime, n_batch=4).generate("abcdefghij", max_tokens=1)
        sizes = [b.num_tokens for b in runtime.batches]
        assert sizes == [4, 4, 3]

    def test_no_step_batch_after_last_token(self):
        runtime = ScriptedRuntime(ids_for("abc"))
        make_engine(runtime).generate("Hello", max_tokens=2)
        assert len(runtime.batches) == 2  # prompt + one step


# =========================================================================
# Faults
# =========================================================================

class TestFaults:
    def test_prompt_decode_failure(self):
        runtime = ScriptedRuntime(ids_for("abc"))
        runtime.fail_decode_at = 0
        result = make_engine(runtime).generate("Hello", max_tokens=8)
        assert result.error == ErrorKind.DECODE_FAILED
        assert result.text == ""

    def test_step_decode_failure_keeps_partial_text(self):
        runtime = ScriptedRuntime(ids_for("abcdef"))
        runtime.fail_decode_at = 3  # prompt, a, b, then fails after c
        result = make_engine(runtime).generate("Hello", max_tokens=8)
        assert result.error == ErrorKind.DECODE_FAILED
        assert result.text == "abc"

    def test_logits_unavailable(self):
        runtime = ScriptedRuntime(ids_for("abcdef"))
        runtime.logits_none_at = 2
        result = make_engine(runtime).generate("Hello", max_tokens=8)
        assert result.error == ErrorKind.LOGITS_UNAVAILABLE
        assert result.text == "ab"

    def test_runtime_exception_keeps_partial_text(self):
        runtime = ScriptedRuntime(ids_for("abcdef"))
        runtime.raise_decode_at = 3
        result = make_engine(runtime).generate("Hello", max_tokens=8)
        assert result.error == ErrorKind.DECODE_FAILED
        assert result.finish_reason == "error"
        assert result.text == "abc"
        assert result.num_generated == 3

    def test_runtime_exception_during_prompt(self):
        runtime = ScriptedRuntime(ids_for("abc"))
        runtime.raise_decode_at = 0
        engine = make_engine(runtime)
        result = engine.generate("Hello", max_tokens=8)
        assert result.error == ErrorKind.DECODE_FAILED
        assert result.text == ""
        assert engine.state == DecodeState.TERMINATED
        assert "get_logits" not in runtime.calls

    def test_tokenize_failure(self):
        runtime = ScriptedRuntime()
        runtime.tokenize_result = -3
        result = make_engine(runtime).generate("Hello", max_tokens=8)
        assert result.error == ErrorKind.TOKENIZE_FAILED


class TestStreaming:
    def test_fragments_concatenate_to_text(self):
        runtime = ScriptedRuntime(ids_for("héllo"))
        pieces = []
        result = make_engine(runtime).generate("x", max_tokens=16, on_fragment=pieces.append)
        assert "".join(pieces) == result.text == "héllo"
        assert all(pieces)

    def test_split_character_streams_whole(self):
        runtime = ScriptedRuntime(ids_for("é"))
        pieces = []
        make_engine(runtime).generate("x", max_tokens=16, on_fragment=pieces.append)
        assert pieces == ["é"]
