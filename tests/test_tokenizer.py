"""
llm-session :: Test Tokenizer

Tests for:
  - Two-phase encode (ask for capacity, then fill)
  - BOS handling
  - Byte fragments and split UTF-8 characters

INL - 2025
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import BOS, ScriptedRuntime, ids_for
from llm_session.core.errors import ErrorKind, TokenizeError
from llm_session.core.tokenizer import TokenCodec, FragmentDecoder, as_token_sequence


@pytest.fixture
def codec():
    return TokenCodec(ScriptedRuntime(), model={"path": "x"})


# =========================================================================
# Encode
# =========================================================================

class TestTwoPhaseEncode:
    def test_try_encode_reports_capacity(self, codec):
        assert codec.try_encode("abc") == 4  # BOS + 3 bytes

    def test_encode_with_exact_capacity(self, codec):
        tokens = codec.encode_with_capacity("abc", 4)
        assert tokens.tolist() == [BOS] + ids_for("abc")

    def test_encode_with_small_capacity_raises(self, codec):
        with pytest.raises(TokenizeError) as exc:
            codec.encode_with_capacity("abc", 2)
        assert exc.value.kind == ErrorKind.TOKENIZE_FAILED

    def test_encode_first_token_is_bos(self, codec):
        tokens = codec.encode("Hello")
        assert tokens[0] == BOS
        assert len(tokens) == 6

    def test_encode_without_bos(self):
        codec = TokenCodec(ScriptedRuntime(), model={}, add_bos=False)
        assert codec.encode("hi").tolist() == ids_for("hi")

    def test_multibyte_text(self, codec):
        tokens = codec.encode("é")
        assert len(tokens) == 1 + len("é".encode("utf-8"))

    def test_sequence_is_read_only(self, codec):
        tokens = codec.encode("abc")
        with pytest.raises(ValueError):
            tokens[0] = 7

    def test_none_rejected(self, codec):
        with pytest.raises(TokenizeError):
            codec.encode(None)

    def test_empty_result_rejected(self):
        codec = TokenCodec(ScriptedRuntime(), model={}, add_bos=False)
        with pytest.raises(TokenizeError):
            codec.encode("")

    def test_runtime_refusing_buffer(self):
        runtime = ScriptedRuntime()
        runtime.tokenize_result = -5
        codec = TokenCodec(runtime, model={})
        with pytest.raises(TokenizeError):
            codec.encode("abc")


# =========================================================================
# Decode
# =========================================================================

class TestDecode:
    def test_token_to_bytes(self, codec):
        assert codec.decode(ids_for("A")[0]) == b"A"

    def test_special_token_is_empty(self, codec):
        assert codec.decode(BOS) == b""

    def test_decode_text_roundtrip(self, codec):
        text = "naïve café"
        assert codec.decode_text(codec.encode(text)) == text

    def test_is_end_of_sequence(self, codec):
        assert codec.is_end_of_sequence(0)
        assert not codec.is_end_of_sequence(BOS)


class TestFragmentDecoder:
    def test_split_character_held_back(self):
        dec = FragmentDecoder()
        raw = "é".encode("utf-8")
        assert dec.push(raw[:1]) == ""
        assert dec.push(raw[1:]) == "é"
        assert dec.text() == "é"

    def test_ascii_passthrough(self):
        dec = FragmentDecoder()
        out = "".join(dec.push(bytes([b])) for b in b"hello")
        assert out == "hello"
        assert dec.raw == b"hello"

    def test_dangling_byte_replaced_on_flush(self):
        dec = FragmentDecoder()
        dec.push(b"a\xe2")
        assert dec.flush() == "�"


def test_as_token_sequence_dtype():
    seq = as_token_sequence([1, 2, 3])
    assert seq.dtype == np.int32
    assert not seq.flags.writeable
