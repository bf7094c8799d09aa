"""
llm-session :: Test fixtures

  - ScriptedRuntime: in-memory runtime that emits a scripted token
    sequence and records every call, with injectable failures
  - reference checkpoints written to tmp_path with safetensors

INL - 2025
"""

import json
import os
import sys
import threading
import time

import numpy as np
import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llm_session.runtime.base import InferenceRuntime


BOS, EOS, PAD = 2, 0, 1
OFFSET = 3
VOCAB = 259
HIDDEN = 8


def ids_for(text: str):
    """Byte-level token ids as ScriptedRuntime and the reference runtime assign them."""
    return [b + OFFSET for b in text.encode("utf-8")]


class ScriptedRuntime(InferenceRuntime):
    """
    Byte vocabulary (0=EOS, 1=PAD, 2=BOS, byte b at b+3). Every
    get_logits() call peaks at the next entry of `script`; past the end
    of the script it peaks at EOS.
    """

    name = "scripted"

    def __init__(self, script=(), n_embd=HIDDEN):
        self.script = list(script)
        self._n_embd = n_embd
        self.calls = []
        self.batches = []
        self.steps = 0

        # Fault injection
        self.fail_load = False
        self.fail_context = False
        self.fail_decode_at = None        # index into decode() calls
        self.raise_decode_at = None
        self.logits_none_at = None        # index into get_logits() calls
        self.embeddings_none = False
        self.tokenize_result = None       # fixed return value from tokenize()
        self.decode_delay = 0.0

        self._active = 0
        self.max_active = 0
        self._active_lock = threading.Lock()
        self.freed = []

    def _record(self, name):
        self.calls.append(name)

    def backend_init(self):
        self._record("backend_init")

    def backend_shutdown(self):
        self._record("backend_shutdown")

    def load_model(self, path, n_gpu_layers):
        self._record("load_model")
        if self.fail_load:
            return None
        return {"path": path}

    def create_context(self, model, n_ctx, n_threads, n_batch):
        self._record("create_context")
        if self.fail_context:
            return None
        return {"n_ctx": n_ctx, "n_batch": n_batch}

    def free_context(self, context):
        self._record("free_context")
        self.freed.append("context")

    def free_model(self, model):
        self._record("free_model")
        self.freed.append("model")

    def tokenize(self, model, text, out, add_bos=True):
        self._record("tokenize")
        if self.tokenize_result is not None:
            return self.tokenize_result
        ids = ([BOS] if add_bos else []) + ids_for(text)
        if out is None or len(out) < len(ids):
            return -len(ids)
        out[:len(ids)] = ids
        return len(ids)

    def token_to_text(self, model, token_id):
        if OFFSET <= token_id < VOCAB:
            return bytes([token_id - OFFSET])
        return b""

    def is_end_of_sequence(self, model, token_id):
        return token_id == EOS

    def n_vocab(self, model):
        return VOCAB

    def n_embd(self, model):
        return self._n_embd

    def decode(self, context, batch):
        index = len(self.batches)
        self._record("decode")
        self.batches.append(batch)
        with self._active_lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            if self.decode_delay:
                time.sleep(self.decode_delay)
            if self.raise_decode_at == index:
                raise RuntimeError("scripted runtime crash")
            return self.fail_decode_at != index
        finally:
            with self._active_lock:
                self._active -= 1

    def get_logits(self, context, index):
        self._record("get_logits")
        step = self.steps
        self.steps += 1
        if self.logits_none_at == step:
            return None
        target = self.script[step] if step < len(self.script) else EOS
        logits = torch.full((VOCAB,), -10.0)
        logits[target] = 10.0
        return logits

    def get_embeddings(self, context, index):
        self._record("get_embeddings")
        if self.embeddings_none:
            return None
        return np.arange(self._n_embd, dtype=np.float32) + index

    def clear_cache(self, context):
        self._record("clear_cache")


@pytest.fixture
def scripted():
    """Factory: scripted(script_text_or_ids) → ScriptedRuntime."""
    def make(script=(), **kwargs):
        if isinstance(script, str):
            script = ids_for(script)
        return ScriptedRuntime(script, **kwargs)
    return make


@pytest.fixture
def greedy_config():
    from llm_session.core.config import SessionConfig
    from llm_session.core.sampling import SamplingParams
    return SessionConfig(sampling=SamplingParams(temperature=0.0, repetition_penalty=1.0))


@pytest.fixture
def model_file(tmp_path):
    """Any readable file; ScriptedRuntime never parses it."""
    path = tmp_path / "model.gguf"
    path.write_bytes(b"GGUF")
    return str(path)


# =========================================================================
# Reference checkpoints
# =========================================================================

def letter_weights(vocab=VOCAB, hidden=HIDDEN, seed=0):
    """
    Embeddings with strictly positive entries, so every hidden state is
    positive. lm_head rows favour lowercase letters and push EOS down.
    """
    g = torch.Generator().manual_seed(seed)
    embed = torch.rand(vocab, hidden, generator=g) + 0.5
    lm_head = torch.zeros(vocab, hidden)
    for b in range(ord("a"), ord("z") + 1):
        lm_head[b + OFFSET] = 5.0 + torch.rand(hidden, generator=g)
    lm_head[EOS] = -5.0
    return embed, lm_head


@pytest.fixture
def reference_checkpoint(tmp_path):
    """model.safetensors with byte vocabulary and explicit lm_head."""
    from safetensors.torch import save_file
    embed, lm_head = letter_weights()
    path = tmp_path / "model.safetensors"
    save_file({"embed_tokens.weight": embed, "lm_head.weight": lm_head}, str(path))
    return str(path)


@pytest.fixture
def wordlevel_checkpoint(tmp_path):
    """Model directory with a WordLevel tokenizer.json and tied embeddings."""
    from safetensors.torch import save_file
    from tokenizers import Tokenizer
    from tokenizers.models import WordLevel
    from tokenizers.pre_tokenizers import Whitespace

    vocab = {"</s>": 0, "<pad>": 1, "<s>": 2, "hello": 3, "world": 4, "[UNK]": 5}
    tokenizer = Tokenizer(WordLevel(vocab, unk_token="[UNK]"))
    tokenizer.pre_tokenizer = Whitespace()
    tokenizer.save(str(tmp_path / "tokenizer.json"))

    embed = torch.rand(8, HIDDEN, generator=torch.Generator().manual_seed(1)) + 0.5
    save_file({"embed_tokens.weight": embed}, str(tmp_path / "model.safetensors"))
    return str(tmp_path)


@pytest.fixture
def settings_file(tmp_path):
    def write(data):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps(data))
        return str(path)
    return write
