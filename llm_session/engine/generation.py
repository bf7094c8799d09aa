"""
llm-session :: Generation Engine

Drives the autoregressive loop for one call:

    clear KV cache                              (never reuse a previous call's state)
    decode(prompt batch)                        (only the last prompt token → logits)
    while generated < max_tokens:
        logits = get_logits(flagged index)      (absent → abort: LogitsUnavailable)
        token  = sampling_chain.sample(logits)
        if token is EOS: stop
        text  += decode_token(token)
        decode(one-token batch at next position) (failure → stop, keep partial text)

Decode states: PROMPT_PENDING → DECODING → (TOKEN_EMITTED → DECODING)* → TERMINATED

Runtime faults never propagate. A failed or raising runtime call becomes a
RuntimeFailure inside the loop, which ends it; the kind lands in
GenerationResult.error and the text produced so far is kept.

INL - 2025
"""

import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, List, Optional

from llm_session.core.errors import ErrorKind, RuntimeFailure, SessionError
from llm_session.core.logging import RequestLogger, get_logger
from llm_session.core.sampling import SamplingChain, SamplingParams
from llm_session.core.tokenizer import FragmentDecoder, TokenCodec
from llm_session.engine.batch import BatchBuilder

logger = get_logger("llm_session.engine")


class DecodeState(IntEnum):
    PROMPT_PENDING = 0
    DECODING = 1
    TOKEN_EMITTED = 2
    TERMINATED = 3


@dataclass
class GenerationResult:
    """Result of one generate call — integer token ids + visible text."""
    text: str
    prompt_tokens: List[int] = field(default_factory=list)
    output_tokens: List[int] = field(default_factory=list)
    num_steps: int = 0
    elapsed_ms: float = 0.0
    finish_reason: str = "length"   # "stop", "length", "error"
    error: Optional[ErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def num_generated(self) -> int:
        return len(self.output_tokens)


class GenerationEngine:
    """
    One generation over borrowed model/context handles.

    The engine never outlives the call that created it; ModelSession builds
    a fresh one under its lock for every generate().
    """

    def __init__(
        self,
        runtime,
        model,
        context,
        codec: TokenCodec,
        n_ctx: int,
        n_batch: int = 512,
        sampling_params: Optional[SamplingParams] = None,
        request_logger: Optional[RequestLogger] = None,
    ):
        self.runtime = runtime
        self.model = model
        self.context = context
        self.codec = codec
        self.n_ctx = n_ctx
        self.builder = BatchBuilder(max_batch_size=n_batch)
        self.chain = SamplingChain(sampling_params)
        self.log = request_logger or RequestLogger(0, logger)
        self.state = DecodeState.PROMPT_PENDING

    def _finish(self, result: GenerationResult, reason: str, error: Optional[ErrorKind] = None):
        result.finish_reason = reason
        result.error = error
        self.state = DecodeState.TERMINATED

    def _decode(self, batch, what: str):
        """runtime.decode(), with a False return or an exception as RuntimeFailure."""
        try:
            ok = self.runtime.decode(self.context, batch)
        except Exception as e:
            raise RuntimeFailure(f"{what}: runtime raised {type(e).__name__}: {e}") from e
        if not ok:
            raise RuntimeFailure(what)

    def _logits(self, index: int):
        try:
            logits = self.runtime.get_logits(self.context, index)
        except Exception as e:
            raise RuntimeFailure(f"get_logits raised {type(e).__name__}: {e}") from e
        if logits is None:
            raise RuntimeFailure(
                f"Logits unavailable at batch index {index}", ErrorKind.LOGITS_UNAVAILABLE,
            )
        return logits

    def generate(
        self,
        prompt: str,
        max_tokens: int,
        on_fragment: Optional[Callable[[str], None]] = None,
    ) -> GenerationResult:
        start = time.perf_counter()
        result = GenerationResult(text="")
        self.state = DecodeState.PROMPT_PENDING

        # Fresh generation: no state from a previous call survives
        self.runtime.clear_cache(self.context)

        try:
            tokens = self.codec.encode(prompt)
        except SessionError as e:
            self.log.error(f"Tokenization failed: {e}")
            self._finish(result, "error", ErrorKind.TOKENIZE_FAILED)
            return result

        result.prompt_tokens = tokens.tolist()
        n_prompt = len(tokens)
        if n_prompt >= self.n_ctx:
            self.log.error(f"Prompt of {n_prompt} tokens does not fit context of {self.n_ctx}")
            self._finish(result, "error", ErrorKind.INVALID_INPUT)
            return result

        self.log.debug("Prompt tokenized", prompt_tokens=n_prompt)

        fragments = FragmentDecoder()
        try:
            self._run(result, fragments, max_tokens, on_fragment)
        except RuntimeFailure as e:
            self.log.error(str(e), generated=result.num_generated)
            self._finish(result, "error", e.kind)

        tail = fragments.flush()
        if tail and on_fragment is not None:
            on_fragment(tail)
        result.text = fragments.text()
        result.elapsed_ms = (time.perf_counter() - start) * 1000
        return result

    def _run(
        self,
        result: GenerationResult,
        fragments: FragmentDecoder,
        max_tokens: int,
        on_fragment: Optional[Callable[[str], None]],
    ):
        """Prompt ingestion then the sampling loop. Raises RuntimeFailure."""
        logits_index = -1
        for batch in self.builder.prompt(result.prompt_tokens):
            self._decode(batch, "Failed to decode prompt")
            logits_index = batch.logits_index

        self.state = DecodeState.DECODING
        self.chain.reset(result.prompt_tokens)
        pos = len(result.prompt_tokens)

        if max_tokens <= 0:
            self._finish(result, "length")

        while self.state == DecodeState.DECODING:
            token = self.chain.sample(self._logits(logits_index))
            result.num_steps += 1

            if self.codec.is_end_of_sequence(token):
                self.log.debug("End of generation (EOS token)")
                self._finish(result, "stop")
                return

            self.state = DecodeState.TOKEN_EMITTED
            piece = fragments.push(self.codec.decode(token))
            if piece and on_fragment is not None:
                on_fragment(piece)
            result.output_tokens.append(token)
            self.chain.accept(token)

            if len(result.output_tokens) >= max_tokens:
                self._finish(result, "length")
                return
            if pos >= self.n_ctx:
                self.log.warning(f"Context window full at {pos} tokens")
                self._finish(result, "length")
                return

            self._decode(self.builder.step(token, pos), f"Failed to decode token {token} at position {pos}")
            pos += 1
            logits_index = 0
            self.state = DecodeState.DECODING
