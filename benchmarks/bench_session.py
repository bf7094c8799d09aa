"""
llm-session :: Session Benchmark

Measures the session layer around the reference runtime:
  - Prompt ingestion tok/s per prompt length
  - Generation tok/s (end to end through ModelSession)
  - Sampling chain overhead per step, per vocabulary size
  - Lock hand-off cost with several calling threads

Usage:
    python benchmarks/bench_session.py [--hidden 256] [--vocab 4096]

INL - 2025
"""

import argparse
import os
import sys
import tempfile
import threading
import time
from typing import List

import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llm_session.core.sampling import SamplingChain, SamplingParams
from llm_session.engine.batch import BatchBuilder
from llm_session.engine.session import ModelSession
from llm_session.runtime.reference import BYTE_VOCAB_SIZE, ReferenceRuntime


def write_checkpoint(directory: str, vocab_size: int, hidden: int) -> str:
    from safetensors.torch import save_file
    vocab_size = max(vocab_size, BYTE_VOCAB_SIZE)
    path = os.path.join(directory, "model.safetensors")
    save_file({
        "embed_tokens.weight": torch.randn(vocab_size, hidden) * 0.1,
        "lm_head.weight": torch.randn(vocab_size, hidden),
    }, path)
    return path


def bench_prompt(runtime, model, prompt_lengths: List[int], n_iters: int = 5) -> List[dict]:
    """Prompt ingestion through decode() only."""
    results = []
    builder = BatchBuilder(max_batch_size=max(prompt_lengths))
    context = runtime.create_context(model, max(prompt_lengths) + 1, 1, max(prompt_lengths))

    for seq_len in prompt_lengths:
        tokens = torch.randint(3, BYTE_VOCAB_SIZE, (seq_len,)).tolist()
        batch = builder.prompt(tokens)[0]

        runtime.clear_cache(context)
        runtime.decode(context, batch)  # Warmup

        start = time.perf_counter()
        for _ in range(n_iters):
            runtime.clear_cache(context)
            runtime.decode(context, batch)
        elapsed = time.perf_counter() - start

        results.append({
            "phase": "prompt",
            "seq_len": seq_len,
            "ms_per_call": round(elapsed / n_iters * 1000, 2),
            "tok_per_sec": int(seq_len * n_iters / elapsed),
        })

    runtime.free_context(context)
    return results


def bench_generate(session: ModelSession, max_tokens: int = 64, n_iters: int = 5) -> dict:
    """End-to-end generation through the session lock, engine and sampler."""
    session.generate_result("Hello", 4)  # Warmup

    total_tokens, total_ms = 0, 0.0
    for _ in range(n_iters):
        result = session.generate_result("The quick brown fox", max_tokens)
        total_tokens += result.num_generated
        total_ms += result.elapsed_ms

    return {
        "phase": "generate",
        "tokens": total_tokens,
        "ms_per_token": round(total_ms / max(total_tokens, 1), 3),
        "tok_per_sec": int(total_tokens / (total_ms / 1000)) if total_ms > 0 else 0,
    }


def bench_sampling(vocab_sizes: List[int], n_iters: int = 200) -> List[dict]:
    """One SamplingChain.sample() per step, default parameters."""
    results = []
    for vocab in vocab_sizes:
        chain = SamplingChain(SamplingParams(seed=0))
        chain.reset(torch.randint(0, vocab, (64,)).tolist())
        logits = torch.randn(vocab)

        for _ in range(10):
            chain.sample(logits)

        start = time.perf_counter()
        for _ in range(n_iters):
            chain.accept(chain.sample(logits))
        elapsed = time.perf_counter() - start

        results.append({
            "phase": "sampling",
            "vocab": vocab,
            "us_per_step": round(elapsed / n_iters * 1e6, 1),
        })
    return results


def bench_contention(session: ModelSession, n_threads: int = 4, calls_per_thread: int = 3) -> dict:
    """Wall time for concurrent callers; the lock serializes them."""
    def worker():
        for _ in range(calls_per_thread):
            session.generate("Hello", 16)

    threads = [threading.Thread(target=worker) for _ in range(n_threads)]
    start = time.perf_counter()
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    elapsed = time.perf_counter() - start

    calls = n_threads * calls_per_thread
    return {
        "phase": "contention",
        "threads": n_threads,
        "calls": calls,
        "ms_per_call": round(elapsed / calls * 1000, 2),
    }


def main():
    parser = argparse.ArgumentParser(description="llm-session benchmark")
    parser.add_argument("--hidden", type=int, default=256)
    parser.add_argument("--vocab", type=int, default=4096)
    parser.add_argument("--max-tokens", type=int, default=64)
    parser.add_argument("--iters", type=int, default=5)
    args = parser.parse_args()

    print("=" * 60)
    print("llm-session :: Session Benchmark")
    print("=" * 60)
    print(f"hidden={args.hidden} vocab={args.vocab} torch={torch.__version__}")

    with tempfile.TemporaryDirectory() as tmp:
        path = write_checkpoint(tmp, args.vocab, args.hidden)

        runtime = ReferenceRuntime()
        model = runtime.load_model(path, 0)

        print(f"\n{'Prompt len':>12} {'ms/call':>10} {'tok/s':>10}")
        print("-" * 34)
        for r in bench_prompt(runtime, model, [16, 64, 256, 512], args.iters):
            print(f"{r['seq_len']:>12} {r['ms_per_call']:>10} {r['tok_per_sec']:>10}")

        with ModelSession(ReferenceRuntime()) as session:
            session.load(path, 2048)

            r = bench_generate(session, args.max_tokens, args.iters)
            print(f"\nGenerate: {r['tokens']} tokens, {r['ms_per_token']} ms/token, {r['tok_per_sec']} tok/s")

            r = bench_contention(session)
            print(f"Contention: {r['threads']} threads, {r['calls']} calls, {r['ms_per_call']} ms/call")

    print(f"\n{'Vocab':>12} {'us/step':>10}")
    print("-" * 24)
    for r in bench_sampling([1024, 32000, 128000]):
        print(f"{r['vocab']:>12} {r['us_per_step']:>10}")


if __name__ == "__main__":
    main()
