"""
llm-session :: CLI

Usage:
    llm-session generate <model> --prompt "Hello" [--max-tokens 80] [--ctx 2048] [--backend reference]
    llm-session embed <model> --prompt "Hello"
    llm-session check <model>
    llm-session settings [--config settings.json]
    llm-session bench <model> [--runs 5]

INL - 2025
"""

import argparse
import json
import sys


def _build_session(args):
    from llm_session.core.config import SessionConfig
    from llm_session.engine.session import create_session

    config = SessionConfig.from_json(args.config) if args.config else SessionConfig()
    if getattr(args, "temperature", None) is not None:
        config.sampling.temperature = args.temperature
    if getattr(args, "seed", None) is not None:
        config.sampling.seed = args.seed
    return create_session(args.backend, config.validate())


def _load_or_exit(session, args):
    if not session.load(args.model, args.ctx):
        print(f"Failed to load model: {args.model}", file=sys.stderr)
        sys.exit(1)


def cmd_generate(args):
    """Load a model, run one completion, print it."""
    from llm_session.core.chat_template import build_chat_prompt, find_chat_template

    session = _build_session(args)
    _load_or_exit(session, args)

    prompt = args.prompt
    if args.chat:
        prompt = build_chat_prompt(
            prompt,
            agent_name=session.config.agent_name,
            template=find_chat_template(args.model),
        )

    try:
        if args.stream and hasattr(session, "generate_result"):
            result = session.generate_result(
                prompt, args.max_tokens,
                on_fragment=lambda piece: print(piece, end="", flush=True),
            )
            print()
            print(f"[{result.num_generated} tokens, {result.finish_reason}, {result.elapsed_ms:.0f} ms]",
                  file=sys.stderr)
        else:
            print(session.generate(prompt, args.max_tokens))
    finally:
        session.free()


def cmd_embed(args):
    """Load a model and print the embedding of a prompt as JSON."""
    session = _build_session(args)
    _load_or_exit(session, args)
    try:
        vector = session.embed(args.prompt)
    finally:
        session.free()

    if vector is None:
        print("Embedding unavailable", file=sys.stderr)
        sys.exit(1)
    print(json.dumps({"dim": int(vector.shape[0]), "embedding": [round(float(v), 6) for v in vector]}))


def cmd_check(args):
    """Load a model and report its dimensions."""
    import os

    print(f"Model:       {args.model}")
    print(f"Backend:     {args.backend}")
    if os.path.exists(args.model):
        size_mb = os.path.getsize(args.model) / 1e6 if os.path.isfile(args.model) else 0
        print(f"  file         OK ({size_mb:.0f} MB)" if size_mb else "  file         OK (directory)")
    else:
        print(f"  file         MISSING")
        sys.exit(1)

    session = _build_session(args)
    if not session.load(args.model, args.ctx):
        print(f"  load         FAILED")
        sys.exit(1)
    try:
        info = session.info() if hasattr(session, "info") else {}
    finally:
        session.free()

    print(f"  load         OK")
    for key in ("context_size", "n_vocab", "n_embd"):
        if key in info:
            print(f"  {key:<12} {info[key]}")


def cmd_settings(args):
    """Print validated settings and the RAM estimate."""
    from llm_session.core.config import SessionConfig

    config = SessionConfig.from_json(args.config) if args.config else SessionConfig()
    print(config.validate().to_json())


def cmd_bench(args):
    """Time repeated generations against one loaded model."""
    session = _build_session(args)
    _load_or_exit(session, args)

    print("=" * 60)
    print(f"llm-session :: Benchmark ({args.backend})")
    print("=" * 60)
    print(f"{'Run':<6} {'Tokens':>8} {'ms':>10} {'tok/s':>10} {'finish':>8}")
    print("-" * 46)
    try:
        for i in range(args.runs):
            result = session.generate_result(args.prompt, args.max_tokens)
            tps = result.num_generated / (result.elapsed_ms / 1000) if result.elapsed_ms > 0 else 0.0
            print(f"{i + 1:<6} {result.num_generated:>8} {result.elapsed_ms:>10.1f} {tps:>10.1f} {result.finish_reason:>8}")
        print(f"\nAverage: {session.monitor.average_speed():.1f} tok/s over {session.monitor.total_inferences} runs")
    finally:
        session.free()


def _add_common(p):
    p.add_argument("model", help="Path to model file or directory")
    p.add_argument("--backend", default="reference", choices=["reference", "llama", "fallback"])
    p.add_argument("--ctx", type=int, default=0, help="Context size (0 = config default)")
    p.add_argument("--config", default=None, help="Path to settings.json")


def main():
    parser = argparse.ArgumentParser(
        prog="llm-session",
        description="Session layer for autoregressive text-generation runtimes",
    )
    parser.add_argument("--log-level", default="WARNING")
    parser.add_argument("--log-json", action="store_true", help="JSON log lines")
    sub = parser.add_subparsers(dest="command")

    # generate
    p_gen = sub.add_parser("generate", help="Generate a completion")
    _add_common(p_gen)
    p_gen.add_argument("--prompt", required=True)
    p_gen.add_argument("--max-tokens", type=int, default=80)
    p_gen.add_argument("--temperature", type=float, default=None)
    p_gen.add_argument("--seed", type=int, default=None)
    p_gen.add_argument("--chat", action="store_true", help="Wrap prompt in the chat template")
    p_gen.add_argument("--stream", action="store_true", help="Print fragments as they are generated")
    p_gen.set_defaults(func=cmd_generate)

    # embed
    p_emb = sub.add_parser("embed", help="Print a prompt embedding")
    _add_common(p_emb)
    p_emb.add_argument("--prompt", required=True)
    p_emb.set_defaults(func=cmd_embed)

    # check
    p_check = sub.add_parser("check", help="Check that a model loads")
    _add_common(p_check)
    p_check.set_defaults(func=cmd_check)

    # settings
    p_set = sub.add_parser("settings", help="Show validated settings")
    p_set.add_argument("--config", default=None, help="Path to settings.json")
    p_set.set_defaults(func=cmd_settings)

    # bench
    p_bench = sub.add_parser("bench", help="Benchmark generation throughput")
    _add_common(p_bench)
    p_bench.add_argument("--prompt", default="Hello")
    p_bench.add_argument("--max-tokens", type=int, default=64)
    p_bench.add_argument("--runs", type=int, default=5)
    p_bench.add_argument("--temperature", type=float, default=None)
    p_bench.add_argument("--seed", type=int, default=None)
    p_bench.set_defaults(func=cmd_bench)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    from llm_session.core.logging import setup_logging
    setup_logging(level=args.log_level, json_output=args.log_json)

    args.func(args)


if __name__ == "__main__":
    main()
