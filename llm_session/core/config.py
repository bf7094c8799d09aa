"""
llm-session :: Session Config

Settings for one ModelSession: runtime resource knobs, generation
bounds and sampling defaults. Mirrors a settings.json on disk.

INL - 2025
"""

import json
import dataclasses
from dataclasses import dataclass, field

from llm_session.core.sampling import SamplingParams


def _clamp(value, lo, hi):
    return max(lo, min(hi, value))


@dataclass
class SessionConfig:
    """
    Session settings.

    RAM impact (4-bit quantized ~1B model):
      - Base model: ~1.0 GB
      - Context: linear, ~0.5 GB per 1024 tokens
      - Max tokens: ~128 MB per 512 tokens
      - Sampling parameters: negligible
    """
    # Context
    default_context_size: int = 2048

    # Runtime resources
    n_gpu_layers: int = 99                 # Offload as much as possible
    n_threads: int = 4
    n_batch: int = 512

    # Generation
    max_tokens: int = 80
    agent_name: str = "Assistant"

    # Fallback embedding width (FallbackResponder only)
    embedding_dim_fallback: int = 384

    # Sampling
    sampling: SamplingParams = field(default_factory=SamplingParams)

    def validate(self) -> "SessionConfig":
        """Return a copy with every value clamped to its safe range."""
        s = self.sampling
        sampling = dataclasses.replace(
            s,
            temperature=_clamp(s.temperature, 0.0, 2.0),
            top_p=_clamp(s.top_p, 0.1, 1.0),
            top_k=_clamp(s.top_k, 0, 100),
            min_p=_clamp(s.min_p, 0.0, 1.0),
            repetition_penalty=_clamp(s.repetition_penalty, 1.0, 1.5),
            repeat_last_n=_clamp(s.repeat_last_n, 0, 2048),
        )
        return dataclasses.replace(
            self,
            default_context_size=_clamp(self.default_context_size, 512, 8192),
            n_gpu_layers=max(self.n_gpu_layers, 0),
            n_threads=max(self.n_threads, 1),
            n_batch=_clamp(self.n_batch, 1, 8192),
            max_tokens=_clamp(self.max_tokens, 1, 2048),
            embedding_dim_fallback=max(self.embedding_dim_fallback, 1),
            sampling=sampling,
        )

    def estimate_ram_mb(self) -> int:
        """Rough resident memory estimate for a ~1B 4-bit model."""
        base_model = 1000.0
        ctx_ram = (self.default_context_size / 2048.0) * 1024.0
        max_token_ram = (self.max_tokens / 512.0) * 128.0
        return int(base_model + ctx_ram + max_token_ram)

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)

    def to_json(self) -> str:
        data = self.to_dict()
        data["estimated_ram_mb"] = self.estimate_ram_mb()
        return json.dumps(data, indent=2)

    @staticmethod
    def from_dict(data: dict) -> "SessionConfig":
        """Build from a dict; unknown keys are ignored."""
        config = SessionConfig()
        for key, val in data.items():
            if key == "sampling" and isinstance(val, dict):
                for skey, sval in val.items():
                    if hasattr(config.sampling, skey):
                        setattr(config.sampling, skey, sval)
            elif key != "sampling" and hasattr(config, key):
                setattr(config, key, val)
        return config

    @staticmethod
    def from_json(path: str) -> "SessionConfig":
        """Load from a settings.json file."""
        with open(path, "r") as f:
            data = json.load(f)
        return SessionConfig.from_dict(data)
