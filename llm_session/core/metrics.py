"""
llm-session :: Metrics

Two views of the same events:
  - PerformanceMonitor: in-process history of recent generations
    (tokens/s averages for logs and the CLI)
  - SessionMetrics: Prometheus counters/histograms for scraping

Metrics:
  - llm_session_requests_total: generate/embed calls served
  - llm_session_tokens_generated_total: tokens generated
  - llm_session_tokens_prompt_total: prompt tokens ingested
  - llm_session_errors_total{kind}: failures by ErrorKind
  - llm_session_request_duration_seconds: generation latency histogram

INL - 2025
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import List, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, start_http_server


@dataclass
class InferenceStats:
    """One generation's throughput record."""
    tokens_per_second: float
    total_tokens: int
    duration_ms: float
    backend: str
    timestamp: float = field(default_factory=time.time)


class PerformanceMonitor:
    """
    Thread-safe bounded history of generation throughput.

    Only the last `max_stats` records are kept.
    """

    def __init__(self, max_stats: int = 100):
        self._stats: deque = deque(maxlen=max_stats)
        self._lock = threading.Lock()

    def record_inference(self, tokens: int, duration_ms: float, backend: str) -> InferenceStats:
        tps = (tokens / duration_ms) * 1000 if duration_ms > 0 else 0.0
        stats = InferenceStats(tps, tokens, duration_ms, backend)
        with self._lock:
            self._stats.append(stats)
        return stats

    def average_speed(self) -> float:
        with self._lock:
            if not self._stats:
                return 0.0
            return sum(s.tokens_per_second for s in self._stats) / len(self._stats)

    def recent_speed(self, count: int = 10) -> float:
        with self._lock:
            recent = list(self._stats)[-count:]
        if not recent:
            return 0.0
        return sum(s.tokens_per_second for s in recent) / len(recent)

    def get_stats(self) -> List[InferenceStats]:
        with self._lock:
            return list(self._stats)

    @property
    def total_inferences(self) -> int:
        with self._lock:
            return len(self._stats)


class SessionMetrics:
    """Prometheus metrics for one session, on a private registry."""

    def __init__(self, model_name: str = "", registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # Info
        self.model_info = Info("llm_session_model", "Model information", registry=self.registry)
        self.model_info.info({"name": model_name, "engine": "llm-session"})

        # Counters (integer)
        self.requests_total = Counter(
            "llm_session_requests_total", "Total requests served",
            ["operation"], registry=self.registry,
        )
        self.tokens_generated = Counter(
            "llm_session_tokens_generated_total", "Total tokens generated",
            registry=self.registry,
        )
        self.tokens_prompt = Counter(
            "llm_session_tokens_prompt_total", "Total prompt tokens processed",
            registry=self.registry,
        )
        self.errors_total = Counter(
            "llm_session_errors_total", "Failed operations by error kind",
            ["kind"], registry=self.registry,
        )

        # Histograms
        self.request_duration = Histogram(
            "llm_session_request_duration_seconds",
            "Generation latency",
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )

    def set_model(self, model_name: str):
        self.model_info.info({"name": model_name, "engine": "llm-session"})

    def on_generation(self, prompt_tokens: int, output_tokens: int, elapsed_ms: float):
        self.requests_total.labels(operation="generate").inc()
        self.tokens_prompt.inc(prompt_tokens)
        self.tokens_generated.inc(output_tokens)
        self.request_duration.observe(elapsed_ms / 1000)

    def on_embedding(self, prompt_tokens: int):
        self.requests_total.labels(operation="embed").inc()
        self.tokens_prompt.inc(prompt_tokens)

    def on_error(self, kind: str):
        self.errors_total.labels(kind=kind).inc()

    def serve(self, port: int = 9090):
        """Expose this registry over HTTP for Prometheus scraping."""
        start_http_server(port, registry=self.registry)
