"""
scripts/benchmark.py: pipeline recompute latency benchmark.

The workbench recomputes on every keystroke, so apply_stages has to stay well
under a frame. Runs a representative stage chain over growing inputs and
reports p50/p95/p99 latencies.

Usage:
    python scripts/benchmark.py
    python scripts/benchmark.py --iterations 500 --size 20000 --report-memory
"""

from __future__ import annotations

import argparse
import logging
import statistics
import sys
import time

from regexlab.pipeline.evaluator import apply_stages
from regexlab.pipeline.stages import Stage

logger = logging.getLogger(__name__)

MAX_LATENCY_P95_MS: float = 16.0

_SAMPLE_LINE = "2024-06-01 alice@example.com ordered 3 items for $42.50 (ref #A1B2)\n"

_STAGES: list[Stage] = [
    Stage(source_expression=r"(\d{4})-(\d{2})-(\d{2})", replacement="$3/$2/$1"),
    Stage(source_expression=r"[\w.]+@(?<domain>[\w.]+)", replacement="<user@$<domain>>"),
    Stage(source_expression=r"\$(\d+)\.(\d{2})", replacement="$1,$2 EUR"),
    Stage(source_expression=r"^", flags="gm", replacement="> "),
]


def _setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )


def _percentile(samples: list[float], pct: float) -> float:
    ordered = sorted(samples)
    index = min(len(ordered) - 1, int(round(pct / 100.0 * (len(ordered) - 1))))
    return ordered[index]


def run_benchmark(iterations: int, size: int, report_memory: bool) -> bool:
    """
    Time *iterations* pipeline runs over roughly *size* characters.

    Returns:
        ``True`` if p95 is within :data:`MAX_LATENCY_P95_MS`.
    """
    text = _SAMPLE_LINE * max(1, size // len(_SAMPLE_LINE))
    apply_stages(text, _STAGES)

    latencies: list[float] = []
    for _ in range(iterations):
        t0 = time.perf_counter()
        apply_stages(text, _STAGES)
        latencies.append((time.perf_counter() - t0) * 1000.0)

    p50 = statistics.median(latencies)
    p95 = _percentile(latencies, 95)
    p99 = _percentile(latencies, 99)
    print("\n═══ regexlab pipeline benchmark ═══")
    print(f"  Input:      {len(text)} chars, {len(_STAGES)} stages")
    print(f"  Iterations: {iterations}")
    print(f"  p50: {p50:8.3f} ms")
    print(f"  p95: {p95:8.3f} ms  (limit {MAX_LATENCY_P95_MS:.1f} ms)")
    print(f"  p99: {p99:8.3f} ms")

    if report_memory:
        import psutil  # type: ignore

        rss_mb = psutil.Process().memory_info().rss / (1024 ** 2)
        print(f"  RSS: {rss_mb:8.1f} MB")

    passed = p95 <= MAX_LATENCY_P95_MS
    print(f"  Result: {'PASS' if passed else 'FAIL'}\n")
    return passed


def main() -> int:
    parser = argparse.ArgumentParser(description="Benchmark regexlab pipeline latency")
    parser.add_argument("--iterations", type=int, default=200)
    parser.add_argument("--size", type=int, default=10_000, help="Approximate input size in characters")
    parser.add_argument("--report-memory", action="store_true")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()
    _setup_logging(args.log_level)
    return 0 if run_benchmark(args.iterations, args.size, args.report_memory) else 1


if __name__ == "__main__":
    sys.exit(main())
