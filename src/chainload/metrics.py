"""Per-run accounting of terminal attempt results, summaries and cross-network comparison."""

import logging
import statistics
import time
from collections import Counter

from chainload.errors import ChainloadError
from chainload.models import AttemptResult, Comparison, LatencyStats, RunSummary

log = logging.getLogger("chainload.metrics")

# metric name -> how to read it off a RunSummary
COMPARED_METRICS = {
    "success_rate": lambda s: s.success_rate,
    "throughput": lambda s: s.throughput,
    "latency_mean": lambda s: s.latency.mean,
    "latency_p50": lambda s: s.latency.p50,
    "latency_p95": lambda s: s.latency.p95,
    "avg_gas": lambda s: s.avg_gas,
    "avg_fee": lambda s: s.total_fee / s.successes if s.successes else 0.0,
}


def latency_stats(values: list[float]) -> LatencyStats:
    if not values:
        return LatencyStats()
    vals = sorted(values)
    if len(vals) == 1:
        v = vals[0]
        return LatencyStats(count=1, min=v, max=v, mean=v, p50=v, p90=v, p95=v, p99=v)
    q = statistics.quantiles(vals, n=100, method="inclusive")
    return LatencyStats(
        count=len(vals),
        min=vals[0],
        max=vals[-1],
        mean=statistics.fmean(vals),
        p50=q[49],
        p90=q[89],
        p95=q[94],
        p99=q[98],
    )


class MetricsAggregator:
    """Collects terminal AttemptResults for one run.

    Results are appended in completion order. Running totals are kept so the
    dashboard can poll cheaply; summarize() recomputes everything from the
    recorded results and does not change state.
    """

    def __init__(self, network: str, *, operation: str = "default", mode: str = "", fingerprint: str | None = None):
        self.network = network
        self.operation = operation
        self.mode = mode
        self.fingerprint = fingerprint or f"{operation}/{mode}"
        self.results: list[AttemptResult] = []
        self.successes = 0
        self.failures = 0
        self.total_gas = 0
        self.total_latency = 0.0
        self.started_at: float | None = None
        self.ended_at: float | None = None

    def start(self) -> None:
        self.started_at = time.time()

    def stop(self) -> None:
        self.ended_at = time.time()

    def record(self, result: AttemptResult) -> None:
        if not result.final:
            raise ValueError(f"Only terminal results are recorded (task {result.task_id})")
        self.results.append(result)
        if result.success:
            self.successes += 1
            self.total_gas += result.gas_used
            self.total_latency += result.latency
        else:
            self.failures += 1

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def success_rate(self) -> float:
        return self.successes / self.total * 100.0 if self.results else 0.0

    @property
    def avg_gas(self) -> float:
        return self.total_gas / self.successes if self.successes else 0.0

    @property
    def avg_latency(self) -> float:
        """Running mean over accepted results, same population as the summary."""
        return self.total_latency / self.successes if self.successes else 0.0

    @property
    def throughput(self) -> float:
        elapsed = self.elapsed()
        return self.successes / elapsed if elapsed > 0 else 0.0

    def elapsed(self) -> float:
        start = self.started_at
        if start is None:
            start = min((r.dispatched_at for r in self.results), default=None)
        if start is None:
            return 0.0
        end = self.ended_at if self.ended_at is not None else time.time()
        return max(end - start, 0.0)

    def summarize(self) -> RunSummary:
        accepted = [r for r in self.results if r.success]
        duration = self.elapsed()
        started = self.started_at if self.started_at is not None else (self.results[0].dispatched_at if self.results else 0.0)
        total_gas = sum(r.gas_used for r in accepted)
        return RunSummary(
            network=self.network,
            operation=self.operation,
            mode=self.mode,
            fingerprint=self.fingerprint,
            started_at=started,
            ended_at=started + duration,
            duration=duration,
            total_attempts=len(self.results),
            successes=len(accepted),
            failures=len(self.results) - len(accepted),
            success_rate=len(accepted) / len(self.results) * 100.0 if self.results else 0.0,
            throughput=len(accepted) / duration if duration > 0 else 0.0,
            retries=sum(r.attempt_count - 1 for r in self.results),
            outcomes=dict(Counter(str(r.outcome) for r in self.results)),
            failures_by_class=dict(Counter(str(r.error_class) for r in self.results if not r.success)),
            latency=latency_stats([r.latency for r in accepted]),
            total_gas=total_gas,
            avg_gas=total_gas / len(accepted) if accepted else 0.0,
            total_fee=sum(r.fee_paid for r in accepted),
        )


def compare_summaries(a: RunSummary, b: RunSummary) -> Comparison:
    """b relative to a. Summaries from different workloads are not compared."""
    mismatches = []
    if a.operation != b.operation:
        mismatches.append(f"operation: {a.operation} != {b.operation}")
    if a.mode != b.mode:
        mismatches.append(f"mode: {a.mode} != {b.mode}")
    if mismatches:
        log.info("Not comparing %s and %s: %s", a.network, b.network, "; ".join(mismatches))
        return Comparison(a.network, b.network, comparable=False, mismatches=tuple(mismatches))

    deltas, ratios = {}, {}
    for name, read in COMPARED_METRICS.items():
        va, vb = read(a), read(b)
        deltas[name] = vb - va
        ratios[name] = vb / va if va else None
    return Comparison(a.network, b.network, comparable=True, deltas=deltas, ratios=ratios)


class NetworkComparator:
    """Keeps the latest summary per network for side-by-side comparison."""

    def __init__(self):
        self.summaries: dict[str, RunSummary] = {}

    def add(self, summary: RunSummary) -> None:
        self.summaries[summary.network] = summary

    def latest(self, network: str) -> RunSummary | None:
        return self.summaries.get(network)

    def compare(self, network_a: str, network_b: str) -> Comparison:
        missing = [n for n in (network_a, network_b) if n not in self.summaries]
        if missing:
            raise ChainloadError(f"No completed run recorded for {', '.join(missing)}")
        return compare_summaries(self.summaries[network_a], self.summaries[network_b])
