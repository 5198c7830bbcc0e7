"""Domain data structures shared by the engine components."""

import asyncio
import math
import random
import statistics
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any

import chainload.constants as C
from chainload.constants import ErrorClass, Outcome, RunMode
from chainload.errors import ConfigError


# =========================================================================
# Endpoints
# =========================================================================

@dataclass
class EndpointStats:
    attempts: int = 0
    failures: int = 0
    latencies: deque[float] = field(default_factory=lambda: deque(maxlen=C.LATENCY_WINDOW))

    @property
    def avg_response_ms(self) -> float:
        if not self.latencies:
            return 0.0
        return statistics.fmean(self.latencies) * 1000.0

    @property
    def success_rate(self) -> float:
        if not self.attempts:
            return 0.0
        return (self.attempts - self.failures) / self.attempts * 100.0


@dataclass(eq=False)
class Endpoint:
    """One RPC URL of a network. Mutated only by the EndpointPool."""

    url: str
    rank: int
    stats: EndpointStats = field(default_factory=EndpointStats)
    healthy: bool | None = None  # None until first probe
    last_good_at: float | None = None
    connection: Any = None

    def __str__(self):
        return f"{self.url} (rank {self.rank})"

    def snapshot(self) -> dict:
        return {
            "url": self.url,
            "rank": self.rank,
            "healthy": self.healthy,
            "attempts": self.stats.attempts,
            "failures": self.stats.failures,
            "avg_response_ms": round(self.stats.avg_response_ms, 2),
            "success_rate": round(self.stats.success_rate, 1),
            "last_good_at": self.last_good_at,
        }


# =========================================================================
# Accounts and tasks
# =========================================================================

@dataclass
class AccountContext:
    address: str
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    next_seq: int | None = None
    last_confirmed: int | None = None
    observed_pending: int | None = None  # last authoritative pending count we saw
    reconciled_at: float = 0.0
    issued: int = 0
    # Reconciliation reads can finish out of order; only the newest read is applied
    fetch_ticket: int = 0
    applied_ticket: int = 0


@dataclass
class FeePolicy:
    """Fee settings for one network. Units are the network's own (wei per gas, drops)."""

    price: int | None = None  # None: ask the endpoint and apply multiplier
    multiplier: float = 1.2
    bump: float = 1.25
    max_price: int | None = None
    gas_limit: int | None = None

    @classmethod
    def from_dict(cls, d: dict | None) -> "FeePolicy":
        d = dict(d or {})
        try:
            return cls(
                price=int(d["price"]) if d.get("price") is not None else None,
                multiplier=float(d.get("multiplier", 1.2)),
                bump=float(d.get("bump", 1.25)),
                max_price=int(d["max_price"]) if d.get("max_price") is not None else None,
                gas_limit=int(d["gas_limit"]) if d.get("gas_limit") is not None else None,
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid fee policy {d}: {e}") from e

    def initial(self, network_price: int | None) -> int:
        if self.price is not None:
            return self.price
        if network_price is None:
            raise ConfigError("No fee price configured and the endpoint did not report one")
        return self._cap(math.ceil(network_price * self.multiplier))

    def bumped(self, price: int) -> int:
        return self._cap(max(price + 1, math.ceil(price * self.bump)), floor=price)

    def _cap(self, price: int, floor: int = 0) -> int:
        if self.max_price is not None and price > self.max_price:
            return max(self.max_price, floor)
        return price


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.0

    @classmethod
    def from_dict(cls, d: dict | None) -> "RetryPolicy":
        d = dict(d or {})
        policy = cls(
            max_attempts=int(d.get("max_attempts", 5)),
            base_delay=float(d.get("base_delay", 1.0)),
            max_delay=float(d.get("max_delay", 30.0)),
            jitter=float(d.get("jitter", 0.0)),
        )
        if policy.max_attempts < 1:
            raise ConfigError("retry.max_attempts must be at least 1")
        return policy

    def delay(self, attempt: int) -> float:
        """Backoff before the attempt following `attempt` (1-based)."""
        d = min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
        if self.jitter:
            d += random.uniform(0, self.jitter * d)
        return min(d, self.max_delay)


@dataclass(slots=True)
class SubmissionTask:
    task_id: int
    account: str
    payload: dict
    sequence: int | None = None
    fee_price: int | None = None
    attempts: int = 0
    created_at: float = field(default_factory=time.time)
    dispatched_at: float | None = None
    history: list[str] = field(default_factory=list)
    finished: bool = False

    def __str__(self):
        return f"task {self.task_id} -- {self.account} -- seq={self.sequence} attempt={self.attempts}"


@dataclass(frozen=True, slots=True)
class AttemptResult:
    task_id: int
    account: str
    sequence: int | None
    outcome: Outcome
    attempt_count: int
    latency: float  # seconds, dispatch -> terminal outcome
    dispatched_at: float
    completed_at: float
    classification: str
    error_class: ErrorClass | None = None
    gas_used: int = 0
    fee_price: int | None = None
    fee_paid: int = 0
    endpoint: str | None = None
    tx_id: str | None = None
    final: bool = True
    history: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return self.outcome == Outcome.ACCEPTED

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class Receipt:
    tx_id: str
    success: bool
    gas_used: int = 0
    effective_price: int | None = None
    block: int | None = None
    detail: str | None = None


# =========================================================================
# Run configuration
# =========================================================================

@dataclass
class RateLadder:
    start: float = 1.0
    step: float = 2.0
    max_rate: float = 50.0
    steps: list[float] | None = None

    @classmethod
    def from_dict(cls, d: dict | None) -> "RateLadder":
        d = dict(d or {})
        steps = d.get("steps")
        ladder = cls(
            start=float(d.get("start", 1.0)),
            step=float(d.get("step", 2.0)),
            max_rate=float(d.get("max_rate", 50.0)),
            steps=[float(s) for s in steps] if steps else None,
        )
        if ladder.steps is None and ladder.step <= 0:
            raise ConfigError("ladder.step must be positive")
        rungs = ladder.steps or [ladder.start, ladder.max_rate]
        if any(r <= 0 for r in rungs):
            raise ConfigError(f"ladder rates must be positive, got {rungs}")
        return ladder

    def rates(self) -> list[float]:
        if self.steps:
            return sorted(self.steps)
        out, r = [], self.start
        while r <= self.max_rate:
            out.append(r)
            r += self.step
        return out


@dataclass
class RunConfig:
    mode: RunMode = RunMode.CONCURRENT
    operation: str = "default"
    count: int = 10
    concurrency: int = 5
    duration: float = 60.0
    rate: float = 10.0
    ramp_up: float = 0.0
    burst_size: int = 10
    burst_count: int = 3
    burst_interval: float = 5.0
    ladder: RateLadder = field(default_factory=RateLadder)
    failure_threshold: float = 0.20
    min_gain: float = 0.0
    round_duration: float = 10.0
    drain_timeout: float = C.DRAIN_TIMEOUT

    @classmethod
    def from_dict(cls, d: dict | None) -> "RunConfig":
        d = dict(d or {})
        try:
            cfg = cls(
                mode=RunMode(d.get("mode", RunMode.CONCURRENT)),
                operation=str(d.get("operation", "default")),
                count=int(d.get("count", 10)),
                concurrency=int(d.get("concurrency", 5)),
                duration=float(d.get("duration", 60.0)),
                rate=float(d.get("rate", 10.0)),
                ramp_up=float(d.get("ramp_up", 0.0)),
                burst_size=int(d.get("burst_size", 10)),
                burst_count=int(d.get("burst_count", 3)),
                burst_interval=float(d.get("burst_interval", 5.0)),
                ladder=RateLadder.from_dict(d.get("ladder")),
                failure_threshold=float(d.get("failure_threshold", 0.20)),
                min_gain=float(d.get("min_gain", 0.0)),
                round_duration=float(d.get("round_duration", 10.0)),
                drain_timeout=float(d.get("drain_timeout", C.DRAIN_TIMEOUT)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid run configuration: {e}") from e
        if cfg.concurrency < 1:
            raise ConfigError("concurrency must be at least 1")
        if cfg.rate <= 0:
            raise ConfigError("rate must be positive")
        if cfg.burst_size < 1:
            raise ConfigError("burst_size must be at least 1")
        return cfg

    def fingerprint(self) -> str:
        return f"{self.operation}/{self.mode}"


# =========================================================================
# Reporting
# =========================================================================

@dataclass(frozen=True)
class LatencyStats:
    count: int = 0
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    p50: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


@dataclass(frozen=True)
class RunSummary:
    network: str
    operation: str
    mode: str
    fingerprint: str
    started_at: float
    ended_at: float
    duration: float
    total_attempts: int
    successes: int
    failures: int
    success_rate: float  # percent
    throughput: float  # successes per second
    retries: int
    outcomes: dict[str, int]
    failures_by_class: dict[str, int]
    latency: LatencyStats
    total_gas: int
    avg_gas: float
    total_fee: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class RoundResult:
    offered_rate: float
    achieved_rate: float
    failure_rate: float
    stable: bool
    summary: RunSummary


@dataclass(frozen=True)
class RateDiscoveryResult:
    max_sustainable_rate: float
    rounds: list[RoundResult]
    stop_reason: str
    summary: RunSummary

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Recommendation:
    fee_multiplier: float
    concurrency: int
    delay: float
    batch_size: str
    notes: tuple[str, ...] = ()


@dataclass(frozen=True)
class DiagnosticReport:
    network: str
    account: str
    attempts: int
    successes: int
    failure_tally: dict[str, int]
    pending_backlog: int | None
    causes: tuple[str, ...]
    recommendation: Recommendation
    results: tuple[AttemptResult, ...] = ()

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Comparison:
    network_a: str
    network_b: str
    comparable: bool
    mismatches: tuple[str, ...] = ()
    deltas: dict[str, float] = field(default_factory=dict)
    ratios: dict[str, float | None] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)
