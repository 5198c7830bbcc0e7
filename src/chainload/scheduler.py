"""Drives a run: how many tasks, how fast, how many in flight.

Lifecycle: IDLE -> WARMUP -> RUNNING -> DRAINING -> COMPLETE. Every task that
is created reaches the MetricsAggregator exactly once, including tasks cut off
by cancellation or the drain timeout.
"""

import asyncio
import itertools
import logging
import time
from collections.abc import Callable
from typing import Protocol

from chainload.constants import ErrorClass, RunMode, RunState
from chainload.errors import SequenceRegression
from chainload.metrics import MetricsAggregator
from chainload.models import AttemptResult, RateDiscoveryResult, RoundResult, RunConfig, RunSummary, SubmissionTask
from chainload.sequence import SequenceAllocator
from chainload.submitter import TransactionSubmitter

log = logging.getLogger("chainload.scheduler")

PayloadFactory = Callable[[int], dict]


class RunListener(Protocol):
    def on_run_started(self, meta: dict) -> None: ...
    def on_attempt(self, result: AttemptResult) -> None: ...
    def on_run_completed(self, summary: RunSummary) -> None: ...


class NullListener:
    def on_run_started(self, meta: dict) -> None:
        pass

    def on_attempt(self, result: AttemptResult) -> None:
        pass

    def on_run_completed(self, summary: RunSummary) -> None:
        pass


class QueueListener:
    """Buffers run events for a streaming consumer. Oldest events are dropped when full."""

    def __init__(self, maxsize: int = 1000):
        self.queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def _put(self, event: str, data: dict) -> None:
        item = {"event": event, "data": data}
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(item)

    def on_run_started(self, meta: dict) -> None:
        self._put("started", meta)

    def on_attempt(self, result: AttemptResult) -> None:
        self._put("attempt", result.to_dict())

    def on_run_completed(self, summary: RunSummary) -> None:
        self._put("completed", summary.to_dict())
        self.closed = True

    def drain(self, limit: int = 100) -> list[dict]:
        out = []
        while len(out) < limit and not self.queue.empty():
            out.append(self.queue.get_nowait())
        return out


class LoadScheduler:
    def __init__(
        self,
        network: str,
        submitter: TransactionSubmitter,
        allocator: SequenceAllocator,
        accounts: list[str],
        payload_factory: PayloadFactory,
        config: RunConfig,
        *,
        listener: RunListener | None = None,
    ):
        if not accounts:
            raise ValueError(f"No accounts to submit from on {network}")
        self.network = network
        self.submitter = submitter
        self.allocator = allocator
        self.accounts = list(accounts)
        self.payload_factory = payload_factory
        self.config = config
        self.listener = listener or NullListener()
        self.metrics = MetricsAggregator(network, operation=config.operation, mode=config.mode, fingerprint=config.fingerprint())
        self.state = RunState.IDLE
        self.issued = 0
        self.offered_rate = 0.0
        self.error: str | None = None
        self.discovery: RateDiscoveryResult | None = None
        self._stop = asyncio.Event()
        self._ids = itertools.count(1)
        self._inflight: dict[asyncio.Task, SubmissionTask] = {}
        self._round: MetricsAggregator | None = None

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def cancel(self) -> None:
        if not self._stop.is_set():
            log.info("%s: run cancelled in state %s", self.network, self.state)
        self._stop.set()

    def _set_state(self, state: RunState) -> None:
        log.info("%s: %s -> %s", self.network, self.state, state)
        self.state = state

    async def run(self) -> RunSummary:
        if self.state != RunState.IDLE:
            raise RuntimeError("A LoadScheduler runs once")
        cfg = self.config

        self._set_state(RunState.WARMUP)
        await self._warmup()
        self._notify("on_run_started", {"network": self.network, "mode": str(cfg.mode), "operation": cfg.operation})

        self._set_state(RunState.RUNNING)
        self.metrics.start()
        discovered = None
        match cfg.mode:
            case RunMode.SEQUENTIAL:
                await self._sequential(cfg.count)
            case RunMode.CONCURRENT:
                await self._concurrent(cfg.count, cfg.concurrency)
            case RunMode.SUSTAINED:
                await self._sustain(cfg.rate, cfg.duration, cfg.concurrency, ramp_up=cfg.ramp_up)
            case RunMode.BURST:
                await self._bursts(cfg.burst_size, cfg.burst_count, cfg.burst_interval)
            case RunMode.RATE_DISCOVERY:
                discovered = await self._discover()

        self._set_state(RunState.DRAINING)
        await self._wait_inflight(cfg.drain_timeout)
        self.metrics.stop()
        summary = self.metrics.summarize()
        if discovered is not None:
            best, rounds, reason = discovered
            self.discovery = RateDiscoveryResult(max_sustainable_rate=best, rounds=rounds, stop_reason=reason, summary=summary)
        self._set_state(RunState.COMPLETE)
        log.info(
            "%s: %s/%s accepted (%.1f%%), %.2f tx/s",
            self.network, summary.successes, summary.total_attempts, summary.success_rate, summary.throughput,
        )
        self._notify("on_run_completed", summary)
        return summary

    async def discover_max_rate(self) -> RateDiscoveryResult:
        await self.run()
        return self.discovery

    # ------------------------------------------------------------------
    # Modes

    async def _sequential(self, count: int) -> None:
        for _ in range(count):
            if self.cancelled:
                break
            slot = asyncio.Semaphore(1)
            await slot.acquire()
            await self._drive(self._new_task(), slot)

    async def _concurrent(self, count: int, concurrency: int) -> None:
        slots = asyncio.Semaphore(concurrency)
        for _ in range(count):
            if not await self._claim(slots):
                break
            self._spawn(self._new_task(), slots)

    async def _sustain(self, rate: float, duration: float, concurrency: int, *, ramp_up: float = 0.0) -> None:
        """Issue at `rate` per second for `duration` seconds, ramping linearly over `ramp_up`."""
        slots = asyncio.Semaphore(concurrency)
        start = time.monotonic()
        deadline = start + duration
        next_at = start
        while not self.cancelled:
            now = time.monotonic()
            if now >= deadline:
                break
            current = rate
            if ramp_up > 0:
                current = rate * min(1.0, max((now - start) / ramp_up, 0.1))
            self.offered_rate = current
            if now < next_at:
                await asyncio.sleep(min(next_at, deadline) - now)
                continue
            if not await self._claim(slots):
                break
            self._spawn(self._new_task(), slots)
            next_at += 1.0 / current
            # Saturated: don't let the backlog turn into a catch-up burst
            if next_at < time.monotonic() - 1.0:
                next_at = time.monotonic()

    async def _bursts(self, size: int, count: int, interval: float) -> None:
        for n in range(count):
            if self.cancelled:
                break
            if n:
                await self._pause(interval)
                if self.cancelled:
                    break
            slots = asyncio.Semaphore(size)
            mark = self.metrics.total
            self.offered_rate = float(size)
            burst = []
            for _ in range(size):
                if not await self._claim(slots):
                    break
                burst.append(self._spawn(self._new_task(), slots))
            if n == count - 1:
                # The last burst is bounded by the drain timeout, not waited out here
                break
            await self._settle(burst)
            self.offered_rate = 0.0
            done = self.metrics.results[mark:]
            log.info("%s: burst %s/%s, %s of %s accepted", self.network, n + 1, count, sum(r.success for r in done), len(done))

    async def _discover(self) -> tuple[float, list[RoundResult], str]:
        cfg = self.config
        best_rate, best_achieved = 0.0, 0.0
        rounds: list[RoundResult] = []
        reason = "ladder exhausted"
        for rate in cfg.ladder.rates():
            if self.cancelled:
                reason = "cancelled"
                break
            self._round = MetricsAggregator(self.network, operation=cfg.operation, mode=cfg.mode)
            self._round.start()
            await self._sustain(rate, cfg.round_duration, cfg.concurrency)
            await self._wait_inflight(cfg.drain_timeout)
            self._round.stop()
            summary = self._round.summarize()
            self._round = None

            failure_rate = summary.failures / summary.total_attempts if summary.total_attempts else 1.0
            achieved = summary.throughput
            stable = failure_rate <= cfg.failure_threshold and achieved > best_achieved * (1 + cfg.min_gain)
            rounds.append(RoundResult(offered_rate=rate, achieved_rate=achieved, failure_rate=failure_rate, stable=stable, summary=summary))
            log.info(
                "%s: round at %.2f tx/s achieved %.2f tx/s, failure rate %.1f%%",
                self.network, rate, achieved, failure_rate * 100,
            )
            if failure_rate > cfg.failure_threshold:
                reason = f"failure rate {failure_rate:.0%} above {cfg.failure_threshold:.0%} at {rate} tx/s"
                break
            if not stable:
                reason = f"throughput stopped increasing at {rate} tx/s"
                break
            best_rate, best_achieved = rate, achieved
        log.info("%s: max sustainable rate %.2f tx/s (%s)", self.network, best_rate, reason)
        return best_rate, rounds, reason

    # ------------------------------------------------------------------
    # Task plumbing

    async def _warmup(self) -> None:
        try:
            await self.submitter.pool.acquire()
            await self.allocator.prime(self.accounts)
        except* Exception as eg:
            # Tasks retry seeding on their own and fail individually if it still doesn't work
            for e in eg.exceptions:
                log.warning("%s: warmup incomplete: %s: %s", self.network, type(e).__name__, e)

    def _new_task(self) -> SubmissionTask:
        n = next(self._ids)
        self.issued += 1
        account = self.accounts[(n - 1) % len(self.accounts)]
        return SubmissionTask(task_id=n, account=account, payload=self.payload_factory(n))

    def _spawn(self, task: SubmissionTask, slots: asyncio.Semaphore) -> asyncio.Task:
        t = asyncio.create_task(self._drive(task, slots), name=f"{self.network}-task-{task.task_id}")
        self._inflight[t] = task
        t.add_done_callback(lambda done: self._inflight.pop(done, None))
        return t

    async def _claim(self, slots: asyncio.Semaphore) -> bool:
        """Wait for a free slot, or for cancellation. True means the caller now holds a slot."""
        if self.cancelled:
            return False
        acquire = asyncio.create_task(slots.acquire())
        stop = asyncio.create_task(self._stop.wait())
        done, pending = await asyncio.wait({acquire, stop}, return_when=asyncio.FIRST_COMPLETED)
        for p in pending:
            p.cancel()
        if acquire in done:
            if not self.cancelled:
                return True
            slots.release()
        return False

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _settle(self, tasks: list[asyncio.Task]) -> None:
        """Wait until every task is done or the run is cancelled."""
        stop = asyncio.create_task(self._stop.wait())
        pending = set(tasks)
        try:
            while pending and not self.cancelled:
                _, pending = await asyncio.wait(pending | {stop}, return_when=asyncio.FIRST_COMPLETED)
                pending.discard(stop)
        finally:
            stop.cancel()

    async def _drive(self, task: SubmissionTask, slots: asyncio.Semaphore) -> None:
        """Run one task to its terminal outcome. Enters holding a slot, gives it up while backing off."""
        try:
            while True:
                try:
                    result = await self.submitter.submit_once(task)
                    delay = None if result.final else await self.submitter.prepare_retry(task, result)
                finally:
                    slots.release()
                if result.final:
                    self._record(result)
                    return
                await asyncio.sleep(delay)
                await slots.acquire()
        except SequenceRegression as e:
            self.error = str(e)
            log.error("%s: aborting run: %s", self.network, e)
            self._record(self.submitter.abandon(task, str(e), error_class=ErrorClass.UNKNOWN))
            self.cancel()
        except Exception as e:
            log.exception("%s: %s crashed", self.network, task)
            self._record(self.submitter.abandon(task, f"{type(e).__name__}: {e}", error_class=ErrorClass.UNKNOWN))

    async def _wait_inflight(self, timeout: float | None) -> None:
        snapshot = dict(self._inflight)
        if not snapshot:
            return
        _, pending = await asyncio.wait(snapshot, timeout=timeout)
        if not pending:
            return
        log.warning("%s: %s tasks still in flight after %ss, cancelling", self.network, len(pending), timeout)
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for t in pending:
            task = snapshot[t]
            if not task.finished:
                self._record(self.submitter.abandon(task, "cut off while draining"))

    def _record(self, result: AttemptResult) -> None:
        self.metrics.record(result)
        if self._round is not None:
            self._round.record(result)
        self._notify("on_attempt", result)

    def _notify(self, hook: str, payload) -> None:
        try:
            getattr(self.listener, hook)(payload)
        except Exception as e:
            log.warning("Listener %s failed: %s", hook, e)
