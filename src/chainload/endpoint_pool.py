"""Health-checked failover across the redundant RPC URLs of one network.

All endpoint state lives here and is changed only through acquire() and
report_outcome(). The lock guards small read-modify-write sections and is never
held across a network call.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import chainload.constants as C
from chainload.adapters.base import NetworkAdapter, RpcConnection
from chainload.errors import ConfigError, NoEndpointAvailable
from chainload.models import Endpoint

log = logging.getLogger("chainload.pool")

_STATE_ORDER = {True: 0, None: 1, False: 2}

MAX_RETIRED = 16  # replaced connections kept open for leases still using them

T = TypeVar("T")


@dataclass(frozen=True)
class Lease:
    """What acquire() hands out: an endpoint and the connection that was live for it."""

    endpoint: Endpoint
    connection: RpcConnection

    @property
    def url(self) -> str:
        return self.endpoint.url


def priority(ep: Endpoint) -> tuple:
    """Sort key. Healthy endpoints first (most recent success in front), then unprobed, then failed."""
    recent = -(ep.last_good_at or 0.0) if ep.healthy else 0.0
    return (_STATE_ORDER[ep.healthy], recent, ep.rank)


class EndpointPool:
    def __init__(
        self,
        network: str,
        urls: list[str],
        adapter: NetworkAdapter,
        *,
        probe_timeout: float = C.PROBE_TIMEOUT,
        retire_grace: float = C.RETIRE_GRACE,
    ):
        if not urls:
            raise ConfigError(f"Network {network} has no RPC endpoints configured")
        self.network = network
        self.adapter = adapter
        self.probe_timeout = probe_timeout
        self.retire_grace = retire_grace
        self.endpoints = [Endpoint(url=u, rank=i) for i, u in enumerate(urls)]
        self._lock = asyncio.Lock()
        self._sweep: asyncio.Task | None = None
        self._retired: deque[tuple[float, RpcConnection]] = deque()
        self._recheck = False


    def ordered(self) -> list[Endpoint]:
        return sorted(self.endpoints, key=priority)

    async def acquire(self) -> Lease:
        async with self._lock:
            front = self.ordered()[0]
            # After a failure even a cached healthy endpoint is probed again before use
            if front.healthy and front.connection is not None and not self._recheck:
                return Lease(front, front.connection)
        return await self._join_sweep()

    async def report_outcome(self, target: Lease | Endpoint, success: bool, latency: float = 0.0) -> None:
        ep = target.endpoint if isinstance(target, Lease) else target
        async with self._lock:
            self._apply(ep, success, latency)
            if not success:
                # Only drop the connection the caller actually used; a newer probe may have replaced it
                used = target.connection if isinstance(target, Lease) else ep.connection
                if used is not None and ep.connection is used:
                    ep.connection = None
                    self._retire(used)
                    self._recheck = True
        if not success:
            log.warning("%s: demoted %s (%s/%s failures)", self.network, ep.url, ep.stats.failures, ep.stats.attempts)
            await self._reap()

    async def call(self, op: Callable[[RpcConnection], Awaitable[T]], *, timeout: float = C.RPC_TIMEOUT) -> T:
        """Run one read-only RPC through the preferred endpoint and record how it went."""
        lease = await self.acquire()
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(op(lease.connection), timeout=timeout)
        except Exception as e:
            if self.adapter.classify(e).endpoint_fault:
                await self.report_outcome(lease, False)
            raise
        await self.report_outcome(lease, True, time.perf_counter() - start)
        return result

    async def switch_to_next(self) -> Lease:
        """Demote the current endpoint and force a fresh probe instead of reusing a cached handle."""
        async with self._lock:
            current = self.ordered()[0]
            current.healthy = False
            if current.connection is not None:
                self._retire(current.connection)
                current.connection = None
        log.info("%s: switching away from %s", self.network, current.url)
        await self._reap()
        return await self._join_sweep()

    def current(self) -> str | None:
        front = self.ordered()[0]
        return front.url if front.healthy else None

    def stats(self) -> list[dict]:
        return [ep.snapshot() for ep in self.ordered()]

    async def aclose(self) -> None:
        if self._sweep is not None and not self._sweep.done():
            self._sweep.cancel()
        conns = [conn for _, conn in self._retired]
        conns += [ep.connection for ep in self.endpoints if ep.connection is not None]
        self._retired.clear()
        for ep in self.endpoints:
            ep.connection = None
        for conn in conns:
            await conn.aclose()

    # ------------------------------------------------------------------

    def _retire(self, conn: RpcConnection) -> None:
        # Caller holds the lock. Leases taken earlier may still be polling on conn.
        self._retired.append((time.monotonic(), conn))

    async def _reap(self) -> None:
        """Close replaced connections once their grace period is over, oldest first."""
        cutoff = time.monotonic() - self.retire_grace
        stale = []
        async with self._lock:
            while self._retired and (self._retired[0][0] <= cutoff or len(self._retired) > MAX_RETIRED):
                stale.append(self._retired.popleft()[1])
        for conn in stale:
            await conn.aclose()
        if stale:
            log.debug("%s: closed %s replaced connections", self.network, len(stale))

    async def _join_sweep(self) -> Lease:
        # Callers arriving while a sweep runs wait on it instead of probing every URL themselves
        if self._sweep is None or self._sweep.done():
            self._sweep = asyncio.create_task(self._probe_all(), name=f"probe:{self.network}")
        return await asyncio.shield(self._sweep)

    async def _probe_all(self) -> Lease:
        async with self._lock:
            candidates = self.ordered()
        for ep in candidates:
            lease = await self._probe(ep)
            if lease is not None:
                self._recheck = False
                await self._reap()
                return lease
        log.error("%s: all %s RPC endpoints failed", self.network, len(self.endpoints))
        raise NoEndpointAvailable(self.network, [ep.url for ep in self.endpoints])

    async def _probe(self, ep: Endpoint) -> Lease | None:
        conn = self.adapter.connect(ep.url)
        start = time.perf_counter()
        try:
            height = await asyncio.wait_for(conn.block_height(), timeout=self.probe_timeout)
        except Exception as e:
            async with self._lock:
                self._apply(ep, False, 0.0)
                stale, ep.connection = ep.connection, None
                if stale is not None:
                    self._retire(stale)
            await conn.aclose()
            log.warning("%s RPC %s failed: %s: %s", self.network, ep.url, type(e).__name__, e)
            return None

        latency = time.perf_counter() - start
        async with self._lock:
            self._apply(ep, True, latency)
            if ep.connection is not None:
                self._retire(ep.connection)
            ep.connection = conn
        log.info("Connected to %s via %s (%.0fms, height %s)", self.network, ep.url, latency * 1000, height)
        return Lease(ep, conn)

    @staticmethod
    def _apply(ep: Endpoint, success: bool, latency: float) -> None:
        ep.stats.attempts += 1
        if success:
            ep.stats.latencies.append(latency)
            ep.healthy = True
            ep.last_good_at = time.time()
        else:
            ep.stats.failures += 1
            ep.healthy = False
