import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable

import chainload.constants as C
from chainload.errors import SequenceRegression
from chainload.models import AccountContext

log = logging.getLogger("chainload.sequence")

PendingCountFn = Callable[[str], Awaitable[int]]


class SequenceAllocator:
    """Per-account sequence numbers (nonces), unique and strictly increasing.

    The counter is seeded from the network's pending count and reconciled against
    it periodically. Reconciliation only ever moves the counter forward. Network
    reads happen outside the per-account critical section.
    """

    def __init__(self, fetch_pending: PendingCountFn, *, reconcile_interval: float | None = C.RECONCILE_INTERVAL):
        self._fetch_pending = fetch_pending
        self.reconcile_interval = reconcile_interval
        self.accounts: dict[str, AccountContext] = {}

    def _context(self, addr: str) -> AccountContext:
        ctx = self.accounts.get(addr)
        if ctx is None:
            log.debug("New account context for %s", addr)
            ctx = AccountContext(address=addr)
            self.accounts[addr] = ctx
        return ctx

    def _due(self, ctx: AccountContext) -> bool:
        if self.reconcile_interval is None:
            return False
        return time.monotonic() - ctx.reconciled_at >= self.reconcile_interval

    async def next(self, account: str) -> int:
        ctx = self._context(account)
        if ctx.next_seq is None:
            await self.reconcile(account)
        elif self._due(ctx):
            ctx.reconciled_at = time.monotonic()  # claim it so concurrent callers don't all re-read
            await self.reconcile(account)

        async with ctx.lock:
            s = ctx.next_seq
            ctx.next_seq += 1
            ctx.issued += 1
            return s

    async def reconcile(self, account: str) -> int:
        """Read the authoritative pending count and jump forward if it is ahead of us.

        Raises SequenceRegression if the pending count went down since the last read.
        """
        ctx = self._context(account)
        ctx.fetch_ticket += 1
        ticket = ctx.fetch_ticket
        observed = await self._fetch_pending(account)

        async with ctx.lock:
            if ticket < ctx.applied_ticket:
                return ctx.next_seq
            if ctx.observed_pending is not None and observed < ctx.observed_pending:
                raise SequenceRegression(account, ctx.observed_pending, observed)
            ctx.applied_ticket = ticket
            ctx.observed_pending = observed
            ctx.reconciled_at = time.monotonic()

            if ctx.next_seq is None:
                ctx.next_seq = observed
                log.debug("Seeded %s at sequence %s", account, observed)
            elif observed > ctx.next_seq:
                log.warning("%s: pending count %s is ahead of local %s, jumping forward", account, observed, ctx.next_seq)
                ctx.next_seq = observed
            return ctx.next_seq

    async def prime(self, accounts: Iterable[str]) -> None:
        async with asyncio.TaskGroup() as tg:
            for a in accounts:
                tg.create_task(self.reconcile(a))

    def mark_confirmed(self, account: str, seq: int | None) -> None:
        if seq is None:
            return
        ctx = self._context(account)
        if ctx.last_confirmed is None or seq > ctx.last_confirmed:
            ctx.last_confirmed = seq

    def snapshot(self) -> dict[str, dict]:
        return {
            addr: {
                "next_seq": ctx.next_seq,
                "last_confirmed": ctx.last_confirmed,
                "observed_pending": ctx.observed_pending,
                "issued": ctx.issued,
            }
            for addr, ctx in self.accounts.items()
        }
