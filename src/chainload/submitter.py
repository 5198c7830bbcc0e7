"""Send one SubmissionTask to a terminal outcome.

An attempt is: lease an endpoint, price and sign, submit, then poll for a
receipt. Retryable failures come back as non-final results so the caller can
give up its concurrency slot while backing off.
"""

import asyncio
import logging
import time
from dataclasses import replace

import chainload.constants as C
from chainload.adapters.base import Classification
from chainload.constants import ErrorClass, Outcome
from chainload.endpoint_pool import EndpointPool, Lease
from chainload.errors import NoEndpointAvailable, SequenceRegression
from chainload.models import AttemptResult, FeePolicy, Receipt, RetryPolicy, SubmissionTask
from chainload.sequence import SequenceAllocator

log = logging.getLogger("chainload.submit")


def describe(error_class: ErrorClass, detail: str) -> str:
    return f"{error_class}: {C.DESCRIPTIONS[error_class]} ({detail})"


class TransactionSubmitter:
    def __init__(
        self,
        pool: EndpointPool,
        allocator: SequenceAllocator,
        *,
        fee: FeePolicy | None = None,
        retry: RetryPolicy | None = None,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
        confirm_timeout: float = C.CONFIRM_TIMEOUT,
        poll_interval: float = C.CONFIRM_POLL_INTERVAL,
        rpc_timeout: float = C.RPC_TIMEOUT,
    ):
        self.pool = pool
        self.adapter = pool.adapter
        self.allocator = allocator
        self.fee = fee or FeePolicy()
        self.retry = retry or RetryPolicy()
        self.submit_timeout = submit_timeout
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self.rpc_timeout = rpc_timeout

    def derive(self, *, fee: FeePolicy | None = None, retry: RetryPolicy | None = None) -> "TransactionSubmitter":
        """Same pool, allocator and timeouts with a different fee or retry policy."""
        return TransactionSubmitter(
            self.pool,
            self.allocator,
            fee=fee or replace(self.fee),
            retry=retry or replace(self.retry),
            submit_timeout=self.submit_timeout,
            confirm_timeout=self.confirm_timeout,
            poll_interval=self.poll_interval,
            rpc_timeout=self.rpc_timeout,
        )

    async def submit(self, task: SubmissionTask) -> AttemptResult:
        while True:
            result = await self.submit_once(task)
            if result.final:
                return result
            await asyncio.sleep(await self.prepare_retry(task, result))

    async def submit_once(self, task: SubmissionTask) -> AttemptResult:
        """One attempt. The returned result has final=False when a retry is still allowed.

        SequenceRegression is the only exception that escapes; it means the run itself is unsafe.
        """
        task.attempts += 1
        if task.dispatched_at is None:
            task.dispatched_at = time.time()

        # Lease first: a number handed out with nowhere to send it leaves a gap
        try:
            lease = await self.pool.acquire()
            if task.sequence is None:
                task.sequence = await self.allocator.next(task.account)
        except SequenceRegression:
            raise
        except NoEndpointAvailable as e:
            return self._finish(task, Outcome.REJECTED, ErrorClass.REJECTED_BY_ENDPOINT, describe(ErrorClass.REJECTED_BY_ENDPOINT, str(e)))
        except Exception as e:
            return self._failed(task, self.adapter.classify(e))

        conn = lease.connection
        start = time.perf_counter()
        try:
            if task.fee_price is None:
                network_price = None
                if self.fee.price is None:
                    network_price = await asyncio.wait_for(conn.fee_price(), timeout=self.rpc_timeout)
                task.fee_price = self.fee.initial(network_price)
            tx_id = await asyncio.wait_for(conn.submit(task), timeout=self.submit_timeout)
        except Exception as e:
            c = self.adapter.classify(e)
            if c.endpoint_fault:
                await self.pool.report_outcome(lease, False)
            return self._failed(task, c, lease.url)
        await self.pool.report_outcome(lease, True, time.perf_counter() - start)
        log.debug("%s submitted as %s via %s", task, tx_id, lease.url)

        try:
            receipt = await self._await_receipt(lease, tx_id)
        except NoEndpointAvailable as e:
            c = Classification(ErrorClass.TIMEOUT, f"lost every endpoint while confirming: {e}")
            return self._failed(task, c, lease.url, tx_id)
        except Exception as e:
            return self._failed(task, self.adapter.classify(e), lease.url, tx_id)

        if receipt is None:
            c = Classification(ErrorClass.TIMEOUT, f"not confirmed within {self.confirm_timeout}s")
            return self._failed(task, c, lease.url, tx_id)

        self.allocator.mark_confirmed(task.account, task.sequence)
        if not receipt.success:
            detail = describe(ErrorClass.REJECTED_BY_ENDPOINT, f"included but failed: {receipt.detail or 'reverted'}")
            return self._finish(task, Outcome.REJECTED, ErrorClass.REJECTED_BY_ENDPOINT, detail, endpoint=lease.url, tx_id=tx_id)
        return self._accepted(task, receipt, lease.url)

    async def prepare_retry(self, task: SubmissionTask, result: AttemptResult) -> float:
        """Apply the side effects of a retryable failure and return the backoff delay."""
        if task.fee_price is not None:
            old = task.fee_price
            task.fee_price = self.fee.bumped(old)
            log.debug("%s fee %s -> %s", task, old, task.fee_price)
        if result.error_class == ErrorClass.SEQUENCE_CONFLICT:
            await self.allocator.reconcile(task.account)
            task.sequence = await self.allocator.next(task.account)
            log.info("%s re-sequenced after conflict", task)
        return self.retry.delay(task.attempts)

    def abandon(self, task: SubmissionTask, reason: str, *, error_class: ErrorClass = ErrorClass.TIMEOUT) -> AttemptResult:
        """Terminal result for a task that was stopped before it reached an outcome."""
        outcome = Outcome.TIMED_OUT if error_class == ErrorClass.TIMEOUT else Outcome.REJECTED
        if task.dispatched_at is None:
            task.dispatched_at = time.time()
        return self._finish(task, outcome, error_class, describe(error_class, reason))

    # ------------------------------------------------------------------

    async def _await_receipt(self, lease: Lease, tx_id: str) -> Receipt | None:
        try:
            async with asyncio.timeout(self.confirm_timeout):
                while True:
                    try:
                        r = await asyncio.wait_for(lease.connection.receipt(tx_id), timeout=self.rpc_timeout)
                    except Exception as e:
                        if not self.adapter.classify(e).endpoint_fault:
                            raise
                        # Any endpoint can answer for the receipt
                        await self.pool.report_outcome(lease, False)
                        await asyncio.sleep(self.poll_interval)
                        lease = await self.pool.acquire()
                        continue
                    if r is not None:
                        return r
                    await asyncio.sleep(self.poll_interval)
        except TimeoutError:
            return None

    def _failed(self, task: SubmissionTask, c: Classification, endpoint: str | None = None, tx_id: str | None = None) -> AttemptResult:
        task.history.append(c.error_class)
        retryable = c.error_class in C.RETRYABLE
        final = not retryable or task.attempts >= self.retry.max_attempts
        outcome = Outcome.TIMED_OUT if c.error_class == ErrorClass.TIMEOUT else Outcome.REJECTED
        detail = c.detail
        if retryable and final:
            detail = f"{detail}; gave up after {task.attempts} attempts"
        if final:
            log.info("%s failed: %s %s", task, c.error_class, detail)
        else:
            log.debug("%s retryable %s: %s", task, c.error_class, detail)
        return self._finish(task, outcome, c.error_class, describe(c.error_class, detail), final=final, endpoint=endpoint, tx_id=tx_id)

    def _accepted(self, task: SubmissionTask, receipt: Receipt, endpoint: str) -> AttemptResult:
        price = receipt.effective_price or task.fee_price or 0
        return self._finish(
            task,
            Outcome.ACCEPTED,
            None,
            f"{Outcome.ACCEPTED} in block {receipt.block}",
            gas_used=receipt.gas_used,
            fee_paid=receipt.gas_used * price,
            endpoint=endpoint,
            tx_id=receipt.tx_id,
        )

    def _finish(
        self,
        task: SubmissionTask,
        outcome: Outcome,
        error_class: ErrorClass | None,
        classification: str,
        *,
        final: bool = True,
        gas_used: int = 0,
        fee_paid: int = 0,
        endpoint: str | None = None,
        tx_id: str | None = None,
    ) -> AttemptResult:
        now = time.time()
        if final:
            task.finished = True
        return AttemptResult(
            task_id=task.task_id,
            account=task.account,
            sequence=task.sequence,
            outcome=outcome,
            attempt_count=task.attempts,
            latency=now - (task.dispatched_at or now),
            dispatched_at=task.dispatched_at or now,
            completed_at=now,
            classification=classification,
            error_class=error_class,
            gas_used=gas_used,
            fee_price=task.fee_price,
            fee_paid=fee_paid,
            endpoint=endpoint,
            tx_id=tx_id,
            final=final,
            history=tuple(task.history),
        )
