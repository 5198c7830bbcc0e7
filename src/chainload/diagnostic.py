"""Small serial batch that explains why a network is failing under load.

The probe checks the account's pending backlog first, sends a handful of
single-attempt transactions one after another, tallies the failures by class
and turns the tally into advisory settings. Nothing here changes another run's
configuration.
"""

import asyncio
import logging
from collections import Counter

from chainload.constants import ErrorClass
from chainload.endpoint_pool import EndpointPool
from chainload.models import AttemptResult, DiagnosticReport, Recommendation, RetryPolicy, SubmissionTask
from chainload.scheduler import PayloadFactory
from chainload.submitter import TransactionSubmitter

log = logging.getLogger("chainload.diagnostic")

DEFAULT_ATTEMPTS = 10


def recommend(
    tally: Counter,
    *,
    backlog: int | None,
    fee_multiplier: float,
    concurrency: int,
) -> tuple[tuple[str, ...], Recommendation]:
    failures = sum(tally.values())
    delay = 0.5 if failures > 5 else 0.2 if failures > 2 else 0.05
    causes, notes = [], []

    if backlog:
        causes.append(f"{backlog} transactions already pending for the account")
        notes.append("wait for pending transactions to clear before starting a run")
        concurrency = 1
        delay = max(delay, 0.5)
    if tally[ErrorClass.SEQUENCE_CONFLICT]:
        causes.append("sequence numbers reused or out of order")
        notes.append("submit serially from each account")
        concurrency = 1
    if tally[ErrorClass.FEE_TOO_LOW]:
        causes.append("fee below the network minimum")
        fee_multiplier = round(fee_multiplier * 1.5, 3)
    if tally[ErrorClass.TIMEOUT]:
        causes.append("endpoint or confirmation timeouts")
        concurrency = max(1, concurrency // 2)
        delay *= 2
    if tally[ErrorClass.INSUFFICIENT_FUNDS]:
        causes.append("account balance too low")
        notes.append("fund the test account")
    if tally[ErrorClass.REJECTED_BY_ENDPOINT]:
        causes.append("transactions rejected by the endpoint")
    if tally[ErrorClass.UNKNOWN]:
        causes.append("unclassified failures, check the log")

    rec = Recommendation(
        fee_multiplier=fee_multiplier,
        concurrency=concurrency,
        delay=delay,
        batch_size="10-20" if failures > 3 else "50-100",
        notes=tuple(notes),
    )
    return tuple(causes), rec


class DiagnosticProbe:
    def __init__(
        self,
        network: str,
        submitter: TransactionSubmitter,
        account: str,
        payload_factory: PayloadFactory,
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        delay: float = 0.1,
        concurrency: int = 5,
    ):
        self.network = network
        self.pool: EndpointPool = submitter.pool
        self.submitter = submitter.derive(retry=RetryPolicy(max_attempts=1))
        self.account = account
        self.payload_factory = payload_factory
        self.attempts = attempts
        self.delay = delay
        self.concurrency = concurrency

    async def pending_backlog(self) -> int | None:
        try:
            pending = await self.pool.call(lambda c: c.pending_count(self.account))
            confirmed = await self.pool.call(lambda c: c.confirmed_count(self.account))
        except Exception as e:
            log.warning("%s: could not read backlog for %s: %s", self.network, self.account, e)
            return None
        return max(pending - confirmed, 0)

    async def run(self) -> DiagnosticReport:
        backlog = await self.pending_backlog()
        if backlog:
            log.warning("%s: %s has %s pending transactions before the probe", self.network, self.account, backlog)

        results: list[AttemptResult] = []
        for i in range(1, self.attempts + 1):
            task = SubmissionTask(task_id=i, account=self.account, payload=self.payload_factory(i))
            results.append(await self.submitter.submit(task))
            if i < self.attempts:
                await asyncio.sleep(self.delay)

        tally = Counter(r.error_class for r in results if not r.success)
        causes, rec = recommend(tally, backlog=backlog, fee_multiplier=self.submitter.fee.multiplier, concurrency=self.concurrency)
        successes = sum(r.success for r in results)
        log.info("%s: diagnostic %s/%s accepted, causes: %s", self.network, successes, len(results), ", ".join(causes) or "none")
        return DiagnosticReport(
            network=self.network,
            account=self.account,
            attempts=len(results),
            successes=successes,
            failure_tally={str(k): v for k, v in tally.items()},
            pending_backlog=backlog,
            causes=causes,
            recommendation=rec,
            results=tuple(results),
        )
