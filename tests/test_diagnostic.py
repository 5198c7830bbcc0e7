from collections import Counter

from chainload.constants import ErrorClass
from chainload.diagnostic import DiagnosticProbe, recommend
from tests.fakes import FakeNetwork, build, rpc_error

ACCOUNT = "0xd1a6"


def payload(n: int) -> dict:
    return {"to": "0xb0b", "data": "0x"}


def probe_for(net: FakeNetwork, **kw) -> DiagnosticProbe:
    _, _, _, submitter = build(net=net)
    return DiagnosticProbe("fakenet", submitter, ACCOUNT, payload, delay=0.0, **kw)


def test_clean_batch_recommends_fast_large_batches():
    causes, rec = recommend(Counter(), backlog=0, fee_multiplier=1.2, concurrency=5)
    assert causes == ()
    assert rec.delay == 0.05
    assert rec.batch_size == "50-100"
    assert rec.concurrency == 5
    assert rec.fee_multiplier == 1.2


def test_fee_failures_raise_the_multiplier():
    causes, rec = recommend(Counter({ErrorClass.FEE_TOO_LOW: 6}), backlog=None, fee_multiplier=1.2, concurrency=5)
    assert rec.fee_multiplier == 1.8
    assert rec.delay == 0.5
    assert rec.batch_size == "10-20"
    assert any("fee" in c for c in causes)


def test_sequence_conflicts_force_serial_submission():
    _, rec = recommend(Counter({ErrorClass.SEQUENCE_CONFLICT: 3}), backlog=None, fee_multiplier=1.0, concurrency=8)
    assert rec.concurrency == 1
    assert rec.delay == 0.2
    assert rec.batch_size == "50-100"


def test_timeouts_halve_concurrency_and_double_delay():
    _, rec = recommend(Counter({ErrorClass.TIMEOUT: 4}), backlog=None, fee_multiplier=1.0, concurrency=8)
    assert rec.concurrency == 4
    assert rec.delay == 0.4


def test_backlog_and_funds_are_reported():
    causes, rec = recommend(Counter({ErrorClass.INSUFFICIENT_FUNDS: 1}), backlog=7, fee_multiplier=1.0, concurrency=4)
    assert any("7 transactions already pending" in c for c in causes)
    assert any("balance" in c for c in causes)
    assert rec.concurrency == 1
    assert "fund the test account" in rec.notes


async def test_probe_runs_a_serial_batch_without_retries():
    net = FakeNetwork()

    def hook(task, url):
        raise rpc_error(ErrorClass.FEE_TOO_LOW)

    net.on_submit = hook
    report = await probe_for(net, attempts=10).run()

    assert report.attempts == 10
    assert report.successes == 0
    assert report.failure_tally == {"FEE_TOO_LOW": 10}
    assert all(r.attempt_count == 1 for r in report.results)
    assert net.max_in_flight == 1
    assert report.recommendation.fee_multiplier == 1.8
    assert report.recommendation.batch_size == "10-20"


async def test_probe_reads_the_pending_backlog():
    net = FakeNetwork()
    net.pending[ACCOUNT] = 12
    net.confirmed[ACCOUNT] = 9

    report = await probe_for(net, attempts=2).run()

    assert report.pending_backlog == 3
    assert report.successes == 2
    assert report.recommendation.concurrency == 1


async def test_probe_does_not_change_the_run_submitter():
    net = FakeNetwork()
    _, _, _, submitter = build(net=net)
    before = submitter.retry.max_attempts

    probe = DiagnosticProbe("fakenet", submitter, ACCOUNT, payload, attempts=1, delay=0.0)

    assert probe.submitter is not submitter
    assert probe.submitter.retry.max_attempts == 1
    assert submitter.retry.max_attempts == before
