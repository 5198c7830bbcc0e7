import asyncio

import pytest

from chainload.endpoint_pool import MAX_RETIRED, EndpointPool
from chainload.errors import ConfigError, NoEndpointAvailable
from tests.fakes import FakeAdapter, FakeNetwork

URLS = ["http://a", "http://b", "http://c"]


def make_pool(net: FakeNetwork, urls=URLS) -> EndpointPool:
    return EndpointPool("fakenet", list(urls), FakeAdapter(net), probe_timeout=0.5)


def by_url(pool: EndpointPool) -> dict:
    return {s["url"]: s for s in pool.stats()}


def test_empty_url_list_is_a_config_error():
    with pytest.raises(ConfigError):
        EndpointPool("fakenet", [], FakeAdapter(FakeNetwork()))


async def test_acquire_uses_first_endpoint_and_caches_it():
    net = FakeNetwork()
    pool = make_pool(net)

    for _ in range(5):
        lease = await pool.acquire()
        assert lease.url == "http://a"

    assert net.probes["http://a"] == 1
    assert net.probes["http://b"] == 0
    assert pool.current() == "http://a"


async def test_failover_records_each_dead_endpoint_once():
    net = FakeNetwork()
    net.down = {"http://a", "http://b"}
    pool = make_pool(net)

    lease = await pool.acquire()

    assert lease.url == "http://c"
    stats = by_url(pool)
    assert stats["http://a"]["failures"] == 1
    assert stats["http://b"]["failures"] == 1
    assert stats["http://c"]["failures"] == 0
    assert stats["http://c"]["attempts"] == 1
    assert sum(s["failures"] for s in stats.values()) == 2


async def test_failure_report_moves_to_next_endpoint():
    net = FakeNetwork()
    pool = make_pool(net)
    lease = await pool.acquire()

    net.down.add("http://a")
    await pool.report_outcome(lease, False)
    lease = await pool.acquire()

    assert lease.url == "http://b"
    assert pool.ordered()[-1].url == "http://a"


async def test_stale_failure_report_keeps_newer_connection():
    net = FakeNetwork()
    pool = make_pool(net)
    old = await pool.acquire()
    fresh = await pool.switch_to_next()
    assert fresh.url == "http://b"

    # A late failure for the retired connection to a does not touch b
    await pool.report_outcome(old, False)
    assert (await pool.acquire()).connection is fresh.connection


async def test_all_down_raises_then_recovers():
    net = FakeNetwork()
    net.down = set(URLS)
    pool = make_pool(net)

    with pytest.raises(NoEndpointAvailable) as ei:
        await pool.acquire()
    assert ei.value.urls == URLS
    assert pool.current() is None

    net.down.discard("http://b")
    lease = await pool.acquire()
    assert lease.url == "http://b"


async def test_concurrent_acquires_share_one_probe_sweep():
    net = FakeNetwork(probe_latency=0.05)
    pool = make_pool(net)

    leases = await asyncio.gather(*(pool.acquire() for _ in range(10)))

    assert {lease.url for lease in leases} == {"http://a"}
    assert net.probes["http://a"] == 1


async def test_recently_good_endpoint_is_preferred_over_rank():
    net = FakeNetwork()
    pool = make_pool(net)
    a = await pool.acquire()
    b = await pool.switch_to_next()
    assert b.url == "http://b"

    await pool.report_outcome(a.endpoint, True, 0.01)
    assert pool.ordered()[0].url == "http://a"

    await asyncio.sleep(0.01)
    await pool.report_outcome(b, True, 0.01)
    assert pool.ordered()[0].url == "http://b"
    assert (await pool.acquire()).url == "http://b"


async def test_call_records_latency_and_endpoint_failures():
    net = FakeNetwork()
    net.pending["0xabc"] = 7
    pool = make_pool(net)

    assert await pool.call(lambda c: c.pending_count("0xabc")) == 7
    stats = by_url(pool)["http://a"]
    assert stats["attempts"] == 2  # probe + call
    assert stats["failures"] == 0

    net.down.add("http://a")
    with pytest.raises(Exception):
        await pool.call(lambda c: c.pending_count("0xabc"))
    assert by_url(pool)["http://a"]["failures"] == 1
    assert (await pool.acquire()).url == "http://b"


async def test_aclose_closes_live_and_retired_connections():
    net = FakeNetwork()
    adapter = FakeAdapter(net)
    pool = EndpointPool("fakenet", URLS, adapter)
    await pool.acquire()
    await pool.switch_to_next()

    await pool.aclose()

    assert adapter.connections
    assert all(c.closed for c in adapter.connections)


async def test_replaced_connections_are_closed_after_the_grace_period():
    net = FakeNetwork()
    adapter = FakeAdapter(net)
    pool = EndpointPool("fakenet", URLS, adapter, retire_grace=0.0)

    for _ in range(20):
        lease = await pool.acquire()
        await pool.report_outcome(lease, False)

    assert len(adapter.connections) == 20
    assert all(c.closed for c in adapter.connections)


async def test_replaced_connections_are_bounded_while_in_grace():
    net = FakeNetwork()
    adapter = FakeAdapter(net)
    pool = EndpointPool("fakenet", URLS, adapter, retire_grace=3600.0)

    for _ in range(40):
        lease = await pool.acquire()
        await pool.report_outcome(lease, False)

    still_open = [c for c in adapter.connections if not c.closed]
    assert len(still_open) <= MAX_RETIRED
    # The newest ones are kept for leases that may still be polling on them
    assert adapter.connections[-1] in still_open


async def test_cached_endpoint_is_reprobed_after_a_failure():
    net = FakeNetwork()
    pool = make_pool(net)
    a = await pool.acquire()
    b = await pool.switch_to_next()
    await pool.report_outcome(a.endpoint, True, 0.01)
    lease = await pool.acquire()
    assert lease.url == "http://a"
    assert net.probes["http://b"] == 1

    await pool.report_outcome(lease, False)
    again = await pool.acquire()

    assert again.url == "http://b"
    assert net.probes["http://b"] == 2
    assert again.connection is not b.connection

    # Once re-verified the cached connection is reused again
    assert (await pool.acquire()).connection is again.connection
    assert net.probes["http://b"] == 2
