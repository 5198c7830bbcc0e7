import pytest

from chainload.config import config_file, load_config, run_params, validate_network
from chainload.constants import RunMode
from chainload.errors import ConfigError
from chainload.models import FeePolicy, RateLadder, RetryPolicy, RunConfig
from chainload.network import NetworkStack, payload_factory


def test_shipped_config_loads_and_builds_every_network():
    cfg = load_config(config_file)
    assert {"sepolia", "xrpl_local"} <= set(cfg["networks"])

    for name, table in cfg["networks"].items():
        stack = NetworkStack.from_config(name, table, cfg["timeout"])
        assert stack.accounts
        assert len(stack.pool.endpoints) == len(table["urls"])


def test_load_config_rejects_bad_files(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.toml")

    bad = tmp_path / "bad.toml"
    bad.write_text('[networks.x]\nfamily = "solana"\nurls = ["http://x"]\n')
    with pytest.raises(ConfigError, match="family"):
        load_config(bad)


@pytest.mark.parametrize(
    "table, match",
    [
        ({"family": "evm", "urls": [], "accounts": ["0x1"]}, "urls"),
        ({"family": "evm", "urls": ["http://x"]}, "accounts"),
        ({"family": "xrpl", "urls": ["http://x"]}, "seeds"),
    ],
)
def test_validate_network(table, match):
    with pytest.raises(ConfigError, match=match):
        validate_network("net", table)


def test_run_params_overlay_defaults():
    cfg = {"defaults": {"mode": "concurrent", "count": 20, "concurrency": 5}}
    params = run_params(cfg, {"count": 3, "concurrency": None, "mode": "burst"})

    assert params == {"mode": "burst", "count": 3, "concurrency": 5}
    run = RunConfig.from_dict(params)
    assert run.mode == RunMode.BURST
    assert run.fingerprint() == "default/burst"


def test_run_config_rejects_bad_values():
    with pytest.raises(ConfigError):
        RunConfig.from_dict({"mode": "sideways"})
    with pytest.raises(ConfigError):
        RunConfig.from_dict({"concurrency": 0})


def test_fee_policy_bumps_strictly_until_the_cap():
    fee = FeePolicy(multiplier=1.2, bump=1.25, max_price=12)
    assert fee.initial(5) == 6
    assert fee.bumped(1) == 2
    assert fee.bumped(4) == 5
    assert fee.bumped(8) == 10
    assert fee.bumped(10) == 12
    assert fee.bumped(12) == 12
    assert FeePolicy(price=42).initial(None) == 42
    with pytest.raises(ConfigError):
        FeePolicy().initial(None)


def test_retry_policy_backoff_is_capped():
    retry = RetryPolicy(base_delay=1.0, max_delay=5.0)
    assert [retry.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]
    jittered = RetryPolicy(base_delay=1.0, max_delay=30.0, jitter=0.1)
    assert 2.0 <= jittered.delay(2) <= 2.2
    with pytest.raises(ConfigError):
        RetryPolicy.from_dict({"max_attempts": 0})


def test_rate_ladder():
    assert RateLadder().rates()[:3] == [1.0, 3.0, 5.0]
    assert RateLadder().rates()[-1] == 49.0
    assert RateLadder(steps=[5, 1, 3]).rates() == [1, 3, 5]


@pytest.mark.parametrize(
    "ladder",
    [{"start": 0}, {"start": -1.0}, {"steps": [2, 0, 4]}, {"max_rate": 0}],
)
def test_rate_ladder_rejects_non_positive_rates(ladder):
    with pytest.raises(ConfigError, match="positive"):
        RateLadder.from_dict(ladder)
    with pytest.raises(ConfigError):
        RunConfig.from_dict({"mode": "rate_discovery", "ladder": ladder})


def test_sustained_rate_must_be_positive():
    with pytest.raises(ConfigError, match="rate"):
        RunConfig.from_dict({"mode": "sustained", "rate": 0})


def test_payload_factory_fills_family_defaults():
    evm = payload_factory("evm", {"to": "0xb0b", "data": "0x"}, FeePolicy(gas_limit=50_000))(1)
    assert evm == {"to": "0xb0b", "data": "0x", "value": 0, "gas": 50_000}

    make = payload_factory("xrpl", {}, FeePolicy())
    first, second = make(1), make(2)
    assert first["TransactionType"] == "Payment"
    first["Amount"] = "999"
    assert second["Amount"] == "1"
