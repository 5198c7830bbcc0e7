"""Wires adapter, pool, allocator and submitter for one configured network."""

import logging

import xrpl
from xrpl.wallet import Wallet

import chainload.constants as C
from chainload.adapters.base import NetworkAdapter
from chainload.adapters.evm import EvmAdapter
from chainload.adapters.xrpl import XrplAdapter
from chainload.config import validate_network
from chainload.diagnostic import DEFAULT_ATTEMPTS, DiagnosticProbe
from chainload.endpoint_pool import EndpointPool
from chainload.models import FeePolicy, RetryPolicy, RunConfig
from chainload.scheduler import LoadScheduler, PayloadFactory, RunListener
from chainload.sequence import SequenceAllocator
from chainload.submitter import TransactionSubmitter

log = logging.getLogger("chainload.network")


def payload_factory(family: str, call: dict, fee: FeePolicy) -> PayloadFactory:
    """Every task of a run sends the same configured call."""
    template = dict(call)
    if family == "evm":
        template.setdefault("value", 0)
        if fee.gas_limit is not None:
            template.setdefault("gas", fee.gas_limit)
    else:
        template.setdefault("TransactionType", "Payment")
        template.setdefault("Destination", C.ACCOUNT_ZERO)
        template.setdefault("Amount", "1")

    def make(n: int) -> dict:
        return dict(template)

    return make


class NetworkStack:
    def __init__(
        self,
        name: str,
        adapter: NetworkAdapter,
        pool: EndpointPool,
        allocator: SequenceAllocator,
        submitter: TransactionSubmitter,
        accounts: list[str],
        make_payload: PayloadFactory,
    ):
        self.name = name
        self.adapter = adapter
        self.pool = pool
        self.allocator = allocator
        self.submitter = submitter
        self.accounts = accounts
        self.make_payload = make_payload

    @classmethod
    def from_config(cls, name: str, table: dict, timeouts: dict | None = None) -> "NetworkStack":
        validate_network(name, table)
        to = timeouts or {}
        rpc_timeout = float(to.get("rpc", C.RPC_TIMEOUT))
        family = table["family"]
        fee = FeePolicy.from_dict(table.get("fee"))
        retry = RetryPolicy.from_dict(table.get("retry"))

        if family == "evm":
            adapter = EvmAdapter(timeout=rpc_timeout)
            accounts = list(table["accounts"])
        else:
            wallets = [Wallet.from_seed(s, algorithm=xrpl.CryptoAlgorithm.SECP256K1) for s in table["seeds"]]
            adapter = XrplAdapter(wallets, timeout=rpc_timeout)
            accounts = adapter.accounts

        submit_timeout = float(to.get("submit", C.SUBMIT_TIMEOUT))
        confirm_timeout = float(to.get("confirm", C.CONFIRM_TIMEOUT))
        pool = EndpointPool(
            name,
            list(table["urls"]),
            adapter,
            probe_timeout=float(to.get("probe", C.PROBE_TIMEOUT)),
            retire_grace=submit_timeout + confirm_timeout,
        )
        allocator = SequenceAllocator(
            lambda account: pool.call(lambda c: c.pending_count(account), timeout=rpc_timeout),
            reconcile_interval=float(to.get("reconcile_interval", C.RECONCILE_INTERVAL)),
        )
        submitter = TransactionSubmitter(
            pool,
            allocator,
            fee=fee,
            retry=retry,
            submit_timeout=submit_timeout,
            confirm_timeout=confirm_timeout,
            poll_interval=float(to.get("poll_interval", C.CONFIRM_POLL_INTERVAL)),
            rpc_timeout=rpc_timeout,
        )
        log.info("Configured %s (%s): %s endpoints, %s accounts", name, family, len(table["urls"]), len(accounts))
        return cls(name, adapter, pool, allocator, submitter, accounts, payload_factory(family, table.get("call", {}), fee))

    def scheduler(self, config: RunConfig, listener: RunListener | None = None) -> LoadScheduler:
        return LoadScheduler(
            self.name,
            self.submitter,
            self.allocator,
            self.accounts,
            self.make_payload,
            config,
            listener=listener,
        )

    def diagnostic_probe(self, *, attempts: int = DEFAULT_ATTEMPTS, concurrency: int = 5, account: str | None = None) -> DiagnosticProbe:
        return DiagnosticProbe(
            self.name,
            self.submitter,
            account or self.accounts[0],
            self.make_payload,
            attempts=attempts,
            concurrency=concurrency,
        )

    async def aclose(self) -> None:
        await self.pool.aclose()
