"""EVM JSON-RPC adapter over httpx.

Transactions are sent with eth_sendTransaction, so signing stays with the node's
managed accounts. The payload supplies to/data/value/gas; the engine supplies
from, nonce and gasPrice.
"""

import itertools
import logging

import httpx

import chainload.constants as C
from chainload.adapters.base import Classification, classify_transport
from chainload.constants import ErrorClass
from chainload.errors import RpcError
from chainload.models import Receipt, SubmissionTask

log = logging.getLogger("chainload.evm")

# First match wins, so fee patterns go before the nonce ones ("replacement transaction underpriced")
_PATTERNS: tuple[tuple[tuple[str, ...], ErrorClass], ...] = (
    (("underpriced", "fee too low", "gas price too low", "less than block base fee", "feecap"), ErrorClass.FEE_TOO_LOW),
    (("nonce too low", "nonce too high", "invalid nonce", "already known", "known transaction"), ErrorClass.SEQUENCE_CONFLICT),
    (("insufficient funds",), ErrorClass.INSUFFICIENT_FUNDS),
    (("timeout", "timed out"), ErrorClass.TIMEOUT),
    (("revert",), ErrorClass.REJECTED_BY_ENDPOINT),
)

_HEX_FIELDS = ("value", "gas", "gasPrice", "nonce", "maxFeePerGas", "maxPriorityFeePerGas")


def _int(v: str | int | None) -> int | None:
    if v is None:
        return None
    return int(v, 16) if isinstance(v, str) else int(v)


class EvmConnection:
    def __init__(self, url: str, *, timeout: float = C.RPC_TIMEOUT, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._ids = itertools.count(1)

    async def call(self, method: str, *params):
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        r = await self._http.post(self.url, json=payload)
        r.raise_for_status()
        body = r.json()
        err = body.get("error")
        if err:
            raise RpcError(err.get("message", str(err)), code=err.get("code"), data=err.get("data"))
        return body.get("result")

    async def block_height(self) -> int:
        return _int(await self.call("eth_blockNumber"))

    async def pending_count(self, account: str) -> int:
        return _int(await self.call("eth_getTransactionCount", account, "pending"))

    async def confirmed_count(self, account: str) -> int:
        return _int(await self.call("eth_getTransactionCount", account, "latest"))

    async def fee_price(self) -> int | None:
        return _int(await self.call("eth_gasPrice"))

    async def submit(self, task: SubmissionTask) -> str:
        tx = {"from": task.account, **task.payload, "nonce": task.sequence, "gasPrice": task.fee_price}
        for k in _HEX_FIELDS:
            if isinstance(tx.get(k), int):
                tx[k] = hex(tx[k])
        return await self.call("eth_sendTransaction", tx)

    async def receipt(self, tx_id: str) -> Receipt | None:
        r = await self.call("eth_getTransactionReceipt", tx_id)
        if not r:
            return None
        success = _int(r.get("status", "0x1")) == 1
        return Receipt(
            tx_id=tx_id,
            success=success,
            gas_used=_int(r.get("gasUsed")) or 0,
            effective_price=_int(r.get("effectiveGasPrice")),
            block=_int(r.get("blockNumber")),
            detail=None if success else "execution reverted",
        )

    async def aclose(self) -> None:
        await self._http.aclose()


class EvmAdapter:
    family = "evm"

    def __init__(self, *, timeout: float = C.RPC_TIMEOUT, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport

    def connect(self, url: str) -> EvmConnection:
        return EvmConnection(url, timeout=self.timeout, transport=self._transport)

    def classify(self, exc: BaseException) -> Classification:
        if (c := classify_transport(exc)) is not None:
            return c
        if isinstance(exc, RpcError):
            msg = exc.message.lower()
            for needles, error_class in _PATTERNS:
                if any(n in msg for n in needles):
                    return Classification(error_class, exc.message)
            return Classification(ErrorClass.REJECTED_BY_ENDPOINT, exc.message)
        log.debug("Unclassified error %s: %s", type(exc).__name__, exc)
        return Classification(ErrorClass.UNKNOWN, f"{type(exc).__name__}: {exc}")
