"""XRPL adapter built on xrpl-py.

Transactions are signed locally with the account's Wallet and sent with
SubmitOnly. XRPL has no gas; the fee burned (drops) is reported as gas_used with
an effective price of 1 so fee totals stay in drops.
"""

import asyncio
import hashlib
import logging

from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.core.binarycodec import encode, encode_for_signing
from xrpl.core.keypairs import sign
from xrpl.models import SubmitOnly
from xrpl.models.requests import AccountInfo, Fee, ServerState, Tx
from xrpl.wallet import Wallet

import chainload.constants as C
from chainload.adapters.base import Classification, classify_transport
from chainload.constants import ErrorClass
from chainload.errors import ConfigError, RpcError
from chainload.models import Receipt, SubmissionTask

log = logging.getLogger("chainload.xrpl")

ACCEPTED_RESULTS = {"tesSUCCESS", "terQUEUED"}

_ENGINE_RESULTS: dict[str, ErrorClass] = {
    "tefPAST_SEQ":             ErrorClass.SEQUENCE_CONFLICT,
    "terPRE_SEQ":              ErrorClass.SEQUENCE_CONFLICT,
    "telINSUF_FEE_P":          ErrorClass.FEE_TOO_LOW,
    "telCAN_NOT_QUEUE_FEE":    ErrorClass.FEE_TOO_LOW,
    "terINSUF_FEE_B":          ErrorClass.INSUFFICIENT_FUNDS,
    "tecINSUFFICIENT_RESERVE": ErrorClass.INSUFFICIENT_FUNDS,
    "tecNO_DST_INSUF_XRP":     ErrorClass.INSUFFICIENT_FUNDS,
    "telCAN_NOT_QUEUE":        ErrorClass.TIMEOUT,
    "telCAN_NOT_QUEUE_FULL":   ErrorClass.TIMEOUT,
    "tefMAX_LEDGER":           ErrorClass.TIMEOUT,
}


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def _txid_from_signed_blob_hex(signed_blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(signed_blob_hex)).hex().upper()


def classify_engine_result(er: str) -> ErrorClass:
    if er in _ENGINE_RESULTS:
        return _ENGINE_RESULTS[er]
    if er.startswith("tecUNFUNDED"):
        return ErrorClass.INSUFFICIENT_FUNDS
    return ErrorClass.REJECTED_BY_ENDPOINT


class XrplConnection:
    def __init__(self, url: str, wallets: dict[str, Wallet], *, timeout: float = C.RPC_TIMEOUT):
        self.url = url
        self.client = AsyncJsonRpcClient(url)
        self.timeout = timeout
        self._wallets = wallets

    async def _rpc(self, req) -> dict:
        resp = await asyncio.wait_for(self.client.request(req), timeout=self.timeout)
        if not resp.is_successful():
            res = resp.result
            raise RpcError(res.get("error_message") or res.get("error", "unknown error"), code=res.get("error"))
        return resp.result

    async def block_height(self) -> int:
        ss = await self._rpc(ServerState())
        return ss["state"]["validated_ledger"]["seq"]

    async def pending_count(self, account: str) -> int:
        # "current" includes queued transactions, "validated" would hand back a stale sequence
        ai = await self._rpc(AccountInfo(account=account, ledger_index="current", strict=True))
        return ai["account_data"]["Sequence"]

    async def confirmed_count(self, account: str) -> int:
        ai = await self._rpc(AccountInfo(account=account, ledger_index="validated", strict=True))
        return ai["account_data"]["Sequence"]

    async def fee_price(self) -> int | None:
        r = await self._rpc(Fee())
        return int(r["drops"]["minimum_fee"])

    async def submit(self, task: SubmissionTask) -> str:
        wallet = self._wallets.get(task.account)
        if wallet is None:
            raise ConfigError(f"No wallet configured for {task.account}")

        tx = dict(task.payload)
        tx["Account"] = task.account
        tx["Sequence"] = task.sequence
        tx["Fee"] = str(task.fee_price)
        tx["SigningPubKey"] = wallet.public_key
        tx["LastLedgerSequence"] = await self.block_height() + C.HORIZON

        signing_blob = encode_for_signing(tx)
        to_sign = signing_blob if isinstance(signing_blob, str) else signing_blob.hex()
        tx["TxnSignature"] = sign(to_sign, wallet.private_key)
        signed_blob_hex = encode(tx)
        local_txid = _txid_from_signed_blob_hex(signed_blob_hex)

        res = await self._rpc(SubmitOnly(tx_blob=signed_blob_hex))
        er = res.get("engine_result")
        if er not in ACCEPTED_RESULTS:
            raise RpcError(res.get("engine_result_message") or str(er), code=er)
        return res.get("tx_json", {}).get("hash") or local_txid

    async def receipt(self, tx_id: str) -> Receipt | None:
        try:
            r = await self._rpc(Tx(transaction=tx_id))
        except RpcError as e:
            if e.code == "txnNotFound":
                return None
            raise
        if not r.get("validated"):
            return None
        result = r["meta"]["TransactionResult"]
        tx_json = r.get("tx_json") or r
        return Receipt(
            tx_id=tx_id,
            success=result == "tesSUCCESS",
            gas_used=int(tx_json.get("Fee", 0)),
            effective_price=1,
            block=r.get("ledger_index"),
            detail=None if result == "tesSUCCESS" else result,
        )

    async def aclose(self) -> None:
        # AsyncJsonRpcClient opens a fresh http client per request
        return None


class XrplAdapter:
    family = "xrpl"

    def __init__(self, wallets: list[Wallet], *, timeout: float = C.RPC_TIMEOUT):
        self.wallets = {w.address: w for w in wallets}
        self.timeout = timeout

    @property
    def accounts(self) -> list[str]:
        return list(self.wallets)

    def connect(self, url: str) -> XrplConnection:
        return XrplConnection(url, self.wallets, timeout=self.timeout)

    def classify(self, exc: BaseException) -> Classification:
        if (c := classify_transport(exc)) is not None:
            return c
        if isinstance(exc, RpcError):
            code = str(exc.code or "")
            if code[:3] in ("tes", "tec", "tef", "tel", "tem", "ter"):
                return Classification(classify_engine_result(code), f"{code}: {exc.message}")
            return Classification(ErrorClass.REJECTED_BY_ENDPOINT, exc.message)
        log.debug("Unclassified error %s: %s", type(exc).__name__, exc)
        return Classification(ErrorClass.UNKNOWN, f"{type(exc).__name__}: {exc}")
