import pytest
import xrpl
from xrpl.wallet import Wallet

from chainload.adapters.xrpl import XrplAdapter, _txid_from_signed_blob_hex, classify_engine_result
from chainload.constants import ErrorClass
from chainload.errors import RpcError

GENESIS_SEED = "snoPBrXtMeMyMHUVTgbuqAfg1SUTb"
GENESIS_ADDRESS = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"


@pytest.mark.parametrize(
    "engine_result, expected",
    [
        ("tefPAST_SEQ", ErrorClass.SEQUENCE_CONFLICT),
        ("terPRE_SEQ", ErrorClass.SEQUENCE_CONFLICT),
        ("telINSUF_FEE_P", ErrorClass.FEE_TOO_LOW),
        ("telCAN_NOT_QUEUE_FEE", ErrorClass.FEE_TOO_LOW),
        ("terINSUF_FEE_B", ErrorClass.INSUFFICIENT_FUNDS),
        ("tecUNFUNDED_PAYMENT", ErrorClass.INSUFFICIENT_FUNDS),
        ("tecINSUFFICIENT_RESERVE", ErrorClass.INSUFFICIENT_FUNDS),
        ("telCAN_NOT_QUEUE_FULL", ErrorClass.TIMEOUT),
        ("temMALFORMED", ErrorClass.REJECTED_BY_ENDPOINT),
        ("tefBAD_AUTH", ErrorClass.REJECTED_BY_ENDPOINT),
    ],
)
def test_engine_results(engine_result, expected):
    assert classify_engine_result(engine_result) == expected


def test_classify_uses_engine_result_code():
    adapter = XrplAdapter([])
    c = adapter.classify(RpcError("Insufficient fee", code="telINSUF_FEE_P"))
    assert c.error_class == ErrorClass.FEE_TOO_LOW
    assert c.detail.startswith("telINSUF_FEE_P")
    assert not c.endpoint_fault

    assert adapter.classify(RpcError("Account not found.", code="actNotFound")).error_class == ErrorClass.REJECTED_BY_ENDPOINT
    assert adapter.classify(TimeoutError()).endpoint_fault
    assert adapter.classify(KeyError("seq")).error_class == ErrorClass.UNKNOWN


def test_accounts_come_from_wallets():
    wallet = Wallet.from_seed(GENESIS_SEED, algorithm=xrpl.CryptoAlgorithm.SECP256K1)
    adapter = XrplAdapter([wallet])
    assert adapter.accounts == [GENESIS_ADDRESS]
    assert adapter.connect("http://localhost:5005").url == "http://localhost:5005"


def test_local_txid_is_sha512_half():
    txid = _txid_from_signed_blob_hex("00")
    assert len(txid) == 64
    assert txid == txid.upper()
