"""Adapter protocol between the engine and one network family's RPC dialect."""

from dataclasses import dataclass
from typing import Protocol

import httpx

from chainload.constants import ErrorClass
from chainload.models import Receipt, SubmissionTask


@dataclass(frozen=True)
class Classification:
    error_class: ErrorClass
    detail: str
    endpoint_fault: bool = False  # True when the endpoint itself, not the transaction, failed


class RpcConnection(Protocol):
    url: str

    async def block_height(self) -> int: ...
    async def pending_count(self, account: str) -> int: ...
    async def confirmed_count(self, account: str) -> int: ...
    async def fee_price(self) -> int | None: ...
    async def submit(self, task: SubmissionTask) -> str: ...
    async def receipt(self, tx_id: str) -> Receipt | None: ...
    async def aclose(self) -> None: ...


class NetworkAdapter(Protocol):
    family: str

    def connect(self, url: str) -> RpcConnection: ...
    def classify(self, exc: BaseException) -> Classification: ...


def classify_transport(exc: BaseException) -> Classification | None:
    """Connectivity failures shared by every httpx-backed adapter."""
    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        return Classification(ErrorClass.TIMEOUT, f"timeout: {exc.__class__.__name__}", endpoint_fault=True)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429 or status >= 500:
            return Classification(ErrorClass.TIMEOUT, f"endpoint busy (HTTP {status})", endpoint_fault=True)
        return Classification(ErrorClass.REJECTED_BY_ENDPOINT, f"HTTP {status}", endpoint_fault=True)
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return Classification(ErrorClass.TIMEOUT, f"network error: {exc.__class__.__name__}: {exc}", endpoint_fault=True)
    return None
