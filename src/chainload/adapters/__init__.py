from chainload.adapters.base import Classification, NetworkAdapter, RpcConnection, classify_transport

__all__ = [
    "Classification",
    "NetworkAdapter",
    "RpcConnection",
    "classify_transport",
]
