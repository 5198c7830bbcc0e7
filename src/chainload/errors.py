"""Exception types raised by the engine.

These are distinct from the ErrorClass taxonomy: exceptions describe what went
wrong in a call, ErrorClass describes how a transaction attempt ended.
"""


class ChainloadError(Exception):
    pass


class ConfigError(ChainloadError):
    pass


class NoEndpointAvailable(ChainloadError):
    def __init__(self, network: str, urls: list[str]):
        self.network = network
        self.urls = list(urls)
        super().__init__(f"All {len(self.urls)} RPC endpoints failed their health probe for {network}")


class RpcError(ChainloadError):
    """The endpoint answered, but with an error response."""

    def __init__(self, message: str, code: int | str | None = None, data=None):
        self.message = message
        self.code = code
        self.data = data
        super().__init__(f"{message} (code={code})" if code is not None else message)


class SequenceRegression(ChainloadError):
    """Authoritative pending count went backwards. Needs an operator to look at the account."""

    def __init__(self, account: str, previous: int, observed: int):
        self.account = account
        self.previous = previous
        self.observed = observed
        super().__init__(
            f"Pending count for {account} decreased from {previous} to {observed}; "
            "refusing to continue issuing sequence numbers"
        )
