"""Typed failures raised at the upstream boundary."""


class UpstreamError(Exception):
    """Base class for failed upstream calls. Counted by the circuit breaker."""


class UpstreamTimeout(UpstreamError):
    pass


class RateLimited(UpstreamError):
    pass


class ServerError(UpstreamError):
    pass


class MalformedResponse(UpstreamError):
    """Response body could not be parsed into a snapshot."""


class CircuitOpenError(Exception):
    """Call rejected because the endpoint's breaker is open."""

    def __init__(self, endpoint: str, retry_in: float):
        super().__init__(f"circuit open for {endpoint}, retry in {retry_in:.1f}s")
        self.endpoint = endpoint
        self.retry_in = retry_in
