from __future__ import annotations


class SrefProxyError(Exception):
    """Base class for failures surfaced by the proxy core."""


class ValidationError(SrefProxyError):
    """Malformed station, run, parameter or date supplied by the caller."""


class AdmissionDenied(SrefProxyError):
    def __init__(self, client_id: str, retry_after: float) -> None:
        super().__init__(f"Rate limit exceeded for {client_id}")
        self.client_id = client_id
        self.retry_after = retry_after


class UpstreamError(SrefProxyError):
    """Failure talking to the upstream plume service."""

    transient = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.attempts = 1


class UpstreamTimeout(UpstreamError):
    transient = True


class UpstreamTransportError(UpstreamError):
    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class UpstreamStatusError(UpstreamError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"Upstream returned {status_code}")
        self.status_code = status_code
        self.transient = 500 <= status_code < 600


class UpstreamParseError(UpstreamError):
    pass


__all__ = [
    "SrefProxyError",
    "ValidationError",
    "AdmissionDenied",
    "UpstreamError",
    "UpstreamTimeout",
    "UpstreamTransportError",
    "UpstreamStatusError",
    "UpstreamParseError",
]
