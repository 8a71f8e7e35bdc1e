"""
Failure taxonomy for webpage acquisition.

Transports and the browser layer raise ``AcquisitionError`` at the point of
failure with its ``kind`` already set; ``classify`` only has to handle the
exceptions that arrive untyped (timeouts from ``asyncio.wait_for`` and
unexpected bugs).
"""
import asyncio
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    UNAVAILABLE = "unavailable"
    BLOCKED = "blocked"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    CERTIFICATE = "certificate"
    TIMEOUT = "timeout"
    NAVIGATION = "navigation"
    CAPABILITY_UNAVAILABLE = "capability_unavailable"
    EMPTY_CONTENT = "empty_content"
    INVALID_REQUEST = "invalid_request"
    INTERNAL = "internal"


# Structural failures: retrying with the same parameters cannot succeed.
FATAL_KINDS = frozenset({
    ErrorKind.CERTIFICATE,
    ErrorKind.CAPABILITY_UNAVAILABLE,
    ErrorKind.INVALID_REQUEST,
})

RECOMMENDATIONS = {
    ErrorKind.UNAVAILABLE: "Please try again later or check if the URL is correct.",
    ErrorKind.BLOCKED: "The site is actively blocking automated requests. Try again later or route the request through a proxy.",
    ErrorKind.RATE_LIMITED: "The site is rate limiting requests. Wait before retrying or route the request through a proxy.",
    ErrorKind.NETWORK: "Please try again or check the URL.",
    ErrorKind.CERTIFICATE: "The site's TLS certificate could not be verified. Retrying will not help; set ignoreSSLErrors only if you trust the host.",
    ErrorKind.TIMEOUT: "The request timed out. Try again with a longer timeout.",
    ErrorKind.NAVIGATION: "The page could not be rendered as requested. Check the selector or try different settings.",
    ErrorKind.CAPABILITY_UNAVAILABLE: "This operation needs a component that is not installed. Install it or call the tool without that option.",
    ErrorKind.EMPTY_CONTENT: "The page was reached but no content was found. Try with JavaScript enabled or check if the site requires authentication.",
    ErrorKind.INVALID_REQUEST: "Fix the tool arguments and call again.",
    ErrorKind.INTERNAL: "Please try again later or with different parameters.",
}


class AcquisitionError(Exception):
    """A failure annotated with its taxonomy kind and whether a retry can help."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        retryable: Optional[bool] = None,
        status: Optional[int] = None,
        code: Optional[str] = None,
        used_proxy: bool = False,
    ):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.retryable = (self.kind not in FATAL_KINDS) if retryable is None else retryable
        self.status = status
        self.code = code
        self.used_proxy = used_proxy

    @property
    def recommendation(self) -> str:
        return RECOMMENDATIONS[self.kind]

    def __repr__(self):
        return f"AcquisitionError(kind={self.kind.value!r}, retryable={self.retryable}, message={self.message!r})"


def classify_status(status: int, used_proxy: bool = False) -> AcquisitionError:
    """Maps a non-2xx HTTP status to a classified error."""
    if status == 403:
        return AcquisitionError(ErrorKind.BLOCKED, f"Access blocked ({status})", status=status, used_proxy=used_proxy)
    if status == 429:
        return AcquisitionError(ErrorKind.RATE_LIMITED, f"Access blocked ({status})", status=status, used_proxy=used_proxy)
    return AcquisitionError(ErrorKind.NETWORK, f"HTTP error! status: {status}", status=status, used_proxy=used_proxy)


def classify(exc: BaseException) -> AcquisitionError:
    if isinstance(exc, AcquisitionError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return AcquisitionError(ErrorKind.TIMEOUT, str(exc) or "Operation timed out", code="timeout")
    return AcquisitionError(ErrorKind.INTERNAL, f"{type(exc).__name__}: {exc}", retryable=True)
