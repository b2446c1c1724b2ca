"""
Errors raised by the proxy engine.

Per-request errors are turned into HTTP status codes by the handlers;
only `StartupConfigError` is meant to reach the top of the process.
"""


class ProxyError(Exception):
    pass


class DialFailed(ProxyError):
    """An outbound connection could not be established (answered with 503)."""


class RoundTripFailed(ProxyError):
    """The origin server failed while a request was being forwarded."""


class HijackUnsupported(ProxyError):
    """The inbound connection cannot be handed over as a raw byte stream."""


class StartupConfigError(ProxyError, ValueError):
    """The configuration cannot produce a working dialer. Fatal at startup."""
