"""
Outbound connections.

Every byte the proxy sends upstream goes through exactly one `Dialer`,
chosen when the process starts. The handlers never know whether it is
a plain TCP connection or one routed through the overlay network.
"""

import abc
import ipaddress
import socket
from typing import Optional, Tuple

import trio

from ._errors import DialFailed, StartupConfigError


DIAL_TIMEOUT = 10  # seconds

DIRECT = "direct"
TUNNELED = "tunneled"


def parse_host_and_port(target: str, default_port: Optional[int] = None) -> Tuple[str, int]:
    """
    Split an authority such as `example.com:443` or `[::1]:8080`.

    Raises ValueError on anything malformed, including an empty host.
    """
    if target.startswith("["):
        end = target.find("]")
        if end == -1:
            raise ValueError(f"Unterminated IPv6 literal: {target!r}")
        host, rest = target[1:end], target[end + 1:]
        ipaddress.IPv6Address(host)  # raises ValueError
        if rest and not rest.startswith(":"):
            raise ValueError(f"Garbage after IPv6 literal: {target!r}")
        port_string = rest[1:] if rest else None
    elif target.count(":") > 1:
        raise ValueError(f"Malformed hostname: {target!r}")
    elif ":" in target:
        host, port_string = target.split(":")
    else:
        host, port_string = target, None

    if not host:
        raise ValueError(f"Missing host in {target!r}")

    if port_string is None:
        if default_port is None:
            raise ValueError(f"Missing port in {target!r}")
        return host, default_port

    if not port_string.isdigit():
        raise ValueError(f"Invalid port number: {port_string!r}")
    port = int(port_string)
    if port not in range(1, 65536):
        raise ValueError(f"Invalid port number: {port_string!r}")
    return host, port


class Dialer(abc.ABC):
    """
    Produces outbound byte streams to `host:port`.

    Instances hold no mutable state, so one of them can serve
    any number of concurrent requests.
    """

    mode: str

    async def dial(self, host: str, port: int, timeout: float = DIAL_TIMEOUT) -> trio.abc.Stream:
        """
        Connect to `host:port` within `timeout` seconds.

        Raises DialFailed for every kind of failure, so callers need
        to handle just that one.
        """
        if not host:
            raise DialFailed("dial tcp: missing address")
        try:
            with trio.fail_after(timeout):
                return await self._open(host, port)
        except trio.TooSlowError:
            raise DialFailed(f"dial tcp {host}:{port}: i/o timeout") from None
        except OSError as e:
            raise DialFailed(f"dial tcp {host}:{port}: {e}") from e

    async def dial_target(self, target: str, timeout: float = DIAL_TIMEOUT) -> trio.abc.Stream:
        """Like `dial`, but takes an unparsed `host:port` authority."""
        try:
            host, port = parse_host_and_port(target)
        except ValueError as e:
            raise DialFailed(f"dial tcp {target}: {e}") from None
        return await self.dial(host, port, timeout)

    @abc.abstractmethod
    async def _open(self, host: str, port: int) -> trio.abc.Stream:
        ...


class DirectDialer(Dialer):
    """Plain TCP through the host's default routes."""

    mode = DIRECT

    async def _open(self, host: str, port: int) -> trio.abc.Stream:
        return await trio.open_tcp_stream(host, port)

    def __repr__(self) -> str:
        return "DirectDialer()"


class OverlayNetwork(abc.ABC):
    """Handle to a network stack that routes through the tunnel device."""

    @abc.abstractmethod
    async def open_tcp_stream(self, host: str, port: int) -> trio.abc.Stream:
        ...


class InterfaceBoundNetwork(OverlayNetwork):
    """
    Overlay network reached by binding outbound sockets to the local
    address of an already configured tunnel interface (e.g. `wg0`).

    Bringing the interface up is somebody else's job; we only check,
    once, that its address actually exists on this host.
    """

    def __init__(self, local_address: str):
        try:
            address = ipaddress.ip_address(local_address)
        except ValueError as e:
            raise StartupConfigError(f"Invalid overlay interface address: {e}") from None

        family = socket.AF_INET6 if address.version == 6 else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.bind((str(address), 0))
        except OSError as e:
            raise StartupConfigError(
                f"Overlay interface address {address} is not assigned on this host "
                f"(is the tunnel device up?): {e}"
            ) from e
        finally:
            sock.close()

        self.local_address = str(address)

    async def open_tcp_stream(self, host: str, port: int) -> trio.abc.Stream:
        return await trio.open_tcp_stream(host, port, local_address=self.local_address)

    def __repr__(self) -> str:
        return f"InterfaceBoundNetwork({self.local_address!r})"


class OverlayDialer(Dialer):
    """Connections routed through the overlay network."""

    mode = TUNNELED

    def __init__(self, network: OverlayNetwork):
        self.network = network

    async def _open(self, host: str, port: int) -> trio.abc.Stream:
        return await self.network.open_tcp_stream(host, port)

    def __repr__(self) -> str:
        return f"OverlayDialer({self.network!r})"
