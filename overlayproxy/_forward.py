import ssl
from typing import List, NamedTuple, Optional, Tuple
from urllib.parse import urlsplit

import h11
import trio

from ._adapter import TrioHTTPConnection
from ._dialer import Dialer, DIAL_TIMEOUT
from ._errors import DialFailed, RoundTripFailed


DEFAULT_PORTS = {"http": 80, "https": 443}

# Hop-by-hop headers concerning the client-to-proxy connection.
# Everything else is replayed as-is.
REQUEST_HOP_HEADERS = {b"proxy-authorization", b"proxy-connection", b"connection", b"keep-alive"}

# The origin connection is never reused, so its connection management
# headers mean nothing to our client.
RESPONSE_HOP_HEADERS = {b"connection", b"keep-alive"}


class OriginTarget(NamedTuple):
    scheme: str
    host: str
    port: int
    path: bytes  # origin-form request target

    @property
    def authority(self) -> bytes:
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port == DEFAULT_PORTS[self.scheme]:
            return host.encode("ascii")
        return f"{host}:{self.port}".encode("ascii")


def parse_absolute_target(target: bytes) -> OriginTarget:
    """
    Parse an absolute-form request target (`http://host[:port]/path?query`).
    Raises ValueError for any other form.
    """
    url = urlsplit(target.decode("ascii"))
    if url.scheme not in DEFAULT_PORTS:
        raise ValueError(f"unsupported protocol scheme {url.scheme!r}")
    if not url.hostname:
        raise ValueError(f"no host in request URL {target.decode('ascii')!r}")
    port = url.port  # raises ValueError if out of range
    if port is None:
        port = DEFAULT_PORTS[url.scheme]
    elif port == 0:
        raise ValueError(f"invalid port 0 in request URL {target.decode('ascii')!r}")
    path = url.path or "/"
    if url.query:
        path += "?" + url.query
    return OriginTarget(url.scheme, url.hostname, port, path.encode("ascii"))


def outbound_headers(headers: List[Tuple[bytes, bytes]], target: OriginTarget) -> List[Tuple[bytes, bytes]]:
    # The origin gets the authority it was dialed at, whatever Host the client sent.
    result = [(b"host", target.authority)]
    result.extend((name, value) for name, value in headers
                  if name not in REQUEST_HOP_HEADERS and name != b"host")
    result.append((b"connection", b"close"))
    return result


def inbound_headers(headers: List[Tuple[bytes, bytes]]) -> List[Tuple[bytes, bytes]]:
    # Keeps every value of repeated headers, in order.
    return [(name, value) for name, value in headers if name not in RESPONSE_HOP_HEADERS]


class OriginConnection(TrioHTTPConnection):
    """
    Client side of a forwarded request. Any failure talking to the
    origin surfaces as RoundTripFailed, so it can't be mistaken for
    a problem with our own client.
    """

    def __init__(self, stream: trio.abc.Stream):
        super().__init__(stream, role=h11.CLIENT)

    async def send(self, event) -> None:
        try:
            await super().send(event)
        except (trio.BrokenResourceError, trio.ClosedResourceError, h11.ProtocolError) as e:
            raise RoundTripFailed(f"writing to origin: {e!r}") from e

    async def next_event(self):
        try:
            return await super().next_event()
        except (trio.BrokenResourceError, trio.ClosedResourceError, h11.ProtocolError) as e:
            raise RoundTripFailed(f"reading from origin: {e!r}") from e


class HTTPForwarder:
    """
    Replays plain (non-CONNECT) proxy requests against their origin,
    over a connection obtained from the dialer.
    """

    def __init__(self, dialer: Dialer, ssl_context: Optional[ssl.SSLContext] = None,
                 dial_timeout: float = DIAL_TIMEOUT):
        self.dialer = dialer
        self.ssl_context = ssl_context or ssl.create_default_context()
        self.dial_timeout = dial_timeout

    async def open(self, target: OriginTarget) -> trio.abc.Stream:
        stream = await self.dialer.dial(target.host, target.port, self.dial_timeout)
        if target.scheme != "https":
            return stream
        tls = trio.SSLStream(stream, self.ssl_context, server_hostname=target.host, https_compatible=True)
        try:
            with trio.fail_after(self.dial_timeout):
                await tls.do_handshake()
        except (trio.TooSlowError, trio.BrokenResourceError) as e:
            await trio.aclose_forcefully(tls)
            raise DialFailed(f"TLS handshake with {target.host}:{target.port} failed: {e!r}") from e
        return tls

    async def handle(self, w: TrioHTTPConnection, request: h11.Request) -> None:
        """
        Forward `request`, whose body (if any) has not been read from `w` yet.
        """
        try:
            target = parse_absolute_target(request.target)
            upstream = await self.open(target)
        except (ValueError, DialFailed) as e:
            w.info(f"Cannot forward {request.target!r}: {e}")
            await w.send_error(503, str(e))
            return

        async with upstream:
            origin = OriginConnection(upstream)
            try:
                response = await self._round_trip(w, origin, request, target)
            except RoundTripFailed as e:
                w.info(f"Forwarding to {target.host}:{target.port} failed: {e}")
                await w.send_error(503, str(e))
                return

            await w.send(h11.Response(
                status_code=response.status_code,
                reason=response.reason,
                headers=inbound_headers(response.headers),
            ))

            # From here on the status line is out; a failure can only
            # be reported by dropping the client connection.
            try:
                while True:
                    event = await origin.next_event()
                    if isinstance(event, h11.Data):
                        await w.send(h11.Data(data=event.data))
                    elif isinstance(event, h11.EndOfMessage):
                        await w.send(h11.EndOfMessage())
                        break
            except RoundTripFailed as e:
                w.warning(f"Origin failed mid-response, aborting client connection: {e}")
                await w.abort()

    async def _round_trip(self, w: TrioHTTPConnection, origin: OriginConnection,
                          request: h11.Request, target: OriginTarget) -> h11.Response:
        await origin.send(h11.Request(
            method=request.method,
            target=target.path,
            headers=outbound_headers(request.headers, target),
        ))

        # Stream the request body through, chunk by chunk.
        while True:
            event = await w.next_event()
            if isinstance(event, h11.Data):
                await origin.send(h11.Data(data=event.data))
            elif isinstance(event, h11.EndOfMessage):
                await origin.send(h11.EndOfMessage())
                break
            elif isinstance(event, h11.ConnectionClosed):
                raise RoundTripFailed("client closed the connection mid-request")

        while True:
            event = await origin.next_event()
            if isinstance(event, h11.Response):
                return event
            if isinstance(event, h11.ConnectionClosed):
                raise RoundTripFailed("origin closed the connection without responding")
            # h11.InformationalResponse (1xx): not relayed
