import trio, random, threading, socket, base64, ssl
import trio.testing, pytest, h11, trustme
from datetime import timedelta
from functools import wraps
from hypothesis import given, settings, HealthCheck
from hypothesis.strategies import data, integers, floats, binary, text, lists, builds, sets, randoms, none, one_of

from typing import List, Tuple, Callable, Optional

from overlayproxy._tunnel import splice, TunnelSession, ConnectionTunnel


@given(integers(1, 100), data(), randoms())
async def test_splice(num_iterations: int, data, rand: random.Random):
    client, near = trio.testing.memory_stream_pair()
    far, server = trio.testing.memory_stream_pair()

    async def spliceit(near, far):
        await splice(near, far)

    async def testit(a, b):
        for i in range(num_iterations):
            a, b = rand.sample((a, b), k=2)

            to_send = data.draw(binary(min_size=1))  # we must send something or receive_some will block
            await a.send_all(to_send)
            received = await b.receive_some(len(to_send))

            assert to_send == received

        a, b = rand.sample((a, b), k=2)
        await a.aclose()  # kill one end, the rest should take care of itself


    async with trio.open_nursery() as nursery:
        nursery.start_soon(spliceit, near, far)
        nursery.start_soon(testit, client, server)


async def test_splice_counts_bytes_per_direction():
    client, near = trio.testing.memory_stream_pair()
    far, server = trio.testing.memory_stream_pair()
    sessions = []

    async def spliceit():
        sessions.append(await splice(near, far))

    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            nursery.start_soon(spliceit)
            await client.send_all(b"hello")
            assert await receive_exactly(server, 5) == b"hello"
            await server.send_all(b"hi")
            assert await receive_exactly(client, 2) == b"hi"
            await client.aclose()

    session, = sessions
    assert (session.bytes_up, session.bytes_down) == (5, 2)
    assert session.finished


async def test_half_closed_destination_tears_down_the_tunnel():
    client, near = trio.testing.memory_stream_pair()
    far, server = trio.testing.memory_stream_pair()
    session = TunnelSession(near, far)

    # The tunnel must end even though the client never closes its side.
    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            nursery.start_soon(session.run, b"early")
            assert await receive_exactly(server, 5) == b"early"
            await server.send_all(b"bye")
            await server.send_eof()
            assert await receive_until_eof(client) == b"bye"

    assert session.finished


from overlayproxy._proxy import OverlayProxy, Router, run_synchronously_cancellable_proxy
from overlayproxy._config import ProxyConfig
from overlayproxy._dialer import Dialer, DirectDialer, TUNNELED

# Thread scheduling varies, so we cannot reliably (nor quickly) test
# if SynchronousOverlayProxy cancellation works, i.e. that:
#
#     1. the proxy _will_ be cancelled
#     2. it will happen in no more than `stop_check_interval` seconds
#
# However, by putting the cancellation logic in a separate function,
# we can get most of the way there.

@settings(suppress_health_check=[HealthCheck.function_scoped_fixture], deadline=timedelta(seconds=1))
@given(stop_check_interval=floats(0.001, 10.000))
async def test_cancellation_seen_promptly(stop_check_interval: float, autojump_clock):

    host = "localhost"
    port = 12349  # hopefully available

    p = OverlayProxy(ProxyConfig(dialer=DirectDialer()))
    stop = threading.Event()

    proxy_cancelled = False

    async def runner() -> None:
        nonlocal proxy_cancelled
        await run_synchronously_cancellable_proxy(p, host, port, stop, stop_check_interval)
        proxy_cancelled = True

    async def killer() -> None:
        await trio.to_thread.run_sync(stop.set)  # from another thread, as in SynchronousOverlayProxy
        assert stop.is_set(), "This should always be the case, as it's a threading.Event"
        await trio.sleep(1.001 * stop_check_interval)
        assert proxy_cancelled, "After `stop_check_interval`, the proxy should have been cancelled"

    async with trio.open_nursery() as nursery:
        nursery.start_soon(runner)
        nursery.start_soon(killer)


################################################################
#                     Authentication
################################################################

from overlayproxy._auth import Credentials, authorize, credentials_from_headers, parse_basic_authorization

def basic(username: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()

def credentials():
    return builds(Credentials, text(), text())

@given(presented=one_of(none(), credentials()), password=text())
def test_no_configured_username_allows_everything(presented: Optional[Credentials], password: str) -> None:
    assert authorize(Credentials("", password), presented)

@given(configured=credentials(), presented=one_of(none(), credentials()))
def test_configured_credentials_must_match_exactly(configured: Credentials, presented: Optional[Credentials]) -> None:
    expected = (not configured.username) or presented == configured
    assert authorize(configured, presented) == expected

@given(configured=credentials())
def test_matching_credentials_are_allowed(configured: Credentials) -> None:
    assert authorize(configured, Credentials(configured.username, configured.password))

def test_missing_header_is_denied() -> None:
    assert not authorize(Credentials("user", "pass"), None)

@pytest.mark.parametrize("value", [
    b"Bearer dXNlcjpwYXNz",
    b"Basic",
    b"Basic !!!not-base64!!!",
    b"Basic " + base64.b64encode(b"no-colon-here"),
    b"Basic " + base64.b64encode(b"\xff\xfe:x"),
])
def test_malformed_authorization_yields_no_credentials(value: bytes) -> None:
    assert parse_basic_authorization(value) is None

def test_basic_authorization_keeps_colons_in_password() -> None:
    value = b"basic " + base64.b64encode(b"user:pa:ss")
    assert parse_basic_authorization(value) == Credentials("user", "pa:ss")

def test_proxy_authorization_wins_over_authorization() -> None:
    headers = [
        (b"authorization", basic("origin", "secret").encode()),
        (b"proxy-authorization", basic("proxy", "secret").encode()),
    ]
    assert credentials_from_headers(headers) == Credentials("proxy", "secret")
    assert credentials_from_headers(headers[:1]) == Credentials("origin", "secret")
    assert credentials_from_headers([(b"host", b"example.com")]) is None


# Tests for the router follow.
#
# Summary of tests for Router
# ===========================
# CONNECT to a reachable target:
#   you should get 200, then bytes flow both ways unchanged
#
# Any request with wrong or missing credentials (if configured):
#   you should get back a 407 with a Proxy-Authenticate challenge
#
# CONNECT or plain HTTP to an unreachable target:
#   you should get back a 503 with the error as body
#
# Plain HTTP is replayed against the origin; response headers,
# including repeated ones, come back in order.
#
# Anything else should fail with a 4xx error
#   client timeouts: 408 (Too Slow)
#   malformed request is 400 (Bad Request)
#
#
# But first, some helpers.


################################################################
#            Generating valid domains and ports
################################################################
def new_label(length: int, rand: random.Random) -> str:
    """
    Return a "label" element according to RFC 1035, of specified length (>0).
    """
    if length <= 0:
        raise ValueError("There are no valid zero- or negative-length labels")
    letter = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
    letter_digit = letter + "0123456789"
    letter_digit_hyphen = letter_digit + "-"

    if length == 1:
        label = rand.choice(letter)
    else:
        label = (rand.choice(letter)
            + "".join(rand.choice(letter_digit_hyphen) for _ in range(length - 2))
            + rand.choice(letter_digit)
        )
    return label

def new_domain(chunk_lengths: List[int], rand: random.Random) -> str:
    """
    Return a valid domain according to RFC 1035.

    `chunk_lengths` must be a non-empty list of positive integers.
    """
    if not chunk_lengths or any(l <= 0 for l in chunk_lengths):
        raise ValueError()

    return ".".join(new_label(l, rand) for l in chunk_lengths)

def domains():
    return builds(new_domain, lists(integers(1, 10), min_size=1, max_size=10), randoms())

def ports(start: int = 1, end: int = 65535):
    return integers(start, end)

@given(domains())
def test_domains(d: str) -> None:
    pass # We're testing example generation here.


################################################################
#                  Dialers for testing
################################################################

class InMemoryDialer(Dialer):
    """
    Every dial starts `serve(stream)` in the given nursery, on the
    far end of an in-memory stream pair.
    """

    mode = TUNNELED

    def __init__(self, nursery: trio.Nursery, serve: Callable):
        self.nursery = nursery
        self.serve = serve
        self.dialed: List[Tuple[str, int]] = []

    async def _open(self, host: str, port: int) -> trio.abc.Stream:
        self.dialed.append((host, port))
        near, far = trio.testing.memory_stream_pair()
        self.nursery.start_soon(self.serve, far)
        return near


class RefusingDialer(Dialer):
    mode = TUNNELED

    async def _open(self, host: str, port: int) -> trio.abc.Stream:
        raise ConnectionRefusedError(111, "Connection refused")


class HangingDialer(Dialer):
    mode = TUNNELED

    async def _open(self, host: str, port: int) -> trio.abc.Stream:
        await trio.sleep_forever()
        raise AssertionError("unreachable")


################################################################
#                  Fake upstream servers
################################################################

async def echo_server(stream: trio.abc.Stream) -> None:
    async with stream:
        while True:
            try:
                chunk = await stream.receive_some(65536)
                if not chunk:
                    return
                await stream.send_all(chunk)
            except (trio.BrokenResourceError, trio.ClosedResourceError):
                return

def origin_server(status: int = 200, headers=(), body: bytes = b"hello", seen: Optional[list] = None) -> Callable:
    """An HTTP server answering every request the same way, recording what it saw."""

    async def serve(stream: trio.abc.Stream) -> None:
        w = TrioHTTPConnection(stream)
        request = await w.next_event()
        request_body = b""
        while True:
            event = await w.next_event()
            if isinstance(event, h11.Data):
                request_body += event.data
            elif isinstance(event, h11.EndOfMessage):
                break
        if seen is not None:
            seen.append((request, request_body))
        await w.send(h11.Response(status_code=status, headers=[("Content-Length", str(len(body))), *headers]))
        await w.send(h11.Data(data=body))
        await w.send(h11.EndOfMessage())
        await w.ensure_shutdown()

    return serve

async def truncating_origin(stream: trio.abc.Stream) -> None:
    """Promises 100 bytes, delivers 7, hangs up."""
    async with stream:
        w = TrioHTTPConnection(stream)
        while type(await w.next_event()) is not h11.EndOfMessage:
            pass
        await w.send(h11.Response(status_code=200, headers=[("Content-Length", "100")]))
        await w.send(h11.Data(data=b"partial"))


################################################################
#                  "HTTP client" functions
################################################################

from overlayproxy._adapter import TrioHTTPConnection

async def receive_exactly(stream: trio.abc.Stream, n: int) -> bytes:
    received = b""
    while len(received) < n:
        chunk = await stream.receive_some(n - len(received))
        assert chunk, "unexpected end of stream"
        received += chunk
    return received

async def receive_until_eof(stream: trio.abc.Stream) -> bytes:
    received = b""
    while True:
        try:
            chunk = await stream.receive_some(65536)
        except trio.BrokenResourceError:
            break
        if not chunk:
            break
        received += chunk
    return received

async def connect(stream: trio.abc.Stream, host: str, port: int, expected: bytes, method: str = "CONNECT") -> None:
    """Connect, assert it's OK, quit."""
    hostname = f"{host}:{port}"
    async with stream:
        await stream.send_all(f"{method} {hostname} HTTP/1.1\r\nHost: {hostname}\r\n\r\n".encode())
        resp = await stream.receive_some(10000)
        assert resp.startswith(expected)

async def connect_slowly(stream: trio.abc.Stream, host: str, port: int, expected: bytes) -> None:
    """Like `connect`, does it very slowly."""
    async with stream:
        await trio.sleep(10)
        try:
            # This will blow up if the server already closed the connection.
            await stream.send_all(f"CONNECT {host}:{port} HTTP/1.1\r\nHost: whatever\r\n\r\n".encode())
        except trio.BrokenResourceError:
            pass
        resp = await stream.receive_some(10000)
        assert resp.startswith(expected)

async def connect_with_bytes(stream: trio.abc.Stream, expected: bytes, to_send: bytes) -> None:
    """Like `connect`, but sends the given bytes instead of an actual HTTP request."""
    async with stream:
        await stream.send_all(to_send)
        resp = await stream.receive_some(10000)
        assert resp.startswith(expected)

async def request(c: TrioHTTPConnection, method: str, target: str, headers=(), body: bytes = b"") -> Tuple[h11.Response, bytes]:
    """Send one request through the proxy and read back the whole response."""
    all_headers = list(headers)
    if body:
        all_headers.append(("Content-Length", str(len(body))))
    await c.send(h11.Request(method=method, target=target, headers=all_headers))
    if body:
        await c.send(h11.Data(data=body))
    await c.send(h11.EndOfMessage())

    response = await c.next_event()
    assert isinstance(response, h11.Response)
    if response.status_code == 200 and method == "CONNECT":
        return response, b""

    received = b""
    while True:
        event = await c.next_event()
        if isinstance(event, h11.Data):
            received += event.data
        elif isinstance(event, h11.EndOfMessage):
            return response, received

def header_values(response: h11.Response, name: bytes) -> List[bytes]:
    return [value for key, value in response.headers if key == name]

async def accept_and_close_connection(s: trio.socket.SocketType) -> None:
    conn, _ = await s.accept()
    conn.close()


################################################################
#               Actual tests for Router
################################################################

@given(domains=sets(domains(), min_size=1), chunks=lists(binary(min_size=1, max_size=4096), min_size=1, max_size=20), rand=randoms())
async def test_connect_round_trip_is_byte_identical(domains, chunks: List[bytes], rand: random.Random) -> None:
    host = rand.choice(sorted(domains))

    with trio.fail_after(10):
        async with trio.open_nursery() as nursery:
            dialer = InMemoryDialer(nursery, echo_server)
            router = Router(ProxyConfig(dialer=dialer))
            client_stream, proxy_stream = trio.testing.memory_stream_pair()
            nursery.start_soon(router, proxy_stream)

            async with client_stream:
                c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
                response, _ = await request(c, "CONNECT", f"{host}:443", [("Host", f"{host}:443")])
                assert response.status_code == 200
                assert c.conn.our_state is h11.SWITCHED_PROTOCOL

                for chunk in chunks:
                    await client_stream.send_all(chunk)
                    assert await receive_exactly(client_stream, len(chunk)) == chunk

    assert dialer.dialed == [(host, 443)]


async def test_connect_uses_request_line_not_host_header() -> None:
    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            dialer = InMemoryDialer(nursery, echo_server)
            router = Router(ProxyConfig(dialer=dialer))
            client_stream, proxy_stream = trio.testing.memory_stream_pair()
            nursery.start_soon(router, proxy_stream)
            nursery.start_soon(connect_with_bytes, client_stream, b"HTTP/1.1 200",
                               b"CONNECT real.example:443 HTTP/1.1\r\nHost: spoofed.example:8443\r\n\r\n")

    assert dialer.dialed == [("real.example", 443)]


async def test_connect_delivers_bytes_sent_with_the_request() -> None:
    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            dialer = InMemoryDialer(nursery, echo_server)
            router = Router(ProxyConfig(dialer=dialer))
            client_stream, proxy_stream = trio.testing.memory_stream_pair()
            nursery.start_soon(router, proxy_stream)

            async with client_stream:
                await client_stream.send_all(b"CONNECT t.example:443 HTTP/1.1\r\nHost: t.example:443\r\n\r\nEARLY")
                received = b""
                while not received.endswith(b"EARLY"):
                    received += await client_stream.receive_some(10000)
                head, _, tail = received.partition(b"\r\n\r\n")
                assert head.startswith(b"HTTP/1.1 200")
                assert tail == b"EARLY"


async def test_connect_ends_when_destination_hangs_up() -> None:

    async def say_bye(stream: trio.abc.Stream) -> None:
        async with stream:
            await stream.send_all(b"bye")

    # The client never closes; the destination closing must be enough.
    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            router = Router(ProxyConfig(dialer=InMemoryDialer(nursery, say_bye)))
            client_stream, proxy_stream = trio.testing.memory_stream_pair()
            nursery.start_soon(router, proxy_stream)

            c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
            response, _ = await request(c, "CONNECT", "t.example:443", [("Host", "t.example:443")])
            assert response.status_code == 200
            pending, _ = c.conn.trailing_data
            assert bytes(pending) + await receive_until_eof(client_stream) == b"bye"


@pytest.mark.parametrize("target", ["refused.example:443", ":443", "no-port.example", "bad.example:99999"])
async def test_connect_dial_failure_is_503(target: str) -> None:
    router = Router(ProxyConfig(dialer=RefusingDialer()))
    client_stream, proxy_stream = trio.testing.memory_stream_pair()

    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            nursery.start_soon(router, proxy_stream)
            async with client_stream:
                c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
                response, body = await request(c, "CONNECT", target, [("Host", "whatever")])

    assert response.status_code == 503
    assert body.strip()


async def test_connect_dial_timeout_is_503(autojump_clock) -> None:
    router = Router(ProxyConfig(dialer=HangingDialer()))
    client_stream, proxy_stream = trio.testing.memory_stream_pair()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(router, proxy_stream)
        async with client_stream:
            c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
            response, body = await request(c, "CONNECT", "slow.example:443", [("Host", "slow.example:443")])

    assert response.status_code == 503
    assert b"timeout" in body


async def test_connect_without_switchable_connection_is_500() -> None:
    destination, far = trio.testing.memory_stream_pair()

    class OneShotDialer(Dialer):
        mode = TUNNELED

        async def _open(self, host, port):
            return destination

    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    w = TrioHTTPConnection(proxy_stream)
    await client_stream.send_all(b"CONNECT t.example:443 HTTP/1.1\r\nHost: t.example:443\r\n\r\n")
    req = await w.next_event()
    assert isinstance(req, h11.Request)

    # The request's EndOfMessage was never read, so h11 won't switch protocols.
    await ConnectionTunnel(OneShotDialer()).handle(w, req)

    resp = await client_stream.receive_some(10000)
    assert resp.startswith(b"HTTP/1.1 500")
    assert await far.receive_some(10) == b""  # destination was closed


@given(port=ports())
async def test_missing_credentials_are_rejected(port: int) -> None:
    config = ProxyConfig(dialer=RefusingDialer(), credentials=Credentials("user", "pass"))
    client_stream, proxy_stream = trio.testing.memory_stream_pair()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(Router(config), proxy_stream)
        async with client_stream:
            c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
            response, _ = await request(c, "CONNECT", f"example.com:{port}", [("Host", "example.com")])

    assert response.status_code == 407
    assert header_values(response, b"proxy-authenticate") == [b'Basic realm="Proxy"']


@pytest.mark.parametrize("method, target", [("CONNECT", "example.com:443"), ("GET", "http://example.com/"), ("GET", "/")])
@pytest.mark.parametrize("authorization", [
    basic("user", "wrong"),
    basic("User", "pass"),
    basic("user", ""),
    "Bearer abc",
    "Basic not-base64",
])
async def test_wrong_credentials_are_rejected(method: str, target: str, authorization: str) -> None:
    config = ProxyConfig(dialer=RefusingDialer(), credentials=Credentials("user", "pass"))
    client_stream, proxy_stream = trio.testing.memory_stream_pair()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(Router(config), proxy_stream)
        async with client_stream:
            c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
            response, _ = await request(c, method, target, [("Host", "example.com"), ("Proxy-Authorization", authorization)])

    assert response.status_code == 407
    assert header_values(response, b"proxy-authenticate") == [b'Basic realm="Proxy"']


async def test_correct_credentials_are_let_through() -> None:
    seen = []
    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            dialer = InMemoryDialer(nursery, origin_server(seen=seen))
            config = ProxyConfig(dialer=dialer, credentials=Credentials("user", "pass"))
            client_stream, proxy_stream = trio.testing.memory_stream_pair()
            nursery.start_soon(Router(config), proxy_stream)
            async with client_stream:
                c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
                response, body = await request(c, "GET", "http://example.com/x", [
                    ("Host", "example.com"),
                    ("Proxy-Authorization", basic("user", "pass")),
                ])

    assert (response.status_code, body) == (200, b"hello")
    forwarded, _ = seen[0]
    # Our credentials are not the origin's business.
    assert not [name for name, _ in forwarded.headers if name == b"proxy-authorization"]


@pytest.mark.parametrize("dialer, mode", [(DirectDialer(), b"direct"), (RefusingDialer(), b"tunneled")])
async def test_health_reports_dial_mode(dialer: Dialer, mode: bytes) -> None:
    client_stream, proxy_stream = trio.testing.memory_stream_pair()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(Router(ProxyConfig(dialer=dialer)), proxy_stream)
        async with client_stream:
            c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
            response, body = await request(c, "GET", "/", [("Host", "proxy")])

    assert response.status_code == 200
    assert mode in body


async def test_health_requires_credentials_when_configured() -> None:
    config = ProxyConfig(dialer=DirectDialer(), credentials=Credentials("user", "pass"))
    client_stream, proxy_stream = trio.testing.memory_stream_pair()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(Router(config), proxy_stream)
        async with client_stream:
            c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
            response, _ = await request(c, "GET", "/", [("Host", "proxy")])
            assert response.status_code == 407

    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    async with trio.open_nursery() as nursery:
        nursery.start_soon(Router(config), proxy_stream)
        async with client_stream:
            c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
            response, body = await request(c, "GET", "/", [("Host", "proxy"), ("Proxy-Authorization", basic("user", "pass"))])

    assert response.status_code == 200
    assert b"direct" in body


async def test_forward_preserves_repeated_headers_and_rewrites_target() -> None:
    seen = []
    headers = [("X-A", "1"), ("X-B", "other"), ("X-A", "2")]

    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            dialer = InMemoryDialer(nursery, origin_server(status=201, headers=headers, body=b"made", seen=seen))
            client_stream, proxy_stream = trio.testing.memory_stream_pair()
            nursery.start_soon(Router(ProxyConfig(dialer=dialer)), proxy_stream)
            async with client_stream:
                c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
                response, body = await request(c, "POST", "http://origin.example:8080/things?id=1", [
                    ("Host", "origin.example:8080"),
                    ("Proxy-Connection", "keep-alive"),
                    ("X-Custom", "kept"),
                ], body=b"payload")

    assert response.status_code == 201
    assert body == b"made"
    assert header_values(response, b"x-a") == [b"1", b"2"]
    assert header_values(response, b"x-b") == [b"other"]

    assert dialer.dialed == [("origin.example", 8080)]
    forwarded, forwarded_body = seen[0]
    assert forwarded.method == b"POST"
    assert forwarded.target == b"/things?id=1"
    assert forwarded_body == b"payload"
    names = [name for name, _ in forwarded.headers]
    assert b"proxy-connection" not in names
    assert (b"x-custom", b"kept") in list(forwarded.headers)
    assert (b"host", b"origin.example:8080") in list(forwarded.headers)


async def test_forward_keeps_client_connection_alive() -> None:
    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            dialer = InMemoryDialer(nursery, origin_server())
            client_stream, proxy_stream = trio.testing.memory_stream_pair()
            nursery.start_soon(Router(ProxyConfig(dialer=dialer)), proxy_stream)
            async with client_stream:
                c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
                for path in ("/one", "/two"):
                    response, body = await request(c, "GET", f"http://example.com{path}", [("Host", "example.com")])
                    assert (response.status_code, body) == (200, b"hello")
                    c.conn.start_next_cycle()

    # One origin connection per request, never reused.
    assert dialer.dialed == [("example.com", 80), ("example.com", 80)]


@pytest.mark.parametrize("dialer_class, target", [
    (RefusingDialer, "http://refused.example/"),
    (RefusingDialer, "/not-absolute"),
    (RefusingDialer, "ftp://example.com/"),
    (RefusingDialer, "http://example.com:0/"),
    (DirectDialer, "/not-absolute"),
    (DirectDialer, "ftp://example.com/"),
])
async def test_forward_failure_is_503(dialer_class, target: str) -> None:
    client_stream, proxy_stream = trio.testing.memory_stream_pair()

    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            nursery.start_soon(Router(ProxyConfig(dialer=dialer_class())), proxy_stream)
            async with client_stream:
                c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
                response, body = await request(c, "GET", target, [("Host", "example.com")])

    assert response.status_code == 503
    assert body.strip()


async def test_forward_aborts_client_when_origin_fails_mid_body() -> None:
    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            client_stream, proxy_stream = trio.testing.memory_stream_pair()
            nursery.start_soon(Router(ProxyConfig(dialer=InMemoryDialer(nursery, truncating_origin))), proxy_stream)
            async with client_stream:
                await client_stream.send_all(b"GET http://example.com/ HTTP/1.1\r\nHost: example.com\r\n\r\n")
                received = await receive_until_eof(client_stream)

    head, _, body = received.partition(b"\r\n\r\n")
    assert head.startswith(b"HTTP/1.1 200")
    assert body == b"partial"


async def test_forward_sends_target_authority_as_host() -> None:
    seen = []
    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            dialer = InMemoryDialer(nursery, origin_server(seen=seen))
            client_stream, proxy_stream = trio.testing.memory_stream_pair()
            nursery.start_soon(Router(ProxyConfig(dialer=dialer)), proxy_stream)
            async with client_stream:
                c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
                response, _ = await request(c, "GET", "http://real.example/", [("Host", "spoofed.example")])

    assert response.status_code == 200
    assert dialer.dialed == [("real.example", 80)]
    forwarded, _ = seen[0]
    assert [value for name, value in forwarded.headers if name == b"host"] == [b"real.example"]


async def test_health_ignores_query_string() -> None:
    client_stream, proxy_stream = trio.testing.memory_stream_pair()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(Router(ProxyConfig(dialer=DirectDialer())), proxy_stream)
        async with client_stream:
            c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
            response, body = await request(c, "GET", "/?check=1", [("Host", "proxy")])

    assert response.status_code == 200
    assert b"direct" in body


async def test_reading_from_a_closed_stream_ends_the_connection() -> None:
    _, proxy_stream = trio.testing.memory_stream_pair()
    w = TrioHTTPConnection(proxy_stream)
    await proxy_stream.aclose()
    assert type(await w.next_event()) is h11.ConnectionClosed


################################################################
#                  HTTPS origins
################################################################

def tls_origin(server_context: ssl.SSLContext, serve: Callable) -> Callable:
    """Puts `serve` behind TLS. A failed handshake just ends the connection."""

    async def serve_tls(stream: trio.abc.Stream) -> None:
        tls = trio.SSLStream(stream, server_context, server_side=True)
        try:
            await tls.do_handshake()
        except trio.BrokenResourceError:
            await trio.aclose_forcefully(tls)
            return
        await serve(tls)

    return serve_tls

def tls_contexts(hostname: str) -> Tuple[ssl.SSLContext, ssl.SSLContext]:
    """A server context with a certificate for `hostname`, and a client context trusting it."""
    ca = trustme.CA()
    server_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ca.issue_cert(hostname).configure_cert(server_context)
    client_context = ssl.create_default_context()
    ca.configure_trust(client_context)
    return server_context, client_context


async def test_forward_to_https_origin() -> None:
    server_context, client_context = tls_contexts("secure.example")
    seen = []

    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            dialer = InMemoryDialer(nursery, tls_origin(server_context, origin_server(body=b"encrypted", seen=seen)))
            config = ProxyConfig(dialer=dialer, upstream_ssl_context=client_context)
            client_stream, proxy_stream = trio.testing.memory_stream_pair()
            nursery.start_soon(Router(config), proxy_stream)
            async with client_stream:
                c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
                response, body = await request(c, "GET", "https://secure.example/doc?v=2", [("Host", "secure.example")])

    assert (response.status_code, body) == (200, b"encrypted")
    assert dialer.dialed == [("secure.example", 443)]
    forwarded, _ = seen[0]
    assert forwarded.target == b"/doc?v=2"
    assert (b"host", b"secure.example") in list(forwarded.headers)


async def test_failed_tls_handshake_is_503() -> None:
    # The origin's certificate is for another name.
    server_context, client_context = tls_contexts("other.example")

    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            dialer = InMemoryDialer(nursery, tls_origin(server_context, origin_server()))
            config = ProxyConfig(dialer=dialer, upstream_ssl_context=client_context)
            client_stream, proxy_stream = trio.testing.memory_stream_pair()
            nursery.start_soon(Router(config), proxy_stream)
            async with client_stream:
                c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
                response, body = await request(c, "GET", "https://secure.example/", [("Host", "secure.example")])

    assert response.status_code == 503
    assert b"TLS handshake" in body


@settings(suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(domains=sets(domains(), min_size=1), port=ports(), rand=randoms())
async def test_connect_where_client_times_out(domains, port: int, rand: random.Random, autojump_clock) -> None:

    expected = b"HTTP/1.1 408"

    # Anything else should fail with a 4xx error
    #   client timeouts: 408 (Too Slow)
    host = rand.choice(sorted(domains))

    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    async with trio.open_nursery() as nursery:
        nursery.start_soon(connect_slowly, client_stream, host, port, expected)
        nursery.start_soon(Router(ProxyConfig(dialer=RefusingDialer())), proxy_stream)


@given(rand=randoms())
async def test_connect_with_random_input(rand: random.Random) -> None:

    expected = b"HTTP/1.1 400"

    #   malformed request: 400 (Bad Request)
    random_length = rand.randint(0, 100)
    random_bytes = bytes(rand.getrandbits(8) for _ in range(random_length))
    random_bytes += b"\r\n\r\n"  # we must terminate the line, or the server will time out

    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    async with trio.open_nursery() as nursery:
        nursery.start_soon(connect_with_bytes, client_stream, expected, random_bytes)
        nursery.start_soon(Router(ProxyConfig(dialer=RefusingDialer())), proxy_stream)


################################################################
#               Real sockets
################################################################

class ResolveAllToLocalhost(trio.abc.HostnameResolver):
    """A fake resolver, which resolves all hostnames to 127.0.0.1."""

    async def getaddrinfo(self, host, port, family=0, type=0, proto=0, flags=0):
        # Synchronous, but should always return promptly.
        return socket.getaddrinfo("127.0.0.1", port, family, type, proto, flags)

    async def getnameinfo(self, sockaddr, flags):
        return socket.getnameinfo(sockaddr, flags)


def resolve_all_to_localhost(f: Callable) -> Callable:
    """Decorates an async function to run with ResolveAllToLocalhost() as the resolver."""
    @wraps(f)  # preserves function signature
    async def wrapper(*args, **kwargs):
        original_resolver = trio.socket.set_custom_hostname_resolver(ResolveAllToLocalhost())
        try:
            return (await f(*args, **kwargs))
        finally:
            trio.socket.set_custom_hostname_resolver(original_resolver)
    return wrapper


@given(domains=sets(domains(), min_size=1), rand=randoms())
@resolve_all_to_localhost
async def test_connect_directly_to_listening_host(domains, rand: random.Random) -> None:

    expected = b"HTTP/1.1 200"

    with trio.socket.socket() as sock:
        await sock.bind(("127.0.0.1", 0))
        sock.listen()

        _, port = sock.getsockname()
        host = rand.choice(sorted(domains))

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        async with trio.open_nursery() as nursery:
            nursery.start_soon(connect, client_stream, host, port, expected)
            nursery.start_soon(Router(ProxyConfig(dialer=DirectDialer())), proxy_stream)
            nursery.start_soon(accept_and_close_connection, sock)


async def closed_port() -> int:
    with trio.socket.socket() as sock:
        await sock.bind(("127.0.0.1", 0))
        _, port = sock.getsockname()
    return port


async def test_connect_directly_to_refusing_host() -> None:
    port = await closed_port()

    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    async with trio.open_nursery() as nursery:
        nursery.start_soon(connect, client_stream, "127.0.0.1", port, b"HTTP/1.1 503")
        nursery.start_soon(Router(ProxyConfig(dialer=DirectDialer())), proxy_stream)


async def test_forward_directly_to_refusing_host() -> None:
    port = await closed_port()

    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    async with trio.open_nursery() as nursery:
        nursery.start_soon(Router(ProxyConfig(dialer=DirectDialer())), proxy_stream)
        async with client_stream:
            c = TrioHTTPConnection(client_stream, role=h11.CLIENT)
            response, body = await request(c, "GET", f"http://127.0.0.1:{port}/", [("Host", f"127.0.0.1:{port}")])

    assert response.status_code == 503
    assert b"127.0.0.1" in body


async def test_overlay_dialer_binds_to_interface_address() -> None:
    with trio.socket.socket() as sock:
        await sock.bind(("127.0.0.1", 0))
        sock.listen()
        _, port = sock.getsockname()

        dialer = OverlayDialer(InterfaceBoundNetwork("127.0.0.1"))
        assert dialer.mode == "tunneled"

        async with await dialer.dial("127.0.0.1", port) as stream:
            conn, _ = await sock.accept()
            with conn:
                await stream.send_all(b"ping")
                assert await conn.recv(4) == b"ping"
                local_host, _ = stream.socket.getsockname()
                assert local_host == "127.0.0.1"


################################################################
#               Dialer and configuration
################################################################

from overlayproxy._dialer import parse_host_and_port, OverlayDialer, InterfaceBoundNetwork
from overlayproxy._config import (
    Configuration, parse_configuration_v1, load_configuration_from_file, build_dialer, build_proxy_config,
)
from overlayproxy._errors import StartupConfigError, DialFailed

@pytest.mark.parametrize("target, expected", [
    ("example.com:443", ("example.com", 443)),
    ("10.0.0.1:8080", ("10.0.0.1", 8080)),
    ("[::1]:8443", ("::1", 8443)),
])
def test_parse_host_and_port(target: str, expected: Tuple[str, int]) -> None:
    assert parse_host_and_port(target) == expected

@pytest.mark.parametrize("target", ["", ":443", "example.com", "example.com:", "example.com:0",
                                    "example.com:65536", "a:b:c", "[::1", "[nope]:1", "example.com:-1"])
def test_parse_host_and_port_rejects_malformed(target: str) -> None:
    with pytest.raises(ValueError):
        parse_host_and_port(target)

def test_parse_host_and_port_default() -> None:
    assert parse_host_and_port("example.com", default_port=80) == ("example.com", 80)

async def test_dial_failure_is_always_dial_failed() -> None:
    with pytest.raises(DialFailed):
        await RefusingDialer().dial("example.com", 443)
    with pytest.raises(DialFailed):
        await RefusingDialer().dial("", 443)
    with pytest.raises(DialFailed):
        await RefusingDialer().dial_target("example.com:http")


KEY = base64.b64encode(bytes(range(32))).decode()
PEER_KEY = base64.b64encode(bytes(32)).decode()

def overlay_env(**overrides) -> dict:
    env = {
        "WIREGUARD_INTERFACE_PRIVATE_KEY": KEY,
        "WIREGUARD_INTERFACE_ADDRESS": "10.0.0.2/32",
        "WIREGUARD_PEER_PUBLIC_KEY": PEER_KEY,
        "WIREGUARD_PEER_ENDPOINT": "1.2.3.4:51820",
    }
    env.update(overrides)
    return env

def test_configuration_defaults() -> None:
    configuration = parse_configuration_v1({})
    assert configuration == Configuration()
    assert configuration.port == 8080
    assert configuration.credentials == Credentials("", "")
    assert configuration.overlay is None

def test_configuration_from_environment_variables() -> None:
    configuration = parse_configuration_v1({"PROXY_USER": "u", "PROXY_PASS": "p", "PORT": "3128", **overlay_env()})
    assert configuration.credentials == Credentials("u", "p")
    assert configuration.port == 3128

    overlay = configuration.overlay
    assert overlay.private_key == bytes(range(32))
    assert overlay.peer_public_key == bytes(32)
    assert overlay.peer_endpoint == ("1.2.3.4", 51820)
    assert overlay.address == "10.0.0.2"
    assert overlay.dns == "1.1.1.1"

def test_overlay_needs_key_and_endpoint() -> None:
    assert parse_configuration_v1(overlay_env(WIREGUARD_PEER_ENDPOINT="")).overlay is None
    assert parse_configuration_v1(overlay_env(WIREGUARD_INTERFACE_PRIVATE_KEY="")).overlay is None

def test_unparsable_dns_falls_back_to_default() -> None:
    assert parse_configuration_v1(overlay_env(WIREGUARD_INTERFACE_DNS="not-an-ip")).overlay.dns == "1.1.1.1"
    assert parse_configuration_v1(overlay_env(WIREGUARD_INTERFACE_DNS="9.9.9.9")).overlay.dns == "9.9.9.9"

@pytest.mark.parametrize("env", [
    {"PORT": "http"},
    {"PORT": "70000"},
    overlay_env(WIREGUARD_INTERFACE_PRIVATE_KEY="not base64!"),
    overlay_env(WIREGUARD_INTERFACE_PRIVATE_KEY=base64.b64encode(b"short").decode()),
    overlay_env(WIREGUARD_PEER_PUBLIC_KEY=""),
    overlay_env(WIREGUARD_PEER_ENDPOINT="1.2.3.4"),
    overlay_env(WIREGUARD_INTERFACE_ADDRESS="10.0.0.300/32"),
])
def test_invalid_configuration_is_a_startup_error(env: dict) -> None:
    with pytest.raises(StartupConfigError):
        parse_configuration_v1(env)

def test_configuration_from_env_file(tmp_path) -> None:
    path = tmp_path / "proxy.env"
    path.write_text(
        "# proxy settings\n"
        "\n"
        "PROXY_USER=alice\n"
        "export PROXY_PASS='s3cr=t'\n"
        'PORT="9090"\n'
    )
    configuration = load_configuration_from_file(str(path))
    assert configuration.credentials == Credentials("alice", "s3cr=t")
    assert configuration.port == 9090

def test_malformed_env_file(tmp_path) -> None:
    path = tmp_path / "proxy.env"
    path.write_text("PROXY_USER\n")
    with pytest.raises(StartupConfigError):
        load_configuration_from_file(str(path))

def test_direct_mode_without_overlay() -> None:
    config = build_proxy_config(parse_configuration_v1({"PROXY_USER": "u", "PROXY_PASS": "p", "PORT": "3128"}))
    assert isinstance(config.dialer, DirectDialer)
    assert config.dialer.mode == "direct"
    assert config.credentials == Credentials("u", "p")
    assert config.listen_port == 3128

def test_overlay_mode_with_local_interface_address() -> None:
    dialer = build_dialer(parse_configuration_v1(overlay_env(WIREGUARD_INTERFACE_ADDRESS="127.0.0.1/8")))
    assert isinstance(dialer, OverlayDialer)
    assert dialer.mode == "tunneled"

@pytest.mark.parametrize("address", ["", "192.0.2.123/32"])
def test_unusable_overlay_is_fatal(address: str) -> None:
    # 192.0.2.0/24 is TEST-NET-1; no host should have it assigned.
    configuration = parse_configuration_v1(overlay_env(WIREGUARD_INTERFACE_ADDRESS=address))
    with pytest.raises(StartupConfigError):
        build_dialer(configuration)

def test_missing_env_file(tmp_path) -> None:
    with pytest.raises(StartupConfigError):
        load_configuration_from_file(str(tmp_path / "nowhere.env"))


from overlayproxy._forward import parse_absolute_target

@pytest.mark.parametrize("target, expected", [
    (b"http://example.com", ("http", "example.com", 80, b"/")),
    (b"https://example.com/a?b=c", ("https", "example.com", 443, b"/a?b=c")),
    (b"http://[::1]:8080/x", ("http", "::1", 8080, b"/x")),
])
def test_parse_absolute_target(target: bytes, expected) -> None:
    assert tuple(parse_absolute_target(target)) == expected

@pytest.mark.parametrize("target", [b"/relative", b"ftp://example.com/", b"http:///no-host",
                                    b"http://example.com:0/", b"http://example.com:99999/"])
def test_parse_absolute_target_rejects(target: bytes) -> None:
    with pytest.raises(ValueError):
        parse_absolute_target(target)


################################################################
#               Command line
################################################################

from overlayproxy.__main__ import main

@pytest.mark.parametrize("contents", [
    None,  # no file at all
    "PROXY_USER\n",
    "PORT=http\n",
    "\n".join(f"{key}={value}" for key, value in overlay_env(WIREGUARD_INTERFACE_ADDRESS="192.0.2.123").items()),
])
def test_startup_errors_exit_before_listening(contents: Optional[str], tmp_path, monkeypatch) -> None:
    path = tmp_path / "proxy.env"
    if contents is not None:
        path.write_text(contents)

    def must_not_start(*args, **kwargs):
        raise AssertionError("the proxy was started")

    monkeypatch.setattr("overlayproxy.__main__.OverlayProxy", must_not_start)
    assert main(["--env-file", str(path)]) == 1
