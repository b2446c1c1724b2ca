import h11
import trio

from ._adapter import TrioHTTPConnection
from ._dialer import Dialer, DIAL_TIMEOUT
from ._errors import DialFailed, HijackUnsupported


CHUNK_SIZE = 16384


class TunnelSession:
    """
    One established CONNECT tunnel: the hijacked client stream and the
    dialed destination, owned by the session until it ends.

    Each direction is copied by its own task. Whichever task finishes
    first (end of stream or error) cancels the shared scope, which stops
    the other one; both streams are then closed. So a close on either
    side always tears down the whole tunnel.
    """

    def __init__(self, client: trio.abc.Stream, destination: trio.abc.Stream):
        self.client = client
        self.destination = destination
        self.bytes_up = 0    # client -> destination
        self.bytes_down = 0  # destination -> client
        self.finished = False

    async def run(self, pending: bytes = b"") -> None:
        """
        Relay bytes until one side closes, then close both.

        `pending` is data the client sent before the tunnel existed;
        it is delivered to the destination first.
        """
        async with self.client:
            async with self.destination:
                try:
                    if pending:
                        await self.destination.send_all(pending)
                        self.bytes_up += len(pending)
                except (trio.BrokenResourceError, trio.ClosedResourceError):
                    pass
                else:
                    async with trio.open_nursery() as nursery:
                        # From RFC 7231, §4.3.6:
                        # ----------------------
                        # A tunnel is closed when a tunnel intermediary detects that
                        # either side has closed its connection: the intermediary MUST
                        # attempt to send any outstanding data that came from the
                        # closed side to the other side, close both connections,
                        # and then discard any remaining data left undelivered.
                        nursery.start_soon(self._forward, self.client, self.destination, "bytes_up", nursery.cancel_scope)
                        nursery.start_soon(self._forward, self.destination, self.client, "bytes_down", nursery.cancel_scope)
        self.finished = True

    async def _forward(self, source: trio.abc.Stream, sink: trio.abc.Stream,
                       counter: str, cancel_scope: trio.CancelScope) -> None:
        try:
            while True:
                try:
                    chunk = await source.receive_some(CHUNK_SIZE)
                    if not chunk:
                        break  # nothing more to read
                    await sink.send_all(chunk)
                    setattr(self, counter, getattr(self, counter) + len(chunk))
                except (trio.BrokenResourceError, trio.ClosedResourceError):
                    break
        finally:
            cancel_scope.cancel()


async def splice(a: trio.abc.Stream, b: trio.abc.Stream) -> TunnelSession:
    """
    "Splices" two streams into one.
    That is, it forwards everything from a to b, and vice versa.

    When one part of the connection breaks or finishes, it cleans up
    the other one and returns.
    """
    session = TunnelSession(a, b)
    await session.run()
    return session


class ConnectionTunnel:
    """Handles CONNECT requests by splicing the client to the target."""

    def __init__(self, dialer: Dialer, dial_timeout: float = DIAL_TIMEOUT):
        self.dialer = dialer
        self.dial_timeout = dial_timeout

    async def handle(self, w: TrioHTTPConnection, request: h11.Request) -> None:
        """
        Serve one CONNECT whose request (including EndOfMessage) has
        been fully read from `w`.

        On success the client stream is hijacked and closed by the time
        this returns; on failure an error response has been sent.
        """
        # The request line is the tunnel target. The Host header is
        # deliberately ignored: it must not be able to redirect the tunnel.
        target = request.target.decode("ascii")  # h11 ensures that this cannot break

        w.info(f"Making {self.dialer.mode} connection to {target!r}")
        try:
            destination = await self.dialer.dial_target(target, self.dial_timeout)
        except DialFailed as e:
            w.info(f"Dial failed: {e}")
            await w.send_error(503, str(e))
            return

        try:
            if not w.can_hijack():
                raise HijackUnsupported(f"client connection is in state {w.conn.their_state!r}")
            # All good!
            # Send a plain 200 OK, which will switch protocols.
            await w.send(h11.Response(status_code=200, reason=b"Connection established", headers=w.basic_headers()))
            client, pending = w.hijack()
        except HijackUnsupported as e:
            await trio.aclose_forcefully(destination)
            w.warning(f"FATAL: cannot take over the client connection: {e}")
            await w.send_error(500, "Hijacking not supported")
            return
        except BaseException:
            await trio.aclose_forcefully(destination)
            raise

        session = TunnelSession(client, destination)
        await session.run(pending)
        w.info(f"Tunnel to {target!r} closed ({session.bytes_up} bytes up, {session.bytes_down} bytes down)")
