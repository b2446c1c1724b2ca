import itertools
import logging
from typing import List, Optional, Tuple, Union
from wsgiref.handlers import format_date_time

import h11
import trio

from ._errors import HijackUnsupported


logger = logging.getLogger("overlayproxy")

MAX_RECV = 2 ** 16
SERVER_NAME = "overlayproxy/{}".format(h11.__version__)

Headers = List[Tuple[Union[str, bytes], Union[str, bytes]]]


class TrioHTTPConnection:
    """
    An h11 state machine glued to a trio stream.

    Used on both sides of the proxy: as a server towards our clients,
    and as a client towards origin servers when forwarding plain HTTP.
    """

    _next_id = itertools.count()

    def __init__(self, stream: trio.abc.Stream, shutdown_timeout: float = 10, role=h11.SERVER):
        self.stream = stream
        self.conn = h11.Connection(our_role=role)
        self.shutdown_timeout = shutdown_timeout
        self._obj_id = next(TrioHTTPConnection._next_id)
        self._hijacked = False
        self._closed = False

    async def send(self, event) -> None:
        # The code that sends ConnectionClosed would look like this,
        # but we shut down through ensure_shutdown() instead.
        assert type(event) is not h11.ConnectionClosed
        data = self.conn.send(event)
        try:
            await self.stream.send_all(data)
        except BaseException:
            # If send_all raises an exception (especially trio.Cancelled),
            # we have no choice but to give it up.
            self.conn.send_failed()
            raise

    async def _read_from_peer(self) -> None:
        if self.conn.they_are_waiting_for_100_continue:
            self.info("Sending 100 Continue")
            go_ahead = h11.InformationalResponse(status_code=100, headers=self.basic_headers())
            await self.send(go_ahead)
        try:
            data = await self.stream.receive_some(MAX_RECV)
        except (trio.BrokenResourceError, trio.ClosedResourceError):
            # They've stopped listening. Not much we can do about it here.
            data = b""
        self.conn.receive_data(data)

    async def next_event(self):
        while True:
            event = self.conn.next_event()
            if event is h11.NEED_DATA:
                await self._read_from_peer()
                continue
            return event

    async def ensure_shutdown(self) -> None:
        """
        Gracefully close our side of the connection, unless that
        already happened or the stream was hijacked.
        """
        if self._hijacked or self._closed:
            return
        self._closed = True

        try:
            await self.stream.send_eof()  # type: ignore
        except (AttributeError, trio.BrokenResourceError, trio.ClosedResourceError):
            # Streams without half-close support (TLS) or an already
            # broken peer: closing below is all we can do.
            pass

        # Wait and read for a bit to give them a chance to see that we closed
        # things, but eventually give up and just close the socket.
        with trio.move_on_after(self.shutdown_timeout):
            try:
                while True:
                    got = await self.stream.receive_some(MAX_RECV)
                    if not got:
                        break
            except (trio.BrokenResourceError, trio.ClosedResourceError):
                pass
        await trio.aclose_forcefully(self.stream)

    async def abort(self) -> None:
        """Drop the connection without any further HTTP exchange."""
        if self._hijacked or self._closed:
            return
        self._closed = True
        await trio.aclose_forcefully(self.stream)

    def can_hijack(self) -> bool:
        """True once the peer has sent a complete CONNECT request."""
        return not self._closed and self.conn.their_state is h11.MIGHT_SWITCH_PROTOCOL

    def hijack(self) -> Tuple[trio.abc.Stream, bytes]:
        """
        Take over the raw stream after a successful CONNECT response.

        Returns the stream and whatever bytes the client sent after the
        request head, which h11 has already pulled off the wire.
        From here on, this object no longer owns the stream.
        """
        if self.conn.our_state is not h11.SWITCHED_PROTOCOL:
            raise HijackUnsupported(f"connection is in state {self.conn.our_state!r}, not SWITCHED_PROTOCOL")
        self._hijacked = True
        pending, _ = self.conn.trailing_data
        return self.stream, bytes(pending)

    def basic_headers(self) -> Headers:
        # HTTP requires these headers in all responses (client would do
        # something different here)
        return [
            ("Date", format_date_time(None).encode("ascii")),
            ("Server", SERVER_NAME),
        ]

    async def send_simple_response(self, status_code: int, content_type: str, body: bytes,
                                   extra_headers: Optional[Headers] = None, include_body: bool = True) -> None:
        headers = self.basic_headers()
        headers.append(("Content-Type", content_type))
        headers.append(("Content-Length", str(len(body))))
        headers.extend(extra_headers or [])
        res = h11.Response(status_code=status_code, headers=headers)
        await self.send(res)
        if include_body:  # not for HEAD
            await self.send(h11.Data(data=body))
        await self.send(h11.EndOfMessage())

    async def send_error(self, status_code: int, msg: str, extra_headers: Optional[Headers] = None) -> None:
        """
        Send a plaintext error response, if we're still in a position to.
        """
        if self._closed or self.conn.our_state not in {h11.IDLE, h11.SEND_RESPONSE}:
            self.info(f"Cannot send {status_code} in state {self.conn.our_state!r}; dropping it")
            return
        body = (msg + "\n").encode("utf-8")
        await self.send_simple_response(status_code, "text/plain; charset=utf-8", body, extra_headers)

    def info(self, *args) -> None:
        logger.info("%s: %s", self._obj_id, " ".join(str(a) for a in args))

    def warning(self, *args) -> None:
        logger.warning("%s: %s", self._obj_id, " ".join(str(a) for a in args))
