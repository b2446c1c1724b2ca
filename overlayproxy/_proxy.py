import logging
import threading
import traceback

import h11
import trio

from ._adapter import TrioHTTPConnection
from ._auth import CHALLENGE, authorize, credentials_from_headers
from ._config import ProxyConfig
from ._dialer import TUNNELED
from ._forward import HTTPForwarder
from ._tunnel import ConnectionTunnel


logger = logging.getLogger("overlayproxy")

HEALTH_PATH = b"/"

################################################################
#                  The proxy itself
################################################################

class Router:
    """
    Entry point for every inbound connection.

    Reads requests, checks credentials, then hands each one to the
    tunnel (CONNECT), the health check, or the forwarder.
    """

    REQUEST_TIMEOUT = 5  # for the request head, and all of a CONNECT request

    def __init__(self, config: ProxyConfig):
        self.config = config
        self.tunnel = ConnectionTunnel(config.dialer)
        self.forwarder = HTTPForwarder(config.dialer, ssl_context=config.upstream_ssl_context)

    def health_message(self) -> str:
        if self.config.dialer.mode == TUNNELED:
            return "Proxy Running via tunneled overlay network"
        return "Proxy Running in direct mode (no VPN)"

    async def __call__(self, stream: trio.abc.Stream) -> None:
        """
        Handles one inbound connection from start to end.
        """
        start_time = trio.current_time()
        w = TrioHTTPConnection(stream, shutdown_timeout=10)
        requests_seen = 0

        try:
            while True:
                assert w.conn.our_state is h11.IDLE

                with trio.move_on_after(self.REQUEST_TIMEOUT) as idle:
                    e = await w.next_event()
                if idle.cancelled_caught:
                    if requests_seen == 0 or w.conn.their_state is not h11.IDLE:
                        raise trio.TooSlowError
                    w.info("Idle keep-alive connection timed out")
                    break

                assert isinstance(e, (h11.Request, h11.ConnectionClosed)), "This assertion should always hold"
                if isinstance(e, h11.ConnectionClosed):
                    w.info("Client closed the TCP connection")
                    break

                requests_seen += 1
                hijacked = await self.dispatch(w, e)
                if hijacked:
                    return

                if w.conn.our_state is h11.DONE and w.conn.their_state is h11.DONE:
                    w.conn.start_next_cycle()
                else:
                    break

        except Exception as e:
            w.info(f"Handling exception: {e!r}")
            try:
                if isinstance(e, trio.BrokenResourceError):
                    w.info("Client abruptly closed connection; dropping request.")
                elif isinstance(e, h11.RemoteProtocolError):
                    await w.send_error(e.error_status_hint, str(e))
                elif isinstance(e, trio.TooSlowError):
                    await w.send_error(408, "Client is too slow, terminating connection")
                else:
                    w.warning(f"Internal Server Error: {type(e)} {e}")
                    await w.send_error(500, str(e))
            except Exception as e:
                w.warning("Error while responding with an error: " + "\n".join(traceback.format_tb(e.__traceback__)))
        finally:
            await w.ensure_shutdown()
            end_time = trio.current_time()
            w.info(f"Total time: {end_time - start_time:.6f}s")

    async def dispatch(self, w: TrioHTTPConnection, request: h11.Request) -> bool:
        """
        Serve one request. Returns True if the connection was hijacked.
        """
        if not authorize(self.config.credentials, credentials_from_headers(request.headers)):
            w.info(f"Unauthorized {request.method.decode('ascii')} {request.target!r}")
            await w.send_error(407, "Unauthorized", [("Proxy-Authenticate", CHALLENGE)])
            return False

        if request.method == b"CONNECT":
            w.info(f"CONNECT {request.target!r}")
            # Ignore any HTTP body (h11.Data entries)
            # and read until h11.EndOfMessage
            with trio.fail_after(self.REQUEST_TIMEOUT):
                while type(await w.next_event()) is not h11.EndOfMessage:
                    pass
            await self.tunnel.handle(w, request)
            return w.conn.our_state is h11.SWITCHED_PROTOCOL

        # Only the origin-form "/" is ours; "http://host/" is forwarded.
        path, _, _ = request.target.partition(b"?")
        if path == HEALTH_PATH:
            w.info("Health check")
            with trio.fail_after(self.REQUEST_TIMEOUT):
                while type(await w.next_event()) is not h11.EndOfMessage:
                    pass
            body = self.health_message().encode("utf-8")
            await w.send_simple_response(200, "text/plain; charset=utf-8", body,
                                         include_body=request.method != b"HEAD")
            return False

        w.info(f"{request.method.decode('ascii')} {request.target!r}")
        await self.forwarder.handle(w, request)
        return False


################################################################
#                  User-friendly objects
################################################################

class OverlayProxy:
    """
    An HTTP forward proxy, sending everything through one dialer.

    Runs on a trio event loop.
    """

    def __init__(self, config: ProxyConfig):
        self.config = config
        self.router = Router(config)

    async def listen(self, host: str, port: int, *, task_status=trio.TASK_STATUS_IGNORED) -> None:
        """
        Listen for incoming TCP connections.

        Parameters:
          host: the host interface to listen on
          port: the port to listen on
        """
        logger.info(f"Listening on http://{host}:{port} ({self.config.dialer.mode} mode)")
        await trio.serve_tcp(self.router, port, host=host, task_status=task_status)


async def run_synchronously_cancellable_proxy(
        proxy: OverlayProxy,
        host: str,
        port: int,
        stop: threading.Event,
        stop_check_interval: float,
    ) -> None:
    """
    Runs the proxy, until cancelled through the `stop` event.
    It checks the event every `stop_check_interval` seconds.

    This function is meant for use primarily in the synchronous world:
    while it _can_ be used just fine in Trio, a plain trio.CancelScope
    is simpler and more idiomatic.
    """

    async def listen_for_stop(cancel_scope: trio.CancelScope) -> None:
        while not stop.is_set():
            await trio.sleep(stop_check_interval)
        cancel_scope.cancel()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(listen_for_stop, nursery.cancel_scope)
        nursery.start_soon(proxy.listen, host, port)


class SynchronousOverlayProxy:
    """
    A wrapper around OverlayProxy which runs it in a separate
    thread, so you can use it from a traditional threaded program.

    Can stop, but not gently. (It kills all TCP connections.)
    """

    def __init__(self,
            host: str,
            port: int,
            config: ProxyConfig,
            stop_check_interval: float = 0.010,
            ):
        """
        Parameters are similar to OverlayProxy. `stop_check_interval` is new:
        this is how long (in seconds) it may take to stop the proxy.
        """
        self._proxy = OverlayProxy(config)
        self._started = False
        self._stop = threading.Event()

        self._thread = threading.Thread(
            name=f"SynchronousOverlayProxy-on-http://{host}:{port}/",
            target=trio.run,
            args=(run_synchronously_cancellable_proxy, self._proxy, host, port, self._stop, stop_check_interval),
        )

    def start(self) -> None:
        """Start the proxy, if not already started."""
        if not self._started:
            self._thread.start()
            self._started = True

    def stop(self) -> None:
        """Stop the proxy, if not already stopped."""
        self._stop.set()
        if self._started:
            self._thread.join()
