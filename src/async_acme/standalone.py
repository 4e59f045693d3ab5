"""Standalone http-01 challenge responder."""
import asyncio
import collections
import functools
import http.client as http_client
import http.server as BaseHTTPServer
import logging
import socket
import threading
from typing import Any
from typing import Optional
from typing import Set
from typing import Tuple

from async_acme import challenges
from async_acme import errors
from async_acme import responder

logger = logging.getLogger(__name__)


class HTTPServer(BaseHTTPServer.HTTPServer):
    """Generic HTTP Server."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.ipv6 = kwargs.pop("ipv6", False)
        if self.ipv6:
            self.address_family = socket.AF_INET6
        else:
            self.address_family = socket.AF_INET
        super().__init__(*args, **kwargs)


class HTTP01Server(HTTPServer):
    """HTTP01 Server."""
    allow_reuse_address = True

    def __init__(self, server_address: Tuple[str, int],
                 resources: Set['HTTP01RequestHandler.HTTP01Resource'],
                 ipv6: bool = False, timeout: int = 30) -> None:
        super().__init__(
            server_address, HTTP01RequestHandler.partial_init(
                simple_http_resources=resources, timeout=timeout), ipv6=ipv6)


class HTTP01RequestHandler(BaseHTTPServer.BaseHTTPRequestHandler):
    """HTTP01 challenge handler.

    Adheres to the stdlib's `socketserver.BaseRequestHandler` interface.

    :ivar set simple_http_resources: A set of `HTTP01Resource` objects,
        shared with the responder that adds and removes them.

    """
    HTTP01Resource = collections.namedtuple(
        "HTTP01Resource", "chall response validation")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.simple_http_resources = kwargs.pop("simple_http_resources", set())
        self._timeout = kwargs.pop('timeout', 30)
        super().__init__(*args, **kwargs)
        self.server: HTTP01Server

    # BaseHTTPRequestHandler declares 'timeout' at class level; the value is
    # only known per server, so it is served from an instance attribute.
    @property
    def timeout(self) -> int:  # type: ignore[override]
        """
        The default timeout this server should apply to requests.
        :return: timeout to apply
        :rtype: int
        """
        return self._timeout

    def log_message(self, format: str, *args: Any) -> None:  # pylint: disable=redefined-builtin
        """Log arbitrary message."""
        logger.debug("%s - - %s", self.client_address[0], format % args)

    def do_GET(self) -> None:  # pylint: disable=invalid-name,missing-function-docstring
        if self.path.startswith("/" + challenges.HTTP01.URI_ROOT_PATH + "/"):
            self.handle_simple_http_resource()
        else:
            self.handle_404()

    def handle_404(self) -> None:
        """Handler 404 Not Found errors."""
        self.send_response(http_client.NOT_FOUND, message="Not Found")
        self.send_header("Content-type", "text/html")
        self.end_headers()
        self.wfile.write(b"404")

    def handle_simple_http_resource(self) -> None:
        """Handle HTTP01 provisioned resources."""
        for resource in list(self.simple_http_resources):
            if resource.chall.path == self.path:
                self.log_message("Serving HTTP01 with token %r",
                                 resource.chall.encode("token"))
                body = resource.validation.encode()
                self.send_response(http_client.OK)
                self.send_header("Content-Type", "text/plain")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)
                return
        self.log_message("%s does not correspond to any resource. ignoring",
                         self.path)
        self.handle_404()

    @classmethod
    def partial_init(cls, simple_http_resources: Set['HTTP01RequestHandler.HTTP01Resource'],
                     timeout: int) -> 'functools.partial[HTTP01RequestHandler]':
        """Partially initialize this handler.

        This is useful because `socketserver.BaseServer` takes
        uninitialized handler and initializes it with the current
        request.

        """
        return functools.partial(
            cls, simple_http_resources=simple_http_resources,
            timeout=timeout)


class HTTP01Responder(responder.ChallengeResponder):
    """`.ChallengeResponder` serving http-01 key authorizations itself.

    The server is started on the first `publish` and shut down once the
    last resource is withdrawn.

    :param tuple server_address: Address to listen on; the CA connects to
        port 80 of the validated name.
    :param bool ipv6: Listen on IPv6 instead of IPv4.

    """

    def __init__(self, server_address: Tuple[str, int] = ('', challenges.HTTP01Response.PORT),
                 ipv6: bool = False, timeout: int = 30) -> None:
        self.server_address = server_address
        self.ipv6 = ipv6
        self.timeout = timeout
        self.resources: Set[HTTP01RequestHandler.HTTP01Resource] = set()
        self.server: Optional[HTTP01Server] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = asyncio.Lock()

    @property
    def port(self) -> Optional[int]:
        """Port actually bound, once the server runs."""
        if self.server is None:
            return None
        return self.server.socket.getsockname()[1]

    async def publish(self, achall: responder.AnnotatedChallenge
                      ) -> 'HTTP01RequestHandler.HTTP01Resource':
        if not isinstance(achall.chall, challenges.HTTP01):
            raise errors.UnsupportedChallengeError(achall.typ, (challenges.HTTP01.typ,))
        resource = HTTP01RequestHandler.HTTP01Resource(
            chall=achall.chall, response=achall.response, validation=achall.validation)
        async with self._lock:
            self.resources.add(resource)
            if self.server is None:
                await self._start()
        return resource

    async def withdraw(self, handle: 'HTTP01RequestHandler.HTTP01Resource') -> None:
        async with self._lock:
            self.resources.discard(handle)
            if not self.resources and self.server is not None:
                await self._stop()

    async def _start(self) -> None:
        self.server = await asyncio.to_thread(
            HTTP01Server, self.server_address, self.resources,
            ipv6=self.ipv6, timeout=self.timeout)
        self._thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self._thread.start()
        logger.debug("Serving http-01 challenges on port %s", self.port)

    async def _stop(self) -> None:
        server, thread = self.server, self._thread
        if server is None or thread is None:
            raise errors.Error("http-01 challenge server is not running")
        self.server = self._thread = None
        await asyncio.to_thread(server.shutdown)
        server.server_close()
        await asyncio.to_thread(thread.join)
        logger.debug("Stopped http-01 challenge server")
