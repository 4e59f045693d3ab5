"""Asynchronous HTTP transport the protocol engine runs on."""
import abc
import asyncio
import base64
import json
import logging
import socket
from typing import Any
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional
from typing import Type
from typing import Union

import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from requests.utils import parse_header_links
from urllib3.connection import HTTPConnection
from urllib3.connection import HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool
from urllib3.connectionpool import HTTPSConnectionPool
from urllib3.exceptions import ConnectTimeoutError
from urllib3.exceptions import NameResolutionError
from urllib3.exceptions import NewConnectionError

from async_acme import errors
from async_acme import happy_eyeballs
from async_acme import tls

logger = logging.getLogger(__name__)

DEFAULT_NETWORK_TIMEOUT = 45
DEFAULT_USER_AGENT = 'async-acme-python'


class Response:
    """HTTP response as seen by the protocol engine.

    :ivar int status_code:
    :ivar headers: Case-insensitive response headers.
    :ivar bytes content: Raw body.
    :ivar str url: URL the request was sent to.

    """

    def __init__(self, status_code: int, headers: Optional[Mapping[str, str]] = None,
                 content: bytes = b'', url: Optional[str] = None) -> None:
        self.status_code = status_code
        self.headers: CaseInsensitiveDict = CaseInsensitiveDict(headers or {})
        self.content = content
        self.url = url

    def __repr__(self) -> str:
        return f'<Response [{self.status_code}] {self.url}>'

    @property
    def ok(self) -> bool:
        """``True`` unless the status code is 400 or above."""
        return self.status_code < 400

    @property
    def text(self) -> str:
        """Body decoded as UTF-8."""
        return self.content.decode('utf-8', errors='replace')

    @property
    def content_type(self) -> Optional[str]:
        """Media type of the body, parameters stripped (rfc2616#section-3.7)."""
        value = self.headers.get('Content-Type')
        if not value:
            return None
        return value.split(';')[0].strip()

    def json(self) -> Any:
        """Decode the body as JSON.

        :raises ValueError: if the body is not JSON.

        """
        return json.loads(self.content.decode('utf-8'))

    def links(self, relation_type: str) -> List[str]:
        """Retrieves all Link URIs of relation_type from the response.

        ``requests`` drops repeated relations in ``Response.links``, while
        RFC 8555 responses may carry several (e.g. ``alternate`` chains).
        """
        if 'Link' not in self.headers:
            return []
        links = parse_header_links(self.headers['Link'])
        return [l['url'] for l in links
                if 'rel' in l and 'url' in l and l['rel'] == relation_type]


class Transport(metaclass=abc.ABCMeta):
    """Asynchronous HTTP(S) request capability.

    Implementations never follow redirects and hold no protocol state.
    """

    @abc.abstractmethod
    async def send(self, method: str, url: str, body: Optional[bytes] = None,
                   headers: Optional[Mapping[str, str]] = None) -> Response:
        """Send a request and return the response, whatever its status.

        :raises .TransportError: on connection, TLS or timeout failure.

        """

    async def close(self) -> None:
        """Release pooled connections."""


class _RacingConnectionMixin:
    """Open the TCP connection through an `.AddressConnector`."""
    address_connector: happy_eyeballs.AddressConnector

    def _new_conn(self) -> socket.socket:
        timeout = self.timeout if isinstance(self.timeout, (int, float)) else None  # type: ignore[attr-defined]
        try:
            sock = self.address_connector.connect(
                self._dns_host, self.port, timeout=timeout,  # type: ignore[attr-defined]
                source_address=self.source_address)  # type: ignore[attr-defined]
        except socket.gaierror as error:
            raise NameResolutionError(self.host, self, error) from error  # type: ignore
        except socket.timeout as error:
            raise ConnectTimeoutError(
                self, f"Connection to {self.host} timed out. "  # type: ignore[attr-defined]
                f"(connect timeout={self.timeout})") from error  # type: ignore[attr-defined]
        except OSError as error:
            raise NewConnectionError(
                self, f"Failed to establish a new connection: {error}") from error  # type: ignore
        for option in getattr(self, 'socket_options', None) or ():
            sock.setsockopt(*option)
        return sock


def racing_pool_classes(connector: happy_eyeballs.AddressConnector
                        ) -> Dict[str, Type[HTTPConnectionPool]]:
    """urllib3 pool classes whose connections race addresses with ``connector``."""
    attrs = {'address_connector': connector}
    http_conn = type('RacingHTTPConnection', (_RacingConnectionMixin, HTTPConnection), attrs)
    https_conn = type('RacingHTTPSConnection', (_RacingConnectionMixin, HTTPSConnection), attrs)
    return {
        'http': type('RacingHTTPConnectionPool', (HTTPConnectionPool,),
                     {'ConnectionCls': http_conn}),
        'https': type('RacingHTTPSConnectionPool', (HTTPSConnectionPool,),
                      {'ConnectionCls': https_conn}),
    }


class ConnectorAdapter(HTTPAdapter):
    """`requests` adapter wiring in the TLS and address-racing connectors.

    :param tls.TLSConnector tls_connector: Supplies the `ssl.SSLContext`
        used for every HTTPS connection.
    :param happy_eyeballs.AddressConnector address_connector: Races the
        resolved addresses of a host. When ``None``, urllib3 connects to
        one address after the other.

    """

    def __init__(self, tls_connector: Optional[tls.TLSConnector] = None,
                 address_connector: Optional[happy_eyeballs.AddressConnector] = None,
                 **kwargs: Any) -> None:
        self.tls_connector = tls_connector
        self.address_connector = address_connector
        super().__init__(**kwargs)

    def init_poolmanager(self, *args: Any, **kwargs: Any) -> None:
        if self.tls_connector is not None:
            kwargs['ssl_context'] = self.tls_connector.ssl_context()
        super().init_poolmanager(*args, **kwargs)
        if self.address_connector is not None:
            self.poolmanager.pool_classes_by_scheme = racing_pool_classes(
                self.address_connector)


class RequestsTransport(Transport):
    """Transport backed by a `requests.Session`.

    The blocking session runs on a worker thread, so the event loop only
    ever suspends on the request as a whole.

    :param tls.TLSConnector tls_connector: TLS backend, selected by the caller.
    :param happy_eyeballs.AddressConnector address_connector: Optional
        address racing.
    :param bool verify_ssl: Whether to verify certificates on SSL connections.
        Ignored when ``tls_connector`` is given, which carries its own setting.
    :param str user_agent: String to send as User-Agent header.
    :param int timeout: Timeout for requests.

    """

    def __init__(self, tls_connector: Optional[tls.TLSConnector] = None,
                 address_connector: Optional[happy_eyeballs.AddressConnector] = None,
                 verify_ssl: bool = True, user_agent: str = DEFAULT_USER_AGENT,
                 timeout: float = DEFAULT_NETWORK_TIMEOUT) -> None:
        self.verify_ssl = tls_connector.verify if tls_connector is not None else verify_ssl
        self.user_agent = user_agent
        self._default_timeout = timeout
        self.session = requests.Session()
        adapter = ConnectorAdapter(tls_connector, address_connector)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    async def send(self, method: str, url: str, body: Optional[bytes] = None,
                   headers: Optional[Mapping[str, str]] = None) -> Response:
        return await asyncio.to_thread(self._send_request, method, url, body, headers)

    async def close(self) -> None:
        await asyncio.to_thread(self.session.close)

    def _send_request(self, method: str, url: str, body: Optional[bytes],
                      headers: Optional[Mapping[str, str]]) -> Response:
        """Send HTTP request.

        Makes sure that `verify_ssl` is respected and redirects are never
        followed. Logs request and response (with headers).

        :raises .TransportError: in case of any problems below HTTP

        """
        if method == "POST":
            logger.debug('Sending POST request to %s:\n%s', url,
                         body.decode('utf-8', errors='replace') if body else '')
        else:
            logger.debug('Sending %s request to %s.', method, url)
        request_headers = dict(headers or {})
        request_headers.setdefault('User-Agent', self.user_agent)
        try:
            response = self.session.request(
                method, url, data=body, headers=request_headers,
                verify=self.verify_ssl, timeout=self._default_timeout,
                allow_redirects=False)
        except requests.exceptions.RequestException as error:
            raise errors.TransportError(url, error) from error

        # Certificate chains and JSON are logged as text, anything else as
        # base64 to keep binary data out of the logs.
        debug_content: Union[bytes, str]
        if response.headers.get('Content-Type', '').startswith(
                ('application/', 'text/')):
            response.encoding = "utf-8"
            debug_content = response.text
        else:
            debug_content = base64.b64encode(response.content)
        logger.debug('Received response:\nHTTP %d\n%s\n\n%s',
                     response.status_code,
                     "\n".join(f"{k}: {v}" for k, v in response.headers.items()),
                     debug_content)
        return Response(response.status_code, response.headers, response.content, url)
