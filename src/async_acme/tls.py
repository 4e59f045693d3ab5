"""Pluggable TLS backends.

The transport only ever talks to a `TLSConnector`; which backend is used
is decided by whoever composes the client.
"""
import abc
import logging
import ssl
from typing import Optional
from typing import Sequence

from urllib3.contrib.pyopenssl import PyOpenSSLContext

logger = logging.getLogger(__name__)


class TLSConnector(metaclass=abc.ABCMeta):
    """TLS capability consumed by `.RequestsTransport`.

    :param bool verify: Validate the server certificate chain and hostname.
    :param str ca_bundle: Path to a PEM trust store used instead of the
        system one.
    :param alpn_protocols: Protocols offered through ALPN, if any.

    """

    def __init__(self, verify: bool = True, ca_bundle: Optional[str] = None,
                 alpn_protocols: Sequence[str] = ()) -> None:
        self.verify = verify
        self.ca_bundle = ca_bundle
        self.alpn_protocols = list(alpn_protocols)

    @abc.abstractmethod
    def ssl_context(self) -> ssl.SSLContext:
        """Build the context every HTTPS connection is wrapped with."""


class DefaultTLSConnector(TLSConnector):
    """Backend built on the interpreter's `ssl` module."""

    def ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(cafile=self.ca_bundle)
        if not self.verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        if self.alpn_protocols:
            context.set_alpn_protocols(self.alpn_protocols)
        logger.debug('Built ssl context (verify=%s, ca_bundle=%s)', self.verify, self.ca_bundle)
        return context


class PyOpenSSLConnector(TLSConnector):
    """Backend built on PyOpenSSL.

    Hostname matching is left to urllib3, which checks the peer certificate
    after the handshake whenever the context does not do it itself.
    """

    def ssl_context(self) -> ssl.SSLContext:
        context = PyOpenSSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = False
        if self.verify:
            context.verify_mode = ssl.CERT_REQUIRED
            if self.ca_bundle is not None:
                context.load_verify_locations(cafile=self.ca_bundle)
            else:
                context.set_default_verify_paths()
        else:
            context.verify_mode = ssl.CERT_NONE
        if self.alpn_protocols:
            context.set_alpn_protocols(self.alpn_protocols)
        logger.debug('Built PyOpenSSL context (verify=%s, ca_bundle=%s)',
                     self.verify, self.ca_bundle)
        return context  # type: ignore[return-value]
