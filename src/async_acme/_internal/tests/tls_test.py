"""Tests for async_acme.tls."""
import ssl
import sys
import unittest

import pytest


class DefaultTLSConnectorTest(unittest.TestCase):
    """Tests for async_acme.tls.DefaultTLSConnector."""

    def test_verifying_context(self):
        from async_acme.tls import DefaultTLSConnector
        context = DefaultTLSConnector().ssl_context()
        assert isinstance(context, ssl.SSLContext)
        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname

    def test_insecure_context(self):
        from async_acme.tls import DefaultTLSConnector
        context = DefaultTLSConnector(verify=False).ssl_context()
        assert context.verify_mode == ssl.CERT_NONE
        assert not context.check_hostname

    def test_alpn(self):
        from async_acme.tls import DefaultTLSConnector
        connector = DefaultTLSConnector(alpn_protocols=('h2', 'http/1.1'))
        assert connector.alpn_protocols == ['h2', 'http/1.1']
        connector.ssl_context()

    def test_missing_ca_bundle(self):
        from async_acme.tls import DefaultTLSConnector
        with pytest.raises(OSError):
            DefaultTLSConnector(ca_bundle='/nonexistent/bundle.pem').ssl_context()


class PyOpenSSLConnectorTest(unittest.TestCase):
    """Tests for async_acme.tls.PyOpenSSLConnector."""

    def test_verifying_context(self):
        from async_acme.tls import PyOpenSSLConnector
        context = PyOpenSSLConnector().ssl_context()
        assert context.verify_mode == ssl.CERT_REQUIRED

    def test_insecure_context(self):
        from async_acme.tls import PyOpenSSLConnector
        context = PyOpenSSLConnector(verify=False).ssl_context()
        assert context.verify_mode == ssl.CERT_NONE

    def test_alpn(self):
        from async_acme.tls import PyOpenSSLConnector
        PyOpenSSLConnector(alpn_protocols=['http/1.1']).ssl_context()


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
