"""Tests for async_acme.transport."""
import socket
import sys
import unittest
from unittest import mock

import pytest
import requests

from async_acme import errors


class ResponseTest(unittest.TestCase):
    """Tests for async_acme.transport.Response."""

    def test_ok(self):
        from async_acme.transport import Response
        assert Response(200).ok
        assert Response(399).ok
        assert not Response(400).ok

    def test_headers_case_insensitive(self):
        from async_acme.transport import Response
        response = Response(200, {'replay-nonce': 'abc'})
        assert response.headers['Replay-Nonce'] == 'abc'

    def test_content_type(self):
        from async_acme.transport import Response
        response = Response(200, {'Content-Type': 'application/json; charset=utf-8'})
        assert response.content_type == 'application/json'
        assert Response(200).content_type is None

    def test_json(self):
        from async_acme.transport import Response
        assert Response(200, content=b'{"a": 1}').json() == {'a': 1}
        with pytest.raises(ValueError):
            Response(200, content=b'not json').json()

    def test_text(self):
        from async_acme.transport import Response
        assert Response(200, content=b'caf\xc3\xa9').text == 'café'

    def test_links(self):
        from async_acme.transport import Response
        response = Response(200, {'Link': ', '.join([
            '<https://ca.example/cert/1/1>;rel="alternate"',
            '<https://ca.example/cert/1/2>;rel="alternate"',
            '<https://ca.example/directory>;rel="index"',
        ])})
        assert response.links('alternate') == [
            'https://ca.example/cert/1/1', 'https://ca.example/cert/1/2']
        assert response.links('index') == ['https://ca.example/directory']
        assert response.links('up') == []

    def test_links_missing(self):
        from async_acme.transport import Response
        assert Response(200).links('alternate') == []

    def test_repr(self):
        from async_acme.transport import Response
        assert repr(Response(201, url='https://ca.example/x')) == \
            '<Response [201] https://ca.example/x>'


class RequestsTransportTest(unittest.IsolatedAsyncioTestCase):
    """Tests for async_acme.transport.RequestsTransport."""

    def setUp(self):
        from async_acme.transport import RequestsTransport
        self.transport = RequestsTransport(verify_ssl=False, user_agent='acme-test', timeout=7)
        self.transport.session = mock.MagicMock()
        self.response = mock.MagicMock(status_code=200, content=b'{}', text='{}')
        self.response.headers = {'Content-Type': 'application/json', 'Replay-Nonce': 'n'}
        self.transport.session.request.return_value = self.response

    async def test_send(self):
        response = await self.transport.send('GET', 'https://ca.example/directory')
        self.transport.session.request.assert_called_once_with(
            'GET', 'https://ca.example/directory', data=None,
            headers={'User-Agent': 'acme-test'}, verify=False, timeout=7,
            allow_redirects=False)
        assert response.status_code == 200
        assert response.headers['replay-nonce'] == 'n'
        assert response.json() == {}
        assert response.url == 'https://ca.example/directory'

    async def test_send_post_keeps_headers(self):
        await self.transport.send('POST', 'https://ca.example/new-order', b'{"x": 1}',
                                  {'Content-Type': 'application/jose+json',
                                   'User-Agent': 'custom'})
        _, kwargs = self.transport.session.request.call_args
        assert kwargs['data'] == b'{"x": 1}'
        assert kwargs['headers'] == {'Content-Type': 'application/jose+json',
                                     'User-Agent': 'custom'}

    async def test_send_binary_response(self):
        self.response.headers = {'Content-Type': 'application/pkix-cert'}
        self.response.content = b'\x00\x01'
        response = await self.transport.send('GET', 'https://ca.example/cert')
        assert response.content == b'\x00\x01'

    async def test_send_error(self):
        self.transport.session.request.side_effect = requests.exceptions.ConnectionError('boom')
        with pytest.raises(errors.TransportError) as info:
            await self.transport.send('HEAD', 'https://ca.example/new-nonce')
        assert info.value.url == 'https://ca.example/new-nonce'

    async def test_close(self):
        await self.transport.close()
        self.transport.session.close.assert_called_once_with()

    def test_verify_from_tls_connector(self):
        from async_acme.tls import DefaultTLSConnector
        from async_acme.transport import RequestsTransport
        transport = RequestsTransport(tls_connector=DefaultTLSConnector(verify=False),
                                      verify_ssl=True)
        assert transport.verify_ssl is False


class ConnectorAdapterTest(unittest.TestCase):
    """Tests for async_acme.transport.ConnectorAdapter."""

    def test_tls_connector_context(self):
        from async_acme.transport import ConnectorAdapter
        tls_connector = mock.MagicMock()
        adapter = ConnectorAdapter(tls_connector=tls_connector)
        tls_connector.ssl_context.assert_called_once_with()
        assert adapter.poolmanager.connection_pool_kw['ssl_context'] is \
            tls_connector.ssl_context.return_value

    def test_default(self):
        from async_acme.transport import ConnectorAdapter
        adapter = ConnectorAdapter()
        assert 'ssl_context' not in adapter.poolmanager.connection_pool_kw

    def test_address_connector_pools(self):
        from async_acme.transport import ConnectorAdapter
        connector = mock.MagicMock()
        adapter = ConnectorAdapter(address_connector=connector)
        https_pool = adapter.poolmanager.pool_classes_by_scheme['https']
        assert https_pool.ConnectionCls.address_connector is connector


class RacingConnectionTest(unittest.TestCase):
    """Tests for connections opened through an AddressConnector."""

    def setUp(self):
        from async_acme.transport import racing_pool_classes
        self.connector = mock.MagicMock()
        pools = racing_pool_classes(self.connector)
        self.conn = pools['http'].ConnectionCls('ca.example', 80, timeout=3)

    def test_new_conn(self):
        sock = self.conn._new_conn()
        assert sock is self.connector.connect.return_value
        self.connector.connect.assert_called_once_with(
            'ca.example', 80, timeout=3, source_address=None)

    def test_resolution_error(self):
        from urllib3.exceptions import NameResolutionError
        self.connector.connect.side_effect = socket.gaierror('unknown host')
        with pytest.raises(NameResolutionError):
            self.conn._new_conn()

    def test_timeout(self):
        from urllib3.exceptions import ConnectTimeoutError
        self.connector.connect.side_effect = socket.timeout('timed out')
        with pytest.raises(ConnectTimeoutError):
            self.conn._new_conn()

    def test_refused(self):
        from urllib3.exceptions import NewConnectionError
        self.connector.connect.side_effect = ConnectionRefusedError('refused')
        with pytest.raises(NewConnectionError):
            self.conn._new_conn()


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
