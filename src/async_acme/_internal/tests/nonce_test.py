"""Tests for async_acme.nonce."""
import asyncio
import sys
import unittest
from unittest import mock

import josepy as jose
import pytest

from async_acme import errors
from async_acme import transport

NONCE_URL = 'https://ca.example/new-nonce'


def nonce_response(nonce: bytes, status: int = 200) -> transport.Response:
    return transport.Response(status, {'Replay-Nonce': jose.encode_b64jose(nonce)})


class DecodeNonceTest(unittest.TestCase):
    """Tests for async_acme.nonce.decode_nonce."""

    def test_good(self):
        from async_acme.nonce import decode_nonce
        assert decode_nonce(jose.encode_b64jose(b'foo')) == b'foo'

    def test_bad(self):
        from async_acme.nonce import decode_nonce
        with pytest.raises(errors.BadNonce) as info:
            decode_nonce('F')
        assert info.value.nonce == 'F'


class NonceCacheTest(unittest.IsolatedAsyncioTestCase):
    """Tests for async_acme.nonce.NonceCache."""

    def setUp(self):
        from async_acme.nonce import NonceCache
        self.transport = mock.MagicMock()
        self.transport.send = mock.AsyncMock(return_value=nonce_response(b'fetched'))
        self.cache = NonceCache(self.transport, NONCE_URL)

    async def test_take_fetches_when_empty(self):
        assert self.cache.empty
        assert await self.cache.take() == b'fetched'
        self.transport.send.assert_called_once_with('HEAD', NONCE_URL)

    async def test_take_uses_stored(self):
        await self.cache.store(jose.encode_b64jose(b'stored'))
        assert not self.cache.empty
        assert await self.cache.take() == b'stored'
        assert self.cache.empty
        self.transport.send.assert_not_called()

    async def test_store_overwrites(self):
        await self.cache.store(jose.encode_b64jose(b'first'))
        await self.cache.store(jose.encode_b64jose(b'second'))
        assert await self.cache.take() == b'second'
        assert await self.cache.take() == b'fetched'

    async def test_store_bad_nonce(self):
        with pytest.raises(errors.BadNonce):
            await self.cache.store('F')
        assert self.cache.empty

    async def test_store_from(self):
        await self.cache.store_from(nonce_response(b'from-response'))
        assert await self.cache.take() == b'from-response'

    async def test_store_from_without_header(self):
        await self.cache.store_from(transport.Response(200, {}, url='https://ca.example/x'))
        assert self.cache.empty

    async def test_missing_nonce(self):
        self.transport.send.return_value = transport.Response(200, {})
        with pytest.raises(errors.MissingNonce):
            await self.cache.take()

    async def test_new_nonce_fails(self):
        self.transport.send.return_value = transport.Response(503, {})
        with pytest.raises(errors.NonceError):
            await self.cache.take()

    async def test_concurrent_takes_are_unique(self):
        nonces = iter([b'n1', b'n2', b'n3', b'n4'])

        async def send(*unused_args, **unused_kwargs):
            await asyncio.sleep(0)
            return nonce_response(next(nonces))

        self.transport.send.side_effect = send
        await self.cache.store(jose.encode_b64jose(b'cached'))
        taken = await asyncio.gather(*(self.cache.take() for _ in range(4)))
        assert len(set(taken)) == 4
        assert b'cached' in taken
        assert self.transport.send.await_count == 3


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
