"""Anti-replay nonce cache."""
import asyncio
import logging
from typing import Optional

import josepy as jose

from async_acme import errors
from async_acme import jws
from async_acme import transport as transport_mod

logger = logging.getLogger(__name__)

REPLAY_NONCE_HEADER = 'Replay-Nonce'


def decode_nonce(nonce: str) -> bytes:
    """Decode a ``Replay-Nonce`` header value.

    :raises .BadNonce: if the value is not base64url.

    """
    try:
        return jws.Header._fields['nonce'].decode(nonce)  # pylint: disable=protected-access
    except jose.DeserializationError as error:
        raise errors.BadNonce(nonce, error)


class NonceCache:
    """Single slot holding the next nonce to sign with.

    `take` empties the slot (or fetches from ``newNonce`` when it is
    empty) and `store` overwrites it. Both go through one lock, so
    concurrent callers never receive the same nonce.

    :param .Transport transport:
    :param str new_nonce_url: The directory's ``newNonce`` endpoint.

    """

    def __init__(self, transport: transport_mod.Transport, new_nonce_url: str) -> None:
        self.transport = transport
        self.new_nonce_url = new_nonce_url
        self._nonce: Optional[bytes] = None
        self._lock = asyncio.Lock()

    @property
    def empty(self) -> bool:
        """Whether the next `take` has to go to the network."""
        return self._nonce is None

    async def take(self) -> bytes:
        """Hand out a nonce that nobody else received.

        :raises .NonceError: if ``newNonce`` fails or omits the header.

        """
        async with self._lock:
            if self._nonce is not None:
                nonce, self._nonce = self._nonce, None
                return nonce
            return await self._fetch()

    async def store(self, nonce: str) -> None:
        """Absorb the ``Replay-Nonce`` of a response, dropping the cached one."""
        decoded = decode_nonce(nonce)
        async with self._lock:
            logger.debug('Storing nonce: %s', nonce)
            self._nonce = decoded

    async def store_from(self, response: transport_mod.Response) -> None:
        """Absorb the nonce of ``response``, if it carries one."""
        if REPLAY_NONCE_HEADER in response.headers:
            await self.store(response.headers[REPLAY_NONCE_HEADER])
        else:
            logger.debug('Response from %s carried no %s header',
                         response.url, REPLAY_NONCE_HEADER)

    async def _fetch(self) -> bytes:
        logger.debug('Requesting fresh nonce')
        response = await self.transport.send('HEAD', self.new_nonce_url)
        if not response.ok:
            raise errors.NonceError(
                f'{self.new_nonce_url} answered HTTP {response.status_code}')
        if REPLAY_NONCE_HEADER not in response.headers:
            raise errors.MissingNonce(response.headers)
        return decode_nonce(response.headers[REPLAY_NONCE_HEADER])
