"""Directory discovery (RFC 8555, section 7.1.1)."""
import logging
from typing import Dict

import josepy as jose

from async_acme import errors
from async_acme import messages
from async_acme import transport as transport_mod

logger = logging.getLogger(__name__)


class DirectoryResolver:
    """Fetches directory documents and keeps them per URL.

    :param .Transport transport:

    """

    def __init__(self, transport: transport_mod.Transport) -> None:
        self.transport = transport
        self._cache: Dict[str, messages.Directory] = {}

    async def resolve(self, url: str, refresh: bool = False) -> messages.Directory:
        """Retrieve the ACME directory found at ``url``.

        :param str url: the URL where the ACME directory is available
        :param bool refresh: Fetch again even if the directory is cached.

        :returns: the ACME directory object
        :rtype: messages.Directory

        :raises .DirectoryError: when the document is not a JSON object, cannot
            be parsed, or misses one of `messages.DIRECTORY_REQUIRED`.

        """
        if not refresh and url in self._cache:
            return self._cache[url]

        response = await self.transport.send('GET', url)
        if not response.ok:
            raise errors.DirectoryError(f'{url} answered HTTP {response.status_code}')
        try:
            jobj = response.json()
        except ValueError as error:
            raise errors.DirectoryError(f'{url} is not a JSON document: {error}') from error
        if not isinstance(jobj, dict):
            raise errors.DirectoryError(f'{url} is not a JSON object')
        try:
            directory = messages.Directory.from_json(jobj)
        except (jose.DeserializationError, TypeError, ValueError) as error:
            raise errors.DirectoryError(f'{url} is not a valid directory: {error}') from error
        if directory.missing:
            raise errors.DirectoryError(
                f'{url} misses mandatory endpoints: {", ".join(directory.missing)}')

        logger.debug('Resolved directory %s', url)
        self._cache[url] = directory
        return directory
