"""ACME JSON fields."""
import datetime
import logging
from typing import Any

import josepy as jose
import pyrfc3339

logger = logging.getLogger(__name__)


class RFC3339Field(jose.Field):
    """RFC3339 field encoder/decoder.

    Handles decoding/encoding between RFC3339 strings and aware (not
    naive) `datetime.datetime` objects
    (e.g. ``datetime.datetime.now(datetime.timezone.utc)``).

    """

    @classmethod
    def default_encoder(cls, value: datetime.datetime) -> str:
        return pyrfc3339.generate(value)

    @classmethod
    def default_decoder(cls, value: str) -> datetime.datetime:
        try:
            return pyrfc3339.parse(value)
        except ValueError as error:
            raise jose.DeserializationError(error)


class DERField(jose.Field):
    """Raw DER bytes (CSR, certificate) carried as unpadded base64url."""

    @classmethod
    def default_encoder(cls, value: bytes) -> str:
        return jose.encode_b64jose(value)

    @classmethod
    def default_decoder(cls, value: str) -> bytes:
        return jose.decode_b64jose(value)


def rfc3339(json_name: str, omitempty: bool = False) -> Any:
    """Generates a type-friendly RFC3339 field."""
    return RFC3339Field(json_name, omitempty=omitempty)


def der(json_name: str, omitempty: bool = False) -> Any:
    """Generates a type-friendly base64url DER field."""
    return DERField(json_name, omitempty=omitempty)
