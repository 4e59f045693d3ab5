"""ACME-specific JWS.

The JWS implementation in josepy only implements the base JOSE standard. In
order to support the new header fields defined in ACME, this module defines some
ACME-specific classes that layer on top of josepy, plus `sign`, the single
entry point the protocol engine uses to build request envelopes.
"""
import logging
from typing import Any
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric import rsa
import josepy as jose

from async_acme import errors

logger = logging.getLogger(__name__)

_EC_ALGORITHMS = {
    256: jose.ES256,
    384: jose.ES384,
    521: jose.ES512,
}


class Header(jose.Header):
    """ACME-specific JOSE Header. Implements nonce, kid, and url.
    """
    nonce: Optional[bytes] = jose.field('nonce', omitempty=True, encoder=jose.encode_b64jose)
    kid: Optional[str] = jose.field('kid', omitempty=True)  # type: ignore[assignment]
    url: Optional[str] = jose.field('url', omitempty=True)

    # Mypy does not understand the josepy magic happening here, and falsely claims
    # that nonce is redefined. Let's ignore the type check here.
    @nonce.decoder  # type: ignore[no-redef,attr-defined,union-attr]
    def nonce(value: str) -> bytes:  # type: ignore[misc]  # pylint: disable=no-self-argument,missing-function-docstring
        try:
            return jose.decode_b64jose(value)
        except jose.DeserializationError as error:
            raise jose.DeserializationError(f"Invalid nonce: {error}")


class Signature(jose.Signature):
    """ACME-specific Signature. Uses ACME-specific Header for customer fields."""
    __slots__ = jose.Signature._orig_slots  # type: ignore[attr-defined]  # pylint: disable=protected-access,no-member

    header_cls = Header
    header: Header = jose.field(
        'header', omitempty=True, default=header_cls(),
        decoder=header_cls.from_json)


class JWS(jose.JWS):
    """ACME-specific JWS. Includes nonce, url, and kid in protected header."""
    signature_cls = Signature
    __slots__ = jose.JWS._orig_slots  # type: ignore[attr-defined]  # pylint: disable=protected-access

    @classmethod
    # type: ignore[override]  # pylint: disable=arguments-differ
    def sign(cls, payload: bytes, key: jose.JWK, alg: jose.JWASignature, nonce: Optional[bytes],
             url: Optional[str] = None, kid: Optional[str] = None,
             jwk: Optional[jose.JWK] = None) -> jose.JWS:
        # Per RFC 8555, jwk and kid are mutually exclusive, so only include a
        # jwk field if kid is not provided.
        include_jwk = kid is None and jwk is None
        extra = {'jwk': jwk} if jwk is not None else {}
        return super().sign(payload, key=key, alg=alg,
                            protect=frozenset(['nonce', 'url', 'kid', 'jwk', 'alg']),
                            nonce=nonce, url=url, kid=kid,
                            include_jwk=include_jwk, **extra)


def to_jwk(key: Any) -> jose.JWK:
    """Wrap a `cryptography` private key in the matching `josepy.JWK`.

    Keys that already are a `josepy.JWK` are returned untouched.

    :raises .SigningError: for key types ACME cannot sign with.

    """
    if isinstance(key, jose.JWK):
        return key
    if isinstance(key, rsa.RSAPrivateKey):
        return jose.JWKRSA(key=key)
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return jose.JWKEC(key=key)
    raise errors.SigningError(f'Unsupported account key type: {type(key).__name__}')


def algorithm_for_key(key: jose.JWK) -> jose.JWASignature:
    """Pick the JWS algorithm for an account key.

    RSA keys sign with RS256, EC keys with the ES algorithm of their curve.

    :raises .SigningError: for key types or curves ACME cannot sign with.

    """
    if isinstance(key, jose.JWKRSA):
        return jose.RS256
    if isinstance(key, jose.JWKEC):
        curve = getattr(key.key, 'curve', None)
        alg = _EC_ALGORITHMS.get(curve.key_size) if curve is not None else None
        if alg is None:
            raise errors.SigningError(f'Unsupported elliptic curve: {getattr(curve, "name", curve)}')
        return alg
    raise errors.SigningError(f'Unsupported account key type: {type(key).__name__}')


def sign(payload: bytes, url: str, nonce: bytes, key: jose.JWK,
         kid: Optional[str] = None, jwk: Optional[jose.JWK] = None) -> JWS:
    """Build the signed envelope of an ACME request.

    Exactly one of ``kid`` (account URL) or ``jwk`` (public key, only for
    requests made before the account exists) must be given. An empty
    ``payload`` produces a POST-as-GET request.

    :param bytes payload: Serialized request body, ``b''`` for POST-as-GET.
    :param str url: Target URL, repeated in the protected header.
    :param bytes nonce: Decoded anti-replay nonce, used once.
    :param josepy.JWK key: Private account key.
    :param str kid: Account URL.
    :param josepy.JWK jwk: Public key to embed.

    :raises .SigningError: If both or neither of ``kid`` and ``jwk`` are given,
        or the key cannot produce a signature.

    """
    if (kid is None) == (jwk is None):
        raise errors.SigningError('Exactly one of kid or jwk must identify the signing key')
    alg = algorithm_for_key(key)
    try:
        signed = JWS.sign(payload, key=key, alg=alg, nonce=nonce, url=url, kid=kid, jwk=jwk)
    except (AssertionError, AttributeError, TypeError, ValueError, jose.Error) as error:
        raise errors.SigningError(f'Signing request to {url} failed: {error}') from error
    logger.debug('Signed request to %s with %s', url, 'kid' if kid is not None else 'jwk')
    return signed
