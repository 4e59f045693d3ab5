"""ACME protocol messages."""
import datetime
from collections.abc import Hashable
import json
from typing import Any
from typing import Dict
from typing import Iterator
from typing import List
from typing import Mapping
from typing import MutableMapping
from typing import Optional
from typing import Tuple
from typing import Type
from typing import TypeVar

import josepy as jose

from async_acme import challenges
from async_acme import errors
from async_acme import fields
from async_acme import jws

ERROR_PREFIX = "urn:ietf:params:acme:error:"

ERROR_CODES = {
    'accountDoesNotExist': 'The request specified an account that does not exist',
    'alreadyRevoked': 'The request specified a certificate to be revoked that has' \
    ' already been revoked',
    'badCSR': 'The CSR is unacceptable (e.g., due to a short key)',
    'badNonce': 'The client sent an unacceptable anti-replay nonce',
    'badPublicKey': 'The JWS was signed by a public key the server does not support',
    'badRevocationReason': 'The revocation reason provided is not allowed by the server',
    'badSignatureAlgorithm': 'The JWS was signed with an algorithm the server does not support',
    'caa': 'Certification Authority Authorization (CAA) records forbid the CA from issuing' \
    ' a certificate',
    'compound': 'Specific error conditions are indicated in the "subproblems" array',
    'connection': ('The server could not connect to the client to verify the'
                   ' domain'),
    'dns': 'There was a problem with a DNS query during identifier validation',
    'dnssec': 'The server could not validate a DNSSEC signed domain',
    'incorrectResponse': 'Response received didn\'t match the challenge\'s requirements',
    'invalidContact': 'The provided contact URI was invalid',
    'malformed': 'The request message was malformed',
    'rejectedIdentifier': 'The server will not issue certificates for the identifier',
    'orderNotReady': 'The request attempted to finalize an order that is not ready to be finalized',
    'rateLimited': 'There were too many requests of a given type',
    'serverInternal': 'The server experienced an internal error',
    'tls': 'The server experienced a TLS error during domain verification',
    'unauthorized': 'The client lacks sufficient authorization',
    'unsupportedContact': 'A contact URL for an account used an unsupported protocol scheme',
    'unknownHost': 'The server could not resolve a domain name',
    'unsupportedIdentifier': 'An identifier is of an unsupported type',
    'externalAccountRequired': 'The server requires external account binding',
    'userActionRequired': 'Visit the "instance" URL and take actions specified there',
}

ERROR_TYPE_DESCRIPTIONS = {
    ERROR_PREFIX + name: desc for name, desc in ERROR_CODES.items()
}

DIRECTORY_REQUIRED = ('newNonce', 'newAccount', 'newOrder', 'revokeCert', 'keyChange')
"""Directory entries every CA has to announce."""


class _Constant(jose.JSONDeSerializable, Hashable):
    """ACME constant."""
    __slots__ = ('name',)
    POSSIBLE_NAMES: Dict[str, '_Constant'] = NotImplemented

    def __init__(self, name: str) -> None:
        super().__init__()
        self.POSSIBLE_NAMES[name] = self  # pylint: disable=unsupported-assignment-operation
        self.name = name

    def to_partial_json(self) -> str:
        return self.name

    @classmethod
    def from_json(cls, jobj: str) -> '_Constant':
        if jobj not in cls.POSSIBLE_NAMES:  # pylint: disable=unsupported-membership-test
            raise jose.DeserializationError(f'{cls.__name__} not recognized')
        return cls.POSSIBLE_NAMES[jobj]

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.name})'

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, type(self)) and other.name == self.name

    def __hash__(self) -> int:
        return hash((self.__class__, self.name))


class IdentifierType(_Constant):
    """ACME identifier type."""
    POSSIBLE_NAMES: Dict[str, _Constant] = {}


IDENTIFIER_FQDN = IdentifierType('dns')
IDENTIFIER_IP = IdentifierType('ip')


class Identifier(jose.JSONObjectWithFields):
    """ACME identifier.

    :ivar IdentifierType typ:
    :ivar str value:

    """
    typ: IdentifierType = jose.field('type', decoder=IdentifierType.from_json)
    value: str = jose.field('value')

    @classmethod
    def from_value(cls, value: Any) -> 'Identifier':
        """Coerce a domain name (or an `Identifier`) into an `Identifier`."""
        if isinstance(value, Identifier):
            return value
        return cls(typ=IDENTIFIER_FQDN, value=str(value))


class Error(jose.JSONObjectWithFields):
    """ACME Problem document.

    https://datatracker.ietf.org/doc/html/rfc7807

    This is structured data, not an exception. Failures reported by the
    CA are raised as `.ProtocolError` (or one of the stage specific
    errors) carrying an instance of this class.

    :ivar str typ:
    :ivar str title:
    :ivar str detail:
    :ivar int status:
    :ivar Identifier identifier:
    :ivar tuple subproblems: An array of ACME Errors which may be present when the CA
            returns multiple errors related to the same request, `tuple` of `Error`.

    """
    typ: str = jose.field('type', omitempty=True, default='about:blank')
    title: str = jose.field('title', omitempty=True)
    detail: str = jose.field('detail', omitempty=True)
    status: int = jose.field('status', omitempty=True)
    identifier: Optional['Identifier'] = jose.field(
        'identifier', decoder=Identifier.from_json, omitempty=True)
    subproblems: Optional[Tuple['Error', ...]] = jose.field('subproblems', omitempty=True)

    # Mypy does not understand the josepy magic happening here, and falsely claims
    # that subproblems is redefined. Let's ignore the type check here.
    @subproblems.decoder  # type: ignore
    def subproblems(value: List[Dict[str, Any]]) -> Tuple['Error', ...]:  # pylint: disable=no-self-argument,missing-function-docstring
        return tuple(Error.from_json(subproblem) for subproblem in value)

    @classmethod
    def with_code(cls, code: str, **kwargs: Any) -> 'Error':
        """Create an Error instance with an ACME Error code.

        :str code: An ACME error code, like 'dnssec'.
        :kwargs: kwargs to pass to Error.

        """
        if code not in ERROR_CODES:
            raise ValueError(f"The supplied code: {code} is not a known ACME error code")
        return cls(typ=ERROR_PREFIX + code, **kwargs)

    @property
    def description(self) -> Optional[str]:
        """Hardcoded error description based on its type.

        :returns: Description if standard ACME error or ``None``.
        :rtype: str

        """
        return ERROR_TYPE_DESCRIPTIONS.get(self.typ)

    @property
    def code(self) -> Optional[str]:
        """ACME error code.

        Basically self.typ without the ERROR_PREFIX.

        :returns: error code if standard ACME code or ``None``.
        :rtype: str

        """
        code = str(self.typ).rsplit(':', maxsplit=1)[-1]
        if code in ERROR_CODES:
            return code
        return None

    def __str__(self) -> str:
        result = b' :: '.join(
            part.encode('ascii', 'backslashreplace') for part in
            (self.typ, self.description, self.detail, self.title)
            if part is not None).decode()
        if self.identifier:
            result = f'Problem for {self.identifier.value}: ' + result # pylint: disable=no-member
        if self.subproblems:
            for subproblem in self.subproblems:  # pylint: disable=not-an-iterable
                result += f'\n{subproblem}'
        return result


class Status(_Constant):
    """ACME "status" field."""
    POSSIBLE_NAMES: Dict[str, _Constant] = {}


STATUS_UNKNOWN = Status('unknown')
STATUS_PENDING = Status('pending')
STATUS_PROCESSING = Status('processing')
STATUS_VALID = Status('valid')
STATUS_INVALID = Status('invalid')
STATUS_REVOKED = Status('revoked')
STATUS_READY = Status('ready')
STATUS_DEACTIVATED = Status('deactivated')
STATUS_EXPIRED = Status('expired')


class Directory(jose.JSONDeSerializable):
    """Directory.

    Directory resources must be accessed by the exact field name in RFC8555 (section 9.7.5).
    """

    class Meta(jose.JSONObjectWithFields):
        """Directory Meta."""
        _terms_of_service: str = jose.field('termsOfService', omitempty=True)
        website: str = jose.field('website', omitempty=True)
        caa_identities: List[str] = jose.field('caaIdentities', omitempty=True)
        external_account_required: bool = jose.field('externalAccountRequired', omitempty=True)
        profiles: Dict[str, str] = jose.field('profiles', omitempty=True)

        def __init__(self, **kwargs: Any) -> None:
            kwargs = {self._internal_name(k): v for k, v in kwargs.items()}
            super().__init__(**kwargs)

        @property
        def terms_of_service(self) -> str:
            """URL for the CA TOS"""
            return self._terms_of_service

        def __iter__(self) -> Iterator[str]:
            # When iterating over fields, use the external name 'terms_of_service' instead of
            # the internal '_terms_of_service'.
            for name in super().__iter__():
                yield name[1:] if name == '_terms_of_service' else name

        def _internal_name(self, name: str) -> str:
            return '_' + name if name == 'terms_of_service' else name

    def __init__(self, jobj: Mapping[str, Any]) -> None:
        self._jobj = dict(jobj)

    def __getattr__(self, name: str) -> Any:
        if name.startswith('__'):
            raise AttributeError(name)
        try:
            return self[name]
        except KeyError as error:
            raise AttributeError(str(error))

    def __getitem__(self, name: str) -> Any:
        try:
            return self._jobj[name]
        except KeyError:
            raise KeyError(f'Directory field "{name}" not found')

    def __contains__(self, name: str) -> bool:
        return name in self._jobj

    @property
    def meta(self) -> 'Directory.Meta':
        """Directory metadata, empty if the CA published none."""
        return self._jobj.get('meta') or self.Meta()

    @property
    def missing(self) -> Tuple[str, ...]:
        """Mandatory endpoints absent from this directory, or not a URL string."""
        return tuple(name for name in DIRECTORY_REQUIRED
                     if not isinstance(self._jobj.get(name), str) or not self._jobj[name])

    def to_partial_json(self) -> Dict[str, Any]:
        return dict(self._jobj)

    @classmethod
    def from_json(cls, jobj: MutableMapping[str, Any]) -> 'Directory':
        jobj = dict(jobj)
        meta = jobj.pop('meta', {})
        if not isinstance(meta, dict):
            raise jose.DeserializationError(f'Directory meta is not an object: {meta!r}')
        jobj['meta'] = cls.Meta.from_json(meta)
        return cls(jobj)


class Resource(jose.JSONObjectWithFields):
    """ACME Resource.

    :ivar async_acme.messages.ResourceBody body: Resource body.

    """
    body: "ResourceBody" = jose.field('body')


class ResourceWithURI(Resource):
    """ACME Resource with URI.

    :ivar str uri: Location of the resource.

    """
    uri: str = jose.field('uri')


class ResourceBody(jose.JSONObjectWithFields):
    """ACME Resource Body."""


HMAC_ALGORITHMS = {
    "HS256": jose.jwa.HS256,
    "HS384": jose.jwa.HS384,
    "HS512": jose.jwa.HS512,
}


class ExternalAccountBinding:
    """ACME External Account Binding"""

    @classmethod
    def from_data(cls, account_public_key: jose.JWK, kid: str, hmac_key: str,
                  directory: Directory, hmac_alg: str = "HS256") -> Dict[str, Any]:
        """Create External Account Binding Resource from contact details, kid and hmac.

        :param str hmac_key: base64url encoded MAC key handed out by the CA.

        """
        key_json = json.dumps(account_public_key.to_partial_json()).encode()
        decoded_hmac_key = jose.b64.b64decode(hmac_key)
        url = directory["newAccount"]

        alg = HMAC_ALGORITHMS.get(hmac_alg)
        if alg is None:
            supported = ", ".join(HMAC_ALGORITHMS.keys())
            raise ValueError(f"Invalid value for hmac_alg: {hmac_alg}. "
                             f"Expected one of: {supported}.")

        eab = jws.JWS.sign(key_json, jose.jwk.JWKOct(key=decoded_hmac_key),
                           alg, None, url, kid)

        return eab.to_partial_json()


GenericRegistration = TypeVar('GenericRegistration', bound='Registration')


class Registration(ResourceBody):
    """Registration Resource Body.

    :ivar jose.JWK key: Public key.
    :ivar tuple contact: Contact information following RFC 8555,
        `tuple` of `str`.
    :ivar str agreement:

    """
    # on newAccount the server ignores 'key' and populates it based on
    # JWS.signature.combined.jwk
    key: jose.JWK = jose.field('key', omitempty=True, decoder=jose.JWK.from_json)
    # Contact field implements special behavior to allow messages that clear existing
    # contacts while not expecting the `contact` field when loading from json.
    # This is implemented in the constructor and *_json methods.
    contact: Tuple[str, ...] = jose.field('contact', omitempty=True, default=())
    agreement: str = jose.field('agreement', omitempty=True)
    status: Status = jose.field('status', omitempty=True, decoder=Status.from_json)
    terms_of_service_agreed: bool = jose.field('termsOfServiceAgreed', omitempty=True)
    only_return_existing: bool = jose.field('onlyReturnExisting', omitempty=True)
    external_account_binding: Dict[str, Any] = jose.field('externalAccountBinding',
                                                          omitempty=True)
    orders: str = jose.field('orders', omitempty=True)

    @classmethod
    def from_data(cls: Type[GenericRegistration],
                  external_account_binding: Optional[Dict[str, Any]] = None,
                  **kwargs: Any) -> GenericRegistration:
        """
        Create registration resource from contact details.

        The `contact` keyword being passed to a Registration object is meaningful, so
        this function represents empty iterables in its kwargs by passing on an empty
        `tuple`.
        """
        if 'contact' in kwargs:
            kwargs['contact'] = tuple(kwargs['contact'] or ())

        if external_account_binding:
            kwargs['external_account_binding'] = external_account_binding

        return cls(**kwargs)

    def __init__(self, **kwargs: Any) -> None:
        """Note if the user provides a value for the `contact` member."""
        if 'contact' in kwargs and kwargs['contact'] is not None:
            # Avoid the __setattr__ used by jose.TypedJSONObjectWithFields
            object.__setattr__(self, '_add_contact', True)
        super().__init__(**kwargs)

    def _add_contact_if_appropriate(self, jobj: Dict[str, Any]) -> Dict[str, Any]:
        """Include `contact` in serializations whenever it was provided,
        even when empty, so that contacts can be cleared.
        """
        if getattr(self, '_add_contact', False):
            jobj['contact'] = self.encode('contact')

        return jobj

    def to_partial_json(self) -> Dict[str, Any]:
        """Modify josepy.JSONDeserializable.to_partial_json()"""
        jobj = super().to_partial_json()
        return self._add_contact_if_appropriate(jobj)

    def fields_to_partial_json(self) -> Dict[str, Any]:
        """Modify josepy.JSONObjectWithFields.fields_to_partial_json()"""
        jobj = super().fields_to_partial_json()
        return self._add_contact_if_appropriate(jobj)


class NewRegistration(Registration):
    """New registration."""


class UpdateRegistration(Registration):
    """Update registration."""


class RegistrationResource(ResourceWithURI):
    """Registration Resource.

    ``uri`` is the account URL, used as ``kid`` in every request signed
    after registration.

    :ivar async_acme.messages.Registration body:
    :ivar str terms_of_service: URL for the CA TOS.

    """
    body: Registration = jose.field('body', decoder=Registration.from_json)
    terms_of_service: str = jose.field('terms_of_service', omitempty=True)


class KeyChange(jose.JSONObjectWithFields):
    """Inner payload of an account key rollover (RFC 8555, section 7.3.5).

    :ivar str account: Account URL.
    :ivar jose.JWK old_key: Public part of the key being replaced.

    """
    account: str = jose.field('account')
    old_key: jose.JWK = jose.field('oldKey', decoder=jose.JWK.from_json)


class ChallengeBody(ResourceBody):
    """Challenge Resource Body.

    Use names such as ``challb`` to distinguish instances of this class
    from `.challenges.Challenge` and `.responder.AnnotatedChallenge`.

    :ivar async_acme.challenges.Challenge: Wrapped challenge.
        Conveniently, all challenge fields are proxied, i.e. you can
        call ``challb.x`` to get ``challb.chall.x`` contents.
    :ivar async_acme.messages.Status status:
    :ivar datetime.datetime validated:
    :ivar messages.Error error:

    """
    __slots__ = ('chall',)
    _url: str = jose.field('url', omitempty=True, default=None)
    status: Status = jose.field('status', decoder=Status.from_json,
                        omitempty=True, default=STATUS_PENDING)
    validated: datetime.datetime = fields.rfc3339('validated', omitempty=True)
    error: Error = jose.field('error', decoder=Error.from_json,
                       omitempty=True, default=None)

    def __init__(self, **kwargs: Any) -> None:
        kwargs = {self._internal_name(k): v for k, v in kwargs.items()}
        super().__init__(**kwargs)

    def encode(self, name: str) -> Any:
        return super().encode(self._internal_name(name))

    def to_partial_json(self) -> Dict[str, Any]:
        jobj = super().to_partial_json()
        jobj.update(self.chall.to_partial_json())
        return jobj

    @classmethod
    def fields_from_json(cls, jobj: Mapping[str, Any]) -> Dict[str, Any]:
        jobj_fields = super().fields_from_json(jobj)
        jobj_fields['chall'] = challenges.Challenge.from_json(jobj)
        return jobj_fields

    @property
    def uri(self) -> str:
        """The URL of this challenge."""
        return self._url

    def __getattr__(self, name: str) -> Any:
        return getattr(self.chall, name)

    def __iter__(self) -> Iterator[str]:
        # When iterating over fields, use the external name 'uri' instead of
        # the internal '_url'.
        for name in super().__iter__():
            yield 'uri' if name == '_url' else name

    def _internal_name(self, name: str) -> str:
        return '_url' if name == 'uri' else name


class Authorization(ResourceBody):
    """Authorization Resource Body.

    :ivar async_acme.messages.Identifier identifier:
    :ivar list challenges: `list` of `.ChallengeBody`
    :ivar async_acme.messages.Status status:
    :ivar datetime.datetime expires:

    """
    identifier: Identifier = jose.field('identifier', decoder=Identifier.from_json, omitempty=True)
    challenges: List[ChallengeBody] = jose.field('challenges', omitempty=True)

    status: Status = jose.field('status', omitempty=True, decoder=Status.from_json)
    expires: datetime.datetime = fields.rfc3339('expires', omitempty=True)
    wildcard: bool = jose.field('wildcard', omitempty=True)

    # Mypy does not understand the josepy magic happening here, and falsely claims
    # that challenge is redefined. Let's ignore the type check here.
    @challenges.decoder  # type: ignore
    def challenges(value: List[Dict[str, Any]]) -> Tuple[ChallengeBody, ...]:  # type: ignore[misc]  # pylint: disable=no-self-argument,missing-function-docstring
        return tuple(ChallengeBody.from_json(chall) for chall in value)


class UpdateAuthorization(Authorization):
    """Update authorization."""


class AuthorizationResource(ResourceWithURI):
    """Authorization Resource.

    :ivar async_acme.messages.Authorization body:

    """
    body: Authorization = jose.field('body', decoder=Authorization.from_json)


class CertificateRequest(jose.JSONObjectWithFields):
    """ACME finalize request.

    :ivar bytes csr: DER encoded certificate signing request.

    """
    csr: bytes = fields.der('csr')


class Revocation(jose.JSONObjectWithFields):
    """Revocation message.

    :ivar bytes certificate: DER encoded certificate.
    :ivar int reason: CRL reason code.

    """
    certificate: bytes = fields.der('certificate')
    reason: int = jose.field('reason', omitempty=True)


class Order(ResourceBody):
    """Order Resource Body.

    :ivar profile: The profile to request.
    :vartype profile: str
    :ivar identifiers: List of identifiers for the certificate.
    :vartype identifiers: `list` of `.Identifier`
    :ivar async_acme.messages.Status status:
    :ivar authorizations: URLs of authorizations.
    :vartype authorizations: `list` of `str`
    :ivar str certificate: URL to download certificate as a fullchain PEM.
    :ivar str finalize: URL to POST to to request issuance once all
        authorizations have "valid" status.
    :ivar datetime.datetime expires: When the order expires.
    :ivar ~.Error error: Any error that occurred during finalization, if applicable.
    """
    profile: str = jose.field('profile', omitempty=True)
    identifiers: List[Identifier] = jose.field('identifiers', omitempty=True)
    status: Status = jose.field('status', decoder=Status.from_json, omitempty=True)
    authorizations: List[str] = jose.field('authorizations', omitempty=True)
    certificate: str = jose.field('certificate', omitempty=True)
    finalize: str = jose.field('finalize', omitempty=True)
    expires: datetime.datetime = fields.rfc3339('expires', omitempty=True)
    error: Error = jose.field('error', omitempty=True, decoder=Error.from_json)

    # Mypy does not understand the josepy magic happening here, and falsely claims
    # that identifiers is redefined. Let's ignore the type check here.
    @identifiers.decoder  # type: ignore
    def identifiers(value: List[Dict[str, Any]]) -> Tuple[Identifier, ...]:  # type: ignore[misc]  # pylint: disable=no-self-argument,missing-function-docstring
        return tuple(Identifier.from_json(identifier) for identifier in value)


class OrderResource(ResourceWithURI):
    """Order Resource.

    :ivar async_acme.messages.Order body:
    :ivar authorizations: Fully-fetched AuthorizationResource objects, in the
        order of ``body.authorizations``; empty until fetched.
    :vartype authorizations: `tuple` of `async_acme.messages.AuthorizationResource`
    :ivar bytes fullchain_pem: The downloaded certificate chain, once the
        order is valid.
    :ivar alternative_fullchains_pem: Alternative chains, if requested.
    :vartype alternative_fullchains_pem: `list` of `bytes`
    """
    body: Order = jose.field('body', decoder=Order.from_json)
    authorizations: Tuple[AuthorizationResource, ...] = jose.field(
        'authorizations', omitempty=True, default=())
    fullchain_pem: bytes = jose.field('fullchain_pem', omitempty=True)
    alternative_fullchains_pem: Tuple[bytes, ...] = jose.field(
        'alternative_fullchains_pem', omitempty=True)

    # Mypy does not understand the josepy magic happening here, and falsely claims
    # that authorizations is redefined. Let's ignore the type check here.
    @authorizations.decoder  # type: ignore
    def authorizations(value: List[Dict[str, Any]]) -> Tuple[AuthorizationResource, ...]: # type: ignore[misc]  # pylint: disable=no-self-argument,missing-function-docstring
        return tuple(AuthorizationResource.from_json(authz) for authz in value)

    @property
    def identifiers(self) -> Tuple[Identifier, ...]:
        """Identifiers the order was placed for."""
        return tuple(self.body.identifiers or ())  # pylint: disable=no-member


class NewOrder(Order):
    """New order."""


def problem_from_response(jobj: Any) -> Optional[Error]:
    """Decode a Problem document, or ``None`` if ``jobj`` is not one."""
    if not isinstance(jobj, dict):
        return None
    try:
        return Error.from_json(jobj)
    except jose.DeserializationError:
        return None


__all__ = [name for name in dir() if not name.startswith('_')] + ['errors']
