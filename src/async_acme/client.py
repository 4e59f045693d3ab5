"""ACME client API."""
import asyncio
import collections
import http.client as http_client
import ipaddress
import logging
from types import TracebackType
from typing import Any
from typing import Iterable
from typing import Optional
from typing import Sequence
from typing import Tuple
from typing import Type
from typing import Union

import josepy as jose

from async_acme import challenges
from async_acme import crypto_util
from async_acme import directory as directory_mod
from async_acme import errors
from async_acme import happy_eyeballs
from async_acme import jws
from async_acme import messages
from async_acme import nonce
from async_acme import responder as responder_mod
from async_acme import retry
from async_acme import tls
from async_acme import transport as transport_mod

logger = logging.getLogger(__name__)

DEFAULT_NETWORK_TIMEOUT = transport_mod.DEFAULT_NETWORK_TIMEOUT

ExternalAccount = collections.namedtuple(
    'ExternalAccount', 'kid hmac_key hmac_alg', defaults=('HS256',))
"""Credentials handed out by a CA requiring External Account Binding.

``hmac_key`` is the base64url encoded MAC key.
"""


class ClientNetwork:
    """Signs requests, keeps the nonce slot filled and checks responses.

    Every POST is wrapped in a JWS, sent through the `.Transport` and
    retried by the `.Retrier` when the failure allows it.

    :param key: Account private key, a `josepy.JWK` or a `cryptography`
        RSA/EC private key.
    :param messages.RegistrationResource account: Account object. Required if you are
            planning to use .post() for anything other than creating a new account;
            may be set later after registering.
    :param .Transport transport: Defaults to a `.RequestsTransport` built from
        the remaining arguments.
    :param .Retrier retrier:
    :param bool verify_ssl: Whether to verify certificates on SSL connections.
    :param str user_agent: String to send as User-Agent header.
    :param int timeout: Timeout for requests.
    :param .TLSConnector tls_connector: TLS backend of the default transport.
    :param .AddressConnector address_connector: Address racing of the
        default transport.

    """
    JSON_CONTENT_TYPE = 'application/json'
    JOSE_CONTENT_TYPE = 'application/jose+json'
    JSON_ERROR_CONTENT_TYPE = 'application/problem+json'
    PEM_CHAIN_CONTENT_TYPE = 'application/pem-certificate-chain'

    def __init__(self, key: Any, account: Optional[messages.RegistrationResource] = None,
                 transport: Optional[transport_mod.Transport] = None,
                 retrier: Optional[retry.Retrier] = None, verify_ssl: bool = True,
                 user_agent: str = transport_mod.DEFAULT_USER_AGENT,
                 timeout: float = DEFAULT_NETWORK_TIMEOUT,
                 tls_connector: Optional[tls.TLSConnector] = None,
                 address_connector: Optional[happy_eyeballs.AddressConnector] = None) -> None:
        self.key = jws.to_jwk(key)
        self.alg = jws.algorithm_for_key(self.key)
        self.account = account
        if transport is None:
            transport = transport_mod.RequestsTransport(
                tls_connector=tls_connector, address_connector=address_connector,
                verify_ssl=verify_ssl, user_agent=user_agent, timeout=timeout)
        self.transport = transport
        self.retrier = retrier or retry.Retrier()
        self.nonces: Optional[nonce.NonceCache] = None

    def bind(self, new_nonce_url: str) -> None:
        """Draw nonces from ``new_nonce_url`` from now on."""
        if self.nonces is None or self.nonces.new_nonce_url != new_nonce_url:
            self.nonces = nonce.NonceCache(self.transport, new_nonce_url)

    async def close(self) -> None:
        """Close the underlying transport."""
        await self.transport.close()

    def _wrap_in_jws(self, obj: Optional[jose.JSONDeSerializable], nonce_value: bytes,
                     url: str, use_jwk: bool = False) -> bytes:
        """Wrap `JSONDeSerializable` object in JWS.

        :param josepy.JSONDeSerializable obj: ``None`` for POST-as-GET.
        :param str url: The URL to which this object will be POSTed
        :param bytes nonce_value:
        :param bool use_jwk: Embed the public key even if the account is
            known (newAccount lookups).

        """
        jobj = obj.json_dumps(indent=2).encode() if obj is not None else b''
        logger.debug('JWS payload:\n%s', jobj)
        # newAccount must not have kid
        if self.account is not None and not use_jwk:
            signed = jws.sign(jobj, url, nonce_value, self.key, kid=self.account.uri)
        else:
            signed = jws.sign(jobj, url, nonce_value, self.key, jwk=self.key.public_key())
        return signed.json_dumps(indent=2).encode()

    @classmethod
    def _check_response(cls, response: transport_mod.Response,
                        content_type: Optional[str] = None) -> transport_mod.Response:
        """Check response content and its type.

        .. note::
           Checking is not strict: wrong server response ``Content-Type``
           HTTP header is ignored if response is an expected JSON object
           (c.f. Boulder #56).

        :param str content_type: Expected Content-Type response header.
            If JSON is expected and not present in server response, this
            function will raise an error. Otherwise, wrong Content-Type
            is ignored, but logged.

        :raises .ProtocolError: If server response body
            carries HTTP Problem (https://datatracker.ietf.org/doc/html/rfc7807),
            or for any other error status.
        :raises .ConflictError: On HTTP 409, with the conflicting resource.
        :raises .ClientError: If JSON was expected but not received.

        """
        response_ct = response.content_type
        try:
            jobj = response.json()
        except ValueError:
            jobj = None

        if response.status_code == http_client.CONFLICT:
            raise errors.ConflictError(response.headers.get('Location', 'UNKNOWN-LOCATION'),
                                       messages.problem_from_response(jobj))

        if not response.ok:
            problem = messages.problem_from_response(jobj)
            if problem is None:
                problem = messages.Error(
                    detail=response.text or http_client.responses.get(response.status_code, ''),
                    status=response.status_code)
            elif response_ct != cls.JSON_ERROR_CONTENT_TYPE:
                logger.debug('Ignoring wrong Content-Type (%r) for JSON Error', response_ct)
            raise errors.ProtocolError(problem, response.status_code, response.headers)

        if jobj is not None and response_ct != cls.JSON_CONTENT_TYPE:
            logger.debug(
                'Ignoring wrong Content-Type (%r) for JSON decodable '
                'response', response_ct)

        if content_type == cls.JSON_CONTENT_TYPE and jobj is None:
            raise errors.ClientError(f'Unexpected response Content-Type: {response_ct}')

        return response

    async def head(self, url: str) -> transport_mod.Response:
        """Send HEAD request without checking the response."""
        return await self.transport.send('HEAD', url)

    async def get(self, url: str, content_type: str = JSON_CONTENT_TYPE) -> transport_mod.Response:
        """Send GET request and check response."""
        async def _get_once() -> transport_mod.Response:
            return self._check_response(
                await self.transport.send('GET', url), content_type=content_type)
        return await self.retrier.call(_get_once)

    async def post(self, url: str, obj: Optional[jose.JSONDeSerializable],
                   content_type: Optional[str] = JSON_CONTENT_TYPE,
                   use_jwk: bool = False) -> transport_mod.Response:
        """POST object wrapped in `.JWS` and check response.

        Every attempt draws a fresh nonce; ``badNonce`` and rate limiting
        are retried according to the `.Retrier`.

        """
        return await self.retrier.call(
            lambda: self._post_once(url, obj, content_type, use_jwk))

    async def post_as_get(self, url: str,
                          content_type: str = JSON_CONTENT_TYPE) -> transport_mod.Response:
        """Fetch ``url`` with a POST-as-GET request (empty payload)."""
        return await self.post(url, None, content_type=content_type)

    async def _post_once(self, url: str, obj: Optional[jose.JSONDeSerializable],
                         content_type: Optional[str], use_jwk: bool) -> transport_mod.Response:
        if self.nonces is None:
            raise errors.ClientError('No newNonce endpoint known, load the directory first')
        data = self._wrap_in_jws(obj, await self.nonces.take(), url, use_jwk)
        response = await self.transport.send(
            'POST', url, body=data, headers={'Content-Type': self.JOSE_CONTENT_TYPE})
        response = self._check_response(response, content_type=content_type)
        try:
            await self.nonces.store_from(response)
        except errors.BadNonce as error:
            # The request went through; the next one fetches a fresh nonce.
            logger.debug('Discarding nonce of response from %s: %s', url, error)
        return response


class Client:
    """ACME client for a v2 API.

    Every step of an issuance is available on its own; `issue` chains
    them. The directory is fetched on first use.

    :param str directory_url: URL of the CA directory.
    :param key: Account private key.
    :param messages.RegistrationResource account: Known account, if any.
    :param .RetryPolicy policy: Retry policy of individual requests.
    :param .RetryPolicy poll_policy: Policy of authorization, challenge and
        order polling.

    Remaining keyword arguments are passed to `ClientNetwork`.

    :ivar messages.Directory directory:
    :ivar .ClientNetwork net: Client network.
    """

    def __init__(self, directory_url: str, key: Any,
                 account: Optional[messages.RegistrationResource] = None,
                 transport: Optional[transport_mod.Transport] = None,
                 policy: Optional[retry.RetryPolicy] = None,
                 poll_policy: Optional[retry.RetryPolicy] = None,
                 **network_kwargs: Any) -> None:
        self.directory_url = directory_url
        self.net = ClientNetwork(key, account=account, transport=transport,
                                 retrier=retry.Retrier(policy, poll_policy), **network_kwargs)
        self.resolver = directory_mod.DirectoryResolver(self.net.transport)
        self.directory: Optional[messages.Directory] = None

    async def __aenter__(self) -> 'Client':
        return self

    async def __aexit__(self, exc_type: Optional[Type[BaseException]],
                        exc_value: Optional[BaseException],
                        traceback: Optional[TracebackType]) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the network connections."""
        await self.net.close()

    @property
    def account(self) -> Optional[messages.RegistrationResource]:
        """Account the client signs with, once known."""
        return self.net.account

    async def load_directory(self, refresh: bool = False) -> messages.Directory:
        """Fetch (or re-fetch) the directory and bind the nonce cache to it."""
        self.directory = await self.net.retrier.call(
            lambda: self.resolver.resolve(self.directory_url, refresh=refresh))
        self.net.bind(self.directory['newNonce'])
        return self.directory

    async def _directory(self) -> messages.Directory:
        if self.directory is None:
            return await self.load_directory()
        return self.directory

    async def external_account_required(self) -> bool:
        """Checks if ACME server requires External Account Binding authentication."""
        directory = await self._directory()
        return bool(directory.meta.external_account_required)

    async def _post(self, url: str, obj: Optional[jose.JSONDeSerializable],
                    **kwargs: Any) -> transport_mod.Response:
        await self._directory()
        return await self.net.post(url, obj, **kwargs)

    async def _post_as_get(self, url: str, **kwargs: Any) -> transport_mod.Response:
        return await self._post(url, None, **kwargs)

    # Accounts

    async def ensure_account(self, contact: Sequence[str] = (),
                             terms_of_service_agreed: bool = True,
                             external_account: Optional[ExternalAccount] = None
                             ) -> messages.RegistrationResource:
        """Register the account key, or find the account it already has.

        Safe to call on every start: a CA answering that the key is already
        registered (200 with ``Location``, 409, or a Problem carrying
        ``Location``) yields the existing account.

        :param contact: Contact URIs, e.g. ``mailto:admin@example.org``.
        :param bool terms_of_service_agreed:
        :param ExternalAccount external_account: Required by some CAs,
            see `external_account_required`.

        :raises .AccountError: if the CA refuses the account or reports it
            as deactivated or revoked.

        """
        directory = await self._directory()
        eab = None
        if external_account is not None:
            eab = messages.ExternalAccountBinding.from_data(
                self.net.key.public_key(), external_account.kid, external_account.hmac_key,
                directory, external_account.hmac_alg)
        elif directory.meta.external_account_required:
            raise errors.AccountError('The CA requires External Account Binding')

        kwargs = {'contact': tuple(contact)} if contact else {}
        new_reg = messages.NewRegistration.from_data(
            terms_of_service_agreed=terms_of_service_agreed,
            external_account_binding=eab, **kwargs)
        try:
            response = await self._post(directory['newAccount'], new_reg, use_jwk=True)
        except errors.ConflictError as error:
            logger.debug('Key is already registered at %s', error.location)
            return await self.query_account()
        except errors.ProtocolError as error:
            if 'Location' in error.headers:
                logger.debug('CA reported %s for the registered key at %s',
                             error.code, error.headers['Location'])
                return await self.query_account()
            raise errors.AccountError('Account registration failed', error.problem) from error

        regr = self._regr_from_response(response)
        if response.status_code == http_client.OK:
            logger.debug('Key is already registered at %s', regr.uri)
        return self._set_account(regr)

    async def query_account(self) -> messages.RegistrationResource:
        """Look up the account of the key without creating one.

        :raises .AccountError: if the key has no account (``accountDoesNotExist``).

        """
        directory = await self._directory()
        lookup = messages.NewRegistration(only_return_existing=True)
        try:
            response = await self._post(directory['newAccount'], lookup, use_jwk=True)
        except errors.ProtocolError as error:
            raise errors.AccountError('Account lookup failed', error.problem) from error
        return self._set_account(self._regr_from_response(response))

    async def update_account(self, contact: Optional[Sequence[str]] = None
                             ) -> messages.RegistrationResource:
        """Update the account contacts, or just refresh it when ``contact`` is ``None``.

        An empty ``contact`` removes all contacts.
        """
        regr = self._require_account()
        if contact is not None:
            update = messages.UpdateRegistration(contact=tuple(contact))
        else:
            update = messages.UpdateRegistration()
        try:
            response = await self._post(regr.uri, update)
        except errors.ProtocolError as error:
            raise errors.AccountError('Account update failed', error.problem) from error
        return self._set_account(self._regr_from_response(
            response, uri=regr.uri, terms_of_service=regr.terms_of_service))

    async def deactivate_account(self) -> messages.RegistrationResource:
        """Deactivate the account. The CA will refuse any further request signed by it.

        :returns: The Registration resource that was deactivated.
        :rtype: `.RegistrationResource`

        """
        regr = self._require_account()
        update = messages.UpdateRegistration(status=messages.STATUS_DEACTIVATED)
        try:
            response = await self._post(regr.uri, update)
        except errors.ProtocolError as error:
            raise errors.AccountError('Account deactivation failed', error.problem) from error
        return self._set_account(self._regr_from_response(
            response, uri=regr.uri, terms_of_service=regr.terms_of_service),
            expected=messages.STATUS_DEACTIVATED)

    async def key_change(self, new_key: Any) -> messages.RegistrationResource:
        """Roll the account over to ``new_key`` (RFC 8555, section 7.3.5).

        The inner JWS is signed by the new key and carries no nonce; the
        outer one is signed by the current key. On success the client signs
        with ``new_key`` from then on.

        """
        regr = self._require_account()
        directory = await self._directory()
        url = directory['keyChange']
        new_jwk = jws.to_jwk(new_key)
        payload = messages.KeyChange(
            account=regr.uri, old_key=self.net.key.public_key()).json_dumps().encode()
        try:
            inner = jws.JWS.sign(payload, key=new_jwk, alg=jws.algorithm_for_key(new_jwk),
                                 nonce=None, url=url)
        except (AssertionError, AttributeError, TypeError, ValueError, jose.Error) as error:
            raise errors.SigningError(f'Signing key change failed: {error}') from error
        try:
            await self._post(url, inner)
        except errors.ConflictError as error:
            raise errors.AccountError(
                f'The new key is already registered at {error.location}',
                error.problem) from error
        except errors.ProtocolError as error:
            raise errors.AccountError('Key change failed', error.problem) from error
        self.net.key = new_jwk
        self.net.alg = jws.algorithm_for_key(new_jwk)
        return self._set_account(regr.update(body=regr.body.update(key=new_jwk.public_key())))

    def _require_account(self) -> messages.RegistrationResource:
        if self.net.account is None:
            raise errors.AccountError('No account, call ensure_account first')
        return self.net.account

    def _set_account(self, regr: messages.RegistrationResource,
                     expected: messages.Status = messages.STATUS_VALID
                     ) -> messages.RegistrationResource:
        status = regr.body.status
        if status is not None and status != expected:
            raise errors.AccountError(f'Account {regr.uri} is {status.name}')
        self.net.account = regr
        return regr

    def _regr_from_response(self, response: transport_mod.Response, uri: Optional[str] = None,
                            terms_of_service: Optional[str] = None
                            ) -> messages.RegistrationResource:
        tos_links = response.links('terms-of-service')
        if tos_links:
            terms_of_service = tos_links[0]
        elif terms_of_service is None and self.directory is not None:
            terms_of_service = self.directory.meta.terms_of_service
        location = response.headers.get('Location', uri)
        if location is None:
            raise errors.AccountError('The CA did not return the account location')
        return messages.RegistrationResource(
            body=messages.Registration.from_json(response.json()),
            uri=location,
            terms_of_service=terms_of_service)

    # Orders and authorizations

    async def create_order(self, identifiers: Iterable[Union[str, messages.Identifier]],
                           profile: Optional[str] = None) -> messages.OrderResource:
        """Request a new Order object from the server.

        :param identifiers: Domain names or `.Identifier` objects.
        :param str profile: Certificate profile, among ``directory.meta.profiles``.

        :raises .OrderError: if the CA rejects the order, carrying the Problem.

        :returns: The newly created order, authorizations not yet fetched.
        :rtype: OrderResource
        """
        idents = tuple(messages.Identifier.from_value(i) for i in identifiers)
        if not idents:
            raise ValueError('At least one identifier is required')
        directory = await self._directory()
        kwargs = {'profile': profile} if profile else {}
        order = messages.NewOrder(identifiers=idents, **kwargs)
        try:
            response = await self._post(directory['newOrder'], order)
        except errors.ProtocolError as error:
            raise errors.OrderError('The CA rejected the order', error.problem,
                                    identifiers=idents) from error
        body = messages.Order.from_json(response.json())
        uri = response.headers.get('Location')
        if uri is None:
            raise errors.OrderError('The CA did not return the order location',
                                    identifiers=idents)
        orderr = messages.OrderResource(body=body, uri=uri)
        if body.status == messages.STATUS_INVALID:
            raise errors.OrderError(f'Order {uri} is invalid', body.error, orderr, idents)
        logger.debug('Created order %s for %s', uri, ', '.join(i.value for i in idents))
        return orderr

    @staticmethod
    def identifiers_from_csr(csr: bytes) -> Tuple[messages.Identifier, ...]:
        """Identifiers requested by a PEM or DER CSR, as `create_order` expects them."""
        idents = []
        for name in crypto_util.get_names_from_csr(csr):
            try:
                ipaddress.ip_address(name)
            except ValueError:
                idents.append(messages.Identifier(typ=messages.IDENTIFIER_FQDN, value=name))
            else:
                idents.append(messages.Identifier(typ=messages.IDENTIFIER_IP, value=name))
        return tuple(idents)

    async def fetch_authorization(self, url: str,
                                  identifier: Optional[messages.Identifier] = None
                                  ) -> messages.AuthorizationResource:
        """Fetch the current state of an authorization.

        :raises .UnexpectedUpdate: if ``identifier`` is given and differs from
            the one the CA reports.

        """
        response = await self._post_as_get(url)
        return self._authzr_from_response(response, identifier, url)

    async def fetch_authorizations(self, orderr: messages.OrderResource
                                   ) -> messages.OrderResource:
        """Fetch every authorization of an order, concurrently."""
        urls = orderr.body.authorizations or ()
        authzrs = await asyncio.gather(*(self.fetch_authorization(url) for url in urls))
        return orderr.update(authorizations=tuple(authzrs))

    @staticmethod
    def select_challenge(authzr: messages.AuthorizationResource,
                         typ: str) -> messages.ChallengeBody:
        """Pick the challenge of type ``typ`` offered by ``authzr``.

        :raises .UnsupportedChallengeError: if the CA does not offer it.

        """
        offered = []
        for challb in authzr.body.challenges or ():
            if challb.chall.typ == typ:
                return challb
            offered.append(challb.chall.typ)
        raise errors.UnsupportedChallengeError(typ, offered)

    async def answer_challenge(self, challb: messages.ChallengeBody) -> messages.ChallengeBody:
        """Tell the CA the challenge can be validated.

        :returns: Challenge with updated body.

        :raises .UnexpectedUpdate:

        """
        response = await self._post(challb.uri, challb.chall.response(self.net.key))
        updated = messages.ChallengeBody.from_json(response.json())
        if updated.uri is not None and updated.uri != challb.uri:
            raise errors.UnexpectedUpdate(updated.uri)
        return updated

    async def poll_challenge(self, challb: messages.ChallengeBody,
                             identifier: Optional[messages.Identifier] = None
                             ) -> messages.ChallengeBody:
        """Poll a challenge until it is valid or invalid.

        :raises .ChallengeError: if the CA found it invalid.
        :raises .TimeoutError:

        """
        async def fetch() -> Tuple[messages.ChallengeBody, transport_mod.Response]:
            response = await self._post_as_get(challb.uri)
            return messages.ChallengeBody.from_json(response.json()), response

        updated = await self.net.retrier.poll(
            fetch, lambda c: c.status in (messages.STATUS_VALID, messages.STATUS_INVALID),
            challb.uri)
        if updated.status == messages.STATUS_INVALID:
            raise errors.ChallengeError(updated, identifier)
        return updated

    async def respond_to_challenge(self, authzr: messages.AuthorizationResource,
                                   challb: messages.ChallengeBody,
                                   responder: responder_mod.ChallengeResponder
                                   ) -> messages.ChallengeBody:
        """Publish the validation, answer the challenge and wait for the verdict.

        The responder withdraws the validation however this ends, including
        cancellation of the calling task.

        :raises .ChallengeError: if the CA found the challenge invalid.

        """
        if not isinstance(challb.chall, challenges.KeyAuthorizationChallenge):
            raise errors.UnsupportedChallengeError(challb.chall.typ, ())
        identifier = authzr.body.identifier
        achall = responder_mod.AnnotatedChallenge(challb, identifier, self.net.key)
        async with responder_mod.published(responder, achall):
            if challb.status == messages.STATUS_PENDING:
                await self.answer_challenge(challb)
            return await self.poll_challenge(challb, identifier)

    async def poll_authorization(self, authzr: messages.AuthorizationResource
                                 ) -> messages.AuthorizationResource:
        """Poll an authorization until the CA settles it.

        :raises .AuthorizationError: if it settles in any status but valid.
        :raises .TimeoutError:

        """
        async def fetch() -> Tuple[messages.AuthorizationResource, transport_mod.Response]:
            response = await self._post_as_get(authzr.uri)
            return self._authzr_from_response(
                response, authzr.body.identifier, authzr.uri), response

        updated = await self.net.retrier.poll(
            fetch, lambda a: a.body.status not in (messages.STATUS_PENDING,
                                                   messages.STATUS_PROCESSING),
            authzr.uri)
        if updated.body.status != messages.STATUS_VALID:
            problem = next((challb.error for challb in updated.body.challenges or ()
                            if challb.error is not None), None)
            raise errors.AuthorizationError(updated, problem)
        return updated

    async def deactivate_authorization(self, authzr: messages.AuthorizationResource
                                       ) -> messages.AuthorizationResource:
        """Deactivate authorization.

        :param messages.AuthorizationResource authzr: The Authorization resource
            to be deactivated.

        :returns: The Authorization resource that was deactivated.
        :rtype: `.AuthorizationResource`

        """
        body = messages.UpdateAuthorization(status=messages.STATUS_DEACTIVATED)
        response = await self._post(authzr.uri, body)
        return self._authzr_from_response(response, authzr.body.identifier, authzr.uri)

    def _authzr_from_response(self, response: transport_mod.Response,
                              identifier: Optional[messages.Identifier] = None,
                              uri: Optional[str] = None) -> messages.AuthorizationResource:
        authzr = messages.AuthorizationResource(
            body=messages.Authorization.from_json(response.json()),
            uri=response.headers.get('Location', uri))
        if identifier is not None and authzr.body.identifier != identifier:  # pylint: disable=no-member
            raise errors.UnexpectedUpdate(authzr)
        return authzr

    async def poll_order(self, orderr: messages.OrderResource,
                         until: messages.Status = messages.STATUS_READY
                         ) -> messages.OrderResource:
        """Poll an order until it reaches ``until`` (ready or valid).

        :raises .OrderError: if the order becomes invalid.
        :raises .TimeoutError:

        """
        if until == messages.STATUS_READY:
            settled = (messages.STATUS_READY, messages.STATUS_VALID, messages.STATUS_INVALID)
            stage = 'order'
        else:
            settled = (messages.STATUS_VALID, messages.STATUS_INVALID)
            stage = 'finalize'

        async def fetch() -> Tuple[messages.OrderResource, transport_mod.Response]:
            response = await self._post_as_get(orderr.uri)
            return orderr.update(body=messages.Order.from_json(response.json())), response

        updated = await self.net.retrier.poll(
            fetch, lambda o: o.body.status in settled, orderr.uri)
        if updated.body.status == messages.STATUS_INVALID:
            raise errors.OrderError(f'Order {updated.uri} is invalid', updated.body.error,
                                    updated, updated.identifiers, stage=stage)
        return updated

    # Finalization and certificates

    async def finalize(self, orderr: messages.OrderResource, csr: bytes
                       ) -> messages.OrderResource:
        """Submit the CSR and wait for the order to become valid.

        :param messages.OrderResource orderr: A ``ready`` order, or one whose
            fetched authorizations are all valid.
        :param bytes csr: PEM or DER certificate signing request.

        :raises .OrderNotReady: if not every authorization is valid. This is
            checked before anything is sent.
        :raises .OrderError: if the CA rejects the CSR or invalidates the order.

        """
        self._check_ready(orderr)
        request = messages.CertificateRequest(csr=crypto_util.csr_to_der(csr))
        try:
            response = await self._post(orderr.body.finalize, request)
        except errors.ProtocolError as error:
            if error.code == 'orderNotReady':
                raise errors.OrderNotReady(f'Order {orderr.uri} is not ready', error.problem,
                                           orderr, orderr.identifiers) from error
            raise errors.OrderError('Finalization failed', error.problem, orderr,
                                    orderr.identifiers, stage='finalize') from error
        orderr = orderr.update(body=messages.Order.from_json(response.json()))
        if orderr.body.status == messages.STATUS_VALID and orderr.body.certificate:
            return orderr
        return await self.poll_order(orderr, until=messages.STATUS_VALID)

    @staticmethod
    def _check_ready(orderr: messages.OrderResource) -> None:
        status = orderr.body.status
        if status == messages.STATUS_READY:
            return
        urls = orderr.body.authorizations or ()
        authzrs = orderr.authorizations or ()
        if status == messages.STATUS_PENDING and authzrs and len(authzrs) == len(urls) \
                and all(a.body.status == messages.STATUS_VALID for a in authzrs):
            return
        name = status.name if status is not None else 'unknown'
        raise errors.OrderNotReady(
            f'Order {orderr.uri} is {name}; every authorization must be valid '
            'before finalizing', order=orderr, identifiers=orderr.identifiers)

    async def fetch_certificate(self, orderr: messages.OrderResource,
                                fetch_alternative_chains: bool = False
                                ) -> messages.OrderResource:
        """Download the chain of a valid order.

        :param bool fetch_alternative_chains: Also download the chains
            announced with ``Link: rel="alternate"``.

        :returns: ``orderr`` with ``fullchain_pem`` (and
            ``alternative_fullchains_pem``) set.

        :raises .CertificateError:

        """
        if orderr.body.status != messages.STATUS_VALID or not orderr.body.certificate:
            raise errors.CertificateError(f'Order {orderr.uri} has no certificate yet')
        response = await self._download(orderr.body.certificate)
        orderr = orderr.update(fullchain_pem=self._check_chain(response))
        if fetch_alternative_chains:
            alternatives = []
            for url in response.links('alternate'):
                alternatives.append(self._check_chain(await self._download(url)))
            orderr = orderr.update(alternative_fullchains_pem=tuple(alternatives))
        return orderr

    async def download_certificate(self, orderr: messages.OrderResource) -> bytes:
        """Download the PEM certificate chain of a valid order."""
        return (await self.fetch_certificate(orderr)).fullchain_pem

    async def _download(self, url: str) -> transport_mod.Response:
        try:
            return await self._post_as_get(url, content_type=ClientNetwork.PEM_CHAIN_CONTENT_TYPE)
        except errors.ProtocolError as error:
            raise errors.CertificateError(f'Downloading {url} failed', error.problem) from error

    @staticmethod
    def _check_chain(response: transport_mod.Response) -> bytes:
        if response.content_type != ClientNetwork.PEM_CHAIN_CONTENT_TYPE:
            raise errors.CertificateError(
                f'Unexpected certificate Content-Type: {response.content_type}')
        if not response.content.lstrip().startswith(crypto_util.PEM_CERTIFICATE_BOUNDARY):
            raise errors.CertificateError(f'{response.url} did not return a PEM chain')
        return response.content

    async def revoke(self, cert: bytes, reason: int = 0) -> None:
        """Revoke certificate.

        :param bytes cert: PEM or DER certificate.
        :param int reason: CRL reason code for certificate revocation.

        :raises .ClientError: If revocation is unsuccessful.

        """
        directory = await self._directory()
        revocation = messages.Revocation(certificate=crypto_util.cert_to_der(cert), reason=reason)
        response = await self._post(directory['revokeCert'], revocation, content_type=None)
        if response.status_code != http_client.OK:
            raise errors.ClientError(
                'Successful revocation must return HTTP OK status')

    # End to end

    async def issue(self, identifiers: Iterable[Union[str, messages.Identifier]], csr: bytes,
                    responder: responder_mod.ChallengeResponder,
                    challenge_type: str = challenges.HTTP01.typ,
                    contact: Sequence[str] = (), terms_of_service_agreed: bool = True,
                    external_account: Optional[ExternalAccount] = None,
                    fetch_alternative_chains: bool = False) -> messages.OrderResource:
        """Obtain a certificate for ``identifiers``.

        An empty ``identifiers`` requests the names found in ``csr``.

        Ensures the account, creates the order, answers every pending
        authorization concurrently through ``responder``, finalizes with
        ``csr`` and downloads the chain.

        :returns: The valid order with ``fullchain_pem`` set.

        :raises .Error: with ``stage`` set to the step that failed.

        """
        identifiers = tuple(identifiers) or self.identifiers_from_csr(csr)
        stage = 'account'
        try:
            if self.net.account is None:
                await self.ensure_account(contact, terms_of_service_agreed, external_account)
            stage = 'order'
            orderr = await self.create_order(identifiers)
            stage = 'authorization'
            orderr = await self.fetch_authorizations(orderr)
            stage = 'challenge'
            authzrs = await self._authorize_all(orderr, responder, challenge_type)
            orderr = orderr.update(authorizations=authzrs)
            stage = 'order'
            if orderr.body.status != messages.STATUS_READY:
                orderr = await self.poll_order(orderr, until=messages.STATUS_READY)
            stage = 'finalize'
            orderr = await self.finalize(orderr, csr)
            stage = 'download'
            return await self.fetch_certificate(orderr, fetch_alternative_chains)
        except errors.Error as error:
            if error.stage is None:
                error.stage = stage
            logger.debug('Issuance failed during %s: %s', error.stage, error)
            raise

    async def _authorize_all(self, orderr: messages.OrderResource,
                             responder: responder_mod.ChallengeResponder,
                             challenge_type: str) -> Tuple[messages.AuthorizationResource, ...]:
        tasks = [asyncio.ensure_future(self._authorize(authzr, responder, challenge_type))
                 for authzr in orderr.authorizations]
        try:
            return tuple(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _authorize(self, authzr: messages.AuthorizationResource,
                         responder: responder_mod.ChallengeResponder,
                         challenge_type: str) -> messages.AuthorizationResource:
        if authzr.body.status == messages.STATUS_VALID:
            return authzr
        if authzr.body.status != messages.STATUS_PENDING:
            raise errors.AuthorizationError(authzr)
        challb = self.select_challenge(authzr, challenge_type)
        await self.respond_to_challenge(authzr, challb, responder)
        return await self.poll_authorization(authzr)
