"""ACME errors."""
import typing
from typing import Any
from typing import Mapping
from typing import Optional
from typing import Sequence

from josepy import errors as jose_errors
from requests.structures import CaseInsensitiveDict

# We import async_acme.messages only during type check to avoid circular dependencies. Type
# references to async_acme.messages.* must be quoted to be lazily initialized.
if typing.TYPE_CHECKING:
    from async_acme import messages  # pragma: no cover


class Error(Exception):
    """Generic ACME error.

    :ivar str stage: Issuance stage (``account``, ``order``, ``authorization``,
        ``challenge``, ``finalize`` or ``download``) during which the error
        happened, if known.

    """
    stage: Optional[str] = None


class SchemaValidationError(jose_errors.DeserializationError):
    """JSON schema ACME object validation error."""


class ClientError(Error):
    """Network error."""


class TransportError(ClientError):
    """Connection, TLS or timeout failure below the HTTP layer.

    :ivar str url: URL of the failed request.

    """
    def __init__(self, url: str, reason: Any) -> None:
        self.url = url
        self.reason = reason
        super().__init__(url, reason)

    def __str__(self) -> str:
        return f'Requesting {self.url} failed: {self.reason}'


class DirectoryError(ClientError):
    """Directory document is not valid or misses mandatory endpoints."""


class UnexpectedUpdate(ClientError):
    """Unexpected update error."""


class NonceError(ClientError):
    """Server response nonce error."""


class BadNonce(NonceError):
    """Bad nonce error."""
    def __init__(self, nonce: str, error: Exception, *args: Any) -> None:
        super().__init__(*args)
        self.nonce = nonce
        self.error = error

    def __str__(self) -> str:
        return f'Invalid nonce ({self.nonce!r}): {self.error}'


class MissingNonce(NonceError):
    """Missing nonce error.

    According to RFC 8555 an "ACME server MUST include an
    Replay-Nonce header field in each successful response to a POST it
    provides to a client (...)". The newNonce endpoint must always do so.

    :ivar headers: Mapping of HTTP headers

    """
    def __init__(self, headers: Mapping, *args: Any) -> None:
        super().__init__(*args)
        self.headers = dict(headers)

    def __str__(self) -> str:
        return ('Server response did not include a replay '
                f'nonce, headers: {self.headers} (This may be a service outage)')


class SigningError(Error):
    """Unsupported key or failing signature backend."""


class ProtocolError(ClientError):
    """The CA answered with a Problem document.

    :ivar messages.Error problem: The Problem document, preserved as sent.
    :ivar int status: HTTP status code of the response.
    :ivar headers: Case-insensitive response headers (``Retry-After`` etc.).

    """
    def __init__(self, problem: 'messages.Error', status: Optional[int] = None,
                 headers: Optional[Mapping[str, str]] = None) -> None:
        self.problem = problem
        self.status = status if status is not None else problem.status
        self.headers = CaseInsensitiveDict(headers or {})
        super().__init__(problem)

    @property
    def code(self) -> Optional[str]:
        """ACME error code of the wrapped Problem, e.g. ``badNonce``."""
        return self.problem.code

    def __str__(self) -> str:
        return str(self.problem)


class ConflictError(ClientError):
    """Error for when the server returns a 409 (Conflict) HTTP status.

    Used to find an account if you only have the private key, but don't
    know the account URL.

    :ivar str location: The ``Location`` header of the response.
    :ivar messages.Error problem: The Problem document sent with the
        conflict, if any.

    """
    def __init__(self, location: str, problem: Optional['messages.Error'] = None) -> None:
        self.location = location
        self.problem = problem
        super().__init__(location, problem)

    def __str__(self) -> str:
        if self.problem is None:
            return f'Conflict with {self.location}'
        return f'Conflict with {self.location}: {self.problem}'


class _ProblemCarrier(Error):
    """Terminal failure carrying the Problem the CA reported, if any."""
    def __init__(self, message: str, problem: Optional['messages.Error'] = None) -> None:
        self.message = message
        self.problem = problem
        super().__init__(message, problem)

    def __str__(self) -> str:
        if self.problem is None:
            return self.message
        return f'{self.message}: {self.problem}'


class AccountError(_ProblemCarrier):
    """Account registration or update failed."""
    stage = 'account'


class OrderError(_ProblemCarrier):
    """The CA rejected or invalidated an order.

    :ivar order: The order resource, when one exists.
    :ivar tuple identifiers: Identifiers the order was requested for.

    """
    stage = 'order'

    def __init__(self, message: str, problem: Optional['messages.Error'] = None,
                 order: Optional['messages.OrderResource'] = None,
                 identifiers: Sequence['messages.Identifier'] = (),
                 stage: Optional[str] = None) -> None:
        self.order = order
        self.identifiers = tuple(identifiers)
        if stage is not None:
            self.stage = stage
        super().__init__(message, problem)


class OrderNotReady(OrderError):
    """Finalization attempted before every authorization was valid.

    This is a misuse by the caller and never retried.
    """
    stage = 'finalize'


class AuthorizationError(_ProblemCarrier):
    """An authorization ended in a status other than valid."""
    stage = 'authorization'

    def __init__(self, authzr: 'messages.AuthorizationResource',
                 problem: Optional['messages.Error'] = None) -> None:
        self.authzr = authzr
        identifier = authzr.body.identifier
        value = identifier.value if identifier is not None else authzr.uri
        super().__init__(
            f'Authorization for {value} is {authzr.body.status.name}', problem)


class ChallengeError(_ProblemCarrier):
    """A challenge was found invalid by the CA."""
    stage = 'challenge'

    def __init__(self, challb: 'messages.ChallengeBody',
                 identifier: Optional['messages.Identifier'] = None) -> None:
        self.challb = challb
        self.identifier = identifier
        value = identifier.value if identifier is not None else challb.uri
        super().__init__(f'{challb.chall.typ} challenge for {value} failed', challb.error)


class UnsupportedChallengeError(Error):
    """The requested challenge type is not offered by the authorization."""
    stage = 'challenge'

    def __init__(self, typ: str, offered: Sequence[str]) -> None:
        self.typ = typ
        self.offered = tuple(offered)
        super().__init__(typ, self.offered)

    def __str__(self) -> str:
        return f'{self.typ} challenge was not offered (offered: {", ".join(self.offered)})'


class CertificateError(_ProblemCarrier):
    """Downloaded certificate chain is unusable."""
    stage = 'download'


class TimeoutError(Error):  # pylint: disable=redefined-builtin
    """Error for when polling an authorization, a challenge or an order times out.

    :ivar str uri: Location of the resource that did not settle.
    :ivar int attempts: Number of polls performed.

    """
    def __init__(self, uri: Optional[str] = None, attempts: int = 0) -> None:
        self.uri = uri
        self.attempts = attempts
        super().__init__(uri, attempts)

    def __str__(self) -> str:
        return f'Polling {self.uri} did not settle after {self.attempts} attempts'
