"""Challenge responders: publishing and withdrawing validation artifacts."""
import abc
import contextlib
import logging
from typing import Any
from typing import AsyncIterator

import josepy as jose

from async_acme import challenges
from async_acme import messages

logger = logging.getLogger(__name__)


class AnnotatedChallenge:
    """Challenge body bundled with everything a responder needs.

    Use names such as ``achall`` to distinguish instances of this class
    from `messages.ChallengeBody` (``challb``) and `challenges.Challenge`
    (``chall``).

    :ivar messages.ChallengeBody challb:
    :ivar messages.Identifier identifier: Identifier being validated.
    :ivar josepy.JWK account_key: Account key, whose thumbprint goes into the
        key authorization.

    """

    def __init__(self, challb: messages.ChallengeBody, identifier: messages.Identifier,
                 account_key: jose.JWK) -> None:
        self.challb = challb
        self.identifier = identifier
        self.account_key = account_key

    def __repr__(self) -> str:
        return f'<AnnotatedChallenge {self.typ} for {self.domain}>'

    @property
    def chall(self) -> challenges.Challenge:
        """The wrapped challenge."""
        return self.challb.chall

    @property
    def typ(self) -> str:
        """Challenge type, e.g. ``http-01``."""
        return self.chall.typ

    @property
    def domain(self) -> str:
        """Identifier value being validated."""
        return self.identifier.value

    @property
    def key_authorization(self) -> str:
        return self.chall.key_authorization(self.account_key)

    @property
    def response(self) -> challenges.KeyAuthorizationChallengeResponse:
        return self.chall.response(self.account_key)

    @property
    def validation(self) -> Any:
        """Artifact to publish: HTTP body, TXT record value or ALPN digest."""
        return self.chall.validation(self.account_key)


class ChallengeResponder(metaclass=abc.ABCMeta):
    """Publishes validation artifacts where the CA will look for them."""

    @abc.abstractmethod
    async def publish(self, achall: AnnotatedChallenge) -> Any:
        """Make ``achall.validation`` reachable by the CA.

        :returns: Opaque handle passed back to `withdraw`.

        """

    @abc.abstractmethod
    async def withdraw(self, handle: Any) -> None:
        """Remove what `publish` set up."""


@contextlib.asynccontextmanager
async def published(responder: ChallengeResponder,
                    achall: AnnotatedChallenge) -> AsyncIterator[Any]:
    """Keep ``achall`` published for the duration of the block.

    The artifact is withdrawn on every way out of the block, including
    exceptions, poll timeouts and task cancellation.
    """
    handle = await responder.publish(achall)
    logger.debug('Published %r', achall)
    try:
        yield handle
    finally:
        await responder.withdraw(handle)
        logger.debug('Withdrew %r', achall)
