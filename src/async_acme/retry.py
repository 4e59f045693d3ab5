"""Retry and polling policy applied to every network operation.

One `Retrier` decides, for all call sites alike, which failures are
worth another attempt and how long to wait before it:

- transport failures and unobtainable nonces back off exponentially,
- ``badNonce`` problems are retried at once with a fresh nonce,
- ``rateLimited`` problems (or HTTP 429) wait for ``Retry-After``,
- everything else propagates untouched.

Polls of pending resources wait for ``Retry-After`` (or a default delay)
between attempts and give up with `.errors.TimeoutError`.
"""
import asyncio
import datetime
from email.utils import parsedate_tz
import logging
from typing import Awaitable
from typing import Callable
from typing import Mapping
from typing import Optional
from typing import Tuple
from typing import TypeVar

from async_acme import errors
from async_acme import transport

logger = logging.getLogger(__name__)

T = TypeVar('T')

RETRY_AFTER_HEADER = 'Retry-After'


async def sleep(seconds: float) -> None:
    """Suspend the calling task; every retry and poll delay goes through here."""
    await asyncio.sleep(seconds)


class RetryPolicy:
    """Bounds of a retry or poll loop.

    :param int max_attempts: Attempts before giving up, the first included.
    :param float delay: First backoff delay, and the poll delay used when the
        server sends no ``Retry-After``.
    :param float max_delay: Cap of the exponential backoff.
    :param float factor: Backoff multiplier.
    :param float max_retry_after: Cap applied to server provided delays.
    :param int max_bad_nonce: ``badNonce`` retries allowed per operation.
    :param float max_time: Optional overall time limit in seconds.

    """

    def __init__(self, max_attempts: int = 5, delay: float = 1.0, max_delay: float = 30.0,
                 factor: float = 2.0, max_retry_after: float = 60.0,
                 max_bad_nonce: int = 3, max_time: Optional[float] = None) -> None:
        if max_attempts < 1:
            raise ValueError('max_attempts must be at least 1')
        self.max_attempts = max_attempts
        self.delay = delay
        self.max_delay = max_delay
        self.factor = factor
        self.max_retry_after = max_retry_after
        self.max_bad_nonce = max_bad_nonce
        self.max_time = max_time

    def __repr__(self) -> str:
        return (f'{self.__class__.__name__}(max_attempts={self.max_attempts}, '
                f'delay={self.delay}, max_delay={self.max_delay}, factor={self.factor}, '
                f'max_retry_after={self.max_retry_after}, max_time={self.max_time})')

    def backoff(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (1-based)."""
        return min(self.delay * self.factor ** (attempt - 1), self.max_delay)

    def clamp(self, seconds: float) -> float:
        """Bound a server provided delay to ``[0, max_retry_after]``."""
        if seconds > self.max_retry_after:
            logger.debug('Clamping Retry-After of %ss to %ss', seconds, self.max_retry_after)
            return self.max_retry_after
        return max(seconds, 0.0)


DEFAULT_POLICY = RetryPolicy()
DEFAULT_POLL_POLICY = RetryPolicy(max_attempts=60, delay=2.0, max_retry_after=60.0)


def retry_after(headers: Mapping[str, str], default: float) -> float:
    """Seconds to wait according to a ``Retry-After`` header.

    Handles integers and various datestring formats per
    https://www.w3.org/Protocols/rfc2616/rfc2616-sec14.html#sec14.37

    :param headers: Response headers.
    :param float default: Used when the header is absent or invalid.

    """
    value = headers.get(RETRY_AFTER_HEADER)
    if value is None:
        return default
    try:
        return float(int(value))
    except ValueError:
        # The RFC 2822 parser handles all of RFC 2616's cases in modern
        # environments (primarily HTTP 1.1+ but also py27+)
        when = parsedate_tz(value)
        if when is not None:
            try:
                tz_secs = datetime.timedelta(seconds=when[-1] if when[-1] is not None else 0)
                moment = datetime.datetime(*when[:6]) - tz_secs
            except (ValueError, OverflowError):
                return default
            now = datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)
            return max((moment - now).total_seconds(), 0.0)
    return default


class Retrier:
    """Runs operations under a request policy and polls under a poll policy.

    :param RetryPolicy policy: Applied by `call`.
    :param RetryPolicy poll_policy: Applied by `poll`.

    """

    def __init__(self, policy: Optional[RetryPolicy] = None,
                 poll_policy: Optional[RetryPolicy] = None) -> None:
        self.policy = policy or DEFAULT_POLICY
        self.poll_policy = poll_policy or DEFAULT_POLL_POLICY

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Await ``operation()``, retrying it on retryable failures.

        ``operation`` must build a new request (and draw a new nonce) on
        every invocation.

        """
        policy = self.policy
        attempts = 0
        bad_nonces = 0
        while True:
            attempts += 1
            try:
                return await operation()
            except (errors.TransportError, errors.NonceError) as error:
                if attempts >= policy.max_attempts:
                    raise
                wait = policy.backoff(attempts)
                logger.debug('Attempt %d failed (%s), retrying in %ss', attempts, error, wait)
                await sleep(wait)
            except errors.ProtocolError as error:
                if error.code == 'badNonce':
                    bad_nonces += 1
                    attempts -= 1
                    if bad_nonces > policy.max_bad_nonce:
                        raise
                    logger.debug('Retrying request after error:\n%s', error)
                    continue
                if error.code == 'rateLimited' or error.status == 429:
                    if attempts >= policy.max_attempts:
                        raise
                    wait = policy.clamp(retry_after(error.headers, policy.backoff(attempts)))
                    logger.warning('Rate limited, retrying in %ss: %s', wait, error)
                    await sleep(wait)
                    continue
                raise

    async def poll(self, fetch: Callable[[], Awaitable[Tuple[T, transport.Response]]],
                   settled: Callable[[T], bool], uri: Optional[str] = None) -> T:
        """Fetch a resource until ``settled`` accepts it.

        ``fetch`` is expected to apply `call` to its own requests.

        :raises .errors.TimeoutError: when the poll policy is exhausted.

        """
        policy = self.poll_policy
        loop = asyncio.get_running_loop()
        deadline = loop.time() + policy.max_time if policy.max_time is not None else None
        attempt = 0
        while attempt < policy.max_attempts:
            attempt += 1
            resource, response = await fetch()
            if settled(resource):
                return resource
            if attempt >= policy.max_attempts:
                break
            wait = policy.clamp(retry_after(response.headers, policy.delay))
            if deadline is not None and loop.time() + wait > deadline:
                break
            logger.debug('%s not settled yet, polling again in %ss', uri, wait)
            await sleep(wait)
        raise errors.TimeoutError(uri, attempt)
