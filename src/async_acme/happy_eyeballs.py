"""Connection racing across resolved addresses (RFC 8305)."""
import abc
import collections
from concurrent import futures
import itertools
import logging
import socket
from typing import Any
from typing import Callable
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPT_DELAY = 0.25
"""Seconds to wait for an attempt before starting the next one."""

AddrInfo = Tuple[int, int, int, str, Any]


class AddressConnector(metaclass=abc.ABCMeta):
    """Capability turning a host name into one connected socket."""

    @abc.abstractmethod
    def connect(self, host: str, port: int, timeout: Optional[float] = None,
                source_address: Optional[Tuple[str, int]] = None) -> socket.socket:
        """Return a connected TCP socket to ``host:port``.

        :raises OSError: when no address could be connected to.

        """


def interleave(infos: Sequence[AddrInfo]) -> List[AddrInfo]:
    """Order resolved addresses alternating between address families.

    The family of the first address goes first, as the resolver prefers it.
    """
    by_family: 'collections.OrderedDict[int, List[AddrInfo]]' = collections.OrderedDict()
    for info in infos:
        by_family.setdefault(info[0], []).append(info)
    return [info for group in itertools.zip_longest(*by_family.values())
            for info in group if info is not None]


def _close_loser(future: 'futures.Future[socket.socket]') -> None:
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()


class HappyEyeballsConnector(AddressConnector):
    """Start an attempt per address, staggered by ``delay``; first success wins.

    An attempt failing early starts the next one right away. Connections
    that complete after a winner was picked are closed.

    :param float delay: Connection attempt delay.
    :param resolver: ``socket.getaddrinfo`` compatible callable.

    """

    def __init__(self, delay: float = DEFAULT_ATTEMPT_DELAY,
                 resolver: Callable[..., List[AddrInfo]] = socket.getaddrinfo) -> None:
        self.delay = delay
        self.resolver = resolver

    def resolve(self, host: str, port: int) -> List[AddrInfo]:
        """Resolve ``host`` to stream addresses in racing order."""
        return interleave(self.resolver(host, port, type=socket.SOCK_STREAM))

    def connect(self, host: str, port: int, timeout: Optional[float] = None,
                source_address: Optional[Tuple[str, int]] = None) -> socket.socket:
        addresses = self.resolve(host, port)
        if not addresses:
            raise socket.gaierror(f'{host} did not resolve to any address')
        if len(addresses) == 1:
            return self._attempt(addresses[0], timeout, source_address)

        failures: List[BaseException] = []
        winner: Optional[socket.socket] = None
        pending: set = set()
        executor = futures.ThreadPoolExecutor(max_workers=len(addresses))
        try:
            for info in addresses:
                logger.debug('Connecting to %s (%s)', info[4], host)
                pending.add(executor.submit(self._attempt, info, timeout, source_address))
                done, pending = futures.wait(
                    pending, timeout=self.delay, return_when=futures.FIRST_COMPLETED)
                winner = self._collect(done, failures, winner)
                if winner is not None:
                    break
            while winner is None and pending:
                done, pending = futures.wait(pending, return_when=futures.FIRST_COMPLETED)
                winner = self._collect(done, failures, winner)
        finally:
            for future in pending:
                future.add_done_callback(_close_loser)
            executor.shutdown(wait=False, cancel_futures=True)

        if winner is None:
            raise failures[-1]
        logger.debug('Connected to %s via %s', host, winner.getpeername())
        return winner

    @staticmethod
    def _collect(done: set, failures: List[BaseException],
                 winner: Optional[socket.socket]) -> Optional[socket.socket]:
        for future in done:
            error = future.exception()
            if error is not None:
                logger.debug('Connection attempt failed: %s', error)
                failures.append(error)
            elif winner is None:
                winner = future.result()
            else:
                future.result().close()
        return winner

    def _attempt(self, info: AddrInfo, timeout: Optional[float],
                 source_address: Optional[Tuple[str, int]]) -> socket.socket:
        family, socktype, proto, _, sockaddr = info
        sock = socket.socket(family, socktype, proto)
        try:
            if timeout is not None:
                sock.settimeout(timeout)
            if source_address:
                sock.bind(source_address)
            sock.connect(sockaddr)
        except OSError:
            sock.close()
            raise
        return sock
