"""Tests for async_acme.retry."""
import datetime
import email.utils
import sys
import unittest
from unittest import mock

import pytest

from async_acme import errors
from async_acme import messages
from async_acme import transport


def protocol_error(code: str, status: int = 400, **headers: str) -> errors.ProtocolError:
    return errors.ProtocolError(messages.Error.with_code(code, status=status), status, headers)


class RetryPolicyTest(unittest.TestCase):
    """Tests for async_acme.retry.RetryPolicy."""

    def test_backoff(self):
        from async_acme.retry import RetryPolicy
        policy = RetryPolicy(delay=1.0, factor=2.0, max_delay=5.0)
        assert [policy.backoff(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]

    def test_clamp(self):
        from async_acme.retry import RetryPolicy
        policy = RetryPolicy(max_retry_after=10.0)
        assert policy.clamp(3.0) == 3.0
        assert policy.clamp(3600.0) == 10.0
        assert policy.clamp(-1.0) == 0.0

    def test_invalid_attempts(self):
        from async_acme.retry import RetryPolicy
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_repr(self):
        from async_acme.retry import RetryPolicy
        assert repr(RetryPolicy()).startswith('RetryPolicy(max_attempts=5, ')


class RetryAfterTest(unittest.TestCase):
    """Tests for async_acme.retry.retry_after."""

    def test_missing(self):
        from async_acme.retry import retry_after
        assert retry_after({}, 7.0) == 7.0

    def test_seconds(self):
        from async_acme.retry import retry_after
        assert retry_after({'Retry-After': '50'}, 7.0) == 50.0

    def test_http_date(self):
        from async_acme.retry import retry_after
        when = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=120)
        value = email.utils.format_datetime(when, usegmt=True)
        assert 100.0 < retry_after({'Retry-After': value}, 7.0) <= 120.0

    def test_http_date_in_the_past(self):
        from async_acme.retry import retry_after
        assert retry_after({'Retry-After': 'Fri, 31 Dec 1999 23:59:59 GMT'}, 7.0) == 0.0

    def test_garbage(self):
        from async_acme.retry import retry_after
        assert retry_after({'Retry-After': 'foooo'}, 7.0) == 7.0

    def test_overflow(self):
        from async_acme.retry import retry_after
        assert retry_after({'Retry-After': 'Tue, 116 Feb 2016 11:50:00 MST'}, 7.0) == 7.0


class RetrierCallTest(unittest.IsolatedAsyncioTestCase):
    """Tests for async_acme.retry.Retrier.call."""

    @pytest.fixture(autouse=True)
    def _sleep(self, mock_sleep):
        self.sleep = mock_sleep

    def setUp(self):
        from async_acme.retry import Retrier
        from async_acme.retry import RetryPolicy
        self.retrier = Retrier(RetryPolicy(max_attempts=3, delay=1.0, factor=2.0,
                                           max_retry_after=30.0, max_bad_nonce=2))
        self.operation = mock.AsyncMock(return_value='done')

    async def test_success(self):
        assert await self.retrier.call(self.operation) == 'done'
        self.operation.assert_awaited_once_with()
        self.sleep.assert_not_called()

    async def test_transport_error_backoff(self):
        failure = errors.TransportError('https://ca.example', 'reset')
        self.operation.side_effect = [failure, failure, 'done']
        assert await self.retrier.call(self.operation) == 'done'
        assert self.sleep.await_args_list == [mock.call(1.0), mock.call(2.0)]

    async def test_transport_error_exhausted(self):
        self.operation.side_effect = errors.TransportError('https://ca.example', 'reset')
        with pytest.raises(errors.TransportError):
            await self.retrier.call(self.operation)
        assert self.operation.await_count == 3

    async def test_nonce_error_retried(self):
        self.operation.side_effect = [errors.MissingNonce({}), 'done']
        assert await self.retrier.call(self.operation) == 'done'
        assert self.operation.await_count == 2

    async def test_bad_nonce_retried_immediately(self):
        self.operation.side_effect = [protocol_error('badNonce'), 'done']
        assert await self.retrier.call(self.operation) == 'done'
        self.sleep.assert_not_called()

    async def test_bad_nonce_does_not_consume_attempts(self):
        transient = errors.TransportError('https://ca.example', 'reset')
        self.operation.side_effect = [transient, protocol_error('badNonce'),
                                      protocol_error('badNonce'), transient, 'done']
        assert await self.retrier.call(self.operation) == 'done'

    async def test_bad_nonce_bounded(self):
        self.operation.side_effect = protocol_error('badNonce')
        with pytest.raises(errors.ProtocolError):
            await self.retrier.call(self.operation)
        assert self.operation.await_count == 3

    async def test_rate_limited_waits_retry_after(self):
        self.operation.side_effect = [
            protocol_error('rateLimited', 429, **{'Retry-After': '12'}), 'done']
        assert await self.retrier.call(self.operation) == 'done'
        self.sleep.assert_awaited_once_with(12.0)

    async def test_rate_limited_clamped(self):
        self.operation.side_effect = [
            protocol_error('rateLimited', 429, **{'Retry-After': '86400'}), 'done']
        assert await self.retrier.call(self.operation) == 'done'
        self.sleep.assert_awaited_once_with(30.0)

    async def test_status_429_without_code(self):
        problem = messages.Error(detail='slow down')
        self.operation.side_effect = [errors.ProtocolError(problem, 429), 'done']
        assert await self.retrier.call(self.operation) == 'done'
        self.sleep.assert_awaited_once_with(1.0)

    async def test_rate_limited_exhausted(self):
        self.operation.side_effect = protocol_error('rateLimited', 429)
        with pytest.raises(errors.ProtocolError):
            await self.retrier.call(self.operation)
        assert self.operation.await_count == 3

    async def test_other_problem_propagates(self):
        self.operation.side_effect = protocol_error('malformed')
        with pytest.raises(errors.ProtocolError):
            await self.retrier.call(self.operation)
        self.operation.assert_awaited_once_with()

    async def test_other_errors_propagate(self):
        self.operation.side_effect = errors.ConflictError('https://ca.example/acct/1')
        with pytest.raises(errors.ConflictError):
            await self.retrier.call(self.operation)
        self.operation.assert_awaited_once_with()


class RetrierPollTest(unittest.IsolatedAsyncioTestCase):
    """Tests for async_acme.retry.Retrier.poll."""

    @pytest.fixture(autouse=True)
    def _sleep(self, mock_sleep):
        self.sleep = mock_sleep

    def setUp(self):
        from async_acme.retry import Retrier
        from async_acme.retry import RetryPolicy
        self.retrier = Retrier(poll_policy=RetryPolicy(max_attempts=4, delay=3.0,
                                                       max_retry_after=20.0))

    async def test_settles(self):
        fetch = mock.AsyncMock(side_effect=[
            ('pending', transport.Response(200, {})),
            ('pending', transport.Response(200, {'Retry-After': '5'})),
            ('valid', transport.Response(200, {})),
        ])
        result = await self.retrier.poll(fetch, lambda status: status == 'valid')
        assert result == 'valid'
        assert self.sleep.await_args_list == [mock.call(3.0), mock.call(5.0)]

    async def test_timeout(self):
        fetch = mock.AsyncMock(return_value=('pending', transport.Response(200, {})))
        with pytest.raises(errors.TimeoutError) as info:
            await self.retrier.poll(fetch, lambda status: status == 'valid',
                                    uri='https://ca.example/order/1')
        assert info.value.attempts == 4
        assert info.value.uri == 'https://ca.example/order/1'
        assert fetch.await_count == 4
        assert self.sleep.await_count == 3

    async def test_max_time(self):
        from async_acme.retry import Retrier
        from async_acme.retry import RetryPolicy
        retrier = Retrier(poll_policy=RetryPolicy(max_attempts=100, delay=10.0, max_time=25.0))
        fetch = mock.AsyncMock(return_value=('pending', transport.Response(200, {})))
        with mock.patch('asyncio.get_running_loop') as mock_loop:
            clock = iter(range(0, 1000, 10))
            mock_loop.return_value.time.side_effect = lambda: next(clock)
            with pytest.raises(errors.TimeoutError):
                await retrier.poll(fetch, lambda status: False)
        assert fetch.await_count < 100


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
