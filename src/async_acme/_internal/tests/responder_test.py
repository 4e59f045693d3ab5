"""Tests for async_acme.responder."""
import sys
import unittest

import josepy as jose
import pytest

from async_acme import challenges
from async_acme import messages
from async_acme._internal.tests import test_util

KEY = jose.JWKEC(key=test_util.generate_ec_key())


def make_achall(chall):
    from async_acme.responder import AnnotatedChallenge
    challb = messages.ChallengeBody(uri='https://ca.example/chall/1', chall=chall,
                                    status=messages.STATUS_PENDING)
    return AnnotatedChallenge(challb, messages.Identifier.from_value('example.com'), KEY)


class AnnotatedChallengeTest(unittest.TestCase):
    """Tests for async_acme.responder.AnnotatedChallenge."""

    def setUp(self):
        self.chall = challenges.DNS01(token=b'x' * 16)
        self.achall = make_achall(self.chall)

    def test_proxies(self):
        assert self.achall.chall is self.chall
        assert self.achall.typ == 'dns-01'
        assert self.achall.domain == 'example.com'

    def test_key_authorization(self):
        assert self.achall.key_authorization == self.chall.key_authorization(KEY)
        assert self.achall.response.key_authorization == self.achall.key_authorization

    def test_validation(self):
        assert self.achall.validation == self.chall.validation(KEY)

    def test_repr(self):
        assert repr(self.achall) == '<AnnotatedChallenge dns-01 for example.com>'


class PublishedTest(unittest.IsolatedAsyncioTestCase):
    """Tests for async_acme.responder.published."""

    def setUp(self):
        self.responder = test_util.RecordingResponder()
        self.achall = make_achall(challenges.HTTP01(token=b'y' * 16))
        self.token = self.achall.chall.encode('token')

    async def test_published_then_withdrawn(self):
        from async_acme.responder import published
        async with published(self.responder, self.achall) as handle:
            assert handle == self.token
            assert self.responder.published[self.token] == self.achall.validation
        assert self.responder.published == {}
        assert self.responder.history == [('publish', self.token), ('withdraw', self.token)]

    async def test_withdrawn_on_error(self):
        from async_acme.responder import published
        with pytest.raises(RuntimeError):
            async with published(self.responder, self.achall):
                raise RuntimeError('poll failed')
        assert self.responder.history[-1] == ('withdraw', self.token)
        assert self.responder.published == {}

    async def test_publish_failure_skips_withdraw(self):
        from async_acme.responder import published

        class FailingResponder(test_util.RecordingResponder):
            async def publish(self, achall):
                raise OSError('DNS API unavailable')

        failing = FailingResponder()
        with pytest.raises(OSError):
            async with published(failing, self.achall):
                pass  # pragma: no cover
        assert failing.history == []


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
