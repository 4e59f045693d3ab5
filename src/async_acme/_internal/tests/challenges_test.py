"""Tests for async_acme.challenges."""
import hashlib
import sys
import unittest

import josepy as jose
import pytest

from async_acme._internal.tests import test_util

KEY = jose.JWKRSA(key=test_util.generate_rsa_key())
TOKEN = 'evaGxfADs6pSRb2LAv9IZf17Dt3juxGJ-PCt92wr-oA'


def thumbprint(key: jose.JWK) -> str:
    return jose.b64encode(key.thumbprint()).decode()


class ChallengeTest(unittest.TestCase):

    def test_from_json_unrecognized(self):
        from async_acme.challenges import Challenge
        from async_acme.challenges import UnrecognizedChallenge
        chall = UnrecognizedChallenge({"type": "foo"})
        assert chall == Challenge.from_json(chall.jobj)


class UnrecognizedChallengeTest(unittest.TestCase):

    def setUp(self):
        from async_acme.challenges import UnrecognizedChallenge
        self.jobj = {"type": "dns-account-01", "token": TOKEN}
        self.chall = UnrecognizedChallenge(self.jobj)

    def test_typ(self):
        assert self.chall.typ == 'dns-account-01'

    def test_to_partial_json(self):
        assert self.jobj == self.chall.to_partial_json()

    def test_from_json(self):
        from async_acme.challenges import UnrecognizedChallenge
        assert self.chall == UnrecognizedChallenge.from_json(self.jobj)


class KeyAuthorizationChallengeTest(unittest.TestCase):

    def setUp(self):
        from async_acme.challenges import HTTP01
        self.chall = HTTP01(token=jose.decode_b64jose(TOKEN))

    def test_key_authorization(self):
        assert self.chall.key_authorization(KEY) == f'{TOKEN}.{thumbprint(KEY)}'

    def test_key_authorization_depends_on_key(self):
        other = jose.JWKEC(key=test_util.generate_ec_key())
        assert self.chall.key_authorization(KEY) != self.chall.key_authorization(other)

    def test_response(self):
        from async_acme.challenges import HTTP01Response
        response = self.chall.response(KEY)
        assert isinstance(response, HTTP01Response)
        assert response.key_authorization == self.chall.key_authorization(KEY)


class DNS01Test(unittest.TestCase):

    def setUp(self):
        from async_acme.challenges import DNS01
        self.msg = DNS01(token=jose.decode_b64jose(TOKEN))
        self.jmsg = {
            'type': 'dns-01',
            'token': TOKEN,
        }

    def test_validation_domain_name(self):
        assert '_acme-challenge.www.example.com' == \
            self.msg.validation_domain_name('www.example.com')

    def test_validation(self):
        key_authz = f'{TOKEN}.{thumbprint(KEY)}'
        expected = jose.b64encode(hashlib.sha256(key_authz.encode()).digest()).decode()
        assert expected == self.msg.validation(KEY)

    def test_validation_same_for_public_key(self):
        assert self.msg.validation(KEY) == self.msg.validation(KEY.public_key())

    def test_to_partial_json(self):
        assert self.jmsg == self.msg.to_partial_json()

    def test_from_json(self):
        from async_acme.challenges import DNS01
        assert self.msg == DNS01.from_json(self.jmsg)

    def test_from_json_hashable(self):
        from async_acme.challenges import DNS01
        hash(DNS01.from_json(self.jmsg))


class HTTP01ResponseTest(unittest.TestCase):

    def setUp(self):
        from async_acme.challenges import HTTP01
        from async_acme.challenges import HTTP01Response
        self.msg = HTTP01Response(key_authorization='foo')
        self.jmsg = {
            'type': 'http-01',
            'keyAuthorization': 'foo',
        }
        self.chall = HTTP01(token=(b'x' * 16))
        self.response = self.chall.response(KEY)

    def test_to_partial_json(self):
        assert {} == self.msg.to_partial_json()

    def test_from_json(self):
        from async_acme.challenges import HTTP01Response
        assert self.msg == HTTP01Response.from_json(self.jmsg)

    def test_from_json_hashable(self):
        from async_acme.challenges import HTTP01Response
        hash(HTTP01Response.from_json(self.jmsg))

    def test_response_key_authorization(self):
        assert self.response.key_authorization == self.chall.key_authorization(KEY)


class HTTP01Test(unittest.TestCase):

    def setUp(self):
        from async_acme.challenges import HTTP01
        self.msg = HTTP01(token=jose.decode_b64jose(TOKEN))
        self.jmsg = {
            'type': 'http-01',
            'token': TOKEN,
        }

    def test_path(self):
        assert self.msg.path == '/.well-known/acme-challenge/' + TOKEN

    def test_uri(self):
        assert 'http://example.com/.well-known/acme-challenge/' + TOKEN == \
            self.msg.uri('example.com')

    def test_validation(self):
        assert self.msg.validation(KEY) == f'{TOKEN}.{thumbprint(KEY)}'

    def test_to_partial_json(self):
        assert self.jmsg == self.msg.to_partial_json()

    def test_from_json(self):
        from async_acme.challenges import HTTP01
        assert self.msg == HTTP01.from_json(self.jmsg)

    def test_from_json_short_token(self):
        from async_acme.challenges import HTTP01
        with pytest.raises(jose.DeserializationError):
            HTTP01.from_json({'type': 'http-01', 'token': 'abc'})


class TLSALPN01Test(unittest.TestCase):

    def setUp(self):
        from async_acme.challenges import TLSALPN01
        self.msg = TLSALPN01(token=jose.decode_b64jose(TOKEN))

    def test_validation(self):
        key_authz = f'{TOKEN}.{thumbprint(KEY)}'
        assert self.msg.validation(KEY) == hashlib.sha256(key_authz.encode()).digest()

    def test_from_json(self):
        from async_acme.challenges import Challenge
        from async_acme.challenges import TLSALPN01
        assert isinstance(
            Challenge.from_json({'type': 'tls-alpn-01', 'token': TOKEN}), TLSALPN01)

    def test_response(self):
        from async_acme.challenges import TLSALPN01Response
        response = self.msg.response(KEY)
        assert isinstance(response, TLSALPN01Response)
        assert response.key_authorization == f'{TOKEN}.{thumbprint(KEY)}'


class JWSPayloadRFC8555Compliant(unittest.TestCase):
    """Test for RFC8555 compliance of JWS generated from resources/challenges"""
    def test_challenge_payload(self):
        from async_acme.challenges import HTTP01
        response = HTTP01(token=b'x' * 16).response(KEY)

        jobj = response.json_dumps(indent=2).encode()
        # RFC8555 states that challenge responses must have an empty payload.
        assert jobj == b'{}'


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
