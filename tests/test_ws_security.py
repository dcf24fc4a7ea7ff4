"""Tests for WS-Security UsernameToken digest checks."""

import base64
import hashlib
import xml.etree.ElementTree as ET

import pytest

from onvif_fleet.soap import SoapFault, find_child
from onvif_fleet.ws_security import WSSecurityAuth, create_password_digest

NONCE = base64.b64encode(b'0123456789abcdef').decode('ascii')
CREATED = '2024-05-01T12:00:00Z'


def security_header(username='admin', password='secret', nonce=NONCE, created=CREATED, digest=None,
                    password_type='http://docs.oasis-open.org/wss/2004/01/'
                                  'oasis-200401-wss-username-token-profile-1.0#PasswordDigest'):
    if digest is None:
        digest = create_password_digest(password, nonce, created)
    envelope = (
        '<s:Envelope xmlns:s="http://www.w3.org/2003/05/soap-envelope"'
        ' xmlns:wsse="http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"'
        ' xmlns:wsu="http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd">'
        '<s:Header><wsse:Security><wsse:UsernameToken>'
        f'<wsse:Username>{username}</wsse:Username>'
        f'<wsse:Password Type="{password_type}">{digest}</wsse:Password>'
        f'<wsse:Nonce>{nonce}</wsse:Nonce>'
        f'<wsu:Created>{created}</wsu:Created>'
        '</wsse:UsernameToken></wsse:Security></s:Header><s:Body/></s:Envelope>')
    return find_child(ET.fromstring(envelope), 'Header')


class TestPasswordDigest:

    def test_known_digest(self):
        expected = base64.b64encode(hashlib.sha1(b'0123456789abcdef' + CREATED.encode() + b'secret').digest())
        assert create_password_digest('secret', NONCE, CREATED) == expected.decode('ascii')


class TestWSSecurityAuth:

    def test_valid_digest(self):
        assert WSSecurityAuth('admin', 'secret').validate_digest(security_header())

    def test_wrong_password(self):
        auth = WSSecurityAuth('admin', 'secret')
        assert not auth.validate_digest(security_header(password='guess'))

    def test_wrong_username(self):
        auth = WSSecurityAuth('admin', 'secret')
        assert not auth.validate_digest(security_header(username='operator'))

    def test_plaintext_password_type_rejected(self):
        auth = WSSecurityAuth('admin', 'secret')
        header = security_header(digest='secret', password_type='http://docs.oasis-open.org/wss/2004/01/'
                                                                'oasis-200401-wss-username-token-profile-1.0'
                                                                '#PasswordText')
        assert not auth.validate_digest(header)

    def test_bad_nonce(self):
        auth = WSSecurityAuth('admin', 'secret')
        assert not auth.validate_digest(security_header(nonce='%%%', digest='abc'))

    def test_check_without_security_header(self):
        with pytest.raises(SoapFault) as excinfo:
            WSSecurityAuth('admin', 'secret').check(None)
        assert excinfo.value.subcode == 'ter:NotAuthorized'
        assert excinfo.value.reason == 'Authentication required'
        assert excinfo.value.http_status == 400

    def test_check_with_bad_digest(self):
        with pytest.raises(SoapFault, match='Authentication failed'):
            WSSecurityAuth('admin', 'secret').check(security_header(password='guess'))

    def test_check_passes(self):
        WSSecurityAuth('admin', 'secret').check(security_header())

    def test_non_ascii_digest_rejected(self):
        auth = WSSecurityAuth('admin', 'secret')
        assert not auth.validate_digest(security_header(digest='déadbeef'))
        with pytest.raises(SoapFault) as excinfo:
            auth.check(security_header(digest='déadbeef'))
        assert excinfo.value.subcode == 'ter:NotAuthorized'
