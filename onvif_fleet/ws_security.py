# ws_security.py
# Optional WS-Security UsernameToken (PasswordDigest) check for the SOAP
# services.

import base64
import binascii
import hashlib
import hmac
import logging

from .soap import WSSE, WSU, SoapFault, find_child, local_name

logger = logging.getLogger(__name__)

PASSWORD_DIGEST_TYPE = "#PasswordDigest"


def create_password_digest(password, nonce, created):
    """PasswordDigest = Base64(SHA-1(Base64Decode(Nonce) + Created + Password))"""
    nonce_bytes = base64.b64decode(nonce)
    digest = hashlib.sha1(nonce_bytes + created.encode('utf-8') + password.encode('utf-8')).digest()
    return base64.b64encode(digest).decode('ascii')


def _token_field(token, name, namespace):
    elem = token.find(f'{{{namespace}}}{name}')
    if elem is None:
        # Some clients put Created in the wsse namespace
        for child in token:
            if local_name(child.tag) == name:
                elem = child
                break
    return elem


class WSSecurityAuth:
    """Validates the UsernameToken of an inbound SOAP header."""

    def __init__(self, username, password):
        self.username = username
        self.password = password

    def validate_digest(self, header):
        """Return True if `header` carries a valid UsernameToken digest."""
        security = find_child(header, 'Security')
        token = find_child(security, 'UsernameToken')
        if token is None:
            logger.debug("No UsernameToken found in security header")
            return False

        username = _token_field(token, 'Username', WSSE)
        password = _token_field(token, 'Password', WSSE)
        nonce = _token_field(token, 'Nonce', WSSE)
        created = _token_field(token, 'Created', WSU)
        if any(elem is None for elem in (username, password, nonce, created)):
            logger.debug("UsernameToken is missing Username, Password, Nonce or Created")
            return False

        if (username.text or '').strip() != self.username:
            logger.debug(f"Username mismatch for {username.text!r}")
            return False

        password_type = password.get('Type', '')
        if password_type and not password_type.endswith(PASSWORD_DIGEST_TYPE):
            logger.debug(f"Unsupported password type {password_type}")
            return False

        try:
            expected = create_password_digest(self.password, (nonce.text or '').strip(), (created.text or '').strip())
        except (binascii.Error, ValueError):
            logger.debug("Nonce is not valid base64")
            return False

        supplied = (password.text or '').strip()
        if not hmac.compare_digest(expected.encode('ascii'), supplied.encode('utf-8')):
            logger.debug("Password digest mismatch")
            return False

        logger.debug(f"Authentication successful for user: {self.username}")
        return True

    def check(self, header):
        """Raise a NotAuthorized SoapFault unless `header` authenticates."""
        if find_child(header, 'Security') is None:
            logger.warning("No security header provided")
            raise SoapFault("Authentication required", subcode='ter:NotAuthorized')
        if not self.validate_digest(header):
            logger.warning("Authentication failed")
            raise SoapFault("Authentication failed", subcode='ter:NotAuthorized')
