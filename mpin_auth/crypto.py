from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from mpin_auth.errors import DecryptionError
from mpin_auth.keys import KeyCustodian

SALT_BYTES = 32


def _oaep_padding() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


class TransportDecryptor:
    """Decrypts MPIN payloads that clients encrypted with the published key.

    Every failure mode collapses into one ``DecryptionError`` so callers
    cannot tell bad base64 from a padding failure.
    """

    def __init__(self, custodian: KeyCustodian) -> None:
        self._custodian = custodian

    def decrypt(self, ciphertext: str) -> str:
        try:
            raw = base64.b64decode(ciphertext, validate=True)
            plaintext = self._custodian.with_private_key(
                lambda private_key: private_key.decrypt(raw, _oaep_padding())
            )
            return plaintext.decode("utf-8")
        except (binascii.Error, TypeError, ValueError, InvalidKey, UnicodeDecodeError):
            raise DecryptionError() from None


def encrypt_for_transport(public_key_pem: bytes | str, plaintext: str) -> str:
    """Client-side counterpart of :class:`TransportDecryptor`."""
    if isinstance(public_key_pem, str):
        public_key_pem = public_key_pem.encode("ascii")
    public_key = serialization.load_pem_public_key(public_key_pem)
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise ValueError("Transport encryption requires an RSA public key.")
    ciphertext = public_key.encrypt(plaintext.encode("utf-8"), _oaep_padding())
    return base64.b64encode(ciphertext).decode("ascii")


class CredentialHasher:
    @staticmethod
    def new_salt() -> str:
        return secrets.token_bytes(SALT_BYTES).hex()

    @staticmethod
    def hash(pin: str, salt: str) -> str:
        return hashlib.sha512((salt + pin).encode("utf-8")).hexdigest()

    def verify(self, pin: str, digest: str, salt: str) -> bool:
        candidate = self.hash(pin, salt)
        try:
            expected = bytes.fromhex(digest)
        except (TypeError, ValueError):
            return False
        return hmac.compare_digest(bytes.fromhex(candidate), expected)
