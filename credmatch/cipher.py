"""
Password based encryption of the credential ledger.

The stored text is base64 of a small envelope:

    b'CMv1' | iterations (uint32, big endian) | salt (16 bytes) | fernet token

The key is derived from the master password with PBKDF2-HMAC-SHA256 and the
ledger is encrypted with Fernet, which authenticates the ciphertext, so a wrong
password or a damaged file is detected rather than decrypted into garbage.
"""

import base64
import binascii
import logging
import os
import struct

import attr
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .password import MasterPassword
from .utils import DecryptionError

log = logging.getLogger(__name__)

MAGIC = b'CMv1'
SALT_LENGTH = 16
HEADER = struct.Struct(f'>4sI{SALT_LENGTH}s')

# OWASP 2023 recommendation for PBKDF2-HMAC-SHA256
DEFAULT_ITERATIONS = 600_000
MAX_ITERATIONS = 10_000_000


@attr.s(frozen=True)
class Cipher:
    iterations: int = attr.ib(default=DEFAULT_ITERATIONS)

    @iterations.validator
    def _check_iterations(self, attribute, value):
        if not 1 <= value <= MAX_ITERATIONS:
            raise ValueError(f"PBKDF2 iterations must be between 1 and {MAX_ITERATIONS}")

    @staticmethod
    def fernet(password: MasterPassword, salt: bytes, iterations: int) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=iterations)
        return Fernet(base64.urlsafe_b64encode(kdf.derive(password.buffer)))

    def encrypt(self, password: MasterPassword, plaintext: str) -> str:
        """Encrypt text, returning base64 text safe to commit to git."""
        log.debug(f"Encrypting {len(plaintext)} characters")
        salt = os.urandom(SALT_LENGTH)
        token = self.fernet(password, salt, self.iterations).encrypt(plaintext.encode('utf-8'))
        envelope = HEADER.pack(MAGIC, self.iterations, salt) + base64.urlsafe_b64decode(token)
        return base64.encodebytes(envelope).decode('ascii')

    def decrypt(self, password: MasterPassword, text: str) -> str:
        """Decrypt text produced by encrypt(), raising DecryptionError on any failure."""
        try:
            envelope = base64.b64decode(''.join(text.split()), validate=True)
        except (binascii.Error, ValueError) as error:
            raise DecryptionError("store is not valid base64") from error

        if len(envelope) <= HEADER.size:
            raise DecryptionError("store is truncated")

        magic, iterations, salt = HEADER.unpack_from(envelope)
        if magic != MAGIC:
            raise DecryptionError("store was not written by credmatch")
        if not 1 <= iterations <= MAX_ITERATIONS:
            raise DecryptionError("store has an invalid key derivation header")

        log.debug(f"Decrypting with {iterations} PBKDF2 iterations")
        token = base64.urlsafe_b64encode(envelope[HEADER.size:])
        try:
            plaintext = self.fernet(password, salt, iterations).decrypt(token)
        except InvalidToken as error:
            raise DecryptionError() from error

        try:
            return plaintext.decode('utf-8')
        except UnicodeDecodeError as error:
            raise DecryptionError("decrypted data is not text") from error
