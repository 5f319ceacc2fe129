"""Key custody for per-user owner keys.

Owner keys are encrypted with AES-256-CBC under a process-wide secret and
stored as ``iv_hex:ciphertext_hex``. A fresh IV is drawn for every call to
``protect``, so re-encrypting the same key never yields the same string.
"""

import base64
import hashlib
import os
import re
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from eth_account import Account

from fidg.exceptions import ConfigurationError, CustodyError

IV_LENGTH = 16
KEY_LENGTH = 32

_RAW_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

# PBKDF2 parameters for sign-up password hashes
PASSWORD_ITERATIONS = 100000
PASSWORD_SCHEME = "pbkdf2_sha256"


def parse_secret(secret: str) -> bytes:
    """Turn the configured custody secret into a 32-byte AES key.

    Accepts 64 hex characters or exactly 32 raw characters.
    """
    if not secret:
        raise ConfigurationError("Custody encryption key is not configured")

    if len(secret) == KEY_LENGTH * 2:
        try:
            return bytes.fromhex(secret)
        except ValueError:
            pass

    raw = secret.encode()
    if len(raw) != KEY_LENGTH:
        raise ConfigurationError(
            f"Custody encryption key must be {KEY_LENGTH} bytes or {KEY_LENGTH * 2} hex chars"
        )
    return raw


def generate_owner_key() -> tuple[str, str]:
    """Create a new owner keypair.

    Returns:
        Tuple of (checksummed address, 0x-prefixed private key hex)
    """
    account = Account.create()
    return account.address, "0x" + account.key.hex().removeprefix("0x")


def address_of(raw_key: str) -> str:
    """Derive the checksummed address controlled by a private key."""
    return Account.from_key(raw_key).address


class KeyVault:
    """Encrypts and decrypts owner keys.

    Usage:
        vault = KeyVault(secret)
        custody = vault.protect("0x...")
        raw_key = vault.reveal(custody)
    """

    def __init__(self, secret: str):
        self._key = parse_secret(secret)

    def protect(self, raw_key: str) -> str:
        """Encrypt a private key.

        Args:
            raw_key: 0x-prefixed private key hex

        Returns:
            Opaque custody string ``iv_hex:ciphertext_hex``
        """
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(raw_key.encode()) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def reveal(self, custody: str) -> str:
        """Decrypt a custody string back to the private key.

        Raises:
            CustodyError: If the value is malformed or the secret has changed
        """
        if not custody or ":" not in custody:
            raise CustodyError("Custody record is malformed")

        iv_hex, _, ciphertext_hex = custody.partition(":")
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError:
            raise CustodyError("Custody record is not valid hex")

        if len(iv) != IV_LENGTH or not ciphertext or len(ciphertext) % IV_LENGTH:
            raise CustodyError("Custody record has an invalid length")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        try:
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            raw_key = plaintext.decode()
        except ValueError:
            # Bad padding or non-UTF-8 output both mean a wrong secret
            raise CustodyError("Custody record could not be decrypted")

        if not _RAW_KEY_RE.match(raw_key):
            raise CustodyError("Custody record did not decrypt to a private key")

        return raw_key


def get_vault(secret: Optional[str] = None) -> KeyVault:
    """Get a vault using ENCRYPTION_KEY from settings unless a secret is given."""
    if secret is None:
        from fidg.config import get_settings

        secret = get_settings().encryption_key or ""
    return KeyVault(secret)


def hash_password(password: str, salt: Optional[bytes] = None) -> str:
    """Hash a sign-up password with PBKDF2-HMAC-SHA256."""
    if salt is None:
        salt = os.urandom(16)

    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode(),
        salt,
        PASSWORD_ITERATIONS,
        dklen=32,
    )
    return "$".join(
        [
            PASSWORD_SCHEME,
            str(PASSWORD_ITERATIONS),
            base64.b64encode(salt).decode(),
            base64.b64encode(digest).decode(),
        ]
    )

