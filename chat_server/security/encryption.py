"""Symmetric encryption of message content.

Content is encrypted with AES-256 in CBC mode using a fresh random IV for
every call. The stored envelope is ``<ivHex>:<ciphertextHex>``; ':' never
appears in hex so the envelope has exactly one delimiter.
"""
import logging
import os
import threading
from typing import Optional, Union

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from chat_server.exception import DecryptionError, ValidationError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
IV_BYTES = 16
BLOCK_BITS = 128
ENVELOPE_DELIMITER = ':'

_ephemeral_warned = False
_warn_lock = threading.Lock()


def _warn_ephemeral_key():
    global _ephemeral_warned
    with _warn_lock:
        if _ephemeral_warned:
            return
        _ephemeral_warned = True
    logger.warning(
        "ENCRYPTION_KEY is not configured - using an EPHEMERAL key. "
        "Messages stored by this process will NOT be decryptable after a restart. "
        "Set ENCRYPTION_KEY (64 hex characters) before running in production."
    )


def _coerce_key(key: Union[str, bytes]) -> bytes:
    if isinstance(key, str):
        try:
            key = bytes.fromhex(key.strip())
        except ValueError:
            raise ValueError("ENCRYPTION_KEY must be a hex string")
    if len(key) != KEY_BYTES:
        raise ValueError(f"ENCRYPTION_KEY must be {KEY_BYTES} bytes ({KEY_BYTES * 2} hex characters)")
    return key


class EncryptionCodec:
    """Encrypts and decrypts message payloads with a process-wide key."""

    def __init__(self, key: Optional[Union[str, bytes]] = None):
        if key:
            self._key = _coerce_key(key)
            self.ephemeral = False
        else:
            self._key = os.urandom(KEY_BYTES)
            self.ephemeral = True
            _warn_ephemeral_key()

    @classmethod
    def from_config(cls, cfg) -> 'EncryptionCodec':
        return cls(cfg.ENCRYPTION_KEY)

    @staticmethod
    def generate_key() -> str:
        """Return a new random key in the hex form ENCRYPTION_KEY expects."""
        return os.urandom(KEY_BYTES).hex()

    def encrypt(self, plaintext: str) -> str:
        if not isinstance(plaintext, str):
            raise TypeError("plaintext must be a string")
        try:
            data = plaintext.encode('utf-8')
        except UnicodeEncodeError:
            raise ValidationError("plaintext is not valid UTF-8 text")
        iv = os.urandom(IV_BYTES)
        padder = padding.PKCS7(BLOCK_BITS).padder()
        padded = padder.update(data) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}{ENVELOPE_DELIMITER}{ciphertext.hex()}"

    def decrypt(self, envelope: str) -> str:
        """Recover plaintext from an envelope.

        Raises:
            DecryptionError: the envelope is malformed, was produced with a
                different key, or does not decode to UTF-8 text.
        """
        if not isinstance(envelope, str) or envelope.count(ENVELOPE_DELIMITER) != 1:
            raise DecryptionError("Envelope must contain exactly one delimiter")
        iv_hex, ciphertext_hex = envelope.split(ENVELOPE_DELIMITER)
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError:
            raise DecryptionError("Envelope is not hex encoded")
        if len(iv) != IV_BYTES:
            raise DecryptionError("Invalid IV length")
        if not ciphertext or len(ciphertext) % (BLOCK_BITS // 8):
            raise DecryptionError("Invalid ciphertext length")

        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
            data = unpadder.update(padded) + unpadder.finalize()
            return data.decode('utf-8')
        except (ValueError, UnicodeDecodeError):
            # Wrong key shows up as bad padding or non-UTF-8 output
            raise DecryptionError("Content could not be decrypted with the configured key")
