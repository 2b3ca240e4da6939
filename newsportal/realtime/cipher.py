"""Symmetric envelope encryption for WebSocket frames.

Wire format (shared with existing browser/Node clients):

    {"encrypted": true, "data": "<iv_hex>:<ciphertext_hex>"}

AES-256-CBC with PKCS7 padding and a fresh 16-byte IV per message. The key is
a static 32-byte secret shared with clients out of band.
"""

from __future__ import annotations

import json
import os
from typing import Any, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from newsportal.utils.logger import get_logger

logger = get_logger(__name__)

_KEY_BYTES = 32
_IV_BYTES = 16
_BLOCK_BITS = 128


class CipherError(Exception):
    """Raised when a payload cannot be decrypted or is not a valid envelope."""


class MessageCipher:
    """AES-256-CBC encrypt/decrypt of text payloads.

    Args:
        key_hex: 64 hex characters. None generates a random key for this
                 process only (logged as a WARNING).
    """

    def __init__(self, key_hex: Optional[str] = None) -> None:
        if key_hex is None:
            key = os.urandom(_KEY_BYTES)
            logger.warning(
                "No WebSocket encryption key configured — generated an ephemeral key; "
                "clients cannot decrypt frames across restarts"
            )
        else:
            try:
                key = bytes.fromhex(key_hex)
            except ValueError as exc:
                raise ValueError("encryption key must be hex encoded") from exc
            if len(key) != _KEY_BYTES:
                raise ValueError(f"encryption key must be {_KEY_BYTES} bytes, got {len(key)}")
        self._key = key

    @property
    def key_hex(self) -> str:
        return self._key.hex()

    def encrypt(self, text: str) -> str:
        """Return ``iv_hex:ciphertext_hex`` for ``text``."""
        iv = os.urandom(_IV_BYTES)
        padder = padding.PKCS7(_BLOCK_BITS).padder()
        padded = padder.update(text.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, data: str) -> str:
        """Inverse of encrypt().

        Raises:
            CipherError: Malformed envelope, wrong key, or bad padding.
        """
        iv_hex, sep, ct_hex = data.partition(":")
        if not sep:
            raise CipherError("encrypted payload must be '<iv>:<ciphertext>'")
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ct_hex)
        except ValueError as exc:
            raise CipherError("encrypted payload is not hex encoded") from exc
        if len(iv) != _IV_BYTES or not ciphertext or len(ciphertext) % (_BLOCK_BITS // 8):
            raise CipherError("encrypted payload has an invalid length")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
        try:
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise CipherError("could not decrypt payload") from exc

    # ── Envelopes ─────────────────────────────────────────────────────────────

    def seal(self, message: dict[str, Any]) -> dict[str, Any]:
        """Wrap a JSON-serialisable message in an encrypted envelope."""
        return {"encrypted": True, "data": self.encrypt(json.dumps(message))}

    def open(self, envelope: dict[str, Any]) -> dict[str, Any]:
        """Decrypt an envelope back into the inner message dict.

        Raises:
            CipherError: Not an envelope, undecryptable, or inner JSON is not an object.
        """
        data = envelope.get("data")
        if envelope.get("encrypted") is not True or not isinstance(data, str):
            raise CipherError("message is not an encrypted envelope")
        try:
            inner = json.loads(self.decrypt(data))
        except json.JSONDecodeError as exc:
            raise CipherError("decrypted payload is not JSON") from exc
        if not isinstance(inner, dict):
            raise CipherError("decrypted payload must be a JSON object")
        return inner


def is_envelope(message: Any) -> bool:
    return isinstance(message, dict) and message.get("encrypted") is True and "data" in message
