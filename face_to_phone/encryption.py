"""
Authenticated encryption shared by every persistence path.

Values are JSON-serialised and sealed with AES-GCM (256-bit key, fresh
96-bit IV per call). The storage slot ``<collection>:<key>`` is bound as
associated data, so a ciphertext only opens in the slot it was written to.
"""
import hashlib
import hmac
import json
import logging
import os
import time
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .exceptions import EncryptionError, DecryptionError

logger = logging.getLogger(__name__)

KEY_SIZE_BYTES = 32
IV_SIZE_BYTES = 12


def generate_key() -> bytes:
    """Create fresh 256-bit key material."""
    return AESGCM.generate_key(bit_length=KEY_SIZE_BYTES * 8)


class EncryptionCodec:
    """AES-GCM codec producing ``{data, iv, timestamp}`` envelopes."""

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE_BYTES:
            raise EncryptionError(f"Encryption key must be {KEY_SIZE_BYTES} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)
        self._index_key = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE_BYTES,
            salt=None,
            info=b"face-to-phone blind index",
        ).derive(key)

    def encrypt(self, value: Any, context: str) -> Dict[str, Any]:
        """
        Encrypt a JSON-serialisable value.

        Args:
            value: Value to seal
            context: Storage slot bound as associated data

        Returns:
            Envelope with hex ciphertext, hex IV and creation time in ms
        """
        try:
            plaintext = json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")
            iv = os.urandom(IV_SIZE_BYTES)
            ciphertext = self._aesgcm.encrypt(iv, plaintext, context.encode("utf-8"))
        except (TypeError, ValueError, OverflowError) as e:
            raise EncryptionError(f"Failed to encrypt value for {context}: {str(e)}") from e

        return {
            "data": ciphertext.hex(),
            "iv": iv.hex(),
            "timestamp": int(time.time() * 1000),
        }

    def decrypt(self, envelope: Dict[str, Any], context: str) -> Any:
        """
        Open an envelope produced by :meth:`encrypt`.

        Raises:
            DecryptionError: malformed envelope, wrong key, wrong slot or tampering
        """
        try:
            iv = bytes.fromhex(envelope["iv"])
            ciphertext = bytes.fromhex(envelope["data"])
        except (KeyError, TypeError, ValueError) as e:
            raise DecryptionError(f"Malformed encrypted envelope for {context}") from e

        if len(iv) != IV_SIZE_BYTES:
            raise DecryptionError(f"Invalid IV length {len(iv)} for {context}")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext, context.encode("utf-8"))
        except InvalidTag as e:
            raise DecryptionError(f"Authentication failed while decrypting {context}") from e

        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecryptionError(f"Decrypted payload for {context} is not valid JSON") from e

    def index_token(self, collection: str, index: str, value: Any) -> str:
        """Keyed digest standing in for an index value, so indices never hold plaintext."""
        message = f"{collection}\x1f{index}\x1f{value}".encode("utf-8")
        return hmac.new(self._index_key, message, hashlib.sha256).hexdigest()[:32]
