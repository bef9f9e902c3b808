"""Symmetric encryption at rest for third-party secrets.

Stored blobs are self-describing JSON so every record carries its own IV and
authentication tag:

    {"v": 1, "ciphertext": "<hex>", "iv": "<hex>", "tag": "<hex>"}

Two older formats are still readable so existing rows can be migrated without
a flag day (see ``credvault-server reencrypt-secrets``):

- unversioned GCM JSON: ``{"encrypted": ..., "iv": ..., "authTag": ...}``
- CBC API-key strings: ``"<iv hex>:<ciphertext hex>"``

Anything else is treated as legacy plaintext and returned unchanged with a
warning.
"""

import json
import logging
import re
import secrets
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from credvault_server.core.config import settings
from credvault_server.core.errors import DecryptionError, EncryptionError

logger = logging.getLogger(__name__)

BLOB_VERSION = 1
KEY_SIZE = 32  # AES-256
IV_SIZE = 12  # 96-bit nonce, recommended for GCM
TAG_SIZE = 16

_LEGACY_CBC_PATTERN = re.compile(r"^[0-9a-f]{32}:[0-9a-f]+$")


def derive_key(secret: str) -> bytes:
    """Normalize a configured secret to exactly 32 bytes.

    Short secrets are right-padded with ASCII "0", long ones truncated. This
    matches how existing blobs were written, so it must not change.
    """
    raw = secret.encode("utf-8")
    return raw.ljust(KEY_SIZE, b"0")[:KEY_SIZE]


class EncryptionService:
    """Encrypt and decrypt secrets for database storage."""

    def __init__(self, secret: str | None = None) -> None:
        """Initialize with an explicit secret, or the configured one.

        Raises:
            ValueError: If no key is configured in production
        """
        if secret is None:
            if not settings.encryption_key:
                logger.warning(
                    "No ENCRYPTION_KEY configured, using the development key. "
                    "Set ENCRYPTION_KEY before storing real credentials."
                )
            secret = settings.get_encryption_secret()
        elif len(secret) < KEY_SIZE:
            logger.warning("Encryption secret is shorter than 32 characters and will be padded")

        self._key = derive_key(secret)
        self._aesgcm = AESGCM(self._key)

    def encrypt(self, plaintext: str | None) -> str | None:
        """Encrypt a secret.

        Args:
            plaintext: Secret to protect

        Returns:
            JSON blob, or None for empty input

        Raises:
            EncryptionError: If the cipher fails
        """
        if not plaintext:
            return None

        iv = secrets.token_bytes(IV_SIZE)
        try:
            sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        except Exception as e:
            logger.error("Encryption failed: %s", type(e).__name__)
            raise EncryptionError() from e

        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return json.dumps(
            {
                "v": BLOB_VERSION,
                "ciphertext": ciphertext.hex(),
                "iv": iv.hex(),
                "tag": tag.hex(),
            },
            separators=(",", ":"),
        )

    def decrypt(self, blob: str | None) -> str | None:
        """Decrypt a stored blob.

        Args:
            blob: Value read from the database

        Returns:
            Plaintext, the value itself if it is legacy plaintext, or None for empty input

        Raises:
            DecryptionError: If the authentication tag does not verify
        """
        if not blob:
            return None

        parsed = _parse_blob(blob)
        if parsed is not None:
            ciphertext, iv, tag = parsed
            return self._open_gcm(ciphertext, iv, tag)

        if _LEGACY_CBC_PATTERN.match(blob):
            return self._open_legacy_cbc(blob)

        logger.warning("Found unencrypted data, consider re-encrypting for security")
        return blob

    def is_encrypted(self, value: str | None) -> bool:
        """Return True if value is in the current blob format."""
        if not value:
            return False
        try:
            data = json.loads(value)
        except ValueError:
            return False
        return isinstance(data, dict) and data.get("v") == BLOB_VERSION

    def reencrypt(self, value: str | None) -> str | None:
        """Decrypt any supported format and encrypt again in the current one."""
        return self.encrypt(self.decrypt(value))

    def _open_gcm(self, ciphertext: bytes, iv: bytes, tag: bytes) -> str:
        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except (InvalidTag, ValueError) as e:
            logger.error("Decryption failed: authentication tag did not verify")
            raise DecryptionError() from e
        return plaintext.decode("utf-8")

    def _open_legacy_cbc(self, blob: str) -> str:
        iv_hex, ciphertext_hex = blob.split(":", 1)
        try:
            decryptor = Cipher(
                algorithms.AES(self._key), modes.CBC(bytes.fromhex(iv_hex))
            ).decryptor()
            padded = decryptor.update(bytes.fromhex(ciphertext_hex)) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except ValueError as e:
            logger.error("Decryption of legacy CBC value failed")
            raise DecryptionError() from e


def _parse_blob(blob: str) -> tuple[bytes, bytes, bytes] | None:
    """Split a JSON blob into (ciphertext, iv, tag), or None if it is not one."""
    try:
        data: Any = json.loads(blob)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    if data.get("v") == BLOB_VERSION:
        fields = ("ciphertext", "iv", "tag")
    elif {"encrypted", "iv", "authTag"} <= data.keys():
        fields = ("encrypted", "iv", "authTag")
    else:
        return None

    try:
        ciphertext, iv, tag = (bytes.fromhex(str(data[field])) for field in fields)
    except (KeyError, ValueError) as e:
        raise DecryptionError("Malformed encrypted value") from e
    return ciphertext, iv, tag


# Global instance
encryption_service = EncryptionService()
