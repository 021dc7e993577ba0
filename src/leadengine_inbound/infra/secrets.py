"""Encryption at rest for poll message secrets.

Poll creation events carry a ``messageSecret`` needed to decrypt future
votes. It is kept in the poll runtime registry only in encrypted form.

Security:
- AES-256-GCM, key from POLL_SECRET_KEY
- Sealed form is a versioned dict (v, iv, tag, ciphertext), base64 fields
- Never logged; only the sha256 fingerprint may appear in logs
"""

from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from leadengine_inbound.config import get_poll_secret_key

SEALED_VERSION = 1
_TAG_LEN = 16


class SecretDecryptionError(Exception):
    """Raised when a sealed secret cannot be opened."""

    pass


def seal_secret(secret: bytes, key: bytes | None = None) -> dict[str, object]:
    """Encrypt ``secret`` with AES-256-GCM.

    Args:
        secret: Raw secret bytes.
        key: Optional 32-byte key; defaults to POLL_SECRET_KEY.

    Returns:
        Dict with version, iv, tag and ciphertext (base64).
    """
    aesgcm = AESGCM(key or get_poll_secret_key())
    iv = os.urandom(12)
    sealed = aesgcm.encrypt(iv, secret, None)
    ciphertext, tag = sealed[:-_TAG_LEN], sealed[-_TAG_LEN:]
    return {
        "v": SEALED_VERSION,
        "iv": base64.b64encode(iv).decode(),
        "tag": base64.b64encode(tag).decode(),
        "ciphertext": base64.b64encode(ciphertext).decode(),
    }


def open_secret(sealed: dict[str, object], key: bytes | None = None) -> bytes:
    """Decrypt a value produced by :func:`seal_secret`.

    Raises:
        SecretDecryptionError: On version mismatch, malformed fields or a
            failed authentication tag.
    """
    if sealed.get("v") != SEALED_VERSION:
        raise SecretDecryptionError("unsupported sealed secret version")
    try:
        iv = base64.b64decode(str(sealed["iv"]))
        tag = base64.b64decode(str(sealed["tag"]))
        ciphertext = base64.b64decode(str(sealed["ciphertext"]))
    except (KeyError, ValueError) as exc:
        raise SecretDecryptionError("malformed sealed secret") from exc

    aesgcm = AESGCM(key or get_poll_secret_key())
    try:
        return aesgcm.decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise SecretDecryptionError("sealed secret failed authentication") from exc
