"""Poll vote encryption.

Votes are encrypted by the voter's device with keys derived from the poll
creation message secret:

    keys       = HKDF-SHA256(secret, info, 64 bytes)
    aes_key    = keys[:32]
    mac_key    = keys[32:]
    encPayload = AES-256-CBC(aes_key, iv, PKCS7(plaintext)) || mac[:10]
    mac        = HMAC-SHA256(mac_key, iv || ciphertext)

The plaintext is a ``PollVoteMessage`` protobuf: field 1 carries one
repeated ``bytes`` entry per selected option (the option id, or the
SHA-256 of the option title).
"""

from __future__ import annotations

import hashlib
import hmac
import os
from typing import Iterable

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from leadengine_inbound.infra.hashing import b64url_decode
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context

from .models import PollOption

logger = get_logger(__name__)

POLL_VOTE_INFO = b"WhatsApp Poll Vote"
POLL_VOTE_INFO_V2 = b"WhatsApp Poll Vote V2"
MAC_LENGTH = 10
IV_LENGTH = 16
_BLOCK_BITS = 128


def _info_for(media_type: str | None) -> bytes:
    return POLL_VOTE_INFO_V2 if (media_type or "").lower() == "poll_v2" else POLL_VOTE_INFO


def derive_vote_keys(message_secret: bytes, media_type: str | None = "poll") -> tuple[bytes, bytes]:
    """Return ``(aes_key, mac_key)`` for a poll message secret."""
    material = HKDF(
        algorithm=hashes.SHA256(),
        length=64,
        salt=None,
        info=_info_for(media_type),
    ).derive(message_secret)
    return material[:32], material[32:]


def _mac(mac_key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    return hmac.new(mac_key, iv + ciphertext, hashlib.sha256).digest()[:MAC_LENGTH]


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data) or shift > 63:
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7


def _write_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def parse_vote_message(data: bytes) -> list[bytes] | None:
    """Read the repeated ``selectedOptions`` field; None on malformed input."""
    refs: list[bytes] = []
    pos = 0
    try:
        while pos < len(data):
            tag, pos = _read_varint(data, pos)
            field_number, wire_type = tag >> 3, tag & 0x07
            if wire_type == 0:
                _, pos = _read_varint(data, pos)
            elif wire_type == 1:
                pos += 8
            elif wire_type == 2:
                length, pos = _read_varint(data, pos)
                if pos + length > len(data):
                    return None
                if field_number == 1:
                    refs.append(data[pos : pos + length])
                pos += length
            elif wire_type == 5:
                pos += 4
            else:
                return None
            if pos > len(data):
                return None
    except ValueError:
        return None
    return refs


def encode_vote_message(refs: Iterable[bytes]) -> bytes:
    out = bytearray()
    for ref in refs:
        out += b"\x0a" + _write_varint(len(ref)) + ref
    return bytes(out)


def decrypt_poll_vote(
    enc_payload: bytes | None,
    enc_iv: bytes | None,
    message_secret: bytes | None,
    media_type: str | None = "poll",
) -> list[bytes] | None:
    """Decrypt a poll vote into option references.

    Returns:
        The selected option references, or None when key material is
        missing, the MAC does not verify, padding is invalid or the
        protobuf is malformed.
    """
    if not enc_payload or not enc_iv or not message_secret:
        return None
    if len(enc_iv) != IV_LENGTH or len(enc_payload) <= MAC_LENGTH:
        return None

    ciphertext, received_mac = enc_payload[:-MAC_LENGTH], enc_payload[-MAC_LENGTH:]
    if len(ciphertext) % (_BLOCK_BITS // 8):
        return None

    aes_key, mac_key = derive_vote_keys(message_secret, media_type)
    if not hmac.compare_digest(_mac(mac_key, enc_iv, ciphertext), received_mac):
        logger.warning(
            "poll_vote_mac_mismatch",
            extra={"extra_fields": safe_log_context(mediaType=media_type, payloadLength=len(enc_payload))},
        )
        return None

    decryptor = Cipher(algorithms.AES(aes_key), modes.CBC(enc_iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
    try:
        plaintext = unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        return None
    return parse_vote_message(plaintext)


def encrypt_poll_vote(
    refs: Iterable[bytes],
    message_secret: bytes,
    media_type: str | None = "poll",
    iv: bytes | None = None,
) -> tuple[bytes, bytes]:
    """Inverse of :func:`decrypt_poll_vote`. Returns ``(enc_payload, enc_iv)``."""
    iv = iv or os.urandom(IV_LENGTH)
    aes_key, mac_key = derive_vote_keys(message_secret, media_type)
    padder = padding.PKCS7(_BLOCK_BITS).padder()
    padded = padder.update(encode_vote_message(refs)) + padder.finalize()
    encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return ciphertext + _mac(mac_key, iv, ciphertext), iv


def option_hash(title: str) -> bytes:
    return hashlib.sha256(title.encode()).digest()


def _decoded_id(option_id: str) -> bytes | None:
    try:
        return b64url_decode(option_id)
    except ValueError:
        return None


def match_option_refs(refs: Iterable[bytes], options: Iterable[PollOption]) -> list[PollOption]:
    """Map decrypted references back to poll options.

    Each reference is compared with the option id decoded from URL-safe
    base64, then with SHA-256 of the option title. Unmatched references are
    dropped.
    """
    options = list(options)
    matched: list[PollOption] = []
    for ref in refs:
        found = next((option for option in options if _decoded_id(option.id) == ref), None)
        if found is None:
            found = next(
                (option for option in options if option.title and option_hash(option.title) == ref),
                None,
            )
        if found is not None and found not in matched:
            matched.append(found)
    return matched
