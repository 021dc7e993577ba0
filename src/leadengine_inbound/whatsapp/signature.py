"""HMAC-SHA256 signatures over raw webhook bodies."""

import hashlib
import hmac

SIGNATURE_HEADERS = (
    "X-Webhook-Signature",
    "X-Webhook-Signature-Sha256",
    "X-Signature",
    "X-Signature-Sha256",
)


class SignatureVerificationError(Exception):
    """Raised when HMAC signature verification fails."""

    pass


def compute_signature(payload_bytes: bytes, secret: str) -> str:
    return hmac.new(key=secret.encode("utf-8"), msg=payload_bytes, digestmod=hashlib.sha256).hexdigest()


def verify_signature(payload_bytes: bytes, signature_header: str, secret: str) -> None:
    """Verify a webhook body signature.

    The broker sends the lowercase hex digest, optionally as ``sha256=<hex>``.

    Raises:
        SignatureVerificationError: If signature is missing or does not match.
    """
    signature = (signature_header or "").strip().lower()
    if not signature:
        raise SignatureVerificationError("missing signature header")
    if signature.startswith("sha256="):
        signature = signature[7:]

    if not hmac.compare_digest(compute_signature(payload_bytes, secret).encode(), signature.encode("utf-8")):
        raise SignatureVerificationError("signature mismatch")
