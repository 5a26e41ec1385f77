import hashlib
import hmac
from typing import Iterable, Optional, TypeVar

SIGNATURE_PREFIX = "sha256="

T = TypeVar("T")


class SignatureError(Exception):
    """Webhook body does not match its X-Hub-Signature-256 header."""


def compute_signature(payload_body: bytes, secret_token: str) -> str:
    digest = hmac.new(
        secret_token.encode("utf-8"), msg=payload_body, digestmod=hashlib.sha256
    ).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(
    payload_body: bytes, secret_token: Optional[str], signature_header: Optional[str]
) -> bool:
    """
    Verify that the payload was sent from GitHub by validating the SHA256 signature.

    Args:
        payload_body: raw request body bytes
        secret_token: the webhook secret of the connection
        signature_header: the X-Hub-Signature-256 header value

    Returns:
        True if the signature is valid, False otherwise.
    """
    if not signature_header or not secret_token:
        return False

    expected_signature = compute_signature(payload_body, secret_token)
    return hmac.compare_digest(
        expected_signature.encode("utf-8"), signature_header.encode("utf-8")
    )


def match_signature(
    payload_body: bytes,
    signature_header: Optional[str],
    candidates: Iterable[T],
    secret_of,
) -> T:
    """
    Return the first candidate whose secret verifies the signature.

    Raises:
        SignatureError: when no candidate matches.
    """
    for candidate in candidates:
        if verify_signature(payload_body, secret_of(candidate), signature_header):
            return candidate
    raise SignatureError("Webhook signature mismatch")
