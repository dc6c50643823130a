"""
Webhook signature verification.

The HMAC is computed over the exact raw request bytes; verifying a
re-serialized JSON body would break the signature.
"""

import base64
import binascii
import hashlib
import hmac
import re
from typing import Optional

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


def _decode_signature(header: str) -> Optional[bytes]:
    """Decode a hex (optionally `sha256=`-prefixed) or base64 signature."""
    value = header.strip()
    if value.lower().startswith("sha256="):
        value = value[len("sha256="):]
    if not value:
        return None

    if len(value) % 2 == 0 and _HEX_RE.match(value):
        return bytes.fromhex(value)

    padded = value + "=" * (-len(value) % 4)
    for decoder in (base64.b64decode, base64.urlsafe_b64decode):
        try:
            return decoder(padded.encode("ascii"))
        except (binascii.Error, ValueError):
            continue
    return None


def compute_signature(raw: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of `raw`; what a well-behaved sender puts in the header."""
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def verify_signature(raw: bytes, header: Optional[str], secret: Optional[str]) -> bool:
    """
    Constant-time check of `header` against HMAC-SHA256(secret, raw).

    Never raises: a missing header or secret, an undecodable signature or a
    length mismatch all return False.
    """
    if not header or not secret or raw is None:
        return False

    provided = _decode_signature(header)
    if provided is None:
        return False

    expected = hmac.new(secret.encode(), bytes(raw), hashlib.sha256).digest()
    if len(provided) != len(expected):
        return False

    return hmac.compare_digest(expected, provided)
