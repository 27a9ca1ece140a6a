# rp_auth/encoding.py
#
# Base64 helpers shared by options serialization and response parsing.
# WebAuthn JSON carries every binary field as base64url without padding.

import base64
import binascii
import hashlib


def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """
    Decode URL-safe Base64 with optional missing padding.

    Rejects characters outside the urlsafe alphabet instead of silently
    discarding them.
    """
    if not isinstance(s, str):
        raise ValueError("base64url value must be a string")
    s = s.strip()
    s += "=" * (-len(s) % 4)
    try:
        return base64.b64decode(s.encode("ascii"), altchars=b"-_", validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64url: {e}") from e


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()
