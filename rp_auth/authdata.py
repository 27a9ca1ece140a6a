"""
rp_auth/authdata.py

Parsers for the signed structures every ceremony carries, on top of
``fido2.webauthn`` and ``fido2.cbor``.

authenticatorData layout:
    0..31   rpIdHash   SHA-256(rp_id)
    32      flags      UP=0x01, UV=0x04, AT=0x40, ED=0x80
    33..36  signCount  unsigned 32-bit, big-endian
    37..    attestedCredentialData (if AT):
              aaguid (16) | credIdLen (2, BE) | credId | COSE_Key (CBOR)
            extensions (CBOR map, if ED)

clientDataJSON is UTF-8 JSON produced by the browser; we read type,
challenge (base64url), origin and crossOrigin.

fido2 reports malformed input with whatever its reader trips over (struct,
index, key, type errors, or RecursionError on deeply nested CBOR). Every
parser here turns those into ValueError so callers handle one type.
"""

from __future__ import annotations

import struct
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from fido2 import cbor
from fido2.webauthn import AuthenticatorData as _Fido2AuthenticatorData
from fido2.webauthn import CollectedClientData

FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_AT = 0x40
FLAG_ED = 0x80

PARSE_ERRORS = (ValueError, TypeError, KeyError, IndexError, struct.error, RecursionError)


@dataclass
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    aaguid: Optional[bytes] = None
    credential_id: Optional[bytes] = None
    credential_public_key: Optional[bytes] = None
    extensions: Optional[Dict[Any, Any]] = None

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_UP)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_UV)

    @property
    def has_attested_credential(self) -> bool:
        return bool(self.flags & FLAG_AT)


def decode_cbor(data: bytes) -> Any:
    """Decode exactly one CBOR item; trailing bytes are an error."""
    try:
        return cbor.decode(bytes(data))
    except PARSE_ERRORS as e:
        raise ValueError(f"invalid CBOR: {e!r}") from e


def parse_authenticator_data(data: bytes) -> AuthenticatorData:
    if len(data) < 37:
        raise ValueError("authenticator data too short")
    try:
        parsed = _Fido2AuthenticatorData(bytes(data))
    except PARSE_ERRORS as e:
        raise ValueError(f"authenticator data malformed: {e!r}") from e

    out = AuthenticatorData(
        rp_id_hash=bytes(parsed.rp_id_hash),
        flags=int(parsed.flags),
        sign_count=int(parsed.counter),
    )

    cred = parsed.credential_data
    if cred is not None:
        if not cred.credential_id:
            raise ValueError("credential id empty")
        out.aaguid = bytes(cred.aaguid)
        out.credential_id = bytes(cred.credential_id)
        # stored as the canonical encoding of the parsed key map
        out.credential_public_key = cbor.encode(dict(cred.public_key))

    if parsed.extensions is not None:
        # fido2 decodes a lone simple value (e.g. 0xff) without complaint
        if not isinstance(parsed.extensions, Mapping):
            raise ValueError("extensions must be a CBOR map")
        out.extensions = dict(parsed.extensions)

    return out


def parse_attestation_object(data: bytes) -> Tuple[str, dict, bytes]:
    """Split an attestationObject into (fmt, attStmt, authData)."""
    obj = decode_cbor(data)
    if not isinstance(obj, Mapping):
        raise ValueError("attestationObject must be a map")

    fmt = obj.get("fmt")
    att_stmt = obj.get("attStmt")
    auth_data = obj.get("authData")
    if not isinstance(fmt, str) or not isinstance(att_stmt, Mapping) or not isinstance(auth_data, bytes):
        raise ValueError("attestationObject requires fmt, attStmt and authData")
    return fmt, dict(att_stmt), auth_data


@dataclass
class ClientData:
    type: str
    challenge: bytes
    origin: str
    cross_origin: bool
    raw: bytes


def parse_client_data(raw: bytes) -> ClientData:
    try:
        cd = CollectedClientData(bytes(raw))
        ctype, challenge, origin = cd.type, cd.challenge, cd.origin
    except PARSE_ERRORS as e:
        raise ValueError(f"clientDataJSON malformed: {e!r}") from e

    if not isinstance(ctype, str) or not isinstance(origin, str):
        raise ValueError("clientDataJSON type and origin must be strings")

    return ClientData(
        type=ctype,
        challenge=bytes(challenge),
        origin=origin.rstrip("/"),
        cross_origin=bool(cd.cross_origin),
        raw=bytes(raw),
    )
