"""
rp_auth/cose.py

COSE_Key decoding and signature verification through ``fido2.cose``.

Credential public keys arrive as COSE_Key CBOR maps inside the attested
credential data. We store the encoded map as the public key and turn it into
a ``fido2.cose.CoseKey`` only when verifying.

Supported algorithms:
  - ES256 (-7):   EC2 key, P-256, ECDSA with SHA-256 (DER signature)
  - EdDSA (-8):   OKP key, Ed25519
  - RS256 (-257): RSA key, PKCS#1 v1.5 with SHA-256
"""

from __future__ import annotations

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from fido2.cose import CoseKey

from .authdata import PARSE_ERRORS, decode_cbor

COSE_ALG_ES256 = -7
COSE_ALG_EDDSA = -8
COSE_ALG_RS256 = -257

# alg -> (COSE kty, cryptography key type that may carry it)
_KEY_TYPES = {
    COSE_ALG_ES256: (2, ec.EllipticCurvePublicKey),
    COSE_ALG_EDDSA: (1, ed25519.Ed25519PublicKey),
    COSE_ALG_RS256: (3, rsa.RSAPublicKey),
}


class UnsupportedKey(ValueError):
    pass


def load_cose_key(cose_bytes: bytes) -> CoseKey:
    """Decode COSE_Key bytes into a CoseKey of a supported algorithm."""
    m = decode_cbor(cose_bytes)
    if not isinstance(m, dict):
        raise UnsupportedKey("COSE key must be a map")

    alg = m.get(3)
    if alg not in _KEY_TYPES or m.get(1) != _KEY_TYPES[alg][0]:
        raise UnsupportedKey(f"unsupported COSE key (kty={m.get(1)}, alg={alg})")
    return CoseKey.parse(m)


def key_from_certificate(alg, public_key) -> CoseKey:
    """Wrap an attestation certificate key as a CoseKey for ``alg``."""
    if alg not in _KEY_TYPES:
        raise UnsupportedKey(f"unsupported attestation alg {alg}")
    if not isinstance(public_key, _KEY_TYPES[alg][1]):
        raise UnsupportedKey(f"alg {alg} does not match key type {type(public_key).__name__}")
    return CoseKey.for_alg(alg).from_cryptography_key(public_key)


def verify_signature(key: CoseKey, signature: bytes, data: bytes) -> bool:
    """
    Verify ``signature`` over ``data``. Returns False on a bad signature;
    raises UnsupportedKey when the key material itself is unusable
    (wrong curve, point not on the curve, missing coordinates).
    """
    try:
        key.verify(data, signature)
    except InvalidSignature:
        return False
    except PARSE_ERRORS as e:
        raise UnsupportedKey(f"key unusable: {e!r}") from e
    return True
