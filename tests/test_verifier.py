import json
import os

import pytest
from fido2 import cbor

from authenticator import SoftwareAuthenticator, b64url, b64url_dec
from rp_auth.errors import (
    AttestationInvalid,
    ChallengeMismatch,
    OriginMismatch,
    SignatureInvalid,
)
from rp_auth.verifier import CredentialVerifier

ORIGIN = "https://login.example.com"
RP_ID = "example.com"


@pytest.fixture
def verifier():
    return CredentialVerifier(RP_ID, [ORIGIN])


@pytest.fixture
def challenge():
    return os.urandom(32)


def _create_options(challenge, rp_id=RP_ID):
    return {"challenge": b64url(challenge), "rp": {"id": rp_id}, "user": {"id": b64url(b"user-1")}}


def _register(verifier, auth, challenge):
    resp = auth.make_credential(_create_options(challenge))
    return verifier.verify_attestation(resp, challenge)


@pytest.mark.parametrize("fmt", ["none", "packed", "packed-x5c"])
def test_attestation_formats(verifier, challenge, fmt):
    auth = SoftwareAuthenticator(origin=ORIGIN, fmt=fmt)
    resp = auth.make_credential(_create_options(challenge))

    attested = verifier.verify_attestation(resp, challenge)

    assert attested.credential_id == b64url_dec(resp["rawId"])
    assert attested.sign_count == 0
    assert attested.fmt == ("packed" if fmt == "packed-x5c" else fmt)
    assert attested.aaguid == b"\x00" * 16


def test_attestation_with_eddsa_key(verifier, challenge):
    auth = SoftwareAuthenticator(origin=ORIGIN, alg="EdDSA", fmt="packed")
    attested = _register(verifier, auth, challenge)
    assert cbor.decode(attested.public_key)[3] == -8


def test_attestation_challenge_mismatch(verifier, challenge):
    auth = SoftwareAuthenticator(origin=ORIGIN)
    resp = auth.make_credential(_create_options(challenge))

    with pytest.raises(ChallengeMismatch):
        verifier.verify_attestation(resp, os.urandom(32))


def test_attestation_wrong_origin(verifier, challenge):
    auth = SoftwareAuthenticator(origin="https://evil.example.net")
    resp = auth.make_credential(_create_options(challenge))

    with pytest.raises(OriginMismatch):
        verifier.verify_attestation(resp, challenge)


def test_attestation_wrong_rp_id(verifier, challenge):
    auth = SoftwareAuthenticator(origin=ORIGIN)
    resp = auth.make_credential(_create_options(challenge, rp_id="evil.example.net"))

    with pytest.raises(OriginMismatch):
        verifier.verify_attestation(resp, challenge)


def test_packed_attestation_bad_signature(verifier, challenge):
    auth = SoftwareAuthenticator(origin=ORIGIN, fmt="packed")
    resp = auth.make_credential(_create_options(challenge))

    att = cbor.decode(b64url_dec(resp["response"]["attestationObject"]))
    att["attStmt"]["sig"] = bytes(reversed(att["attStmt"]["sig"]))
    resp["response"]["attestationObject"] = b64url(cbor.encode(att))

    with pytest.raises(SignatureInvalid):
        verifier.verify_attestation(resp, challenge)


def test_unsupported_attestation_format(verifier, challenge):
    auth = SoftwareAuthenticator(origin=ORIGIN, fmt="tpm")
    resp = auth.make_credential(_create_options(challenge))

    with pytest.raises(AttestationInvalid):
        verifier.verify_attestation(resp, challenge)


def test_raw_id_must_match_attested_id(verifier, challenge):
    auth = SoftwareAuthenticator(origin=ORIGIN)
    resp = auth.make_credential(_create_options(challenge))
    resp["rawId"] = b64url(os.urandom(32))

    with pytest.raises(AttestationInvalid):
        verifier.verify_attestation(resp, challenge)


def test_attestation_requires_user_verification_when_configured(challenge):
    strict = CredentialVerifier(RP_ID, [ORIGIN], require_user_verification=True)
    auth = SoftwareAuthenticator(origin=ORIGIN, user_verified=False)

    with pytest.raises(AttestationInvalid):
        _register(strict, auth, challenge)


@pytest.mark.parametrize(
    "mutate",
    [
        lambda r: r["response"].update(attestationObject="!!not-base64!!"),
        lambda r: r["response"].update(attestationObject=b64url(b"\xff\x00")),
        lambda r: r["response"].update(attestationObject=b64url(b"\x81" * 200_000)),
        lambda r: r["response"].update(attestationObject=b64url(b"\xc1\x00")),
        lambda r: r["response"].update(attestationObject=b64url(b"")),
        lambda r: r["response"].update(attestationObject=b64url(cbor.encode([1, 2, 3]))),
        lambda r: r["response"].update(clientDataJSON=b64url(b"{not json")),
        lambda r: r["response"].pop("clientDataJSON"),
    ],
)
def test_malformed_attestation_is_attestation_invalid(verifier, challenge, mutate):
    auth = SoftwareAuthenticator(origin=ORIGIN)
    resp = auth.make_credential(_create_options(challenge))
    mutate(resp)

    with pytest.raises(AttestationInvalid):
        verifier.verify_attestation(resp, challenge)


def test_assertion_returned_as_attestation_is_rejected(verifier, challenge):
    auth = SoftwareAuthenticator(origin=ORIGIN)
    resp = auth.make_credential(_create_options(challenge))
    cd = json.loads(b64url_dec(resp["response"]["clientDataJSON"]))
    cd["type"] = "webauthn.get"
    resp["response"]["clientDataJSON"] = b64url(json.dumps(cd).encode())

    with pytest.raises(AttestationInvalid):
        verifier.verify_attestation(resp, challenge)


# -----------------------------------------------------------------------------
# Assertions
# -----------------------------------------------------------------------------
@pytest.fixture
def enrolled(verifier, challenge):
    auth = SoftwareAuthenticator(origin=ORIGIN)
    attested = _register(verifier, auth, challenge)
    return auth, attested


def _request_options(challenge, credential_id):
    return {"challenge": b64url(challenge), "allowCredentials": [{"type": "public-key", "id": b64url(credential_id)}]}


def test_assertion_returns_reported_counter(verifier, enrolled):
    auth, attested = enrolled
    c2 = os.urandom(32)
    resp = auth.get_assertion(_request_options(c2, attested.credential_id))

    assert verifier.verify_assertion(resp, c2, attested.public_key) == 1


def test_assertion_signed_over_other_challenge(verifier, enrolled):
    auth, attested = enrolled
    bound, other = os.urandom(32), os.urandom(32)
    # cryptographically valid, but over a challenge the ceremony never issued
    resp = auth.get_assertion(_request_options(other, attested.credential_id))

    assert verifier.verify_assertion(resp, other, attested.public_key) == 1
    with pytest.raises(ChallengeMismatch):
        verifier.verify_assertion(resp, bound, attested.public_key)


def test_assertion_wrong_origin(verifier, enrolled):
    auth, attested = enrolled
    c2 = os.urandom(32)
    resp = auth.get_assertion(_request_options(c2, attested.credential_id), origin="https://example.org")

    with pytest.raises(OriginMismatch):
        verifier.verify_assertion(resp, c2, attested.public_key)


def test_assertion_tampered_authenticator_data(verifier, enrolled):
    auth, attested = enrolled
    c2 = os.urandom(32)
    resp = auth.get_assertion(_request_options(c2, attested.credential_id))
    ad = bytearray(b64url_dec(resp["response"]["authenticatorData"]))
    ad[-1] ^= 0x01  # bump the counter after signing
    resp["response"]["authenticatorData"] = b64url(bytes(ad))

    with pytest.raises(SignatureInvalid):
        verifier.verify_assertion(resp, c2, attested.public_key)


def test_assertion_with_other_key(verifier, enrolled, challenge):
    auth, attested = enrolled
    other = _register(verifier, SoftwareAuthenticator(origin=ORIGIN), challenge)
    c2 = os.urandom(32)
    resp = auth.get_assertion(_request_options(c2, attested.credential_id))

    with pytest.raises(SignatureInvalid):
        verifier.verify_assertion(resp, c2, other.public_key)


def test_assertion_truncated_authenticator_data(verifier, enrolled):
    auth, attested = enrolled
    c2 = os.urandom(32)
    resp = auth.get_assertion(_request_options(c2, attested.credential_id))
    resp["response"]["authenticatorData"] = b64url(b"\x00" * 10)

    with pytest.raises(SignatureInvalid):
        verifier.verify_assertion(resp, c2, attested.public_key)


def test_verifier_accepts_extra_origins(challenge):
    v = CredentialVerifier(RP_ID, [ORIGIN, "https://www.example.com"])
    auth = SoftwareAuthenticator(origin="https://www.example.com")
    assert _register(v, auth, challenge).sign_count == 0


def _with_extension_bytes(resp, ext: bytes):
    ad = bytearray(b64url_dec(resp["response"]["authenticatorData"]))
    ad[32] |= 0x80
    resp["response"]["authenticatorData"] = b64url(bytes(ad) + ext)


@pytest.mark.parametrize("ext", [b"\xff", b"\x81" * 200_000, b"\xa1\x01", b"\x5f"])
def test_assertion_with_garbage_extensions_is_signature_invalid(verifier, enrolled, ext):
    auth, attested = enrolled
    c2 = os.urandom(32)
    resp = auth.get_assertion(_request_options(c2, attested.credential_id))
    _with_extension_bytes(resp, ext)

    with pytest.raises(SignatureInvalid):
        verifier.verify_assertion(resp, c2, attested.public_key)


def test_assertion_with_trailing_bytes_is_signature_invalid(verifier, enrolled):
    auth, attested = enrolled
    c2 = os.urandom(32)
    resp = auth.get_assertion(_request_options(c2, attested.credential_id))
    ad = b64url_dec(resp["response"]["authenticatorData"])
    resp["response"]["authenticatorData"] = b64url(ad + b"\x00")

    with pytest.raises(SignatureInvalid):
        verifier.verify_assertion(resp, c2, attested.public_key)


def test_assertion_with_unusable_stored_key(verifier, enrolled):
    auth, attested = enrolled
    c2 = os.urandom(32)
    resp = auth.get_assertion(_request_options(c2, attested.credential_id))

    with pytest.raises(SignatureInvalid):
        verifier.verify_assertion(resp, c2, b"\xff\x00")


# -----------------------------------------------------------------------------
# RS256
# -----------------------------------------------------------------------------
@pytest.mark.parametrize("fmt", ["none", "packed"])
def test_rs256_attestation_and_assertion(verifier, challenge, fmt):
    auth = SoftwareAuthenticator(origin=ORIGIN, alg="RS256", fmt=fmt)
    attested = _register(verifier, auth, challenge)
    assert cbor.decode(attested.public_key)[3] == -257

    c2 = os.urandom(32)
    resp = auth.get_assertion(_request_options(c2, attested.credential_id))
    assert verifier.verify_assertion(resp, c2, attested.public_key) == 1

    resp["response"]["signature"] = b64url(b"\x00" * 256)
    with pytest.raises(SignatureInvalid):
        verifier.verify_assertion(resp, c2, attested.public_key)


def _rewrite_att_stmt(resp, **changes):
    att = cbor.decode(b64url_dec(resp["response"]["attestationObject"]))
    att["attStmt"].update(changes)
    resp["response"]["attestationObject"] = b64url(cbor.encode(att))


def test_x5c_alg_must_match_certificate_key_type(verifier, challenge):
    auth = SoftwareAuthenticator(origin=ORIGIN, fmt="packed-x5c")
    resp = auth.make_credential(_create_options(challenge))
    # EC attestation certificate claimed as RS256
    _rewrite_att_stmt(resp, alg=-257)

    with pytest.raises(AttestationInvalid):
        verifier.verify_attestation(resp, challenge)


def test_self_attestation_alg_must_match_credential(verifier, challenge):
    auth = SoftwareAuthenticator(origin=ORIGIN, alg="RS256", fmt="packed")
    resp = auth.make_credential(_create_options(challenge))
    _rewrite_att_stmt(resp, alg=-7)

    with pytest.raises(AttestationInvalid):
        verifier.verify_attestation(resp, challenge)
