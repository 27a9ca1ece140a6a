"""
rp_auth/verifier.py

Attestation (registration) and assertion (login) verification.

Checks run in a fixed order and each failure raises its own error kind:

  1. clientDataJSON.type          -> malformed (AttestationInvalid / SignatureInvalid)
  2. clientDataJSON.challenge     -> ChallengeMismatch
  3. clientDataJSON.origin        -> OriginMismatch
  4. authenticatorData.rpIdHash   -> OriginMismatch
  5. UP / UV flags                -> malformed
  6. signature                    -> SignatureInvalid

Challenge and rpIdHash comparisons go through hmac.compare_digest.
The signed bytes are always authenticatorData || SHA-256(clientDataJSON).
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Iterable, Type, Union

from cryptography import x509

from .authdata import (
    AuthenticatorData,
    ClientData,
    parse_attestation_object,
    parse_authenticator_data,
    parse_client_data,
)
from .cose import UnsupportedKey, key_from_certificate, load_cose_key, verify_signature
from .encoding import b64url_decode, sha256
from .errors import (
    AttestationInvalid,
    ChallengeMismatch,
    OriginMismatch,
    SignatureInvalid,
    VerificationError,
)
from .models import AuthenticationResponse, RegistrationResponse

TYPE_CREATE = "webauthn.create"
TYPE_GET = "webauthn.get"


@dataclass
class AttestedCredential:
    credential_id: bytes
    public_key: bytes
    sign_count: int
    aaguid: bytes
    fmt: str


def _coerce(model, response):
    if isinstance(response, model):
        return response
    return model.model_validate(response)


class CredentialVerifier:
    def __init__(
        self,
        rp_id: str,
        origins: Iterable[str],
        require_user_verification: bool = False,
    ):
        self.rp_id = rp_id
        self.rp_id_hash = sha256(rp_id.encode("utf-8"))
        self.origins = frozenset(o.rstrip("/") for o in origins)
        self.require_user_verification = require_user_verification

    @classmethod
    def from_settings(cls, s) -> "CredentialVerifier":
        return cls(
            rp_id=s.RP_ID,
            origins=s.allowed_origins,
            require_user_verification=s.require_user_verification,
        )

    # -------------------------------------------------------------------------
    # Shared checks
    # -------------------------------------------------------------------------
    def _check_client_data(
        self,
        raw: bytes,
        expected_type: str,
        expected_challenge: bytes,
        malformed: Type[VerificationError],
    ) -> ClientData:
        try:
            cd = parse_client_data(raw)
        except ValueError as e:
            raise malformed(str(e)) from e

        if cd.type != expected_type:
            raise malformed(f"clientDataJSON.type must be {expected_type}")

        if not hmac.compare_digest(cd.challenge, bytes(expected_challenge)):
            raise ChallengeMismatch("challenge does not match the ceremony")

        if cd.cross_origin or cd.origin not in self.origins:
            raise OriginMismatch(f"unexpected origin {cd.origin!r}")

        return cd

    def _check_authenticator_data(
        self,
        raw: bytes,
        malformed: Type[VerificationError],
    ) -> AuthenticatorData:
        try:
            ad = parse_authenticator_data(raw)
        except ValueError as e:
            raise malformed(str(e)) from e

        if not hmac.compare_digest(ad.rp_id_hash, self.rp_id_hash):
            raise OriginMismatch("rpIdHash does not match configured RP id")

        if not ad.user_present:
            raise malformed("user presence flag not set")

        if self.require_user_verification and not ad.user_verified:
            raise malformed("user verification required")

        return ad

    @staticmethod
    def _decode(value: str, field: str, malformed: Type[VerificationError]) -> bytes:
        try:
            return b64url_decode(value)
        except ValueError as e:
            raise malformed(f"{field}: {e}") from e

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------
    def verify_attestation(
        self,
        response: Union[RegistrationResponse, dict],
        expected_challenge: bytes,
    ) -> AttestedCredential:
        try:
            resp = _coerce(RegistrationResponse, response)
        except ValueError as e:
            raise AttestationInvalid("malformed registration response") from e

        if resp.type != "public-key":
            raise AttestationInvalid("credential type must be public-key")

        raw_id = self._decode(resp.rawId, "rawId", AttestationInvalid)
        client_data_raw = self._decode(resp.response.clientDataJSON, "clientDataJSON", AttestationInvalid)
        att_obj_raw = self._decode(resp.response.attestationObject, "attestationObject", AttestationInvalid)

        self._check_client_data(client_data_raw, TYPE_CREATE, expected_challenge, AttestationInvalid)

        try:
            fmt, att_stmt, auth_data_raw = parse_attestation_object(att_obj_raw)
        except ValueError as e:
            raise AttestationInvalid(str(e)) from e

        ad = self._check_authenticator_data(auth_data_raw, AttestationInvalid)

        if not ad.has_attested_credential:
            raise AttestationInvalid("attested credential data missing")

        if not hmac.compare_digest(ad.credential_id, raw_id):
            raise AttestationInvalid("rawId does not match attested credential id")

        try:
            cred_key = load_cose_key(ad.credential_public_key)
        except ValueError as e:
            raise AttestationInvalid(f"credential public key rejected: {e}") from e

        signed = auth_data_raw + sha256(client_data_raw)

        if fmt == "none":
            if att_stmt:
                raise AttestationInvalid("'none' attestation must have an empty statement")
        elif fmt == "packed":
            self._verify_packed(att_stmt, signed, cred_key)
        else:
            raise AttestationInvalid(f"unsupported attestation format {fmt!r}")

        return AttestedCredential(
            credential_id=ad.credential_id,
            public_key=ad.credential_public_key,
            sign_count=ad.sign_count,
            aaguid=ad.aaguid,
            fmt=fmt,
        )

    @staticmethod
    def _verify_packed(att_stmt: dict, signed: bytes, cred_key) -> None:
        alg = att_stmt.get("alg")
        sig = att_stmt.get("sig")
        if not isinstance(alg, int) or not isinstance(sig, bytes):
            raise AttestationInvalid("packed statement requires alg and sig")

        x5c = att_stmt.get("x5c")
        try:
            if x5c is None:
                # self attestation: signed by the credential key itself
                if alg != cred_key[3]:
                    raise AttestationInvalid("self attestation alg differs from credential alg")
                key = cred_key
            else:
                if not isinstance(x5c, list) or not x5c or not isinstance(x5c[0], bytes):
                    raise AttestationInvalid("x5c must be a non-empty list of certificates")
                try:
                    cert = x509.load_der_x509_certificate(x5c[0])
                except ValueError as e:
                    raise AttestationInvalid(f"attestation certificate unreadable: {e}") from e
                key = key_from_certificate(alg, cert.public_key())

            ok = verify_signature(key, sig, signed)
        except UnsupportedKey as e:
            raise AttestationInvalid(str(e)) from e

        if not ok:
            raise SignatureInvalid("attestation signature verification failed")


    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------
    def verify_assertion(
        self,
        response: Union[AuthenticationResponse, dict],
        expected_challenge: bytes,
        public_key: bytes,
    ) -> int:
        """Returns the counter reported by the authenticator."""
        try:
            resp = _coerce(AuthenticationResponse, response)
        except ValueError as e:
            raise SignatureInvalid("malformed authentication response") from e

        if resp.type != "public-key":
            raise SignatureInvalid("credential type must be public-key")

        client_data_raw = self._decode(resp.response.clientDataJSON, "clientDataJSON", SignatureInvalid)
        auth_data_raw = self._decode(resp.response.authenticatorData, "authenticatorData", SignatureInvalid)
        signature = self._decode(resp.response.signature, "signature", SignatureInvalid)

        self._check_client_data(client_data_raw, TYPE_GET, expected_challenge, SignatureInvalid)
        ad = self._check_authenticator_data(auth_data_raw, SignatureInvalid)

        try:
            key = load_cose_key(public_key)
            ok = verify_signature(key, signature, auth_data_raw + sha256(client_data_raw))
        except ValueError as e:
            raise SignatureInvalid(f"stored public key unusable: {e}") from e

        if not ok:
            raise SignatureInvalid("assertion signature verification failed")

        return ad.sign_count
