"""
rp_auth/ceremony.py

Registration and authentication ceremonies.

    Idle --begin_*--> Prepared --complete_*--> Completed
                          \\
                           `--TTL---------> Expired

A ceremony is written once to the SessionStore by ``begin_*`` and taken out
exactly once by ``complete_*`` through ``get_and_delete``. The take happens
before any verification work, so a failed attempt burns the challenge and a
concurrent duplicate submission finds nothing (CeremonyNotFound).

The state machine holds no state of its own. Everything lives in the two
injected stores and is addressed by ceremony id or identity.
"""

from __future__ import annotations

import secrets
import time
from typing import Any, Dict, List, Optional, Tuple

from . import counter
from .audit import AuditLog, build_common
from .challenge import ChallengeGenerator, encode_challenge
from .cose import COSE_ALG_EDDSA, COSE_ALG_ES256, COSE_ALG_RS256
from .encoding import b64url_decode, b64url_encode
from .errors import (
    AttestationInvalid,
    CeremonyError,
    CeremonyNotFound,
    PossibleCloning,
    SignatureInvalid,
    UnknownCredential,
    UnknownIdentity,
)
from .logger import get_logger
from .models import AuthenticationResponse
from .storage import (
    Ceremony,
    CeremonyKind,
    CredentialRecord,
    CredentialStore,
    SessionStore,
    new_ceremony_id,
)
from .verifier import CredentialVerifier

logger = get_logger("rp_auth.ceremony")

USER_HANDLE_BYTES = 32


def _credential_descriptor(credential_id: bytes) -> Dict[str, Any]:
    return {"type": "public-key", "id": b64url_encode(credential_id)}


class CeremonyStateMachine:
    def __init__(
        self,
        settings,
        sessions: SessionStore,
        credentials: CredentialStore,
        verifier: Optional[CredentialVerifier] = None,
        challenges: Optional[ChallengeGenerator] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.settings = settings
        self.sessions = sessions
        self.credentials = credentials
        self.verifier = verifier or CredentialVerifier.from_settings(settings)
        self.challenges = challenges or ChallengeGenerator(settings.CHALLENGE_BYTES)
        self.audit = audit or AuditLog(settings.AUDIT_DIR, enabled=settings.AUDIT_ENABLED)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    def _audit(self, event: Dict[str, Any]) -> None:
        # The outcome is already committed to the stores; a failed audit
        # write is reported but does not undo it.
        try:
            self.audit.append_event(event)
        except OSError:
            logger.exception(
                "audit write failed result=%s ceremony_id=%s",
                event.get("result"),
                event.get("ceremony_id"),
            )

    def _new_ceremony(
        self,
        kind: CeremonyKind,
        identity: str,
        user_handle: bytes,
        allowed: Optional[List[bytes]] = None,
    ) -> Ceremony:
        now = int(time.time())
        ttl = int(self.settings.CEREMONY_TTL_SECONDS)
        ceremony = Ceremony(
            ceremony_id=new_ceremony_id(),
            kind=kind,
            challenge=self.challenges.generate(),
            identity=identity,
            issued_at=now,
            expires_at=now + ttl,
            user_handle=user_handle,
            allowed_credential_ids=list(allowed or []),
        )
        self.sessions.put(ceremony.ceremony_id, ceremony, ttl)

        self._audit(
            {
                **build_common(
                    ceremony_id=ceremony.ceremony_id,
                    kind=kind.value,
                    identity=identity,
                    challenge=ceremony.challenge,
                ),
                "result": "issued",
                "expires_at": ceremony.expires_at,
            }
        )
        logger.info("ceremony issued kind=%s ceremony_id=%s", kind.value, ceremony.ceremony_id)
        return ceremony

    def _take(self, ceremony_id: str, kind: CeremonyKind) -> Ceremony:
        """Consume the ceremony. Expiry is enforced here, before any verification."""
        ceremony = self.sessions.get_and_delete(ceremony_id)

        if ceremony is None:
            raise CeremonyNotFound("ceremony absent or already consumed")
        if ceremony.is_expired:
            raise CeremonyNotFound("ceremony expired")
        if ceremony.kind != kind:
            raise CeremonyNotFound(f"ceremony is not a {kind.value} ceremony")
        return ceremony

    def _deny(self, ceremony_id: str, kind: CeremonyKind, err: CeremonyError, **extra) -> None:
        event = {
            **build_common(ceremony_id=ceremony_id, kind=kind.value, **extra),
            "result": "denied",
            "reason": err.reason,
        }
        if err.detail:
            event["detail"] = err.detail[:200]

        if isinstance(err, PossibleCloning):
            event["result"] = "possible_cloning"
            event["stored_counter"] = err.stored
            event["reported_counter"] = err.reported
            logger.warning(
                "possible cloned authenticator ceremony_id=%s credential=%s stored=%d reported=%d",
                ceremony_id,
                event.get("credential_id"),
                err.stored,
                err.reported,
            )
        else:
            logger.info("ceremony denied kind=%s reason=%s ceremony_id=%s", kind.value, err.reason, ceremony_id)

        self._audit(event)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------
    def begin_registration(
        self, identity: str, display_name: Optional[str] = None
    ) -> Tuple[Ceremony, Dict[str, Any]]:
        existing = self.credentials.find_by_identity(identity)

        # One user handle per identity, shared by all of its credentials
        if existing:
            user_handle = existing[0].user_handle
        else:
            user_handle = secrets.token_bytes(USER_HANDLE_BYTES)

        ceremony = self._new_ceremony(CeremonyKind.REGISTRATION, identity, user_handle)

        options = {
            "challenge": encode_challenge(ceremony.challenge),
            "rp": {"id": self.settings.RP_ID, "name": self.settings.RP_NAME},
            "user": {
                "id": b64url_encode(user_handle),
                "name": identity,
                "displayName": display_name or identity,
            },
            "pubKeyCredParams": [
                {"type": "public-key", "alg": COSE_ALG_ES256},
                {"type": "public-key", "alg": COSE_ALG_EDDSA},
                {"type": "public-key", "alg": COSE_ALG_RS256},
            ],
            "timeout": int(self.settings.CEREMONY_TTL_SECONDS) * 1000,
            "attestation": self.settings.ATTESTATION,
            "authenticatorSelection": {"userVerification": self.settings.USER_VERIFICATION},
            "excludeCredentials": [_credential_descriptor(r.credential_id) for r in existing],
        }
        return ceremony, options

    def complete_registration(
        self, ceremony_id: str, response: Any
    ) -> CredentialRecord:
        kind = CeremonyKind.REGISTRATION
        try:
            ceremony = self._take(ceremony_id, kind)
        except CeremonyNotFound as e:
            self._deny(ceremony_id, kind, e)
            raise

        try:
            attested = self.verifier.verify_attestation(response, ceremony.challenge)

            if self.credentials.find_by_credential_id(attested.credential_id) is not None:
                raise AttestationInvalid("credential already registered")

            record = CredentialRecord(
                credential_id=attested.credential_id,
                public_key=attested.public_key,
                sign_count=attested.sign_count or 0,
                identity=ceremony.identity,
                user_handle=ceremony.user_handle,
                aaguid=attested.aaguid,
                attestation_format=attested.fmt,
            )
            try:
                self.credentials.save(record)
            except ValueError as e:
                # lost a race with a concurrent registration of the same id
                raise AttestationInvalid("credential already registered") from e
        except CeremonyError as e:
            self._deny(ceremony_id, kind, e, identity=ceremony.identity)
            raise

        self._audit(
            {
                **build_common(
                    ceremony_id=ceremony_id,
                    kind=kind.value,
                    identity=record.identity,
                    credential_id=record.credential_id,
                ),
                "result": "approved",
                "reason": "attestation_valid",
                "fmt": record.attestation_format,
                "sign_count": record.sign_count,
            }
        )
        logger.info("credential registered identity=%s ceremony_id=%s", record.identity, ceremony_id)
        return record

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------
    def begin_authentication(self, identity: str) -> Tuple[Ceremony, Dict[str, Any]]:
        records = self.credentials.find_by_identity(identity)
        if not records:
            raise UnknownIdentity("identity has no registered credentials")

        allowed = [r.credential_id for r in records]
        ceremony = self._new_ceremony(
            CeremonyKind.AUTHENTICATION, identity, records[0].user_handle, allowed
        )

        options = {
            "challenge": encode_challenge(ceremony.challenge),
            "rpId": self.settings.RP_ID,
            "allowCredentials": [_credential_descriptor(cid) for cid in allowed],
            "timeout": int(self.settings.CEREMONY_TTL_SECONDS) * 1000,
            "userVerification": self.settings.USER_VERIFICATION,
        }
        return ceremony, options

    @staticmethod
    def _credential_id_of(response: Any) -> Tuple[bytes, AuthenticationResponse]:
        try:
            if isinstance(response, AuthenticationResponse):
                resp = response
            else:
                resp = AuthenticationResponse.model_validate(response)
            return b64url_decode(resp.rawId), resp
        except ValueError as e:
            raise SignatureInvalid("malformed authentication response") from e

    def complete_authentication(self, ceremony_id: str, response: Any) -> str:
        kind = CeremonyKind.AUTHENTICATION
        try:
            ceremony = self._take(ceremony_id, kind)
        except CeremonyNotFound as e:
            self._deny(ceremony_id, kind, e)
            raise

        credential_id = None
        try:
            credential_id, resp = self._credential_id_of(response)

            record = self.credentials.find_by_credential_id(credential_id)
            if record is None or record.identity != ceremony.identity:
                raise UnknownCredential("credential not registered for this identity")
            if credential_id not in ceremony.allowed_credential_ids:
                raise UnknownCredential("credential was not offered for this ceremony")

            if resp.response.userHandle:
                try:
                    handle = b64url_decode(resp.response.userHandle)
                except ValueError as e:
                    raise SignatureInvalid("userHandle is not base64url") from e
                if handle != record.user_handle:
                    raise UnknownCredential("userHandle does not match credential owner")

            new_counter = self.verifier.verify_assertion(resp, ceremony.challenge, record.public_key)

            if counter.check(record.sign_count, new_counter) is counter.CounterVerdict.REJECT:
                raise PossibleCloning(record.sign_count, new_counter)

            if not self.credentials.update(credential_id, new_counter):
                # a concurrent login advanced the counter first
                current = self.credentials.find_by_credential_id(credential_id)
                stored = current.sign_count if current is not None else record.sign_count
                raise PossibleCloning(stored, new_counter)
        except CeremonyError as e:
            self._deny(ceremony_id, kind, e, identity=ceremony.identity, credential_id=credential_id)
            raise

        self._audit(
            {
                **build_common(
                    ceremony_id=ceremony_id,
                    kind=kind.value,
                    identity=ceremony.identity,
                    credential_id=credential_id,
                ),
                "result": "approved",
                "reason": "assertion_valid",
                "sign_count": new_counter,
            }
        )
        logger.info("authenticated identity=%s ceremony_id=%s", ceremony.identity, ceremony_id)
        return ceremony.identity
