"""
rp_auth/errors.py

Failure taxonomy for the ceremony core.

Every error carries:
  - reason:         stable machine code, used in the audit log and process logs
  - public_message: the only text a request layer may show to an end user

Sub-reasons of a verification failure (wrong challenge, wrong origin, forged
signature, ...) stay distinct for diagnostics, but all of them share the same
public message so the response never tells an attacker which check failed.
"""

from __future__ import annotations

from typing import Optional

GENERIC_NOT_FOUND = "not found"
GENERIC_RETRY = "please retry"
GENERIC_VERIFICATION_FAILED = "verification failed"
GENERIC_UNAVAILABLE = "service unavailable"


class CeremonyError(Exception):
    reason = "ceremony_error"
    public_message = GENERIC_VERIFICATION_FAILED
    fatal = False

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        super().__init__(detail or self.reason)


# -----------------------------------------------------------------------------
# Fatal
# -----------------------------------------------------------------------------
class EntropyUnavailable(CeremonyError):
    """The OS random source could not produce a challenge. No ceremony can run."""

    reason = "entropy_unavailable"
    public_message = GENERIC_UNAVAILABLE
    fatal = True


# -----------------------------------------------------------------------------
# Client-correctable lookups
# -----------------------------------------------------------------------------
class UnknownIdentity(CeremonyError):
    reason = "unknown_identity"
    public_message = GENERIC_NOT_FOUND


class UnknownCredential(CeremonyError):
    reason = "unknown_credential"
    public_message = GENERIC_NOT_FOUND


class CeremonyNotFound(CeremonyError):
    """Ceremony id is absent, expired, already consumed, or of another kind."""

    reason = "ceremony_not_found"
    public_message = GENERIC_RETRY


# -----------------------------------------------------------------------------
# Verification failures
# -----------------------------------------------------------------------------
class VerificationError(CeremonyError):
    reason = "verification_failed"


class ChallengeMismatch(VerificationError):
    reason = "challenge_mismatch"


class OriginMismatch(VerificationError):
    reason = "origin_mismatch"


class SignatureInvalid(VerificationError):
    reason = "invalid_signature"


class AttestationInvalid(VerificationError):
    reason = "attestation_invalid"


class PossibleCloning(VerificationError):
    """Signature was valid but the counter did not advance."""

    reason = "possible_cloning"

    def __init__(self, stored: int, reported: int):
        self.stored = stored
        self.reported = reported
        super().__init__(f"sign counter did not advance (stored={stored}, reported={reported})")
