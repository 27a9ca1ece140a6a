"""
rp_auth/challenge.py

Challenge generation.

A challenge is raw bytes from the OS CSPRNG (``secrets``). It travels to the
browser as unpadded base64url, whose alphabet ([A-Za-z0-9_-]) never contains
the '=' padding or the '.'/':' separators used elsewhere in the protocol.

There is no fallback source: if the OS cannot produce randomness the
generator raises EntropyUnavailable and no ceremony may start.
"""

from __future__ import annotations

import secrets

from .encoding import b64url_encode
from .errors import EntropyUnavailable

DEFAULT_CHALLENGE_BYTES = 32
MIN_CHALLENGE_BYTES = 16


class ChallengeGenerator:
    def __init__(self, length: int = DEFAULT_CHALLENGE_BYTES):
        if length < MIN_CHALLENGE_BYTES:
            raise ValueError("challenge_length_too_small")
        self.length = length

    def generate(self) -> bytes:
        try:
            challenge = secrets.token_bytes(self.length)
        except (OSError, NotImplementedError) as e:
            raise EntropyUnavailable(f"secure random source failed: {e}") from e

        if len(challenge) != self.length:
            raise EntropyUnavailable("secure random source returned short output")
        return challenge


def encode_challenge(challenge: bytes) -> str:
    return b64url_encode(challenge)
