"""
rp_auth
=======
WebAuthn relying-party ceremony core.

Provides:
- Challenge generation and ceremony lifecycle (registration / login)
- Attestation and assertion verification (ES256, EdDSA, RS256)
- Signature-counter clone detection
- In-memory and sqlite stores, hash-chained audit log, thin FastAPI adapter
"""

__version__ = "0.1.0"
