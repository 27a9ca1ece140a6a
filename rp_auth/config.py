from typing import List
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _normalize_origin(v: str) -> str:
    """
    An origin is scheme://host[:port]:
      - strip whitespace and trailing slash
      - require http/https
      - require hostname
      - lowercase hostname, keep explicit port
    """
    v = (v or "").strip().rstrip("/")
    p = urlparse(v)

    if p.scheme not in ("http", "https"):
        raise ValueError("origin must start with http:// or https://")

    if not p.hostname:
        raise ValueError("origin must include a hostname")

    netloc = p.hostname.lower()
    if p.port:
        netloc = f"{netloc}:{p.port}"

    return urlunparse((p.scheme, netloc, "", "", "", ""))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RP_", env_file=".env", extra="ignore")

    ORIGIN: str = "http://localhost:3000"
    # comma-separated origins also allowed to run ceremonies (e.g. a www. host)
    EXTRA_ORIGINS: str = ""

    # relying party / display
    RP_ID: str = "localhost"
    RP_NAME: str = "WebAuthn RP"

    CEREMONY_TTL_SECONDS: int = 300
    CHALLENGE_BYTES: int = 32

    USER_VERIFICATION: str = "preferred"
    ATTESTATION: str = "none"

    # enforce origin<->rp_id relationship at config load time
    STRICT_RP_BINDING: bool = True

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: str = "audit"

    # sqlite path for credentials; empty keeps them in process memory
    CREDENTIAL_DB: str = ""

    LOG_LEVEL: str = "INFO"

    @field_validator("ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        return _normalize_origin(v)

    @field_validator("EXTRA_ORIGINS")
    @classmethod
    def normalize_extra_origins(cls, v: str) -> str:
        parts = [p.strip() for p in (v or "").split(",") if p.strip()]
        return ",".join(_normalize_origin(p) for p in parts)

    @field_validator("RP_ID")
    @classmethod
    def normalize_rp_id(cls, v: str) -> str:
        """
        RP_ID must be domain-only (WebAuthn rpId semantics).
        Accepts accidental full URLs and strips scheme/path/trailing slashes.
        """
        v = (v or "").strip()

        if "://" in v:
            p = urlparse(v)
            if p.hostname:
                v = p.hostname

        v = v.strip().rstrip("/").lower()

        if not v:
            raise ValueError("RP_ID cannot be empty")

        if "/" in v or ":" in v:
            raise ValueError("RP_ID must be a bare domain (no scheme, no port, no path)")

        return v

    @field_validator("RP_NAME")
    @classmethod
    def normalize_rp_name(cls, v: str) -> str:
        return (v or "").strip() or "WebAuthn RP"

    @field_validator("CEREMONY_TTL_SECONDS")
    @classmethod
    def check_ttl(cls, v: int) -> int:
        if v <= 0 or v > 3600:
            raise ValueError("CEREMONY_TTL_SECONDS must be within 1..3600")
        return v

    @field_validator("CHALLENGE_BYTES")
    @classmethod
    def check_challenge_bytes(cls, v: int) -> int:
        if v < 16:
            raise ValueError("CHALLENGE_BYTES must be >= 16")
        return v

    @field_validator("USER_VERIFICATION")
    @classmethod
    def check_user_verification(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("required", "preferred", "discouraged"):
            raise ValueError("USER_VERIFICATION must be required, preferred or discouraged")
        return v

    @field_validator("ATTESTATION")
    @classmethod
    def check_attestation(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("none", "indirect", "direct"):
            raise ValueError("ATTESTATION must be none, indirect or direct")
        return v

    @model_validator(mode="after")
    def check_rp_binding(self):
        # origin host must equal rp_id or be a subdomain of rp_id
        if not self.STRICT_RP_BINDING:
            return self
        for origin in self.allowed_origins:
            host = urlparse(origin).hostname or ""
            if not (host == self.RP_ID or host.endswith("." + self.RP_ID)):
                raise ValueError(
                    f"origin host '{host}' does not match RP_ID '{self.RP_ID}'. "
                    f"Set RP_ID to the origin hostname or a registrable parent domain."
                )
        return self

    @property
    def allowed_origins(self) -> List[str]:
        extra = [o for o in self.EXTRA_ORIGINS.split(",") if o and o != self.ORIGIN]
        return [self.ORIGIN, *extra]

    @property
    def require_user_verification(self) -> bool:
        return self.USER_VERIFICATION == "required"


# Fails fast at import time on a bad origin/rp_id pair
settings = Settings()
