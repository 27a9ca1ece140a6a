from typing import Optional

from pydantic import BaseModel, Field


class AttestationPayload(BaseModel):
    clientDataJSON: str
    attestationObject: str


class AssertionPayload(BaseModel):
    clientDataJSON: str
    authenticatorData: str
    signature: str
    userHandle: Optional[str] = None


class RegistrationResponse(BaseModel):
    """PublicKeyCredential JSON returned by navigator.credentials.create()."""

    id: str
    rawId: str
    type: str = "public-key"
    response: AttestationPayload


class AuthenticationResponse(BaseModel):
    """PublicKeyCredential JSON returned by navigator.credentials.get()."""

    id: str
    rawId: str
    type: str = "public-key"
    response: AssertionPayload


# -----------------------------------------------------------------------------
# Request bodies for the HTTP adapter
# -----------------------------------------------------------------------------
class PrepareRequest(BaseModel):
    username: str = Field(min_length=1, max_length=256)
    display_name: Optional[str] = Field(default=None, max_length=256)


class RegistrationRequest(BaseModel):
    ceremony_id: str
    credential: RegistrationResponse


class LoginRequest(BaseModel):
    ceremony_id: str
    credential: AuthenticationResponse
