# rp_auth/api.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Thin JSON glue between HTTP and the ceremony core:
#   - It MUST NOT implement crypto or counter policy (ceremony.py, verifier.py
#     and counter.py own those).
#   - It holds no state; ceremonies live in the SessionStore, credentials in
#     the CredentialStore, both reachable through app.state.ceremonies.
#
# Endpoints (JSON bodies; prepare takes {"username", "display_name"?}):
#   POST /register/prepare  -> creation options + ceremony_id
#   POST /register          -> attestation response, stores the credential
#   POST /login/prepare     -> request options + ceremony_id
#   POST /login             -> assertion response, returns the identity
#
# The ceremony id is carried in the JSON body instead of a cookie session.
#
# Error surface: the response only ever says "not found", "please retry",
# "verification failed" or "service unavailable", as FastAPI error bodies:
# {"detail": {"error": <code>, "message": <text>}}. The precise reason goes to
# the process log and the audit chain, never to the client.
# -----------------------------------------------------------------------------

from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request

from .ceremony import CeremonyStateMachine
from .config import Settings, settings as default_settings
from .errors import (
    CeremonyError,
    CeremonyNotFound,
    EntropyUnavailable,
    UnknownCredential,
    UnknownIdentity,
)
from .logger import get_logger
from .models import LoginRequest, PrepareRequest, RegistrationRequest
from .sqlite_store import SQLiteCredentialStore
from .storage import CredentialStore, InMemoryCredentialStore, InMemorySessionStore, SessionStore

logger = get_logger("rp_auth.api")

router = APIRouter()


def _machine(request: Request) -> CeremonyStateMachine:
    return request.app.state.ceremonies


def _fail(err: CeremonyError):
    if isinstance(err, EntropyUnavailable):
        # Process-level condition: nothing can proceed until the host is fixed
        logger.critical("secure random source unavailable: %s", err.detail)
        status, code = 503, "unavailable"
    elif isinstance(err, (UnknownIdentity, UnknownCredential)):
        status, code = 404, "not_found"
    elif isinstance(err, CeremonyNotFound):
        status, code = 410, "ceremony_expired"
    else:
        status, code = 403, "not_authorized"

    raise HTTPException(status_code=status, detail={"error": code, "message": err.public_message})


# -----------------------------------------------------------------------------
# Registration
# -----------------------------------------------------------------------------
@router.post("/register/prepare")
def register_prepare(body: PrepareRequest, request: Request):
    try:
        ceremony, options = _machine(request).begin_registration(body.username, body.display_name)
    except CeremonyError as e:
        _fail(e)
    return {"ceremony_id": ceremony.ceremony_id, "publicKey": options}


@router.post("/register")
def register(body: RegistrationRequest, request: Request):
    try:
        record = _machine(request).complete_registration(body.ceremony_id, body.credential)
    except CeremonyError as e:
        _fail(e)
    return {
        "message": f"Welcome {record.identity}, your authenticator is registered.",
        "credential": record.public_view(),
    }


# -----------------------------------------------------------------------------
# Login
# -----------------------------------------------------------------------------
@router.post("/login/prepare")
def login_prepare(body: PrepareRequest, request: Request):
    try:
        ceremony, options = _machine(request).begin_authentication(body.username)
    except CeremonyError as e:
        _fail(e)
    return {"ceremony_id": ceremony.ceremony_id, "publicKey": options}


@router.post("/login")
def login(body: LoginRequest, request: Request):
    try:
        identity = _machine(request).complete_authentication(body.ceremony_id, body.credential)
    except CeremonyError as e:
        _fail(e)
    return {"message": f"Hey {identity}, welcome back!", "identity": identity}


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    sessions: Optional[SessionStore] = None,
    credentials: Optional[CredentialStore] = None,
) -> FastAPI:
    s = settings or default_settings
    get_logger("rp_auth", level=s.LOG_LEVEL.upper())

    if credentials is None:
        if s.CREDENTIAL_DB:
            credentials = SQLiteCredentialStore(s.CREDENTIAL_DB)
        else:
            credentials = InMemoryCredentialStore()

    app = FastAPI(title="WebAuthn RP", version="0.1.0")
    app.state.ceremonies = CeremonyStateMachine(
        s,
        sessions=sessions if sessions is not None else InMemorySessionStore(),
        credentials=credentials,
    )
    app.include_router(router)
    return app
