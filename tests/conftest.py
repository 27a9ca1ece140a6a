import pytest

from authenticator import SoftwareAuthenticator
from rp_auth.audit import AuditLog
from rp_auth.ceremony import CeremonyStateMachine
from rp_auth.config import Settings
from rp_auth.storage import InMemoryCredentialStore, InMemorySessionStore

ORIGIN = "https://login.example.com"
RP_ID = "example.com"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        ORIGIN=ORIGIN,
        RP_ID=RP_ID,
        RP_NAME="Example",
        AUDIT_DIR=str(tmp_path / "audit"),
    )


@pytest.fixture
def sessions():
    return InMemorySessionStore()


@pytest.fixture
def credentials():
    return InMemoryCredentialStore()


@pytest.fixture
def audit(settings):
    return AuditLog(settings.AUDIT_DIR)


@pytest.fixture
def machine(settings, sessions, credentials, audit):
    return CeremonyStateMachine(settings, sessions=sessions, credentials=credentials, audit=audit)


@pytest.fixture
def authenticator():
    return SoftwareAuthenticator(origin=ORIGIN)


@pytest.fixture
def register(machine, authenticator):
    """Run a full registration for ``identity`` and return the stored record."""

    def _register(identity="alice"):
        ceremony, options = machine.begin_registration(identity)
        response = authenticator.make_credential(options)
        return machine.complete_registration(ceremony.ceremony_id, response)

    return _register
