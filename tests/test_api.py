import pytest
from fastapi.testclient import TestClient

from authenticator import SoftwareAuthenticator, b64url, b64url_dec
from rp_auth.api import create_app
from rp_auth.errors import EntropyUnavailable
from rp_auth.storage import InMemoryCredentialStore

NOT_AUTHORIZED = {"error": "not_authorized", "message": "verification failed"}


@pytest.fixture
def store():
    return InMemoryCredentialStore()


@pytest.fixture
def client(settings, store):
    return TestClient(create_app(settings, credentials=store))


def _register(client, authenticator, username="alice"):
    r = client.post("/register/prepare", json={"username": username})
    assert r.status_code == 200
    prep = r.json()
    credential = authenticator.make_credential(prep["publicKey"])
    return client.post("/register", json={"ceremony_id": prep["ceremony_id"], "credential": credential})


def _login_prepare(client, username="alice"):
    r = client.post("/login/prepare", json={"username": username})
    return r


def test_register_and_login(client, authenticator, store):
    r = _register(client, authenticator)
    assert r.status_code == 200
    body = r.json()
    assert body["message"] == "Welcome alice, your authenticator is registered."
    assert body["credential"]["identity"] == "alice"
    assert body["credential"]["sign_count"] == 0

    prep = _login_prepare(client).json()
    assert prep["publicKey"]["rpId"] == "example.com"
    assertion = authenticator.get_assertion(prep["publicKey"])

    r = client.post("/login", json={"ceremony_id": prep["ceremony_id"], "credential": assertion})
    assert r.status_code == 200
    assert r.json() == {"message": "Hey alice, welcome back!", "identity": "alice"}
    assert store.find_by_identity("alice")[0].sign_count == 1


def test_login_prepare_unknown_user_is_404(client):
    r = _login_prepare(client, "nobody")
    assert r.status_code == 404
    assert r.json()["detail"] == {"error": "not_found", "message": "not found"}


def test_replayed_login_is_410(client, authenticator):
    _register(client, authenticator)
    prep = _login_prepare(client).json()
    body = {"ceremony_id": prep["ceremony_id"], "credential": authenticator.get_assertion(prep["publicKey"])}

    assert client.post("/login", json=body).status_code == 200
    r = client.post("/login", json=body)
    assert r.status_code == 410
    assert r.json()["detail"] == {"error": "ceremony_expired", "message": "please retry"}


def test_failures_share_one_generic_body(client, authenticator, store):
    _register(client, authenticator)

    # wrong origin
    prep = _login_prepare(client).json()
    assertion = authenticator.get_assertion(prep["publicKey"], origin="https://evil.example.net")
    r1 = client.post("/login", json={"ceremony_id": prep["ceremony_id"], "credential": assertion})

    # bad signature
    prep = _login_prepare(client).json()
    assertion = authenticator.get_assertion(prep["publicKey"])
    assertion["response"]["signature"] = b64url(b"\x30\x06\x02\x01\x01\x02\x01\x01")
    r2 = client.post("/login", json={"ceremony_id": prep["ceremony_id"], "credential": assertion})

    # counter regression
    store.find_by_identity("alice")[0].sign_count = 50
    prep = _login_prepare(client).json()
    assertion = authenticator.get_assertion(prep["publicKey"])
    r3 = client.post("/login", json={"ceremony_id": prep["ceremony_id"], "credential": assertion})

    for r in (r1, r2, r3):
        assert r.status_code == 403
        assert r.json()["detail"] == NOT_AUTHORIZED


def test_registration_with_wrong_origin_is_403(client):
    r = _register(client, SoftwareAuthenticator(origin="https://evil.example.net"))
    assert r.status_code == 403
    assert r.json()["detail"] == NOT_AUTHORIZED


def test_unknown_ceremony_is_410(client, authenticator):
    credential = authenticator.make_credential(
        {"challenge": b64url(b"\x00" * 32), "rp": {"id": "example.com"}, "user": {"id": b64url(b"u")}}
    )
    r = client.post("/register", json={"ceremony_id": "nope", "credential": credential})
    assert r.status_code == 410


def test_body_validation(client):
    assert client.post("/register/prepare", json={"username": ""}).status_code == 422
    assert client.post("/login", json={"ceremony_id": "x"}).status_code == 422


def test_entropy_failure_is_503(client):
    class BrokenGenerator:
        def generate(self):
            raise EntropyUnavailable("no entropy")

    client.app.state.ceremonies.challenges = BrokenGenerator()

    r = client.post("/register/prepare", json={"username": "alice"})
    assert r.status_code == 503
    assert r.json()["detail"] == {"error": "unavailable", "message": "service unavailable"}


def test_credentials_survive_restart_with_sqlite(settings, tmp_path, authenticator):
    settings.CREDENTIAL_DB = str(tmp_path / "db" / "credentials.db")

    first = TestClient(create_app(settings))
    assert _register(first, authenticator).status_code == 200
    first.app.state.ceremonies.credentials.close()

    second = TestClient(create_app(settings))
    prep = _login_prepare(second).json()
    assertion = authenticator.get_assertion(prep["publicKey"])
    r = second.post("/login", json={"ceremony_id": prep["ceremony_id"], "credential": assertion})
    assert r.status_code == 200
    assert second.app.state.ceremonies.credentials.find_by_identity("alice")[0].sign_count == 1


@pytest.mark.parametrize("extensions", [b"\xff", b"\x81" * 200_000, b"\x5f"])
def test_login_with_malformed_extensions_is_403(client, authenticator, extensions):
    _register(client, authenticator)
    prep = _login_prepare(client).json()
    assertion = authenticator.get_assertion(prep["publicKey"])

    auth_data = bytearray(b64url_dec(assertion["response"]["authenticatorData"]))
    auth_data[32] |= 0x80
    assertion["response"]["authenticatorData"] = b64url(bytes(auth_data) + extensions)

    r = client.post("/login", json={"ceremony_id": prep["ceremony_id"], "credential": assertion})
    assert r.status_code == 403
    assert r.json()["detail"] == NOT_AUTHORIZED
