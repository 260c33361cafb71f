from types import SimpleNamespace

import pytest
import requests
from firebase_admin import auth as fb_auth
from firebase_admin import exceptions as fb_exceptions

import identity
from config import Settings
from errors import AppError, AuthError, NetworkError
from identity import FirebaseIdentityProvider


class FakeResponse:
    def __init__(self, status_code, data=None):
        self.status_code = status_code
        self._data = data

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._data is None:
            raise ValueError("No JSON object could be decoded")
        return self._data


class FakeHttp:
    """Stands in for requests.Session; replays queued responses and records calls."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, params=None, json=None, timeout=None):
        self.calls.append({"url": url, "params": params, "json": json, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _rest_error(status_code, message):
    return FakeResponse(status_code, {"error": {"code": status_code, "message": message}})


@pytest.fixture
def make_provider(monkeypatch):
    monkeypatch.setattr(identity, "init_firebase", lambda settings: "test-app")

    def make(*responses, api_key="test-key"):
        if api_key:
            monkeypatch.setenv("FIREBASE_API_KEY", api_key)
        else:
            monkeypatch.delenv("FIREBASE_API_KEY", raising=False)
        monkeypatch.setenv("HTTP_TIMEOUT_SECONDS", "4")
        return FirebaseIdentityProvider(Settings(), http=FakeHttp(*responses))

    return make


def test_authenticate_returns_tokens_and_announces_sign_in(make_provider):
    provider = make_provider(FakeResponse(200, {"localId": "uid-7", "idToken": "id-tok", "refreshToken": "ref-tok"}))
    events = []
    provider.on_auth_state_changed(events.append)

    result = provider.authenticate("tara@example.com", "pass12345")

    assert (result.uid, result.id_token, result.refresh_token) == ("uid-7", "id-tok", "ref-tok")
    assert [e.uid for e in events] == ["uid-7"]
    call = provider.http.calls[0]
    assert call["url"].endswith("/accounts:signInWithPassword")
    assert call["params"] == {"key": "test-key"}
    assert call["json"]["returnSecureToken"] is True
    assert call["timeout"] == 4


@pytest.mark.parametrize("message,status", [
    ("INVALID_PASSWORD", 401),
    ("EMAIL_NOT_FOUND", 401),
    ("INVALID_LOGIN_CREDENTIALS", 401),
    ("INVALID_EMAIL", 400),
    ("USER_DISABLED", 403),
    ("TOO_MANY_ATTEMPTS_TRY_LATER : Access to this account has been temporarily disabled", 429),
])
def test_identity_toolkit_error_codes(make_provider, message, status):
    provider = make_provider(_rest_error(400, message))

    with pytest.raises(AuthError) as exc:
        provider.authenticate("tara@example.com", "wrong")

    assert exc.value.status_code == status


def test_unknown_error_code_is_unauthorized_with_its_message(make_provider):
    provider = make_provider(_rest_error(400, "SOMETHING_NEW"))

    with pytest.raises(AuthError) as exc:
        provider.authenticate("tara@example.com", "pass12345")

    assert exc.value.status_code == 401
    assert exc.value.detail == "SOMETHING_NEW"


def test_failed_sign_in_announces_nothing(make_provider):
    provider = make_provider(_rest_error(400, "INVALID_PASSWORD"))
    events = []
    provider.on_auth_state_changed(events.append)

    with pytest.raises(AuthError):
        provider.authenticate("tara@example.com", "wrong")

    assert events == []


@pytest.mark.parametrize("response", [FakeResponse(503), FakeResponse(500, {"error": {"message": "INTERNAL"}})])
def test_server_errors_are_network_errors(make_provider, response):
    provider = make_provider(response)

    with pytest.raises(NetworkError) as exc:
        provider.send_password_reset("tara@example.com")

    assert exc.value.status_code == 503


def test_transport_failure_is_network_error(make_provider):
    provider = make_provider(requests.ConnectionError("connection refused"))

    with pytest.raises(NetworkError):
        provider.authenticate("tara@example.com", "pass12345")


def test_missing_api_key_fails_before_any_request(make_provider):
    provider = make_provider(api_key=None)

    with pytest.raises(AppError) as exc:
        provider.send_password_reset("tara@example.com")

    assert not isinstance(exc.value, NetworkError)
    assert exc.value.status_code == 500
    assert provider.http.calls == []


def test_password_reset_posts_oob_request(make_provider):
    provider = make_provider(FakeResponse(200, {"email": "tara@example.com"}))

    provider.send_password_reset("tara@example.com")

    call = provider.http.calls[0]
    assert call["url"].endswith("/accounts:sendOobCode")
    assert call["json"] == {"requestType": "PASSWORD_RESET", "email": "tara@example.com"}


def test_create_account_returns_uid(make_provider, monkeypatch):
    seen = {}

    def create_user(**kwargs):
        seen.update(kwargs)
        return SimpleNamespace(uid="uid-new")

    monkeypatch.setattr(fb_auth, "create_user", create_user)
    provider = make_provider()

    assert provider.create_account("new@example.com", "pass12345", display_name="New") == "uid-new"
    assert seen["email"] == "new@example.com"
    assert seen["app"] == "test-app"


@pytest.mark.parametrize("error,expected,status", [
    (fb_auth.EmailAlreadyExistsError("exists", None, None), AuthError, 409),
    (ValueError("Invalid password string. Password must be a string at least 6 characters long."), AuthError, 400),
    (fb_exceptions.UnavailableError("backend down"), NetworkError, 503),
    (fb_exceptions.InternalError("boom"), AuthError, 401),
])
def test_create_account_error_mapping(make_provider, monkeypatch, error, expected, status):
    def create_user(**kwargs):
        raise error

    monkeypatch.setattr(fb_auth, "create_user", create_user)
    provider = make_provider()

    with pytest.raises(expected) as exc:
        provider.create_account("new@example.com", "pass12345")

    assert exc.value.status_code == status


def test_verify_token_returns_uid(make_provider, monkeypatch):
    seen = {}

    def verify_id_token(token, app=None, check_revoked=False):
        seen.update(token=token, check_revoked=check_revoked)
        return {"uid": "uid-7"}

    monkeypatch.setattr(fb_auth, "verify_id_token", verify_id_token)
    provider = make_provider()

    assert provider.verify_token("id-tok") == "uid-7"
    assert seen == {"token": "id-tok", "check_revoked": True}


@pytest.mark.parametrize("error,expected", [
    (fb_auth.InvalidIdTokenError("bad signature"), AuthError),
    (ValueError("Illegal ID token provided"), AuthError),
    (fb_auth.CertificateFetchError("cannot reach googleapis", None), NetworkError),
])
def test_verify_token_error_mapping(make_provider, monkeypatch, error, expected):
    def verify_id_token(token, app=None, check_revoked=False):
        raise error

    monkeypatch.setattr(fb_auth, "verify_id_token", verify_id_token)
    provider = make_provider()

    with pytest.raises(expected):
        provider.verify_token("id-tok")


def test_sign_out_revokes_and_announces(make_provider, monkeypatch):
    revoked = []
    monkeypatch.setattr(fb_auth, "revoke_refresh_tokens", lambda uid, app=None: revoked.append(uid))
    provider = make_provider()
    events = []
    provider.on_auth_state_changed(events.append)

    provider.sign_out("uid-7")

    assert revoked == ["uid-7"]
    assert [e.signed_in for e in events] == [False]
