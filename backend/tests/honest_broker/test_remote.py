import io
import json
from email.message import Message
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs, urlsplit

import pytest

from honest_broker import remote
from honest_broker.config import RemoteConnection
from honest_broker.deadline import Deadline
from honest_broker.errors import AuthError, LookupTimeoutError, RemoteLookupError
from honest_broker.remote import RemoteBrokerClient, TokenState


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _Response:
    def __init__(self, body: str) -> None:
        self._body = body.encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeTransport:
    """Stands in for ``urlopen``; the last queued response repeats."""

    def __init__(self, token=None, lookup=None) -> None:
        self.token_responses = list(token or [(200, "tok-1")])
        self.lookup_responses = list(lookup or [(200, '{"idOut": "HB-0001"}')])
        self.requests = []

    @property
    def token_requests(self):
        return [request for request in self.requests if request.full_url.endswith("/token")]

    @property
    def lookup_requests(self):
        return [request for request in self.requests if not request.full_url.endswith("/token")]

    def __call__(self, request, timeout=None):
        self.requests.append(request)
        queue = self.token_responses if request.full_url.endswith("/token") else self.lookup_responses
        status, body = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(body, Exception):
            raise body
        if status >= 400:
            raise HTTPError(request.full_url, status, "error", Message(), io.BytesIO(body.encode("utf-8")))
        return _Response(body)


def _connection(**overrides) -> RemoteConnection:
    values = {
        "api_host": "hb.example.org",
        "sts_host": "sts.example.org",
        "app_name": "router",
        "app_key": "key-1",
        "username": "svc",
        "password": "secret",
        "backoff_seconds": 0.5,
    }
    values.update(overrides)
    return RemoteConnection(**values)


def _client(monkeypatch, transport: FakeTransport, clock=None, sleeps=None, **overrides) -> RemoteBrokerClient:
    monkeypatch.setattr(remote, "urlopen", transport)
    sleep_log = sleeps if sleeps is not None else []
    return RemoteBrokerClient(
        "mda",
        _connection(**overrides),
        clock=clock or FakeClock(),
        sleep=sleep_log.append,
    )


def test_lookup_authenticates_once_and_reuses_token(monkeypatch):
    transport = FakeTransport()
    client = _client(monkeypatch, transport)

    assert client.state == TokenState.NO_TOKEN
    assert client.lookup("P001", "patient_id") == "HB-0001"
    assert client.lookup("P002", "patient_id") == "HB-0001"

    assert client.state == TokenState.AUTHENTICATED
    assert len(transport.token_requests) == 1
    token_request = transport.token_requests[0]
    assert token_request.full_url == "https://sts.example.org/token"
    assert json.loads(token_request.data) == {
        "UserName": "svc",
        "AppName": "router",
        "AppKey": "key-1",
        "Password": "secret",
    }
    lookup_request = transport.lookup_requests[0]
    assert lookup_request.full_url == "https://hb.example.org/DeIdentification/lookup"
    assert lookup_request.get_method() == "POST"
    assert lookup_request.get_header("Authorization") == "Bearer tok-1"
    assert json.loads(lookup_request.data) == {"idIn": "P001", "idType": "patient_id"}


def test_form_encoding_and_custom_field_names(monkeypatch):
    transport = FakeTransport(lookup=[(200, '{"pseudonym": "HB-7"}')])
    client = _client(
        monkeypatch,
        transport,
        auth_encoding="form",
        lookup_encoding="form",
        auth_fields={"username": "username", "password": "password"},
        id_in_field="original",
        id_type_field="kind",
        id_out_field="pseudonym",
    )

    assert client.lookup("P001", "patient_id") == "HB-7"

    assert parse_qs(transport.token_requests[0].data.decode()) == {"username": ["svc"], "password": ["secret"]}
    assert parse_qs(transport.lookup_requests[0].data.decode()) == {"original": ["P001"], "kind": ["patient_id"]}
    assert transport.lookup_requests[0].get_header("Content-type") == "application/x-www-form-urlencoded"


def test_get_lookup_with_list_response(monkeypatch):
    transport = FakeTransport(lookup=[(200, '[{"idIn": "P001", "idOut": "HB-LIST"}]')])
    client = _client(monkeypatch, transport, lookup_method="GET")

    assert client.lookup("P 001", "patient_id") == "HB-LIST"

    request = transport.lookup_requests[0]
    assert request.get_method() == "GET"
    assert parse_qs(urlsplit(request.full_url).query) == {"idIn": ["P 001"], "idType": ["patient_id"]}


def test_json_token_expiry_triggers_refresh(monkeypatch):
    clock = FakeClock()
    transport = FakeTransport(
        token=[
            (200, '{"access_token": "tok-a", "expires_in": 600}'),
            (200, '{"access_token": "tok-b", "expires_in": 600}'),
        ]
    )
    client = _client(monkeypatch, transport, clock=clock)

    client.lookup("P001", "patient_id")
    clock.advance(541)
    assert client.state == TokenState.EXPIRED
    client.lookup("P001", "patient_id")

    assert len(transport.token_requests) == 2
    assert transport.lookup_requests[-1].get_header("Authorization") == "Bearer tok-b"


def test_unauthorized_lookup_reauthenticates_once(monkeypatch):
    transport = FakeTransport(
        token=[(200, "tok-1"), (200, "tok-2")],
        lookup=[(401, "expired"), (200, '{"idOut": "HB-9"}')],
    )
    client = _client(monkeypatch, transport)

    assert client.lookup("P001", "patient_id") == "HB-9"
    assert len(transport.token_requests) == 2
    assert transport.lookup_requests[-1].get_header("Authorization") == "Bearer tok-2"


def test_repeated_unauthorized_lookup_is_an_auth_error(monkeypatch):
    transport = FakeTransport(token=[(200, "tok-1"), (200, "tok-2")], lookup=[(401, "nope")])
    client = _client(monkeypatch, transport)

    with pytest.raises(AuthError):
        client.lookup("P001", "patient_id")
    assert len(transport.lookup_requests) == 2


def test_rejected_credentials_are_not_retried(monkeypatch):
    transport = FakeTransport(token=[(401, "bad credentials")])
    client = _client(monkeypatch, transport)

    with pytest.raises(AuthError) as excinfo:
        client.lookup("P001", "patient_id")

    assert excinfo.value.status_code == 401
    assert client.state == TokenState.NO_TOKEN
    assert len(transport.token_requests) == 1
    assert transport.lookup_requests == []


def test_server_errors_are_retried_with_backoff(monkeypatch):
    sleeps = []
    transport = FakeTransport(lookup=[(503, ""), (502, ""), (200, '{"idOut": "HB-1"}')])
    client = _client(monkeypatch, transport, sleeps=sleeps)

    assert client.lookup("P001", "patient_id") == "HB-1"
    assert sleeps == [0.5, 1.0]


def test_network_errors_are_retried(monkeypatch):
    transport = FakeTransport(lookup=[(0, URLError("connection refused")), (200, '{"idOut": "HB-2"}')])
    client = _client(monkeypatch, transport)

    assert client.lookup("P001", "patient_id") == "HB-2"


def test_retries_are_bounded(monkeypatch):
    sleeps = []
    transport = FakeTransport(lookup=[(500, "boom")])
    client = _client(monkeypatch, transport, sleeps=sleeps, max_retries=2, max_backoff_seconds=0.6)

    with pytest.raises(RemoteLookupError) as excinfo:
        client.lookup("P001", "patient_id")

    assert excinfo.value.status_code == 500
    assert len(transport.lookup_requests) == 3
    assert sleeps == [0.5, 0.6]


def test_client_errors_are_not_retried(monkeypatch):
    transport = FakeTransport(lookup=[(400, '{"error": "bad id"}')])
    client = _client(monkeypatch, transport)

    with pytest.raises(RemoteLookupError, match="HTTP 400"):
        client.lookup("P001", "patient_id")
    assert len(transport.lookup_requests) == 1


def test_missing_id_out_is_an_error(monkeypatch):
    transport = FakeTransport(lookup=[(200, '{"something": "else"}')])
    client = _client(monkeypatch, transport)

    with pytest.raises(RemoteLookupError):
        client.lookup("P001", "patient_id")


def test_deadline_stops_retrying(monkeypatch):
    clock = FakeClock()
    transport = FakeTransport(lookup=[(503, "")])
    monkeypatch.setattr(remote, "urlopen", transport)
    client = RemoteBrokerClient("mda", _connection(), clock=clock, sleep=clock.advance)

    with pytest.raises(LookupTimeoutError):
        client.lookup("P001", "patient_id", deadline=Deadline.after(1.0, clock))
    assert len(transport.lookup_requests) == 2


def test_reverse_lookup(monkeypatch):
    transport = FakeTransport(lookup=[(200, '[{"idIn": "P001", "idOut": "HB-1"}]')])
    client = _client(monkeypatch, transport)

    assert client.reverse_lookup("HB-1") == "P001"
    assert parse_qs(urlsplit(transport.lookup_requests[0].full_url).query) == {"idOut": ["HB-1"]}

    transport.lookup_responses = [(404, "")]
    assert client.reverse_lookup("HB-404") is None


def test_test_connection_forces_new_token(monkeypatch):
    transport = FakeTransport(token=[(200, "tok-1"), (200, "tok-2")])
    client = _client(monkeypatch, transport)

    client.authenticate()
    client.test_connection()

    assert len(transport.token_requests) == 2
    assert client.state == TokenState.AUTHENTICATED
