import types
from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

from comms_dispatch import api
from comms_dispatch.api import API_TOKEN_HEADER_NAME, create_app
from comms_dispatch.core import CommsDispatchCore
from comms_dispatch.providers import ProviderAdapter, ProviderRegistry, SendResult

API_TOKEN = "secret-token"


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.active = True

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd == "listProviders":
            return {"ok": True, "providers": [{"name": "mailer", "channel": "email"}]}
        if cmd == "run now":
            return {"ok": True, "processed": 2}
        if cmd in ("suspend", "activate"):
            self.active = cmd == "activate"
            return {"ok": True, "active": self.active}
        return {"ok": False, "error": "unknown command"}

    async def handle_webhook(self, payload, provider):
        self.calls.append(("webhook", provider, payload))
        if provider == "broken":
            raise ValueError("cannot parse")
        return {"ok": True, "processed": 1, "results": [{"communication_id": "c1", "event": "delivery", "outcome": "applied"}]}


class DummyProvider(ProviderAdapter):
    def __init__(self, name, channel):
        super().__init__(name, {})
        self.channel = channel
        self.sent = []

    async def send(self, message):
        self.sent.append(message)
        return SendResult(provider_message_id=f"{self.name}-{len(self.sent)}")

    async def get_balance(self):
        return 12.5


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    original_token = getattr(api.app.state, "api_token", None)
    api.service = None
    api.app.state.api_token = None
    try:
        yield
    finally:
        api.service = original
        api.app.state.api_token = original_token


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


@pytest.fixture
def live_client(tmp_path):
    registry = ProviderRegistry()
    registry.register(DummyProvider("mailer", "email"))
    registry.register(DummyProvider("africastalking", "sms"))
    core = CommsDispatchCore(
        db_path=str(tmp_path / "api.db"),
        providers=registry,
        test_mode=True,
        retry_unit_seconds=0,
    )

    @asynccontextmanager
    async def lifespan(_app):
        await core.start()
        try:
            yield
        finally:
            await core.stop()

    app = create_app(core, api_token=API_TOKEN, lifespan=lifespan)
    with TestClient(app) as client:
        client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
        yield client, core


def test_returns_500_when_service_missing():
    app = create_app(DummyService(), api_token=API_TOKEN)
    api.service = None
    client = TestClient(app)
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_rejects_missing_or_wrong_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))

    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"

    response = client.get("/status", headers={API_TOKEN_HEADER_NAME: "nope"})
    assert response.status_code == 401


def test_no_token_configured_allows_requests():
    client = TestClient(create_app(DummyService()))
    assert client.get("/status").json() == {"ok": True, "active": True}


def test_commands_dispatch_to_service(client_and_service):
    client, svc = client_and_service

    assert client.post("/commands/run-now").json() == {"ok": True, "processed": 2}
    assert client.post("/commands/suspend").json() == {"ok": True, "active": False}
    assert client.get("/status").json() == {"ok": True, "active": False}
    assert client.post("/commands/activate").json() == {"ok": True, "active": True}
    assert client.get("/providers").json()["providers"][0]["name"] == "mailer"
    assert [call[0] for call in svc.calls] == ["run now", "suspend", "activate", "listProviders"]


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.content == b"metrics-data"
    assert response.headers["content-type"].startswith("text/plain")


def test_webhooks_need_no_token_and_always_succeed(client_and_service):
    client, svc = client_and_service
    client.headers.pop(API_TOKEN_HEADER_NAME)

    response = client.post("/webhooks/acme", json={"messageId": "m1", "status": "delivered"})
    assert response.status_code == 200
    assert response.json()["results"][0]["outcome"] == "applied"

    response = client.post("/webhooks/broken", json={"x": 1})
    assert response.status_code == 200
    assert response.json() == {"ok": True, "processed": 0, "results": []}

    response = client.post("/webhooks/acme", content=b"not json", headers={"content-type": "application/json"})
    assert response.status_code == 200
    assert response.json()["processed"] == 0

    response = client.post("/webhooks/africastalking", data={"id": "ATXid_1", "status": "Success"})
    assert response.status_code == 200
    assert svc.calls[-1] == ("webhook", "africastalking", {"id": "ATXid_1", "status": "Success"})


def test_send_and_read_back(live_client):
    client, core = live_client

    response = client.post(
        "/communications",
        json={"type": "email", "to": "Ada@Example.com", "content": {"subject": "Hi", "body": "Hello"}},
    )
    assert response.status_code == 202
    body = response.json()
    assert body["ok"] is True
    assert body["status"] == "queued"
    comm_id = body["communication_id"]

    assert client.post("/commands/run-now").json() == {"ok": True, "processed": 1}

    record = client.get(f"/communications/{comm_id}").json()
    assert record["status"] == "sent"
    assert record["to"] == ["ada@example.com"]
    assert record["provider"] == "mailer"

    listing = client.get("/communications", params={"type": "email", "status": "sent"}).json()
    assert listing["pagination"] == {"page": 1, "limit": 20, "total": 1, "pages": 1}
    assert listing["items"][0]["id"] == comm_id

    assert client.get("/communications", params={"limit": 0}).status_code == 422


def test_validation_and_not_found_errors(live_client):
    client, _ = live_client

    response = client.post("/communications", json={"type": "email", "to": ["not-an-email"], "content": {"body": "x"}})
    assert response.status_code == 400
    assert response.json()["code"] == "no_valid_recipients"

    response = client.get("/communications/missing")
    assert response.status_code == 404
    assert response.json()["code"] == "communication_not_found"

    assert client.get("/bulk/missing").status_code == 404


def test_cancel_endpoint(live_client):
    client, _ = live_client

    scheduled = client.post(
        "/communications",
        json={"type": "email", "to": "ada@example.com", "content": {"body": "later"}, "scheduledAt": 4_000_000_000},
    ).json()
    assert scheduled["status"] == "pending"

    response = client.post(f"/communications/{scheduled['communication_id']}/cancel")
    assert response.json() == {"ok": True, "cancelled": True}

    again = client.post(f"/communications/{scheduled['communication_id']}/cancel").json()
    assert again["ok"] is False
    assert again["cancelled"] is False


def test_bulk_endpoints(live_client):
    client, _ = live_client

    response = client.post(
        "/communications/bulk",
        json={
            "name": "Reminder",
            "type": "sms",
            "recipients": ["0712345678", "bad", "+254733000111"],
            "content": {"body": "Your bill is due"},
        },
    )
    assert response.status_code == 202
    bulk = response.json()
    assert bulk["progress"]["total"] == 2
    assert len(bulk["communication_ids"]) == 2

    client.post("/commands/run-now")
    refreshed = client.get(f"/bulk/{bulk['id']}").json()
    assert refreshed["progress"]["sent"] == 2

    cancelled = client.post(f"/bulk/{bulk['id']}/cancel").json()
    assert cancelled["progress"]["cancelled"] == 0


def test_form_webhook_updates_delivery(live_client):
    client, _ = live_client

    comm_id = client.post(
        "/communications", json={"type": "sms", "to": "0712345678", "content": {"body": "code 1234"}}
    ).json()["communication_id"]
    client.post("/commands/run-now")

    response = client.post(
        "/webhooks/africastalking",
        data={"id": "africastalking-1", "status": "Success", "phoneNumber": "+254712345678"},
        headers={API_TOKEN_HEADER_NAME: ""},
    )
    assert response.status_code == 200
    assert response.json()["results"][0]["outcome"] == "applied"

    assert client.get(f"/communications/{comm_id}").json()["status"] == "delivered"
    events = client.get(f"/communications/{comm_id}/events").json()["events"]
    assert [event["event_type"] for event in events] == ["delivery"]
    assert client.get(f"/communications/{comm_id}/delivery-status").json()["status"] == "delivered"


def test_provider_listing_and_balances(live_client):
    client, _ = live_client

    names = {item["name"] for item in client.get("/providers").json()["providers"]}
    assert names == {"mailer", "africastalking"}
    assert client.get("/providers/balances").json()["balances"] == {"mailer": 12.5, "africastalking": 12.5}
