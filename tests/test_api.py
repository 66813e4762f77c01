import re
import types

import pytest
from fastapi.testclient import TestClient

from newsletter_service import api
from newsletter_service.api import API_TOKEN_HEADER_NAME, USER_ID_HEADER_NAME, create_app, service_lifespan
from newsletter_service.idempotency import HeaderPair, SavedResponse
from newsletter_service.service import NewsletterService
from newsletter_service.sql import SqliteAdapter

API_TOKEN = "secret-token"
ADMIN_HEADERS = {API_TOKEN_HEADER_NAME: API_TOKEN, USER_ID_HEADER_NAME: "admin-1"}
TOKEN_RE = re.compile(r"subscription_token=([A-Za-z0-9]+)")


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
def service(db_path, email_client, clock):
    return NewsletterService(SqliteAdapter(db_path), email_client, base_url="http://testserver", clock=clock)


@pytest.fixture
def client(service):
    app = create_app(service, api_token=API_TOKEN, lifespan=service_lifespan(service, run_worker=False))
    with TestClient(app) as test_client:
        yield test_client


def _newsletter(key="abc123"):
    return {
        "title": "Newsletter title",
        "text_content": "Newsletter body as plain text",
        "html_content": "<p>Newsletter body as HTML</p>",
        "idempotency_key": key,
    }


def _subscribe_and_confirm(client, email_client, email="ursula@example.com"):
    assert client.post("/subscriptions", json={"email": email, "name": "Ursula"}).status_code == 200
    token = TOKEN_RE.search(email_client.sent[-1]["text"]).group(1)
    assert client.get("/subscriptions/confirm", params={"subscription_token": token}).status_code == 200


def test_health_check(client):
    response = client.get("/health_check")
    assert response.status_code == 200
    assert response.content == b""


def test_returns_500_when_service_missing():
    create_app(types.SimpleNamespace(), api_token=None)
    api.service = None
    client = TestClient(api.app)
    response = client.get("/subscriptions/confirm", params={"subscription_token": "x"})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_subscribe_and_confirm(client, email_client):
    _subscribe_and_confirm(client, email_client)
    assert email_client.sent[0]["to"] == "ursula@example.com"
    assert "http://testserver/subscriptions/confirm?subscription_token=" in email_client.sent[0]["text"]


@pytest.mark.parametrize(
    "payload",
    [
        {"email": "ursula@example.com", "name": ""},
        {"email": "definitely-not-an-email", "name": "Ursula"},
        {"email": "ursula@example.com", "name": "<script>"},
        {"name": "Ursula"},
        {"email": "ursula@example.com"},
    ],
)
def test_subscribe_rejects_invalid_data(client, email_client, payload):
    assert client.post("/subscriptions", json=payload).status_code == 422
    assert email_client.attempts == []


def test_subscribe_returns_500_when_email_fails(client, email_client):
    email_client.always_fail.add("ursula@example.com")
    response = client.post("/subscriptions", json={"email": "ursula@example.com", "name": "Ursula"})
    assert response.status_code == 500


def test_confirm_rejects_unknown_or_missing_token(client):
    assert client.get("/subscriptions/confirm", params={"subscription_token": "nope"}).status_code == 401
    assert client.get("/subscriptions/confirm").status_code == 422


def test_publish_requires_token_and_user(client):
    response = client.post("/admin/newsletters", json=_newsletter())
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"

    response = client.post(
        "/admin/newsletters", json=_newsletter(), headers={API_TOKEN_HEADER_NAME: API_TOKEN}
    )
    assert response.status_code == 401
    assert USER_ID_HEADER_NAME in response.json()["detail"]


def test_publish_redirects_and_replays_identically(client, service, email_client):
    _subscribe_and_confirm(client, email_client, "a@example.com")
    _subscribe_and_confirm(client, email_client, "b@example.com")

    first = client.post("/admin/newsletters", json=_newsletter(), headers=ADMIN_HEADERS, follow_redirects=False)
    assert first.status_code == 303
    assert first.headers["location"] == "/admin/newsletters"
    assert "_flash=" in first.headers["set-cookie"]
    assert first.content == b""

    second = client.post(
        "/admin/newsletters",
        json=_newsletter() | {"title": "Changed"},
        headers=ADMIN_HEADERS,
        follow_redirects=False,
    )
    assert second.status_code == first.status_code
    assert second.headers.raw == first.headers.raw
    assert second.content == first.content

    tasks = client.portal.call(service.list_delivery_tasks)
    assert sorted(t["subscriber_email"] for t in tasks) == ["a@example.com", "b@example.com"]


def test_publish_rejects_invalid_keys(client):
    for key in ("", "x" * 50):
        response = client.post("/admin/newsletters", json=_newsletter(key), headers=ADMIN_HEADERS)
        assert response.status_code == 400


def test_publish_returns_500_for_incomplete_record(client, service):
    async def insert_pending():
        async with service.persistence.begin() as txn:
            await service.persistence.insert_idempotency_key(txn, "admin-1", "stuck", 0)
            await txn.commit()

    client.portal.call(insert_pending)
    response = client.post("/admin/newsletters", json=_newsletter("stuck"), headers=ADMIN_HEADERS)
    assert response.status_code == 500


def test_saved_response_keeps_duplicate_headers():
    saved = SavedResponse(
        302,
        [HeaderPair("Set-Cookie", b"a=1"), HeaderPair("set-cookie", b"b=2"), HeaderPair("content-length", b"0")],
    )
    response = api.saved_response_to_http(saved)
    assert response.status_code == 302
    assert response.raw_headers == [
        (b"set-cookie", b"a=1"),
        (b"set-cookie", b"b=2"),
        (b"content-length", b"0"),
    ]


def test_metrics_requires_token(client):
    assert client.get("/metrics").status_code == 401
    response = client.get("/metrics", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 200
    assert b"nls_issues_published_total" in response.content
