import asyncio

import aiosmtplib
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from newsletter_service.domain import SubscriberEmail, SubscriberEmailError
from newsletter_service.email_client import (
    EmailDeliveryError,
    HttpEmailClient,
    SmtpEmailClient,
    create_email_client,
)
from newsletter_service.smtp_pool import SMTPPool

SENDER = SubscriberEmail.parse("news@example.com")
RECIPIENT = SubscriberEmail.parse("ursula@example.com")


@pytest_asyncio.fixture
async def email_api():
    state = {"status": 200, "delay": 0.0, "requests": []}

    async def handler(request):
        state["requests"].append(
            {"path": request.path, "headers": dict(request.headers), "json": await request.json()}
        )
        if state["delay"]:
            await asyncio.sleep(state["delay"])
        return web.Response(status=state["status"])

    app = web.Application()
    app.router.add_post("/email", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    state["base_url"] = str(server.make_url("/"))
    yield state
    await server.close()


@pytest.mark.asyncio
async def test_http_client_posts_expected_payload(email_api):
    client = HttpEmailClient(email_api["base_url"], SENDER, "my-token")
    try:
        await client.send(RECIPIENT, "Subject", "<p>html</p>", "text")
    finally:
        await client.close()

    [request] = email_api["requests"]
    assert request["path"] == "/email"
    assert request["headers"]["Authorization"] == "Bearer my-token"
    assert request["json"] == {
        "From": "news@example.com",
        "To": "ursula@example.com",
        "Subject": "Subject",
        "HtmlBody": "<p>html</p>",
        "TextBody": "text",
    }


@pytest.mark.asyncio
async def test_http_client_raises_on_server_error(email_api):
    email_api["status"] = 500
    client = HttpEmailClient(email_api["base_url"], SENDER, "my-token")
    try:
        with pytest.raises(EmailDeliveryError):
            await client.send(RECIPIENT, "Subject", "html", "text")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_http_client_times_out(email_api):
    email_api["delay"] = 1.0
    client = HttpEmailClient(email_api["base_url"], SENDER, "my-token", timeout=0.1)
    try:
        with pytest.raises(EmailDeliveryError):
            await client.send(RECIPIENT, "Subject", "html", "text")
    finally:
        await client.close()


class DummySMTP:
    def __init__(self, hostname, port, start_tls=True, use_tls=False, timeout=None):
        self.hostname = hostname
        self.port = port
        self.use_tls = use_tls
        self.sent = []
        self.raise_error = None
        self.closed = False

    async def connect(self):
        return None

    async def login(self, user, password):
        self.credentials = (user, password)

    async def noop(self):
        return 250, "OK"

    async def send_message(self, message, sender=None, **_kwargs):
        if self.raise_error:
            raise self.raise_error
        self.sent.append((message, sender))

    async def quit(self):
        self.closed = True

    def close(self):
        self.closed = True


@pytest.fixture
def smtp_factory(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("newsletter_service.smtp_pool.aiosmtplib.SMTP", factory)
    return created


def test_smtp_message_is_multipart_alternative():
    client = SmtpEmailClient("smtp.example.com", 587, SENDER)
    msg = client.build_message(RECIPIENT, "Hello", "<p>html</p>", "text")
    assert msg["From"] == "news@example.com"
    assert msg["To"] == "ursula@example.com"
    assert msg["Subject"] == "Hello"
    assert msg.get_content_type() == "multipart/alternative"
    parts = [part.get_content_type() for part in msg.iter_parts()]
    assert parts == ["text/plain", "text/html"]


@pytest.mark.asyncio
async def test_smtp_client_sends_through_pool(smtp_factory):
    client = SmtpEmailClient("smtp.example.com", 465, SENDER, user="u", password="p")
    assert client.use_tls is True

    await client.send(RECIPIENT, "Hello", "<p>html</p>", "text")
    await client.send(RECIPIENT, "Again", "<p>html</p>", "text")

    [smtp] = smtp_factory
    assert smtp.use_tls is True
    assert smtp.credentials == ("u", "p")
    assert [m["Subject"] for m, _ in smtp.sent] == ["Hello", "Again"]
    assert smtp.sent[0][1] == "news@example.com"

    await client.close()
    assert smtp.closed is True


@pytest.mark.asyncio
async def test_smtp_cleanup_closes_expired_idle_connections(smtp_factory):
    client = SmtpEmailClient("smtp.example.com", 25, SENDER, pool=SMTPPool(ttl=60))
    await client.send(RECIPIENT, "Hello", "html", "text")
    [smtp] = smtp_factory

    await client.cleanup()
    assert smtp.closed is False

    for entries in client.pool.idle.values():
        entries[:] = [(conn, last_used - 120) for conn, last_used in entries]
    await client.cleanup()
    assert smtp.closed is True
    assert all(not entries for entries in client.pool.idle.values())


@pytest.mark.asyncio
async def test_smtp_errors_become_delivery_errors(smtp_factory):
    client = SmtpEmailClient("smtp.example.com", 25, SENDER)
    await client.send(RECIPIENT, "Warm-up", "html", "text")
    smtp_factory[0].raise_error = aiosmtplib.SMTPResponseException(451, "try later")

    with pytest.raises(EmailDeliveryError):
        await client.send(RECIPIENT, "Hello", "html", "text")
    assert smtp_factory[0].closed is True


def test_create_email_client_selects_backend():
    http = create_email_client(
        {"email_backend": "http", "email_api_url": "https://api.example.com/", "email_sender": "news@example.com"}
    )
    assert isinstance(http, HttpEmailClient)
    assert http.base_url == "https://api.example.com"

    smtp = create_email_client(
        {
            "email_backend": "SMTP",
            "email_sender": "news@example.com",
            "smtp_host": "smtp.example.com",
            "smtp_port": 587,
            "smtp_use_tls": None,
        }
    )
    assert isinstance(smtp, SmtpEmailClient)
    assert smtp.use_tls is False


def test_create_email_client_rejects_bad_configuration():
    with pytest.raises(ValueError):
        create_email_client({"email_backend": "carrier-pigeon", "email_sender": "news@example.com"})
    with pytest.raises(SubscriberEmailError):
        create_email_client({"email_backend": "http", "email_sender": "nope", "email_api_url": "x"})
