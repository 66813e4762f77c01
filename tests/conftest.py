# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Shared fixtures: a fresh SQLite database per test, a fake clock and a
recording email transport."""

import uuid
from typing import Dict, List, Set

import pytest
import pytest_asyncio

from newsletter_service.email_client import EmailClient, EmailDeliveryError
from newsletter_service.persistence import Persistence
from newsletter_service.sql import SqliteAdapter

START_TS = 1_700_000_000


class FakeClock:
    def __init__(self, now: int = START_TS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class RecordingEmailClient(EmailClient):
    """Transport double: records every attempt and fails on demand."""

    def __init__(self):
        self.attempts: List[Dict[str, str]] = []
        self.sent: List[Dict[str, str]] = []
        self.always_fail: Set[str] = set()
        self.fail_times: Dict[str, int] = {}
        self.raise_error: Exception | None = None
        self.cleanups = 0
        self.closed = False

    async def send(self, recipient, subject, html_body, text_body):
        message = {
            "to": str(recipient),
            "subject": subject,
            "html": html_body,
            "text": text_body,
        }
        self.attempts.append(message)
        if self.raise_error is not None:
            exc, self.raise_error = self.raise_error, None
            raise exc
        address = str(recipient)
        if address in self.always_fail:
            raise EmailDeliveryError(f"{address} rejected")
        if self.fail_times.get(address, 0) > 0:
            self.fail_times[address] -= 1
            raise EmailDeliveryError(f"{address} temporarily rejected")
        self.sent.append(message)

    async def cleanup(self):
        self.cleanups += 1

    async def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def email_client():
    return RecordingEmailClient()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "newsletter.db")


@pytest_asyncio.fixture
async def persistence(db_path):
    p = Persistence(SqliteAdapter(db_path))
    await p.init_db()
    return p


@pytest.fixture
def add_subscriber():
    """Insert a subscriber directly, confirmed unless told otherwise."""

    async def _add(persistence: Persistence, email: str, *, confirmed: bool = True, name: str = "Reader") -> str:
        subscriber_id = str(uuid.uuid4())
        async with persistence.begin() as txn:
            await persistence.insert_subscriber(
                txn,
                subscriber_id=subscriber_id,
                email=email,
                name=name,
                subscribed_at=START_TS,
            )
            await txn.commit()
        if confirmed:
            await persistence.confirm_subscriber(subscriber_id)
        return subscriber_id

    return _add
