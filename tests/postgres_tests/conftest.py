# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fixtures for PostgreSQL integration tests.

The database comes from ``NLS_TEST_POSTGRES_DSN`` when set, otherwise from a
throwaway testcontainers PostgreSQL. Tests are skipped when neither is
available.
"""

import contextlib
import os

import pytest
import pytest_asyncio

TABLES = [
    "issue_delivery_queue",
    "newsletter_issues",
    "idempotency",
    "subscription_tokens",
    "subscriptions",
]


@pytest.fixture(scope="session")
def pg_dsn():
    """Return a PostgreSQL connection URL for the whole session."""
    pytest.importorskip("psycopg")
    pytest.importorskip("psycopg_pool")

    dsn = os.getenv("NLS_TEST_POSTGRES_DSN")
    if dsn:
        yield dsn
        return

    try:
        from testcontainers.postgres import PostgresContainer
    except ImportError:
        pytest.skip("NLS_TEST_POSTGRES_DSN not set and testcontainers not installed")

    try:
        container = PostgresContainer("postgres:15")
        container.start()
    except Exception as exc:  # Docker missing or not running
        pytest.skip(f"PostgreSQL container unavailable: {exc}")
    try:
        # testcontainers returns 'postgresql+psycopg2://' but psycopg expects 'postgresql://'
        url = container.get_connection_url()
        yield url.replace("postgresql+psycopg2://", "postgresql://")
    finally:
        container.stop()


async def _drop_tables(adapter):
    for table_name in TABLES:
        with contextlib.suppress(Exception):
            await adapter.execute(f"DROP TABLE IF EXISTS {table_name} CASCADE")


@pytest_asyncio.fixture
async def pg_persistence(pg_dsn):
    """Yield a Persistence on a clean schema; tables are dropped afterwards."""
    from newsletter_service.persistence import Persistence
    from newsletter_service.sql import create_adapter

    adapter = create_adapter(pg_dsn, pool_size=5)
    await adapter.connect()
    await _drop_tables(adapter)
    persistence = Persistence(adapter)
    await persistence.init_db()

    yield persistence

    await _drop_tables(adapter)
    await adapter.close()
