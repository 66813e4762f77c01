import asyncio
import types

import pytest

from newsletter_service.prometheus import NewsletterMetrics
from newsletter_service.retention import PRUNE_INTERVAL, RETENTION_SECONDS, IdempotencyPruner


async def _insert_key(persistence, key, created_at):
    async with persistence.begin() as txn:
        await persistence.insert_idempotency_key(txn, "admin", key, created_at)
        await txn.commit()


def test_defaults():
    assert RETENTION_SECONDS == 86400
    assert PRUNE_INTERVAL == 1000


@pytest.mark.asyncio
async def test_prune_once_removes_records_older_than_a_day(persistence, clock):
    metrics = NewsletterMetrics()
    await _insert_key(persistence, "old", clock.now - 25 * 3600)
    await _insert_key(persistence, "recent", clock.now - 3600)

    pruner = IdempotencyPruner(persistence, clock=clock, metrics=metrics)
    assert await pruner.prune_once() == 1

    assert await persistence.fetch_idempotency_record("admin", "old") is None
    assert await persistence.fetch_idempotency_record("admin", "recent") is not None
    assert metrics.registry.get_sample_value("nls_idempotency_pruned_total") == 1


@pytest.mark.asyncio
async def test_loop_survives_failures_until_stopped():
    calls = []

    async def prune_idempotency(threshold):
        calls.append(threshold)
        if len(calls) == 1:
            raise RuntimeError("database unavailable")
        return 0

    logged = []
    logger = types.SimpleNamespace(
        info=lambda *a, **k: None,
        exception=lambda msg, *args: logged.append(msg % args),
    )
    pruner = IdempotencyPruner(
        types.SimpleNamespace(prune_idempotency=prune_idempotency),
        clock=lambda: 100_000,
        interval=0.01,
        logger=logger,
    )

    runner = asyncio.create_task(pruner.run_until_stopped())
    for _ in range(200):
        if len(calls) >= 3:
            break
        await asyncio.sleep(0.01)
    pruner.stop()
    await asyncio.wait_for(runner, timeout=2)

    assert len(calls) >= 3
    assert calls[0] == 100_000 - RETENTION_SECONDS
    assert logged == ["Failed to prune idempotency records: database unavailable"]


@pytest.mark.asyncio
async def test_stop_interrupts_the_interval(persistence):
    pruner = IdempotencyPruner(persistence, interval=3600)
    runner = asyncio.create_task(pruner.run_until_stopped())
    await asyncio.sleep(0.05)
    pruner.stop()
    await asyncio.wait_for(runner, timeout=2)
