"""tests/test_sweep.py -- Background sweep: one cycle (sweep_once) and the loop around it (_sweep_loop)."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest

from api.limiter import BucketRegistry
from api.main import _sweep_loop, sweep_once
from auth.maintenance import AccountMaintenance
from auth.models import Account, AccountStatus
from auth.revocation import RevocationRegistry
from auth.store import AccountStore, utcnow


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_sweep_purges_revocations_buckets_and_runs_maintenance(tmp_path: Path):
    # File database: maintenance runs in a worker thread, which would see an
    # empty schema on a per-thread :memory: connection.
    store = AccountStore(f"sqlite:///{tmp_path / 'sweep.db'}")
    account_id = store.create_account(Account(username="idle", email="idle@example.com", password_hash="x"))
    store.touch_activity(account_id, now=utcnow() - timedelta(days=100))

    clock = FakeClock()
    revocations = RevocationRegistry(clock=clock)
    revocations.revoke("old", clock.now + 1)
    revocations.revoke("live", clock.now + 3600)

    buckets = BucketRegistry(5, 1.0, clock)
    buckets.take("idle-client")
    clock.now += 10

    state = SimpleNamespace(revocations=revocations, buckets=buckets, maintenance=AccountMaintenance(store))
    try:
        asyncio.run(sweep_once(SimpleNamespace(state=state)))

        assert len(revocations) == 1
        assert revocations.is_revoked("live")
        assert len(buckets) == 0
        assert store.get_by_id(account_id).status == AccountStatus.INACTIVE
    finally:
        store.close()


class FlakyMaintenance:
    """Maintenance stand-in whose first run fails."""

    def __init__(self) -> None:
        self.runs = 0

    def run(self) -> dict[str, int]:
        self.runs += 1
        if self.runs == 1:
            raise RuntimeError("database went away")
        return {"locked_violators": 0, "marked_inactive": 0, "purged": 0}


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def test_sweep_loop_survives_failed_cycle_and_stops_on_cancel(caplog):
    clock = FakeClock()
    revocations = RevocationRegistry(clock=clock)
    buckets = BucketRegistry(5, 1.0, clock)
    maintenance = FlakyMaintenance()
    app = SimpleNamespace(state=SimpleNamespace(revocations=revocations, buckets=buckets, maintenance=maintenance))

    async def scenario() -> asyncio.Task:
        task = asyncio.create_task(_sweep_loop(app, 0.01))
        await _wait_until(lambda: maintenance.runs >= 1)

        # Stale state added after the failed cycle must be cleared by a later one
        revocations.revoke("stale", clock.now + 1)
        buckets.take("idle-client")
        clock.now += 10

        await _wait_until(lambda: maintenance.runs >= 3)
        assert len(revocations) == 0
        assert len(buckets) == 0
        assert not task.done()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return task

    with caplog.at_level(logging.ERROR, logger="authgate.api"):
        task = asyncio.run(scenario())

    assert task.cancelled()
    assert "Sweep cycle failed" in caplog.text
