"""Tests for the async job scheduler."""

import asyncio
import threading
import time

import pytest

from gapminer.worker import JobScheduler


class ScriptedWorker:
    """Worker whose jobs sleep, fail or return according to the payload."""

    def __init__(self):
        self.finished = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def process_job(self, job_type, payload, llm):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(payload.get("sleep", 0))
            if payload.get("fail"):
                raise RuntimeError(f"{payload['agent_id']} exploded")
            self.finished.append(payload["agent_id"])
            return {"agent_id": payload["agent_id"], "type": job_type}
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def scheduler():
    scheduler = JobScheduler(ScriptedWorker(), max_workers=4)
    yield scheduler
    scheduler.shutdown(wait=True)


def test_gather_collects_successes_and_failures(scheduler):
    """Test a failing job does not affect its siblings."""

    async def go():
        futures = {
            "a": scheduler.submit("micro", {"agent_id": "a"}, None),
            "b": scheduler.submit("micro", {"agent_id": "b", "fail": True}, None),
            "c": scheduler.submit("micro", {"agent_id": "c"}, None),
        }
        return await scheduler.gather(futures, timeout=5)

    outcomes = asyncio.run(go())

    assert outcomes["a"].ok and outcomes["a"].result == {"agent_id": "a", "type": "micro"}
    assert outcomes["c"].ok
    assert not outcomes["b"].ok
    assert "exploded" in outcomes["b"].error
    assert not outcomes["b"].timed_out


def test_jobs_run_in_parallel(scheduler):
    """Test a batch runs concurrently on the pool."""

    async def go():
        futures = {i: scheduler.submit("micro", {"agent_id": str(i), "sleep": 0.2}, None) for i in range(4)}
        return await scheduler.gather(futures, timeout=5)

    started = time.monotonic()
    outcomes = asyncio.run(go())
    elapsed = time.monotonic() - started

    assert all(o.ok for o in outcomes.values())
    assert scheduler.worker.max_active > 1
    assert elapsed < 0.8


def test_timeout_is_reported_and_job_not_killed(scheduler):
    """Test a slow job times out for the caller but still finishes."""

    async def go():
        futures = {
            "fast": scheduler.submit("micro", {"agent_id": "fast"}, None),
            "slow": scheduler.submit("micro", {"agent_id": "slow", "sleep": 0.5}, None),
        }
        return await scheduler.gather(futures, timeout=0.1)

    outcomes = asyncio.run(go())

    assert outcomes["fast"].ok
    assert outcomes["slow"].timed_out
    assert not outcomes["slow"].ok

    scheduler.shutdown(wait=True)
    assert "slow" in scheduler.worker.finished


def test_run_single_job(scheduler):
    """Test awaiting a single job."""
    outcome = asyncio.run(scheduler.run("meso", {"agent_id": "meso-1"}, None, timeout=5))

    assert outcome.ok
    assert outcome.key == "meso-1"
    assert outcome.result["type"] == "meso"


def test_timeout_starts_when_job_starts():
    """Test jobs waiting for a free thread keep their full timeout."""
    scheduler = JobScheduler(ScriptedWorker(), max_workers=1)

    async def go():
        futures = {i: scheduler.submit("micro", {"agent_id": str(i), "sleep": 0.3}, None) for i in range(3)}
        return await scheduler.gather(futures, timeout=0.6)

    try:
        outcomes = asyncio.run(go())
    finally:
        scheduler.shutdown(wait=True)

    assert all(o.ok for o in outcomes.values())
    assert scheduler.worker.max_active == 1
