import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from tgvmax.engine import TGVMaxEngine
from tgvmax.models import Credentials
from tgvmax.periodic import PeriodicTask

from conftest import FakeSessionDriver, booking_payload, sncf_responder

CREDS = Credentials(email="camille@example.com", password="s3cret")


@pytest.fixture
def engine(clock, session_driver, credential_driver, user_bookings, tmp_path: Path):
    return TGVMaxEngine(
        session_driver,
        lambda: FakeSessionDriver(responder=sncf_responder(user_bookings)),
        credential_driver,
        task_file=tmp_path / "tasks.json",
        clock=clock,
    )


@pytest.mark.asyncio
async def test_periodic_task_runs_and_survives_errors():
    calls = []

    def job():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first run fails")

    task = PeriodicTask("test", 0.01, job)
    task.start()
    await asyncio.sleep(0.1)
    await task.stop()

    assert len(calls) >= 2
    assert task.running is False


@pytest.mark.asyncio
async def test_periodic_task_awaits_coroutine_jobs():
    done = asyncio.Event()

    async def job():
        done.set()

    task = PeriodicTask("async", 0.01, job)
    task.start()
    await asyncio.wait_for(done.wait(), timeout=1)
    await task.stop()

    assert task.runs >= 1


@pytest.mark.asyncio
async def test_start_stop_and_health(engine):
    await engine.start()
    health = engine.health()

    assert health["status"] == "ok"
    assert health["session"]["state"] == "uninitialized"
    assert health["periodicTasks"] == {
        "cache-sweep": True,
        "idle-sweep": True,
        "auto-confirm": True,
    }

    await engine.stop()
    assert not any(engine.health()["periodicTasks"].values())


@pytest.mark.asyncio
async def test_logout_cascades_through_engine(engine, clock):
    await engine.auth.login("u1", CREDS)
    await engine.scheduler.schedule("u1", booking_payload(clock.now + timedelta(days=4)))
    assert engine.health()["autoConfirmTasks"] == 1

    await engine.auth.logout("u1")

    assert engine.health()["autoConfirmTasks"] == 0


@pytest.mark.asyncio
async def test_force_tick_confirms_and_persists(engine, clock, tmp_path: Path):
    await engine.auth.login("u1", CREDS)
    await engine.scheduler.schedule("u1", booking_payload(clock.now + timedelta(hours=12)))

    summary = await engine.force_tick()

    assert summary["confirmed"] == 1
    assert await engine.scheduler.task_store.load() == []


@pytest.mark.asyncio
async def test_tasks_restored_on_start(clock, session_driver, credential_driver, user_bookings, tmp_path: Path):
    def build():
        return TGVMaxEngine(
            session_driver,
            lambda: FakeSessionDriver(responder=sncf_responder(user_bookings)),
            credential_driver,
            task_file=tmp_path / "tasks.json",
            clock=clock,
        )

    first = build()
    await first.auth.login("u1", CREDS)
    await first.scheduler.schedule("u1", booking_payload(clock.now + timedelta(days=4)))
    await first.stop()

    second = build()
    await second.start()
    try:
        assert len(second.scheduler.list_tasks("u1")) == 1
    finally:
        await second.stop()


@pytest.mark.asyncio
async def test_idle_sweep_cascades_through_engine(engine, clock):
    await engine.auth.login("u1", CREDS)
    await engine.scheduler.schedule("u1", booking_payload(clock.now + timedelta(days=4)))
    assert len(engine.scheduler.list_tasks()) == 1

    clock.advance(hours=25)
    swept = await engine.auth.sweep_idle()

    assert swept == ["u1"]
    assert engine.scheduler.list_tasks() == []
    assert await engine.scheduler.task_store.load() == []
