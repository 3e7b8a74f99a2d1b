import asyncio
import gc
from pathlib import Path

import pytest

from tgvmax.exceptions import BlockedError, SessionInitError
from tgvmax.models import BlockSignal, RemoteResponse, RequestDescriptor, SessionState
from tgvmax.proxy_pool import ProxyPool
from tgvmax.session import SessionLifecycleManager

DESCRIPTOR = RequestDescriptor(url="https://example.test/search", label="search")


@pytest.mark.asyncio
async def test_concurrent_ensure_opens_once(clock, session_driver):
    session_driver.open_delay = 0.05
    manager = SessionLifecycleManager(session_driver, clock=clock)

    handles = await asyncio.gather(*(manager.ensure() for _ in range(10)))

    assert session_driver.open_calls == 1
    assert set(handles) == {"handle-1"}
    assert manager.state == SessionState.READY


@pytest.mark.asyncio
async def test_concurrent_callers_share_init_failure(clock, session_driver):
    session_driver.open_delay = 0.02
    session_driver.open_results = [RuntimeError("browser crashed")]
    manager = SessionLifecycleManager(session_driver, clock=clock)

    results = await asyncio.gather(*(manager.ensure() for _ in range(5)), return_exceptions=True)

    assert session_driver.open_calls == 1
    assert all(isinstance(r, SessionInitError) for r in results)
    assert manager.state == SessionState.UNINITIALIZED

    # The next call starts a fresh attempt
    assert await manager.ensure() == "handle-2"
    assert manager.state == SessionState.READY


@pytest.mark.asyncio
async def test_abandoned_init_failure_is_retrieved(clock, session_driver):
    loop = asyncio.get_running_loop()
    reports = []
    loop.set_exception_handler(lambda _loop, context: reports.append(context))
    session_driver.open_delay = 0.02
    session_driver.open_results = [RuntimeError("browser crashed")]
    manager = SessionLifecycleManager(session_driver, clock=clock)

    try:
        caller = asyncio.ensure_future(manager.ensure())
        await asyncio.sleep(0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        await asyncio.sleep(0.05)
        gc.collect()
    finally:
        loop.set_exception_handler(None)

    assert manager.state == SessionState.UNINITIALIZED
    assert not any("never retrieved" in c.get("message", "") for c in reports)


@pytest.mark.asyncio
async def test_block_signal_on_open_is_init_error(clock, session_driver):
    session_driver.open_results = [BlockSignal("captcha_delivery")]
    manager = SessionLifecycleManager(session_driver, clock=clock)

    with pytest.raises(SessionInitError):
        await manager.ensure()
    assert manager.state == SessionState.UNINITIALIZED


@pytest.mark.asyncio
async def test_perform_recovers_after_one_block(clock, session_driver):
    session_driver.responses = [BlockSignal("http_403"), RemoteResponse(200, {"ok": True})]
    manager = SessionLifecycleManager(session_driver, clock=clock)

    response = await manager.perform(DESCRIPTOR)

    assert response.body == {"ok": True}
    assert session_driver.open_calls == 2
    assert manager.consecutive_block_count == 0
    assert session_driver.closed == ["handle-1"], "Blocked handle should be released"
    assert [h for h, _ in session_driver.requests] == ["handle-1", "handle-2"]


@pytest.mark.asyncio
async def test_perform_gives_up_after_retry_bound(clock):
    from conftest import FakeSessionDriver

    driver = FakeSessionDriver(responder=lambda d: BlockSignal("http_403"))
    manager = SessionLifecycleManager(driver, max_block_retries=2, clock=clock)

    with pytest.raises(BlockedError) as exc_info:
        await manager.perform(DESCRIPTOR)

    assert exc_info.value.attempts == 3
    assert driver.open_calls == 3
    assert len(driver.requests) == 3


@pytest.mark.asyncio
async def test_non_block_error_status_is_returned(clock, session_driver):
    session_driver.responses = [RemoteResponse(500, "oops")]
    manager = SessionLifecycleManager(session_driver, clock=clock)

    response = await manager.perform(DESCRIPTOR)

    assert response.status == 500
    assert session_driver.open_calls == 1


@pytest.mark.asyncio
async def test_idle_session_is_reinitialized(clock, session_driver):
    manager = SessionLifecycleManager(session_driver, session_timeout=15 * 60, clock=clock)
    await manager.perform(DESCRIPTOR)

    clock.advance(minutes=10)
    await manager.perform(DESCRIPTOR)
    assert session_driver.open_calls == 1

    clock.advance(minutes=16)
    await manager.perform(DESCRIPTOR)
    assert session_driver.open_calls == 2
    assert session_driver.closed == ["handle-1"]


@pytest.mark.asyncio
async def test_reinitialize_and_close(clock, session_driver):
    manager = SessionLifecycleManager(session_driver, clock=clock)
    await manager.ensure()

    assert await manager.reinitialize() == "handle-2"
    await manager.close()

    assert manager.state == SessionState.UNINITIALIZED
    assert session_driver.closed == ["handle-1", "handle-2"]
    assert manager.status()["initCount"] == 2


@pytest.mark.asyncio
async def test_block_rotates_proxy(clock, session_driver, tmp_path: Path):
    proxy_file = tmp_path / "proxies.txt"
    proxy_file.write_text("10.0.0.1:8080:user:pass\n10.0.0.2:8080:user:pass\n")
    pool = ProxyPool(proxy_file, cooldown_minutes=40)
    session_driver.responses = [BlockSignal("http_403"), RemoteResponse(200, {})]
    manager = SessionLifecycleManager(session_driver, proxy_pool=pool, clock=clock)

    await manager.perform(DESCRIPTOR)

    first, second = session_driver.proxies
    assert first.host == "10.0.0.1"
    assert second.host == "10.0.0.2"
    assert first.blocked_count == 1
    assert second.successful_requests == 1
    assert manager.status()["proxy"] == "10.0.0.2:8080"
