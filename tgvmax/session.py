"""Single-flight lifecycle of the anonymous scraping session"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from loguru import logger

from .config import (
    DEFAULT_REQUEST_TIMEOUT,
    MAX_BLOCK_RETRIES,
    ROTATE_AFTER_BLOCKS,
    SESSION_TIMEOUT,
)
from .drivers import RemoteSessionDriver
from .exceptions import BlockedError, SessionInitError
from .models import BlockSignal, RemoteResponse, RequestDescriptor, SessionState
from .proxy_pool import ProxyConfig, ProxyPool


def _consume_init_error(task: "asyncio.Task[Any]") -> None:
    # Every waiter may have been cancelled; the failure is already logged
    if not task.cancelled():
        task.exception()


class SessionLifecycleManager:
    """
    Owns the one anonymous session used for availability searches.

    - Initializes at most once under concurrent demand: every caller
      awaits the same in-flight task
    - Re-initializes after SESSION_TIMEOUT of inactivity
    - Re-initializes and retries on block signals, up to MAX_BLOCK_RETRIES
    - Optionally rotates the outbound proxy once blocks pile up
    """

    def __init__(
        self,
        driver: RemoteSessionDriver,
        session_timeout: float = SESSION_TIMEOUT,
        max_block_retries: int = MAX_BLOCK_RETRIES,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        proxy_pool: Optional[ProxyPool] = None,
        rotate_after_blocks: int = ROTATE_AFTER_BLOCKS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the lifecycle manager.

        Args:
            driver: Remote session driver that opens and replays sessions
            session_timeout: Idle seconds before the session is considered expired
            max_block_retries: Re-init + retry attempts after block signals
            request_timeout: Bounded wait for a single driver request
            proxy_pool: Optional pool used to rotate the network identity
            rotate_after_blocks: Consecutive blocks before switching proxy
            clock: Returns the current aware datetime
        """
        self.driver = driver
        self.session_timeout = timedelta(seconds=session_timeout)
        self.max_block_retries = max_block_retries
        self.request_timeout = request_timeout
        self.proxy_pool = proxy_pool
        self.rotate_after_blocks = rotate_after_blocks
        self.clock = clock or (lambda: datetime.now().astimezone())

        self.state = SessionState.UNINITIALIZED
        self.handle: Any = None
        self.last_activity_at: Optional[datetime] = None
        self.consecutive_block_count = 0
        self.init_count = 0
        self.proxy: Optional[ProxyConfig] = None

        self._init_task: Optional["asyncio.Task[Any]"] = None

    def _is_idle_expired(self) -> bool:
        if self.last_activity_at is None:
            return True
        return self.clock() - self.last_activity_at >= self.session_timeout

    async def ensure(self) -> Any:
        """
        Make sure a usable session exists and return its handle.

        Raises:
            SessionInitError: If the driver could not open a session
        """
        if self.state == SessionState.READY:
            if not self._is_idle_expired():
                return self.handle
            logger.info("⏰ Session idle timeout, reinitializing...")
            self.state = SessionState.EXPIRED

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
            self._init_task.add_done_callback(_consume_init_error)
        else:
            logger.debug("Joining in-flight session initialization")

        # Shielded so a cancelled caller does not cancel the shared init
        return await asyncio.shield(self._init_task)

    async def _initialize(self) -> Any:
        try:
            self.state = SessionState.INITIALIZING
            self.init_count += 1

            if self.handle is not None:
                await self._release_handle()

            await self._maybe_rotate_proxy()

            logger.info(f"🦊 Opening browser session (init #{self.init_count})...")
            try:
                result = await self.driver.open(proxy=self.proxy)
            except Exception as e:
                self.state = SessionState.UNINITIALIZED
                logger.error(f"❌ Session initialization failed: {e}")
                raise SessionInitError(f"Failed to open session: {e}") from e

            if isinstance(result, BlockSignal):
                self.state = SessionState.UNINITIALIZED
                logger.error(f"🚫 Blocked while opening session ({result.reason})")
                if self.proxy_pool and self.proxy:
                    await self.proxy_pool.mark_blocked(self.proxy)
                    self.proxy = None
                raise SessionInitError(f"Blocked while opening session: {result.reason}")

            self.handle = result
            self.state = SessionState.READY
            self.last_activity_at = self.clock()
            self.consecutive_block_count = 0
            logger.success("✅ Browser session ready")
            return self.handle
        finally:
            self._init_task = None

    async def _maybe_rotate_proxy(self) -> None:
        if self.proxy_pool is None:
            return
        if self.proxy is not None and self.consecutive_block_count < self.rotate_after_blocks:
            return

        previous = self.proxy
        if previous is not None:
            await self.proxy_pool.mark_blocked(previous)
        self.proxy = await self.proxy_pool.next_proxy(exclude=previous)
        if self.proxy:
            logger.info(f"🌐 Rotated network identity to proxy #{self.proxy.id}")

    async def _release_handle(self) -> None:
        handle, self.handle = self.handle, None
        try:
            await self.driver.close(handle)
        except Exception as e:
            logger.warning(f"Error closing previous session: {e}")

    async def perform(self, descriptor: RequestDescriptor) -> RemoteResponse:
        """
        Run a request inside the session, recovering from blocks.

        Raises:
            SessionInitError: If the session could not be (re)opened
            BlockedError: If the request is still blocked after the retry bound
            asyncio.TimeoutError: If the driver did not answer in time
        """
        retries = 0
        label = descriptor.label or descriptor.url

        while True:
            handle = await self.ensure()

            result = await asyncio.wait_for(
                self.driver.request(handle, descriptor),
                timeout=self.request_timeout,
            )

            if not isinstance(result, BlockSignal):
                self.consecutive_block_count = 0
                self.last_activity_at = self.clock()
                if self.proxy_pool and self.proxy:
                    await self.proxy_pool.mark_success(self.proxy)
                return result

            self.consecutive_block_count += 1
            logger.warning(
                f"🚫 [{label}] Block signal ({result.reason}), "
                f"{self.consecutive_block_count} in a row"
            )

            if retries >= self.max_block_retries:
                logger.error(f"❌ [{label}] Still blocked after {retries} session resets")
                raise BlockedError(
                    f"Blocked by remote site after {retries} retries: {result.reason}",
                    attempts=retries + 1,
                )

            retries += 1
            # Only expire the handle that was blocked; a concurrent caller may
            # already have replaced it
            if self.handle is handle and self.state == SessionState.READY:
                self.state = SessionState.EXPIRED
            logger.info(f"🔄 [{label}] Reinitializing session (retry {retries}/{self.max_block_retries})")

    async def reinitialize(self) -> Any:
        """Force a fresh session regardless of the current state"""
        if self.state == SessionState.READY:
            self.state = SessionState.EXPIRED
        self.consecutive_block_count = 0
        return await self.ensure()

    async def close(self) -> None:
        if self.handle is not None:
            await self._release_handle()
        self.state = SessionState.UNINITIALIZED
        logger.info("Browser session closed")

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "ready": self.state == SessionState.READY,
            "lastActivity": self.last_activity_at.isoformat() if self.last_activity_at else None,
            "consecutiveBlocks": self.consecutive_block_count,
            "initCount": self.init_count,
            "proxy": self.proxy.address if self.proxy else None,
        }
