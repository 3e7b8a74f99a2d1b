"""Engine facade wiring the cache, sessions, fetcher and auto-confirm scheduler"""

from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .auth import AuthSessionStore
from .cache import ResponseCache
from .config import (
    AUTH_SWEEP_INTERVAL,
    AUTO_CONFIRM_CHECK_INTERVAL,
    CACHE_SWEEP_INTERVAL,
    FETCH_MAX_CONCURRENT,
)
from .drivers import CredentialFlowDriver, RemoteSessionDriver
from .fetcher import AvailabilityFetcher
from .periodic import PeriodicTask
from .proxy_pool import ProxyPool
from .scheduler import AutoConfirmScheduler
from .session import SessionLifecycleManager
from .storage import TaskStore


class TGVMaxEngine:
    """
    One process-wide instance owning every piece of mutable state.

    Example:
        engine = TGVMaxEngine(driver, driver_factory, credential_driver)
        await engine.start()
        result = await engine.fetcher.fetch_month("FRPNO", "FRLYS", 2026, 11)
        await engine.stop()
    """

    def __init__(
        self,
        session_driver: RemoteSessionDriver,
        user_driver_factory: Callable[[], RemoteSessionDriver],
        credential_driver: CredentialFlowDriver,
        proxy_pool: Optional[ProxyPool] = None,
        task_file: Optional[Path] = None,
        max_concurrent: int = FETCH_MAX_CONCURRENT,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.clock = clock or (lambda: datetime.now().astimezone())

        self.cache = ResponseCache(clock=self.clock)
        self.session = SessionLifecycleManager(
            session_driver, proxy_pool=proxy_pool, clock=self.clock
        )
        self.fetcher = AvailabilityFetcher(
            self.cache, self.session, max_concurrent=max_concurrent, clock=self.clock
        )
        self.auth = AuthSessionStore(user_driver_factory, credential_driver, clock=self.clock)
        self.scheduler = AutoConfirmScheduler(
            self.auth,
            task_store=TaskStore(task_file) if task_file else None,
            clock=self.clock,
        )
        self.auth.add_removal_listener(self.scheduler.purge_user)

        self.proxy_pool = proxy_pool
        self.started_at: Optional[datetime] = None
        self._periodic: List[PeriodicTask] = [
            PeriodicTask("cache-sweep", CACHE_SWEEP_INTERVAL, self.cache.sweep),
            PeriodicTask("idle-sweep", AUTH_SWEEP_INTERVAL, self.auth.sweep_idle),
            PeriodicTask("auto-confirm", AUTO_CONFIRM_CHECK_INTERVAL, self.scheduler.tick),
        ]

    async def start(self) -> None:
        restored = await self.scheduler.load()
        for task in self._periodic:
            task.start()
        self.started_at = self.clock()
        logger.success(f"🚄 Engine started ({restored} auto-confirm tasks restored)")

    async def stop(self) -> None:
        for task in self._periodic:
            await task.stop()
        await self.auth.close_all()
        await self.session.close()
        logger.info("🛑 Engine stopped")

    async def force_tick(self) -> Dict[str, int]:
        """Run the auto-confirm check now instead of waiting for the next poll"""
        return await self.scheduler.tick()

    def health(self) -> Dict[str, Any]:
        health = {
            "status": "ok",
            "timestamp": self.clock().isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "session": self.session.status(),
            "cacheSize": len(self.cache),
            "activeSessions": len(self.auth.active_sessions()),
            "autoConfirmTasks": len(self.scheduler),
            "periodicTasks": {t.name: t.running for t in self._periodic},
        }
        if self.proxy_pool:
            stats = self.proxy_pool.get_stats()
            health["proxies"] = {
                "total": stats["total_proxies"],
                "active": stats["active_proxies"],
            }
        return health
