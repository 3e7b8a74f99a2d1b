"""Auto-confirmation of bookings once they enter the confirmation window"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from loguru import logger

from .auth import AuthSessionStore
from .config import CONFIRM_WINDOW, DEADLINE_PASSED
from .exceptions import NotAuthenticatedError
from .models import ActionResult, AuthState, AutoConfirmTask, Booking, TaskStatus
from .storage import TaskStore

ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.NEEDS_REAUTH)


class AutoConfirmScheduler:
    """
    Keeps the table of auto-confirmation tasks and fires them on tick().

    A booking can only be confirmed during the CONFIRM_WINDOW before its
    departure. tick() is polled, so a task fires at the first tick after
    its window opens.
    """

    def __init__(
        self,
        auth_store: AuthSessionStore,
        window: timedelta = CONFIRM_WINDOW,
        task_store: Optional[TaskStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.auth_store = auth_store
        self.window = window
        self.task_store = task_store
        self.clock = clock or (lambda: datetime.now().astimezone())

        self._tasks: Dict[str, AutoConfirmTask] = {}
        self._tick_lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._tasks)

    async def load(self) -> int:
        """Restore the task table from the task store, returns the task count"""
        if self.task_store is None:
            return 0

        for task in await self.task_store.load():
            if task.status == TaskStatus.CONFIRMING:
                # Interrupted mid-flight; the next tick tries again
                task.status = TaskStatus.PENDING
            self._tasks[task.key] = task
        return len(self._tasks)

    async def _persist(self) -> None:
        if self.task_store is None:
            return
        # Snapshot under the lock so the last write carries the latest table
        async with self._persist_lock:
            await self.task_store.save(list(self._tasks.values()))

    async def schedule(self, user_id: str, booking: Union[Booking, Dict[str, Any]]) -> str:
        """
        Register a booking for auto-confirmation.

        Scheduling the same booking twice is a no-op that returns the
        existing key; a FAILED task is put back to PENDING.

        Returns:
            The task key

        Raises:
            NotAuthenticatedError: If the user has no authenticated session
            ValidationError: If the booking lacks identifying fields
        """
        if self.auth_store.state_of(user_id) != AuthState.AUTHENTICATED:
            raise NotAuthenticatedError(f"User {user_id} must be logged in to schedule")

        if not isinstance(booking, Booking):
            booking = Booking.from_payload(booking)

        existing = self._tasks.get(booking.key)
        if existing is not None:
            if existing.status == TaskStatus.FAILED:
                existing.status = TaskStatus.PENDING
                existing.last_error = None
                await self._persist()
                logger.info(f"🔁 Auto-confirm re-armed for train {booking.train_number}")
            return existing.key

        task = AutoConfirmTask(user_id=user_id, booking=booking, scheduled_at=self.clock())
        self._tasks[task.key] = task
        await self._persist()

        logger.info(
            f"📅 Auto-confirm scheduled: train {booking.train_number} on "
            f"{booking.departure.strftime('%Y-%m-%d %H:%M')} for {user_id}"
        )
        return task.key

    async def cancel(self, task_key: str) -> bool:
        task = self._tasks.pop(task_key, None)
        if task is None:
            return False
        await self._persist()
        logger.info(f"🗑️ Auto-confirm cancelled: {task_key}")
        return True

    async def purge_user(self, user_id: str) -> int:
        """Remove every task owned by a user"""
        keys = [k for k, t in list(self._tasks.items()) if t.user_id == user_id]
        for key in keys:
            self._tasks.pop(key, None)
        if keys:
            await self._persist()
            logger.info(f"🗑️ Removed {len(keys)} auto-confirm tasks of {user_id}")
        return len(keys)

    def list_tasks(self, user_id: Optional[str] = None) -> List[AutoConfirmTask]:
        tasks = [t for t in list(self._tasks.values()) if user_id is None or t.user_id == user_id]
        return sorted(tasks, key=lambda t: t.departure)

    def get_task(self, task_key: str) -> Optional[AutoConfirmTask]:
        return self._tasks.get(task_key)

    async def tick(self) -> Dict[str, int]:
        """
        Evaluate every active task against the clock.

        Returns:
            Counts of what happened during this tick
        """
        async with self._tick_lock:
            now = self.clock()
            summary = {"checked": 0, "confirmed": 0, "needs_reauth": 0, "failed": 0, "missed": 0}
            changed = False

            for key, task in list(self._tasks.items()):
                if task.status not in ACTIVE_STATUSES:
                    continue
                summary["checked"] += 1

                if now >= task.departure:
                    task.status = TaskStatus.FAILED
                    task.last_error = DEADLINE_PASSED
                    summary["missed"] += 1
                    changed = True
                    logger.error(f"⏰ Auto-confirm missed for train {task.booking.train_number}: departure passed")
                    continue

                if now < task.window_start(self.window):
                    continue

                if self.auth_store.state_of(task.user_id) != AuthState.AUTHENTICATED:
                    if task.status != TaskStatus.NEEDS_REAUTH:
                        task.status = TaskStatus.NEEDS_REAUTH
                        task.last_error = "Session expired, login required"
                        changed = True
                        logger.warning(f"🔐 Auto-confirm of train {task.booking.train_number} waits for {task.user_id} to log in")
                    summary["needs_reauth"] += 1
                    continue

                task.status = TaskStatus.CONFIRMING
                task.attempts += 1
                changed = True
                logger.info(f"🤖 Auto-confirming train {task.booking.train_number} for {task.user_id}")

                try:
                    result = await self.auth_store.confirm(task.user_id, task.booking)
                except NotAuthenticatedError:
                    result = ActionResult.reauth()
                except Exception as e:
                    logger.error(f"❌ Auto-confirm error for train {task.booking.train_number}: {e}")
                    result = ActionResult.failure(str(e) or type(e).__name__)

                if self._tasks.get(key) is not task:
                    # Cancelled or purged while the confirmation was in flight
                    continue

                if result.ok:
                    task.status = TaskStatus.CONFIRMED
                    task.last_error = None
                    del self._tasks[key]
                    summary["confirmed"] += 1
                    logger.success(f"✅ Auto-confirmed train {task.booking.train_number} for {task.user_id}")
                elif result.needs_reauth:
                    task.status = TaskStatus.NEEDS_REAUTH
                    task.last_error = result.error
                    summary["needs_reauth"] += 1
                else:
                    task.status = TaskStatus.FAILED
                    task.last_error = result.error
                    summary["failed"] += 1

            if changed:
                await self._persist()

            if summary["checked"]:
                logger.debug(f"Auto-confirm tick: {summary}")
            return summary
