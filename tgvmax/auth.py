"""Per-user authenticated sessions and the login / 2FA state machine"""

import asyncio
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from loguru import logger

from . import endpoints
from .config import AUTH_MAX_IDLE_AGE, DEFAULT_REQUEST_TIMEOUT, MAX_CODE_ATTEMPTS
from .drivers import CredentialFlowDriver, RemoteSessionDriver
from .exceptions import AuthError, NotAuthenticatedError, ValidationError
from .logging_config import mask_email
from .models import (
    ActionResult,
    AuthState,
    BlockSignal,
    Booking,
    Credentials,
    LoginResult,
    LoginStatus,
    RemoteResponse,
    RequestDescriptor,
    UserAuthRecord,
    UserProfile,
)

RemovalListener = Callable[[str], Awaitable[None]]

_CODE_PATTERN = re.compile(r"^\d{4,8}$")


class AuthSessionStore:
    """
    Holds one authenticated session per user.

    Each user gets a driver of their own since authenticated cookies are
    per identity. Operations for the same user are serialized by a
    per-user lock; different users never wait on each other.
    """

    def __init__(
        self,
        driver_factory: Callable[[], RemoteSessionDriver],
        credential_driver: CredentialFlowDriver,
        max_idle_age: timedelta = AUTH_MAX_IDLE_AGE,
        max_code_attempts: int = MAX_CODE_ATTEMPTS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the store.

        Args:
            driver_factory: Builds a fresh session driver for a user
            credential_driver: Runs the login and one-time-code steps
            max_idle_age: Records idle longer than this are swept
            max_code_attempts: Rejected codes allowed before the challenge is dropped
            request_timeout: Bounded wait for a single driver request
            clock: Returns the current aware datetime
        """
        self.driver_factory = driver_factory
        self.credential_driver = credential_driver
        self.max_idle_age = max_idle_age
        self.max_code_attempts = max_code_attempts
        self.request_timeout = request_timeout
        self.clock = clock or (lambda: datetime.now().astimezone())

        self._records: Dict[str, UserAuthRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._removal_listeners: List[RemovalListener] = []

    def add_removal_listener(self, listener: RemovalListener) -> None:
        """Called with the user id whenever a user is logged out or swept"""
        self._removal_listeners.append(listener)

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        """
        Hold the user's lock for the duration of an operation.

        The lock entry lives as long as the user has a record or someone
        holds or waits on it, so the map stays bounded by active users.
        """
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                if user_id not in self._records:
                    self._locks.pop(user_id, None)

    @staticmethod
    def _check_user_id(user_id: str) -> str:
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("user_id is required")
        return user_id.strip()

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, user_id: str, credentials: Credentials) -> LoginResult:
        """
        Start a login for a user, replacing any previous session.

        Returns:
            LoginResult with status AUTHENTICATED or CHALLENGE_REQUIRED

        Raises:
            ValidationError: If the user id or credentials are missing
            AuthError: If the login failed (the record is discarded)
        """
        user_id = self._check_user_id(user_id)
        if not credentials or not credentials.email or not credentials.password:
            raise ValidationError("email and password are required")

        async with self._user_lock(user_id):
            logger.info(f"🔐 Login start for {user_id} ({mask_email(credentials.email)})")

            # Tasks are kept: a re-login is how NEEDS_REAUTH tasks recover
            await self._remove(user_id, cascade=False)

            driver = self.driver_factory()
            try:
                handle = await driver.open()
            except Exception as e:
                logger.error(f"❌ Could not open a session for {user_id}: {e}")
                raise AuthError(f"Could not open login session: {e}") from e
            if isinstance(handle, BlockSignal):
                logger.error(f"🚫 Blocked while opening login session for {user_id}")
                raise AuthError(f"Blocked while opening login session: {handle.reason}")

            now = self.clock()
            record = UserAuthRecord(
                user_id=user_id,
                driver=driver,
                handle=handle,
                created_at=now,
                last_activity_at=now,
            )
            self._records[user_id] = record

            try:
                outcome = await self.credential_driver.login(handle, credentials)
            except Exception as e:
                await self._remove(user_id, cascade=False)
                logger.error(f"❌ Login flow error for {user_id}: {e}")
                raise AuthError(f"Login failed: {e}") from e

            record.touch(self.clock())

            if outcome.status == LoginStatus.CHALLENGE_REQUIRED:
                record.state = AuthState.PENDING_TWO_FACTOR
                record.code_attempts = 0
                logger.info(f"📱 Two-factor code required for {user_id}")
                return LoginResult(
                    LoginStatus.CHALLENGE_REQUIRED,
                    message="One-time code required",
                )

            if outcome.status == LoginStatus.AUTHENTICATED and outcome.profile:
                return await self._complete_login(record, outcome.profile)

            await self._remove(user_id, cascade=False)
            reason = outcome.reason or "Login failed, check your credentials"
            logger.error(f"❌ Login failed for {user_id}: {reason}")
            raise AuthError(reason)

    async def submit_two_factor_code(self, user_id: str, code: str) -> LoginResult:
        """
        Forward a one-time code for a pending challenge.

        A rejected code leaves the challenge open so the caller can retry,
        until max_code_attempts rejections.

        Raises:
            ValidationError: If the code is malformed
            AuthError: If no challenge is pending or too many codes were rejected
        """
        user_id = self._check_user_id(user_id)
        code = (code or "").strip()
        if not _CODE_PATTERN.match(code):
            raise ValidationError("One-time code must be 4 to 8 digits")

        async with self._user_lock(user_id):
            record = self._records.get(user_id)
            if record is None or record.state != AuthState.PENDING_TWO_FACTOR:
                raise AuthError("No two-factor challenge pending")

            logger.info(f"📱 Submitting code {code[:2]}**** for {user_id}")

            try:
                outcome = await self.credential_driver.submit_challenge(record.handle, code)
            except Exception as e:
                logger.error(f"❌ Code submission error for {user_id}: {e}")
                outcome = None
                reason = str(e)
            else:
                reason = outcome.reason or "Invalid or expired code"

            record.touch(self.clock())

            if outcome is not None and outcome.status == LoginStatus.AUTHENTICATED and outcome.profile:
                return await self._complete_login(record, outcome.profile)

            record.code_attempts += 1
            remaining = self.max_code_attempts - record.code_attempts
            if remaining <= 0:
                await self._remove(user_id, cascade=False)
                logger.error(f"❌ Too many rejected codes for {user_id}, challenge dropped")
                raise AuthError("Too many invalid codes, login again")

            logger.warning(f"⚠️ Code rejected for {user_id} ({remaining} attempts left)")
            return LoginResult(LoginStatus.FAILED, message=reason)

    async def _complete_login(self, record: UserAuthRecord, profile: UserProfile) -> LoginResult:
        record.profile = profile
        record.state = AuthState.AUTHENTICATED
        record.code_attempts = 0

        try:
            if not profile.card_number:
                await self._read_customer(record)
            result = await self._fetch_bookings(record)
        except Exception as e:
            result = ActionResult.failure(str(e) or type(e).__name__)

        if result.ok:
            record.bookings = result.data
        else:
            # The login itself succeeded; an empty snapshot can be refreshed later
            logger.warning(f"⚠️ Could not fetch bookings for {record.user_id}: {result.error}")
            record.bookings = []

        logger.success(
            f"✅ Logged in: {record.profile.full_name or record.user_id} "
            f"({len(record.bookings)} bookings)"
        )
        return LoginResult(
            LoginStatus.AUTHENTICATED,
            profile=record.profile,
            bookings_count=len(record.bookings),
        )

    # ------------------------------------------------------------------
    # Authenticated operations
    # ------------------------------------------------------------------

    def _authenticated_record(self, user_id: str) -> UserAuthRecord:
        record = self._records.get(user_id)
        if record is None:
            raise NotAuthenticatedError(f"No session for user {user_id}")
        if record.state != AuthState.AUTHENTICATED:
            raise NotAuthenticatedError(
                f"Session for user {user_id} is {record.state.value}, login required"
            )
        return record

    async def _send(
        self, record: UserAuthRecord, descriptor: RequestDescriptor
    ) -> Union[RemoteResponse, BlockSignal]:
        result = await asyncio.wait_for(
            record.driver.request(record.handle, descriptor),
            timeout=self.request_timeout,
        )
        record.touch(self.clock())
        return result

    def _is_rejected(self, result: Union[RemoteResponse, BlockSignal]) -> bool:
        return isinstance(result, BlockSignal) or result.auth_rejected

    def _demote(self, record: UserAuthRecord, label: str) -> ActionResult:
        record.state = AuthState.STALE
        logger.warning(f"⚠️ [{label}] Session of {record.user_id} rejected, marked stale")
        return ActionResult.reauth()

    async def _read_customer(self, record: UserAuthRecord) -> None:
        """Fill in the Max card number when the login flow did not report it"""
        result = await self._send(record, endpoints.read_customer())
        if isinstance(result, RemoteResponse) and result.ok and isinstance(result.body, dict):
            record.profile = UserProfile.from_customer(result.body)

    async def _fetch_bookings(self, record: UserAuthRecord) -> ActionResult:
        card_number = record.profile.card_number if record.profile else None
        if not card_number:
            return ActionResult.succeeded([])

        descriptor = endpoints.travel_consultation(card_number, now=self.clock())
        result = await self._send(record, descriptor)
        if self._is_rejected(result):
            return ActionResult.reauth()
        if not result.ok or not isinstance(result.body, list):
            return ActionResult.failure(result.error_text())

        bookings: List[Booking] = []
        for entry in result.body:
            try:
                bookings.append(Booking.from_payload(entry))
            except ValidationError as e:
                logger.debug(f"Skipping unreadable booking entry: {e}")
        logger.info(f"Fetched {len(bookings)} bookings for {record.user_id}")
        return ActionResult.succeeded(bookings)

    async def refresh_bookings(self, user_id: str) -> ActionResult:
        """Re-read the user's bookings and replace the snapshot"""
        user_id = self._check_user_id(user_id)
        async with self._user_lock(user_id):
            record = self._authenticated_record(user_id)
            result = await self._fetch_bookings(record)
            if result.needs_reauth:
                return self._demote(record, "refresh")
            if result.ok:
                record.bookings = result.data
            return result

    async def confirm(self, user_id: str, booking: Booking) -> ActionResult:
        """Confirm a booking inside its confirmation window"""
        user_id = self._check_user_id(user_id)
        async with self._user_lock(user_id):
            record = self._authenticated_record(user_id)
            logger.info(f"🎫 Confirming train {booking.train_number} for {user_id}")

            result = await self._send(record, endpoints.travel_confirm(booking))
            if self._is_rejected(result):
                return self._demote(record, f"confirm:{booking.train_number}")
            if not result.ok:
                logger.error(f"❌ Confirmation of train {booking.train_number} failed: {result.error_text()}")
                return ActionResult.failure(result.error_text())

            logger.success(f"✅ Booking confirmed: train {booking.train_number}")
            return ActionResult.succeeded()

    async def cancel(self, user_id: str, booking: Booking, customer_name: str) -> ActionResult:
        """Cancel a reservation; the remote site wants the traveller's last name"""
        user_id = self._check_user_id(user_id)
        if not customer_name or not customer_name.strip():
            raise ValidationError("customer_name is required")

        async with self._user_lock(user_id):
            record = self._authenticated_record(user_id)
            logger.info(f"🗑️ Cancelling train {booking.train_number} for {user_id}")

            result = await self._send(record, endpoints.cancel_reservation(booking, customer_name.strip()))
            if self._is_rejected(result):
                return self._demote(record, f"cancel:{booking.train_number}")
            if not result.ok:
                return ActionResult.failure(result.error_text())

            info = result.body.get("info") if isinstance(result.body, dict) else None
            if not info or info[0].get("cancelled") is not True:
                return ActionResult.failure("Cancellation was not accepted")

            record.bookings = [b for b in record.bookings if b.key != booking.key]
            logger.success(f"✅ Booking cancelled: train {booking.train_number}")
            return ActionResult.succeeded()

    async def booking_details(self, user_id: str, booking: Booking, customer_name: str) -> ActionResult:
        user_id = self._check_user_id(user_id)
        if not customer_name or not customer_name.strip():
            raise ValidationError("customer_name is required")

        async with self._user_lock(user_id):
            record = self._authenticated_record(user_id)
            result = await self._send(record, endpoints.get_travel(booking, customer_name.strip()))
            if self._is_rejected(result):
                return self._demote(record, f"details:{booking.train_number}")
            if not result.ok:
                return ActionResult.failure(result.error_text())
            return ActionResult.succeeded(result.body)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _remove(self, user_id: str, cascade: bool) -> bool:
        record = self._records.pop(user_id, None)
        if record is not None:
            try:
                await record.driver.close(record.handle)
            except Exception as e:
                logger.warning(f"Error closing session of {user_id}: {e}")

        if cascade:
            for listener in self._removal_listeners:
                await listener(user_id)

        return record is not None

    async def logout(self, user_id: str) -> bool:
        """Drop the user's session and every auto-confirmation they scheduled"""
        user_id = self._check_user_id(user_id)
        async with self._user_lock(user_id):
            removed = await self._remove(user_id, cascade=True)
        logger.info(f"👋 User {user_id} logged out")
        return removed

    async def sweep_idle(self) -> List[str]:
        """Remove records idle longer than max_idle_age, with the logout cascade"""
        now = self.clock()
        candidates = [
            uid for uid, record in list(self._records.items())
            if now - record.last_activity_at > self.max_idle_age
        ]

        swept = []
        for user_id in candidates:
            async with self._user_lock(user_id):
                record = self._records.get(user_id)
                # Re-check: the user may have been active while we waited
                if record is None or self.clock() - record.last_activity_at <= self.max_idle_age:
                    continue
                logger.info(f"🧹 Cleaning up idle session for user {user_id}")
                await self._remove(user_id, cascade=True)
                swept.append(user_id)

        if swept:
            logger.info(f"Idle sweep removed {len(swept)} sessions, {len(self._records)} remaining")
        return swept

    async def close_all(self) -> None:
        """Release every driver handle without touching scheduled tasks"""
        for user_id in list(self._records):
            async with self._user_lock(user_id):
                await self._remove(user_id, cascade=False)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def state_of(self, user_id: str) -> Optional[AuthState]:
        record = self._records.get(user_id)
        return record.state if record else None

    def bookings(self, user_id: str) -> List[Booking]:
        return list(self._authenticated_record(user_id).bookings)

    def session_status(self, user_id: str) -> Dict[str, Any]:
        record = self._records.get(user_id)
        if record is None:
            return {"userId": user_id, "state": None, "isAuthenticated": False}
        return record.summary()

    def active_sessions(self) -> List[Dict[str, Any]]:
        return [record.summary() for record in list(self._records.values())]
