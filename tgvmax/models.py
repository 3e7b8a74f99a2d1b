"""Data models and enums for the TGV Max engine"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from .config import CONFIRM_WINDOW, MAX_CARD_PRODUCT_TYPE
from .date_utils import parse_departure
from .exceptions import ValidationError


class SessionState(Enum):
    """Anonymous scraping session states"""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    EXPIRED = "expired"  # Idle timeout or block, re-initialized on next use


class AuthState(Enum):
    """Per-user login states"""

    ANONYMOUS = "anonymous"
    PENDING_TWO_FACTOR = "pending_two_factor"
    AUTHENTICATED = "authenticated"
    STALE = "stale"  # Remote site stopped honoring the session


class TaskStatus(Enum):
    """Auto-confirmation task states"""

    PENDING = "pending"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    NEEDS_REAUTH = "needs_reauth"


class ActionStatus(Enum):
    """Outcome of an authenticated operation"""

    OK = "ok"
    NEEDS_REAUTH = "needs_reauth"
    FAILED = "failed"


class LoginStatus(Enum):
    """Outcome of a credential flow step"""

    AUTHENTICATED = "authenticated"
    CHALLENGE_REQUIRED = "challenge_required"
    FAILED = "failed"


class CacheKey(NamedTuple):
    origin: str
    destination: str
    day: date

    def __str__(self) -> str:
        return f"{self.origin}_{self.destination}_{self.day.isoformat()}"


@dataclass
class CacheEntry:
    payload: Any
    cached_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class RequestDescriptor:
    """A request the driver should replay inside its session"""

    url: str
    method: str = "GET"
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    label: str = ""


@dataclass
class RemoteResponse:
    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def auth_rejected(self) -> bool:
        return self.status in (401, 403)

    def error_text(self) -> str:
        if isinstance(self.body, str) and self.body:
            return self.body[:200]
        return f"HTTP {self.status}"


@dataclass
class BlockSignal:
    """Returned by a driver instead of a handle or response when blocked"""

    reason: str = "blocked"


@dataclass
class Credentials:
    email: str
    password: str = field(repr=False)


@dataclass
class UserProfile:
    first_name: Optional[str]
    last_name: Optional[str]
    email: Optional[str]
    card_number: Optional[str] = None

    @classmethod
    def from_customer(cls, data: Dict[str, Any]) -> "UserProfile":
        """Build a profile from a read-customer payload"""
        card = next(
            (c for c in data.get("cards") or [] if c.get("productType") == MAX_CARD_PRODUCT_TYPE),
            None,
        )
        return cls(
            first_name=data.get("firstName"),
            last_name=data.get("lastName"),
            email=data.get("email"),
            card_number=card.get("cardNumber") if card else None,
        )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cardNumber": self.card_number,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
        }


@dataclass
class LoginOutcome:
    """What the credential flow driver reports after a step"""

    status: LoginStatus
    profile: Optional[UserProfile] = None
    reason: Optional[str] = None

    @classmethod
    def authenticated(cls, profile: UserProfile) -> "LoginOutcome":
        return cls(LoginStatus.AUTHENTICATED, profile=profile)

    @classmethod
    def challenge_required(cls) -> "LoginOutcome":
        return cls(LoginStatus.CHALLENGE_REQUIRED)

    @classmethod
    def failed(cls, reason: str) -> "LoginOutcome":
        return cls(LoginStatus.FAILED, reason=reason)


@dataclass
class LoginResult:
    """What the auth store returns to callers of login / 2FA submission"""

    status: LoginStatus
    profile: Optional[UserProfile] = None
    bookings_count: int = 0
    message: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.status == LoginStatus.AUTHENTICATED

    @property
    def challenge_pending(self) -> bool:
        return self.status == LoginStatus.CHALLENGE_REQUIRED


@dataclass
class ActionResult:
    status: ActionStatus
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def succeeded(cls, data: Any = None) -> "ActionResult":
        return cls(ActionStatus.OK, data=data)

    @classmethod
    def reauth(cls) -> "ActionResult":
        return cls(ActionStatus.NEEDS_REAUTH, error="Session rejected, login required")

    @classmethod
    def failure(cls, error: str) -> "ActionResult":
        return cls(ActionStatus.FAILED, error=error)

    @property
    def ok(self) -> bool:
        return self.status == ActionStatus.OK

    @property
    def needs_reauth(self) -> bool:
        return self.status == ActionStatus.NEEDS_REAUTH


@dataclass
class Booking:
    order_id: str
    train_number: str
    departure: datetime
    marketing_carrier_ref: Optional[str] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def key(self) -> str:
        """Natural dedup key: order, train and departure"""
        return f"{self.order_id}_{self.train_number}_{self.departure.isoformat()}"

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Booking":
        """
        Build a booking from a travel-consultation entry.

        Raises:
            ValidationError: If an identifying field is missing or malformed
        """
        if not isinstance(data, dict):
            raise ValidationError("Booking must be an object")

        missing = [k for k in ("orderId", "trainNumber", "departureDateTime") if not data.get(k)]
        if missing:
            raise ValidationError(f"Booking is missing: {', '.join(missing)}")

        try:
            departure = parse_departure(data["departureDateTime"])
        except ValueError as e:
            raise ValidationError(str(e))

        return cls(
            order_id=str(data["orderId"]),
            train_number=str(data["trainNumber"]),
            departure=departure,
            marketing_carrier_ref=data.get("dvNumber") or data.get("marketingCarrierRef"),
            origin=data.get("origin") if isinstance(data.get("origin"), str) else None,
            destination=data.get("destination") if isinstance(data.get("destination"), str) else None,
            raw=dict(data),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = dict(self.raw)
        payload.update(
            {
                "orderId": self.order_id,
                "trainNumber": self.train_number,
                "departureDateTime": self.departure.isoformat(),
                "marketingCarrierRef": self.marketing_carrier_ref,
            }
        )
        return payload


@dataclass
class UserAuthRecord:
    """Authenticated session of one user, owning its driver handle"""

    user_id: str
    driver: Any
    handle: Any
    created_at: datetime
    last_activity_at: datetime
    state: AuthState = AuthState.ANONYMOUS
    profile: Optional[UserProfile] = None
    bookings: List[Booking] = field(default_factory=list)
    code_attempts: int = 0

    def touch(self, now: datetime) -> None:
        self.last_activity_at = now

    def summary(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "state": self.state.value,
            "isAuthenticated": self.state == AuthState.AUTHENTICATED,
            "pending2FA": self.state == AuthState.PENDING_TWO_FACTOR,
            "user": self.profile.to_dict() if self.profile else None,
            "bookingsCount": len(self.bookings),
            "createdAt": self.created_at.isoformat(),
            "lastActivity": self.last_activity_at.isoformat(),
        }


@dataclass
class AutoConfirmTask:
    user_id: str
    booking: Booking
    scheduled_at: datetime
    status: TaskStatus = TaskStatus.PENDING
    last_error: Optional[str] = None
    attempts: int = 0

    @property
    def key(self) -> str:
        return self.booking.key

    @property
    def departure(self) -> datetime:
        return self.booking.departure

    def window_start(self, window: timedelta = CONFIRM_WINDOW) -> datetime:
        return self.booking.departure - window

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "userId": self.user_id,
            "booking": self.booking.to_payload(),
            "scheduledAt": self.scheduled_at.isoformat(),
            "status": self.status.value,
            "lastError": self.last_error,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutoConfirmTask":
        return cls(
            user_id=data["userId"],
            booking=Booking.from_payload(data["booking"]),
            scheduled_at=parse_departure(data["scheduledAt"]),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            last_error=data.get("lastError"),
            attempts=int(data.get("attempts", 0)),
        )
