import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tgvmax.auth import AuthSessionStore
from tgvmax.models import BlockSignal, LoginOutcome, RemoteResponse, UserProfile

START = datetime(2026, 11, 2, 9, 0, tzinfo=timezone.utc)

PROFILE = UserProfile(
    first_name="Camille",
    last_name="Martin",
    email="camille@example.com",
    card_number="HC600000000",
)


class FakeClock:
    """Controllable clock; call it to read the time"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeSessionDriver:
    """
    In-memory RemoteSessionDriver.

    open_results / responses are queues consumed first; items may be a
    value, a BlockSignal or an exception to raise. Once empty, open()
    returns a fresh handle and request() asks the responder.
    """

    def __init__(self, responder=None, open_delay: float = 0.0, request_delay: float = 0.0):
        self.responder = responder
        self.open_delay = open_delay
        self.request_delay = request_delay
        self.open_results = []
        self.responses = []

        self.open_calls = 0
        self.proxies = []
        self.requests = []
        self.closed = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def open(self, proxy=None):
        self.open_calls += 1
        self.proxies.append(proxy)
        await asyncio.sleep(self.open_delay)
        if self.open_results:
            result = self.open_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return f"handle-{self.open_calls}"

    async def request(self, handle, descriptor):
        self.requests.append((handle, descriptor))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.request_delay)
            if self.responses:
                result = self.responses.pop(0)
            elif self.responder:
                result = self.responder(descriptor)
            else:
                result = RemoteResponse(200, {"proposals": [], "ratio": 0})
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.in_flight -= 1

    async def close(self, handle):
        self.closed.append(handle)

    def urls(self):
        return [descriptor.url for _, descriptor in self.requests]


class FakeCredentialDriver:
    def __init__(self, login_outcome=None):
        self.login_outcome = login_outcome or LoginOutcome.authenticated(PROFILE)
        self.challenge_outcomes = []
        self.logins = []
        self.codes = []

    async def login(self, handle, credentials):
        self.logins.append((handle, credentials.email))
        if isinstance(self.login_outcome, Exception):
            raise self.login_outcome
        return self.login_outcome

    async def submit_challenge(self, handle, code):
        self.codes.append(code)
        if self.challenge_outcomes:
            return self.challenge_outcomes.pop(0)
        return LoginOutcome.failed("Invalid code")


def booking_payload(departure: datetime, order_id: str = "ORD123", train_number: str = "6201"):
    return {
        "orderId": order_id,
        "trainNumber": train_number,
        "departureDateTime": departure.isoformat(),
        "dvNumber": "QWERTY",
        "origin": "PARIS GARE DE LYON",
        "destination": "LYON PART DIEU",
    }


def sncf_responder(bookings):
    """Answers the authenticated endpoints the way the live API does"""

    def respond(descriptor):
        if "read-customer" in descriptor.url:
            return RemoteResponse(
                200,
                {
                    "firstName": "Camille",
                    "lastName": "Martin",
                    "email": "camille@example.com",
                    "cards": [{"productType": "TGV_MAX_JEUNE", "cardNumber": "HC600000000"}],
                },
            )
        if "travel-consultation" in descriptor.url:
            return RemoteResponse(200, list(bookings))
        if "travel-confirm" in descriptor.url:
            return RemoteResponse(204)
        if "cancel-reservation" in descriptor.url:
            return RemoteResponse(200, {"info": [{"cancelled": True}]})
        if "get-travel" in descriptor.url:
            return RemoteResponse(200, {"trainNumber": descriptor.body["trainNumber"]})
        return BlockSignal("unexpected")

    return respond


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_driver():
    return FakeSessionDriver()


@pytest.fixture
def credential_driver():
    return FakeCredentialDriver()


@pytest.fixture
def user_bookings(clock):
    return [booking_payload(clock.now + timedelta(days=3))]


@pytest.fixture
def user_drivers():
    """Every per-user driver the auth store created, in order"""
    return []


@pytest.fixture
def auth_store(clock, credential_driver, user_drivers, user_bookings):
    def factory():
        driver = FakeSessionDriver(responder=sncf_responder(user_bookings))
        user_drivers.append(driver)
        return driver

    return AuthSessionStore(factory, credential_driver, clock=clock)
