"""Request descriptors for the TGV Max Jeune API"""

from datetime import date, datetime, timedelta
from typing import Dict, Optional
from urllib.parse import urlencode

from .config import (
    API_BASE_URL,
    BOOKINGS_LOOKBACK_DAYS,
    CLIENT_APP,
    CLIENT_APP_VERSION,
    CUSTOMER_PRODUCT_TYPES,
    DISTRIBUTION_CHANNEL,
    REFDATA_URL,
)
from .date_utils import departure_query_param
from .models import Booking, RequestDescriptor


def client_headers(with_channel: bool = True) -> Dict[str, str]:
    """Headers the Max Jeune web app sends with every API call"""
    headers = {
        "Accept": "application/json",
        "Accept-Language": "fr-FR,fr;q=0.9",
        "x-client-app": CLIENT_APP,
        "x-client-app-version": CLIENT_APP_VERSION,
    }
    if with_channel:
        headers["x-distribution-channel"] = DISTRIBUTION_CHANNEL
    return headers


def search_proposals(origin: str, destination: str, day: date) -> RequestDescriptor:
    query = urlencode(
        {
            "origin": origin,
            "destination": destination,
            "departureDateTime": departure_query_param(day),
        }
    )
    return RequestDescriptor(
        url=f"{REFDATA_URL}/search-freeplaces-proposals?{query}",
        headers=client_headers(),
        label=f"{origin}-{destination}-{day.isoformat()}",
    )


def search_stations(label: str) -> RequestDescriptor:
    return RequestDescriptor(
        url=f"{REFDATA_URL}/freeplaces-stations?{urlencode({'label': label})}",
        headers=client_headers(),
        label=f"stations:{label}",
    )


def read_customer() -> RequestDescriptor:
    return RequestDescriptor(
        url=f"{API_BASE_URL}/customer/read-customer",
        method="POST",
        body={"productTypes": CUSTOMER_PRODUCT_TYPES},
        headers=client_headers(with_channel=False),
        label="read-customer",
    )


def travel_consultation(card_number: str, now: Optional[datetime] = None) -> RequestDescriptor:
    start = (now or datetime.now().astimezone()) - timedelta(days=BOOKINGS_LOOKBACK_DAYS)
    return RequestDescriptor(
        url=f"{API_BASE_URL}/reservation/travel-consultation",
        method="POST",
        body={"cardNumber": card_number, "startDate": start.isoformat()},
        headers=client_headers(),
        label="travel-consultation",
    )


def travel_confirm(booking: Booking) -> RequestDescriptor:
    return RequestDescriptor(
        url=f"{API_BASE_URL}/reservation/travel-confirm",
        method="POST",
        body={
            "marketingCarrierRef": booking.marketing_carrier_ref,
            "trainNumber": booking.train_number,
            "departureDateTime": booking.raw.get("departureDateTime", booking.departure.isoformat()),
        },
        headers=client_headers(),
        label=f"confirm:{booking.train_number}",
    )


def cancel_reservation(booking: Booking, customer_name: str) -> RequestDescriptor:
    return RequestDescriptor(
        url=f"{API_BASE_URL}/reservation/cancel-reservation",
        method="POST",
        body={
            "travelsInfo": [
                {
                    "marketingCarrierRef": booking.marketing_carrier_ref,
                    "orderId": booking.order_id,
                    "customerName": customer_name,
                    "trainNumber": booking.train_number,
                    "departureDateTime": booking.raw.get(
                        "departureDateTime", booking.departure.isoformat()
                    ),
                }
            ]
        },
        headers=client_headers(),
        label=f"cancel:{booking.train_number}",
    )


def get_travel(booking: Booking, customer_name: str) -> RequestDescriptor:
    return RequestDescriptor(
        url=f"{API_BASE_URL}/reservation/get-travel",
        method="POST",
        body={
            "customerName": customer_name,
            "departureDateTime": booking.raw.get("departureDateTime", booking.departure.isoformat()),
            "marketingCarrierRef": booking.marketing_carrier_ref,
            "trainNumber": booking.train_number,
        },
        headers=client_headers(),
        label=f"get-travel:{booking.train_number}",
    )
