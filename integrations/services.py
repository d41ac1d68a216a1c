"""
Resource wrappers over ``ApiClient``.

Each method only builds the path and body and delegates to ``request``.
High churn list queries run under a stable logical key so that rapid
re-filtering cannot pile up concurrent fetches.
"""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote, urlencode

from django.conf import settings
from pydantic import TypeAdapter

from .client import DEFAULT_BASE_URL, ApiClient
from .schemas import (
    ApiModel,
    AuthResult,
    AvailabilityResult,
    Booking,
    BookingFilters,
    BookingInput,
    BookingStatus,
    Car,
    CarFilters,
    CarInput,
    DashboardStats,
    PaymentStatus,
    User,
)

CARS_KEY = "get-cars"
SEARCH_CARS_KEY = "search-cars"
BOOKINGS_KEY = "get-bookings"

_cars = TypeAdapter(List[Car])
_bookings = TypeAdapter(List[Booking])
_users = TypeAdapter(List[User])


def availability_key(car_id: str) -> str:
    return f"check-availability:{car_id}"


def build_query_string(params: Optional[Dict[str, Any]]) -> str:
    """``?a=1&b=true`` from a dict, skipping None and empty values."""
    if not params:
        return ""
    pairs = []
    for key, value in params.items():
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        pairs.append((key, value))
    query = urlencode(pairs)
    return f"?{query}" if query else ""


def _segment(value: Any) -> str:
    return quote(str(value), safe="")


def _payload(data: Union[ApiModel, Dict[str, Any]]) -> Dict[str, Any]:
    return data.to_wire() if isinstance(data, ApiModel) else dict(data)


class RentalApi(ApiClient):

    # ---------------- cars ----------------

    async def get_cars(self, filters: Optional[CarFilters] = None) -> List[Car]:
        query = build_query_string(filters.to_wire()) if filters else ""
        data = await self.request(f"/cars{query}", key=CARS_KEY)
        return _cars.validate_python(data)

    async def search_cars(self, query: str) -> List[Car]:
        data = await self.request(f"/cars/search{build_query_string({'q': query})}", key=SEARCH_CARS_KEY)
        return _cars.validate_python(data)

    async def get_car(self, car_id: str) -> Car:
        return Car.model_validate(await self.request(f"/cars/{_segment(car_id)}"))

    async def create_car(self, car: CarInput) -> Car:
        data = await self.request("/cars", method="POST", json=_payload(car))
        return Car.model_validate(data)

    async def update_car(self, car_id: str, car: Union[CarInput, Dict[str, Any]]) -> Car:
        data = await self.request(f"/cars/{_segment(car_id)}", method="PUT", json=_payload(car))
        return Car.model_validate(data)

    async def delete_car(self, car_id: str) -> None:
        await self.request(f"/cars/{_segment(car_id)}", method="DELETE")

    async def check_car_availability(self, car_id: str, start: date, end: date) -> AvailabilityResult:
        data = await self.request(
            f"/cars/{_segment(car_id)}/availability",
            method="POST",
            json={"startDate": start.isoformat(), "endDate": end.isoformat()},
            key=availability_key(car_id),
        )
        return AvailabilityResult.model_validate(data)

    # ---------------- bookings ----------------

    async def get_bookings(self, filters: Optional[BookingFilters] = None) -> List[Booking]:
        query = build_query_string(filters.to_wire()) if filters else ""
        data = await self.request(f"/bookings{query}", key=BOOKINGS_KEY)
        return _bookings.validate_python(data)

    async def get_user_bookings(self, user_id: str) -> List[Booking]:
        data = await self.request(f"/bookings/user/{_segment(user_id)}")
        return _bookings.validate_python(data)

    async def get_booking(self, booking_id: str) -> Booking:
        return Booking.model_validate(await self.request(f"/bookings/{_segment(booking_id)}"))

    async def create_booking(self, booking: BookingInput) -> Booking:
        data = await self.request("/bookings", method="POST", json=_payload(booking))
        return Booking.model_validate(data)

    async def update_booking_status(self, booking_id: str, status: BookingStatus) -> Booking:
        data = await self.request(
            f"/bookings/{_segment(booking_id)}/status", method="PATCH", json={"status": status}
        )
        return Booking.model_validate(data)

    async def update_booking_payment_status(self, booking_id: str, payment_status: PaymentStatus) -> Booking:
        data = await self.request(
            f"/bookings/{_segment(booking_id)}/payment",
            method="PATCH",
            json={"paymentStatus": payment_status},
        )
        return Booking.model_validate(data)

    async def delete_booking(self, booking_id: str) -> None:
        await self.request(f"/bookings/{_segment(booking_id)}", method="DELETE")

    # ---------------- auth & users ----------------

    async def login(self, email: str, password: str) -> AuthResult:
        data = await self.request("/auth/login", method="POST", json={"email": email, "password": password})
        result = AuthResult.model_validate(data)
        self.set_token(result.token)
        return result

    async def register(self, name: str, email: str, password: str, phone: str) -> AuthResult:
        data = await self.request(
            "/auth/register",
            method="POST",
            json={"name": name, "email": email, "password": password, "phone": phone},
        )
        result = AuthResult.model_validate(data)
        self.set_token(result.token)
        return result

    async def logout(self) -> None:
        # the backend keeps no server side session to invalidate
        self.clear_token()

    async def get_profile(self) -> User:
        return User.model_validate(await self.request("/users/profile"))

    async def update_profile(self, data: Dict[str, Any]) -> User:
        return User.model_validate(await self.request("/users/profile", method="PUT", json=data))

    async def change_password(self, old_password: str, new_password: str) -> bool:
        data = await self.request(
            "/users/change-password",
            method="POST",
            json={"oldPassword": old_password, "newPassword": new_password},
        )
        return bool(data.get("success"))

    async def get_users(self) -> List[User]:
        return _users.validate_python(await self.request("/users"))

    async def get_user(self, user_id: str) -> User:
        return User.model_validate(await self.request(f"/users/{_segment(user_id)}"))

    async def create_user(self, data: Dict[str, Any]) -> User:
        return User.model_validate(await self.request("/users", method="POST", json=data))

    async def update_user(self, user_id: str, data: Dict[str, Any]) -> User:
        return User.model_validate(
            await self.request(f"/users/{_segment(user_id)}", method="PUT", json=data)
        )

    async def delete_user(self, user_id: str) -> None:
        await self.request(f"/users/{_segment(user_id)}", method="DELETE")

    # ---------------- admin dashboard ----------------

    async def get_dashboard_stats(self) -> DashboardStats:
        return DashboardStats.model_validate(await self.request("/stats/dashboard"))


def build_api(token_store=None, notify=None, transport=None) -> RentalApi:
    """A ``RentalApi`` configured from Django settings."""
    return RentalApi(
        base_url=getattr(settings, "STOREFRONT_API_URL", DEFAULT_BASE_URL),
        token_store=token_store,
        notify=notify,
        transport=transport,
        timeout=float(getattr(settings, "STOREFRONT_API_TIMEOUT", 10)),
        retry_attempts=int(getattr(settings, "STOREFRONT_API_RETRIES", 3)),
        retry_wait=float(getattr(settings, "STOREFRONT_API_RETRY_WAIT", 0.5)),
    )
