import asyncio
import json
import os
import tempfile
from datetime import date, datetime, timedelta
from io import StringIO
from unittest.mock import patch

import httpx
from django.core.cache import cache
from django.core.management import CommandError, call_command
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from integrations.errors import AbortError, ApiError, NetworkError
from integrations.schemas import AvailabilityResult, Booking, Car
from integrations.services import RentalApi, availability_key
from integrations.token_store import MemoryTokenStore

from .forms import BookingDetailsForm, CarFilterForm, CarForm, DateRangeForm
from .services.availability import AvailabilityChecker, AvailabilityState
from .services.bookings import (
    BookingBlocked,
    BookingFlow,
    BookingStep,
    compute_duration,
    compute_total,
    to_calendar_date,
)
from .utils import dashboard_summary, search_cars, sort_cars

BASE = "https://api.test/api/v1"

RENTER = {"name": "Ivan Petrov", "email": "ivan@example.com", "phone": "+7 900 123-45-67", "agreed": True}


def car(car_id="c1", title="Kia Rio", price=2000, category="Эконом", **extra):
    data = {
        "id": car_id, "title": title, "price": price, "category": category, "year": 2022,
        "seats": 5, "transmission": "Автомат", "fuel": "Бензин", "available": True, "features": [],
    }
    data.update(extra)
    return data


def booking(booking_id, status, total, car_id="c1", payment="pending"):
    return {
        "id": booking_id, "carId": car_id, "userId": "guest", "startDate": "2025-03-01",
        "endDate": "2025-03-02", "totalPrice": total, "status": status, "paymentStatus": payment,
    }


class FakeApi:
    """Just the two calls the booking flow and the availability checker make."""

    def __init__(self, result=None, error=None):
        self.result = result or AvailabilityResult(available=True)
        self.error = error
        self.checks = []
        self.created = []
        self.gate = None

    async def check_car_availability(self, car_id, start, end):
        self.checks.append((car_id, start, end))
        if self.error:
            raise self.error
        return self.result

    async def create_booking(self, payload):
        self.created.append(payload)
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error
        return Booking(id=f"b{len(self.created)}", **payload.model_dump())


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------

class BookingCalculatorTests(SimpleTestCase):
    def test_same_day_counts_as_one_day(self):
        days = compute_duration(date(2025, 3, 1), date(2025, 3, 1))
        self.assertEqual(days, 1)
        self.assertEqual(compute_total(days, 2000), 2000)

    def test_three_days(self):
        days = compute_duration(date(2025, 3, 1), date(2025, 3, 4))
        self.assertEqual(days, 3)
        self.assertEqual(compute_total(days, 1500), 4500)

    def test_times_of_day_are_ignored(self):
        self.assertEqual(compute_duration(datetime(2025, 3, 1, 18, 0), datetime(2025, 3, 2, 9, 0)), 1)
        self.assertEqual(compute_duration(datetime(2025, 3, 1, 9, 0), datetime(2025, 3, 3, 22, 0)), 2)

    def test_strings_day_first_and_iso(self):
        self.assertEqual(to_calendar_date("01-03-2025"), date(2025, 3, 1))
        self.assertEqual(to_calendar_date("2025-03-01"), date(2025, 3, 1))
        self.assertEqual(compute_duration("01-03-2025", "2025-03-04"), 3)

    def test_negative_values_rejected(self):
        with self.assertRaises(ValueError):
            compute_total(-1, 2000)
        with self.assertRaises(ValueError):
            compute_total(2, -5)


# ---------------------------------------------------------------------------
# Booking flow
# ---------------------------------------------------------------------------

class BookingFlowTests(SimpleTestCase):
    def setUp(self):
        self.start = date(2025, 3, 1)
        self.end = date(2025, 3, 4)

    def ready_flow(self):
        flow = BookingFlow("c1", 1500)
        flow.select_dates(self.start, self.end)
        flow.apply_availability(self.start, self.end, AvailabilityState("available"))
        flow.proceed()
        return flow

    def test_cannot_proceed_without_dates(self):
        flow = BookingFlow("c1", 2000)
        with self.assertRaises(BookingBlocked) as ctx:
            flow.proceed()
        self.assertEqual(ctx.exception.reason, "no_dates")
        self.assertIs(flow.step, BookingStep.SELECTING_DATES)

    def test_needs_a_positive_availability_check(self):
        flow = BookingFlow("c1", 1500)
        flow.select_dates(self.start, self.end)
        self.assertEqual(flow.blocking_reason(), "unchecked")

        flow.apply_availability(self.start, self.end, AvailabilityState.checking())
        self.assertEqual(flow.blocking_reason(), "checking")
        self.assertFalse(flow.can_proceed)

        flow.apply_availability(self.start, self.end, AvailabilityState("available"))
        self.assertTrue(flow.can_proceed)
        flow.proceed()
        self.assertIs(flow.step, BookingStep.CONFIRMING_DETAILS)
        self.assertEqual(flow.total_price, 4500)

    def test_stale_result_is_ignored(self):
        flow = BookingFlow("c1", 2000)
        flow.select_dates(self.start, self.end)
        applied = flow.apply_availability(self.start, date(2025, 3, 9), AvailabilityState("available"))
        self.assertFalse(applied)
        self.assertEqual(flow.availability.status, "idle")

    def test_changing_dates_returns_to_selection(self):
        flow = self.ready_flow()
        flow.select_dates(self.start, date(2025, 3, 6))
        self.assertIs(flow.step, BookingStep.SELECTING_DATES)
        self.assertEqual(flow.availability.status, "idle")

    def test_back(self):
        flow = self.ready_flow()
        flow.back()
        self.assertIs(flow.step, BookingStep.SELECTING_DATES)
        self.assertEqual(flow.availability.status, "available")

    async def test_unavailable_car_lists_conflicts(self):
        api = FakeApi(AvailabilityResult(available=False, conflict_dates=[date(2025, 3, 2)]))
        flow = BookingFlow("c1", 2000)
        flow.select_dates(date(2025, 3, 1), date(2025, 3, 3))
        checker = AvailabilityChecker(
            api, delay=0, on_change=lambda key, state: flow.apply_availability(key[1], key[2], state)
        )

        state = await checker.check("c1", date(2025, 3, 1), date(2025, 3, 3))

        self.assertEqual(state.status, "unavailable")
        self.assertEqual(flow.availability.conflict_dates, (date(2025, 3, 2),))
        self.assertIn("02-03-2025", flow.blocking_message())
        with self.assertRaises(BookingBlocked) as ctx:
            flow.proceed()
        self.assertEqual(ctx.exception.reason, "unavailable")

    async def test_submit_posts_pending_booking(self):
        api = FakeApi()
        flow = self.ready_flow()

        result = await flow.submit(api, **RENTER)

        self.assertIs(flow.step, BookingStep.COMPLETED)
        self.assertEqual(result.id, "b1")
        payload = api.created[0]
        self.assertEqual(payload.total_price, 4500)
        self.assertEqual(payload.status, "pending")
        self.assertEqual(payload.payment_status, "pending")
        self.assertEqual(payload.user_id, "guest")
        self.assertEqual(payload.user_details.name, "Ivan Petrov")

    async def test_concurrent_submit_posts_once(self):
        api = FakeApi()
        api.gate = asyncio.Event()
        flow = self.ready_flow()

        first = asyncio.ensure_future(flow.submit(api, **RENTER))
        while not api.created:
            await asyncio.sleep(0)

        with self.assertRaises(BookingBlocked) as ctx:
            await flow.submit(api, **RENTER)
        self.assertEqual(ctx.exception.reason, "submitting")

        api.gate.set()
        stored = await first

        again = await flow.submit(api, **RENTER)
        self.assertEqual(len(api.created), 1)
        self.assertEqual(again.id, stored.id)

    async def test_invalid_details_do_not_reach_the_backend(self):
        api = FakeApi()
        flow = self.ready_flow()

        result = await flow.submit(api, "I", "not-an-email", "12345", False)

        self.assertIsNone(result)
        self.assertEqual(set(flow.field_errors), {"name", "email", "phone", "agreed"})
        self.assertEqual(api.created, [])
        self.assertIs(flow.step, BookingStep.CONFIRMING_DETAILS)

    async def test_backend_refusal_keeps_confirmation(self):
        api = FakeApi(error=ApiError("Car is already booked", 409))
        flow = self.ready_flow()

        self.assertIsNone(await flow.submit(api, **RENTER))
        self.assertEqual(flow.error, "Car is already booked")
        self.assertIs(flow.step, BookingStep.CONFIRMING_DETAILS)
        self.assertFalse(flow.submitting)

    async def test_aborted_submit_is_silent(self):
        api = FakeApi(error=AbortError("x"))
        flow = self.ready_flow()

        self.assertIsNone(await flow.submit(api, **RENTER))
        self.assertIsNone(flow.error)

    async def test_submit_before_confirmation_is_refused(self):
        flow = BookingFlow("c1", 2000)
        with self.assertRaises(BookingBlocked):
            await flow.submit(FakeApi(), **RENTER)

    async def test_session_round_trip_after_completion(self):
        flow = self.ready_flow()
        await flow.submit(FakeApi(), **RENTER)

        restored = BookingFlow.from_dict(json.loads(json.dumps(flow.to_dict())))

        self.assertIs(restored.step, BookingStep.COMPLETED)
        self.assertEqual(restored.booking.id, "b1")
        self.assertEqual(restored.total_price, 4500)
        restored.select_dates(date(2025, 4, 1), date(2025, 4, 2))
        self.assertEqual(restored.start_date, self.start)


# ---------------------------------------------------------------------------
# Availability checker
# ---------------------------------------------------------------------------

class AvailabilityCheckerTests(SimpleTestCase):
    async def test_debounce_only_checks_last_range(self):
        api = FakeApi()
        checker = AvailabilityChecker(api, delay=0.05)

        checker.schedule("c1", date(2025, 3, 1), date(2025, 3, 2))
        checker.schedule("c1", date(2025, 3, 1), date(2025, 3, 3))
        state = await checker.check("c1", date(2025, 3, 1), date(2025, 3, 4))

        self.assertEqual(api.checks, [("c1", date(2025, 3, 1), date(2025, 3, 4))])
        self.assertTrue(state.is_available)

    async def test_newer_range_wins(self):
        class SlowFirst(FakeApi):
            async def check_car_availability(self, car_id, start, end):
                self.checks.append((car_id, start, end))
                if len(self.checks) == 1:
                    await asyncio.sleep(10)
                    return AvailabilityResult(available=False)
                return AvailabilityResult(available=True)

        api = SlowFirst()
        changes = []
        checker = AvailabilityChecker(api, delay=0, on_change=lambda key, state: changes.append((key, state.status)))

        checker.schedule("c1", date(2025, 3, 1), date(2025, 3, 2))
        while not api.checks:
            await asyncio.sleep(0)
        state = await checker.check("c1", date(2025, 3, 1), date(2025, 3, 5))

        self.assertTrue(state.is_available)
        self.assertNotIn("unavailable", [status for _, status in changes])
        self.assertEqual(changes[-1], (("c1", date(2025, 3, 1), date(2025, 3, 5)), "available"))

    async def test_failure_leaves_idle_with_error(self):
        checker = AvailabilityChecker(FakeApi(error=NetworkError("Network error: down")), delay=0)

        state = await checker.check("c1", date(2025, 3, 1), date(2025, 3, 2))

        self.assertEqual(state.status, "idle")
        self.assertEqual(checker.error, "Network error: down")

    async def test_cancel_pending_check(self):
        api = FakeApi()
        checker = AvailabilityChecker(api, delay=10)

        task = checker.schedule("c1", date(2025, 3, 1), date(2025, 3, 2))
        self.assertEqual(checker.state.status, "checking")
        checker.cancel()
        await asyncio.wait({task})

        self.assertEqual(checker.state.status, "idle")
        self.assertEqual(api.checks, [])

    async def test_cancelled_request_returns_to_idle(self):
        gate = asyncio.Event()

        async def handler(request):
            await gate.wait()
            return httpx.Response(200, json={"available": True})

        api = RentalApi(base_url=BASE, token_store=MemoryTokenStore(), transport=httpx.MockTransport(handler))
        async with api:
            checker = AvailabilityChecker(api, delay=0)
            task = checker.schedule("c1", date(2025, 3, 1), date(2025, 3, 4))
            while availability_key("c1") not in api.in_flight:
                await asyncio.sleep(0)

            api.cancel(availability_key("c1"))
            await asyncio.wait({task})

        self.assertEqual(checker.state.status, "idle")
        self.assertIsNone(checker.error)

    async def test_unreadable_response_returns_to_idle(self):
        def handler(request):
            return httpx.Response(200, json={"unexpected": 1})

        api = RentalApi(base_url=BASE, token_store=MemoryTokenStore(), transport=httpx.MockTransport(handler))
        async with api:
            checker = AvailabilityChecker(api, delay=0)
            state = await checker.check("c1", date(2025, 3, 1), date(2025, 3, 4))

        self.assertEqual(state.status, "idle")
        self.assertEqual(checker.error, "Invalid availability response from backend")

    async def test_unexpected_failure_is_raised_by_check(self):
        checker = AvailabilityChecker(FakeApi(error=RuntimeError("boom")), delay=0)

        with self.assertRaisesMessage(RuntimeError, "boom"):
            await checker.check("c1", date(2025, 3, 1), date(2025, 3, 2))
        self.assertEqual(checker.state.status, "idle")

    @override_settings(AVAILABILITY_DEBOUNCE_SECONDS=0.25)
    def test_delay_from_settings(self):
        self.assertEqual(AvailabilityChecker(FakeApi()).delay, 0.25)


# ---------------------------------------------------------------------------
# Forms & helpers
# ---------------------------------------------------------------------------

class FormsTests(SimpleTestCase):
    def test_date_range(self):
        form = DateRangeForm({"start_date": "01-03-2025", "end_date": "04-03-2025"}, today=date(2025, 2, 1))
        self.assertTrue(form.is_valid(), form.errors)
        self.assertEqual(form.cleaned_data["days"], 3)

    def test_date_range_rejects_reversed_and_past(self):
        form = DateRangeForm({"start_date": "04-03-2025", "end_date": "01-03-2025"}, today=date(2025, 2, 1))
        self.assertFalse(form.is_valid())
        self.assertIn("__all__", form.errors)

        form = DateRangeForm({"start_date": "01-01-2025", "end_date": "04-01-2025"}, today=date(2025, 2, 1))
        self.assertFalse(form.is_valid())
        self.assertIn("start_date", form.errors)

    def test_booking_details(self):
        self.assertTrue(BookingDetailsForm({**RENTER, "agreed": "on"}).is_valid())

        form = BookingDetailsForm({**RENTER, "phone": "123-45", "agreed": ""})
        self.assertFalse(form.is_valid())
        self.assertIn("phone", form.errors)
        self.assertIn("agreed", form.errors)

    def test_car_form_to_input(self):
        form = CarForm({
            "title": " Lada Vesta ", "price": "1800", "year": "2021", "seats": "5",
            "transmission": "Механика", "fuel": "Бензин", "category": "Эконом",
            "available": "on", "features": "GPS, Bluetooth, ",
        })
        self.assertTrue(form.is_valid(), form.errors)
        wire = form.to_input().to_wire()
        self.assertEqual(wire["title"], "Lada Vesta")
        self.assertEqual(wire["features"], ["GPS", "Bluetooth"])
        self.assertTrue(wire["available"])

    def test_car_form_bounds(self):
        form = CarForm({
            "title": "Bus", "price": "0", "year": "2021", "seats": "12",
            "transmission": "Механика", "fuel": "Дизель", "category": "Эконом",
        })
        self.assertFalse(form.is_valid())
        self.assertIn("price", form.errors)
        self.assertIn("seats", form.errors)

    def test_catalog_filters(self):
        form = CarFilterForm({"category": "Бизнес", "min_price": "3000", "sort": "price_desc"})
        self.assertTrue(form.is_valid())
        self.assertEqual(
            form.to_filters().to_wire(), {"category": "Бизнес", "minPrice": 3000, "sort": "price_desc"}
        )
        self.assertFalse(CarFilterForm({"min_price": "5000", "max_price": "1000"}).is_valid())


class UtilsTests(SimpleTestCase):
    def setUp(self):
        self.cars = [
            Car.model_validate(car("c1", "Kia Rio", 2000, "Эконом")),
            Car.model_validate(car("c2", "BMW 5", 6000, "Бизнес")),
            Car.model_validate(car("c3", "Toyota Camry", 4000, "Бизнес")),
        ]

    def test_search_and_sort(self):
        found = sort_cars(search_cars(self.cars, "бизнес"), "price", "desc")
        self.assertEqual([c.id for c in found], ["c2", "c3"])
        self.assertEqual([c.id for c in sort_cars(self.cars, "title")], ["c2", "c1", "c3"])
        self.assertEqual(len(search_cars(self.cars, "  ")), 3)

    def test_dashboard_summary(self):
        bookings = [
            Booking.model_validate(booking("b1", "confirmed", 4500)),
            Booking.model_validate(booking("b2", "completed", 2000)),
            Booking.model_validate(booking("b3", "pending", 1000)),
            Booking.model_validate(booking("b4", "cancelled", 3000)),
        ]
        summary = dashboard_summary(self.cars, bookings)
        self.assertEqual(summary["cars_count"], 3)
        self.assertEqual(summary["bookings_count"], 4)
        self.assertEqual(summary["active_bookings_count"], 1)
        self.assertEqual(summary["revenue"], 6500)


# ---------------------------------------------------------------------------
# Views against a fake backend
# ---------------------------------------------------------------------------

class FakeBackend:
    def __init__(self):
        self.cars = {c["id"]: c for c in (
            car("c1", "Kia Rio", 2000, "Эконом"),
            car("c2", "BMW 5", 6000, "Бизнес"),
            car("c3", "Toyota Camry", 4000, "Бизнес"),
        )}
        self.bookings = [
            booking("b1", "confirmed", 4500),
            booking("b2", "completed", 2000),
            booking("b3", "pending", 1000),
            booking("b4", "cancelled", 3000),
        ]
        self.availability = {"available": True}
        self.on_availability = None
        self.overrides = {}
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        method = request.method
        path = request.url.path[len("/api/v1"):]
        body = json.loads(request.content) if request.content else {}

        if (method, path) in self.overrides:
            return self.overrides[(method, path)]

        parts = path.strip("/").split("/")
        if parts[0] == "auth" and method == "POST":
            if body.get("password") != "secret":
                return httpx.Response(401, json={"message": "Invalid credentials"})
            return httpx.Response(200, json={
                "token": "jwt-web",
                "user": {"id": "u1", "name": "Anna", "email": body["email"], "role": "admin"},
            })
        if parts[0] == "cars":
            if len(parts) == 1:
                if method == "POST":
                    return httpx.Response(201, json={**body, "id": "c9"})
                return httpx.Response(200, json=list(self.cars.values()))
            found = self.cars.get(parts[1])
            if found is None:
                return httpx.Response(404, json={"message": "Car not found"})
            if len(parts) == 3 and parts[2] == "availability":
                if self.on_availability is not None:
                    self.on_availability()
                return httpx.Response(200, json=self.availability)
            if method == "DELETE":
                return httpx.Response(204)
            if method == "PUT":
                return httpx.Response(200, json={**found, **body})
            return httpx.Response(200, json=found)
        if parts[0] == "bookings":
            if len(parts) == 1:
                if method == "POST":
                    created = {**body, "id": f"b{len(self.bookings) + 1}"}
                    self.bookings.append(created)
                    return httpx.Response(201, json=created)
                return httpx.Response(200, json=self.bookings)
            found = next((b for b in self.bookings if b["id"] == parts[1]), None)
            if found is None:
                return httpx.Response(404, json={"message": "Booking not found"})
            if method == "PATCH":
                found.update(body)
            return httpx.Response(200, json=found)
        if parts[0] == "users":
            return httpx.Response(200, json=[])
        return httpx.Response(404, json={})


class ViewTestCase(TestCase):
    def setUp(self):
        self.backend = FakeBackend()
        cache.clear()

        def factory(token_store=None, notify=None, transport=None):
            return RentalApi(
                base_url=BASE,
                token_store=token_store if token_store is not None else MemoryTokenStore(),
                notify=notify,
                transport=httpx.MockTransport(self.backend),
                retry_attempts=1,
            )

        patcher = patch("integrations.shortcuts.build_api", side_effect=factory)
        patcher.start()
        self.addCleanup(patcher.stop)

    def login(self):
        session = self.client.session
        session["auth_token"] = "jwt-web"
        session["auth_user"] = {"id": "u1", "name": "Anna"}
        session.save()


class StorefrontViewTests(ViewTestCase):
    def dates(self, offset=10, days=3):
        start = date.today() + timedelta(days=offset)
        end = start + timedelta(days=days)
        return start, end

    def test_catalog_passes_filters(self):
        resp = self.client.get(reverse("rentals:catalog"), {"category": "Бизнес", "sort": "price_asc"})
        self.assertEqual(resp.status_code, 200)
        self.assertContains(resp, "Kia Rio")
        params = self.backend.requests[-1].url.params
        self.assertEqual(params["category"], "Бизнес")
        self.assertEqual(params["sort"], "price_asc")

    def test_catalog_shows_backend_error(self):
        self.backend.overrides[("GET", "/cars")] = httpx.Response(500)
        resp = self.client.get(reverse("rentals:catalog"))
        self.assertEqual(resp.status_code, 200)
        self.assertContains(resp, "Server error: 500")

    def test_unknown_car_is_404(self):
        resp = self.client.get(reverse("rentals:car_detail", args=["nope"]))
        self.assertEqual(resp.status_code, 404)

    def test_full_booking_flow(self):
        start, end = self.dates()
        url = reverse("rentals:car_detail", args=["c1"])

        resp = self.client.post(url, {
            "action": "check", "start_date": start.strftime("%d-%m-%Y"), "end_date": end.strftime("%d-%m-%Y"),
        })
        self.assertRedirects(resp, url)
        self.assertContains(self.client.get(url), "2. Your details")

        resp = self.client.post(url, {"action": "confirm", **RENTER, "agreed": "on"})
        self.assertRedirects(resp, url)
        created = self.backend.bookings[-1]
        self.assertEqual(created["totalPrice"], 6000)
        self.assertEqual(created["status"], "pending")
        self.assertEqual(created["paymentStatus"], "pending")
        self.assertEqual(created["userId"], "guest")
        self.assertEqual(created["userDetails"]["email"], "ivan@example.com")

        self.assertContains(self.client.get(url), "3. Done!")

        count = len(self.backend.bookings)
        self.client.post(url, {"action": "confirm", **RENTER, "agreed": "on"})
        self.assertEqual(len(self.backend.bookings), count)

    def test_unavailable_dates_block_the_flow(self):
        start, end = self.dates()
        conflict = start + timedelta(days=1)
        self.backend.availability = {"available": False, "conflictDates": [conflict.isoformat()]}
        url = reverse("rentals:car_detail", args=["c1"])

        resp = self.client.post(url, {
            "action": "check", "start_date": start.strftime("%d-%m-%Y"), "end_date": end.strftime("%d-%m-%Y"),
        })

        self.assertEqual(resp.status_code, 200)
        self.assertContains(resp, "not available")
        self.assertContains(resp, conflict.strftime("%d-%m-%Y"))
        self.assertEqual(resp.context["step"], "dates")

    def test_invalid_details_stay_on_confirmation(self):
        start, end = self.dates()
        url = reverse("rentals:car_detail", args=["c1"])
        self.client.post(url, {
            "action": "check", "start_date": start.strftime("%d-%m-%Y"), "end_date": end.strftime("%d-%m-%Y"),
        })

        resp = self.client.post(url, {"action": "confirm", **RENTER, "phone": "12"})

        self.assertEqual(resp.status_code, 200)
        self.assertIn("phone", resp.context["details_form"].errors)
        self.assertEqual(len(self.backend.bookings), 4)

    def test_availability_endpoint(self):
        start, end = self.dates(days=2)
        resp = self.client.get(
            reverse("rentals:car_availability", args=["c2"]),
            {"start_date": start.strftime("%d-%m-%Y"), "end_date": end.strftime("%d-%m-%Y")},
        )
        data = resp.json()
        self.assertTrue(data["available"])
        self.assertFalse(data["stale"])
        self.assertEqual(data["duration"], 2)
        self.assertEqual(data["totalPrice"], 12000)
        self.assertEqual(self.client.session["booking_flow:c2"]["start_date"], start.isoformat())

    def test_late_availability_answer_leaves_flow_alone(self):
        session = self.client.session
        session["visited"] = True
        session.save()
        ticket_key = f"availability-check:{session.session_key}:c2"
        # a newer check for the same car starts while this one waits for the backend
        self.backend.on_availability = lambda: cache.set(ticket_key, "newer")

        start, end = self.dates(days=2)
        resp = self.client.get(
            reverse("rentals:car_availability", args=["c2"]),
            {"start_date": start.strftime("%d-%m-%Y"), "end_date": end.strftime("%d-%m-%Y")},
        )

        data = resp.json()
        self.assertTrue(data["stale"])
        self.assertEqual(data["totalPrice"], 12000)
        self.assertNotIn("booking_flow:c2", self.client.session)

    def confirm_ready(self):
        start, end = self.dates()
        url = reverse("rentals:car_detail", args=["c1"])
        self.client.post(url, {
            "action": "check", "start_date": start.strftime("%d-%m-%Y"), "end_date": end.strftime("%d-%m-%Y"),
        })
        return url, f"booking-submit:{self.client.session.session_key}:c1"

    def test_submit_running_in_another_request_is_refused(self):
        url, lock = self.confirm_ready()
        cache.add(lock, True)

        resp = self.client.post(url, {"action": "confirm", **RENTER, "agreed": "on"})

        self.assertEqual(resp.status_code, 200)
        self.assertContains(resp, "already being submitted")
        self.assertEqual(len(self.backend.bookings), 4)

        cache.delete(lock)
        self.client.post(url, {"action": "confirm", **RENTER, "agreed": "on"})
        self.assertEqual(len(self.backend.bookings), 5)

    def test_failed_submit_releases_the_lock(self):
        url, lock = self.confirm_ready()
        self.backend.overrides[("POST", "/bookings")] = httpx.Response(409, json={"message": "Car is already booked"})

        resp = self.client.post(url, {"action": "confirm", **RENTER, "agreed": "on"})
        self.assertContains(resp, "Car is already booked")
        self.assertIsNone(cache.get(lock))

        del self.backend.overrides[("POST", "/bookings")]
        self.client.post(url, {"action": "confirm", **RENTER, "agreed": "on"})
        self.assertEqual(len(self.backend.bookings), 5)
        self.assertTrue(cache.get(lock))

    def test_availability_endpoint_rejects_reversed_range(self):
        start, end = self.dates()
        resp = self.client.get(
            reverse("rentals:car_availability", args=["c1"]),
            {"start_date": end.strftime("%d-%m-%Y"), "end_date": start.strftime("%d-%m-%Y")},
        )
        self.assertEqual(resp.status_code, 400)


class AdminViewTests(ViewTestCase):
    def test_requires_login(self):
        resp = self.client.get(reverse("rentals:admin_dashboard"))
        self.assertRedirects(
            resp, reverse("rentals:admin_login") + "?next=%2Fadmin%2F", fetch_redirect_response=False
        )

    def test_login(self):
        resp = self.client.post(reverse("rentals:admin_login"), {"email": "anna@example.com", "password": "secret"})
        self.assertRedirects(resp, reverse("rentals:admin_dashboard"), fetch_redirect_response=False)
        self.assertEqual(self.client.session["auth_token"], "jwt-web")
        self.assertEqual(self.client.session["auth_user"]["name"], "Anna")

    def test_login_with_wrong_password(self):
        resp = self.client.post(reverse("rentals:admin_login"), {"email": "anna@example.com", "password": "nope"})
        self.assertEqual(resp.status_code, 200)
        self.assertContains(resp, "Invalid email or password.")
        self.assertNotIn("auth_token", self.client.session)

    def test_logout(self):
        self.login()
        resp = self.client.get(reverse("rentals:admin_logout"))
        self.assertRedirects(resp, reverse("rentals:admin_login"), fetch_redirect_response=False)
        self.assertNotIn("auth_token", self.client.session)

    def test_dashboard_summary(self):
        self.login()
        resp = self.client.get(reverse("rentals:admin_dashboard"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.context["cars_count"], 3)
        self.assertEqual(resp.context["bookings_count"], 4)
        self.assertEqual(resp.context["active_bookings_count"], 1)
        self.assertEqual(resp.context["revenue"], 6500)

    def test_expired_session_redirects_to_login(self):
        self.login()
        self.backend.overrides[("GET", "/cars")] = httpx.Response(401, json={"message": "Token expired"})

        resp = self.client.get(reverse("rentals:admin_cars"))

        self.assertRedirects(
            resp, reverse("rentals:admin_login") + "?next=%2Fadmin%2Fcars%2F", fetch_redirect_response=False
        )
        self.assertNotIn("auth_token", self.client.session)
        self.assertNotIn("auth_user", self.client.session)

    def test_cars_search_and_sort(self):
        self.login()
        resp = self.client.get(reverse("rentals:admin_cars"), {"q": "бизнес", "sort": "price", "direction": "desc"})
        self.assertEqual([c.id for c in resp.context["cars"]], ["c2", "c3"])
        self.assertEqual(resp.context["next_direction"], "asc")

    def test_add_car(self):
        self.login()
        resp = self.client.post(reverse("rentals:admin_car_add"), {
            "title": "Lada Vesta", "price": "1800", "year": "2021", "seats": "5",
            "transmission": "Механика", "fuel": "Бензин", "category": "Эконом", "features": "ABS",
        })
        self.assertRedirects(resp, reverse("rentals:admin_cars"), fetch_redirect_response=False)
        sent = json.loads(self.backend.requests[-1].content)
        self.assertEqual(sent["price"], 1800)
        self.assertEqual(sent["features"], ["ABS"])

    def test_edit_car_prefills_form(self):
        self.login()
        resp = self.client.get(reverse("rentals:admin_car_edit", args=["c2"]))
        self.assertEqual(resp.context["form"].initial["title"], "BMW 5")

    def test_delete_car(self):
        self.login()
        resp = self.client.post(reverse("rentals:admin_car_delete", args=["c1"]))
        self.assertRedirects(resp, reverse("rentals:admin_cars"), fetch_redirect_response=False)
        self.assertEqual(self.backend.requests[-1].method, "DELETE")

    def test_bookings_status_filter(self):
        self.login()
        resp = self.client.get(reverse("rentals:admin_bookings"), {"status": "confirmed"})
        self.assertEqual([b.id for b in resp.context["bookings"]], ["b1"])
        self.assertEqual(resp.context["total"], 4)

    def test_change_booking_status(self):
        self.login()
        resp = self.client.post(reverse("rentals:admin_booking_status", args=["b3"]), {"status": "confirmed"})
        self.assertRedirects(
            resp, reverse("rentals:admin_booking_detail", args=["b3"]), fetch_redirect_response=False
        )
        request = self.backend.requests[-1]
        self.assertEqual(request.method, "PATCH")
        self.assertEqual(json.loads(request.content), {"status": "confirmed"})

    def test_change_payment_status(self):
        self.login()
        self.client.post(reverse("rentals:admin_booking_payment", args=["b1"]), {"payment_status": "paid"})
        self.assertEqual(json.loads(self.backend.requests[-1].content), {"paymentStatus": "paid"})

    def test_unknown_status_is_rejected_locally(self):
        self.login()
        count = len(self.backend.requests)
        self.client.post(reverse("rentals:admin_booking_status", args=["b1"]), {"status": "lost"})
        self.assertEqual(len(self.backend.requests), count)


# ---------------------------------------------------------------------------
# Management command
# ---------------------------------------------------------------------------

class CheckAvailabilityCommandTests(SimpleTestCase):
    def setUp(self):
        self.backend = FakeBackend()
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.token_file = os.path.join(tmp.name, "token.json")

        def factory(token_store=None, notify=None, transport=None):
            return RentalApi(
                base_url=BASE, token_store=token_store, notify=notify,
                transport=httpx.MockTransport(self.backend), retry_attempts=1,
            )

        patcher = patch("rentals.management.commands.check_availability.build_api", side_effect=factory)
        patcher.start()
        self.addCleanup(patcher.stop)

    def run_command(self, *args, **opts):
        out = StringIO()
        with override_settings(STOREFRONT_TOKEN_FILE=self.token_file):
            call_command("check_availability", *args, stdout=out, stderr=StringIO(), **opts)
        return out.getvalue()

    def test_available(self):
        out = self.run_command("c1", "01-03-2025", "04-03-2025")
        self.assertIn("Days:     3", out)
        self.assertIn("Total:    6000", out)
        self.assertIn("Available", out)

    def test_unavailable_with_rate(self):
        self.backend.availability = {"available": False, "conflictDates": ["2025-03-02"]}
        out = self.run_command("c1", "2025-03-01", "2025-03-01", rate=1500)
        self.assertIn("Total:    1500", out)
        self.assertIn("02-03-2025", out)

    def test_bad_input(self):
        with self.assertRaises(CommandError):
            self.run_command("c1", "04-03-2025", "01-03-2025")
        with self.assertRaises(CommandError):
            self.run_command("c1", "tomorrow-ish", "01-03-2025")
