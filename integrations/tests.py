import asyncio
import json
import os
import tempfile
from datetime import date
from unittest.mock import patch

import httpx
from django.core.management import CommandError, call_command
from django.test import RequestFactory, SimpleTestCase, override_settings
from django.urls import reverse

from .client import error_message
from .errors import AbortError, ApiError, NetworkError, SessionExpiredError
from .middleware import SessionExpiredMiddleware
from .schemas import BookingInput, CarFilters, CarInput
from .services import CARS_KEY, RentalApi, availability_key, build_query_string
from .shortcuts import USER_SESSION_KEY
from .token_store import FileTokenStore, MemoryTokenStore, SessionTokenStore

BASE = "https://api.test/api/v1"


def car_json(car_id="c1", price=2000, **extra):
    data = {
        "id": car_id,
        "title": "Kia Rio",
        "price": price,
        "category": "Эконом",
        "year": 2022,
        "seats": 5,
        "transmission": "Автомат",
        "fuel": "Бензин",
        "available": True,
        "features": ["Bluetooth"],
    }
    data.update(extra)
    return data


def make_api(handler, token=None, notes=None, retry_attempts=1, store=None):
    return RentalApi(
        base_url=BASE,
        token_store=store if store is not None else MemoryTokenStore(token),
        notify=notes.append if notes is not None else None,
        transport=httpx.MockTransport(handler),
        retry_attempts=retry_attempts,
        retry_wait=0,
    )


async def wait_in_flight(api, key):
    for _ in range(100):
        if key in api.in_flight:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"{key} never became in-flight")


class RequestLifecycleTests(SimpleTestCase):
    async def test_headers_and_bearer_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=car_json())

        async with make_api(handler, token="tok-1") as api:
            car = await api.get_car("c1")

        self.assertEqual(car.price, 2000)
        self.assertEqual(str(seen[0].url), f"{BASE}/cars/c1")
        self.assertEqual(seen[0].headers["Content-Type"], "application/json")
        self.assertEqual(seen[0].headers["Authorization"], "Bearer tok-1")

    async def test_no_authorization_without_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        async with make_api(handler) as api:
            await api.get_cars()

        self.assertNotIn("Authorization", seen[0].headers)

    async def test_caller_headers_are_merged(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={})

        async with make_api(handler, token="tok") as api:
            await api.request("/ping", headers={"X-Trace": "abc"})

        self.assertEqual(seen[0].headers["X-Trace"], "abc")
        self.assertEqual(seen[0].headers["Authorization"], "Bearer tok")

    async def test_no_content_resolves_to_empty_object(self):
        def handler(request):
            return httpx.Response(204)

        async with make_api(handler) as api:
            self.assertEqual(await api.request("/cars/c1", method="DELETE"), {})
            self.assertIsNone(await api.delete_car("c1"))

    async def test_backend_message_is_raised_and_notified(self):
        notes = []

        def handler(request):
            return httpx.Response(409, json={"message": "Car is already booked"})

        async with make_api(handler, notes=notes) as api:
            with self.assertRaises(ApiError) as ctx:
                await api.request("/bookings", method="POST", json={})

        self.assertEqual(ctx.exception.status, 409)
        self.assertEqual(str(ctx.exception), "Car is already booked")
        self.assertEqual(ctx.exception.body, {"message": "Car is already booked"})
        self.assertEqual(notes, ["Car is already booked"])

    async def test_fallback_message_without_json_body(self):
        notes = []

        def handler(request):
            return httpx.Response(500, text="<html>oops</html>")

        async with make_api(handler, notes=notes) as api:
            with self.assertRaises(ApiError) as ctx:
                await api.get_cars()

        self.assertEqual(str(ctx.exception), "Server error: 500")
        self.assertEqual(notes, ["Server error: 500"])

    async def test_invalid_json_on_success(self):
        def handler(request):
            return httpx.Response(200, text="not json")

        async with make_api(handler, notes=[]) as api:
            with self.assertRaisesMessage(ApiError, "Invalid JSON from backend"):
                await api.get_cars()

    async def test_unauthorized_clears_token_everywhere(self):
        notes = []
        store = MemoryTokenStore("tok")
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.path.endswith("/bookings"):
                return httpx.Response(401, json={"message": "Token expired"})
            return httpx.Response(200, json=[])

        async with make_api(handler, notes=notes, store=store) as api:
            with self.assertRaises(SessionExpiredError) as ctx:
                await api.get_bookings()
            self.assertIsNone(api.token)
            await api.get_cars()

        self.assertEqual(ctx.exception.status, 401)
        self.assertIsNone(store.get())
        self.assertEqual(notes, ["Token expired"])
        self.assertNotIn("Authorization", seen[-1].headers)

    async def test_network_error_is_retried_for_get(self):
        calls = []
        notes = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        async with make_api(handler, notes=notes, retry_attempts=3) as api:
            with self.assertRaises(NetworkError):
                await api.get_cars()

        self.assertEqual(len(calls), 3)
        self.assertEqual(len(notes), 1)

    async def test_get_retry_recovers(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, json=[car_json()])

        async with make_api(handler, retry_attempts=3) as api:
            cars = await api.get_cars()

        self.assertEqual([c.id for c in cars], ["c1"])
        self.assertEqual(len(calls), 2)

    async def test_writes_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("down", request=request)

        async with make_api(handler, notes=[], retry_attempts=3) as api:
            with self.assertRaises(NetworkError):
                await api.request("/bookings", method="POST", json={})

        self.assertEqual(len(calls), 1)


class KeyedCancellationTests(SimpleTestCase):
    async def test_newer_request_supersedes_pending_one(self):
        notes = []
        gate = asyncio.Event()

        async def handler(request):
            if request.url.params.get("category") == "Эконом":
                await gate.wait()
            return httpx.Response(200, json=[car_json("c2", category="Бизнес")])

        async with make_api(handler, notes=notes) as api:
            first = asyncio.ensure_future(api.get_cars(CarFilters(category="Эконом")))
            await wait_in_flight(api, CARS_KEY)
            second = await api.get_cars(CarFilters(category="Бизнес"))

            with self.assertRaises(AbortError) as ctx:
                await first

        self.assertEqual([c.id for c in second], ["c2"])
        self.assertEqual(ctx.exception.key, CARS_KEY)
        self.assertEqual(notes, [])

    async def test_explicit_cancel(self):
        gate = asyncio.Event()

        async def handler(request):
            await gate.wait()
            return httpx.Response(200, json={"available": True})

        async with make_api(handler, notes=[]) as api:
            task = asyncio.ensure_future(api.check_car_availability("c1", date(2025, 3, 1), date(2025, 3, 2)))
            await wait_in_flight(api, availability_key("c1"))
            api.cancel(availability_key("c1"))
            with self.assertRaises(AbortError):
                await task
            self.assertEqual(api.in_flight, frozenset())
            # unknown keys are ignored
            api.cancel("nothing-here")

    async def test_caller_cancellation_propagates(self):
        notes = []
        gate = asyncio.Event()

        async def handler(request):
            await gate.wait()
            return httpx.Response(200, json=[])

        async with make_api(handler, notes=notes) as api:
            task = asyncio.ensure_future(api.get_bookings())
            await wait_in_flight(api, "get-bookings")
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task
            self.assertEqual(api.in_flight, frozenset())

        self.assertEqual(notes, [])

    async def test_different_keys_run_side_by_side(self):
        async def handler(request):
            await asyncio.sleep(0)
            if "/bookings" in request.url.path:
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=[car_json()])

        async with make_api(handler) as api:
            cars, bookings = await asyncio.gather(api.get_cars(), api.get_bookings())

        self.assertEqual(len(cars), 1)
        self.assertEqual(bookings, [])


class ResourceTests(SimpleTestCase):
    def test_query_string(self):
        self.assertEqual(build_query_string(None), "")
        self.assertEqual(build_query_string({"a": None, "b": ""}), "")
        self.assertEqual(build_query_string({"available": False, "seats": 5}), "?available=false&seats=5")
        self.assertIn("category=%D0%AD", build_query_string({"category": "Эконом"}))

    async def test_car_filters_use_wire_names(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        async with make_api(handler) as api:
            await api.get_cars(CarFilters(min_price=1000, sort="price_asc"))

        params = seen[0].url.params
        self.assertEqual(params["minPrice"], "1000")
        self.assertEqual(params["sort"], "price_asc")
        self.assertNotIn("category", params)

    async def test_availability_payload_and_conflicts(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"available": False, "conflictDates": ["2025-03-02"]})

        async with make_api(handler) as api:
            result = await api.check_car_availability("c1", date(2025, 3, 1), date(2025, 3, 3))

        self.assertEqual(seen[0].method, "POST")
        self.assertEqual(seen[0].url.path, "/api/v1/cars/c1/availability")
        self.assertEqual(json.loads(seen[0].content), {"startDate": "2025-03-01", "endDate": "2025-03-03"})
        self.assertFalse(result.available)
        self.assertEqual(result.conflict_dates, [date(2025, 3, 2)])

    async def test_create_booking_sends_camel_case(self):
        seen = []

        def handler(request):
            body = json.loads(request.content)
            seen.append(body)
            return httpx.Response(201, json={**body, "id": "b1"})

        payload = BookingInput(
            car_id="c1", start_date=date(2025, 3, 1), end_date=date(2025, 3, 4), total_price=4500
        )
        async with make_api(handler) as api:
            booking = await api.create_booking(payload)

        self.assertEqual(seen[0]["carId"], "c1")
        self.assertEqual(seen[0]["totalPrice"], 4500)
        self.assertEqual(seen[0]["status"], "pending")
        self.assertEqual(seen[0]["paymentStatus"], "pending")
        self.assertEqual(seen[0]["userId"], "guest")
        self.assertEqual(booking.id, "b1")

    async def test_status_and_payment_patches(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={
                "id": "b1", "carId": "c1", "startDate": "2025-03-01", "endDate": "2025-03-02",
                "totalPrice": 2000, "status": "confirmed", "paymentStatus": "paid",
            })

        async with make_api(handler) as api:
            await api.update_booking_status("b1", "confirmed")
            await api.update_booking_payment_status("b1", "paid")

        self.assertEqual(seen[0], ("PATCH", "/api/v1/bookings/b1/status", {"status": "confirmed"}))
        self.assertEqual(seen[1], ("PATCH", "/api/v1/bookings/b1/payment", {"paymentStatus": "paid"}))

    async def test_create_car_payload(self):
        seen = []

        def handler(request):
            body = json.loads(request.content)
            seen.append(body)
            return httpx.Response(201, json={**body, "id": "c9"})

        car = CarInput(
            title="Lada Vesta", price=1800, year=2021, seats=5,
            transmission="Механика", fuel="Бензин", category="Эконом", features=["ABS"],
        )
        async with make_api(handler) as api:
            created = await api.create_car(car)

        self.assertEqual(seen[0]["price"], 1800)
        self.assertEqual(seen[0]["features"], ["ABS"])
        self.assertEqual(created.id, "c9")

    async def test_login_stores_token_and_logout_clears_it(self):
        store = MemoryTokenStore()

        def handler(request):
            return httpx.Response(200, json={
                "token": "jwt-1",
                "user": {"id": "u1", "name": "Admin", "email": "admin@example.com", "role": "admin"},
            })

        async with make_api(handler, store=store) as api:
            result = await api.login("admin@example.com", "secret")
            self.assertEqual(api.token, "jwt-1")
            self.assertEqual(store.get(), "jwt-1")
            self.assertEqual(result.user.role, "admin")

            await api.logout()
            await api.logout()
            self.assertIsNone(api.token)
            self.assertIsNone(store.get())

    async def test_dashboard_stats(self):
        def handler(request):
            return httpx.Response(200, json={
                "carsCount": 3, "bookingsCount": 5, "usersCount": 2, "revenue": 6500,
                "recentBookings": [], "popularCars": [car_json(bookingsCount=4)],
            })

        async with make_api(handler) as api:
            stats = await api.get_dashboard_stats()

        self.assertEqual(stats.revenue, 6500)
        self.assertEqual(stats.popular_cars[0].bookings_count, 4)

    def test_error_message(self):
        self.assertEqual(error_message({"message": "Nope"}, 400), "Nope")
        self.assertEqual(error_message({"detail": "Not found"}, 404), "Not found")
        self.assertEqual(error_message({"detail": [{"loc": "x"}]}, 422), "Server error: 422")
        self.assertEqual(error_message({}, 503), "Server error: 503")


class TokenStoreTests(SimpleTestCase):
    def test_file_store(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "token.json")
            store = FileTokenStore(path)
            self.assertIsNone(store.get())

            store.set("abc")
            self.assertEqual(FileTokenStore(path).get(), "abc")

            store.clear()
            store.clear()
            self.assertIsNone(store.get())
            self.assertFalse(os.path.exists(path))

    @override_settings(STOREFRONT_TOKEN_KEY="custom_token")
    def test_session_store_uses_configured_key(self):
        session = {"custom_token": "xyz"}
        store = SessionTokenStore(session)
        self.assertEqual(store.get(), "xyz")

        store.set("new")
        self.assertEqual(session["custom_token"], "new")

        store.clear()
        store.clear()
        self.assertNotIn("custom_token", session)


class SessionExpiredMiddlewareTests(SimpleTestCase):
    def setUp(self):
        self.middleware = SessionExpiredMiddleware(lambda request: None)

    def test_redirects_to_login_with_next(self):
        request = RequestFactory().get("/admin/cars/", {"q": "kia"})
        request.session = {USER_SESSION_KEY: {"id": "u1"}}

        response = self.middleware.process_exception(request, SessionExpiredError("Token expired", 401))

        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.url.startswith(reverse("rentals:admin_login") + "?next="))
        self.assertIn("%2Fadmin%2Fcars%2F", response.url)
        self.assertNotIn(USER_SESSION_KEY, request.session)

    def test_other_errors_pass_through(self):
        request = RequestFactory().get("/")
        request.session = {}
        self.assertIsNone(self.middleware.process_exception(request, ApiError("boom", 500)))


class ApiLoginCommandTests(SimpleTestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.token_file = os.path.join(tmp.name, "token.json")

    def _patched_api(self):
        def handler(request):
            body = json.loads(request.content)
            if body.get("password") != "secret":
                return httpx.Response(401, json={"message": "Invalid credentials"})
            return httpx.Response(200, json={
                "token": "jwt-cli",
                "user": {"id": "u1", "name": "Admin", "email": body["email"], "role": "admin"},
            })

        def factory(token_store=None, notify=None, transport=None):
            return make_api(handler, store=token_store, notes=[])

        return patch("integrations.management.commands.api_login.build_api", side_effect=factory)

    def test_login_then_logout(self):
        with self._patched_api():
            call_command("api_login", "admin@example.com", password="secret", token_file=self.token_file)
            self.assertEqual(FileTokenStore(self.token_file).get(), "jwt-cli")

            call_command("api_login", logout=True, token_file=self.token_file)
            self.assertIsNone(FileTokenStore(self.token_file).get())

    def test_bad_password(self):
        with self._patched_api():
            with self.assertRaises(CommandError):
                call_command("api_login", "admin@example.com", password="wrong", token_file=self.token_file)
        self.assertIsNone(FileTokenStore(self.token_file).get())

    def test_email_required(self):
        with self.assertRaises(CommandError):
            call_command("api_login", token_file=self.token_file)
