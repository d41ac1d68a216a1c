# rentals/admin_views.py
import asyncio
import logging
from functools import wraps
from urllib.parse import urlencode

from django.contrib import messages
from django.http import Http404
from django.shortcuts import redirect, render
from django.urls import reverse
from django.utils.http import url_has_allowed_host_and_scheme
from django.views.decorators.http import require_POST

from integrations.errors import RECOVERABLE_ERRORS
from integrations.shortcuts import USER_SESSION_KEY, call_api, is_authenticated, session_user

from .forms import (
    AdminLoginForm,
    BookingListFilterForm,
    BookingStatusForm,
    CarForm,
    CarTableForm,
    PaymentStatusForm,
)
from .utils import cars_by_id, dashboard_summary, search_cars, sort_cars

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    "pending": "Pending",
    "confirmed": "Confirmed",
    "cancelled": "Cancelled",
    "completed": "Completed",
}
PAYMENT_LABELS = {
    "pending": "Awaiting payment",
    "paid": "Paid",
    "refunded": "Refunded",
}


def api_login_required(view):
    """Like ``login_required``, but "logged in" means holding a backend token."""

    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not is_authenticated(request):
            login_url = reverse("rentals:admin_login")
            return redirect(f"{login_url}?{urlencode({'next': request.get_full_path()})}")
        return view(request, *args, **kwargs)

    return wrapper


def _safe_next(request, default: str) -> str:
    target = request.POST.get("next") or request.GET.get("next")
    if target and url_has_allowed_host_and_scheme(target, allowed_hosts={request.get_host()}):
        return target
    return default


# ---------------- Login / logout ----------------

def admin_login(request):
    if is_authenticated(request):
        return redirect("rentals:admin_dashboard")

    form = AdminLoginForm(request.POST or None)
    if request.method == "POST" and form.is_valid():
        email = form.cleaned_data["email"]
        password = form.cleaned_data["password"]
        try:
            result = call_api(request, lambda api: api.login(email, password))
        except RECOVERABLE_ERRORS as exc:
            logger.info("Admin login refused for %s: %s", email, exc)
            form.add_error(None, "Invalid email or password.")
        else:
            request.session.cycle_key()
            request.session[USER_SESSION_KEY] = result.user.model_dump(mode="json")
            messages.success(request, f"Welcome, {result.user.name}!")
            return redirect(_safe_next(request, reverse("rentals:admin_dashboard")))

    return render(request, "rentals/admin/login.html", {"form": form, "next": request.GET.get("next", "")})


def admin_logout(request):
    call_api(request, lambda api: api.logout())
    request.session.pop(USER_SESSION_KEY, None)
    messages.info(request, "You have been logged out.")
    return redirect("rentals:admin_login")


# ---------------- Dashboard ----------------

@api_login_required
def admin_dashboard(request):
    async def load(api):
        return await asyncio.gather(api.get_cars(), api.get_bookings())

    cars, bookings = call_api(request, load, fallback=([], []))
    summary = dashboard_summary(cars, bookings)
    recent = sorted(bookings, key=lambda b: (b.created_at is not None, b.created_at, b.start_date), reverse=True)[:5]

    return render(
        request,
        "rentals/admin/dashboard.html",
        {
            **summary,
            "recent_bookings": recent,
            "cars_index": cars_by_id(cars),
            "status_labels": STATUS_LABELS,
            "user": session_user(request),
        },
    )


# ---------------- Cars ----------------

@api_login_required
def admin_cars(request):
    form = CarTableForm(request.GET or None)
    q, sort, direction = "", "title", "asc"
    if form.is_valid():
        q = form.cleaned_data.get("q") or ""
        sort = form.cleaned_data.get("sort") or "title"
        direction = form.cleaned_data.get("direction") or "asc"

    all_cars = call_api(request, lambda api: api.get_cars(), fallback=[])
    cars = sort_cars(search_cars(all_cars, q), sort, direction)

    return render(
        request,
        "rentals/admin/cars.html",
        {
            "cars": cars,
            "total": len(all_cars),
            "q": q,
            "sort": sort,
            "direction": direction,
            "next_direction": "desc" if direction == "asc" else "asc",
        },
    )


@api_login_required
def admin_car_add(request):
    form = CarForm(request.POST or None)
    if request.method == "POST" and form.is_valid():
        car = call_api(request, lambda api: api.create_car(form.to_input()), fallback=None)
        if car is not None:
            messages.success(request, f"✅ {car.title} was added.")
            return redirect("rentals:admin_cars")
    return render(request, "rentals/admin/car_form.html", {"form": form, "car": None})


@api_login_required
def admin_car_edit(request, car_id: str):
    car = call_api(request, lambda api: api.get_car(car_id), fallback=None)
    if car is None:
        raise Http404("Car not found")

    if request.method == "POST":
        form = CarForm(request.POST)
        if form.is_valid():
            updated = call_api(request, lambda api: api.update_car(car.id, form.to_input()), fallback=None)
            if updated is not None:
                messages.success(request, f"✅ {updated.title} was saved.")
                return redirect("rentals:admin_cars")
    else:
        form = CarForm(initial=CarForm.initial_for(car))

    return render(request, "rentals/admin/car_form.html", {"form": form, "car": car})


@api_login_required
@require_POST
def admin_car_delete(request, car_id: str):
    deleted = call_api(request, lambda api: api.delete_car(car_id), fallback=False)
    if deleted is not False:
        messages.success(request, "🗑️ The car was deleted.")
    return redirect("rentals:admin_cars")


# ---------------- Bookings ----------------

@api_login_required
def admin_bookings(request):
    form = BookingListFilterForm(request.GET or None)
    status = form.cleaned_data.get("status") if form.is_valid() else ""

    async def load(api):
        return await asyncio.gather(api.get_bookings(), api.get_cars())

    bookings, cars = call_api(request, load, fallback=([], []))
    shown = [b for b in bookings if b.status == status] if status else list(bookings)

    return render(
        request,
        "rentals/admin/bookings.html",
        {
            "form": form,
            "bookings": shown,
            "total": len(bookings),
            "status_filter": status,
            "cars_index": cars_by_id(cars),
            "status_labels": STATUS_LABELS,
            "payment_labels": PAYMENT_LABELS,
        },
    )


@api_login_required
def admin_booking_detail(request, booking_id: str):
    async def load(api):
        booking = await api.get_booking(booking_id)
        car = None if booking.car_details else await api.get_car(booking.car_id)
        return booking, car

    result = call_api(request, load, fallback=None)
    if result is None:
        raise Http404("Booking not found")
    booking, car = result

    return render(
        request,
        "rentals/admin/booking_detail.html",
        {
            "booking": booking,
            "car": car,
            "status_form": BookingStatusForm(initial={"status": booking.status}),
            "payment_form": PaymentStatusForm(initial={"payment_status": booking.payment_status}),
            "status_labels": STATUS_LABELS,
            "payment_labels": PAYMENT_LABELS,
        },
    )


def _back_to_bookings(request, booking_id: str):
    default = reverse("rentals:admin_booking_detail", args=[booking_id])
    return redirect(_safe_next(request, default))


@api_login_required
@require_POST
def admin_booking_status(request, booking_id: str):
    form = BookingStatusForm(request.POST)
    if not form.is_valid():
        messages.error(request, "Unknown booking status.")
        return _back_to_bookings(request, booking_id)

    status = form.cleaned_data["status"]
    booking = call_api(request, lambda api: api.update_booking_status(booking_id, status), fallback=None)
    if booking is not None:
        messages.success(request, f"Booking status changed to “{STATUS_LABELS[booking.status]}”.")
    return _back_to_bookings(request, booking_id)


@api_login_required
@require_POST
def admin_booking_payment(request, booking_id: str):
    form = PaymentStatusForm(request.POST)
    if not form.is_valid():
        messages.error(request, "Unknown payment status.")
        return _back_to_bookings(request, booking_id)

    payment_status = form.cleaned_data["payment_status"]
    booking = call_api(
        request, lambda api: api.update_booking_payment_status(booking_id, payment_status), fallback=None
    )
    if booking is not None:
        messages.success(request, f"Payment status changed to “{PAYMENT_LABELS[booking.payment_status]}”.")
    return _back_to_bookings(request, booking_id)


# ---------------- Users ----------------

@api_login_required
def admin_users(request):
    users = call_api(request, lambda api: api.get_users(), fallback=[])
    return render(request, "rentals/admin/users.html", {"users": users})
