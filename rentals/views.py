import uuid

from django.contrib import messages
from django.core.cache import cache
from django.http import Http404, JsonResponse
from django.shortcuts import redirect, render

from integrations.shortcuts import call_api, session_user

from .forms import BookingDetailsForm, CarFilterForm, DateRangeForm
from .services.availability import AvailabilityChecker, AvailabilityState
from .services.bookings import BLOCKING_MESSAGES, GUEST, BookingBlocked, BookingFlow, BookingStep

FLOW_SESSION_PREFIX = "booking_flow:"

# Held across requests of one session; kept after a successful submit
SUBMIT_LOCK_SECONDS = 60
AVAILABILITY_TICKET_SECONDS = 300


def _flow_key(car_id: str) -> str:
    return f"{FLOW_SESSION_PREFIX}{car_id}"


def _session_scope(request, car_id: str) -> str:
    if not request.session.session_key:
        request.session.save()
    return f"{request.session.session_key}:{car_id}"


def submit_lock_key(request, car_id: str) -> str:
    return f"booking-submit:{_session_scope(request, car_id)}"


def availability_ticket_key(request, car_id: str) -> str:
    return f"availability-check:{_session_scope(request, car_id)}"


def _load_flow(request, car) -> BookingFlow:
    data = request.session.get(_flow_key(car.id))
    if data:
        flow = BookingFlow.from_dict(data)
        if flow.step is not BookingStep.COMPLETED:
            flow.price_per_day = car.price
        return flow
    return BookingFlow(car.id, car.price, session_user(request).get("id") or GUEST)


def _save_flow(request, flow: BookingFlow):
    request.session[_flow_key(flow.car_id)] = flow.to_dict()


def _get_car_or_404(request, car_id: str):
    car = call_api(request, lambda api: api.get_car(car_id), fallback=None)
    if car is None:
        raise Http404("Car not found")
    return car


def _check_availability(request, flow: BookingFlow) -> AvailabilityState:
    """One availability check for the flow's current dates; the result lands in the flow."""
    start, end = flow.start_date, flow.end_date

    def apply(key, state):
        flow.apply_availability(key[1], key[2], state)

    async def work(api):
        checker = AvailabilityChecker(api, delay=0, on_change=apply)
        return await checker.check(flow.car_id, start, end)

    state = call_api(request, work, fallback=None)
    if state is None:
        state = AvailabilityState.idle()
        flow.apply_availability(start, end, state)
    return state


# ---------------- Catalog ----------------

def catalog(request):
    form = CarFilterForm(request.GET or None)
    filters = form.to_filters() if form.is_valid() else None
    cars = call_api(request, lambda api: api.get_cars(filters), fallback=[])
    return render(request, "rentals/catalog.html", {"form": form, "cars": cars})


# ---------------- Car page & booking flow ----------------

def car_detail(request, car_id: str):
    car = _get_car_or_404(request, car_id)
    flow = _load_flow(request, car)

    initial = {"start_date": flow.start_date, "end_date": flow.end_date}
    dates_form = DateRangeForm(initial=initial)
    details_form = BookingDetailsForm()
    blocked = None

    if request.method == "POST":
        action = request.POST.get("action")

        if action == "check":
            dates_form = DateRangeForm(request.POST)
            if dates_form.is_valid():
                flow.select_dates(dates_form.cleaned_data["start_date"], dates_form.cleaned_data["end_date"])
                _check_availability(request, flow)
                try:
                    flow.proceed()
                except BookingBlocked as exc:
                    blocked = str(exc)

        elif action == "back":
            flow.back()

        elif action == "confirm" and flow.step is not BookingStep.COMPLETED:
            details_form = BookingDetailsForm(request.POST)
            lock = submit_lock_key(request, car.id)
            if details_form.is_valid() and not cache.add(lock, True, SUBMIT_LOCK_SECONDS):
                # another request of this session is posting (or has posted) the booking
                blocked = BLOCKING_MESSAGES["submitting"]
            elif details_form.is_valid():
                data = details_form.cleaned_data
                try:
                    call_api(
                        request,
                        lambda api: flow.submit(api, data["name"], data["email"], data["phone"], data["agreed"]),
                        fallback=None,
                    )
                except BookingBlocked as exc:
                    blocked = str(exc)
                finally:
                    if flow.step is not BookingStep.COMPLETED:
                        cache.delete(lock)

        elif action == "restart":
            request.session.pop(_flow_key(car.id), None)
            cache.delete(submit_lock_key(request, car.id))
            return redirect("rentals:car_detail", car_id=car.id)

        _save_flow(request, flow)
        has_errors = (
            blocked
            or flow.error
            or (dates_form.is_bound and dates_form.errors)
            or (details_form.is_bound and details_form.errors)
        )
        if not has_errors:
            if flow.step is BookingStep.COMPLETED and action == "confirm":
                messages.success(request, f"{car.title} is booked!")
            return redirect("rentals:car_detail", car_id=car.id)

    return render(
        request,
        "rentals/car_detail.html",
        {
            "car": car,
            "flow": flow,
            "step": flow.step.value,
            "dates_form": dates_form,
            "details_form": details_form,
            "blocked": blocked or (flow.blocking_message() if flow.availability.status == "unavailable" else None),
        },
    )


def car_availability(request, car_id: str):
    """JSON availability + price for the dates currently picked on the car page."""
    form = DateRangeForm(request.GET)
    if not form.is_valid():
        return JsonResponse({"errors": form.errors.get_json_data()}, status=400)
    start, end = form.cleaned_data["start_date"], form.cleaned_data["end_date"]

    # latest request wins: an older check finishing late must not touch the flow
    ticket_key = availability_ticket_key(request, car_id)
    ticket = uuid.uuid4().hex
    cache.set(ticket_key, ticket, AVAILABILITY_TICKET_SECONDS)

    async def work(api):
        car = await api.get_car(car_id)
        checker = AvailabilityChecker(api, delay=0)
        state = await checker.check(car.id, start, end)
        return car, state, checker.error

    result = call_api(request, work, fallback=None)
    if result is None:
        return JsonResponse({"error": "Availability could not be checked."}, status=502)
    car, state, error = result

    flow = _load_flow(request, car)
    stale = cache.get(ticket_key) != ticket
    if stale:
        flow = BookingFlow(car.id, car.price, flow.user_id)
    flow.select_dates(start, end)
    flow.apply_availability(start, end, state)
    if not stale:
        _save_flow(request, flow)

    return JsonResponse(
        {
            "status": state.status,
            "available": state.is_available,
            "conflictDates": [d.isoformat() for d in state.conflict_dates],
            "duration": flow.duration,
            "totalPrice": flow.total_price,
            "message": flow.blocking_message(),
            "error": error,
            "stale": stale,
        }
    )
