from asgiref.sync import async_to_sync
from django.core.management.base import BaseCommand, CommandError

from integrations.errors import RECOVERABLE_ERRORS
from integrations.services import build_api
from integrations.token_store import FileTokenStore
from rentals.services.availability import AvailabilityChecker
from rentals.services.bookings import compute_duration, compute_total, to_calendar_date


class Command(BaseCommand):
    help = "Ελέγχει διαθεσιμότητα αυτοκινήτου για εύρος ημερομηνιών και υπολογίζει ημέρες/κόστος."

    def add_arguments(self, parser):
        parser.add_argument("car_id", help="Car id on the rental API")
        parser.add_argument("start", help="Start date (DD-MM-YYYY or YYYY-MM-DD)")
        parser.add_argument("end", help="End date (DD-MM-YYYY or YYYY-MM-DD)")
        parser.add_argument("--rate", type=int, help="Price per day (default: the car's price)")

    def handle(self, *args, **opts):
        try:
            start = to_calendar_date(opts["start"])
            end = to_calendar_date(opts["end"])
        except (ValueError, OverflowError) as exc:
            raise CommandError(f"❌ Invalid date: {exc}")
        if end < start:
            raise CommandError("❌ The end date is before the start date.")
        if opts["rate"] is not None and opts["rate"] < 0:
            raise CommandError("❌ --rate must not be negative.")

        try:
            rate, state, error = async_to_sync(self._check)(opts["car_id"], start, end, opts["rate"])
        except RECOVERABLE_ERRORS as exc:
            raise CommandError(f"❌ {exc}")

        days = compute_duration(start, end)
        self.stdout.write(f"Car:      {opts['car_id']}")
        self.stdout.write(f"Dates:    {start:%d-%m-%Y} → {end:%d-%m-%Y}")
        self.stdout.write(f"Days:     {days}")
        self.stdout.write(f"Total:    {compute_total(days, rate)} (rate {rate}/day)")

        if error:
            raise CommandError(f"❌ Availability check failed: {error}")
        if state.is_available:
            self.stdout.write(self.style.SUCCESS("✅ Available"))
        else:
            booked = ", ".join(d.strftime("%d-%m-%Y") for d in state.conflict_dates)
            self.stdout.write(self.style.WARNING(
                "⛔ Not available" + (f" (booked: {booked})" if booked else "")
            ))

    async def _check(self, car_id, start, end, rate):
        async with build_api(token_store=FileTokenStore(), notify=self._notify) as api:
            if rate is None:
                rate = (await api.get_car(car_id)).price
            checker = AvailabilityChecker(api, delay=0)
            state = await checker.check(car_id, start, end)
            return rate, state, checker.error

    def _notify(self, message):
        self.stderr.write(self.style.WARNING(f"⚠️ {message}"))
