from typing import Iterable, List

from integrations.schemas import Booking, Car

CAR_SORT_FIELDS = ("title", "category", "price", "year", "seats", "transmission", "fuel")

REVENUE_STATUSES = ("confirmed", "completed")


def search_cars(cars: Iterable[Car], query: str) -> List[Car]:
    """Cars whose title or category contains ``query`` (case-insensitive)."""
    q = (query or "").strip().lower()
    cars = list(cars)
    if not q:
        return cars
    return [c for c in cars if q in c.title.lower() or q in c.category.lower()]


def sort_cars(cars: Iterable[Car], field: str = "title", direction: str = "asc") -> List[Car]:
    """Admin table ordering: strings alphabetically, numbers numerically, empties last."""
    if field not in CAR_SORT_FIELDS:
        field = "title"
    reverse = direction == "desc"
    cars = list(cars)

    def key(car):
        value = getattr(car, field)
        if isinstance(value, str):
            value = value.lower()
        return value

    present = [c for c in cars if getattr(c, field) not in (None, "")]
    missing = [c for c in cars if getattr(c, field) in (None, "")]
    return sorted(present, key=key, reverse=reverse) + missing


def dashboard_summary(cars: Iterable[Car], bookings: Iterable[Booking]) -> dict:
    cars = list(cars)
    bookings = list(bookings)
    return {
        "cars_count": len(cars),
        "bookings_count": len(bookings),
        "active_bookings_count": sum(1 for b in bookings if b.status == "confirmed"),
        "revenue": sum(b.total_price for b in bookings if b.status in REVENUE_STATUSES),
    }


def cars_by_id(cars: Iterable[Car]) -> dict:
    return {c.id: c for c in cars}
