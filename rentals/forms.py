from datetime import date

from django import forms

from integrations.schemas import BOOKING_STATUSES, PAYMENT_STATUSES, Car, CarFilters, CarInput

from .services.bookings import compute_duration, renter_details_errors
from .utils import CAR_SORT_FIELDS

# We accept DD-MM-YYYY (and ISO)
DATE_INPUT_FORMATS = ["%d-%m-%Y", "%Y-%m-%d"]

# Values are what the backend stores
CAR_CATEGORIES = [
    ("Эконом", "Economy"),
    ("Бизнес", "Business"),
    ("Премиум", "Premium"),
    ("Кроссовер", "Crossover"),
]
TRANSMISSIONS = [
    ("Автомат", "Automatic"),
    ("Механика", "Manual"),
    ("Робот", "Robotized"),
    ("Вариатор", "CVT"),
]
FUELS = [
    ("Бензин", "Petrol"),
    ("Дизель", "Diesel"),
    ("Гибрид", "Hybrid"),
    ("Электро", "Electric"),
]
CATALOG_SORTS = [
    ("", "Default"),
    ("price_asc", "Price: low to high"),
    ("price_desc", "Price: high to low"),
    ("year_desc", "Newest first"),
    ("year_asc", "Oldest first"),
]


def _date_widget():
    return forms.DateInput(attrs={"type": "text", "class": "datepicker", "placeholder": "DD-MM-YYYY"})


# ---------------------------------------------------------------------------
# Catalog filters
# ---------------------------------------------------------------------------

class CarFilterForm(forms.Form):
    search = forms.CharField(label="Search", required=False)
    category = forms.ChoiceField(
        label="Category", choices=[("", "All categories")] + CAR_CATEGORIES, required=False
    )
    min_price = forms.IntegerField(label="Price from", min_value=0, required=False)
    max_price = forms.IntegerField(label="Price to", min_value=0, required=False)
    sort = forms.ChoiceField(label="Sort", choices=CATALOG_SORTS, required=False)

    def clean(self):
        cleaned = super().clean()
        low, high = cleaned.get("min_price"), cleaned.get("max_price")
        if low is not None and high is not None and high < low:
            raise forms.ValidationError("The maximum price must not be below the minimum price.")
        return cleaned

    def to_filters(self) -> CarFilters:
        data = self.cleaned_data
        return CarFilters(
            search=data.get("search") or None,
            category=data.get("category") or None,
            min_price=data.get("min_price"),
            max_price=data.get("max_price"),
            sort=data.get("sort") or None,
        )


# ---------------------------------------------------------------------------
# Booking: dates and renter details
# ---------------------------------------------------------------------------

class DateRangeForm(forms.Form):
    start_date = forms.DateField(label="Start date", input_formats=DATE_INPUT_FORMATS, widget=_date_widget())
    end_date = forms.DateField(label="End date", input_formats=DATE_INPUT_FORMATS, widget=_date_widget())

    def __init__(self, *args, today=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.today = today

    def clean_start_date(self):
        start = self.cleaned_data["start_date"]
        if start < (self.today or date.today()):
            raise forms.ValidationError("The start date cannot be in the past.")
        return start

    def clean(self):
        cleaned = super().clean()
        start = cleaned.get("start_date")
        end = cleaned.get("end_date")
        if start and end and end < start:
            raise forms.ValidationError("The end date must not be before the start date.")
        if start and end:
            cleaned["days"] = compute_duration(start, end)
        return cleaned


class BookingDetailsForm(forms.Form):
    name = forms.CharField(label="Full name", max_length=120)
    email = forms.CharField(label="Email", max_length=254)
    phone = forms.CharField(label="Phone", max_length=50)
    agreed = forms.BooleanField(label="I accept the rental terms", required=False)

    def clean(self):
        cleaned = super().clean()
        errors = renter_details_errors(
            cleaned.get("name", ""),
            cleaned.get("email", ""),
            cleaned.get("phone", ""),
            cleaned.get("agreed", False),
        )
        for field, message in errors.items():
            if field not in self.errors:
                self.add_error(field, message)
        return cleaned


# ---------------------------------------------------------------------------
# Back-office
# ---------------------------------------------------------------------------

class AdminLoginForm(forms.Form):
    email = forms.EmailField(label="Email")
    password = forms.CharField(label="Password", widget=forms.PasswordInput)


class CarForm(forms.Form):
    title = forms.CharField(label="Title", max_length=200)
    description = forms.CharField(label="Description", widget=forms.Textarea, required=False)
    price = forms.IntegerField(label="Price per day", min_value=1)
    image = forms.URLField(label="Image URL", required=False)
    year = forms.IntegerField(label="Year", min_value=1900, max_value=2100)
    seats = forms.IntegerField(label="Seats", min_value=1, max_value=9, initial=5)
    transmission = forms.ChoiceField(label="Transmission", choices=TRANSMISSIONS)
    fuel = forms.ChoiceField(label="Fuel", choices=FUELS)
    category = forms.ChoiceField(label="Category", choices=CAR_CATEGORIES)
    available = forms.BooleanField(label="Available", required=False, initial=True)
    features = forms.CharField(
        label="Features", required=False, help_text="Comma separated, e.g. GPS, Bluetooth"
    )

    def clean_title(self):
        return self.cleaned_data["title"].strip()

    def clean_features(self):
        raw = self.cleaned_data.get("features") or ""
        return [f.strip() for f in raw.split(",") if f.strip()]

    def to_input(self) -> CarInput:
        return CarInput(**self.cleaned_data)

    @staticmethod
    def initial_for(car: Car) -> dict:
        return {
            "title": car.title,
            "description": car.description,
            "price": car.price,
            "image": car.image,
            "year": car.year,
            "seats": car.seats,
            "transmission": car.transmission,
            "fuel": car.fuel,
            "category": car.category,
            "available": car.available,
            "features": ", ".join(car.features),
        }


class CarTableForm(forms.Form):
    q = forms.CharField(required=False)
    sort = forms.ChoiceField(choices=[(f, f) for f in CAR_SORT_FIELDS], required=False)
    direction = forms.ChoiceField(choices=[("asc", "asc"), ("desc", "desc")], required=False)


class BookingStatusForm(forms.Form):
    status = forms.ChoiceField(choices=[(s, s) for s in BOOKING_STATUSES])


class PaymentStatusForm(forms.Form):
    payment_status = forms.ChoiceField(choices=[(s, s) for s in PAYMENT_STATUSES])


class BookingListFilterForm(forms.Form):
    status = forms.ChoiceField(
        choices=[("", "All statuses")] + [(s, s) for s in BOOKING_STATUSES], required=False
    )
