"""
Wire schemas of the rental backend.

The API speaks camelCase JSON; attributes here are snake_case and every
model accepts either spelling on input.
"""
from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

BookingStatus = Literal["pending", "confirmed", "cancelled", "completed"]
PaymentStatus = Literal["pending", "paid", "refunded"]
CarSort = Literal["price_asc", "price_desc", "year_desc", "year_asc"]

BOOKING_STATUSES = ("pending", "confirmed", "cancelled", "completed")
PAYMENT_STATUSES = ("pending", "paid", "refunded")


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Car(ApiModel):
    """A car of the catalog, as returned by the backend."""
    id: str
    title: str
    description: str = ""
    price: int = Field(..., description="Price per day")
    image: str = ""
    images: List[str] = Field(default_factory=list)
    year: Optional[int] = None
    seats: Optional[int] = None
    transmission: str = ""
    fuel: str = ""
    category: str = ""
    available: bool = True
    features: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CarInput(ApiModel):
    """Payload of admin create/update calls."""
    title: str = Field(..., min_length=1)
    description: str = ""
    price: int = Field(..., gt=0)
    image: str = ""
    images: List[str] = Field(default_factory=list)
    year: int = Field(..., ge=1900, le=2100)
    seats: int = Field(..., ge=1, le=9)
    transmission: str
    fuel: str
    category: str
    available: bool = True
    features: List[str] = Field(default_factory=list)


class UserDetails(ApiModel):
    name: str
    email: str
    phone: str


class CarDetails(ApiModel):
    title: str
    category: str = ""
    image: str = ""


class Booking(ApiModel):
    id: str
    car_id: str
    user_id: str = "guest"
    start_date: date
    end_date: date
    total_price: int
    status: BookingStatus = "pending"
    payment_status: PaymentStatus = "pending"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    user_details: Optional[UserDetails] = None
    car_details: Optional[CarDetails] = None

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self


class BookingInput(ApiModel):
    car_id: str
    user_id: str = "guest"
    start_date: date
    end_date: date
    total_price: int = Field(..., ge=0)
    status: BookingStatus = "pending"
    payment_status: PaymentStatus = "pending"
    user_details: Optional[UserDetails] = None

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self


class User(ApiModel):
    id: str
    name: str
    email: str
    phone: str = ""
    role: Literal["user", "admin"] = "user"
    created_at: Optional[datetime] = None
    avatar: Optional[str] = None


class AuthResult(ApiModel):
    token: str
    user: User


class AvailabilityResult(ApiModel):
    available: bool
    conflict_dates: List[date] = Field(default_factory=list)


class PopularCar(Car):
    bookings_count: int = 0


class DashboardStats(ApiModel):
    cars_count: int = 0
    bookings_count: int = 0
    users_count: int = 0
    revenue: int = 0
    recent_bookings: List[Booking] = Field(default_factory=list)
    popular_cars: List[PopularCar] = Field(default_factory=list)


class CarFilters(ApiModel):
    category: Optional[str] = None
    min_price: Optional[int] = None
    max_price: Optional[int] = None
    seats: Optional[int] = None
    transmission: Optional[str] = None
    fuel: Optional[str] = None
    available: Optional[bool] = None
    search: Optional[str] = None
    sort: Optional[CarSort] = None


class BookingFilters(ApiModel):
    status: Optional[BookingStatus] = None
    payment_status: Optional[PaymentStatus] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    user_id: Optional[str] = None
    car_id: Optional[str] = None
