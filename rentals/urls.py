from django.urls import path

from . import admin_views
from .views import car_availability, car_detail, catalog

app_name = "rentals"

urlpatterns: list[path] = [
    # Storefront
    path("", catalog, name="catalog"),
    path("cars/<str:car_id>/", car_detail, name="car_detail"),
    path("cars/<str:car_id>/availability/", car_availability, name="car_availability"),

    # Back-office
    path("admin/login/", admin_views.admin_login, name="admin_login"),
    path("admin/logout/", admin_views.admin_logout, name="admin_logout"),
    path("admin/", admin_views.admin_dashboard, name="admin_dashboard"),
    path("admin/cars/", admin_views.admin_cars, name="admin_cars"),
    path("admin/cars/add/", admin_views.admin_car_add, name="admin_car_add"),
    path("admin/cars/<str:car_id>/edit/", admin_views.admin_car_edit, name="admin_car_edit"),
    path("admin/cars/<str:car_id>/delete/", admin_views.admin_car_delete, name="admin_car_delete"),
    path("admin/bookings/", admin_views.admin_bookings, name="admin_bookings"),
    path("admin/bookings/<str:booking_id>/", admin_views.admin_booking_detail, name="admin_booking_detail"),
    path("admin/bookings/<str:booking_id>/status/", admin_views.admin_booking_status, name="admin_booking_status"),
    path("admin/bookings/<str:booking_id>/payment/", admin_views.admin_booking_payment, name="admin_booking_payment"),
    path("admin/users/", admin_views.admin_users, name="admin_users"),
]
