# config/urls.py
from django.urls import path, include
from django.views.generic import RedirectView

urlpatterns = [
    # App routes (namespace 'rentals')
    path("", include(("rentals.urls", "rentals"), namespace="rentals")),

    # --- Convenience redirects ---
    path("login/", RedirectView.as_view(pattern_name="rentals:admin_login", permanent=False)),
    path("logout/", RedirectView.as_view(pattern_name="rentals:admin_logout", permanent=False)),
]
