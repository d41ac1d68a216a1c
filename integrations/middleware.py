from urllib.parse import urlencode

from django.conf import settings
from django.shortcuts import redirect, resolve_url

from .errors import SessionExpiredError
from .shortcuts import USER_SESSION_KEY


class SessionExpiredMiddleware:
    """
    Top level listener for 401s: the client already purged the token, here we
    forget the cached user and send the browser to the login page.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        return self.get_response(request)

    def process_exception(self, request, exception):
        if not isinstance(exception, SessionExpiredError):
            return None
        request.session.pop(USER_SESSION_KEY, None)
        login_url = resolve_url(getattr(settings, "STOREFRONT_LOGIN_URL", "rentals:admin_login"))
        return redirect(f"{login_url}?{urlencode({'next': request.get_full_path()})}")
