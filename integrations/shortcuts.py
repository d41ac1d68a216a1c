"""
Glue between sync Django views and the async API client.
"""
from asgiref.sync import async_to_sync
from django.contrib import messages

from .errors import RECOVERABLE_ERRORS, AbortError, SessionExpiredError
from .services import build_api
from .token_store import SessionTokenStore

USER_SESSION_KEY = "auth_user"

_RAISE = object()


class MessagesNotifier:
    """Toast channel: API failures end up as ``messages.error`` on the next render."""

    def __init__(self, request):
        self.request = request

    def __call__(self, message: str):
        messages.error(self.request, message)


def api_for_request(request):
    return build_api(
        token_store=SessionTokenStore(request.session),
        notify=MessagesNotifier(request),
    )


def call_api(request, func, fallback=_RAISE):
    """
    Run ``await func(api)`` with a client bound to this request's session.

    With ``fallback`` given, recoverable failures (already shown to the user)
    and cancellations return it instead of raising. ``SessionExpiredError``
    always propagates so the middleware can send the user to the login page.
    """

    # built here: reading the session may hit the database
    api = api_for_request(request)

    async def _run():
        async with api:
            return await func(api)

    try:
        return async_to_sync(_run)()
    except SessionExpiredError:
        raise
    except RECOVERABLE_ERRORS + (AbortError,):
        if fallback is _RAISE:
            raise
        return fallback


def is_authenticated(request) -> bool:
    return bool(SessionTokenStore(request.session).get())


def session_user(request) -> dict:
    return request.session.get(USER_SESSION_KEY) or {}
