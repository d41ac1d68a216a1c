"""
Durable storage for the API session token.

One string under a fixed key; absence means "not authenticated".
"""
import json
import os
from typing import Optional

from django.conf import settings


def token_key() -> str:
    return getattr(settings, "STOREFRONT_TOKEN_KEY", "auth_token")


class MemoryTokenStore:
    def __init__(self, token: Optional[str] = None):
        self._token = token

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: str):
        self._token = token

    def clear(self):
        self._token = None


class SessionTokenStore:
    """
    Keeps the token in the Django session.

    The value is read here, in the sync view, so that the async client code
    only ever touches the already-loaded session dict and never the backend.
    """

    def __init__(self, session, key: Optional[str] = None):
        self.session = session
        self.key = key or token_key()
        self._token = session.get(self.key)

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: str):
        self._token = token
        self.session[self.key] = token

    def clear(self):
        self._token = None
        self.session.pop(self.key, None)


class FileTokenStore:
    """JSON file store for management commands (same idea as a download state file)."""

    def __init__(self, path: Optional[str] = None, key: Optional[str] = None):
        self.path = path or getattr(settings, "STOREFRONT_TOKEN_FILE", ".storefront_token.json")
        self.key = key or token_key()

    def _load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict):
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)

    def get(self) -> Optional[str]:
        token = self._load().get(self.key)
        return token or None

    def set(self, token: str):
        data = self._load()
        data[self.key] = token
        self._save(data)

    def clear(self):
        data = self._load()
        if self.key not in data:
            return
        del data[self.key]
        if data:
            self._save(data)
        else:
            os.remove(self.path)
