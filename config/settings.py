# config/settings.py
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

# .env στη ρίζα του project (αν υπάρχει)
load_dotenv(BASE_DIR / ".env")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-only-not-secret")
DEBUG = _env_bool("DJANGO_DEBUG", True)
ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "integrations",
    "rentals",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
    "integrations.middleware.SessionExpiredMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "config.wsgi.application"
ASGI_APPLICATION = "config.asgi.application"

# Only sessions live locally; cars/bookings/users are on the rental API
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / os.getenv("DJANGO_DB_NAME", "db.sqlite3"),
    }
}

MESSAGE_STORAGE = "django.contrib.messages.storage.session.SessionStorage"

# Booking submit locks and availability tickets; must be shared by all workers in production
CACHES = {
    "default": {
        "BACKEND": os.getenv("DJANGO_CACHE_BACKEND", "django.core.cache.backends.locmem.LocMemCache"),
        "LOCATION": os.getenv("DJANGO_CACHE_LOCATION", "storefront"),
    }
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.getenv("DJANGO_TIME_ZONE", "Europe/Moscow")
USE_I18N = True
USE_TZ = True

DATE_INPUT_FORMATS = ["%d-%m-%Y", "%Y-%m-%d"]

STATIC_URL = "static/"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ---------------- Rental API ----------------
STOREFRONT_API_URL = os.getenv("STOREFRONT_API_URL", "https://api.avtoprokat-demo.ru/api/v1")
STOREFRONT_API_TIMEOUT = float(os.getenv("STOREFRONT_API_TIMEOUT", "10"))
STOREFRONT_API_RETRIES = int(os.getenv("STOREFRONT_API_RETRIES", "3"))
STOREFRONT_API_RETRY_WAIT = float(os.getenv("STOREFRONT_API_RETRY_WAIT", "0.5"))
STOREFRONT_TOKEN_KEY = os.getenv("STOREFRONT_TOKEN_KEY", "auth_token")
STOREFRONT_TOKEN_FILE = os.getenv("STOREFRONT_TOKEN_FILE", str(BASE_DIR / ".storefront_token.json"))
STOREFRONT_LOGIN_URL = os.getenv("STOREFRONT_LOGIN_URL", "rentals:admin_login")
AVAILABILITY_DEBOUNCE_SECONDS = float(os.getenv("AVAILABILITY_DEBOUNCE_SECONDS", "0.4"))

# ---------------- Logging ----------------
STOREFRONT_LOG_LEVEL = os.getenv("STOREFRONT_LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "loggers": {
        "integrations": {"handlers": ["console"], "level": STOREFRONT_LOG_LEVEL, "propagate": False},
        "rentals": {"handlers": ["console"], "level": STOREFRONT_LOG_LEVEL, "propagate": False},
    },
}
