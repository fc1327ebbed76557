from __future__ import annotations

import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-change-me")
DEBUG = _env_bool("DJANGO_DEBUG", True)
ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "drf_spectacular",
    "auditlog",
    "apps.core",
    "apps.accounts",
    "apps.surveys",
    "apps.billing",
    "apps.survey_sessions",
    "apps.analytics",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "auditlog.middleware.AuditlogMiddleware",
]

ROOT_URLCONF = "launchpad.urls"
WSGI_APPLICATION = "launchpad.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

DATABASES = {
    "default": {
        "ENGINE": os.getenv("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.getenv("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.getenv("DB_USER", ""),
        "PASSWORD": os.getenv("DB_PASSWORD", ""),
        "HOST": os.getenv("DB_HOST", ""),
        "PORT": os.getenv("DB_PORT", ""),
    }
}

_cache_url = os.getenv("CACHE_URL")
if _cache_url:
    CACHES = {"default": {"BACKEND": "django.core.cache.backends.redis.RedisCache", "LOCATION": _cache_url}}
else:
    CACHES = {"default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache", "LOCATION": "launchpad"}}

SESSION_ENGINE = "django.contrib.sessions.backends.db"
SESSION_COOKIE_HTTPONLY = True

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "apps.core.permissions.EngineSessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "apps.core.permissions.IsOperator",
    ],
    "EXCEPTION_HANDLER": "apps.core.exceptions.engine_exception_handler",
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
    "UNAUTHENTICATED_USER": None,
}

SPECTACULAR_SETTINGS = {
    "TITLE": "Survey Launchpad API",
    "DESCRIPTION": "Authoring wizard, funding gate, respondent sessions and live analytics",
    "VERSION": "0.1.0",
}

# Upstream survey engine
SURVEY_ENGINE_BASE_URL = os.getenv("SURVEY_ENGINE_BASE_URL", "http://localhost:8080/api/v1").rstrip("/")
SURVEY_ENGINE_TIMEOUT = float(os.getenv("SURVEY_ENGINE_TIMEOUT", "30"))

# Workflow tuning
COST_ESTIMATE_DEBOUNCE_SECONDS = float(os.getenv("COST_ESTIMATE_DEBOUNCE_SECONDS", "0.8"))
PAYMENT_DEFAULT_CURRENCY = os.getenv("PAYMENT_DEFAULT_CURRENCY", "USD")
PAYMENT_CURRENCIES = ("USD", "NGN", "GHS", "ZAR")
PAYMENT_CALLBACK_URL = os.getenv("PAYMENT_CALLBACK_URL", "")
FREE_TIER_MAX_RESPONDENTS = int(os.getenv("FREE_TIER_MAX_RESPONDENTS", "25"))
ANALYTICS_RECONNECT_ATTEMPTS = int(os.getenv("ANALYTICS_RECONNECT_ATTEMPTS", "3"))
ANALYTICS_RECONNECT_BACKOFF = float(os.getenv("ANALYTICS_RECONNECT_BACKOFF", "2"))
DRAFT_RETENTION_DAYS = int(os.getenv("DRAFT_RETENTION_DAYS", "14"))
SESSION_RETENTION_HOURS = int(os.getenv("SESSION_RETENTION_HOURS", "48"))
PAYMENT_INTENT_TTL_HOURS = int(os.getenv("PAYMENT_INTENT_TTL_HOURS", "24"))

# Upstream cookies kept in the Django session are encrypted with this secret
CREDENTIALS_ENCRYPTION_SECRET = os.getenv("CREDENTIALS_ENCRYPTION_SECRET")

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BEAT_SCHEDULE = {
    "purge-abandoned-drafts": {
        "task": "apps.surveys.tasks.purge_abandoned_drafts_task",
        "schedule": 60 * 60 * 6,
    },
    "expire-stale-sessions": {
        "task": "apps.survey_sessions.tasks.expire_stale_sessions_task",
        "schedule": 60 * 60,
    },
    "abandon-stale-payment-intents": {
        "task": "apps.billing.tasks.abandon_stale_payment_intents_task",
        "schedule": 60 * 60,
    },
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "loggers": {
        "apps": {"handlers": ["console"], "level": os.getenv("DJANGO_LOG_LEVEL", "INFO"), "propagate": False},
        "launchpad": {"handlers": ["console"], "level": os.getenv("DJANGO_LOG_LEVEL", "INFO"), "propagate": False},
    },
}
