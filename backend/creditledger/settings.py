"""
Django settings for the creditledger project.

Values are read from environment variables (optionally loaded from the
repository-level ``.env`` file).
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

# load .env
env_path = BASE_DIR.parent / '.env'
load_dotenv(env_path)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-creditledger-dev-key")
DEBUG = _env_bool("DJANGO_DEBUG", True)
ALLOWED_HOSTS = [host for host in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if host]

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'django_filters',
    'credits',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'creditledger.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'creditledger.wsgi.application'
ASGI_APPLICATION = 'creditledger.asgi.application'

# Database
# PostgreSQL in every deployed environment (row locks back the ledger);
# SQLite only when POSTGRES_DB is not configured, e.g. local test runs.
if os.getenv("POSTGRES_DB"):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.getenv("POSTGRES_DB"),
            'USER': os.getenv("POSTGRES_USER", "postgres"),
            'PASSWORD': os.getenv("POSTGRES_PASSWORD", ""),
            'HOST': os.getenv("POSTGRES_HOST", "localhost"),
            'PORT': os.getenv("POSTGRES_PORT", "5432"),
            'ATOMIC_REQUESTS': False,
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
        'rest_framework.authentication.BasicAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAdminUser',
    ],
    'DEFAULT_FILTER_BACKENDS': [
        'django_filters.rest_framework.DjangoFilterBackend',
    ],
}

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)
CELERY_TASK_EAGER_PROPAGATES = True

# Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION") or None

# Credits
# Pricing rules seeded after migrate: feature_type -> {rule_key: (credit_cost, description)}
CREDITS_DEFAULT_PRICING = {
    "geo_grid": {
        "base": (10, "Platform fee per geo grid run"),
        "per_cell": (1, "Per grid cell"),
        "per_keyword": (2, "Per keyword checked"),
    },
    "rank_tracking": {
        "per_keyword": (2, "Desktop and mobile rank check per keyword"),
    },
    "llm_visibility": {
        "per_question_provider": (1, "One question asked of one LLM provider"),
    },
    "review_matching": {
        "default": (1, "Review matching scan"),
    },
    "backlinks": {
        "default": (5, "Backlink check for one domain"),
    },
    "rss_feeds": {
        "per_post": (1, "Auto-posted RSS item"),
    },
}

# Purchasable credit packs: key -> configuration
CREDITS_DEFAULT_PACKS = {
    "starter": {
        "name": "Starter",
        "credits": 100,
        "price_cents": 1000,
        "provider_price_id": os.getenv("STRIPE_PRICE_CREDITS_STARTER", ""),
        "provider_price_id_recurring": os.getenv("STRIPE_PRICE_CREDITS_STARTER_RECURRING", ""),
        "display_order": 1,
    },
    "growth": {
        "name": "Growth",
        "credits": 500,
        "price_cents": 4500,
        "provider_price_id": os.getenv("STRIPE_PRICE_CREDITS_GROWTH", ""),
        "provider_price_id_recurring": os.getenv("STRIPE_PRICE_CREDITS_GROWTH_RECURRING", ""),
        "display_order": 2,
    },
    "scale": {
        "name": "Scale",
        "credits": 1200,
        "price_cents": 9600,
        "provider_price_id": os.getenv("STRIPE_PRICE_CREDITS_SCALE", ""),
        "provider_price_id_recurring": os.getenv("STRIPE_PRICE_CREDITS_SCALE_RECURRING", ""),
        "display_order": 3,
    },
}

# Monthly included credits per subscription tier
CREDITS_TIER_ALLOWANCES = {
    "free": 0,
    "grower": 100,
    "builder": 300,
    "maven": 1000,
}

CREDITS_LEDGER_MAX_PAGE_SIZE = int(os.getenv("CREDITS_LEDGER_MAX_PAGE_SIZE", "100"))

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': os.getenv("DJANGO_LOG_LEVEL", "INFO"),
    },
    'loggers': {
        'credits': {
            'handlers': ['console'],
            'level': os.getenv("CREDITS_LOG_LEVEL", "INFO"),
            'propagate': False,
        },
    },
}
