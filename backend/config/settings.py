import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'dev-secret-key-change-in-production')
DEBUG = os.getenv('DEBUG', '0') == '1'
ALLOWED_HOSTS = ['*']

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'rest_framework',
    'corsheaders',
    'fulfillment',
]

MIDDLEWARE = [
    'corsheaders.middleware.CorsMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'config.urls'

# 本服务不落库：已提交状态在 marketplace 后端，草稿在 Redis
DATABASES = {}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# CORS
CORS_ALLOW_ALL_ORIGINS = True

# REST Framework
REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
    ],
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [],
    'UNAUTHENTICATED_USER': None,
    'EXCEPTION_HANDLER': 'fulfillment.exception_handler.unified_exception_handler',
}

# Marketplace backend
FULFILLMENT_BACKEND_URL = os.getenv('FULFILLMENT_BACKEND_URL', 'http://localhost:5000/api')
FULFILLMENT_BACKEND_TOKEN = os.getenv('FULFILLMENT_BACKEND_TOKEN', '')
FULFILLMENT_HTTP_TIMEOUT = float(os.getenv('FULFILLMENT_HTTP_TIMEOUT', '10'))
FULFILLMENT_PROVIDER_PAGE_LIMIT = 100
FULFILLMENT_CATALOG_PAGE_LIMIT = 1000

# Drafts (Redis)
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
# 草稿过期时间：7 天；0 = 不过期
FULFILLMENT_DRAFT_TTL = int(os.getenv('FULFILLMENT_DRAFT_TTL', '604800'))

# Request feed
FULFILLMENT_REFRESH_INTERVAL = 30
FULFILLMENT_SEARCH_DEBOUNCE = 0.5

# Logging
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'simple': {
            'format': '%(asctime)s %(levelname)s %(name)s %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'simple',
        },
    },
    'loggers': {
        'fulfillment': {
            'handlers': ['console'],
            'level': 'DEBUG' if DEBUG else 'INFO',
        },
    },
}
