from .base import *  # noqa: F401,F403

SECRET_KEY = 'test-secret-key-not-for-production'
DEBUG = False

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

MANUAL_WEBHOOK_SECRET = 'whsec_manual_test'
STRIPE_SECRET_KEY = 'sk_test_dummy'
STRIPE_WEBHOOK_SECRET = 'whsec_stripe_test'

SUBSCRIPTIONS = {
    'DEFAULT_PROVIDER': 'manual',
    'CURRENCY': 'USD',
}

CELERY_TASK_ALWAYS_EAGER = True
CELERY_BROKER_URL = 'memory://'

LOG_LEVEL = 'WARNING'
LOGGING['loggers']['subscriptions']['level'] = LOG_LEVEL  # noqa: F405
LOGGING['loggers']['candidates']['level'] = LOG_LEVEL  # noqa: F405
