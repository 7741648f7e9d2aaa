from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

# file-backed so threaded tests get real cross-connection locking
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': str(BASE_DIR / 'test.sqlite3'),
        'OPTIONS': dict(SQLITE_OPTIONS),
        'TEST': {'NAME': str(BASE_DIR / 'test_db.sqlite3')},
    }
}

ALLOWED_HOSTS = ['testserver']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
EMAIL_FAIL_SILENTLY = False

RAZORPAY_KEY_ID = 'rzp_test_key'
RAZORPAY_KEY_SECRET = 'test-key-secret'
RAZORPAY_WEBHOOK_SECRET = 'test-webhook-secret'

LOG_LEVEL = 'CRITICAL'
LOGGING['root']['level'] = LOG_LEVEL
