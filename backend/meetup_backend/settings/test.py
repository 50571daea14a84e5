from .settings import *

DEBUG = False
SECRET_KEY = "meetup-test-secret-key"

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels.layers.InMemoryChannelLayer",
    }
}

GOOGLE_MAPS_API_KEY = "test-maps-key"
REALTIME_IDLE_TIMEOUT_SECONDS = 120

LOGGING['root']['level'] = 'CRITICAL'
