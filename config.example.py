# The base URL the API is mounted under. Must end with a slash.
BASEDIR = '/'

# MongoDB server settings.
MONGO = {
    'host': ['127.0.0.1:27017'],
    'database': 'songbook'
}

# Redis server settings, used for sessions + cache.
REDIS = {
    'CACHE_TYPE': 'redis',
    'CACHE_REDIS_HOST': '127.0.0.1',
    'CACHE_REDIS_PORT': 6379,
    'CACHE_REDIS_PASSWORD': None,
    'CACHE_REDIS_DB': None
}

# Secret key used for sessions.
SECRET_KEY = 'change-me'

# Require a CSRF token on state-changing requests.
CSRF_ENABLED = True

# Seconds cached list and category responses are kept.
CACHE_TIMEOUT = 60

# Storage quota used by the storage endpoints, in megabytes.
STORAGE_LIMIT_MB = 512
