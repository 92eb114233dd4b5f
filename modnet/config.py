import os

from dotenv import load_dotenv

load_dotenv()


def _int(name, default):
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


class Config:
    """
    Settings shared by every ModNet process. Values come from the environment
    (a local .env file is loaded first) so that the separately deployed services
    agree on SECRET_KEY, the database and the attachment key.
    """

    REQUIRED = ('SECRET_KEY', 'ATTACHMENT_KEY', 'ADMIN_PASSWORD')

    SECRET_KEY = os.getenv('SECRET_KEY')
    DATABASE = os.getenv('DATABASE', 'database.sqlite')
    UPLOAD_FOLDER = os.getenv('UPLOAD_FOLDER', 'uploads')
    ATTACHMENT_KEY = os.getenv('ATTACHMENT_KEY')
    MAX_CONTENT_LENGTH = _int('MAX_CONTENT_LENGTH', 10 * 1024 * 1024)
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Login
    UNIVERSITY_EMAIL_DOMAIN = os.getenv('UNIVERSITY_EMAIL_DOMAIN', '@student.le.ac.uk')
    OTP_LENGTH = _int('OTP_LENGTH', 6)
    OTP_TTL_SECONDS = _int('OTP_TTL_SECONDS', 600)
    OTP_MAX_ATTEMPTS = _int('OTP_MAX_ATTEMPTS', 5)

    # Chat rules
    MESSAGE_EDIT_WINDOW_SECONDS = _int('MESSAGE_EDIT_WINDOW_SECONDS', 30 * 60)
    SIGNED_URL_TTL_SECONDS = _int('SIGNED_URL_TTL_SECONDS', 3600)
    MAX_MODULES = _int('MAX_MODULES', 4)
    POLL_INTERVAL_SECONDS = _int('POLL_INTERVAL_SECONDS', 3)

    # Admin dashboard
    ADMIN_EMAIL = os.getenv('ADMIN_EMAIL', 'admin@modnet.local')
    ADMIN_PASSWORD = os.getenv('ADMIN_PASSWORD')

    # Mail (one-time passcodes)
    MAIL_SERVER = os.getenv('MAIL_SERVER', 'localhost')
    MAIL_PORT = _int('MAIL_PORT', 25)
    MAIL_USE_TLS = os.getenv('MAIL_USE_TLS', 'false').lower() == 'true'
    MAIL_USERNAME = os.getenv('MAIL_USERNAME')
    MAIL_PASSWORD = os.getenv('MAIL_PASSWORD')
    MAIL_DEFAULT_SENDER = os.getenv('MAIL_DEFAULT_SENDER', 'no-reply@modnet.local')

    # Rate limits (flask-limiter notation)
    RATELIMIT_DEFAULT = os.getenv('RATELIMIT_DEFAULT', '100 per 15 minutes')
    RATELIMIT_STORAGE_URI = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')
    AUTH_RATE_LIMIT = os.getenv('AUTH_RATE_LIMIT', '5 per 15 minutes')
    ADMIN_LOGIN_RATE_LIMIT = os.getenv('ADMIN_LOGIN_RATE_LIMIT', '3 per 15 minutes')
    ADMIN_RATE_LIMIT = os.getenv('ADMIN_RATE_LIMIT', '50 per 15 minutes')
    GATEWAY_RATE_LIMIT = os.getenv('GATEWAY_RATE_LIMIT', '100 per 15 minutes')

    CORS_ORIGINS = os.getenv('CORS_ORIGINS', '*')
    # Set when services run as separate processes so broadcasts reach every socket
    SOCKETIO_MESSAGE_QUEUE = os.getenv('SOCKETIO_MESSAGE_QUEUE')

    # Ports and service discovery for the gateway
    GATEWAY_PORT = _int('GATEWAY_PORT', 8000)
    SERVICE_PORTS = {
        'auth': _int('AUTH_SERVICE_PORT', 8001),
        'messaging': _int('MESSAGING_SERVICE_PORT', 8002),
        'module': _int('MODULE_SERVICE_PORT', 8003),
        'admin': _int('ADMIN_SERVICE_PORT', 8004),
        'account': _int('ACCOUNT_SERVICE_PORT', 8005),
    }
    SERVICE_URLS = {
        'auth': os.getenv('AUTH_SERVICE_URL', 'http://localhost:8001'),
        'messaging': os.getenv('MESSAGING_SERVICE_URL', 'http://localhost:8002'),
        'module': os.getenv('MODULE_SERVICE_URL', 'http://localhost:8003'),
        'admin': os.getenv('ADMIN_SERVICE_URL', 'http://localhost:8004'),
        'account': os.getenv('ACCOUNT_SERVICE_URL', 'http://localhost:8005'),
    }
    GATEWAY_TIMEOUT_SECONDS = _int('GATEWAY_TIMEOUT_SECONDS', 10)

    @classmethod
    def missing(cls):
        """Names of required settings that are not set."""
        return [name for name in cls.REQUIRED if not getattr(cls, name)]


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    # Fixed Fernet key so signed links are reproducible in tests
    ATTACHMENT_KEY = 'xpplx11wZUibz0E8tV8Z9mf-wwggzSrc21uQ17Qq2gg='
    ADMIN_EMAIL = 'admin@modnet.local'
    ADMIN_PASSWORD = 'admin123'
    MAIL_SUPPRESS_SEND = True
    RATELIMIT_ENABLED = False
