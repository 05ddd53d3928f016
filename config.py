import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def _env_int(key, default):
    value = os.getenv(key)
    return int(value) if value else default


class Config:
    SECRET_KEY = os.getenv('SECRET_KEY', 'change-this-secret-key')
    SQLALCHEMY_DATABASE_URI = os.getenv('POSQ_DATABASE_URL', 'sqlite:///posq.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Customer-facing app (QR codes point here)
    FRONTEND_URL = os.getenv('FRONTEND_URL', 'http://localhost:5173').rstrip('/')

    # Printer microservice
    PRINTER_SERVICE_URL = os.getenv('PRINTER_SERVICE_URL', 'http://localhost:4000').rstrip('/')
    PRINTER_SERVICE_TIMEOUT = float(os.getenv('PRINTER_SERVICE_TIMEOUT', '5'))

    CURRENCY = os.getenv('CURRENCY', 'MAD')

    # File uploads
    UPLOAD_FOLDER = os.getenv('UPLOAD_FOLDER', os.path.join(BASE_DIR, 'uploads'))
    IMAGE_UPLOAD_FOLDER = os.path.join(UPLOAD_FOLDER, 'images')
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB max file size

    CACHE_TYPE = os.getenv('CACHE_TYPE', 'SimpleCache')
    CACHE_DEFAULT_TIMEOUT = 300
    MENU_CACHE_TIMEOUT = _env_int('MENU_CACHE_TIMEOUT', 60)

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Rate limits on the unauthenticated endpoints, per client address
    RATELIMIT_STORAGE_URI = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')
    LOGIN_RATE_LIMIT = os.getenv('LOGIN_RATE_LIMIT', '5 per 15 minutes')
    ORDER_RATE_LIMIT = os.getenv('ORDER_RATE_LIMIT', '10 per minute')

    ORDER_PIN_LENGTH = 8
    KDS_EVENT_BUFFER = _env_int('KDS_EVENT_BUFFER', 500)
    KDS_HEARTBEAT_SECONDS = 3


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    CACHE_TYPE = 'NullCache'
    FRONTEND_URL = 'http://menu.test'
    PRINTER_SERVICE_URL = 'http://printer.test'
    LOG_LEVEL = 'WARNING'
    RATELIMIT_STORAGE_URI = 'memory://'
    LOGIN_RATE_LIMIT = '1000 per minute'
    ORDER_RATE_LIMIT = '1000 per minute'


def configure_logging(level=None):
    """Set up root logging once for the API and the printer service."""
    lvl = getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s'
    )
    logging.getLogger().setLevel(lvl)
