import os

from dotenv import load_dotenv

load_dotenv()


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'your-secret-key-change-in-production')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///expenses.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Rule lookups must not hang a request waiting for a pooled connection
    SQLALCHEMY_ENGINE_OPTIONS = {'pool_pre_ping': True, 'pool_timeout': 5}

    EXCHANGE_RATE_API = os.environ.get('EXCHANGE_RATE_API', 'https://api.exchangerate-api.com/v4/latest')
    REST_COUNTRIES_API = os.environ.get('REST_COUNTRIES_API', 'https://restcountries.com/v3.1/name')
    COUNTRIES_LIST_API = os.environ.get('COUNTRIES_LIST_API',
                                        'https://restcountries.com/v3.1/all?fields=name,currencies')
    HTTP_TIMEOUT = float(os.environ.get('HTTP_TIMEOUT', 5))
    RATE_CACHE_TTL = int(os.environ.get('RATE_CACHE_TTL', 24 * 60 * 60))

    # For production, restrict origins e.g. "http://localhost:3000"
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    PASSWORD_HASH_METHOD = 'pbkdf2:sha256'
    DEFAULT_PAGE_SIZE = 10
    MAX_PAGE_SIZE = 100
    DEFAULT_MAX_EXPENSE_AMOUNT = 10000


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    PASSWORD_HASH_METHOD = 'pbkdf2:sha256:1000'
    LOG_LEVEL = 'DEBUG'
