"""Application configuration profiles."""
from __future__ import annotations

import os
from decimal import Decimal

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_URI = os.environ.get('DATABASE_URL', f"sqlite:///{os.path.join(BASE_DIR, 'library.db')}")


class BaseConfig:
    SQLALCHEMY_DATABASE_URI = DEFAULT_DB_URI
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # SQLite waits this many seconds on a locked database before giving up.
    SQLALCHEMY_ENGINE_OPTIONS = {'connect_args': {'timeout': 30}} if DEFAULT_DB_URI.startswith('sqlite') else {}
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Lending rules
    MAX_ACTIVE_BORROWINGS = int(os.environ.get('MAX_ACTIVE_BORROWINGS', 5))
    DEFAULT_LOAN_DAYS = int(os.environ.get('DEFAULT_LOAN_DAYS', 14))
    DAILY_FINE_RATE = Decimal(os.environ.get('DAILY_FINE_RATE', '1000'))
    FINE_QUANTUM = Decimal(os.environ.get('FINE_QUANTUM', '1'))


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = 'DEBUG'


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'WARNING')


config_by_name = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}
