"""
Quality Management Backend
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Environment:
    DATABASE_URL                 database for development / production
    TEST_DATABASE_URL            database for tests (in-memory SQLite if unset)
    SECRET_KEY                   required in production
    LOG_LEVEL, LOG_FORMAT        see qms.middleware.logging_config
    QMS_VALIDATE_CATALOG         compare the permission catalog with the DB at startup
    QMS_CORRECTIVE_ACTION_LINK   link prefix in corrective action notifications
    QMS_NOTIFICATION_PAGE_SIZE   default inbox page size
    QMS_SECURITY_EVENT_BUFFER    security events kept in memory
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'qms_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _env_flag(name, default):
    return os.getenv(name, "true" if default else "false").lower() in ("1", "true", "yes")


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


def _database_url(default=None):
    # SQLAlchemy 2.0 no longer accepts the postgres:// scheme
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else default


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    LOG_LEVEL = os.getenv("LOG_LEVEL")
    LOG_FORMAT = os.getenv("LOG_FORMAT")

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    QMS_VALIDATE_CATALOG = _env_flag("QMS_VALIDATE_CATALOG", True)
    QMS_CORRECTIVE_ACTION_LINK = os.getenv("QMS_CORRECTIVE_ACTION_LINK", "/auditors/corrective-actions")
    QMS_NOTIFICATION_PAGE_SIZE = _env_int("QMS_NOTIFICATION_PAGE_SIZE", 20)
    QMS_SECURITY_EVENT_BUFFER = _env_int("QMS_SECURITY_EVENT_BUFFER", 5000)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    # Tables are created by the test fixtures, not at startup
    QMS_VALIDATE_CATALOG = False


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
