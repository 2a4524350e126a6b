"""
BuildTrack configuration, one class per APP_ENV.

Everything here is read by the progress service itself: the database,
the request guard, the progress rate limit, the health check's Redis
URL and the completion-email switches.

Usage:
    app.config.from_object(config[os.getenv("APP_ENV", "development")])
"""

import os

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _database_url(default=None):
    # Railway/Heroku hand out postgres:// but SQLAlchemy 2.0 wants postgresql://
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else default


def _flag(name, default):
    return os.getenv(name, default).lower() == "true"


class Config:
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
    }

    # Progress payloads are small JSON bodies; photos never pass through here
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", str(64 * 1024)))
    PROGRESS_RATE_LIMIT = os.getenv("PROGRESS_RATE_LIMIT", "60/minute")

    # Checked by /health/live; empty skips the check
    REDIS_URL = os.getenv("REDIS_URL", "")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # SMTP for completion emails; with no MAIL_SERVER they are logged only
    MAIL_SERVER = os.getenv("MAIL_SERVER")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = _flag("MAIL_USE_TLS", "true")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "noreply@buildtrack.local")
    COMPLETION_EMAILS_ENABLED = _flag("COMPLETION_EMAILS_ENABLED", "true")


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        f"sqlite:///{os.path.join(basedir, 'instance', 'buildtrack_dev.db')}"
    )
    # SQLite file databases do not take queue-pool sizing options
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    REDIS_URL = ""
    COMPLETION_EMAILS_ENABLED = True


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production
    SQLALCHEMY_ENGINE_OPTIONS = {
        **Config.SQLALCHEMY_ENGINE_OPTIONS,
        # a hung sync should fail as a store outage, not hold the worker
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
