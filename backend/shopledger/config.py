# backend/shopledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/shopledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///shopledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Credit period policy (whole days after the limit is first exceeded)
    DEFAULT_CREDIT_PERIOD_DAYS = int(os.environ.get("DEFAULT_CREDIT_PERIOD_DAYS", "30"))
    ALLOWED_CREDIT_PERIOD_DAYS = (15, 30, 50, 60)
    CREDIT_WARNING_THRESHOLD = float(os.environ.get("CREDIT_WARNING_THRESHOLD", "0.8"))

    # One retry at the boundary, then surface as a transient failure
    CONCURRENCY_RETRY_ATTEMPTS = int(os.environ.get("CONCURRENCY_RETRY_ATTEMPTS", "2"))

    CACHE_TYPE = os.environ.get("CACHE_TYPE", "SimpleCache")
    CACHE_DEFAULT_TIMEOUT = int(os.environ.get("CACHE_DEFAULT_TIMEOUT", "1800"))


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    CACHE_TYPE = "NullCache"
    LOG_LEVEL = "DEBUG"
