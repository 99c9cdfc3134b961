# backend/rma_ledger/config.py
from __future__ import annotations
import os


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/rma_ledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///rma_ledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Disposal reporting: "mock" (default, no credentials) or "http"
    DISPOSAL_REPORTER = os.environ.get("DISPOSAL_REPORTER", "mock")
    DISPOSAL_REPORTING_URL = os.environ.get("DISPOSAL_REPORTING_URL", "")
    DISPOSAL_REPORTING_API_KEY = os.environ.get("DISPOSAL_REPORTING_API_KEY", "")
    DISPOSAL_REPORTING_TIMEOUT_SECONDS = float(os.environ.get("DISPOSAL_REPORTING_TIMEOUT_SECONDS", "10"))

    # Credit/refund resolutions are capped at the return's total value unless enabled
    ALLOW_CREDIT_ABOVE_RETURN_VALUE = _env_flag("ALLOW_CREDIT_ABOVE_RETURN_VALUE")

    # Months until RMA store credit expires when the caller does not say (unset = never)
    DEFAULT_CREDIT_EXPIRATION_MONTHS = (
        int(os.environ["DEFAULT_CREDIT_EXPIRATION_MONTHS"])
        if os.environ.get("DEFAULT_CREDIT_EXPIRATION_MONTHS")
        else None
    )
