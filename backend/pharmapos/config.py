# backend/pharmapos/config.py
from __future__ import annotations
import os


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # Device-local SQLite: offline inventory cache, held carts, sale outbox
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///pharmapos.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Hosted backend (Supabase REST + RPC)
    SUPABASE_URL = os.environ.get("SUPABASE_URL", "http://127.0.0.1:54321")
    SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY", "")
    BACKEND_TIMEOUT_SECONDS = float(os.environ.get("BACKEND_TIMEOUT_SECONDS", "15"))

    # Till behaviour
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "NGN")
    START_OFFLINE = _env_flag("START_OFFLINE")
    PHARMACY_NAME = os.environ.get("PHARMACY_NAME", "PharmaTrack Pharmacy")

    CORS_ALLOWED_ORIGINS = tuple(
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173,http://localhost:4173,http://127.0.0.1:4173",
        ).split(",")
        if origin.strip()
    )

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
