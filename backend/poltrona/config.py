# backend/poltrona/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _float_env(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/poltrona.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///poltrona.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Payment processor (Mercado Pago). The access token has no default:
    # handlers that talk to the processor fail with a configuration error.
    MERCADOPAGO_ACCESS_TOKEN = os.environ.get("MERCADOPAGO_ACCESS_TOKEN")
    MERCADOPAGO_API_BASE = os.environ.get("MERCADOPAGO_API_BASE", "https://api.mercadopago.com")
    MERCADOPAGO_WEBHOOK_URL = os.environ.get("MERCADOPAGO_WEBHOOK_URL")
    MERCADOPAGO_TIMEOUT_SECONDS = _float_env("MERCADOPAGO_TIMEOUT_SECONDS", 10.0)
    PAYER_EMAIL_PLACEHOLDER = os.environ.get("PAYER_EMAIL_PLACEHOLDER", "pagador@example.com")

    # Device notifier retry policy
    DEVICE_NOTIFY_MAX_ATTEMPTS = _int_env("DEVICE_NOTIFY_MAX_ATTEMPTS", 3)
    DEVICE_NOTIFY_TIMEOUT_SECONDS = _float_env("DEVICE_NOTIFY_TIMEOUT_SECONDS", 5.0)
    DEVICE_NOTIFY_BACKOFF_SECONDS = _float_env("DEVICE_NOTIFY_BACKOFF_SECONDS", 1.0)
    DEVICE_STATUS_TIMEOUT_SECONDS = _float_env("DEVICE_STATUS_TIMEOUT_SECONDS", 10.0)

    # Reconciliation windows
    POLL_WINDOW_MINUTES = _int_env("POLL_WINDOW_MINUTES", 30)
    POLL_INTERVAL_SECONDS = _int_env("POLL_INTERVAL_SECONDS", 30)
    EXPIRY_INTERVAL_SECONDS = _int_env("EXPIRY_INTERVAL_SECONDS", 60)
    INTENT_TTL_MINUTES = _int_env("INTENT_TTL_MINUTES", 30)
    PRESENCE_STALE_SECONDS = _int_env("PRESENCE_STALE_SECONDS", 120)
    AMOUNT_TOLERANCE_CENTS = _int_env("AMOUNT_TOLERANCE_CENTS", 1)

    # Printable payment links point at the public payment page
    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:5173")

    # Opaque admin identity: a single bearer token issued by the identity provider
    ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN")

    CORS_ALLOWED_ORIGINS = os.environ.get("CORS_ALLOWED_ORIGINS", "*")

    # httpx transports; tests swap in httpx.MockTransport
    MERCADOPAGO_HTTP_TRANSPORT = None
    DEVICE_HTTP_TRANSPORT = None
