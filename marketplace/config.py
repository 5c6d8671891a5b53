import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def _clean_env(value):
    return (value or "").strip().strip("'").strip('"')


DATABASE_URL = _clean_env(os.getenv("DATABASE_URL")) or "sqlite:///./marketplace.db"

STRIPE_SECRET_KEY = _clean_env(os.getenv("STRIPE_SECRET_KEY"))
STRIPE_WEBHOOK_SECRET = _clean_env(os.getenv("STRIPE_WEBHOOK_SECRET"))

JWT_SECRET = _clean_env(os.getenv("JWT_SECRET"))
JWT_ALGORITHM = "HS256"

# Tier prices are currency-less; the processor charges in this currency
PAYMENT_CURRENCY = _clean_env(os.getenv("PAYMENT_CURRENCY")) or "aud"
PAYMENT_STATUS_TIMEOUT = float(os.getenv("PAYMENT_STATUS_TIMEOUT", "5"))
PAYMENT_STATUS_INTERVAL = float(os.getenv("PAYMENT_STATUS_INTERVAL", "1"))

SCHEDULER_TIMEZONE = _clean_env(os.getenv("SCHEDULER_TIMEZONE")) or "Australia/Sydney"

LOG_LEVEL = (_clean_env(os.getenv("LOG_LEVEL")) or "INFO").upper()
