# eventhub/config.py

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# -----------------------------
# Startup
# -----------------------------
DB_CONNECT_MAX_RETRIES = int(os.getenv("DB_CONNECT_MAX_RETRIES", "30"))
DB_CONNECT_RETRY_DELAY = float(os.getenv("DB_CONNECT_RETRY_DELAY", "1.5"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


# -----------------------------
# Booking flow
# -----------------------------
RESERVATION_HOLD_SECONDS = int(os.getenv("RESERVATION_HOLD_SECONDS", "600"))
MAX_TICKETS_PER_BOOKING = int(os.getenv("MAX_TICKETS_PER_BOOKING", "10"))
COMMIT_MAX_RETRIES = int(os.getenv("COMMIT_MAX_RETRIES", "3"))
COMMIT_RETRY_DELAY = float(os.getenv("COMMIT_RETRY_DELAY", "0.2"))


# -----------------------------
# Pricing
# -----------------------------
# Card processing fee: basis points of the subtotal plus a fixed amount.
PROCESSING_FEE_BPS = int(os.getenv("PROCESSING_FEE_BPS", "290"))
PROCESSING_FEE_FIXED_MINOR = int(os.getenv("PROCESSING_FEE_FIXED_MINOR", "30"))


# -----------------------------
# Expiry sweeper
# -----------------------------
SWEEPER_ENABLED = _env_bool("SWEEPER_ENABLED", "true")
SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", "30"))


# -----------------------------
# Payment gateway
# -----------------------------
PAYMENT_GATEWAY = os.getenv("PAYMENT_GATEWAY", "razorpay").strip().lower()
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
