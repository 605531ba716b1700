import os
from functools import lru_cache
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _split_emails(raw: str):
    emails = [e.strip() for e in (raw or "").split(",") if e and e.strip()]
    seen = set()
    uniq = []
    for e in emails:
        if e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


class Settings:
    """Process-wide configuration read from the environment."""

    def __init__(self):
        self.database_url = os.getenv("DATABASE_URL")

        self.razorpay_key_id = os.getenv("RAZORPAY_KEY_ID", "")
        self.razorpay_key_secret = os.getenv("RAZORPAY_KEY_SECRET", "")
        self.razorpay_webhook_secret = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
        self.currency = os.getenv("PAYMENT_CURRENCY", "INR")
        self.min_amount_minor = int(os.getenv("MIN_AMOUNT_MINOR", "100"))
        self.gateway_max_attempts = int(os.getenv("GATEWAY_MAX_ATTEMPTS", "3"))
        self.gateway_backoff_seconds = float(os.getenv("GATEWAY_BACKOFF_SECONDS", "0.5"))

        self.jwt_secret = os.getenv("JWT_SECRET")

        self.sendgrid_api_key = os.getenv("SENDGRID_API_KEY", "")
        self.email_from = os.getenv("EMAIL_FROM", "noreply@gomantakgausevak.com")
        self.admin_emails = _split_emails(os.getenv("ADMIN_EMAILS", ""))

        self.frontend_url = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()


@lru_cache()
def get_settings() -> Settings:
    return Settings()
