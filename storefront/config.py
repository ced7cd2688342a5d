import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Runtime configuration read from the environment.

    Built on every call to ``get_settings`` so that a changed environment
    (tests, reloads) is picked up without restarting the process.
    """

    def __init__(self):
        self.environment = os.getenv("APP_ENV", "development").lower()
        self.jwt_secret = os.getenv("JWT_SECRET")

        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")

        self.khqr_webhook_secret = os.getenv("KHQR_WEBHOOK_SECRET")
        self.khqr_merchant_id = os.getenv("KHQR_MERCHANT_ID")
        self.khqr_terminal_id = os.getenv("KHQR_TERMINAL_ID")
        self.khqr_bank = os.getenv("KHQR_BANK", "ABA")
        self.khqr_postal_code = os.getenv("KHQR_POSTAL_CODE", "12000")
        self.khqr_strict_bank_codes = _flag("KHQR_STRICT_BANK_CODES")

        self.store_name = os.getenv("STORE_NAME", "Your Store")
        self.store_city = os.getenv("STORE_CITY", "Phnom Penh")
        self.client_url = os.getenv("CLIENT_URL", "http://localhost:3000").rstrip("/")
        self.default_currency = os.getenv("DEFAULT_CURRENCY", "USD").upper()

        self.gateway_timeout = float(os.getenv("GATEWAY_TIMEOUT", "10"))
        self.payment_rate_limit = int(os.getenv("PAYMENT_RATE_LIMIT", "10"))
        self.payment_rate_window = int(os.getenv("PAYMENT_RATE_WINDOW", str(15 * 60)))

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def get_settings() -> Settings:
    return Settings()


# One minor currency unit; amounts closer than this are treated as equal.
AMOUNT_TOLERANCE = Decimal("0.01")
