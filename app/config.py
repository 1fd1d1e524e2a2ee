import os


def _env_bool(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Stripe (payment provider) ---
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    # Optional alternative to signature checks: /webhooks/payment/<token>
    PAYMENT_WEBHOOK_URL_SECRET = os.environ.get("PAYMENT_WEBHOOK_URL_SECRET")
    STRIPE_REQUEST_TIMEOUT = float(os.environ.get("STRIPE_REQUEST_TIMEOUT", 10))
    CHECKOUT_SUCCESS_URL = os.environ.get("CHECKOUT_SUCCESS_URL")
    CHECKOUT_CANCEL_URL = os.environ.get("CHECKOUT_CANCEL_URL")
    SHIPPING_ALLOWED_COUNTRIES = [
        c.strip().upper()
        for c in os.environ.get(
            "SHIPPING_ALLOWED_COUNTRIES", "US,CA,GB,AU,DE,FR,NL,IE,NZ"
        ).split(",")
        if c.strip()
    ]

    # --- Printful (fulfillment provider) ---
    PRINTFUL_API_KEY = os.environ.get("PRINTFUL_API_KEY")
    PRINTFUL_API_URL = os.environ.get("PRINTFUL_API_URL", "https://api.printful.com")
    PRINTFUL_WEBHOOK_SECRET = os.environ.get("PRINTFUL_WEBHOOK_SECRET")
    # Must stay well under BREAKER_RESET_TIMEOUT so slow calls fail promptly.
    PRINTFUL_REQUEST_TIMEOUT = float(os.environ.get("PRINTFUL_REQUEST_TIMEOUT", 15))

    # --- Circuit breakers (one per provider client) ---
    BREAKER_MAX_FAILURES = int(os.environ.get("BREAKER_MAX_FAILURES", 5))
    BREAKER_RESET_TIMEOUT = float(os.environ.get("BREAKER_RESET_TIMEOUT", 60))
    BREAKER_HALF_OPEN_MAX_REQUESTS = int(
        os.environ.get("BREAKER_HALF_OPEN_MAX_REQUESTS", 1)
    )

    # --- Fulfillment retry policy ---
    # Draft orders are only picked for production once confirmed. When off,
    # drafts wait for `flask confirm-fulfillment` (or the Printful dashboard).
    FULFILLMENT_AUTO_CONFIRM = _env_bool("FULFILLMENT_AUTO_CONFIRM")
    FULFILLMENT_MAX_RETRIES = int(os.environ.get("FULFILLMENT_MAX_RETRIES", 10))
    FULFILLMENT_RETRY_BACKOFF_SECONDS = int(
        os.environ.get("FULFILLMENT_RETRY_BACKOFF_SECONDS", 60)
    )
    FULFILLMENT_RETRY_BACKOFF_MAX_SECONDS = int(
        os.environ.get("FULFILLMENT_RETRY_BACKOFF_MAX_SECONDS", 3600)
    )
    # A `submitting` claim older than this is assumed to belong to a dead worker.
    FULFILLMENT_CLAIM_TIMEOUT = int(os.environ.get("FULFILLMENT_CLAIM_TIMEOUT", 300))
    FULFILLMENT_WEBHOOK_DEDUP_WINDOW = int(
        os.environ.get("FULFILLMENT_WEBHOOK_DEDUP_WINDOW", 600)
    )
    RETRY_WORKER_INTERVAL = int(os.environ.get("RETRY_WORKER_INTERVAL", 300))

    # --- Notification email (SMTP) ---
    ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL")
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")          # App Password
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Store Alerts")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME
    MAIL_REPLY_TO = os.environ.get("MAIL_REPLY_TO")
    STORE_NAME = os.environ.get("STORE_NAME", "Our store")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Rate limiting ---
    RATELIMIT_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "PRINTFUL_API_KEY",
            "PRINTFUL_WEBHOOK_SECRET",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = Config.SQLALCHEMY_DATABASE_URI or "sqlite:///bridge.db"


class TestConfig(Config):
    """Testing — in-memory SQLite, fake provider credentials."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    PAYMENT_WEBHOOK_URL_SECRET = None
    CHECKOUT_SUCCESS_URL = "http://localhost:5000/checkout/success"
    CHECKOUT_CANCEL_URL = "http://localhost:5000/checkout/cancel"
    PRINTFUL_API_KEY = "pf_test_fake"
    PRINTFUL_API_URL = "https://printful.test"
    PRINTFUL_WEBHOOK_SECRET = "pf-hook-token"
    FULFILLMENT_AUTO_CONFIRM = False
    FULFILLMENT_MAX_RETRIES = 5
    FULFILLMENT_RETRY_BACKOFF_SECONDS = 0  # tests opt in to backoff explicitly
    ADMIN_EMAIL = "ops@example.com"
    MAIL_USERNAME = None  # emails are built but never sent
    MAIL_PASSWORD = None
    APP_BASE_URL = "http://localhost:5000"
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    FULFILLMENT_AUTO_CONFIRM = _env_bool("FULFILLMENT_AUTO_CONFIRM", "true")


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
