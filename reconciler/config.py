import os
from dataclasses import dataclass


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

    # --- Bank-transfer gateway (SePay) ---
    SEPAY_MERCHANT_ID = os.environ.get("SEPAY_MERCHANT_ID")
    SEPAY_SECRET_KEY = os.environ.get("SEPAY_SECRET_KEY")    # IPN header secret + checkout signing key
    SEPAY_ENV = os.environ.get("SEPAY_ENV", "sandbox")       # sandbox | production

    # --- Card subscription gateway (Stripe) ---
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_PREMIUM_PRICE_ID = os.environ.get("STRIPE_PREMIUM_PRICE_ID")
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:3000")

    # --- Idempotency ledger ---
    # Entries older than this are pruned by `flask prune-ledger`.
    LEDGER_RETENTION_DAYS = int(os.environ.get("LEDGER_RETENTION_DAYS", 90))

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Rate limiting (checkout endpoints only) ---
    RATELIMIT_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "SEPAY_MERCHANT_ID",
            "SEPAY_SECRET_KEY",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "STRIPE_PREMIUM_PRICE_ID",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing — in-memory SQLite, fixed gateway secrets."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SEPAY_MERCHANT_ID = "MERCHANT_TEST"
    SEPAY_SECRET_KEY = "sepay_test_secret"
    SEPAY_ENV = "sandbox"
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_PREMIUM_PRICE_ID = "price_premium_test"
    APP_BASE_URL = "http://localhost:3000"
    LEDGER_RETENTION_DAYS = 90
    RATELIMIT_ENABLED = False  # disable rate limiting in tests

    @staticmethod
    def validate():
        """Skip validation in test mode; everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}


@dataclass(frozen=True)
class GatewayConfig:
    """Provider credentials handed to the verifier and checkout services.

    Built once per app in create_app() and stored on
    app.extensions["gateway_config"]; nothing reads gateway secrets from
    the environment after startup.
    """

    merchant_id: str = ""
    secret_key: str = ""
    signing_secret: str = ""
    environment: str = "sandbox"

    @classmethod
    def from_app_config(cls, app_config):
        environment = (app_config.get("SEPAY_ENV") or "sandbox").lower()
        if environment not in ("sandbox", "production"):
            raise ValueError(f"Unknown SEPAY_ENV: {environment}")
        return cls(
            merchant_id=app_config.get("SEPAY_MERCHANT_ID") or "",
            secret_key=app_config.get("SEPAY_SECRET_KEY") or "",
            signing_secret=app_config.get("STRIPE_WEBHOOK_SECRET") or "",
            environment=environment,
        )

    @property
    def bank_transfer_configured(self):
        return bool(self.merchant_id and self.secret_key)

    def __repr__(self):
        # Secrets stay out of logs and tracebacks.
        return (
            f"<GatewayConfig merchant={self.merchant_id!r} "
            f"env={self.environment}>"
        )
