import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_bool_env(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes"}


class Config:
    """Configuration class for the billing service"""

    # Environment Detection
    APP_ENV = os.environ.get("APP_ENV", "development")  # development, staging, production
    IS_DEVELOPMENT = APP_ENV == "development"

    # Supabase Configuration (service role key - bypasses RLS)
    SUPABASE_URL = _get_env_var("SUPABASE_URL")
    SUPABASE_KEY = _get_env_var("SUPABASE_KEY")

    # Stripe Configuration
    STRIPE_SECRET_KEY = _get_env_var("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = _get_env_var("STRIPE_WEBHOOK_SECRET")
    # Pinned so subscription period fields keep the shape the sync resolver reads
    STRIPE_API_VERSION = _get_env_var("STRIPE_API_VERSION", "2024-12-18.acacia")

    # Redirect URLs for checkout and billing portal are always built server-side
    APP_URL = _get_env_var("APP_URL", "http://localhost:5173")

    # When enabled, a Stripe price missing from subscription_plans fails the sync
    # instead of falling back to the lowest paid tier.
    STRICT_PRICE_MAPPING = _get_bool_env("STRICT_PRICE_MAPPING")

    # Logging
    LOG_LEVEL = _get_env_var("LOG_LEVEL", "INFO")

    # Sentry Configuration
    SENTRY_DSN = _get_env_var("SENTRY_DSN")
    SENTRY_ENABLED = _get_bool_env("SENTRY_ENABLED", "true")
    SENTRY_ENVIRONMENT = _get_env_var("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_RELEASE = _get_env_var("SENTRY_RELEASE", "1.0.0")
    SENTRY_TRACES_SAMPLE_RATE = float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    @classmethod
    def validate(cls):
        """Validate that all required environment variables are set"""
        missing_vars = []

        if not cls.SUPABASE_URL:
            missing_vars.append("SUPABASE_URL")
        if not cls.SUPABASE_KEY:
            missing_vars.append("SUPABASE_KEY")

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}\n"
                "Please create a .env file with the following variables:\n"
                "SUPABASE_URL=your_supabase_project_url\n"
                "SUPABASE_KEY=your_supabase_service_role_key\n"
                "STRIPE_SECRET_KEY=your_stripe_secret_key\n"
                "STRIPE_WEBHOOK_SECRET=your_stripe_webhook_signing_secret"
            )

        return True

