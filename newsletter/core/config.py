"""
Runtime configuration loaded from the environment (and a local .env file)
"""
import os
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _strip_quotes(value: Optional[str]) -> Optional[str]:
    # Handle potential single quotes in the env file value
    if value and len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


class Settings:
    """
    Engine settings.

    Every value comes from an environment variable of the same (upper-case)
    name; keyword arguments override the environment, which is how tests
    build isolated settings.
    """

    def __init__(self, **overrides):
        self.database_url = _strip_quotes(os.getenv("DATABASE_URL", "sqlite:///./newsletter.db"))

        # Email provider
        self.email_provider = os.getenv("EMAIL_PROVIDER", "resend").lower()
        self.resend_api_key = os.getenv("RESEND_API_KEY")
        self.resend_api_url = os.getenv("RESEND_API_URL", "https://api.resend.com")
        self.sender_email = os.getenv("SENDER_EMAIL", "newsletter@example.com")
        self.sender_name = os.getenv("SENDER_NAME", "Newsletter")
        self.smtp_server = os.getenv("SMTP_SERVER", "smtp.gmail.com")
        self.smtp_port = int(os.getenv("SMTP_PORT", "587"))
        self.smtp_username = os.getenv("SMTP_USERNAME")
        self.smtp_password = os.getenv("SMTP_PASSWORD")
        self.verify_ssl = os.getenv("VERIFY_SSL", "True").lower() == "true"
        self.email_send_timeout_seconds = float(os.getenv("EMAIL_SEND_TIMEOUT_SECONDS", "10"))

        # Site used for unsubscribe links and the newsletter footer
        self.site_url = os.getenv("SITE_URL", "http://localhost:8000").rstrip("/")
        self.site_name = os.getenv("SITE_NAME", "Newsletter")

        # Scheduler
        self.scheduler_batch_limit = int(os.getenv("SCHEDULER_BATCH_LIMIT", "50"))
        self.ab_rollout_max_attempts = int(os.getenv("AB_ROLLOUT_MAX_ATTEMPTS", "3"))

        # Trigger endpoints
        self.admin_api_key = os.getenv("ADMIN_API_KEY")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    def __repr__(self):
        return f"<Settings(database_url='{self.database_url}', email_provider='{self.email_provider}')>"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
