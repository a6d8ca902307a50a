import os
from dataclasses import dataclass
from typing import Optional


# ----------------------------
# Config & Constants
# ----------------------------
DEFAULT_DATABASE_URL = "sqlite:///./boxoffice.db"
RESERVATION_TTL_SECONDS = 15 * 60


@dataclass
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"
    # shared secret of the webhook signature (MockPay)
    mock_secret: str = "supersecret"
    mock_webhook_url: str = "http://localhost:8000/payments/webhook"
    reservation_ttl_seconds: int = RESERVATION_TTL_SECONDS
    # 0 disables the background reservation sweeper
    sweep_interval_seconds: int = 60
    currency: str = "cad"
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            database_url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            session_secret=env.get("SESSION_SECRET", cls.session_secret),
            admin_username=env.get("ADMIN_USERNAME", cls.admin_username),
            admin_password=env.get("ADMIN_PASSWORD", cls.admin_password),
            mock_secret=env.get("MOCK_SECRET", cls.mock_secret),
            mock_webhook_url=env.get(
                "MOCK_WEBHOOK_URL", cls.mock_webhook_url
            ),
            reservation_ttl_seconds=int(env.get(
                "RESERVATION_TTL_SECONDS", RESERVATION_TTL_SECONDS
            )),
            sweep_interval_seconds=int(env.get(
                "SWEEP_INTERVAL_SECONDS", cls.sweep_interval_seconds
            )),
            currency=env.get("CURRENCY", cls.currency).lower(),
            log_level=env.get("LOG_LEVEL", cls.log_level),
            log_dir=env.get("LOG_DIR") or None,
        )
