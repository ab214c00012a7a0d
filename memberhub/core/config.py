import logging

from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s : %(levelname)s - %(message)s"


class Settings(BaseSettings):
    # App Basics
    app_env: str = "dev"
    app_name: str = "Memberhub Admin"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "info"

    # Database
    database_url: str = "sqlite:///./dev.db"
    db_echo: bool = False

    # JWT
    jwt_secret: str = "secret_key"
    jwt_alg: str = "HS256"
    jwt_access_ttl_min: int = 60

    # Mercado Pago
    mp_access_token: str = ""
    mp_webhook_secret: str = ""
    mp_webhook_url: str = ""
    app_base_url: str = "http://localhost:8000"
    currency: str = "INR"
    payment_link_expiry_days: int = 7

    # WhatsApp notifications (empty token -> log only)
    whatsapp_api_url: str = ""
    whatsapp_token: str = ""

    # Tell pydantic to read from .env file
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",
        extra="ignore",
    )


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    """Attach a single stream handler to the root logger."""
    root_logger = logging.getLogger()
    root_logger.setLevel((level or settings.log_level).upper())

    if not any(getattr(h, "_memberhub", False) for h in root_logger.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        stream_handler._memberhub = True
        root_logger.addHandler(stream_handler)
