from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_host: str = "0.0.0.0"
    app_port: int = 8000
    env: str = "development"

    database_url: str = "sqlite+aiosqlite:///./payments.db"

    pesapal_env: str = "sandbox"  # sandbox | production
    pesapal_consumer_key: str = ""
    pesapal_consumer_secret: str = ""
    # checkout signs metadata with this; falls back to the consumer secret
    payment_signing_secret: Optional[str] = None

    service_api_key: str = ""
    admin_api_key: str = ""

    gateway_timeout: float = 15.0
    token_refresh_margin: int = 60
    amount_tolerance: float = 0.01

    @property
    def signing_secret(self) -> str:
        return self.payment_signing_secret or self.pesapal_consumer_secret

settings = Settings()
