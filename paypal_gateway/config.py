from typing import Optional
from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict

PAYPAL_BASE_URLS = {
    "sandbox": "https://api.sandbox.paypal.com",
    "production": "https://api.paypal.com",
}


class ProcessorConfig(BaseModel):
    """Immutable settings handed to the token cache, client and manager."""
    model_config = ConfigDict(frozen=True)

    mode: str = "sandbox"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    return_url: str
    cancel_url: str
    brand_name: str = "Your Company Name"
    currency: str = "USD"
    timeout: float = 10.0

    @property
    def base_url(self) -> str:
        return PAYPAL_BASE_URLS["production" if self.mode == "production" else "sandbox"]


class Settings(BaseSettings):
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    env: str = "development"
    log_level: str = "INFO"

    paypal_mode: str = "sandbox"
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_brand_name: str = "Your Company Name"
    paypal_currency: str = "USD"
    paypal_timeout: float = 10.0

    callback_base_url: str = "http://localhost:8000/api/v1/payments/callback"

    store_backend: str = "memory"  # memory, sql
    database_url: str = "sqlite+aiosqlite:///./payments.db"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def development(self) -> bool:
        """Whether responses may carry PayPal payloads and error diagnostics."""
        return self.env == "development"

    def processor_config(self) -> ProcessorConfig:
        callback = self.callback_base_url.rstrip("/")
        return ProcessorConfig(
            mode=self.paypal_mode,
            client_id=self.paypal_client_id,
            client_secret=self.paypal_client_secret,
            return_url=callback,
            cancel_url=f"{callback}/cancel",
            brand_name=self.paypal_brand_name,
            currency=self.paypal_currency,
            timeout=self.paypal_timeout,
        )


settings = Settings()
