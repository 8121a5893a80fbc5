from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_STORE_API_KEY = "order-ledger-dev-key"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="OL_", extra="ignore")

    app_name: str = "Order Ledger"
    env: str = "dev"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    database_url: str = "sqlite+pysqlite:///./orders.db"

    # Order store backend: sql | http
    order_store_backend: str = "sql"
    store_base_url: str = "http://localhost:3000"
    store_api_key: str = DEFAULT_STORE_API_KEY
    store_timeout_seconds: int = 15

    sync_page_size: int = Field(default=200, ge=1, le=200, description="records per store page")
    sync_max_records: int = Field(default=5000, ge=1, description="safety cap for one full reload")
    sync_on_startup: bool = False

    admin_page_size: int = 12
    client_page_size: int = 25

    refund_epsilon: float = 0.0001
    search_threshold: float = Field(default=0.4, ge=0.0, le=1.0)

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return
        if self.order_store_backend == "http" and self.store_api_key == DEFAULT_STORE_API_KEY:
            raise ValueError("insecure default store api key is not allowed outside dev mode; set OL_STORE_API_KEY")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
