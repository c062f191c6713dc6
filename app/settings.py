from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    app_env: str = "dev"
    port: int = 4000

    # Mongo
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "pricesync"
    # seconds a single read or batch write may take before it is abandoned
    store_timeout: float = 30.0

    # Angel One / SmartAPI
    angel_api_key: str | None = None
    angel_client_id: str | None = None
    angel_password: str | None = None
    # base32 secret behind the authenticator app; enables unattended logins
    angel_totp_secret: str | None = None
    smartapi_timeout: float = 20.0

    # quote fetch: provider accepts at most 50 tokens per request, one exchange per request
    quote_chunk_size: int = 50
    quote_concurrency: int = 5

    # writes
    quote_batch_size: int = 500
    catalog_batch_size: int = 2000
    write_mode: Literal["bulk", "per_row"] = "bulk"

    # manual triggers: wait for the cycle, or enqueue it and acknowledge
    sync_trigger_mode: Literal["wait", "background"] = "wait"
    refresh_mode: Literal["sync", "background"] = "sync"

    # instrument master
    master_url: str = "https://margincalculator.angelbroking.com/OpenAPI_File/files/OpenAPIScripMaster.json"
    master_timeout: float = 60.0

    # monitoring backend that receives login / sync status pings
    portfolio_backend_url: str | None = None
    notify_timeout: float = 10.0

    frontend_url: str = "http://localhost:3000"
    scheduler_enabled: bool = True

    # IMPORTANT: ignore extra keys in .env to avoid crashes
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

settings = Settings()
