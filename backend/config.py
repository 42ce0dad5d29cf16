from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str
    secret_key: str
    algorithm: str = "HS256"

    log_level: str = "INFO"
    frontend_url: str = "http://localhost:3000"
    http_timeout_seconds: float = 30.0

    # GoCardless Bank Account Data
    gocardless_secret_id: str = ""
    gocardless_secret_key: str = ""
    gocardless_api_base_url: str = "https://bankaccountdata.gocardless.com/api/v2"
    gocardless_default_currency: str = "EUR"
    gocardless_user_language: str = "EN"

    # Plaid
    plaid_client_id: str = ""
    plaid_secret: str = ""
    plaid_api_base_url: str = "https://sandbox.plaid.com"
    plaid_default_currency: str = "USD"
    plaid_client_name: str = "Family Finance"

    # Scheduled sync
    scheduler_enabled: bool = False
    balance_sync_cron: str = "0 6 * * *"
    transaction_import_cron: str = "0 7 * * *"
    scheduled_import_days: int = 7

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()
