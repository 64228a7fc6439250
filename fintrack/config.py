from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./fintrack.db"
    secret_key: str = "change-me"
    algorithm: str = "HS256"
    log_level: str = "INFO"

    # TrueLayer aggregator settings
    truelayer_client_id: str = ""
    truelayer_client_secret: str = ""
    truelayer_redirect_uri: str = "http://localhost:3000/connections/callback"
    truelayer_auth_url: str = "https://auth.truelayer.com"
    truelayer_api_url: str = "https://api.truelayer.com"
    provider_timeout_seconds: float = 30.0

    # Default transaction window for a connection sync
    sync_default_days: int = 90

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()
