from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # AMG / openIMIS upstream
    amg_base_url: str = "https://test.amg.km"
    amg_api_username: str = ""
    amg_api_password: str = ""
    amg_timeout_seconds: float = 30.0

    # Environment guard: comma-separated product match tokens ("*" or "ANY" disables it)
    amg_test_policy_match: str = "TEST"

    # HOLO mobile-money gateway
    holo_mode: str = "test"            # "production" returns real gateway form params
    holo_payment_url: str = ""
    holo_merchant_id: str = ""
    holo_currency: str = "KMF"
    frontend_base_url: str = "http://localhost:8080"

    # Local contract cache
    contract_sync_enabled: bool = False
    contract_sync_interval_minutes: int = 60
    contract_sync_max_pages: int = 10
    contract_sync_page_size: int = 1000

    # Server
    port: int = 3001
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
