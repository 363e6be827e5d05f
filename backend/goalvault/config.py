from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Goal Vault API"
    database_url: str = ""
    # Comma-separated origins for CORS. Use "*" only for local/demo environments.
    cors_allow_origins: str = "*"
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    log_level: str = "INFO"

    # Ledger (vault contract) access over JSON-RPC.
    ledger_rpc_url: str = "http://localhost:8545"
    vault_contract_address: str = "0xc6D53C124DA6CF312c04Fc6B1ac38d346EEF3148"
    ledger_sender_address: str = ""
    ledger_poll_interval_seconds: float = 2.0
    # Route AmountTarget goals through createGoalLegacy instead of createGoal.
    legacy_amount_goal_creation: bool = False

    # Price provider; CoinGecko v3 compatible.
    price_api_base: str = "https://api.coingecko.com/api/v3"
    price_asset_id: str = "ethereum"
    price_refresh_seconds: int = 30
    sentiment_refresh_seconds: int = 300
    price_cache_ttl_seconds: int = 300
    sentiment_cache_ttl_seconds: int = 1800
    price_timeout_seconds: float = 5.0
    sentiment_timeout_seconds: float = 8.0

    store_timeout_seconds: float = 5.0
    reconciliation_sweep_seconds: int = 60

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
