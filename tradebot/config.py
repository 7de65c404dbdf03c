"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./tradebot.db"
    encryption_key: str = ""  # Fernet key; generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]

    # Control plane; empty token leaves the bot endpoints open
    api_token: str = ""

    # Tick loop
    tick_interval_ms: int = 60_000
    autostart: bool = False
    instrument_timeout_seconds: float = 120.0

    # Exchange
    binance_testnet: bool = True
    binance_api_key: str = ""
    binance_api_secret: str = ""
    exchange_timeout_seconds: float = 15.0
    dry_run: bool = True  # log orders instead of sending them

    # AI providers
    ai_timeout_seconds: float = 30.0
    ai_system_message: str = (
        "You are an expert trading assistant. Answer strictly in the requested format."
    )
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_http_referer: str = "http://localhost"
    openrouter_title: str = "tradebot"
    ollama_base_url: str = "http://localhost:11434"

    model_config = {"env_prefix": "TB_", "env_file": ".env"}


settings = Settings()
