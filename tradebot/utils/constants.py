"""Shared constants and defaults."""

VALID_INTERVALS = [
    "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "6h", "8h", "12h",
    "1d", "3d", "1w", "1M",
]

# Decisions the AI may return
ACTIONABLE_DECISIONS = ("BUY", "SELL")
VALID_DECISIONS = ("BUY", "SELL", "HOLD", "NO_ACTION")

ORDER_TYPES = ("MARKET", "LIMIT", "STOP_LOSS_LIMIT")

# Provider order is fixed; the settings table only toggles members on and off
PROVIDER_ORDER = ("openai", "openrouter", "ollama")

# Setting keys and their defaults when the row is absent
SETTING_DEFAULTS: dict[str, str] = {
    "OPENAI_ENABLED": "true",
    "OPENROUTER_ENABLED": "false",
    "OLLAMA_ENABLED": "true",
    "OPENAI_DEFAULT_MODEL": "gpt-3.5-turbo",
    "OPENROUTER_DEFAULT_MODEL": "mistralai/mistral-7b-instruct",
    "OLLAMA_DEFAULT_MODEL": "gemma:2b",
}

TRUTHY = {"1", "true", "yes", "on"}
