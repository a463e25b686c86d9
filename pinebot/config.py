"""PineBot — application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv


_REQUIRED_VARS = [
    "DB_PATH",
]

DEFAULT_MARKET_DATA_HOSTS = (
    "https://api.binance.com/api/v3",
    "https://api.binance.us/api/v3",
    "https://api1.binance.com/api/v3",
    "https://api2.binance.com/api/v3",
    "https://api3.binance.com/api/v3",
)


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    db_path: str
    log_level: str
    api_port: int
    market_data_hosts: tuple[str, ...]
    exchange_base_url: str
    candle_limit: int
    sweep_interval_seconds: int
    http_timeout_seconds: float
    order_timeout_seconds: float
    order_quote_amount: float
    max_concurrent_tuples: int
    strategy_cache_size: int
    default_user_coins: int


def _int_var(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float_var(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _hosts_var(name: str) -> tuple[str, ...]:
    raw = os.environ.get(name, "")
    hosts = tuple(h.strip().rstrip("/") for h in raw.split(",") if h.strip())
    return hosts or DEFAULT_MARKET_DATA_HOSTS


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent, or naming the malformed variable when a
    numeric value does not parse.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    return Config(
        db_path=os.environ["DB_PATH"],
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        api_port=_int_var("API_PORT", "8080"),
        market_data_hosts=_hosts_var("MARKET_DATA_HOSTS"),
        exchange_base_url=os.environ.get(
            "EXCHANGE_BASE_URL", "https://api.binance.com"
        ).rstrip("/"),
        candle_limit=_int_var("CANDLE_LIMIT", "200"),
        sweep_interval_seconds=_int_var("SWEEP_INTERVAL_SECONDS", "60"),
        http_timeout_seconds=_float_var("HTTP_TIMEOUT_SECONDS", "10"),
        order_timeout_seconds=_float_var("ORDER_TIMEOUT_SECONDS", "15"),
        order_quote_amount=_float_var("ORDER_QUOTE_AMOUNT", "10"),
        max_concurrent_tuples=_int_var("MAX_CONCURRENT_TUPLES", "8"),
        strategy_cache_size=_int_var("STRATEGY_CACHE_SIZE", "256"),
        default_user_coins=_int_var("DEFAULT_USER_COINS", "5"),
    )
