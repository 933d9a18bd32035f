import json
import logging
import os
from typing import Dict, Mapping, Optional
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

PARAMS_ENV = "CHESS_WAGER_PARAMS"

class Settings(BaseModel):
    # Ledger
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    wallet_address: str = "" # Receive-only deposit wallet when no key is set
    wallet_private_key: str = Field(default="", repr=False) # base58 secret key
    token_mint: str = "BY31GbusfpHcG8idNvP5osfndSECCPrp6BxCr9Z5pump"
    token_symbol: str = "$GGFUN"
    token_decimals: int = 6
    token_2022: bool = True
    ledger_timeout_seconds: float = 20.0
    strict_payment_verification: bool = False

    # Economics
    commission_rate: float = 0.10
    default_entry_fee_usd: float = 5.0
    game_time_ms: int = 10 * 60 * 1000

    # Price oracle
    price_api_url: str = "https://api.dexscreener.com/latest/dex/tokens/{mint}"
    price_cache_seconds: float = 30.0
    fallback_price_usd: float = 0.0001
    oracle_timeout_seconds: float = 5.0

    # Registry housekeeping
    finished_retention_seconds: int = 10 * 60
    waiting_idle_seconds: int = 30 * 60
    sweep_interval_seconds: float = 5 * 60
    clock_sweep_enabled: bool = True

    # Persistence (empty disables it)
    database_url: str = "sqlite:///chess_wager.db"

    # Service
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @field_validator('commission_rate')
    def check_commission(cls, v):
        if not 0 <= v < 1:
            raise ValueError('commission_rate must be in [0, 1)')
        return v

    @field_validator('token_decimals')
    def check_decimals(cls, v):
        if v < 0:
            raise ValueError('token_decimals must be >= 0')
        return v

    @field_validator('game_time_ms')
    def check_game_time(cls, v):
        if v <= 0:
            raise ValueError('game_time_ms must be positive')
        return v

# Environment variable -> settings field
ENV_VARS: Dict[str, str] = {
    "SOLANA_RPC": "rpc_url",
    "WALLET_ADDRESS": "wallet_address",
    "WALLET_PRIVATE_KEY": "wallet_private_key",
    "TOKEN_MINT": "token_mint",
    "TOKEN_SYMBOL": "token_symbol",
    "TOKEN_DECIMALS": "token_decimals",
    "TOKEN_2022": "token_2022",
    "LEDGER_TIMEOUT_SECONDS": "ledger_timeout_seconds",
    "STRICT_PAYMENT_VERIFICATION": "strict_payment_verification",
    "COMMISSION_RATE": "commission_rate",
    "DEFAULT_ENTRY_FEE_USD": "default_entry_fee_usd",
    "GAME_TIME_MS": "game_time_ms",
    "PRICE_API_URL": "price_api_url",
    "PRICE_CACHE_SECONDS": "price_cache_seconds",
    "FALLBACK_PRICE_USD": "fallback_price_usd",
    "ORACLE_TIMEOUT_SECONDS": "oracle_timeout_seconds",
    "FINISHED_RETENTION_SECONDS": "finished_retention_seconds",
    "WAITING_IDLE_SECONDS": "waiting_idle_seconds",
    "SWEEP_INTERVAL_SECONDS": "sweep_interval_seconds",
    "CLOCK_SWEEP_ENABLED": "clock_sweep_enabled",
    "DATABASE_URL": "database_url",
    "HOST": "host",
    "PORT": "port",
    "LOG_LEVEL": "log_level",
    "LOG_FILE": "log_file",
}

def load_params_file(path: str) -> dict:
    """Loads a JSON parameters file (same keys as Settings)."""
    with open(path, 'r') as f:
        return json.load(f)

def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Builds Settings from, in increasing priority:
    defaults, the JSON file named by CHESS_WAGER_PARAMS, environment variables.
    """
    env = os.environ if env is None else env
    values: dict = {}

    params_path = env.get(PARAMS_ENV)
    if params_path:
        try:
            values.update(load_params_file(params_path))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load parameters file {params_path}: {e}")

    for var, field in ENV_VARS.items():
        raw = env.get(var)
        if raw is not None and raw != "":
            values[field] = raw

    return Settings(**values)
