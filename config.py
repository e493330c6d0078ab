# -*- coding: utf-8 -*-
"""
Settings for the portfolio helper.

Constants live at module level; anything deployment-specific is read from the
environment (a local .env file is loaded first).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_PATH = Path(__file__).parent
DEFAULT_DATA_PATH = BASE_PATH / "data" / "portfolio_profiles_v1.json"

# ============== Providers ==============
FMP_BASE_URL = "https://financialmodelingprep.com/stable"
TWSE_API_URL = "https://openapi.twse.com.tw/v1/exchangeReport/STOCK_DAY_ALL"
EXCHANGE_RATE_API = "https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api@latest/v1/currencies/usd.json"

FMP_TIMEOUT = 10
TWSE_TIMEOUT = 15
EXCHANGE_RATE_TIMEOUT = 10

# ============== Cache TTLs (seconds) ==============
TTL_FAST = 60
TWSE_CACHE_TTL = 300
EXCHANGE_RATE_TTL = 3600
PRICE_CACHE_TTL = 300

# ============== Limits ==============
MAX_SYMBOLS_PER_REQUEST = 50
MAX_ADVICE_HOLDINGS = 20
DEFAULT_USD_TWD_RATE = 32.0

DEFAULT_AZURE_API_VERSION = "2024-06-01"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"

TIMEZONE = "Asia/Taipei"


def env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "on", "yes")


@dataclass(frozen=True)
class Settings:
    data_path: Path
    port: int
    log_level: str
    trust_proxy: bool

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            data_path=Path(os.environ.get("PORTFOLIO_DATA_PATH", DEFAULT_DATA_PATH)),
            port=int(os.environ.get("PORT", 5000)),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            trust_proxy=env_flag("TRUST_PROXY", True),
        )
