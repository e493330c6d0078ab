# -*- coding: utf-8 -*-
"""USD/TWD exchange rate with an hourly cache and layered fallbacks."""

from __future__ import annotations

import logging

import requests

import cache
import config
from market_data import cached_close

logger = logging.getLogger(__name__)

_CACHE_KEY = ("fx", "USDTWD")


def _fetch_rate() -> float:
    response = requests.get(config.EXCHANGE_RATE_API, timeout=config.EXCHANGE_RATE_TIMEOUT)
    if not response.ok:
        raise ValueError(f"匯率 API 錯誤: {response.status_code}")
    data = response.json()
    usd = data.get("usd") if isinstance(data, dict) else None
    if not isinstance(usd, dict):
        raise ValueError("無法解析匯率資料")
    rate = usd.get("twd")
    # bool is an int subclass
    if isinstance(rate, bool) or not isinstance(rate, (int, float)) or rate <= 0:
        raise ValueError("無法解析匯率資料")
    return float(rate)


def get_usd_twd_rate() -> float:
    """Return the USD/TWD rate. Never raises.

    Order of preference: cached rate younger than an hour, the currency API,
    the last cached rate, yfinance ``USDTWD=X``, and finally 32.0.
    """
    rate = cache.get_fresh(_CACHE_KEY, config.EXCHANGE_RATE_TTL)
    if rate is not None:
        return rate

    try:
        rate = _fetch_rate()
    except (requests.exceptions.RequestException, ValueError) as e:
        logger.warning("Exchange rate API failed: %s", e)
    else:
        cache.set_entry(_CACHE_KEY, rate)
        return rate

    stale = cache.get_stale(_CACHE_KEY)
    if stale is not None:
        logger.warning("使用快取的匯率資料 %.4f", stale)
        return stale

    for pair in ("USDTWD=X", "TWD=X"):
        rate = cached_close(pair, ttl=config.EXCHANGE_RATE_TTL)
        if rate:
            logger.warning("使用 yfinance 匯率 %s %.4f", pair, rate)
            cache.set_entry(_CACHE_KEY, rate)
            return rate

    logger.warning("使用預設匯率 %.1f", config.DEFAULT_USD_TWD_RATE)
    return config.DEFAULT_USD_TWD_RATE


def convert_currency(amount: float, from_currency: str, to_currency: str, usd_twd_rate: float) -> float:
    if from_currency == to_currency:
        return amount
    if from_currency == "USD" and to_currency == "TWD":
        return amount * usd_twd_rate
    if from_currency == "TWD" and to_currency == "USD":
        return amount / usd_twd_rate
    return amount


def clear_exchange_rate_cache() -> None:
    cache.clear("fx")
