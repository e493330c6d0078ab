# -*- coding: utf-8 -*-
"""
Quote providers.

US equities come from the FMP stable API (or yfinance when no FMP key is
configured); Taiwan equities come from the TWSE OpenAPI daily dump, with
yfinance as a fallback for codes the dump does not list (e.g. OTC shares).
"""

from __future__ import annotations

import logging
import math
import os
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional

import pandas as pd
import requests
import yfinance as yf

import cache
import config
from models import Quote

logger = logging.getLogger(__name__)

# Silence noisy yfinance messages like "possibly delisted"
logging.getLogger("yfinance").setLevel(logging.ERROR)

_US_SYMBOL_RE = re.compile(r"^[A-Z]{1,5}$")
_TW_SYMBOL_RE = re.compile(r"^\d{4,6}$")


class QuoteProviderError(Exception):
    """Raised when an upstream quote provider fails or returns garbage."""


class QuoteRequestError(Exception):
    """Raised when a quote request is malformed (maps to HTTP 400)."""


def is_valid_us_symbol(symbol: str) -> bool:
    # 美股代碼通常為 1-5 個英文字母
    return bool(_US_SYMBOL_RE.match(symbol.upper()))


def is_valid_tw_symbol(symbol: str) -> bool:
    # 台股代碼為 4-6 位數字
    return bool(_TW_SYMBOL_RE.match(symbol))


# ============== yfinance ==============
def cached_history(symbol, *, period="7d", ttl=config.TTL_FAST) -> pd.DataFrame:
    key = ("history", symbol, period)
    data = cache.get_fresh(key, ttl)
    if data is not None:
        return data
    try:
        df = yf.Ticker(symbol).history(period=period)
    except Exception as e:
        logger.warning("yfinance history failed for %s: %s", symbol, e)
        stale = cache.get_stale(key)
        return stale if stale is not None else pd.DataFrame()
    cache.set_entry(key, df)
    return df


def _closes(symbol, ttl=config.TTL_FAST) -> pd.Series:
    # Try short period first, then fall back to a longer history.
    for period, t in (("7d", ttl), ("1mo", max(ttl, config.TWSE_CACHE_TTL))):
        df = cached_history(symbol, period=period, ttl=t)
        if not df.empty and "Close" in df:
            close = df["Close"].dropna()
            if not close.empty:
                return close
    return pd.Series(dtype=float)


def cached_close(symbol, ttl=config.TTL_FAST) -> Optional[float]:
    """Latest close for ``symbol``, or None when yfinance has nothing."""
    close = _closes(symbol, ttl)
    if close.empty:
        return None
    return float(close.iloc[-1])


def _yfinance_quote(ticker: str, symbol: str, market: str, currency: str) -> Optional[Quote]:
    close = _closes(ticker)
    if close.empty:
        return None
    price = float(close.iloc[-1])
    if price <= 0:
        return None
    change = None
    changes_percentage = None
    if len(close) > 1:
        previous = float(close.iloc[-2])
        change = price - previous
        changes_percentage = (change / previous * 100) if previous else 0.0
    return Quote(
        symbol=symbol,
        name=symbol,
        price=price,
        market=market,
        currency=currency,
        change=change,
        changes_percentage=changes_percentage,
    )


def fetch_us_quotes_yfinance(symbols: List[str]) -> List[Quote]:
    quotes = []
    for symbol in symbols[: config.MAX_SYMBOLS_PER_REQUEST]:
        quote = _yfinance_quote(symbol, symbol, "US", "USD")
        if quote is not None:
            quotes.append(quote)
    return quotes


def fetch_tw_quotes_yfinance(symbols: Iterable[str]) -> List[Quote]:
    quotes = []
    for symbol in symbols:
        for ticker in (f"{symbol}.TWO", f"{symbol}.TW"):
            quote = _yfinance_quote(ticker, symbol, "TW", "TWD")
            if quote is not None:
                quotes.append(quote)
                break
    return quotes


# ============== FMP (US) ==============
def fetch_us_quotes(symbols: List[str], api_key: Optional[str] = None) -> List[Quote]:
    """Batch-quote US symbols; at most 50 are sent in one request."""
    if not symbols:
        return []

    api_key = api_key or os.environ.get("FMP_API_KEY")
    if not api_key:
        logger.warning("FMP_API_KEY not set, using yfinance for US quotes")
        return fetch_us_quotes_yfinance(symbols)

    limited = symbols[: config.MAX_SYMBOLS_PER_REQUEST]
    url = f"{config.FMP_BASE_URL}/batch-quote"
    params = {"symbols": ",".join(limited), "apikey": api_key}

    logger.info("Fetching %d US quotes from FMP", len(limited))
    try:
        response = requests.get(
            url,
            params=params,
            headers={"Content-Type": "application/json"},
            timeout=config.FMP_TIMEOUT,
        )
    except requests.exceptions.Timeout as e:
        raise QuoteProviderError(f"獲取報價失敗: FMP 請求逾時 ({config.FMP_TIMEOUT}s)") from e
    except requests.exceptions.RequestException as e:
        raise QuoteProviderError(f"獲取報價失敗: {e}") from e

    if not response.ok:
        raise QuoteProviderError(
            f"獲取報價失敗: FMP API 錯誤: {response.status_code} - {response.text[:200]}"
        )

    try:
        data = response.json()
    except ValueError as e:
        raise QuoteProviderError(f"獲取報價失敗: 無法解析 FMP 回應: {e}") from e
    if not isinstance(data, list):
        raise QuoteProviderError(f"獲取報價失敗: FMP 回應格式錯誤: {str(data)[:200]}")

    try:
        return [
            Quote(
                symbol=item["symbol"],
                name=item.get("name") or item["symbol"],
                price=float(item["price"]),
                market="US",
                currency="USD",
                changes_percentage=item.get("changesPercentage"),
                change=item.get("change"),
                market_cap=item.get("marketCap"),
            )
            for item in data
            if item.get("symbol") and item.get("price") is not None
        ]
    except (AttributeError, TypeError, ValueError) as e:
        raise QuoteProviderError(f"獲取報價失敗: FMP 回應格式錯誤: {e}") from e


# ============== TWSE (TW) ==============
def _parse_number(value) -> Optional[float]:
    try:
        return float(str(value).replace(",", ""))
    except (TypeError, ValueError):
        return None


def _load_twse_dump() -> List[Dict]:
    key = ("twse", "STOCK_DAY_ALL")
    data = cache.get_fresh(key, config.TWSE_CACHE_TTL)
    if data is not None:
        return data

    logger.info("Downloading TWSE STOCK_DAY_ALL")
    try:
        response = requests.get(
            config.TWSE_API_URL,
            headers={"Accept": "application/json"},
            timeout=config.TWSE_TIMEOUT,
        )
    except requests.exceptions.RequestException as e:
        raise QuoteProviderError(f"獲取台股報價失敗: {e}") from e

    if not response.ok:
        raise QuoteProviderError(f"獲取台股報價失敗: TWSE API 錯誤: {response.status_code}")
    try:
        data = response.json()
    except ValueError as e:
        raise QuoteProviderError(f"獲取台股報價失敗: 無法解析 TWSE 回應: {e}") from e
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise QuoteProviderError("獲取台股報價失敗: TWSE 回應格式錯誤")

    cache.set_entry(key, data)
    return data


def fetch_tw_quotes(symbols: List[str], yfinance_fallback: Optional[bool] = None) -> List[Quote]:
    if not symbols:
        return []
    if yfinance_fallback is None:
        yfinance_fallback = config.env_flag("TW_YFINANCE_FALLBACK", True)

    wanted = {s.upper() for s in symbols}
    quotes = []
    for item in _load_twse_dump():
        code = item.get("Code")
        if code not in wanted:
            continue
        price = _parse_number(item.get("ClosingPrice"))
        # 跳過無效價格（停牌等）
        if price is None or math.isnan(price) or price <= 0:
            continue
        change = _parse_number(item.get("Change")) or 0.0
        base = price - change
        changes_percentage = change / base * 100 if base else 0.0
        quotes.append(
            Quote(
                symbol=code,
                name=item.get("Name") or code,
                price=price,
                market="TW",
                currency="TWD",
                change=change,
                changes_percentage=changes_percentage,
            )
        )

    missing = sorted(wanted - {q.symbol for q in quotes})
    if missing and yfinance_fallback:
        logger.info("TWSE has no price for %s, trying yfinance", ", ".join(missing))
        quotes.extend(fetch_tw_quotes_yfinance(missing))
    return quotes


def clear_twse_cache() -> None:
    cache.clear("twse")


# ============== Request handling ==============
def _clean_us(symbols: Iterable[str]) -> List[str]:
    cleaned = (s.strip().upper() for s in symbols if isinstance(s, str))
    return [s for s in cleaned if is_valid_us_symbol(s)]


def _clean_tw(symbols: Iterable[str]) -> List[str]:
    cleaned = (s.strip() for s in symbols if isinstance(s, str))
    return [s for s in cleaned if is_valid_tw_symbol(s)]


def get_quotes(
    symbols: Optional[List[str]] = None,
    market: str = "US",
    us_symbols: Optional[List[str]] = None,
    tw_symbols: Optional[List[str]] = None,
) -> List[Quote]:
    """Resolve a quotes request for a single market or a mixed account.

    Mixed requests fetch both markets in parallel and return US quotes first.
    """
    if market == "MIXED":
        us_clean = _clean_us(us_symbols or [])
        tw_clean = _clean_tw(tw_symbols or [])
        if len(us_clean) + len(tw_clean) > config.MAX_SYMBOLS_PER_REQUEST:
            raise QuoteRequestError(f"單次請求最多 {config.MAX_SYMBOLS_PER_REQUEST} 個股票代碼")

        with ThreadPoolExecutor(max_workers=2) as pool:
            us_future = pool.submit(fetch_us_quotes, us_clean) if us_clean else None
            tw_future = pool.submit(fetch_tw_quotes, tw_clean) if tw_clean else None
            us_quotes = us_future.result() if us_future else []
            tw_quotes = tw_future.result() if tw_future else []
        return us_quotes + tw_quotes

    if not isinstance(symbols, list):
        raise QuoteRequestError("請提供有效的股票代碼陣列")
    if not symbols:
        return []
    if len(symbols) > config.MAX_SYMBOLS_PER_REQUEST:
        raise QuoteRequestError(f"單次請求最多 {config.MAX_SYMBOLS_PER_REQUEST} 個股票代碼")

    cleaned = _clean_tw(symbols) if market == "TW" else _clean_us(symbols)
    if not cleaned:
        raise QuoteRequestError("沒有有效的股票代碼")

    if market == "TW":
        return fetch_tw_quotes(cleaned)
    return fetch_us_quotes(cleaned)
