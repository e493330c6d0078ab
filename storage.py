# -*- coding: utf-8 -*-
"""
Profile persistence: one JSON blob on disk holding every profile, the active
profile id and the last-known price of each symbol.
"""

from __future__ import annotations

import json
import logging
import math
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, Optional, Union

import config
from models import (
    CURRENCIES,
    HOLDING_MARKETS,
    MARKETS,
    RISK_LEVELS,
    Holding,
    Profile,
    StoredData,
)

logger = logging.getLogger(__name__)

_DEFAULT_NAMES = {"MIXED": "混合帳戶", "TW": "台股主帳戶", "US": "美股主帳戶"}


class StorageError(Exception):
    """Raised when a requested change would leave the store invalid."""


class NotFoundError(StorageError):
    """Raised for unknown profile or holding ids."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _require_positive(value, message: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise StorageError(message) from e
    if not math.isfinite(number) or number <= 0:
        raise StorageError(message)
    return number


def default_base_currency(market: str) -> str:
    # MIXED 和 US 都預設使用 USD
    return "TWD" if market == "TW" else "USD"


def create_default_profile(market: str = "MIXED", name: Optional[str] = None) -> Profile:
    return Profile(
        id=str(uuid.uuid4()),
        name=name or _DEFAULT_NAMES.get(market, _DEFAULT_NAMES["US"]),
        risk_level="balanced",
        market=market,
        base_currency=default_base_currency(market),
        holdings=[],
    )


def migrate_profile(profile: Profile) -> Profile:
    """補上舊版資料缺少的 market 與 baseCurrency"""
    if not profile.market:
        profile.market = "US"
    if not profile.base_currency:
        profile.base_currency = default_base_currency(profile.market)
    return profile


def create_default_stored_data() -> StoredData:
    profile = create_default_profile()
    return StoredData(profiles=[profile], active_profile_id=profile.id, price_cache={})


class ProfileStore:
    """JSON-file backed store. Every operation is load → mutate → save."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.RLock()

    # ---------- raw blob ----------
    def load(self) -> StoredData:
        with self._lock:
            if not self.path.exists():
                data = create_default_stored_data()
                self.save(data)
                return data

            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
                data = StoredData.from_dict(raw)
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                logger.error("讀取儲存資料失敗 (%s): %s", self.path, e)
                return self._recover(create_default_stored_data())

            if not data.profiles:
                data = create_default_stored_data()
                self.save(data)
                return data

            data.profiles = [migrate_profile(p) for p in data.profiles]
            if data.active_profile is None:
                data.active_profile_id = data.profiles[0].id

            self.save(data)
            return data

    def _recover(self, data: StoredData) -> StoredData:
        """Set the unreadable file aside as ``*.corrupt`` and persist ``data`` in its place."""
        corrupt_path = self.path.with_suffix(self.path.suffix + ".corrupt")
        try:
            os.replace(self.path, corrupt_path)
            logger.warning("已將無法讀取的資料移至 %s", corrupt_path)
        except OSError as e:
            logger.error("無法搬移損壞的資料檔 (%s): %s", self.path, e)
        self.save(data)
        return data

    def save(self, data: StoredData) -> None:
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
                tmp_path.write_text(json.dumps(data.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
                os.replace(tmp_path, self.path)
            except OSError as e:
                logger.error("儲存資料失敗 (%s): %s", self.path, e)

    # ---------- price cache ----------
    def update_price_cache(self, price_map: Dict[str, float]) -> None:
        with self._lock:
            data = self.load()
            timestamp = _now_ms()
            for symbol, price in price_map.items():
                data.price_cache[symbol] = {"price": price, "timestamp": timestamp}
            self.save(data)

    def get_price_cached(self, symbol: str, max_age: float = config.PRICE_CACHE_TTL) -> Optional[float]:
        """Cached price if it is younger than ``max_age`` seconds."""
        cached = self.load().price_cache.get(symbol)
        if not cached:
            return None
        if _now_ms() - cached["timestamp"] > max_age * 1000:
            return None
        return cached["price"]

    def get_all_cached_prices(self) -> Dict[str, float]:
        """Every cached price, without an expiry check."""
        return {symbol: entry["price"] for symbol, entry in self.load().price_cache.items()}

    # ---------- profiles ----------
    def _get_profile(self, data: StoredData, profile_id: str) -> Profile:
        profile = data.find_profile(profile_id)
        if profile is None:
            raise NotFoundError(f"找不到投資組合: {profile_id}")
        return profile

    def get_profile(self, profile_id: str) -> Profile:
        return self._get_profile(self.load(), profile_id)

    def get_active_profile(self) -> Profile:
        return self.load().active_profile

    def create_profile(self, market: str, name: Optional[str] = None, risk_level: Optional[str] = None) -> Profile:
        if market not in MARKETS:
            raise StorageError(f"不支援的市場: {market}")
        if risk_level is not None and risk_level not in RISK_LEVELS:
            raise StorageError(f"不支援的風險偏好: {risk_level}")
        with self._lock:
            data = self.load()
            profile = create_default_profile(market, name=name)
            if risk_level:
                profile.risk_level = risk_level
            data.profiles.append(profile)
            data.active_profile_id = profile.id
            self.save(data)
            logger.info("Created profile %s (%s)", profile.id, market)
            return profile

    def update_profile(
        self,
        profile_id: str,
        name: Optional[str] = None,
        risk_level: Optional[str] = None,
        base_currency: Optional[str] = None,
    ) -> Profile:
        if risk_level is not None and risk_level not in RISK_LEVELS:
            raise StorageError(f"不支援的風險偏好: {risk_level}")
        if base_currency is not None and base_currency not in CURRENCIES:
            raise StorageError(f"不支援的幣別: {base_currency}")
        with self._lock:
            data = self.load()
            profile = self._get_profile(data, profile_id)
            if name is not None:
                if not isinstance(name, str) or not name.strip():
                    raise StorageError("名稱不可為空")
                profile.name = name.strip()
            if risk_level is not None:
                profile.risk_level = risk_level
            if base_currency is not None:
                profile.base_currency = base_currency
            self.save(data)
            return profile

    def delete_profile(self, profile_id: str) -> None:
        with self._lock:
            data = self.load()
            profile = self._get_profile(data, profile_id)
            if len(data.profiles) == 1:
                raise StorageError("至少需要保留一個投資組合")
            data.profiles.remove(profile)
            if data.active_profile_id == profile_id:
                data.active_profile_id = data.profiles[0].id
            self.save(data)
            logger.info("Deleted profile %s", profile_id)

    def set_active_profile(self, profile_id: str) -> Profile:
        with self._lock:
            data = self.load()
            profile = self._get_profile(data, profile_id)
            data.active_profile_id = profile.id
            self.save(data)
            return profile

    # ---------- holdings ----------
    def add_holding(
        self,
        profile_id: str,
        symbol: str,
        quantity: float,
        cost_basis: float,
        market: Optional[str] = None,
        name: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Holding:
        if market is not None and market not in HOLDING_MARKETS:
            raise StorageError(f"不支援的市場: {market}")
        quantity = _require_positive(quantity, "請輸入有效股數")
        cost_basis = _require_positive(cost_basis, "請輸入有效成本")
        with self._lock:
            data = self.load()
            profile = self._get_profile(data, profile_id)
            holding = Holding(
                id=str(uuid.uuid4()),
                symbol=symbol,
                name=name or symbol,
                quantity=quantity,
                cost_basis=cost_basis,
                market=market,
                note=note or None,
            )
            profile.holdings.append(holding)
            self.save(data)
            return holding

    def update_holding(
        self,
        profile_id: str,
        holding_id: str,
        quantity: Optional[float] = None,
        cost_basis: Optional[float] = None,
        note: Optional[str] = None,
    ) -> Holding:
        with self._lock:
            data = self.load()
            holding = self._get_profile(data, profile_id).find_holding(holding_id)
            if holding is None:
                raise NotFoundError(f"找不到持股: {holding_id}")
            if quantity is not None:
                holding.quantity = _require_positive(quantity, "請輸入有效股數")
            if cost_basis is not None:
                holding.cost_basis = _require_positive(cost_basis, "請輸入有效成本")
            if note is not None:
                holding.note = note or None
            self.save(data)
            return holding

    def remove_holding(self, profile_id: str, holding_id: str) -> None:
        with self._lock:
            data = self.load()
            profile = self._get_profile(data, profile_id)
            holding = profile.find_holding(holding_id)
            if holding is None:
                raise NotFoundError(f"找不到持股: {holding_id}")
            profile.holdings.remove(holding)
            self.save(data)

    def apply_quote_details(
        self,
        profile_id: str,
        name_map: Dict[str, str],
        market_map: Dict[str, str],
    ) -> Profile:
        """Copy quote names onto holdings, and quote markets onto mixed-account holdings."""
        with self._lock:
            data = self.load()
            profile = self._get_profile(data, profile_id)
            for holding in profile.holdings:
                if holding.symbol in name_map:
                    holding.name = name_map[holding.symbol]
                if profile.market == "MIXED" and not holding.market and holding.symbol in market_map:
                    holding.market = market_map[holding.symbol]
            self.save(data)
            return profile
