# -*- coding: utf-8 -*-
"""
Records for profiles, holdings, quotes and computed portfolio metrics.

Serialized field names are camelCase so the stored JSON blob and the API
payloads keep the same shape the browser client sends.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

MARKETS = ("US", "TW", "MIXED")
HOLDING_MARKETS = ("US", "TW")
CURRENCIES = ("USD", "TWD")
RISK_LEVELS = ("conservative", "balanced", "aggressive")

MARKET_LABELS = {"US": "美股", "TW": "台股", "MIXED": "混合"}
CURRENCY_SYMBOLS = {"USD": "$", "TWD": "NT$"}
RISK_LABELS = {"conservative": "保守型", "balanced": "平衡型", "aggressive": "積極型"}


@dataclass
class Holding:
    id: str
    symbol: str
    name: str
    quantity: float
    cost_basis: float
    market: Optional[str] = None  # 混合帳戶用：US / TW
    note: Optional[str] = None

    def to_dict(self) -> Dict:
        data = {
            "id": self.id,
            "symbol": self.symbol,
            "name": self.name,
            "quantity": self.quantity,
            "costBasis": self.cost_basis,
        }
        if self.market:
            data["market"] = self.market
        if self.note:
            data["note"] = self.note
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "Holding":
        return cls(
            id=data["id"],
            symbol=data["symbol"],
            name=data.get("name") or data["symbol"],
            quantity=float(data["quantity"]),
            cost_basis=float(data["costBasis"]),
            market=data.get("market") or None,
            note=data.get("note") or None,
        )


@dataclass
class Profile:
    id: str
    name: str
    risk_level: str = "balanced"
    market: str = "US"
    base_currency: str = "USD"
    holdings: List[Holding] = field(default_factory=list)

    def find_holding(self, holding_id: str) -> Optional[Holding]:
        return next((h for h in self.holdings if h.id == holding_id), None)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "riskLevel": self.risk_level,
            "market": self.market,
            "baseCurrency": self.base_currency,
            "holdings": [h.to_dict() for h in self.holdings],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Profile":
        # market / baseCurrency may be missing in old blobs; storage migrates them
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            risk_level=data.get("riskLevel") or "balanced",
            market=data.get("market") or "",
            base_currency=data.get("baseCurrency") or "",
            holdings=[Holding.from_dict(h) for h in data.get("holdings") or []],
        )


@dataclass
class Quote:
    symbol: str
    name: str
    price: float
    market: str
    currency: str
    changes_percentage: Optional[float] = None
    change: Optional[float] = None
    market_cap: Optional[float] = None

    def to_dict(self) -> Dict:
        data = {
            "symbol": self.symbol,
            "name": self.name,
            "price": self.price,
            "market": self.market,
            "currency": self.currency,
        }
        if self.changes_percentage is not None:
            data["changesPercentage"] = self.changes_percentage
        if self.change is not None:
            data["change"] = self.change
        if self.market_cap is not None:
            data["marketCap"] = self.market_cap
        return data


@dataclass
class HoldingWithMetrics:
    holding: Holding
    current_price: float
    original_currency: str
    market_value: float  # 以 base currency 計
    original_market_value: float
    cost_value: float  # 以 base currency 計
    weight: float
    unrealized_pnl: float  # 以 base currency 計
    unrealized_pnl_percent: float

    @property
    def symbol(self) -> str:
        return self.holding.symbol

    @property
    def quantity(self) -> float:
        return self.holding.quantity

    @property
    def cost_basis(self) -> float:
        return self.holding.cost_basis

    def to_dict(self) -> Dict:
        return {
            **self.holding.to_dict(),
            "currentPrice": self.current_price,
            "originalCurrency": self.original_currency,
            "marketValue": self.market_value,
            "originalMarketValue": self.original_market_value,
            "costValue": self.cost_value,
            "weight": self.weight,
            "unrealizedPnL": self.unrealized_pnl,
            "unrealizedPnLPercent": self.unrealized_pnl_percent,
        }


@dataclass
class MarketBreakdown:
    market_value: float
    cost: float
    unrealized_pnl: float

    def to_dict(self) -> Dict:
        return {
            "marketValue": self.market_value,
            "cost": self.cost,
            "unrealizedPnL": self.unrealized_pnl,
        }


@dataclass
class PortfolioSummary:
    total_market_value: float
    total_cost: float
    total_unrealized_pnl: float
    total_unrealized_pnl_percent: float
    top_holdings: List[HoldingWithMetrics]
    concentration: float  # 前三大持股佔比
    exchange_rate: Optional[float] = None
    us_breakdown: Optional[MarketBreakdown] = None
    tw_breakdown: Optional[MarketBreakdown] = None

    def to_dict(self) -> Dict:
        data = {
            "totalMarketValue": self.total_market_value,
            "totalCost": self.total_cost,
            "totalUnrealizedPnL": self.total_unrealized_pnl,
            "totalUnrealizedPnLPercent": self.total_unrealized_pnl_percent,
            "topHoldings": [h.to_dict() for h in self.top_holdings],
            "concentration": self.concentration,
        }
        if self.exchange_rate is not None:
            data["exchangeRate"] = self.exchange_rate
        if self.us_breakdown is not None:
            data["usBreakdown"] = self.us_breakdown.to_dict()
        if self.tw_breakdown is not None:
            data["twBreakdown"] = self.tw_breakdown.to_dict()
        return data


@dataclass
class StoredData:
    profiles: List[Profile]
    active_profile_id: str
    price_cache: Dict[str, Dict] = field(default_factory=dict)

    def find_profile(self, profile_id: str) -> Optional[Profile]:
        return next((p for p in self.profiles if p.id == profile_id), None)

    @property
    def active_profile(self) -> Optional[Profile]:
        return self.find_profile(self.active_profile_id)

    def to_dict(self) -> Dict:
        return {
            "profiles": [p.to_dict() for p in self.profiles],
            "activeProfileId": self.active_profile_id,
            "priceCache": self.price_cache,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "StoredData":
        return cls(
            profiles=[Profile.from_dict(p) for p in data.get("profiles") or []],
            active_profile_id=data.get("activeProfileId") or "",
            price_cache=dict(data.get("priceCache") or {}),
        )
