# -*- coding: utf-8 -*-
"""
Portfolio metrics: per-holding valuation, multi-currency totals, concentration
and the payload handed to the advice model.
"""

from __future__ import annotations

import math
from typing import Dict, List, Optional, Tuple

from exchange_rate import convert_currency
from market_data import is_valid_tw_symbol, is_valid_us_symbol
from models import (
    CURRENCY_SYMBOLS,
    Holding,
    HoldingWithMetrics,
    MarketBreakdown,
    PortfolioSummary,
    Profile,
    Quote,
)

TOP_HOLDINGS = 5
CONCENTRATION_TOP_N = 3


def holding_currency(holding: Holding, profile_market: str) -> str:
    """根據持股或 Profile 市場決定原始幣別"""
    if holding.market == "TW":
        return "TWD"
    if holding.market == "US":
        return "USD"
    if profile_market == "TW":
        return "TWD"
    return "USD"


def calculate_holding_metrics(
    holding: Holding,
    current_price: float,
    total_market_value: float,
    original_currency: str = "USD",
) -> HoldingWithMetrics:
    """Metrics for one holding in its own currency (no conversion)."""
    original_market_value = holding.quantity * current_price
    weight = original_market_value / total_market_value if total_market_value > 0 else 0.0
    cost = holding.cost_basis * holding.quantity
    pnl_pct = (current_price - holding.cost_basis) / holding.cost_basis if holding.cost_basis > 0 else 0.0
    return HoldingWithMetrics(
        holding=holding,
        current_price=current_price,
        original_currency=original_currency,
        market_value=original_market_value,
        original_market_value=original_market_value,
        cost_value=cost,
        weight=weight,
        unrealized_pnl=(current_price - holding.cost_basis) * holding.quantity,
        unrealized_pnl_percent=pnl_pct,
    )


def calculate_all_holdings_metrics(
    holdings: List[Holding],
    price_map: Dict[str, float],
    profile_market: str = "US",
    base_currency: str = "USD",
    exchange_rate: float = 32.0,
) -> List[HoldingWithMetrics]:
    """Value every holding in ``base_currency``.

    Weights are taken against the converted total, so they sum to 1 whenever
    any holding has a price. Holdings without a price are valued at 0.
    """
    # 第一階段：原始市值與換算後市值
    total_market_value = 0.0
    preliminary: List[Tuple[Holding, float, str, float, float]] = []
    for holding in holdings:
        price = price_map.get(holding.symbol) or 0.0
        currency = holding_currency(holding, profile_market)
        original_mv = holding.quantity * price
        converted_mv = convert_currency(original_mv, currency, base_currency, exchange_rate)
        total_market_value += converted_mv
        preliminary.append((holding, price, currency, original_mv, converted_mv))

    # 第二階段：權重與換算後損益
    results = []
    for holding, price, currency, original_mv, converted_mv in preliminary:
        original_pnl = (price - holding.cost_basis) * holding.quantity
        original_cost = holding.cost_basis * holding.quantity
        results.append(
            HoldingWithMetrics(
                holding=holding,
                current_price=price,
                original_currency=currency,
                market_value=converted_mv,
                original_market_value=original_mv,
                cost_value=convert_currency(original_cost, currency, base_currency, exchange_rate),
                weight=converted_mv / total_market_value if total_market_value > 0 else 0.0,
                unrealized_pnl=convert_currency(original_pnl, currency, base_currency, exchange_rate),
                unrealized_pnl_percent=(
                    (price - holding.cost_basis) / holding.cost_basis if holding.cost_basis > 0 else 0.0
                ),
            )
        )
    return results


def _breakdown(items: List[HoldingWithMetrics]) -> Optional[MarketBreakdown]:
    if not items:
        return None
    return MarketBreakdown(
        market_value=sum(h.original_market_value for h in items),
        cost=sum(h.cost_basis * h.quantity for h in items),
        unrealized_pnl=sum((h.current_price - h.cost_basis) * h.quantity for h in items),
    )


def calculate_portfolio_summary(
    holdings: List[HoldingWithMetrics],
    exchange_rate: Optional[float] = None,
) -> PortfolioSummary:
    total_market_value = sum(h.market_value for h in holdings)
    total_cost = sum(h.cost_value for h in holdings)
    total_pnl = sum(h.unrealized_pnl for h in holdings)

    by_weight = sorted(holdings, key=lambda h: h.weight, reverse=True)

    # 市場分類摘要以原始幣別計算
    return PortfolioSummary(
        total_market_value=total_market_value,
        total_cost=total_cost,
        total_unrealized_pnl=total_pnl,
        total_unrealized_pnl_percent=total_pnl / total_cost if total_cost > 0 else 0.0,
        top_holdings=by_weight[:TOP_HOLDINGS],
        concentration=sum(h.weight for h in by_weight[:CONCENTRATION_TOP_N]),
        exchange_rate=exchange_rate,
        us_breakdown=_breakdown([h for h in holdings if h.original_currency == "USD"]),
        tw_breakdown=_breakdown([h for h in holdings if h.original_currency == "TWD"]),
    )


def needs_exchange_rate(profile: Profile) -> bool:
    return any(holding_currency(h, profile.market) != profile.base_currency for h in profile.holdings)


def build_portfolio_payload(
    profile: Profile,
    holdings: List[HoldingWithMetrics],
    summary: PortfolioSummary,
) -> Dict:
    """建立給 AI 的 Payload"""
    return {
        "profileName": profile.name,
        "riskLevel": profile.risk_level,
        "market": profile.market or "US",
        "baseCurrency": profile.base_currency or "USD",
        "totalMarketValue": summary.total_market_value,
        "totalCost": summary.total_cost,
        "totalUnrealizedPnL": summary.total_unrealized_pnl,
        "concentration": summary.concentration,
        "holdings": [
            {
                "symbol": h.symbol,
                "name": h.holding.name,
                "quantity": h.quantity,
                "costBasis": h.cost_basis,
                "currentPrice": h.current_price,
                "marketValue": h.market_value,
                "weight": h.weight,
                "unrealizedPnL": h.unrealized_pnl,
                "unrealizedPnLPercent": h.unrealized_pnl_percent,
            }
            for h in holdings
        ],
    }


def _parse_positive(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def validate_holding_input(symbol, quantity, cost_basis, market: str) -> Tuple[str, Dict[str, str]]:
    """Clean a new-holding form and collect per-field error messages.

    ``market`` is the holding's effective market (US or TW). Returns the
    cleaned symbol and an error map that is empty when the input is valid.
    """
    errors: Dict[str, str] = {}
    raw = symbol.strip() if isinstance(symbol, str) else ""
    cleaned = raw if market == "TW" else raw.upper()

    if not raw:
        errors["symbol"] = "請輸入股票代碼"
    elif market == "TW":
        if not is_valid_tw_symbol(cleaned):
            errors["symbol"] = "台股代碼須為 4-6 位數字"
    elif not is_valid_us_symbol(cleaned):
        errors["symbol"] = "美股代碼須為 1-5 個英文字母"

    if _parse_positive(quantity) is None:
        errors["quantity"] = "請輸入有效股數"
    if _parse_positive(cost_basis) is None:
        errors["costBasis"] = "請輸入有效成本"
    return cleaned, errors


def format_currency(value: float, currency: str = "USD", decimals: int = 2) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency, "$")
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.{decimals}f}"


def format_percent(value: float, decimals: int = 2) -> str:
    sign = "+" if value >= 0 else ""
    return f"{sign}{value * 100:.{decimals}f}%"


def quotes_to_price_map(quotes: List[Quote]) -> Dict[str, float]:
    return {q.symbol: q.price for q in quotes}


def quotes_to_name_map(quotes: List[Quote]) -> Dict[str, str]:
    return {q.symbol: q.name for q in quotes}


def quotes_to_market_map(quotes: List[Quote]) -> Dict[str, str]:
    return {q.symbol: q.market for q in quotes if q.market in ("US", "TW")}
