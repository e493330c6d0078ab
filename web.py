# -*- coding: utf-8 -*-
"""
Portfolio helper: Flask server for profiles, quotes, exchange rates and AI
advice, plus a read-only dashboard that can also be exported as static HTML.

  # 本地啟動伺服器 (http://127.0.0.1:5000)
  python web.py --serve

  # 產出靜態頁面（使用快取價格）
  python web.py --output docs/index.html

Render / gunicorn:
  gunicorn web:app --bind 0.0.0.0:$PORT --access-logfile - --error-logfile -
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from flask import Flask, jsonify, request
from pytz import timezone
from werkzeug.middleware.proxy_fix import ProxyFix

import config
from advice import AdviceError, AdviceRequestError, get_portfolio_advice
from exchange_rate import get_usd_twd_rate
from market_data import QuoteProviderError, QuoteRequestError, get_quotes, is_valid_tw_symbol
from models import MARKET_LABELS, RISK_LABELS, HoldingWithMetrics, PortfolioSummary, Profile, Quote
from portfolio import (
    build_portfolio_payload,
    calculate_all_holdings_metrics,
    calculate_portfolio_summary,
    format_currency,
    format_percent,
    needs_exchange_rate,
    quotes_to_market_map,
    quotes_to_name_map,
    quotes_to_price_map,
    validate_holding_input,
)
from storage import NotFoundError, ProfileStore, StorageError

logger = logging.getLogger(__name__)

settings = config.Settings.from_env()

app = Flask(__name__)
app.config["DATA_PATH"] = settings.data_path
app.json.ensure_ascii = False
if settings.trust_proxy:
    # Trust proxy headers when running behind reverse proxies (e.g. Render)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

_stores: Dict[str, ProfileStore] = {}


def get_store() -> ProfileStore:
    path = str(app.config["DATA_PATH"])
    if path not in _stores:
        _stores[path] = ProfileStore(path)
    return _stores[path]


# ============== Errors ==============
def _error(message: str, status: int, **extra):
    return jsonify({"error": message, **extra}), status


@app.errorhandler(NotFoundError)
def _not_found(e):
    return _error(str(e), 404)


@app.errorhandler(StorageError)
@app.errorhandler(QuoteRequestError)
@app.errorhandler(AdviceRequestError)
def _bad_request(e):
    return _error(str(e), 400)


@app.errorhandler(QuoteProviderError)
@app.errorhandler(AdviceError)
def _provider_failed(e):
    logger.error("%s: %s", type(e).__name__, e)
    return _error(str(e), 500)


def _json_body() -> Dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _optional_float(body: Dict, key: str, message: str) -> Optional[float]:
    if key not in body or body[key] is None:
        return None
    try:
        return float(body[key])
    except (TypeError, ValueError) as e:
        raise StorageError(message) from e


# ============== Portfolio helpers ==============
def compute_profile_view(
    profile: Profile, price_map: Dict[str, float]
) -> Tuple[List[HoldingWithMetrics], PortfolioSummary]:
    rate = None
    if profile.market == "MIXED" or needs_exchange_rate(profile):
        rate = get_usd_twd_rate()
    holdings = calculate_all_holdings_metrics(
        profile.holdings,
        price_map,
        profile_market=profile.market,
        base_currency=profile.base_currency,
        exchange_rate=rate or config.DEFAULT_USD_TWD_RATE,
    )
    return holdings, calculate_portfolio_summary(holdings, exchange_rate=rate)


def _holding_market(profile: Profile, holding) -> str:
    if profile.market != "MIXED":
        return profile.market
    if holding.market:
        return holding.market
    return "TW" if is_valid_tw_symbol(holding.symbol) else "US"


def refresh_profile_quotes(store: ProfileStore, profile: Profile) -> List[Quote]:
    """Fetch quotes for every holding, then update the price cache and holding names."""
    if not profile.holdings:
        return []
    if profile.market == "MIXED":
        us = [h.symbol for h in profile.holdings if _holding_market(profile, h) == "US"]
        tw = [h.symbol for h in profile.holdings if _holding_market(profile, h) == "TW"]
        quotes = get_quotes(market="MIXED", us_symbols=us, tw_symbols=tw)
    else:
        quotes = get_quotes([h.symbol for h in profile.holdings], market=profile.market)

    store.update_price_cache(quotes_to_price_map(quotes))
    store.apply_quote_details(profile.id, quotes_to_name_map(quotes), quotes_to_market_map(quotes))
    logger.info("Refreshed %d/%d quotes for profile %s", len(quotes), len(profile.holdings), profile.id)
    return quotes


def _profile_view_payload(profile: Profile, store: ProfileStore) -> Dict:
    holdings, summary = compute_profile_view(profile, store.get_all_cached_prices())
    return {
        "profile": profile.to_dict(),
        "holdings": [h.to_dict() for h in holdings],
        "summary": summary.to_dict(),
    }


# ============== API ==============
@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/api/quotes")
def quotes():
    body = _json_body()
    result = get_quotes(
        symbols=body.get("symbols"),
        market=body.get("market") or "US",
        us_symbols=body.get("usSymbols"),
        tw_symbols=body.get("twSymbols"),
    )
    return jsonify({"quotes": [q.to_dict() for q in result]})


@app.get("/api/exchange-rate")
def exchange_rate():
    return jsonify({"rate": get_usd_twd_rate(), "pair": "USD/TWD", "timestamp": int(time.time() * 1000)})


@app.post("/api/advice")
def advice():
    return jsonify({"advice": get_portfolio_advice(_json_body().get("profile"))})


@app.get("/api/profiles")
def list_profiles():
    data = get_store().load()
    return jsonify({"profiles": [p.to_dict() for p in data.profiles], "activeProfileId": data.active_profile_id})


@app.post("/api/profiles")
def create_profile():
    body = _json_body()
    profile = get_store().create_profile(
        market=body.get("market") or "MIXED",
        name=body.get("name"),
        risk_level=body.get("riskLevel"),
    )
    return jsonify(profile.to_dict()), 201


@app.get("/api/profiles/<profile_id>")
def get_profile(profile_id):
    return jsonify(get_store().get_profile(profile_id).to_dict())


@app.patch("/api/profiles/<profile_id>")
def update_profile(profile_id):
    body = _json_body()
    profile = get_store().update_profile(
        profile_id,
        name=body.get("name"),
        risk_level=body.get("riskLevel"),
        base_currency=body.get("baseCurrency"),
    )
    return jsonify(profile.to_dict())


@app.delete("/api/profiles/<profile_id>")
def delete_profile(profile_id):
    get_store().delete_profile(profile_id)
    return "", 204


@app.post("/api/profiles/<profile_id>/activate")
def activate_profile(profile_id):
    return jsonify(get_store().set_active_profile(profile_id).to_dict())


@app.post("/api/profiles/<profile_id>/holdings")
def add_holding(profile_id):
    store = get_store()
    profile = store.get_profile(profile_id)
    body = _json_body()

    holding_market = None
    if profile.market == "MIXED":
        holding_market = body.get("market") or "US"
        if holding_market not in ("US", "TW"):
            return _error("持股市場須為 US 或 TW", 400)
    effective_market = holding_market or profile.market

    symbol, errors = validate_holding_input(
        body.get("symbol"), body.get("quantity"), body.get("costBasis"), effective_market
    )
    if errors:
        return _error("持股資料無效", 400, errors=errors)

    holding = store.add_holding(
        profile_id,
        symbol=symbol,
        quantity=float(body["quantity"]),
        cost_basis=float(body["costBasis"]),
        market=holding_market,
        note=body.get("note"),
    )
    return jsonify(holding.to_dict()), 201


@app.patch("/api/profiles/<profile_id>/holdings/<holding_id>")
def update_holding(profile_id, holding_id):
    body = _json_body()
    holding = get_store().update_holding(
        profile_id,
        holding_id,
        quantity=_optional_float(body, "quantity", "請輸入有效股數"),
        cost_basis=_optional_float(body, "costBasis", "請輸入有效成本"),
        note=body.get("note"),
    )
    return jsonify(holding.to_dict())


@app.delete("/api/profiles/<profile_id>/holdings/<holding_id>")
def remove_holding(profile_id, holding_id):
    get_store().remove_holding(profile_id, holding_id)
    return "", 204


@app.post("/api/profiles/<profile_id>/refresh")
def refresh_profile(profile_id):
    store = get_store()
    quotes = refresh_profile_quotes(store, store.get_profile(profile_id))
    payload = _profile_view_payload(store.get_profile(profile_id), store)
    payload["quotes"] = [q.to_dict() for q in quotes]
    return jsonify(payload)


@app.get("/api/profiles/<profile_id>/summary")
def profile_summary(profile_id):
    store = get_store()
    return jsonify(_profile_view_payload(store.get_profile(profile_id), store))


@app.post("/api/profiles/<profile_id>/advice")
def profile_advice(profile_id):
    store = get_store()
    profile = store.get_profile(profile_id)
    holdings, summary = compute_profile_view(profile, store.get_all_cached_prices())
    payload = build_portfolio_payload(profile, holdings, summary)
    return jsonify({"advice": get_portfolio_advice(payload)})


# ============== Dashboard ==============
TEMPLATE = """
<!DOCTYPE html>
<html lang="zh-Hant">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>My Portfolio Helper - {{ profile.name }}</title>
    <script src="https://cdn.jsdelivr.net/npm/chart.js"></script>
    <style>
        body { font-family: "Noto Sans TC", "Microsoft JhengHei", Arial, sans-serif; background: #f4f6f8; color: #333; }
        .container { max-width: 1200px; margin: 32px auto; background: #fff; padding: 28px; border-radius: 12px; box-shadow: 0 2px 10px rgba(0,0,0,.06); }
        h1, h2, h3 { margin: 0 0 8px; color: #2c3e50; }
        h2 { margin-top: 28px; border-bottom: 2px solid #eaecef; padding-bottom: 8px;}
        .meta { color: #6c757d; margin-bottom: 8px; }
        .nav { margin-bottom: 8px; }
        .nav a { margin-right: 14px; text-decoration:none; color:#1976d2; font-weight: 500;}
        .nav a.active { color:#2c3e50; font-weight: 700; }
        .summary { background:#f8f9fa; padding:18px; border-radius:10px; margin:18px 0; }
        .summary-row { display:flex; justify-content:space-between; margin:6px 0; font-size: 1.05em; }
        .chart-container { max-width: 450px; margin: 24px auto; }
        table { width:100%; border-collapse: collapse; margin-top: 14px; }
        th, td { border: 1px solid #eaecef; padding: 10px 12px; text-align: left; }
        th { background: #f0f3f6; font-weight: 600; }
        .right { text-align:right; }
        .gain { color:#c62828; font-weight:700; }
        .loss { color:#2e7d32; font-weight:700; }
        .badge { display:inline-block; padding:2px 6px; background:#eef2f7; border-radius:6px; font-size: 12px; margin-left: 6px;}
        .muted { color:#6c757d; }
    </style>
</head>
<body>
<div class="container">
    <div class="nav">
        {% for p in profiles %}
        <a href="?profile={{ p.id }}" class="{{ 'active' if p.id == profile.id else '' }}">{{ p.name }}</a>
        {% endfor %}
    </div>

    <h1>{{ profile.name }} <span class="badge">{{ market_label }}</span> <span class="badge">{{ risk_label }}</span></h1>
    <div class="meta">更新時間：{{ updated_at }}</div>
    {% if summary.exchange_rate %}
    <div class="meta">美元兌台幣：<b>{{ '%.3f' % summary.exchange_rate }}</b></div>
    {% endif %}

    <div class="summary">
        <div class="summary-row"><span>總市值 ({{ profile.base_currency }})</span><span class="right"><b>{{ total_mv_str }}</b></span></div>
        <div class="summary-row"><span>總成本 ({{ profile.base_currency }})</span><span class="right"><b>{{ total_cost_str }}</b></span></div>
        <div class="summary-row">
            <span>未實現損益</span>
            <span class="right {% if summary.total_unrealized_pnl > 0 %}gain{% elif summary.total_unrealized_pnl < 0 %}loss{% endif %}">
                <b>{{ total_pnl_str }}</b> ({{ total_pnl_pct_str }})
            </span>
        </div>
        <div class="summary-row"><span>前三大持股佔比</span><span class="right"><b>{{ concentration_str }}</b></span></div>
    </div>

    {% if breakdowns %}
    <div class="summary">
        {% for b in breakdowns %}
        <h3>{{ b.label }}</h3>
        <div class="summary-row"><span>市值</span><span class="right">{{ b.mv_str }}</span></div>
        <div class="summary-row"><span>成本</span><span class="right">{{ b.cost_str }}</span></div>
        <div class="summary-row"><span>損益</span><span class="right {% if b.pnl > 0 %}gain{% elif b.pnl < 0 %}loss{% endif %}">{{ b.pnl_str }}</span></div>
        {% endfor %}
    </div>
    {% endif %}

    {% if rows %}
    <div class="chart-container">
        <canvas id="weightChart"></canvas>
    </div>
    {% endif %}

    <h2>持股明細</h2>
    <table>
        <tr>
            <th>代號</th><th>名稱</th><th class="right">現價</th><th class="right">成本</th><th class="right">股數</th><th class="right">市值</th><th class="right">佔比</th><th class="right">未實現損益</th><th class="right">報酬率</th>
        </tr>
        {% for it in rows %}
        <tr>
            <td>{{ it.symbol }}{% if it.market_badge %}<span class="badge">{{ it.market_badge }}</span>{% endif %}</td>
            <td>{{ it.name }}</td>
            <td class="right">{{ it.price_str }}</td>
            <td class="right">{{ it.cost_str }}</td>
            <td class="right">{{ it.shares_str }}</td>
            <td class="right">{{ it.mv_str }}</td>
            <td class="right">{{ it.weight_str }}</td>
            <td class="right {% if it.pnl > 0 %}gain{% elif it.pnl < 0 %}loss{% endif %}">{{ it.pnl_str }}</td>
            <td class="right {% if it.pnl > 0 %}gain{% elif it.pnl < 0 %}loss{% endif %}">{{ it.pnl_pct_str }}</td>
        </tr>
        {% else %}
        <tr><td colspan="9" class="muted">尚無持股</td></tr>
        {% endfor %}
    </table>
    <p class="muted">本工具僅供參考，不構成投資建議。</p>
</div>
{% if rows %}
<script>
document.addEventListener('DOMContentLoaded', function () {
    new Chart(document.getElementById('weightChart'), {
        type: 'pie',
        data: {
            labels: {{ chart_labels | tojson }},
            datasets: [{ data: {{ chart_values | tojson }} }]
        },
        options: { plugins: { title: { display: true, text: '持股佔比' } } }
    });
});
</script>
{% endif %}
</body>
</html>
"""


def _fmt_shares(value: float) -> str:
    return f"{value:,.4f}".rstrip("0").rstrip(".")


def build_context(profile_id: Optional[str] = None, refresh: bool = False) -> Dict:
    store = get_store()
    data = store.load()
    profile = data.find_profile(profile_id) if profile_id else data.active_profile
    if profile is None:
        raise NotFoundError(f"找不到投資組合: {profile_id}")

    if refresh:
        try:
            refresh_profile_quotes(store, profile)
            profile = store.get_profile(profile.id)
        except (QuoteProviderError, QuoteRequestError) as e:
            logger.warning("Quote refresh failed, showing cached prices: %s", e)

    holdings, summary = compute_profile_view(profile, store.get_all_cached_prices())
    base = profile.base_currency

    rows = []
    for h in sorted(holdings, key=lambda x: x.market_value, reverse=True):
        own = h.original_currency
        rows.append(
            {
                "symbol": h.symbol,
                "name": h.holding.name,
                "market_badge": MARKET_LABELS.get(h.holding.market) if profile.market == "MIXED" else None,
                "price_str": format_currency(h.current_price, own) if h.current_price else "N/A",
                "cost_str": format_currency(h.cost_basis, own),
                "shares_str": _fmt_shares(h.quantity),
                "mv_str": format_currency(h.market_value, base),
                "weight_str": f"{h.weight * 100:.2f}%",
                "pnl": h.unrealized_pnl,
                "pnl_str": format_currency(h.unrealized_pnl, base),
                "pnl_pct_str": format_percent(h.unrealized_pnl_percent) if h.current_price else "N/A",
            }
        )

    breakdowns = []
    if profile.market == "MIXED":
        for label, currency, b in (
            ("美股 (USD)", "USD", summary.us_breakdown),
            ("台股 (TWD)", "TWD", summary.tw_breakdown),
        ):
            if b is None:
                continue
            breakdowns.append(
                {
                    "label": label,
                    "mv_str": format_currency(b.market_value, currency),
                    "cost_str": format_currency(b.cost, currency),
                    "pnl": b.unrealized_pnl,
                    "pnl_str": format_currency(b.unrealized_pnl, currency),
                }
            )

    return {
        "profiles": data.profiles,
        "profile": profile,
        "market_label": MARKET_LABELS.get(profile.market, profile.market),
        "risk_label": RISK_LABELS.get(profile.risk_level, profile.risk_level),
        "updated_at": datetime.now(timezone(config.TIMEZONE)).strftime("%Y-%m-%d %H:%M:%S"),
        "summary": summary,
        "total_mv_str": format_currency(summary.total_market_value, base),
        "total_cost_str": format_currency(summary.total_cost, base),
        "total_pnl_str": format_currency(summary.total_unrealized_pnl, base),
        "total_pnl_pct_str": format_percent(summary.total_unrealized_pnl_percent),
        "concentration_str": f"{summary.concentration * 100:.1f}%",
        "breakdowns": breakdowns,
        "rows": rows,
        "chart_labels": [r["symbol"] for r in rows],
        "chart_values": [round(h.market_value, 2) for h in sorted(holdings, key=lambda x: x.market_value, reverse=True)],
    }


def render_portfolio_page(profile_id: Optional[str] = None, refresh: bool = False) -> str:
    ctx = build_context(profile_id=profile_id, refresh=refresh)
    template = app.jinja_env.from_string(TEMPLATE)
    return template.render(**ctx)


def build_static_site(output_path: str = "docs/index.html", profile_id: Optional[str] = None) -> str:
    with app.app_context():
        html = render_portfolio_page(profile_id=profile_id)
    output_dir = os.path.dirname(output_path)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        f.write(html)
    return output_path


@app.route("/")
def home():
    refresh = request.args.get("refresh") in ("1", "true", "on", "yes")
    return render_portfolio_page(profile_id=request.args.get("profile"), refresh=refresh)


def main():
    parser = argparse.ArgumentParser(description="Portfolio helper server / static dashboard generator")
    parser.add_argument("--output", help="輸出靜態 HTML 路徑（例如 docs/index.html）")
    parser.add_argument("--serve", action="store_true", help="啟動本地 Flask 伺服器")
    parser.add_argument("--profile", help="靜態頁面使用的投資組合 ID（預設為目前使用中的組合）")
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.output:
        path = build_static_site(output_path=args.output, profile_id=args.profile)
        print(f"Static site generated at {path}")
        if not args.serve:
            return

    # 若未指定 --output，預設直接啟動伺服器
    if args.serve or not args.output:
        app.run(host="0.0.0.0", port=settings.port, debug=False)


if __name__ == "__main__":
    main()
