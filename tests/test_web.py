"""Flask API and dashboard tests."""

import pytest

import web
from advice import AdviceError
from market_data import QuoteProviderError, QuoteRequestError
from models import Quote


@pytest.fixture(autouse=True)
def fixed_rate(monkeypatch):
    monkeypatch.setattr(web, "get_usd_twd_rate", lambda: 30.0)


@pytest.fixture
def active_id(client):
    return client.get("/api/profiles").get_json()["activeProfileId"]


def _add(client, profile_id, **body):
    return client.post(f"/api/profiles/{profile_id}/holdings", json=body)


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok"}


class TestQuotesEndpoint:
    def test_returns_quotes(self, client, monkeypatch, sample_quotes):
        seen = {}

        def fake_get_quotes(symbols=None, market="US", us_symbols=None, tw_symbols=None):
            seen.update(symbols=symbols, market=market, us=us_symbols, tw=tw_symbols)
            return sample_quotes

        monkeypatch.setattr(web, "get_quotes", fake_get_quotes)
        resp = client.post("/api/quotes", json={"market": "MIXED", "usSymbols": ["AAPL"], "twSymbols": ["2330"]})

        assert resp.status_code == 200
        assert [q["symbol"] for q in resp.get_json()["quotes"]] == ["AAPL", "2330"]
        assert seen == {"symbols": None, "market": "MIXED", "us": ["AAPL"], "tw": ["2330"]}

    def test_market_defaults_to_us(self, client, monkeypatch):
        seen = {}
        monkeypatch.setattr(web, "get_quotes", lambda **kw: seen.update(kw) or [])
        client.post("/api/quotes", json={"symbols": ["AAPL"]})
        assert seen["market"] == "US"

    def test_bad_request(self, client, monkeypatch):
        def fake_get_quotes(**kwargs):
            raise QuoteRequestError("請提供有效的股票代碼陣列")

        monkeypatch.setattr(web, "get_quotes", fake_get_quotes)
        resp = client.post("/api/quotes", json={"symbols": "AAPL"})
        assert resp.status_code == 400
        assert resp.get_json() == {"error": "請提供有效的股票代碼陣列"}

    def test_provider_failure(self, client, monkeypatch):
        def fake_get_quotes(**kwargs):
            raise QuoteProviderError("獲取報價失敗: FMP API 錯誤: 503 - down")

        monkeypatch.setattr(web, "get_quotes", fake_get_quotes)
        resp = client.post("/api/quotes", json={"symbols": ["AAPL"]})
        assert resp.status_code == 500
        assert "FMP API 錯誤" in resp.get_json()["error"]


def test_exchange_rate(client):
    body = client.get("/api/exchange-rate").get_json()
    assert body["rate"] == 30.0
    assert body["pair"] == "USD/TWD"
    assert isinstance(body["timestamp"], int)


class TestAdviceEndpoint:
    def test_missing_profile_is_400(self, client):
        resp = client.post("/api/advice", json={})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "請提供投資組合資料"

    def test_returns_advice(self, client, monkeypatch):
        monkeypatch.setattr(web, "get_portfolio_advice", lambda payload: f"{payload['profileName']} 建議")
        resp = client.post("/api/advice", json={"profile": {"profileName": "測試", "holdings": [{}]}})
        assert resp.get_json() == {"advice": "測試 建議"}

    def test_non_numeric_totals_are_400_json(self, client, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "test-key")
        profile = {"profileName": "測試", "holdings": [{"symbol": "AAPL"}], "totalMarketValue": None}
        resp = client.post("/api/advice", json={"profile": profile})
        assert resp.status_code == 400
        assert resp.is_json
        assert "totalMarketValue" in resp.get_json()["error"]

    def test_model_failure_is_500(self, client, monkeypatch):
        def failing(payload):
            raise AdviceError("AI 服務錯誤: timeout")

        monkeypatch.setattr(web, "get_portfolio_advice", failing)
        resp = client.post("/api/advice", json={"profile": {"holdings": [{}]}})
        assert resp.status_code == 500


class TestProfiles:
    def test_first_load_creates_mixed_profile(self, client):
        body = client.get("/api/profiles").get_json()
        assert len(body["profiles"]) == 1
        assert body["profiles"][0]["market"] == "MIXED"
        assert body["activeProfileId"] == body["profiles"][0]["id"]

    def test_create_update_activate_delete(self, client, active_id):
        resp = client.post("/api/profiles", json={"market": "TW", "riskLevel": "aggressive"})
        assert resp.status_code == 201
        created = resp.get_json()
        assert created["name"] == "台股主帳戶"
        assert created["baseCurrency"] == "TWD"

        patched = client.patch(f"/api/profiles/{created['id']}", json={"name": "退休金"}).get_json()
        assert patched["name"] == "退休金"
        assert patched["riskLevel"] == "aggressive"

        client.post(f"/api/profiles/{active_id}/activate")
        assert client.get("/api/profiles").get_json()["activeProfileId"] == active_id

        assert client.delete(f"/api/profiles/{created['id']}").status_code == 204
        assert client.get(f"/api/profiles/{created['id']}").status_code == 404

    def test_invalid_market(self, client):
        resp = client.post("/api/profiles", json={"market": "JP"})
        assert resp.status_code == 400

    def test_cannot_delete_last_profile(self, client, active_id):
        resp = client.delete(f"/api/profiles/{active_id}")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "至少需要保留一個投資組合"

    def test_recovered_profile_is_usable_after_corrupt_store(self, client):
        web.get_store().path.write_text("{not json", encoding="utf-8")

        first = client.get("/api/profiles").get_json()["activeProfileId"]
        assert client.get("/api/profiles").get_json()["activeProfileId"] == first

        resp = _add(client, first, symbol="AAPL", quantity=1, costBasis=100)
        assert resp.status_code == 201
        assert client.get(f"/api/profiles/{first}").get_json()["holdings"][0]["symbol"] == "AAPL"

    def test_unknown_profile(self, client):
        resp = client.get("/api/profiles/missing")
        assert resp.status_code == 404
        assert "missing" in resp.get_json()["error"]


class TestHoldings:
    def test_mixed_profile_defaults_holding_to_us(self, client, active_id):
        resp = _add(client, active_id, symbol="aapl", quantity="10", costBasis=150)
        assert resp.status_code == 201
        holding = resp.get_json()
        assert holding["symbol"] == "AAPL"
        assert holding["market"] == "US"
        assert holding["quantity"] == 10.0

    def test_tw_holding_in_mixed_profile(self, client, active_id):
        holding = _add(client, active_id, symbol="2330", quantity=100, costBasis=500, market="TW").get_json()
        assert holding["market"] == "TW"

    def test_rejects_unknown_holding_market(self, client, active_id):
        resp = _add(client, active_id, symbol="AAPL", quantity=1, costBasis=1, market="HK")
        assert resp.status_code == 400

    def test_validation_errors(self, client, active_id):
        resp = _add(client, active_id, symbol="2330", quantity=0, costBasis="abc")
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["error"] == "持股資料無效"
        assert body["errors"] == {
            "symbol": "美股代碼須為 1-5 個英文字母",
            "quantity": "請輸入有效股數",
            "costBasis": "請輸入有效成本",
        }

    def test_rejects_infinite_numbers_on_add(self, client, active_id):
        resp = _add(client, active_id, symbol="AAPL", quantity="inf", costBasis="Infinity")
        assert resp.status_code == 400
        assert set(resp.get_json()["errors"]) == {"quantity", "costBasis"}

    @pytest.mark.parametrize("value", ["nan", "inf", "-inf"])
    def test_rejects_non_finite_numbers_on_update(self, client, active_id, value):
        holding = _add(client, active_id, symbol="AAPL", quantity=10, costBasis=100).get_json()
        url = f"/api/profiles/{active_id}/holdings/{holding['id']}"

        assert client.patch(url, json={"quantity": value}).status_code == 400
        assert client.patch(url, json={"costBasis": value}).status_code == 400

        body = client.get(f"/api/profiles/{active_id}/summary").get_data(as_text=True)
        assert "NaN" not in body
        assert "Infinity" not in body

    def test_single_market_profile_has_no_holding_market(self, client):
        profile = client.post("/api/profiles", json={"market": "US"}).get_json()
        holding = _add(client, profile["id"], symbol="MSFT", quantity=1, costBasis=300, market="TW").get_json()
        assert "market" not in holding

    def test_update_and_remove(self, client, active_id):
        holding = _add(client, active_id, symbol="AAPL", quantity=10, costBasis=150).get_json()
        url = f"/api/profiles/{active_id}/holdings/{holding['id']}"

        updated = client.patch(url, json={"quantity": 12, "note": "加碼"}).get_json()
        assert updated["quantity"] == 12
        assert updated["costBasis"] == 150
        assert updated["note"] == "加碼"

        assert client.patch(url, json={"costBasis": -1}).status_code == 400
        assert client.patch(url, json={"quantity": "many"}).status_code == 400

        assert client.delete(url).status_code == 204
        assert client.delete(url).status_code == 404


class TestRefreshAndSummary:
    def test_refresh_updates_prices_and_names(self, client, active_id, monkeypatch):
        _add(client, active_id, symbol="AAPL", quantity=10, costBasis=100)
        _add(client, active_id, symbol="2330", quantity=100, costBasis=500, market="TW")
        calls = {}

        def fake_get_quotes(symbols=None, market="US", us_symbols=None, tw_symbols=None):
            calls.update(market=market, us=us_symbols, tw=tw_symbols)
            return [
                Quote(symbol="AAPL", name="Apple Inc.", price=150.0, market="US", currency="USD"),
                Quote(symbol="2330", name="台積電", price=600.0, market="TW", currency="TWD"),
            ]

        monkeypatch.setattr(web, "get_quotes", fake_get_quotes)
        body = client.post(f"/api/profiles/{active_id}/refresh").get_json()

        assert calls == {"market": "MIXED", "us": ["AAPL"], "tw": ["2330"]}
        assert {h["symbol"]: h["name"] for h in body["profile"]["holdings"]} == {"AAPL": "Apple Inc.", "2330": "台積電"}
        summary = body["summary"]
        # 1500 USD + 60000 TWD / 30
        assert summary["totalMarketValue"] == pytest.approx(3500.0)
        assert summary["totalCost"] == pytest.approx(1000.0 + 50000.0 / 30.0)
        assert len(body["quotes"]) == 2

        # cached prices survive without another fetch
        monkeypatch.setattr(web, "get_quotes", lambda **kw: pytest.fail("unexpected quote fetch"))
        cached = client.get(f"/api/profiles/{active_id}/summary").get_json()
        assert cached["summary"]["totalMarketValue"] == pytest.approx(3500.0)

    def test_single_market_refresh(self, client, monkeypatch):
        profile = client.post("/api/profiles", json={"market": "US"}).get_json()
        _add(client, profile["id"], symbol="MSFT", quantity=2, costBasis=300)
        seen = {}

        def fake_get_quotes(symbols=None, market="US", us_symbols=None, tw_symbols=None):
            seen.update(symbols=symbols, market=market)
            return [Quote(symbol="MSFT", name="Microsoft", price=400.0, market="US", currency="USD")]

        monkeypatch.setattr(web, "get_quotes", fake_get_quotes)
        body = client.post(f"/api/profiles/{profile['id']}/refresh").get_json()

        assert seen == {"symbols": ["MSFT"], "market": "US"}
        assert body["summary"]["totalUnrealizedPnL"] == pytest.approx(200.0)

    def test_summary_without_prices(self, client, active_id):
        _add(client, active_id, symbol="AAPL", quantity=10, costBasis=100)
        summary = client.get(f"/api/profiles/{active_id}/summary").get_json()["summary"]
        assert summary["totalMarketValue"] == 0
        assert summary["concentration"] == 0

    def test_profile_advice_builds_payload(self, client, active_id, monkeypatch):
        _add(client, active_id, symbol="AAPL", quantity=10, costBasis=100)
        seen = {}
        monkeypatch.setattr(web, "get_portfolio_advice", lambda payload: seen.update(payload) or "ok")

        assert client.post(f"/api/profiles/{active_id}/advice").get_json() == {"advice": "ok"}
        assert seen["profileName"] == "混合帳戶"
        assert seen["holdings"][0]["symbol"] == "AAPL"


class TestDashboard:
    def test_renders_active_profile(self, client, active_id):
        _add(client, active_id, symbol="AAPL", quantity=10, costBasis=100)
        html = client.get("/").get_data(as_text=True)
        assert "混合帳戶" in html
        assert "AAPL" in html
        assert "$1,000.00" in html

    def test_profile_query_and_unknown_profile(self, client):
        profile = client.post("/api/profiles", json={"market": "TW", "name": "台股帳戶"}).get_json()
        assert "台股帳戶" in client.get(f"/?profile={profile['id']}").get_data(as_text=True)
        assert client.get("/?profile=nope").status_code == 404

    def test_refresh_failure_falls_back_to_cache(self, client, active_id, monkeypatch):
        _add(client, active_id, symbol="AAPL", quantity=10, costBasis=100)

        def failing(**kwargs):
            raise QuoteProviderError("獲取報價失敗: 請求超時")

        monkeypatch.setattr(web, "get_quotes", failing)
        resp = client.get("/?refresh=1")
        assert resp.status_code == 200
        assert "N/A" in resp.get_data(as_text=True)

    def test_build_static_site(self, client, active_id, tmp_path):
        _add(client, active_id, symbol="AAPL", quantity=10, costBasis=100)
        output = tmp_path / "site" / "index.html"

        assert web.build_static_site(str(output)) == str(output)
        assert "AAPL" in output.read_text(encoding="utf-8")
