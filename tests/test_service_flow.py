"""
数据服务集成测试（异步流程）

覆盖范围：
  - HTTP 获取原语（JSON / 裸数字 / 非法报文）
  - 提供商网关级联降级（报文异常、超时、全部失败默认值、不重试）
  - 结果缓存（单飞刷新、旧值回退、冷启动失败）
  - 历史序列缓存（TTL、短序列拒绝）
  - 快照服务（持仓估值、刷新失败返回旧快照）
  - 历史区间服务
  - FastAPI 路由（通过 TestClient + dependency_overrides，无需访问外网）
"""

import asyncio
import json
import os
import sys
from collections import Counter
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from dashboard_service.config import DashboardSettings  # noqa: E402
from dashboard_service.layers.acquisition import HttpFetcher, ProviderError, ProviderGateway  # noqa: E402
from dashboard_service.layers.cache import (  # noqa: E402
    CacheRefreshError,
    HistoricalSeriesCache,
    ResultCache,
)
from dashboard_service.models.market import (  # noqa: E402
    ChainMetrics,
    Derivatives,
    GlobalMarket,
    HistoricalSeries,
    IndexPoint,
    PricePoint,
    PriceQuote,
    Sentiment,
    Signal,
    SupplyInfo,
)
from dashboard_service.services.history_service import HistoryService, clamp_days, parse_days  # noqa: E402
from dashboard_service.services.snapshot_service import (  # noqa: E402
    SNAPSHOT_KEY,
    SnapshotService,
    build_portfolio,
)


# ─────────────────────────────────────────────────────────
# 辅助：模拟上游提供商 / 假网关
# ─────────────────────────────────────────────────────────

_KRAKEN_TICKER = {
    "error": [],
    "result": {
        "XXBTZUSD": {
            "c": ["65000.0", "0.01"],
            "v": ["100.0", "200.0"],
            "p": ["64000.0", "64500.0"],
            "o": "64000.0",
        }
    },
}

_BINANCE_TICKER = {"lastPrice": "65100.5", "quoteVolume": "123456.0", "priceChangePercent": "2.1"}


def _kraken_ohlc(n: int) -> dict:
    start = int(datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp())
    candles = [
        [start + i * 86_400, "1", "1", "1", str(40000 + i * 10), "1", "1", 1]
        for i in range(n)
    ]
    return {"error": [], "result": {"XXBTZUSD": candles, "last": start}}


def _binance_klines(n: int) -> list:
    start = int(datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp()) * 1000
    return [
        [start + i * 86_400_000, "1", "1", "1", str(50000 + i), "1", 0, "1", 1, "1", "1", "0"]
        for i in range(n)
    ]


def _json(payload) -> httpx.Response:
    return httpx.Response(200, text=json.dumps(payload))


def _gateway(handler, **overrides) -> ProviderGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ProviderGateway(fetcher=HttpFetcher(client=client), config=DashboardSettings(**overrides))


def _series(n: int, close: float = 60000.0) -> HistoricalSeries:
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return HistoricalSeries(
        points=[
            PricePoint(date=(start + timedelta(days=i)).strftime("%Y-%m-%d"), close=close)
            for i in range(n)
        ],
        source="fake",
    )


class FakeGateway:
    """固定返回值的网关替身，记录调用次数"""

    def __init__(self, price: float = 65000.0, series_len: int = 365):
        self.price = price
        self.series = _series(series_len)
        self.fail_price = False
        self.calls = Counter()
        self.history_days = []

    async def fetch_price(self) -> PriceQuote:
        self.calls["price"] += 1
        if self.fail_price:
            raise RuntimeError("assembler invariant violated")
        return PriceQuote(current=self.price, volume_24h=1e9, market_cap=self.price * 19_820_000, change_24h=1.5)

    async def fetch_supply(self) -> SupplyInfo:
        return SupplyInfo(circulating=19_820_000, total=21_000_000)

    async def fetch_global(self) -> GlobalMarket:
        return GlobalMarket(btc_dominance=57.3, total_market_cap=2.3e12)

    async def fetch_sentiment(self) -> Sentiment:
        return Sentiment(value=25, classification="Fear")

    async def fetch_chain_metrics(self) -> ChainMetrics:
        return ChainMetrics(hash_rate=7.2e11, difficulty=8.3e13)

    async def fetch_derivatives(self) -> Derivatives:
        return Derivatives(funding_rate_pct=0.01, open_interest=80_000, long_short_ratio=1.1)

    async def fetch_index_series(self, index_id: str):
        base = datetime(2024, 6, 1, tzinfo=timezone.utc).timestamp()
        return [IndexPoint(ts=base + i * 86_400, close=100.0 + i) for i in range(20)]

    async def fetch_historical_series(self, days: int = 365) -> HistoricalSeries:
        self.calls["history"] += 1
        return self.series

    async def fetch_price_history(self, days: int) -> HistoricalSeries:
        self.history_days.append(days)
        return self.series.tail(days)

    async def fetch_fear_greed_history(self, days: int):
        return {p.date: 10 for p in self.series.points[-1:]}


def _snapshot_service(gateway: FakeGateway, clock=None) -> SnapshotService:
    cache = ResultCache(clock=clock) if clock else ResultCache()
    return SnapshotService(
        gateway=gateway,
        series_cache=HistoricalSeriesCache(gateway.fetch_historical_series),
        result_cache=cache,
        config=DashboardSettings(),
    )


# ─────────────────────────────────────────────────────────
# 1. HTTP 获取原语
# ─────────────────────────────────────────────────────────

class TestHttpFetcher:
    def test_parse_json(self):
        assert HttpFetcher.parse_body('{"a": 1}') == {"a": 1}

    def test_parse_bare_number(self):
        assert HttpFetcher.parse_body("722371539.12\n") == 722371539.12

    def test_parse_garbage(self):
        with pytest.raises(ProviderError):
            HttpFetcher.parse_body("<html>rate limited</html>")

    @pytest.mark.asyncio
    async def test_http_error_is_provider_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(429)))
        fetcher = HttpFetcher(client=client)
        with pytest.raises(ProviderError):
            await fetcher.fetch("https://upstream.test/x", timeout=1)

    @pytest.mark.asyncio
    async def test_sends_user_agent(self):
        seen = {}

        def handler(request):
            seen["ua"] = request.headers.get("user-agent")
            return httpx.Response(200, text="1")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        assert await HttpFetcher(client=client, user_agent="ua-test").fetch("https://x.test", 1) == 1.0
        assert seen["ua"] == "ua-test"


# ─────────────────────────────────────────────────────────
# 2. 提供商网关：级联降级
# ─────────────────────────────────────────────────────────

class TestProviderGateway:
    @pytest.mark.asyncio
    async def test_malformed_first_provider_falls_through(self):
        hits = Counter()

        def handler(request):
            hits[request.url.host] += 1
            if request.url.host == "api.kraken.com":
                return httpx.Response(200, text="{not json")
            if request.url.host == "api.binance.com":
                return _json(_BINANCE_TICKER)
            return httpx.Response(500)

        gw = _gateway(handler)
        quote = await gw.fetch_price()
        assert quote.current == 65100.5
        assert quote.change_24h == 2.1
        assert quote.market_cap == 65100.5 * 19_820_000
        assert hits["api.kraken.com"] == 1
        assert hits["api.coingecko.com"] == 0

    @pytest.mark.asyncio
    async def test_first_provider_accepted(self):
        hits = Counter()

        def handler(request):
            hits[request.url.host] += 1
            return _json(_KRAKEN_TICKER)

        quote = await _gateway(handler).fetch_price()
        assert quote.current == 65000.0
        assert quote.volume_24h == 200.0 * 64500.0
        assert quote.change_24h == 1.56
        assert sum(hits.values()) == 1

    @pytest.mark.asyncio
    async def test_non_positive_price_rejected(self):
        def handler(request):
            if request.url.host == "api.kraken.com":
                payload = json.loads(json.dumps(_KRAKEN_TICKER))
                payload["result"]["XXBTZUSD"]["c"][0] = "0"
                return _json(payload)
            if request.url.host == "api.binance.com":
                return _json(_BINANCE_TICKER)
            return httpx.Response(500)

        assert (await _gateway(handler).fetch_price()).current == 65100.5

    @pytest.mark.asyncio
    async def test_timeout_is_soft_failure(self):
        async def handler(request):
            if request.url.host == "api.kraken.com":
                await asyncio.sleep(1)
            if request.url.host == "api.binance.com":
                return _json(_BINANCE_TICKER)
            return _json(_KRAKEN_TICKER)

        gw = _gateway(handler, PROVIDER_TIMEOUT=0.05)
        assert (await gw.fetch_price()).current == 65100.5
        kraken = gw.provider_status()["price"]["providers"][0]
        assert kraken["id"] == "kraken" and kraken["last_ok"] is False

    @pytest.mark.asyncio
    async def test_all_providers_fail_returns_default(self):
        gw = _gateway(lambda r: httpx.Response(503))
        quote = await gw.fetch_price()
        assert quote == PriceQuote()
        sentiment = await gw.fetch_sentiment()
        assert sentiment.value == 50 and sentiment.classification == "Neutral"
        dominance = await gw.fetch_global()
        assert dominance.btc_dominance == 56.0
        derivatives = await gw.fetch_derivatives()
        assert derivatives == Derivatives(funding_rate_pct=0.0, open_interest=0.0, long_short_ratio=1.0)
        supply = await gw.fetch_supply()
        assert supply.circulating == 19_820_000
        assert await gw.fetch_index_series("dxy") == []
        status = gw.provider_status()
        assert status["price"]["exhausted"] == 1

    @pytest.mark.asyncio
    async def test_provider_order_is_configurable(self):
        hits = []

        def handler(request):
            hits.append(request.url.host)
            return _json(_BINANCE_TICKER) if request.url.host == "api.binance.com" else _json(_KRAKEN_TICKER)

        gw = _gateway(handler, PRICE_PROVIDERS=["binance", "kraken"])
        assert (await gw.fetch_price()).current == 65100.5
        assert hits == ["api.binance.com"]

    @pytest.mark.asyncio
    async def test_unknown_provider_skipped(self):
        gw = _gateway(lambda r: _json(_KRAKEN_TICKER), PRICE_PROVIDERS=["nope", "kraken"])
        assert (await gw.fetch_price()).current == 65000.0

    @pytest.mark.asyncio
    async def test_chain_metrics_bare_numbers(self):
        def handler(request):
            if request.url.path == "/q/hashrate":
                return httpx.Response(200, text="722371539123")
            if request.url.path == "/q/getdifficulty":
                return httpx.Response(200, text="83148355189239.77")
            return httpx.Response(404)

        chain = await _gateway(handler).fetch_chain_metrics()
        assert chain.hash_rate == 722371539123.0
        assert chain.difficulty == 83148355189239.77

    @pytest.mark.asyncio
    async def test_chain_metrics_mempool_fallback(self):
        def handler(request):
            if request.url.host == "mempool.space":
                return _json({"currentHashrate": 7.2e20, "currentDifficulty": 8.3e13})
            return httpx.Response(500)

        chain = await _gateway(handler).fetch_chain_metrics()
        assert chain.hash_rate == pytest.approx(7.2e11)
        assert chain.difficulty == 8.3e13

    @pytest.mark.asyncio
    async def test_chain_metrics_mempool_fetched_once(self):
        hits = Counter()

        def handler(request):
            hits[request.url.host] += 1
            if request.url.host == "mempool.space":
                return _json({"currentHashrate": 7.2e20, "currentDifficulty": 8.3e13})
            return httpx.Response(500)

        gw = _gateway(handler)
        await gw.fetch_chain_metrics()
        assert hits["mempool.space"] == 1
        await gw.fetch_chain_metrics()
        assert hits["mempool.space"] == 2

    @pytest.mark.asyncio
    async def test_derivatives(self):
        def handler(request):
            path = request.url.path
            if path == "/fapi/v1/fundingRate":
                return _json([{"fundingRate": "0.0001"}])
            if path == "/fapi/v1/openInterest":
                return _json({"openInterest": "81234.5"})
            if path == "/futures/data/globalLongShortAccountRatio":
                return _json([{"longShortRatio": "1.25"}])
            return httpx.Response(404)

        d = await _gateway(handler).fetch_derivatives()
        assert d.funding_rate_pct == pytest.approx(0.01)
        assert d.open_interest == 81234.5
        assert d.long_short_ratio == 1.25

    @pytest.mark.asyncio
    async def test_sentiment(self):
        payload = {"data": [{"value": "23", "value_classification": "Extreme Fear", "timestamp": "1700000000"}]}
        s = await _gateway(lambda r: _json(payload)).fetch_sentiment()
        assert s == Sentiment(value=23, classification="Extreme Fear")

    @pytest.mark.asyncio
    async def test_index_series_skips_null_closes(self):
        payload = {"chart": {"result": [{
            "timestamp": [1, 2, 3],
            "indicators": {"quote": [{"close": [104.1, None, 104.5]}]},
        }]}}
        points = await _gateway(lambda r: _json(payload)).fetch_index_series("dxy")
        assert [p.close for p in points] == [104.1, 104.5]

    @pytest.mark.asyncio
    async def test_historical_series_primary(self):
        series = await _gateway(lambda r: _json(_kraken_ohlc(30))).fetch_historical_series(365)
        assert len(series) == 30
        assert series.source == "kraken"
        assert series.points[0].date == "2024-01-01"

    @pytest.mark.asyncio
    async def test_historical_series_short_result_falls_through(self):
        def handler(request):
            if request.url.host == "api.kraken.com":
                return _json(_kraken_ohlc(10))
            if request.url.host == "api.binance.com":
                return _json(_binance_klines(40))
            return httpx.Response(500)

        series = await _gateway(handler).fetch_historical_series(365)
        assert series.source == "binance"
        assert len(series) == 40

    @pytest.mark.asyncio
    async def test_price_history_accepts_short_series(self):
        series = await _gateway(lambda r: _json(_kraken_ohlc(5))).fetch_price_history(5)
        assert len(series) == 5

    @pytest.mark.asyncio
    async def test_fear_greed_history(self):
        payload = {"data": [
            {"value": "40", "timestamp": str(int(datetime(2024, 1, 2, tzinfo=timezone.utc).timestamp()))},
            {"value": "35", "timestamp": str(int(datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp()))},
        ]}
        mapping = await _gateway(lambda r: _json(payload)).fetch_fear_greed_history(2)
        assert mapping == {"2024-01-02": 40, "2024-01-01": 35}


# ─────────────────────────────────────────────────────────
# 3. 结果缓存
# ─────────────────────────────────────────────────────────

class TestResultCache:
    @pytest.mark.asyncio
    async def test_hit_within_ttl(self):
        now = [1000.0]
        cache = ResultCache(clock=lambda: now[0])
        calls = Counter()

        async def refresh():
            calls["n"] += 1
            return calls["n"]

        assert await cache.get_or_refresh("k", 60, refresh) == 1
        now[0] += 59
        assert await cache.get_or_refresh("k", 60, refresh) == 1
        now[0] += 2
        assert await cache.get_or_refresh("k", 60, refresh) == 2

    @pytest.mark.asyncio
    async def test_single_flight(self):
        cache = ResultCache()
        calls = Counter()
        release = asyncio.Event()

        async def refresh():
            calls["n"] += 1
            await release.wait()
            return {"value": calls["n"]}

        tasks = [asyncio.ensure_future(cache.get_or_refresh("k", 60, refresh)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)
        assert calls["n"] == 1
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_stale_serve_keeps_entry(self):
        now = [1000.0]
        cache = ResultCache(clock=lambda: now[0])

        async def ok():
            return "good"

        async def boom():
            raise RuntimeError("upstream down")

        await cache.get_or_refresh("k", 60, ok)
        now[0] += 120
        assert await cache.get_or_refresh("k", 60, boom) == "good"
        assert cache.peek("k").fetched_at == 1000.0
        assert cache.stats()["stale_serves"] == 1

    @pytest.mark.asyncio
    async def test_cold_start_failure_raises(self):
        async def boom():
            raise RuntimeError("upstream down")

        with pytest.raises(CacheRefreshError):
            await ResultCache().get_or_refresh("k", 60, boom)

    @pytest.mark.asyncio
    async def test_invalidate_and_clear(self):
        cache = ResultCache()

        async def ok():
            return 1

        await cache.get_or_refresh("a", 60, ok)
        await cache.get_or_refresh("b", 60, ok)
        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        assert cache.clear() == 1
        assert cache.stats()["entries"] == {}


class TestHistoricalSeriesCache:
    @pytest.mark.asyncio
    async def test_refresh_on_ttl(self):
        now = [0.0]
        gw = FakeGateway(series_len=40)
        cache = HistoricalSeriesCache(gw.fetch_historical_series, ttl=1800, clock=lambda: now[0])
        assert len(await cache.get(30)) == 40
        now[0] += 1799
        await cache.get()
        assert gw.calls["history"] == 1
        now[0] += 2
        await cache.get()
        assert gw.calls["history"] == 2

    @pytest.mark.asyncio
    async def test_short_series_rejected(self):
        gw = FakeGateway(series_len=40)
        cache = HistoricalSeriesCache(gw.fetch_historical_series, ttl=0)
        first = await cache.get()
        gw.series = _series(5)
        assert await cache.get() is first

    @pytest.mark.asyncio
    async def test_empty_when_never_loaded(self):
        gw = FakeGateway(series_len=3)
        cache = HistoricalSeriesCache(gw.fetch_historical_series)
        assert len(await cache.get()) == 0
        await cache.get()
        assert gw.calls["history"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_readers_share_refresh(self):
        gw = FakeGateway(series_len=40)
        cache = HistoricalSeriesCache(gw.fetch_historical_series)
        await asyncio.gather(*(cache.get() for _ in range(5)))
        assert gw.calls["history"] == 1


# ─────────────────────────────────────────────────────────
# 4. 快照服务
# ─────────────────────────────────────────────────────────

class TestSnapshotService:
    def test_portfolio_valuation(self):
        p = build_portfolio(65000, 982, 65188)
        assert p.current_value == 63_830_000
        assert p.invested == 64_014_616
        assert p.pnl_usd == -184_616
        assert p.pnl_percent == -0.29

    def test_portfolio_zero_cost(self):
        assert build_portfolio(65000, 0, 0).pnl_percent == 0.0

    @pytest.mark.asyncio
    async def test_end_to_end(self):
        svc = _snapshot_service(FakeGateway(price=65000.0))
        snap = await svc.get_snapshot()
        assert snap.price.current == 65000.0
        assert snap.portfolio.current_value == 63_830_000
        assert snap.portfolio.pnl_usd == -184_616
        assert len(snap.indicators) == 15
        assert 0 <= snap.composite.score <= 100
        assert snap.degraded == []
        assert snap.indicators["fear_greed"].signal == Signal.BUY
        assert all(ind.id == key for key, ind in snap.indicators.items())

    @pytest.mark.asyncio
    async def test_degraded_flags(self):
        gw = FakeGateway(price=0.0, series_len=0)
        snap = await _snapshot_service(gw).build_snapshot()
        assert "price" in snap.degraded and "history" in snap.degraded
        assert snap.portfolio.current_value == 0

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self):
        gw = FakeGateway()
        svc = _snapshot_service(gw)
        first = await svc.get_snapshot()
        second = await svc.get_snapshot()
        assert first is second
        assert gw.calls["price"] == 1

    @pytest.mark.asyncio
    async def test_stale_snapshot_on_cycle_failure(self):
        now = [1000.0]
        gw = FakeGateway()
        svc = _snapshot_service(gw, clock=lambda: now[0])
        first = await svc.get_snapshot()
        now[0] += 61
        gw.fail_price = True
        second = await svc.get_snapshot()
        assert second is first
        assert second.updated_at == first.updated_at
        assert svc._cache.peek(SNAPSHOT_KEY).fetched_at == 1000.0

    @pytest.mark.asyncio
    async def test_cold_start_cycle_failure(self):
        gw = FakeGateway()
        gw.fail_price = True
        with pytest.raises(CacheRefreshError):
            await _snapshot_service(gw).get_snapshot()

    @pytest.mark.asyncio
    async def test_unknown_price_keeps_previous_snapshot(self):
        now = [1000.0]
        gw = FakeGateway(price=65000.0)
        svc = _snapshot_service(gw, clock=lambda: now[0])
        first = await svc.get_snapshot()
        now[0] += 61
        gw.price = 0.0
        second = await svc.get_snapshot()
        assert second is first
        assert second.composite == first.composite
        assert second.portfolio.pnl_percent == -0.29
        assert svc._cache.stats()["stale_serves"] == 1

    @pytest.mark.asyncio
    async def test_unknown_price_cold_start_skips_price_indicators(self):
        from dashboard_service.layers.analysis import PRICE_DEPENDENT
        from dashboard_service.layers.scoring import score_indicators
        svc = _snapshot_service(FakeGateway(price=0.0, series_len=365))
        snap = await svc.get_snapshot()
        assert "price" in snap.degraded
        assert not PRICE_DEPENDENT & set(snap.indicators)
        assert len(snap.indicators) == 15 - len(PRICE_DEPENDENT)
        assert snap.composite == score_indicators(snap.indicators, DashboardSettings().INDICATOR_WEIGHTS)
        assert snap.portfolio.current_value == 0
        assert snap.portfolio.pnl_usd == 0
        assert snap.portfolio.pnl_percent == 0.0


# ─────────────────────────────────────────────────────────
# 5. 历史区间服务
# ─────────────────────────────────────────────────────────

class TestHistoryService:
    def test_clamp_days(self):
        assert clamp_days(None) == 30
        assert clamp_days(0) == 1
        assert clamp_days(-5) == 1
        assert clamp_days(1000) == 365
        assert clamp_days(90) == 90

    @pytest.mark.asyncio
    async def test_rows_and_cache_per_days(self):
        gw = FakeGateway(series_len=100)
        svc = HistoryService(gateway=gw, result_cache=ResultCache(), config=DashboardSettings())
        rows = await svc.get_history(7)
        assert len(rows) == 7
        assert rows[-1].fear_greed == 10 and rows[-1].buy_score == 90
        await svc.get_history(7)
        await svc.get_history(1000)
        assert gw.history_days == [7, 365]

    def test_parse_days(self):
        assert parse_days(None) == 30
        assert parse_days("abc") == 30
        assert parse_days("0") == 30
        assert parse_days("12abc") == 12
        assert parse_days("-5") == 1
        assert parse_days("5000") == 365

    @pytest.mark.asyncio
    async def test_empty_refresh_keeps_cached_rows(self):
        now = [1000.0]
        gw = FakeGateway(series_len=100)
        svc = HistoryService(
            gateway=gw, result_cache=ResultCache(clock=lambda: now[0]), config=DashboardSettings()
        )
        first = await svc.get_history(30)
        assert len(first) == 30
        now[0] += 3601
        gw.series = HistoricalSeries()
        assert await svc.get_history(30) is first
        assert gw.history_days == [30, 30]

    @pytest.mark.asyncio
    async def test_empty_cold_start_raises(self):
        gw = FakeGateway(series_len=0)
        svc = HistoryService(gateway=gw, result_cache=ResultCache(), config=DashboardSettings())
        with pytest.raises(CacheRefreshError):
            await svc.get_history(30)


# ─────────────────────────────────────────────────────────
# 6. HTTP 路由测试（TestClient）
# ─────────────────────────────────────────────────────────

@pytest.fixture(scope="module")
def client():
    from dashboard_service.main import app
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def app_overrides():
    from dashboard_service.main import app
    yield app.dependency_overrides
    app.dependency_overrides.clear()


class TestHealthRoutes:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200 and r.json()["data"]["status"] == "ok"

    def test_healthz(self, client):
        assert client.get("/healthz").json()["status"] == "ok"

    def test_root(self, client):
        body = client.get("/").json()
        assert "version" in body and "docs" in body

    def test_process_time_header(self, client):
        assert "X-Process-Time" in client.get("/healthz").headers


class TestDashboardRoutes:
    def test_all(self, client, app_overrides):
        from dashboard_service.services.snapshot_service import get_snapshot_service
        svc = _snapshot_service(FakeGateway())
        app_overrides[get_snapshot_service] = lambda: svc
        r = client.get("/api/all")
        assert r.status_code == 200
        body = r.json()
        assert body["price"]["current"] == 65000.0
        assert body["portfolio"]["pnl_usd"] == -184616
        assert body["indicators"]["rsi"]["signal"] in {s.value for s in Signal}
        assert "compression" not in body["indicators"]["rsi"]
        assert body["indicators"]["difficulty_ribbon"]["compression"] is True
        assert set(body["composite"]) == {"score", "signal"}

    def test_all_cold_start_failure(self, client, app_overrides):
        from dashboard_service.services.snapshot_service import get_snapshot_service
        gw = FakeGateway()
        gw.fail_price = True
        svc = _snapshot_service(gw)
        app_overrides[get_snapshot_service] = lambda: svc
        r = client.get("/api/all")
        assert r.status_code == 500
        assert r.json()["error"] == "Failed to fetch data"

    def test_historical(self, client, app_overrides):
        from dashboard_service.services.history_service import get_history_service
        gw = FakeGateway(series_len=400)
        svc = HistoryService(gateway=gw, result_cache=ResultCache(), config=DashboardSettings())
        app_overrides[get_history_service] = lambda: svc
        r = client.get("/api/historical", params={"days": 5000})
        assert r.status_code == 200
        assert len(r.json()["data"]) == 365
        r = client.get("/api/historical")
        assert len(r.json()["data"]) == 30
        r = client.get("/api/historical", params={"days": "abc"})
        assert r.status_code == 200
        assert len(r.json()["data"]) == 30
        assert gw.history_days == [365, 30]


class TestProviderRoutes:
    def test_providers(self, client, app_overrides):
        from dashboard_service.layers.acquisition import get_provider_gateway
        gw = _gateway(lambda r: httpx.Response(500))
        app_overrides[get_provider_gateway] = lambda: gw
        r = client.get("/api/providers")
        assert r.status_code == 200
        price = r.json()["data"]["data_types"]["price"]
        assert price["order"] == ["kraken", "binance", "coingecko", "blockchain_info"]
        assert price["providers"][0]["priority"] == 1


class TestCacheRoutes:
    def test_stats_and_clear(self, client, app_overrides):
        from dashboard_service.layers.cache import get_result_cache
        from dashboard_service.services.snapshot_service import get_snapshot_service
        svc = _snapshot_service(FakeGateway())
        cache = svc._cache
        app_overrides[get_snapshot_service] = lambda: svc
        app_overrides[get_result_cache] = lambda: cache
        client.get("/api/all")
        stats = client.get("/api/cache/stats").json()["data"]
        assert SNAPSHOT_KEY in stats["results"]["entries"]
        assert stats["series"]["points"] == 365
        r = client.post("/api/cache/clear", json={"key": SNAPSHOT_KEY})
        assert r.json()["data"]["removed"] == 1
        assert cache.peek(SNAPSHOT_KEY) is None
