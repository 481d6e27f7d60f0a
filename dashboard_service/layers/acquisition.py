"""
Layer 1 – 数据获取层
每种数据类型维护一个有序的提供商列表（Kraken / Binance / CoinGecko / ...），
按顺序尝试，第一个通过校验的结果即被采用；全部失败时返回约定的中性默认值，
从不向上层抛出异常。
"""

import asyncio
import json
import logging
import math
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from dashboard_service.config import DashboardSettings, settings as default_settings
from dashboard_service.layers.processing import get_processing_layer
from dashboard_service.models.market import (
    ChainMetrics,
    Derivatives,
    GlobalMarket,
    HistoricalSeries,
    IndexPoint,
    PriceQuote,
    Sentiment,
    SupplyInfo,
)

logger = logging.getLogger(__name__)

_DAY_MS = 86_400_000

_INDEX_SYMBOLS = {
    "dxy": "DX-Y.NYB",
    "sp500": "^GSPC",
}


class ProviderError(Exception):
    """单个提供商调用失败（网络、超时、状态码、报文格式、取值非法）"""


# 报文结构异常（缺字段、类型不符、模型校验失败）同样视为软失败
_SOFT_ERRORS = (ProviderError, ValueError, TypeError, KeyError, IndexError, AttributeError)


@dataclass(frozen=True)
class ProviderResult:
    """一次提供商尝试的统一结果：value 与 error 二选一"""
    provider: str
    value: Any = None
    error: Optional[str] = None
    elapsed_ms: float = 0.0
    at: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


# ── HTTP 获取原语 ─────────────────────────────────────────

class HttpFetcher:
    """fetch(url, timeout) → JSON | 数字 | ProviderError"""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        user_agent: str = "BTC-Dashboard/3.5",
    ):
        self._client = client
        self._owns_client = client is None
        self._headers = {"User-Agent": user_agent, "Accept": "application/json"}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def fetch(
        self,
        url: str,
        timeout: float,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        client = self._get_client()
        try:
            response = await asyncio.wait_for(
                client.get(url, params=params, headers=self._headers, timeout=timeout),
                timeout=timeout,
            )
            response.raise_for_status()
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"超时（{timeout}s）") from exc
        except httpx.HTTPStatusError as exc:
            raise ProviderError(f"HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"请求错误: {exc}") from exc
        return self.parse_body(response.text)

    @staticmethod
    def parse_body(text: str) -> Any:
        """解析响应体；部分旧接口直接返回裸数字"""
        try:
            return json.loads(text)
        except ValueError:
            pass
        try:
            return float(text.strip())
        except ValueError:
            raise ProviderError(f"无法解析响应: {text[:100]}")

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


# ── 报文字段读取工具 ──────────────────────────────────────

def _num(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError) as exc:
        raise ProviderError(f"非数值字段: {value!r}") from exc
    if math.isnan(result) or math.isinf(result):
        raise ProviderError(f"非有限数值: {value!r}")
    return result


def _dig(data: Any, *path: Any) -> Any:
    """按路径读取嵌套字段，任一层缺失即视为报文异常"""
    node = data
    for key in path:
        try:
            node = node[key]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"缺少字段: {'.'.join(str(p) for p in path)}") from exc
    return node


Strategy = Callable[[], Awaitable[Any]]


class ProviderGateway:
    """提供商网关：封装多数据源，提供统一的级联降级拉取接口"""

    def __init__(
        self,
        fetcher: Optional[HttpFetcher] = None,
        config: Optional[DashboardSettings] = None,
    ):
        self._settings = config or default_settings
        self._fetcher = fetcher or HttpFetcher(user_agent=self._settings.USER_AGENT)
        self._proc = get_processing_layer()
        self._last_attempts: Dict[str, Dict[str, ProviderResult]] = {}
        self._exhausted: Counter = Counter()

    async def close(self) -> None:
        await self._fetcher.close()

    # ── 级联降级核心 ──────────────────────────────────────

    async def _cascade(
        self,
        data_type: str,
        order: List[str],
        registry: Dict[str, Strategy],
        validate: Callable[[Any], bool],
        default: Any,
        timeout: float,
    ) -> ProviderResult:
        """依次尝试 order 中的提供商，返回第一个通过校验的结果"""
        for provider in order:
            strategy = registry.get(provider)
            if strategy is None:
                logger.warning(f"[{data_type}] 未知提供商 {provider}，已跳过")
                continue
            started = time.perf_counter()
            try:
                value = await asyncio.wait_for(strategy(), timeout=timeout)
                if value is None or not validate(value):
                    raise ProviderError(f"取值未通过校验: {value!r}"[:160])
            except asyncio.TimeoutError:
                result = self._record(data_type, provider, started, error=f"超时（{timeout}s）")
            except _SOFT_ERRORS as exc:
                result = self._record(data_type, provider, started, error=str(exc) or type(exc).__name__)
            else:
                result = self._record(data_type, provider, started, value=value)
                logger.info(f"[{data_type}] 获取成功（来源：{provider}，{result.elapsed_ms:.0f}ms）")
                return result
            logger.warning(f"[{data_type}] 获取失败（来源：{provider}）: {result.error}")

        self._exhausted[data_type] += 1
        logger.error(f"[{data_type}] 所有提供商均失败，使用默认值")
        return ProviderResult(provider="default", value=default, error="exhausted", at=time.time())

    def _record(
        self,
        data_type: str,
        provider: str,
        started: float,
        value: Any = None,
        error: Optional[str] = None,
    ) -> ProviderResult:
        result = ProviderResult(
            provider=provider,
            value=value,
            error=error,
            elapsed_ms=(time.perf_counter() - started) * 1000,
            at=time.time(),
        )
        self._last_attempts.setdefault(data_type, {})[provider] = result
        return result

    def provider_status(self) -> Dict[str, Any]:
        """各数据类型的提供商顺序、最近一次尝试结果与耗尽次数"""
        s = self._settings
        orders = {
            "price": s.PRICE_PROVIDERS,
            "history": s.HISTORY_PROVIDERS,
            "supply": s.SUPPLY_PROVIDERS,
            "sentiment": s.SENTIMENT_PROVIDERS,
            "dominance": s.DOMINANCE_PROVIDERS,
            "hash_rate": s.CHAIN_PROVIDERS,
            "difficulty": s.CHAIN_PROVIDERS,
            "funding_rate": s.DERIVATIVES_PROVIDERS,
            "open_interest": s.DERIVATIVES_PROVIDERS,
            "long_short_ratio": s.DERIVATIVES_PROVIDERS,
            "dxy": s.INDEX_PROVIDERS,
            "sp500": s.INDEX_PROVIDERS,
        }
        status: Dict[str, Any] = {}
        for data_type, order in orders.items():
            attempts = self._last_attempts.get(data_type, {})
            status[data_type] = {
                "order": list(order),
                "exhausted": self._exhausted.get(data_type, 0),
                "providers": [
                    {
                        "id": name,
                        "priority": idx + 1,
                        "last_ok": attempts[name].ok if name in attempts else None,
                        "last_error": attempts[name].error if name in attempts else None,
                        "last_at": attempts[name].at if name in attempts else None,
                    }
                    for idx, name in enumerate(order)
                ],
            }
        return status

    # ── 当前价格 ──────────────────────────────────────────

    async def fetch_price(self) -> PriceQuote:
        registry = {
            "kraken": self._kraken_price,
            "binance": self._binance_price,
            "coingecko": self._coingecko_price,
            "blockchain_info": self._blockchain_info_price,
        }
        result = await self._cascade(
            "price",
            self._settings.PRICE_PROVIDERS,
            registry,
            validate=lambda q: q.current > 0,
            default=PriceQuote(),
            timeout=self._settings.PROVIDER_TIMEOUT,
        )
        return result.value

    def _estimated_cap(self, price: float) -> float:
        return price * self._settings.CIRCULATING_SUPPLY

    async def _kraken_price(self) -> PriceQuote:
        data = await self._fetcher.fetch(
            "https://api.kraken.com/0/public/Ticker",
            self._settings.PROVIDER_TIMEOUT,
            params={"pair": "XBTUSD"},
        )
        ticker = _dig(data, "result", "XXBTZUSD")
        price = _num(_dig(ticker, "c", 0))
        volume = _num(_dig(ticker, "v", 1)) * _num(_dig(ticker, "p", 1))
        open_ = _num(_dig(ticker, "o"))
        change = (price / open_ - 1) * 100 if open_ > 0 else 0.0
        return PriceQuote(
            current=price,
            volume_24h=max(volume, 0.0),
            market_cap=self._estimated_cap(price),
            change_24h=round(change, 2),
        )

    async def _binance_price(self) -> PriceQuote:
        data = await self._fetcher.fetch(
            "https://api.binance.com/api/v3/ticker/24hr",
            self._settings.PROVIDER_TIMEOUT,
            params={"symbol": "BTCUSDT"},
        )
        price = _num(_dig(data, "lastPrice"))
        return PriceQuote(
            current=price,
            volume_24h=_num(data.get("quoteVolume") or 0),
            market_cap=self._estimated_cap(price),
            change_24h=_num(data.get("priceChangePercent") or 0),
        )

    async def _coingecko_price(self) -> PriceQuote:
        data = await self._fetcher.fetch(
            "https://api.coingecko.com/api/v3/simple/price",
            self._settings.PROVIDER_TIMEOUT,
            params={
                "ids": "bitcoin",
                "vs_currencies": "usd",
                "include_24hr_vol": "true",
                "include_market_cap": "true",
                "include_24hr_change": "true",
            },
        )
        btc = _dig(data, "bitcoin")
        return PriceQuote(
            current=_num(btc.get("usd") or 0),
            volume_24h=_num(btc.get("usd_24h_vol") or 0),
            market_cap=_num(btc.get("usd_market_cap") or 0),
            change_24h=_num(btc.get("usd_24h_change") or 0),
        )

    async def _blockchain_info_price(self) -> PriceQuote:
        data = await self._fetcher.fetch(
            "https://blockchain.info/ticker", self._settings.PROVIDER_TIMEOUT
        )
        price = _num(_dig(data, "USD", "last"))
        return PriceQuote(current=price, market_cap=self._estimated_cap(price))

    # ── 情绪 / 供应 / 市占率 ──────────────────────────────

    async def fetch_sentiment(self) -> Sentiment:
        async def alternative_me() -> Sentiment:
            data = await self._fetcher.fetch(
                "https://api.alternative.me/fng/",
                self._settings.PROVIDER_TIMEOUT,
                params={"limit": 1},
            )
            item = _dig(data, "data", 0)
            return Sentiment(
                value=int(_num(_dig(item, "value"))),
                classification=item.get("value_classification") or "",
            )

        result = await self._cascade(
            "sentiment",
            self._settings.SENTIMENT_PROVIDERS,
            {"alternative_me": alternative_me},
            validate=lambda s: 0 <= s.value <= 100,
            default=Sentiment(),
            timeout=self._settings.PROVIDER_TIMEOUT,
        )
        return result.value

    async def fetch_supply(self) -> SupplyInfo:
        async def blockchain_info() -> SupplyInfo:
            satoshis = await self._fetcher.fetch(
                "https://blockchain.info/q/totalbc", self._settings.PROVIDER_TIMEOUT
            )
            return SupplyInfo(
                circulating=_num(satoshis) / 1e8, total=self._settings.TOTAL_SUPPLY
            )

        result = await self._cascade(
            "supply",
            self._settings.SUPPLY_PROVIDERS,
            {"blockchain_info": blockchain_info},
            validate=lambda s: 0 < s.circulating <= s.total,
            default=SupplyInfo(
                circulating=self._settings.CIRCULATING_SUPPLY,
                total=self._settings.TOTAL_SUPPLY,
            ),
            timeout=self._settings.PROVIDER_TIMEOUT,
        )
        return result.value

    async def fetch_global(self) -> GlobalMarket:
        async def coingecko() -> GlobalMarket:
            data = await self._fetcher.fetch(
                "https://api.coingecko.com/api/v3/global", self._settings.PROVIDER_TIMEOUT
            )
            body = _dig(data, "data")
            return GlobalMarket(
                btc_dominance=_num(_dig(body, "market_cap_percentage", "btc")),
                total_market_cap=_num((body.get("total_market_cap") or {}).get("usd") or 0),
            )

        result = await self._cascade(
            "dominance",
            self._settings.DOMINANCE_PROVIDERS,
            {"coingecko": coingecko},
            validate=lambda g: 0 < g.btc_dominance <= 100,
            default=GlobalMarket(),
            timeout=self._settings.PROVIDER_TIMEOUT,
        )
        return result.value

    # ── 链上数据 ──────────────────────────────────────────

    async def fetch_chain_metrics(self) -> ChainMetrics:
        timeout = self._settings.PROVIDER_TIMEOUT
        order = self._settings.CHAIN_PROVIDERS

        # 算力与难度来自同一接口，本周期内只请求一次
        mempool_task: Optional[asyncio.Task] = None

        async def mempool_field(field: str) -> float:
            nonlocal mempool_task
            if mempool_task is None:
                mempool_task = asyncio.ensure_future(self._fetcher.fetch(
                    "https://mempool.space/api/v1/mining/hashrate/3d", timeout
                ))
            data = await asyncio.shield(mempool_task)
            return _num(_dig(data, field))

        async def bc_hash_rate() -> float:
            return _num(await self._fetcher.fetch("https://blockchain.info/q/hashrate", timeout))

        async def bc_difficulty() -> float:
            return _num(await self._fetcher.fetch("https://blockchain.info/q/getdifficulty", timeout))

        async def mempool_hash_rate() -> float:
            # mempool.space 返回 H/s，统一换算为 GH/s
            return await mempool_field("currentHashrate") / 1e9

        async def mempool_difficulty() -> float:
            return await mempool_field("currentDifficulty")

        positive = lambda v: v > 0  # noqa: E731
        hash_rate, difficulty = await asyncio.gather(
            self._cascade(
                "hash_rate", order,
                {"blockchain_info": bc_hash_rate, "mempool": mempool_hash_rate},
                validate=positive, default=0.0, timeout=timeout,
            ),
            self._cascade(
                "difficulty", order,
                {"blockchain_info": bc_difficulty, "mempool": mempool_difficulty},
                validate=positive, default=0.0, timeout=timeout,
            ),
        )
        return ChainMetrics(hash_rate=hash_rate.value, difficulty=difficulty.value)

    # ── 衍生品数据 ────────────────────────────────────────

    async def fetch_derivatives(self) -> Derivatives:
        timeout = self._settings.PROVIDER_TIMEOUT
        order = self._settings.DERIVATIVES_PROVIDERS

        async def binance_funding() -> float:
            data = await self._fetcher.fetch(
                "https://fapi.binance.com/fapi/v1/fundingRate",
                timeout,
                params={"symbol": "BTCUSDT", "limit": 1},
            )
            return _num(_dig(data, 0).get("fundingRate") or 0) * 100

        async def binance_open_interest() -> float:
            data = await self._fetcher.fetch(
                "https://fapi.binance.com/fapi/v1/openInterest",
                timeout,
                params={"symbol": "BTCUSDT"},
            )
            return _num(_dig(data, "openInterest"))

        async def binance_long_short() -> float:
            data = await self._fetcher.fetch(
                "https://fapi.binance.com/futures/data/globalLongShortAccountRatio",
                timeout,
                params={"symbol": "BTCUSDT", "period": "1h", "limit": 1},
            )
            return _num(_dig(data, 0).get("longShortRatio") or 1.0)

        async def bybit_ticker() -> Dict[str, Any]:
            data = await self._fetcher.fetch(
                "https://api.bybit.com/v5/market/tickers",
                timeout,
                params={"category": "linear", "symbol": "BTCUSDT"},
            )
            return _dig(data, "result", "list", 0)

        async def bybit_funding() -> float:
            return _num(_dig(await bybit_ticker(), "fundingRate")) * 100

        async def bybit_open_interest() -> float:
            return _num(_dig(await bybit_ticker(), "openInterest"))

        async def bybit_long_short() -> float:
            data = await self._fetcher.fetch(
                "https://api.bybit.com/v5/market/account-ratio",
                timeout,
                params={"category": "linear", "symbol": "BTCUSDT", "period": "1h", "limit": 1},
            )
            row = _dig(data, "result", "list", 0)
            sell = _num(_dig(row, "sellRatio"))
            if sell <= 0:
                raise ProviderError("sellRatio 非正数")
            return _num(_dig(row, "buyRatio")) / sell

        funding, oi, ls_ratio = await asyncio.gather(
            self._cascade(
                "funding_rate", order,
                {"binance": binance_funding, "bybit": bybit_funding},
                validate=lambda v: math.isfinite(v), default=0.0, timeout=timeout,
            ),
            self._cascade(
                "open_interest", order,
                {"binance": binance_open_interest, "bybit": bybit_open_interest},
                validate=lambda v: v > 0, default=0.0, timeout=timeout,
            ),
            self._cascade(
                "long_short_ratio", order,
                {"binance": binance_long_short, "bybit": bybit_long_short},
                validate=lambda v: v > 0, default=1.0, timeout=timeout,
            ),
        )
        return Derivatives(
            funding_rate_pct=funding.value,
            open_interest=oi.value,
            long_short_ratio=ls_ratio.value,
        )

    # ── 外部指数（DXY / S&P 500） ─────────────────────────

    async def fetch_index_series(self, index_id: str) -> List[IndexPoint]:
        """获取外部指数近 1 个月日线；失败时返回空列表"""
        symbol = _INDEX_SYMBOLS[index_id]
        timeout = self._settings.INDEX_TIMEOUT

        async def yahoo() -> List[IndexPoint]:
            data = await self._fetcher.fetch(
                f"https://query1.finance.yahoo.com/v8/finance/chart/{symbol}",
                timeout,
                params={"range": "1mo", "interval": "1d"},
            )
            chart = _dig(data, "chart", "result", 0)
            timestamps = chart.get("timestamp") or []
            closes = _dig(chart, "indicators", "quote", 0).get("close") or []
            return [
                IndexPoint(ts=float(ts), close=float(close))
                for ts, close in zip(timestamps, closes)
                if close is not None
            ]

        result = await self._cascade(
            index_id,
            self._settings.INDEX_PROVIDERS,
            {"yahoo": yahoo},
            validate=lambda points: len(points) >= 2,
            default=[],
            timeout=timeout,
        )
        return result.value

    # ── 历史价格 ──────────────────────────────────────────

    async def fetch_historical_series(self, days: int = 365) -> HistoricalSeries:
        """指标计算用日线序列，长度需大于 10 才被接受"""
        return await self._fetch_candles("history", days, min_points=11)

    async def fetch_price_history(self, days: int) -> HistoricalSeries:
        """历史区间接口用日线序列，至少 1 条即被接受"""
        return await self._fetch_candles("history_range", days, min_points=1)

    async def _fetch_candles(
        self, data_type: str, days: int, min_points: int
    ) -> HistoricalSeries:
        timeout = self._settings.HISTORY_TIMEOUT
        end_ms = int(time.time() * 1000)
        start_ms = end_ms - days * _DAY_MS

        async def kraken() -> HistoricalSeries:
            data = await self._fetcher.fetch(
                "https://api.kraken.com/0/public/OHLC",
                timeout,
                params={"pair": "XBTUSD", "interval": 1440, "since": start_ms // 1000},
            )
            candles = _dig(data, "result", "XXBTZUSD")
            records = [{"ts": c[0], "close": c[4]} for c in candles]
            return self._proc.normalize_series(records, unit="s", source="kraken", limit=days)

        async def binance() -> HistoricalSeries:
            data = await self._fetcher.fetch(
                "https://api.binance.com/api/v3/klines",
                timeout,
                params={
                    "symbol": "BTCUSDT",
                    "interval": "1d",
                    "startTime": start_ms,
                    "endTime": end_ms,
                    "limit": days,
                },
            )
            if not isinstance(data, list):
                raise ProviderError("klines 报文不是列表")
            records = [{"ts": c[0], "close": c[4]} for c in data]
            return self._proc.normalize_series(records, unit="ms", source="binance", limit=days)

        async def coingecko() -> HistoricalSeries:
            data = await self._fetcher.fetch(
                "https://api.coingecko.com/api/v3/coins/bitcoin/market_chart",
                timeout,
                params={"vs_currency": "usd", "days": days, "interval": "daily"},
            )
            records = [{"ts": ts, "close": price} for ts, price in _dig(data, "prices")]
            return self._proc.normalize_series(records, unit="ms", source="coingecko", limit=days)

        result = await self._cascade(
            data_type,
            self._settings.HISTORY_PROVIDERS,
            {"kraken": kraken, "binance": binance, "coingecko": coingecko},
            validate=lambda series: len(series) >= min_points,
            default=HistoricalSeries(),
            timeout=timeout,
        )
        if result.ok:
            logger.info(f"[{data_type}] {result.provider}: 已加载 {len(result.value)} 条日线")
        return result.value

    async def fetch_fear_greed_history(self, days: int) -> Dict[str, int]:
        """恐惧贪婪指数历史：日期 → 数值；失败时返回空字典"""
        async def alternative_me() -> Dict[str, int]:
            data = await self._fetcher.fetch(
                "https://api.alternative.me/fng/",
                self._settings.PROVIDER_TIMEOUT,
                params={"limit": days},
            )
            mapping: Dict[str, int] = {}
            for item in _dig(data, "data"):
                ts = int(_num(_dig(item, "timestamp")))
                day = datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")
                mapping[day] = int(_num(_dig(item, "value")))
            return mapping

        result = await self._cascade(
            "fear_greed_history",
            self._settings.SENTIMENT_PROVIDERS,
            {"alternative_me": alternative_me},
            validate=lambda m: len(m) > 0,
            default={},
            timeout=self._settings.PROVIDER_TIMEOUT,
        )
        return result.value


# ── 模块级别单例 ──────────────────────────────────────────
_gateway: Optional[ProviderGateway] = None


def get_provider_gateway() -> ProviderGateway:
    global _gateway
    if _gateway is None:
        _gateway = ProviderGateway()
    return _gateway
