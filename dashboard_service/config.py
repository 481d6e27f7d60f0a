"""
数据服务配置模块
支持从环境变量 / .env 读取配置；提供商顺序、指标权重、持仓等均为外部常量
"""

from functools import lru_cache
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_weights() -> Dict[str, int]:
    """综合评分默认权重表（指标 id → 正整数权重）"""
    return {
        "mvrv_approx": 15,
        "puell_multiple": 8,
        "stock_to_flow": 10,
        "difficulty_ribbon": 5,
        "hash_rate": 3,
        "fear_greed": 12,
        "rsi": 10,
        "ma_200_position": 10,
        "dxy": 7,
        "sp500": 3,
        "halving_cycle": 7,
        "btc_dominance": 3,
        "funding_rate": 4,
        "long_short_ratio": 3,
    }


class DashboardSettings(BaseSettings):
    """数据服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=5000)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── 持仓配置 ──────────────────────────────────────────
    HOLDINGS_BTC: float = Field(default=982)
    HOLDINGS_AVG_PRICE: float = Field(default=65188)

    @property
    def HOLDINGS_INVESTED(self) -> float:
        return self.HOLDINGS_BTC * self.HOLDINGS_AVG_PRICE

    # ── 供应量常量 ────────────────────────────────────────
    CIRCULATING_SUPPLY: float = Field(default=19_820_000)
    TOTAL_SUPPLY: float = Field(default=21_000_000)

    # ── 数据提供商顺序（从前往后依次尝试） ─────────────────
    PRICE_PROVIDERS: List[str] = Field(
        default_factory=lambda: ["kraken", "binance", "coingecko", "blockchain_info"]
    )
    HISTORY_PROVIDERS: List[str] = Field(
        default_factory=lambda: ["kraken", "binance", "coingecko"]
    )
    SUPPLY_PROVIDERS: List[str] = Field(default_factory=lambda: ["blockchain_info"])
    SENTIMENT_PROVIDERS: List[str] = Field(default_factory=lambda: ["alternative_me"])
    DOMINANCE_PROVIDERS: List[str] = Field(default_factory=lambda: ["coingecko"])
    CHAIN_PROVIDERS: List[str] = Field(
        default_factory=lambda: ["blockchain_info", "mempool"]
    )
    DERIVATIVES_PROVIDERS: List[str] = Field(
        default_factory=lambda: ["binance", "bybit"]
    )
    INDEX_PROVIDERS: List[str] = Field(default_factory=lambda: ["yahoo"])

    # ── 评分权重 ──────────────────────────────────────────
    INDICATOR_WEIGHTS: Dict[str, int] = Field(default_factory=_default_weights)

    # ── 超时配置（秒） ─────────────────────────────────────
    PROVIDER_TIMEOUT: float = Field(default=10.0)
    HISTORY_TIMEOUT: float = Field(default=15.0)   # K 线等大报文
    INDEX_TIMEOUT: float = Field(default=5.0)      # DXY / S&P 500
    USER_AGENT: str = Field(default="BTC-Dashboard/3.5")

    # ── 缓存配置（秒） ─────────────────────────────────────
    SNAPSHOT_TTL: int = Field(default=60)
    SERIES_TTL: int = Field(default=1800)
    HISTORICAL_RANGE_TTL: int = Field(default=3600)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")


@lru_cache
def get_settings() -> DashboardSettings:
    """获取全局配置（单例）"""
    return DashboardSettings()


settings = get_settings()
