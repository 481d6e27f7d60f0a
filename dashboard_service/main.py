"""
BTC Dashboard 数据服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn dashboard_service.main:app --host 0.0.0.0 --port 5000
    python -m dashboard_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dashboard_service import __version__
from dashboard_service.config import settings
from dashboard_service.layers.acquisition import get_provider_gateway
from dashboard_service.layers.analysis import get_analysis_layer
from dashboard_service.routers import cache, dashboard, health, providers

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    # 权重表必须与指标注册表一致，否则拒绝启动
    get_analysis_layer().validate_weights(settings.INDICATOR_WEIGHTS)

    logger.info("=" * 50)
    logger.info(f"🚀 BTC Dashboard DataService v{__version__} 启动中")
    logger.info(f"   持仓      : {settings.HOLDINGS_BTC:g} BTC @ ${settings.HOLDINGS_AVG_PRICE:,.0f}")
    logger.info(f"   投入      : ${settings.HOLDINGS_INVESTED:,.0f}")
    logger.info(f"   价格来源  : {' → '.join(settings.PRICE_PROVIDERS)}")
    logger.info(
        f"   缓存 TTL  : 快照 {settings.SNAPSHOT_TTL}s / 序列 {settings.SERIES_TTL}s"
        f" / 历史区间 {settings.HISTORICAL_RANGE_TTL}s"
    )
    logger.info("=" * 50)

    yield

    logger.info("🔄 数据服务正在关闭...")
    await get_provider_gateway().close()
    logger.info("✅ 数据服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="BTC Dashboard 数据服务",
    description=(
        "聚合多家行情 / 链上数据提供商的 BTC 指标看板后端：\n"
        "- 🌐 多提供商级联降级（Kraken / Binance / CoinGecko / Blockchain.info ...）\n"
        "- 📈 链上与技术指标（MVRV / Puell / S2F / RSI / MA200 ...）\n"
        "- 🧮 加权综合买入评分\n"
        "- 🗄️ 快照缓存（单飞刷新，失败时返回旧值）\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 按顺序尝试各数据提供商\n"
        "Cache Layer        ← 快照缓存 + 365 日序列缓存\n"
        "Processing Layer   ← K 线规范化\n"
        "Analysis Layer     ← 指标计算与信号分级\n"
        "Scoring Layer      ← 加权综合评分\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(dashboard.router)
app.include_router(providers.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "BTC Dashboard DataService",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "dashboard_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
