"""
白银现货价采集器
按配置顺序尝试 手工覆盖 / GoldAPI / metals-api / metals.dev / Yahoo Finance（美元/盎司）
"""
from dataclasses import dataclass, field
from typing import Optional
from datetime import date

from config import AppSettings
from data_sources.base import make_request, fetch_json, HttpStatusError
from data_sources.providers import ProviderNotConfigured, run_with_fallback, select_providers
from data_sources.result import Outcome
from database.records import SpotPriceRecord
from utils.logger import logger
from utils.market_date import to_market_date
from validator import price_validator


GOLDAPI_BASE_URL = "https://www.goldapi.io/api"
METALS_API_URL = "https://metals-api.com/api/latest"
METALS_DEV_URL = "https://api.metals.dev/v1/latest"
YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/SI=F"

_GOLDAPI_ERRORS = {
    401: "API Key 无效或已过期",
    403: "API Key 无权限",
    429: "API 请求次数超限",
}


@dataclass
class SpotContext:
    target_date: date
    settings: AppSettings = field(default_factory=AppSettings)

    @property
    def is_today(self) -> bool:
        return self.target_date == to_market_date(None, self.settings.market.timezone)


def _record(ctx: SpotContext, price: float, contract: str, source: str) -> SpotPriceRecord:
    return SpotPriceRecord(
        date=ctx.target_date.isoformat(),
        price_usd_per_oz=float(price),
        contract=contract,
        source=source,
    )


# ======================
# 各数据源
# ======================
def _from_manual(ctx: SpotContext) -> Optional[SpotPriceRecord]:
    price = ctx.settings.credentials.manual_spot_usd_per_oz
    if price is None:
        raise ProviderNotConfigured("未配置 manual_spot_usd_per_oz")
    return _record(ctx, price, "Spot (manual)", "manual")


def _from_goldapi(ctx: SpotContext) -> Optional[SpotPriceRecord]:
    """
    GoldAPI: /XAG/USD 获取最新数据，/XAG/USD/YYYYMMDD 获取历史数据

    返回格式：
    {
        "timestamp": 1234567890,
        "metal": "XAG",
        "currency": "USD",
        "price": 31.25,
        ...
    }
    """
    api_key = ctx.settings.credentials.goldapi_key
    if not api_key:
        raise ProviderNotConfigured("未配置 goldapi_key")

    metal = ctx.settings.market.metal
    if ctx.is_today:
        url = f"{GOLDAPI_BASE_URL}/{metal}/USD"
    else:
        url = f"{GOLDAPI_BASE_URL}/{metal}/USD/{ctx.target_date.strftime('%Y%m%d')}"

    headers = {
        "x-access-token": api_key,
        "Content-Type": "application/json",
    }
    response = make_request(url, headers=headers, network=ctx.settings.network)

    if response.status_code == 404:
        logger.info(f"[现货价采集] GoldAPI 未找到 {ctx.target_date} 的数据（可能为非交易日）")
        return None
    if response.status_code != 200:
        reason = _GOLDAPI_ERRORS.get(response.status_code, f"HTTP {response.status_code}")
        logger.warning(f"[现货价采集] GoldAPI 请求失败: {reason}")
        raise HttpStatusError(response.status_code, url)

    price = response.json().get("price")
    if price is None:
        return None
    return _record(ctx, price, f"{metal}/USD", "goldapi")


def _from_metals_api(ctx: SpotContext) -> Optional[SpotPriceRecord]:
    """metals-api 返回 1 USD = ? oz，需要取倒数"""
    api_key = ctx.settings.credentials.metals_api_key
    if not api_key:
        raise ProviderNotConfigured("未配置 metals_api_key")

    metal = ctx.settings.market.metal
    data = fetch_json(
        METALS_API_URL,
        params={"access_key": api_key, "base": "USD", "symbols": metal},
        network=ctx.settings.network,
    )
    oz_per_usd = (data.get("rates") or {}).get(metal)
    if not oz_per_usd:
        return None
    return _record(ctx, 1 / float(oz_per_usd), "Spot (metals-api)", "metals_api")


def _from_metals_dev(ctx: SpotContext) -> Optional[SpotPriceRecord]:
    """metals.dev 免费演示 key，直接返回美元/盎司"""
    data = fetch_json(
        METALS_DEV_URL,
        params={"api_key": "demo", "currency": "USD", "unit": "toz"},
        network=ctx.settings.network,
    )
    price = (data.get("metals") or {}).get("silver")
    if price is None:
        return None
    return _record(ctx, price, "Spot (metals.dev)", "metals_dev")


def _from_yahoo(ctx: SpotContext) -> Optional[SpotPriceRecord]:
    """Yahoo Finance 白银期货 SI=F 最新成交价"""
    data = fetch_json(YAHOO_CHART_URL, network=ctx.settings.network)
    results = (data.get("chart") or {}).get("result") or []
    if not results:
        return None
    price = (results[0].get("meta") or {}).get("regularMarketPrice")
    if price is None:
        return None
    return _record(ctx, price, "SI=F", "yahoo")


SPOT_PROVIDERS = {
    "manual": _from_manual,
    "goldapi": _from_goldapi,
    "metals_api": _from_metals_api,
    "metals_dev": _from_metals_dev,
    "yahoo": _from_yahoo,
}


# ======================
# 对外接口
# ======================
def fetch_spot_price(target_date: date, settings: Optional[AppSettings] = None) -> Outcome[SpotPriceRecord]:
    """
    获取白银现货价（美元/盎司）

    返回值需通过价格区间校验，超出区间的结果被拒绝并尝试下一个数据源
    """
    settings = settings or AppSettings()
    ctx = SpotContext(target_date=target_date, settings=settings)
    providers = select_providers(SPOT_PROVIDERS, settings.providers.spot, label="现货价采集")
    result = run_with_fallback(
        providers,
        ctx,
        validator=price_validator(settings.validation),
        timeout=settings.network.provider_timeout,
        label="现货价采集",
    )
    return result.to_outcome()
