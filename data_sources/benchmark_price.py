"""
白银基准价采集器（上海金交所 Ag99.99 等）
统一输出 人民币/克 与 美元/盎司，并保留单位换算步骤与原始返回
"""
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from datetime import date

from config import AppSettings
from data_sources.base import make_request, fetch_json, HttpStatusError
from data_sources.providers import ProviderNotConfigured, run_with_fallback, select_providers
from data_sources.result import Outcome
from database.records import BenchmarkPriceRecord
from utils.logger import logger
from utils.units import (
    TROY_OUNCE_TO_GRAM,
    cny_per_gram_to_usd_per_oz,
    usd_per_oz_to_cny_per_gram,
    per_kg_to_per_gram,
    invert_rate,
)
from validator import price_validator


METALS_API_URL = "https://metals-api.com/api/latest"
TWELVE_DATA_URL = "https://api.twelvedata.com/price"


@dataclass
class BenchmarkContext:
    """
    基准价查询上下文

    usd_cny 为必需输入；spot_usd_per_oz 仅用于 "现货 + 溢价" 估算
    """
    target_date: date
    usd_cny: float
    spot_usd_per_oz: Optional[float] = None
    settings: AppSettings = field(default_factory=AppSettings)


def _record(
    ctx: BenchmarkContext,
    cny_per_gram: float,
    usd_per_oz: float,
    provider: str,
    steps: List[str],
    raw_payload: Optional[Dict[str, Any]],
    is_estimated: bool = False,
) -> BenchmarkPriceRecord:
    return BenchmarkPriceRecord(
        date=ctx.target_date.isoformat(),
        price_cny_per_gram=round(cny_per_gram, 4),
        price_usd_per_oz=round(usd_per_oz, 4),
        fx_rate_used=ctx.usd_cny,
        provider=provider,
        is_estimated=is_estimated,
        conversion_steps=steps,
        raw_payload=raw_payload,
    )


# ======================
# 各数据源
# ======================
def _from_sge(ctx: BenchmarkContext) -> Optional[BenchmarkPriceRecord]:
    """
    上海黄金交易所历史行情 API

    返回 {"time": [[date, open, close, low, high], ...]}，按日期升序，
    Ag99.99 报价单位为 元/千克
    """
    cfg = ctx.settings.benchmark
    headers = {
        "Accept": "text/html, */*; q=0.01",
        "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
        "Referer": "https://www.sge.com.cn/sjzx/mrhq",
        "X-Requested-With": "XMLHttpRequest",
    }
    response = make_request(
        cfg.sge_url,
        method="POST",
        headers=headers,
        data={"instid": cfg.instrument},
        network=ctx.settings.network,
    )
    if response.status_code != 200:
        raise HttpStatusError(response.status_code, cfg.sge_url)

    time_data = response.json().get("time", [])
    date_str = ctx.target_date.isoformat()
    row = next((r for r in reversed(time_data) if r and r[0] == date_str), None)
    if row is None:
        # 目标日期无数据（非交易日或尚未更新）
        logger.info(f"[基准价采集] SGE {cfg.instrument} 无 {date_str} 数据")
        return None

    close = float(row[2])
    steps = [f"SGE {cfg.instrument} 收盘价: {close} CNY/{cfg.quoted_unit}"]
    if cfg.quoted_unit == "kg":
        cny_per_gram = per_kg_to_per_gram(close)
        steps.append(f"千克转克: {close} / 1000 = {cny_per_gram:.4f} CNY/g")
    else:
        cny_per_gram = close

    usd_per_oz = cny_per_gram_to_usd_per_oz(cny_per_gram, ctx.usd_cny)
    steps.append(
        f"转换为 USD/oz: ({cny_per_gram:.4f} * {TROY_OUNCE_TO_GRAM}) / {ctx.usd_cny} = {usd_per_oz:.4f}"
    )
    raw = {"instrument": cfg.instrument, "row": row}
    return _record(ctx, cny_per_gram, usd_per_oz, "sge", steps, raw)


def _from_metals_api(ctx: BenchmarkContext) -> Optional[BenchmarkPriceRecord]:
    """metals-api 以 CNY 为基准: 1 CNY = ? oz XAG"""
    api_key = ctx.settings.credentials.metals_api_key
    if not api_key:
        raise ProviderNotConfigured("未配置 metals_api_key")

    metal = ctx.settings.market.metal
    steps = [f"请求 metals-api.com/api/latest?base=CNY&symbols={metal}"]
    data = fetch_json(
        METALS_API_URL,
        params={"access_key": api_key, "base": "CNY", "symbols": metal},
        network=ctx.settings.network,
    )
    oz_per_cny = (data.get("rates") or {}).get(metal)
    if not oz_per_cny:
        return None

    steps.append(f"原始返回: 1 CNY = {oz_per_cny} oz {metal}")
    cny_per_oz = invert_rate(float(oz_per_cny))
    steps.append(f"取倒数: 1 oz {metal} = {cny_per_oz:.2f} CNY")
    cny_per_gram = cny_per_oz / TROY_OUNCE_TO_GRAM
    steps.append(f"转换为克: {cny_per_oz:.2f} / {TROY_OUNCE_TO_GRAM} = {cny_per_gram:.4f} CNY/g")
    usd_per_oz = cny_per_gram_to_usd_per_oz(cny_per_gram, ctx.usd_cny)
    steps.append(
        f"转换为 USD/oz: ({cny_per_gram:.4f} * {TROY_OUNCE_TO_GRAM}) / {ctx.usd_cny} = {usd_per_oz:.4f}"
    )
    return _record(ctx, cny_per_gram, usd_per_oz, "metals_api", steps, data)


def _from_twelve_data(ctx: BenchmarkContext) -> Optional[BenchmarkPriceRecord]:
    """TwelveData XAG/USD，直接返回美元/盎司"""
    api_key = ctx.settings.credentials.twelve_data_api_key
    if not api_key:
        raise ProviderNotConfigured("未配置 twelve_data_api_key")

    symbol = f"{ctx.settings.market.metal}/USD"
    steps = [f"请求 twelvedata.com/price?symbol={symbol}"]
    data = fetch_json(TWELVE_DATA_URL, params={"symbol": symbol, "apikey": api_key}, network=ctx.settings.network)
    if not data.get("price"):
        return None

    usd_per_oz = float(data["price"])
    steps.append(f"原始返回: {symbol} = {usd_per_oz} USD/oz")
    cny_per_gram = usd_per_oz_to_cny_per_gram(usd_per_oz, ctx.usd_cny)
    steps.append(
        f"转换为 CNY/g: ({usd_per_oz} * {ctx.usd_cny}) / {TROY_OUNCE_TO_GRAM} = {cny_per_gram:.4f}"
    )
    return _record(ctx, cny_per_gram, usd_per_oz, "twelve_data", steps, data)


def _from_manual(ctx: BenchmarkContext) -> Optional[BenchmarkPriceRecord]:
    cny_per_gram = ctx.settings.credentials.manual_benchmark_cny_per_gram
    if cny_per_gram is None:
        raise ProviderNotConfigured("未配置 manual_benchmark_cny_per_gram")

    steps = [f"手工配置价格: {cny_per_gram} CNY/g"]
    usd_per_oz = cny_per_gram_to_usd_per_oz(cny_per_gram, ctx.usd_cny)
    steps.append(
        f"转换为 USD/oz: ({cny_per_gram} * {TROY_OUNCE_TO_GRAM}) / {ctx.usd_cny} = {usd_per_oz:.4f}"
    )
    raw = {"price": cny_per_gram, "currency": "CNY", "unit": "g"}
    return _record(ctx, cny_per_gram, usd_per_oz, "manual", steps, raw, is_estimated=True)


def _from_spot_premium(ctx: BenchmarkContext) -> Optional[BenchmarkPriceRecord]:
    """现货价 + 上海溢价估算"""
    if ctx.spot_usd_per_oz is None:
        logger.info("[基准价采集] 无现货价，无法估算")
        return None

    premium = ctx.settings.credentials.benchmark_premium_percent
    factor = 1 + premium / 100
    steps = [
        f"现货价: {ctx.spot_usd_per_oz} USD/oz",
        f"上海溢价: {premium}%",
    ]
    usd_per_oz = ctx.spot_usd_per_oz * factor
    steps.append(f"估算基准价: {ctx.spot_usd_per_oz} * {factor} = {usd_per_oz:.4f} USD/oz")
    cny_per_gram = usd_per_oz_to_cny_per_gram(usd_per_oz, ctx.usd_cny)
    steps.append(
        f"转换为 CNY/g: ({usd_per_oz:.4f} * {ctx.usd_cny}) / {TROY_OUNCE_TO_GRAM} = {cny_per_gram:.4f}"
    )
    raw = {"spot_usd_per_oz": ctx.spot_usd_per_oz, "premium_percent": premium}
    return _record(ctx, cny_per_gram, usd_per_oz, "spot_premium", steps, raw, is_estimated=True)


BENCHMARK_PROVIDERS = {
    "sge": _from_sge,
    "metals_api": _from_metals_api,
    "twelve_data": _from_twelve_data,
    "manual": _from_manual,
    "spot_premium": _from_spot_premium,
}


# ======================
# 对外接口
# ======================
def fetch_benchmark_price(
    target_date: date,
    usd_cny: float,
    spot_usd_per_oz: Optional[float] = None,
    settings: Optional[AppSettings] = None,
) -> Outcome[BenchmarkPriceRecord]:
    """
    获取白银基准价

    Args:
        target_date: 目标日期
        usd_cny: 换算所用 USD/CNY 汇率（必需）
        spot_usd_per_oz: 现货价，仅 spot_premium 估算使用
        settings: 应用配置

    Returns:
        Outcome[BenchmarkPriceRecord]: USD/oz 超出合理区间的结果不会被返回
    """
    settings = settings or AppSettings()
    ctx = BenchmarkContext(
        target_date=target_date,
        usd_cny=usd_cny,
        spot_usd_per_oz=spot_usd_per_oz,
        settings=settings,
    )
    providers = select_providers(BENCHMARK_PROVIDERS, settings.providers.benchmark, label="基准价采集")
    result = run_with_fallback(
        providers,
        ctx,
        validator=price_validator(settings.validation),
        timeout=settings.network.provider_timeout,
        label="基准价采集",
    )
    if result.ok:
        record = result.value
        logger.info(
            f"[基准价采集] {record['provider']}: {record['price_cny_per_gram']} CNY/g = "
            f"{record['price_usd_per_oz']} USD/oz (估算={record['is_estimated']})"
        )
    return result.to_outcome()
