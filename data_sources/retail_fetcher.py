"""
零售价采集器
对每个 (经销商, 产品) 发现商品页、提取价格，并与现货价对比做合理性判定
"""
from typing import List, Optional, Sequence
from datetime import date

from config import AppSettings
from data_sources.base import make_request
from data_sources.fx_fetcher import fetch_fx_quote
from data_sources.result import ErrorKind, Outcome, failure, success
from data_sources.retail_config import RetailProvider, RetailProduct, load_retail_providers
from data_sources.retail_discovery import discover_product_url, extract_price
from database.records import RetailPriceRecord
from utils.logger import logger
from validator import check_retail_plausibility


# 核验状态
VERIFIED = "VERIFIED"
UNVERIFIED = "UNVERIFIED"
INVALID_PARSE = "INVALID_PARSE"
FAILED = "FAILED"

EXCERPT_LIMIT = 2000
FAILED_HTML_LIMIT = 1000


def _base_record(target_date: date, provider: RetailProvider, product: RetailProduct, currency: str) -> RetailPriceRecord:
    return RetailPriceRecord(
        date=target_date.isoformat(),
        provider=provider.name,
        product=product.product,
        price=None,
        currency=currency,
        implied_usd_per_oz=None,
        premium_percent=None,
        fine_oz=product.matcher.fine_oz,
        source_url=None,
        raw_excerpt=None,
        verification_status=FAILED,
        discovery_strategy=None,
        attempted_urls=[],
        http_status=None,
        error_message=None,
    )


def fetch_product_quote(
    target_date: date,
    provider: RetailProvider,
    product: RetailProduct,
    settings: AppSettings,
    spot_usd_per_oz: Optional[float],
    usd_to_quote: Optional[float],
) -> RetailPriceRecord:
    """
    采集单个产品报价，任何失败都体现在返回记录的状态中

    - 发现 / 网络 / 提取失败 -> FAILED（保留 HTTP 状态与尝试过的地址）
    - 低于现货 95% 或高于 20 倍 -> INVALID_PARSE
    - 无现货价或汇率 -> UNVERIFIED
    - 其余 -> VERIFIED
    """
    currency = settings.retail.currency
    record = _base_record(target_date, provider, product, currency)

    try:
        # 1. 发现商品地址
        discovery = discover_product_url(provider, product, settings.network)
        record["attempted_urls"] = discovery.attempted_urls
        record["http_status"] = discovery.http_status
        if not discovery.success:
            record["source_url"] = discovery.attempted_urls[0] if discovery.attempted_urls else provider.base_url
            record["error_message"] = f"URL 发现失败: {discovery.error}"
            return record

        record["source_url"] = discovery.url
        record["discovery_strategy"] = discovery.strategy

        # 2. 获取页面
        response = make_request(discovery.url, headers=provider.headers, network=settings.network)
        record["http_status"] = response.status_code
        if not response.ok:
            record["error_message"] = f"HTTP {response.status_code}"
            return record

        # 3. 提取价格
        html = response.text
        extraction = extract_price(html, provider.price_selectors)
        if extraction.price is None:
            record["raw_excerpt"] = html[:FAILED_HTML_LIMIT]
            record["error_message"] = "页面中未提取到价格"
            return record
    except Exception as e:
        logger.error(f"[零售价采集] {provider.name} / {product.product} 异常: {e}")
        record["error_message"] = f"{type(e).__name__}: {e}"
        return record

    price = extraction.price
    record["price"] = price
    record["raw_excerpt"] = extraction.excerpt[:EXCERPT_LIMIT]

    # 4. 合理性判定
    if spot_usd_per_oz is None or not usd_to_quote:
        record["verification_status"] = UNVERIFIED
        record["error_message"] = "无现货价或汇率，未做合理性校验"
        return record

    fine_oz = product.matcher.fine_oz
    implied_usd_per_oz = price / fine_oz / usd_to_quote
    record["implied_usd_per_oz"] = round(implied_usd_per_oz, 4)
    record["premium_percent"] = round((implied_usd_per_oz - spot_usd_per_oz) / spot_usd_per_oz * 100, 4)

    spot_in_quote = spot_usd_per_oz * usd_to_quote * fine_oz
    is_valid, reason = check_retail_plausibility(price, spot_in_quote, settings.validation)
    if is_valid:
        record["verification_status"] = VERIFIED
    else:
        record["verification_status"] = INVALID_PARSE
        record["error_message"] = reason
        logger.warning(f"[零售价采集] {provider.name} / {product.product} 价格不合理: {reason}")
    return record


def fetch_retail_prices(
    target_date: date,
    spot_usd_per_oz: Optional[float],
    settings: Optional[AppSettings] = None,
    usd_to_quote: Optional[float] = None,
    providers: Optional[Sequence[RetailProvider]] = None,
) -> Outcome[List[RetailPriceRecord]]:
    """
    采集全部经销商报价

    每个产品都会生成一条记录（失败记录同样保留用于审计），
    仅在没有任何经销商配置时返回 NO_DATA
    """
    settings = settings or AppSettings()
    providers = list(providers) if providers is not None else load_retail_providers(settings.retail)
    if not providers or not any(p.products for p in providers):
        return failure(ErrorKind.NO_DATA, "未配置零售经销商")

    currency = settings.retail.currency
    if usd_to_quote is None and spot_usd_per_oz is not None:
        fx = fetch_fx_quote(target_date, currency, settings)
        if fx.ok:
            usd_to_quote = fx.value["rate"]
        else:
            logger.warning(f"[零售价采集] USD/{currency} 汇率不可用: {fx.failure.message}")

    records: List[RetailPriceRecord] = []
    for provider in providers:
        for product in provider.products:
            record = fetch_product_quote(target_date, provider, product, settings, spot_usd_per_oz, usd_to_quote)
            logger.info(
                f"[零售价采集] {provider.name} / {product.product}: "
                f"{record['price']} {currency} ({record['verification_status']})"
            )
            records.append(record)

    return success(records)
