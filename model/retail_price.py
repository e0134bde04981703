"""
零售报价数据模型
按 (日期, 经销商, 产品) 唯一
"""
from sqlalchemy import Table, Column, INTEGER, REAL, TEXT, DATE, DATETIME, JSON, func

from .market_price import metadata


# 表定义：retail_prices
retail_prices = Table(
    "retail_prices",
    metadata,
    Column("date", DATE, primary_key=True, comment="日期(YYYY-MM-DD)"),
    Column("provider", TEXT, primary_key=True, comment="经销商标识"),
    Column("product", TEXT, primary_key=True, comment="产品标识"),
    Column("price", REAL, comment="零售价（报价币种）"),
    Column("currency", TEXT, nullable=False, comment="报价币种"),
    Column("implied_usd_per_oz", REAL, comment="折算美元/盎司"),
    Column("premium_percent", REAL, comment="相对现货溢价(%)"),
    Column("fine_oz", REAL, nullable=False, comment="纯银盎司数"),
    Column("source_url", TEXT, comment="价格页面"),
    Column("raw_excerpt", TEXT, comment="命中的页面片段"),
    Column("verification_status", TEXT, nullable=False, comment="VERIFIED, UNVERIFIED, INVALID_PARSE, FAILED"),
    Column("discovery_strategy", TEXT, comment="direct-url, site-search, category-browse"),
    Column("attempted_urls", JSON, comment="尝试过的 URL"),
    Column("http_status", INTEGER, comment="失败时的 HTTP 状态码"),
    Column("error_message", TEXT, comment="失败原因"),
    Column("fetched_at", DATETIME, server_default=func.now(), comment="采集时间"),
)
