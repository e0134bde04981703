"""
价格类数据模型
汇率、现货价、基准价（SGE 等）按日存储
"""
from sqlalchemy import Table, Column, MetaData, REAL, TEXT, BOOLEAN, DATE, DATETIME, JSON, func


# 全局 MetaData 对象（用于 create_all）
metadata = MetaData()


# 表定义：fx_rates
fx_rates = Table(
    "fx_rates",
    metadata,
    Column("date", DATE, primary_key=True, comment="日期(YYYY-MM-DD)"),
    Column("usd_cny", REAL, nullable=False, comment="USD/CNY 汇率"),
    Column("source", TEXT, nullable=False, comment="数据来源: exchangerate_host, frankfurter, ecb, chinamoney"),
    Column("fetched_at", DATETIME, server_default=func.now(), comment="采集时间"),
)


# 表定义：spot_prices
spot_prices = Table(
    "spot_prices",
    metadata,
    Column("date", DATE, primary_key=True, comment="日期(YYYY-MM-DD)"),
    Column("price_usd_per_oz", REAL, nullable=False, comment="现货价(美元/盎司)"),
    Column("contract", TEXT, comment="合约/品种标识, 如 XAG/USD, SI=F"),
    Column("source", TEXT, nullable=False, comment="数据来源"),
    Column("fetched_at", DATETIME, server_default=func.now(), comment="采集时间"),
)


# 表定义：benchmark_prices
benchmark_prices = Table(
    "benchmark_prices",
    metadata,
    Column("date", DATE, primary_key=True, comment="日期(YYYY-MM-DD)"),
    Column("price_cny_per_gram", REAL, nullable=False, comment="基准价(人民币/克)"),
    Column("price_usd_per_oz", REAL, nullable=False, comment="基准价换算(美元/盎司)"),
    Column("fx_rate_used", REAL, nullable=False, comment="换算所用 USD/CNY"),
    Column("provider", TEXT, nullable=False, comment="数据来源: sge, metals_api, twelve_data, manual, spot_premium"),
    Column("is_estimated", BOOLEAN, nullable=False, default=False, comment="是否由其他价格推算"),
    Column("conversion_steps", JSON, comment="单位换算步骤（有序）"),
    Column("raw_payload", JSON, comment="数据源原始返回快照"),
    Column("fetched_at", DATETIME, server_default=func.now(), comment="采集时间"),
)
