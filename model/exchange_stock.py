"""
交易所白银库存数据模型
"""
from sqlalchemy import Table, Column, INTEGER, REAL, TEXT, BOOLEAN, DATE, DATETIME, JSON, func

from .market_price import metadata


# 表定义：exchange_stocks（每日汇总）
exchange_stocks = Table(
    "exchange_stocks",
    metadata,
    Column("date", DATE, primary_key=True, comment="日期(YYYY-MM-DD)"),
    Column("registered", REAL, nullable=False, comment="Registered 库存(盎司)"),
    Column("eligible", REAL, nullable=False, comment="Eligible 库存(盎司)"),
    Column("combined", REAL, nullable=False, comment="合计库存(盎司)"),
    Column("delta_registered", REAL, comment="较上一交易日变动"),
    Column("delta_eligible", REAL, comment="较上一交易日变动"),
    Column("delta_combined", REAL, comment="较上一交易日变动"),
    Column("registered_percent", REAL, comment="Registered 占比(%)"),
    Column("is_provisional", BOOLEAN, nullable=False, default=False, comment="存在校验警告时为 1"),
    Column("warnings", JSON, comment="解析与校验警告"),
    Column("sheet_name", TEXT, comment="命中的工作表"),
    Column("file_hash", TEXT, comment="原始文件 MD5"),
    Column("source_url", TEXT, comment="报表下载地址"),
    Column("source", TEXT, nullable=False, comment="数据来源"),
    Column("fetched_at", DATETIME, server_default=func.now(), comment="采集时间"),
)


# 表定义：exchange_warehouses（按仓库明细，每日整体替换）
exchange_warehouses = Table(
    "exchange_warehouses",
    metadata,
    Column("id", INTEGER, primary_key=True, autoincrement=True),
    Column("date", DATE, nullable=False, index=True, comment="日期(YYYY-MM-DD)"),
    Column("warehouse_name", TEXT, nullable=False, comment="仓库名称"),
    Column("registered", REAL, nullable=False, comment="Registered(盎司)"),
    Column("eligible", REAL, nullable=False, comment="Eligible(盎司)"),
    Column("deposits", REAL, comment="入库"),
    Column("withdrawals", REAL, comment="出库"),
    Column("adjustments", REAL, comment="调整"),
)
