"""
每日对账结果（派生数据，不直接采集）
"""
from sqlalchemy import Table, Column, REAL, TEXT, BOOLEAN, DATE, DATETIME, func

from .market_price import metadata


# 表定义：daily_reconciled
daily_reconciled = Table(
    "daily_reconciled",
    metadata,
    Column("date", DATE, primary_key=True, comment="日期(YYYY-MM-DD)"),
    Column("benchmark_usd_per_oz", REAL, nullable=False, comment="基准价(美元/盎司)"),
    Column("spot_usd_per_oz", REAL, nullable=False, comment="现货价(美元/盎司)"),
    Column("spread_usd_per_oz", REAL, nullable=False, comment="价差 = 基准价 - 现货价"),
    Column("spread_percent", REAL, nullable=False, comment="价差 / 现货价 * 100"),
    Column("registered", REAL, nullable=False, comment="Registered 库存(盎司)"),
    Column("eligible", REAL, nullable=False, comment="Eligible 库存(盎司)"),
    Column("combined", REAL, nullable=False, comment="合计库存(盎司)"),
    Column("registered_percent", REAL, nullable=False, comment="Registered 占比(%)"),
    Column("psi", REAL, comment="实物压力指数，Registered 占比为 0 时为空"),
    Column("stress_level", TEXT, nullable=False, comment="LOW, MODERATE, HIGH, EXTREME, UNKNOWN"),
    Column("is_extreme", BOOLEAN, nullable=False, default=False, comment="价差 z-score 是否超阈值"),
    Column("z_score", REAL, comment="价差 z-score，历史不足时为空"),
    Column("computed_at", DATETIME, server_default=func.now(), comment="计算时间"),
)
