"""
采集运行记录（审计）
"""
from sqlalchemy import Table, Column, INTEGER, TEXT, DATETIME, JSON

from .market_price import metadata


# 表定义：fetch_runs
fetch_runs = Table(
    "fetch_runs",
    metadata,
    Column("id", TEXT, primary_key=True, comment="运行 ID (uuid hex)"),
    Column("source", TEXT, nullable=False, index=True, comment="数据源标识"),
    Column("status", TEXT, nullable=False, comment="RUNNING, OK, PARTIAL, ERROR"),
    Column("triggered_by", TEXT, nullable=False, comment="scheduled, manual"),
    Column("params", JSON, comment="运行参数"),
    Column("started_at", DATETIME, nullable=False, index=True, comment="开始时间(UTC)"),
    Column("finished_at", DATETIME, comment="结束时间(UTC)"),
    Column("inserted", INTEGER, nullable=False, default=0, comment="新增行数"),
    Column("updated", INTEGER, nullable=False, default=0, comment="更新行数"),
    Column("failed", INTEGER, nullable=False, default=0, comment="失败数"),
    Column("error_message", TEXT, comment="错误信息（截断至 1000 字符）"),
    Column("sample_url", TEXT, comment="示例请求地址"),
)
