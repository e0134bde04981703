"""
行情数据仓库
所有写入均为按自然键的 upsert，同一日期重复执行结果一致
"""
from typing import List, Optional, Dict, Any, Union, cast
from datetime import date, datetime, timedelta, timezone
from sqlalchemy import Engine, Table, func, select, delete, insert
from sqlalchemy.exc import SQLAlchemyError

from database.records import (
    FxRateRecord,
    SpotPriceRecord,
    BenchmarkPriceRecord,
    StockSnapshotRecord,
    WarehouseRecord,
    RetailPriceRecord,
    ReconciledRecord,
)
from model import (
    fx_rates,
    spot_prices,
    benchmark_prices,
    exchange_stocks,
    exchange_warehouses,
    retail_prices,
    daily_reconciled,
)


DateLike = Union[str, date]


class PersistenceError(RuntimeError):
    """数据库读写失败"""


# ======================
# 数据格式转换（内部使用）
# ======================
def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def utc_now() -> datetime:
    """当前 UTC 时间（naive，统一入库格式）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_db_record(table: Table, record: Dict[str, Any], stamp_column: Optional[str] = None) -> Dict[str, Any]:
    """
    将记录转换为数据库可接受的格式
    - date: str -> date 对象
    - 表中存在但记录未提供的列补 None，保证覆盖写入时不残留旧值
    """
    result: Dict[str, Any] = {}
    for column in table.columns:
        if column.autoincrement is True:
            continue
        result[column.name] = record.get(column.name)
    if "date" in result and result["date"] is not None:
        result["date"] = _as_date(result["date"])
    if stamp_column:
        result[stamp_column] = utc_now()
    return result


def _from_db_record(row_mapping: Any) -> Dict[str, Any]:
    """
    将数据库返回的记录转换为用户友好的格式
    - date: date 对象 -> str (YYYY-MM-DD)
    - datetime -> ISO 字符串
    """
    result = dict(row_mapping)
    for key, value in result.items():
        if isinstance(value, datetime):
            result[key] = value.isoformat()
        elif isinstance(value, date):
            result[key] = value.isoformat()
    return result


class MarketRepository:
    """
    行情数据仓库

    由调用方显式构造并注入（便于测试替换），内部不持有全局状态
    """

    def __init__(self, engine: Engine):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    # ======================
    # 通用读写
    # ======================
    def _insert_factory(self):
        dialect = self._engine.dialect.name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        elif dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        else:
            raise PersistenceError(f"不支持 upsert 的数据库类型: {dialect}")
        return dialect_insert

    def _upsert(self, conn, table: Table, db_record: Dict[str, Any]) -> bool:
        """
        按主键插入或整行覆盖

        Returns:
            True 表示新插入，False 表示覆盖已有行
        """
        key_columns = [c.name for c in table.primary_key.columns]
        exists_stmt = select(*[table.c[k] for k in key_columns]).where(
            *[table.c[k] == db_record[k] for k in key_columns]
        )
        existed = conn.execute(exists_stmt).first() is not None

        dialect_insert = self._insert_factory()
        stmt = dialect_insert(table).values(**db_record)
        # 更新全部非主键字段
        update_fields = {k: stmt.excluded[k] for k in db_record if k not in key_columns}
        stmt = stmt.on_conflict_do_update(index_elements=key_columns, set_=update_fields)
        conn.execute(stmt)
        return not existed

    def _save(self, table: Table, record: Dict[str, Any], stamp_column: str, label: str) -> bool:
        try:
            db_record = _to_db_record(table, record, stamp_column)
            with self._engine.begin() as conn:
                return self._upsert(conn, table, db_record)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Upsert {label}失败: {e}")

    def _get_by_date(self, table: Table, target_date: DateLike, label: str) -> Optional[Dict[str, Any]]:
        try:
            with self._engine.connect() as conn:
                stmt = select(table).where(table.c.date == _as_date(target_date))
                result = conn.execute(stmt).fetchone()
                return _from_db_record(result._mapping) if result else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"查询{label}失败: {e}")

    def _get_latest(
        self,
        table: Table,
        target_date: Optional[DateLike],
        inclusive: bool,
        label: str,
    ) -> Optional[Dict[str, Any]]:
        try:
            with self._engine.connect() as conn:
                stmt = select(table)
                if target_date is not None:
                    bound = _as_date(target_date)
                    condition = table.c.date <= bound if inclusive else table.c.date < bound
                    stmt = stmt.where(condition)
                stmt = stmt.order_by(table.c.date.desc()).limit(1)
                result = conn.execute(stmt).fetchone()
                return _from_db_record(result._mapping) if result else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"查询最近{label}失败: {e}")

    def _get_recent(self, table: Table, n: int, label: str) -> List[Dict[str, Any]]:
        try:
            with self._engine.connect() as conn:
                stmt = select(table).order_by(table.c.date.desc()).limit(n)
                results = conn.execute(stmt).fetchall()
                return [_from_db_record(row._mapping) for row in results]
        except SQLAlchemyError as e:
            raise PersistenceError(f"查询最近{label}失败: {e}")

    def _count(self, table: Table, label: str) -> int:
        try:
            with self._engine.connect() as conn:
                return conn.execute(select(func.count()).select_from(table)).scalar() or 0
        except SQLAlchemyError as e:
            raise PersistenceError(f"统计{label}失败: {e}")

    # ======================
    # 汇率
    # ======================
    def upsert_fx_rate(self, record: FxRateRecord) -> bool:
        return self._save(fx_rates, record, "fetched_at", "汇率记录")

    def get_fx_rate(self, target_date: DateLike) -> Optional[FxRateRecord]:
        return cast(Optional[FxRateRecord], self._get_by_date(fx_rates, target_date, "汇率记录"))

    def get_latest_fx_rate(self, on_or_before: Optional[DateLike] = None, inclusive: bool = True) -> Optional[FxRateRecord]:
        return cast(Optional[FxRateRecord], self._get_latest(fx_rates, on_or_before, inclusive, "汇率记录"))

    # ======================
    # 现货价
    # ======================
    def upsert_spot_price(self, record: SpotPriceRecord) -> bool:
        return self._save(spot_prices, record, "fetched_at", "现货价记录")

    def get_spot_price(self, target_date: DateLike) -> Optional[SpotPriceRecord]:
        return cast(Optional[SpotPriceRecord], self._get_by_date(spot_prices, target_date, "现货价记录"))

    def get_latest_spot_price(self, on_or_before: Optional[DateLike] = None, inclusive: bool = True) -> Optional[SpotPriceRecord]:
        return cast(Optional[SpotPriceRecord], self._get_latest(spot_prices, on_or_before, inclusive, "现货价记录"))

    def count_spot_prices(self) -> int:
        return self._count(spot_prices, "现货价记录")

    # ======================
    # 基准价
    # ======================
    def upsert_benchmark_price(self, record: BenchmarkPriceRecord) -> bool:
        return self._save(benchmark_prices, record, "fetched_at", "基准价记录")

    def get_benchmark_price(self, target_date: DateLike) -> Optional[BenchmarkPriceRecord]:
        return cast(Optional[BenchmarkPriceRecord], self._get_by_date(benchmark_prices, target_date, "基准价记录"))

    def get_latest_benchmark_price(
        self, on_or_before: Optional[DateLike] = None, inclusive: bool = True
    ) -> Optional[BenchmarkPriceRecord]:
        return cast(
            Optional[BenchmarkPriceRecord],
            self._get_latest(benchmark_prices, on_or_before, inclusive, "基准价记录"),
        )

    # ======================
    # 交易所库存
    # ======================
    def upsert_stock_snapshot(self, record: StockSnapshotRecord) -> bool:
        """
        写入库存汇总，并整体替换当日仓库明细
        """
        try:
            snapshot = {k: v for k, v in record.items() if k != "warehouses"}
            db_record = _to_db_record(exchange_stocks, snapshot, "fetched_at")
            snapshot_date = db_record["date"]
            warehouses = record.get("warehouses") or []
            with self._engine.begin() as conn:
                inserted = self._upsert(conn, exchange_stocks, db_record)
                conn.execute(delete(exchange_warehouses).where(exchange_warehouses.c.date == snapshot_date))
                if warehouses:
                    rows = [
                        _to_db_record(exchange_warehouses, {**w, "date": snapshot_date})
                        for w in warehouses
                    ]
                    conn.execute(insert(exchange_warehouses), rows)
                return inserted
        except SQLAlchemyError as e:
            raise PersistenceError(f"Upsert 库存记录失败: {e}")

    def get_stock_snapshot(self, target_date: DateLike, with_warehouses: bool = False) -> Optional[StockSnapshotRecord]:
        snapshot = self._get_by_date(exchange_stocks, target_date, "库存记录")
        if snapshot is not None and with_warehouses:
            snapshot["warehouses"] = self.get_warehouses(target_date)
        return cast(Optional[StockSnapshotRecord], snapshot)

    def get_latest_stock_snapshot(
        self, on_or_before: Optional[DateLike] = None, inclusive: bool = True
    ) -> Optional[StockSnapshotRecord]:
        return cast(
            Optional[StockSnapshotRecord],
            self._get_latest(exchange_stocks, on_or_before, inclusive, "库存记录"),
        )

    def get_warehouses(self, target_date: DateLike) -> List[WarehouseRecord]:
        try:
            with self._engine.connect() as conn:
                stmt = (
                    select(exchange_warehouses)
                    .where(exchange_warehouses.c.date == _as_date(target_date))
                    .order_by(exchange_warehouses.c.id)
                )
                results = conn.execute(stmt).fetchall()
        except SQLAlchemyError as e:
            raise PersistenceError(f"查询仓库明细失败: {e}")
        warehouses = []
        for row in results:
            item = _from_db_record(row._mapping)
            item.pop("id", None)
            item.pop("date", None)
            warehouses.append(cast(WarehouseRecord, item))
        return warehouses

    # ======================
    # 零售价
    # ======================
    def upsert_retail_price(self, record: RetailPriceRecord) -> bool:
        return self._save(retail_prices, record, "fetched_at", "零售价记录")

    def get_retail_prices(self, target_date: DateLike) -> List[RetailPriceRecord]:
        try:
            with self._engine.connect() as conn:
                stmt = (
                    select(retail_prices)
                    .where(retail_prices.c.date == _as_date(target_date))
                    .order_by(retail_prices.c.provider, retail_prices.c.product)
                )
                results = conn.execute(stmt).fetchall()
                return [cast(RetailPriceRecord, _from_db_record(row._mapping)) for row in results]
        except SQLAlchemyError as e:
            raise PersistenceError(f"查询零售价记录失败: {e}")

    def get_latest_retail_date(self, on_or_before: Optional[DateLike] = None) -> Optional[str]:
        """最近一个存在零售报价的日期"""
        latest = self._get_latest(retail_prices, on_or_before, True, "零售价记录")
        return latest["date"] if latest else None

    # ======================
    # 对账结果
    # ======================
    def upsert_reconciled(self, record: ReconciledRecord) -> bool:
        return self._save(daily_reconciled, record, "computed_at", "对账记录")

    def get_reconciled(self, target_date: DateLike) -> Optional[ReconciledRecord]:
        return cast(Optional[ReconciledRecord], self._get_by_date(daily_reconciled, target_date, "对账记录"))

    def get_recent_reconciled(self, n: int = 30) -> List[ReconciledRecord]:
        """获取最近 N 条对账记录（按日期倒序）"""
        return cast(List[ReconciledRecord], self._get_recent(daily_reconciled, n, "对账记录"))

    def get_spread_history(self, before: DateLike, days: int = 90) -> List[float]:
        """
        获取 before 之前（不含当日）days 天内的价差序列（按日期升序），用于 z-score
        """
        end = _as_date(before)
        start = end - timedelta(days=days)
        try:
            with self._engine.connect() as conn:
                stmt = (
                    select(daily_reconciled.c.spread_usd_per_oz)
                    .where(daily_reconciled.c.date < end)
                    .where(daily_reconciled.c.date >= start)
                    .order_by(daily_reconciled.c.date.asc())
                )
                results = conn.execute(stmt).fetchall()
                return [row[0] for row in results if row[0] is not None]
        except SQLAlchemyError as e:
            raise PersistenceError(f"查询价差历史失败: {e}")

    def get_psi_history(self, before: DateLike, days: int = 30) -> List[float]:
        """获取 before 之前 days 天内的 PSI 序列（按日期升序，跳过空值）"""
        end = _as_date(before)
        start = end - timedelta(days=days)
        try:
            with self._engine.connect() as conn:
                stmt = (
                    select(daily_reconciled.c.psi)
                    .where(daily_reconciled.c.date < end)
                    .where(daily_reconciled.c.date >= start)
                    .order_by(daily_reconciled.c.date.asc())
                )
                results = conn.execute(stmt).fetchall()
                return [row[0] for row in results if row[0] is not None]
        except SQLAlchemyError as e:
            raise PersistenceError(f"查询 PSI 历史失败: {e}")

    def get_registered_history(self, before: DateLike, n: int = 8) -> List[float]:
        """获取 before 及之前最近 n 个库存快照的 Registered 值（按日期升序）"""
        try:
            with self._engine.connect() as conn:
                stmt = (
                    select(exchange_stocks.c.registered)
                    .where(exchange_stocks.c.date <= _as_date(before))
                    .order_by(exchange_stocks.c.date.desc())
                    .limit(n)
                )
                results = conn.execute(stmt).fetchall()
                return [row[0] for row in reversed(results)]
        except SQLAlchemyError as e:
            raise PersistenceError(f"查询 Registered 历史失败: {e}")

