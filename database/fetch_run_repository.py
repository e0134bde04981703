"""
采集运行记录仓库
"""
from typing import List, Optional, Dict, Any, cast
from datetime import datetime
from sqlalchemy import Engine, select, insert, update
from sqlalchemy.exc import SQLAlchemyError

from database.records import FetchRunRecord
from database.repository import PersistenceError, _from_db_record
from model import fetch_runs


_UPDATABLE = (
    "status",
    "finished_at",
    "inserted",
    "updated",
    "failed",
    "error_message",
    "sample_url",
    "params",
)


def _parse_datetime(value: Any) -> Any:
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


class FetchRunRepository:
    """FetchRun 的创建、更新与查询"""

    def __init__(self, engine: Engine):
        self._engine = engine

    def create_run(self, record: FetchRunRecord) -> None:
        try:
            values = dict(record)
            values["started_at"] = _parse_datetime(values.get("started_at"))
            values["finished_at"] = _parse_datetime(values.get("finished_at"))
            with self._engine.begin() as conn:
                conn.execute(insert(fetch_runs).values(**values))
        except SQLAlchemyError as e:
            raise PersistenceError(f"创建运行记录失败: {e}")

    def update_run(self, run_id: str, **fields: Any) -> None:
        """更新运行记录的可变字段，未知字段抛出 ValueError"""
        unknown = set(fields) - set(_UPDATABLE)
        if unknown:
            raise ValueError(f"不可更新的字段: {sorted(unknown)}")
        if not fields:
            return
        values = dict(fields)
        if "finished_at" in values:
            values["finished_at"] = _parse_datetime(values["finished_at"])
        try:
            with self._engine.begin() as conn:
                conn.execute(update(fetch_runs).where(fetch_runs.c.id == run_id).values(**values))
        except SQLAlchemyError as e:
            raise PersistenceError(f"更新运行记录失败: {e}")

    def get_run(self, run_id: str) -> Optional[FetchRunRecord]:
        try:
            with self._engine.connect() as conn:
                result = conn.execute(select(fetch_runs).where(fetch_runs.c.id == run_id)).fetchone()
                return cast(FetchRunRecord, _from_db_record(result._mapping)) if result else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"查询运行记录失败: {e}")

    def list_runs(
        self,
        source: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[FetchRunRecord]:
        """
        按数据源与时间范围查询运行记录（按开始时间倒序）

        Args:
            source: 数据源标识，None 表示全部
            since / until: started_at 的闭区间
            limit: 最多返回条数
        """
        stmt = select(fetch_runs)
        if source:
            stmt = stmt.where(fetch_runs.c.source == source)
        if since is not None:
            stmt = stmt.where(fetch_runs.c.started_at >= since)
        if until is not None:
            stmt = stmt.where(fetch_runs.c.started_at <= until)
        stmt = stmt.order_by(fetch_runs.c.started_at.desc()).limit(limit)
        try:
            with self._engine.connect() as conn:
                results = conn.execute(stmt).fetchall()
                return [cast(FetchRunRecord, _from_db_record(row._mapping)) for row in results]
        except SQLAlchemyError as e:
            raise PersistenceError(f"查询运行记录列表失败: {e}")

    def count_by_status(self, source: Optional[str] = None) -> Dict[str, int]:
        """各状态的运行次数"""
        counts: Dict[str, int] = {}
        for run in self.list_runs(source=source, limit=1000):
            counts[run["status"]] = counts.get(run["status"], 0) + 1
        return counts
