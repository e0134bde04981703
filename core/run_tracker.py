"""
采集运行记录跟踪
每次采集开始时创建 RUNNING 记录，结束时恰好落定一次（OK / PARTIAL / ERROR）
"""
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, TypedDict

from database import FetchRunRepository, FetchRunRecord, PersistenceError
from database.repository import utc_now
from utils.logger import logger


ERROR_MESSAGE_LIMIT = 1000


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    OK = "OK"
    PARTIAL = "PARTIAL"
    ERROR = "ERROR"


class TrackedResult(TypedDict):
    """track_fetch_run 的返回值"""
    ok: bool
    run_id: Optional[str]
    inserted: int
    updated: int
    error: Optional[str]


def truncate_error(error: Any) -> str:
    return str(error)[:ERROR_MESSAGE_LIMIT]


class FetchRunTracker:
    """
    单次采集的运行记录

    跟踪本身失败（写库异常）只记录日志，不影响采集；
    start(strict=True) 时创建失败会抛出 PersistenceError

    用法:
        with FetchRunTracker(repo, "fx_rate", "scheduled") as tracker:
            tracker.update_counts(inserted=1)
    """

    def __init__(
        self,
        repository: FetchRunRepository,
        source: str,
        triggered_by: str = "manual",
        params: Optional[Dict[str, Any]] = None,
    ):
        self._repository = repository
        self.source = source
        self.triggered_by = triggered_by
        self.params = params or {}
        self.run_id: Optional[str] = None
        self.status: Optional[RunStatus] = None
        self.inserted = 0
        self.updated = 0
        self.failed = 0
        self.error_message: Optional[str] = None

    @property
    def finalized(self) -> bool:
        return self.status is not None and self.status != RunStatus.RUNNING

    def start(self, strict: bool = False) -> Optional[str]:
        """创建 RUNNING 记录，返回 run_id（非严格模式下失败返回 None）"""
        run_id = uuid.uuid4().hex
        record = FetchRunRecord(
            id=run_id,
            source=self.source,
            status=RunStatus.RUNNING.value,
            triggered_by=self.triggered_by,
            params=self.params,
            started_at=utc_now().isoformat(),
            inserted=0,
            updated=0,
            failed=0,
        )
        try:
            self._repository.create_run(record)
        except PersistenceError as e:
            logger.error(f"[运行记录] {self.source} 创建失败: {e}")
            if strict:
                raise
            return None

        self.run_id = run_id
        self.status = RunStatus.RUNNING
        logger.info(f"[运行记录] {self.source} 开始 run_id={run_id}")
        return run_id

    def _update(self, **fields: Any) -> None:
        if self.run_id is None:
            return
        try:
            self._repository.update_run(self.run_id, **fields)
        except PersistenceError as e:
            logger.error(f"[运行记录] {self.source} run_id={self.run_id} 更新失败: {e}")

    def update_counts(
        self,
        inserted: Optional[int] = None,
        updated: Optional[int] = None,
        failed: Optional[int] = None,
    ) -> None:
        """更新中间计数，已落定的记录不再变化"""
        if self.finalized:
            return
        if inserted is not None:
            self.inserted = inserted
        if updated is not None:
            self.updated = updated
        if failed is not None:
            self.failed = failed
        self._update(inserted=self.inserted, updated=self.updated, failed=self.failed)

    def finish(
        self,
        status: RunStatus,
        inserted: Optional[int] = None,
        updated: Optional[int] = None,
        failed: Optional[int] = None,
        error: Any = None,
        sample_url: Optional[str] = None,
    ) -> bool:
        """
        落定运行记录

        Returns:
            bool: 本次调用是否生效（重复落定返回 False）
        """
        if self.finalized:
            logger.warning(f"[运行记录] {self.source} run_id={self.run_id} 已结束，忽略 {status.value}")
            return False

        self.status = status
        if inserted is not None:
            self.inserted = inserted
        if updated is not None:
            self.updated = updated
        if failed is not None:
            self.failed = failed
        if error is not None:
            self.error_message = truncate_error(error)

        self._update(
            status=status.value,
            finished_at=utc_now(),
            inserted=self.inserted,
            updated=self.updated,
            failed=self.failed,
            error_message=self.error_message,
            sample_url=sample_url,
        )

        message = (
            f"[运行记录] {self.source} run_id={self.run_id} {status.value} "
            f"inserted={self.inserted} updated={self.updated} failed={self.failed}"
        )
        if status == RunStatus.ERROR:
            logger.error(f"{message} error=\"{self.error_message}\"")
        else:
            logger.info(message)
        return True

    def succeed(self, inserted: int = 0, updated: int = 0, failed: int = 0, sample_url: Optional[str] = None) -> bool:
        """成功结束：有失败条目时为 PARTIAL，否则 OK"""
        status = RunStatus.PARTIAL if failed > 0 else RunStatus.OK
        return self.finish(status, inserted, updated, failed, sample_url=sample_url)

    def fail(self, error: Any, inserted: int = 0, updated: int = 0, failed: int = 0) -> bool:
        return self.finish(RunStatus.ERROR, inserted, updated, failed, error=error)

    def __enter__(self) -> "FetchRunTracker":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None:
            self.fail(f"{exc_type.__name__}: {exc}", self.inserted, self.updated, self.failed)
        elif not self.finalized:
            self.succeed(self.inserted, self.updated, self.failed)
        return False


def track_fetch_run(
    repository: FetchRunRepository,
    source: str,
    fn: Callable[[], Tuple[int, int]],
    triggered_by: str = "manual",
    params: Optional[Dict[str, Any]] = None,
) -> TrackedResult:
    """
    一次性跟踪: fn 返回 (inserted, updated)，异常记为 ERROR 且不向外抛出
    """
    tracker = FetchRunTracker(repository, source, triggered_by, params)
    tracker.start()
    try:
        inserted, updated = fn()
    except Exception as e:
        tracker.fail(e)
        return TrackedResult(ok=False, run_id=tracker.run_id, inserted=0, updated=0, error=str(e))

    tracker.succeed(inserted, updated)
    return TrackedResult(ok=True, run_id=tracker.run_id, inserted=inserted, updated=updated, error=None)
