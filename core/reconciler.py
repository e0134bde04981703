"""
对账编排器
对目标市场日并发执行各数据源采集，写库后计算每日对账记录，返回结构化运行报告

运行状态: CREATED -> RUNNING -> OK | PARTIAL | ERROR
"""
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import Engine

from config import AppSettings
from core.metrics import build_reconciled_record, enrich_stock_snapshot
from core.run_tracker import FetchRunTracker, RunStatus
from data_sources import (
    ErrorKind,
    Outcome,
    SourceStatus,
    fetch_benchmark_price,
    fetch_retail_prices,
    fetch_spot_price,
    fetch_stock_snapshot,
    fetch_usd_cny_rate,
)
from data_sources.retail_fetcher import FAILED, INVALID_PARSE
from database import (
    FetchRunRepository,
    MarketRepository,
    PersistenceError,
    close_engine,
    create_database_engine,
    init_database,
)
from database.repository import utc_now
from utils.logger import logger
from utils.market_date import DateLike, to_market_date


# 数据源标识
SOURCE_STOCK = "exchange_stock"
SOURCE_FX = "fx_rate"
SOURCE_SPOT = "spot_price"
SOURCE_BENCHMARK = "benchmark_price"
SOURCE_RETAIL = "retail_price"
SOURCE_RECONCILED = "daily_reconciled"
RUN_SOURCE = "reconciliation"

ALL_SOURCES = (SOURCE_STOCK, SOURCE_FX, SOURCE_SPOT, SOURCE_BENCHMARK, SOURCE_RETAIL)

# 派生记录的必需输入
RECONCILE_INPUTS = (SOURCE_BENCHMARK, SOURCE_SPOT, SOURCE_STOCK)


# ======================
# 数据结构
# ======================
@dataclass
class SourceAdapters:
    """各数据源采集函数，测试时可替换"""
    stock: Callable[..., Outcome] = fetch_stock_snapshot
    fx: Callable[..., Outcome] = fetch_usd_cny_rate
    spot: Callable[..., Outcome] = fetch_spot_price
    benchmark: Callable[..., Outcome] = fetch_benchmark_price
    retail: Callable[..., Outcome] = fetch_retail_prices


@dataclass
class SourceReport:
    """单个数据源在本次运行中的结果"""
    source: str
    status: SourceStatus
    provider: Optional[str] = None
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    stale_date: Optional[str] = None          # stale-fallback 时所用记录的日期
    run_id: Optional[str] = None
    value: Any = field(default=None, repr=False)

    @property
    def available(self) -> bool:
        return self.status != SourceStatus.UNAVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "status": self.status.value,
            "provider": self.provider,
            "inserted": self.inserted,
            "updated": self.updated,
            "failed": self.failed,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
            "stale_date": self.stale_date,
            "run_id": self.run_id,
        }


@dataclass
class RunReport:
    """对账运行报告"""
    run_id: Optional[str]
    target_date: str
    triggered_by: str
    status: RunStatus = RunStatus.RUNNING
    sources: Dict[str, SourceReport] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def inserted(self) -> int:
        return sum(r.inserted for r in self.sources.values())

    @property
    def updated(self) -> int:
        return sum(r.updated for r in self.sources.values())

    @property
    def failed(self) -> int:
        return sum(r.failed for r in self.sources.values())

    @property
    def success(self) -> bool:
        return self.status in (RunStatus.OK, RunStatus.PARTIAL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "date": self.target_date,
            "triggered_by": self.triggered_by,
            "status": self.status.value,
            "sources": {name: report.to_dict() for name, report in self.sources.items()},
            "inserted": self.inserted,
            "updated": self.updated,
            "failed": self.failed,
            "errors": list(self.errors),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


def overall_status(reports: Sequence[SourceReport]) -> RunStatus:
    """
    全部实时成功且没有失败条目为 OK，部分成功为 PARTIAL，全部失败为 ERROR

    实时数据源内的失败条目（如部分零售报价失败）同样使运行降为 PARTIAL
    """
    live = [r for r in reports if r.status == SourceStatus.LIVE and r.error_kind is None]
    if not live:
        return RunStatus.ERROR
    if len(live) == len(reports) and not any(r.failed for r in reports):
        return RunStatus.OK
    return RunStatus.PARTIAL


def _count(inserted: bool) -> Dict[str, int]:
    return {"inserted": 1, "updated": 0} if inserted else {"inserted": 0, "updated": 1}


# ======================
# 编排器
# ======================
class ReconciliationOrchestrator:
    """
    对账编排器

    依赖显式注入：行情仓库、运行记录仓库、配置与采集函数
    """

    def __init__(
        self,
        repository: MarketRepository,
        run_repository: FetchRunRepository,
        settings: Optional[AppSettings] = None,
        adapters: Optional[SourceAdapters] = None,
    ):
        self.repository = repository
        self.run_repository = run_repository
        self.settings = settings or AppSettings()
        self.adapters = adapters or SourceAdapters()

    # ----------------------
    # 通用包装
    # ----------------------
    def _unavailable(self, source: str, kind: ErrorKind, message: str, failed: int = 1) -> SourceReport:
        return SourceReport(source=source, status=SourceStatus.UNAVAILABLE, error_kind=kind, error=message, failed=failed)

    def _stale_or_unavailable(
        self,
        source: str,
        outcome: Outcome,
        lookup: Callable[[], Optional[Dict[str, Any]]],
    ) -> SourceReport:
        """实时采集失败时回退到最近一次入库的值，并明确标记为 stale"""
        kind = outcome.failure.kind
        message = outcome.failure.message
        stored = lookup()
        if stored is None:
            logger.error(f"[对账] {source} 不可用: {message}")
            return self._unavailable(source, kind, message)

        logger.warning(f"[对账] {source} 实时采集失败，使用 {stored['date']} 的历史值: {message}")
        return SourceReport(
            source=source,
            status=SourceStatus.STALE,
            provider=stored.get("source") or stored.get("provider"),
            failed=1,
            error_kind=kind,
            error=message,
            stale_date=stored["date"],
            value=stored,
        )

    def _tracked(self, source: str, target: date, triggered_by: str, collect: Callable[[], SourceReport]) -> SourceReport:
        """为单个数据源创建运行记录并把异常转换为结构化结果"""
        tracker = FetchRunTracker(
            self.run_repository,
            source,
            triggered_by,
            params={"date": target.isoformat()},
        )
        tracker.start()
        try:
            report = collect()
        except PersistenceError as e:
            report = self._unavailable(source, ErrorKind.PERSISTENCE_ERROR, str(e))
        except Exception as e:
            logger.error(f"[对账] {source} 异常: {e}", exc_info=True)
            report = self._unavailable(source, ErrorKind.FETCH_ERROR, f"{type(e).__name__}: {e}")

        report.run_id = tracker.run_id
        if report.status == SourceStatus.LIVE and report.error_kind is None:
            tracker.succeed(report.inserted, report.updated, report.failed)
        else:
            tracker.fail(report.error or report.status.value, report.inserted, report.updated, report.failed)
        return report

    def _await(self, future: Optional[Future], source: str) -> Optional[SourceReport]:
        """等待上游数据源，超时视为不可用"""
        if future is None:
            return None
        try:
            return future.result(timeout=self.settings.reconcile.dependency_wait)
        except FutureTimeoutError:
            logger.warning(f"[对账] 等待 {source} 超时")
            return None

    # ----------------------
    # 各数据源
    # ----------------------
    def collect_fx(self, target: date) -> SourceReport:
        previous = self.repository.get_latest_fx_rate(target, inclusive=False)
        previous_rate = previous["usd_cny"] if previous else None
        outcome = self.adapters.fx(target, self.settings, previous_rate)
        if not outcome.ok:
            return self._stale_or_unavailable(SOURCE_FX, outcome, lambda: self.repository.get_latest_fx_rate(target))

        record = outcome.value
        counts = _count(self.repository.upsert_fx_rate(record))
        return SourceReport(source=SOURCE_FX, status=SourceStatus.LIVE, provider=record["source"], value=record, **counts)

    def collect_spot(self, target: date) -> SourceReport:
        outcome = self.adapters.spot(target, self.settings)
        if not outcome.ok:
            return self._stale_or_unavailable(SOURCE_SPOT, outcome, lambda: self.repository.get_latest_spot_price(target))

        record = outcome.value
        counts = _count(self.repository.upsert_spot_price(record))
        return SourceReport(source=SOURCE_SPOT, status=SourceStatus.LIVE, provider=record["source"], value=record, **counts)

    def collect_stock(self, target: date) -> SourceReport:
        outcome = self.adapters.stock(target, self.settings)
        if not outcome.ok:
            return self._stale_or_unavailable(
                SOURCE_STOCK, outcome, lambda: self.repository.get_latest_stock_snapshot(target)
            )

        previous = self.repository.get_latest_stock_snapshot(target, inclusive=False)
        record = enrich_stock_snapshot(outcome.value, previous)
        counts = _count(self.repository.upsert_stock_snapshot(record))
        report = SourceReport(source=SOURCE_STOCK, status=SourceStatus.LIVE, provider=record["source"], value=record, **counts)
        if record["is_provisional"]:
            logger.warning(f"[对账] 库存快照为暂定值: {'; '.join(record['warnings'])}")
        return report

    def _latest_value(self, report: Optional[SourceReport], lookup: Callable[[], Optional[Dict[str, Any]]]):
        if report is not None and report.available:
            return report.value
        return lookup()

    def collect_benchmark(
        self,
        target: date,
        fx_future: Optional[Future] = None,
        spot_future: Optional[Future] = None,
    ) -> SourceReport:
        """
        基准价依赖汇率（必需）与现货价（可选，仅用于估算回退）
        上游不可用时使用已入库的最近值
        """
        fx = self._latest_value(self._await(fx_future, SOURCE_FX), lambda: self.repository.get_latest_fx_rate(target))
        if fx is None:
            return self._unavailable(SOURCE_BENCHMARK, ErrorKind.DEPENDENCY_FAILED, "缺少 USD/CNY 汇率")

        spot = self._latest_value(
            self._await(spot_future, SOURCE_SPOT),
            lambda: self.repository.get_latest_spot_price(target),
        )
        spot_usd = spot["price_usd_per_oz"] if spot else None

        outcome = self.adapters.benchmark(target, fx["usd_cny"], spot_usd, self.settings)
        if not outcome.ok:
            return self._stale_or_unavailable(
                SOURCE_BENCHMARK, outcome, lambda: self.repository.get_latest_benchmark_price(target)
            )

        record = outcome.value
        counts = _count(self.repository.upsert_benchmark_price(record))
        return SourceReport(
            source=SOURCE_BENCHMARK,
            status=SourceStatus.LIVE,
            provider=record["provider"],
            value=record,
            **counts,
        )

    def collect_retail(self, target: date, spot_future: Optional[Future] = None) -> SourceReport:
        """零售价依赖现货价做合理性判定，无现货价时记录为 UNVERIFIED"""
        spot = self._latest_value(
            self._await(spot_future, SOURCE_SPOT),
            lambda: self.repository.get_latest_spot_price(target),
        )
        spot_usd = spot["price_usd_per_oz"] if spot else None

        outcome = self.adapters.retail(target, spot_usd, self.settings)
        if not outcome.ok:
            def _stored_retail():
                latest = self.repository.get_latest_retail_date(target)
                if latest is None:
                    return None
                return {"date": latest, "source": None, "quotes": self.repository.get_retail_prices(latest)}

            return self._stale_or_unavailable(SOURCE_RETAIL, outcome, _stored_retail)

        records = outcome.value
        inserted = updated = failed = 0
        for record in records:
            if self.repository.upsert_retail_price(record):
                inserted += 1
            else:
                updated += 1
            if record["verification_status"] in (FAILED, INVALID_PARSE):
                failed += 1

        report = SourceReport(
            source=SOURCE_RETAIL,
            status=SourceStatus.LIVE,
            inserted=inserted,
            updated=updated,
            failed=failed,
            value=records,
        )
        if records and failed == len(records):
            report.status = SourceStatus.UNAVAILABLE
            report.error_kind = ErrorKind.FETCH_ERROR
            report.error = "所有零售报价均失败或不合理"
        return report

    def reconcile(self, target: date, reports: Dict[str, SourceReport]) -> SourceReport:
        """
        计算每日对账记录

        基准价、现货价与库存快照三者都需存在且日期等于目标日
        """
        target_iso = target.isoformat()
        lookups = {
            SOURCE_BENCHMARK: lambda: self.repository.get_benchmark_price(target),
            SOURCE_SPOT: lambda: self.repository.get_spot_price(target),
            SOURCE_STOCK: lambda: self.repository.get_stock_snapshot(target),
        }

        inputs: Dict[str, Dict[str, Any]] = {}
        missing: List[str] = []
        for source in RECONCILE_INPUTS:
            report = reports.get(source)
            value = report.value if report is not None and report.available else None
            if report is None:
                value = lookups[source]()
            if value is None or value.get("date") != target_iso:
                missing.append(source)
            else:
                inputs[source] = value

        if missing:
            message = f"缺少 {target_iso} 的输入: {', '.join(missing)}"
            logger.warning(f"[对账] {message}")
            return self._unavailable(SOURCE_RECONCILED, ErrorKind.DEPENDENCY_FAILED, message)

        validation = self.settings.validation
        history = self.repository.get_spread_history(target, validation.zscore_window_days)
        record = build_reconciled_record(
            target_iso,
            inputs[SOURCE_BENCHMARK]["price_usd_per_oz"],
            inputs[SOURCE_SPOT]["price_usd_per_oz"],
            inputs[SOURCE_STOCK],
            spread_history=history,
            zscore_threshold=validation.zscore_threshold,
            zscore_min_points=validation.zscore_min_points,
        )
        counts = _count(self.repository.upsert_reconciled(record))
        logger.info(
            f"[对账] {target_iso} 价差 {record['spread_usd_per_oz']:.4f} USD/oz "
            f"({record['spread_percent']:.3f}%), PSI={record['psi']}, 等级={record['stress_level']}"
        )
        return SourceReport(source=SOURCE_RECONCILED, status=SourceStatus.LIVE, value=record, **counts)

    # ----------------------
    # 运行入口
    # ----------------------
    def run(
        self,
        target_date: DateLike = None,
        triggered_by: str = "manual",
        sources: Optional[Sequence[str]] = None,
    ) -> RunReport:
        """
        执行一次对账运行

        Args:
            target_date: 目标日期，默认参考时区今天
            triggered_by: scheduled | manual
            sources: 要采集的数据源，默认全部

        Raises:
            PersistenceError: 无法创建本次运行记录
            ValueError: 未知数据源
        """
        target = to_market_date(target_date, self.settings.market.timezone)
        selected = tuple(sources) if sources else ALL_SOURCES
        unknown = [s for s in selected if s not in ALL_SOURCES]
        if unknown:
            raise ValueError(f"未知数据源: {unknown}")

        tracker = FetchRunTracker(
            self.run_repository,
            RUN_SOURCE,
            triggered_by,
            params={"date": target.isoformat(), "sources": list(selected)},
        )
        run_id = tracker.start(strict=True)
        report = RunReport(
            run_id=run_id,
            target_date=target.isoformat(),
            triggered_by=triggered_by,
            started_at=utc_now().isoformat(),
        )
        logger.info(f"[对账] 开始 {target.isoformat()} run_id={run_id} 数据源: {', '.join(selected)}")

        try:
            report.sources.update(self._collect_all(target, triggered_by, selected))
            if any(s in selected for s in RECONCILE_INPUTS):
                report.sources[SOURCE_RECONCILED] = self._tracked(
                    SOURCE_RECONCILED,
                    target,
                    triggered_by,
                    lambda: self.reconcile(target, report.sources),
                )
        except Exception as e:
            logger.error(f"[对账] 运行异常: {e}", exc_info=True)
            report.errors.append(f"{type(e).__name__}: {e}")

        for source_report in report.sources.values():
            if source_report.error:
                report.errors.append(f"{source_report.source}: {source_report.error}")

        report.status = overall_status(list(report.sources.values()))
        if report.errors and report.status == RunStatus.OK:
            report.status = RunStatus.PARTIAL
        report.finished_at = utc_now().isoformat()
        tracker.finish(
            report.status,
            inserted=report.inserted,
            updated=report.updated,
            failed=report.failed,
            error="; ".join(report.errors) or None,
        )
        logger.info(
            f"[对账] 结束 {report.target_date} {report.status.value} "
            f"inserted={report.inserted} updated={report.updated} failed={report.failed}"
        )
        return report

    def _collect_all(self, target: date, triggered_by: str, selected: Sequence[str]) -> Dict[str, SourceReport]:
        """
        并发执行各数据源

        汇率与现货价先提交，基准价与零售价在线程内等待它们，
        线程池按提交顺序调度，依赖不会发生死锁
        """
        futures: Dict[str, Future] = {}
        max_workers = max(1, self.settings.reconcile.max_workers)

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reconcile") as executor:
            def submit(source: str, collect: Callable[[], SourceReport]) -> None:
                futures[source] = executor.submit(self._tracked, source, target, triggered_by, collect)

            if SOURCE_FX in selected:
                submit(SOURCE_FX, lambda: self.collect_fx(target))
            if SOURCE_SPOT in selected:
                submit(SOURCE_SPOT, lambda: self.collect_spot(target))
            if SOURCE_STOCK in selected:
                submit(SOURCE_STOCK, lambda: self.collect_stock(target))
            if SOURCE_BENCHMARK in selected:
                fx_future, spot_future = futures.get(SOURCE_FX), futures.get(SOURCE_SPOT)
                submit(SOURCE_BENCHMARK, lambda: self.collect_benchmark(target, fx_future, spot_future))
            if SOURCE_RETAIL in selected:
                spot_future = futures.get(SOURCE_SPOT)
                submit(SOURCE_RETAIL, lambda: self.collect_retail(target, spot_future))

            return {source: future.result() for source, future in futures.items()}


# ======================
# 对外接口
# ======================
def trigger_reconciliation(
    target_date: DateLike = None,
    triggered_by: str = "manual",
    sources: Optional[Sequence[str]] = None,
    settings: Optional[AppSettings] = None,
    engine: Optional[Engine] = None,
    adapters: Optional[SourceAdapters] = None,
) -> RunReport:
    """
    触发一次对账，总是返回结构化报告

    仅当持久层不可用（无法创建运行记录）时抛出 PersistenceError
    """
    settings = settings or AppSettings.load()
    owns_engine = engine is None
    if owns_engine:
        engine = init_database(create_database_engine(settings.database))

    try:
        orchestrator = ReconciliationOrchestrator(
            MarketRepository(engine),
            FetchRunRepository(engine),
            settings,
            adapters,
        )
        return orchestrator.run(target_date, triggered_by, sources)
    finally:
        if owns_engine:
            close_engine(engine)
