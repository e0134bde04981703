"""
历史补录

- 现货历史自动补齐: 现货价记录少于 min_rows 条，或最新记录早于 max_age_days 天时，
  从 Stooq 拉取最近 history_days 天日线并写入缺失的日期
- 逐日对账: 从旧到新对最近 N 天逐日执行对账，单日失败不影响其他日期
"""
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, List, Optional, Sequence

from sqlalchemy import Engine

from config import AppSettings
from core.reconciler import ReconciliationOrchestrator, RunReport, SourceAdapters
from core.run_tracker import FetchRunTracker, RunStatus
from data_sources import Outcome, fetch_spot_history
from database import (
    FetchRunRepository,
    MarketRepository,
    PersistenceError,
    close_engine,
    create_database_engine,
    init_database,
)
from utils.logger import logger
from utils.market_date import DateLike, to_market_date


SPOT_BACKFILL_SOURCE = "spot_backfill"

HistoryFetcher = Callable[[date, date, AppSettings], Outcome]


# ======================
# 数据结构
# ======================
@dataclass
class SpotBackfillResult:
    """现货历史补齐结果"""
    needed: bool
    executed: bool = False
    inserted: int = 0
    skipped: int = 0
    message: str = ""
    run_id: Optional[str] = None


@dataclass
class BackfillDay:
    date: str
    status: Optional[RunStatus] = None
    run_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (RunStatus.OK, RunStatus.PARTIAL)


@dataclass
class BackfillReport:
    spot: Optional[SpotBackfillResult] = None
    days: List[BackfillDay] = field(default_factory=list)
    reports: List[RunReport] = field(default_factory=list, repr=False)

    @property
    def failed_days(self) -> List[BackfillDay]:
        return [d for d in self.days if not d.success]

    @property
    def success(self) -> bool:
        """以逐日对账结果为准，现货历史补齐失败只体现在 spot.message"""
        return bool(self.days) and not self.failed_days


# ======================
# 现货历史自动补齐
# ======================
def spot_backfill_reason(repository: MarketRepository, today: date, settings: AppSettings) -> Optional[str]:
    """需要补齐时返回原因，否则返回 None"""
    count = repository.count_spot_prices()
    if count < settings.backfill.min_rows:
        return f"现货价记录仅 {count} 条"

    latest = repository.get_latest_spot_price(today)
    if latest is None:
        return f"{today.isoformat()} 之前没有现货价记录"
    age = (today - date.fromisoformat(latest["date"])).days
    if age > settings.backfill.max_age_days:
        return f"最新现货价为 {latest['date']}，已过 {age} 天"
    return None


def auto_backfill_spot(
    repository: MarketRepository,
    run_repository: FetchRunRepository,
    settings: AppSettings,
    today: Optional[date] = None,
    triggered_by: str = "manual",
    fetcher: HistoryFetcher = fetch_spot_history,
) -> SpotBackfillResult:
    """
    按需补齐现货价历史

    只写入库中尚不存在的日期，已有的实时数据不被覆盖
    """
    today = today or to_market_date(None, settings.market.timezone)
    reason = spot_backfill_reason(repository, today, settings)
    if reason is None:
        return SpotBackfillResult(needed=False, message="无需补齐现货历史")

    logger.info(f"[历史补录] 触发现货历史补齐: {reason}")
    start = today - timedelta(days=settings.backfill.history_days)
    tracker = FetchRunTracker(
        run_repository,
        SPOT_BACKFILL_SOURCE,
        triggered_by,
        params={"start": start.isoformat(), "end": today.isoformat(), "reason": reason},
    )
    result = SpotBackfillResult(needed=True, run_id=tracker.start())

    outcome = fetcher(start, today, settings)
    if not outcome.ok:
        result.message = outcome.failure.message
        tracker.fail(outcome.failure.message)
        logger.error(f"[历史补录] 现货历史补齐失败: {outcome.failure.message}")
        return result

    try:
        for record in outcome.value:
            if repository.get_spot_price(record["date"]) is not None:
                result.skipped += 1
                continue
            repository.upsert_spot_price(record)
            result.inserted += 1
    except PersistenceError as e:
        result.message = str(e)
        tracker.fail(e, inserted=result.inserted)
        logger.error(f"[历史补录] 现货历史写入失败: {e}")
        return result

    result.executed = True
    result.message = f"补齐 {result.inserted} 天现货价，跳过已有 {result.skipped} 天"
    tracker.succeed(inserted=result.inserted)
    logger.info(f"[历史补录] {result.message}")
    return result


# ======================
# 逐日对账
# ======================
def backfill_dates(end: date, days: int) -> List[date]:
    """以 end 结尾的连续 days 天，从旧到新"""
    return [end - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def reconcile_days(
    orchestrator: ReconciliationOrchestrator,
    dates: Sequence[date],
    triggered_by: str = "manual",
    pause_seconds: float = 0,
    on_report: Optional[Callable[[RunReport], None]] = None,
) -> BackfillReport:
    """逐日执行对账，无法创建运行记录的日期记为失败并继续"""
    report = BackfillReport()
    for index, target in enumerate(dates):
        logger.info(f"[历史补录] [{index + 1}/{len(dates)}] 对账 {target.isoformat()}")
        try:
            run = orchestrator.run(target, triggered_by)
        except PersistenceError as e:
            logger.error(f"[历史补录] {target.isoformat()} 对账失败: {e}")
            report.days.append(BackfillDay(date=target.isoformat(), error=str(e)))
        else:
            report.reports.append(run)
            report.days.append(BackfillDay(
                date=run.target_date,
                status=run.status,
                run_id=run.run_id,
                error="; ".join(run.errors) or None,
            ))
            if on_report is not None:
                on_report(run)

        if pause_seconds > 0 and index < len(dates) - 1:
            time.sleep(pause_seconds)
    return report


# ======================
# 对外接口
# ======================
def run_backfill(
    end_date: DateLike = None,
    days: Optional[int] = None,
    settings: Optional[AppSettings] = None,
    triggered_by: str = "manual",
    engine: Optional[Engine] = None,
    adapters: Optional[SourceAdapters] = None,
    fetcher: HistoryFetcher = fetch_spot_history,
    on_report: Optional[Callable[[RunReport], None]] = None,
) -> BackfillReport:
    """
    先按需补齐现货历史，再对截至 end_date 的最近 days 天逐日对账
    """
    settings = settings or AppSettings.load()
    days = days or settings.backfill.days
    if days < 1:
        raise ValueError(f"补录天数必须为正数: {days}")
    end = to_market_date(end_date, settings.market.timezone)

    owns_engine = engine is None
    if owns_engine:
        engine = init_database(create_database_engine(settings.database))

    try:
        repository = MarketRepository(engine)
        run_repository = FetchRunRepository(engine)
        spot = auto_backfill_spot(repository, run_repository, settings, None, triggered_by, fetcher)

        orchestrator = ReconciliationOrchestrator(repository, run_repository, settings, adapters)
        report = reconcile_days(
            orchestrator,
            backfill_dates(end, days),
            triggered_by,
            settings.backfill.pause_seconds,
            on_report,
        )
        report.spot = spot
        logger.info(
            f"[历史补录] 完成 {days} 天: 成功 {days - len(report.failed_days)}，失败 {len(report.failed_days)}"
        )
        return report
    finally:
        if owns_engine:
            close_engine(engine)
