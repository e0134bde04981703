"""
任务调度器
封装调度逻辑，支持后置处理器扩展
"""
from typing import Callable, List, Optional
from datetime import datetime, date, timedelta
from dataclasses import dataclass

from config import AppSettings
from core.backfill import run_backfill
from core.metrics import analyze_psi_trend, detect_regime_change
from core.reconciler import (
    RunReport,
    trigger_reconciliation,
    SOURCE_STOCK,
    SOURCE_FX,
    SOURCE_SPOT,
    SOURCE_BENCHMARK,
    SOURCE_RETAIL,
)
from database import create_database_engine, init_database, close_engine, MarketRepository, FetchRunRepository
from database.repository import utc_now
from utils.logger import logger
from utils.market_date import to_market_date


# ======================
# 类型定义
# ======================
# 后置处理器函数签名: (report: RunReport) -> None
PostProcessor = Callable[[RunReport], None]

# 单数据源任务 -> 数据源标识
SOURCE_TASKS = {
    "stock": SOURCE_STOCK,
    "fx": SOURCE_FX,
    "spot": SOURCE_SPOT,
    "benchmark": SOURCE_BENCHMARK,
    "retail": SOURCE_RETAIL,
}

TASK_TYPES = ("reconcile", *SOURCE_TASKS, "backfill", "runs", "stats")


@dataclass
class TaskResult:
    """任务执行结果"""
    success: bool
    task_type: str
    message: str
    started_at: datetime
    finished_at: datetime
    details: Optional[dict] = None


# ======================
# 后置处理器注册表
# ======================
_post_processors: List[PostProcessor] = []


def register_processor(processor: PostProcessor) -> None:
    """注册后置处理器"""
    if processor not in _post_processors:
        _post_processors.append(processor)


def unregister_processor(processor: PostProcessor) -> None:
    """注销后置处理器"""
    if processor in _post_processors:
        _post_processors.remove(processor)


def clear_processors() -> None:
    """清空所有后置处理器"""
    _post_processors.clear()


# ======================
# 内置后置处理器
# ======================
def log_result_processor(report: RunReport) -> None:
    """
    日志记录处理器
    记录各数据源状态到日志系统
    """
    for name, source in report.sources.items():
        if source.status.value == "live":
            logger.info(f"{name}: live ({source.provider or '-'})")
        elif source.status.value == "stale-fallback":
            logger.warning(f"{name}: stale-fallback (使用 {source.stale_date}): {source.error}")
        else:
            logger.error(f"{name}: unavailable [{source.error_kind.value if source.error_kind else '-'}] {source.error}")


def summary_printer_processor(report: RunReport) -> None:
    """
    对账摘要打印处理器
    打印当日对账数据
    """
    reconciled = report.sources.get("daily_reconciled")
    if reconciled is None or reconciled.value is None:
        return

    record = reconciled.value
    print(f"\n🥈 {record['date']} 白银对账数据")
    print("=" * 40)
    print(f"  基准价:         ${record['benchmark_usd_per_oz']:.4f}/盎司")
    print(f"  现货价:         ${record['spot_usd_per_oz']:.4f}/盎司")
    print(f"  价差:           ${record['spread_usd_per_oz']:+.4f} ({record['spread_percent']:+.3f}%)")
    print(f"  Registered:     {record['registered']:,.0f} 盎司 ({record['registered_percent']:.2f}%)")
    if record["psi"] is not None:
        print(f"  PSI:            {record['psi']:.3f} ({record['stress_level']})")
    else:
        print(f"  PSI:            无 ({record['stress_level']})")
    if record["z_score"] is not None:
        print(f"  Z-score:        {record['z_score']:+.2f}{' ⚠️ 异常' if record['is_extreme'] else ''}")
    print("=" * 40)


# ======================
# 后置处理器执行
# ======================
def _run_post_processors(report: RunReport) -> None:
    """
    执行所有已注册的后置处理器
    单个处理器失败不影响其他处理器
    """
    for processor in _post_processors:
        try:
            processor(report)
        except Exception as e:
            logger.warning(f"后置处理器 {processor.__name__} 执行失败: {e}")


# ======================
# 任务执行函数
# ======================
def run_reconciliation(
    target_date: Optional[date] = None,
    settings: Optional[AppSettings] = None,
    triggered_by: str = "manual",
    sources: Optional[List[str]] = None,
    task_type: str = "reconcile",
) -> TaskResult:
    """
    执行对账任务

    Args:
        target_date: 目标日期，默认为参考时区今天
        sources: 数据源子集，默认全部
    """
    started_at = datetime.now()

    try:
        report = trigger_reconciliation(target_date, triggered_by, sources, settings)
        _run_post_processors(report)
        finished_at = datetime.now()

        statuses = {name: source.status.value for name, source in report.sources.items()}
        message = f"对账 {report.target_date}: {report.status.value}"
        return TaskResult(
            success=report.success,
            task_type=task_type,
            message=message,
            started_at=started_at,
            finished_at=finished_at,
            details={
                "run_id": report.run_id,
                "sources": statuses,
                "inserted": report.inserted,
                "updated": report.updated,
                "failed": report.failed,
                "errors": report.errors,
            }
        )

    except Exception as e:
        finished_at = datetime.now()
        logger.error(f"对账任务异常: {e}", exc_info=True)
        return TaskResult(
            success=False,
            task_type=task_type,
            message=f"任务异常: {str(e)}",
            started_at=started_at,
            finished_at=finished_at,
            details={"exception": str(e)}
        )


def run_backfill_task(
    end_date: Optional[date] = None,
    settings: Optional[AppSettings] = None,
    triggered_by: str = "manual",
    days: Optional[int] = None,
) -> TaskResult:
    """
    执行历史补录任务

    Args:
        end_date: 最后一个补录日期，默认为参考时区今天
        days: 逐日对账天数，默认使用配置 backfill.days
    """
    started_at = datetime.now()

    try:
        report = run_backfill(end_date, days, settings, triggered_by, on_report=_run_post_processors)
        failed_days = report.failed_days
        message = f"补录 {len(report.days)} 天: 成功 {len(report.days) - len(failed_days)}，失败 {len(failed_days)}"
        if report.spot is not None and report.spot.needed:
            message += f"; 现货历史: {report.spot.message}"

        return TaskResult(
            success=report.success,
            task_type="backfill",
            message=message,
            started_at=started_at,
            finished_at=datetime.now(),
            details={
                "spot_history": {
                    "needed": report.spot.needed,
                    "executed": report.spot.executed,
                    "inserted": report.spot.inserted,
                    "skipped": report.spot.skipped,
                } if report.spot else None,
                "days": {d.date: d.status.value if d.status else "ERROR" for d in report.days},
                "failed": {d.date: d.error for d in failed_days},
            }
        )

    except Exception as e:
        logger.error(f"历史补录异常: {e}", exc_info=True)
        return TaskResult(
            success=False,
            task_type="backfill",
            message=f"任务异常: {str(e)}",
            started_at=started_at,
            finished_at=datetime.now(),
            details={"exception": str(e)}
        )


def list_recent_runs(
    settings: Optional[AppSettings] = None,
    source: Optional[str] = None,
    days: int = 7,
    limit: int = 50,
) -> TaskResult:
    """
    查询最近的采集运行记录

    Args:
        source: 数据源标识，None 表示全部
        days: 查询最近几天
    """
    started_at = datetime.now()
    engine = None

    try:
        settings = settings or AppSettings.load()
        engine = init_database(create_database_engine(settings.database))
        repository = FetchRunRepository(engine)
        since = utc_now() - timedelta(days=days)
        runs = repository.list_runs(source=source, since=since, limit=limit)
        counts = repository.count_by_status(source)
        return TaskResult(
            success=True,
            task_type="runs",
            message=f"共 {len(runs)} 条运行记录",
            started_at=started_at,
            finished_at=datetime.now(),
            details={"runs": runs, "status_counts": counts},
        )
    except Exception as e:
        logger.error(f"查询运行记录失败: {e}")
        return TaskResult(
            success=False,
            task_type="runs",
            message=f"查询失败: {str(e)}",
            started_at=started_at,
            finished_at=datetime.now(),
        )
    finally:
        close_engine(engine)


def run_stress_analysis(
    target_date: Optional[date] = None,
    settings: Optional[AppSettings] = None,
    days: int = 30,
) -> TaskResult:
    """
    PSI 趋势与 Registered 连续下降分析（只读）
    """
    started_at = datetime.now()
    engine = None

    try:
        settings = settings or AppSettings.load()
        target = to_market_date(target_date, settings.market.timezone)
        engine = init_database(create_database_engine(settings.database))
        repository = MarketRepository(engine)
        trend = analyze_psi_trend(repository.get_psi_history(target + timedelta(days=1), days))
        regime_change = detect_regime_change(repository.get_registered_history(target))

        if trend is None:
            message = f"近 {days} 天 PSI 数据不足"
        else:
            message = f"PSI 趋势: {trend['trend']} (当前 {trend['current']:.3f}, 均值 {trend['average']:.3f})"
        if regime_change:
            message += "; Registered 连续下降"
            logger.warning(f"[压力分析] {target.isoformat()} Registered 库存连续下降")

        return TaskResult(
            success=True,
            task_type="stats",
            message=message,
            started_at=started_at,
            finished_at=datetime.now(),
            details={"date": target.isoformat(), "psi_trend": trend, "registered_regime_change": regime_change},
        )
    except Exception as e:
        logger.error(f"压力分析失败: {e}")
        return TaskResult(
            success=False,
            task_type="stats",
            message=f"压力分析失败: {str(e)}",
            started_at=started_at,
            finished_at=datetime.now(),
        )
    finally:
        close_engine(engine)


def execute_task(
    task_type: str,
    target_date: Optional[date] = None,
    settings: Optional[AppSettings] = None,
    triggered_by: str = "manual",
    source: Optional[str] = None,
    days: Optional[int] = None,
) -> TaskResult:
    """
    统一任务执行入口

    Args:
        task_type: 任务类型
            - "reconcile": 采集全部数据源并对账
            - "stock" / "fx" / "spot" / "benchmark" / "retail": 仅采集单个数据源
            - "backfill": 按需补齐现货历史后，逐日对账截至 target_date 的最近 days 天
            - "runs": 查询最近运行记录（可用 source 过滤）
            - "stats": PSI 趋势与库存连续下降分析
        target_date: 目标日期
        source: runs 任务的数据源过滤
        days: backfill 任务的天数

    Returns:
        TaskResult: 任务执行结果
    """
    if task_type == "reconcile":
        return run_reconciliation(target_date, settings, triggered_by)

    elif task_type in SOURCE_TASKS:
        return run_reconciliation(target_date, settings, triggered_by, [SOURCE_TASKS[task_type]], task_type)

    elif task_type == "backfill":
        return run_backfill_task(target_date, settings, triggered_by, days)

    elif task_type == "runs":
        return list_recent_runs(settings, source)

    elif task_type == "stats":
        return run_stress_analysis(target_date, settings)

    else:
        return TaskResult(
            success=False,
            task_type=task_type,
            message=f"未知任务类型: {task_type}",
            started_at=datetime.now(),
            finished_at=datetime.now(),
        )


# ======================
# 初始化：注册默认处理器
# ======================
def init_default_processors() -> None:
    """注册默认的后置处理器"""
    register_processor(log_result_processor)
    register_processor(summary_printer_processor)


# 模块加载时自动注册默认处理器
init_default_processors()
