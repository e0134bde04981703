"""
派生指标计算
价差、Registered 占比、实物压力指数 (PSI)、z-score 异常检测

全部为纯函数，不访问数据库与网络
"""
import statistics
from typing import Optional, Sequence, Tuple, TypedDict

from database.records import ReconciledRecord, StockSnapshotRecord


# PSI 分级阈值（严格大于）
PSI_EXTREME = 10.0
PSI_HIGH = 5.0
PSI_MODERATE = 2.0

STRESS_EXTREME = "EXTREME"
STRESS_HIGH = "HIGH"
STRESS_MODERATE = "MODERATE"
STRESS_LOW = "LOW"
STRESS_UNKNOWN = "UNKNOWN"

TREND_INCREASING = "INCREASING"
TREND_DECREASING = "DECREASING"
TREND_STABLE = "STABLE"

DEFAULT_ZSCORE_MIN_POINTS = 10
DEFAULT_ZSCORE_THRESHOLD = 2.5
REGIME_CHANGE_DAYS = 7
TREND_CHANGE_PERCENT = 10.0


class StressResult(TypedDict):
    psi: Optional[float]
    registered_percent: float
    stress_level: str


class DailyChanges(TypedDict):
    delta_registered: Optional[float]
    delta_eligible: Optional[float]
    delta_combined: Optional[float]


class PsiTrend(TypedDict):
    current: float
    average: float
    max: float
    min: float
    trend: str


# ======================
# 价差与占比
# ======================
def calculate_spread(benchmark_usd_per_oz: float, spot_usd_per_oz: float) -> Tuple[float, float]:
    """
    价差 = 基准价 - 现货价

    Returns:
        (spread_usd_per_oz, spread_percent)，spread_percent 以现货价为分母
    """
    spread = benchmark_usd_per_oz - spot_usd_per_oz
    if spot_usd_per_oz == 0:
        raise ValueError("现货价为 0，无法计算价差百分比")
    return spread, spread / spot_usd_per_oz * 100


def calculate_registered_percent(registered: float, combined: float) -> float:
    """Registered 占比（%），combined 为 0 时返回 0"""
    if combined == 0:
        return 0.0
    return registered / combined * 100


# ======================
# 实物压力指数
# ======================
def physical_stress_index(spread_usd_per_oz: float, registered_percent: float) -> Optional[float]:
    """PSI = spread / (registered_percent / 100)，占比为 0 时无定义"""
    if registered_percent == 0:
        return None
    return spread_usd_per_oz / (registered_percent / 100)


def classify_stress(psi: Optional[float]) -> str:
    """
    PSI 分级: >10 EXTREME, >5 HIGH, >2 MODERATE, 其余 LOW, 空值 UNKNOWN

    负值（基准价低于现货价）按有符号值分级，归为 LOW
    """
    if psi is None:
        return STRESS_UNKNOWN
    if psi > PSI_EXTREME:
        return STRESS_EXTREME
    if psi > PSI_HIGH:
        return STRESS_HIGH
    if psi > PSI_MODERATE:
        return STRESS_MODERATE
    return STRESS_LOW


def calculate_physical_stress_index(spread_usd_per_oz: float, registered: float, combined: float) -> StressResult:
    registered_percent = calculate_registered_percent(registered, combined)
    psi = physical_stress_index(spread_usd_per_oz, registered_percent)
    return StressResult(
        psi=psi,
        registered_percent=registered_percent,
        stress_level=classify_stress(psi),
    )


# ======================
# 异常检测
# ======================
def calculate_z_score(
    value: float,
    history: Sequence[float],
    min_points: int = DEFAULT_ZSCORE_MIN_POINTS,
) -> Optional[float]:
    """
    z = (value - mean) / 总体标准差

    历史点数不足 min_points 或标准差为 0 时返回 None
    """
    values = [float(v) for v in history if v is not None]
    if len(values) < min_points:
        return None

    mean = statistics.mean(values)
    std_dev = statistics.pstdev(values, mean)
    if std_dev == 0:
        return None
    return (value - mean) / std_dev


def is_extreme(z_score: Optional[float], threshold: float = DEFAULT_ZSCORE_THRESHOLD) -> bool:
    if z_score is None:
        return False
    return abs(z_score) > threshold


def detect_regime_change(values: Sequence[float], days: int = REGIME_CHANGE_DAYS) -> bool:
    """
    最近 days 个值（按日期升序）是否连续下降

    数据不足时返回 False
    """
    recent = list(values)[-days:]
    if len(recent) < days:
        return False
    return all(later < earlier for earlier, later in zip(recent, recent[1:]))


def analyze_psi_trend(psi_values: Sequence[float]) -> Optional[PsiTrend]:
    """
    PSI 趋势分析：后半段均值相对前半段变动超过 ±10% 视为上升 / 下降

    少于 2 个点时返回 None
    """
    values = [float(v) for v in psi_values if v is not None]
    if len(values) < 2:
        return None

    midpoint = len(values) // 2
    older_avg = sum(values[:midpoint]) / midpoint
    recent_avg = sum(values[midpoint:]) / (len(values) - midpoint)

    trend = TREND_STABLE
    if older_avg != 0:
        change = (recent_avg - older_avg) / abs(older_avg) * 100
        if change > TREND_CHANGE_PERCENT:
            trend = TREND_INCREASING
        elif change < -TREND_CHANGE_PERCENT:
            trend = TREND_DECREASING

    return PsiTrend(
        current=values[-1],
        average=sum(values) / len(values),
        max=max(values),
        min=min(values),
        trend=trend,
    )


# ======================
# 库存日环比
# ======================
def calculate_daily_changes(
    current: StockSnapshotRecord,
    previous: Optional[StockSnapshotRecord],
) -> DailyChanges:
    if previous is None:
        return DailyChanges(delta_registered=None, delta_eligible=None, delta_combined=None)
    return DailyChanges(
        delta_registered=current["registered"] - previous["registered"],
        delta_eligible=current["eligible"] - previous["eligible"],
        delta_combined=current["combined"] - previous["combined"],
    )


def enrich_stock_snapshot(
    snapshot: StockSnapshotRecord,
    previous: Optional[StockSnapshotRecord],
) -> StockSnapshotRecord:
    """补充日环比与 Registered 占比，返回新记录"""
    enriched = dict(snapshot)
    enriched.update(calculate_daily_changes(snapshot, previous))
    enriched["registered_percent"] = calculate_registered_percent(snapshot["registered"], snapshot["combined"])
    return enriched  # type: ignore[return-value]


# ======================
# 对账记录
# ======================
def build_reconciled_record(
    target_date: str,
    benchmark_usd_per_oz: float,
    spot_usd_per_oz: float,
    stock: StockSnapshotRecord,
    spread_history: Sequence[float] = (),
    zscore_threshold: float = DEFAULT_ZSCORE_THRESHOLD,
    zscore_min_points: int = DEFAULT_ZSCORE_MIN_POINTS,
) -> ReconciledRecord:
    """
    由基准价、现货价与库存快照计算每日对账记录

    Args:
        target_date: YYYY-MM-DD
        spread_history: 当日之前的价差序列，用于 z-score
    """
    spread, spread_percent = calculate_spread(benchmark_usd_per_oz, spot_usd_per_oz)
    stress = calculate_physical_stress_index(spread, stock["registered"], stock["combined"])
    z_score = calculate_z_score(spread, spread_history, zscore_min_points)

    return ReconciledRecord(
        date=target_date,
        benchmark_usd_per_oz=benchmark_usd_per_oz,
        spot_usd_per_oz=spot_usd_per_oz,
        spread_usd_per_oz=spread,
        spread_percent=spread_percent,
        registered=stock["registered"],
        eligible=stock["eligible"],
        combined=stock["combined"],
        registered_percent=stress["registered_percent"],
        psi=stress["psi"],
        stress_level=stress["stress_level"],
        is_extreme=is_extreme(z_score, zscore_threshold),
        z_score=z_score,
    )

