"""
配置加载
YAML 配置文件 + 内置默认值深度合并，再转换为显式的 AppSettings 结构
"""
import yaml
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


# 配置文件默认路径（相对于项目根目录）
CONFIG_FILE = "config.yaml"
DEFAULT_CONFIG: Dict[str, Any] = {
    "database": {
        "type": "sqlite",
        "path": "data/silver_tracker.db",
        "url": None,
    },
    "network": {
        "timeout": 10,
        "retry_times": 3,
        "retry_interval": 1,
        "retry_max_interval": 8,
        "provider_timeout": 8,
        "user_agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
    },
    "market": {
        "timezone": "Europe/Berlin",
        "metal": "XAG",
    },
    "credentials": {
        "metals_api_key": None,
        "twelve_data_api_key": None,
        "goldapi_key": None,
        "exchangerate_host_key": None,
        "manual_spot_usd_per_oz": None,
        "manual_benchmark_cny_per_gram": None,
        "benchmark_premium_percent": 3.0,
    },
    "providers": {
        "fx": ["exchangerate_host", "frankfurter", "ecb", "chinamoney"],
        "spot": ["manual", "goldapi", "metals_api", "metals_dev", "yahoo"],
        "benchmark": ["sge", "metals_api", "twelve_data", "manual", "spot_premium"],
    },
    "validation": {
        "price_min_usd": 10.0,
        "price_max_usd": 200.0,
        "price_typical_min_usd": 15.0,
        "price_typical_max_usd": 150.0,
        "min_registered": 1_000_000,
        "max_registered": 1_000_000_000,
        "min_eligible": 1_000_000,
        "max_eligible": 1_000_000_000,
        "min_combined": 2_000_000,
        "max_combined": 2_000_000_000,
        "combined_tolerance": 0.01,
        "fx_daily_change_limit": 0.02,
        "retail_min_spot_ratio": 0.95,
        "retail_max_spot_ratio": 20.0,
        "zscore_threshold": 2.5,
        "zscore_window_days": 90,
        "zscore_min_points": 10,
    },
    "stock_report": {
        "url": "https://www.cmegroup.com/delivery_reports/Silver_stocks.xls",
        "raw_dir": "raw-data/comex",
    },
    "benchmark": {
        "sge_url": "https://www.sge.com.cn/graph/Dailyhq",
        "instrument": "Ag99.99",
        "quoted_unit": "kg",
    },
    "retail": {
        "currency": "EUR",
        "providers": None,  # None = 使用 retail_config 中的内置列表
    },
    "reconcile": {
        "max_workers": 5,
        "dependency_wait": 60,
    },
    "backfill": {
        "days": 7,
        "history_days": 30,
        "min_rows": 10,
        "max_age_days": 2,
        "history_url": "https://stooq.com/q/d/l/",
        "symbol": "xagusd",
        "pause_seconds": 2,
    },
}


_config_cache = None


def get_config():
    """
    获取全局配置（单例模式，避免重复读取文件）
    """
    global _config_cache
    if _config_cache is not None:
        return _config_cache

    _config_cache = load_config(CONFIG_FILE)
    return _config_cache


def load_config(path: str) -> Dict[str, Any]:
    """
    读取指定路径的 YAML 配置并与默认配置合并
    """
    config_path = Path(path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"配置文件未找到: {config_path.absolute()}\n"
            f"请复制 config.example.yaml 为 config.yaml 并填写必要参数。"
        )

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            user_config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"配置文件格式错误 ({config_path}): {e}")

    # 合并默认配置与用户配置（用户配置优先）
    return _deep_merge(DEFAULT_CONFIG, user_config)


def _deep_merge(default, override):
    """
    递归合并两个字典(override 覆盖 default)
    """
    # 若 override 为 None 或非字典，保留 default
    if override is None:
        return default
    if not isinstance(default, dict) or not isinstance(override, dict):
        return override
    result = default.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ======================
# 显式配置结构
# ======================
@dataclass(frozen=True)
class DatabaseSettings:
    type: str = "sqlite"
    path: str = "data/silver_tracker.db"
    url: Optional[str] = None


@dataclass(frozen=True)
class NetworkSettings:
    timeout: float = 10
    retry_times: int = 3
    retry_interval: float = 1
    retry_max_interval: float = 8
    provider_timeout: Optional[float] = 8
    user_agent: str = DEFAULT_CONFIG["network"]["user_agent"]


@dataclass(frozen=True)
class MarketSettings:
    timezone: str = "Europe/Berlin"
    metal: str = "XAG"


@dataclass(frozen=True)
class ProviderCredentials:
    """第三方数据源凭证；为 None 表示该数据源未配置"""
    metals_api_key: Optional[str] = None
    twelve_data_api_key: Optional[str] = None
    goldapi_key: Optional[str] = None
    exchangerate_host_key: Optional[str] = None
    manual_spot_usd_per_oz: Optional[float] = None
    manual_benchmark_cny_per_gram: Optional[float] = None
    benchmark_premium_percent: float = 3.0


@dataclass(frozen=True)
class ProviderOrder:
    fx: Tuple[str, ...] = tuple(DEFAULT_CONFIG["providers"]["fx"])
    spot: Tuple[str, ...] = tuple(DEFAULT_CONFIG["providers"]["spot"])
    benchmark: Tuple[str, ...] = tuple(DEFAULT_CONFIG["providers"]["benchmark"])


@dataclass(frozen=True)
class ValidationSettings:
    price_min_usd: float = 10.0
    price_max_usd: float = 200.0
    price_typical_min_usd: float = 15.0
    price_typical_max_usd: float = 150.0
    min_registered: float = 1_000_000
    max_registered: float = 1_000_000_000
    min_eligible: float = 1_000_000
    max_eligible: float = 1_000_000_000
    min_combined: float = 2_000_000
    max_combined: float = 2_000_000_000
    combined_tolerance: float = 0.01
    fx_daily_change_limit: float = 0.02
    retail_min_spot_ratio: float = 0.95
    retail_max_spot_ratio: float = 20.0
    zscore_threshold: float = 2.5
    zscore_window_days: int = 90
    zscore_min_points: int = 10


@dataclass(frozen=True)
class StockReportSettings:
    url: str = DEFAULT_CONFIG["stock_report"]["url"]
    raw_dir: Optional[str] = "raw-data/comex"


@dataclass(frozen=True)
class BenchmarkSettings:
    sge_url: str = DEFAULT_CONFIG["benchmark"]["sge_url"]
    instrument: str = "Ag99.99"
    quoted_unit: str = "kg"


@dataclass(frozen=True)
class RetailSettings:
    currency: str = "EUR"
    providers: Optional[Tuple[Dict[str, Any], ...]] = None


@dataclass(frozen=True)
class ReconcileSettings:
    max_workers: int = 5
    dependency_wait: float = 60


@dataclass(frozen=True)
class BackfillSettings:
    """历史补录：逐日对账天数与现货历史自动补齐条件"""
    days: int = 7
    history_days: int = 30
    min_rows: int = 10
    max_age_days: int = 2
    history_url: str = DEFAULT_CONFIG["backfill"]["history_url"]
    symbol: str = "xagusd"
    pause_seconds: float = 2


@dataclass(frozen=True)
class AppSettings:
    """应用完整配置，构造后显式传入各采集器与调度器"""
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    network: NetworkSettings = field(default_factory=NetworkSettings)
    market: MarketSettings = field(default_factory=MarketSettings)
    credentials: ProviderCredentials = field(default_factory=ProviderCredentials)
    providers: ProviderOrder = field(default_factory=ProviderOrder)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    stock_report: StockReportSettings = field(default_factory=StockReportSettings)
    benchmark: BenchmarkSettings = field(default_factory=BenchmarkSettings)
    retail: RetailSettings = field(default_factory=RetailSettings)
    reconcile: ReconcileSettings = field(default_factory=ReconcileSettings)
    backfill: BackfillSettings = field(default_factory=BackfillSettings)

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]] = None) -> "AppSettings":
        """从配置字典构建（缺省项使用 DEFAULT_CONFIG）"""
        merged = _deep_merge(DEFAULT_CONFIG, config or {})
        providers = merged["providers"]
        retail = merged["retail"]
        return cls(
            database=DatabaseSettings(**merged["database"]),
            network=NetworkSettings(**merged["network"]),
            market=MarketSettings(**merged["market"]),
            credentials=ProviderCredentials(**_credentials(merged["credentials"])),
            providers=ProviderOrder(
                fx=tuple(providers["fx"]),
                spot=tuple(providers["spot"]),
                benchmark=tuple(providers["benchmark"]),
            ),
            validation=ValidationSettings(**merged["validation"]),
            stock_report=StockReportSettings(**merged["stock_report"]),
            benchmark=BenchmarkSettings(**merged["benchmark"]),
            retail=RetailSettings(
                currency=retail["currency"],
                providers=tuple(retail["providers"]) if retail["providers"] else None,
            ),
            reconcile=ReconcileSettings(**merged["reconcile"]),
            backfill=BackfillSettings(**merged["backfill"]),
        )

    @classmethod
    def load(cls, path: Optional[str] = None) -> "AppSettings":
        """读取配置文件并构建 AppSettings"""
        config = load_config(path) if path else get_config()
        return cls.from_dict(config)


def _credentials(raw: Dict[str, Any]) -> Dict[str, Any]:
    """空字符串视为未配置；手工价格统一转为 float"""
    result: Dict[str, Any] = {}
    for key, value in raw.items():
        if isinstance(value, str) and not value.strip():
            value = None
        if value is not None and key.startswith("manual_"):
            value = float(value)
        result[key] = value
    if result.get("benchmark_premium_percent") is None:
        result["benchmark_premium_percent"] = 3.0
    else:
        result["benchmark_premium_percent"] = float(result["benchmark_premium_percent"])
    return result
