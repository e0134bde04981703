"""
数据结构契约定义（TypedDict）
采集器产出、Repository 读写的记录格式（运行时仍为 dict）
"""
from typing import Any, Dict, List, Optional, TypedDict


class FxRateRecord(TypedDict):
    """USD/CNY 汇率记录"""
    date: str                              # YYYY-MM-DD
    usd_cny: float                         # 1 USD = ? CNY
    source: str                            # 数据来源


class SpotPriceRecord(TypedDict):
    """现货价记录"""
    date: str
    price_usd_per_oz: float                # 美元/盎司
    contract: Optional[str]                # XAG/USD, SI=F 等
    source: str


class BenchmarkPriceRecord(TypedDict):
    """基准价记录（如 SGE Ag99.99）"""
    date: str
    price_cny_per_gram: float              # 人民币/克
    price_usd_per_oz: float                # 换算后美元/盎司
    fx_rate_used: float                    # 换算所用 USD/CNY
    provider: str
    is_estimated: bool                     # 是否由其他价格推算
    conversion_steps: List[str]            # 换算步骤（有序，可读）
    raw_payload: Optional[Dict[str, Any]]  # 原始返回快照


class WarehouseRecord(TypedDict):
    """单个仓库的库存明细"""
    warehouse_name: str
    registered: float
    eligible: float
    deposits: Optional[float]
    withdrawals: Optional[float]
    adjustments: Optional[float]


class StockSnapshotRecord(TypedDict):
    """交易所库存快照"""
    date: str
    registered: float
    eligible: float
    combined: float
    delta_registered: Optional[float]
    delta_eligible: Optional[float]
    delta_combined: Optional[float]
    registered_percent: Optional[float]
    is_provisional: bool                   # 存在校验警告
    warnings: List[str]
    sheet_name: Optional[str]
    file_hash: Optional[str]
    source_url: Optional[str]
    source: str
    warehouses: List[WarehouseRecord]


class RetailPriceRecord(TypedDict):
    """零售报价记录"""
    date: str
    provider: str
    product: str
    price: Optional[float]                 # 报价币种
    currency: str
    implied_usd_per_oz: Optional[float]
    premium_percent: Optional[float]
    fine_oz: float
    source_url: Optional[str]
    raw_excerpt: Optional[str]
    verification_status: str               # VERIFIED | UNVERIFIED | INVALID_PARSE | FAILED
    discovery_strategy: Optional[str]
    attempted_urls: List[str]
    http_status: Optional[int]
    error_message: Optional[str]


class ReconciledRecord(TypedDict):
    """每日对账记录"""
    date: str
    benchmark_usd_per_oz: float
    spot_usd_per_oz: float
    spread_usd_per_oz: float
    spread_percent: float
    registered: float
    eligible: float
    combined: float
    registered_percent: float
    psi: Optional[float]
    stress_level: str
    is_extreme: bool
    z_score: Optional[float]


class FetchRunRecord(TypedDict, total=False):
    """采集运行记录"""
    id: str
    source: str
    status: str
    triggered_by: str
    params: Optional[Dict[str, Any]]
    started_at: str                        # ISO 格式 (UTC)
    finished_at: Optional[str]
    inserted: int
    updated: int
    failed: int
    error_message: Optional[str]
    sample_url: Optional[str]
