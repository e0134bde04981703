from .session import init_database, create_database_engine, get_database_url, close_engine
from .records import (
    FxRateRecord,
    SpotPriceRecord,
    BenchmarkPriceRecord,
    WarehouseRecord,
    StockSnapshotRecord,
    RetailPriceRecord,
    ReconciledRecord,
    FetchRunRecord,
)
from .repository import MarketRepository, PersistenceError
from .fetch_run_repository import FetchRunRepository


__all__ = [
    # 连接管理
    "init_database",
    "create_database_engine",
    "get_database_url",
    "close_engine",
    # 记录类型
    "FxRateRecord",
    "SpotPriceRecord",
    "BenchmarkPriceRecord",
    "WarehouseRecord",
    "StockSnapshotRecord",
    "RetailPriceRecord",
    "ReconciledRecord",
    "FetchRunRecord",
    # Repository
    "MarketRepository",
    "FetchRunRepository",
    "PersistenceError",
]
