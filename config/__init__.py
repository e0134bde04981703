from .settings import (
    get_config,
    load_config,
    AppSettings,
    DatabaseSettings,
    NetworkSettings,
    MarketSettings,
    ProviderCredentials,
    ProviderOrder,
    ValidationSettings,
    StockReportSettings,
    BenchmarkSettings,
    RetailSettings,
    ReconcileSettings,
    BackfillSettings,
)


__all__ = [
    "get_config",
    "load_config",
    "AppSettings",
    "DatabaseSettings",
    "NetworkSettings",
    "MarketSettings",
    "ProviderCredentials",
    "ProviderOrder",
    "ValidationSettings",
    "StockReportSettings",
    "BenchmarkSettings",
    "RetailSettings",
    "ReconcileSettings",
    "BackfillSettings",
]
