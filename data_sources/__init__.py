from .result import ErrorKind, SourceStatus, Failure, Outcome, success, failure, capture
from .fx_fetcher import fetch_usd_cny_rate, fetch_fx_quote
from .spot_price import fetch_spot_price
from .benchmark_price import fetch_benchmark_price
from .stock_fetcher import fetch_stock_snapshot
from .retail_fetcher import fetch_retail_prices
from .spot_history import fetch_spot_history


__all__ = [
    "ErrorKind",
    "SourceStatus",
    "Failure",
    "Outcome",
    "success",
    "failure",
    "capture",
    "fetch_usd_cny_rate",
    "fetch_fx_quote",
    "fetch_spot_price",
    "fetch_benchmark_price",
    "fetch_stock_snapshot",
    "fetch_retail_prices",
    "fetch_spot_history",
]
