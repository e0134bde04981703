from .market_price import fx_rates, spot_prices, benchmark_prices, metadata
from .exchange_stock import exchange_stocks, exchange_warehouses
from .retail_price import retail_prices
from .reconciled import daily_reconciled
from .fetch_run import fetch_runs


__all__ = ['fx_rates',
           'spot_prices',
           'benchmark_prices',
           'exchange_stocks',
           'exchange_warehouses',
           'retail_prices',
           'daily_reconciled',
           'fetch_runs',
           'metadata']
