import pytest
from datetime import date
from sqlalchemy import func, select

from config import AppSettings
from core.reconciler import (
    SOURCE_BENCHMARK,
    SOURCE_FX,
    SOURCE_RECONCILED,
    SOURCE_RETAIL,
    SOURCE_SPOT,
    SOURCE_STOCK,
    ReconciliationOrchestrator,
    SourceAdapters,
    trigger_reconciliation,
)
from core.run_tracker import RunStatus
from data_sources import ErrorKind, SourceStatus, failure, success
from database import (
    FetchRunRepository,
    MarketRepository,
    close_engine,
    create_database_engine,
    init_database,
)
from model import daily_reconciled


TARGET = date(2024, 6, 3)


# ======================
# 测试数据
# ======================
def _stock(target, settings):
    return success({
        "date": target.isoformat(),
        "registered": 50_000_000.0,
        "eligible": 150_000_000.0,
        "combined": 200_000_000.0,
        "delta_registered": None,
        "delta_eligible": None,
        "delta_combined": None,
        "registered_percent": None,
        "is_provisional": False,
        "warnings": [],
        "sheet_name": "Silver",
        "file_hash": "abc",
        "source_url": "https://example.com/Silver_stocks.xls",
        "source": "cme_xls",
        "warehouses": [],
    })


def _fx(target, settings, previous_rate=None):
    return success({"date": target.isoformat(), "usd_cny": 7.24, "source": "frankfurter"})


def _spot(target, settings):
    return success({"date": target.isoformat(), "price_usd_per_oz": 32.50, "contract": "XAG/USD", "source": "goldapi"})


def _benchmark(target, usd_cny, spot_usd_per_oz=None, settings=None):
    return success({
        "date": target.isoformat(),
        "price_cny_per_gram": 7.6366,
        "price_usd_per_oz": 32.80,
        "fx_rate_used": usd_cny,
        "provider": "sge",
        "is_estimated": False,
        "conversion_steps": ["SGE Ag99.99 收盘价: 7636.6 CNY/kg"],
        "raw_payload": None,
    })


def _retail_record(target, status="VERIFIED"):
    return {
        "date": target.isoformat(),
        "provider": "degussa",
        "product": "1oz Maple Leaf",
        "price": 35.8,
        "currency": "EUR",
        "implied_usd_per_oz": 38.9,
        "premium_percent": 19.7,
        "fine_oz": 1.0,
        "source_url": "https://www.degussa-goldhandel.de/maple-leaf",
        "raw_excerpt": None,
        "verification_status": status,
        "discovery_strategy": "direct-url",
        "attempted_urls": [],
        "http_status": 200,
        "error_message": None,
    }


def _retail(target, spot_usd_per_oz, settings=None):
    return success([_retail_record(target)])


def _unavailable(*args, **kwargs):
    return failure(ErrorKind.FETCH_ERROR, "所有数据源均不可用")


def _adapters(**overrides):
    adapters = {"stock": _stock, "fx": _fx, "spot": _spot, "benchmark": _benchmark, "retail": _retail}
    adapters.update(overrides)
    return SourceAdapters(**adapters)


@pytest.fixture
def engine(tmp_path):
    engine = init_database(create_database_engine(AppSettings.from_dict({
        "database": {"path": str(tmp_path / "tracker.db")},
    }).database))
    yield engine
    close_engine(engine)


@pytest.fixture
def repo(engine):
    return MarketRepository(engine)


@pytest.fixture
def runs(engine):
    return FetchRunRepository(engine)


def _orchestrator(repo, runs, **overrides):
    return ReconciliationOrchestrator(repo, runs, AppSettings(), _adapters(**overrides))


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar()


# ======================
# 正常运行
# ======================
def test_full_run_writes_reconciled_record(repo, runs):
    report = _orchestrator(repo, runs).run(TARGET, "scheduled")

    assert report.status == RunStatus.OK
    assert report.errors == []
    assert set(report.sources) == {
        SOURCE_STOCK, SOURCE_FX, SOURCE_SPOT, SOURCE_BENCHMARK, SOURCE_RETAIL, SOURCE_RECONCILED,
    }
    assert all(r.status == SourceStatus.LIVE for r in report.sources.values())

    stored = repo.get_reconciled(TARGET)
    assert stored["spread_usd_per_oz"] == pytest.approx(0.30)
    assert stored["spread_percent"] == pytest.approx(0.923, abs=1e-3)
    assert stored["registered_percent"] == pytest.approx(25.0)
    assert stored["psi"] == pytest.approx(1.2)
    assert stored["stress_level"] == "LOW"
    assert stored["z_score"] is None

    assert repo.get_stock_snapshot(TARGET)["registered_percent"] == pytest.approx(25.0)
    assert len(repo.get_retail_prices(TARGET)) == 1


def test_run_records_fetch_runs(repo, runs):
    report = _orchestrator(repo, runs).run(TARGET, "scheduled")

    overall = runs.get_run(report.run_id)
    assert overall["source"] == "reconciliation"
    assert overall["status"] == "OK"
    assert overall["triggered_by"] == "scheduled"
    assert overall["inserted"] == report.inserted == 6

    for source_report in report.sources.values():
        assert runs.get_run(source_report.run_id)["source"] == source_report.source
    assert runs.count_by_status() == {"OK": 7}


def test_rerun_is_idempotent(repo, runs, engine):
    orchestrator = _orchestrator(repo, runs)
    orchestrator.run(TARGET)
    report = orchestrator.run(TARGET)

    assert report.inserted == 0
    assert report.updated == 6
    assert _count(engine, daily_reconciled) == 1


def test_benchmark_receives_fx_and_spot(repo, runs, mocker):
    benchmark = mocker.MagicMock(side_effect=_benchmark)
    retail = mocker.MagicMock(side_effect=_retail)
    _orchestrator(repo, runs, benchmark=benchmark, retail=retail).run(TARGET)

    benchmark.assert_called_once()
    assert benchmark.call_args.args[1:3] == (7.24, 32.50)
    assert retail.call_args.args[1] == 32.50


def test_fx_receives_previous_rate(repo, runs, mocker):
    repo.upsert_fx_rate({"date": "2024-05-31", "usd_cny": 7.21, "source": "ecb"})
    fx = mocker.MagicMock(side_effect=_fx)
    _orchestrator(repo, runs, fx=fx).run(TARGET, sources=[SOURCE_FX])

    assert fx.call_args.args[2] == 7.21


def test_stock_deltas_against_previous_snapshot(repo, runs):
    previous = _stock(date(2024, 5, 31), None).value
    previous["registered"] = 48_000_000.0
    previous["combined"] = 198_000_000.0
    repo.upsert_stock_snapshot(previous)

    _orchestrator(repo, runs).run(TARGET, sources=[SOURCE_STOCK])

    stored = repo.get_stock_snapshot(TARGET)
    assert stored["delta_registered"] == 2_000_000
    assert stored["delta_eligible"] == 0
    assert stored["delta_combined"] == 2_000_000


# ======================
# 降级
# ======================
def test_stale_spot_is_labelled_and_blocks_reconcile(repo, runs):
    repo.upsert_spot_price({"date": "2024-05-31", "price_usd_per_oz": 30.1, "contract": "XAG/USD", "source": "yahoo"})

    report = _orchestrator(repo, runs, spot=_unavailable).run(TARGET)

    spot = report.sources[SOURCE_SPOT]
    assert spot.status == SourceStatus.STALE
    assert spot.stale_date == "2024-05-31"
    assert spot.error_kind == ErrorKind.FETCH_ERROR

    reconciled = report.sources[SOURCE_RECONCILED]
    assert reconciled.status == SourceStatus.UNAVAILABLE
    assert reconciled.error_kind == ErrorKind.DEPENDENCY_FAILED
    assert "spot_price" in reconciled.error

    assert report.status == RunStatus.PARTIAL
    assert repo.get_reconciled(TARGET) is None
    assert runs.get_run(spot.run_id)["status"] == "ERROR"

    payload = report.to_dict()
    assert payload["sources"]["spot_price"]["status"] == "stale-fallback"
    assert payload["sources"]["daily_reconciled"]["error_kind"] == "DEPENDENCY_FAILED"


def test_stale_spot_still_feeds_retail(repo, runs, mocker):
    repo.upsert_spot_price({"date": "2024-05-31", "price_usd_per_oz": 30.1, "contract": "XAG/USD", "source": "yahoo"})
    retail = mocker.MagicMock(side_effect=_retail)

    _orchestrator(repo, runs, spot=_unavailable, retail=retail).run(TARGET)

    assert retail.call_args.args[1] == 30.1


def test_missing_fx_fails_benchmark_as_dependency(repo, runs, mocker):
    benchmark = mocker.MagicMock(side_effect=_benchmark)
    report = _orchestrator(repo, runs, fx=_unavailable, benchmark=benchmark).run(TARGET)

    assert report.sources[SOURCE_FX].status == SourceStatus.UNAVAILABLE
    assert report.sources[SOURCE_BENCHMARK].error_kind == ErrorKind.DEPENDENCY_FAILED
    benchmark.assert_not_called()
    assert report.status == RunStatus.PARTIAL


def test_adapter_exception_is_contained(repo, runs):
    def broken(target, settings):
        raise RuntimeError("unexpected layout")

    report = _orchestrator(repo, runs, stock=broken).run(TARGET)

    stock = report.sources[SOURCE_STOCK]
    assert stock.status == SourceStatus.UNAVAILABLE
    assert stock.error_kind == ErrorKind.FETCH_ERROR
    assert "unexpected layout" in stock.error
    assert report.status == RunStatus.PARTIAL


def test_all_retail_rows_failed_is_unavailable(repo, runs):
    def failed_retail(target, spot_usd_per_oz, settings=None):
        return success([_retail_record(target, "FAILED")])

    report = _orchestrator(repo, runs, retail=failed_retail).run(TARGET, sources=[SOURCE_RETAIL])

    retail = report.sources[SOURCE_RETAIL]
    assert retail.status == SourceStatus.UNAVAILABLE
    assert retail.failed == 1
    assert len(repo.get_retail_prices(TARGET)) == 1
    assert report.status == RunStatus.ERROR


def test_some_retail_rows_failed_makes_run_partial(repo, runs):
    def mixed_retail(target, spot_usd_per_oz, settings=None):
        failed_row = _retail_record(target, "FAILED")
        failed_row["product"] = "1oz Britannia"
        return success([_retail_record(target), failed_row])

    report = _orchestrator(repo, runs, retail=mixed_retail).run(TARGET)

    retail = report.sources[SOURCE_RETAIL]
    assert retail.status == SourceStatus.LIVE
    assert retail.failed == 1
    assert report.failed == 1
    assert report.status == RunStatus.PARTIAL
    assert report.success
    assert runs.get_run(retail.run_id)["status"] == "PARTIAL"
    assert runs.get_run(report.run_id)["status"] == "PARTIAL"
    assert report.sources[SOURCE_RECONCILED].status == SourceStatus.LIVE


def test_everything_unavailable_is_error(repo, runs):
    report = _orchestrator(
        repo, runs,
        stock=_unavailable, fx=_unavailable, spot=_unavailable, benchmark=_unavailable, retail=_unavailable,
    ).run(TARGET)

    assert report.status == RunStatus.ERROR
    assert not report.success
    assert runs.get_run(report.run_id)["status"] == "ERROR"


# ======================
# 运行参数
# ======================
def test_source_subset_skips_reconcile(repo, runs):
    report = _orchestrator(repo, runs).run(TARGET, sources=[SOURCE_FX])

    assert list(report.sources) == [SOURCE_FX]
    assert report.status == RunStatus.OK


def test_unknown_source_is_rejected(repo, runs):
    with pytest.raises(ValueError):
        _orchestrator(repo, runs).run(TARGET, sources=["gold"])


def test_reconcile_uses_stored_inputs_for_unselected_sources(repo, runs):
    orchestrator = _orchestrator(repo, runs)
    orchestrator.run(TARGET, sources=[SOURCE_STOCK, SOURCE_SPOT])
    report = orchestrator.run(TARGET, sources=[SOURCE_FX, SOURCE_BENCHMARK])

    assert report.sources[SOURCE_RECONCILED].status == SourceStatus.LIVE
    assert repo.get_reconciled(TARGET)["spread_usd_per_oz"] == pytest.approx(0.30)


def test_trigger_reconciliation_with_injected_engine(engine):
    report = trigger_reconciliation(TARGET, "manual", settings=AppSettings(), engine=engine, adapters=_adapters())

    assert report.status == RunStatus.OK
    assert report.to_dict()["date"] == "2024-06-03"
    assert MarketRepository(engine).get_reconciled(TARGET) is not None
