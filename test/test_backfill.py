import pytest
from datetime import date, timedelta

from config import AppSettings, DatabaseSettings
from core.backfill import (
    auto_backfill_spot,
    backfill_dates,
    reconcile_days,
    run_backfill,
    spot_backfill_reason,
)
from core.reconciler import RunReport, SourceAdapters
from core.run_tracker import RunStatus
from data_sources import ErrorKind, failure, success
from data_sources import spot_history
from database import (
    FetchRunRepository,
    MarketRepository,
    PersistenceError,
    close_engine,
    create_database_engine,
    init_database,
)


TODAY = date(2024, 6, 3)

HISTORY_CSV = """Date,Open,High,Low,Close,Volume
2024-05-29,31.90,32.40,31.70,32.05,
2024-05-30,32.00,32.10,31.20,31.45,
bad-date,1,1,1,1,
2024-05-31,31.50,31.60,30.30,-1,
"""


@pytest.fixture
def settings():
    return AppSettings.from_dict({
        "network": {"retry_times": 1, "retry_interval": 0},
        "backfill": {"pause_seconds": 0},
    })


@pytest.fixture
def engine():
    engine = init_database(create_database_engine(DatabaseSettings(path=":memory:")))
    yield engine
    close_engine(engine)


@pytest.fixture
def repo(engine):
    return MarketRepository(engine)


@pytest.fixture
def runs(engine):
    return FetchRunRepository(engine)


def _spot_row(day, price=32.5, source="goldapi"):
    return {"date": day.isoformat(), "price_usd_per_oz": price, "contract": "XAG/USD", "source": source}


def _response(mocker, status_code=200, text=""):
    response = mocker.MagicMock()
    response.status_code = status_code
    response.text = text
    return response


# ======================
# Stooq 日线
# ======================
def test_parse_history_csv_skips_bad_rows():
    records = spot_history.parse_history_csv(HISTORY_CSV)

    assert [r["date"] for r in records] == ["2024-05-29", "2024-05-30"]
    assert records[1]["price_usd_per_oz"] == pytest.approx(31.45)
    assert records[0]["source"] == "stooq_backfill"
    assert records[0]["contract"] == "XAGUSD"


def test_fetch_spot_history(mocker, settings):
    request = mocker.patch(
        "data_sources.spot_history.make_request",
        return_value=_response(mocker, 200, HISTORY_CSV),
    )

    outcome = spot_history.fetch_spot_history(date(2024, 5, 4), TODAY, settings)

    assert outcome.ok
    assert len(outcome.value) == 2
    url = request.call_args.args[0]
    assert url.startswith("https://stooq.com/q/d/l/?s=xagusd")
    assert "d1=20240504" in url and "d2=20240603" in url


def test_fetch_spot_history_no_data_is_parse_error(mocker, settings):
    mocker.patch("data_sources.spot_history.make_request", return_value=_response(mocker, 200, "No data"))

    outcome = spot_history.fetch_spot_history(date(2024, 5, 4), TODAY, settings)

    assert outcome.failure.kind == ErrorKind.PARSE_ERROR


def test_fetch_spot_history_http_error(mocker, settings):
    mocker.patch("data_sources.spot_history.make_request", return_value=_response(mocker, 404))

    outcome = spot_history.fetch_spot_history(date(2024, 5, 4), TODAY, settings)

    assert outcome.failure.kind == ErrorKind.FETCH_ERROR


def test_fetch_spot_history_rejects_out_of_range_closes(mocker, settings):
    """0.032 是 盎司/美元，不是价格"""
    csv = "Date,Open,High,Low,Close,Volume\n2024-05-30,0.03,0.03,0.03,0.032,\n"
    mocker.patch("data_sources.spot_history.make_request", return_value=_response(mocker, 200, csv))

    outcome = spot_history.fetch_spot_history(date(2024, 5, 4), TODAY, settings)

    assert outcome.failure.kind == ErrorKind.NO_DATA


# ======================
# 现货历史自动补齐
# ======================
def test_reason_when_too_few_rows(repo, settings):
    repo.upsert_spot_price(_spot_row(TODAY))
    assert "1 条" in spot_backfill_reason(repo, TODAY, settings)


def test_no_reason_when_history_is_recent(repo, settings):
    for offset in range(10):
        repo.upsert_spot_price(_spot_row(TODAY - timedelta(days=offset)))
    assert spot_backfill_reason(repo, TODAY, settings) is None


def test_reason_when_latest_is_old(repo, settings):
    for offset in range(10):
        repo.upsert_spot_price(_spot_row(date(2024, 5, 20) - timedelta(days=offset)))
    assert "已过 14 天" in spot_backfill_reason(repo, TODAY, settings)


def test_auto_backfill_keeps_existing_live_rows(mocker, repo, runs, settings):
    repo.upsert_spot_price(_spot_row(date(2024, 5, 30)))
    fetcher = mocker.Mock(return_value=success(spot_history.parse_history_csv(HISTORY_CSV)))

    result = auto_backfill_spot(repo, runs, settings, TODAY, fetcher=fetcher)

    assert result.needed and result.executed
    assert (result.inserted, result.skipped) == (1, 1)
    assert fetcher.call_args.args[:2] == (TODAY - timedelta(days=30), TODAY)
    assert repo.get_spot_price("2024-05-30")["source"] == "goldapi"
    assert repo.get_spot_price("2024-05-29")["price_usd_per_oz"] == pytest.approx(32.05)

    run = runs.get_run(result.run_id)
    assert run["source"] == "spot_backfill"
    assert run["status"] == "OK"
    assert run["inserted"] == 1


def test_auto_backfill_not_needed(mocker, repo, runs, settings):
    for offset in range(10):
        repo.upsert_spot_price(_spot_row(TODAY - timedelta(days=offset)))
    fetcher = mocker.Mock()

    result = auto_backfill_spot(repo, runs, settings, TODAY, fetcher=fetcher)

    assert not result.needed
    fetcher.assert_not_called()
    assert runs.count_by_status("spot_backfill") == {}


def test_auto_backfill_fetch_failure_is_recorded(mocker, repo, runs, settings):
    fetcher = mocker.Mock(return_value=failure(ErrorKind.FETCH_ERROR, "HTTP 503"))

    result = auto_backfill_spot(repo, runs, settings, TODAY, fetcher=fetcher)

    assert result.needed and not result.executed
    assert result.message == "HTTP 503"
    assert runs.get_run(result.run_id)["status"] == "ERROR"
    assert repo.count_spot_prices() == 0


# ======================
# 逐日对账
# ======================
def test_backfill_dates_oldest_first():
    assert backfill_dates(TODAY, 3) == [date(2024, 6, 1), date(2024, 6, 2), TODAY]


def test_reconcile_days_continues_after_failed_day(mocker):
    orchestrator = mocker.Mock()
    orchestrator.run.side_effect = [
        RunReport(run_id="a", target_date="2024-06-01", triggered_by="manual", status=RunStatus.OK),
        PersistenceError("database is locked"),
        RunReport(run_id="c", target_date="2024-06-03", triggered_by="manual", status=RunStatus.PARTIAL),
    ]
    sleep = mocker.patch("core.backfill.time.sleep")
    seen = []

    report = reconcile_days(orchestrator, backfill_dates(TODAY, 3), pause_seconds=2, on_report=seen.append)

    assert [d.date for d in report.days] == ["2024-06-01", "2024-06-02", "2024-06-03"]
    assert [d.success for d in report.days] == [True, False, True]
    assert report.failed_days[0].error == "database is locked"
    assert not report.success
    assert [r.run_id for r in seen] == ["a", "c"]
    assert sleep.call_count == 2


def _adapters():
    def stock(target, settings):
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
            "file_hash": None,
            "source_url": None,
            "source": "cme_xls",
            "warehouses": [],
        })

    def fx(target, settings, previous_rate=None):
        return success({"date": target.isoformat(), "usd_cny": 7.24, "source": "frankfurter"})

    def spot(target, settings):
        return success(_spot_row(target))

    def benchmark(target, usd_cny, spot_usd_per_oz=None, settings=None):
        return success({
            "date": target.isoformat(),
            "price_cny_per_gram": 7.6366,
            "price_usd_per_oz": 32.80,
            "fx_rate_used": usd_cny,
            "provider": "sge",
            "is_estimated": False,
            "conversion_steps": [],
            "raw_payload": None,
        })

    def retail(target, spot_usd_per_oz, settings=None):
        return success([])

    return SourceAdapters(stock=stock, fx=fx, spot=spot, benchmark=benchmark, retail=retail)


def test_run_backfill_reconciles_each_day(mocker, tmp_path, settings):
    engine = init_database(create_database_engine(DatabaseSettings(path=str(tmp_path / "tracker.db"))))
    fetcher = mocker.Mock(return_value=success([]))
    try:
        report = run_backfill(TODAY, 3, settings, engine=engine, adapters=_adapters(), fetcher=fetcher)

        assert report.success
        assert [d.date for d in report.days] == ["2024-06-01", "2024-06-02", "2024-06-03"]
        assert all(d.status == RunStatus.OK for d in report.days)
        assert report.spot.needed
        fetcher.assert_called_once()

        repo = MarketRepository(engine)
        for day in ("2024-06-01", "2024-06-02", "2024-06-03"):
            assert repo.get_reconciled(day)["spread_usd_per_oz"] == pytest.approx(0.30)
    finally:
        close_engine(engine)


def test_run_backfill_rejects_non_positive_days(settings):
    with pytest.raises(ValueError):
        run_backfill(TODAY, -1, settings)
