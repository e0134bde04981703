import pytest

from config import DatabaseSettings
from database import create_database_engine, init_database, close_engine, FetchRunRepository, PersistenceError
from core.run_tracker import (
    ERROR_MESSAGE_LIMIT,
    FetchRunTracker,
    RunStatus,
    track_fetch_run,
)


@pytest.fixture
def runs():
    engine = init_database(create_database_engine(DatabaseSettings(path=":memory:")))
    yield FetchRunRepository(engine)
    close_engine(engine)


def test_start_creates_running_record(runs):
    tracker = FetchRunTracker(runs, "fx_rate", "scheduled", {"date": "2024-06-03"})
    run_id = tracker.start()

    stored = runs.get_run(run_id)
    assert stored["status"] == "RUNNING"
    assert stored["triggered_by"] == "scheduled"
    assert stored["params"] == {"date": "2024-06-03"}
    assert stored["finished_at"] is None


def test_finish_only_once(runs):
    tracker = FetchRunTracker(runs, "spot_price")
    run_id = tracker.start()

    assert tracker.succeed(inserted=1) is True
    assert tracker.fail("late error") is False

    stored = runs.get_run(run_id)
    assert stored["status"] == "OK"
    assert stored["inserted"] == 1
    assert stored["error_message"] is None
    assert stored["finished_at"] is not None


def test_succeed_with_failures_is_partial(runs):
    tracker = FetchRunTracker(runs, "retail_price")
    run_id = tracker.start()
    tracker.succeed(inserted=2, failed=1)

    assert runs.get_run(run_id)["status"] == "PARTIAL"


def test_error_message_is_truncated(runs):
    tracker = FetchRunTracker(runs, "benchmark_price")
    run_id = tracker.start()
    tracker.fail("x" * 5000)

    stored = runs.get_run(run_id)
    assert stored["status"] == "ERROR"
    assert len(stored["error_message"]) == ERROR_MESSAGE_LIMIT


def test_update_counts_after_finish_is_ignored(runs):
    tracker = FetchRunTracker(runs, "exchange_stock")
    run_id = tracker.start()
    tracker.update_counts(inserted=1)
    tracker.succeed(inserted=1)
    tracker.update_counts(inserted=99)

    assert runs.get_run(run_id)["inserted"] == 1


def test_context_manager_records_exception(runs):
    with pytest.raises(RuntimeError):
        with FetchRunTracker(runs, "fx_rate") as tracker:
            tracker.update_counts(inserted=1)
            raise RuntimeError("boom")

    stored = runs.get_run(tracker.run_id)
    assert stored["status"] == "ERROR"
    assert stored["error_message"] == "RuntimeError: boom"
    assert stored["inserted"] == 1


def test_context_manager_succeeds(runs):
    with FetchRunTracker(runs, "fx_rate") as tracker:
        tracker.update_counts(updated=1)

    assert tracker.status == RunStatus.OK
    assert runs.get_run(tracker.run_id)["updated"] == 1


def test_start_failure_is_tolerated_unless_strict(mocker):
    repository = mocker.MagicMock()
    repository.create_run.side_effect = PersistenceError("database is locked")

    tracker = FetchRunTracker(repository, "fx_rate")
    assert tracker.start() is None
    # 未创建成功时 finish 不再写库
    tracker.succeed()
    repository.update_run.assert_not_called()

    with pytest.raises(PersistenceError):
        FetchRunTracker(repository, "fx_rate").start(strict=True)


def test_track_fetch_run(runs):
    result = track_fetch_run(runs, "spot_price", lambda: (1, 0))
    assert result["ok"] is True
    assert runs.get_run(result["run_id"])["status"] == "OK"

    def broken():
        raise ValueError("bad payload")

    result = track_fetch_run(runs, "spot_price", broken)
    assert result["ok"] is False
    assert result["error"] == "bad payload"
    assert runs.get_run(result["run_id"])["error_message"] == "bad payload"
