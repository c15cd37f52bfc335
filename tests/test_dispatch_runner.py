import logging
from uuid import uuid4

from wa_inbox.app_logging import close_job_logging, setup_job_logging
from wa_inbox.campaigns.runner import DispatchRunner, get_runner, reset_runner


def test_runner_executes_submitted_job():
    runner = DispatchRunner(max_workers=1)
    called = {}

    def work():
        called["ran"] = True

    fut = runner.submit(uuid4(), work)
    fut.result(timeout=1)
    runner.shutdown()

    assert called["ran"]


def test_runner_logs_crashed_job(caplog):
    runner = DispatchRunner(max_workers=1)
    job_id = uuid4()

    def work():
        raise RuntimeError("boom")

    with caplog.at_level(logging.ERROR, logger="wa_inbox.campaigns.runner"):
        fut = runner.submit(job_id, work)
        fut.exception(timeout=1)
        runner.shutdown()

    assert any(str(job_id) in r.getMessage() and "boom" in r.getMessage() for r in caplog.records)


def test_get_runner_is_shared_until_reset():
    reset_runner()
    first = get_runner()
    assert get_runner() is first
    reset_runner()
    assert get_runner() is not first
    reset_runner()


def test_setup_job_logging_creates_file(tmp_path, monkeypatch):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    job_id = uuid4()

    logger, log_path = setup_job_logging(job_id)
    logger.info("hello")
    close_job_logging(logger)

    assert log_path == tmp_path / "logs" / "jobs" / f"{job_id}.log"
    assert "hello" in log_path.read_text(encoding="utf-8")
    assert logger.handlers == []
