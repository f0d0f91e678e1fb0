import asyncio
import logging
import time
from pathlib import Path

import pytest

from conftest import FixedLatencySessionClient

from fleet_stress import cli, logging_utils
from fleet_stress.metrics import FleetMetrics, pattern_counts, summarize_history
from fleet_stress.movement import MovementPattern
from fleet_stress.session import LoopbackSessionClient


def _patch_quick_run(monkeypatch, store):
    async def fake_run_fleet(config, dry_run=False, **_):
        store["config"] = config
        store["dry_run"] = dry_run
        return summarize_history([])

    monkeypatch.setattr(cli, "run_fleet", fake_run_fleet)


def _capture_configure_logging(monkeypatch, store, passthrough):
    original_configure = cli.configure_logging

    def wrapped_configure_logging(
        *,
        log_dir,
        console_level="INFO",
        console_json=False,
        rotation=None,
        retention=None,
    ):
        store["configure_args"] = {
            "log_dir": log_dir,
            "console_level": console_level,
            "console_json": console_json,
            "rotation": rotation,
            "retention": retention,
        }
        if passthrough:
            original_configure(
                log_dir=log_dir,
                console_level=console_level,
                console_json=console_json,
                rotation=rotation,
                retention=retention,
            )

    monkeypatch.setattr(cli, "configure_logging", wrapped_configure_logging)


def test_main_logging_args_with_log_dir(monkeypatch, tmp_path):
    store: dict[str, object] = {}
    _patch_quick_run(monkeypatch, store)
    _capture_configure_logging(monkeypatch, store, passthrough=True)

    argv = [
        "--dry-run",
        "--log-dir",
        str(tmp_path),
        "--log-json-console",
        "--log-level-console",
        "DEBUG",
        "--log-rotation",
        "10 MB",
        "--log-retention",
        "5",
    ]
    try:
        assert cli.main(argv) == 0
    finally:
        cli.logger.remove()

    assert store["dry_run"] is True
    assert store["configure_args"]["log_dir"] == Path(tmp_path)
    assert store["configure_args"]["console_json"] is True
    assert store["configure_args"]["console_level"] == "DEBUG"
    assert store["configure_args"]["rotation"] == "10 MB"
    assert store["configure_args"]["retention"] == 5

    log_file = tmp_path / "fleet-stress.log"
    for _ in range(40):
        if log_file.exists() and log_file.stat().st_size > 0:
            break
        time.sleep(0.05)

    assert log_file.exists()
    first_line = log_file.read_text().splitlines()[0]
    assert first_line.lstrip().startswith("{")


def test_main_logging_args_without_log_dir(monkeypatch):
    store: dict[str, object] = {}
    _patch_quick_run(monkeypatch, store)
    _capture_configure_logging(monkeypatch, store, passthrough=False)

    assert cli.main(["--capacity", "12", "--pattern", "grid"]) == 0

    assert store["configure_args"]["log_dir"] is None
    assert store["configure_args"]["console_json"] is False
    assert store["configure_args"]["rotation"] is None
    assert store["configure_args"]["retention"] is None
    assert store["config"].capacity == 12
    assert store["config"].default_pattern == "grid"


def test_main_rejects_invalid_config(monkeypatch, capsys):
    store: dict[str, object] = {}
    _patch_quick_run(monkeypatch, store)
    _capture_configure_logging(monkeypatch, store, passthrough=False)

    assert cli.main(["--capacity", "0"]) == 1
    assert "capacity" in capsys.readouterr().err
    assert "config" not in store


def test_main_reports_missing_config_file(monkeypatch, tmp_path, capsys):
    store: dict[str, object] = {}
    _patch_quick_run(monkeypatch, store)

    assert cli.main(["--config", str(tmp_path / "missing.toml")]) == 1
    assert "ERROR" in capsys.readouterr().err


def test_retention_rule():
    assert cli._retention_rule("20") == 20
    assert cli._retention_rule("1 week") == "1 week"
    assert cli._retention_rule(None) is None


def test_format_status():
    metrics = FleetMetrics(
        total_bots=3,
        average_latency_ms=12.34,
        average_tick_rate=59.9,
        memory_usage_mb=256.0,
        active_patterns=pattern_counts(
            [MovementPattern.CIRCLE, MovementPattern.CIRCLE, MovementPattern.GRID]
        ),
        total_errors=2,
    )
    line = cli.format_status(metrics, capacity=10)
    assert line.startswith("Bots 3/10")
    assert "latency 12.3 ms" in line
    assert "tick rate 59.9 Hz" in line
    assert "errors 2" in line
    assert "circle=2" in line


class TestRunFleet:
    @pytest.mark.asyncio
    async def test_dry_run_until_duration(self, make_config):
        config = make_config(
            capacity=3,
            spawn_rate=3,
            control_interval=0.05,
            status_log_interval=0.1,
            run_duration=0.4,
            latency_probe_interval=0.0,
            min_tick_rate=0.0,
        )
        client = LoopbackSessionClient()

        summary = await cli.run_fleet(config, session_client=client)

        assert summary["samples"] > 0
        assert summary["peak_bots"] > 0
        assert client.sessions == {}

    @pytest.mark.asyncio
    async def test_threshold_breach_ends_run(self, make_config):
        config = make_config(
            capacity=2,
            spawn_rate=2,
            control_interval=0.05,
            latency_probe_interval=0.02,
            max_latency_ms=10.0,
            min_tick_rate=0.0,
            run_duration=0.0,
        )
        client = FixedLatencySessionClient(ping_ms=50.0)

        summary = await asyncio.wait_for(cli.run_fleet(config, session_client=client), 5.0)

        assert summary["max_latency_ms"] == pytest.approx(50.0)
        assert client.sessions == {}


def _make_record(level=logging.WARNING, msg="hello", name="dummy"):
    return logging.LogRecord(
        name=name,
        level=level,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


class DummyLogger:
    def __init__(self):
        self.add_calls: list[dict[str, object]] = []
        self.errors: list[str] = []
        self.infos: list[str] = []
        self.logged: list[dict[str, object]] = []
        self.bound: list[dict[str, object]] = []

    def remove(self):
        return None

    def configure(self, **kwargs):
        return None

    def add(self, *args, **kwargs):
        self.add_calls.append({"args": args, "kwargs": kwargs})
        return len(self.add_calls)

    def level(self, name):
        return type("Level", (), {"name": name})()

    def bind(self, **kwargs):
        self.bound.append(kwargs)
        return self

    def opt(self, depth, exception):
        self.logged.append({"depth": depth, "exception": exception})
        return self

    def log(self, level, message):
        self.logged[-1]["level"] = level
        self.logged[-1]["message"] = message

    def error(self, message):
        self.errors.append(str(message))

    def info(self, message):
        self.infos.append(str(message))


@pytest.fixture
def dummy_logger(monkeypatch):
    dummy = DummyLogger()
    monkeypatch.setattr(logging_utils, "logger", dummy)
    monkeypatch.setattr(logging, "basicConfig", lambda **_: None)
    monkeypatch.setattr(logging, "captureWarnings", lambda *_, **__: None)
    return dummy


def test_intercept_handler_redirects_stdlib(dummy_logger):
    handler = logging_utils.InterceptHandler()
    handler.emit(_make_record(name="fleet_stress.fleet"))

    assert dummy_logger.logged[-1]["message"] == "hello"
    assert dummy_logger.logged[-1]["level"] == "WARNING"
    assert dummy_logger.bound[-1] == {"logger_name": "fleet_stress.fleet"}


def test_configure_logging_console_json(dummy_logger):
    logging_utils.configure_logging(log_dir=None, console_level="warning", console_json=True)

    console_kwargs = dummy_logger.add_calls[0]["kwargs"]
    assert console_kwargs["serialize"] is True
    assert "format" not in console_kwargs
    assert console_kwargs["level"] == "WARNING"


def test_configure_logging_defaults_for_file_sink(dummy_logger, tmp_path):
    logging_utils.configure_logging(log_dir=tmp_path)

    assert len(dummy_logger.add_calls) == 2
    file_call = dummy_logger.add_calls[1]
    assert file_call["args"][0] == tmp_path / "fleet-stress.log"
    assert file_call["kwargs"]["serialize"] is True
    assert file_call["kwargs"]["rotation"] == logging_utils.DEFAULT_LOG_ROTATION
    assert file_call["kwargs"]["retention"] == logging_utils.DEFAULT_LOG_RETENTION


def test_configure_logging_uses_custom_rotation_and_retention(dummy_logger, tmp_path):
    def custom_rotation(*_, **__):
        return False

    def custom_retention(logs):
        logs.clear()

    logging_utils.configure_logging(
        log_dir=tmp_path,
        rotation=custom_rotation,
        retention=custom_retention,
    )

    file_kwargs = dummy_logger.add_calls[1]["kwargs"]
    assert file_kwargs["rotation"] is custom_rotation
    assert file_kwargs["retention"] is custom_retention


def test_configure_logging_handles_directory_errors(monkeypatch, dummy_logger, tmp_path):
    def fail_mkdir(*_, **__):
        raise OSError("fail")

    monkeypatch.setattr(logging_utils.Path, "mkdir", fail_mkdir)

    logging_utils.configure_logging(log_dir=tmp_path / "logs")

    assert dummy_logger.errors, "Expected log directory failure to be reported"
    assert len(dummy_logger.add_calls) == 1, "File sink should not be registered"
