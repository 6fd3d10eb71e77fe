import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))
import argparse
import json
import logging

import pytest

import scenario_runner
import scenario_runner_cli
from scenario_runner import MetricsSnapshot, StepStats, load_scenario_file
from scenario_runner_cli import build_config, format_summary, main, parse_args, parse_stage


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    for name in ("VUS", "DURATION", "BASE_URL"):
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_env():
    cfg = build_config(parse_args([]))
    assert cfg.vus == 10
    assert cfg.duration_s == 30.0
    assert cfg.base_url == "http://localhost:8080"
    assert cfg.iteration_pause_ms == 100
    assert cfg.debug is False


def test_env_variables_configure_the_run(monkeypatch):
    monkeypatch.setenv("VUS", "3")
    monkeypatch.setenv("DURATION", "1m")
    monkeypatch.setenv("BASE_URL", "http://pr-service:9000/")
    cfg = build_config(parse_args([]))
    assert cfg.vus == 3
    assert cfg.duration_s == 60.0
    assert cfg.base_url == "http://pr-service:9000"


def test_flags_override_env(monkeypatch):
    monkeypatch.setenv("VUS", "3")
    args = parse_args([
        "--vus", "5", "--iterations", "2", "--pause-ms", "0",
        "--stage", "10s:4", "--stage", "5s:0", "--run-tag", "nightly", "--log-level", "debug",
    ])
    cfg = build_config(args)
    assert cfg.vus == 5
    assert cfg.iterations == 2
    assert cfg.iteration_pause_ms == 0
    assert [(s.duration, s.target) for s in cfg.stages] == [(10.0, 4), (5.0, 0)]
    assert cfg.total_duration_s == 15.0
    assert cfg.run_tag == "nightly"
    assert cfg.debug is True


def test_parse_stage():
    stage = parse_stage("1m30s:8")
    assert stage.duration == 90.0
    assert stage.target == 8
    for bad in ("10s", ":3", "10s:x", "later:2"):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_stage(bad)


@pytest.mark.parametrize(
    "argv",
    [
        ["--vus", "0"],
        ["--vus", "many"],
        ["--duration", "forever"],
        ["--base-url", "not a url"],
        ["--scenario", "/nonexistent/scenario.json"],
        ["--stage", "bogus"],
    ],
)
def test_configuration_errors_exit_2(argv):
    assert main(argv) == 2


def test_setup_error_exits_1(monkeypatch):
    class BrokenClient:
        def __init__(self, config):
            raise OSError("cannot create connector")

    monkeypatch.setattr(scenario_runner, "AiohttpClient", BrokenClient)
    assert main(["--vus", "1", "--duration", "1s"]) == 1


def test_invalid_scenario_file_exits_2(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"name": "bad", "steps": []}), encoding="utf-8")
    assert main(["--scenario", str(path)]) == 2


def test_load_scenario_file_yaml(tmp_path):
    path = tmp_path / "scenario.yaml"
    path.write_text(
        "name: yaml scenario\n"
        "staticVars:\n"
        "  team: backend\n"
        "steps:\n"
        "  - id: health\n"
        "    check: health is 200\n"
        "    method: GET\n"
        "    url: /health\n"
        "    expect:\n"
        "      status: [200]\n"
        "      bodyByStatus:\n"
        "        200: {status: ok}\n",
        encoding="utf-8",
    )
    scenario = load_scenario_file(path)
    assert scenario.name == "yaml scenario"
    assert scenario.steps[0].check_name == "health is 200"
    assert scenario.steps[0].expect.bodyByStatus == {200: {"status": "ok"}}


def test_load_scenario_file_nested_under_scenario_key(tmp_path):
    path = tmp_path / "start.json"
    path.write_text(json.dumps({
        "config": {"vus": 1},
        "scenario": {"name": "nested", "steps": [{"id": "s", "method": "GET", "url": "/", "expect": {"status": [200]}}]},
    }), encoding="utf-8")
    assert load_scenario_file(path).name == "nested"


def test_format_summary_lines():
    snapshot = MetricsSnapshot(
        final=True, total_checks=4, passed_checks=3, failed_checks=1, pass_rate=0.75,
        steps={
            "health": StepStats(step_id="health", check_name="health is 200", checks=2, passes=2, status_counts={"200": 2}),
            "merge": StepStats(step_id="merge", check_name="merge pr 200 or 404", checks=2, passes=1, fails=1,
                               transport_errors=1, status_counts={"200": 1}),
        },
        request_count=3, transport_errors=1, iterations=2, duration_s=1.0, throughput_rps=3.0,
        iterations_per_s=2.0, latency_avg_ms=5.0, latency_p95_ms=9.0, latency_max_ms=10.0,
    )
    lines = format_summary(snapshot)
    assert lines[0] == "✓ health is 200: 2 passed, 0 failed [200=2]"
    assert lines[1] == "✗ merge pr 200 or 404: 1 passed, 1 failed [200=1] (1 transport errors)"
    assert lines[2] == "checks: 75.00% (3 of 4)"
    assert "http_reqs: 3" in lines[3]
    assert "iterations: 2" in lines[4]


def test_main_writes_summary_json(tmp_path, monkeypatch):
    class FakeRunner:
        def __init__(self, cfg, scenario, metrics):
            self.metrics = metrics

        async def run(self):
            self.metrics.mark_started()
            self.metrics.mark_finished()
            return await self.metrics.snapshot()

    monkeypatch.setattr(scenario_runner_cli, "ScenarioRunner", FakeRunner)
    out = tmp_path / "summary.json"
    assert main(["--vus", "1", "--duration", "1s", "--summary-json", str(out)]) == 0
    data = json.loads(out.read_text(encoding="utf-8"))
    assert data["final"] is True
    assert data["total_checks"] == 0


@pytest.fixture
def restore_runner_logging():
    yield
    scenario_runner.configure_logging(logging.INFO)


class SummaryOnlyRunner:
    def __init__(self, cfg, scenario, metrics):
        self.metrics = metrics

    async def run(self):
        scenario_runner.logger.info("iteration log line")
        self.metrics.mark_started()
        self.metrics.mark_finished()
        return await self.metrics.snapshot()


def test_log_level_flag_sets_runner_logger(monkeypatch, restore_runner_logging):
    monkeypatch.setattr(scenario_runner_cli, "ScenarioRunner", SummaryOnlyRunner)
    assert main(["--vus", "1", "--duration", "1s", "--log-level", "WARNING"]) == 0
    assert not scenario_runner.logger.isEnabledFor(logging.INFO)
    assert scenario_runner.logger.isEnabledFor(logging.WARNING)
    assert all(h.level == logging.WARNING for h in scenario_runner.logger.handlers)

    assert main(["--vus", "1", "--duration", "1s", "--log-level", "debug"]) == 0
    assert scenario_runner.logger.isEnabledFor(logging.DEBUG)


def test_log_level_is_part_of_the_config():
    cfg = build_config(parse_args(["--log-level", "error"]))
    assert cfg.log_level == "ERROR"
    assert cfg.effective_log_level == logging.ERROR
    assert cfg.debug is False


def test_unknown_log_level_exits_2(restore_runner_logging):
    assert main(["--log-level", "chatty"]) == 2
