import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))
import asyncio
import time

import pytest

from scenario_runner import (
    CheckResult,
    Expectation,
    Metrics,
    RequestStep,
    ScenarioDefinition,
)


def make_scenario() -> ScenarioDefinition:
    return ScenarioDefinition(
        name="metrics",
        steps=[
            RequestStep(id="a", check="a ok", method="GET", url="/a", expect=Expectation(status=[200])),
            RequestStep(id="b", method="GET", url="/b", expect=Expectation(status=[200, 404])),
        ],
    )


def result(step_id: str, passed: bool = True, status=200, latency_ms: float = 10.0, vu: int = 0, iteration: int = 0) -> CheckResult:
    return CheckResult(
        step_id=step_id,
        check_name=f"{step_id} check",
        passed=passed,
        status=status,
        error=None if status is not None else "ClientConnectorError",
        latency_ms=latency_ms,
        timestamp=time.time(),
        vu=vu,
        iteration=iteration,
        correlation_id=f"pr-{vu}-{iteration}",
    )


@pytest.mark.asyncio
async def test_record_iteration_totals_and_histogram():
    metrics = Metrics()
    metrics.register_scenario(make_scenario())
    metrics.mark_started()
    await metrics.record_iteration([result("a"), result("b", status=404)], 0.05)
    await metrics.record_iteration([result("a", passed=False, status=500), result("b", passed=False, status=None)], 0.07)
    metrics.mark_finished()

    snap = await metrics.snapshot()
    assert snap.final is True
    assert snap.iterations == 2
    assert snap.total_checks == 4
    assert snap.passed_checks == 2
    assert snap.failed_checks == 2
    assert snap.pass_rate == pytest.approx(0.5)
    assert snap.request_count == 3
    assert snap.transport_errors == 1
    assert snap.steps["a"].status_counts == {"200": 1, "500": 1}
    assert snap.steps["a"].check_name == "a ok"
    assert snap.steps["b"].status_counts == {"404": 1}
    assert snap.steps["b"].transport_errors == 1
    assert snap.steps["b"].fails == 1
    assert list(snap.steps) == ["a", "b"]


@pytest.mark.asyncio
async def test_snapshot_is_partial_until_finished():
    metrics = Metrics()
    metrics.register_scenario(make_scenario())
    metrics.mark_started()
    await metrics.record(result("a"))
    partial = await metrics.snapshot()
    assert partial.final is False
    assert partial.total_checks == 1
    metrics.mark_finished()
    assert (await metrics.snapshot()).final is True


@pytest.mark.asyncio
async def test_unknown_step_is_rejected_after_registration():
    metrics = Metrics()
    metrics.register_scenario(make_scenario())
    with pytest.raises(ValueError):
        await metrics.record(result("ghost"))
    assert metrics.total_checks == 0


@pytest.mark.asyncio
async def test_unregistered_metrics_accept_any_step():
    metrics = Metrics()
    await metrics.record(result("anything"))
    snap = await metrics.snapshot()
    assert snap.steps["anything"].checks == 1
    assert snap.duration_s == 0.0
    assert snap.throughput_rps == 0.0


@pytest.mark.asyncio
async def test_latency_window_is_bounded_but_counts_are_exact():
    metrics = Metrics(latency_window=3)
    metrics.register_scenario(make_scenario())
    for i in range(10):
        await metrics.record(result("a", latency_ms=float(i + 1)))
    snap = await metrics.snapshot()
    assert snap.steps["a"].checks == 10
    assert len(metrics._latencies["a"]) == 3
    assert snap.steps["a"].latency_max_ms == 10.0
    assert snap.steps["a"].latency_avg_ms == pytest.approx(5.5)
    assert 8.0 <= snap.steps["a"].latency_p95_ms <= 10.0


@pytest.mark.asyncio
async def test_concurrent_recording_is_exact():
    metrics = Metrics()
    metrics.register_scenario(make_scenario())

    async def vu(vu_id: int):
        for it in range(20):
            await metrics.record_iteration([result("a", vu=vu_id, iteration=it), result("b", vu=vu_id, iteration=it)], 0.001)
            await asyncio.sleep(0)

    await asyncio.gather(*(vu(i) for i in range(10)))
    snap = await metrics.snapshot()
    assert snap.iterations == 200
    assert snap.total_checks == 400
    assert snap.steps["a"].checks == snap.steps["b"].checks == 200


@pytest.mark.asyncio
async def test_rps_and_average_iteration_duration():
    metrics = Metrics()
    metrics.register_scenario(make_scenario())
    await metrics.record_iteration([result("a"), result("b")], 0.1)
    await metrics.record_iteration([result("a"), result("b")], 0.3)
    await metrics.record_iteration([], -1.0)
    assert await metrics.get_rps() == 4.0
    assert await metrics.get_average_iteration_duration_ms() == pytest.approx(400.0 / 3)


@pytest.mark.asyncio
async def test_average_iteration_duration_empty():
    assert await Metrics().get_average_iteration_duration_ms() == 0.0
