import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import ValidationError

from reference_scenario import build_reference_scenario
from scenario_runner import (
    HarnessSetupError,
    Metrics,
    MetricsSnapshot,
    RampStage,
    ScenarioDefinition,
    ScenarioRunner,
    ScheduleConfig,
    configure_logging,
    load_scenario_file,
    logger,
)

EXIT_OK = 0
EXIT_SETUP_ERROR = 1
EXIT_CONFIG_ERROR = 2


def parse_stage(value: str) -> RampStage:
    """Parses a DURATION:TARGET pair such as '30s:10'."""
    duration, sep, target = value.rpartition(":")
    if not sep or not duration:
        raise argparse.ArgumentTypeError(f"stage must look like DURATION:TARGET, got '{value}'")
    try:
        return RampStage(duration=duration, target=int(target))
    except (ValueError, ValidationError) as e:
        raise argparse.ArgumentTypeError(f"invalid stage '{value}': {e}")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an HTTP scenario with concurrent virtual users")
    parser.add_argument("--vus", default=os.environ.get("VUS"), help="Number of virtual users (env VUS, default 10)")
    parser.add_argument("--duration", default=os.environ.get("DURATION"), help="Run duration, e.g. 30s or 1m30s (env DURATION, default 30s)")
    parser.add_argument("--base-url", dest="base_url", default=os.environ.get("BASE_URL"), help="Service base URL (env BASE_URL, default http://localhost:8080)")
    parser.add_argument(
        "--iterations",
        type=int,
        default=None,
        help="Stop each VU after this many iterations",
    )
    parser.add_argument(
        "--pause-ms",
        dest="pause_ms",
        type=int,
        default=None,
        help="Fixed pause between iterations of one VU in milliseconds (default 100)",
    )
    parser.add_argument(
        "--stage",
        dest="stages",
        action="append",
        type=parse_stage,
        default=[],
        help="Ramp stage DURATION:TARGET; repeat for several stages",
    )
    parser.add_argument("--run-tag", dest="run_tag", default=None, help="Tag folded into correlation IDs")
    parser.add_argument("--scenario", default=None, help="Scenario definition file (JSON or YAML); the PR workflow is used when omitted")
    parser.add_argument("--summary-json", dest="summary_json", default=None, help="Write the final metrics snapshot to this file")
    parser.add_argument("--log-level", dest="log_level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ScheduleConfig:
    """Raises ValidationError on invalid values."""
    values = {
        "base_url": args.base_url,
        "vus": args.vus,
        "duration_s": args.duration,
        "stages": args.stages,
        "iterations": args.iterations,
        "iteration_pause_ms": args.pause_ms,
        "run_tag": args.run_tag,
        "log_level": args.log_level,
        "debug": args.log_level.strip().upper() == "DEBUG",
    }
    return ScheduleConfig(**{k: v for k, v in values.items() if v not in (None, [])})


def format_summary(snapshot: MetricsSnapshot) -> List[str]:
    lines = []
    for stats in snapshot.steps.values():
        mark = "✓" if stats.fails == 0 else "✗"
        line = f"{mark} {stats.check_name}: {stats.passes} passed, {stats.fails} failed"
        if stats.status_counts:
            histogram = ", ".join(f"{status}={count}" for status, count in sorted(stats.status_counts.items()))
            line += f" [{histogram}]"
        if stats.transport_errors:
            line += f" ({stats.transport_errors} transport errors)"
        lines.append(line)
    lines.append(
        f"checks: {snapshot.pass_rate * 100:.2f}% ({snapshot.passed_checks} of {snapshot.total_checks})"
    )
    lines.append(
        f"http_reqs: {snapshot.request_count} ({snapshot.throughput_rps:.2f}/s), "
        f"avg={snapshot.latency_avg_ms:.2f}ms p(95)={snapshot.latency_p95_ms:.2f}ms max={snapshot.latency_max_ms:.2f}ms"
    )
    lines.append(f"iterations: {snapshot.iterations} ({snapshot.iterations_per_s:.2f}/s) in {snapshot.duration_s:.2f}s")
    return lines


async def run_scenario(cfg: ScheduleConfig, scenario: ScenarioDefinition) -> MetricsSnapshot:
    metrics = Metrics()
    runner = ScenarioRunner(cfg, scenario, metrics)
    return await runner.run()


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        args = parse_args(argv)
    except SystemExit as e:
        # argparse exits 2 on usage errors already; keep its code
        return e.code if isinstance(e.code, int) else EXIT_CONFIG_ERROR

    try:
        cfg = build_config(args)
    except (ValidationError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG_ERROR
    logging.basicConfig(level=cfg.effective_log_level)
    configure_logging(cfg.effective_log_level)

    try:
        scenario = load_scenario_file(args.scenario) if args.scenario else build_reference_scenario()
    except (ValidationError, ValueError, OSError) as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG_ERROR

    try:
        snapshot = asyncio.run(run_scenario(cfg, scenario))
    except HarnessSetupError as e:
        logger.error(f"Setup failed: {e}")
        return EXIT_SETUP_ERROR
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping scenario run.")
        return EXIT_OK

    for line in format_summary(snapshot):
        logger.info(line)
    if args.summary_json:
        Path(args.summary_json).write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
        logger.info(f"Summary written to {args.summary_json}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
