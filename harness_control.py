import asyncio
import threading
import time
import logging
import signal
import os
import psutil
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from scenario_runner import (
    StartRequest,
    ScenarioRunner,
    Metrics,
    MetricsSnapshot,
    configure_logging,
)
from reference_scenario import build_reference_scenario

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

# ------------------------------------------------------
# Logging in UTC
# ------------------------------------------------------
logging.Formatter.converter = time.gmtime

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)sZ - %(levelname)s - %(name)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("harness_control")

app = FastAPI()

# ------------------------------------------------------
# Global Runtime State
# ------------------------------------------------------
current_settings = {
    'app_status': 'initializing',  # 'initializing' | 'running' | 'stopped' | 'error'
}

runner_instance = None          # type: Optional[ScenarioRunner]
event_loop = None               # type: Optional[asyncio.AbstractEventLoop]
background_thread = None        # type: Optional[threading.Thread]
last_snapshot = None            # type: Optional[MetricsSnapshot]


# ---------------------------------------------------------------------
# HELPER: Accept { "config": {...}, "scenario": {...} } or a flat config.
# ---------------------------------------------------------------------
def _ensure_config_scenario_structure(data: dict) -> dict:
    scenario = data.pop("scenario", None)
    config = data.pop("config", None)
    if config is None:
        config = {}

    # A non-object config is left for StartRequest to reject
    if isinstance(config, dict):
        for key in list(data.keys()):
            config[key] = data.pop(key)

    structured = {"config": config}
    if scenario is not None:
        structured["scenario"] = scenario
    return structured


def _call_in_runner_loop(coro_factory: Callable[[], Awaitable[Any]], default: Any, timeout: float = 0.5) -> Any:
    """Runs a coroutine on the runner's event loop from the API thread."""
    loop = event_loop
    if not loop or loop.is_closed() or not loop.is_running():
        return default
    future = asyncio.run_coroutine_threadsafe(coro_factory(), loop)
    try:
        return future.result(timeout=timeout)
    except Exception as e:
        logger.warning(f"Error reading runner state: {e}")
        future.cancel()
        return default


# ---------------------------------------------------------------------
# STOP HELPER
# ---------------------------------------------------------------------
def _stop_runner(graceful: bool = True):
    """
    Stop the scenario runner if it exists and is running, wait for the
    background thread, then set status to 'stopped'.
    """
    # The thread may still be creating the runner
    thread = background_thread
    wait_until = time.monotonic() + 2.0
    while (
        thread and thread.is_alive()
        and (runner_instance is None or not runner_instance.running)
        and time.monotonic() < wait_until
    ):
        time.sleep(0.01)

    instance = runner_instance
    if not instance or not instance.running:
        logger.info("No running scenario runner instance to stop.")
        if current_settings['app_status'] != 'error':
            current_settings['app_status'] = 'stopped'
        return

    logger.info(f"Stopping scenario runner ({'graceful' if graceful else 'forced'})...")
    loop = event_loop
    try:
        if loop and not loop.is_closed() and loop.is_running():
            future = asyncio.run_coroutine_threadsafe(instance.stop(graceful=graceful), loop)
            future.result(timeout=30)
        else:
            logger.warning("Event loop unavailable or not running; forcing instance.running = False.")
            instance.running = False
    except Exception as e:
        logger.error(f"Unexpected error stopping scenario runner: {e}", exc_info=True)
    finally:
        thread = background_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=10)
        current_settings['app_status'] = 'stopped'
        logger.info("Scenario runner stopped and marked as 'stopped'.")


# ---------------------------------------------------------------------
# BACKGROUND THREAD ROUTINE
# ---------------------------------------------------------------------
def run_scenario_in_loop(start_request: StartRequest):
    """
    Dedicated background thread: creates an asyncio loop,
    instantiates the scenario runner, and runs until the deadline or a stop.
    """
    global event_loop, runner_instance, last_snapshot

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    event_loop = loop
    try:
        scenario = start_request.scenario or build_reference_scenario()
        runner_instance = ScenarioRunner(
            config=start_request.config,
            scenario=scenario,
            metrics=Metrics(),
        )
        logger.info(f"Starting scenario '{scenario.name}'...")
        last_snapshot = loop.run_until_complete(runner_instance.run())
    except Exception as e:
        logger.error(f"Background scenario runner error: {e}", exc_info=True)
        current_settings['app_status'] = 'error'
    finally:
        logger.info("Background scenario runner thread exiting.")
        if current_settings['app_status'] == 'running':
            current_settings['app_status'] = 'stopped'

        pending = [task for task in asyncio.all_tasks(loop) if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
        logger.info("Asyncio event loop closed.")


def _collect_runner_stats() -> dict:
    instance = runner_instance
    stats = {"rps": 0.0, "active_users": 0, "avg_iteration_ms": 0.0, "snapshot": last_snapshot}
    if not instance:
        return stats

    if instance.running:
        stats["rps"] = float(_call_in_runner_loop(instance.metrics.get_rps, 0.0))
        stats["avg_iteration_ms"] = _call_in_runner_loop(instance.metrics.get_average_iteration_duration_ms, 0.0)
        stats["snapshot"] = _call_in_runner_loop(instance.metrics.snapshot, last_snapshot)
        stats["active_users"] = instance.get_active_user_count()
    return stats


# ---------------------------------------------------------------------
# FASTAPI ENDPOINTS
# ---------------------------------------------------------------------
@app.get('/api/health')
async def health_check():
    """Basic health check endpoint."""
    return JSONResponse({
        "status": "healthy",
        "app_status": current_settings['app_status']
    })


@app.post('/api/start')
async def start_scenario_runner(data: dict):
    """Start a run with the given configuration and optional scenario.
    The PR service workflow is used when no scenario is given.
    If a run is already active it is stopped before the new one begins.
    """
    global background_thread, runner_instance, last_snapshot

    structured_data = _ensure_config_scenario_structure(data)

    try:
        start_req_obj = StartRequest(**structured_data)
        logger.info("Start request validated successfully.")
    except ValidationError as ve:
        logger.error(f"Request validation failed: {ve}")
        raise HTTPException(status_code=400, detail=ve.errors(include_url=False, include_context=False))

    if current_settings['app_status'] == 'running':
        logger.info("Received /api/start while a run is active. Stopping it first...")
        await asyncio.to_thread(_stop_runner, True)

    configure_logging(start_req_obj.config.effective_log_level)

    runner_instance = None
    last_snapshot = None
    current_settings['app_status'] = 'running'
    background_thread = threading.Thread(
        target=run_scenario_in_loop,
        args=(start_req_obj,),
        daemon=True
    )
    background_thread.start()

    logger.info("Scenario run started")
    return JSONResponse({"message": "Scenario run started"})


@app.post('/api/stop')
async def stop_scenario_runner():
    """
    Gracefully stops the active run: in-flight iterations finish, no new ones start.
    """
    if current_settings['app_status'] != 'running':
        if current_settings['app_status'] == 'stopped':
            return JSONResponse({"message": "Scenario runner is already stopped."})
        return JSONResponse({"message": f"No running scenario to stop (status={current_settings['app_status']})."})

    await asyncio.to_thread(_stop_runner, True)
    return JSONResponse({"message": "Scenario runner stopped."})


@app.get('/api/metrics')
async def api_metrics():
    """
    Return system stats plus the live (or last final) metrics snapshot.
    """
    cpu_percent = psutil.cpu_percent(interval=0.1)
    mem = psutil.virtual_memory()
    net_io = psutil.net_io_counters()
    stats = await asyncio.to_thread(_collect_runner_stats)
    snapshot = stats["snapshot"]

    resp_body = {
        "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
        "app_status": current_settings['app_status'],
        "network": {
            "bytes_sent": net_io.bytes_sent,
            "bytes_recv": net_io.bytes_recv,
            "packets_sent": net_io.packets_sent,
            "packets_recv": net_io.packets_recv
        },
        "system": {
            "cpu_percent": round(cpu_percent, 1),
            "memory_percent": round(mem.percent, 1),
            "memory_available_mb": round(mem.available / (1024 * 1024), 2),
            "memory_used_mb": round(mem.used / (1024 * 1024), 2)
        },
        "metrics": {
            "rps": stats["rps"],
            "active_virtual_users": stats["active_users"],
            "average_iteration_duration_ms": stats["avg_iteration_ms"],
            "snapshot": snapshot.model_dump() if snapshot else None,
        }
    }
    return JSONResponse(resp_body)


@app.get('/metrics')
async def metrics_prometheus():
    """
    Prometheus /metrics endpoint with system and scenario run stats.
    """
    cpu_percent = psutil.cpu_percent(interval=0.1)
    mem = psutil.virtual_memory()
    stats = await asyncio.to_thread(_collect_runner_stats)
    snapshot = stats["snapshot"]

    status_map = {
        "initializing": 0,
        "running": 1,
        "stopped": 2,
        "error": 3
    }
    app_status_val = status_map.get(current_settings['app_status'], 3)

    lines = [
        "# HELP process_cpu_percent CPU usage percent.",
        "# TYPE process_cpu_percent gauge",
        f"process_cpu_percent {round(cpu_percent, 1)}",
        "# HELP process_memory_percent Memory usage percent.",
        "# TYPE process_memory_percent gauge",
        f"process_memory_percent {round(mem.percent, 1)}",
        "# HELP app_status Application status (initializing=0, running=1, stopped=2, error=3).",
        "# TYPE app_status gauge",
        f"app_status {app_status_val}",
        "# HELP scenario_runner_rps Requests per second over the last second.",
        "# TYPE scenario_runner_rps gauge",
        f"scenario_runner_rps {stats['rps']}",
        "# HELP scenario_runner_active_users Virtual users currently running.",
        "# TYPE scenario_runner_active_users gauge",
        f"scenario_runner_active_users {stats['active_users']}",
        "# HELP scenario_runner_iteration_duration_ms Average iteration duration in milliseconds.",
        "# TYPE scenario_runner_iteration_duration_ms gauge",
        f"scenario_runner_iteration_duration_ms {stats['avg_iteration_ms']}",
    ]
    if snapshot:
        lines.extend([
            "# HELP scenario_runner_checks_total Checks evaluated.",
            "# TYPE scenario_runner_checks_total counter",
            f"scenario_runner_checks_total {snapshot.total_checks}",
            "# HELP scenario_runner_checks_failed_total Checks that failed.",
            "# TYPE scenario_runner_checks_failed_total counter",
            f"scenario_runner_checks_failed_total {snapshot.failed_checks}",
            "# HELP scenario_runner_iterations_total Completed iterations.",
            "# TYPE scenario_runner_iterations_total counter",
            f"scenario_runner_iterations_total {snapshot.iterations}",
            "# HELP scenario_runner_transport_errors_total Requests without a response.",
            "# TYPE scenario_runner_transport_errors_total counter",
            f"scenario_runner_transport_errors_total {snapshot.transport_errors}",
        ])
    return Response("\n".join(lines) + "\n", media_type="text/plain; version=0.0.4")


# ---------------------------------------------------------------------
# SIGNAL HANDLER (SIGTERM, SIGINT)
# ---------------------------------------------------------------------
def handle_signal(signum, frame):
    """
    Handle SIGTERM/SIGINT: gracefully stop the active run, then exit.
    """
    signal_name = signal.Signals(signum).name
    logger.info(f"Received signal {signal_name} ({signum}); stopping scenario runner.")
    _stop_runner(graceful=True)

    logger.info("Exiting harness_control due to signal.")
    os._exit(0)


# ---------------------------------------------------------------------
# MAIN ENTRY POINT
# ---------------------------------------------------------------------
if __name__ == '__main__':
    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)
    logger.info("Starting harness_control API server...")

    import uvicorn
    uvicorn.run(
        "harness_control:app",
        host='0.0.0.0',
        port=int(os.environ.get("PORT", "8081")),
        log_level="info",
        reload=os.environ.get("DEV_RELOAD", "false").lower() == "true"
    )
