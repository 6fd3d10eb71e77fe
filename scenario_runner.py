# scenario_runner.py

import asyncio
import aiohttp
import copy
import json
import logging
import math
import random
import re
import time
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from ruamel.yaml import YAML

# --- Logging Setup ---
logger = logging.getLogger("ScenarioRunner")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime  # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
logger.propagate = False

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def configure_logging(log_level: int):
    """Sets the ScenarioRunner logger and its handlers to `log_level`."""
    logger.setLevel(log_level)
    for handler in logger.handlers:
        handler.setLevel(log_level)

__all__ = [
    "logger", "configure_logging", "Expectation", "RequestStep", "ScenarioDefinition", "RampStage",
    "ScheduleConfig", "StartRequest", "CheckResult", "StepStats", "MetricsSnapshot",
    "HttpResult", "AiohttpClient", "Metrics", "ScenarioRunner", "VUState",
    "HarnessSetupError", "correlation_id", "parse_duration", "load_scenario_file",
]


class HarnessSetupError(Exception):
    """Raised when the run cannot be set up before the first iteration starts."""


# ---------------------------
# Duration Parsing
# ---------------------------
_DURATION_PART_RE = re.compile(r'(\d+(?:\.\d+)?)(ms|h|m|s)')
_DURATION_UNITS = {'ms': 0.001, 's': 1.0, 'm': 60.0, 'h': 3600.0}


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Converts a duration into seconds. Accepts plain numbers (seconds) and
    compound unit strings such as '30s', '1m30s', '500ms' or '1h'.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return _finite_seconds(float(value), value)
    text = str(value).strip().lower()
    if not text:
        raise ValueError("Duration must not be empty")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        return _finite_seconds(seconds, value)

    total = 0.0
    position = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != position:
            raise ValueError(f"Invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        raise ValueError(f"Invalid duration: {value!r}")
    return _finite_seconds(total, value)


def _finite_seconds(seconds: float, value: Any) -> float:
    if not math.isfinite(seconds):
        raise ValueError(f"Duration must be finite, got {value!r}")
    return seconds


# ---------------------------
# Context Helper Functions
# ---------------------------
_PATH_PART_RE = re.compile(r'\[(\d+)\]|\.?([^.\[\]]+)')

# --- Sentinel Object for Missing Keys ---
_MISSING = object()


def get_value_from_context(context: Any, key: str) -> Any:
    """
    Retrieve a value from a nested dict/list using dot notation for keys and
    bracket notation for list indices (e.g. 'pr.reviewers[0]').
    Returns the sentinel _MISSING if the path does not resolve, so that
    a stored None can be told apart from an absent key.
    """
    if not key:
        return _MISSING
    if not isinstance(context, (dict, list)):
        return _MISSING

    matches = list(_PATH_PART_RE.finditer(key))
    if not matches:
        return context.get(key, _MISSING) if isinstance(context, dict) else _MISSING

    current_value = context
    for match in matches:
        index_str, part_name = match.group(1), match.group(2)
        if index_str is not None:
            index = int(index_str)
            if not isinstance(current_value, list) or not 0 <= index < len(current_value):
                return _MISSING
            current_value = current_value[index]
        else:
            if not isinstance(current_value, dict):
                return _MISSING
            current_value = current_value.get(part_name, _MISSING)
            if current_value is _MISSING:
                return _MISSING
    return current_value


def set_value_in_context(context: Dict[str, Any], key: str, value: Any):
    """
    Set a value in a nested context dict, creating intermediate dicts as needed.
    Intermediate lists are never created; an invalid path is logged and ignored.
    """
    if not key:
        logger.warning("Attempted to set value in context with empty key.")
        return
    if not isinstance(context, dict):
        logger.error(f"Cannot set value for key '{key}': context is not a dictionary (type: {type(context).__name__}).")
        return

    matches = list(_PATH_PART_RE.finditer(key))
    target: Any = context
    for i, match in enumerate(matches):
        is_last_part = i == len(matches) - 1
        index_str, part_name = match.group(1), match.group(2)

        if index_str is not None:
            index = int(index_str)
            if not isinstance(target, list) or not 0 <= index < len(target):
                logger.error(f"Cannot set '{key}': index [{index}] is not addressable.")
                return
            if is_last_part:
                target[index] = value
                return
            target = target[index]
            continue

        if not isinstance(target, dict):
            logger.error(f"Cannot set '{key}': '{part_name}' expected in a dictionary, found {type(target).__name__}.")
            return
        if is_last_part:
            target[part_name] = value
            return
        next_is_list_index = matches[i + 1].group(1) is not None
        next_value = target.get(part_name, _MISSING)
        if next_value is _MISSING:
            if next_is_list_index:
                logger.error(f"Cannot set '{key}': list at '{part_name}' does not exist.")
                return
            target[part_name] = {}
            next_value = target[part_name]
        target = next_value


# ---------------------------
# Correlation IDs
# ---------------------------
def correlation_id(vu: int, iteration: int, prefix: str = "pr", tag: Optional[str] = None) -> str:
    """
    Identifier unique per (vu, iteration) within one run. Pure function:
    the integer parts are separated by '-', which integers never contain,
    so distinct input pairs always render to distinct strings.
    """
    if vu < 0 or iteration < 0:
        raise ValueError(f"VU and iteration indices must be non-negative (got vu={vu}, iteration={iteration})")
    if tag:
        return f"{prefix}-{tag}-{vu}-{iteration}"
    return f"{prefix}-{vu}-{iteration}"


# ---------------------------
# Scenario Pydantic Models
# ---------------------------
class Expectation(BaseModel):
    """
    Non-gating check over a step's response: the status must be one of `status`,
    and every body rule (path -> expected value) that applies must match.
    """
    model_config = ConfigDict(frozen=True)

    status: List[int] = Field(..., min_length=1, description="Acceptable HTTP status codes")
    body: Dict[str, Any] = Field(default_factory=dict, description="Body path rules checked on every accepted status")
    bodyByStatus: Dict[int, Dict[str, Any]] = Field(default_factory=dict, description="Body path rules checked only when the response has the given status")
    predicate: Optional[Callable[[int, Any], bool]] = Field(None, exclude=True, description="Extra programmatic check over (status, body)")

    @field_validator('status')
    def validate_status_codes(cls, v):
        for code in v:
            if not 100 <= code <= 599:
                raise ValueError(f"status codes must be between 100 and 599, got {code}")
        return sorted(set(v))

    def describe(self) -> str:
        codes = ", ".join(str(code) for code in self.status)
        return f"status in {{{codes}}}"

    def evaluate(self, status: Optional[int], body: Any) -> Tuple[bool, str]:
        """Returns (passed, description of the observed outcome)."""
        if status is None:
            return False, "no response received"
        if status not in self.status:
            return False, f"status {status}, expected {self.describe()}"

        rules = dict(self.body)
        rules.update(self.bodyByStatus.get(status, {}))
        for path, expected in rules.items():
            actual = get_value_from_context(body, path)
            if actual is _MISSING:
                return False, f"status {status}, body '{path}' missing (expected {expected!r})"
            if actual != expected:
                return False, f"status {status}, body '{path}' is {actual!r} (expected {expected!r})"

        if self.predicate is not None:
            try:
                predicate_ok = bool(self.predicate(status, body))
            except Exception as e:
                return False, f"status {status}, predicate raised {type(e).__name__}: {e}"
            if not predicate_ok:
                return False, f"status {status}, predicate returned false"
        return True, f"status {status}"


class RequestStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Unique identifier for the step")
    name: Optional[str] = Field(None, description="Human-readable name for the step")
    check: Optional[str] = Field(None, description="Label of the check recorded for this step. Defaults to name, then id.")
    method: str = Field(..., description="HTTP method (GET, POST, PUT, etc.)")
    url: str = Field(..., description="Path relative to the base URL, or a full URL. Can contain {{variables}}.")
    headers: Dict[str, str] = Field(default_factory=dict, description="Headers specific to this request. Can contain {{variables}}.")
    body: Optional[Union[Dict[str, Any], List[Any], str]] = Field(None, description="Request body (JSON object/array or raw string). Can contain {{variables}} and ##VAR## tokens.")
    extract: Dict[str, str] = Field(default_factory=dict, description="Context variable -> response path ('.status', 'headers.Name', 'body.a.b' or 'a.b')")
    expect: Expectation = Field(..., description="Check evaluated against the response")

    @field_validator('method')
    def validate_method(cls, v):
        allowed_methods = ['GET', 'POST', 'PUT', 'DELETE', 'HEAD', 'PATCH', 'OPTIONS']
        method_upper = v.upper()
        if method_upper not in allowed_methods:
            raise ValueError(f"method must be one of {allowed_methods}, got '{v}'")
        return method_upper

    @property
    def check_name(self) -> str:
        return self.check or self.name or self.id


class ScenarioDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(..., description="Name of the scenario")
    description: Optional[str] = Field(None, description="Description of the scenario")
    headers: Dict[str, str] = Field(default_factory=dict, description="Headers applied to every request. Can contain {{variables}}.")
    steps: List[RequestStep] = Field(..., min_length=1, description="Ordered steps executed on every iteration")
    staticVars: Dict[str, Any] = Field(default_factory=dict, description="Variables copied into every iteration context")
    correlationPrefix: str = Field("pr", min_length=1, description="Prefix of the per-iteration correlation ID")

    @model_validator(mode='after')
    def check_unique_step_ids(self) -> 'ScenarioDefinition':
        seen = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"duplicate step id '{step.id}' in scenario '{self.name}'")
            seen.add(step.id)
        return self

    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]


def load_scenario_file(path: Union[str, Path]) -> ScenarioDefinition:
    """Loads a scenario from a JSON or YAML (.yaml/.yml) document."""
    scenario_path = Path(path)
    text = scenario_path.read_text(encoding="utf-8")
    if scenario_path.suffix.lower() in (".yaml", ".yml"):
        data = YAML(typ="safe").load(text)
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Scenario file {scenario_path} must contain a mapping, got {type(data).__name__}")
    # A start-request style document nests the scenario under 'scenario'
    if "scenario" in data and "steps" not in data:
        data = data["scenario"]
    return ScenarioDefinition.model_validate(data)


# ---------------------------
# Configuration Models
# ---------------------------
class RampStage(BaseModel):
    model_config = ConfigDict(frozen=True)

    duration: float = Field(..., gt=0, description="Stage length in seconds (accepts '30s', '1m' ...)")
    target: int = Field(..., ge=0, description="VU count reached at the end of the stage")

    @field_validator('duration', mode='before')
    def parse_stage_duration(cls, v):
        return parse_duration(v)


class ScheduleConfig(BaseModel):
    """Runtime configuration for a scenario run."""
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
        alias_generator=lambda field_name: {
            'base_url': 'Base URL',
            'vus': 'Virtual Users',
            'duration_s': 'Duration',
            'stages': 'Stages',
            'iterations': 'Iterations',
            'iteration_pause_ms': 'Iteration Pause MS',
            'min_pause_ms': 'Minimum Pause MS',
            'max_pause_ms': 'Maximum Pause MS',
            'request_timeout_s': 'Request Timeout',
            'run_tag': 'Run Tag',
            'log_level': 'Log Level',
            'debug': 'Debug',
        }.get(field_name, field_name),
    )

    base_url: str = Field(default="http://localhost:8080", description="Base URL of the service under test")
    vus: int = Field(default=10, ge=1, description="Number of concurrent virtual users")
    duration_s: float = Field(default=30.0, gt=0, description="Run duration in seconds (accepts '30s', '1m30s' ...)")
    stages: List[RampStage] = Field(default_factory=list, description="Ramp stages; when set they define the VU count over time and the total duration")
    iterations: Optional[int] = Field(default=None, ge=1, description="Per-VU iteration cap")
    iteration_pause_ms: Optional[int] = Field(
        default=100,
        ge=0,
        description=(
            "Fixed pause in milliseconds between iterations of one VU. "
            "If not set, a random pause between min_pause_ms and max_pause_ms is used."
        ),
    )
    min_pause_ms: int = Field(default=0, ge=0, description="Minimum random pause between iterations")
    max_pause_ms: int = Field(default=0, ge=0, description="Maximum random pause between iterations")
    request_timeout_s: float = Field(default=60.0, gt=0, description="Total timeout of one HTTP request")
    run_tag: Optional[str] = Field(default=None, description="Folded into correlation IDs to keep repeated runs apart")
    log_level: str = Field(default="INFO", description="Level of the ScenarioRunner logger (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    debug: bool = Field(default=False, description="Enable debug logging; overrides log_level")

    @field_validator('base_url')
    def validate_base_url(cls, v):
        parsed = urlparse(v)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"base_url must be an absolute http(s) URL (e.g. 'http://localhost:8080'), got '{v}'")
        return v.rstrip('/')

    @field_validator('log_level', mode='before')
    def validate_log_level(cls, v):
        level_name = str(v).strip().upper()
        if level_name not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {list(_LOG_LEVELS)}, got '{v}'")
        return level_name

    @field_validator('duration_s', mode='before')
    def parse_run_duration(cls, v):
        return parse_duration(v)

    @field_validator('run_tag', 'iteration_pause_ms', mode='before')
    def empty_string_is_none(cls, v):
        if v == "":
            return None
        return v

    @model_validator(mode='after')
    def check_pauses_and_stages(self) -> 'ScheduleConfig':
        if self.min_pause_ms > self.max_pause_ms:
            raise ValueError(f"min_pause_ms ({self.min_pause_ms}) cannot be greater than max_pause_ms ({self.max_pause_ms})")
        if self.stages and max(stage.target for stage in self.stages) < 1:
            raise ValueError("at least one ramp stage must target one or more VUs")
        return self

    @property
    def effective_log_level(self) -> int:
        if self.debug:
            return logging.DEBUG
        return _LOG_LEVELS[self.log_level]

    @property
    def peak_vus(self) -> int:
        """Number of VU tasks the scheduler spawns."""
        if self.stages:
            return max(stage.target for stage in self.stages)
        return self.vus

    @property
    def total_duration_s(self) -> float:
        if self.stages:
            return sum(stage.duration for stage in self.stages)
        return self.duration_s

    def target_vus_at(self, elapsed_s: float) -> int:
        """Active VU count at `elapsed_s` seconds into the run (linear ramp from 0)."""
        if not self.stages:
            return self.vus
        previous_target = 0
        stage_start = 0.0
        for stage in self.stages:
            if elapsed_s < stage_start + stage.duration:
                fraction = max(elapsed_s - stage_start, 0.0) / stage.duration
                return math.ceil(previous_target + (stage.target - previous_target) * fraction)
            previous_target = stage.target
            stage_start += stage.duration
        return self.stages[-1].target


class StartRequest(BaseModel):
    config: ScheduleConfig
    scenario: Optional[ScenarioDefinition] = None


# ---------------------------
# Results & Snapshots
# ---------------------------
class CheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str
    check_name: str
    passed: bool
    status: Optional[int] = None  # None when no response was received
    detail: str = ""
    error: Optional[str] = None
    latency_ms: float = 0.0
    timestamp: float
    vu: int
    iteration: int
    correlation_id: str


class StepStats(BaseModel):
    step_id: str
    check_name: str
    checks: int = 0
    passes: int = 0
    fails: int = 0
    transport_errors: int = 0
    status_counts: Dict[str, int] = Field(default_factory=dict)
    latency_avg_ms: float = 0.0
    latency_p95_ms: float = 0.0
    latency_max_ms: float = 0.0


class MetricsSnapshot(BaseModel):
    final: bool
    total_checks: int
    passed_checks: int
    failed_checks: int
    pass_rate: float
    steps: Dict[str, StepStats]
    request_count: int
    transport_errors: int
    iterations: int
    duration_s: float
    throughput_rps: float
    iterations_per_s: float
    latency_avg_ms: float
    latency_p95_ms: float
    latency_max_ms: float


def _percentile(sorted_values: List[float], pct: float) -> float:
    if not sorted_values:
        return 0.0
    k = (len(sorted_values) - 1) * (pct / 100.0)
    lower = math.floor(k)
    upper = math.ceil(k)
    if lower == upper:
        return sorted_values[int(k)]
    return sorted_values[lower] * (upper - k) + sorted_values[upper] * (k - lower)


# ---------------------------
# Metrics Tracking
# ---------------------------
class Metrics:
    """
    Accumulates check results and latency samples from all VUs.
    Safe for concurrent use from any VU task; all mutation happens under an asyncio.Lock.
    Counters are exact; latency samples are kept in a bounded window per step.
    """
    def __init__(self, latency_window: int = 10000):
        self.lock = asyncio.Lock()
        self.latency_window = latency_window

        # --- Rolling RPS ---
        self.request_timestamps = deque()
        self.last_rps_update_time = 0.0
        self.last_rps_value = 0.0

        # --- Iteration durations ---
        self.iteration_duration_sum = 0.0
        self.iteration_count = 0

        # --- Check totals ---
        self.total_checks = 0
        self.passed_checks = 0
        self.request_count = 0
        self.transport_errors = 0
        self._known_steps: Optional[Dict[str, str]] = None  # step id -> check name
        self._step_stats: Dict[str, Dict[str, Any]] = {}
        self._latencies: Dict[str, deque] = {}
        self._latency_sums: Dict[str, float] = {}
        self._latency_max: Dict[str, float] = {}

        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

    def register_scenario(self, scenario: ScenarioDefinition):
        """Fixes the set of step ids results may reference (and their report order)."""
        self._known_steps = {step.id: step.check_name for step in scenario.steps}
        for step in scenario.steps:
            self._ensure_step(step.id, step.check_name)

    def mark_started(self):
        self.started_at = time.monotonic()
        self.finished_at = None

    def mark_finished(self):
        self.finished_at = time.monotonic()

    def _ensure_step(self, step_id: str, check_name: str) -> Dict[str, Any]:
        stats = self._step_stats.get(step_id)
        if stats is None:
            stats = {"check_name": check_name, "checks": 0, "passes": 0, "fails": 0, "transport_errors": 0, "status_counts": {}}
            self._step_stats[step_id] = stats
            self._latencies[step_id] = deque(maxlen=self.latency_window)
            self._latency_sums[step_id] = 0.0
            self._latency_max[step_id] = 0.0
        return stats

    def _ingest(self, result: CheckResult, now: float):
        # Caller holds self.lock
        if self._known_steps is not None and result.step_id not in self._known_steps:
            raise ValueError(f"Check result references unknown step '{result.step_id}'")
        stats = self._ensure_step(result.step_id, result.check_name)
        stats["checks"] += 1
        self.total_checks += 1
        if result.passed:
            stats["passes"] += 1
            self.passed_checks += 1
        else:
            stats["fails"] += 1

        if result.status is None:
            stats["transport_errors"] += 1
            self.transport_errors += 1
            return

        status_key = str(result.status)
        stats["status_counts"][status_key] = stats["status_counts"].get(status_key, 0) + 1
        self.request_count += 1
        self.request_timestamps.append(now)
        self._latencies[result.step_id].append(result.latency_ms)
        self._latency_sums[result.step_id] += result.latency_ms
        if result.latency_ms > self._latency_max[result.step_id]:
            self._latency_max[result.step_id] = result.latency_ms

    def _prune_request_timestamps(self, now: float):
        one_second_ago = now - 1.0
        while self.request_timestamps and self.request_timestamps[0] < one_second_ago:
            self.request_timestamps.popleft()

    async def record(self, result: CheckResult):
        """Record a single check result."""
        now = time.monotonic()
        async with self.lock:
            self._ingest(result, now)
            self._prune_request_timestamps(now)

    async def record_iteration(self, results: List[CheckResult], duration_seconds: float):
        """Record all check results of one completed iteration in one step."""
        now = time.monotonic()
        async with self.lock:
            for result in results:
                self._ingest(result, now)
            self._prune_request_timestamps(now)
            if duration_seconds >= 0:
                self.iteration_duration_sum += duration_seconds
            else:
                logger.warning(f"Attempted to record negative iteration duration: {duration_seconds:.3f}s. Ignoring.")
            self.iteration_count += 1

    async def get_rps(self) -> float:
        """Return the approximate RPS over the last 1 second."""
        now = time.monotonic()
        if now - self.last_rps_update_time < 0.1:
            return self.last_rps_value

        async with self.lock:
            self._prune_request_timestamps(now)
            current_rps = float(len(self.request_timestamps))
            self.last_rps_value = current_rps
            self.last_rps_update_time = now
            return current_rps

    async def get_average_iteration_duration_ms(self) -> float:
        async with self.lock:
            if self.iteration_count == 0:
                return 0.0
            return self.iteration_duration_sum / self.iteration_count * 1000.0

    async def snapshot(self) -> MetricsSnapshot:
        """
        Point-in-time view of all totals. `final` is True only once the scheduler
        has marked the run finished; earlier calls give a partial view.
        """
        async with self.lock:
            now = time.monotonic()
            end = self.finished_at if self.finished_at is not None else now
            duration_s = max(end - self.started_at, 0.0) if self.started_at is not None else 0.0

            steps: Dict[str, StepStats] = {}
            all_latencies: List[float] = []
            latency_sum_total = 0.0
            latency_max_total = 0.0
            for step_id, stats in self._step_stats.items():
                samples = sorted(self._latencies[step_id])
                all_latencies.extend(samples)
                responses = stats["checks"] - stats["transport_errors"]
                latency_sum_total += self._latency_sums[step_id]
                latency_max_total = max(latency_max_total, self._latency_max[step_id])
                steps[step_id] = StepStats(
                    step_id=step_id,
                    check_name=stats["check_name"],
                    checks=stats["checks"],
                    passes=stats["passes"],
                    fails=stats["fails"],
                    transport_errors=stats["transport_errors"],
                    status_counts=dict(stats["status_counts"]),
                    latency_avg_ms=self._latency_sums[step_id] / responses if responses else 0.0,
                    latency_p95_ms=_percentile(samples, 95),
                    latency_max_ms=self._latency_max[step_id],
                )
            all_latencies.sort()

            return MetricsSnapshot(
                final=self.finished_at is not None,
                total_checks=self.total_checks,
                passed_checks=self.passed_checks,
                failed_checks=self.total_checks - self.passed_checks,
                pass_rate=self.passed_checks / self.total_checks if self.total_checks else 0.0,
                steps=steps,
                request_count=self.request_count,
                transport_errors=self.transport_errors,
                iterations=self.iteration_count,
                duration_s=duration_s,
                throughput_rps=self.request_count / duration_s if duration_s > 0 else 0.0,
                iterations_per_s=self.iteration_count / duration_s if duration_s > 0 else 0.0,
                latency_avg_ms=latency_sum_total / self.request_count if self.request_count else 0.0,
                latency_p95_ms=_percentile(all_latencies, 95),
                latency_max_ms=latency_max_total,
            )


# ---------------------------
# HTTP Client
# ---------------------------
class HttpResult(NamedTuple):
    status: Optional[int]
    body: Any
    headers: Dict[str, str]
    error: Optional[str]
    latency_ms: float


class AiohttpClient:
    """
    HTTP capability used by one VU. Owns a pooled connector and a session;
    transport failures come back as HttpResult.error instead of raising.
    Must be created inside a running event loop.
    """
    def __init__(self, config: ScheduleConfig):
        self.config = config
        self.connector = self.create_aiohttp_connector()
        self.session = self.create_session(self.connector)

    def create_aiohttp_connector(self) -> aiohttp.BaseConnector:
        verify_ssl = urlparse(self.config.base_url).scheme == 'https'
        connector_limit = max(100, self.config.peak_vus * 2)
        logger.debug(f"Creating TCPConnector: limit={connector_limit}, ssl={verify_ssl}")
        return aiohttp.TCPConnector(
            ssl=verify_ssl,
            limit=connector_limit,
            limit_per_host=max(50, self.config.peak_vus),
        )

    def create_session(self, connector: aiohttp.BaseConnector) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(
            total=self.config.request_timeout_s,
            connect=min(10.0, self.config.request_timeout_s),
            sock_read=min(30.0, self.config.request_timeout_s),
        )
        # No cookies are carried between requests of different iterations
        return aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            cookie_jar=aiohttp.DummyCookieJar(),
        )

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> HttpResult:
        json_payload = None
        data_payload = None
        if isinstance(body, str):
            data_payload = body.encode('utf-8', errors='replace')
        elif body is not None:
            json_payload = body

        request_start_time = time.monotonic()
        try:
            async with self.session.request(method, url, headers=headers, json=json_payload, data=data_payload) as resp:
                response_body = await self._read_body(resp)
                latency_ms = (time.monotonic() - request_start_time) * 1000.0
                return HttpResult(resp.status, response_body, {k: v for k, v in resp.headers.items()}, None, latency_ms)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            latency_ms = (time.monotonic() - request_start_time) * 1000.0
            return HttpResult(None, None, {}, f"{type(e).__name__}: {e}", latency_ms)

    async def _read_body(self, resp: aiohttp.ClientResponse) -> Any:
        content_type = resp.headers.get('Content-Type', '').lower()
        if 'application/json' in content_type:
            try:
                return await resp.json(encoding='utf-8')
            except (json.JSONDecodeError, UnicodeDecodeError, aiohttp.ContentTypeError) as json_err:
                logger.debug(f"Failed to decode JSON response ({resp.status}): {json_err}. Reading as text.")
                return await resp.text(encoding='utf-8', errors='replace')
        if content_type.startswith('text/'):
            return await resp.text(encoding='utf-8', errors='replace')
        raw_bytes = await resp.read()
        if not raw_bytes:
            return None
        return f"[Body Binary Data - Type: {content_type}, Size: {len(raw_bytes)} bytes]"

    async def close(self):
        if not self.session.closed:
            await self.session.close()
        if not self.connector.closed:
            await self.connector.close()


# ---------------------------
# Scenario Runner Class
# ---------------------------
class VUState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    DONE = "done"


class ScenarioRunner:
    """Runs a scenario with concurrent virtual users until the deadline."""

    RAMP_POLL_INTERVAL_S = 0.05

    def __init__(
        self,
        config: ScheduleConfig,
        scenario: ScenarioDefinition,
        metrics: Metrics,
        *,
        client_factory: Optional[Callable[[], Any]] = None,
        on_iteration_start: Optional[Callable[[int, int, Dict[str, Any]], Any]] = None,
        run_once: bool = False,
    ):
        self.config = config
        self.scenario = scenario
        self.metrics = metrics
        self.client_factory = client_factory or (lambda: AiohttpClient(self.config))
        self.on_iteration_start = on_iteration_start
        self.run_once = run_once

        self.running = False
        self.user_tasks: List[asyncio.Task] = []
        self.vu_states: Dict[int, VUState] = {}
        self.vu_state_history: Dict[int, List[VUState]] = {}
        self.iteration_start_times: List[float] = []
        self._active_users_count = 0
        self.lock = asyncio.Lock()
        self.start_time: Optional[float] = None
        self.deadline: Optional[float] = None

        self.configure_logging(self.config.effective_log_level)
        self.metrics.register_scenario(self.scenario)

        logger.info(
            f"Scenario Runner Initialized: Target='{self.config.base_url}', VUs={self.config.peak_vus}, "
            f"Duration={self.config.total_duration_s:.1f}s, Stages={len(self.config.stages)}"
        )
        logger.info(f"Scenario Loaded: {self.scenario.name} ({len(self.scenario.steps)} steps)")

    def configure_logging(self, log_level: int):
        configure_logging(log_level)

    def get_active_user_count(self) -> int:
        return self._active_users_count

    # ------------------------------------------------------------------
    # Request rendering
    # ------------------------------------------------------------------
    def _substitute_variables(self, data: Any, context: Dict[str, Any]) -> Any:
        """
        Recursively substitutes variables in strings, dict keys/values and list items.
        Handles {{path}} (always a string substitution) and the whole-string tokens
        ##VAR:string:path## / ##VAR:unquoted:path## (the latter keeps the raw value type).
        """
        if isinstance(data, str):
            if data.startswith("##VAR:") and data.endswith("##"):
                parts = data[len("##VAR:"):-len("##")].split(":", 1)
                if len(parts) != 2:
                    logger.warning(f"Malformed ##VAR token: {data}. Expected type:path, returning as literal string.")
                    return data
                var_type, var_path = parts
                value = get_value_from_context(context, var_path)
                if value is _MISSING:
                    logger.warning(f"Variable path '{var_path}' in ##VAR token '{data}' not found in context.")
                    return "" if var_type == "string" else None
                if var_type == "unquoted":
                    return value
                if var_type != "string":
                    logger.warning(f"Unsupported ##VAR type: '{var_type}' in token '{data}'. Treating as string.")
                return str(value)

            def replace(match: re.Match) -> str:
                var_path = match.group(1).strip()
                value = get_value_from_context(context, var_path)
                if value is _MISSING:
                    logger.warning(f"Variable '{{{{{var_path}}}}}' not found in context. Substituting with empty string.")
                    return ""
                return "" if value is None else str(value)

            return re.sub(r"\{\{([\w\.\[\]]+?)\}\}", replace, data)

        elif isinstance(data, dict):
            return {
                self._substitute_variables(key, context): self._substitute_variables(val, context)
                for key, val in data.items()
            }
        elif isinstance(data, list):
            return [self._substitute_variables(item, context) for item in data]
        return data

    def _render_request(
        self,
        step: RequestStep,
        context: Dict[str, Any],
        flow_headers: Dict[str, str],
    ) -> Tuple[str, str, Dict[str, str], Any]:
        url_substituted = self._substitute_variables(step.url, context)
        parsed = urlparse(url_substituted)
        if parsed.scheme and parsed.netloc:
            final_url = url_substituted
        else:
            final_url = f"{self.config.base_url}/{url_substituted.lstrip('/')}"

        final_headers = dict(flow_headers)
        final_headers.update(self._substitute_variables(step.headers, context))

        body = self._substitute_variables(step.body, context)
        if isinstance(body, (dict, list)) and not any(k.lower() == 'content-type' for k in final_headers):
            final_headers['Content-Type'] = 'application/json'
        return step.method, final_url, final_headers, body

    def _extract_data(
        self,
        response_data: Any,
        extract_rules: Dict[str, str],
        context: Dict[str, Any],
        response_status: int,
        response_headers: Dict[str, Any],
    ):
        """
        Stores response values in the iteration context.
        '.status' is the status code, 'headers.Name' a header (case-insensitive),
        'body' the whole body, 'body.path' or a bare path a value inside the body.
        Unresolvable paths store None.
        """
        ci_headers = {k.lower(): v for k, v in response_headers.items()}
        for var_name, path_expr in extract_rules.items():
            if path_expr == '.status':
                extracted_value = response_status
            elif path_expr.lower().startswith("headers."):
                extracted_value = ci_headers.get(path_expr[len("headers."):].lower(), _MISSING)
            elif path_expr.lower() == "body":
                extracted_value = response_data
            elif path_expr.lower().startswith("body."):
                extracted_value = get_value_from_context(response_data, path_expr[len("body."):])
            else:
                extracted_value = get_value_from_context(response_data, path_expr)

            if extracted_value is _MISSING:
                logger.warning(f"Extraction failed: path '{path_expr}' for variable '{var_name}' not found in response.")
                extracted_value = None
            else:
                logger.debug(f"Extracted '{path_expr}' into context variable '{var_name}': {extracted_value!r:.100}")
            set_value_in_context(context, var_name, extracted_value)

    # ------------------------------------------------------------------
    # Iteration execution
    # ------------------------------------------------------------------
    def _new_context(self, vu: int, iteration: int, cid: str) -> Dict[str, Any]:
        context = copy.deepcopy(self.scenario.staticVars)
        context.update({
            "vu": vu,
            "iteration": iteration,
            "correlationId": cid,
            "baseURL": self.config.base_url,
            "iterationStartEpoch": time.time(),
        })
        return context

    async def _execute_step(
        self,
        step: RequestStep,
        client: Any,
        context: Dict[str, Any],
        flow_headers: Dict[str, str],
    ) -> CheckResult:
        """
        Executes one step and returns its check result. Rendering errors, transport
        errors and failed expectations all come back as a failed result.
        """
        step_identifier = f"'{step.name}' ({step.id})" if step.name else f"({step.id})"
        context_prefix = f"response_{step.id}"
        timestamp = time.time()
        vu, iteration, cid = context["vu"], context["iteration"], context["correlationId"]

        try:
            method, url, headers, body = self._render_request(step, context, flow_headers)
        except Exception as e:
            detail = f"request rendering failed: {e}"
            logger.warning(f"VU {vu} (Iter {iteration}): Step {step_identifier} {detail}")
            set_value_in_context(context, f"{context_prefix}_status", None)
            set_value_in_context(context, f"{context_prefix}_error", detail)
            return CheckResult(
                step_id=step.id, check_name=step.check_name, passed=False, status=None, detail=detail,
                error=str(e), timestamp=timestamp, vu=vu, iteration=iteration, correlation_id=cid,
            )

        logger.debug(f"VU {vu} (Iter {iteration}): Step {step_identifier} -> {method} {url} body={body!r:.200}")
        try:
            result = await client.request(method, url, headers, body)
        except Exception as e:
            result = HttpResult(None, None, {}, f"{type(e).__name__}: {e}", 0.0)

        if result.error is not None:
            passed, detail = False, f"transport error: {result.error}"
            set_value_in_context(context, f"{context_prefix}_status", None)
            set_value_in_context(context, f"{context_prefix}_error", result.error)
        else:
            passed, detail = step.expect.evaluate(result.status, result.body)
            set_value_in_context(context, f"{context_prefix}_status", result.status)
            set_value_in_context(context, f"{context_prefix}_body", result.body)
            if step.extract:
                self._extract_data(result.body, step.extract, context, result.status, result.headers)

        log_level = logging.INFO if passed else logging.WARNING
        logger.log(
            log_level,
            f"VU {vu} (Iter {iteration}): Step {step_identifier} {method} {url} -> "
            f"{'PASS' if passed else 'FAIL'} [{step.check_name}] {detail} ({result.latency_ms:.2f} ms)",
        )
        return CheckResult(
            step_id=step.id,
            check_name=step.check_name,
            passed=passed,
            status=result.status if result.error is None else None,
            detail=detail,
            error=result.error,
            latency_ms=result.latency_ms,
            timestamp=timestamp,
            vu=vu,
            iteration=iteration,
            correlation_id=cid,
        )

    async def run_iteration(self, vu: int, iteration: int, client: Any) -> List[CheckResult]:
        """
        One pass through every step of the scenario. Always returns one check
        result per step; a failed check never skips the steps after it.
        """
        cid = correlation_id(vu, iteration, prefix=self.scenario.correlationPrefix, tag=self.config.run_tag)
        context = self._new_context(vu, iteration, cid)

        if self.on_iteration_start:
            try:
                self.on_iteration_start(vu, iteration, context)
            except Exception as cb_err:
                logger.error(f"Error during on_iteration_start callback for VU {vu} iteration {iteration}: {cb_err}")

        flow_headers = self._substitute_variables(self.scenario.headers, context)
        results: List[CheckResult] = []
        for step in self.scenario.steps:
            results.append(await self._execute_step(step, client, context, flow_headers))
        return results

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def _set_vu_state(self, vu: int, state: VUState):
        self.vu_states[vu] = state
        self.vu_state_history.setdefault(vu, []).append(state)
        logger.debug(f"VU {vu}: state -> {state.value}")

    def _iteration_cap(self) -> Optional[int]:
        if self.run_once:
            return 1
        return self.config.iterations

    def _may_start_iteration(self, completed_iterations: int) -> bool:
        if not self.running:
            return False
        if time.monotonic() >= self.deadline:
            return False
        cap = self._iteration_cap()
        return cap is None or completed_iterations < cap

    def _iteration_pause_s(self) -> float:
        if self.config.iteration_pause_ms is not None:
            return self.config.iteration_pause_ms / 1000.0
        return random.uniform(self.config.min_pause_ms, self.config.max_pause_ms) / 1000.0

    async def simulate_user_lifecycle(self, vu_id: int, client: Any):
        """
        Loop of one virtual user: IDLE -> RUNNING -> STOPPING -> DONE.
        The deadline is checked only at the top of the loop, so a started
        iteration always runs to completion.
        """
        user_log_prefix = f"VU {vu_id}"
        completed = 0
        self._set_vu_state(vu_id, VUState.IDLE)

        try:
            async with self.lock:
                self._active_users_count += 1
            self._set_vu_state(vu_id, VUState.RUNNING)

            while self._may_start_iteration(completed):
                if self.config.stages:
                    elapsed = time.monotonic() - self.start_time
                    if self.config.target_vus_at(elapsed) <= vu_id:
                        remaining = self.deadline - time.monotonic()
                        await asyncio.sleep(max(min(self.RAMP_POLL_INTERVAL_S, remaining), 0))
                        continue

                iteration_start = time.monotonic()
                self.iteration_start_times.append(iteration_start)
                results = await self.run_iteration(vu_id, completed, client)
                iteration_duration = time.monotonic() - iteration_start
                await self.metrics.record_iteration(results, iteration_duration)
                completed += 1

                failed = sum(1 for r in results if not r.passed)
                logger.debug(f"{user_log_prefix}: Iteration {completed - 1} finished in {iteration_duration:.3f}s ({failed} failed checks)")

                cap = self._iteration_cap()
                if cap is not None and completed >= cap:
                    continue
                pause_s = self._iteration_pause_s()
                remaining = self.deadline - time.monotonic()
                if pause_s > 0 and remaining > 0 and self.running:
                    await asyncio.sleep(min(pause_s, remaining))

            self._set_vu_state(vu_id, VUState.STOPPING)
            logger.info(f"{user_log_prefix}: Stopping after {completed} iterations.")

        except asyncio.CancelledError:
            logger.info(f"{user_log_prefix}: Task received cancellation signal after {completed} iterations.")
            if self.vu_states.get(vu_id) != VUState.STOPPING:
                self._set_vu_state(vu_id, VUState.STOPPING)
            raise

        finally:
            async with self.lock:
                if self._active_users_count > 0:
                    self._active_users_count -= 1
            self._set_vu_state(vu_id, VUState.DONE)

    async def run(self) -> MetricsSnapshot:
        """
        Runs the scenario until the deadline and returns the final snapshot.
        Raises HarnessSetupError if the HTTP clients cannot be created.
        """
        async with self.lock:
            if self.running:
                raise RuntimeError("A scenario run is already in progress")
            self.running = True
            self.vu_states = {}
            self.vu_state_history = {}
            self.iteration_start_times = []

        vu_count = self.config.peak_vus
        clients: List[Any] = []
        try:
            for _ in range(vu_count):
                clients.append(self.client_factory())
        except Exception as e:
            self.running = False
            for client in clients:
                await self._close_client(client)
            logger.critical(f"Failed to set up HTTP clients for {vu_count} VUs: {e}")
            raise HarnessSetupError(f"HTTP client setup failed: {e}") from e

        self.start_time = time.monotonic()
        self.deadline = self.start_time + self.config.total_duration_s
        self.metrics.mark_started()

        logger.info(f"Starting {vu_count} virtual users for {self.config.total_duration_s:.1f}s...")
        self.user_tasks = [
            asyncio.create_task(self.simulate_user_lifecycle(vu_id, clients[vu_id]))
            for vu_id in range(vu_count)
        ]
        try:
            results = await asyncio.gather(*self.user_tasks, return_exceptions=True)
            for vu_id, result in enumerate(results):
                if isinstance(result, Exception):
                    logger.error(f"VU {vu_id} finished with unexpected error: {result}", exc_info=result if self.config.debug else False)
        finally:
            self.running = False
            self.metrics.mark_finished()
            for client in clients:
                await self._close_client(client)

        snapshot = await self.metrics.snapshot()
        logger.info(
            f"Run finished: {snapshot.iterations} iterations, {snapshot.passed_checks}/{snapshot.total_checks} checks passed "
            f"in {snapshot.duration_s:.2f}s"
        )
        return snapshot

    async def stop(self, graceful: bool = True):
        """
        Stops the run. Graceful stop lets in-flight iterations finish; a forced
        stop cancels the VU tasks (their unfinished iterations are not recorded).
        """
        if not self.running:
            logger.warning("Scenario run not running or already stopping.")
            return
        logger.info(f"Stopping scenario run ({'graceful' if graceful else 'forced'})...")
        self.running = False
        tasks = [task for task in self.user_tasks if not task.done()]
        if not graceful:
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scenario run stopped.")

    async def _close_client(self, client: Any):
        close = getattr(client, "close", None)
        if close is None:
            return
        try:
            outcome = close()
            if asyncio.iscoroutine(outcome):
                await asyncio.wait_for(outcome, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Timeout closing HTTP client.")
        except Exception as close_err:
            logger.error(f"Error closing HTTP client: {close_err}")
