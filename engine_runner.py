# engine_runner.py

import asyncio
import copy
import logging
import math
import random
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

import psutil

from lambda_engine import EventEmitter, ExecutionContext, LambdaEngine, Script

logger = logging.getLogger("LambdaEngine.runner")


# ---------------------------
# Metrics Tracking
# ---------------------------
class Metrics:
    """
    Aggregates engine lifecycle events into run counters and latency stats.
    Listeners run on the event loop thread, so no locking is needed.
    """
    def __init__(self):
        self.scenarios_started = 0
        self.requests = 0
        self.responses = 0
        self.status_codes: Counter = Counter()
        self.errors: Counter = Counter()
        self.matches = {"ok": 0, "failed": 0}
        self.latencies_ms: List[float] = []
        self.vusers_completed = 0
        self.vusers_failed = 0
        self.start_time = time.monotonic()

    def attach(self, emitter: EventEmitter) -> None:
        emitter.on("started", self.on_started)
        emitter.on("request", self.on_request)
        emitter.on("response", self.on_response)
        emitter.on("error", self.on_error)
        emitter.on("match", self.on_match)

    def on_started(self):
        self.scenarios_started += 1

    def on_request(self):
        self.requests += 1

    def on_response(self, elapsed_ns: int, status_code: Any, uid: str):
        if elapsed_ns < 0:
            logger.warning(f"Ignoring negative latency {elapsed_ns}ns for {uid}.")
            return
        self.responses += 1
        self.status_codes[status_code] += 1
        self.latencies_ms.append(elapsed_ns / 1e6)

    def on_error(self, error: BaseException):
        self.errors[type(error).__name__] += 1

    def on_match(self, success: bool, expected: Any, got: Any, expression: str):
        self.matches["ok" if success else "failed"] += 1

    @staticmethod
    def _percentile(sorted_values: List[float], pct: float) -> float:
        if not sorted_values:
            return 0.0
        rank = max(math.ceil(pct / 100.0 * len(sorted_values)) - 1, 0)
        return sorted_values[rank]

    def summary(self) -> Dict[str, Any]:
        """Snapshot of the run so far as a plain dict."""
        elapsed = time.monotonic() - self.start_time
        ordered = sorted(self.latencies_ms)
        latency = {
            "min": ordered[0] if ordered else 0.0,
            "max": ordered[-1] if ordered else 0.0,
            "mean": sum(ordered) / len(ordered) if ordered else 0.0,
            "p95": self._percentile(ordered, 95),
            "p99": self._percentile(ordered, 99),
        }
        return {
            "duration_s": round(elapsed, 3),
            "scenarios_started": self.scenarios_started,
            "vusers_completed": self.vusers_completed,
            "vusers_failed": self.vusers_failed,
            "requests": self.requests,
            "responses": self.responses,
            "rps": round(self.responses / elapsed, 2) if elapsed > 0 else 0.0,
            "status_codes": {str(code): count for code, count in self.status_codes.items()},
            "errors": dict(self.errors),
            "matches": dict(self.matches),
            "latency_ms": {key: round(value, 3) for key, value in latency.items()},
        }


# ---------------------------
# Scenario Runner
# ---------------------------
class ScenarioRunner:
    """Runs a script's scenarios with a fixed number of concurrent virtual users, once each."""
    def __init__(
        self,
        script: Script,
        virtual_users: int = 1,
        *,
        client_factory: Optional[Callable[..., Any]] = None,
    ):
        if virtual_users < 1:
            raise ValueError(f"virtual_users must be >= 1, got {virtual_users}")
        self.script = script
        self.virtual_users = virtual_users
        self.emitter = EventEmitter()
        self.metrics = Metrics()
        self.metrics.attach(self.emitter)
        self.engine = LambdaEngine(script, self.emitter, client_factory=client_factory)

    def _pick_scenario(self, scenarios: List[Any]) -> int:
        weights = [spec.weight for spec in self.script.scenarios]
        if sum(weights) <= 0:
            return random.randrange(len(scenarios))
        return random.choices(range(len(scenarios)), weights=weights, k=1)[0]

    async def simulate_user(self, user_id: int, scenarios: List[Any]) -> None:
        index = self._pick_scenario(scenarios)
        spec = self.script.scenarios[index]
        context = ExecutionContext(
            vars=copy.deepcopy(self.script.config.variables),
            scenario_name=spec.name,
        )
        logger.debug(f"User {user_id}: starting scenario '{spec.name or index}' ({context.uid})")
        try:
            await scenarios[index](context)
            self.metrics.vusers_completed += 1
        except Exception as e:
            self.metrics.vusers_failed += 1
            logger.error(f"User {user_id}: scenario '{spec.name or index}' failed: {e}")

    async def run(self) -> Dict[str, Any]:
        if not self.script.scenarios:
            logger.warning("Script defines no scenarios; nothing to run.")
            return self.metrics.summary()

        scenarios = [self.engine.create_scenario(spec, self.emitter) for spec in self.script.scenarios]
        process = psutil.Process()
        process.cpu_percent(None)  # Prime the counter; the first call always returns 0.0

        logger.info(f"Starting {self.virtual_users} virtual users across {len(scenarios)} scenario(s) against '{self.script.config.target}'")
        tasks = [asyncio.create_task(self.simulate_user(i, scenarios)) for i in range(self.virtual_users)]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        summary = self.metrics.summary()
        summary["process"] = {
            "cpu_percent": process.cpu_percent(None),
            "rss_mb": round(process.memory_info().rss / (1024 * 1024), 1),
        }
        logger.info(
            f"Run finished: {summary['vusers_completed']} completed, {summary['vusers_failed']} failed, "
            f"{summary['responses']} responses, p95={summary['latency_ms']['p95']}ms"
        )
        return summary
