from typing import Any, Dict, List
from unittest.mock import AsyncMock, patch

import pytest

import engine_runner
from engine_errors import InvocationError
from engine_runner import Metrics, ScenarioRunner
from lambda_engine import EventEmitter, Script


class FakeLambdaClient:
    endpoint_url = "https://lambda.us-east-1.amazonaws.com"

    def __init__(self, fail_for: str = ""):
        self.fail_for = fail_for
        self.invoke = AsyncMock(side_effect=self._invoke)

    async def _invoke(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if params["FunctionName"] == self.fail_for:
            raise InvocationError(self.fail_for, "ResourceNotFoundException: Function not found")
        return {"statusCode": 200, "payload": '{"result": "OK"}'}


def make_script(scenarios: List[Dict[str, Any]], **config: Any) -> Script:
    return Script.model_validate({
        "config": {"target": "my_awesome_function", "lambda": {"region": "us-east-1"}, **config},
        "scenarios": scenarios,
    })


def test_metrics_summary_from_events():
    emitter = EventEmitter()
    metrics = Metrics()
    metrics.attach(emitter)

    emitter.emit("started")
    for elapsed_ms in (10, 20, 30, 40):
        emitter.emit("request")
        emitter.emit("response", elapsed_ms * 1_000_000, 200, "uid")
    emitter.emit("request")
    emitter.emit("error", InvocationError("fn", "boom"))
    emitter.emit("match", True, "a", "a", "$.x")
    emitter.emit("match", False, "a", "b", "$.x")

    summary = metrics.summary()
    assert summary["scenarios_started"] == 1
    assert summary["requests"] == 5
    assert summary["responses"] == 4
    assert summary["status_codes"] == {"200": 4}
    assert summary["errors"] == {"InvocationError": 1}
    assert summary["matches"] == {"ok": 1, "failed": 1}
    assert summary["latency_ms"]["min"] == 10.0
    assert summary["latency_ms"]["max"] == 40.0
    assert summary["latency_ms"]["mean"] == 25.0
    assert summary["latency_ms"]["p95"] == 40.0


def test_metrics_ignores_negative_latency():
    metrics = Metrics()
    metrics.on_response(-1, 200, "uid")
    assert metrics.summary()["responses"] == 0


def test_metrics_empty_summary():
    summary = Metrics().summary()
    assert summary["latency_ms"] == {"min": 0.0, "max": 0.0, "mean": 0.0, "p95": 0.0, "p99": 0.0}


def test_runner_rejects_non_positive_user_count():
    with pytest.raises(ValueError):
        ScenarioRunner(make_script([{"flow": []}]), 0)


@pytest.mark.asyncio
async def test_runner_runs_each_virtual_user_with_fresh_context():
    seen_uids: List[tuple] = []

    def record(context, emitter):
        context.vars["counter"].append(1)
        seen_uids.append((context.uid, len(context.vars["counter"])))

    script = make_script(
        [{"name": "invoke", "flow": [{"function": "record"}, {"invoke": {"payload": {"n": "{{ $randomNumber(1, 9) }}"}}}]}],
        processor={"record": record},
        variables={"counter": []},
    )
    client = FakeLambdaClient()
    runner = ScenarioRunner(script, 5, client_factory=lambda **kwargs: client)

    summary = await runner.run()

    assert summary["vusers_completed"] == 5
    assert summary["vusers_failed"] == 0
    assert summary["scenarios_started"] == 5
    assert summary["requests"] == 5
    assert summary["status_codes"] == {"200": 5}
    assert len({uid for uid, _ in seen_uids}) == 5
    assert all(count == 1 for _, count in seen_uids)
    assert "cpu_percent" in summary["process"]
    assert client.invoke.await_count == 5


@pytest.mark.asyncio
async def test_runner_counts_failed_virtual_users_without_raising():
    script = make_script([{"flow": [{"invoke": {"target": "missing_function", "payload": "x"}}]}])
    runner = ScenarioRunner(script, 3, client_factory=lambda **kwargs: FakeLambdaClient(fail_for="missing_function"))

    summary = await runner.run()

    assert summary["vusers_failed"] == 3
    assert summary["vusers_completed"] == 0
    assert summary["errors"] == {"InvocationError": 3}
    assert summary["responses"] == 0


@pytest.mark.asyncio
async def test_runner_picks_scenarios_by_weight():
    script = make_script([
        {"name": "never", "weight": 0, "flow": [{"invoke": {"target": "never_fn", "payload": "x"}}]},
        {"name": "always", "weight": 3, "flow": [{"invoke": {"payload": "x"}}]},
    ])
    client = FakeLambdaClient()
    runner = ScenarioRunner(script, 10, client_factory=lambda **kwargs: client)

    await runner.run()

    targets = {call.args[0]["FunctionName"] for call in client.invoke.await_args_list}
    assert targets == {"my_awesome_function"}


@pytest.mark.asyncio
async def test_runner_with_no_scenarios_returns_empty_summary():
    runner = ScenarioRunner(make_script([]), 2)
    with patch.object(engine_runner.logger, "warning") as mock_warning:
        summary = await runner.run()
    mock_warning.assert_called_once()
    assert summary["requests"] == 0
