# lambda_engine.py

import asyncio
import base64
import json
import logging
import time
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from engine_errors import ScriptError
from engine_util import (
    CompiledStep,
    call_processor,
    capture_or_match,
    create_loop,
    create_think,
    normalize_response,
    random_number,
    random_string,
    render,
    run_after_response_hooks,
    run_before_request_hooks,
)
from lambda_client import LambdaClient

# --- Logging Setup ---
logger = logging.getLogger("LambdaEngine")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime  # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    logger.setLevel(logging.INFO)
logger.propagate = False  # Prevent duplicate logs if root logger is configured

__all__ = [
    "logger", "configure_logging", "EventEmitter", "ExecutionContext", "Script",
    "ScriptConfig", "ScenarioSpec", "InvokeSpec", "LambdaEngine", "increment", "decrement",
]

ScenarioFunction = Callable[["ExecutionContext"], Awaitable["ExecutionContext"]]


def configure_logging(debug: bool):
    """Sets the engine logger (and its handlers) to DEBUG or INFO."""
    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)
    for handler in logger.handlers:
        handler.setLevel(log_level)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


# ---------------------------
# Script Models
# ---------------------------

class ThinkDefaults(BaseModel):
    jitter: Optional[Union[float, str]] = Field(None, description="Random spread applied to think pauses: seconds, or a percentage such as '20%'")


class Defaults(BaseModel):
    think: ThinkDefaults = Field(default_factory=ThinkDefaults)

    model_config = ConfigDict(extra="ignore")


class LambdaConfig(BaseModel):
    region: str = Field(default="us-east-1", description="AWS region of the target function")
    function: Optional[str] = Field(None, description="Custom endpoint URL overriding the regional Lambda endpoint")


class ScriptConfig(BaseModel):
    target: str = Field(..., description="Default function name (or ARN) invoked by steps without their own target")
    lambda_: LambdaConfig = Field(default_factory=LambdaConfig, alias="lambda")
    processor: Dict[str, Callable[..., Any]] = Field(default_factory=dict, description="Custom functions available to function steps, hooks and whileTrue")
    defaults: Defaults = Field(default_factory=Defaults)
    variables: Dict[str, Any] = Field(default_factory=dict, description="Initial vars for every virtual user")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ScenarioSpec(BaseModel):
    name: Optional[str] = None
    engine: Optional[str] = None
    weight: int = Field(default=1, ge=0)
    flow: List[Dict[str, Any]] = Field(default_factory=list)
    beforeScenario: List[str] = Field(default_factory=list)
    afterScenario: List[str] = Field(default_factory=list)
    beforeRequest: List[str] = Field(default_factory=list)
    afterResponse: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator('beforeScenario', 'afterScenario', 'beforeRequest', 'afterResponse', mode='before')
    def normalize_hook_names(cls, v):
        return _as_list(v)


class Script(BaseModel):
    config: ScriptConfig
    scenarios: List[ScenarioSpec] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class InvokeSpec(BaseModel):
    """Body of an `invoke` flow node. Unknown keys are kept and handed to hooks as step metadata."""
    target: Optional[str] = None
    payload: Any = None
    clientContext: Any = None
    invocationType: Literal['Event', 'RequestResponse', 'DryRun'] = 'Event'
    logType: Literal['None', 'Tail'] = 'Tail'
    qualifier: str = '$LATEST'
    beforeRequest: List[str] = Field(default_factory=list)
    afterResponse: List[str] = Field(default_factory=list)
    capture: List[Dict[str, Any]] = Field(default_factory=list)
    match: List[Dict[str, Any]] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")

    @field_validator('beforeRequest', 'afterResponse', 'capture', 'match', mode='before')
    def normalize_lists(cls, v):
        return _as_list(v)


# ---------------------------
# Execution Context & Events
# ---------------------------

class ExecutionContext(BaseModel):
    """Per-virtual-user state threaded through every step of one scenario run."""
    vars: Dict[str, Any] = Field(default_factory=dict)
    funcs: Dict[str, Callable[..., Any]] = Field(default_factory=dict)
    lambda_client: Optional[Any] = None
    uid: str = Field(default_factory=lambda: str(uuid.uuid4()))
    scenario_name: Optional[str] = None

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="allow")


class EventEmitter:
    """Synchronous named-event fan-out used to report lifecycle events to a metrics collector."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable[..., Any]]] = defaultdict(list)

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        self._listeners[event].append(listener)

    def emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, ())):
            listener(*args)


# ---------------------------
# Variable Functions
# ---------------------------

def increment(value: Any) -> Union[int, float]:
    """value + 1 for integers, NaN otherwise."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value + 1
    return float("nan")


def decrement(value: Any) -> Union[int, float]:
    """value - 1 for integers, NaN otherwise."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value - 1
    return float("nan")


def install_variable_functions(context: ExecutionContext) -> None:
    """Register the built-in template functions on a context. Safe to repeat."""
    context.funcs["$increment"] = increment
    context.funcs["$decrement"] = decrement
    context.funcs["$contextUid"] = lambda: context.uid
    context.funcs.setdefault("$randomNumber", random_number)
    context.funcs.setdefault("$randomString", random_string)


# ---------------------------
# Lambda Engine
# ---------------------------

class LambdaEngine:
    """Compiles scenario flows into async step chains that invoke a Lambda function."""

    def __init__(
        self,
        script: Script,
        emitter: EventEmitter,
        *,
        client_factory: Optional[Callable[..., Any]] = None,
    ):
        self.script = script
        self.config = script.config
        self.emitter = emitter
        self.client_factory = client_factory or LambdaClient

    def create_scenario(self, scenario_spec: ScenarioSpec, emitter: Optional[EventEmitter] = None) -> ScenarioFunction:
        emitter = emitter or self.emitter
        flow = (
            [{"function": name} for name in scenario_spec.beforeScenario]
            + list(scenario_spec.flow)
            + [{"function": name} for name in scenario_spec.afterScenario]
        )
        tasks = [self.step(node, emitter, scenario_spec) for node in flow]
        return self.compile(tasks, scenario_spec, emitter)

    def step(self, node: Dict[str, Any], emitter: EventEmitter, scenario_spec: Optional[ScenarioSpec] = None) -> CompiledStep:
        """Compile one flow node. Dispatch is by the key present; unknown nodes pass through."""
        if not isinstance(node, dict):
            logger.warning(f"Ignoring flow node of type {type(node).__name__}: {node!r}")
            return self._pass_through

        if "loop" in node:
            steps = [self.step(loop_step, emitter, scenario_spec) for loop_step in _as_list(node["loop"])]
            count = _loop_count(node.get("count"))
            over = node.get("over")
            while_true = node.get("whileTrue")
            if not isinstance(count, str) and count <= 0 and over is None and not while_true:
                logger.warning("Loop has no positive 'count', 'over' or 'whileTrue'; it will run until the virtual user is stopped.")
            return create_loop(
                steps,
                count=count,
                over=over,
                loop_value=node.get("loopValue"),
                while_true=while_true,
                processor=self.config.processor,
            )

        if "log" in node:
            return self._log_step(node["log"])

        if "think" in node:
            return create_think(node["think"], self.config.defaults.think.jitter)

        if "function" in node:
            return self._function_step(node["function"], emitter)

        if "invoke" in node:
            return self._invoke_step(InvokeSpec.model_validate(node["invoke"] or {}), emitter, scenario_spec)

        logger.debug(f"Flow node with keys {list(node)} is not recognized; compiling as a no-op.")
        return self._pass_through

    @staticmethod
    async def _pass_through(context: ExecutionContext) -> ExecutionContext:
        return context

    def _log_step(self, message: Any) -> CompiledStep:
        async def log(context: ExecutionContext) -> ExecutionContext:
            if message is not None:
                logger.info(f"[{context.uid}] {render(message, context)}")
            await asyncio.sleep(0)
            return context
        return log

    def _function_step(self, function_name: str, emitter: EventEmitter) -> CompiledStep:
        async def run_function(context: ExecutionContext) -> ExecutionContext:
            func = self.config.processor.get(function_name)
            if func is None:
                logger.warning(f"WARNING: custom function {function_name} could not be found")
                return context
            try:
                await call_processor(func, context, emitter)
            except Exception as e:
                logger.warning(f"[{context.uid}] Custom function {function_name} raised {type(e).__name__}: {e}. Continuing.")
            return context
        return run_function

    def _invoke_step(self, spec: InvokeSpec, emitter: EventEmitter, scenario_spec: Optional[ScenarioSpec]) -> CompiledStep:
        payload_template = _serialize(spec.payload)
        before_request = (scenario_spec.beforeRequest if scenario_spec else []) + spec.beforeRequest
        after_response = (scenario_spec.afterResponse if scenario_spec else []) + spec.afterResponse
        step_metadata = spec.model_extra or {}

        async def invoke(context: ExecutionContext) -> ExecutionContext:
            install_variable_functions(context)

            params: Dict[str, Any] = {
                "FunctionName": str(render(spec.target, context)) if spec.target else self.config.target,
                "InvocationType": spec.invocationType,
                "LogType": spec.logType,
                "Payload": _serialize(render(payload_template, context)),
                "Qualifier": str(render(spec.qualifier, context)),
            }
            client_context = _encode_client_context(render(spec.clientContext, context))
            if client_context:
                params["ClientContext"] = client_context

            request = {
                "url": getattr(context.lambda_client, "endpoint_url", None),
                "params": params,
                "invoke": spec.model_dump(),
                **step_metadata,
            }
            await run_before_request_hooks(self.config.processor, before_request, request, context, emitter)

            # Hooks may have changed vars since the first render
            params = request["params"]
            params["Payload"] = _serialize(render(payload_template, context))
            emitter.emit("request")

            start = time.monotonic_ns()
            try:
                raw = await context.lambda_client.invoke(params)
            except Exception as e:
                logger.debug(f"[{context.uid}] Invocation of '{params.get('FunctionName')}' failed: {e}")
                emitter.emit("error", e)
                raise

            elapsed = time.monotonic_ns() - start
            emitter.emit("response", elapsed, raw.get("statusCode"), context.uid)
            logger.debug(f"[{context.uid}] {params['FunctionName']} -> {raw.get('statusCode')} in {elapsed / 1e6:.1f}ms")
            response = normalize_response(raw)

            captured = capture_or_match(spec.capture, spec.match, response, context, emitter)
            if captured:
                context.vars.update(captured)

            await run_after_response_hooks(self.config.processor, after_response, request, response, context, emitter)
            return context

        return invoke

    def compile(self, tasks: List[CompiledStep], scenario_spec: ScenarioSpec, emitter: EventEmitter) -> ScenarioFunction:
        lambda_config = self.config.lambda_

        async def init(context: ExecutionContext) -> ExecutionContext:
            context.lambda_client = self.client_factory(
                region=lambda_config.region or "us-east-1",
                endpoint_url=lambda_config.function or None,
            )
            install_variable_functions(context)
            emitter.emit("started")
            return context

        steps = [init] + list(tasks)

        async def scenario(initial_context: ExecutionContext) -> ExecutionContext:
            context = initial_context
            if context.scenario_name is None:
                context.scenario_name = scenario_spec.name
            try:
                for step in steps:
                    context = await step(context)
            except Exception as e:
                logger.debug(f"[{context.uid}] Scenario '{scenario_spec.name or 'N/A'}' failed: {e}")
                raise
            return context

        return scenario


def _loop_count(value: Any) -> Union[int, str]:
    """Literal counts are checked when the flow compiles; templated counts render on each run."""
    if value is None:
        return -1
    if isinstance(value, str) and "{{" in value:
        return value
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ScriptError(f"Loop count must be an integer or a template, got {value!r}") from e


def _serialize(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, (dict, list)):
        return json.dumps(payload)
    return str(payload)


def _encode_client_context(client_context: Any) -> str:
    """Structured client contexts are JSON-encoded then base64-encoded; strings are sent as given."""
    if client_context is None or client_context == "":
        return ""
    if isinstance(client_context, (dict, list)):
        return base64.b64encode(json.dumps(client_context).encode("utf-8")).decode("ascii")
    return str(client_context)

