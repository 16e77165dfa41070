# engine_util.py

import asyncio
import inspect
import json
import logging
import random
import re
import string
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from engine_errors import HookError

logger = logging.getLogger("LambdaEngine.util")

# --- Sentinel Object for Missing Keys ---
_MISSING = object()

# Matches list indices ([0]) or key segments (a, .a)
_PATH_SEGMENT = re.compile(r'\[(\d+)\]|\.?([^.\[\]]+)')
_PLACEHOLDER = re.compile(r"\{\{\s*(.+?)\s*\}\}", re.S)
_CALL = re.compile(r"^(\$?[A-Za-z_][\w$]*)\((.*)\)$", re.S)
_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")

CompiledStep = Callable[[Any], Awaitable[Any]]


# ---------------------------
# Context Helper Functions
# ---------------------------

def get_value_from_context(context: Any, key: str) -> Any:
    """
    Retrieve a value from nested dicts/lists using dot notation for keys and
    bracket notation for list indices (e.g. 'data.values[0].id').
    Returns the sentinel _MISSING if the path cannot be resolved.
    """
    if not key:
        return _MISSING
    if not isinstance(context, (dict, list)):
        logger.debug(f"Cannot resolve path '{key}' against non-container type '{type(context).__name__}'.")
        return _MISSING

    current_value = context
    for match in _PATH_SEGMENT.finditer(key):
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


async def call_processor(func: Callable[..., Any], *args: Any) -> Any:
    """Call a user-supplied processor function, awaiting it if it is a coroutine function."""
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


# ---------------------------
# Template Rendering
# ---------------------------

def _split_args(raw: str) -> List[str]:
    """Split a call's argument list on commas that are not inside quotes."""
    args, current, quote = [], [], None
    for char in raw:
        if quote:
            current.append(char)
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
            current.append(char)
        elif char == ",":
            args.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    tail = "".join(current).strip()
    if tail or args:
        args.append(tail)
    return args


def _evaluate_arg(arg: str, context: Any) -> Any:
    if len(arg) >= 2 and arg[0] == arg[-1] and arg[0] in ("'", '"'):
        return arg[1:-1]
    if _NUMBER.match(arg):
        return float(arg) if "." in arg else int(arg)
    if arg in ("true", "false"):
        return arg == "true"
    if arg in ("null", "None"):
        return None
    value = get_value_from_context(context.vars, arg)
    return None if value is _MISSING else value


def _evaluate(expression: str, context: Any) -> Any:
    call = _CALL.match(expression)
    if call:
        name, raw_args = call.group(1), call.group(2)
        func = context.funcs.get(name)
        if func is None:
            logger.warning(f"Template function '{name}' is not defined. Substituting with empty string.")
            return _MISSING
        args = [_evaluate_arg(arg, context) for arg in _split_args(raw_args)]
        try:
            return func(*args)
        except Exception as e:
            logger.warning(f"Template function '{name}' raised {type(e).__name__}: {e}. Substituting with empty string.")
            return _MISSING
    return get_value_from_context(context.vars, expression)


def render(template: Any, context: Any) -> Any:
    """
    Render {{ expr }} placeholders against context.vars / context.funcs.

    A string made of exactly one placeholder renders to the raw value, so
    '{{ items }}' can yield a list. Anything else is substituted as text.
    Dicts and lists are rendered recursively.
    """
    if isinstance(template, dict):
        return {render(key, context): render(val, context) for key, val in template.items()}
    if isinstance(template, list):
        return [render(item, context) for item in template]
    if not isinstance(template, str) or "{{" not in template:
        return template

    placeholders = list(_PLACEHOLDER.finditer(template))
    if len(placeholders) == 1 and placeholders[0].group(0) == template.strip():
        value = _evaluate(placeholders[0].group(1), context)
        return "" if value is _MISSING or value is None else value

    def substitute(match: "re.Match[str]") -> str:
        value = _evaluate(match.group(1), context)
        if value is _MISSING:
            logger.debug(f"Placeholder '{match.group(0)}' did not resolve. Substituting with empty string.")
            return ""
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(substitute, template)


def random_number(min_value: int = 0, max_value: int = 10_000_000) -> int:
    return random.randint(int(min_value), int(max_value))


def random_string(length: int = 10) -> str:
    return "".join(random.choices(string.ascii_letters + string.digits, k=int(length)))


# ---------------------------
# Request/Response Hooks
# ---------------------------

async def _run_hooks(
    phase: str,
    processor: Dict[str, Callable[..., Any]],
    function_names: List[str],
    args: Tuple[Any, ...],
    context: Any,
    emitter: Any,
) -> None:
    for function_name in function_names:
        fn = str(render(function_name, context))
        process_func = processor.get(fn)
        if process_func is None:
            logger.warning(f"WARNING: custom function {fn} could not be found")
            continue
        try:
            await call_processor(process_func, *args, context, emitter)
        except Exception as e:
            raise HookError(fn, phase, e) from e


async def run_before_request_hooks(
    processor: Dict[str, Callable[..., Any]],
    function_names: List[str],
    request: Dict[str, Any],
    context: Any,
    emitter: Any,
) -> None:
    """Run beforeRequest hooks in order as (request, context, emitter); the first failure stops the list."""
    await _run_hooks("beforeRequest", processor, function_names, (request,), context, emitter)


async def run_after_response_hooks(
    processor: Dict[str, Callable[..., Any]],
    function_names: List[str],
    request: Dict[str, Any],
    response: "NormalizedResponse",
    context: Any,
    emitter: Any,
) -> None:
    """Run afterResponse hooks in order as (request, response, context, emitter)."""
    await _run_hooks("afterResponse", processor, function_names, (request, response), context, emitter)


# ---------------------------
# Response Classification
# ---------------------------

class NormalizedResponse(BaseModel):
    """HTTP-shaped view of a function invocation result, for capture/match and hooks."""
    body: Any = None
    status_code: int = 0
    headers: Dict[str, str] = Field(default_factory=dict)
    function_error: Optional[str] = None
    log_result: Optional[str] = None


def try_to_parse(data: Any) -> Tuple[Any, str]:
    """
    Try to parse a payload as JSON and infer its content type.
    Returns (parsed, 'application/json') on success, (data, '') otherwise.
    """
    try:
        return json.loads(data), "application/json"
    except (TypeError, ValueError):
        return data, ""


def normalize_response(raw: Dict[str, Any]) -> NormalizedResponse:
    body, content_type = try_to_parse(raw.get("payload"))
    return NormalizedResponse(
        body=body,
        status_code=raw.get("statusCode") or 0,
        headers={"content-type": content_type},
        function_error=raw.get("functionError"),
        log_result=raw.get("logResult"),
    )


# ---------------------------
# Capture / Match
# ---------------------------

def _body_text(body: Any) -> str:
    if isinstance(body, str):
        return body
    return json.dumps(body)


def _extract(rule: Dict[str, Any], response: NormalizedResponse, context: Any) -> Tuple[str, Any]:
    """Resolve one capture/match rule. Unresolvable values come back as ''."""
    value: Any = _MISSING
    if "json" in rule:
        expression = str(render(rule["json"], context))
        path = expression[1:] if expression.startswith("$") else expression
        path = path.lstrip(".")
        if not path:
            value = response.body
        else:
            value = get_value_from_context(response.body, path)
    elif "regexp" in rule:
        expression = str(render(rule["regexp"], context))
        try:
            found = re.search(expression, _body_text(response.body))
        except re.error as e:
            logger.warning(f"Invalid capture regexp '{expression}': {e}")
            found = None
        if found:
            group = rule.get("group")
            try:
                if group is not None:
                    value = found.group(group)
                else:
                    value = found.group(1) if found.re.groups else found.group(0)
            except IndexError as e:
                logger.warning(f"Capture regexp '{expression}' has no group '{group}': {e}")
    elif "header" in rule:
        expression = str(render(rule["header"], context))
        value = response.headers.get(expression.lower(), _MISSING)
    else:
        expression = ""
        logger.warning(f"Capture/match rule {rule} has no 'json', 'regexp' or 'header' expression.")

    if value is _MISSING or value is None:
        value = ""
    return expression, value


def capture_or_match(
    capture_rules: List[Dict[str, Any]],
    match_rules: List[Dict[str, Any]],
    response: NormalizedResponse,
    context: Any,
    emitter: Any,
) -> Optional[Dict[str, Any]]:
    """
    Evaluate match rules (emitting a 'match' event for each) and capture rules.

    Returns the captured variables, or None when any capture resolved to ''
    and the whole batch is discarded.
    """
    for rule in match_rules:
        expression, got = _extract(rule, response, context)
        expected = render(rule.get("value"), context)
        success = got == expected or str(got) == str(expected)
        if not success:
            logger.debug(f"Match failed for '{expression}': expected {expected!r}, got {got!r}")
        emitter.emit("match", success, expected, got, expression)

    captured: Dict[str, Any] = {}
    for rule in capture_rules:
        name = rule.get("as")
        if not name:
            logger.warning(f"Skipping capture rule {rule} with no 'as' variable name.")
            continue
        _, captured[name] = _extract(rule, response, context)

    if any(value == "" for value in captured.values()):
        logger.debug(f"Discarding captures {list(captured)}: at least one capture resolved to empty.")
        return None
    return captured


# ---------------------------
# Flow Constructs
# ---------------------------

def create_loop(
    steps: List[CompiledStep],
    *,
    count: Union[int, str] = -1,
    over: Optional[Union[List[Any], str]] = None,
    loop_value: Optional[str] = None,
    while_true: Optional[str] = None,
    processor: Optional[Dict[str, Callable[..., Any]]] = None,
) -> CompiledStep:
    """
    Build a step that runs `steps` in sequence, repeatedly.

    A positive `count` bounds the iterations. Otherwise the loop ends when
    `over` is exhausted or the `while_true` processor function returns
    falsy; with none of these it runs until the task is cancelled.
    """
    loop_var_name = loop_value or "$loopElement"
    processor = processor or {}

    async def loop(context: Any) -> Any:
        limit = count
        if isinstance(limit, str):
            rendered = render(limit, context)
            try:
                limit = int(rendered)
            except (TypeError, ValueError):
                logger.warning(f"Loop count {count!r} rendered to {rendered!r}, which is not an integer. Skipping loop.")
                return context
            if limit <= 0:
                logger.debug(f"Loop count {count!r} rendered to {limit}. Skipping loop.")
                return context

        values: Optional[List[Any]] = None
        if over is not None:
            source = over
            if isinstance(source, str):
                path = source.strip()
                if path.startswith("{{") and path.endswith("}}"):
                    path = path[2:-2].strip()
                source = get_value_from_context(context.vars, path)
            if not isinstance(source, list):
                logger.warning(f"Loop 'over' source {over!r} is not a list (type: {type(source).__name__}). Skipping loop.")
                return context
            values = source

        predicate = None
        if while_true:
            predicate = processor.get(while_true)
            if predicate is None:
                logger.warning(f"WARNING: whileTrue function {while_true} could not be found. Skipping loop.")
                return context

        index = 0
        while True:
            if limit > 0 and index >= limit:
                break
            if values is not None and index >= len(values):
                break
            if predicate is not None and not await call_processor(predicate, context):
                break

            context.vars["$loopCount"] = index
            if values is not None:
                context.vars[loop_var_name] = values[index]
            else:
                context.vars[loop_var_name] = index

            for step in steps:
                context = await step(context)
            index += 1
            if limit <= 0 and values is None and predicate is None:
                # Unbounded; give other virtual users a turn between iterations
                await asyncio.sleep(0)
        return context

    return loop


def _jitter_seconds(duration: float, jitter: Any) -> float:
    if jitter is None or jitter == "":
        return 0.0
    if isinstance(jitter, str) and jitter.strip().endswith("%"):
        return duration * float(jitter.strip()[:-1]) / 100.0
    return float(jitter)


def create_think(duration: Any, jitter: Any = None) -> CompiledStep:
    """Build a step that pauses for `duration` seconds (+/- jitter) without blocking other users."""

    async def think(context: Any) -> Any:
        seconds = float(render(duration, context) or 0)
        spread = _jitter_seconds(seconds, jitter)
        if spread:
            seconds += random.uniform(-spread, spread)
        await asyncio.sleep(max(seconds, 0.0))
        return context

    return think
