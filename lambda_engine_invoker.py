import argparse
import asyncio
import importlib
import importlib.util
import inspect
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from ruamel.yaml import YAML

from engine_errors import ScriptError
from engine_runner import ScenarioRunner
from lambda_engine import Script, configure_logging, logger


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a Lambda load-test script locally")
    parser.add_argument("script", help="Path to the scenario script (YAML or JSON)")
    parser.add_argument(
        "--processor",
        dest="processor",
        default=None,
        help="Python module (dotted name or .py path) providing custom functions and hooks",
    )
    parser.add_argument("--vusers", dest="vusers", type=int, default=1, help="Number of concurrent virtual users")
    parser.add_argument("--target", dest="target", default=None, help="Override config.target (function name)")
    parser.add_argument("--region", dest="region", default=None, help="Override config.lambda.region")
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING)",
    )
    return parser.parse_args(argv)


def load_script_file(path: Path) -> Dict[str, Any]:
    """Read a script as a plain dict. JSON by suffix, YAML otherwise."""
    try:
        with path.open("r", encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = YAML(typ="safe").load(f)
    except FileNotFoundError:
        raise ScriptError(f"Script file not found: '{path}'")
    except Exception as e:
        raise ScriptError(f"Error loading or parsing script '{path}': {e}") from e
    if not isinstance(data, dict):
        raise ScriptError(f"Script '{path}' must contain a mapping at the top level")
    return data


def load_processor(spec: str, base_dir: Path) -> Dict[str, Callable[..., Any]]:
    """Import a processor module and return its public functions by name."""
    try:
        if spec.endswith(".py"):
            module_path = Path(spec)
            if not module_path.is_absolute():
                module_path = base_dir / module_path
            module_spec = importlib.util.spec_from_file_location(module_path.stem, module_path)
            if module_spec is None or module_spec.loader is None:
                raise ScriptError(f"Cannot load processor file '{module_path}'")
            module = importlib.util.module_from_spec(module_spec)
            module_spec.loader.exec_module(module)
        else:
            module = importlib.import_module(spec)
    except ScriptError:
        raise
    except Exception as e:
        raise ScriptError(f"Cannot import processor '{spec}': {e}") from e

    return {
        name: obj
        for name, obj in vars(module).items()
        if inspect.isfunction(obj) and not name.startswith("_")
    }


def build_script(args: argparse.Namespace) -> Script:
    script_path = Path(args.script)
    data = load_script_file(script_path)
    config = data.setdefault("config", {})
    if not isinstance(config, dict):
        raise ScriptError("'config' must be a mapping")

    processor_spec = args.processor or config.get("processor")
    if isinstance(processor_spec, str):
        config["processor"] = load_processor(processor_spec, script_path.parent)
    if args.target:
        config["target"] = args.target
    if args.region:
        config.setdefault("lambda", {})["region"] = args.region

    try:
        return Script.model_validate(data)
    except ValidationError as e:
        raise ScriptError(f"Invalid script '{script_path}': {e}") from e


async def run_script(script: Script, vusers: int) -> Dict[str, Any]:
    runner = ScenarioRunner(script, vusers)
    return await runner.run()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level)
    configure_logging(level == logging.DEBUG)

    try:
        script = build_script(args)
    except ScriptError as e:
        logger.error(str(e))
        return 1

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        summary = loop.run_until_complete(run_script(script, args.vusers))
        print(json.dumps(summary, indent=2))
    except KeyboardInterrupt:
        print("Stopping Lambda engine...")
        loop.run_until_complete(asyncio.sleep(0))
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
