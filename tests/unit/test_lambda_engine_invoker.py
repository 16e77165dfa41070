import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

import lambda_engine_invoker
from engine_errors import ScriptError
from lambda_engine_invoker import build_script, load_processor, load_script_file, main, parse_args

SCRIPT_YAML = """
config:
  target: my_awesome_function
  lambda:
    region: us-east-1
  processor: ./functions.py
  defaults:
    think:
      jitter: 10%
  variables:
    greeting: hello
scenarios:
  - name: Invoke function
    engine: lambda
    beforeRequest: addHeader
    flow:
      - invoke:
          payload:
            title: "A very boring payload"
      - think: 1
"""

PROCESSOR_PY = """
def addHeader(request, context, emitter):
    request["params"]["Qualifier"] = "live"


async def checkResult(request, response, context, emitter):
    return None


_private = lambda: None
"""


@pytest.fixture
def script_dir(tmp_path: Path) -> Path:
    (tmp_path / "script.yml").write_text(SCRIPT_YAML)
    (tmp_path / "functions.py").write_text(PROCESSOR_PY)
    return tmp_path


def test_load_yaml_and_json_scripts(tmp_path):
    yaml_path = tmp_path / "s.yaml"
    yaml_path.write_text("config:\n  target: fn\nscenarios: []\n")
    json_path = tmp_path / "s.json"
    json_path.write_text(json.dumps({"config": {"target": "fn"}, "scenarios": []}))

    assert load_script_file(yaml_path) == {"config": {"target": "fn"}, "scenarios": []}
    assert load_script_file(json_path) == {"config": {"target": "fn"}, "scenarios": []}


def test_load_script_file_errors(tmp_path):
    with pytest.raises(ScriptError):
        load_script_file(tmp_path / "missing.yml")
    bad = tmp_path / "list.yml"
    bad.write_text("- just\n- a list\n")
    with pytest.raises(ScriptError):
        load_script_file(bad)


def test_load_processor_from_file(script_dir):
    functions = load_processor("./functions.py", script_dir)
    assert set(functions) == {"addHeader", "checkResult"}


def test_load_processor_from_module_name():
    functions = load_processor("engine_util", Path("."))
    assert "render" in functions
    assert "_evaluate" not in functions


def test_load_processor_import_error(tmp_path):
    with pytest.raises(ScriptError):
        load_processor("no_such_module_for_tests", tmp_path)


def test_build_script_resolves_processor_and_overrides(script_dir):
    args = parse_args([str(script_dir / "script.yml"), "--target", "other_fn", "--region", "eu-central-1"])
    script = build_script(args)

    assert script.config.target == "other_fn"
    assert script.config.lambda_.region == "eu-central-1"
    assert script.config.defaults.think.jitter == "10%"
    assert script.config.variables == {"greeting": "hello"}
    assert "addHeader" in script.config.processor
    assert script.scenarios[0].beforeRequest == ["addHeader"]


def test_build_script_reports_validation_errors(tmp_path):
    path = tmp_path / "bad.yml"
    path.write_text("config:\n  lambda:\n    region: us-east-1\nscenarios: []\n")
    with pytest.raises(ScriptError, match="Invalid script"):
        build_script(parse_args([str(path)]))


def test_main_returns_1_for_unloadable_script(tmp_path):
    assert main([str(tmp_path / "missing.yml")]) == 1


def test_main_runs_script_and_prints_summary(script_dir, capsys):
    summary = {"requests": 1, "responses": 1}
    with patch.object(lambda_engine_invoker, "run_script", new=AsyncMock(return_value=summary)) as mock_run:
        assert main([str(script_dir / "script.yml"), "--vusers", "4"]) == 0

    script, vusers = mock_run.await_args.args
    assert vusers == 4
    assert script.config.target == "my_awesome_function"
    assert json.loads(capsys.readouterr().out) == summary
