import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

import nats_runner_direct_invoker as invoker
from nats_runner import ScenarioEngine, logger as runner_logger


SCRIPT = """
config:
  nats:
    server: localhost:4222
    subject: default.subject
    flushTimeout: 3
  processor: hooks.py
  defaults:
    think:
      jitter: 10%
scenarios:
  - name: smoke
    beforeScenario: setup
    flow:
      - log: "starting {{user}}"
      - pub:
          payload:
            hello: "{{user}}"
  - name: second
    flow:
      - think: 1
"""

HOOKS = """
def setup(context, events):
    context.vars["user"] = "alice"

def _private(context, events):
    pass
"""


@pytest.fixture
def script_path(tmp_path):
    (tmp_path / "hooks.py").write_text(HOOKS)
    path = tmp_path / "script.yml"
    path.write_text(SCRIPT)
    return path


@pytest.fixture
def restore_runner_level():
    levels = [runner_logger.level] + [h.level for h in runner_logger.handlers]
    yield runner_logger
    runner_logger.setLevel(levels[0])
    for handler, level in zip(runner_logger.handlers, levels[1:]):
        handler.setLevel(level)


def make_connection():
    nc = MagicMock()
    nc.publish = AsyncMock()
    nc.flush = AsyncMock()
    nc.close = AsyncMock()
    return nc


def test_load_script_builds_config_and_scenarios(script_path):
    run_config, scenarios = invoker.load_script(script_path)

    assert run_config.servers == ["nats://localhost:4222"]
    assert run_config.subject == "default.subject"
    assert run_config.flush_timeout == 3
    assert run_config.think_jitter == pytest.approx(0.1)
    assert set(run_config.processor) == {"setup"}
    assert [s.name for s in scenarios] == ["smoke", "second"]
    assert scenarios[0].beforeScenario == ["setup"]


def test_load_script_server_override(script_path):
    run_config, _ = invoker.load_script(script_path, server="nats://other:4333")
    assert run_config.server == "nats://other:4333"


def test_select_scenario_by_name_or_index(script_path):
    _, scenarios = invoker.load_script(script_path)
    assert invoker.select_scenario(scenarios, "second").name == "second"
    assert invoker.select_scenario(scenarios, "0").name == "smoke"
    with pytest.raises(LookupError):
        invoker.select_scenario(scenarios, "7")


def test_main_runs_selected_scenario(monkeypatch, script_path, capsys):
    nc = MagicMock()
    nc.publish = AsyncMock()
    nc.flush = AsyncMock()
    nc.close = AsyncMock()
    monkeypatch.setattr(ScenarioEngine, "create_connection", AsyncMock(return_value=nc))

    exit_code = invoker.main([str(script_path), "--scenario", "smoke"])

    assert exit_code == 0
    nc.publish.assert_awaited_once_with("default.subject", b'{"hello":"alice"}')
    output = capsys.readouterr().out
    assert "request: 1" in output
    assert "result: ok" in output


def test_main_reports_connection_failure(monkeypatch, script_path, capsys):
    monkeypatch.setattr(ScenarioEngine, "create_connection", AsyncMock(side_effect=OSError("refused")))

    assert invoker.main([str(script_path)]) == 1
    assert "result: failed" in capsys.readouterr().out


def test_main_rejects_unknown_scenario(script_path):
    assert invoker.main([str(script_path), "--scenario", "missing"]) == 2


def test_load_script_debug_flag_overrides_config(tmp_path, script_path):
    run_config, _ = invoker.load_script(script_path)
    assert run_config.debug is False
    run_config, _ = invoker.load_script(script_path, debug=True)
    assert run_config.debug is True

    debug_script = tmp_path / "debug.yml"
    debug_script.write_text("config:\n  debug: true\nscenarios: []\n")
    assert invoker.load_script(debug_script)[0].debug is True
    assert invoker.load_script(debug_script, debug=False)[0].debug is False


@pytest.mark.parametrize("level_name", ["DEBUG", "WARNING"])
def test_main_log_level_applies_to_runner_logger(monkeypatch, script_path, restore_runner_level, level_name):
    monkeypatch.setattr(ScenarioEngine, "create_connection", AsyncMock(return_value=make_connection()))

    assert invoker.main([str(script_path), "--log-level", level_name]) == 0

    level = getattr(logging, level_name)
    assert runner_logger.level == level
    assert all(handler.level == level for handler in runner_logger.handlers)
