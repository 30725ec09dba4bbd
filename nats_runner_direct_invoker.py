import argparse
import asyncio
import importlib
import importlib.util
import inspect
import logging
import sys
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional, Tuple

from ruamel.yaml import YAML

from nats_runner import (
    DEFAULT_SERVER,
    EventRecorder,
    RunConfig,
    RunResult,
    ScenarioEngine,
    ScenarioSpec,
    logger as runner_logger,
)

log = logging.getLogger("nats_runner_direct_invoker")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one NATS scenario once as a single virtual user")
    parser.add_argument("script", help="Path to scenario script (YAML or JSON)")
    parser.add_argument(
        "--scenario",
        dest="scenario",
        default="0",
        help="Scenario to run, by name or by index in the script (default: first)",
    )
    parser.add_argument(
        "--server",
        dest="server",
        default=None,
        help="Broker address overriding config.nats.server",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default=None,
        help="Logging level (DEBUG, INFO, WARNING). Overrides config.debug for the runner logger",
    )
    return parser.parse_args(argv)


def load_processor(reference: str, base_dir: Path) -> Dict[str, Callable[..., Any]]:
    """
    Loads the function registry from a Python file path (relative to the
    script) or an importable module name. Public functions become entries.
    """
    if reference.endswith(".py"):
        path = Path(reference)
        if not path.is_absolute():
            path = base_dir / path
        module_spec = importlib.util.spec_from_file_location(path.stem, path)
        if module_spec is None or module_spec.loader is None:
            raise ImportError(f"Cannot load processor file {path}")
        module: ModuleType = importlib.util.module_from_spec(module_spec)
        module_spec.loader.exec_module(module)
    else:
        module = importlib.import_module(reference)

    registry = {
        name: obj
        for name, obj in vars(module).items()
        if not name.startswith("_") and inspect.isfunction(obj)
    }
    log.info(f"Loaded {len(registry)} processor functions from {reference}")
    return registry


def load_script(path: Path, server: Optional[str] = None, debug: Optional[bool] = None) -> Tuple[RunConfig, List[ScenarioSpec]]:
    data = YAML(typ="safe").load(path.read_text(encoding="utf-8")) or {}
    config = data.get("config") or {}
    nats_config = config.get("nats") or config.get("natspre") or {}
    think_defaults = (config.get("defaults") or {}).get("think") or {}

    processor_ref = config.get("processor")
    processor = load_processor(processor_ref, path.parent) if processor_ref else {}

    run_config = RunConfig(
        server=server or nats_config.get("server") or DEFAULT_SERVER,
        subject=nats_config.get("subject"),
        processor=processor,
        think_jitter=think_defaults.get("jitter"),
        debug=bool(config.get("debug", False)) if debug is None else debug,
        **{
            k: v
            for k, v in {
                "connect_timeout": nats_config.get("connectTimeout"),
                "flush_timeout": nats_config.get("flushTimeout"),
            }.items()
            if v is not None
        },
    )
    scenarios = [ScenarioSpec.model_validate(s) for s in data.get("scenarios") or []]
    return run_config, scenarios


def select_scenario(scenarios: List[ScenarioSpec], selector: str) -> ScenarioSpec:
    for spec in scenarios:
        if spec.name is not None and spec.name == selector:
            return spec
    if selector.isdigit() and int(selector) < len(scenarios):
        return scenarios[int(selector)]
    raise LookupError(f"No scenario matches '{selector}' ({len(scenarios)} defined)")


async def run_scenario(
    run_config: RunConfig, spec: ScenarioSpec, log_level: Optional[int] = None
) -> Tuple[RunResult, EventRecorder]:
    recorder = EventRecorder()
    engine = ScenarioEngine(run_config)
    if log_level is not None:
        # The engine resets the runner logger to DEBUG/INFO; an explicit level wins
        runner_logger.setLevel(log_level)
        for handler in runner_logger.handlers:
            handler.setLevel(log_level)
    result = await engine.run(spec, recorder)
    return result, recorder


def summarize(result: RunResult, recorder: EventRecorder) -> str:
    counts: Dict[str, int] = {}
    for name in recorder.names():
        counts[name] = counts.get(name, 0) + 1
    lines = [f"{name}: {count}" for name, count in counts.items()]
    latencies = [args[0] / 1e6 for args in recorder.of("response")]
    if latencies:
        lines.append(f"mean response time: {sum(latencies) / len(latencies):.2f} ms")
    lines.append("result: ok" if result.ok else f"result: failed ({result.error})")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    log_level = getattr(logging, args.log_level.upper(), logging.INFO) if args.log_level else None
    logging.basicConfig(level=log_level or logging.INFO)

    try:
        run_config, scenarios = load_script(
            Path(args.script),
            server=args.server,
            debug=None if log_level is None else log_level <= logging.DEBUG,
        )
        spec = select_scenario(scenarios, args.scenario)
    except (OSError, ImportError, LookupError, ValueError) as e:
        log.error(f"Cannot load scenario: {e}")
        return 2

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result, recorder = loop.run_until_complete(run_scenario(run_config, spec, log_level))
    except KeyboardInterrupt:
        print("Stopping scenario...")
        return 130
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()

    print(summarize(result, recorder))
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
