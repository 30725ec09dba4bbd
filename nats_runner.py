# nats_runner.py

import asyncio
import inspect
import json
import logging
import random
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union

import nats
from nats.errors import TimeoutError as NatsTimeoutError
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

# --- Logging Setup ---
logger = logging.getLogger("NatsRunner")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
logger.propagate = False # Prevent duplicate logs if root logger is configured

__all__ = [
    "logger", "ScenarioEngine", "ScenarioSpec", "RunConfig", "ExecutionContext",
    "EventRecorder", "RunResult", "ScenarioError",
]

DEFAULT_SERVER = "nats://demo.nats.io:4222"
DEFAULT_REQUEST_TIMEOUT_MS = 5000
SUCCESS_CODE = 0 # Status code carried by the 'response' event

# ---------------------------
# Errors
# ---------------------------

class ScenarioError(Exception):
    """Base class for every failure that terminates a scenario run."""


class BrokerConnectionError(ScenarioError):
    pass


class HookError(ScenarioError):
    def __init__(self, hook_name: str, cause: BaseException):
        super().__init__(f"Hook '{hook_name}' failed: {cause}")
        self.hook_name = hook_name


class FunctionError(ScenarioError):
    def __init__(self, function_name: str, cause: BaseException):
        super().__init__(f"Function '{function_name}' failed: {cause}")
        self.function_name = function_name


class PublishError(ScenarioError):
    pass


class RequestError(ScenarioError):
    pass


class RequestTimeoutError(RequestError):
    pass


class CaptureError(ScenarioError):
    pass

# ---------------------------
# Scenario Pydantic Models
# ---------------------------

def _as_name_list(value: Any) -> List[str]:
    """Hook lists may be written as a single name in scenario files."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _parse_jitter(value: Any) -> Optional[float]:
    """Accepts a fraction (0.1) or a percentage string ('10%')."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("%"):
            return float(text[:-1]) / 100.0
        return float(text)
    return float(value)


class PubSpec(BaseModel):
    subject: Optional[str] = Field(None, description="Target subject. Can contain {{variables}}. Falls back to the run's default subject.")
    payload: Any = Field("", description="Message payload (string or JSON value). Can contain {{variables}}.")
    beforeRequest: List[str] = Field(default_factory=list, description="Processor functions run before the message is sent")
    afterResponse: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("afterResponse", "afterRequest"),
        description="Processor functions run after the send completes",
    )
    capture: Union[Dict[str, Any], List[Dict[str, Any]]] = Field(
        default_factory=dict,
        description="Variables to capture from the response: {'var': 'body.path'}, a single {'json': '$.path', 'as': 'var'} rule or a list of such rules",
    )
    match: Dict[str, Any] = Field(default_factory=dict, description="Expected response values keyed by expression (logged, never fatal)")

    # Extra fields are forwarded to hooks untouched
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @field_validator("beforeRequest", "afterResponse", mode="before")
    @classmethod
    def coerce_hook_names(cls, v):
        return _as_name_list(v)


class ReqSpec(PubSpec):
    timeout: int = Field(DEFAULT_REQUEST_TIMEOUT_MS, ge=0, description="Reply timeout in milliseconds")
    headers: Dict[str, Any] = Field(default_factory=dict, description="Message headers. Values can contain {{variables}}.")

    @field_validator("timeout", mode="before")
    @classmethod
    def default_timeout(cls, v):
        return v or DEFAULT_REQUEST_TIMEOUT_MS

    @field_validator("headers", mode="before")
    @classmethod
    def default_headers(cls, v):
        return v or {}


class LogAction(BaseModel):
    log: Any


class ThinkAction(BaseModel):
    think: float = Field(..., ge=0, description="Pause duration in seconds")
    jitter: Optional[float] = Field(None, ge=0, le=1, description="Spread applied to the pause, as a fraction or 'N%'")

    @field_validator("jitter", mode="before")
    @classmethod
    def parse_jitter(cls, v):
        return _parse_jitter(v)


class FunctionAction(BaseModel):
    function: str


class PubAction(BaseModel):
    pub: PubSpec


class ReqAction(BaseModel):
    req: ReqSpec


class NoopAction(BaseModel):
    raw: Any = None


Action = Union[LogAction, ThinkAction, FunctionAction, PubAction, ReqAction, NoopAction]

# Tag order matters: the first tag present on a raw entry selects its case
_ACTION_TAGS: Tuple[Tuple[str, type], ...] = (
    ("log", LogAction),
    ("think", ThinkAction),
    ("function", FunctionAction),
    ("pub", PubAction),
    ("req", ReqAction),
)


def parse_action(raw: Any) -> Action:
    """
    Turns one raw flow entry into exactly one Action case.
    Never raises: entries with no known tag, or whose tagged body fails
    validation, become NoopAction so older or newer scenario files still run.
    """
    if isinstance(raw, (LogAction, ThinkAction, FunctionAction, PubAction, ReqAction, NoopAction)):
        return raw
    if not isinstance(raw, dict):
        logger.warning(f"Flow entry of type '{type(raw).__name__}' is not a mapping. Compiling it as a no-op.")
        return NoopAction(raw=raw)

    for tag, model in _ACTION_TAGS:
        if raw.get(tag) is None:
            continue
        try:
            return model.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Invalid '{tag}' action {raw!r}: {e.error_count()} validation error(s). Compiling it as a no-op.")
            logger.debug(f"Validation details for '{tag}' action: {e}")
            return NoopAction(raw=raw)

    logger.debug(f"Flow entry {raw!r} has no recognised action. Compiling it as a no-op.")
    return NoopAction(raw=raw)


class ScenarioSpec(BaseModel):
    name: Optional[str] = Field(None, description="Name of the scenario")
    flow: List[Any] = Field(default_factory=list, description="Ordered actions: log, think, function, pub or req entries")
    beforeScenario: List[str] = Field(default_factory=list, description="Functions run as steps before the flow")
    afterScenario: List[str] = Field(default_factory=list, description="Functions run as steps after the flow")
    beforeRequest: List[str] = Field(default_factory=list, description="Hooks run before every pub/req, ahead of the action's own")
    afterResponse: List[str] = Field(default_factory=list, description="Hooks run after every pub/req, ahead of the action's own")

    model_config = ConfigDict(extra="ignore")

    @field_validator("beforeScenario", "afterScenario", "beforeRequest", "afterResponse", mode="before")
    @classmethod
    def coerce_hook_names(cls, v):
        return _as_name_list(v)

# ---------------------------
# Run Configuration
# ---------------------------

class RunConfig(BaseModel):
    """Configuration shared by every run of a scenario."""
    server: str = Field(DEFAULT_SERVER, description="Broker address; a comma separated list is allowed")
    subject: Optional[str] = Field(None, description="Default subject for pub/req actions that do not name one")
    processor: Dict[str, Callable[..., Any]] = Field(default_factory=dict, description="Function registry for hooks and function steps")
    think_jitter: Optional[float] = Field(None, ge=0, le=1, description="Default jitter for think steps")
    connect_timeout: float = Field(2.0, gt=0, description="Seconds allowed for the initial broker connection")
    flush_timeout: float = Field(10.0, gt=0, description="Seconds allowed for the flush that confirms a publish")
    connect_options: Dict[str, Any] = Field(default_factory=dict, description="Extra keyword arguments for nats.connect")
    debug: bool = Field(default=False, description="Enable debug logging")

    model_config = ConfigDict(extra="ignore")

    @field_validator("server")
    @classmethod
    def normalize_server(cls, v):
        servers = [s.strip() for s in (v or "").split(",") if s.strip()]
        if not servers:
            return DEFAULT_SERVER
        return ",".join(s if "://" in s else f"nats://{s}" for s in servers)

    @field_validator("think_jitter", mode="before")
    @classmethod
    def parse_jitter(cls, v):
        return _parse_jitter(v)

    @property
    def servers(self) -> List[str]:
        return self.server.split(",")

# ---------------------------
# Execution Context
# ---------------------------

def _is_integer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and value.is_integer()


def increment(value: Any) -> Union[int, float]:
    return value + 1 if _is_integer(value) else float("nan")


def decrement(value: Any) -> Union[int, float]:
    return value - 1 if _is_integer(value) else float("nan")


class StringCodec:
    """UTF-8 text codec used for every payload of a run."""
    encoding = "utf-8"

    def encode(self, text: str) -> bytes:
        return text.encode(self.encoding)

    def decode(self, data: bytes) -> str:
        return bytes(data or b"").decode(self.encoding, errors="replace")


@dataclass
class ExecutionContext:
    """
    Mutable state of one virtual user run. Created once per run and threaded
    through every step; never shared between runs.
    """
    vars: Dict[str, Any] = field(default_factory=dict)
    uid: str = field(default_factory=lambda: str(uuid.uuid4()))
    funcs: Dict[str, Callable[..., Any]] = field(default_factory=dict)
    connection: Any = None
    codec: Optional[StringCodec] = None

    def __post_init__(self):
        uid = self.uid
        self.funcs.setdefault("increment", increment)
        self.funcs.setdefault("decrement", decrement)
        self.funcs.setdefault("contextUid", lambda: uid)


@dataclass
class ResponseRecord:
    body: Any = None
    status_code: int = 200
    headers: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RunResult:
    context: ExecutionContext
    error: Optional[ScenarioError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

# ---------------------------
# Events
# ---------------------------

class EventSink(Protocol):
    def emit(self, event: str, *args: Any) -> None: ...


class EventRecorder:
    """
    In-memory event sink. Keeps every (event, args) pair in emission order and
    forwards each emission to listeners registered with on().
    """
    def __init__(self):
        self.events: List[Tuple[str, Tuple[Any, ...]]] = []
        self._listeners: Dict[str, List[Callable[..., Any]]] = {}

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def emit(self, event: str, *args: Any) -> None:
        self.events.append((event, args))
        for listener in self._listeners.get(event, []):
            listener(*args)

    def count(self, event: str) -> int:
        return sum(1 for name, _ in self.events if name == event)

    def of(self, event: str) -> List[Tuple[Any, ...]]:
        return [args for name, args in self.events if name == event]

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

# ---------------------------
# Context Helper Functions
# ---------------------------

_MISSING = object()
_PATH_PART = re.compile(r'\[(\d+)\]|\.?([^.\[\]]+)')


def get_value_from_context(context: Any, key: str) -> Any:
    """
    Retrieve a value from nested dicts/lists using dot notation for keys and
    bracket notation for list indices (e.g. 'data.items[0].id').
    Returns the _MISSING sentinel when the path does not resolve, so that a
    stored None stays distinguishable from an absent key.
    """
    if not key or not isinstance(context, (dict, list)):
        return _MISSING

    current = context
    for match in _PATH_PART.finditer(key):
        index_str, part_name = match.group(1), match.group(2)
        if index_str is not None:
            index = int(index_str)
            if not isinstance(current, list) or not 0 <= index < len(current):
                return _MISSING
            current = current[index]
        else:
            if not isinstance(current, dict) or part_name not in current:
                return _MISSING
            current = current[part_name]
    return current


def set_value_in_context(context: Dict[str, Any], key: str, value: Any):
    """
    Set a value in a nested dict using the same path notation, creating
    intermediate dicts as needed. Lists are never created or extended.
    """
    if not key:
        logger.warning("Attempted to set value in context with empty key.")
        return
    if not isinstance(context, dict):
        logger.error(f"Cannot set value for key '{key}': context is not a dictionary (type: {type(context).__name__}).")
        return

    parts = [(m.group(1), m.group(2)) for m in _PATH_PART.finditer(key)]
    target: Any = context
    for i, (index_str, part_name) in enumerate(parts):
        is_last = i == len(parts) - 1
        if index_str is not None:
            index = int(index_str)
            if not isinstance(target, list) or not 0 <= index < len(target):
                logger.error(f"Cannot set '{key}': index [{index}] is not available on {type(target).__name__}.")
                return
            if is_last:
                target[index] = value
                return
            target = target[index]
            continue

        if not isinstance(target, dict):
            logger.error(f"Cannot set '{key}': '{part_name}' expected in a dictionary, found {type(target).__name__}.")
            return
        if is_last:
            target[part_name] = value
            return
        next_is_index = parts[i + 1][0] is not None
        child = target.get(part_name, _MISSING)
        if child is _MISSING:
            if next_is_index:
                logger.error(f"Cannot set '{key}': list '{part_name}' does not exist.")
                return
            child = target[part_name] = {}
        elif (next_is_index and not isinstance(child, list)) or (not next_is_index and not isinstance(child, dict)):
            logger.error(f"Cannot set '{key}': '{part_name}' has incompatible type {type(child).__name__}.")
            return
        target = child

# ---------------------------
# Payload Rendering
# ---------------------------

# {{ path.to[0].var }} or {{ $function(arg, 'literal', 3) }}
_TEMPLATE_PATTERN = re.compile(
    r"\{\{\s*(?:\$(?P<func>\w+)\((?P<args>[^()]*)\)|(?P<path>[\w.\[\]]+))\s*\}\}"
)
_NUMBER_PATTERN = re.compile(r"^-?\d+(\.\d+)?$")


def serialize_payload(payload: Any) -> str:
    """Canonical string form of a payload template."""
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _resolve_template_argument(token: str, context: ExecutionContext) -> Any:
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
        return token[1:-1]
    if _NUMBER_PATTERN.match(token):
        return float(token) if "." in token else int(token)
    value = get_value_from_context(context.vars, token)
    return None if value is _MISSING else value


def _call_template_function(name: str, raw_args: str, context: ExecutionContext) -> Any:
    func = context.funcs.get(name)
    if func is None:
        logger.warning(f"Template function '${name}' is not registered. Substituting with empty string.")
        return None
    args = [_resolve_template_argument(a.strip(), context) for a in raw_args.split(",") if a.strip()]
    try:
        return func(*args)
    except Exception as e:
        logger.error(f"Template function '${name}' failed: {e}")
        return None


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def _render_string(template: str, context: ExecutionContext) -> str:
    if "{{" not in template:
        return template

    def substitute(match: "re.Match[str]") -> str:
        if match.group("func"):
            return _stringify(_call_template_function(match.group("func"), match.group("args"), context))
        path = match.group("path")
        value = get_value_from_context(context.vars, path)
        if value is _MISSING:
            logger.warning(f"Variable '{{{{{path}}}}}' not found in context. Substituting with empty string.")
            return ""
        return _stringify(value)

    rendered = _TEMPLATE_PATTERN.sub(substitute, template)
    if logger.isEnabledFor(logging.DEBUG) and rendered != template:
        logger.debug(f"Substituted: '{template[:100]}' -> '{rendered[:100]}'")
    return rendered


def render_template(data: Any, context: ExecutionContext) -> Any:
    """
    Recursively substitutes {{variables}} and {{$function(...)}} calls in
    strings, dict keys/values and list items against context.vars.
    Other types are returned as is.
    """
    if isinstance(data, str):
        return _render_string(data, context)
    if isinstance(data, dict):
        return {render_template(k, context): render_template(v, context) for k, v in data.items()}
    if isinstance(data, list):
        return [render_template(item, context) for item in data]
    return data

# ---------------------------
# Response Decoding
# ---------------------------

def _decode_json(text: str) -> Tuple[Any, bool]:
    try:
        return json.loads(text), True
    except ValueError:
        return text, False


def parse_safely(text: str, headers: Optional[Dict[str, Any]] = None, status_code: int = 200) -> ResponseRecord:
    """Builds a ResponseRecord from reply text, JSON-decoded when possible."""
    response_headers: Dict[str, Any] = {"content-type": ""}
    if headers:
        response_headers.update({str(k): v for k, v in headers.items()})
    body, is_json = _decode_json(text)
    if is_json:
        response_headers["content-type"] = "application/json"
    return ResponseRecord(body=body, status_code=status_code, headers=response_headers)


def empty_response(status_code: int = 200) -> ResponseRecord:
    return ResponseRecord(body=None, status_code=status_code, headers={})

# ---------------------------
# Capture Engine
# ---------------------------

CAPTURE_FAILED = object() # Marker for a capture expression that resolved to nothing


@dataclass
class CaptureResult:
    captures: Dict[str, Any] = field(default_factory=dict)
    matches: Dict[str, bool] = field(default_factory=dict)


def _capture_rules(rules: Any) -> Dict[str, str]:
    """
    Normalizes {'var': expr}, a single {'json'|'header': expr, 'as': var} rule,
    or a list of such rules into {'var': expr}.
    """
    if not rules:
        return {}
    if isinstance(rules, dict):
        if "as" not in rules or not ("json" in rules or "header" in rules):
            return dict(rules)
        rules = [rules]
    normalized: Dict[str, str] = {}
    for rule in rules:
        name = rule.get("as")
        if not name:
            logger.warning(f"Skipping capture rule without 'as': {rule!r}")
            continue
        if "json" in rule:
            normalized[name] = rule["json"]
        elif "header" in rule:
            normalized[name] = f"headers.{rule['header']}"
        else:
            logger.warning(f"Skipping capture rule for '{name}' with no 'json' or 'header' expression.")
    return normalized


def resolve_expression(expression: str, response: ResponseRecord) -> Any:
    """
    Resolves a capture/match expression against a response:
    '.status', 'headers.<name>' (case-insensitive), 'body', 'body.<path>',
    '$' / '$.<path>', or a bare path into the body. Returns _MISSING if unresolved.
    """
    if expression == ".status":
        return response.status_code
    if expression.lower().startswith("headers."):
        name = expression[len("headers."):].lower()
        ci_headers = {str(k).lower(): v for k, v in (response.headers or {}).items()}
        return ci_headers.get(name, _MISSING)
    if expression in ("body", "$"):
        return _MISSING if response.body is None else response.body
    for prefix in ("body.", "$."):
        if expression.startswith(prefix):
            return get_value_from_context(response.body, expression[len(prefix):])
    return get_value_from_context(response.body, expression)


def capture_or_match(params: Dict[str, Any], response: ResponseRecord, context: ExecutionContext) -> Optional[CaptureResult]:
    rules = _capture_rules(params.get("capture"))
    match_rules = params.get("match") or {}
    if not rules and not match_rules:
        return None

    result = CaptureResult()
    for name, expression in rules.items():
        value = resolve_expression(render_template(expression, context), response)
        result.captures[name] = CAPTURE_FAILED if value is _MISSING else value

    for expression, expected in match_rules.items():
        actual = resolve_expression(render_template(expression, context), response)
        expected = render_template(expected, context)
        matched = actual is not _MISSING and _stringify(actual) == _stringify(expected)
        if not matched:
            shown = "<missing>" if actual is _MISSING else repr(actual)
            logger.warning(f"Match failed for '{expression}': expected {expected!r}, got {shown}")
        result.matches[expression] = matched
    return result


def apply_captures(result: Optional[CaptureResult], context: ExecutionContext):
    """Writes each non-failed capture into context.vars; failed keys are dropped one by one."""
    if result is None:
        return
    for name, value in result.captures.items():
        if value is CAPTURE_FAILED:
            logger.warning(f"Capture '{name}' did not resolve; keeping previous value of the variable.")
            continue
        set_value_in_context(context.vars, name, value)
        logger.debug(f"Captured '{name}' = {repr(value)[:100]}")

# ---------------------------
# Hook Pipeline
# ---------------------------

async def _invoke(func: Callable[..., Any], *args: Any) -> Any:
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _noop_hook(*args: Any) -> None:
    return None


def _resolve_hook(processor: Dict[str, Callable[..., Any]], name: str, context: ExecutionContext) -> Tuple[str, Callable[..., Any]]:
    resolved = _stringify(render_template(name, context))
    hook = processor.get(resolved)
    if hook is None:
        logger.warning(f"Specified function '{resolved}' could not be found; skipping it.")
        hook = _noop_hook
    return resolved, hook


async def _run_hooks(processor: Dict[str, Callable[..., Any]], names: List[str], context: ExecutionContext, *hook_args: Any):
    for name in names:
        # Rendered per hook: an earlier hook may have changed vars
        resolved, hook = _resolve_hook(processor, name, context)
        logger.debug(f"Running hook '{resolved}'")
        try:
            await _invoke(hook, *hook_args)
        except Exception as e:
            raise HookError(resolved, e) from e


async def run_before_request_hooks(processor, names, params, context, events):
    """Runs before-hooks in series as hook(params, context, events); stops at the first failure."""
    await _run_hooks(processor, names, context, params, context, events)


async def run_after_response_hooks(processor, names, params, response, context, events):
    """Runs after-hooks in series as hook(params, response, context, events); stops at the first failure."""
    await _run_hooks(processor, names, context, params, response, context, events)

# ---------------------------
# Scenario Engine
# ---------------------------

StepFunction = Callable[[ExecutionContext], Awaitable[ExecutionContext]]


@dataclass
class ScenarioHooks:
    before_request: List[str] = field(default_factory=list)
    after_response: List[str] = field(default_factory=list)


@dataclass(eq=False)
class Step:
    """One compiled unit of a scenario pipeline."""
    action: Action
    run: StepFunction

    async def __call__(self, context: ExecutionContext) -> ExecutionContext:
        return await self.run(context)

    @property
    def kind(self) -> str:
        for tag, model in _ACTION_TAGS:
            if isinstance(self.action, model):
                return tag
        return "noop"


async def _noop_step(context: ExecutionContext) -> ExecutionContext:
    return context


class ScenarioEngine:
    """Compiles scenario specs into step pipelines and runs them against a NATS broker."""
    def __init__(self, config: RunConfig):
        self.config = config
        self.configure_logging(self.config.debug)

    def configure_logging(self, debug: bool):
        """Configures the logger level based on the debug flag."""
        log_level = logging.DEBUG if debug else logging.INFO
        logger.setLevel(log_level)
        for handler in logger.handlers:
            handler.setLevel(log_level)

    def new_context(self, variables: Optional[Dict[str, Any]] = None) -> ExecutionContext:
        return ExecutionContext(vars=dict(variables or {}))

    # --- Compilation ---

    def create_scenario(self, spec: ScenarioSpec, events: EventSink) -> Callable[..., Awaitable[RunResult]]:
        steps = self.compile_steps(spec, events)
        return self.compile(steps, spec, events)

    def compile_steps(self, spec: ScenarioSpec, events: EventSink) -> List[Step]:
        """
        beforeScenario functions, the flow in declared order, then afterScenario
        functions, one Step each. The ScenarioSpec itself is left untouched.
        """
        actions: List[Action] = [FunctionAction(function=name) for name in spec.beforeScenario]
        actions.extend(parse_action(raw) for raw in spec.flow)
        actions.extend(FunctionAction(function=name) for name in spec.afterScenario)

        hooks = ScenarioHooks(before_request=list(spec.beforeRequest), after_response=list(spec.afterResponse))
        return [self.step(action, events, hooks) for action in actions]

    def step(self, action: Action, events: EventSink, hooks: Optional[ScenarioHooks] = None) -> Step:
        hooks = hooks or ScenarioHooks()
        if isinstance(action, LogAction):
            return Step(action, self._log_step(action))
        if isinstance(action, ThinkAction):
            return Step(action, self._think_step(action))
        if isinstance(action, FunctionAction):
            return Step(action, self._function_step(action, events))
        if isinstance(action, PubAction):
            return Step(action, self._message_step(action.pub, events, hooks, self._publish))
        if isinstance(action, ReqAction):
            return Step(action, self._message_step(action.req, events, hooks, self._request))
        return Step(action, _noop_step)

    # --- Step handlers ---

    def _log_step(self, action: LogAction) -> StepFunction:
        async def log(context: ExecutionContext) -> ExecutionContext:
            logger.info(_stringify(render_template(action.log, context)))
            await asyncio.sleep(0) # Let other virtual users run
            return context
        return log

    def _think_step(self, action: ThinkAction) -> StepFunction:
        jitter = action.jitter if action.jitter is not None else self.config.think_jitter

        async def think(context: ExecutionContext) -> ExecutionContext:
            duration = action.think
            if jitter:
                duration = random.uniform(max(0.0, duration * (1 - jitter)), duration * (1 + jitter))
            logger.debug(f"Run {context.uid}: thinking for {duration:.3f}s")
            await asyncio.sleep(duration)
            return context
        return think

    def _function_step(self, action: FunctionAction, events: EventSink) -> StepFunction:
        async def function(context: ExecutionContext) -> ExecutionContext:
            func = self.config.processor.get(action.function)
            if func is None:
                # Scenarios may name functions that only some configurations provide
                logger.debug(f"Function '{action.function}' is not defined; continuing.")
                await asyncio.sleep(0)
                return context
            try:
                await _invoke(func, context, events)
            except Exception as e:
                error = FunctionError(action.function, e)
                logger.error(f"Run {context.uid}: {error}", exc_info=self.config.debug)
                events.emit("error", error)
                raise error from e
            return context
        return function

    def _message_step(self, spec: PubSpec, events: EventSink, hooks: ScenarioHooks, send) -> StepFunction:
        payload_template = serialize_payload(spec.payload)
        before_names = hooks.before_request + spec.beforeRequest
        after_names = hooks.after_response + spec.afterResponse

        async def message_step(context: ExecutionContext) -> ExecutionContext:
            message: Dict[str, Any] = {
                "subject": _stringify(render_template(spec.subject or self.config.subject or "", context)),
                "payload": render_template(payload_template, context),
            }
            if isinstance(spec, ReqSpec):
                message["timeout"] = spec.timeout
                message["headers"] = {k: _stringify(v) for k, v in render_template(spec.headers, context).items()}

            params = spec.model_dump()
            params["message"] = message

            try:
                await run_before_request_hooks(self.config.processor, before_names, params, context, events)

                events.emit("request")
                started_at = time.perf_counter_ns()

                # Before-hooks may have changed vars
                message["payload"] = render_template(payload_template, context)
                response = await send(message, context)

                elapsed_ns = time.perf_counter_ns() - started_at
                events.emit("response", elapsed_ns, SUCCESS_CODE, context.uid)
                logger.debug(f"Run {context.uid}: '{message['subject']}' completed in {elapsed_ns / 1e6:.2f} ms")

                try:
                    result = capture_or_match(params, response, context)
                except Exception as e:
                    raise CaptureError(f"Capture failed for '{message['subject']}': {e}") from e
                apply_captures(result, context)

                await run_after_response_hooks(self.config.processor, after_names, params, response, context, events)
            except ScenarioError as error:
                logger.error(f"Run {context.uid}: {error}", exc_info=self.config.debug)
                events.emit("error", error)
                raise
            return context
        return message_step

    async def _publish(self, message: Dict[str, Any], context: ExecutionContext) -> ResponseRecord:
        subject, payload = message["subject"], message["payload"]
        logger.debug(f"Publishing to '{subject}': {payload[:200]}")
        try:
            await context.connection.publish(subject, context.codec.encode(payload))
        except Exception as e:
            raise PublishError(f"Publish to '{subject}' failed: {e}") from e
        # The flush round trip is what confirms the message left this client
        try:
            await context.connection.flush(timeout=self.config.flush_timeout)
        except Exception as e:
            raise PublishError(f"Flush after publishing to '{subject}' failed: {e}") from e
        return empty_response()

    async def _request(self, message: Dict[str, Any], context: ExecutionContext) -> ResponseRecord:
        subject, payload, timeout_ms = message["subject"], message["payload"], message["timeout"]
        logger.debug(f"Requesting '{subject}' (timeout {timeout_ms} ms): {payload[:200]}")
        try:
            reply = await context.connection.request(
                subject,
                context.codec.encode(payload),
                timeout=timeout_ms / 1000.0,
                headers=message["headers"] or None,
            )
        except (NatsTimeoutError, asyncio.TimeoutError) as e:
            raise RequestTimeoutError(f"Request to '{subject}' timed out after {timeout_ms} ms") from e
        except Exception as e:
            raise RequestError(f"Request to '{subject}' failed: {e}") from e

        response = parse_safely(context.codec.decode(reply.data), getattr(reply, "headers", None))
        logger.debug(f"Reply from '{subject}': {repr(response.body)[:200]}")
        return response

    # --- Connection Manager ---

    async def create_connection(self):
        """Opens the broker connection for one run."""
        options: Dict[str, Any] = {
            "servers": self.config.servers,
            "connect_timeout": self.config.connect_timeout,
            "error_cb": self._on_client_error,
            # A run fails on the first unreachable broker instead of retrying
            "allow_reconnect": False,
            "max_reconnect_attempts": 0,
        }
        options.update(self.config.connect_options)
        return await nats.connect(**options)

    async def _on_client_error(self, error: Exception):
        logger.debug(f"NATS client error: {error}")

    async def _connect(self, context: ExecutionContext, events: EventSink) -> ExecutionContext:
        logger.debug(f"Run {context.uid}: connecting to {self.config.server}")
        try:
            connection = await self.create_connection()
        except Exception as e:
            error = BrokerConnectionError(f"Could not connect to {self.config.server}: {e}")
            logger.error(f"Run {context.uid}: {error}", exc_info=self.config.debug)
            events.emit("error", error)
            raise error from e

        context.connection = connection
        context.codec = StringCodec()
        events.emit("started")
        return context

    async def _disconnect(self, context: ExecutionContext):
        if context.connection is None:
            return
        try:
            await context.connection.close()
        except Exception as e:
            logger.warning(f"Run {context.uid}: error while closing connection: {e}")

    # --- Scenario Runner ---

    def compile(self, steps: List[Step], spec: ScenarioSpec, events: EventSink) -> Callable[..., Awaitable[RunResult]]:
        scenario_name = spec.name or "unnamed"

        async def scenario(context: Optional[ExecutionContext] = None) -> RunResult:
            if context is None:
                context = self.new_context()
            logger.debug(f"Run {context.uid}: starting scenario '{scenario_name}' ({len(steps)} steps)")
            try:
                context = await self._connect(context, events)
                for i, step in enumerate(steps):
                    logger.debug(f"Run {context.uid}: step {i + 1}/{len(steps)} ({step.kind})")
                    context = await step(context)
            except ScenarioError as error:
                logger.warning(f"Run {context.uid}: scenario '{scenario_name}' failed: {error}")
                return RunResult(context, error)
            finally:
                await self._disconnect(context)

            logger.debug(f"Run {context.uid}: scenario '{scenario_name}' completed")
            return RunResult(context)

        return scenario

    async def run(self, spec: ScenarioSpec, events: EventSink, context: Optional[ExecutionContext] = None) -> RunResult:
        """Compiles and runs a scenario once."""
        return await self.create_scenario(spec, events)(context)
