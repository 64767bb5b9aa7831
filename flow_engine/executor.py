"""
Flow Engine — interprets JSON-defined workflows of typed steps.

Step types:
  function     invoke a registered handler with coerced argN params
  api_call     templated HTTP request, JSON response stored with
               _status_code / _headers, fails on status >= 400
  conditional  evaluate `condition`, continue at true_step / false_step
  delay        sleep for `duration` ("500ms", "5s", "1m")
  parallel     run the named `steps` concurrently, aggregate failures
  wait_input   stop and hand control back until resume() is called

Routing:
  execute() walks the step list in order. The first jump (next_on_success,
  next_on_error or a conditional branch) switches to chain mode: from then
  on a step without a successor ends the run. Traversal is iterative and
  capped at max_steps so routing cycles fail with a ConfigError instead of
  running forever.

Every executed step writes last_executed_step / last_execution_time into
the state bag; every failure writes last_error {step, error, kind, time}.
"""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union

import httpx
import structlog
import yaml
from pydantic import ValidationError

from config.settings import get_settings
from flow_engine.functions import BUILTINS
from flow_engine.http import api_call
from flow_engine.registry import FunctionRegistry
from flow_engine.state import ParallelGroup, StateBag, enter_child_scope
from models.schemas import FlowStep, StepType
from utils.conditions import evaluate_condition
from utils.duration import parse_duration
from utils.errors import (
    ConfigError, DeadlineExceeded, HandlerError, ParallelExecutionError, TransportError,
)
from utils.templating import render_value

logger = structlog.get_logger()

_NO_INPUT = object()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FlowEngine:
    """
    Executes one workflow against one state bag.

    Engines are cheap: create one per execution. The HTTP client and the
    function handlers may be shared between engines.
    """

    def __init__(
        self,
        state: Optional[Mapping[str, Any]] = None,
        registry: Optional[FunctionRegistry] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        http_timeout: Optional[float] = None,
        max_steps: Optional[int] = None,
    ):
        cfg = get_settings().engine
        self.state = StateBag(state)
        self.steps: list[FlowStep] = []
        self._index: dict[str, FlowStep] = {}
        self._positions: dict[str, int] = {}
        self.registry = registry or FunctionRegistry(engine_types=(FlowEngine,))
        self._http = http_client
        self.http_timeout = http_timeout if http_timeout is not None else cfg.http_timeout
        self.max_steps = max_steps if max_steps is not None else cfg.max_steps
        self.waiting_step: Optional[str] = None
        self._waiting_linear = False
        for name, fn in BUILTINS.items():
            if not self.registry.has(name):
                self.registry.register(name, fn)

    # ── Registration & loading ────────────────────────────────

    def register_function(self, name: str, fn: Callable) -> None:
        self.registry.register(name, fn)

    def register_functions(self, names: list[str], fn: Callable) -> None:
        self.registry.register_many(names, fn)

    def load_flow(self, flow: Union[str, bytes, list, dict]) -> list[FlowStep]:
        """Load steps from JSON text, a list of step dicts, or {"steps": [...]}."""
        if isinstance(flow, (str, bytes)):
            try:
                data = json.loads(flow)
            except ValueError as e:
                raise ConfigError(f"malformed flow JSON: {e}") from e
        else:
            data = flow
        if isinstance(data, dict) and "steps" in data:
            data = data["steps"]
        if not isinstance(data, list):
            raise ConfigError("flow must be a list of steps")

        steps: list[FlowStep] = []
        for i, raw in enumerate(data):
            if isinstance(raw, FlowStep):
                steps.append(raw)
                continue
            try:
                steps.append(FlowStep.model_validate(raw))
            except ValidationError as e:
                raise ConfigError(f"invalid step #{i}: {e}") from e

        self._validate(steps)
        self.steps = steps
        self._index = {s.name: s for s in steps}
        self._positions = {s.name: i for i, s in enumerate(steps)}
        self.waiting_step = None
        logger.info("flow_loaded", steps=len(steps))
        return steps

    def load_flow_from_file(self, path: Union[str, Path]) -> list[FlowStep]:
        path = Path(path)
        try:
            text = path.read_text()
        except OSError as e:
            raise ConfigError(f"cannot read flow file {path}: {e}") from e
        if path.suffix in (".yaml", ".yml"):
            try:
                return self.load_flow(yaml.safe_load(text) or [])
            except yaml.YAMLError as e:
                raise ConfigError(f"malformed flow YAML in {path}: {e}") from e
        return self.load_flow(text)

    @staticmethod
    def _validate(steps: list[FlowStep]) -> None:
        names: set[str] = set()
        for step in steps:
            if step.name in names:
                raise ConfigError(f"duplicate step name: {step.name}")
            names.add(step.name)

        def check(ref: Any, owner: str, what: str):
            if ref and ref not in names:
                raise ConfigError(f"step {owner}: {what} references unknown step {ref}")

        for step in steps:
            check(step.next_on_success, step.name, "next_on_success")
            check(step.next_on_error, step.name, "next_on_error")
            if step.type == StepType.FUNCTION and not step.function:
                raise ConfigError(f"step {step.name}: missing function name")
            if step.type == StepType.CONDITIONAL:
                check(step.params.get("true_step"), step.name, "true_step")
                check(step.params.get("false_step"), step.name, "false_step")
            if step.type == StepType.PARALLEL:
                children = step.params.get("steps")
                if children is not None and not isinstance(children, list):
                    raise ConfigError(f"step {step.name}: steps should be a list")
                for child in children or []:
                    check(child, step.name, "parallel child")

    def find_step(self, name: str) -> Optional[FlowStep]:
        return self._index.get(name)

    def _require(self, name: str) -> FlowStep:
        step = self._index.get(name)
        if step is None:
            raise ConfigError(f"target step {name} not found")
        return step

    @property
    def is_waiting(self) -> bool:
        return self.waiting_step is not None

    # ── Public execution ──────────────────────────────────────

    async def execute(self, timeout: Optional[float] = None) -> StateBag:
        """Run from the first step. An empty flow succeeds with no effect."""
        self.waiting_step = None
        if not self.steps:
            return self.state
        await self._with_deadline(self._run(self.steps[0], linear=True), timeout)
        return self.state

    async def execute_single(self, step: Union[FlowStep, str], timeout: Optional[float] = None) -> StateBag:
        """Run one step, then follow its next_on_success chain."""
        if isinstance(step, str):
            step = self._require(step)
        await self._with_deadline(self._run(step, linear=False), timeout)
        return self.state

    async def resume(self, value: Any = _NO_INPUT, timeout: Optional[float] = None) -> StateBag:
        """
        Continue after a wait_input step.

        The value is stored under the waiting step's `_store_result` key
        (or "input") before execution continues at its successor.
        """
        if self.waiting_step is None:
            raise ConfigError("engine is not waiting for input")
        step = self._require(self.waiting_step)
        linear = self._waiting_linear
        self.waiting_step = None
        if value is not _NO_INPUT:
            self.state[step.params.get("_store_result") or "input"] = value

        if step.next_on_success:
            await self._with_deadline(self._run(self._require(step.next_on_success), linear=False), timeout)
        elif linear:
            nxt = self._next_in_list(step)
            if nxt is not None:
                await self._with_deadline(self._run(nxt, linear=True), timeout)
        return self.state

    async def _with_deadline(self, coro, timeout: Optional[float]):
        if timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout)
        except asyncio.TimeoutError as e:
            raise DeadlineExceeded(f"flow execution exceeded {timeout}s") from e

    # ══════════════════════════════════════════════════════════
    #  TRAVERSAL
    # ══════════════════════════════════════════════════════════

    def _next_in_list(self, step: FlowStep) -> Optional[FlowStep]:
        pos = self._positions.get(step.name, len(self.steps)) + 1
        return self.steps[pos] if pos < len(self.steps) else None

    async def _run(self, start: FlowStep, linear: bool, allow_wait: bool = True) -> None:
        current: Optional[FlowStep] = start
        executed = 0

        while current is not None:
            executed += 1
            if executed > self.max_steps:
                raise ConfigError(
                    f"flow exceeded {self.max_steps} steps at {current.name}; "
                    f"check next_on_success / next_on_error for cycles"
                )

            try:
                branch = await self._execute_step(current)
            except Exception as e:
                self._record_error(current, e)
                if current.next_on_error:
                    logger.info("flow_error_routed", step=current.name, next=current.next_on_error)
                    current = self._require(current.next_on_error)
                    linear = False
                    continue
                raise

            self._record_success(current)

            if current.type == StepType.WAIT_INPUT:
                if allow_wait:
                    self.waiting_step = current.name
                    self._waiting_linear = linear
                    logger.info("flow_waiting_input", step=current.name)
                return

            if branch:
                current = self._require(branch)
                linear = False
            elif current.next_on_success:
                current = self._require(current.next_on_success)
                linear = False
            elif linear:
                current = self._next_in_list(current)
            else:
                current = None

    def _record_success(self, step: FlowStep) -> None:
        self.state["last_executed_step"] = step.name
        self.state["last_execution_time"] = _now()
        logger.debug("flow_step_executed", step=step.name, type=step.type.value)

    def _record_error(self, step: FlowStep, error: Exception) -> None:
        now = _now()
        self.state["last_executed_step"] = step.name
        self.state["last_execution_time"] = now
        self.state["last_error"] = {
            "step": step.name,
            "error": str(error),
            "kind": getattr(error, "kind", "error"),
            "time": now,
        }
        logger.error("step_execution_error",
                     step=step.name, step_type=step.type.value, error=str(error))

    # ══════════════════════════════════════════════════════════
    #  STEP EXECUTORS
    # ══════════════════════════════════════════════════════════

    async def _execute_step(self, step: FlowStep) -> Optional[str]:
        """Dispatch to the step executor. Returns a branch target, if any."""
        if step.type == StepType.FUNCTION:
            await self._exec_function(step)
        elif step.type == StepType.API_CALL:
            await self._exec_api_call(step)
        elif step.type == StepType.CONDITIONAL:
            return self._exec_conditional(step)
        elif step.type == StepType.DELAY:
            await self._exec_delay(step)
        elif step.type == StepType.PARALLEL:
            await self._exec_parallel(step)
        elif step.type == StepType.WAIT_INPUT:
            pass
        else:
            raise ConfigError(f"unknown step type: {step.type}")
        return None

    def _store(self, step: FlowStep, result: Any) -> None:
        key = step.params.get("_store_result")
        if key:
            self.state[key] = result

    # ── FUNCTION ──────────────────────────────────────

    async def _exec_function(self, step: FlowStep) -> None:
        try:
            result = await self.registry.invoke(step.function, step.params, self.state, engine=self)
        except HandlerError as e:
            if e.result is not None:
                self._store(step, e.result)
            raise
        self._store(step, result)

    # ── API CALL ──────────────────────────────────────

    async def _exec_api_call(self, step: FlowStep) -> None:
        try:
            result = await api_call(step.params, self.state, client=self._http, timeout=self.http_timeout)
        except TransportError as e:
            if e.result is not None:
                self._store(step, e.result)
            raise
        self._store(step, result)

    # ── CONDITIONAL ───────────────────────────────────

    def _exec_conditional(self, step: FlowStep) -> str:
        condition = step.params.get("condition")
        if condition is None:
            raise ConfigError(f"step {step.name}: missing condition parameter")
        if not isinstance(condition, str):
            raise ConfigError(f"step {step.name}: condition should be a string")

        outcome = evaluate_condition(condition, self.state)
        key = "true_step" if outcome else "false_step"
        target = step.params.get(key)
        if not isinstance(target, str) or not target:
            raise ConfigError(f"step {step.name}: {key} not specified or invalid")
        logger.debug("flow_condition_evaluated", step=step.name, result=outcome, next=target)
        return target

    # ── DELAY ─────────────────────────────────────────

    async def _exec_delay(self, step: FlowStep) -> None:
        if step.params.get("duration") is None:
            raise ConfigError(f"step {step.name}: missing duration parameter")
        seconds = parse_duration(render_value(step.params["duration"], self.state))
        await asyncio.sleep(seconds)

    # ── PARALLEL ──────────────────────────────────────

    async def _exec_parallel(self, step: FlowStep) -> None:
        names = step.params.get("steps")
        if names is None:
            raise ConfigError(f"step {step.name}: missing steps parameter")
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            raise ConfigError(f"step {step.name}: steps should be a list of step names")
        children = [self._require(n) for n in names]
        if not children:
            return

        group = ParallelGroup(step.name)

        async def run_child(child: FlowStep) -> None:
            enter_child_scope(group, child.name)
            await self._run(child, linear=False, allow_wait=False)

        results = await asyncio.gather(*(run_child(c) for c in children), return_exceptions=True)

        errors: dict[str, Exception] = {}
        for child, outcome in zip(children, results):
            if isinstance(outcome, Exception):
                errors[child.name] = outcome
            elif isinstance(outcome, BaseException):
                raise outcome
        if errors:
            raise ParallelExecutionError(step.name, errors)
