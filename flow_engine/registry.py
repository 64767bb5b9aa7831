"""
Function Registry — named handlers invoked by `function` steps.

Handlers are inspected once, at registration, into a HandlerSpec:
  - shape: "plain" handlers take only step arguments; "engine" handlers
    declare the engine as their first parameter and get it injected
  - one coercer per positional parameter, picked from its annotation
    (str, int, float, bool, dict, list, Optional[...], pydantic models,
    or untyped/Any which passes values through)
  - whether the handler reports failures as a (result, error) pair

Invocation maps params["arg0"], params["arg1"], ... onto the positional
parameters. A whole-string `${key}` argument is resolved from the state
bag before coercion. Sync handlers run in a worker thread; coroutine
handlers are awaited on the loop.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import typing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional

import structlog
from pydantic import BaseModel, ValidationError

from utils.errors import DispatchError, FlowError, HandlerError, TemplateError
from utils.templating import render, single_token, stringify

logger = structlog.get_logger()

_MISSING = object()
_TRUE_WORDS = {"true", "1", "yes", "y", "on"}
_FALSE_WORDS = {"false", "0", "no", "n", "off", ""}


class HandlerShape(str, Enum):
    PLAIN = "plain"
    ENGINE = "engine"


# ══════════════════════════════════════════════════════════════
#  COERCERS
# ══════════════════════════════════════════════════════════════

def _to_str(v: Any) -> str:
    return stringify(v)


def _to_int(v: Any) -> int:
    if isinstance(v, bool):
        raise ValueError("bool is not an int")
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        if not v.is_integer():
            raise ValueError(f"{v} is not integral")
        return int(v)
    if isinstance(v, str):
        return int(v.strip())
    raise ValueError(f"cannot convert {type(v).__name__} to int")


def _to_float(v: Any) -> float:
    if isinstance(v, bool):
        raise ValueError("bool is not a float")
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        return float(v.strip())
    raise ValueError(f"cannot convert {type(v).__name__} to float")


def _to_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, int) and v in (0, 1):
        return bool(v)
    if isinstance(v, str):
        word = v.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ValueError(f"cannot convert {v!r} to bool")


def _to_dict(v: Any) -> dict:
    if isinstance(v, Mapping):
        return dict(v)
    if isinstance(v, str):
        parsed = json.loads(v)
        if isinstance(parsed, dict):
            return parsed
    raise ValueError(f"cannot convert {type(v).__name__} to dict")


def _to_list(v: Any) -> list:
    if isinstance(v, (list, tuple)):
        return list(v)
    if isinstance(v, str):
        parsed = json.loads(v)
        if isinstance(parsed, list):
            return parsed
    raise ValueError(f"cannot convert {type(v).__name__} to list")


def _identity(v: Any) -> Any:
    return v


_SIMPLE_COERCERS: dict[Any, Callable[[Any], Any]] = {
    str: _to_str,
    int: _to_int,
    float: _to_float,
    bool: _to_bool,
    dict: _to_dict,
    list: _to_list,
}


def coercer_for(annotation: Any) -> Callable[[Any], Any]:
    """Build the converter for one declared parameter type."""
    if annotation in (inspect.Parameter.empty, Any, object) or isinstance(annotation, str):
        return _identity
    if annotation in _SIMPLE_COERCERS:
        return _SIMPLE_COERCERS[annotation]

    origin = typing.get_origin(annotation)
    args = typing.get_args(annotation)
    if origin is typing.Union or (origin is not None and type(None) in args):
        inner = [a for a in args if a is not type(None)]
        inner_coerce = coercer_for(inner[0]) if len(inner) == 1 else _identity
        return lambda v: None if v is None else inner_coerce(v)
    if origin in (dict, Mapping):
        return _to_dict
    if origin in (list, tuple):
        return _to_list

    if inspect.isclass(annotation) and issubclass(annotation, BaseModel):
        def _to_model(v: Any):
            if isinstance(v, annotation):
                return v
            return annotation.model_validate(_to_dict(v) if isinstance(v, str) else v)
        return _to_model

    if inspect.isclass(annotation):
        def _check_instance(v: Any):
            if isinstance(v, annotation):
                return v
            raise ValueError(f"expected {annotation.__name__}, got {type(v).__name__}")
        return _check_instance

    return _identity


# ══════════════════════════════════════════════════════════════
#  HANDLER SPECS
# ══════════════════════════════════════════════════════════════

@dataclass
class ParamSpec:
    name: str
    type_name: str
    coerce: Callable[[Any], Any]
    default: Any = _MISSING


@dataclass
class HandlerSpec:
    name: str
    func: Callable
    shape: HandlerShape
    params: list[ParamSpec] = field(default_factory=list)
    varargs: bool = False
    is_async: bool = False
    returns_pair: bool = False

    @property
    def arity(self) -> int:
        return len(self.params)


def _type_name(annotation: Any) -> str:
    if annotation is inspect.Parameter.empty:
        return "any"
    if isinstance(annotation, str):
        return annotation
    return getattr(annotation, "__name__", None) or str(annotation)


_BUILTIN_NAMES: dict[str, Any] = {
    "str": str, "int": int, "float": float, "bool": bool,
    "dict": dict, "list": list, "Any": Any,
}


def _annotation(hints: dict[str, Any], param: inspect.Parameter) -> Any:
    """Resolved annotation, mapping plain builtin names when hints are unavailable."""
    if param.name in hints:
        return hints[param.name]
    annotation = param.annotation
    if isinstance(annotation, str):
        return _BUILTIN_NAMES.get(annotation, annotation)
    return annotation


def _returns_pair(annotation: Any) -> bool:
    if annotation is inspect.Signature.empty or isinstance(annotation, str):
        return False
    if typing.get_origin(annotation) is tuple:
        return len(typing.get_args(annotation)) == 2
    return False


class FunctionRegistry:
    """
    Name → HandlerSpec map.

    `engine_types` lists the classes whose first-parameter annotation marks
    a handler as engine-shaped.
    """

    def __init__(self, engine_types: tuple[type, ...] = ()):
        self._specs: dict[str, HandlerSpec] = {}
        self._engine_types = engine_types
        self._engine_names = {t.__name__ for t in engine_types}

    # ── Registration ──────────────────────────────────────

    def register(self, name: str, handler: Callable) -> HandlerSpec:
        if not callable(handler):
            raise DispatchError(f"handler for {name} is not callable")
        spec = self._build_spec(name, handler)
        self._specs[name] = spec
        logger.debug("function_registered", name=name, shape=spec.shape.value,
                     arity=spec.arity, is_async=spec.is_async)
        return spec

    def register_many(self, names: list[str], handler: Callable) -> None:
        for name in names:
            self.register(name, handler)

    def unregister(self, name: str) -> None:
        self._specs.pop(name, None)

    def get(self, name: str) -> Optional[HandlerSpec]:
        return self._specs.get(name)

    def has(self, name: str) -> bool:
        return name in self._specs

    def names(self) -> list[str]:
        return sorted(self._specs)

    def _is_engine_annotation(self, annotation: Any) -> bool:
        if isinstance(annotation, str):
            return annotation.rsplit(".", 1)[-1] in self._engine_names
        if not self._engine_types or not inspect.isclass(annotation):
            return False
        return issubclass(annotation, self._engine_types)

    def _build_spec(self, name: str, handler: Callable) -> HandlerSpec:
        try:
            sig = inspect.signature(handler)
        except (TypeError, ValueError) as e:
            raise DispatchError(f"cannot inspect handler for {name}: {e}") from e
        try:
            hints = typing.get_type_hints(handler)
        except (NameError, TypeError, AttributeError):
            # Unresolvable forward references fall back to the raw annotations.
            hints = {}

        params = [
            p for p in sig.parameters.values()
            if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
        ]
        varargs = any(p.kind == p.VAR_POSITIONAL for p in sig.parameters.values())

        shape = HandlerShape.PLAIN
        if params:
            first = _annotation(hints, params[0])
            if self._is_engine_annotation(first):
                shape = HandlerShape.ENGINE
                params = params[1:]

        specs = []
        for p in params:
            annotation = _annotation(hints, p)
            specs.append(ParamSpec(
                name=p.name,
                type_name=_type_name(annotation),
                coerce=coercer_for(annotation),
                default=p.default if p.default is not inspect.Parameter.empty else _MISSING,
            ))

        return HandlerSpec(
            name=name,
            func=handler,
            shape=shape,
            params=specs,
            varargs=varargs,
            is_async=(inspect.iscoroutinefunction(handler)
                      or inspect.iscoroutinefunction(getattr(handler, "__call__", None))),
            returns_pair=_returns_pair(hints.get("return", sig.return_annotation)),
        )

    # ── Invocation ────────────────────────────────────────

    def build_args(self, spec: HandlerSpec, params: Mapping[str, Any],
                   state: Mapping[str, Any]) -> list[Any]:
        """Positional arguments for `spec` from argN params."""
        supplied = sorted(
            int(k[3:]) for k in params if k.startswith("arg") and k[3:].isdigit()
        )
        if supplied and not spec.varargs and supplied[-1] >= spec.arity:
            raise DispatchError(
                f"function {spec.name} takes {spec.arity} argument(s), "
                f"got arg{supplied[-1]}"
            )

        count = spec.arity
        if spec.varargs and supplied:
            count = max(count, supplied[-1] + 1)

        args: list[Any] = []
        for i in range(count):
            key = f"arg{i}"
            pspec = spec.params[i] if i < spec.arity else None
            if key not in params:
                if pspec is not None and pspec.default is not _MISSING:
                    args.append(pspec.default)
                    continue
                raise DispatchError(f"function {spec.name}: missing argument {key}")
            raw = self._resolve(params[key], state)
            if pspec is None:
                args.append(raw)
                continue
            try:
                args.append(pspec.coerce(raw))
            except (ValueError, TypeError, ValidationError) as e:
                raise DispatchError(
                    f"function {spec.name}: cannot convert {key}={raw!r} "
                    f"to {pspec.type_name}: {e}"
                ) from e
        return args

    @staticmethod
    def _resolve(value: Any, state: Mapping[str, Any]) -> Any:
        if isinstance(value, str) and "${" in value:
            name = single_token(value)
            if name is not None:
                try:
                    return state[name]
                except KeyError:
                    raise TemplateError(f"variable {name} not found in state") from None
            return render(value, state)
        return value

    async def invoke(self, name: str, params: Mapping[str, Any],
                     state: Mapping[str, Any], engine: Any = None) -> Any:
        """Call a registered handler with arguments built from `params`."""
        spec = self._specs.get(name)
        if spec is None:
            raise DispatchError(f"function {name} not registered")
        args = self.build_args(spec, params, state)
        if spec.shape == HandlerShape.ENGINE:
            args.insert(0, engine)
        return await self._call(spec, args)

    async def submit(self, name: str, data: Mapping[str, Any]) -> Any:
        """Call a handler with one mapping argument (form submit hooks)."""
        spec = self._specs.get(name)
        if spec is None:
            raise DispatchError(f"function {name} not registered")
        return await self._call(spec, [dict(data)])

    async def _call(self, spec: HandlerSpec, args: list[Any]) -> Any:
        try:
            if spec.is_async:
                result = await spec.func(*args)
            else:
                result = await asyncio.to_thread(spec.func, *args)
                if inspect.isawaitable(result):
                    result = await result
        except FlowError:
            raise
        except Exception as e:
            raise HandlerError(spec.name, e) from e

        if spec.returns_pair and isinstance(result, tuple) and len(result) == 2:
            value, error = result
            if error:
                raise HandlerError(spec.name, error, result=value)
            return value
        return result
