"""Tests for the function registry: argument coercion, handler shapes, invocation."""
from typing import Any, Optional

import pytest
from pydantic import BaseModel

from flow_engine.executor import FlowEngine
from flow_engine.registry import FunctionRegistry, HandlerShape, coercer_for
from utils.errors import DispatchError, HandlerError, TemplateError


class Order(BaseModel):
    sku: str
    qty: int


@pytest.fixture
def registry():
    return FunctionRegistry(engine_types=(FlowEngine,))


class TestCoercers:
    def test_int(self):
        coerce = coercer_for(int)
        assert coerce("42") == 42
        assert coerce(7.0) == 7
        with pytest.raises(ValueError):
            coerce(7.5)
        with pytest.raises(ValueError):
            coerce(True)

    def test_bool_words(self):
        coerce = coercer_for(bool)
        assert coerce("yes") is True
        assert coerce("off") is False
        assert coerce(1) is True
        with pytest.raises(ValueError):
            coerce("maybe")

    def test_optional(self):
        coerce = coercer_for(Optional[int])
        assert coerce(None) is None
        assert coerce("3") == 3

    def test_json_containers(self):
        assert coercer_for(dict)('{"a": 1}') == {"a": 1}
        assert coercer_for(list[int])("[1, 2]") == [1, 2]

    def test_pydantic_model(self):
        order = coercer_for(Order)({"sku": "A1", "qty": "2"})
        assert order == Order(sku="A1", qty=2)

    def test_untyped_passes_through(self):
        marker = object()
        assert coercer_for(Any)(marker) is marker


class TestRegistration:
    def test_plain_shape(self, registry):
        spec = registry.register("add", lambda a, b: a + b)
        assert spec.shape == HandlerShape.PLAIN
        assert spec.arity == 2

    def test_engine_shape_detected_from_annotation(self, registry):
        def handler(engine: FlowEngine, value: str) -> None:
            engine.state["value"] = value

        spec = registry.register("set_value", handler)
        assert spec.shape == HandlerShape.ENGINE
        assert spec.arity == 1

    def test_not_callable(self, registry):
        with pytest.raises(DispatchError):
            registry.register("bad", "not a function")

    def test_register_many_and_names(self, registry):
        registry.register_many(["a", "b"], lambda: None)
        assert registry.names() == ["a", "b"]
        registry.unregister("a")
        assert not registry.has("a")


class TestInvoke:
    @pytest.mark.asyncio
    async def test_coerces_positional_args(self, registry):
        def add(a: int, b: int) -> int:
            return a + b

        registry.register("add", add)
        assert await registry.invoke("add", {"arg0": "2", "arg1": 3}, {}) == 5

    @pytest.mark.asyncio
    async def test_state_references(self, registry):
        async def describe(qty: int, note: str) -> str:
            return f"{qty}:{note}"

        registry.register("describe", describe)
        state = {"qty": 12, "who": "ana"}
        result = await registry.invoke("describe", {"arg0": "${qty}", "arg1": "for ${who}"}, state)
        assert result == "12:for ana"

    @pytest.mark.asyncio
    async def test_whole_token_keeps_raw_value(self, registry):
        received = []
        registry.register("grab", lambda payload: received.append(payload))
        await registry.invoke("grab", {"arg0": "${obj}"}, {"obj": {"k": [1]}})
        assert received == [{"k": [1]}]

    @pytest.mark.asyncio
    async def test_unknown_state_reference(self, registry):
        registry.register("echo", lambda v: v)
        with pytest.raises(TemplateError):
            await registry.invoke("echo", {"arg0": "${nope}"}, {})

    @pytest.mark.asyncio
    async def test_unknown_function(self, registry):
        with pytest.raises(DispatchError, match="not registered"):
            await registry.invoke("missing", {}, {})

    @pytest.mark.asyncio
    async def test_missing_argument(self, registry):
        registry.register("add", lambda a, b: a + b)
        with pytest.raises(DispatchError, match="arg1"):
            await registry.invoke("add", {"arg0": 1}, {})

    @pytest.mark.asyncio
    async def test_too_many_arguments(self, registry):
        registry.register("one", lambda a: a)
        with pytest.raises(DispatchError, match="takes 1"):
            await registry.invoke("one", {"arg0": 1, "arg1": 2}, {})

    @pytest.mark.asyncio
    async def test_default_argument(self, registry):
        def greet(name: str, greeting: str = "hi") -> str:
            return f"{greeting} {name}"

        registry.register("greet", greet)
        assert await registry.invoke("greet", {"arg0": "bo"}, {}) == "hi bo"

    @pytest.mark.asyncio
    async def test_varargs(self, registry):
        def total(*values):
            return sum(int(v) for v in values)

        registry.register("total", total)
        assert await registry.invoke("total", {"arg0": 1, "arg1": "2", "arg2": 3}, {}) == 6

    @pytest.mark.asyncio
    async def test_non_coercible_argument(self, registry):
        def square(n: int) -> int:
            return n * n

        registry.register("square", square)
        with pytest.raises(DispatchError, match="cannot convert arg0"):
            await registry.invoke("square", {"arg0": "abc"}, {})

    @pytest.mark.asyncio
    async def test_engine_injected(self, registry):
        engine = FlowEngine(registry=registry)

        def handler(engine: FlowEngine, value: str) -> None:
            engine.state["value"] = value

        registry.register("set_value", handler)
        await registry.invoke("set_value", {"arg0": "x"}, engine.state, engine=engine)
        assert engine.state["value"] == "x"

    @pytest.mark.asyncio
    async def test_result_error_pair(self, registry):
        def check(value: str) -> tuple[str, str]:
            if value == "bad":
                return "", "rejected"
            return value.upper(), ""

        registry.register("check", check)
        assert await registry.invoke("check", {"arg0": "ok"}, {}) == "OK"
        with pytest.raises(HandlerError, match="rejected") as exc_info:
            await registry.invoke("check", {"arg0": "bad"}, {})
        assert exc_info.value.result == ""

    @pytest.mark.asyncio
    async def test_exception_wrapped(self, registry):
        def explode():
            raise RuntimeError("boom")

        registry.register("explode", explode)
        with pytest.raises(HandlerError) as exc_info:
            await registry.invoke("explode", {}, {})
        assert exc_info.value.function == "explode"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.kind == "dispatch_error"

    @pytest.mark.asyncio
    async def test_submit(self, registry):
        seen = []

        async def save(data: dict) -> None:
            seen.append(data)

        registry.register("order_form", save)
        await registry.submit("order_form", {"email": "a@b.co"})
        assert seen == [{"email": "a@b.co"}]
