"""
Tests for Action

契约校验、middleware 顺序、流式执行、追踪和取消。
"""

import asyncio

import pytest
from pydantic import BaseModel

from tiny_genkit import (
    Action,
    ActionKind,
    CancellationError,
    CancellationSignal,
    GenkitError,
    InMemoryTraceStore,
    ValidationError,
    action_key,
    parse_action_key,
)


class Recipe(BaseModel):
    name: str
    servings: int = 1


def register(registry, fn, **kwargs) -> Action:
    kwargs.setdefault('kind', ActionKind.CUSTOM)
    kwargs.setdefault('name', 'test')
    kind = kwargs.pop('kind')
    name = kwargs.pop('name')
    return registry.register_action(Action(kind, name, fn, **kwargs))


class TestActionKey:

    def test_key_format(self):
        assert action_key(ActionKind.MODEL, "openai/gpt-4o") == "/model/openai/gpt-4o"

    def test_parse_key_keeps_slashes_in_name(self):
        assert parse_action_key("/model/openai/gpt-4o") == (ActionKind.MODEL, "openai/gpt-4o")

    def test_parse_invalid_key(self):
        with pytest.raises(ValueError):
            parse_action_key("/flow")
        with pytest.raises(ValueError):
            parse_action_key("/unknown/thing")


class TestValidation:
    """输入/输出契约"""

    @pytest.mark.asyncio
    async def test_input_is_validated_and_coerced(self, registry):
        action = register(registry, lambda recipe: recipe.servings * 2, input_schema=Recipe, output_schema=int)
        assert await action.run({"name": "beans", "servings": 2}) == 4

    @pytest.mark.asyncio
    async def test_invalid_input_raises_input_error(self, registry):
        calls = []
        action = register(registry, calls.append, input_schema=int)

        with pytest.raises(ValidationError) as exc_info:
            await action.run("not a number")

        assert exc_info.value.source == "input"
        assert exc_info.value.status == "INVALID_ARGUMENT"
        assert exc_info.value.http_status == 400
        assert exc_info.value.details[0]["type"] == "int_parsing"
        assert calls == []

    @pytest.mark.asyncio
    async def test_invalid_output_raises_output_error(self, registry):
        action = register(registry, lambda x: "oops", output_schema=int)

        with pytest.raises(ValidationError) as exc_info:
            await action.run(None)

        assert exc_info.value.source == "output"
        assert exc_info.value.http_status == 500

    def test_describe_publishes_schemas(self, registry):
        action = register(registry, lambda r: r, input_schema=Recipe, output_schema=str, stream_schema=str,
                          description="做菜", metadata={"x": 1})
        desc = action.describe()
        assert desc["key"] == "/custom/test"
        assert desc["description"] == "做菜"
        assert desc["inputSchema"]["properties"]["name"]["type"] == "string"
        assert desc["outputSchema"] == {"type": "string"}
        assert desc["streamSchema"] == {"type": "string"}
        assert desc["metadata"] == {"x": 1}

    @pytest.mark.asyncio
    async def test_unregistered_action_needs_registry(self):
        action = Action(ActionKind.CUSTOM, "loose", lambda x: x)
        with pytest.raises(GenkitError):
            await action.run(1)


class TestHandlers:
    """处理函数签名"""

    @pytest.mark.asyncio
    async def test_sync_handler(self, registry):
        action = register(registry, lambda x: x + 1)
        assert await action.run(1) == 2

    @pytest.mark.asyncio
    async def test_handler_receives_context(self, registry):
        seen = {}

        async def handler(value, ctx):
            seen["registry"] = ctx.registry
            seen["metadata"] = ctx.metadata
            return value

        action = register(registry, handler)
        await action.run("x", metadata={"user": "alice"})

        assert seen["registry"] is registry
        assert seen["metadata"] == {"user": "alice"}

    @pytest.mark.asyncio
    async def test_run_on_other_registry(self, registry):
        child = registry.child()
        seen = []
        action = register(registry, lambda value, ctx: seen.append(ctx.registry))

        await action.run(None, registry=child)

        assert seen == [child]


class TestMiddleware:

    @pytest.mark.asyncio
    async def test_first_middleware_is_outermost(self, registry):
        order = []

        def make(tag):
            async def middleware(value, ctx, next):
                order.append(f"{tag}>")
                result = await next(value)
                order.append(f"<{tag}")
                return result
            return middleware

        async def handler(value):
            order.append("handler")
            return value

        action = register(registry, handler, middleware=[make("a"), make("b")])
        await action.run(1)

        assert order == ["a>", "b>", "handler", "<b", "<a"]

    @pytest.mark.asyncio
    async def test_middleware_can_rewrite_input_and_output(self, registry):
        async def double_input(value, ctx, next):
            return await next(value * 2)

        async def stringify(value, ctx, next):
            return str(await next(value))

        action = register(registry, lambda x: x + 1, middleware=[stringify, double_input])
        assert await action.run(5) == "11"

    @pytest.mark.asyncio
    async def test_middleware_can_short_circuit(self, registry):
        calls = []

        async def cached(value, ctx, next):
            return "cached"

        action = register(registry, calls.append, middleware=[cached])
        assert await action.run(1) == "cached"
        assert calls == []


class TestStreaming:
    """流式执行：增量 + 最终结果"""

    @pytest.mark.asyncio
    async def test_chunks_then_output(self, registry):
        async def handler(count, ctx):
            for i in range(count):
                ctx.send_chunk(i)
                await asyncio.sleep(0)
            return "done"

        action = register(registry, handler)
        result = action.stream(3)

        chunks = [chunk async for chunk in result.stream]
        assert chunks == [0, 1, 2]
        assert await result.output == "done"

    @pytest.mark.asyncio
    async def test_handler_runs_exactly_once(self, registry):
        runs = []

        async def handler(value, ctx):
            runs.append(value)
            ctx.send_chunk("a")
            return "b"

        action = register(registry, handler)
        result = action.stream("x")

        assert [c async for c in result] == ["a"]
        assert await result == "b"
        assert await result.output == "b"
        assert [c async for c in result.stream] == []
        assert runs == ["x"]

    @pytest.mark.asyncio
    async def test_no_chunks(self, registry):
        action = register(registry, lambda x: x)
        result = action.stream(7)
        assert [c async for c in result.stream] == []
        assert await result.output == 7

    @pytest.mark.asyncio
    async def test_error_ends_stream_and_rejects_output(self, registry):
        async def handler(value, ctx):
            ctx.send_chunk(1)
            raise RuntimeError("kaboom")

        action = register(registry, handler)
        result = action.stream(None)

        assert [c async for c in result.stream] == [1]
        with pytest.raises(RuntimeError, match="kaboom"):
            await result.output

    @pytest.mark.asyncio
    async def test_sync_handler_chunks_keep_order(self, registry):
        def handler(count, ctx):
            for i in range(count):
                ctx.send_chunk(i)
            return count

        action = register(registry, handler)
        result = action.stream(50)

        assert [c async for c in result.stream] == list(range(50))
        assert await result.output == 50

    @pytest.mark.asyncio
    async def test_independent_receivers(self, registry):
        async def handler(value, ctx):
            for c in "abc":
                ctx.send_chunk(c)
            return None

        action = register(registry, handler)
        result = action.stream(None)
        other = result.subscribe()

        first = [c async for c in result.stream]
        second = [c async for c in other]
        assert first == second == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_chunk_contract_is_validated(self, registry):
        async def handler(value, ctx):
            ctx.send_chunk("not an int")
            return None

        action = register(registry, handler, stream_schema=int)
        result = action.stream(None)

        assert [c async for c in result.stream] == []
        with pytest.raises(ValidationError) as exc_info:
            await result.output
        assert exc_info.value.source == "output"

    @pytest.mark.asyncio
    async def test_sync_handler_chunk_contract_is_validated(self, registry):
        sent_after = []

        def handler(value, ctx):
            ctx.send_chunk(1)
            ctx.send_chunk("not-an-int")
            sent_after.append(True)
            return "ok"

        action = register(registry, handler, stream_schema=int)
        result = action.stream(None)

        assert [c async for c in result.stream] == [1]
        with pytest.raises(ValidationError) as exc_info:
            await result.output
        assert exc_info.value.source == "output"
        assert sent_after == []

    @pytest.mark.asyncio
    async def test_run_ignores_chunks_when_not_streaming(self, registry):
        async def handler(value, ctx):
            assert not ctx.is_streaming
            ctx.send_chunk("ignored")
            return "ok"

        action = register(registry, handler)
        assert await action.run(None) == "ok"


class TestTracing:

    @pytest.mark.asyncio
    async def test_nested_calls_share_trace(self, registry):
        store = InMemoryTraceStore()
        registry.trace_store = store
        inner = register(registry, lambda x: x * 2, name="inner")

        async def outer_fn(value, ctx):
            return await inner.run(value, context=ctx)

        outer = register(registry, outer_fn, name="outer")
        telemetry = {}
        assert await outer.run(3, telemetry=telemetry) == 6

        trace = await store.load(telemetry["traceId"])
        assert trace is not None
        spans = {span.display_name: span for span in trace.spans.values()}
        assert set(spans) == {"outer", "inner"}
        assert spans["inner"].parent_span_id == spans["outer"].span_id
        assert spans["outer"].attributes["genkit:state"] == "success"
        assert spans["inner"].attributes["genkit:output"] == "6"
        assert trace.root_span is spans["outer"]

    @pytest.mark.asyncio
    async def test_failed_span_records_error(self, registry):
        store = InMemoryTraceStore()
        registry.trace_store = store

        def fail(value):
            raise ValueError("bad")

        action = register(registry, fail)
        telemetry = {}
        with pytest.raises(ValueError):
            await action.run(None, telemetry=telemetry)

        trace = await store.load(telemetry["traceId"])
        span = trace.root_span
        assert span.attributes["genkit:state"] == "error"
        assert span.error == "bad"

    def test_trace_round_trip_through_dict(self):
        from tiny_genkit.tracing import SpanData, TraceData

        trace = TraceData(display_name="t")
        trace.add_span(SpanData(span_id="s1", trace_id=trace.trace_id, display_name="t"))
        copy = TraceData.from_dict(trace.to_dict())
        assert copy.to_dict() == trace.to_dict()


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_signal_interrupts_handler(self, registry):
        started = asyncio.Event()

        async def slow(value):
            started.set()
            await asyncio.sleep(10)

        action = register(registry, slow)
        signal = CancellationSignal()
        task = asyncio.ensure_future(action.run(None, signal=signal))
        await started.wait()
        signal.cancel("user")

        with pytest.raises(CancellationError) as exc_info:
            await task
        assert exc_info.value.status == "CANCELLED"

    @pytest.mark.asyncio
    async def test_timeout(self, registry):
        async def slow(value):
            await asyncio.sleep(10)

        action = register(registry, slow)
        with pytest.raises(CancellationError, match="timeout"):
            await action.run(None, timeout=0.05)

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, registry):
        calls = []
        action = register(registry, calls.append)
        signal = CancellationSignal()
        signal.cancel()

        with pytest.raises(CancellationError):
            await action.run(None, signal=signal)
        assert calls == []

    @pytest.mark.asyncio
    async def test_parent_cancellation_reaches_nested_call(self, registry):
        inner_started = asyncio.Event()

        async def inner_fn(value):
            inner_started.set()
            await asyncio.sleep(10)

        inner = register(registry, inner_fn, name="inner")

        async def outer_fn(value, ctx):
            return await inner.run(value, context=ctx)

        outer = register(registry, outer_fn, name="outer")
        signal = CancellationSignal()
        task = asyncio.ensure_future(outer.run(None, signal=signal))
        await inner_started.wait()
        signal.cancel()

        with pytest.raises(CancellationError):
            await task

    def test_child_signal_does_not_cancel_parent(self):
        parent = CancellationSignal()
        child = parent.child()
        child.cancel()
        assert child.cancelled
        assert not parent.cancelled

        other = parent.child()
        parent.cancel("shutdown")
        assert other.cancelled
        assert other.reason == "shutdown"

    def test_released_child_is_detached(self):
        parent = CancellationSignal()
        child = parent.child()
        child.release()
        parent.cancel()
        assert not child.cancelled
