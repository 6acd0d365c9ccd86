"""
Tests for Flow

单次调用、流式调用、FlowState 记录、嵌套调用。
"""

import pytest
from pydantic import BaseModel

from tiny_genkit import (
    DuplicateNameError,
    Flow,
    InMemoryFlowStateStore,
    InMemoryTraceStore,
    ValidationError,
    define_flow,
    define_streaming_flow,
)


class Order(BaseModel):
    dish: str
    quantity: int = 1


class TestFlowRun:

    @pytest.mark.asyncio
    async def test_run_and_call(self, registry):
        greet = define_flow(registry, "greet", lambda name: f"你好, {name}")

        assert isinstance(greet, Flow)
        assert greet.key == "/flow/greet"
        assert await greet.run("世界") == "你好, 世界"
        assert await greet("Genkit") == "你好, Genkit"

    @pytest.mark.asyncio
    async def test_typed_contract(self, registry):
        async def place(order: Order) -> str:
            return f"{order.quantity} x {order.dish}"

        flow = define_flow(registry, "place", place, input_schema=Order, output_schema=str)

        assert await flow.run({"dish": "beans"}) == "1 x beans"
        with pytest.raises(ValidationError):
            await flow.run({"quantity": 2})

    def test_description_from_docstring(self, registry):
        def summarize(text):
            """总结一段文字

            更多说明。
            """
            return text

        flow = define_flow(registry, "summarize", summarize)
        assert flow.description == "总结一段文字"

    def test_duplicate_flow_name(self, registry):
        define_flow(registry, "dup", lambda x: x)
        with pytest.raises(DuplicateNameError):
            define_flow(registry, "dup", lambda x: x)


class TestFlowStreaming:

    @pytest.mark.asyncio
    async def test_stream_chunks_and_output(self, registry):
        async def count(limit: int, ctx) -> str:
            for i in range(limit):
                ctx.send_chunk(i)
            return "counted"

        flow = define_streaming_flow(registry, "count", count, stream_schema=int)
        assert flow.is_streaming

        result = flow.stream(3)
        assert [c async for c in result.stream] == [0, 1, 2]
        assert await result.output == "counted"

    @pytest.mark.asyncio
    async def test_streaming_flow_can_run_without_stream(self, registry):
        async def count(limit: int, ctx) -> int:
            for i in range(limit):
                ctx.send_chunk(i)
            return limit

        flow = define_streaming_flow(registry, "count", count)
        assert await flow.run(2) == 2

    @pytest.mark.asyncio
    async def test_on_chunk_callback(self, registry):
        async def words(text, ctx):
            for word in text.split():
                ctx.send_chunk(word)
            return len(text.split())

        flow = define_flow(registry, "words", words)
        seen = []
        assert await flow.run("a b c", on_chunk=seen.append) == 3
        assert seen == ["a", "b", "c"]


class TestFlowState:

    @pytest.mark.asyncio
    async def test_successful_run_is_recorded(self, registry):
        store = InMemoryFlowStateStore()
        registry.flow_state_store = store
        registry.trace_store = InMemoryTraceStore()
        flow = define_flow(registry, "double", lambda x: x * 2)

        telemetry = {}
        await flow.run(21, telemetry=telemetry)

        states, token = await store.list()
        assert token is None
        (state,) = states
        assert state.name == "double"
        assert state.status == "done"
        assert state.input == 21
        assert state.output == 42
        assert state.trace_ids == [telemetry["traceId"]]
        assert state.end_time is not None

    @pytest.mark.asyncio
    async def test_failed_run_is_recorded(self, registry):
        store = InMemoryFlowStateStore()
        registry.flow_state_store = store

        def explode(value):
            raise RuntimeError("boom")

        flow = define_flow(registry, "explode", explode)
        with pytest.raises(RuntimeError):
            await flow.run(None)

        (state,), _ = await store.list()
        assert state.status == "error"
        assert state.error == {"status": "INTERNAL", "message": "boom"}
        assert "output" not in state.to_dict()

    @pytest.mark.asyncio
    async def test_invalid_output_is_recorded_as_error(self, registry):
        store = InMemoryFlowStateStore()
        registry.flow_state_store = store
        flow = define_flow(registry, "count", lambda _: "not an int", output_schema=int)

        with pytest.raises(ValidationError) as exc_info:
            await flow.run(None)
        assert exc_info.value.source == "output"

        (state,), _ = await store.list()
        assert state.status == "error"
        assert state.error["status"] == "INTERNAL"
        assert "output" not in state.to_dict()

    @pytest.mark.asyncio
    async def test_store_pagination(self, registry):
        store = InMemoryFlowStateStore()
        registry.flow_state_store = store
        flow = define_flow(registry, "echo", lambda x: x)
        for i in range(5):
            await flow.run(i)

        first, token = await store.list(limit=2)
        second, token2 = await store.list(limit=2, continuation_token=token)
        third, token3 = await store.list(limit=2, continuation_token=token2)

        assert (len(first), len(second), len(third)) == (2, 2, 1)
        assert token3 is None
        assert await store.delete(first[0].flow_id)
        assert not await store.delete(first[0].flow_id)


class TestNestedFlows:

    @pytest.mark.asyncio
    async def test_flow_calls_flow_with_context(self, registry):
        traces = InMemoryTraceStore()
        registry.trace_store = traces
        inner = define_flow(registry, "inner", lambda x: x.upper())

        async def outer_fn(text, ctx):
            return await inner.run(text, context=ctx) + "!"

        outer = define_flow(registry, "outer", outer_fn)
        telemetry = {}
        assert await outer.run("hey", telemetry=telemetry) == "HEY!"

        listed, _ = await traces.list()
        assert [t.trace_id for t in listed] == [telemetry["traceId"]]
        trace = listed[0]
        assert {s.display_name for s in trace.spans.values()} == {"outer", "inner"}
