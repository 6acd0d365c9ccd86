"""
Tests for the OpenAI-compatible model plugin

使用假的 AsyncOpenAI 客户端，检查请求转换和响应解析（包括流式工具调用增量）。
"""

from types import SimpleNamespace as NS

import pytest

from tiny_genkit import ActionKind, Message, Part, Role, ToolRequest, ToolResponse, generate, openai_compatible
from tiny_genkit.models import GenerateRequest, ToolDefinition
from tiny_genkit.models.llm_response import FinishReason
from tiny_genkit.tools import define_tool


class FakeCompletions:
    def __init__(self, results):
        self.results = list(results)
        self.params = []

    async def create(self, **params):
        self.params.append(params)
        result = self.results.pop(0)
        if params.get("stream"):
            return _aiter(result)
        return result


async def _aiter(items):
    for item in items:
        yield item


class FakeClient:
    def __init__(self, *results):
        self.chat = NS(completions=FakeCompletions(results))
        self.closed = False

    async def close(self):
        self.closed = True


def completion(content=None, tool_calls=None, finish_reason="stop"):
    return NS(
        model="gpt-test",
        choices=[NS(message=NS(content=content, tool_calls=tool_calls), finish_reason=finish_reason)],
        usage=NS(prompt_tokens=3, completion_tokens=5, total_tokens=8),
    )


def tool_call(id, name, arguments):
    return NS(id=id, function=NS(name=name, arguments=arguments))


def chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
    choices = [] if content is None and tool_calls is None and finish_reason is None else [
        NS(delta=NS(content=content, tool_calls=tool_calls), finish_reason=finish_reason)
    ]
    return NS(model="gpt-test", choices=choices, usage=usage)


def delta_call(index, id=None, name=None, arguments=""):
    return NS(index=index, id=id, function=NS(name=name, arguments=arguments))


async def resolve_model(registry, client, model="gpt-test"):
    registry.register_plugin(openai_compatible(models=[model], client=client))
    return await registry.resolve_action(ActionKind.MODEL, f"openai/{model}")


class TestPlugin:

    @pytest.mark.asyncio
    async def test_models_registered_on_resolution(self, registry):
        action = await resolve_model(registry, FakeClient())

        assert action.key == "/model/openai/gpt-test"
        assert action.metadata["model"]["supports"]["tools"] is True

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self, registry):
        client = FakeClient()
        await resolve_model(registry, client)
        await registry.shutdown_plugins()
        assert not client.closed

    @pytest.mark.asyncio
    async def test_owned_client_is_closed(self, registry, monkeypatch):
        created = []

        def fake_async_openai(**kwargs):
            client = FakeClient()
            created.append((kwargs, client))
            return client

        monkeypatch.setattr("tiny_genkit.models.openai_llm.AsyncOpenAI", fake_async_openai)
        registry.register_plugin(openai_compatible(models=["a", "b"], api_key="sk-test", base_url="http://local"))

        await registry.resolve_plugin("openai")
        await registry.resolve_plugin("openai")
        await registry.shutdown_plugins()

        assert len(created) == 1
        kwargs, client = created[0]
        assert kwargs == {"api_key": "sk-test", "base_url": "http://local"}
        assert client.closed


class TestRequestTranslation:

    @pytest.mark.asyncio
    async def test_messages_tools_and_config(self, registry):
        client = FakeClient(completion("ok"))
        action = await resolve_model(registry, client)
        request = GenerateRequest(
            messages=[
                Message(role=Role.SYSTEM, content="be brief"),
                Message(role=Role.USER, content="weather?"),
                Message(role=Role.MODEL, content=[Part(tool_request=ToolRequest(name="weather", ref="c1", input={"city": "Rome"}))]),
                Message(role=Role.TOOL, content=[
                    Part(tool_response=ToolResponse(name="weather", ref="c1", output={"degrees": 21})),
                ]),
            ],
            tools=[ToolDefinition(name="weather", description="查询天气", input_schema={"type": "object"})],
            config={"temperature": 0.2, "maxOutputTokens": 64, "ignored": 1},
            output={"format": "json"},
        )

        await action.run(request)

        (params,) = client.chat.completions.params
        assert params["model"] == "gpt-test"
        assert [m["role"] for m in params["messages"]] == ["system", "user", "assistant", "tool"]
        assistant = params["messages"][2]
        assert assistant["tool_calls"][0]["id"] == "c1"
        assert assistant["tool_calls"][0]["function"] == {"name": "weather", "arguments": '{"city": "Rome"}'}
        assert params["messages"][3] == {"role": "tool", "tool_call_id": "c1", "content": '{"degrees": 21}'}
        assert params["tools"][0]["function"]["parameters"] == {"type": "object"}
        assert params["temperature"] == 0.2
        assert params["max_tokens"] == 64
        assert "ignored" not in params
        assert params["response_format"] == {"type": "json_object"}
        assert "stream" not in params


class TestResponseParsing:

    @pytest.mark.asyncio
    async def test_tool_calls(self, registry):
        client = FakeClient(completion(
            tool_calls=[tool_call("c1", "weather", '{"city": "Rome"}'), tool_call("c2", "time", "not json")],
            finish_reason="tool_calls",
        ))
        action = await resolve_model(registry, client)

        response = await action.run(GenerateRequest(messages=[Message(role=Role.USER, content="hi")]))

        assert response.finish_reason == FinishReason.TOOL_CALL
        assert [(r.name, r.ref, r.input) for r in response.tool_requests] == [
            ("weather", "c1", {"city": "Rome"}),
            ("time", "c2", {}),
        ]
        assert response.usage.total_tokens == 8

    @pytest.mark.asyncio
    async def test_streamed_text_and_tool_call_deltas(self, registry):
        client = FakeClient([
            chunk(content="Hel"),
            chunk(content="lo"),
            chunk(tool_calls=[delta_call(0, id="c1", name="weather", arguments='{"ci')]),
            chunk(tool_calls=[delta_call(0, arguments='ty": "Rome"}')]),
            chunk(finish_reason="tool_calls"),
            chunk(usage=NS(prompt_tokens=1, completion_tokens=2, total_tokens=3)),
        ])
        action = await resolve_model(registry, client)

        result = action.stream(GenerateRequest(messages=[Message(role=Role.USER, content="hi")]))
        chunks = [c.text async for c in result.stream]
        response = await result.output

        assert chunks == ["Hel", "lo"]
        assert client.chat.completions.params[0]["stream"] is True
        assert response.text == "Hello"
        assert [(r.name, r.ref, r.input) for r in response.tool_requests] == [("weather", "c1", {"city": "Rome"})]
        assert response.finish_reason == FinishReason.TOOL_CALL
        assert response.usage.total_tokens == 3


class TestWithGenerationLoop:

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, registry):
        client = FakeClient(
            completion(tool_calls=[tool_call("c1", "specialTool", '{"meal": "lunch"}')], finish_reason="tool_calls"),
            completion("Enjoy your beans on toast!"),
        )
        registry.register_plugin(openai_compatible(models=["gpt-test"], client=client))

        def special_tool(meal: str) -> str:
            return "Baked beans on toast"

        define_tool(registry, special_tool, name="specialTool")

        response = await generate(registry, model="openai/gpt-test", prompt="lunch?", tools=["specialTool"])

        assert response.text == "Enjoy your beans on toast!"
        second = client.chat.completions.params[1]["messages"]
        assert second[-1] == {"role": "tool", "tool_call_id": "c1", "content": '"Baked beans on toast"'}
