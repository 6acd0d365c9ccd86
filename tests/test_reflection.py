"""
Tests for the reflection API

通过 FastAPI TestClient 调用 Reflection 端点。
"""

import asyncio
import json
import socket

import pytest
from fastapi.testclient import TestClient

from tiny_genkit import (
    AddressInUseError,
    InMemoryFlowStateStore,
    InMemoryTraceStore,
    Plugin,
    PluginProvider,
    define_flow,
    define_streaming_flow,
    define_tool,
)
from tiny_genkit.reflection import ReflectionServer, create_reflection_app
from tiny_genkit.tools import tool_action
from tiny_genkit.web.server import bind_socket


def menu(meal: str) -> str:
    """今日菜单"""
    return f"{meal}: beans"


@pytest.fixture
def populated(registry):
    registry.trace_store = InMemoryTraceStore()
    registry.flow_state_store = InMemoryFlowStateStore()
    define_flow(registry, "shout", lambda text: text.upper(), input_schema=str, output_schema=str)

    async def count(limit, ctx):
        for i in range(limit):
            ctx.send_chunk({"n": i})
        return limit

    define_streaming_flow(registry, "count", count)

    async def init_kitchen():
        return Plugin(tools=[tool_action(menu, name="kitchen/menu")])

    async def init_broken():
        raise RuntimeError("no credentials")

    registry.register_plugin(PluginProvider("kitchen", init_kitchen))
    registry.register_plugin(PluginProvider("broken", init_broken))
    return registry


@pytest.fixture
def client(populated):
    with TestClient(create_reflection_app(populated, env="dev")) as test_client:
        yield test_client


class TestDiscovery:

    def test_health(self, client):
        response = client.get("/api/__health")
        assert response.status_code == 200
        assert response.json()["status"] == "OK"

    def test_list_actions_initializes_plugins(self, client):
        response = client.get("/api/actions")
        assert response.status_code == 200

        actions = response.json()
        assert {"/flow/shout", "/flow/count", "/tool/kitchen/menu"} <= set(actions)
        shout = actions["/flow/shout"]
        assert shout["name"] == "shout"
        assert shout["inputSchema"] == {"type": "string"}
        assert "streamSchema" in actions["/flow/count"]


class TestRunAction:

    def test_run_returns_result_and_trace_id(self, client, populated):
        response = client.post("/api/runAction", json={"key": "/flow/shout", "input": "hi"})

        assert response.status_code == 200
        body = response.json()
        assert body["result"] == "HI"
        trace_id = body["telemetry"]["traceId"]
        assert trace_id

        trace = client.get(f"/api/envs/dev/traces/{trace_id}").json()
        assert trace["traceId"] == trace_id
        assert trace["displayName"] == "shout"

    def test_run_plugin_action_lazily(self, client):
        response = client.post("/api/runAction", json={"key": "/tool/kitchen/menu", "input": {"meal": "lunch"}})
        assert response.json()["result"] == "lunch: beans"

    def test_unknown_action(self, client):
        response = client.post("/api/runAction", json={"key": "/flow/missing", "input": None})
        assert response.status_code == 404
        assert response.json()["error"]["status"] == "NOT_FOUND"

    def test_malformed_key(self, client):
        response = client.post("/api/runAction", json={"key": "nonsense", "input": None})
        assert response.status_code == 404

    def test_invalid_input(self, client):
        response = client.post("/api/runAction", json={"key": "/flow/shout", "input": 42})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["status"] == "INVALID_ARGUMENT"
        assert error["details"]

    def test_failed_plugin(self, client):
        response = client.post("/api/runAction", json={"key": "/tool/broken/thing", "input": None})
        assert response.status_code == 503
        assert response.json()["error"]["status"] == "UNAVAILABLE"

    def test_stream_lines(self, client):
        response = client.post("/api/runAction?stream=true", json={"key": "/flow/count", "input": 3})

        assert response.status_code == 200
        lines = [json.loads(line) for line in response.text.splitlines() if line]
        assert lines[:3] == [{"n": 0}, {"n": 1}, {"n": 2}]
        assert lines[3]["result"] == 3
        assert lines[3]["telemetry"]["traceId"]

    def test_stream_error_is_last_line(self, client):
        response = client.post("/api/runAction?stream=true", json={"key": "/flow/count", "input": "x"})
        lines = [json.loads(line) for line in response.text.splitlines() if line]
        assert lines[-1]["error"]["status"] == "INTERNAL"


class TestStores:

    def test_list_traces_and_flow_states(self, client):
        for text in ("a", "b", "c"):
            client.post("/api/runAction", json={"key": "/flow/shout", "input": text})

        page = client.get("/api/envs/dev/traces", params={"limit": 2}).json()
        assert len(page["traces"]) == 2
        rest = client.get(
            "/api/envs/dev/traces",
            params={"limit": 2, "continuationToken": page["continuationToken"]},
        ).json()
        assert len(rest["traces"]) == 1
        assert rest["continuationToken"] is None

        states = client.get("/api/envs/dev/flowStates").json()["flowStates"]
        assert len(states) == 3
        assert {s["output"] for s in states} == {"A", "B", "C"}

        flow_id = states[0]["flowId"]
        assert client.get(f"/api/envs/dev/flowStates/{flow_id}").json()["flowId"] == flow_id

    def test_missing_trace(self, client):
        assert client.get("/api/envs/dev/traces/nope").status_code == 404

    def test_no_store_configured(self, registry):
        with TestClient(create_reflection_app(registry)) as client:
            assert client.get("/api/envs/dev/traces").json() == {"traces": [], "continuationToken": None}
            assert client.get("/api/envs/dev/flowStates/x").status_code == 404


class TestReflectionServer:

    @pytest.mark.asyncio
    async def test_one_server_per_registry(self, registry):
        first = ReflectionServer(registry, port=0)
        await first.start()
        try:
            assert first.running
            assert first.port != 0
            with pytest.raises(AddressInUseError):
                await ReflectionServer(registry, port=0).start()
        finally:
            await first.stop(timeout=2)
        assert not first.running
        assert registry.reflection_server is None

    @pytest.mark.asyncio
    async def test_stop_all(self, registry):
        define_tool(registry, menu)
        server = ReflectionServer(registry, port=0)
        await server.start()

        await ReflectionServer.stop_all(timeout=2)

        assert not server.running
        assert server not in ReflectionServer._RUNNING

    def test_bind_conflict(self):
        taken = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        taken.bind(("127.0.0.1", 0))
        taken.listen()
        try:
            with pytest.raises(AddressInUseError):
                bind_socket("127.0.0.1", taken.getsockname()[1])
        finally:
            taken.close()

    @pytest.mark.asyncio
    async def test_served_over_http(self, registry):
        import httpx

        define_flow(registry, "ping", lambda _: "pong")
        server = ReflectionServer(registry, port=0)
        await server.start()
        try:
            async with httpx.AsyncClient(base_url=server.url) as http:
                response = await http.post("/api/runAction", json={"key": "/flow/ping"})
            assert response.json()["result"] == "pong"
        finally:
            await asyncio.wait_for(server.stop(timeout=2), 5)
