"""
Tests for the flow server

POST /{flow} 调用、SSE 流式调用、错误映射、CORS 和请求体大小限制。
"""

import json

import pytest
from fastapi.testclient import TestClient

from tiny_genkit import Genkit
from tiny_genkit.web import FlowServer, create_flow_app
from tiny_genkit.web.app import default_port


def sse_payloads(text: str) -> list:
    return [json.loads(line[len("data: "):]) for line in text.split("\n\n") if line.startswith("data: ")]


@pytest.fixture
def ai(default_config):
    ai = Genkit(config=default_config)

    @ai.define_flow(input_schema=str, output_schema=str)
    def greet(name):
        return f"你好, {name}"

    @ai.define_streaming_flow("count", stream_schema=int)
    async def count(limit, ctx):
        for i in range(limit):
            ctx.send_chunk(i)
        if limit > 5:
            raise ValueError("too many")
        return limit

    @ai.define_flow("whoami")
    def whoami(_, ctx):
        return ctx.metadata["headers"].get("x-user")

    return ai


@pytest.fixture
def client(ai):
    app = create_flow_app(lambda: ai.flows, max_body_size=1024, cors_origins=["http://localhost:4000"])
    with TestClient(app) as test_client:
        yield test_client


class TestRunFlow:

    def test_result(self, client):
        response = client.post("/greet", json={"data": "世界"})
        assert response.status_code == 200
        assert response.json() == {"result": "你好, 世界"}

    def test_headers_reach_flow(self, client):
        response = client.post("/whoami", json={"data": None}, headers={"X-User": "alice"})
        assert response.json() == {"result": "alice"}

    def test_unknown_flow(self, client):
        response = client.post("/missing", json={"data": 1})
        assert response.status_code == 404
        assert response.json()["error"]["status"] == "NOT_FOUND"

    def test_invalid_input(self, client):
        response = client.post("/greet", json={"data": 12})
        assert response.status_code == 400
        assert response.json()["error"]["status"] == "INVALID_ARGUMENT"

    def test_body_must_be_json_object(self, client):
        assert client.post("/greet", content=b"not json").status_code == 400
        assert client.post("/greet", json=["x"]).status_code == 400

    def test_handler_error_is_500(self, client):
        response = client.post("/count", json={"data": 10})
        assert response.status_code == 500
        assert response.json() == {"error": {"status": "INTERNAL", "message": "too many"}}

    def test_flow_defined_after_app_creation(self, ai, client):
        ai.define_flow("late", lambda _: "still served")
        assert client.post("/late", json={}).json() == {"result": "still served"}


class TestStreaming:

    def test_sse_frames(self, client):
        response = client.post("/count?stream=true", json={"data": 3})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert sse_payloads(response.text) == [
            {"message": 0},
            {"message": 1},
            {"message": 2},
            {"result": 3},
        ]

    def test_sse_error_frame(self, client):
        response = client.post("/count?stream=true", json={"data": 6})
        frames = sse_payloads(response.text)
        assert [f["message"] for f in frames[:-1]] == list(range(6))
        assert frames[-1] == {"error": {"status": "INTERNAL", "message": "too many"}}


class TestHttpConcerns:

    def test_body_too_large(self, client):
        response = client.post("/greet", json={"data": "x" * 2048})
        assert response.status_code == 413
        assert response.json()["error"]["status"] == "RESOURCE_EXHAUSTED"

    def test_chunked_body_too_large(self, client):
        def body():
            yield b'{"data": "'
            for _ in range(10):
                yield b"x" * 1024
            yield b'"}'

        response = client.post("/greet", content=body(), headers={"Content-Type": "application/json"})

        assert "content-length" not in response.request.headers
        assert response.status_code == 413
        assert response.json()["error"]["status"] == "RESOURCE_EXHAUSTED"

    def test_chunked_body_within_limit(self, client):
        def body():
            yield b'{"data": '
            yield b'"chunked"}'

        response = client.post("/greet", content=body())

        assert response.status_code == 200
        assert response.json() == {"result": "你好, chunked"}

    def test_cors_preflight(self, client):
        response = client.options(
            "/greet",
            headers={
                "Origin": "http://localhost:4000",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:4000"

    def test_path_prefix(self, ai):
        with TestClient(create_flow_app(ai.flows, path_prefix="/api/")) as client:
            assert client.post("/api/greet", json={"data": "x"}).json() == {"result": "你好, x"}
            assert client.post("/greet", json={"data": "x"}).status_code == 404


class TestFlowServer:

    def test_default_port_from_env(self, monkeypatch):
        monkeypatch.delenv("PORT", raising=False)
        assert default_port() == 3400
        monkeypatch.setenv("PORT", "8123")
        assert default_port() == 8123
        assert FlowServer([]).port == 8123

    @pytest.mark.asyncio
    async def test_start_and_stop(self, ai):
        import httpx

        server = FlowServer(lambda: ai.flows, host="127.0.0.1", port=0)
        await server.start()
        try:
            async with httpx.AsyncClient(base_url=server.url) as http:
                response = await http.post("/greet", json={"data": "http"})
            assert response.json() == {"result": "你好, http"}
        finally:
            await server.stop(timeout=2)
        assert not server.running
