import gzip
import json
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from chatrouter.app import create_app

SAMURA_CHAT = "https://samura.test/v1/chat/completions"
GENSPARK_CHAT = "https://genspark.test/v1/chat/completions"
OPENROUTER_CHAT = "https://openrouter.test/api/v1/chat/completions"


def _messages(text="hi"):
    return [{"role": "user", "content": text}]


@pytest.fixture
def app(gateway_config, upstream):
    application = create_app(gateway_config, transport=upstream.transport)
    application.state.registry.replace("samura", ["gpt-4o", "deepseek-r1"])
    application.state.registry.replace("openrouter", ["mistral-large"])
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


def _sent_json(upstream, index=-1):
    return json.loads(upstream.requests[index].content)


def test_prefixed_request_routes_to_samura(client, upstream):
    upstream.on(
        "POST",
        SAMURA_CHAT,
        lambda r: httpx.Response(
            200, json={"choices": [{"message": {"content": "Hello"}}]}
        ),
    )
    r = client.post(
        "/v1/chat/completions", json={"model": "samu/gpt-4o", "messages": _messages()}
    )
    assert r.status_code == 200
    body = r.json()
    assert body["choices"][0]["message"]["role"] == "assistant"
    assert body["choices"][0]["message"]["content"] == "Hello"
    assert body["object"] == "chat.completion"
    assert body["id"] and body["created"] and body["usage"]["total_tokens"] == 0
    sent = _sent_json(upstream)
    assert str(upstream.requests[-1].url) == SAMURA_CHAT
    assert sent["model"] == "gpt-4o"
    assert sent["temperature"] == 0.7 and sent["max_tokens"] == 4096


def test_reasoning_trace_stripped_for_samura(client, upstream):
    upstream.on(
        "POST",
        SAMURA_CHAT,
        lambda r: httpx.Response(
            200,
            json={"choices": [{"message": {"content": "<think>plan</think>\nDone."}}]},
        ),
    )
    r = client.post(
        "/v1/chat/completions", json={"model": "deepseek-r1", "messages": _messages()}
    )
    assert r.json()["choices"][0]["message"]["content"] == "Done."


def test_unknown_model_lists_available_models(client, upstream):
    r = client.post(
        "/v1/chat/completions",
        json={"model": "nonexistent-model", "messages": _messages()},
    )
    assert r.status_code == 400
    body = r.json()
    assert body["error"]["type"] == "model_not_found"
    available = body["available_models"]
    assert available["samura"] == ["deepseek-r1", "gpt-4o"]
    assert "gpt-4o" in available["genspark"]
    assert available["openrouter"] == ["mistral-large"]
    assert upstream.requests == []


def test_prefixed_miss_does_not_fall_through(client, upstream):
    r = client.post(
        "/v1/chat/completions",
        json={"model": "samu/mistral-large", "messages": _messages()},
    )
    assert r.status_code == 400
    assert "available_models" in r.json()


@pytest.mark.parametrize(
    "payload",
    [
        {"messages": _messages()},
        {"model": "", "messages": _messages()},
        {"model": "gpt-4o"},
        {"model": "gpt-4o", "messages": []},
        {"model": "gpt-4o", "messages": [{"role": "robot", "content": "hi"}]},
        {"model": "gpt-4o", "messages": [{"role": "user"}]},
        {"model": "gpt-4o", "messages": _messages(), "temperature": "hot"},
        ["not", "an", "object"],
    ],
)
def test_validation_errors_return_400(client, upstream, payload):
    r = client.post("/v1/chat/completions", json=payload)
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "invalid_request"
    assert upstream.requests == []


def test_invalid_json_body_returns_400(client):
    r = client.post(
        "/v1/chat/completions",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert r.status_code == 400


def test_upstream_error_status_and_body_propagate(client, upstream):
    upstream.on(
        "POST",
        SAMURA_CHAT,
        lambda r: httpx.Response(429, json={"error": {"message": "slow down"}}),
    )
    r = client.post(
        "/v1/chat/completions", json={"model": "samu/gpt-4o", "messages": _messages()}
    )
    assert r.status_code == 429
    assert r.json() == {"error": {"message": "slow down"}}


def test_upstream_timeout_is_500_and_not_retried_elsewhere(client, upstream):
    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    upstream.on("POST", SAMURA_CHAT, slow)
    r = client.post(
        "/v1/chat/completions", json={"model": "gpt-4o", "messages": _messages()}
    )
    assert r.status_code == 500
    assert r.json()["error"]["type"] == "upstream_error"
    # gpt-4o is also on genspark's allow-list, but there is no cross-provider retry.
    assert [str(req.url) for req in upstream.requests] == [SAMURA_CHAT]


def test_upstream_malformed_body_is_500(client, upstream):
    upstream.on("POST", SAMURA_CHAT, lambda r: httpx.Response(200, text="oops"))
    r = client.post(
        "/v1/chat/completions", json={"model": "gpt-4o", "messages": _messages()}
    )
    assert r.status_code == 500


def test_unclassified_failure_is_500(client, app, monkeypatch):
    async def broken(payload, request=None):
        raise RuntimeError("bug")

    monkeypatch.setattr(app.state.forwarder, "handle_chat", broken)
    r = client.post(
        "/v1/chat/completions", json={"model": "gpt-4o", "messages": _messages()}
    )
    assert r.status_code == 500
    assert r.json()["error"]["type"] == "internal_error"


def test_override_routes_to_pinned_provider(client, upstream):
    upstream.on(
        "POST",
        GENSPARK_CHAT,
        lambda r: httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}),
    )
    r = client.post(
        "/v1/chat/completions", json={"model": "pinned-model", "messages": _messages()}
    )
    assert r.status_code == 200
    assert _sent_json(upstream)["model"] == "claude-3-7-sonnet"


def test_streaming_passthrough(client, upstream):
    events = [
        b'data: {"id": "c1", "object": "chat.completion.chunk", "choices": [{"delta": {"content": "Hel"}}]}\n\n',
        b'data: {"id": "c1", "object": "chat.completion.chunk", "choices": [{"delta": {"content": "lo"}}]}\n\n',
        b"data: [DONE]\n\n",
    ]

    async def body():
        for event in events:
            yield event

    upstream.on(
        "POST",
        SAMURA_CHAT,
        lambda r: httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=body()
        ),
    )
    r = client.post(
        "/v1/chat/completions",
        json={"model": "samu/gpt-4o", "messages": _messages(), "stream": True},
    )
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.headers["cache-control"] == "no-cache"
    assert r.content == b"".join(events)
    assert _sent_json(upstream)["stream"] is True


def test_streaming_gzip_upstream_reaches_client_decoded(client, upstream):
    plain = (
        b'data: {"id": "c1", "object": "chat.completion.chunk", "choices": [{"delta": {"content": "Hi"}}]}\n\n'
        b"data: [DONE]\n\n"
    )
    packed = gzip.compress(plain)

    async def body():
        yield packed[:12]
        yield packed[12:]

    upstream.on(
        "POST",
        SAMURA_CHAT,
        lambda r: httpx.Response(
            200,
            headers={"content-type": "text/event-stream", "content-encoding": "gzip"},
            content=body(),
        ),
    )
    r = client.post(
        "/v1/chat/completions",
        json={"model": "samu/gpt-4o", "messages": _messages(), "stream": True},
    )
    assert r.status_code == 200
    assert "content-encoding" not in r.headers
    assert r.content == plain


def test_string_false_stream_flag_is_buffered(client, upstream):
    upstream.on(
        "POST",
        SAMURA_CHAT,
        lambda r: httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}),
    )
    r = client.post(
        "/v1/chat/completions",
        json={
            "model": "samu/gpt-4o",
            "messages": _messages(),
            "stream": "false",
            "temperature": "0.2",
        },
    )
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/json")
    sent = _sent_json(upstream)
    assert sent["stream"] is False
    assert sent["temperature"] == 0.2


def test_streaming_upstream_error_before_first_byte(client, upstream):
    upstream.on(
        "POST",
        SAMURA_CHAT,
        lambda r: httpx.Response(401, json={"error": "bad key"}),
    )
    r = client.post(
        "/v1/chat/completions",
        json={"model": "samu/gpt-4o", "messages": _messages(), "stream": True},
    )
    assert r.status_code == 401
    assert r.json() == {"error": "bad key"}


def test_streaming_emulated_for_non_streaming_provider(client, upstream):
    upstream.on(
        "POST",
        OPENROUTER_CHAT,
        lambda r: httpx.Response(
            200, json={"id": "or-1", "choices": [{"message": {"content": "Hi"}}]}
        ),
    )
    r = client.post(
        "/v1/chat/completions",
        json={"model": "or/mistral-large", "messages": _messages(), "stream": True},
    )
    assert r.status_code == 200
    lines = [line for line in r.text.split("\n\n") if line]
    assert lines[-1] == "data: [DONE]"
    chunk = json.loads(lines[0][len("data: ") :])
    assert chunk["object"] == "chat.completion.chunk"
    assert chunk["choices"][0]["delta"]["content"] == "Hi"
    sent = _sent_json(upstream)
    assert sent["stream"] is False
    assert upstream.requests[-1].headers["X-Title"] == "chatrouter"


def test_models_listing_tags_providers(client):
    r = client.get("/v1/models")
    assert r.status_code == 200
    data = r.json()["data"]
    tagged = {(m["owned_by"], m["id"]) for m in data}
    assert ("samura", "gpt-4o") in tagged
    assert ("genspark", "gpt-4o") in tagged
    assert ("openrouter", "mistral-large") in tagged
    samura = next(m for m in data if m["id"] == "gpt-4o" and m["owned_by"] == "samura")
    assert samura["extensions"]["prefixed_id"] == "samu/gpt-4o"
    assert samura["extensions"]["source"] == "discovered"


def test_health_reports_provider_state(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["providers"]["samura"]["models_loaded"] is True
    assert body["providers"]["genspark"]["models_loaded"] is False
    assert body["providers"]["genspark"]["static_models"] == 3
    assert client.get("/v1/health").status_code == 200


def test_metrics_and_request_log(client, upstream, gateway_config):
    upstream.on(
        "POST",
        SAMURA_CHAT,
        lambda r: httpx.Response(200, json={"choices": [{"message": {"content": "x"}}]}),
    )
    client.post("/v1/chat/completions", json={"model": "gpt-4o", "messages": _messages()})
    summary = client.get("/v1/metrics").json()
    assert summary["requests_by_provider"]["samura"]["total_requests"] == 1
    with open(gateway_config.log_path, encoding="utf-8") as fh:
        record = json.loads(fh.readlines()[-1])
    assert record["provider"] == "samura"
    assert record["upstream_model"] == "gpt-4o"
    assert record["status"] == 200


def test_lifespan_refreshes_registry_on_startup(gateway_config, upstream):
    upstream.on(
        "GET",
        "https://samura.test/v1/models",
        lambda r: httpx.Response(200, json={"data": [{"id": "qwen-max"}]}),
    )
    upstream.on(
        "GET",
        "https://openrouter.test/api/v1/models",
        lambda r: httpx.Response(500, text="down"),
    )
    upstream.on(
        "POST",
        SAMURA_CHAT,
        lambda r: httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}),
    )
    app = create_app(gateway_config, transport=upstream.transport)
    with TestClient(app) as client:
        health = {}
        for _ in range(100):
            health = client.get("/health").json()
            if health["providers"]["samura"]["models_loaded"]:
                break
            time.sleep(0.01)
        assert health["providers"]["samura"]["models_loaded"] is True
        r = client.post(
            "/v1/chat/completions", json={"model": "qwen-max", "messages": _messages()}
        )
        assert r.status_code == 200
    assert not app.state.refresher.running


def test_upstream_failures_are_counted_per_provider(client, upstream):
    upstream.on(
        "POST",
        SAMURA_CHAT,
        lambda r: httpx.Response(503, json={"error": "overloaded"}),
    )
    client.post("/v1/chat/completions", json={"model": "gpt-4o", "messages": _messages()})
    client.post(
        "/v1/chat/completions",
        json={"model": "nonexistent-model", "messages": _messages()},
    )
    counters = client.get("/v1/metrics").json()["requests_by_provider"]
    assert counters["samura"]["total_requests"] == 1
    assert counters["samura"]["failed_requests"] == 1
    # Unresolved models have no provider to charge.
    assert set(counters) == {"samura"}
