# tests/integration/test_server_endpoints.py
import json

import pytest
from fastapi.testclient import TestClient

from conftest import openai_chunk
from threatflow.server import app
from threatflow.providers import openai as openai_provider
from threatflow.providers.ollama import VISION_UNSUPPORTED_TEXT

@pytest.fixture(scope="module")
def client():
    return TestClient(app)

def sse_payloads(body: str):
    frames = [f for f in body.split("\n\n") if f]
    assert all(f.startswith("data: ") for f in frames)
    return [f[len("data: "):] for f in frames]

def test_health_ok(client):
    assert client.get("/health").json() == {"status": "ok"}

def test_request_id_echoed(client):
    res = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert res.headers["x-request-id"] == "abc-123"

def test_validation_error(client):
    res = client.post("/api/ai-stream", json={"foo": "bar"})
    assert res.status_code == 422
    payload = res.json()
    assert payload["error"]["code"] == "VALIDATION_ERR"
    assert "text" in payload["error"]["msg"]


# ---- /api/providers -----------------------------------------------------

def test_providers_listing(client, loaded_config, full_env):
    loaded_config(full_env)
    payload = client.get("/api/providers").json()
    assert payload["hasConfiguredProviders"] is True
    assert payload["defaultProvider"] == "anthropic"
    assert [p["id"] for p in payload["providers"]] == ["anthropic", "openai", "ollama"]
    assert payload["providers"][1]["defaultModel"] == "gpt-4o"

def test_providers_listing_empty(client, loaded_config):
    loaded_config({})
    assert client.get("/api/providers").json() == {
        "providers": [], "defaultProvider": None, "hasConfiguredProviders": False,
    }


# ---- /api/ai-stream -----------------------------------------------------

def test_ai_stream_relays_sse(client, loaded_config, monkeypatch, openai_client):
    loaded_config({"OPENAI_API_KEY": "sk-test"})
    fake = openai_client(chunks=[openai_chunk("flow "), openai_chunk("json"), openai_chunk(None, "stop")])
    monkeypatch.setattr(openai_provider, "AsyncOpenAI", lambda **kwargs: fake)

    res = client.post("/api/ai-stream", json={"text": "article", "model": "gpt-4-turbo"})
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/event-stream")
    assert res.headers["cache-control"] == "no-cache"

    payloads = sse_payloads(res.text)
    assert payloads[-1] == "[DONE]"
    deltas = [json.loads(p)["delta"]["text"] for p in payloads[:-1]]
    assert deltas == ["flow ", "json"]
    assert fake.chat.completions.calls[0]["model"] == "gpt-4-turbo"

def test_ai_stream_upstream_failure_is_in_band(client, loaded_config, monkeypatch, openai_client):
    loaded_config({"OPENAI_API_KEY": "sk-test"})
    fake = openai_client(open_error=RuntimeError("connection reset"))
    monkeypatch.setattr(openai_provider, "AsyncOpenAI", lambda **kwargs: fake)

    res = client.post("/api/ai-stream", json={"text": "article"})
    assert res.status_code == 200
    payloads = sse_payloads(res.text)
    assert json.loads(payloads[0]) == {"type": "error", "error": "connection reset"}
    assert payloads[1:] == ["[DONE]"]

def test_ai_stream_unknown_provider(client, loaded_config, full_env):
    loaded_config(full_env)
    res = client.post("/api/ai-stream", json={"text": "article", "provider": "mistral"})
    assert res.status_code == 400
    error = res.json()["error"]
    assert error["code"] == "UNKNOWN_PROVIDER"
    assert error["msg"].startswith("Unknown provider: mistral. Supported:")

def test_ai_stream_nothing_configured(client, loaded_config):
    loaded_config({})
    res = client.post("/api/ai-stream", json={"text": "article"})
    assert res.status_code == 503
    assert res.json()["error"]["code"] == "UNCONFIGURED"


# ---- /api/vision-analysis -----------------------------------------------

OLLAMA_ENV = {"OLLAMA_BASE_URL": "http://ollama.local:11434", "OLLAMA_VISION_MODEL": "llava"}

def test_vision_analysis_placeholder(client, loaded_config):
    loaded_config(OLLAMA_ENV)
    body = {"provider": "ollama", "images": [{"base64Data": "AA", "mediaType": "image/png"}]}
    res = client.post("/api/vision-analysis", json=body)
    assert res.status_code == 200
    assert res.json() == {"analysisText": VISION_UNSUPPORTED_TEXT, "confidence": "low"}

def test_vision_analysis_requires_images(client, loaded_config):
    loaded_config(OLLAMA_ENV)
    res = client.post("/api/vision-analysis", json={"provider": "ollama", "images": []})
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "INVALID_INPUT"


# ---- /admin/reload-config -----------------------------------------------

def test_reload_config_picks_up_environment(client, loaded_config, clean_env):
    loaded_config({})
    clean_env.setenv("OPENAI_API_KEY", "sk-new")
    res = client.post("/admin/reload-config")
    assert res.status_code == 200
    assert res.json() == {"message": "Configuration reloaded successfully"}
    assert client.get("/api/providers").json()["defaultProvider"] == "openai"
