# daemon/tests/conftest.py
import os
from types import SimpleNamespace

import httpx
import pytest

from threatflow.config import set_config
from threatflow.events import ContentDelta


# ---- environments -------------------------------------------------------

@pytest.fixture
def full_env():
    return {
        "ANTHROPIC_API_KEY": "sk-ant-test",
        "OPENAI_API_KEY": "sk-openai-test",
        "OLLAMA_BASE_URL": "http://ollama.local:11434",
        "OLLAMA_TEXT_MODEL": "qwen3-vl",
    }

@pytest.fixture
def loaded_config():
    """Install an environment snapshot as the process config, restoring an empty one after."""
    def _load(env):
        return set_config(env)
    yield _load
    set_config({})


# ---- fake Anthropic client ----------------------------------------------

class FakeClient:
    """SDK client stand-in; records whether an ``async with`` block closed it."""
    def __init__(self, **resources):
        self.__dict__.update(resources)
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False


class FakeAnthropicStream:
    def __init__(self, chunks, error=None):
        self.chunks = chunks
        self.error = error
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False

    @property
    def text_stream(self):
        return self._texts()

    async def _texts(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error


class FakeAnthropicMessages:
    def __init__(self, chunks=(), stream_error=None, open_error=None, reply="", usage=(0, 0)):
        self.chunks = list(chunks)
        self.stream_error = stream_error
        self.open_error = open_error
        self.reply = reply
        self.usage = usage
        self.calls = []
        self.last_stream = None

    def stream(self, **kwargs):
        self.calls.append(("stream", kwargs))
        if self.open_error is not None:
            raise self.open_error
        self.last_stream = FakeAnthropicStream(self.chunks, self.stream_error)
        return self.last_stream

    async def create(self, **kwargs):
        self.calls.append(("create", kwargs))
        if self.open_error is not None:
            raise self.open_error
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=self.reply)],
            usage=SimpleNamespace(input_tokens=self.usage[0], output_tokens=self.usage[1]),
        )


@pytest.fixture
def anthropic_client():
    def _make(**kwargs):
        return FakeClient(messages=FakeAnthropicMessages(**kwargs))
    return _make


# ---- fake OpenAI client -------------------------------------------------

def openai_chunk(content=None, finish_reason=None):
    return SimpleNamespace(choices=[
        SimpleNamespace(delta=SimpleNamespace(content=content), finish_reason=finish_reason)
    ])


class FakeOpenAIStream:
    def __init__(self, chunks, error=None):
        self.chunks = chunks
        self.error = error
        self.consumed = 0
        self.closed = False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for chunk in self.chunks:
            self.consumed += 1
            yield chunk
        if self.error is not None:
            raise self.error

    async def close(self):
        self.closed = True


class FakeCompletions:
    def __init__(self, chunks=(), stream_error=None, open_error=None, reply="", usage=(0, 0)):
        self.chunks = list(chunks)
        self.stream_error = stream_error
        self.open_error = open_error
        self.reply = reply
        self.usage = usage
        self.calls = []
        self.last_stream = None

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.open_error is not None:
            raise self.open_error
        if kwargs.get("stream"):
            self.last_stream = FakeOpenAIStream(self.chunks, self.stream_error)
            return self.last_stream
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=self.reply))],
            usage=SimpleNamespace(prompt_tokens=self.usage[0], completion_tokens=self.usage[1]),
        )


@pytest.fixture
def openai_client():
    def _make(**kwargs):
        return FakeClient(chat=SimpleNamespace(completions=FakeCompletions(**kwargs)))
    return _make


# ---- Ollama wire --------------------------------------------------------

@pytest.fixture
def ollama_http():
    """Build an ``httpx.AsyncClient`` whose /api/generate answers with ``chunks``."""
    def _make(chunks, status_code=200, requests=None):
        async def body():
            for chunk in chunks:
                yield chunk

        def handler(request: httpx.Request) -> httpx.Response:
            if requests is not None:
                requests.append(request)
            return httpx.Response(status_code, content=body())

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return _make


# ---- event helpers ------------------------------------------------------

class ListSink:
    """Collects the events a provider sends, in order."""

    def __init__(self):
        self.events = []

    async def send(self, event):
        self.events.append(event)

    def text(self):
        return "".join(e.text for e in self.events if isinstance(e, ContentDelta))


def kinds(events):
    return [e.kind for e in events]

def status_error(module, status_code, body):
    """Build the SDK's APIStatusError the way its client raises it."""
    request = httpx.Request("POST", "https://api.example.test/v1")
    response = httpx.Response(status_code, request=request, text=body)
    return module.APIStatusError(f"Error code: {status_code}", response=response, body=None)




@pytest.fixture
def clean_env(monkeypatch):
    """Strip provider and daemon settings inherited from the developer's shell."""
    prefixes = ("ANTHROPIC_", "OPENAI_", "OLLAMA_", "THREATFLOW_", "DEFAULT_AI_PROVIDER")
    for key in list(os.environ):
        if key.startswith(prefixes):
            monkeypatch.delenv(key)
    return monkeypatch
