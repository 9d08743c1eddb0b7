# threatflow/providers/ollama.py
"""Self-hosted Ollama backend.

Ollama answers ``/api/generate`` with newline-delimited JSON objects rather
than server-sent events, needs no API key, and is not trusted with image
understanding.
"""
import json
from contextlib import aclosing, asynccontextmanager
from typing import AsyncIterator, Iterator, Optional

import httpx

from threatflow.errors import UpstreamError
from threatflow.events import EventSink
from threatflow.models import (
    AnalysisRequest, Confidence, ProviderConfig, VisionRequest, VisionResult,
)
from threatflow.prompt import PromptManager
from threatflow.providers import register
from threatflow.providers.base import TEMPERATURE, Provider

import structlog
logger = structlog.get_logger(__name__)

NUM_PREDICT = 2000
# reads are unbounded; a stalled generation is handled by the gateway's idle timeout
HTTP_TIMEOUT = httpx.Timeout(None, connect=10.0)

VISION_UNSUPPORTED_TEXT = "Vision analysis is not supported with the current Ollama configuration."


class NDJSONDecoder:
    """Reassembles newline-delimited JSON objects split across chunk boundaries."""

    def __init__(self):
        self._buffer = b""

    @property
    def pending(self) -> bytes:
        return self._buffer

    def feed(self, chunk: bytes) -> Iterator[dict]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        return self._parse_lines(lines)

    def _parse_lines(self, lines: list[bytes]) -> Iterator[dict]:
        # lazy, so frames ahead of a malformed line still reach the caller
        for line in lines:
            frame = self._parse(line)
            if frame is not None:
                yield frame

    def close(self) -> list[dict]:
        """Flush what is left once the body ends.

        A final object without a trailing newline is still valid; anything
        that does not parse is a truncated frame.
        """
        rest, self._buffer = self._buffer, b""
        frame = self._parse(rest)
        return [frame] if frame is not None else []

    @staticmethod
    def _parse(line: bytes) -> Optional[dict]:
        line = line.strip()
        if not line:
            return None
        try:
            frame = json.loads(line)
        except ValueError as e:
            preview = line[:200].decode("utf-8", errors="replace")
            raise UpstreamError(f"Malformed Ollama stream frame: {preview}") from e
        if not isinstance(frame, dict):
            raise UpstreamError(f"Unexpected Ollama stream frame: {frame!r}")
        return frame


class OllamaProvider(Provider):
    id = "ollama"
    display_name = "Ollama"
    SUPPORTED_MODELS = [
        "qwen3-vl",
        "huggingface.co/TeichAI/Qwen3-14B-Claude-Sonnet-4.5-Reasoning-Distill-GGUF:latest",
        "Qwen3-14B-Claude-Sonnet-4.5-Reasoning-Distill-GGUF-32768-context:latest",
        "huggingface.co/Trendyol/Trendyol-Cybersecurity-LLM-v2-70B-Q4_K_M_65536_context_final:latest",
    ]
    DEFAULT_MODEL = ""

    def __init__(self, config: ProviderConfig, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(config)
        self.prompt = PromptManager()
        self._http_client = http_client

    @property
    def text_model(self) -> str:
        return self.config.text_model or self.config.model

    # --- util -----------------------------------------------------------
    @asynccontextmanager
    async def _session(self):
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
            yield client

    def _generate_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/api/generate"

    # --- required interface --------------------------------------------
    def is_configured(self) -> bool:
        # local instances need an endpoint and a model, never a key
        if not self.config.base_url:
            return False
        return bool(self.config.text_model) or bool(self.config.vision_model)

    def format_prompt(self, text: str, vision_analysis: Optional[str] = None,
                      system: Optional[str] = None) -> dict:
        """Fields of the /api/generate body; ``system`` only when the caller set one."""
        fields = {"prompt": self.prompt.make_attack_flow_prompt(text, vision_analysis)}
        if system:
            fields["system"] = system
        return fields

    async def stream(self, request: AnalysisRequest, sink: EventSink) -> None:
        payload = {
            "model": self.text_model,
            **self.format_prompt(request.text, request.vision_analysis, request.system),
            "stream": True,
            "options": {"temperature": TEMPERATURE, "num_predict": NUM_PREDICT},
        }
        await self.relay(sink, self._text_chunks(payload))

    async def _text_chunks(self, payload: dict) -> AsyncIterator[str]:
        try:
            async with self._session() as client:
                async with client.stream("POST", self._generate_url(), json=payload) as response:
                    if not response.is_success:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        logger.error("Ollama API error encountered", status_code=response.status_code, response=body)
                        raise UpstreamError(f"Ollama API error: {body}", status_code=response.status_code)

                    async with aclosing(self._frames(response)) as frames:
                        async for frame in frames:
                            if frame.get("error"):
                                raise UpstreamError(f"Ollama error: {frame['error']}")
                            if frame.get("response"):
                                yield frame["response"]
                            if frame.get("done"):
                                return
            logger.warning("Ollama stream ended without a done frame", model=self.text_model)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Ollama request failed: {e}") from e

    @staticmethod
    async def _frames(response: httpx.Response) -> AsyncIterator[dict]:
        decoder = NDJSONDecoder()
        async for chunk in response.aiter_bytes():
            for frame in decoder.feed(chunk):
                yield frame
        for frame in decoder.close():
            yield frame

    async def analyze_vision(self, request: VisionRequest) -> VisionResult:
        self.validate_images(request)
        logger.warning("Vision analysis skipped for Ollama provider", images=len(request.images))
        return VisionResult(analysis_text=VISION_UNSUPPORTED_TEXT, confidence=Confidence.LOW)


# register on import
register(OllamaProvider, aliases=("local",))
